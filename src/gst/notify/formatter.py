from __future__ import annotations

from ..models import Notification


def format_notification_text(notification: Notification) -> str:
    """
    统一的文本消息格式，兼容 Discord webhook 与 bot 频道消息。
    """
    result = notification.result
    triggers = ", ".join(m.trigger_id for m in notification.matches) or "-"

    lines = [f"**Server tracker: {result.source_id}**"]
    if result.state is not None:
        state = result.state
        lines.append(f"name: {state.name or '-'}")
        lines.append(f"status: {state.status}")
        lines.append(f"players: {state.players}/{state.max_players}")
    elif result.error is not None:
        lines.append(f"error: {result.error.kind}")
    lines.append(f"observed_at: {result.observed_at.isoformat()}")
    lines.append(f"triggers: {triggers}")

    reasons = [m.reason for m in notification.matches if m.reason]
    if reasons:
        lines.append("")
        lines.extend(f"- {r}" for r in reasons)
    return "\n".join(lines)
