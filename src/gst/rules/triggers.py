from __future__ import annotations

from typing import Callable

from ..models import PollResult, Subscription, TriggerMatch


TriggerFn = Callable[[Subscription, PollResult | None, PollResult], TriggerMatch | None]


def _states(previous: PollResult | None, current: PollResult):  # noqa: ANN202
    if previous is None or previous.state is None or current.state is None:
        return None
    return previous.state, current.state


def _player_count(sub: Subscription, previous: PollResult | None, current: PollResult) -> TriggerMatch | None:  # noqa: ARG001
    pair = _states(previous, current)
    if pair is None or pair[0].players == pair[1].players:
        return None
    return TriggerMatch("player_count", f"players {pair[0].players} -> {pair[1].players}")


def _status(sub: Subscription, previous: PollResult | None, current: PollResult) -> TriggerMatch | None:  # noqa: ARG001
    pair = _states(previous, current)
    if pair is None or pair[0].status == pair[1].status:
        return None
    return TriggerMatch("status", f"status {pair[0].status} -> {pair[1].status}")


def _name(sub: Subscription, previous: PollResult | None, current: PollResult) -> TriggerMatch | None:  # noqa: ARG001
    pair = _states(previous, current)
    if pair is None or pair[0].name == pair[1].name:
        return None
    return TriggerMatch("name", f"name '{pair[0].name}' -> '{pair[1].name}'")


def _players(sub: Subscription, previous: PollResult | None, current: PollResult) -> TriggerMatch | None:
    pair = _states(previous, current)
    if pair is None:
        return None
    before = {n.lower(): n for n in pair[0].player_names}
    after = {n.lower(): n for n in pair[1].player_names}
    watched = {n.lower() for n in sub.tracked_players if n}

    joined = sorted(after[k] for k in after.keys() - before.keys() if not watched or k in watched)
    left = sorted(before[k] for k in before.keys() - after.keys() if not watched or k in watched)
    if not joined and not left:
        return None
    parts: list[str] = []
    if joined:
        parts.append("joined: " + ", ".join(joined))
    if left:
        parts.append("left: " + ", ".join(left))
    return TriggerMatch("players", "; ".join(parts))


def _reachability(sub: Subscription, previous: PollResult | None, current: PollResult) -> TriggerMatch | None:  # noqa: ARG001
    if previous is None or previous.ok == current.ok:
        return None
    if current.ok:
        return TriggerMatch("reachability", "server reachable again")
    assert current.error is not None
    return TriggerMatch("reachability", f"server unreachable ({current.error.kind}: {current.error.message})")


def _always(sub: Subscription, previous: PollResult | None, current: PollResult) -> TriggerMatch | None:  # noqa: ARG001
    if not current.ok:
        return None
    return TriggerMatch("always", "poll succeeded")


TRIGGERS: dict[str, TriggerFn] = {
    "player_count": _player_count,
    "status": _status,
    "name": _name,
    "players": _players,
    "reachability": _reachability,
    "always": _always,
}


def evaluate(subscription: Subscription, result: PollResult) -> tuple[TriggerMatch, ...]:
    """
    按 subscription 配置的触发条件，比较 (result.previous, result)。

    没有 previous（首次观测）时只有 always 会命中，避免启动即刷屏。
    多个触发条件按配置顺序输出，便于通知中给出“触发原因”。
    """
    matches: list[TriggerMatch] = []
    for trigger_id in subscription.triggers:
        fn = TRIGGERS.get(trigger_id)
        if fn is None:
            continue
        m = fn(subscription, result.previous, result)
        if m is not None:
            matches.append(m)
    return tuple(matches)


def validate_triggers(trigger_ids: tuple[str, ...]) -> list[str]:
    return [t for t in trigger_ids if t not in TRIGGERS]
