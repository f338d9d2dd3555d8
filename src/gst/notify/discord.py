from __future__ import annotations

import urllib.error
from dataclasses import dataclass

from ..errors import DeliveryError
from ..http_utils import HttpClient
from .base import DeliverySink

_MAX_CONTENT_LENGTH = 2000


@dataclass(slots=True)
class DiscordWebhookSink(DeliverySink):
    """
    Discord 频道 webhook 投递。

    说明：
    - webhook_url 形如 https://discord.com/api/webhooks/<id>/<token>
    - content 长度上限 2000，超出会被截断
    - 默认禁止解析 @ 提醒（allowed_mentions.parse 为空），除非显式打开 allow_mentions
    - 成功响应为 204（或 200），其他状态视为失败
    """

    webhook_url: str
    http: HttpClient
    username: str | None = None
    allow_mentions: bool = False

    def channel(self) -> str:
        return "discord_webhook"

    def deliver(self, destination_id: str, message: str) -> None:
        payload = self._build_payload(message)
        try:
            resp = self.http.post_json(self.webhook_url, payload)
        except urllib.error.HTTPError as e:
            body = e.read()[:200] if e.fp is not None else b""
            raise DeliveryError(destination_id, f"status={e.code}, body={body!r}") from e
        except (urllib.error.URLError, TimeoutError) as e:
            raise DeliveryError(destination_id, f"{type(e).__name__}: {e}") from e

        if resp.status not in (200, 204):
            raise DeliveryError(destination_id, f"status={resp.status}, body={resp.body[:200]!r}")

    def _build_payload(self, text: str) -> dict[str, object]:
        content = (text or "").strip() or "-"
        if len(content) > _MAX_CONTENT_LENGTH:
            content = content[: _MAX_CONTENT_LENGTH - 1] + "…"

        payload: dict[str, object] = {"content": content}
        if self.username:
            payload["username"] = self.username
        if not self.allow_mentions:
            payload["allowed_mentions"] = {"parse": []}
        return payload
