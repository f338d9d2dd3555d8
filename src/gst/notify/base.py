from __future__ import annotations

from typing import Protocol


class DeliverySink(Protocol):
    """
    投递接口：把一条文本消息发到某个目的地（频道 / guild / webhook）。

    约定：
    - deliver 失败抛异常（推荐 DeliveryError），由 FanoutNotifier 统一捕获并记录
    - channel() 用于日志与故障记录
    """

    def channel(self) -> str: ...

    def deliver(self, destination_id: str, message: str) -> None: ...
