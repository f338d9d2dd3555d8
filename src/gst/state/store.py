from __future__ import annotations

from typing import Protocol

from ..models import Notification, PollResult


class StateStore(Protocol):
    """
    状态层接口：
    - last_results：每个 source 最近一次结果（重启后恢复，避免“首次观测”重复触发）
    - deliveries：已投递的通知（审计）
    - delivery_failures：投递失败留痕
    """

    def ensure_schema(self) -> None: ...

    def get_last_result(self, source_id: str) -> PollResult | None: ...

    def save_last_results(self, results: list[PollResult]) -> None: ...

    def delete_source(self, source_id: str) -> None: ...

    def record_delivery(self, notification: Notification) -> None: ...

    def record_delivery_failure(self, *, subscription_id: str, destination_id: str, error: str) -> None: ...
