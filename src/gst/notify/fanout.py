from __future__ import annotations

import logging
import threading
from dataclasses import dataclass

from ..models import Notification, PollResult, Subscription, utc_now
from ..rules.triggers import evaluate
from ..state.store import StateStore
from .base import DeliverySink
from .formatter import format_notification_text


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class DispatchReport:
    results: int
    subscriptions_evaluated: int
    notifications: int
    delivery_successes: int
    delivery_failures: int


class FanoutNotifier:
    """
    将每个 PollResult 分发给订阅了该 source 的所有 Subscription。

    - 订阅按 source_id 建索引，查找代价只与该 source 的订阅数有关
    - 逐个订阅评估触发条件，命中则投递；单个投递失败只记录，不影响其他订阅
    - 索引的增删在锁内完成，dispatch 期间对订阅列表取副本
    """

    def __init__(self, sink: DeliverySink, *, state: StateStore | None = None) -> None:
        self.sink = sink
        self.state = state
        self._lock = threading.Lock()
        self._by_source: dict[str, dict[str, Subscription]] = {}

    def add_subscription(self, subscription: Subscription) -> bool:
        """新增或替换订阅；与已有订阅完全相同时返回 False（no-op）。"""
        with self._lock:
            subs = self._by_source.setdefault(subscription.source_id, {})
            existing = subs.get(subscription.subscription_id)
            if existing == subscription:
                return False
            subs[subscription.subscription_id] = subscription
            return True

    def remove_subscription(self, subscription_id: str) -> Subscription | None:
        with self._lock:
            for source_id, subs in list(self._by_source.items()):
                removed = subs.pop(subscription_id, None)
                if removed is not None:
                    if not subs:
                        del self._by_source[source_id]
                    return removed
        return None

    def remove_source(self, source_id: str) -> int:
        with self._lock:
            return len(self._by_source.pop(source_id, {}))

    def remove_destination(self, destination_id: str) -> int:
        removed = 0
        with self._lock:
            for source_id, subs in list(self._by_source.items()):
                for sub_id, sub in list(subs.items()):
                    if sub.destination_id == destination_id:
                        del subs[sub_id]
                        removed += 1
                if not subs:
                    del self._by_source[source_id]
        return removed

    def subscriptions_for(self, source_id: str) -> tuple[Subscription, ...]:
        with self._lock:
            return tuple(self._by_source.get(source_id, {}).values())

    def subscription_count(self) -> int:
        with self._lock:
            return sum(len(subs) for subs in self._by_source.values())

    def dispatch(self, results: list[PollResult]) -> DispatchReport:
        evaluated = 0
        notifications = 0
        successes = 0
        failures = 0

        for result in results:
            for sub in self.subscriptions_for(result.source_id):
                evaluated += 1
                matches = evaluate(sub, result)
                if not matches:
                    continue

                notification = Notification(
                    subscription=sub,
                    result=result,
                    matches=matches,
                    content="",
                    created_at=utc_now(),
                )
                notification = Notification(
                    subscription=notification.subscription,
                    result=notification.result,
                    matches=notification.matches,
                    content=format_notification_text(notification),
                    created_at=notification.created_at,
                )
                notifications += 1
                if self._deliver(notification):
                    successes += 1
                else:
                    failures += 1

        return DispatchReport(
            results=len(results),
            subscriptions_evaluated=evaluated,
            notifications=notifications,
            delivery_successes=successes,
            delivery_failures=failures,
        )

    def _deliver(self, notification: Notification) -> bool:
        sub = notification.subscription
        try:
            self.sink.deliver(sub.destination_id, notification.content)
        except Exception as e:  # noqa: BLE001
            logger.exception(
                "delivery failed: subscription_id=%s destination_id=%s sink=%s triggers=%s",
                sub.subscription_id,
                sub.destination_id,
                self.sink.channel(),
                ",".join(m.trigger_id for m in notification.matches),
            )
            if self.state is not None:
                try:
                    self.state.record_delivery_failure(
                        subscription_id=sub.subscription_id,
                        destination_id=sub.destination_id,
                        error=f"{type(e).__name__}: {e}",
                    )
                except Exception:  # noqa: BLE001
                    logger.exception("record delivery failure failed: subscription_id=%s", sub.subscription_id)
            return False

        if self.state is not None:
            try:
                self.state.record_delivery(notification)
            except Exception:  # noqa: BLE001
                logger.exception("record delivery failed: subscription_id=%s", sub.subscription_id)
        return True
