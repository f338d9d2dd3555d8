from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Callable, Mapping

from ..errors import DeliveryError
from .base import DeliverySink


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class CallbackSink(DeliverySink):
    """
    把投递交给宿主（例如聊天 bot 客户端）的回调：send(destination_id, message)。

    回调抛出的异常统一包装为 DeliveryError。
    """

    send: Callable[[str, str], None]
    name: str = "callback"

    def channel(self) -> str:
        return self.name

    def deliver(self, destination_id: str, message: str) -> None:
        try:
            self.send(destination_id, message)
        except DeliveryError:
            raise
        except Exception as e:  # noqa: BLE001
            raise DeliveryError(destination_id, f"{type(e).__name__}: {e}") from e


@dataclass(slots=True)
class LogSink(DeliverySink):
    """只写日志的投递，用于未配置任何目的地时的兜底与本地调试。"""

    level: int = logging.INFO

    def channel(self) -> str:
        return "log"

    def deliver(self, destination_id: str, message: str) -> None:
        logger.log(self.level, "notification: destination=%s\n%s", destination_id, message)


@dataclass(slots=True)
class DestinationRouter(DeliverySink):
    """
    按 destination_id 路由到具体 sink。

    未知 destination 且没有 default 时抛 DeliveryError。
    """

    routes: dict[str, DeliverySink] = field(default_factory=dict)
    default: DeliverySink | None = None

    def channel(self) -> str:
        return "router"

    def add_route(self, destination_id: str, sink: DeliverySink) -> None:
        self.routes[destination_id] = sink

    def remove_route(self, destination_id: str) -> None:
        self.routes.pop(destination_id, None)

    def sink_for(self, destination_id: str) -> DeliverySink | None:
        return self.routes.get(destination_id, self.default)

    def deliver(self, destination_id: str, message: str) -> None:
        sink = self.sink_for(destination_id)
        if sink is None:
            raise DeliveryError(destination_id, "no sink configured for destination")
        sink.deliver(destination_id, message)

    def summary(self) -> Mapping[str, str]:
        return {d: s.channel() for d, s in self.routes.items()}
