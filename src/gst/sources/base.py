from __future__ import annotations

from typing import Protocol

from ..models import ServerState, TrackedSource


class ServerQuery(Protocol):
    """
    查询适配器接口：查询一个 TrackedSource 的当前状态。

    约定：
    - 成功返回 ServerState
    - 超时抛 QueryTimeoutError，网络/协议错误抛 QueryTransportError
    - timeout_seconds 是本次查询的预算，适配器应尽量传给底层客户端；
      PollExecutor 另有独立的超时兜底，不依赖适配器遵守
    """

    def name(self) -> str: ...

    def query(self, source: TrackedSource, timeout_seconds: float) -> ServerState: ...
