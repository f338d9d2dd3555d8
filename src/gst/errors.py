from __future__ import annotations


class TrackerError(Exception):
    """gst 所有业务异常的基类。"""


class DuplicateSourceError(TrackerError):
    def __init__(self, source_id: str) -> None:
        super().__init__(f"source already registered: {source_id}")
        self.source_id = source_id


class ConfigParseError(TrackerError):
    """
    配置条目解析失败。

    entry 为出错条目的定位（例如 "$.trackers[2]" 或条目 id），便于日志直接定位。
    """

    def __init__(self, entry: str, message: str) -> None:
        super().__init__(f"{entry}: {message}")
        self.entry = entry
        self.message = message


class QueryError(TrackerError):
    """单个 source 查询失败（只影响该 source 本轮结果）。"""

    kind = "error"


class QueryTimeoutError(QueryError):
    kind = "timeout"


class QueryTransportError(QueryError):
    kind = "transport"


class DeliveryError(TrackerError):
    """单个 subscription 投递失败（不影响其他 subscription）。"""

    def __init__(self, destination_id: str, message: str) -> None:
        super().__init__(f"delivery to {destination_id} failed: {message}")
        self.destination_id = destination_id
