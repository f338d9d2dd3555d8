from __future__ import annotations

import threading

from .errors import DuplicateSourceError
from .models import RoundSnapshot, TrackedSource, utc_now


class SourceRegistry:
    """
    Tracked-Source 注册表。

    约定：
    - add/remove 可以在任意线程调用（InstanceManager / 管理命令）
    - snapshot 返回不可变 tuple，后续的 add/remove 不影响已取出的快照
    - 锁只在 add/remove/snapshot 期间持有，不会跨越整轮查询
    """

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._sources: dict[str, TrackedSource] = {}

    def add(self, source: TrackedSource) -> None:
        with self._lock:
            if source.source_id in self._sources:
                raise DuplicateSourceError(source.source_id)
            self._sources[source.source_id] = source

    def remove(self, source_id: str) -> TrackedSource | None:
        with self._lock:
            return self._sources.pop(source_id, None)

    def get(self, source_id: str) -> TrackedSource | None:
        with self._lock:
            return self._sources.get(source_id)

    def snapshot(self, round_id: int = 0) -> RoundSnapshot:
        with self._lock:
            sources = tuple(self._sources.values())
        return RoundSnapshot(round_id=round_id, taken_at=utc_now(), sources=sources)

    def __contains__(self, source_id: object) -> bool:
        with self._lock:
            return source_id in self._sources

    def __len__(self) -> int:
        with self._lock:
            return len(self._sources)
