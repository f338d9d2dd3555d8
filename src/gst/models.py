from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, Mapping

from .errors import QueryError


def utc_now() -> datetime:
    return datetime.now(tz=UTC)


@dataclass(frozen=True, slots=True)
class ServerState:
    """
    统一的服务器状态模型：任何查询适配器的返回，都归一到该结构。

    下游 Rules/Notify/State 只依赖这里的字段，不依赖平台私有字段（私有字段放 raw）。
    """

    name: str
    status: str
    players: int
    max_players: int
    player_names: tuple[str, ...] = ()
    raw: Mapping[str, Any] | None = None

    def to_json_dict(self) -> dict[str, Any]:
        return {
            "name": self.name,
            "status": self.status,
            "players": self.players,
            "max_players": self.max_players,
            "player_names": list(self.player_names),
        }

    @classmethod
    def from_json_dict(cls, data: Mapping[str, Any]) -> ServerState:
        return cls(
            name=str(data.get("name") or ""),
            status=str(data.get("status") or "unknown"),
            players=int(data.get("players") or 0),
            max_players=int(data.get("max_players") or 0),
            player_names=tuple(str(n) for n in data.get("player_names") or ()),
        )


@dataclass(frozen=True, slots=True)
class PollFailure:
    kind: str
    message: str

    @classmethod
    def from_exception(cls, exc: BaseException) -> PollFailure:
        kind = exc.kind if isinstance(exc, QueryError) else "error"
        return cls(kind=kind, message=f"{type(exc).__name__}: {exc}")


@dataclass(frozen=True, slots=True)
class PollResult:
    """
    单个 source 在单轮中的查询结果：state 与 error 二选一。

    previous 是本轮之前缓存在 TrackedSource 上的结果（不再向前链接），
    触发规则据此比较前后变化。
    """

    source_id: str
    observed_at: datetime
    state: ServerState | None = None
    error: PollFailure | None = None
    previous: PollResult | None = None
    duration_ms: int = 0

    def __post_init__(self) -> None:
        if (self.state is None) == (self.error is None):
            raise ValueError("PollResult requires exactly one of state/error")

    @property
    def ok(self) -> bool:
        return self.state is not None

    def to_json_dict(self) -> dict[str, Any]:
        return {
            "source_id": self.source_id,
            "observed_at": self.observed_at.isoformat(),
            "state": self.state.to_json_dict() if self.state else None,
            "error": {"kind": self.error.kind, "message": self.error.message} if self.error else None,
            "duration_ms": self.duration_ms,
        }

    @classmethod
    def from_json_dict(cls, data: Mapping[str, Any]) -> PollResult:
        state = data.get("state")
        error = data.get("error")
        return cls(
            source_id=str(data["source_id"]),
            observed_at=datetime.fromisoformat(str(data["observed_at"])),
            state=ServerState.from_json_dict(state) if isinstance(state, dict) else None,
            error=PollFailure(kind=str(error.get("kind")), message=str(error.get("message")))
            if isinstance(error, dict)
            else None,
            duration_ms=int(data.get("duration_ms") or 0),
        )


@dataclass(slots=True)
class TrackedSource:
    """
    一个需要周期性查询的外部目标（例如某个游戏服务器）。

    - source_id 在 Registry 内唯一
    - last_result 只由 PollExecutor 在一轮结束后写入
    """

    source_id: str
    host: str
    port: int
    server_id: str | None = None
    credentials: Mapping[str, str] = field(default_factory=dict)
    last_result: PollResult | None = None

    def key(self) -> str:
        return f"{self.source_id}@{self.host}:{self.port}"


@dataclass(frozen=True, slots=True)
class Subscription:
    source_id: str
    destination_id: str
    triggers: tuple[str, ...]
    tracked_players: tuple[str, ...] = ()

    @property
    def subscription_id(self) -> str:
        return f"{self.source_id}->{self.destination_id}"


@dataclass(frozen=True, slots=True)
class RoundSnapshot:
    round_id: int
    taken_at: datetime
    sources: tuple[TrackedSource, ...]

    def __len__(self) -> int:
        return len(self.sources)

    def source_ids(self) -> tuple[str, ...]:
        return tuple(s.source_id for s in self.sources)


@dataclass(frozen=True, slots=True)
class TriggerMatch:
    trigger_id: str
    reason: str


@dataclass(frozen=True, slots=True)
class Notification:
    """
    投递对象：由一次 PollResult 触发，包含命中的触发条件与格式化后的内容。
    """

    subscription: Subscription
    result: PollResult
    matches: tuple[TriggerMatch, ...]
    content: str
    created_at: datetime


@dataclass(frozen=True, slots=True)
class InstanceSpec:
    """一个追踪实例：一个 source 以及订阅它的若干目的地。"""

    source_id: str
    host: str
    port: int
    server_id: str | None = None
    credentials: Mapping[str, str] = field(default_factory=dict)
    subscriptions: tuple[Subscription, ...] = ()

    def to_source(self) -> TrackedSource:
        return TrackedSource(
            source_id=self.source_id,
            host=self.host,
            port=self.port,
            server_id=self.server_id,
            credentials=dict(self.credentials),
        )
