from __future__ import annotations

import json
import os
from dataclasses import dataclass
from typing import Any, Callable, Mapping

from .errors import ConfigParseError
from .models import InstanceSpec, Subscription
from .rules.triggers import validate_triggers


DEFAULT_TRIGGERS: tuple[str, ...] = ("status", "player_count")
DESTINATION_TYPES = ("discord_webhook", "log")


def _require_dict(value: Any, *, where: str) -> Mapping[str, Any]:
    if not isinstance(value, dict):
        raise ValueError(f"Expected object at {where}, got {type(value)}")
    return value


def _get_int(d: Mapping[str, Any], key: str, default: int) -> int:
    v = d.get(key, default)
    if isinstance(v, bool):
        return default
    try:
        return int(v)
    except Exception:
        return default


def _get_float(d: Mapping[str, Any], key: str, default: float) -> float:
    v = d.get(key, default)
    if isinstance(v, bool):
        return default
    try:
        return float(v)
    except Exception:
        return default


def _get_str(d: Mapping[str, Any], key: str, default: str | None = None) -> str | None:
    v = d.get(key, default)
    if v is None:
        return None
    return str(v)


def _get_str_list(d: Mapping[str, Any], key: str, default: list[str]) -> list[str]:
    v = d.get(key, default)
    if v is None:
        return list(default)
    if isinstance(v, list):
        return [str(x) for x in v]
    return list(default)


@dataclass(frozen=True, slots=True)
class BattleMetricsConfig:
    """
    BattleMetrics 查询配置。

    token_env:
      - API Token 的环境变量名（可选，不配置则匿名访问，易触发限流）
    """

    base_url: str = "https://api.battlemetrics.com"
    token_env: str | None = None


@dataclass(frozen=True, slots=True)
class DestinationConfig:
    """
    投递目的地（通常对应一个 guild 的通知频道）。

    type:
      - discord_webhook：webhook_env 指定 webhook URL 的环境变量名
      - log：只写日志
    """

    destination_id: str
    type: str
    webhook_env: str | None = None
    username: str | None = None


@dataclass(frozen=True, slots=True)
class AppConfig:
    """
    应用总配置。

    poll_interval_seconds:
      - 轮询间隔（daemon 模式下生效），默认 60
    query_timeout_seconds:
      - 单个 source 单次查询的超时，默认 10
    max_workers:
      - 单轮并发查询的线程数上限
    sqlite_path:
      - SQLite 状态库路径（负责 last_results / 投递记录）
    document:
      - 原始 JSON 文档，trackers 由 InstanceManager.load_from_config 逐条解析
    """

    poll_interval_seconds: int
    query_timeout_seconds: float
    max_workers: int
    sqlite_path: str
    battlemetrics: BattleMetricsConfig
    destinations: tuple[DestinationConfig, ...]
    default_triggers: tuple[str, ...]
    document: Mapping[str, Any]

    def resolve_env(self, env_name: str | None) -> str | None:
        return resolve_env(env_name)


def resolve_env(env_name: str | None) -> str | None:
    if not env_name:
        return None
    return os.environ.get(env_name)


def load_config(config_path: str) -> AppConfig:
    """
    使用 JSON 作为配置落地形式，避免引入第三方 YAML 解析依赖。

    JSON 顶层结构（示意）：
    {
      "poll_interval_seconds": 60,
      "query_timeout_seconds": 10,
      "max_workers": 8,
      "state": { "sqlite_path": "./gst_state.sqlite3" },
      "battlemetrics": { "token_env": "BATTLEMETRICS_TOKEN" },
      "destinations": { "guild-1": { "type": "discord_webhook", "webhook_env": "GUILD1_WEBHOOK" } },
      "defaults": { "triggers": ["status", "player_count"] },
      "trackers": [ ... ]
    }
    """
    with open(config_path, "rb") as f:
        raw = json.loads(f.read().decode("utf-8"))
    return parse_config(raw)


def parse_config(raw: Any) -> AppConfig:
    root = _require_dict(raw, where="$")

    state = _require_dict(root.get("state", {"sqlite_path": "./gst_state.sqlite3"}), where="$.state")
    sqlite_path = str(state.get("sqlite_path") or "./gst_state.sqlite3")

    bm = _require_dict(root.get("battlemetrics", {}), where="$.battlemetrics")
    bm_cfg = BattleMetricsConfig(
        base_url=str(bm.get("base_url") or "https://api.battlemetrics.com"),
        token_env=_get_str(bm, "token_env", None),
    )

    destinations: list[DestinationConfig] = []
    for dest_id, value in _require_dict(root.get("destinations", {}), where="$.destinations").items():
        d = _require_dict(value, where=f"$.destinations.{dest_id}")
        dest_type = str(d.get("type") or "discord_webhook")
        if dest_type not in DESTINATION_TYPES:
            raise ValueError(f"Unknown destination type at $.destinations.{dest_id}: {dest_type!r}")
        destinations.append(
            DestinationConfig(
                destination_id=str(dest_id),
                type=dest_type,
                webhook_env=_get_str(d, "webhook_env", None),
                username=_get_str(d, "username", None),
            )
        )

    defaults = _require_dict(root.get("defaults", {}), where="$.defaults")
    default_triggers = tuple(_get_str_list(defaults, "triggers", list(DEFAULT_TRIGGERS)))
    unknown = validate_triggers(default_triggers)
    if unknown:
        raise ValueError(f"Unknown triggers at $.defaults.triggers: {unknown}")

    return AppConfig(
        poll_interval_seconds=_get_int(root, "poll_interval_seconds", 60),
        query_timeout_seconds=_get_float(root, "query_timeout_seconds", 10.0),
        max_workers=_get_int(root, "max_workers", 8),
        sqlite_path=sqlite_path,
        battlemetrics=bm_cfg,
        destinations=tuple(destinations),
        default_triggers=default_triggers,
        document=root,
    )


def parse_instance_spec(
    entry: Any,
    *,
    where: str,
    default_triggers: Callable[[str], tuple[str, ...]],
) -> InstanceSpec:
    """
    解析单个 tracker 条目；任何不合法字段都抛 ConfigParseError（带条目定位）。

    条目结构：
    {
      "id": "rust-eu-1",
      "host": "203.0.113.7",
      "port": 28015,
      "server_id": "1234567",
      "credentials": { "token_env": "BM_TOKEN_EU1" },
      "subscriptions": [
        { "destination": "guild-1", "triggers": ["players"], "tracked_players": ["alice"] }
      ]
    }

    subscription 未写 triggers 时，使用 default_triggers(destination) 给出的默认值
    （guild 默认值优先于全局默认值）。
    """
    if not isinstance(entry, dict):
        raise ConfigParseError(where, f"expected object, got {type(entry).__name__}")

    source_id = entry.get("id")
    if not isinstance(source_id, str) or not source_id.strip():
        raise ConfigParseError(where, "missing or empty 'id'")
    source_id = source_id.strip()
    where = f"{where}({source_id})"

    host = entry.get("host")
    if not isinstance(host, str) or not host.strip():
        raise ConfigParseError(where, "missing or empty 'host'")

    port = entry.get("port")
    if isinstance(port, bool) or not isinstance(port, (int, str)):
        raise ConfigParseError(where, f"invalid 'port': {port!r}")
    try:
        port = int(port)
    except ValueError:
        raise ConfigParseError(where, f"invalid 'port': {port!r}") from None
    if not 0 < port < 65536:
        raise ConfigParseError(where, f"'port' out of range: {port}")

    server_id = entry.get("server_id")
    if server_id is not None and not isinstance(server_id, (str, int)):
        raise ConfigParseError(where, f"invalid 'server_id': {server_id!r}")

    creds_raw = entry.get("credentials", {})
    if not isinstance(creds_raw, dict):
        raise ConfigParseError(where, "'credentials' must be an object")
    credentials: dict[str, str] = {}
    token = resolve_env(_get_str(creds_raw, "token_env", None))
    if token:
        credentials["token"] = token

    subs_raw = entry.get("subscriptions", [])
    if not isinstance(subs_raw, list):
        raise ConfigParseError(where, "'subscriptions' must be a list")

    subscriptions: list[Subscription] = []
    for i, s in enumerate(subs_raw):
        sub_where = f"{where}.subscriptions[{i}]"
        if not isinstance(s, dict):
            raise ConfigParseError(sub_where, "expected object")
        destination = s.get("destination")
        if not isinstance(destination, str) or not destination.strip():
            raise ConfigParseError(sub_where, "missing or empty 'destination'")
        destination = destination.strip()

        if "triggers" in s:
            if not isinstance(s["triggers"], list):
                raise ConfigParseError(sub_where, "'triggers' must be a list")
            triggers = tuple(str(t) for t in s["triggers"])
        else:
            triggers = default_triggers(destination)
        unknown = validate_triggers(triggers)
        if unknown:
            raise ConfigParseError(sub_where, f"unknown triggers: {unknown}")

        subscriptions.append(
            Subscription(
                source_id=source_id,
                destination_id=destination,
                triggers=triggers,
                tracked_players=tuple(_get_str_list(s, "tracked_players", [])),
            )
        )

    return InstanceSpec(
        source_id=source_id,
        host=host.strip(),
        port=port,
        server_id=str(server_id) if server_id is not None else None,
        credentials=credentials,
        subscriptions=tuple(subscriptions),
    )
