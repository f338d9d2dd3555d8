from __future__ import annotations

import json
import urllib.error
from dataclasses import dataclass
from typing import Any, Mapping

from ..errors import QueryTimeoutError, QueryTransportError
from ..http_utils import HttpClient, HttpResponse, is_timeout_error, with_query_params
from ..models import ServerState, TrackedSource


def _parse_server(data: Mapping[str, Any], included: list[Any]) -> ServerState:
    attrs = data.get("attributes")
    if not isinstance(attrs, dict):
        raise QueryTransportError(f"BattleMetrics server without attributes: id={data.get('id')!r}")

    player_names: list[str] = []
    for it in included:
        if not isinstance(it, dict) or it.get("type") != "player":
            continue
        name = (it.get("attributes") or {}).get("name")
        if isinstance(name, str) and name:
            player_names.append(name)

    return ServerState(
        name=str(attrs.get("name") or ""),
        status=str(attrs.get("status") or "unknown"),
        players=int(attrs.get("players") or 0),
        max_players=int(attrs.get("maxPlayers") or 0),
        player_names=tuple(sorted(player_names)),
        raw=attrs,
    )


@dataclass(slots=True)
class BattleMetricsQuery:
    """
    通过 BattleMetrics 公共 API 查询游戏服务器状态。

    - 配置了 server_id：GET /servers/{id}?include=player，可拿到在线玩家列表
    - 否则按 host 搜索，再用 ip/port 精确匹配（搜索接口不返回玩家列表）
    - token 可选；source.credentials["token"] 优先于适配器默认 token
    """

    http: HttpClient
    base_url: str = "https://api.battlemetrics.com"
    token: str | None = None

    def name(self) -> str:
        return "battlemetrics"

    def _headers(self, source: TrackedSource) -> Mapping[str, str]:
        headers: dict[str, str] = {"Accept": "application/json"}
        token = source.credentials.get("token") or self.token
        if token:
            headers["Authorization"] = f"Bearer {token}"
        return headers

    def query(self, source: TrackedSource, timeout_seconds: float) -> ServerState:
        base = self.base_url.rstrip("/")
        if source.server_id:
            url = with_query_params(f"{base}/servers/{source.server_id}", {"include": "player"})
            data = self._get_json(url, source, timeout_seconds)
            server = data.get("data") if isinstance(data, dict) else None
            if not isinstance(server, dict):
                raise QueryTransportError(f"BattleMetrics API expected object at data: {url}")
            included = data.get("included")
            return _parse_server(server, included if isinstance(included, list) else [])

        url = with_query_params(f"{base}/servers", {"filter[search]": source.host, "page[size]": "10"})
        data = self._get_json(url, source, timeout_seconds)
        servers = data.get("data") if isinstance(data, dict) else None
        if not isinstance(servers, list):
            raise QueryTransportError(f"BattleMetrics API expected list at data: {url}")
        for server in servers:
            if not isinstance(server, dict):
                continue
            attrs = server.get("attributes") or {}
            if str(attrs.get("ip") or "") == source.host and int(attrs.get("port") or 0) == source.port:
                return _parse_server(server, [])
        raise QueryTransportError(f"BattleMetrics server not found: {source.host}:{source.port}")

    def _get_json(self, url: str, source: TrackedSource, timeout_seconds: float) -> Any:
        try:
            resp: HttpResponse = self.http.get(url, headers=self._headers(source), timeout_seconds=timeout_seconds)
        except urllib.error.HTTPError as e:
            raise QueryTransportError(f"BattleMetrics HTTP {e.code}: {url}") from e
        except (urllib.error.URLError, TimeoutError, OSError) as e:
            if is_timeout_error(e):
                raise QueryTimeoutError(f"BattleMetrics query timed out after {timeout_seconds}s: {url}") from e
            raise QueryTransportError(f"BattleMetrics unreachable: {type(e).__name__}: {e}") from e

        try:
            return resp.json()
        except (json.JSONDecodeError, UnicodeDecodeError) as e:
            raise QueryTransportError(f"BattleMetrics invalid JSON response: {resp.body[:200]!r}") from e
