from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field

from .config import AppConfig
from .executor import PollExecutor
from .http_utils import HttpClient
from .instances import InstanceManager, LoadReport
from .notify.base import DeliverySink
from .notify.discord import DiscordWebhookSink
from .notify.fanout import FanoutNotifier
from .notify.sinks import DestinationRouter, LogSink
from .registry import SourceRegistry
from .scheduler import Scheduler
from .sources.base import ServerQuery
from .sources.battlemetrics import BattleMetricsQuery
from .state.sqlite_store import SqliteStateStore
from .state.store import StateStore


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class Tracker:
    """
    宿主（聊天 bot 客户端）与调度核心之间的接缝。

    - on_ready：宿主连接就绪后调用一次；加载配置实例并启动调度（立即跑第一轮）
    - register_guild_defaults：宿主对启动时已知的每个 guild 调用一次
    - stop：停止定时器，等待进行中的一轮跑完
    """

    config: AppConfig
    registry: SourceRegistry
    notifier: FanoutNotifier
    instances: InstanceManager
    scheduler: Scheduler
    state: StateStore | None = None
    load_report: LoadReport | None = None
    _ready: bool = field(default=False, init=False, repr=False)
    _ready_lock: threading.Lock = field(default_factory=threading.Lock, init=False, repr=False)

    def on_ready(self) -> None:
        # 加载失败时不置位，宿主可以修正后再次调用
        with self._ready_lock:
            if self._ready:
                logger.debug("on_ready called again; ignored")
                return

            if self.state is not None:
                self.state.ensure_schema()
            self.load_report = self.instances.load_from_config(self.config.document)
            if not len(self.registry):
                logger.warning("no trackers configured; nothing will be polled until an instance is added")
            self.scheduler.start(run_immediately=True)
            self._ready = True

    def register_guild_defaults(self, guild_id: str) -> bool:
        return self.instances.register_guild_defaults(str(guild_id))

    def stop(self, timeout: float | None = None) -> bool:
        return self.scheduler.stop(timeout=timeout)


def build_sink(config: AppConfig, http: HttpClient) -> DestinationRouter:
    """
    按 destinations 配置装配投递路由；secret（webhook URL）只从环境变量读取。

    webhook 环境变量缺失的目的地会被跳过，并回落到 LogSink。
    """
    router = DestinationRouter(default=LogSink())
    for dest in config.destinations:
        if dest.type == "log":
            router.add_route(dest.destination_id, LogSink())
            continue
        webhook_url = config.resolve_env(dest.webhook_env)
        if not webhook_url:
            logger.warning(
                "destination skipped: destination_id=%s reason=missing env %s",
                dest.destination_id,
                dest.webhook_env or "<webhook_env not set>",
            )
            continue
        router.add_route(
            dest.destination_id,
            DiscordWebhookSink(webhook_url=webhook_url, http=http, username=dest.username),
        )
    return router


def build_tracker(
    config: AppConfig,
    *,
    sink: DeliverySink | None = None,
    query: ServerQuery | None = None,
    state: StateStore | None = None,
) -> Tracker:
    """
    根据配置构建 Tracker。

    统一在这里做“配置 -> 实例”的装配，Scheduler 内只关注流程编排。
    sink / query / state 可由宿主或测试注入。
    """
    http = HttpClient()
    if state is None:
        state = SqliteStateStore(config.sqlite_path)
    state.ensure_schema()
    if sink is None:
        sink = build_sink(config, http)
    if query is None:
        query = BattleMetricsQuery(
            http=HttpClient(timeout_seconds=config.query_timeout_seconds, max_retries=0),
            base_url=config.battlemetrics.base_url,
            token=config.resolve_env(config.battlemetrics.token_env),
        )

    registry = SourceRegistry()
    notifier = FanoutNotifier(sink, state=state)
    instances = InstanceManager(registry, notifier, state=state, default_triggers=config.default_triggers)
    executor = PollExecutor(
        query,
        timeout_seconds=config.query_timeout_seconds,
        max_workers=config.max_workers,
    )
    scheduler = Scheduler(
        registry,
        executor,
        notifier,
        interval_seconds=max(1, config.poll_interval_seconds),
        state=state,
    )
    return Tracker(
        config=config,
        registry=registry,
        notifier=notifier,
        instances=instances,
        scheduler=scheduler,
        state=state,
    )
