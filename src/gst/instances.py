from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from typing import Any, Mapping

from .config import DEFAULT_TRIGGERS, parse_instance_spec
from .errors import ConfigParseError, DuplicateSourceError
from .models import InstanceSpec
from .notify.fanout import FanoutNotifier
from .registry import SourceRegistry
from .rules.triggers import validate_triggers
from .state.store import StateStore


logger = logging.getLogger(__name__)


@dataclass(slots=True)
class LoadReport:
    entries: int
    instances_added: int
    instances_unchanged: int
    errors: tuple[ConfigParseError, ...]


class InstanceManager:
    """
    由配置（启动时）或管理命令（运行时）创建 / 移除追踪实例。

    幂等约定：
    - source 已存在：不重复注册（连接参数以首次注册为准，需变更请先 remove_instance）
    - subscription 完全相同：no-op；同一 source->destination 但偏好变化：替换
    - load_from_config 是增量的，不会删除文档里已经没有的实例
    """

    def __init__(
        self,
        registry: SourceRegistry,
        notifier: FanoutNotifier,
        *,
        state: StateStore | None = None,
        default_triggers: tuple[str, ...] = DEFAULT_TRIGGERS,
    ) -> None:
        self.registry = registry
        self.notifier = notifier
        self.state = state
        self.default_triggers = default_triggers
        self._lock = threading.Lock()
        self._guild_defaults: dict[str, tuple[str, ...]] = {}

    def register_guild_defaults(self, guild_id: str, triggers: tuple[str, ...] | None = None) -> bool:
        """
        为一个 guild（目的地）登记默认触发偏好；重复调用不覆盖已有值。
        """
        triggers = tuple(triggers) if triggers is not None else self.default_triggers
        unknown = validate_triggers(triggers)
        if unknown:
            raise ValueError(f"unknown triggers for guild {guild_id}: {unknown}")
        with self._lock:
            if guild_id in self._guild_defaults:
                return False
            self._guild_defaults[guild_id] = triggers
        logger.debug("guild defaults registered: guild_id=%s triggers=%s", guild_id, ",".join(triggers))
        return True

    def default_triggers_for(self, destination_id: str) -> tuple[str, ...]:
        with self._lock:
            return self._guild_defaults.get(destination_id, self.default_triggers)

    def load_from_config(self, doc: Mapping[str, Any]) -> LoadReport:
        """
        逐条解析 doc["trackers"] 并注册实例（best-effort）。

        - 单条不合法：记录 ConfigParseError 并继续
        - 所有条目都失败：抛 ConfigParseError（视为致命）
        """
        trackers = doc.get("trackers", [])
        if not isinstance(trackers, list):
            raise ConfigParseError("$.trackers", "expected a list")

        added = 0
        unchanged = 0
        errors: list[ConfigParseError] = []
        for i, entry in enumerate(trackers):
            try:
                spec = parse_instance_spec(
                    entry,
                    where=f"$.trackers[{i}]",
                    default_triggers=self.default_triggers_for,
                )
            except ConfigParseError as e:
                logger.error("config entry skipped: entry=%s error=%s", e.entry, e.message)
                errors.append(e)
                continue

            if self.add_instance(spec):
                added += 1
            else:
                unchanged += 1

        if trackers and len(errors) == len(trackers):
            raise ConfigParseError("$.trackers", f"all {len(trackers)} entries failed to parse")

        report = LoadReport(
            entries=len(trackers),
            instances_added=added,
            instances_unchanged=unchanged,
            errors=tuple(errors),
        )
        logger.info(
            "config loaded: entries=%d added=%d unchanged=%d errors=%d",
            report.entries,
            report.instances_added,
            report.instances_unchanged,
            len(report.errors),
        )
        return report

    def add_instance(self, spec: InstanceSpec) -> bool:
        """
        注册一个实例；返回 True 表示有新增或变更（source 或任一 subscription）。
        """
        changed = False
        if spec.source_id not in self.registry:
            source = spec.to_source()
            if self.state is not None:
                try:
                    source.last_result = self.state.get_last_result(spec.source_id)
                except Exception:  # noqa: BLE001
                    logger.exception("restore last result failed: source_id=%s", spec.source_id)
            try:
                self.registry.add(source)
                changed = True
                logger.info("instance added: source_id=%s key=%s", spec.source_id, source.key())
            except DuplicateSourceError:
                logger.debug("instance already registered concurrently: source_id=%s", spec.source_id)

        for sub in spec.subscriptions:
            if self.notifier.add_subscription(sub):
                changed = True
                logger.info(
                    "subscription set: subscription_id=%s triggers=%s",
                    sub.subscription_id,
                    ",".join(sub.triggers),
                )
        return changed

    def remove_instance(self, source_id: str) -> bool:
        removed = self.registry.remove(source_id)
        subs = self.notifier.remove_source(source_id)
        if removed is None and subs == 0:
            return False
        if self.state is not None:
            try:
                self.state.delete_source(source_id)
            except Exception:  # noqa: BLE001
                logger.exception("delete persisted state failed: source_id=%s", source_id)
        logger.info("instance removed: source_id=%s subscriptions=%d", source_id, subs)
        return True

    def remove_destination(self, destination_id: str) -> int:
        """guild 移除 bot / 删除通知频道时调用：移除所有投递到该目的地的订阅。"""
        with self._lock:
            self._guild_defaults.pop(destination_id, None)
        removed = self.notifier.remove_destination(destination_id)
        if removed:
            logger.info("destination removed: destination_id=%s subscriptions=%d", destination_id, removed)
        return removed
