from __future__ import annotations

import logging
import threading
import time
from concurrent.futures import Future, ThreadPoolExecutor
from concurrent.futures import wait as wait_futures
from dataclasses import dataclass
from datetime import datetime

from .executor import PollExecutor
from .models import PollResult, utc_now
from .notify.fanout import DispatchReport, FanoutNotifier
from .registry import SourceRegistry
from .state.store import StateStore


logger = logging.getLogger(__name__)

IDLE = "idle"
POLLING = "polling"


@dataclass(slots=True)
class RoundReport:
    round_id: int
    started_at: datetime
    finished_at: datetime
    duration_ms: int
    results: tuple[PollResult, ...]
    successes: int
    failures: int
    dispatch: DispatchReport


class Scheduler:
    """
    定时驱动 PollExecutor 的调度循环：Idle -> Polling -> Idle。

    约定：
    - 任意时刻最多一轮在执行；定时器触发时若上一轮未结束，本次 tick 直接跳过并告警（不排队、不并行）
    - 每轮开始时取 registry 快照，本轮只处理快照内的 source
    - trigger() 返回本轮的 Future，测试与 CLI 可以确定性地等待一轮结束
    - stop() 停止定时器，并等待进行中的一轮跑完（不中途取消）
    - 不持有任何进程级全局状态，可以构造多个互不影响的 Scheduler
    """

    def __init__(
        self,
        registry: SourceRegistry,
        executor: PollExecutor,
        notifier: FanoutNotifier,
        *,
        interval_seconds: float = 60.0,
        state: StateStore | None = None,
    ) -> None:
        self.registry = registry
        self.executor = executor
        self.notifier = notifier
        self.interval_seconds = max(0.01, float(interval_seconds))
        self.state_store = state

        self._lock = threading.Lock()
        self._stop = threading.Event()
        self._timer: threading.Thread | None = None
        self._pool: ThreadPoolExecutor | None = None
        self._current: Future | None = None
        self._polling = False
        self._closed = False
        self._round_id = 0

        self.rounds_completed = 0
        self.skipped_ticks = 0

    @property
    def state(self) -> str:
        with self._lock:
            return POLLING if self._polling else IDLE

    @property
    def running(self) -> bool:
        return self._timer is not None and self._timer.is_alive()

    def start(self, *, run_immediately: bool = True) -> None:
        if self.running:
            logger.warning("scheduler already running")
            return

        self._stop.clear()
        with self._lock:
            self._closed = False
        logger.info(
            "scheduler starting: interval_seconds=%.1f sources=%d",
            self.interval_seconds,
            len(self.registry),
        )
        if run_immediately:
            self.trigger()

        self._timer = threading.Thread(target=self._timer_loop, name="gst-scheduler", daemon=True)
        self._timer.start()

    def stop(self, timeout: float | None = None) -> bool:
        """
        停止定时器并排空进行中的一轮。

        返回 True 表示进行中的一轮已结束（或本来就没有）。
        """
        logger.info("scheduler stopping")
        self._stop.set()
        with self._lock:
            self._closed = True
        if self._timer is not None:
            self._timer.join(timeout=timeout)
            self._timer = None

        drained = self.wait_idle(timeout=timeout)
        if not drained:
            logger.warning("scheduler stop timed out while a round was still in flight")

        with self._lock:
            pool, self._pool = self._pool, None
        if pool is not None:
            pool.shutdown(wait=drained)
        logger.info("scheduler stopped: rounds_completed=%d skipped_ticks=%d", self.rounds_completed, self.skipped_ticks)
        return drained

    def trigger(self) -> Future | None:
        """
        触发一轮；已有一轮在执行（或已 stop）时返回 None。
        """
        with self._lock:
            if self._closed:
                return None
            if self._polling:
                self.skipped_ticks += 1
                logger.warning(
                    "tick skipped: round_id=%d still in flight (skipped_ticks=%d)",
                    self._round_id,
                    self.skipped_ticks,
                )
                return None
            self._polling = True
            self._round_id += 1
            round_id = self._round_id
            if self._pool is None:
                self._pool = ThreadPoolExecutor(max_workers=1, thread_name_prefix="gst-round")
            pool = self._pool

        try:
            fut = pool.submit(self._run_round, round_id)
        except RuntimeError:
            with self._lock:
                self._polling = False
            raise
        with self._lock:
            self._current = fut
        return fut

    def wait_idle(self, timeout: float | None = None) -> bool:
        """等待最近一次触发的一轮结束；返回 False 表示超时。"""
        with self._lock:
            current = self._current
        if current is None:
            return True
        done, _ = wait_futures([current], timeout=timeout)
        return bool(done)

    def run_once(self, timeout: float | None = None) -> RoundReport | None:
        fut = self.trigger()
        if fut is None:
            return None
        return fut.result(timeout=timeout)

    def _timer_loop(self) -> None:
        while not self._stop.wait(self.interval_seconds):
            try:
                self.trigger()
            except Exception:  # noqa: BLE001
                logger.exception("scheduler tick failed")

    def _run_round(self, round_id: int) -> RoundReport:
        started_at = utc_now()
        start_t = time.monotonic()
        try:
            snapshot = self.registry.snapshot(round_id)
            results = self.executor.run_round(snapshot)

            if self.state_store is not None:
                # 本轮进行中被移除（或移除后重新注册）的 source 不回写，避免复活已删除的状态
                live = [
                    r for r, s in zip(results, snapshot.sources) if self.registry.get(s.source_id) is s
                ]
                try:
                    self.state_store.save_last_results(live)
                except Exception:  # noqa: BLE001
                    logger.exception("persist last results failed: round_id=%d", round_id)

            dispatch = self.notifier.dispatch(results)
            successes = sum(1 for r in results if r.ok)
            report = RoundReport(
                round_id=round_id,
                started_at=started_at,
                finished_at=utc_now(),
                duration_ms=int((time.monotonic() - start_t) * 1000),
                results=tuple(results),
                successes=successes,
                failures=len(results) - successes,
                dispatch=dispatch,
            )
            self.rounds_completed += 1
            logger.info(
                "round summary: id=%d duration_ms=%d sources=%d ok=%d failed=%d notifications=%d delivery_failures=%d",
                report.round_id,
                report.duration_ms,
                len(report.results),
                report.successes,
                report.failures,
                dispatch.notifications,
                dispatch.delivery_failures,
            )
            return report
        except Exception:  # noqa: BLE001
            logger.exception("round crashed: id=%d", round_id)
            raise
        finally:
            with self._lock:
                self._polling = False
