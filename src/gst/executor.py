from __future__ import annotations

import logging
import math
import threading
import time
from concurrent.futures import FIRST_COMPLETED, Future, wait
from dataclasses import replace

from .errors import QueryTimeoutError
from .models import PollFailure, PollResult, RoundSnapshot, TrackedSource, utc_now
from .sources.base import ServerQuery


logger = logging.getLogger(__name__)

_WAIT_SLICE_SECONDS = 0.05


class PollExecutor:
    """
    执行一轮查询：快照中的每个 source 恰好产生一个 PollResult。

    - 不同 source 在 daemon 线程中并发查询（信号量限制并发数），单轮耗时约等于最慢的一次查询
    - 每个查询从真正开始执行起计时，超过 timeout_seconds 即记为 QueryTimeoutError，
      卡住的线程被放弃（其结果丢弃），不会拖住整轮
    - 任何异常只影响对应 source 的结果
    - 整轮结束后回写 TrackedSource.last_result（唯一写者）
    """

    def __init__(
        self,
        query: ServerQuery,
        *,
        timeout_seconds: float = 10.0,
        max_workers: int = 8,
    ) -> None:
        self.query = query
        self.timeout_seconds = max(0.001, float(timeout_seconds))
        self.max_workers = max(1, int(max_workers))

    def run_round(self, snapshot: RoundSnapshot) -> list[PollResult]:
        if not snapshot.sources:
            return []

        started_at: dict[str, float] = {}
        started_lock = threading.Lock()

        # 每轮独立的信号量：上一轮被放弃的卡死线程不会占用本轮的并发名额。
        workers = min(self.max_workers, len(snapshot.sources))
        slots = threading.Semaphore(workers)

        def _task(source: TrackedSource, fut: Future) -> None:
            while not slots.acquire(timeout=_WAIT_SLICE_SECONDS):
                if fut.cancelled():
                    return
            try:
                if not fut.set_running_or_notify_cancel():
                    return
                with started_lock:
                    started_at[source.source_id] = time.monotonic()
                try:
                    fut.set_result(self.query.query(source, self.timeout_seconds))
                except Exception as e:  # noqa: BLE001
                    fut.set_exception(e)
            finally:
                slots.release()

        # 查询线程都是 daemon：卡死的查询被放弃后不会阻止进程退出。
        futures: dict[Future, TrackedSource] = {}
        for i, source in enumerate(snapshot.sources):
            fut: Future = Future()
            futures[fut] = source
            threading.Thread(
                target=_task,
                args=(source, fut),
                name=f"gst-poll-{snapshot.round_id}-{i}",
                daemon=True,
            ).start()

        # 还未开始的查询（排队中）也需要一个兜底截止时间，防止 worker 全部卡死时永远等待。
        waves = math.ceil(len(snapshot.sources) / workers)
        round_deadline = time.monotonic() + self.timeout_seconds * waves + 1.0

        results: dict[str, PollResult] = {}
        pending = set(futures)
        while pending:
            done, pending = wait(pending, timeout=_WAIT_SLICE_SECONDS, return_when=FIRST_COMPLETED)
            for fut in done:
                source = futures[fut]
                results[source.source_id] = self._collect(source, fut, started_at)

            now = time.monotonic()
            expired: list[Future] = []
            for fut in pending:
                if fut.done():
                    continue
                source = futures[fut]
                with started_lock:
                    begun = started_at.get(source.source_id)
                if begun is not None and now - begun >= self.timeout_seconds:
                    expired.append(fut)
                elif begun is None and now >= round_deadline:
                    expired.append(fut)

            for fut in expired:
                fut.cancel()
                pending.discard(fut)
                source = futures[fut]
                logger.warning(
                    "source query timed out: source_id=%s timeout_seconds=%.1f round_id=%d",
                    source.source_id,
                    self.timeout_seconds,
                    snapshot.round_id,
                )
                results[source.source_id] = self._failure(
                    source,
                    QueryTimeoutError(f"query exceeded {self.timeout_seconds}s"),
                    duration_ms=int(self.timeout_seconds * 1000),
                )

        ordered = [results[s.source_id] for s in snapshot.sources]
        for source, result in zip(snapshot.sources, ordered):
            source.last_result = result
        return ordered

    def _collect(self, source: TrackedSource, fut: Future, started_at: dict[str, float]) -> PollResult:
        begun = started_at.get(source.source_id, time.monotonic())
        duration_ms = int((time.monotonic() - begun) * 1000)
        try:
            state = fut.result()
        except Exception as e:  # noqa: BLE001
            logger.error(
                "source query failed: source_id=%s key=%s error=%s: %s",
                source.source_id,
                source.key(),
                type(e).__name__,
                e,
            )
            return self._failure(source, e, duration_ms=duration_ms)
        return PollResult(
            source_id=source.source_id,
            observed_at=utc_now(),
            state=state,
            previous=_detach(source.last_result),
            duration_ms=duration_ms,
        )

    def _failure(self, source: TrackedSource, exc: BaseException, *, duration_ms: int) -> PollResult:
        return PollResult(
            source_id=source.source_id,
            observed_at=utc_now(),
            error=PollFailure.from_exception(exc),
            previous=_detach(source.last_result),
            duration_ms=duration_ms,
        )


def _detach(result: PollResult | None) -> PollResult | None:
    if result is None or result.previous is None:
        return result
    return replace(result, previous=None)
