import threading
import time
from dataclasses import dataclass, field

import pytest

from gst.executor import PollExecutor
from gst.instances import InstanceManager
from gst.models import RoundSnapshot, ServerState, Subscription, TrackedSource
from gst.notify.fanout import FanoutNotifier
from gst.registry import SourceRegistry
from gst.scheduler import IDLE, POLLING, Scheduler
from gst.state.sqlite_store import SqliteStateStore


@dataclass
class GateQuery:
    """
    可控的查询适配器：
    - gate 未打开前所有查询阻塞，用来制造“一轮尚未结束”的场景
    - started 在第一个查询开始时置位（此时本轮快照已经取好）
    """

    gate: threading.Event = field(default_factory=threading.Event)
    started: threading.Event = field(default_factory=threading.Event)
    players: int = 1

    def name(self) -> str:
        return "gate"

    def query(self, source: TrackedSource, timeout_seconds: float) -> ServerState:  # noqa: ARG002
        self.started.set()
        self.gate.wait(10)
        return ServerState(name=source.source_id, status="online", players=self.players, max_players=10)


@dataclass
class CollectingSink:
    sent: list[tuple[str, str]] = field(default_factory=list)

    def channel(self) -> str:
        return "collect"

    def deliver(self, destination_id: str, message: str) -> None:
        self.sent.append((destination_id, message))


class CountingExecutor(PollExecutor):
    def __init__(self, *args, **kwargs) -> None:  # noqa: ANN002, ANN003
        super().__init__(*args, **kwargs)
        self._active = 0
        self.max_active = 0
        self._count_lock = threading.Lock()

    def run_round(self, snapshot: RoundSnapshot):  # noqa: ANN201
        with self._count_lock:
            self._active += 1
            self.max_active = max(self.max_active, self._active)
        try:
            time.sleep(0.02)
            return super().run_round(snapshot)
        finally:
            with self._count_lock:
                self._active -= 1


def _build(query, *ids: str, interval: float = 60.0, sink=None):  # noqa: ANN001, ANN202
    registry = SourceRegistry()
    for source_id in ids:
        registry.add(TrackedSource(source_id=source_id, host="203.0.113.7", port=28015))
    notifier = FanoutNotifier(sink or CollectingSink())
    executor = CountingExecutor(query, timeout_seconds=5.0)
    scheduler = Scheduler(registry, executor, notifier, interval_seconds=interval)
    return registry, notifier, executor, scheduler


def test_overlapping_tick_is_skipped(caplog: pytest.LogCaptureFixture) -> None:
    query = GateQuery()
    _, _, _, scheduler = _build(query, "s1")
    caplog.set_level("WARNING")

    fut = scheduler.trigger()
    assert fut is not None
    assert query.started.wait(5)
    assert scheduler.state == POLLING

    assert scheduler.trigger() is None
    assert scheduler.trigger() is None
    assert scheduler.skipped_ticks == 2
    assert "tick skipped" in caplog.text

    query.gate.set()
    report = fut.result(timeout=5)
    assert report.round_id == 1
    assert scheduler.state == IDLE

    fut2 = scheduler.trigger()
    assert fut2 is not None
    assert fut2.result(timeout=5).round_id == 2


def test_at_most_one_round_in_flight_under_rapid_ticks() -> None:
    query = GateQuery()
    query.gate.set()
    _, _, executor, scheduler = _build(query, "s1", "s2")

    futures = []
    lock = threading.Lock()

    def _hammer() -> None:
        for _ in range(30):
            f = scheduler.trigger()
            if f is not None:
                with lock:
                    futures.append(f)
            time.sleep(0.001)

    threads = [threading.Thread(target=_hammer) for _ in range(4)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()
    for f in futures:
        f.result(timeout=5)

    assert executor.max_active == 1
    assert scheduler.rounds_completed == len(futures)
    assert scheduler.skipped_ticks == 120 - len(futures)


def test_source_removed_mid_round_still_reported_then_gone() -> None:
    query = GateQuery()
    registry, _, _, scheduler = _build(query, "s1", "s2")

    fut = scheduler.trigger()
    assert fut is not None
    assert query.started.wait(5)
    registry.remove("s2")
    query.gate.set()

    first = fut.result(timeout=5)
    assert {r.source_id for r in first.results} == {"s1", "s2"}

    second = scheduler.run_once(timeout=5)
    assert second is not None
    assert {r.source_id for r in second.results} == {"s1"}


def test_source_removed_mid_round_is_not_persisted() -> None:
    query = GateQuery()
    registry, notifier, executor, _ = _build(query, "s1", "s2")
    store = SqliteStateStore(":memory:")
    store.ensure_schema()
    scheduler = Scheduler(registry, executor, notifier, state=store)
    manager = InstanceManager(registry, notifier, state=store)

    fut = scheduler.trigger()
    assert fut is not None
    assert query.started.wait(5)
    assert manager.remove_instance("s1") is True
    query.gate.set()

    report = fut.result(timeout=5)
    assert {r.source_id for r in report.results} == {"s1", "s2"}
    assert store.get_last_result("s1") is None
    assert store.get_last_result("s2") is not None


def test_stop_drains_in_flight_round() -> None:
    query = GateQuery()
    _, _, _, scheduler = _build(query, "s1")

    scheduler.start(run_immediately=True)
    assert query.started.wait(5)
    threading.Timer(0.2, query.gate.set).start()

    assert scheduler.stop(timeout=5) is True
    assert scheduler.rounds_completed == 1
    assert scheduler.trigger() is None


def test_timer_drives_rounds_and_fans_out() -> None:
    query = GateQuery()
    query.gate.set()
    sink = CollectingSink()
    _, notifier, _, scheduler = _build(query, "s1", interval=0.05, sink=sink)
    notifier.add_subscription(Subscription(source_id="s1", destination_id="guild-1", triggers=("always",)))

    scheduler.start(run_immediately=False)
    deadline = time.monotonic() + 5
    while scheduler.rounds_completed < 2 and time.monotonic() < deadline:
        time.sleep(0.01)
    scheduler.stop(timeout=5)

    assert scheduler.rounds_completed >= 2
    assert len(sink.sent) >= 2
    assert all(dest == "guild-1" for dest, _ in sink.sent)


def test_independent_schedulers_do_not_share_state() -> None:
    q1 = GateQuery()
    q1.gate.set()
    q2 = GateQuery()
    _, _, _, s1 = _build(q1, "a")
    _, _, _, s2 = _build(q2, "b")

    f2 = s2.trigger()
    assert f2 is not None
    assert q2.started.wait(5)

    report = s1.run_once(timeout=5)
    assert report is not None and report.round_id == 1
    assert s2.state == POLLING

    q2.gate.set()
    f2.result(timeout=5)
