import os
import subprocess
import sys
import threading
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

import pytest

from gst.errors import QueryTransportError
from gst.executor import PollExecutor
from gst.models import ServerState, TrackedSource
from gst.registry import SourceRegistry


@dataclass
class FakeQuery:
    """
    纯内存查询适配器：按 source_id 调用预设行为。
    """

    behaviors: dict[str, Callable[[TrackedSource], ServerState]]
    calls: list[str] = field(default_factory=list)

    def name(self) -> str:
        return "fake"

    def query(self, source: TrackedSource, timeout_seconds: float) -> ServerState:  # noqa: ARG002
        self.calls.append(source.source_id)
        return self.behaviors[source.source_id](source)


def _state(players: int) -> ServerState:
    return ServerState(name="Rust EU", status="online", players=players, max_players=100)


def _registry(*ids: str) -> SourceRegistry:
    registry = SourceRegistry()
    for source_id in ids:
        registry.add(TrackedSource(source_id=source_id, host="203.0.113.7", port=28015))
    return registry


def test_one_result_per_source_even_with_failures() -> None:
    def _boom(_s: TrackedSource) -> ServerState:
        raise QueryTransportError("connection refused")

    def _crash(_s: TrackedSource) -> ServerState:
        raise ValueError("bad payload")

    query = FakeQuery(behaviors={"a": lambda s: _state(1), "b": _boom, "c": _crash})
    executor = PollExecutor(query, timeout_seconds=2.0, max_workers=2)

    results = executor.run_round(_registry("a", "b", "c").snapshot())

    assert [r.source_id for r in results] == ["a", "b", "c"]
    assert results[0].ok and results[0].state.players == 1
    assert results[1].error is not None and results[1].error.kind == "transport"
    assert results[2].error is not None and results[2].error.kind == "error"
    assert "ValueError" in results[2].error.message


def test_hanging_source_times_out_without_blocking_round() -> None:
    """
    S1 正常、S2 卡死：两个结果都返回，整轮耗时约等于一次超时而不是两倍。
    """
    release = threading.Event()

    def _hang(_s: TrackedSource) -> ServerState:
        release.wait(10)
        return _state(0)

    def _slow_ok(_s: TrackedSource) -> ServerState:
        time.sleep(0.2)
        return _state(3)

    query = FakeQuery(behaviors={"S1": _slow_ok, "S2": _hang})
    executor = PollExecutor(query, timeout_seconds=0.5, max_workers=4)
    try:
        t0 = time.monotonic()
        results = executor.run_round(_registry("S1", "S2").snapshot())
        elapsed = time.monotonic() - t0
    finally:
        release.set()

    by_id = {r.source_id: r for r in results}
    assert by_id["S1"].ok
    assert by_id["S2"].error is not None and by_id["S2"].error.kind == "timeout"
    assert elapsed < 0.9


def test_queries_run_concurrently() -> None:
    def _sleep(_s: TrackedSource) -> ServerState:
        time.sleep(0.3)
        return _state(1)

    query = FakeQuery(behaviors={k: _sleep for k in ("a", "b", "c", "d")})
    executor = PollExecutor(query, timeout_seconds=2.0, max_workers=4)

    t0 = time.monotonic()
    results = executor.run_round(_registry("a", "b", "c", "d").snapshot())
    elapsed = time.monotonic() - t0

    assert len(results) == 4
    assert all(r.ok for r in results)
    assert elapsed < 0.9


def test_last_result_written_and_previous_linked() -> None:
    players = iter([5, 7])
    query = FakeQuery(behaviors={"s1": lambda s: _state(next(players))})
    executor = PollExecutor(query, timeout_seconds=2.0)
    registry = _registry("s1")
    source = registry.get("s1")
    assert source is not None and source.last_result is None

    first = executor.run_round(registry.snapshot())[0]
    assert first.previous is None
    assert source.last_result is first

    second = executor.run_round(registry.snapshot())[0]
    assert second.previous is not None
    assert second.previous.state.players == 5
    assert second.previous.previous is None
    assert source.last_result is second


def test_empty_snapshot_returns_no_results() -> None:
    executor = PollExecutor(FakeQuery(behaviors={}), timeout_seconds=1.0)
    assert executor.run_round(SourceRegistry().snapshot()) == []


def test_failure_is_logged_with_source_id(caplog: pytest.LogCaptureFixture) -> None:
    def _boom(_s: TrackedSource) -> ServerState:
        raise QueryTransportError("refused")

    executor = PollExecutor(FakeQuery(behaviors={"bad": _boom}), timeout_seconds=1.0)
    caplog.set_level("ERROR")
    executor.run_round(_registry("bad").snapshot())
    assert "source query failed: source_id=bad" in caplog.text


_HANG_SCRIPT = """
import threading

from gst.executor import PollExecutor
from gst.models import TrackedSource
from gst.registry import SourceRegistry


class Hang:
    def name(self):
        return "hang"

    def query(self, source, timeout_seconds):
        threading.Event().wait()


registry = SourceRegistry()
registry.add(TrackedSource(source_id="S1", host="203.0.113.7", port=28015))
results = PollExecutor(Hang(), timeout_seconds=0.2).run_round(registry.snapshot())
print("round done", results[0].error.kind)
"""


def test_process_exits_after_round_with_hung_source() -> None:
    """
    卡死的查询线程被放弃后，解释器仍能正常退出。
    """
    src = Path(__file__).resolve().parents[1] / "src"
    env = dict(os.environ)
    env["PYTHONPATH"] = os.pathsep.join(p for p in (str(src), env.get("PYTHONPATH", "")) if p)

    proc = subprocess.run(
        [sys.executable, "-c", _HANG_SCRIPT],
        env=env,
        capture_output=True,
        text=True,
        timeout=10,
    )

    assert proc.returncode == 0, proc.stderr
    assert "round done timeout" in proc.stdout
