from datetime import UTC, datetime

import pytest

from gst.models import InstanceSpec, PollFailure, PollResult, ServerState, Subscription
from gst.errors import QueryTimeoutError


T = datetime(2026, 10, 1, 12, 0, tzinfo=UTC)


def test_poll_result_requires_exactly_one_outcome() -> None:
    with pytest.raises(ValueError):
        PollResult(source_id="s1", observed_at=T)
    with pytest.raises(ValueError):
        PollResult(
            source_id="s1",
            observed_at=T,
            state=ServerState(name="n", status="online", players=1, max_players=2),
            error=PollFailure(kind="error", message="x"),
        )


def test_failure_kind_follows_exception_type() -> None:
    assert PollFailure.from_exception(QueryTimeoutError("slow")).kind == "timeout"
    assert PollFailure.from_exception(RuntimeError("boom")).kind == "error"


def test_json_dict_drops_previous() -> None:
    previous = PollResult(source_id="s1", observed_at=T, error=PollFailure(kind="transport", message="x"))
    result = PollResult(
        source_id="s1",
        observed_at=T,
        state=ServerState(name="n", status="online", players=1, max_players=2, player_names=("bob",)),
        previous=previous,
    )
    data = result.to_json_dict()
    assert "previous" not in data
    restored = PollResult.from_json_dict(data)
    assert restored.state == result.state
    assert restored.previous is None


def test_subscription_id_and_instance_source() -> None:
    sub = Subscription(source_id="s1", destination_id="guild-1", triggers=("status",))
    assert sub.subscription_id == "s1->guild-1"

    spec = InstanceSpec(source_id="s1", host="203.0.113.7", port=28015, credentials={"token": "t"})
    source = spec.to_source()
    assert source.key() == "s1@203.0.113.7:28015"
    assert source.credentials == {"token": "t"}
    assert source.last_result is None
