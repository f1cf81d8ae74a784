from __future__ import annotations

from datetime import UTC, datetime, timedelta
from pathlib import Path

import allure
import pytest
from sqlalchemy.exc import OperationalError

from proposal_engine.workflow.models import Checkpoint, CheckpointError, ThreadIdError
from proposal_engine.workflow.repository import CheckpointRepository
from proposal_engine.workflow.retry import RetryPolicy

pytestmark = [
    allure.epic("Workflow Runtime"),
    allure.feature("Checkpoint Store"),
]

BASE_TIME = datetime(2026, 10, 19, 8, 0, tzinfo=UTC)


def _checkpoint(
    thread_id: str,
    checkpoint_id: str,
    *,
    parent: str | None = None,
    minutes: int = 0,
    values: dict | None = None,
) -> Checkpoint:
    return Checkpoint(
        thread_id=thread_id,
        checkpoint_id=checkpoint_id,
        values=values if values is not None else {"step": checkpoint_id, "items": [1, 2]},
        parent_checkpoint_id=parent,
        metadata={"source": "loop", "step": checkpoint_id},
        next=["research"],
        tasks=[{"type": "interrupt", "step": checkpoint_id}],
        config={"engine_version": 1},
        created_at=BASE_TIME + timedelta(minutes=minutes),
    )


def test_put_then_get_latest_returns_identical_values(
    checkpoint_repository: CheckpointRepository,
) -> None:
    values = {"thread_id": "proposal_42", "sections": {"budget": {"version": 3}}, "ok": True}
    stored_id = checkpoint_repository.put(
        "proposal_42",
        _checkpoint("proposal_42", "c1", values=values),
    )

    latest = checkpoint_repository.get_latest("proposal_42")

    assert stored_id == "c1"
    assert latest is not None
    assert latest.checkpoint_id == "c1"
    assert latest.values == values
    assert latest.next == ["research"]
    assert latest.tasks == [{"type": "interrupt", "step": "c1"}]
    assert latest.config == {"engine_version": 1}
    assert latest.created_at == BASE_TIME


def test_get_latest_follows_write_order(checkpoint_repository: CheckpointRepository) -> None:
    checkpoint_repository.put("proposal_42", _checkpoint("proposal_42", "c1"))
    checkpoint_repository.put("proposal_42", _checkpoint("proposal_42", "c2", parent="c1"))
    checkpoint_repository.put("proposal_7", _checkpoint("proposal_7", "other"))

    latest = checkpoint_repository.get_latest("proposal_42")
    assert latest is not None
    assert latest.checkpoint_id == "c2"
    assert latest.parent_checkpoint_id == "c1"

    fetched = checkpoint_repository.get("proposal_42", "c1")
    assert fetched is not None
    assert fetched.checkpoint_id == "c1"
    assert checkpoint_repository.get("proposal_42", "other") is None


def test_list_supports_limit_and_ordering(checkpoint_repository: CheckpointRepository) -> None:
    for index in range(4):
        checkpoint_repository.put(
            "proposal_42",
            _checkpoint("proposal_42", f"c{index}", minutes=index),
        )

    newest_first = checkpoint_repository.list("proposal_42")
    assert [item.checkpoint_id for item in newest_first] == ["c3", "c2", "c1", "c0"]

    oldest_two = checkpoint_repository.list("proposal_42", limit=2, ascending=True)
    assert [item.checkpoint_id for item in oldest_two] == ["c0", "c1"]


def test_missing_thread_reads_as_not_found(checkpoint_repository: CheckpointRepository) -> None:
    assert checkpoint_repository.get_latest("proposal_missing") is None
    assert checkpoint_repository.list("proposal_missing") == []
    assert checkpoint_repository.get_thread("proposal_missing") is None


def test_delete_thread_removes_checkpoints_and_registry(
    checkpoint_repository: CheckpointRepository,
) -> None:
    checkpoint_repository.put("proposal_42", _checkpoint("proposal_42", "c1"))
    checkpoint_repository.put("proposal_42", _checkpoint("proposal_42", "c2"))
    checkpoint_repository.put("proposal_7", _checkpoint("proposal_7", "keep"))

    assert checkpoint_repository.delete_thread("proposal_42") == 2
    assert checkpoint_repository.get_latest("proposal_42") is None
    assert checkpoint_repository.get_thread("proposal_42") is None
    assert checkpoint_repository.count_checkpoints() == 1


def test_thread_registry_tracks_activity(checkpoint_repository: CheckpointRepository) -> None:
    checkpoint_repository.put("proposal_42", _checkpoint("proposal_42", "c1", minutes=0))
    checkpoint_repository.put("proposal_42", _checkpoint("proposal_42", "c2", minutes=5))
    checkpoint_repository.put("review_9_v2", _checkpoint("review_9_v2", "r1", minutes=1))

    thread = checkpoint_repository.get_thread("proposal_42")
    assert thread is not None
    assert thread.component == "proposal"
    assert thread.logical_id == "42"
    assert thread.checkpoint_count == 2
    assert thread.latest_checkpoint_id == "c2"
    assert thread.last_activity_at == BASE_TIME + timedelta(minutes=5)

    all_threads = checkpoint_repository.list_threads()
    assert [item.thread_id for item in all_threads] == ["proposal_42", "review_9_v2"]

    reviews = checkpoint_repository.list_threads(component="review")
    assert [item.thread_id for item in reviews] == ["review_9_v2"]
    assert reviews[0].suffix == "v2"


def test_idle_threads_are_listed_and_expired(
    checkpoint_repository: CheckpointRepository,
) -> None:
    checkpoint_repository.put("proposal_1", _checkpoint("proposal_1", "old1", minutes=0))
    checkpoint_repository.put("proposal_1", _checkpoint("proposal_1", "old2", minutes=10))
    checkpoint_repository.put("review_2", _checkpoint("review_2", "old3", minutes=20))
    checkpoint_repository.put("proposal_3", _checkpoint("proposal_3", "fresh", minutes=90))
    cutoff = BASE_TIME + timedelta(minutes=60)

    idle = checkpoint_repository.list_threads(idle_before=cutoff)
    assert [item.thread_id for item in idle] == ["review_2", "proposal_1"]

    expired = checkpoint_repository.expire_idle_threads(idle_before=cutoff, component="proposal")
    assert expired == ["proposal_1"]
    assert checkpoint_repository.get_thread("proposal_1") is None
    assert checkpoint_repository.list("proposal_1") == []

    assert checkpoint_repository.expire_idle_threads(idle_before=cutoff) == ["review_2"]
    assert checkpoint_repository.expire_idle_threads(idle_before=cutoff) == []
    remaining = checkpoint_repository.list_threads()
    assert [item.thread_id for item in remaining] == ["proposal_3"]
    assert checkpoint_repository.count_checkpoints() == 1


def test_prune_thread_keeps_newest_checkpoints(
    checkpoint_repository: CheckpointRepository,
) -> None:
    for index in range(5):
        checkpoint_repository.put("proposal_42", _checkpoint("proposal_42", f"c{index}"))

    assert checkpoint_repository.prune_thread("proposal_42", keep_last=2) == 3
    remaining = checkpoint_repository.list("proposal_42", ascending=True)
    assert [item.checkpoint_id for item in remaining] == ["c3", "c4"]
    thread = checkpoint_repository.get_thread("proposal_42")
    assert thread is not None
    assert thread.checkpoint_count == 2
    assert checkpoint_repository.prune_thread("proposal_42", keep_last=2) == 0

    with pytest.raises(ValueError, match="keep_last"):
        checkpoint_repository.prune_thread("proposal_42", keep_last=0)


def test_malformed_thread_id_is_rejected_before_io(
    checkpoint_repository: CheckpointRepository,
    monkeypatch: pytest.MonkeyPatch,
) -> None:
    def _no_session(*args, **kwargs):
        raise AssertionError("storage must not be touched")

    monkeypatch.setattr("proposal_engine.workflow.repository.Session", _no_session)

    with pytest.raises(ThreadIdError):
        checkpoint_repository.put("Proposal 42", _checkpoint("Proposal 42", "c1"))
    with pytest.raises(ThreadIdError):
        checkpoint_repository.get_latest("proposal")
    with pytest.raises(ThreadIdError):
        checkpoint_repository.delete_thread("")


def test_non_serializable_values_raise_checkpoint_error(
    checkpoint_repository: CheckpointRepository,
) -> None:
    with pytest.raises(CheckpointError, match="JSON serializable"):
        checkpoint_repository.put(
            "proposal_42",
            _checkpoint("proposal_42", "c1", values={"when": datetime.now(tz=UTC)}),
        )
    assert checkpoint_repository.get_latest("proposal_42") is None


def test_transient_storage_errors_are_retried(tmp_path: Path) -> None:
    delays: list[float] = []
    repository = CheckpointRepository(
        tmp_path / "retry.db",
        retry_policy=RetryPolicy(
            max_attempts=3,
            base_delay_ms=10,
            max_delay_ms=50,
            sleep=delays.append,
        ),
    )
    attempts: list[int] = []

    def _flaky() -> int:
        attempts.append(1)
        if len(attempts) < 3:
            raise OperationalError("INSERT", {}, Exception("database is locked"))
        return 7

    try:
        assert repository._with_retry("put", "proposal_42", _flaky) == 7
    finally:
        repository.close()
    assert len(attempts) == 3
    assert len(delays) == 2


def test_exhausted_storage_retries_raise_checkpoint_error(tmp_path: Path) -> None:
    repository = CheckpointRepository(
        tmp_path / "retry.db",
        retry_policy=RetryPolicy(
            max_attempts=2,
            base_delay_ms=1,
            max_delay_ms=2,
            sleep=lambda _: None,
        ),
    )
    attempts: list[int] = []

    def _locked() -> None:
        attempts.append(1)
        raise OperationalError("INSERT", {}, Exception("database is locked"))

    try:
        with pytest.raises(CheckpointError, match="Checkpoint put failed"):
            repository._with_retry("put", "proposal_42", _locked)
    finally:
        repository.close()
    assert len(attempts) == 3
