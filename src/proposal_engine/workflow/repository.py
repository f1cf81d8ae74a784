"""Checkpoint store backed by SQLModel + SQLite."""

from __future__ import annotations

import json
import logging
from collections.abc import Callable
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar
from uuid import uuid4

from sqlalchemy import func
from sqlalchemy.exc import OperationalError
from sqlmodel import Session, col, delete, select

from proposal_engine.storage.alembic_runner import upgrade_head
from proposal_engine.storage.common import (
    build_sqlite_engine,
    to_db_datetime,
    to_utc_aware_datetime,
    utc_now,
)
from proposal_engine.storage.sqlmodel_models import WorkflowCheckpoint, WorkflowThread
from proposal_engine.workflow.models import Checkpoint, CheckpointError, ThreadView
from proposal_engine.workflow.retry import RetryExhaustedError, RetryPolicy, run_with_retry
from proposal_engine.workflow.thread_ids import parse_thread_id, validate_thread_id

logger = logging.getLogger(__name__)

T = TypeVar("T")

DEFAULT_BUSY_TIMEOUT_MS = 5_000


def default_store_retry_policy() -> RetryPolicy:
    return RetryPolicy(max_attempts=3, base_delay_ms=100, max_delay_ms=2_000)


class CheckpointRepository:
    """Durable, append-only checkpoint history per thread id.

    Every `put` inserts the checkpoint row and upserts the thread registry row in
    one SQLite transaction, so `get_latest` after a successful `put` observes it
    and a crash never exposes a half-written checkpoint.
    """

    def __init__(
        self,
        db_path: Path,
        *,
        busy_timeout_ms: int = DEFAULT_BUSY_TIMEOUT_MS,
        retry_policy: RetryPolicy | None = None,
    ) -> None:
        self.db_path = db_path
        self.retry_policy = retry_policy or default_store_retry_policy()
        self.engine = build_sqlite_engine(db_path=db_path, busy_timeout_ms=busy_timeout_ms)

    def close(self) -> None:
        """Close underlying DB resources."""

        self.engine.dispose()

    def init_schema(self) -> None:
        """Run schema migrations."""

        upgrade_head(self.db_path)

    def put(self, thread_id: str, checkpoint: Checkpoint) -> str:
        """Persist one checkpoint and return its id."""

        parts = parse_thread_id(thread_id)
        checkpoint_id = checkpoint.checkpoint_id or uuid4().hex
        created_at = to_db_datetime(checkpoint.created_at or utc_now())
        try:
            payload = {
                "values_json": _dump(checkpoint.values),
                "metadata_json": _dump(checkpoint.metadata),
                "next_json": _dump(list(checkpoint.next)),
                "tasks_json": _dump(list(checkpoint.tasks)),
                "config_json": _dump(checkpoint.config),
            }
        except (TypeError, ValueError) as error:
            raise CheckpointError(
                f"Checkpoint for thread {thread_id} is not JSON serializable: {error}",
            ) from error

        def _write() -> None:
            with Session(self.engine) as session:
                thread = session.get(WorkflowThread, thread_id)
                if thread is None:
                    session.add(
                        WorkflowThread(
                            thread_id=thread_id,
                            component=parts.component,
                            logical_id=parts.logical_id,
                            suffix=parts.suffix,
                            latest_checkpoint_id=checkpoint_id,
                            checkpoint_count=1,
                            created_at=created_at,
                            last_activity_at=created_at,
                        ),
                    )
                    session.flush()
                else:
                    thread.latest_checkpoint_id = checkpoint_id
                    thread.checkpoint_count += 1
                    thread.last_activity_at = created_at
                    session.add(thread)
                session.add(
                    WorkflowCheckpoint(
                        checkpoint_id=checkpoint_id,
                        thread_id=thread_id,
                        parent_checkpoint_id=checkpoint.parent_checkpoint_id,
                        created_at=created_at,
                        **payload,
                    ),
                )
                session.commit()

        self._with_retry("put", thread_id, _write)
        logger.debug(
            "Checkpoint stored: thread=%s checkpoint=%s parent=%s next=%s",
            thread_id,
            checkpoint_id,
            checkpoint.parent_checkpoint_id,
            checkpoint.next,
        )
        return checkpoint_id

    def get(self, thread_id: str, checkpoint_id: str) -> Checkpoint | None:
        validate_thread_id(thread_id)

        def _read() -> Checkpoint | None:
            with Session(self.engine) as session:
                row = session.exec(
                    select(WorkflowCheckpoint).where(
                        col(WorkflowCheckpoint.thread_id) == thread_id,
                        col(WorkflowCheckpoint.checkpoint_id) == checkpoint_id,
                    ),
                ).one_or_none()
                return _to_checkpoint(row) if row is not None else None

        return self._with_retry("get", thread_id, _read)

    def get_latest(self, thread_id: str) -> Checkpoint | None:
        validate_thread_id(thread_id)

        def _read() -> Checkpoint | None:
            with Session(self.engine) as session:
                row = session.exec(
                    select(WorkflowCheckpoint)
                    .where(col(WorkflowCheckpoint.thread_id) == thread_id)
                    .order_by(col(WorkflowCheckpoint.id).desc())
                    .limit(1),
                ).one_or_none()
                return _to_checkpoint(row) if row is not None else None

        return self._with_retry("get_latest", thread_id, _read)

    def list(
        self,
        thread_id: str,
        *,
        limit: int | None = None,
        ascending: bool = False,
    ) -> list[Checkpoint]:
        """List checkpoints in write order (newest first unless `ascending`)."""

        validate_thread_id(thread_id)
        order = col(WorkflowCheckpoint.id).asc() if ascending else col(WorkflowCheckpoint.id).desc()

        def _read() -> list[Checkpoint]:
            with Session(self.engine) as session:
                statement = (
                    select(WorkflowCheckpoint)
                    .where(col(WorkflowCheckpoint.thread_id) == thread_id)
                    .order_by(order)
                )
                if limit is not None:
                    statement = statement.limit(max(limit, 0))
                return [_to_checkpoint(row) for row in session.exec(statement).all()]

        return self._with_retry("list", thread_id, _read)

    def delete_thread(self, thread_id: str) -> int:
        """Delete a thread with all its checkpoints; returns deleted checkpoint count."""

        validate_thread_id(thread_id)

        def _delete() -> int:
            with Session(self.engine) as session:
                result = session.exec(
                    delete(WorkflowCheckpoint).where(
                        col(WorkflowCheckpoint.thread_id) == thread_id,
                    ),
                )
                session.exec(
                    delete(WorkflowThread).where(col(WorkflowThread.thread_id) == thread_id),
                )
                session.commit()
                return int(result.rowcount or 0)

        deleted = self._with_retry("delete_thread", thread_id, _delete)
        logger.info("Deleted thread %s (%d checkpoints)", thread_id, deleted)
        return deleted

    def prune_thread(self, thread_id: str, *, keep_last: int) -> int:
        """Delete all but the newest `keep_last` checkpoints of a thread."""

        validate_thread_id(thread_id)
        if keep_last < 1:
            raise ValueError("keep_last must be >= 1")

        def _prune() -> int:
            with Session(self.engine) as session:
                stale_ids = session.exec(
                    select(WorkflowCheckpoint.id)
                    .where(col(WorkflowCheckpoint.thread_id) == thread_id)
                    .order_by(col(WorkflowCheckpoint.id).desc())
                    .offset(keep_last),
                ).all()
                if not stale_ids:
                    return 0
                session.exec(
                    delete(WorkflowCheckpoint).where(col(WorkflowCheckpoint.id).in_(stale_ids)),
                )
                thread = session.get(WorkflowThread, thread_id)
                if thread is not None:
                    thread.checkpoint_count = max(thread.checkpoint_count - len(stale_ids), 0)
                    session.add(thread)
                session.commit()
                return len(stale_ids)

        pruned = self._with_retry("prune_thread", thread_id, _prune)
        if pruned:
            logger.info("Pruned %d checkpoints from thread %s", pruned, thread_id)
        return pruned

    def get_thread(self, thread_id: str) -> ThreadView | None:
        validate_thread_id(thread_id)

        def _read() -> ThreadView | None:
            with Session(self.engine) as session:
                row = session.get(WorkflowThread, thread_id)
                return _to_thread_view(row) if row is not None else None

        return self._with_retry("get_thread", thread_id, _read)

    def list_threads(
        self,
        *,
        component: str | None = None,
        logical_id: str | None = None,
        idle_before: datetime | None = None,
        limit: int = 50,
    ) -> list[ThreadView]:
        """List known threads, most recently active first.

        With `idle_before`, only threads whose last activity is older than that
        instant are returned.
        """

        def _read() -> list[ThreadView]:
            with Session(self.engine) as session:
                statement = select(WorkflowThread)
                if component is not None:
                    statement = statement.where(col(WorkflowThread.component) == component)
                if logical_id is not None:
                    statement = statement.where(col(WorkflowThread.logical_id) == logical_id)
                if idle_before is not None:
                    statement = statement.where(
                        col(WorkflowThread.last_activity_at) < to_db_datetime(idle_before),
                    )
                statement = statement.order_by(
                    col(WorkflowThread.last_activity_at).desc(),
                    col(WorkflowThread.thread_id).asc(),
                ).limit(max(limit, 0))
                return [_to_thread_view(row) for row in session.exec(statement).all()]

        return self._with_retry("list_threads", None, _read)

    def expire_idle_threads(
        self,
        *,
        idle_before: datetime,
        component: str | None = None,
    ) -> list[str]:
        """Delete threads with no checkpoint written since `idle_before`."""

        cutoff = to_db_datetime(idle_before)

        def _expire() -> list[str]:
            with Session(self.engine) as session:
                statement = select(WorkflowThread.thread_id).where(
                    col(WorkflowThread.last_activity_at) < cutoff,
                )
                if component is not None:
                    statement = statement.where(col(WorkflowThread.component) == component)
                expired = sorted(session.exec(statement).all())
                if not expired:
                    return []
                session.exec(
                    delete(WorkflowCheckpoint).where(
                        col(WorkflowCheckpoint.thread_id).in_(expired),
                    ),
                )
                session.exec(
                    delete(WorkflowThread).where(col(WorkflowThread.thread_id).in_(expired)),
                )
                session.commit()
                return expired

        expired = self._with_retry("expire_idle_threads", None, _expire)
        if expired:
            logger.info(
                "Expired %d idle threads (inactive before %s)",
                len(expired),
                idle_before.isoformat(),
            )
        return expired

    def count_checkpoints(self) -> int:
        def _read() -> int:
            with Session(self.engine) as session:
                return int(
                    session.exec(select(func.count()).select_from(WorkflowCheckpoint)).one(),
                )

        return self._with_retry("count_checkpoints", None, _read)

    def _with_retry(self, operation: str, thread_id: str | None, func_: Callable[[], T]) -> T:
        try:
            return run_with_retry(
                func_,
                policy=self.retry_policy,
                step=f"checkpoint.{operation}",
                retry_on=(OperationalError,),
            )
        except RetryExhaustedError as error:
            logger.error(
                "Checkpoint %s failed for thread %s after %d retries: %s",
                operation,
                thread_id,
                error.event.retry_count,
                error.error,
            )
            raise CheckpointError(
                f"Checkpoint {operation} failed for thread {thread_id}: {error.error}",
            ) from error.error


def _dump(value: Any) -> str:
    return json.dumps(value, ensure_ascii=False, sort_keys=True, allow_nan=False)


def _to_checkpoint(row: WorkflowCheckpoint) -> Checkpoint:
    return Checkpoint(
        thread_id=row.thread_id,
        checkpoint_id=row.checkpoint_id,
        values=json.loads(row.values_json),
        parent_checkpoint_id=row.parent_checkpoint_id,
        metadata=json.loads(row.metadata_json),
        next=list(json.loads(row.next_json)),
        tasks=list(json.loads(row.tasks_json)),
        config=json.loads(row.config_json),
        created_at=to_utc_aware_datetime(row.created_at),
    )


def _to_thread_view(row: WorkflowThread) -> ThreadView:
    return ThreadView(
        thread_id=row.thread_id,
        component=row.component,
        logical_id=row.logical_id,
        suffix=row.suffix,
        latest_checkpoint_id=row.latest_checkpoint_id,
        checkpoint_count=row.checkpoint_count,
        created_at=to_utc_aware_datetime(row.created_at),
        last_activity_at=to_utc_aware_datetime(row.last_activity_at),
    )
