"""Controllers for workflow CLI commands."""

from __future__ import annotations

import logging
from collections.abc import Iterator
from contextlib import contextmanager
from dataclasses import dataclass
from datetime import timedelta
from pathlib import Path

from proposal_engine.config import Settings
from proposal_engine.storage.common import utc_now
from proposal_engine.workflow.backend import build_echo_collaborators
from proposal_engine.workflow.context_window import ContextWindowEvent
from proposal_engine.workflow.engine import RunResult, WorkflowEngine
from proposal_engine.workflow.models import (
    STAGE_ARTIFACTS,
    HumanFeedback,
    ProcessingStatus,
    WorkflowState,
    WorkflowStatus,
    normalize_feedback_action,
)
from proposal_engine.workflow.proposal_flow import build_proposal_engine
from proposal_engine.workflow.repository import CheckpointRepository
from proposal_engine.workflow.retry import RetryPolicy
from proposal_engine.workflow.state import get_artifact_content, get_artifact_status
from proposal_engine.workflow.thread_ids import build_thread_id

logger = logging.getLogger(__name__)

_CONTENT_PREVIEW_CHARS = 80


@dataclass(slots=True)
class WorkflowStartCommand:
    """CLI input for starting a new proposal thread."""

    db_path: Path | None
    proposal_id: str
    component: str | None
    suffix: str | None
    document_file: Path | None
    sections: tuple[str, ...]


@dataclass(slots=True)
class WorkflowResumeCommand:
    """CLI input for resuming an interrupted thread with review feedback."""

    db_path: Path | None
    thread_id: str
    action: str
    comments: str | None
    target: str | None


@dataclass(slots=True)
class WorkflowContinueCommand:
    db_path: Path | None
    thread_id: str


@dataclass(slots=True)
class WorkflowEditCommand:
    """CLI input for a direct artifact edit."""

    db_path: Path | None
    thread_id: str
    artifact: str
    content_file: Path


@dataclass(slots=True)
class WorkflowResolveStaleCommand:
    db_path: Path | None
    thread_id: str
    artifact: str
    regenerate: bool


@dataclass(slots=True)
class ThreadsListCommand:
    db_path: Path | None
    component: str | None
    limit: int


@dataclass(slots=True)
class ThreadInspectCommand:
    db_path: Path | None
    thread_id: str


@dataclass(slots=True)
class ThreadHistoryCommand:
    db_path: Path | None
    thread_id: str
    limit: int | None
    ascending: bool


@dataclass(slots=True)
class ThreadPruneCommand:
    db_path: Path | None
    thread_id: str
    keep_last: int


@dataclass(slots=True)
class ThreadsExpireCommand:
    db_path: Path | None
    idle_hours: float | None
    component: str | None


class WorkflowCliController:
    """Runs proposal threads and inspects their checkpoint history."""

    def start(self, command: WorkflowStartCommand) -> list[str]:
        settings = _settings(command.db_path)
        thread_id = build_thread_id(
            command.proposal_id,
            component=command.component or settings.checkpoint.default_component,
            suffix=command.suffix,
        )
        with _repository(settings) as repository:
            result = _engine(settings, repository).start(
                thread_id,
                document_id=command.proposal_id,
                document_source=str(command.document_file) if command.document_file else None,
                required_sections=command.sections or None,
            )
        return _run_lines("Thread started", result)

    def resume(self, command: WorkflowResumeCommand) -> list[str]:
        settings = _settings(command.db_path)
        feedback = HumanFeedback(
            action=normalize_feedback_action(command.action),
            target_artifact=command.target,
            comments=command.comments,
        )
        with _repository(settings) as repository:
            result = _engine(settings, repository).resume(command.thread_id, feedback)
        return _run_lines("Thread resumed", result)

    def continue_thread(self, command: WorkflowContinueCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            result = _engine(settings, repository).continue_thread(command.thread_id)
        return _run_lines("Thread continued", result)

    def edit(self, command: WorkflowEditCommand) -> list[str]:
        settings = _settings(command.db_path)
        content = command.content_file.read_text(encoding="utf-8")
        with _repository(settings) as repository:
            result = _engine(settings, repository).edit_artifact(
                command.thread_id,
                command.artifact,
                content,
            )
        stale = sorted(
            artifact
            for artifact in _artifact_ids(result.state)
            if get_artifact_status(result.state, artifact) == ProcessingStatus.STALE
        )
        return [
            f"Artifact edited: thread_id={command.thread_id} artifact={command.artifact}",
            f"Stale artifacts: {', '.join(stale) if stale else '-'}",
            f"Checkpoint: {result.checkpoint_id}",
        ]

    def resolve_stale(self, command: WorkflowResolveStaleCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            result = _engine(settings, repository).resolve_stale(
                command.thread_id,
                command.artifact,
                regenerate=command.regenerate,
            )
        decision = "regenerate" if command.regenerate else "keep"
        return _run_lines(f"Stale artifact resolved ({decision})", result)

    def list_threads(self, command: ThreadsListCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            threads = repository.list_threads(component=command.component, limit=command.limit)
        if not threads:
            return ["No threads found."]
        lines = [f"Threads: {len(threads)}"]
        for thread in threads:
            lines.append(
                f"- {thread.thread_id} component={thread.component} "
                f"checkpoints={thread.checkpoint_count} "
                f"last_activity={thread.last_activity_at.isoformat()}",
            )
        return lines

    def inspect(self, command: ThreadInspectCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            engine = _engine(settings, repository)
            state = engine.get_state(command.thread_id)
            latest = repository.get_latest(command.thread_id)
        lines = [
            f"Thread: {state.thread_id}",
            f"Document: {state.document.document_id} ({state.document.status.value})",
            f"Status: {state.status.value}",
            f"Interrupted: {state.interrupt.is_interrupted}",
            f"Awaiting review: {state.interrupt_metadata.get('artifact') or '-'}",
            f"Next: {', '.join(latest.next) if latest and latest.next else '-'}",
            f"Messages: {len(state.messages)}",
            f"Errors: {len(state.errors)}",
            "Artifacts:",
        ]
        for artifact in _artifact_ids(state):
            status = get_artifact_status(state, artifact)
            lines.append(f"  {artifact}: {status.value}")
        for event in state.errors:
            lines.append(
                f"  error {event.timestamp.isoformat()} {event.category.value} "
                f"step={event.step or '-'} retries={event.retry_count} {event.message}",
            )
        return lines

    def history(self, command: ThreadHistoryCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            checkpoints = repository.list(
                command.thread_id,
                limit=command.limit,
                ascending=command.ascending,
            )
        if not checkpoints:
            return [f"Thread not found: {command.thread_id}"]
        lines = [f"Checkpoints: {len(checkpoints)}"]
        for checkpoint in checkpoints:
            created = checkpoint.created_at.isoformat() if checkpoint.created_at else "-"
            lines.append(
                f"- {checkpoint.checkpoint_id} {created} "
                f"source={checkpoint.metadata.get('source', '-')} "
                f"step={checkpoint.metadata.get('step') or '-'} "
                f"status={checkpoint.metadata.get('status', '-')} "
                f"next={','.join(checkpoint.next) or '-'}",
            )
        return lines

    def delete(self, command: ThreadInspectCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            deleted = repository.delete_thread(command.thread_id)
        return [f"Thread deleted: {command.thread_id} checkpoints={deleted}"]

    def prune(self, command: ThreadPruneCommand) -> list[str]:
        settings = _settings(command.db_path)
        with _repository(settings) as repository:
            deleted = repository.prune_thread(command.thread_id, keep_last=command.keep_last)
        return [
            f"Thread pruned: {command.thread_id} deleted={deleted} kept_last={command.keep_last}",
        ]

    def expire(self, command: ThreadsExpireCommand) -> list[str]:
        settings = _settings(command.db_path)
        idle_hours = command.idle_hours or settings.checkpoint.idle_timeout_hours
        idle_before = utc_now() - timedelta(hours=idle_hours)
        with _repository(settings) as repository:
            expired = repository.expire_idle_threads(
                idle_before=idle_before,
                component=command.component,
            )
        if not expired:
            return [f"No threads idle for more than {idle_hours:g}h."]
        lines = [f"Threads expired: {len(expired)} idle_hours={idle_hours:g}"]
        lines.extend(f"- {thread_id}" for thread_id in expired)
        return lines


def _settings(db_path: Path | None) -> Settings:
    settings = Settings.from_env(db_path=db_path)
    settings.validate()
    return settings


def _engine(settings: Settings, repository: CheckpointRepository) -> WorkflowEngine:
    collaborators, backend = build_echo_collaborators()
    return build_proposal_engine(
        settings,
        repository,
        collaborators,
        summarizer=backend,
        estimator=backend,
        on_context_event=_log_context_event,
    )


def _log_context_event(event: ContextWindowEvent) -> None:
    logger.info("Context window event: kind=%s model=%s", event.kind, event.model)


def _artifact_ids(state: WorkflowState) -> list[str]:
    extra = [section for section in state.sections if section not in state.required_sections]
    return [*STAGE_ARTIFACTS, *state.required_sections, *extra]


def _run_lines(title: str, result: RunResult) -> list[str]:
    state = result.state
    lines = [
        f"{title}: thread_id={result.thread_id} status={result.status.value}",
        f"Steps: {', '.join(result.steps_executed) or '-'}",
        f"Next: {', '.join(result.next) or '-'}",
        f"Checkpoint: {result.checkpoint_id}",
    ]
    if result.interrupted:
        artifact = state.interrupt_metadata.get("artifact")
        evaluation = state.interrupt_metadata.get("evaluation") or {}
        lines.append(
            f"Awaiting review: artifact={artifact} "
            f"score={evaluation.get('score', '-')} passed={evaluation.get('passed', '-')}",
        )
        if artifact:
            lines.extend(_content_preview(state, str(artifact)))
    if state.errors and state.errors[-1].fatal and result.status == WorkflowStatus.ERROR:
        event = state.errors[-1]
        lines.append(f"Error: {event.category.value} at {event.step or '-'}: {event.message}")
    if result.status == WorkflowStatus.AWAITING_REVIEW and not result.interrupted:
        blocked = state.metadata.get("blocked_sections") or []
        stale = state.metadata.get("stale_artifacts") or []
        lines.append(f"Blocked sections: {', '.join(blocked) or '-'}")
        lines.append(f"Stale artifacts: {', '.join(stale) or '-'}")
    return lines


def _content_preview(state: WorkflowState, artifact: str) -> list[str]:
    content = get_artifact_content(state, artifact).strip().replace("\n", " ")
    if len(content) > _CONTENT_PREVIEW_CHARS:
        content = content[: _CONTENT_PREVIEW_CHARS - 3] + "..."
    return [f"  {content}"] if content else []


@contextmanager
def _repository(settings: Settings) -> Iterator[CheckpointRepository]:
    repository = CheckpointRepository(
        settings.db_path,
        busy_timeout_ms=settings.checkpoint.busy_timeout_ms,
        retry_policy=RetryPolicy(
            max_attempts=settings.checkpoint.max_attempts,
            base_delay_ms=settings.checkpoint.base_delay_ms,
            max_delay_ms=settings.checkpoint.max_delay_ms,
        ),
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()
