"""Workflow executor: step dispatch, review gates, resume and checkpointing.

One call processes a thread until it reaches a review gate, a fatal error, the
end of the graph or the step limit. Every committed step writes exactly one
checkpoint whose `next` lists the step to run after it, so a host can re-enter
a crashed thread from its latest checkpoint. Routing only reads the committed
`WorkflowState`.
"""

from __future__ import annotations

import logging
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, TypeVar
from uuid import uuid4

from proposal_engine.storage.common import utc_now
from proposal_engine.workflow.backend.base import ContentEvaluator
from proposal_engine.workflow.context_window import ContextWindowManager
from proposal_engine.workflow.evaluation import (
    DEFAULT_CONTENT_TYPE,
    CriteriaCatalog,
    evaluate_content,
)
from proposal_engine.workflow.failure_classifier import classify_failure
from proposal_engine.workflow.graph import END, CompiledGraph, StepSpec
from proposal_engine.workflow.models import (
    Checkpoint,
    DocumentInfo,
    ErrorCategory,
    ErrorEvent,
    FeedbackAction,
    HumanFeedback,
    InterruptProcessingStatus,
    InterruptStatus,
    InvalidTransitionError,
    Message,
    ProcessingStatus,
    StateUpdate,
    ThreadExistsError,
    ThreadNotFoundError,
    WorkflowState,
    WorkflowStatus,
)
from proposal_engine.workflow.repository import CheckpointRepository
from proposal_engine.workflow.retry import (
    RetryExhaustedError,
    RetryPolicy,
    call_with_timeout,
    run_with_retry,
    user_facing_message,
)
from proposal_engine.workflow.staleness import DependencyMap, mark_dependents_stale
from proposal_engine.workflow.state import (
    apply_update,
    feedback_to_payload,
    get_artifact_content,
    get_artifact_status,
    has_artifact,
    last_message,
    replace_artifact_content,
    section_title,
    set_artifact_status,
    state_from_dict,
    state_to_dict,
)
from proposal_engine.workflow.thread_ids import parse_thread_id, validate_thread_id

logger = logging.getLogger(__name__)

T = TypeVar("T")

ENGINE_VERSION = 1
DEFAULT_MAX_STEPS = 100

_DISPATCH_PATHS: dict[ProcessingStatus, tuple[ProcessingStatus, ...]] = {
    ProcessingStatus.NOT_STARTED: (ProcessingStatus.QUEUED, ProcessingStatus.RUNNING),
    ProcessingStatus.QUEUED: (ProcessingStatus.RUNNING,),
    ProcessingStatus.NEEDS_REVISION: (ProcessingStatus.QUEUED, ProcessingStatus.RUNNING),
    ProcessingStatus.STALE: (ProcessingStatus.QUEUED, ProcessingStatus.RUNNING),
    ProcessingStatus.ERROR: (ProcessingStatus.QUEUED, ProcessingStatus.RUNNING),
}


@dataclass(slots=True)
class StepContext:
    """Per-invocation services handed to a step function."""

    thread_id: str
    step: str
    artifact: str | None
    now: datetime
    context_manager: ContextWindowManager
    model: str
    call_timeout_seconds: float | None = None

    def prepare_messages(self, messages: Sequence[Message]) -> list[Message]:
        """Fit messages into the model budget before an external call."""

        return self.context_manager.prepare_messages(messages, self.model).messages

    def call(self, description: str, func: Callable[[], T]) -> T:
        """Run one external collaborator call under the per-call timeout."""

        return call_with_timeout(
            func,
            timeout_seconds=self.call_timeout_seconds,
            description=f"{self.step}: {description}",
        )


@dataclass(slots=True)
class RunResult:
    thread_id: str
    state: WorkflowState
    checkpoint_id: str
    next: list[str] = field(default_factory=list)
    steps_executed: list[str] = field(default_factory=list)

    @property
    def interrupted(self) -> bool:
        return self.state.interrupt.is_interrupted

    @property
    def status(self) -> WorkflowStatus:
        return self.state.status


@dataclass(slots=True)
class _StepOutcome:
    state: WorkflowState
    checkpoint_id: str
    next: list[str]
    halt: bool


class WorkflowEngine:
    """Graph executor with durable checkpoints and human review gates.

    Not re-entrant per thread id: the host must not run two calls against the
    same thread concurrently. Different threads are independent.
    """

    def __init__(  # noqa: PLR0913
        self,
        graph: CompiledGraph,
        store: CheckpointRepository,
        *,
        context_manager: ContextWindowManager,
        evaluator: ContentEvaluator,
        criteria: CriteriaCatalog,
        dependency_map: DependencyMap,
        required_sections: Sequence[str] = (),
        retry_policy: RetryPolicy | None = None,
        max_steps: int = DEFAULT_MAX_STEPS,
        transitive_staleness: bool = False,
        call_timeout_seconds: float | None = None,
        model: str = "default",
        clock: Callable[[], datetime] = utc_now,
    ) -> None:
        if max_steps < 1:
            raise ValueError("max_steps must be >= 1")
        self.graph = graph
        self.store = store
        self.context_manager = context_manager
        self.evaluator = evaluator
        self.criteria = criteria
        self.dependency_map = dependency_map
        self.required_sections = tuple(required_sections)
        self.retry_policy = retry_policy or RetryPolicy()
        self.max_steps = max_steps
        self.transitive_staleness = transitive_staleness
        self.call_timeout_seconds = call_timeout_seconds
        self.model = model
        self.clock = clock

    # Public entry points -----------------------------------------------------

    def start(
        self,
        thread_id: str,
        *,
        document_id: str | None = None,
        document_source: str | None = None,
        required_sections: Sequence[str] | None = None,
        metadata: dict[str, Any] | None = None,
    ) -> RunResult:
        """Create a thread from an initial state and run it to its first stop."""

        parts = parse_thread_id(thread_id)
        if self.store.get_latest(thread_id) is not None:
            raise ThreadExistsError(
                f"Thread {thread_id} already exists; use resume or continue instead",
            )
        now = self.clock()
        state = WorkflowState(
            thread_id=thread_id,
            document=DocumentInfo(
                document_id=document_id or parts.logical_id,
                file_name=document_source,
            ),
            status=WorkflowStatus.QUEUED,
            required_sections=list(
                required_sections if required_sections is not None else self.required_sections,
            ),
            metadata=dict(metadata or {}),
            created_at=now,
            last_updated_at=now,
        )
        entry = self.graph.entry_point
        checkpoint_id = self._commit(
            state,
            parent_checkpoint_id=None,
            step=None,
            source="input",
            next_steps=[entry],
        )
        logger.info("Thread started: thread=%s graph=%s entry=%s", thread_id, self.graph.name, entry)
        return self._run(state, entry, checkpoint_id)

    def resume(self, thread_id: str, feedback: HumanFeedback) -> RunResult:
        """Apply human feedback to the interrupted artifact and continue the run."""

        checkpoint, state = self._load_latest(thread_id)
        if not state.interrupt.is_interrupted:
            raise InvalidTransitionError(f"Thread {thread_id} is not awaiting review")
        interrupted_artifact = state.interrupt_metadata.get("artifact")
        target = feedback.target_artifact or interrupted_artifact
        if target is None:
            raise ValueError(f"Thread {thread_id} has no artifact awaiting review")
        if target != interrupted_artifact:
            raise ValueError(
                f"Feedback targets {target!r} but thread {thread_id} is awaiting review "
                f"of {interrupted_artifact!r}",
            )

        now = self.clock()
        payload = feedback_to_payload(feedback)
        interruption_point = state.interrupt.interruption_point
        state = replace(
            state,
            user_feedback=feedback,
            interrupt=replace(
                state.interrupt,
                feedback=payload,
                processing_status=InterruptProcessingStatus.PROCESSING,
            ),
        )
        if feedback.action == FeedbackAction.APPROVE:
            state = set_artifact_status(state, target, ProcessingStatus.APPROVED, now=now)
            state = self._after_approval(state, target, now=now)
        else:
            if get_artifact_status(state, target) == ProcessingStatus.AWAITING_REVIEW:
                state = set_artifact_status(state, target, ProcessingStatus.NEEDS_REVISION, now=now)
            state = set_artifact_status(state, target, ProcessingStatus.QUEUED, now=now)
            guidance = Message(
                role="user",
                content=feedback.comments or f"Please revise the {section_title(target)}.",
                metadata={
                    "kind": "revision_request",
                    "target": target,
                    "step": interruption_point,
                },
            )
            state = apply_update(state, StateUpdate(messages=[guidance]), now=now)

        state = replace(
            state,
            status=WorkflowStatus.RUNNING,
            interrupt=InterruptStatus(
                is_interrupted=False,
                interruption_point=None,
                feedback=payload,
                processing_status=InterruptProcessingStatus.COMPLETED,
            ),
            interrupt_metadata={},
            last_updated_at=now,
        )
        logger.info(
            "Resuming thread=%s artifact=%s action=%s artifact_status=%s",
            thread_id,
            target,
            feedback.action.value,
            get_artifact_status(state, target).value,
        )
        if interruption_point is None:
            destination = self.graph.entry_point
        else:
            destination = self._route(state, interruption_point)
        if destination == END and state.status == WorkflowStatus.RUNNING:
            state = replace(state, status=WorkflowStatus.COMPLETE)
        checkpoint_id = self._commit(
            state,
            parent_checkpoint_id=checkpoint.checkpoint_id,
            step=interruption_point,
            source="resume",
            next_steps=[] if destination == END else [destination],
            extra_metadata={"feedback": payload},
        )
        return self._run(state, destination, checkpoint_id)

    def continue_thread(self, thread_id: str) -> RunResult:
        """Re-enter a thread at the `next` steps of its latest checkpoint."""

        checkpoint, state = self._load_latest(thread_id)
        if state.interrupt.is_interrupted:
            raise InvalidTransitionError(
                f"Thread {thread_id} is awaiting review; resume it with feedback",
            )
        if not checkpoint.next:
            logger.info("Thread %s has no pending steps", thread_id)
            return RunResult(
                thread_id=thread_id,
                state=state,
                checkpoint_id=checkpoint.checkpoint_id,
            )
        logger.info("Continuing thread=%s at %s", thread_id, checkpoint.next[0])
        return self._run(state, checkpoint.next[0], checkpoint.checkpoint_id)

    def get_state(self, thread_id: str) -> WorkflowState:
        _, state = self._load_latest(thread_id)
        return state

    def history(
        self,
        thread_id: str,
        *,
        limit: int | None = None,
        ascending: bool = False,
    ) -> list[Checkpoint]:
        return self.store.list(thread_id, limit=limit, ascending=ascending)

    def edit_artifact(self, thread_id: str, artifact_id: str, content: str) -> RunResult:
        """Replace an artifact's content directly and mark its dependents stale."""

        checkpoint, state = self._load_latest(thread_id)
        if not has_artifact(state, artifact_id):
            raise ValueError(f"Unknown artifact {artifact_id!r} in thread {thread_id}")
        status = get_artifact_status(state, artifact_id)
        if status in {ProcessingStatus.NOT_STARTED, ProcessingStatus.RUNNING}:
            raise InvalidTransitionError(
                f"Artifact {artifact_id!r} cannot be edited while {status.value}",
            )
        now = self.clock()
        state = replace_artifact_content(state, artifact_id, content, now=now)
        state, marked = mark_dependents_stale(
            state,
            artifact_id,
            self.dependency_map,
            now=now,
            transitive=self.transitive_staleness,
        )
        if marked and state.status == WorkflowStatus.COMPLETE:
            state = replace(state, status=WorkflowStatus.AWAITING_REVIEW)
        logger.info(
            "Edited artifact=%s thread=%s marked_stale=%s",
            artifact_id,
            thread_id,
            marked,
        )
        checkpoint_id = self._commit(
            state,
            parent_checkpoint_id=checkpoint.checkpoint_id,
            step=None,
            source="edit",
            next_steps=list(checkpoint.next),
            tasks=list(checkpoint.tasks),
            extra_metadata={"artifact": artifact_id, "marked_stale": marked},
        )
        return RunResult(
            thread_id=thread_id,
            state=state,
            checkpoint_id=checkpoint_id,
            next=list(checkpoint.next),
        )

    def resolve_stale(self, thread_id: str, artifact_id: str, *, regenerate: bool) -> RunResult:
        """Regenerate a stale artifact or keep its current version.

        An idle thread (not interrupted, nothing pending) is re-entered at the
        graph entry point so routing can pick up the regenerated artifact or
        complete the proposal.
        """

        checkpoint, state = self._load_latest(thread_id)
        status = get_artifact_status(state, artifact_id)
        if status != ProcessingStatus.STALE:
            raise InvalidTransitionError(
                f"Artifact {artifact_id!r} is {status.value}, not stale",
            )
        now = self.clock()
        if regenerate:
            state = set_artifact_status(state, artifact_id, ProcessingStatus.QUEUED, now=now)
            if artifact_id not in state.regenerating:
                state = replace(state, regenerating=[*state.regenerating, artifact_id])
        else:
            state = set_artifact_status(state, artifact_id, ProcessingStatus.APPROVED, now=now)

        idle = not state.interrupt.is_interrupted and not checkpoint.next
        next_steps = [self.graph.entry_point] if idle else list(checkpoint.next)
        if idle:
            state = replace(state, status=WorkflowStatus.RUNNING)
        logger.info(
            "Resolved stale artifact=%s thread=%s regenerate=%s next=%s",
            artifact_id,
            thread_id,
            regenerate,
            next_steps,
        )
        checkpoint_id = self._commit(
            state,
            parent_checkpoint_id=checkpoint.checkpoint_id,
            step=None,
            source="resolve_stale",
            next_steps=next_steps,
            tasks=[] if idle else list(checkpoint.tasks),
            extra_metadata={"artifact": artifact_id, "regenerate": regenerate},
        )
        if not idle:
            return RunResult(
                thread_id=thread_id,
                state=state,
                checkpoint_id=checkpoint_id,
                next=next_steps,
            )
        return self._run(state, next_steps[0], checkpoint_id)

    # Execution loop ------------------------------------------------------------

    def _run(self, state: WorkflowState, destination: str, checkpoint_id: str) -> RunResult:
        executed: list[str] = []
        current = destination
        next_steps: list[str] = [] if current == END else [current]
        while current != END:
            if len(executed) >= self.max_steps:
                event = ErrorEvent(
                    timestamp=self.clock(),
                    category=ErrorCategory.UNKNOWN,
                    message=f"Step limit of {self.max_steps} reached before {current!r}",
                    step=current,
                    fatal=True,
                )
                outcome = self._fail_step(
                    state,
                    step=current,
                    artifact=None,
                    event=event,
                    parent_checkpoint_id=checkpoint_id,
                )
            else:
                outcome = self._execute_step(state, current, checkpoint_id)
                executed.append(current)
            state = outcome.state
            checkpoint_id = outcome.checkpoint_id
            next_steps = outcome.next
            if outcome.halt or not next_steps:
                break
            current = next_steps[0]
        return RunResult(
            thread_id=state.thread_id,
            state=state,
            checkpoint_id=checkpoint_id,
            next=next_steps,
            steps_executed=executed,
        )

    def _execute_step(
        self,
        state: WorkflowState,
        name: str,
        parent_checkpoint_id: str,
    ) -> _StepOutcome:
        spec = self.graph.step(name)
        now = self.clock()
        artifact = spec.resolve_artifact(state)
        if artifact is not None:
            state = self._begin_artifact(state, artifact, now=now)
        state = replace(state, status=WorkflowStatus.RUNNING, last_updated_at=now)
        logger.info(
            "Step start: thread=%s step=%s artifact=%s artifact_status=%s messages=%d",
            state.thread_id,
            name,
            artifact,
            get_artifact_status(state, artifact).value if artifact is not None else None,
            len(state.messages),
        )

        context = StepContext(
            thread_id=state.thread_id,
            step=name,
            artifact=artifact,
            now=now,
            context_manager=self.context_manager,
            model=self.model,
            call_timeout_seconds=self.call_timeout_seconds,
        )
        step_input = state
        try:
            update = run_with_retry(
                lambda: spec.fn(step_input, context),
                policy=self.retry_policy,
                step=name,
            )
        except RetryExhaustedError as failure:
            return self._fail_step(
                state,
                step=name,
                artifact=artifact,
                event=failure.event,
                error=failure.error,
                parent_checkpoint_id=parent_checkpoint_id,
            )

        state = apply_update(state, _stamp_messages(update, name), now=self.clock())
        awaiting_action = _has_pending_actions(state)
        if artifact is not None and not awaiting_action:
            try:
                state = self._finish_artifact(state, spec, artifact)
            except RetryExhaustedError as failure:
                return self._fail_step(
                    state,
                    step=name,
                    artifact=artifact,
                    event=failure.event,
                    error=failure.error,
                    parent_checkpoint_id=parent_checkpoint_id,
                )

        tasks: list[dict[str, Any]] = []
        if state.interrupt.is_interrupted:
            next_steps: list[str] = []
            tasks.append({"type": "interrupt", "step": name, "artifact": artifact})
            logger.info(
                "Interrupt: thread=%s step=%s artifact=%s awaiting review",
                state.thread_id,
                name,
                artifact,
            )
        else:
            destination = self._route(state, name)
            next_steps = [] if destination == END else [destination]
            if destination == END and state.status == WorkflowStatus.RUNNING:
                state = replace(state, status=WorkflowStatus.COMPLETE)
            if awaiting_action:
                message = last_message(state)
                tasks.extend(
                    {"type": "action", "action_id": action.action_id, "name": action.name}
                    for action in (message.pending_actions if message is not None else ())
                )

        checkpoint_id = self._commit(
            state,
            parent_checkpoint_id=parent_checkpoint_id,
            step=name,
            source="loop",
            next_steps=next_steps,
            tasks=tasks,
        )
        logger.info(
            "Step done: thread=%s step=%s status=%s checkpoint=%s",
            state.thread_id,
            name,
            state.status.value,
            checkpoint_id,
        )
        return _StepOutcome(
            state=state,
            checkpoint_id=checkpoint_id,
            next=next_steps,
            halt=state.interrupt.is_interrupted,
        )

    def _route(self, state: WorkflowState, source: str) -> str:
        message = last_message(state)
        action_step = self.graph.action_step
        if (
            message is not None
            and message.has_pending_actions
            and action_step is not None
            and source != action_step
        ):
            destination = action_step
            reason = "pending_actions"
        else:
            destination = self.graph.successor(source, state)
            reason = "edge" if source in self.graph.edges else "router"
        logger.info(
            "Route: thread=%s from=%s to=%s reason=%s status=%s active_section=%s "
            "messages=%d errors=%d",
            state.thread_id,
            source,
            destination,
            reason,
            state.status.value,
            state.active_section,
            len(state.messages),
            len(state.errors),
        )
        return destination

    def _begin_artifact(
        self,
        state: WorkflowState,
        artifact: str,
        *,
        now: datetime,
    ) -> WorkflowState:
        status = get_artifact_status(state, artifact)
        if status == ProcessingStatus.RUNNING:
            return state
        path = _DISPATCH_PATHS.get(status)
        if path is None:
            raise InvalidTransitionError(
                f"Step cannot run artifact {artifact!r} while it is {status.value}",
            )
        for target in path:
            state = set_artifact_status(state, artifact, target, now=now)
        return state

    def _finish_artifact(
        self,
        state: WorkflowState,
        spec: StepSpec,
        artifact: str,
    ) -> WorkflowState:
        now = self.clock()
        if not spec.requires_review:
            state = set_artifact_status(state, artifact, ProcessingStatus.APPROVED, now=now)
            return self._after_approval(state, artifact, now=now)

        content_type = spec.content_type or DEFAULT_CONTENT_TYPE
        criteria = self.criteria.for_content_type(content_type)
        content = get_artifact_content(state, artifact)
        evaluation = run_with_retry(
            lambda: evaluate_content(
                content,
                content_type=content_type,
                criteria=criteria,
                evaluator=self.evaluator,
            ),
            policy=self.retry_policy,
            step=f"{spec.name}.evaluate",
        )
        state = set_artifact_status(
            state,
            artifact,
            ProcessingStatus.AWAITING_REVIEW,
            now=now,
            evaluation=evaluation,
        )
        logger.info(
            "Evaluation: thread=%s artifact=%s score=%.2f passed=%s",
            state.thread_id,
            artifact,
            evaluation.score,
            evaluation.passed,
        )
        return replace(
            state,
            status=WorkflowStatus.AWAITING_REVIEW,
            interrupt=InterruptStatus(
                is_interrupted=True,
                interruption_point=spec.name,
                feedback=None,
                processing_status=InterruptProcessingStatus.PENDING,
            ),
            interrupt_metadata={
                "artifact": artifact,
                "step": spec.name,
                "content_type": content_type,
                "evaluation": {
                    "score": evaluation.score,
                    "passed": evaluation.passed,
                    "feedback": evaluation.feedback,
                },
            },
            user_feedback=None,
        )

    def _after_approval(
        self,
        state: WorkflowState,
        artifact: str,
        *,
        now: datetime,
    ) -> WorkflowState:
        if artifact not in state.regenerating:
            return state
        state, _ = mark_dependents_stale(
            state,
            artifact,
            self.dependency_map,
            now=now,
            transitive=self.transitive_staleness,
        )
        return replace(
            state,
            regenerating=[item for item in state.regenerating if item != artifact],
        )

    def _fail_step(
        self,
        state: WorkflowState,
        *,
        step: str,
        artifact: str | None,
        event: ErrorEvent,
        parent_checkpoint_id: str,
        error: BaseException | None = None,
    ) -> _StepOutcome:
        now = self.clock()
        event = replace(event, timestamp=now, fatal=True, step=event.step or step)
        notice = Message(
            role="assistant",
            content=user_facing_message(event.category),
            metadata={
                "kind": "error",
                "category": event.category.value,
                "step": step,
                "retry_count": event.retry_count,
            },
        )
        state = apply_update(
            state,
            StateUpdate(status=WorkflowStatus.ERROR, errors=[event], messages=[notice]),
            now=now,
        )
        if artifact is not None and get_artifact_status(state, artifact) == ProcessingStatus.RUNNING:
            state = set_artifact_status(state, artifact, ProcessingStatus.ERROR, now=now)
        logger.error(
            "Step failed: thread=%s step=%s category=%s retries=%d error=%s",
            state.thread_id,
            step,
            event.category.value,
            event.retry_count,
            event.message,
        )
        error_metadata: dict[str, Any] = {
            "category": event.category.value,
            "retry_count": event.retry_count,
            "step": event.step,
        }
        if error is not None:
            error_metadata["classification"] = classify_failure(error).to_event_details(step=step)
        checkpoint_id = self._commit(
            state,
            parent_checkpoint_id=parent_checkpoint_id,
            step=step,
            source="loop",
            next_steps=[step],
            extra_metadata={"error": error_metadata},
        )
        return _StepOutcome(state=state, checkpoint_id=checkpoint_id, next=[step], halt=True)

    # Persistence -------------------------------------------------------------

    def _load_latest(self, thread_id: str) -> tuple[Checkpoint, WorkflowState]:
        validate_thread_id(thread_id)
        checkpoint = self.store.get_latest(thread_id)
        if checkpoint is None:
            raise ThreadNotFoundError(f"No checkpoints for thread {thread_id}")
        return checkpoint, state_from_dict(checkpoint.values)

    def _commit(  # noqa: PLR0913
        self,
        state: WorkflowState,
        *,
        parent_checkpoint_id: str | None,
        step: str | None,
        source: str,
        next_steps: Sequence[str],
        tasks: Sequence[dict[str, Any]] = (),
        extra_metadata: dict[str, Any] | None = None,
    ) -> str:
        metadata: dict[str, Any] = {
            "source": source,
            "step": step,
            "status": state.status.value,
            "interrupted": state.interrupt.is_interrupted,
            **(extra_metadata or {}),
        }
        checkpoint = Checkpoint(
            thread_id=state.thread_id,
            checkpoint_id=uuid4().hex,
            values=state_to_dict(state),
            parent_checkpoint_id=parent_checkpoint_id,
            metadata=metadata,
            next=list(next_steps),
            tasks=list(tasks),
            config=self._config_snapshot(),
            created_at=self.clock(),
        )
        return self.store.put(state.thread_id, checkpoint)

    def _config_snapshot(self) -> dict[str, Any]:
        return {
            "engine_version": ENGINE_VERSION,
            "graph": self.graph.name,
            "model": self.model,
            "max_steps": self.max_steps,
            "call_timeout_seconds": self.call_timeout_seconds,
            "retry": {
                "max_attempts": self.retry_policy.max_attempts,
                "base_delay_ms": self.retry_policy.base_delay_ms,
                "max_delay_ms": self.retry_policy.max_delay_ms,
            },
        }


def _stamp_messages(update: StateUpdate | None, step: str) -> StateUpdate | None:
    if update is None or not update.messages:
        return update
    messages = [
        message
        if "step" in message.metadata
        else replace(message, metadata={**message.metadata, "step": step})
        for message in update.messages
    ]
    return replace(update, messages=messages)


def _has_pending_actions(state: WorkflowState) -> bool:
    message = last_message(state)
    return message is not None and message.has_pending_actions
