"""Domain models for checkpointed proposal workflows."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

STAGE_ARTIFACTS: tuple[str, ...] = ("research", "solution", "connections")


class ProcessingStatus(str, Enum):
    """Per-artifact lifecycle states."""

    NOT_STARTED = "not_started"
    QUEUED = "queued"
    RUNNING = "running"
    AWAITING_REVIEW = "awaiting_review"
    APPROVED = "approved"
    NEEDS_REVISION = "needs_revision"
    ERROR = "error"
    STALE = "stale"


class WorkflowStatus(str, Enum):
    """Overall thread status as seen by the host."""

    QUEUED = "queued"
    RUNNING = "running"
    AWAITING_REVIEW = "awaiting_review"
    COMPLETE = "complete"
    ERROR = "error"


class LoadingStatus(str, Enum):
    """Source document loading state."""

    NOT_STARTED = "not_started"
    LOADING = "loading"
    LOADED = "loaded"
    ERROR = "error"


class InterruptProcessingStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    COMPLETED = "completed"


class ErrorCategory(str, Enum):
    """Failure taxonomy driving retry and surfacing policy."""

    LLM_UNAVAILABLE = "llm_unavailable"
    RATE_LIMIT_EXCEEDED = "rate_limit_exceeded"
    CONTEXT_WINDOW_EXCEEDED = "context_window_exceeded"
    TOOL_EXECUTION_ERROR = "tool_execution_error"
    INVALID_RESPONSE_FORMAT = "invalid_response_format"
    CHECKPOINT_ERROR = "checkpoint_error"
    SUMMARIZATION_ERROR = "summarization_error"
    CONTEXT_WINDOW_MANAGEMENT_ERROR = "context_window_management_error"
    TOKEN_CALCULATION_ERROR = "token_calculation_error"
    UNKNOWN = "unknown"


class FeedbackAction(str, Enum):
    """Closed set of reviewer decisions accepted by resume."""

    APPROVE = "approve"
    REVISE = "revise"


class WorkflowError(Exception):
    """Base class for engine failures."""


class CheckpointError(WorkflowError):
    """Checkpoint storage failed after bounded retries."""


class ThreadIdError(WorkflowError, ValueError):
    """Thread id does not follow `{component}_{logicalId}[_{suffix}]`."""


class ThreadNotFoundError(WorkflowError, LookupError):
    """No checkpoint exists for the requested thread."""


class ThreadExistsError(WorkflowError):
    """A new run was requested for a thread that already has checkpoints."""


class InvalidTransitionError(WorkflowError):
    """Artifact status change not allowed by the lifecycle table."""


class InvalidResponseFormatError(WorkflowError):
    """Collaborator returned output that could not be parsed."""


class ToolExecutionError(WorkflowError):
    """External action requested by a step failed."""


class CollaboratorTimeoutError(WorkflowError, TimeoutError):
    """External call exceeded its timeout."""


class ContextWindowError(WorkflowError):
    """Messages could not be fitted into the model budget."""


class GraphDefinitionError(WorkflowError):
    """Workflow graph wiring is inconsistent."""


@dataclass(frozen=True, slots=True)
class EvaluationResult:
    """Scored quality gate outcome; replaced wholesale on re-evaluation."""

    score: float
    passed: bool
    feedback: str
    criteria_scores: dict[str, float] | None = None


@dataclass(frozen=True, slots=True)
class ActionRequest:
    """External action a step asks the engine to execute."""

    action_id: str
    name: str
    arguments: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True, slots=True)
class Message:
    """One conversational message; pending actions are explicit, never inferred."""

    role: str
    content: str
    name: str | None = None
    pending_actions: tuple[ActionRequest, ...] = ()
    is_summary: bool = False
    metadata: dict[str, Any] = field(default_factory=dict)

    @property
    def has_pending_actions(self) -> bool:
        return bool(self.pending_actions)


@dataclass(slots=True)
class SectionRecord:
    """Generated proposal section owned by the state's section map."""

    section_id: str
    title: str
    content: str = ""
    status: ProcessingStatus = ProcessingStatus.NOT_STARTED
    evaluation: EvaluationResult | None = None
    version: int = 0
    updated_at: datetime | None = None


@dataclass(slots=True)
class StageRecord:
    """Result of one analysis stage (research, solution, connections)."""

    results: dict[str, Any] | None = None
    status: ProcessingStatus = ProcessingStatus.NOT_STARTED
    evaluation: EvaluationResult | None = None
    version: int = 0
    updated_at: datetime | None = None


@dataclass(slots=True)
class DocumentInfo:
    """Source document metadata and extracted text."""

    document_id: str = ""
    file_name: str | None = None
    text: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    status: LoadingStatus = LoadingStatus.NOT_STARTED


@dataclass(slots=True)
class ErrorEvent:
    """Structured error record appended to the state's error log."""

    timestamp: datetime
    category: ErrorCategory
    message: str
    step: str | None = None
    retry_count: int = 0
    fatal: bool = False


@dataclass(slots=True)
class InterruptStatus:
    """Human-review suspension marker."""

    is_interrupted: bool = False
    interruption_point: str | None = None
    feedback: dict[str, Any] | None = None
    processing_status: InterruptProcessingStatus | None = None


@dataclass(frozen=True, slots=True)
class HumanFeedback:
    """Reviewer input applied by resume."""

    action: FeedbackAction
    target_artifact: str | None = None
    comments: str | None = None
    scores: dict[str, float] | None = None


@dataclass(slots=True)
class WorkflowState:
    """The single document threaded through every step of one thread."""

    thread_id: str
    document: DocumentInfo = field(default_factory=DocumentInfo)
    status: WorkflowStatus = WorkflowStatus.QUEUED
    research: StageRecord = field(default_factory=StageRecord)
    solution: StageRecord = field(default_factory=StageRecord)
    connections: StageRecord = field(default_factory=StageRecord)
    sections: dict[str, SectionRecord] = field(default_factory=dict)
    required_sections: list[str] = field(default_factory=list)
    active_section: str | None = None
    messages: list[Message] = field(default_factory=list)
    errors: list[ErrorEvent] = field(default_factory=list)
    interrupt: InterruptStatus = field(default_factory=InterruptStatus)
    interrupt_metadata: dict[str, Any] = field(default_factory=dict)
    user_feedback: HumanFeedback | None = None
    regenerating: list[str] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None
    last_updated_at: datetime | None = None


@dataclass(slots=True)
class StateUpdate:
    """Partial result returned by a step; merged by the engine's commit."""

    document: DocumentInfo | None = None
    status: WorkflowStatus | None = None
    stages: dict[str, StageRecord] = field(default_factory=dict)
    sections: dict[str, SectionRecord] = field(default_factory=dict)
    required_sections: list[str] | None = None
    active_section: str | None = None
    clear_active_section: bool = False
    messages: list[Message] = field(default_factory=list)
    errors: list[ErrorEvent] = field(default_factory=list)
    metadata: dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Checkpoint:
    """Immutable persisted snapshot of one thread."""

    thread_id: str
    checkpoint_id: str
    values: dict[str, Any]
    parent_checkpoint_id: str | None = None
    metadata: dict[str, Any] = field(default_factory=dict)
    next: list[str] = field(default_factory=list)
    tasks: list[dict[str, Any]] = field(default_factory=list)
    config: dict[str, Any] = field(default_factory=dict)
    created_at: datetime | None = None


@dataclass(slots=True)
class ThreadView:
    """Thread registry entry."""

    thread_id: str
    component: str
    logical_id: str
    suffix: str | None
    latest_checkpoint_id: str | None
    checkpoint_count: int
    created_at: datetime
    last_activity_at: datetime


_FEEDBACK_SYNONYMS: dict[str, FeedbackAction] = {
    "approve": FeedbackAction.APPROVE,
    "approved": FeedbackAction.APPROVE,
    "accept": FeedbackAction.APPROVE,
    "yes": FeedbackAction.APPROVE,
    "lgtm": FeedbackAction.APPROVE,
    "continue": FeedbackAction.APPROVE,
    "revise": FeedbackAction.REVISE,
    "revision": FeedbackAction.REVISE,
    "modify": FeedbackAction.REVISE,
    "edit": FeedbackAction.REVISE,
    "refine": FeedbackAction.REVISE,
    "reject": FeedbackAction.REVISE,
    "request_changes": FeedbackAction.REVISE,
}


def normalize_feedback_action(value: str | FeedbackAction) -> FeedbackAction:
    """Map reviewer command strings onto the closed action set."""

    if isinstance(value, FeedbackAction):
        return value
    key = value.strip().lower().replace("-", "_").replace(" ", "_")
    action = _FEEDBACK_SYNONYMS.get(key)
    if action is None:
        raise ValueError(
            f"Unsupported feedback action: {value!r}. Use one of "
            f"{sorted(item.value for item in FeedbackAction)}.",
        )
    return action
