"""Pure state helpers: lifecycle transitions, commit merge, JSON codec."""

from __future__ import annotations

from dataclasses import replace
from datetime import datetime
from typing import Any

from proposal_engine.storage.common import from_iso
from proposal_engine.workflow.models import (
    STAGE_ARTIFACTS,
    ActionRequest,
    DocumentInfo,
    ErrorCategory,
    ErrorEvent,
    EvaluationResult,
    FeedbackAction,
    HumanFeedback,
    InterruptProcessingStatus,
    InterruptStatus,
    InvalidTransitionError,
    LoadingStatus,
    Message,
    ProcessingStatus,
    SectionRecord,
    StageRecord,
    StateUpdate,
    WorkflowState,
    WorkflowStatus,
)

STATE_SCHEMA_VERSION = 1

ALLOWED_TRANSITIONS: dict[ProcessingStatus, frozenset[ProcessingStatus]] = {
    ProcessingStatus.NOT_STARTED: frozenset({ProcessingStatus.QUEUED}),
    ProcessingStatus.QUEUED: frozenset({ProcessingStatus.RUNNING}),
    ProcessingStatus.RUNNING: frozenset(
        {
            ProcessingStatus.AWAITING_REVIEW,
            ProcessingStatus.APPROVED,
            ProcessingStatus.ERROR,
        },
    ),
    ProcessingStatus.AWAITING_REVIEW: frozenset(
        {
            ProcessingStatus.APPROVED,
            ProcessingStatus.NEEDS_REVISION,
            ProcessingStatus.STALE,
        },
    ),
    ProcessingStatus.NEEDS_REVISION: frozenset(
        {ProcessingStatus.QUEUED, ProcessingStatus.STALE},
    ),
    ProcessingStatus.APPROVED: frozenset({ProcessingStatus.STALE}),
    ProcessingStatus.STALE: frozenset({ProcessingStatus.QUEUED, ProcessingStatus.APPROVED}),
    ProcessingStatus.ERROR: frozenset({ProcessingStatus.QUEUED, ProcessingStatus.STALE}),
}


def can_transition(current: ProcessingStatus, target: ProcessingStatus) -> bool:
    return target in ALLOWED_TRANSITIONS[current]


def check_transition(
    current: ProcessingStatus,
    target: ProcessingStatus,
    *,
    artifact_id: str,
) -> None:
    """Raise if the lifecycle table forbids moving `artifact_id` to `target`."""

    if not can_transition(current, target):
        raise InvalidTransitionError(
            f"Artifact {artifact_id!r} cannot move from {current.value} to {target.value}",
        )


def merge_section(old: SectionRecord | None, new: SectionRecord) -> SectionRecord:
    """Merge one incoming section write onto the stored record.

    Content replacement bumps the version counter; status, evaluation and
    timestamp follow the newer write.
    """

    if old is None:
        version = max(new.version, 1 if new.content else 0)
        return replace(new, version=version)
    if old.section_id != new.section_id:
        raise ValueError(
            f"Section id mismatch on merge: {old.section_id!r} != {new.section_id!r}",
        )
    content_replaced = new.content != old.content
    return SectionRecord(
        section_id=old.section_id,
        title=new.title or old.title,
        content=new.content,
        status=new.status,
        evaluation=new.evaluation,
        version=old.version + 1 if content_replaced else old.version,
        updated_at=new.updated_at or old.updated_at,
    )


def merge_sections(
    current: dict[str, SectionRecord],
    incoming: dict[str, SectionRecord],
) -> dict[str, SectionRecord]:
    """Return a new section map with `incoming` merged; map key must equal section id."""

    merged = dict(current)
    for section_id, record in incoming.items():
        if record.section_id != section_id:
            raise ValueError(
                f"Section map key {section_id!r} does not match record id {record.section_id!r}",
            )
        merged[section_id] = merge_section(current.get(section_id), record)
    return merged


def apply_update(
    state: WorkflowState,
    update: StateUpdate | None,
    *,
    now: datetime,
) -> WorkflowState:
    """Commit a step's partial update into a new state value."""

    if update is None:
        return replace(state, last_updated_at=now)

    changes: dict[str, Any] = {"last_updated_at": now}
    if update.document is not None:
        changes["document"] = update.document
    if update.status is not None:
        changes["status"] = update.status
    for stage_name, record in update.stages.items():
        if stage_name not in STAGE_ARTIFACTS:
            raise ValueError(f"Unknown stage artifact: {stage_name!r}")
        changes[stage_name] = _merge_stage(getattr(state, stage_name), record)
    if update.sections:
        changes["sections"] = merge_sections(state.sections, update.sections)
    if update.required_sections is not None:
        changes["required_sections"] = list(update.required_sections)
    if update.clear_active_section:
        changes["active_section"] = None
    elif update.active_section is not None:
        changes["active_section"] = update.active_section
    if update.messages:
        changes["messages"] = [*state.messages, *update.messages]
    if update.errors:
        changes["errors"] = [*state.errors, *update.errors]
    if update.metadata:
        changes["metadata"] = {**state.metadata, **update.metadata}
    return replace(state, **changes)


def _merge_stage(old: StageRecord, new: StageRecord) -> StageRecord:
    content_replaced = new.results is not None and new.results != old.results
    return StageRecord(
        results=new.results if new.results is not None else old.results,
        status=new.status,
        evaluation=new.evaluation,
        version=old.version + 1 if content_replaced else old.version,
        updated_at=new.updated_at or old.updated_at,
    )


def is_stage_artifact(artifact_id: str) -> bool:
    return artifact_id in STAGE_ARTIFACTS


def has_artifact(state: WorkflowState, artifact_id: str) -> bool:
    return is_stage_artifact(artifact_id) or artifact_id in state.sections


def get_artifact_status(state: WorkflowState, artifact_id: str) -> ProcessingStatus:
    """Status of a stage or section; unknown sections read as not started."""

    if is_stage_artifact(artifact_id):
        return getattr(state, artifact_id).status
    record = state.sections.get(artifact_id)
    if record is None:
        return ProcessingStatus.NOT_STARTED
    return record.status


def get_artifact_content(state: WorkflowState, artifact_id: str) -> str:
    if is_stage_artifact(artifact_id):
        results = getattr(state, artifact_id).results or {}
        return str(results.get("content", ""))
    record = state.sections.get(artifact_id)
    return record.content if record is not None else ""


def set_artifact_status(
    state: WorkflowState,
    artifact_id: str,
    target: ProcessingStatus,
    *,
    now: datetime,
    evaluation: EvaluationResult | None = None,
    keep_evaluation: bool = True,
) -> WorkflowState:
    """Return a new state with one artifact moved along an allowed edge."""

    current = get_artifact_status(state, artifact_id)
    if current == target:
        return state
    check_transition(current, target, artifact_id=artifact_id)

    if is_stage_artifact(artifact_id):
        record: StageRecord = getattr(state, artifact_id)
        updated_stage = replace(
            record,
            status=target,
            evaluation=evaluation or (record.evaluation if keep_evaluation else None),
            updated_at=now,
        )
        return replace(state, **{artifact_id: updated_stage, "last_updated_at": now})

    section = state.sections.get(artifact_id) or SectionRecord(
        section_id=artifact_id,
        title=section_title(artifact_id),
    )
    updated_section = replace(
        section,
        status=target,
        evaluation=evaluation or (section.evaluation if keep_evaluation else None),
        updated_at=now,
    )
    return replace(
        state,
        sections={**state.sections, artifact_id: updated_section},
        last_updated_at=now,
    )


def replace_artifact_content(
    state: WorkflowState,
    artifact_id: str,
    content: str,
    *,
    now: datetime,
) -> WorkflowState:
    """Direct edit: replace content and bump the version, status untouched."""

    if is_stage_artifact(artifact_id):
        record: StageRecord = getattr(state, artifact_id)
        results = {**(record.results or {}), "content": content}
        updated_stage = _merge_stage(record, replace(record, results=results, updated_at=now))
        return replace(state, **{artifact_id: updated_stage, "last_updated_at": now})

    section = state.sections.get(artifact_id)
    if section is None:
        raise KeyError(f"Unknown artifact: {artifact_id!r}")
    merged = merge_sections(
        state.sections,
        {artifact_id: replace(section, content=content, updated_at=now)},
    )
    return replace(state, sections=merged, last_updated_at=now)


def section_title(section_id: str) -> str:
    return section_id.replace("_", " ").strip().title()


def last_message(state: WorkflowState) -> Message | None:
    return state.messages[-1] if state.messages else None


# JSON codec -----------------------------------------------------------------


def state_to_dict(state: WorkflowState) -> dict[str, Any]:
    """Serialize state into JSON-compatible primitives."""

    return {
        "schema_version": STATE_SCHEMA_VERSION,
        "thread_id": state.thread_id,
        "document": {
            "document_id": state.document.document_id,
            "file_name": state.document.file_name,
            "text": state.document.text,
            "metadata": dict(state.document.metadata),
            "status": state.document.status.value,
        },
        "status": state.status.value,
        "research": _stage_to_dict(state.research),
        "solution": _stage_to_dict(state.solution),
        "connections": _stage_to_dict(state.connections),
        "sections": {
            section_id: {
                "section_id": record.section_id,
                "title": record.title,
                "content": record.content,
                "status": record.status.value,
                "evaluation": _evaluation_to_dict(record.evaluation),
                "version": record.version,
                "updated_at": _iso(record.updated_at),
            }
            for section_id, record in state.sections.items()
        },
        "required_sections": list(state.required_sections),
        "active_section": state.active_section,
        "messages": [_message_to_dict(message) for message in state.messages],
        "errors": [
            {
                "timestamp": _iso(event.timestamp),
                "category": event.category.value,
                "message": event.message,
                "step": event.step,
                "retry_count": event.retry_count,
                "fatal": event.fatal,
            }
            for event in state.errors
        ],
        "interrupt": {
            "is_interrupted": state.interrupt.is_interrupted,
            "interruption_point": state.interrupt.interruption_point,
            "feedback": state.interrupt.feedback,
            "processing_status": (
                state.interrupt.processing_status.value
                if state.interrupt.processing_status is not None
                else None
            ),
        },
        "interrupt_metadata": dict(state.interrupt_metadata),
        "user_feedback": _feedback_to_dict(state.user_feedback),
        "regenerating": list(state.regenerating),
        "metadata": dict(state.metadata),
        "created_at": _iso(state.created_at),
        "last_updated_at": _iso(state.last_updated_at),
    }


def state_from_dict(payload: dict[str, Any]) -> WorkflowState:
    """Rebuild state from checkpoint values."""

    document = payload.get("document") or {}
    interrupt = payload.get("interrupt") or {}
    processing_status = interrupt.get("processing_status")
    return WorkflowState(
        thread_id=str(payload["thread_id"]),
        document=DocumentInfo(
            document_id=str(document.get("document_id", "")),
            file_name=document.get("file_name"),
            text=document.get("text"),
            metadata=dict(document.get("metadata") or {}),
            status=LoadingStatus(document.get("status", LoadingStatus.NOT_STARTED.value)),
        ),
        status=WorkflowStatus(payload.get("status", WorkflowStatus.QUEUED.value)),
        research=_stage_from_dict(payload.get("research")),
        solution=_stage_from_dict(payload.get("solution")),
        connections=_stage_from_dict(payload.get("connections")),
        sections={
            section_id: SectionRecord(
                section_id=str(raw["section_id"]),
                title=str(raw.get("title", "")),
                content=str(raw.get("content", "")),
                status=ProcessingStatus(raw.get("status", ProcessingStatus.NOT_STARTED.value)),
                evaluation=_evaluation_from_dict(raw.get("evaluation")),
                version=int(raw.get("version", 0)),
                updated_at=_parse_iso(raw.get("updated_at")),
            )
            for section_id, raw in (payload.get("sections") or {}).items()
        },
        required_sections=[str(item) for item in payload.get("required_sections") or []],
        active_section=payload.get("active_section"),
        messages=[_message_from_dict(raw) for raw in payload.get("messages") or []],
        errors=[
            ErrorEvent(
                timestamp=from_iso(str(raw["timestamp"])),
                category=ErrorCategory(raw["category"]),
                message=str(raw.get("message", "")),
                step=raw.get("step"),
                retry_count=int(raw.get("retry_count", 0)),
                fatal=bool(raw.get("fatal", False)),
            )
            for raw in payload.get("errors") or []
        ],
        interrupt=InterruptStatus(
            is_interrupted=bool(interrupt.get("is_interrupted", False)),
            interruption_point=interrupt.get("interruption_point"),
            feedback=interrupt.get("feedback"),
            processing_status=(
                InterruptProcessingStatus(processing_status)
                if processing_status is not None
                else None
            ),
        ),
        interrupt_metadata=dict(payload.get("interrupt_metadata") or {}),
        user_feedback=_feedback_from_dict(payload.get("user_feedback")),
        regenerating=[str(item) for item in payload.get("regenerating") or []],
        metadata=dict(payload.get("metadata") or {}),
        created_at=_parse_iso(payload.get("created_at")),
        last_updated_at=_parse_iso(payload.get("last_updated_at")),
    )


def feedback_to_payload(feedback: HumanFeedback) -> dict[str, Any]:
    payload = _feedback_to_dict(feedback)
    assert payload is not None
    return payload


def _stage_to_dict(record: StageRecord) -> dict[str, Any]:
    return {
        "results": record.results,
        "status": record.status.value,
        "evaluation": _evaluation_to_dict(record.evaluation),
        "version": record.version,
        "updated_at": _iso(record.updated_at),
    }


def _stage_from_dict(raw: dict[str, Any] | None) -> StageRecord:
    if not raw:
        return StageRecord()
    return StageRecord(
        results=raw.get("results"),
        status=ProcessingStatus(raw.get("status", ProcessingStatus.NOT_STARTED.value)),
        evaluation=_evaluation_from_dict(raw.get("evaluation")),
        version=int(raw.get("version", 0)),
        updated_at=_parse_iso(raw.get("updated_at")),
    )


def _evaluation_to_dict(evaluation: EvaluationResult | None) -> dict[str, Any] | None:
    if evaluation is None:
        return None
    return {
        "score": evaluation.score,
        "passed": evaluation.passed,
        "feedback": evaluation.feedback,
        "criteria_scores": (
            dict(evaluation.criteria_scores) if evaluation.criteria_scores is not None else None
        ),
    }


def _evaluation_from_dict(raw: dict[str, Any] | None) -> EvaluationResult | None:
    if raw is None:
        return None
    criteria_scores = raw.get("criteria_scores")
    return EvaluationResult(
        score=float(raw["score"]),
        passed=bool(raw["passed"]),
        feedback=str(raw.get("feedback", "")),
        criteria_scores=(
            {str(key): float(value) for key, value in criteria_scores.items()}
            if criteria_scores is not None
            else None
        ),
    )


def _message_to_dict(message: Message) -> dict[str, Any]:
    return {
        "role": message.role,
        "content": message.content,
        "name": message.name,
        "pending_actions": [
            {
                "action_id": action.action_id,
                "name": action.name,
                "arguments": dict(action.arguments),
            }
            for action in message.pending_actions
        ],
        "is_summary": message.is_summary,
        "metadata": dict(message.metadata),
    }


def _message_from_dict(raw: dict[str, Any]) -> Message:
    return Message(
        role=str(raw["role"]),
        content=str(raw.get("content", "")),
        name=raw.get("name"),
        pending_actions=tuple(
            ActionRequest(
                action_id=str(action["action_id"]),
                name=str(action["name"]),
                arguments=dict(action.get("arguments") or {}),
            )
            for action in raw.get("pending_actions") or []
        ),
        is_summary=bool(raw.get("is_summary", False)),
        metadata=dict(raw.get("metadata") or {}),
    )


def _feedback_to_dict(feedback: HumanFeedback | None) -> dict[str, Any] | None:
    if feedback is None:
        return None
    return {
        "action": feedback.action.value,
        "target_artifact": feedback.target_artifact,
        "comments": feedback.comments,
        "scores": dict(feedback.scores) if feedback.scores is not None else None,
    }


def _feedback_from_dict(raw: dict[str, Any] | None) -> HumanFeedback | None:
    if raw is None:
        return None
    scores = raw.get("scores")
    return HumanFeedback(
        action=FeedbackAction(raw["action"]),
        target_artifact=raw.get("target_artifact"),
        comments=raw.get("comments"),
        scores={str(key): float(value) for key, value in scores.items()} if scores else None,
    )


def _iso(value: datetime | None) -> str | None:
    return value.isoformat() if value is not None else None


def _parse_iso(value: str | None) -> datetime | None:
    if not value:
        return None
    return from_iso(value)
