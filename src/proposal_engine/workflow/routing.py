"""Pure routing functions for the proposal flow.

Every decision reads only the committed state, so a thread resumed from a
checkpoint takes the same path it would have taken uninterrupted.
"""

from __future__ import annotations

from proposal_engine.workflow.graph import END
from proposal_engine.workflow.models import STAGE_ARTIFACTS, ProcessingStatus, WorkflowState
from proposal_engine.workflow.state import get_artifact_status, last_message

DEFAULT_SECTION_ORDER: tuple[str, ...] = (
    "problem_statement",
    "methodology",
    "budget",
    "timeline",
    "conclusion",
)

SECTION_MANAGER_STEP = "section_manager"
GENERATE_SECTION_STEP = "generate_section"
COMPLETE_STEP = "complete"

PENDING_STATUSES = frozenset(
    {
        ProcessingStatus.NOT_STARTED,
        ProcessingStatus.QUEUED,
        ProcessingStatus.NEEDS_REVISION,
    },
)


def next_pending_stage(state: WorkflowState) -> str | None:
    for stage in STAGE_ARTIFACTS:
        if get_artifact_status(state, stage) in PENDING_STATUSES:
            return stage
    return None


def next_pending_section(state: WorkflowState) -> str | None:
    for section_id in state.required_sections:
        if get_artifact_status(state, section_id) in PENDING_STATUSES:
            return section_id
    return None


def route_next_work(state: WorkflowState) -> str:
    """Dispatch to the first artifact that still needs generation.

    Stages run before sections; stale artifacts are skipped until the user
    resolves them.
    """

    stage = next_pending_stage(state)
    if stage is not None:
        return stage
    if next_pending_section(state) is not None:
        return SECTION_MANAGER_STEP
    return COMPLETE_STEP


def route_section_manager(state: WorkflowState) -> str:
    if state.active_section is not None:
        return GENERATE_SECTION_STEP
    return COMPLETE_STEP


def route_after_actions(state: WorkflowState) -> str:
    """Return to the step that requested the actions."""

    message = last_message(state)
    if message is None:
        return END
    reply_to = message.metadata.get("reply_to")
    return str(reply_to) if reply_to else END
