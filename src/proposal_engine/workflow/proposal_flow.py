"""Standard proposal graph: document, analysis stages, sections, completion."""

from __future__ import annotations

import logging
import time
from collections.abc import Callable
from dataclasses import replace

from proposal_engine.config import Settings
from proposal_engine.workflow.backend.base import (
    ActionExecutor,
    Collaborators,
    ContentGenerator,
    DocumentLoader,
    GeneratedContent,
    GenerationContext,
    Summarizer,
    TokenEstimator,
)
from proposal_engine.workflow.context_window import ContextWindowEvent, ContextWindowManager
from proposal_engine.workflow.engine import StepContext, WorkflowEngine
from proposal_engine.workflow.evaluation import load_evaluation_criteria
from proposal_engine.workflow.graph import END, CompiledGraph, WorkflowGraph
from proposal_engine.workflow.models import (
    STAGE_ARTIFACTS,
    CollaboratorTimeoutError,
    InvalidResponseFormatError,
    LoadingStatus,
    Message,
    ProcessingStatus,
    SectionRecord,
    StateUpdate,
    ToolExecutionError,
    WorkflowState,
    WorkflowStatus,
)
from proposal_engine.workflow.repository import CheckpointRepository
from proposal_engine.workflow.retry import RetryPolicy
from proposal_engine.workflow.routing import (
    COMPLETE_STEP,
    DEFAULT_SECTION_ORDER,
    GENERATE_SECTION_STEP,
    SECTION_MANAGER_STEP,
    next_pending_section,
    route_after_actions,
    route_next_work,
    route_section_manager,
)
from proposal_engine.workflow.staleness import (
    DependencyMap,
    load_dependency_map,
    ready_for_assembly,
    stale_artifacts,
)
from proposal_engine.workflow.state import (
    get_artifact_content,
    get_artifact_status,
    last_message,
    section_title,
)

logger = logging.getLogger(__name__)

GRAPH_NAME = "proposal"
LOAD_DOCUMENT_STEP = "load_document"
EXECUTE_ACTIONS_STEP = "execute_actions"

_WORK_DESTINATIONS = (*STAGE_ARTIFACTS, SECTION_MANAGER_STEP, COMPLETE_STEP)

_STAGE_INSTRUCTIONS = {
    "research": "Research the funder: mission, priorities, eligibility and evaluation approach.",
    "solution": "Identify the solution the funder is looking for and how it will be judged.",
    "connections": (
        "Pair the applicant's strengths with the funder's priorities, citing evidence for both."
    ),
}


def build_proposal_graph(
    collaborators: Collaborators,
    dependency_map: DependencyMap,
) -> CompiledGraph:
    graph = WorkflowGraph(name=GRAPH_NAME)
    graph.add_step(LOAD_DOCUMENT_STEP, _load_document_step(collaborators.loader))
    for stage in STAGE_ARTIFACTS:
        graph.add_step(
            stage,
            _generation_step(collaborators.generator, dependency_map),
            artifact=stage,
            requires_review=True,
            content_type=stage,
        )
    graph.add_step(SECTION_MANAGER_STEP, _section_manager)
    graph.add_step(
        GENERATE_SECTION_STEP,
        _generation_step(collaborators.generator, dependency_map),
        artifact=_active_section,
        requires_review=True,
        content_type="section",
    )
    graph.add_step(EXECUTE_ACTIONS_STEP, _execute_actions_step(collaborators.executor))
    graph.add_step(COMPLETE_STEP, _complete)

    graph.add_conditional_edges(LOAD_DOCUMENT_STEP, route_next_work, _WORK_DESTINATIONS)
    for stage in STAGE_ARTIFACTS:
        graph.add_conditional_edges(stage, route_next_work, _WORK_DESTINATIONS)
    graph.add_conditional_edges(
        SECTION_MANAGER_STEP,
        route_section_manager,
        (GENERATE_SECTION_STEP, COMPLETE_STEP),
    )
    graph.add_conditional_edges(GENERATE_SECTION_STEP, route_next_work, _WORK_DESTINATIONS)
    graph.add_conditional_edges(EXECUTE_ACTIONS_STEP, route_after_actions)
    graph.add_edge(COMPLETE_STEP, END)
    graph.set_entry_point(LOAD_DOCUMENT_STEP)
    graph.set_action_step(EXECUTE_ACTIONS_STEP)
    return graph.compile()


def default_required_sections(dependency_map: DependencyMap) -> tuple[str, ...]:
    """Sections in dependency order, falling back to the standard order."""

    ordered = tuple(
        artifact
        for artifact in dependency_map.dependency_order()
        if artifact not in STAGE_ARTIFACTS
    )
    return ordered or DEFAULT_SECTION_ORDER


def build_proposal_engine(  # noqa: PLR0913
    settings: Settings,
    store: CheckpointRepository,
    collaborators: Collaborators,
    *,
    summarizer: Summarizer | None = None,
    estimator: TokenEstimator | None = None,
    on_context_event: Callable[[ContextWindowEvent], None] | None = None,
    sleep: Callable[[float], None] = time.sleep,
) -> WorkflowEngine:
    """Wire settings, bundled resources and collaborators into an engine."""

    dependency_map = load_dependency_map(settings.workflow.dependencies_path)
    criteria = load_evaluation_criteria(settings.workflow.criteria_path)
    context_manager = ContextWindowManager(
        estimator=estimator,
        summarizer=summarizer,
        default_model=settings.context.model,
        context_window_tokens=settings.context.context_window_tokens,
        reserved_tokens=settings.context.reserved_tokens,
        summarization_threshold_tokens=settings.context.summarization_threshold_tokens or None,
        summarization_ratio=settings.context.summarization_ratio,
        cache_size=settings.context.token_cache_size,
        on_event=on_context_event,
    )
    required_sections = settings.workflow.required_sections or default_required_sections(
        dependency_map,
    )
    return WorkflowEngine(
        build_proposal_graph(collaborators, dependency_map),
        store,
        context_manager=context_manager,
        evaluator=collaborators.evaluator,
        criteria=criteria,
        dependency_map=dependency_map,
        required_sections=required_sections,
        retry_policy=RetryPolicy(
            max_attempts=settings.retry.max_attempts,
            base_delay_ms=settings.retry.base_delay_ms,
            max_delay_ms=settings.retry.max_delay_ms,
            sleep=sleep,
        ),
        max_steps=settings.workflow.max_steps,
        transitive_staleness=settings.workflow.transitive_staleness,
        call_timeout_seconds=settings.retry.call_timeout_seconds or None,
        model=settings.context.model,
    )


def _active_section(state: WorkflowState) -> str | None:
    return state.active_section


def _load_document_step(
    loader: DocumentLoader,
) -> Callable[[WorkflowState, StepContext], StateUpdate | None]:
    def load_document(state: WorkflowState, ctx: StepContext) -> StateUpdate | None:
        if state.document.status == LoadingStatus.LOADED:
            return None
        source = state.document.file_name
        if not source:
            return StateUpdate(
                document=replace(
                    state.document,
                    text=state.document.text or "",
                    status=LoadingStatus.LOADED,
                ),
            )
        text = ctx.call("document load", lambda: loader.load(source))
        if not isinstance(text, str):
            raise InvalidResponseFormatError(
                f"Document loader returned {type(text).__name__} for {source}",
            )
        logger.info("Loaded document %s (%d chars)", source, len(text))
        return StateUpdate(
            document=replace(
                state.document,
                text=text,
                status=LoadingStatus.LOADED,
                metadata={**state.document.metadata, "characters": len(text)},
            ),
        )

    return load_document


def _generation_step(
    generator: ContentGenerator,
    dependency_map: DependencyMap,
) -> Callable[[WorkflowState, StepContext], StateUpdate | None]:
    """Shared generation logic for analysis stages and proposal sections."""

    def generate(state: WorkflowState, ctx: StepContext) -> StateUpdate | None:
        artifact = ctx.artifact
        if artifact is None:
            raise InvalidResponseFormatError(f"Step {ctx.step} has no artifact to generate")
        upstream = {
            dependency: get_artifact_content(state, dependency)
            for dependency in dependency_map.dependencies_of(artifact)
            if get_artifact_status(state, dependency) == ProcessingStatus.APPROVED
        }
        context = GenerationContext(
            step=ctx.step,
            artifact=artifact,
            messages=ctx.prepare_messages(state.messages),
            inputs={
                "document_id": state.document.document_id,
                "document_text": state.document.text or "",
                "upstream": upstream,
            },
        )
        prompt = _build_prompt(state, artifact, upstream)
        output = ctx.call(f"{artifact} generation", lambda: generator.generate(prompt, context))
        output = _validated_output(output, artifact)
        if output.actions:
            return StateUpdate(
                messages=[
                    Message(
                        role="assistant",
                        content=output.text,
                        pending_actions=tuple(output.actions),
                    ),
                ],
            )

        notice = Message(
            role="assistant",
            content=f"{section_title(artifact)} is ready for review.",
            metadata={"kind": "artifact", "artifact": artifact},
        )
        if artifact in STAGE_ARTIFACTS:
            record = getattr(state, artifact)
            results = {**(output.data or {}), "content": output.text}
            return StateUpdate(
                stages={artifact: replace(record, results=results, updated_at=ctx.now)},
                messages=[notice],
            )
        existing = state.sections.get(artifact) or SectionRecord(
            section_id=artifact,
            title=section_title(artifact),
            status=ProcessingStatus.RUNNING,
        )
        return StateUpdate(
            sections={artifact: replace(existing, content=output.text, updated_at=ctx.now)},
            messages=[notice],
        )

    return generate


def _build_prompt(state: WorkflowState, artifact: str, upstream: dict[str, str]) -> str:
    instruction = _STAGE_INSTRUCTIONS.get(
        artifact,
        f"Write the {section_title(artifact)} section of the proposal.",
    )
    lines = [f"Proposal {state.document.document_id}: {instruction}"]
    if state.document.text:
        lines.append(f"Source document:\n{state.document.text}")
    for dependency, content in upstream.items():
        lines.append(f"{section_title(dependency)}:\n{content}")
    return "\n\n".join(lines)


def _validated_output(output: object, artifact: str) -> GeneratedContent:
    if not isinstance(output, GeneratedContent):
        raise InvalidResponseFormatError(
            f"Generator returned {type(output).__name__} for {artifact}, expected GeneratedContent",
        )
    if not isinstance(output.text, str) or (not output.text.strip() and not output.actions):
        raise InvalidResponseFormatError(f"Generator returned empty content for {artifact}")
    return output


def _section_manager(state: WorkflowState, ctx: StepContext) -> StateUpdate:  # noqa: ARG001
    section = next_pending_section(state)
    if section is None:
        return StateUpdate(clear_active_section=True)
    return StateUpdate(active_section=section)


def _execute_actions_step(
    executor: ActionExecutor | None,
) -> Callable[[WorkflowState, StepContext], StateUpdate | None]:
    def execute_actions(state: WorkflowState, ctx: StepContext) -> StateUpdate | None:
        message = last_message(state)
        if message is None or not message.has_pending_actions:
            return None
        if executor is None:
            raise ToolExecutionError("Tool execution failed: no action executor is configured")
        reply_to = message.metadata.get("step")
        results: list[Message] = []
        for action in message.pending_actions:
            try:
                output = ctx.call(f"action {action.name}", lambda a=action: executor.execute(a))
            except (ToolExecutionError, CollaboratorTimeoutError):
                raise
            except Exception as error:
                raise ToolExecutionError(
                    f"Tool {action.name} execution failed: {error}",
                ) from error
            results.append(
                Message(
                    role="tool",
                    content=str(output),
                    name=action.name,
                    metadata={"action_id": action.action_id, "reply_to": reply_to},
                ),
            )
        return StateUpdate(messages=results)

    return execute_actions


def _complete(state: WorkflowState, ctx: StepContext) -> StateUpdate:
    stale = stale_artifacts(state, [*STAGE_ARTIFACTS, *state.required_sections])
    if ready_for_assembly(state, state.required_sections) and not stale:
        return StateUpdate(
            status=WorkflowStatus.COMPLETE,
            clear_active_section=True,
            metadata={
                "assembled_sections": list(state.required_sections),
                "completed_at": ctx.now.isoformat(),
            },
        )
    blocked = [
        section_id
        for section_id in state.required_sections
        if get_artifact_status(state, section_id) != ProcessingStatus.APPROVED
    ]
    logger.info(
        "Thread %s not ready for assembly: blocked=%s stale=%s",
        state.thread_id,
        blocked,
        stale,
    )
    return StateUpdate(
        status=WorkflowStatus.AWAITING_REVIEW,
        clear_active_section=True,
        metadata={"blocked_sections": blocked, "stale_artifacts": stale},
    )
