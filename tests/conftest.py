"""Shared test fixtures."""

from __future__ import annotations

from collections.abc import Callable, Iterator, Sequence
from datetime import UTC, datetime
from pathlib import Path

import pytest

from proposal_engine.workflow.backend import (
    Collaborators,
    EchoBackend,
    GeneratedContent,
    GenerationContext,
)
from proposal_engine.workflow.context_window import ContextWindowManager
from proposal_engine.workflow.engine import WorkflowEngine
from proposal_engine.workflow.evaluation import load_evaluation_criteria
from proposal_engine.workflow.models import FeedbackAction, HumanFeedback
from proposal_engine.workflow.proposal_flow import build_proposal_graph
from proposal_engine.workflow.repository import CheckpointRepository
from proposal_engine.workflow.retry import RetryPolicy
from proposal_engine.workflow.staleness import load_dependency_map

FIXED_NOW = datetime(2026, 10, 19, 9, 30, tzinfo=UTC)


class RecordingGenerator:
    """Content generator fake that records prompts and contexts.

    `script` items are consumed one per call: an exception is raised, a
    `GeneratedContent` (or any other object) is returned as-is. Once the script
    is exhausted a deterministic draft is produced.
    """

    def __init__(self, script: Sequence[object] = ()) -> None:
        self.script = list(script)
        self.calls: list[tuple[str, GenerationContext]] = []

    def generate(self, prompt: str, context: GenerationContext) -> object:
        self.calls.append((prompt, context))
        if self.script:
            item = self.script.pop(0)
            if isinstance(item, BaseException):
                raise item
            return item
        return GeneratedContent(text=f"{context.artifact} draft #{len(self.calls)}")

    def contexts_for(self, artifact: str) -> list[GenerationContext]:
        return [context for _, context in self.calls if context.artifact == artifact]


class SleepRecorder:
    def __init__(self) -> None:
        self.delays: list[float] = []

    def __call__(self, seconds: float) -> None:
        self.delays.append(seconds)


@pytest.fixture()
def sleep_recorder() -> SleepRecorder:
    return SleepRecorder()


@pytest.fixture()
def checkpoint_repository(tmp_path: Path) -> Iterator[CheckpointRepository]:
    repository = CheckpointRepository(
        tmp_path / "checkpoints.db",
        retry_policy=RetryPolicy(
            max_attempts=2,
            base_delay_ms=1,
            max_delay_ms=2,
            sleep=lambda _: None,
        ),
    )
    repository.init_schema()
    try:
        yield repository
    finally:
        repository.close()


@pytest.fixture()
def build_engine(
    checkpoint_repository: CheckpointRepository,
    sleep_recorder: SleepRecorder,
) -> Callable[..., WorkflowEngine]:
    """Factory for an engine over the standard proposal graph with fakes injected."""

    def _build(
        generator: object | None = None,
        *,
        required_sections: Sequence[str] = ("problem_statement",),
        max_steps: int = 100,
        max_attempts: int = 3,
        executor: object | None = None,
    ) -> WorkflowEngine:
        backend = EchoBackend()
        collaborators = Collaborators(
            generator=generator or RecordingGenerator(),  # type: ignore[arg-type]
            evaluator=backend,
            loader=backend,
            executor=executor or backend,  # type: ignore[arg-type]
        )
        dependency_map = load_dependency_map()
        return WorkflowEngine(
            build_proposal_graph(collaborators, dependency_map),
            checkpoint_repository,
            context_manager=ContextWindowManager(estimator=backend, summarizer=backend),
            evaluator=backend,
            criteria=load_evaluation_criteria(),
            dependency_map=dependency_map,
            required_sections=required_sections,
            retry_policy=RetryPolicy(
                max_attempts=max_attempts,
                base_delay_ms=10,
                max_delay_ms=100,
                sleep=sleep_recorder,
            ),
            max_steps=max_steps,
            clock=lambda: FIXED_NOW,
        )

    return _build


def approve(engine: WorkflowEngine, thread_id: str, artifact: str | None = None):
    return engine.resume(
        thread_id,
        HumanFeedback(action=FeedbackAction.APPROVE, target_artifact=artifact),
    )


def approve_stages(engine: WorkflowEngine, thread_id: str):
    """Approve research, solution and connections in turn; returns the last result."""

    result = None
    for stage in ("research", "solution", "connections"):
        result = approve(engine, thread_id, stage)
    return result
