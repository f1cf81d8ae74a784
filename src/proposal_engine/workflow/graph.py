"""Workflow graph definition: steps, edges and conditional routing."""

from __future__ import annotations

from collections.abc import Callable, Iterable, Mapping
from dataclasses import dataclass, field
from typing import TYPE_CHECKING

from proposal_engine.workflow.models import GraphDefinitionError, StateUpdate, WorkflowState

if TYPE_CHECKING:
    from proposal_engine.workflow.engine import StepContext

END = "__end__"

StepFn = Callable[[WorkflowState, "StepContext"], StateUpdate | None]
Router = Callable[[WorkflowState], str]
ArtifactResolver = Callable[[WorkflowState], str | None]


@dataclass(frozen=True, slots=True)
class StepSpec:
    """One executable node.

    `artifact` names the artifact whose lifecycle the step drives, either as a
    fixed id or resolved from state (e.g. the active section).
    """

    name: str
    fn: StepFn
    artifact: str | ArtifactResolver | None = None
    requires_review: bool = False
    content_type: str | None = None

    def resolve_artifact(self, state: WorkflowState) -> str | None:
        if self.artifact is None or isinstance(self.artifact, str):
            return self.artifact
        return self.artifact(state)


@dataclass(frozen=True, slots=True)
class ConditionalEdge:
    router: Router
    destinations: frozenset[str] | None = None


@dataclass(slots=True)
class WorkflowGraph:
    """Mutable builder; `compile()` validates wiring and freezes it."""

    name: str
    steps: dict[str, StepSpec] = field(default_factory=dict)
    edges: dict[str, str] = field(default_factory=dict)
    conditional_edges: dict[str, ConditionalEdge] = field(default_factory=dict)
    entry_point: str | None = None
    action_step: str | None = None

    def add_step(  # noqa: PLR0913
        self,
        name: str,
        fn: StepFn,
        *,
        artifact: str | ArtifactResolver | None = None,
        requires_review: bool = False,
        content_type: str | None = None,
    ) -> WorkflowGraph:
        if name == END:
            raise GraphDefinitionError(f"{END!r} is reserved")
        if name in self.steps:
            raise GraphDefinitionError(f"Step {name!r} already defined")
        if requires_review and artifact is None:
            raise GraphDefinitionError(f"Review step {name!r} must declare an artifact")
        self.steps[name] = StepSpec(
            name=name,
            fn=fn,
            artifact=artifact,
            requires_review=requires_review,
            content_type=content_type,
        )
        return self

    def add_edge(self, source: str, target: str) -> WorkflowGraph:
        self._ensure_no_outgoing(source)
        self.edges[source] = target
        return self

    def add_conditional_edges(
        self,
        source: str,
        router: Router,
        destinations: Iterable[str] | None = None,
    ) -> WorkflowGraph:
        self._ensure_no_outgoing(source)
        self.conditional_edges[source] = ConditionalEdge(
            router=router,
            destinations=frozenset(destinations) if destinations is not None else None,
        )
        return self

    def set_entry_point(self, name: str) -> WorkflowGraph:
        self.entry_point = name
        return self

    def set_action_step(self, name: str) -> WorkflowGraph:
        """Step that executes pending action requests found on the last message."""

        self.action_step = name
        return self

    def compile(self) -> CompiledGraph:
        if self.entry_point is None:
            raise GraphDefinitionError(f"Graph {self.name!r} has no entry point")
        known = set(self.steps) | {END}
        if self.entry_point not in self.steps:
            raise GraphDefinitionError(f"Entry point {self.entry_point!r} is not a step")
        if self.action_step is not None and self.action_step not in self.steps:
            raise GraphDefinitionError(f"Action step {self.action_step!r} is not a step")
        for source, target in self.edges.items():
            if source not in self.steps or target not in known:
                raise GraphDefinitionError(f"Edge {source!r} -> {target!r} references unknown step")
        for source, edge in self.conditional_edges.items():
            if source not in self.steps:
                raise GraphDefinitionError(f"Conditional edge from unknown step {source!r}")
            unknown = sorted((edge.destinations or frozenset()) - known)
            if unknown:
                raise GraphDefinitionError(
                    f"Conditional edge from {source!r} lists unknown destinations: {unknown}",
                )
        dangling = sorted(
            name
            for name in self.steps
            if name not in self.edges and name not in self.conditional_edges
        )
        if dangling:
            raise GraphDefinitionError(f"Steps without outgoing edges: {dangling}")
        return CompiledGraph(
            name=self.name,
            steps=dict(self.steps),
            edges=dict(self.edges),
            conditional_edges=dict(self.conditional_edges),
            entry_point=self.entry_point,
            action_step=self.action_step,
        )

    def _ensure_no_outgoing(self, source: str) -> None:
        if source in self.edges or source in self.conditional_edges:
            raise GraphDefinitionError(f"Step {source!r} already has outgoing edges")


@dataclass(frozen=True, slots=True)
class CompiledGraph:
    name: str
    steps: Mapping[str, StepSpec]
    edges: Mapping[str, str]
    conditional_edges: Mapping[str, ConditionalEdge]
    entry_point: str
    action_step: str | None

    def step(self, name: str) -> StepSpec:
        try:
            return self.steps[name]
        except KeyError as error:
            raise GraphDefinitionError(f"Unknown step {name!r} in graph {self.name!r}") from error

    def successor(self, source: str, state: WorkflowState) -> str:
        """Static or conditional successor of `source`; pure in `state`."""

        if source in self.edges:
            return self.edges[source]
        edge = self.conditional_edges[source]
        destination = edge.router(state)
        if destination != END and destination not in self.steps:
            raise GraphDefinitionError(
                f"Router for {source!r} returned unknown destination {destination!r}",
            )
        if edge.destinations is not None and destination not in edge.destinations:
            raise GraphDefinitionError(
                f"Router for {source!r} returned undeclared destination {destination!r}",
            )
        return destination
