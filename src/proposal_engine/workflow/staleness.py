"""Dependency map and staleness propagation for edited artifacts."""

from __future__ import annotations

import json
import logging
from collections.abc import Iterable, Mapping
from datetime import datetime
from pathlib import Path

from proposal_engine.workflow.models import ProcessingStatus, WorkflowState
from proposal_engine.workflow.state import (
    get_artifact_status,
    has_artifact,
    set_artifact_status,
)

logger = logging.getLogger(__name__)

DEFAULT_DEPENDENCIES_PATH = Path(__file__).resolve().parent / "resources" / "dependencies.json"

_UNTOUCHED_STATUSES = frozenset(
    {
        ProcessingStatus.NOT_STARTED,
        ProcessingStatus.QUEUED,
        ProcessingStatus.RUNNING,
        ProcessingStatus.STALE,
    },
)


class DependencyMap:
    """Read-only artifact dependency graph.

    Built from the on-disk shape `{artifact: [artifacts it depends on]}` and
    exposed inverted: `dependents_of(x)` lists artifacts to invalidate when
    `x` changes.
    """

    def __init__(self, dependencies: Mapping[str, Iterable[str]]) -> None:
        self._dependencies: dict[str, tuple[str, ...]] = {
            artifact: tuple(dict.fromkeys(deps)) for artifact, deps in dependencies.items()
        }
        dependents: dict[str, list[str]] = {}
        for artifact, deps in self._dependencies.items():
            for dependency in deps:
                dependents.setdefault(dependency, []).append(artifact)
        self._dependents = {key: tuple(value) for key, value in dependents.items()}

    @classmethod
    def from_dependents(cls, dependents: Mapping[str, Iterable[str]]) -> DependencyMap:
        """Build from `{artifact: [artifacts that depend on it]}`."""

        dependencies: dict[str, list[str]] = {artifact: [] for artifact in dependents}
        for artifact, items in dependents.items():
            for dependent in items:
                dependencies.setdefault(dependent, []).append(artifact)
        return cls(dependencies)

    @property
    def artifacts(self) -> tuple[str, ...]:
        known = dict.fromkeys(self._dependencies)
        for dependents in self._dependents.values():
            known.update(dict.fromkeys(dependents))
        known.update(dict.fromkeys(self._dependents))
        return tuple(known)

    def dependencies_of(self, artifact_id: str) -> tuple[str, ...]:
        return self._dependencies.get(artifact_id, ())

    def dependents_of(self, artifact_id: str) -> tuple[str, ...]:
        return self._dependents.get(artifact_id, ())

    def all_dependents(self, artifact_id: str) -> tuple[str, ...]:
        """Transitive closure of dependents, breadth first."""

        seen: dict[str, None] = {}
        frontier = list(self.dependents_of(artifact_id))
        while frontier:
            current = frontier.pop(0)
            if current in seen or current == artifact_id:
                continue
            seen[current] = None
            frontier.extend(self.dependents_of(current))
        return tuple(seen)

    def depends_on(self, artifact_id: str, dependency_id: str) -> bool:
        return dependency_id in self._transitive_dependencies(artifact_id)

    def dependency_order(self) -> list[str]:
        """Topological order with dependencies before dependents; raises on cycles."""

        order: list[str] = []
        state: dict[str, str] = {}

        def visit(artifact: str, path: tuple[str, ...]) -> None:
            mark = state.get(artifact)
            if mark == "done":
                return
            if mark == "visiting":
                cycle = " -> ".join((*path, artifact))
                raise ValueError(f"Dependency cycle detected: {cycle}")
            state[artifact] = "visiting"
            for dependency in self.dependencies_of(artifact):
                visit(dependency, (*path, artifact))
            state[artifact] = "done"
            order.append(artifact)

        for artifact in self.artifacts:
            visit(artifact, ())
        return order

    def _transitive_dependencies(self, artifact_id: str) -> set[str]:
        seen: set[str] = set()
        frontier = list(self.dependencies_of(artifact_id))
        while frontier:
            current = frontier.pop()
            if current in seen:
                continue
            seen.add(current)
            frontier.extend(self.dependencies_of(current))
        return seen


def load_dependency_map(path: Path | None = None) -> DependencyMap:
    """Load and validate a dependency JSON file (bundled default when `path` is None)."""

    source = path or DEFAULT_DEPENDENCIES_PATH
    try:
        raw = json.loads(source.read_text(encoding="utf-8"))
    except (OSError, json.JSONDecodeError) as error:
        raise ValueError(f"Failed to load dependency map from {source}: {error}") from error
    if not isinstance(raw, dict):
        raise ValueError(f"Dependency map in {source} must be a JSON object")
    for artifact, deps in raw.items():
        if not isinstance(deps, list) or not all(isinstance(item, str) for item in deps):
            raise ValueError(
                f"Dependencies of {artifact!r} in {source} must be a list of strings",
            )
    dependency_map = DependencyMap(raw)
    dependency_map.dependency_order()
    logger.info("Dependency map loaded from %s (%d artifacts)", source, len(raw))
    return dependency_map


def mark_dependents_stale(
    state: WorkflowState,
    artifact_id: str,
    dependency_map: DependencyMap,
    *,
    now: datetime,
    transitive: bool = False,
) -> tuple[WorkflowState, list[str]]:
    """Single-pass staleness propagation from `artifact_id`.

    Dependents that have no content yet, are queued or running, or are already
    stale are left untouched. Returns the new state and the ids marked stale.
    """

    candidates = (
        dependency_map.all_dependents(artifact_id)
        if transitive
        else dependency_map.dependents_of(artifact_id)
    )
    marked: list[str] = []
    for dependent in candidates:
        if not has_artifact(state, dependent):
            continue
        if get_artifact_status(state, dependent) in _UNTOUCHED_STATUSES:
            continue
        state = set_artifact_status(state, dependent, ProcessingStatus.STALE, now=now)
        marked.append(dependent)
    if marked:
        logger.info(
            "Marked %d dependents of %s stale in thread %s: %s",
            len(marked),
            artifact_id,
            state.thread_id,
            ", ".join(marked),
        )
    return state, marked


def stale_artifacts(state: WorkflowState, artifact_ids: Iterable[str]) -> list[str]:
    return [
        artifact_id
        for artifact_id in artifact_ids
        if get_artifact_status(state, artifact_id) == ProcessingStatus.STALE
    ]


def ready_for_assembly(state: WorkflowState, required_sections: Iterable[str]) -> bool:
    """True when every required section is approved; stale sections block assembly."""

    return all(
        get_artifact_status(state, section_id) == ProcessingStatus.APPROVED
        for section_id in required_sections
    )
