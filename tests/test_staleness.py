from __future__ import annotations

import json
from datetime import UTC, datetime
from pathlib import Path

import allure
import pytest

from proposal_engine.workflow.models import (
    ProcessingStatus,
    SectionRecord,
    StageRecord,
    WorkflowState,
)
from proposal_engine.workflow.staleness import (
    DependencyMap,
    load_dependency_map,
    mark_dependents_stale,
    ready_for_assembly,
    stale_artifacts,
)

pytestmark = [
    allure.epic("Workflow Runtime"),
    allure.feature("Dependency Tracking"),
]

NOW = datetime(2026, 10, 19, 9, 30, tzinfo=UTC)


def _section(section_id: str, status: ProcessingStatus) -> SectionRecord:
    return SectionRecord(
        section_id=section_id,
        title=section_id.title(),
        content=f"{section_id} text",
        status=status,
        version=1,
    )


def _state(**sections: ProcessingStatus) -> WorkflowState:
    approved = StageRecord(results={"content": "x"}, status=ProcessingStatus.APPROVED, version=1)
    return WorkflowState(
        thread_id="proposal_42",
        research=approved,
        solution=approved,
        connections=approved,
        sections={
            section_id: _section(section_id, status) for section_id, status in sections.items()
        },
    )


def test_bundled_dependency_map_inverts_dependencies() -> None:
    dependency_map = load_dependency_map()

    assert dependency_map.dependencies_of("budget") == ("methodology",)
    assert set(dependency_map.dependents_of("research")) == {
        "solution",
        "connections",
        "problem_statement",
    }
    assert dependency_map.depends_on("conclusion", "research")
    assert not dependency_map.depends_on("research", "conclusion")

    order = dependency_map.dependency_order()
    assert order.index("research") < order.index("solution") < order.index("methodology")
    assert order.index("budget") < order.index("timeline") < order.index("conclusion")


def test_from_dependents_builds_equivalent_map() -> None:
    dependency_map = DependencyMap.from_dependents(
        {"research": ["solution", "problem_statement"], "solution": ["problem_statement"]},
    )
    assert dependency_map.dependencies_of("problem_statement") == ("research", "solution")
    assert dependency_map.all_dependents("research") == ("solution", "problem_statement")


def test_load_dependency_map_rejects_cycles(tmp_path: Path) -> None:
    path = tmp_path / "deps.json"
    path.write_text(json.dumps({"a": ["b"], "b": ["c"], "c": ["a"]}), encoding="utf-8")

    with pytest.raises(ValueError, match="Dependency cycle detected"):
        load_dependency_map(path)


@pytest.mark.parametrize(
    "payload",
    ['["research"]', '{"budget": "methodology"}', '{"budget": [1]}', "{broken"],
)
def test_load_dependency_map_rejects_malformed_files(tmp_path: Path, payload: str) -> None:
    path = tmp_path / "deps.json"
    path.write_text(payload, encoding="utf-8")

    with pytest.raises(ValueError):
        load_dependency_map(path)


def test_direct_dependents_are_marked_stale_once() -> None:
    dependency_map = load_dependency_map()
    state = _state(
        problem_statement=ProcessingStatus.APPROVED,
        methodology=ProcessingStatus.APPROVED,
    )

    updated, marked = mark_dependents_stale(state, "research", dependency_map, now=NOW)

    assert marked == ["solution", "connections", "problem_statement"]
    assert updated.solution.status == ProcessingStatus.STALE
    assert updated.sections["problem_statement"].status == ProcessingStatus.STALE
    assert updated.sections["methodology"].status == ProcessingStatus.APPROVED
    assert state.solution.status == ProcessingStatus.APPROVED

    _, marked_again = mark_dependents_stale(updated, "research", dependency_map, now=NOW)
    assert marked_again == []


def test_untouched_statuses_and_missing_sections_are_skipped() -> None:
    dependency_map = load_dependency_map()
    state = _state(
        methodology=ProcessingStatus.QUEUED,
        timeline=ProcessingStatus.AWAITING_REVIEW,
    )

    updated, marked = mark_dependents_stale(state, "budget", dependency_map, now=NOW)
    assert marked == ["timeline"]
    assert updated.sections["timeline"].status == ProcessingStatus.STALE
    assert "conclusion" not in updated.sections

    _, marked_from_problem = mark_dependents_stale(
        state,
        "problem_statement",
        dependency_map,
        now=NOW,
    )
    assert marked_from_problem == []


def test_transitive_propagation_reaches_indirect_dependents() -> None:
    dependency_map = load_dependency_map()
    state = _state(
        methodology=ProcessingStatus.APPROVED,
        budget=ProcessingStatus.APPROVED,
        timeline=ProcessingStatus.APPROVED,
    )

    _, direct = mark_dependents_stale(state, "methodology", dependency_map, now=NOW)
    _, transitive = mark_dependents_stale(
        state,
        "methodology",
        dependency_map,
        now=NOW,
        transitive=True,
    )

    assert direct == ["budget", "timeline"]
    assert transitive == ["budget", "timeline"]

    _, from_solution = mark_dependents_stale(
        state,
        "solution",
        dependency_map,
        now=NOW,
        transitive=True,
    )
    assert "budget" in from_solution
    assert "timeline" in from_solution


def test_ready_for_assembly_requires_every_section_approved() -> None:
    state = _state(
        problem_statement=ProcessingStatus.APPROVED,
        budget=ProcessingStatus.STALE,
    )

    assert ready_for_assembly(state, ["problem_statement"])
    assert not ready_for_assembly(state, ["problem_statement", "budget"])
    assert not ready_for_assembly(state, ["problem_statement", "timeline"])
    assert ready_for_assembly(state, [])
    assert stale_artifacts(state, ["problem_statement", "budget"]) == ["budget"]
