from __future__ import annotations

import allure
import pytest

from proposal_engine.workflow.graph import END, WorkflowGraph
from proposal_engine.workflow.models import GraphDefinitionError, WorkflowState

pytestmark = [
    allure.epic("Workflow Runtime"),
    allure.feature("Workflow Graph"),
]


def _noop(state, ctx):
    return None


def _linear_graph() -> WorkflowGraph:
    graph = WorkflowGraph(name="demo")
    graph.add_step("first", _noop).add_step("second", _noop)
    graph.add_edge("first", "second").add_edge("second", END)
    return graph.set_entry_point("first")


def test_compiled_graph_resolves_static_successors() -> None:
    compiled = _linear_graph().compile()
    state = WorkflowState(thread_id="proposal_42")

    assert compiled.entry_point == "first"
    assert compiled.successor("first", state) == "second"
    assert compiled.successor("second", state) == END
    assert compiled.step("second").name == "second"
    with pytest.raises(GraphDefinitionError, match="Unknown step"):
        compiled.step("third")


def test_conditional_edges_route_on_state() -> None:
    graph = WorkflowGraph(name="demo")
    graph.add_step("router", _noop).add_step("left", _noop).add_step("right", _noop)
    graph.add_conditional_edges(
        "router",
        lambda state: "left" if state.active_section else "right",
        ["left", "right"],
    )
    graph.add_edge("left", END).add_edge("right", END)
    compiled = graph.set_entry_point("router").compile()

    assert compiled.successor("router", WorkflowState(thread_id="proposal_42")) == "right"
    assert (
        compiled.successor(
            "router",
            WorkflowState(thread_id="proposal_42", active_section="budget"),
        )
        == "left"
    )


def test_router_returning_undeclared_destination_is_rejected() -> None:
    graph = WorkflowGraph(name="demo")
    graph.add_step("router", _noop).add_step("left", _noop).add_step("right", _noop)
    graph.add_conditional_edges("router", lambda state: "right", ["left"])
    graph.add_edge("left", END).add_edge("right", END)
    compiled = graph.set_entry_point("router").compile()

    with pytest.raises(GraphDefinitionError, match="undeclared destination"):
        compiled.successor("router", WorkflowState(thread_id="proposal_42"))


def test_router_returning_unknown_step_is_rejected() -> None:
    graph = WorkflowGraph(name="demo")
    graph.add_step("router", _noop)
    graph.add_conditional_edges("router", lambda state: "missing")
    compiled = graph.set_entry_point("router").compile()

    with pytest.raises(GraphDefinitionError, match="unknown destination"):
        compiled.successor("router", WorkflowState(thread_id="proposal_42"))


def test_compile_requires_entry_point() -> None:
    graph = WorkflowGraph(name="demo")
    graph.add_step("first", _noop).add_edge("first", END)

    with pytest.raises(GraphDefinitionError, match="no entry point"):
        graph.compile()


def test_compile_rejects_dangling_steps_and_unknown_targets() -> None:
    dangling = WorkflowGraph(name="demo")
    dangling.add_step("first", _noop).add_step("orphan", _noop)
    dangling.add_edge("first", END).set_entry_point("first")
    with pytest.raises(GraphDefinitionError, match="without outgoing edges"):
        dangling.compile()

    unknown = WorkflowGraph(name="demo")
    unknown.add_step("first", _noop).add_edge("first", "ghost").set_entry_point("first")
    with pytest.raises(GraphDefinitionError, match="unknown step"):
        unknown.compile()

    bad_action = _linear_graph().set_action_step("ghost")
    with pytest.raises(GraphDefinitionError, match="Action step"):
        bad_action.compile()


def test_builder_rejects_inconsistent_definitions() -> None:
    graph = WorkflowGraph(name="demo")
    graph.add_step("first", _noop)

    with pytest.raises(GraphDefinitionError, match="already defined"):
        graph.add_step("first", _noop)
    with pytest.raises(GraphDefinitionError, match="reserved"):
        graph.add_step(END, _noop)
    with pytest.raises(GraphDefinitionError, match="must declare an artifact"):
        graph.add_step("review", _noop, requires_review=True)

    graph.add_edge("first", END)
    with pytest.raises(GraphDefinitionError, match="already has outgoing edges"):
        graph.add_conditional_edges("first", lambda state: END)


def test_step_artifact_can_be_resolved_from_state() -> None:
    graph = WorkflowGraph(name="demo")
    graph.add_step("section", _noop, artifact=lambda state: state.active_section)
    graph.add_step("stage", _noop, artifact="research", requires_review=True)
    graph.add_edge("section", END).add_edge("stage", END)
    compiled = graph.set_entry_point("section").compile()

    state = WorkflowState(thread_id="proposal_42", active_section="budget")
    assert compiled.step("section").resolve_artifact(state) == "budget"
    assert compiled.step("stage").resolve_artifact(state) == "research"
