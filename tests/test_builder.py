"""
Tests for GraphBuilder.compile() validation.

Every structural problem must surface as a CompileError before a run
starts, with all problems reported together.
"""

import pytest

from stepgraph.errors import CompileError
from stepgraph.graph.builder import GraphBuilder
from stepgraph.graph.directives import END, START
from stepgraph.graph.state import append


def noop(state):
    return {}


# ---------------------------------------------------------------------------
# References
# ---------------------------------------------------------------------------


def test_missing_edge_target():
    builder = GraphBuilder(state_schema={"x": None})
    builder.add_node("a", noop)
    builder.set_entry_point("a")
    builder.add_edge("a", "ghost")

    with pytest.raises(CompileError, match="missing target 'ghost'"):
        builder.compile()


def test_missing_entry_point():
    builder = GraphBuilder()
    builder.add_node("a", noop)

    with pytest.raises(CompileError, match="no entry point"):
        builder.compile()


def test_conditional_edge_maps_to_missing_node():
    builder = GraphBuilder()
    builder.add_node("a", noop)
    builder.set_entry_point("a")
    builder.add_conditional_edges("a", lambda s: "x", {"x": "ghost", "done": END})

    with pytest.raises(CompileError, match="missing target 'ghost'"):
        builder.compile()


def test_unreachable_node():
    builder = GraphBuilder()
    builder.add_node("a", noop)
    builder.add_node("orphan", noop)
    builder.set_entry_point("a")
    builder.set_finish_point("a")

    with pytest.raises(CompileError, match="'orphan' is unreachable"):
        builder.compile()


def test_route_destinations_make_nodes_reachable():
    builder = GraphBuilder()
    builder.add_node("classify", noop, destinations=["left", "right"])
    builder.add_node("left", noop)
    builder.add_node("right", noop)
    builder.set_entry_point("classify")

    graph = builder.compile()

    assert graph.can_reach("classify", "right")


def test_reserved_and_duplicate_names():
    builder = GraphBuilder()
    with pytest.raises(CompileError, match="reserved"):
        builder.add_node(START, noop)

    builder.add_node("a", noop)
    with pytest.raises(CompileError, match="already exists"):
        builder.add_node("a", noop)

    builder.add_field("x")
    with pytest.raises(CompileError, match="already declared"):
        builder.add_field("x")


def test_destinations_and_conditional_edges_are_exclusive():
    builder = GraphBuilder()
    builder.add_node("a", noop, destinations=["b"])
    builder.add_node("b", noop)
    builder.set_entry_point("a")
    builder.add_conditional_edges("a", lambda s: "b", ["b"])

    with pytest.raises(CompileError, match="one or the other"):
        builder.compile()


# ---------------------------------------------------------------------------
# Fields and reducers
# ---------------------------------------------------------------------------


def test_output_key_must_be_declared():
    builder = GraphBuilder(state_schema={"x": None})
    builder.add_node("a", noop, output_keys=["y"])
    builder.set_entry_point("a")

    with pytest.raises(CompileError, match="undeclared state field 'y'"):
        builder.compile()


def test_static_fan_out_writing_unreduced_field():
    builder = GraphBuilder(state_schema={"summary": None})
    builder.add_node("left", noop, output_keys=["summary"])
    builder.add_node("right", noop, output_keys=["summary"])
    builder.add_edge(START, "left")
    builder.add_edge(START, "right")

    with pytest.raises(CompileError, match="both write field 'summary'"):
        builder.compile()


def test_static_fan_out_with_reducer_compiles():
    builder = GraphBuilder(state_schema={"notes": append})
    builder.add_node("left", noop, output_keys=["notes"])
    builder.add_node("right", noop, output_keys=["notes"])
    builder.add_edge(START, "left")
    builder.add_edge(START, "right")

    graph = builder.compile()

    assert graph.entry_nodes == ("left", "right")


def test_spawned_node_writing_unreduced_field():
    builder = GraphBuilder(state_schema={"result": None})
    builder.add_node("dispatch", noop, spawns=["worker"])
    builder.add_node("worker", noop, output_keys=["result"])
    builder.set_entry_point("dispatch")

    with pytest.raises(CompileError, match="spawned in parallel"):
        builder.compile()


def test_all_errors_reported_together():
    builder = GraphBuilder(state_schema={"x": None})
    builder.add_node("a", noop, output_keys=["nope"])
    builder.set_entry_point("a")
    builder.add_edge("a", "ghost")

    with pytest.raises(CompileError) as exc_info:
        builder.compile()

    assert len(exc_info.value.errors) == 2


# ---------------------------------------------------------------------------
# Compiled graph
# ---------------------------------------------------------------------------


def test_compiled_graph_is_immutable():
    builder = GraphBuilder(state_schema={"x": None})
    builder.add_node("a", noop)
    builder.set_entry_point("a")
    graph = builder.compile()

    with pytest.raises(TypeError):
        graph.nodes["b"] = graph.nodes["a"]

    # Later builder changes do not leak into an already compiled graph
    builder.add_node("b", noop)
    builder.add_edge("a", "b")
    assert "b" not in graph.nodes


def test_defer_node_reach():
    builder = GraphBuilder(state_schema={"notes": append})
    builder.add_node("a", noop)
    builder.add_node("b", noop)
    builder.add_node("join", noop, defer=True)
    builder.add_edge(START, "a")
    builder.add_edge(START, "b")
    builder.add_edge("a", "join")
    builder.add_edge("b", "join")

    graph = builder.compile()

    assert graph.defer_nodes == ["join"]
    assert graph.downstream_joins("a") == ["join"]
    assert graph.downstream_joins("join") == ["join"]
