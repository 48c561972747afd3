"""
Tests for dynamic fan-out (Spawn) and defer joins.

Covers:
- Spawning one task per item (scenario: items -> workers -> results)
- Spawned instances run together in the next superstep with private input
- Joins wait for a runtime-sized number of instances
- Joins wait for branches of different depth
- An empty spawn hands its branch to the downstream join
- Plain lists of (node, state) pairs are accepted
- Spawning an unknown node fails the run
"""

import asyncio

import pytest

from stepgraph.errors import InvalidRouteError, InvalidUpdateError
from stepgraph.graph.builder import GraphBuilder
from stepgraph.graph.directives import END, START, Spawn, SpawnTask
from stepgraph.graph.state import append
from stepgraph.schemas.run import RunStatus

# ---------------------------------------------------------------------------
# Graph factories
# ---------------------------------------------------------------------------


def build_map_reduce(dispatch_fn, worker_delay: float = 0.0):
    async def worker(state, context):
        # Later items finish first
        await asyncio.sleep(worker_delay * (10 - len(state["item"])))
        return {"results": [f"processed:{state['item']}"]}

    def aggregate(state):
        return {"summary": len(state["results"])}

    builder = GraphBuilder(graph_id="map_reduce")
    builder.add_field("items")
    builder.add_field("results", append, default_factory=list)
    builder.add_field("summary")
    builder.add_node("dispatch", dispatch_fn, spawns=["worker"])
    builder.add_node("worker", worker, output_keys=["results"])
    builder.add_node("aggregate", aggregate, defer=True)
    builder.set_entry_point("dispatch")
    builder.add_edge("worker", "aggregate")
    builder.set_finish_point("aggregate")
    return builder.compile()


def spawn_per_item(state):
    return Spawn([SpawnTask("worker", {"item": item}) for item in state["items"]])


# ---------------------------------------------------------------------------
# Spawn
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_spawn_over_items(executor):
    """Scenario C: one worker per item, results merged via list accumulation."""
    graph = build_map_reduce(spawn_per_item)

    result = await executor.start(graph, {"items": ["a", "b", "c"]})

    assert result.success
    assert set(result.output["results"]) == {"processed:a", "processed:b", "processed:c"}
    assert len(result.output["results"]) == 3
    assert result.output["summary"] == 3
    assert result.path == [["dispatch"], ["worker", "worker", "worker"], ["aggregate"]]
    # A superstep counts as one visit however many instances ran
    assert result.node_visit_counts["worker"] == 1


@pytest.mark.asyncio
async def test_join_waits_for_runtime_sized_fan_out(executor):
    graph = build_map_reduce(spawn_per_item, worker_delay=0.002)
    items = ["a", "bb", "ccc", "dddd", "eeeee"]

    result = await executor.start(graph, {"items": items})

    assert result.output["summary"] == 5
    assert sorted(result.output["results"]) == sorted(f"processed:{i}" for i in items)
    assert result.node_visit_counts["aggregate"] == 1


@pytest.mark.asyncio
async def test_spawn_payload_is_private(executor):
    graph = build_map_reduce(spawn_per_item)

    result = await executor.start(graph, {"items": ["a"]})

    assert "item" not in result.output


@pytest.mark.asyncio
async def test_spawned_instances_see_context(executor):
    seen = []

    def dispatch(state):
        return Spawn([SpawnTask("worker", {"n": 1}), SpawnTask("worker", {"n": 2})])

    def worker(state, context):
        seen.append((context.task_id, context.spawned, state["n"]))
        return {"log": [state["n"]]}

    builder = GraphBuilder(state_schema={"log": append})
    builder.add_node("dispatch", dispatch, spawns=["worker"])
    builder.add_node("worker", worker)
    builder.set_entry_point("dispatch")
    graph = builder.compile()

    await executor.start(graph, {})

    assert sorted(seen) == [("2:worker:0", True, 1), ("2:worker:1", True, 2)]


@pytest.mark.asyncio
async def test_list_of_pairs_is_a_spawn(executor):
    graph = build_map_reduce(lambda state: [("worker", {"item": i}) for i in state["items"]])

    result = await executor.start(graph, {"items": ["x", "y"]})

    assert sorted(result.output["results"]) == ["processed:x", "processed:y"]


@pytest.mark.asyncio
async def test_spawn_update_is_merged(executor):
    def dispatch(state):
        return Spawn(
            tasks=[SpawnTask("worker", {"item": "a"})],
            update={"results": ["dispatched"]},
        )

    graph = build_map_reduce(dispatch)

    result = await executor.start(graph, {"items": []})

    assert sorted(result.output["results"]) == ["dispatched", "processed:a"]


@pytest.mark.asyncio
async def test_empty_spawn_goes_straight_to_join(executor):
    graph = build_map_reduce(spawn_per_item)

    result = await executor.start(graph, {"items": []})

    assert result.success
    assert result.path == [["dispatch"], ["aggregate"]]
    assert result.output["results"] == []
    assert result.output["summary"] == 0


@pytest.mark.asyncio
async def test_empty_spawn_join_waits_for_other_branches(executor):
    builder = GraphBuilder(graph_id="empty_spawn_join")
    builder.add_field("items")
    builder.add_field("results", append, default_factory=list)
    builder.add_field("summary")
    builder.add_node("dispatch", spawn_per_item, spawns=["worker"])
    builder.add_node("worker", lambda s: {"results": [s["item"]]}, output_keys=["results"])
    builder.add_node("slow_1", lambda s: None)
    builder.add_node("slow_2", lambda s: {"results": ["slow"]})
    builder.add_node("aggregate", lambda s: {"summary": sorted(s["results"])}, defer=True)
    builder.add_edge(START, "dispatch")
    builder.add_edge(START, "slow_1")
    builder.add_edge("slow_1", "slow_2")
    builder.add_edge("slow_2", "aggregate")
    builder.add_edge("worker", "aggregate")

    result = await executor.start(builder.compile(), {"items": []})

    assert result.success
    assert result.path == [["dispatch", "slow_1"], ["slow_2"], ["aggregate"]]
    assert result.output["summary"] == ["slow"]


@pytest.mark.asyncio
async def test_spawn_unknown_node_fails(executor):
    graph = build_map_reduce(lambda state: [("ghost", {"item": "a"})])

    result = await executor.start(graph, {"items": ["a"]})

    assert result.status == RunStatus.FAILED
    assert isinstance(result.error, InvalidRouteError)
    assert result.failed_node == "dispatch"


@pytest.mark.asyncio
async def test_malformed_spawn_list_fails(executor):
    graph = build_map_reduce(lambda state: ["not a pair"])

    result = await executor.start(graph, {"items": ["a"]})

    assert result.status == RunStatus.FAILED
    assert isinstance(result.error, InvalidUpdateError)


# ---------------------------------------------------------------------------
# Defer joins
# ---------------------------------------------------------------------------


@pytest.mark.asyncio
async def test_join_waits_for_longer_branch(executor):
    """START -> a -> a2 -> join and START -> b -> join: join runs once, last."""
    runs = []

    def step(name):
        def node(state):
            runs.append(name)
            return {"log": [name]}

        return node

    builder = GraphBuilder(state_schema={"log": append})
    for name in ["a", "a2", "b"]:
        builder.add_node(name, step(name))
    builder.add_node("join", step("join"), defer=True)
    builder.add_edge(START, "a")
    builder.add_edge(START, "b")
    builder.add_edge("a", "a2")
    builder.add_edge("a2", "join")
    builder.add_edge("b", "join")
    builder.add_edge("join", END)
    graph = builder.compile()

    result = await executor.start(graph, {})

    assert result.path == [["a", "b"], ["a2"], ["join"]]
    assert runs.count("join") == 1
    assert result.output["log"][-1] == "join"


@pytest.mark.asyncio
async def test_without_defer_join_runs_per_branch(executor):
    builder = GraphBuilder(state_schema={"log": append})
    builder.add_node("a", lambda s: {"log": ["a"]})
    builder.add_node("a2", lambda s: {"log": ["a2"]})
    builder.add_node("b", lambda s: {"log": ["b"]})
    builder.add_node("join", lambda s: {"log": ["join"]})
    builder.add_edge(START, "a")
    builder.add_edge(START, "b")
    builder.add_edge("a", "a2")
    builder.add_edge("a2", "join")
    builder.add_edge("b", "join")
    graph = builder.compile()

    result = await executor.start(graph, {})

    assert result.path == [["a", "b"], ["a2", "join"], ["join"]]
