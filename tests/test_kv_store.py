import pytest

from stepgraph.graph.builder import GraphBuilder
from stepgraph.graph.executor import GraphExecutor
from stepgraph.storage.kv_store import InMemoryKeyValueStore


@pytest.fixture
def kv():
    return InMemoryKeyValueStore()


@pytest.mark.asyncio
async def test_put_get_delete(kv):
    await kv.put(("users", "u1"), "prefs", {"tone": "formal"})

    item = await kv.get(("users", "u1"), "prefs")
    assert item.value == {"tone": "formal"}
    assert item.namespace == ("users", "u1")
    assert item.key == "prefs"

    assert await kv.delete(("users", "u1"), "prefs") is True
    assert await kv.get(("users", "u1"), "prefs") is None
    assert await kv.delete(("users", "u1"), "prefs") is False


@pytest.mark.asyncio
async def test_put_replaces_and_keeps_created_at(kv):
    await kv.put(("users",), "u1", {"n": 1})
    first = await kv.get(("users",), "u1")
    await kv.put(("users",), "u1", {"n": 2})
    second = await kv.get(("users",), "u1")

    assert second.value == {"n": 2}
    assert second.created_at == first.created_at


@pytest.mark.asyncio
async def test_values_are_copied(kv):
    value = {"tags": ["a"]}
    await kv.put(("ns",), "k", value)
    value["tags"].append("b")

    item = await kv.get(("ns",), "k")
    item.value["tags"].append("c")

    assert (await kv.get(("ns",), "k")).value == {"tags": ["a"]}


@pytest.mark.asyncio
async def test_search_by_prefix_and_filter(kv):
    await kv.put(("users", "u1"), "prefs", {"tone": "formal"})
    await kv.put(("users", "u2"), "prefs", {"tone": "casual"})
    await kv.put(("teams", "t1"), "prefs", {"tone": "formal"})

    users = await kv.search(("users",))
    assert {item.namespace for item in users} == {("users", "u1"), ("users", "u2")}

    formal = await kv.search(("users",), filter={"tone": "formal"})
    assert [item.namespace for item in formal] == [("users", "u1")]

    assert len(await kv.search((), limit=2)) == 2


@pytest.mark.asyncio
async def test_nodes_share_store_across_runs(kv):
    async def remember(state, context):
        item = await context.store.get(("counters",), "visits")
        count = item.value["count"] + 1 if item else 1
        await context.store.put(("counters",), "visits", {"count": count})
        return {"count": count}

    builder = GraphBuilder(state_schema={"count": None})
    builder.add_node("remember", remember)
    builder.set_entry_point("remember")
    graph = builder.compile()
    executor = GraphExecutor(store=kv)

    first = await executor.start(graph)
    second = await executor.start(graph)

    assert first.output == {"count": 1}
    assert second.output == {"count": 2}
