import pytest

from stepgraph.errors import InvalidUpdateError
from stepgraph.graph.directives import (
    END,
    Gate,
    Route,
    Spawn,
    SpawnTask,
    Update,
    normalize_result,
    result_from_dict,
    result_to_dict,
    update_of,
)


def test_normalize_shorthand():
    assert normalize_result(None) == Update({})
    assert normalize_result({"a": 1}) == Update({"a": 1})
    assert normalize_result([("worker", {"item": 1}), SpawnTask("worker", {"item": 2})]) == Spawn(
        tasks=[SpawnTask("worker", {"item": 1}), SpawnTask("worker", {"item": 2})]
    )


def test_normalize_keeps_tagged_results():
    route = Route(goto=END, update={"done": True})

    assert normalize_result(route) is route


def test_normalize_gate_wrapping_dict():
    gate = normalize_result(Gate({"draft": "x"}, description="ok?"))

    assert gate.proposal == Update({"draft": "x"})
    assert gate.proposed_params == {"draft": "x"}
    assert gate.description == "ok?"


def test_gate_explicit_params():
    gate = Gate(Route(goto="send", update={"email": "..."}), params={"to": "team"})

    assert gate.proposed_params == {"to": "team"}
    assert update_of(gate) == {"email": "..."}


@pytest.mark.parametrize(
    "value",
    [
        "text",
        42,
        [("worker",)],
        [("worker", "not a mapping")],
        Gate(Gate(Update({}))),
    ],
)
def test_normalize_rejects(value):
    with pytest.raises(InvalidUpdateError):
        normalize_result(value)


def test_route_targets():
    assert Route(goto="a").targets == ["a"]
    assert Route(goto=["a", "b"]).targets == ["a", "b"]


def test_gated_spawn_survives_serialization():
    gate = Gate(
        Spawn(tasks=[SpawnTask("worker", {"item": 1})], update={"n": 1}),
        description="fan out?",
    )

    assert result_from_dict(result_to_dict(gate)) == gate


def test_unknown_result_kind():
    with pytest.raises(InvalidUpdateError):
        result_from_dict({"kind": "teleport"})
