"""
Node return values.

A node's executable returns one of a small set of tagged variants:

- Update(values)            plain partial state update; compiled edges apply
- Route(goto, update)       explicit successor(s); replaces compiled edges
- Spawn(tasks, update)      runtime-sized fan-out of independent task instances
- Gate(proposal, ...)       proposed result that needs external approval

Plain dicts, None and lists of (node, state) pairs are accepted as shorthand
and normalized by `normalize_result`.
"""

from collections.abc import Mapping, Sequence
from dataclasses import dataclass, field
from typing import Any, Union

from stepgraph.errors import InvalidUpdateError

START = "__start__"
END = "__end__"


@dataclass(frozen=True)
class Update:
    """Partial state update."""

    values: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Route:
    """
    Routing directive.

    The decision is made by the node against the snapshot it received; the
    update is merged through the normal reducers before successors run.

    Example:
        return Route(goto="path_b", update={"classification": "category_b"})
    """

    goto: str | list[str]
    update: dict[str, Any] = field(default_factory=dict)

    @property
    def targets(self) -> list[str]:
        if isinstance(self.goto, str):
            return [self.goto]
        return list(self.goto)


@dataclass(frozen=True)
class SpawnTask:
    """One dynamically spawned task instance: node name + private input."""

    node: str
    state: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Spawn:
    """
    Spawn directive: one independent task per SpawnTask.

    Example:
        return Spawn([SpawnTask("worker", {"item": i}) for i in state["items"]])
    """

    tasks: list[SpawnTask] = field(default_factory=list)
    update: dict[str, Any] = field(default_factory=dict)


@dataclass(frozen=True)
class Gate:
    """
    A proposed result held for external approval.

    `proposal` is what the node would have returned without gating. `params`
    is what the approver sees; it defaults to the proposal's state update.
    """

    proposal: Union[Update, Route, Spawn]
    description: str = ""
    params: dict[str, Any] | None = None

    @property
    def proposed_params(self) -> dict[str, Any]:
        if self.params is not None:
            return dict(self.params)
        return dict(update_of(self.proposal))


NodeResult = Union[Update, Route, Spawn, Gate]


def update_of(result: NodeResult) -> dict[str, Any]:
    """Return the state update carried by a result."""
    if isinstance(result, Update):
        return result.values
    if isinstance(result, (Route, Spawn)):
        return result.update
    if isinstance(result, Gate):
        return update_of(result.proposal)
    return {}


def _as_spawn_task(item: Any) -> SpawnTask:
    if isinstance(item, SpawnTask):
        return item
    if isinstance(item, Sequence) and not isinstance(item, str) and len(item) == 2:
        node, state = item
        if isinstance(node, str) and isinstance(state, Mapping):
            return SpawnTask(node=node, state=dict(state))
    raise InvalidUpdateError(f"Cannot interpret {item!r} as a (node_name, partial_state) pair")


def normalize_result(value: Any) -> NodeResult:
    """Turn whatever an executable returned into a tagged result."""
    if value is None:
        return Update({})
    if isinstance(value, (Update, Route, Spawn)):
        return value
    if isinstance(value, Gate):
        if isinstance(value.proposal, Gate):
            raise InvalidUpdateError("A Gate cannot wrap another Gate")
        if isinstance(value.proposal, (Update, Route, Spawn)):
            return value
        return Gate(
            proposal=normalize_result(value.proposal),
            description=value.description,
            params=value.params,
        )
    if isinstance(value, Mapping):
        return Update(dict(value))
    if isinstance(value, list):
        return Spawn(tasks=[_as_spawn_task(item) for item in value])
    raise InvalidUpdateError(
        f"Unsupported node return type {type(value).__name__}; expected dict, "
        "Update, Route, Spawn, Gate, list of (node, state) pairs, or None"
    )


def result_to_dict(result: NodeResult) -> dict[str, Any]:
    """Serialize a tagged result (for checkpoints)."""
    if isinstance(result, Update):
        return {"kind": "update", "update": result.values}
    if isinstance(result, Route):
        return {"kind": "route", "goto": result.goto, "update": result.update}
    if isinstance(result, Spawn):
        return {
            "kind": "spawn",
            "tasks": [{"node": t.node, "state": t.state} for t in result.tasks],
            "update": result.update,
        }
    if isinstance(result, Gate):
        return {
            "kind": "gate",
            "proposal": result_to_dict(result.proposal),
            "description": result.description,
            "params": result.params,
        }
    raise InvalidUpdateError(f"Cannot serialize result {result!r}")


def result_from_dict(data: Mapping[str, Any]) -> NodeResult:
    """Inverse of result_to_dict."""
    kind = data.get("kind")
    if kind == "update":
        return Update(dict(data.get("update") or {}))
    if kind == "route":
        return Route(goto=data["goto"], update=dict(data.get("update") or {}))
    if kind == "spawn":
        return Spawn(
            tasks=[
                SpawnTask(node=t["node"], state=dict(t.get("state") or {})) for t in data["tasks"]
            ],
            update=dict(data.get("update") or {}),
        )
    if kind == "gate":
        return Gate(
            proposal=result_from_dict(data["proposal"]),
            description=data.get("description", ""),
            params=data.get("params"),
        )
    raise InvalidUpdateError(f"Unknown result kind {kind!r}")
