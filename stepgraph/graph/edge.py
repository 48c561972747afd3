"""
Edge Protocol - How nodes connect in a graph.

Edges are compiled once and never change during a run:
- always: traverse every time the source completes with a plain update
- conditional: a router function reads the committed state and returns a
  branch key (or keys); the path map turns keys into target nodes

A node may instead decide its successors at runtime by returning a Route or
Spawn directive. Such a directive replaces the node's compiled edges for
that invocation only.
"""

import logging
from collections.abc import Callable, Mapping
from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, Field

from stepgraph.errors import InvalidRouteError
from stepgraph.graph.directives import END
from stepgraph.graph.node import NodeSpec
from stepgraph.graph.state import Channel

logger = logging.getLogger(__name__)


class EdgeSpec(BaseModel):
    """
    Static edge between two nodes.

    Example:
        EdgeSpec(id="draft->review", source="draft", target="review")
    """

    id: str
    source: str = Field(description="Source node ID (or START)")
    target: str = Field(description="Target node ID (or END)")
    description: str = ""

    model_config = {"frozen": True}


class ConditionalEdgeSpec(BaseModel):
    """
    A statically declared branch point.

    Example:
        ConditionalEdgeSpec(
            id="critic?",
            source="critic",
            router=lambda state: "done" if state["complete"] else "retry",
            path_map={"done": END, "retry": "creator"},
        )
    """

    id: str
    source: str
    router: Callable[..., Any] = Field(exclude=True)
    path_map: dict[str, str] | None = Field(
        default=None,
        description="Map router keys to target nodes; None means keys are node names",
    )
    description: str = ""

    model_config = {"frozen": True, "arbitrary_types_allowed": True}

    @property
    def possible_targets(self) -> list[str] | None:
        """Statically known targets, or None when the router may name any node."""
        if self.path_map is None:
            return None
        return list(dict.fromkeys(self.path_map.values()))

    def resolve(self, keys: Any) -> list[str]:
        """Translate router output (key, list of keys, or END) into target nodes."""
        if keys is None:
            return []
        if isinstance(keys, str):
            keys = [keys]
        targets = []
        for key in keys:
            if key == END:
                targets.append(END)
                continue
            if self.path_map is None:
                targets.append(key)
                continue
            if key not in self.path_map:
                raise InvalidRouteError(
                    f"Router on '{self.source}' returned key {key!r}, "
                    f"expected one of {sorted(self.path_map)}",
                    node_id=self.source,
                )
            targets.append(self.path_map[key])
        return targets


@dataclass(frozen=True)
class GraphSpec:
    """
    Immutable, executable graph produced by GraphBuilder.compile().

    Contains all nodes, edges, channels and precomputed reachability needed
    to schedule supersteps.
    """

    id: str
    nodes: Mapping[str, NodeSpec]
    edges: tuple[EdgeSpec, ...]
    conditional_edges: tuple[ConditionalEdgeSpec, ...]
    channels: Mapping[str, Channel]
    entry_nodes: tuple[str, ...]
    reach: Mapping[str, frozenset[str]]

    def get_node(self, node_id: str) -> NodeSpec | None:
        """Get a node by ID."""
        return self.nodes.get(node_id)

    def node_index(self, node_id: str) -> int:
        """Declaration position of a node (used for deterministic ordering)."""
        for i, name in enumerate(self.nodes):
            if name == node_id:
                return i
        return len(self.nodes)

    def get_outgoing_edges(self, node_id: str) -> list[EdgeSpec]:
        """Static unconditional edges leaving a node, in declaration order."""
        return [e for e in self.edges if e.source == node_id]

    def get_conditional_edges(self, node_id: str) -> list[ConditionalEdgeSpec]:
        """Conditional edges leaving a node."""
        return [e for e in self.conditional_edges if e.source == node_id]

    @property
    def defer_nodes(self) -> list[str]:
        return [name for name, node in self.nodes.items() if node.defer]

    def can_reach(self, source: str, target: str) -> bool:
        """True if a task of `source` could lead to a task of `target`."""
        return source == target or target in self.reach.get(source, frozenset())

    def downstream_joins(self, node_id: str) -> list[str]:
        """Defer nodes a task of `node_id` could still reach (itself included)."""
        return [d for d in self.defer_nodes if self.can_reach(node_id, d)]

def possible_successors(
    node: NodeSpec,
    edges: list[EdgeSpec] | tuple[EdgeSpec, ...],
    conditional_edges: list[ConditionalEdgeSpec] | tuple[ConditionalEdgeSpec, ...],
    all_nodes: list[str],
) -> set[str]:
    """Every node that could be scheduled right after `node` completes."""
    successors = {e.target for e in edges if e.source == node.id}
    for cond in conditional_edges:
        if cond.source != node.id:
            continue
        targets = cond.possible_targets
        successors.update(all_nodes if targets is None else targets)
    successors.update(node.destinations)
    successors.update(node.spawns)
    successors.discard(END)
    return successors


def compute_reach(
    nodes: Mapping[str, NodeSpec],
    edges: list[EdgeSpec] | tuple[EdgeSpec, ...],
    conditional_edges: list[ConditionalEdgeSpec] | tuple[ConditionalEdgeSpec, ...],
) -> dict[str, frozenset[str]]:
    """Transitive closure of possible_successors for every node."""
    all_nodes = list(nodes)
    direct = {
        name: possible_successors(node, edges, conditional_edges, all_nodes)
        for name, node in nodes.items()
    }
    reach: dict[str, frozenset[str]] = {}
    for name in nodes:
        seen: set[str] = set()
        to_visit = list(direct[name])
        while to_visit:
            current = to_visit.pop()
            if current in seen or current not in direct:
                continue
            seen.add(current)
            to_visit.extend(direct[current])
        reach[name] = frozenset(seen)
    return reach
