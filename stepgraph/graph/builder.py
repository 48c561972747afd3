"""
Graph Builder - Declare nodes, edges and state fields, then compile.

    builder = GraphBuilder(state_schema={"draft": None, "notes": append})
    builder.add_node("creator", create_draft)
    builder.add_node("critic", review_draft)
    builder.set_entry_point("creator")
    builder.add_edge("creator", "critic")
    builder.add_conditional_edges(
        "critic",
        lambda state: "done" if state.get("complete") else "retry",
        {"done": END, "retry": "creator"},
    )
    graph = builder.compile()

compile() is the fail-fast boundary: every structural problem is raised as
a CompileError before a run can start. The returned GraphSpec is immutable
and can be executed any number of times.
"""

import logging
from collections.abc import Callable
from types import MappingProxyType
from typing import Any

from stepgraph.errors import CompileError
from stepgraph.graph.directives import END, START
from stepgraph.graph.edge import ConditionalEdgeSpec, EdgeSpec, GraphSpec, compute_reach
from stepgraph.graph.node import NodeSpec, make_node_spec
from stepgraph.graph.state import MISSING, Channel, Reducer, channels_from_schema
from stepgraph.graph.validator import GraphValidator

logger = logging.getLogger(__name__)

RESERVED_NAMES = {START, END}


class GraphBuilder:
    """Mutable graph definition. Call compile() to get an executable GraphSpec."""

    def __init__(self, state_schema: Any = None, graph_id: str = "graph"):
        self.graph_id = graph_id
        self._channels: dict[str, Channel] = channels_from_schema(state_schema)
        self._nodes: dict[str, NodeSpec] = {}
        self._edges: list[EdgeSpec] = []
        self._conditional_edges: list[ConditionalEdgeSpec] = []
        self.validator = GraphValidator()

    # === STATE ===

    def add_field(
        self,
        name: str,
        reducer: Reducer | None = None,
        default: Any = MISSING,
        default_factory: Callable[[], Any] | None = None,
    ) -> "GraphBuilder":
        """Declare a state field with its (single) reducer."""
        if name in self._channels:
            raise CompileError(f"State field '{name}' is already declared")
        self._channels[name] = Channel(
            name=name, reducer=reducer, default=default, default_factory=default_factory
        )
        return self

    # === NODES ===

    def add_node(
        self,
        name: str,
        executable: Callable[..., Any],
        defer: bool = False,
        *,
        output_keys: list[str] | None = None,
        destinations: list[str] | None = None,
        spawns: list[str] | None = None,
        max_visits: int | None = None,
        description: str = "",
    ) -> "GraphBuilder":
        """
        Add a node.

        Args:
            name: Unique node name
            executable: fn(state) or fn(state, context), sync or async
            defer: Wait for every task that could still reach this node
            output_keys: Fields the node may write (enables compile-time reducer checks)
            destinations: Nodes the executable may Route to
            spawns: Nodes the executable may Spawn
            max_visits: Per-node iteration ceiling (0 = unlimited)
            description: Human-readable description
        """
        if name in RESERVED_NAMES:
            raise CompileError(f"Node name '{name}' is reserved")
        if name in self._nodes:
            raise CompileError(f"Node '{name}' already exists in the graph")
        self._nodes[name] = make_node_spec(
            name,
            executable,
            defer=defer,
            output_keys=output_keys,
            destinations=destinations,
            spawns=spawns,
            max_visits=max_visits,
            description=description,
        )
        return self

    # === EDGES ===

    def add_edge(self, source: str, target: str) -> "GraphBuilder":
        """Add a static unconditional edge."""
        self._edges.append(EdgeSpec(id=f"{source}->{target}", source=source, target=target))
        return self

    def add_conditional_edges(
        self,
        source: str,
        router_fn: Callable[..., Any],
        path_map: dict[str, str] | list[str] | None = None,
    ) -> "GraphBuilder":
        """
        Add a statically-conditioned branch point.

        Args:
            source: Node whose completion triggers the router
            router_fn: fn(state) -> key | list[key] | END
            path_map: {key: node}, a list of node names, or None (keys are node names)
        """
        if isinstance(path_map, list):
            path_map = {name: name for name in path_map}
        self._conditional_edges.append(
            ConditionalEdgeSpec(
                id=f"{source}?{len(self._conditional_edges)}",
                source=source,
                router=router_fn,
                path_map=dict(path_map) if path_map is not None else None,
            )
        )
        return self

    def set_entry_point(self, name: str) -> "GraphBuilder":
        return self.add_edge(START, name)

    def set_finish_point(self, name: str) -> "GraphBuilder":
        return self.add_edge(name, END)

    # === COMPILE ===

    def compile(self) -> GraphSpec:
        """
        Validate and freeze the graph.

        Raises:
            CompileError: with every structural problem found
        """
        errors = self.validator.validate(
            nodes=self._nodes,
            edges=self._edges,
            conditional_edges=self._conditional_edges,
            channels=self._channels,
        )
        if errors:
            logger.error(f"❌ Graph '{self.graph_id}' failed validation:")
            for err in errors:
                logger.error(f"   • {err}")
            raise CompileError(errors)

        nodes = MappingProxyType(dict(self._nodes))
        edges = tuple(self._edges)
        conditional_edges = tuple(self._conditional_edges)
        reach = compute_reach(nodes, edges, conditional_edges)

        entry_nodes = tuple(
            dict.fromkeys(e.target for e in edges if e.source == START and e.target != END)
        )
        logger.debug(
            f"Compiled graph '{self.graph_id}': {len(nodes)} nodes, "
            f"{len(edges) + len(conditional_edges)} edges, entry={list(entry_nodes)}"
        )
        return GraphSpec(
            id=self.graph_id,
            nodes=nodes,
            edges=edges,
            conditional_edges=conditional_edges,
            channels=MappingProxyType(dict(self._channels)),
            entry_nodes=entry_nodes,
            reach=MappingProxyType(reach),
        )
