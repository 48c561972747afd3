"""
Graph validation run by GraphBuilder.compile().

All structural problems are collected into a list so the caller sees every
issue at once; the builder raises them together as a single CompileError
before any run can start.
"""

import logging
from collections.abc import Mapping

from stepgraph.graph.directives import END, START
from stepgraph.graph.edge import ConditionalEdgeSpec, EdgeSpec, possible_successors
from stepgraph.graph.node import NodeSpec
from stepgraph.graph.state import Channel

logger = logging.getLogger(__name__)


class GraphValidator:
    """Structural checks for a graph definition."""

    def validate(
        self,
        nodes: Mapping[str, NodeSpec],
        edges: list[EdgeSpec],
        conditional_edges: list[ConditionalEdgeSpec],
        channels: Mapping[str, Channel],
    ) -> list[str]:
        """
        Validate a graph definition.

        Returns:
            List of error messages (empty if the graph is valid)
        """
        errors: list[str] = []
        errors.extend(self._check_references(nodes, edges, conditional_edges))
        errors.extend(self._check_routing_exclusivity(nodes, conditional_edges))
        errors.extend(self._check_output_keys(nodes, channels))
        errors.extend(self._check_reducer_coverage(nodes, edges, channels))
        if not errors:
            errors.extend(self._check_reachability(nodes, edges, conditional_edges))
        return errors

    def _check_references(
        self,
        nodes: Mapping[str, NodeSpec],
        edges: list[EdgeSpec],
        conditional_edges: list[ConditionalEdgeSpec],
    ) -> list[str]:
        errors = []

        if not any(e.source == START for e in edges):
            errors.append("Graph has no entry point (add an edge from START or set_entry_point)")

        for edge in edges:
            if edge.source == END:
                errors.append(f"Edge '{edge.id}' starts at END")
            elif edge.source != START and edge.source not in nodes:
                errors.append(f"Edge '{edge.id}' references missing source '{edge.source}'")
            if edge.target == START:
                errors.append(f"Edge '{edge.id}' targets START")
            elif edge.target != END and edge.target not in nodes:
                errors.append(f"Edge '{edge.id}' references missing target '{edge.target}'")

        for cond in conditional_edges:
            if cond.source not in nodes:
                errors.append(
                    f"Conditional edge '{cond.id}' references missing source '{cond.source}'"
                )
            for target in cond.possible_targets or []:
                if target != END and target not in nodes:
                    errors.append(
                        f"Conditional edge '{cond.id}' maps to missing target '{target}'"
                    )

        for node in nodes.values():
            for target in node.destinations:
                if target != END and target not in nodes:
                    errors.append(f"Node '{node.id}' declares missing destination '{target}'")
            for target in node.spawns:
                if target not in nodes:
                    errors.append(f"Node '{node.id}' declares missing spawn target '{target}'")

        return errors

    def _check_routing_exclusivity(
        self,
        nodes: Mapping[str, NodeSpec],
        conditional_edges: list[ConditionalEdgeSpec],
    ) -> list[str]:
        errors = []
        for node in nodes.values():
            if node.destinations and any(c.source == node.id for c in conditional_edges):
                errors.append(
                    f"Node '{node.id}' routes itself (destinations={list(node.destinations)}) "
                    "and also has conditional edges; use one or the other"
                )
        return errors

    def _check_output_keys(
        self,
        nodes: Mapping[str, NodeSpec],
        channels: Mapping[str, Channel],
    ) -> list[str]:
        errors = []
        for node in nodes.values():
            for key in node.output_keys:
                if key not in channels:
                    errors.append(f"Node '{node.id}' writes undeclared state field '{key}'")
        return errors

    def _check_reducer_coverage(
        self,
        nodes: Mapping[str, NodeSpec],
        edges: list[EdgeSpec],
        channels: Mapping[str, Channel],
    ) -> list[str]:
        errors = []

        def unreduced(key: str) -> bool:
            channel = channels.get(key)
            return channel is not None and not channel.has_reducer

        # Static fan-out: all unconditional targets of one source run together
        sources = [START, *nodes]
        for source in sources:
            targets = [e.target for e in edges if e.source == source and e.target in nodes]
            if len(targets) < 2:
                continue
            seen_keys: dict[str, str] = {}
            for target in targets:
                for key in nodes[target].output_keys:
                    if key in seen_keys and seen_keys[key] != target and unreduced(key):
                        errors.append(
                            f"Fan-out from '{source}': nodes '{seen_keys[key]}' and "
                            f"'{target}' both write field '{key}' which has no reducer"
                        )
                    seen_keys.setdefault(key, target)

        # Spawned instances of one node always run side by side
        for node in nodes.values():
            for target in node.spawns:
                spawned = nodes.get(target)
                if spawned is None:
                    continue
                for key in spawned.output_keys:
                    if unreduced(key):
                        errors.append(
                            f"Node '{target}' is spawned in parallel by '{node.id}' but "
                            f"writes field '{key}' which has no reducer"
                        )

        return errors

    def _check_reachability(
        self,
        nodes: Mapping[str, NodeSpec],
        edges: list[EdgeSpec],
        conditional_edges: list[ConditionalEdgeSpec],
    ) -> list[str]:
        all_nodes = list(nodes)
        reachable: set[str] = set()
        to_visit = [e.target for e in edges if e.source == START and e.target in nodes]

        while to_visit:
            current = to_visit.pop()
            if current in reachable:
                continue
            reachable.add(current)
            to_visit.extend(
                possible_successors(nodes[current], edges, conditional_edges, all_nodes)
            )

        return [
            f"Node '{name}' is unreachable from entry" for name in nodes if name not in reachable
        ]
