"""
Loop Guard - Engine-enforced iteration ceilings.

Cycles are ordinary back edges (or Route directives pointing backwards).
Whether or not a node author implements a completion flag correctly, the
guard stops the run once either ceiling is hit:

- max_supersteps: total supersteps per run
- max visits per node: supersteps in which a node ran (spawned instances
  of a node within one superstep count as a single visit)

The guard is checked before a superstep is scheduled, so the last committed
state is the one produced by the final allowed superstep.
"""

import logging
from dataclasses import dataclass, field

from stepgraph.errors import LoopBoundExceededError
from stepgraph.graph.edge import GraphSpec

logger = logging.getLogger(__name__)


@dataclass
class LoopGuard:
    """Tracks per-run and per-node iteration counts."""

    max_supersteps: int = 100
    max_node_visits: int = 0  # default per-node ceiling, 0 = unlimited
    supersteps: int = 0
    node_visits: dict[str, int] = field(default_factory=dict)

    def limit_for(self, graph: GraphSpec, node_id: str) -> int:
        node = graph.get_node(node_id)
        if node is not None and node.max_visits is not None:
            return node.max_visits
        return self.max_node_visits

    def check(self, graph: GraphSpec, frontier: list[str]) -> None:
        """
        Verify the next superstep is allowed to run.

        Args:
            graph: Compiled graph (for per-node overrides)
            frontier: Node IDs scheduled for the next superstep

        Raises:
            LoopBoundExceededError: if a ceiling would be exceeded
        """
        next_step = self.supersteps + 1
        if self.max_supersteps > 0 and next_step > self.max_supersteps:
            raise LoopBoundExceededError(
                f"Run did not converge within {self.max_supersteps} supersteps "
                f"(next frontier: {sorted(set(frontier))})",
                limit=self.max_supersteps,
            )

        for node_id in dict.fromkeys(frontier):
            limit = self.limit_for(graph, node_id)
            visits = self.node_visits.get(node_id, 0)
            if limit > 0 and visits + 1 > limit:
                raise LoopBoundExceededError(
                    f"Node '{node_id}' reached its visit limit ({visits}/{limit})",
                    node_id=node_id,
                    limit=limit,
                )

    def record(self, frontier: list[str]) -> None:
        """Count a superstep and one visit for every distinct node in it."""
        self.supersteps += 1
        for node_id in dict.fromkeys(frontier):
            self.node_visits[node_id] = self.node_visits.get(node_id, 0) + 1
