"""
Frontier computation between supersteps.

After a superstep commits, the scheduler turns the completed tasks'
results into the next frontier:

- Update  -> compiled edges (unconditional targets + router decisions)
- Route   -> exactly the named targets (compiled edges ignored)
- Spawn   -> one task instance per SpawnTask (compiled edges ignored)

Defer nodes are never scheduled directly. They wait in the JoinTracker
until no scheduled or running task could still reach them. The tracker
keeps one pending counter per defer node: incremented for every task that
is scheduled upstream of it (dynamically spawned instances included) and
decremented when that task completes.
"""

import inspect
import logging
from dataclasses import dataclass, field
from typing import Any

from stepgraph.errors import InvalidRouteError, NodeExecutionError
from stepgraph.graph.directives import END, Gate, NodeResult, Route, Spawn, SpawnTask
from stepgraph.graph.edge import GraphSpec

logger = logging.getLogger(__name__)


@dataclass
class PendingTask:
    """A task scheduled for a superstep."""

    task_id: str
    node_id: str
    payload: dict[str, Any] | None = None  # private input of a spawned instance
    spawned: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "task_id": self.task_id,
            "node_id": self.node_id,
            "payload": self.payload,
            "spawned": self.spawned,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "PendingTask":
        return cls(
            task_id=data["task_id"],
            node_id=data["node_id"],
            payload=data.get("payload"),
            spawned=data.get("spawned", False),
        )


@dataclass
class TaskOutcome:
    """What a finished task produced."""

    task: PendingTask
    result: NodeResult | None = None
    error: BaseException | None = None

    @property
    def succeeded(self) -> bool:
        return self.error is None


@dataclass
class JoinTracker:
    """Pending counters and waiting set for defer (join) nodes."""

    graph: GraphSpec
    pending: dict[str, int] = field(default_factory=dict)
    waiting: list[str] = field(default_factory=list)

    def on_scheduled(self, node_id: str) -> None:
        for join in self.graph.downstream_joins(node_id):
            self.pending[join] = self.pending.get(join, 0) + 1

    def on_completed(self, node_id: str) -> None:
        for join in self.graph.downstream_joins(node_id):
            remaining = self.pending.get(join, 0) - 1
            self.pending[join] = max(remaining, 0)

    def wait(self, node_id: str) -> None:
        if node_id not in self.waiting:
            self.waiting.append(node_id)

    def release_ready(self) -> list[str]:
        """Pop every waiting join whose pending counter reached zero."""
        ready = [j for j in self.waiting if self.pending.get(j, 0) == 0]
        if not ready:
            return []

        # A join that another released join could still reach keeps waiting
        blocked = {
            j
            for j in ready
            if any(other != j and self.graph.can_reach(other, j) for other in ready)
        }
        released = [j for j in ready if j not in blocked] or ready[:1]
        for join in released:
            self.waiting.remove(join)
        return released


class Scheduler:
    """Builds each superstep's frontier from the previous one's outcomes."""

    def __init__(self, graph: GraphSpec, joins: JoinTracker):
        self.graph = graph
        self.joins = joins

    def initial_frontier(self, superstep: int) -> list[PendingTask]:
        return self._schedule(superstep, list(self.graph.entry_nodes), [])

    async def next_frontier(
        self,
        outcomes: list[TaskOutcome],
        state: dict[str, Any],
        superstep: int,
    ) -> list[PendingTask]:
        """
        Compute the frontier for `superstep` from the previous superstep.

        Args:
            outcomes: Completed tasks of the previous superstep (resolved, no gates)
            state: Committed state after the previous superstep
            superstep: Index of the superstep being scheduled

        Raises:
            InvalidRouteError: a Route/Spawn/router named an unknown node
            NodeExecutionError: a router function raised
        """
        for outcome in outcomes:
            self.joins.on_completed(outcome.task.node_id)

        static_targets: list[str] = []
        spawned: list[SpawnTask] = []
        for outcome in outcomes:
            targets, spawns = await self._successors(outcome, state)
            static_targets.extend(targets)
            spawned.extend(spawns)

        direct: list[str] = []
        for target in dict.fromkeys(static_targets):
            if target == END:
                continue
            if self.graph.nodes[target].defer:
                self.joins.wait(target)
            else:
                direct.append(target)

        return self._schedule(superstep, direct, spawned)

    def _schedule(
        self, superstep: int, direct: list[str], spawned: list[SpawnTask]
    ) -> list[PendingTask]:
        counters: dict[str, int] = {}

        def make_task(node_id: str, payload: dict[str, Any] | None, is_spawn: bool) -> PendingTask:
            index = counters.get(node_id, 0)
            counters[node_id] = index + 1
            return PendingTask(
                task_id=f"{superstep}:{node_id}:{index}",
                node_id=node_id,
                payload=payload,
                spawned=is_spawn,
            )

        for node_id in direct:
            self.joins.on_scheduled(node_id)
        for spawn in spawned:
            self.joins.on_scheduled(spawn.node)

        released = self.joins.release_ready()
        for node_id in released:
            self.joins.on_scheduled(node_id)
            logger.info(f"   ⑃ Join '{node_id}' released (all upstream tasks completed)")

        static_nodes = sorted(set(direct) | set(released), key=self.graph.node_index)
        tasks = [make_task(node_id, None, False) for node_id in static_nodes]
        tasks.extend(make_task(s.node, dict(s.state), True) for s in spawned)
        return tasks

    async def _successors(
        self, outcome: TaskOutcome, state: dict[str, Any]
    ) -> tuple[list[str], list[SpawnTask]]:
        result = outcome.result
        node_id = outcome.task.node_id
        if isinstance(result, Gate):
            raise RuntimeError(f"Unresolved gate from task {outcome.task.task_id}")

        if isinstance(result, Route):
            targets = result.targets
            self._check_targets(node_id, targets, "Route")
            logger.info(f"   → {node_id} routing directly to: {targets}")
            return targets, []

        if isinstance(result, Spawn):
            for task in result.tasks:
                if task.node not in self.graph.nodes:
                    raise InvalidRouteError(
                        f"Spawn from '{node_id}' names unknown node '{task.node}'",
                        node_id=node_id,
                    )
            if not result.tasks:
                # Nothing to wait for: hand the branch straight to its nearest join
                joins = self._nearest_joins(node_id)
                logger.info(f"   ⑂ {node_id} spawned no tasks; joining at {joins}")
                return joins, []
            logger.info(
                f"   ⑂ {node_id} spawned {len(result.tasks)} task(s): "
                f"{sorted({t.node for t in result.tasks})}"
            )
            return [], list(result.tasks)

        targets = [e.target for e in self.graph.get_outgoing_edges(node_id)]
        for cond in self.graph.get_conditional_edges(node_id):
            try:
                keys = cond.router(state)
                if inspect.isawaitable(keys):
                    keys = await keys
            except Exception as e:
                raise NodeExecutionError(node_id, outcome.task.task_id, e) from e
            resolved = cond.resolve(keys)
            self._check_targets(node_id, resolved, "Router")
            logger.debug(f"   Router on {node_id} chose {resolved}")
            targets.extend(resolved)
        return targets, []

    def _nearest_joins(self, node_id: str) -> list[str]:
        """Downstream joins of a node that no other downstream join leads to."""
        joins = [j for j in self.graph.downstream_joins(node_id) if j != node_id]
        return [
            j for j in joins if not any(o != j and self.graph.can_reach(o, j) for o in joins)
        ]

    def _check_targets(self, node_id: str, targets: list[str], kind: str) -> None:
        for target in targets:
            if target != END and target not in self.graph.nodes:
                raise InvalidRouteError(
                    f"{kind} from '{node_id}' names unknown node '{target}'", node_id=node_id
                )
