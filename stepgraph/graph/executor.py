"""
Graph Executor - Runs compiled graphs superstep by superstep.

Each superstep:
1. Takes the current frontier (tasks ready to run)
2. Runs every task concurrently against a private copy of committed state
3. Waits for all of them (the barrier)
4. Commits their updates through the field reducers
5. Computes the next frontier from edges, routes, spawns and joins

The run ends when the frontier is empty (COMPLETED), a task fails (FAILED),
an iteration ceiling is hit (BOUND_EXCEEDED), a cancellation request is
seen between supersteps (CANCELLED), or a task asks for approval
(SUSPENDED, resumable with `resume`).
"""

import asyncio
import copy
import logging
import uuid
from collections.abc import AsyncIterator, Iterable, Mapping
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from stepgraph.config import ExecutorConfig
from stepgraph.errors import (
    InvalidRouteError,
    InvalidUpdateError,
    LoopBoundExceededError,
    NodeExecutionError,
    ReducerConflictError,
    ResumeError,
)
from stepgraph.graph.checkpoint_config import DEFAULT_CHECKPOINT_CONFIG, CheckpointConfig
from stepgraph.graph.directives import Gate, result_from_dict, result_to_dict, update_of
from stepgraph.graph.edge import GraphSpec
from stepgraph.graph.hitl import Decision, GatedAction, apply_decision
from stepgraph.graph.loop_guard import LoopGuard
from stepgraph.graph.node import NodeContext, invoke_node
from stepgraph.graph.scheduler import JoinTracker, PendingTask, Scheduler, TaskOutcome
from stepgraph.graph.state import StateStore
from stepgraph.observability import set_trace_context
from stepgraph.schemas.checkpoint import Checkpoint
from stepgraph.schemas.run import RunStatus
from stepgraph.storage.checkpoint_store import CheckpointStore, InMemoryCheckpointStore
from stepgraph.storage.kv_store import KeyValueStore


@dataclass
class ExecutionResult:
    """Result of executing (or resuming) a run."""

    run_id: str
    status: RunStatus
    output: dict[str, Any] = field(default_factory=dict)  # Last committed state
    error: BaseException | None = None
    failed_node: str | None = None
    supersteps: int = 0
    path: list[list[str]] = field(default_factory=list)  # Node IDs per superstep
    node_visit_counts: dict[str, int] = field(default_factory=dict)
    pending_actions: list[GatedAction] = field(default_factory=list)  # Set when suspended

    @property
    def success(self) -> bool:
        return self.status == RunStatus.COMPLETED

    @property
    def is_suspended(self) -> bool:
        return self.status == RunStatus.SUSPENDED


@dataclass
class SuperstepDelta:
    """What one superstep changed. The last delta of a stream carries the result."""

    run_id: str
    superstep: int
    nodes: list[str] = field(default_factory=list)  # Node of every task, in frontier order
    updates: dict[str, Any] = field(default_factory=dict)  # Committed field values
    next_nodes: list[str] = field(default_factory=list)
    status: RunStatus = RunStatus.RUNNING
    result: ExecutionResult | None = None

    @property
    def is_final(self) -> bool:
        return self.result is not None


@dataclass
class _Run:
    """Mutable bookkeeping of one run while it executes."""

    run_id: str
    graph: GraphSpec
    state: StateStore
    guard: LoopGuard
    joins: JoinTracker
    scheduler: Scheduler
    frontier: list[PendingTask] = field(default_factory=list)
    path: list[list[str]] = field(default_factory=list)

    @property
    def superstep(self) -> int:
        """Number of committed supersteps."""
        return self.guard.supersteps


class _Halt(Exception):
    """Internal signal: the run stops with a terminal status."""

    def __init__(
        self,
        status: RunStatus,
        error: BaseException | None = None,
        failed_node: str | None = None,
        nodes: list[str] | None = None,
        saved: bool = False,
    ):
        self.status = status
        self.error = error
        self.failed_node = failed_node
        self.nodes = nodes or []
        self.saved = saved  # checkpoint already written
        super().__init__(status.value)


def _new_run_id() -> str:
    return f"run_{datetime.now().strftime('%Y%m%d_%H%M%S')}_{uuid.uuid4().hex[:8]}"


def _outcome_to_dict(outcome: TaskOutcome) -> dict[str, Any]:
    return {"task": outcome.task.to_dict(), "result": result_to_dict(outcome.result)}


def _outcome_from_dict(data: Mapping[str, Any]) -> TaskOutcome:
    return TaskOutcome(
        task=PendingTask.from_dict(data["task"]),
        result=result_from_dict(data["result"]),
    )


class GraphExecutor:
    """
    Executes compiled graphs.

    Example:
        executor = GraphExecutor(
            config=ExecutorConfig(max_supersteps=20),
            checkpoint_store=FileCheckpointStore("./checkpoints"),
        )

        result = await executor.start(graph, {"items": ["a", "b", "c"]})
        if result.is_suspended:
            result = await executor.resume(
                graph, result.run_id, [Decision.approve() for _ in result.pending_actions]
            )

    A single executor can run many graphs and many runs concurrently; all
    per-run state lives in the run itself and in the checkpoint store.
    """

    def __init__(
        self,
        config: ExecutorConfig | None = None,
        checkpoint_store: CheckpointStore | None = None,
        checkpoint_config: CheckpointConfig | None = None,
        store: KeyValueStore | None = None,
    ):
        """
        Initialize the executor.

        Args:
            config: Run limits (defaults come from ~/.stepgraph/configuration.json)
            checkpoint_store: Where runs are persisted (in-memory if omitted)
            checkpoint_config: When runs are persisted
            store: Cross-run key-value store handed to nodes via NodeContext
        """
        self.config = config or ExecutorConfig()
        self.checkpoint_store = checkpoint_store or InMemoryCheckpointStore()
        self.checkpoint_config = checkpoint_config or DEFAULT_CHECKPOINT_CONFIG
        self.store = store
        self.logger = logging.getLogger(__name__)
        self._cancel_requests: dict[str, asyncio.Event] = {}

    # === INVOCATION SURFACE ===

    async def start(
        self,
        graph: GraphSpec,
        initial_state: Mapping[str, Any] | None = None,
        run_id: str | None = None,
    ) -> ExecutionResult:
        """
        Run a graph from its entry nodes until it stops.

        Args:
            graph: Compiled graph
            initial_state: Values seeded into state before the first superstep
            run_id: Identifier for the run (generated if omitted)

        Returns:
            ExecutionResult with a terminal or SUSPENDED status

        Raises:
            InvalidUpdateError: initial_state names an undeclared field
            CheckpointError: the checkpoint store failed
        """
        return await self._drain(self.stream(graph, initial_state, run_id))

    async def stream(
        self,
        graph: GraphSpec,
        initial_state: Mapping[str, Any] | None = None,
        run_id: str | None = None,
    ) -> AsyncIterator[SuperstepDelta]:
        """
        Run a graph, yielding one SuperstepDelta per superstep.

        The iterator is finite and cannot be restarted. Its last delta has
        `is_final` set and carries the ExecutionResult.
        """
        run = self._new_run(graph, run_id or _new_run_id(), initial_state or {})
        self.logger.info(f"🚀 Starting run {run.run_id} on graph '{graph.id}'")
        self.logger.info(f"   Entry nodes: {list(graph.entry_nodes)}")
        run.frontier = run.scheduler.initial_frontier(1)
        async for delta in self._execute(run):
            yield delta

    async def resume(
        self,
        graph: GraphSpec,
        run_id: str,
        decisions: Iterable[Decision | str | dict] | None = None,
    ) -> ExecutionResult:
        """
        Continue a run from its latest checkpoint.

        Args:
            graph: The compiled graph the run was started with
            run_id: Run to resume
            decisions: One decision per pending gated action, in order
                (required for SUSPENDED runs, not allowed otherwise)

        Raises:
            ResumeError: unknown or completed run, graph mismatch, or a
                decision count that does not match the pending actions
            CheckpointError: the checkpoint store failed
        """
        return await self._drain(self.resume_stream(graph, run_id, decisions))

    async def resume_stream(
        self,
        graph: GraphSpec,
        run_id: str,
        decisions: Iterable[Decision | str | dict] | None = None,
    ) -> AsyncIterator[SuperstepDelta]:
        """Streaming variant of resume()."""
        checkpoint = await self.checkpoint_store.load(run_id)
        if checkpoint is None:
            raise ResumeError(f"No checkpoint found for run '{run_id}'")
        if not checkpoint.status.is_resumable:
            raise ResumeError(f"Run '{run_id}' already completed")
        if checkpoint.graph_id != graph.id:
            raise ResumeError(
                f"Run '{run_id}' was started on graph '{checkpoint.graph_id}', not '{graph.id}'"
            )

        decision_list = [Decision.coerce(d) for d in decisions or []]
        if checkpoint.status != RunStatus.SUSPENDED and decision_list:
            raise ResumeError(
                f"Run '{run_id}' is {checkpoint.status.value}; decisions are only "
                "accepted for suspended runs"
            )

        run = self._restore_run(graph, checkpoint)
        self.logger.info(
            f"🔄 Resuming run {run_id} after superstep {run.superstep} "
            f"(was {checkpoint.status.value})"
        )

        if checkpoint.status == RunStatus.SUSPENDED:
            held = self._apply_decisions(checkpoint, decision_list)
            try:
                delta = await self._commit_superstep(run, held, run.superstep + 1)
            except _Halt as halt:
                yield await self._finish(run, halt)
                return
            yield delta
            if delta.is_final:
                return
        elif checkpoint.unrouted:
            outcomes = [_outcome_from_dict(d) for d in checkpoint.unrouted]
            try:
                await self._route(run, outcomes, run.superstep + 1)
            except _Halt as halt:
                yield await self._finish(run, halt)
                return

        async for delta in self._execute(run):
            yield delta

    def request_cancel(self, run_id: str) -> bool:
        """
        Ask a run to stop at the next superstep boundary.

        Tasks already running are allowed to finish and their superstep is
        committed; the run then ends with status CANCELLED.

        Returns:
            False if no run with this id is executing on this executor
        """
        cancel = self._cancel_requests.get(run_id)
        if cancel is None:
            self.logger.warning(f"Cancellation ignored: run {run_id} is not executing")
            return False
        cancel.set()
        self.logger.info(f"⏸ Cancellation requested for run {run_id}")
        return True

    # === RUN SETUP ===

    def _build_run(self, graph: GraphSpec, run_id: str) -> _Run:
        state = StateStore(graph.channels, strict_reducers=self.config.strict_reducers)
        guard = LoopGuard(
            max_supersteps=self.config.max_supersteps,
            max_node_visits=self.config.max_node_visits,
        )
        joins = JoinTracker(graph)
        return _Run(
            run_id=run_id,
            graph=graph,
            state=state,
            guard=guard,
            joins=joins,
            scheduler=Scheduler(graph, joins),
        )

    def _new_run(self, graph: GraphSpec, run_id: str, initial_state: Mapping[str, Any]) -> _Run:
        run = self._build_run(graph, run_id)
        run.state.seed(copy.deepcopy(dict(initial_state)))
        return run

    def _restore_run(self, graph: GraphSpec, checkpoint: Checkpoint) -> _Run:
        run = self._build_run(graph, checkpoint.run_id)
        run.state.seed(copy.deepcopy(checkpoint.state))
        run.guard.supersteps = checkpoint.superstep
        run.guard.node_visits = dict(checkpoint.node_visits)
        run.joins.pending = dict(checkpoint.join_pending)
        run.joins.waiting = list(checkpoint.join_waiting)
        run.frontier = [PendingTask.from_dict(t) for t in checkpoint.next_tasks]
        run.path = [list(step) for step in checkpoint.path]
        return run

    def _apply_decisions(
        self, checkpoint: Checkpoint, decisions: list[Decision]
    ) -> list[TaskOutcome]:
        actions = [GatedAction.from_dict(a) for a in checkpoint.gated_actions]
        if len(decisions) != len(actions):
            raise ResumeError(
                f"Run '{checkpoint.run_id}' has {len(actions)} pending gated action(s) "
                f"but {len(decisions)} decision(s) were given"
            )

        outcomes = [_outcome_from_dict(d) for d in checkpoint.pending_writes]
        by_action = dict(zip((a.action_id for a in actions), decisions, strict=True))
        for outcome in outcomes:
            if not isinstance(outcome.result, Gate):
                continue
            decision = by_action.get(outcome.task.task_id)
            if decision is None:
                raise ResumeError(
                    f"Checkpoint of run '{checkpoint.run_id}' has no gated action "
                    f"for task {outcome.task.task_id}"
                )
            self.logger.info(f"   ✓ {outcome.task.node_id}: {decision.type.value}")
            outcome.result = apply_decision(outcome.result, decision)
        return outcomes

    # === MAIN LOOP ===

    async def _execute(self, run: _Run) -> AsyncIterator[SuperstepDelta]:
        set_trace_context(run_id=run.run_id, graph_id=run.graph.id)
        self._cancel_requests[run.run_id] = asyncio.Event()
        try:
            while True:
                try:
                    delta = await self._step(run)
                except _Halt as halt:
                    yield await self._finish(run, halt)
                    return
                yield delta
                if delta.is_final:
                    return
        finally:
            self._cancel_requests.pop(run.run_id, None)

    async def _step(self, run: _Run) -> SuperstepDelta:
        """Run one superstep. Raises _Halt when the run stops."""
        cancel = self._cancel_requests.get(run.run_id)
        if cancel is not None and cancel.is_set():
            self.logger.info("⏸ Cancellation detected - stopping at superstep boundary")
            raise _Halt(RunStatus.CANCELLED)

        if not run.frontier:
            raise _Halt(RunStatus.COMPLETED)

        nodes = [t.node_id for t in run.frontier]
        try:
            run.guard.check(run.graph, nodes)
        except LoopBoundExceededError as e:
            self.logger.warning(f"⚠ {e}")
            raise _Halt(RunStatus.BOUND_EXCEEDED, error=e, failed_node=e.node_id) from e

        superstep = run.superstep + 1
        set_trace_context(superstep=superstep)
        self.logger.info(f"\n▶ Superstep {superstep}: {nodes}")

        try:
            outcomes = await self._run_tasks(run, run.frontier, superstep)
        except asyncio.CancelledError:
            self.logger.info("⏸ Execution cancelled - saving state for resume")
            raise _Halt(RunStatus.CANCELLED, nodes=nodes) from None

        failed = next((o for o in outcomes if not o.succeeded), None)
        if failed is not None:
            self.logger.error(f"   ✗ {failed.task.task_id} failed: {failed.error}")
            raise _Halt(
                RunStatus.FAILED, error=failed.error, failed_node=failed.task.node_id, nodes=nodes
            )

        order = {t.task_id: i for i, t in enumerate(run.frontier)}
        gated = sorted(
            (o for o in outcomes if isinstance(o.result, Gate)),
            key=lambda o: order[o.task.task_id],
        )
        if gated:
            return await self._suspend(run, outcomes, gated, superstep)

        return await self._commit_superstep(run, outcomes, superstep)

    async def _run_tasks(
        self, run: _Run, frontier: list[PendingTask], superstep: int
    ) -> list[TaskOutcome]:
        """Run a frontier concurrently. Outcomes are returned in completion order."""
        snapshot = run.state.snapshot()
        limit = self.config.max_concurrency
        semaphore = asyncio.Semaphore(limit) if limit else None
        outcomes: list[TaskOutcome] = []

        async def run_task(task: PendingTask) -> None:
            set_trace_context(node_id=task.node_id, task_id=task.task_id)
            node = run.graph.nodes[task.node_id]
            state = copy.deepcopy(snapshot)
            if task.payload:
                state.update(copy.deepcopy(task.payload))
            context = NodeContext(
                run_id=run.run_id,
                graph_id=run.graph.id,
                node_id=task.node_id,
                task_id=task.task_id,
                superstep=superstep,
                store=self.store,
                spawned=task.spawned,
            )
            try:
                if semaphore is not None:
                    async with semaphore:
                        result = await invoke_node(node, state, context)
                else:
                    result = await invoke_node(node, state, context)
            except InvalidUpdateError as e:
                outcomes.append(TaskOutcome(task=task, error=e))
            except Exception as e:
                self.logger.debug(f"Task {task.task_id} raised", exc_info=True)
                outcomes.append(
                    TaskOutcome(task=task, error=NodeExecutionError(task.node_id, task.task_id, e))
                )
            else:
                self.logger.debug(f"   ✓ {task.task_id} finished")
                outcomes.append(TaskOutcome(task=task, result=result))

        await asyncio.gather(*(run_task(task) for task in frontier))
        return outcomes

    async def _commit_superstep(
        self, run: _Run, outcomes: list[TaskOutcome], superstep: int
    ) -> SuperstepDelta:
        """Merge outcomes into state, then schedule their successors."""
        nodes = [t.node_id for t in run.frontier]
        writers = {o.task.task_id: o.task.node_id for o in outcomes}
        try:
            for outcome in outcomes:
                run.state.stage_update(update_of(outcome.result), writer=outcome.task.task_id)
            updates = run.state.commit()
        except ReducerConflictError as e:
            run.state.discard()
            self.logger.error(f"   ✗ {e}")
            raise _Halt(
                RunStatus.FAILED, error=e, failed_node=writers.get(e.writers[0]), nodes=nodes
            ) from e
        except InvalidUpdateError as e:
            run.state.discard()
            self.logger.error(f"   ✗ {e}")
            raise _Halt(RunStatus.FAILED, error=e, nodes=nodes) from e

        if updates:
            self.logger.info(f"   Committed: {sorted(updates)}")
        run.guard.record(nodes)
        run.path.append(nodes)

        delta = SuperstepDelta(
            run_id=run.run_id,
            superstep=superstep,
            nodes=nodes,
            updates=copy.deepcopy(updates),
        )
        try:
            await self._route(run, outcomes, superstep + 1)
        except _Halt as halt:
            return await self._finish(run, halt, delta)

        delta.next_nodes = [t.node_id for t in run.frontier]
        if not run.frontier:
            return await self._finish(run, _Halt(RunStatus.COMPLETED), delta)

        if self.checkpoint_config.should_checkpoint_superstep():
            await self._save(run, RunStatus.RUNNING)
        return delta

    async def _route(self, run: _Run, outcomes: list[TaskOutcome], superstep: int) -> None:
        """Compute the next frontier. On failure the outcomes are kept for resume."""
        pending, waiting = dict(run.joins.pending), list(run.joins.waiting)
        try:
            run.frontier = await run.scheduler.next_frontier(
                outcomes, run.state.snapshot(), superstep
            )
        except (InvalidRouteError, NodeExecutionError) as e:
            run.joins.pending, run.joins.waiting = pending, waiting
            run.frontier = []
            failed_node = e.node_id
            self.logger.error(f"   ✗ Routing failed: {e}")
            await self._save_terminal(
                run,
                RunStatus.FAILED,
                error=e,
                failed_node=failed_node,
                unrouted=[_outcome_to_dict(o) for o in outcomes],
            )
            raise _Halt(RunStatus.FAILED, error=e, failed_node=failed_node, saved=True) from e

    async def _suspend(
        self,
        run: _Run,
        outcomes: list[TaskOutcome],
        gated: list[TaskOutcome],
        superstep: int,
    ) -> SuperstepDelta:
        """Hold the whole superstep and persist it until decisions arrive."""
        # Fail now on undeclared fields rather than after approval
        try:
            for outcome in outcomes:
                run.state.stage_update(update_of(outcome.result), writer=outcome.task.task_id)
        except InvalidUpdateError as e:
            raise _Halt(
                RunStatus.FAILED, error=e, nodes=[t.node_id for t in run.frontier]
            ) from e
        finally:
            run.state.discard()

        actions = [
            GatedAction(
                action_id=o.task.task_id,
                node_id=o.task.node_id,
                params=o.result.proposed_params,
                description=o.result.description,
            )
            for o in gated
        ]
        self.logger.info(f"⏸ Suspended at superstep {superstep}: {len(actions)} gated action(s)")
        for action in actions:
            self.logger.info(f"   • {action.node_id}: {action.description or action.params}")

        await self._save(
            run,
            RunStatus.SUSPENDED,
            pending_writes=[_outcome_to_dict(o) for o in outcomes],
            gated_actions=[a.to_dict() for a in actions],
        )

        result = self._result(run, RunStatus.SUSPENDED)
        result.pending_actions = actions
        return SuperstepDelta(
            run_id=run.run_id,
            superstep=superstep,
            nodes=[t.node_id for t in run.frontier],
            next_nodes=[t.node_id for t in run.frontier],
            status=RunStatus.SUSPENDED,
            result=result,
        )

    async def _finish(
        self, run: _Run, halt: _Halt, delta: SuperstepDelta | None = None
    ) -> SuperstepDelta:
        """Build the final delta for a terminal status."""
        if halt.status == RunStatus.COMPLETED:
            self.logger.info("\n✓ Run complete!")
            self.logger.info(f"   Supersteps: {run.superstep}")
            self.logger.info(f"   Path: {' → '.join('+'.join(step) for step in run.path)}")
        else:
            self.logger.info(f"■ Run {run.run_id} ended: {halt.status.value}")

        if not halt.saved:
            await self._save_terminal(
                run, halt.status, error=halt.error, failed_node=halt.failed_node
            )

        result = self._result(run, halt.status, error=halt.error, failed_node=halt.failed_node)
        if delta is None:
            delta = SuperstepDelta(
                run_id=run.run_id,
                superstep=run.superstep + (1 if halt.nodes else 0),
                nodes=list(halt.nodes),
                next_nodes=[t.node_id for t in run.frontier],
            )
        delta.status = halt.status
        delta.result = result
        return delta

    # === CHECKPOINTS ===

    async def _save_terminal(
        self,
        run: _Run,
        status: RunStatus,
        error: BaseException | None = None,
        failed_node: str | None = None,
        unrouted: list[dict[str, Any]] | None = None,
    ) -> None:
        if self.checkpoint_config.should_checkpoint_terminal():
            await self._save(run, status, error=error, failed_node=failed_node, unrouted=unrouted)

    async def _save(
        self,
        run: _Run,
        status: RunStatus,
        pending_writes: list[dict[str, Any]] | None = None,
        gated_actions: list[dict[str, Any]] | None = None,
        unrouted: list[dict[str, Any]] | None = None,
        error: BaseException | None = None,
        failed_node: str | None = None,
    ) -> None:
        checkpoint = Checkpoint.create(
            run_id=run.run_id,
            graph_id=run.graph.id,
            superstep=run.superstep,
            status=status,
            state=run.state.snapshot(),
            next_tasks=[t.to_dict() for t in run.frontier],
            path=run.path,
            pending_writes=pending_writes,
            gated_actions=gated_actions,
            unrouted=unrouted,
            join_pending=run.joins.pending,
            join_waiting=run.joins.waiting,
            node_visits=run.guard.node_visits,
            error=str(error) if error is not None else None,
            failed_node=failed_node,
        )
        await self.checkpoint_store.save(run.run_id, checkpoint.superstep, checkpoint)
        self.logger.debug(f"💾 Saved checkpoint {checkpoint.checkpoint_id}")

    # === RESULTS ===

    def _result(
        self,
        run: _Run,
        status: RunStatus,
        error: BaseException | None = None,
        failed_node: str | None = None,
    ) -> ExecutionResult:
        return ExecutionResult(
            run_id=run.run_id,
            status=status,
            output=copy.deepcopy(run.state.snapshot()),
            error=error,
            failed_node=failed_node,
            supersteps=run.superstep,
            path=[list(step) for step in run.path],
            node_visit_counts=dict(run.guard.node_visits),
        )

    @staticmethod
    async def _drain(deltas: AsyncIterator[SuperstepDelta]) -> ExecutionResult:
        result = None
        async for delta in deltas:
            result = delta.result
        if result is None:
            raise RuntimeError("Run stream ended without a final delta")
        return result
