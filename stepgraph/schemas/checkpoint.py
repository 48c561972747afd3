"""
Checkpoint Schema - Run snapshots taken at superstep boundaries.

A checkpoint holds everything needed to continue a run in a fresh process:
committed state, the frontier that would run next, pending join counters,
loop-guard counts and (for suspended runs) the held results of the gated
superstep together with the gated-action descriptors.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from stepgraph.schemas.run import RunStatus


class Checkpoint(BaseModel):
    """
    Single checkpoint in a run's timeline.

    `superstep` is the number of committed supersteps. `next_tasks` is the
    frontier of superstep `superstep + 1`; when the run is suspended,
    `pending_writes` holds the results those tasks already produced.
    """

    # Identity
    checkpoint_id: str  # Format: cp_{run_id}_{superstep:04d}_{timestamp}
    run_id: str
    graph_id: str

    # Timestamps
    created_at: str  # ISO 8601 format

    # Execution state
    superstep: int = 0
    status: RunStatus = RunStatus.RUNNING
    state: dict[str, Any] = Field(default_factory=dict)
    next_tasks: list[dict[str, Any]] = Field(default_factory=list)
    path: list[list[str]] = Field(default_factory=list)  # Node IDs per superstep

    # Suspension
    pending_writes: list[dict[str, Any]] = Field(default_factory=list)
    gated_actions: list[dict[str, Any]] = Field(default_factory=list)

    # Committed superstep whose successors were not computed (routing failed)
    unrouted: list[dict[str, Any]] = Field(default_factory=list)

    # Scheduler bookkeeping
    join_pending: dict[str, int] = Field(default_factory=dict)
    join_waiting: list[str] = Field(default_factory=list)
    node_visits: dict[str, int] = Field(default_factory=dict)

    # Failure context
    error: str | None = None
    failed_node: str | None = None

    description: str = ""

    model_config = {"extra": "allow"}

    @classmethod
    def create(
        cls,
        run_id: str,
        graph_id: str,
        superstep: int,
        status: RunStatus,
        state: dict[str, Any],
        next_tasks: list[dict[str, Any]] | None = None,
        path: list[list[str]] | None = None,
        pending_writes: list[dict[str, Any]] | None = None,
        gated_actions: list[dict[str, Any]] | None = None,
        unrouted: list[dict[str, Any]] | None = None,
        join_pending: dict[str, int] | None = None,
        join_waiting: list[str] | None = None,
        node_visits: dict[str, int] | None = None,
        error: str | None = None,
        failed_node: str | None = None,
        description: str = "",
    ) -> "Checkpoint":
        """
        Create a new checkpoint with generated ID and timestamp.

        Args:
            run_id: Run this checkpoint belongs to
            graph_id: Compiled graph the run executes
            superstep: Number of committed supersteps
            status: Run status at checkpoint time
            state: Full committed state snapshot
            next_tasks: Serialized frontier of the next superstep
            path: Node IDs executed per superstep so far
            pending_writes: Held task results of a suspended superstep
            gated_actions: Serialized GatedAction descriptors awaiting decisions
            unrouted: Committed task results whose successors are still to be computed
            join_pending: Pending counters of defer nodes
            join_waiting: Defer nodes triggered but not yet released
            node_visits: Loop guard per-node visit counts
            error: Error message for failed / bound-exceeded runs
            failed_node: Node that caused the failure
            description: Human-readable description

        Returns:
            New Checkpoint instance
        """
        now = datetime.now()
        checkpoint_id = f"cp_{run_id}_{superstep:04d}_{now.strftime('%Y%m%d_%H%M%S_%f')}"

        if not description:
            description = f"{status.value.replace('_', ' ').title()}: superstep {superstep}"

        return cls(
            checkpoint_id=checkpoint_id,
            run_id=run_id,
            graph_id=graph_id,
            created_at=now.isoformat(),
            superstep=superstep,
            status=status,
            state=state,
            next_tasks=next_tasks or [],
            path=path or [],
            pending_writes=pending_writes or [],
            gated_actions=gated_actions or [],
            unrouted=unrouted or [],
            join_pending=join_pending or {},
            join_waiting=join_waiting or [],
            node_visits=node_visits or {},
            error=error,
            failed_node=failed_node,
            description=description,
        )


class CheckpointSummary(BaseModel):
    """
    Lightweight checkpoint metadata for index listings.

    Used in the checkpoint index to provide fast scanning without
    loading full checkpoint data.
    """

    checkpoint_id: str
    superstep: int
    status: RunStatus
    created_at: str
    description: str = ""

    model_config = {"extra": "allow"}

    @classmethod
    def from_checkpoint(cls, checkpoint: Checkpoint) -> "CheckpointSummary":
        """Create summary from full checkpoint."""
        return cls(
            checkpoint_id=checkpoint.checkpoint_id,
            superstep=checkpoint.superstep,
            status=checkpoint.status,
            created_at=checkpoint.created_at,
            description=checkpoint.description,
        )


class CheckpointIndex(BaseModel):
    """
    Manifest of all checkpoints for a run.

    Provides fast lookup and filtering without loading
    full checkpoint files.
    """

    run_id: str
    checkpoints: list[CheckpointSummary] = Field(default_factory=list)
    latest_checkpoint_id: str | None = None
    total_checkpoints: int = 0

    model_config = {"extra": "allow"}

    def add_checkpoint(self, checkpoint: Checkpoint) -> None:
        """Add a checkpoint to the index."""
        self.checkpoints.append(CheckpointSummary.from_checkpoint(checkpoint))
        self.latest_checkpoint_id = checkpoint.checkpoint_id
        self.total_checkpoints = len(self.checkpoints)
