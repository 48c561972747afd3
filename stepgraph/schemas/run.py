"""
Run Schema - Lifecycle status of a graph execution.
"""

from enum import StrEnum


class RunStatus(StrEnum):
    """Status of a run."""

    RUNNING = "running"
    SUSPENDED = "suspended"  # Waiting on gated-action decisions
    COMPLETED = "completed"
    FAILED = "failed"
    BOUND_EXCEEDED = "bound_exceeded"  # Did not converge within iteration ceilings
    CANCELLED = "cancelled"

    @property
    def is_resumable(self) -> bool:
        """Runs the caller may continue with GraphExecutor.resume()."""
        return self is not RunStatus.COMPLETED
