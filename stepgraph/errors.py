"""
Errors raised by the graph engine.

Structural problems (CompileError) are raised before a run starts.
Runtime problems (node failures, reducer conflicts, loop ceilings) are
captured by the executor and surfaced as terminal run statuses on the
ExecutionResult, with the original exception attached.
"""

from typing import Any


class StepGraphError(Exception):
    """Base class for all engine errors."""

    pass


class CompileError(StepGraphError):
    """Raised when a graph definition is malformed."""

    def __init__(self, errors: list[str] | str):
        if isinstance(errors, str):
            errors = [errors]
        self.errors = list(errors)
        super().__init__("Invalid graph: " + "; ".join(self.errors))


class InvalidUpdateError(StepGraphError):
    """Raised when a node writes an undeclared field or returns an unsupported value."""

    pass


class InvalidRouteError(StepGraphError):
    """Raised when a route, router or spawn names an unknown node."""

    def __init__(self, message: str, node_id: str | None = None):
        self.node_id = node_id
        super().__init__(message)


class ReducerConflictError(StepGraphError):
    """Raised when concurrent writes to a field cannot be merged safely."""

    def __init__(self, field: str, writers: list[str], message: str | None = None):
        self.field = field
        self.writers = list(writers)
        super().__init__(
            message
            or (
                f"Field '{field}' has no reducer but was written by {len(writers)} "
                f"tasks in one superstep: {writers}"
            )
        )


class NodeExecutionError(StepGraphError):
    """Wraps an exception raised by a node executable."""

    def __init__(self, node_id: str, task_id: str, error: BaseException):
        self.node_id = node_id
        self.task_id = task_id
        self.error = error
        super().__init__(f"Node '{node_id}' (task {task_id}) failed: {error!r}")


class LoopBoundExceededError(StepGraphError):
    """Raised when a per-run or per-node iteration ceiling is reached."""

    def __init__(self, message: str, node_id: str | None = None, limit: int = 0):
        self.node_id = node_id
        self.limit = limit
        super().__init__(message)


class CheckpointError(StepGraphError):
    """Raised when the checkpoint backend cannot save or load a run."""

    def __init__(self, message: str, run_id: str | None = None, cause: Any = None):
        self.run_id = run_id
        self.cause = cause
        super().__init__(message)


class ResumeError(StepGraphError):
    """Raised when a run cannot be resumed with the given arguments."""

    pass
