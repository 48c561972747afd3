"""
stepgraph - superstep execution of directed state graphs.

Declare state fields with reducers, add nodes and edges, compile, run:

    from stepgraph import END, GraphBuilder, GraphExecutor, append

    builder = GraphBuilder(state_schema={"items": None, "results": append})
    ...
    graph = builder.compile()
    result = await GraphExecutor().start(graph, {"items": ["a", "b"]})
"""

from stepgraph.config import ExecutorConfig
from stepgraph.errors import (
    CheckpointError,
    CompileError,
    InvalidRouteError,
    InvalidUpdateError,
    LoopBoundExceededError,
    NodeExecutionError,
    ReducerConflictError,
    ResumeError,
    StepGraphError,
)
from stepgraph.graph import (
    END,
    START,
    Channel,
    CheckpointConfig,
    Decision,
    ExecutionResult,
    Gate,
    GatedAction,
    GraphBuilder,
    GraphExecutor,
    GraphSpec,
    NodeContext,
    Route,
    Spawn,
    SpawnTask,
    SuperstepDelta,
    Update,
    add,
    append,
    extend_unique,
    merge_dicts,
    overwrite,
)
from stepgraph.schemas.checkpoint import Checkpoint
from stepgraph.schemas.run import RunStatus
from stepgraph.storage import (
    CheckpointStore,
    FileCheckpointStore,
    InMemoryCheckpointStore,
    InMemoryKeyValueStore,
    KeyValueStore,
)

__all__ = [
    # Building
    "GraphBuilder",
    "GraphSpec",
    "Channel",
    "append",
    "add",
    "extend_unique",
    "merge_dicts",
    "overwrite",
    "START",
    "END",
    # Node results
    "Update",
    "Route",
    "Spawn",
    "SpawnTask",
    "Gate",
    "NodeContext",
    # Execution
    "GraphExecutor",
    "ExecutorConfig",
    "ExecutionResult",
    "SuperstepDelta",
    "RunStatus",
    "GatedAction",
    "Decision",
    # Persistence
    "Checkpoint",
    "CheckpointConfig",
    "CheckpointStore",
    "InMemoryCheckpointStore",
    "FileCheckpointStore",
    "KeyValueStore",
    "InMemoryKeyValueStore",
    # Errors
    "StepGraphError",
    "CompileError",
    "InvalidUpdateError",
    "InvalidRouteError",
    "ReducerConflictError",
    "NodeExecutionError",
    "LoopBoundExceededError",
    "CheckpointError",
    "ResumeError",
]
