"""Graph structures: state, nodes, edges, directives and superstep execution."""

from stepgraph.graph.builder import GraphBuilder
from stepgraph.graph.checkpoint_config import (
    DEFAULT_CHECKPOINT_CONFIG,
    DISABLED_CHECKPOINT_CONFIG,
    MINIMAL_CHECKPOINT_CONFIG,
    CheckpointConfig,
)
from stepgraph.graph.directives import (
    END,
    START,
    Gate,
    NodeResult,
    Route,
    Spawn,
    SpawnTask,
    Update,
)
from stepgraph.graph.edge import ConditionalEdgeSpec, EdgeSpec, GraphSpec
from stepgraph.graph.executor import ExecutionResult, GraphExecutor, SuperstepDelta
from stepgraph.graph.hitl import Decision, DecisionType, GatedAction
from stepgraph.graph.loop_guard import LoopGuard
from stepgraph.graph.node import NodeContext, NodeSpec
from stepgraph.graph.scheduler import JoinTracker, PendingTask, Scheduler
from stepgraph.graph.state import (
    Channel,
    StateStore,
    add,
    append,
    extend_unique,
    merge_dicts,
    overwrite,
)

__all__ = [
    # Builder
    "GraphBuilder",
    # State
    "Channel",
    "StateStore",
    "append",
    "add",
    "extend_unique",
    "merge_dicts",
    "overwrite",
    # Node
    "NodeSpec",
    "NodeContext",
    "NodeResult",
    # Directives
    "START",
    "END",
    "Update",
    "Route",
    "Spawn",
    "SpawnTask",
    "Gate",
    # Edge
    "EdgeSpec",
    "ConditionalEdgeSpec",
    "GraphSpec",
    # Execution
    "GraphExecutor",
    "ExecutionResult",
    "SuperstepDelta",
    "Scheduler",
    "JoinTracker",
    "PendingTask",
    "LoopGuard",
    # HITL
    "GatedAction",
    "Decision",
    "DecisionType",
    # Checkpointing
    "CheckpointConfig",
    "DEFAULT_CHECKPOINT_CONFIG",
    "MINIMAL_CHECKPOINT_CONFIG",
    "DISABLED_CHECKPOINT_CONFIG",
]
