"""
Checkpoint Configuration - Controls when the executor persists a run.
"""

from dataclasses import dataclass


@dataclass
class CheckpointConfig:
    """
    Configuration for checkpoint behavior during graph execution.

    Suspensions are always checkpointed, whatever the settings: a suspended
    run cannot be resumed otherwise. Failed and bound-exceeded
    runs are checkpointed with `checkpoint_on_terminal` so they can be
    resumed from their last committed state.
    """

    # Enable/disable checkpointing
    enabled: bool = True

    # When to checkpoint
    checkpoint_every_superstep: bool = True
    checkpoint_on_terminal: bool = True

    def should_checkpoint_superstep(self) -> bool:
        """Check if should checkpoint after each committed superstep."""
        return self.enabled and self.checkpoint_every_superstep

    def should_checkpoint_terminal(self) -> bool:
        """Check if should checkpoint when a run ends."""
        return self.enabled and self.checkpoint_on_terminal


# Default configuration: every boundary is durable
DEFAULT_CHECKPOINT_CONFIG = CheckpointConfig(
    enabled=True,
    checkpoint_every_superstep=True,
    checkpoint_on_terminal=True,
)


# Minimal configuration (only suspension and terminal states)
MINIMAL_CHECKPOINT_CONFIG = CheckpointConfig(
    enabled=True,
    checkpoint_every_superstep=False,
    checkpoint_on_terminal=True,
)


# Disabled configuration (only suspensions are persisted)
DISABLED_CHECKPOINT_CONFIG = CheckpointConfig(
    enabled=False,
)
