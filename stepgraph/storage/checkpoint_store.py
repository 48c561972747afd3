"""
Checkpoint Store - Durable run snapshots at superstep boundaries.

The executor never talks to a backend directly; it is handed a
CheckpointStore and calls save/load at superstep boundaries. Two backends
ship with the engine:

- InMemoryCheckpointStore: process-local, for tests and short-lived runs
- FileCheckpointStore: one directory per run with atomic JSON writes

Directory structure (FileCheckpointStore):
    {base_path}/
        {run_id}/
            index.json                              # Checkpoint manifest
            cp_{run_id}_{superstep}_{timestamp}.json  # Individual checkpoints

Any backend failure surfaces as CheckpointError.
"""

import asyncio
import logging
import shutil
from abc import ABC, abstractmethod
from pathlib import Path

from stepgraph.errors import CheckpointError
from stepgraph.schemas.checkpoint import Checkpoint, CheckpointIndex, CheckpointSummary
from stepgraph.utils.io import atomic_write

logger = logging.getLogger(__name__)


class CheckpointStore(ABC):
    """Abstract checkpoint backend."""

    @abstractmethod
    async def save(self, run_id: str, superstep: int, checkpoint: Checkpoint) -> None:
        """
        Persist a checkpoint as the latest state of a run.

        Args:
            run_id: Run the checkpoint belongs to
            superstep: Committed superstep count at checkpoint time
            checkpoint: Full run snapshot

        Raises:
            CheckpointError: If the backend cannot persist the checkpoint
        """

    @abstractmethod
    async def load(self, run_id: str) -> Checkpoint | None:
        """Load the latest checkpoint of a run, or None if the run is unknown."""

    @abstractmethod
    async def delete(self, run_id: str) -> bool:
        """Delete every checkpoint of a run. Returns False if none existed."""

    @abstractmethod
    async def list(self, run_id: str) -> list[CheckpointSummary]:
        """List checkpoint summaries of a run, oldest first."""


def _check_identity(run_id: str, superstep: int, checkpoint: Checkpoint) -> None:
    if checkpoint.run_id != run_id:
        raise CheckpointError(
            f"Checkpoint {checkpoint.checkpoint_id} belongs to run "
            f"'{checkpoint.run_id}', not '{run_id}'",
            run_id=run_id,
        )
    if checkpoint.superstep != superstep:
        raise CheckpointError(
            f"Checkpoint {checkpoint.checkpoint_id} is at superstep "
            f"{checkpoint.superstep}, expected {superstep}",
            run_id=run_id,
        )


class InMemoryCheckpointStore(CheckpointStore):
    """Keeps checkpoints in a dict; copies on the way in and out."""

    def __init__(self):
        self._runs: dict[str, list[Checkpoint]] = {}
        self._lock = asyncio.Lock()

    async def save(self, run_id: str, superstep: int, checkpoint: Checkpoint) -> None:
        _check_identity(run_id, superstep, checkpoint)
        async with self._lock:
            self._runs.setdefault(run_id, []).append(checkpoint.model_copy(deep=True))
        logger.debug(f"Saved checkpoint {checkpoint.checkpoint_id}")

    async def load(self, run_id: str) -> Checkpoint | None:
        checkpoints = self._runs.get(run_id)
        if not checkpoints:
            return None
        return checkpoints[-1].model_copy(deep=True)

    async def delete(self, run_id: str) -> bool:
        async with self._lock:
            return self._runs.pop(run_id, None) is not None

    async def list(self, run_id: str) -> list[CheckpointSummary]:
        return [CheckpointSummary.from_checkpoint(cp) for cp in self._runs.get(run_id, [])]


class FileCheckpointStore(CheckpointStore):
    """
    Stores checkpoints as JSON files, one directory per run.

    Each save writes the checkpoint file first and then the index, both via
    temp file + rename, so a crash leaves the previous latest checkpoint
    loadable.
    """

    def __init__(self, base_path: Path | str):
        """
        Initialize checkpoint store.

        Args:
            base_path: Root directory; each run gets a subdirectory
        """
        self.base_path = Path(base_path)
        self._index_lock = asyncio.Lock()

    def _run_dir(self, run_id: str) -> Path:
        return self.base_path / run_id

    def _index_path(self, run_id: str) -> Path:
        return self._run_dir(run_id) / "index.json"

    async def save(self, run_id: str, superstep: int, checkpoint: Checkpoint) -> None:
        """
        Atomically save checkpoint and update index.

        Raises:
            CheckpointError: If the file write fails
        """
        _check_identity(run_id, superstep, checkpoint)

        def _write():
            run_dir = self._run_dir(run_id)
            run_dir.mkdir(parents=True, exist_ok=True)
            with atomic_write(run_dir / f"{checkpoint.checkpoint_id}.json") as f:
                f.write(checkpoint.model_dump_json(indent=2))

        try:
            await asyncio.to_thread(_write)
            async with self._index_lock:
                index = await self._read_index(run_id) or CheckpointIndex(run_id=run_id)
                index.add_checkpoint(checkpoint)
                await self._write_index(run_id, index)
        except (OSError, ValueError) as e:
            raise CheckpointError(
                f"Failed to save checkpoint {checkpoint.checkpoint_id}: {e}",
                run_id=run_id,
                cause=e,
            ) from e

        logger.debug(f"Saved checkpoint {checkpoint.checkpoint_id}")

    async def load(self, run_id: str) -> Checkpoint | None:
        """
        Load the latest checkpoint of a run.

        Returns:
            Checkpoint, or None if the run has no checkpoints

        Raises:
            CheckpointError: If the index or checkpoint file is unreadable
        """
        index = await self._read_index(run_id)
        if not index or not index.latest_checkpoint_id:
            return None

        checkpoint_path = self._run_dir(run_id) / f"{index.latest_checkpoint_id}.json"

        def _read() -> Checkpoint:
            return Checkpoint.model_validate_json(checkpoint_path.read_text(encoding="utf-8"))

        try:
            return await asyncio.to_thread(_read)
        except (OSError, ValueError) as e:
            raise CheckpointError(
                f"Failed to load checkpoint {index.latest_checkpoint_id}: {e}",
                run_id=run_id,
                cause=e,
            ) from e

    async def delete(self, run_id: str) -> bool:
        run_dir = self._run_dir(run_id)

        def _delete() -> bool:
            if not run_dir.exists():
                return False
            shutil.rmtree(run_dir)
            return True

        async with self._index_lock:
            try:
                deleted = await asyncio.to_thread(_delete)
            except OSError as e:
                raise CheckpointError(
                    f"Failed to delete checkpoints of run {run_id}: {e}",
                    run_id=run_id,
                    cause=e,
                ) from e

        if deleted:
            logger.info(f"Deleted checkpoints of run {run_id}")
        return deleted

    async def _read_index(self, run_id: str) -> CheckpointIndex | None:
        index_path = self._index_path(run_id)

        def _read() -> CheckpointIndex | None:
            if not index_path.exists():
                return None
            return CheckpointIndex.model_validate_json(index_path.read_text(encoding="utf-8"))

        try:
            return await asyncio.to_thread(_read)
        except (OSError, ValueError) as e:
            raise CheckpointError(
                f"Failed to load checkpoint index of run {run_id}: {e}",
                run_id=run_id,
                cause=e,
            ) from e

    async def _write_index(self, run_id: str, index: CheckpointIndex) -> None:
        """Should be called with _index_lock held."""

        def _write():
            with atomic_write(self._index_path(run_id)) as f:
                f.write(index.model_dump_json(indent=2))

        await asyncio.to_thread(_write)

    async def list(self, run_id: str) -> list[CheckpointSummary]:
        index = await self._read_index(run_id)
        if not index:
            return []
        return index.checkpoints
