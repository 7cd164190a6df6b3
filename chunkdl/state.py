"""Durable transfer state for chunkdl.

Records the chunk plan and per-chunk progress of one transfer in
``.<prefix>-state.json`` so an interrupted transfer can resume. Every
mutation and every save happens under a single lock; saves go through a
temporary file and an atomic rename so a crash never leaves a torn state
file behind.
"""

from __future__ import annotations

import asyncio
import contextlib
import glob
import json
import os
import threading
from pathlib import Path

from pydantic import ValidationError as PydanticValidationError

from chunkdl.models import ChunkDescriptor, TransferStateModel
from chunkdl.plan import plan_chunks
from chunkdl.utils.exceptions import StateCorruptedError, StateError
from chunkdl.utils.logging_config import get_logger

logger = get_logger(__name__)

STATE_FILE_TEMPLATE = ".{prefix}-state.json"
TEMP_SUFFIX = ".tmp"
PART_SUFFIX = ".part"


def state_file_name(prefix: str) -> str:
    """Return the state file name for an artifact prefix."""
    return STATE_FILE_TEMPLATE.format(prefix=prefix)


def chunk_file_name(prefix: str, index: int, suffix: str) -> str:
    """Return ``<prefix>.<6-digit index><suffix>``."""
    return f"{prefix}.{index:06d}{suffix}"


class TransferState:
    """Shared, lock-protected progress record of one transfer.

    Workers never mutate chunk descriptors directly; they call the
    ``mark_*``/``update_*`` methods, which are safe to call from coroutines
    and from executor threads alike.
    """

    def __init__(self, model: TransferStateModel, directory: str | Path = "."):
        """Wrap a validated state model.

        Args:
            model: Persisted state
            directory: Directory holding the state file and chunk artifacts

        """
        self._model = model
        self._lock = threading.Lock()
        self.directory = Path(directory)

    @classmethod
    def create(
        cls,
        url: str,
        total_size: int,
        chunk_size: int,
        prefix: str,
        directory: str | Path = ".",
    ) -> TransferState:
        """Create fresh state with a new chunk plan.

        Raises:
            PlanningError: If the sizes are not positive

        """
        chunks = [
            ChunkDescriptor(index=i, start=start, end=end)
            for i, (start, end) in enumerate(plan_chunks(total_size, chunk_size))
        ]
        model = TransferStateModel(
            url=url,
            total_size=total_size,
            chunk_size=chunk_size,
            filename_prefix=prefix,
            chunks=chunks,
            completed_count=0,
        )
        logger.debug(
            "Planned %d chunks of %d bytes for %s", len(chunks), chunk_size, prefix
        )
        return cls(model, directory)

    @classmethod
    def load(cls, prefix: str, directory: str | Path = ".") -> TransferState | None:
        """Load state previously saved for ``prefix``.

        Returns:
            The reloaded state, or None when no state file exists

        Raises:
            StateCorruptedError: If the file cannot be parsed or validated

        """
        path = Path(directory) / state_file_name(prefix)
        if not path.exists():
            return None

        try:
            with open(path, encoding="utf-8") as f:
                data = json.load(f)
            model = TransferStateModel.model_validate(data)
        except json.JSONDecodeError as e:
            msg = f"Invalid JSON in state file {path}: {e}"
            raise StateCorruptedError(msg, {"path": str(path)}) from e
        except PydanticValidationError as e:
            msg = f"Invalid state file {path}: {e}"
            raise StateCorruptedError(msg, {"path": str(path)}) from e
        except OSError as e:
            msg = f"Failed to read state file {path}: {e}"
            raise StateError(msg, {"path": str(path)}) from e

        actual = sum(1 for c in model.chunks if c.completed)
        if model.completed_count != actual:
            logger.warning(
                "State file %s records %d completed chunks but flags show %d; using flags",
                path,
                model.completed_count,
                actual,
            )
            model.completed_count = actual

        logger.debug("Loaded state from %s", path)
        return cls(model, directory)

    @property
    def url(self) -> str:
        return self._model.url

    @property
    def total_size(self) -> int:
        return self._model.total_size

    @property
    def chunk_size(self) -> int:
        return self._model.chunk_size

    @property
    def prefix(self) -> str:
        return self._model.filename_prefix

    @property
    def state_path(self) -> Path:
        return self.directory / state_file_name(self.prefix)

    @property
    def num_chunks(self) -> int:
        return len(self._model.chunks)

    @property
    def completed_count(self) -> int:
        with self._lock:
            return self._model.completed_count

    @property
    def is_complete(self) -> bool:
        """Whether every chunk's bytes are on disk."""
        with self._lock:
            return self._model.completed_count == len(self._model.chunks)

    @property
    def chunks(self) -> list[ChunkDescriptor]:
        """Snapshot copies of all chunk descriptors."""
        with self._lock:
            return [c.model_copy() for c in self._model.chunks]

    def chunk(self, index: int) -> ChunkDescriptor:
        """Return a snapshot copy of one chunk descriptor."""
        with self._lock:
            return self._get(index).model_copy()

    def chunk_tmp_path(self, index: int) -> Path:
        """Path of the partial artifact of chunk ``index``."""
        return self.directory / chunk_file_name(self.prefix, index, TEMP_SUFFIX)

    def chunk_part_path(self, index: int) -> Path:
        """Path of the complete artifact of chunk ``index``."""
        return self.directory / chunk_file_name(self.prefix, index, PART_SUFFIX)

    def matches(self, url: str, total_size: int) -> bool:
        """Whether this state was recorded for the same resource."""
        return self._model.url == url and self._model.total_size == total_size

    def _get(self, index: int) -> ChunkDescriptor:
        if index < 0 or index >= len(self._model.chunks):
            msg = f"chunk index {index} out of range (0..{len(self._model.chunks) - 1})"
            raise IndexError(msg)
        return self._model.chunks[index]

    def mark_transfer_complete(self, index: int, downloaded: int) -> bool:
        """Mark a chunk's bytes as fully on disk.

        Idempotent: marking an already completed chunk changes nothing and
        never counts it twice.

        Returns:
            True if the chunk was newly marked complete

        """
        with self._lock:
            chunk = self._get(index)
            chunk.downloaded = max(chunk.downloaded, downloaded)
            if chunk.completed:
                return False
            chunk.completed = True
            self._model.completed_count += 1
            return True

    def mark_hook_complete(self, index: int, success: bool) -> None:
        """Record the outcome of a chunk's post-completion hook.

        A recorded success is never reverted by a later failure.
        """
        with self._lock:
            chunk = self._get(index)
            chunk.post_part_completed = chunk.post_part_completed or success

    def update_chunk_progress(self, index: int, downloaded: int) -> None:
        """Record bytes on disk for an unfinished chunk (never decreases)."""
        with self._lock:
            chunk = self._get(index)
            chunk.downloaded = min(max(chunk.downloaded, downloaded), chunk.length)

    def pending_hooks(self) -> list[int]:
        """Indices of completed chunks whose hook has not succeeded yet."""
        with self._lock:
            return [
                c.index
                for c in self._model.chunks
                if c.completed and not c.post_part_completed
            ]

    def bytes_completed(self) -> int:
        """Bytes of completed chunks plus recorded partial progress."""
        with self._lock:
            return sum(c.length if c.completed else c.downloaded for c in self._model.chunks)

    def save(self) -> Path:
        """Persist the state atomically.

        The whole document is written to a sibling temporary file, flushed
        and fsynced, then renamed over the previous state file.

        Raises:
            StateError: If the file cannot be written

        """
        path = self.state_path
        tmp_path = path.with_name(path.name + TEMP_SUFFIX)
        with self._lock:
            data = self._model.model_dump(mode="json")
            try:
                path.parent.mkdir(parents=True, exist_ok=True)
                with open(tmp_path, "w", encoding="utf-8") as f:
                    json.dump(data, f, indent=2)
                    f.flush()
                    os.fsync(f.fileno())
                os.replace(tmp_path, path)
            except OSError as e:
                with contextlib.suppress(OSError):
                    tmp_path.unlink()
                msg = f"Failed to save state file {path}: {e}"
                raise StateError(msg, {"path": str(path)}) from e
        logger.debug("Saved state to %s", path)
        return path

    async def save_async(self) -> Path:
        """Run :meth:`save` in the default executor."""
        return await asyncio.get_running_loop().run_in_executor(None, self.save)

    def delete(self) -> bool:
        """Remove the state file.

        Returns:
            True if a file was removed

        """
        try:
            self.state_path.unlink()
        except FileNotFoundError:
            return False
        logger.debug("Deleted state file %s", self.state_path)
        return True

    def cleanup_temp_files(self) -> int:
        """Remove this transfer's partial artifacts.

        Returns:
            Number of files removed

        """
        return self._remove_matching(TEMP_SUFFIX)

    def remove_artifacts(self) -> int:
        """Remove this transfer's partial and complete artifacts."""
        return self._remove_matching(TEMP_SUFFIX) + self._remove_matching(PART_SUFFIX)

    def _remove_matching(self, suffix: str) -> int:
        # Scan the directory rather than the plan: artifacts may come from an
        # earlier plan with a different chunk size.
        removed = 0
        for path in self.directory.glob(f"{glob.escape(self.prefix)}.*{suffix}"):
            index = path.name[len(self.prefix) + 1 : -len(suffix)]
            if not index.isdigit():
                continue
            try:
                path.unlink()
            except FileNotFoundError:
                continue
            removed += 1
        if removed:
            logger.debug("Removed %d %s files for %s", removed, suffix, self.prefix)
        return removed
