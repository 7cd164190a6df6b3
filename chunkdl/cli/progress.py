"""Progress rendering for the chunkdl CLI.

Drives a rich progress bar from scheduler notifications.
"""

from __future__ import annotations

from typing import TYPE_CHECKING

from rich.progress import (
    BarColumn,
    DownloadColumn,
    Progress,
    SpinnerColumn,
    TaskID,
    TextColumn,
    TimeElapsedColumn,
    TimeRemainingColumn,
    TransferSpeedColumn,
)

from chunkdl.scheduler import ChunkOutcome, SchedulerListener

if TYPE_CHECKING:  # pragma: no cover
    from rich.console import Console

    from chunkdl.state import TransferState


class ProgressManager:
    """Progress manager for CLI."""

    def __init__(self, console: Console):
        """Initialize progress manager.

        Args:
            console: Rich console for output

        """
        self.console = console

    def create_download_progress(self) -> Progress:
        """Create the byte-level download progress bar."""
        return Progress(
            SpinnerColumn(),
            TextColumn("[progress.description]{task.description}"),
            BarColumn(),
            TextColumn("[progress.percentage]{task.percentage:>3.0f}%"),
            DownloadColumn(binary_units=False),
            TransferSpeedColumn(),
            TextColumn("{task.fields[chunks]}"),
            TimeElapsedColumn(),
            TimeRemainingColumn(),
            console=self.console,
        )


class TransferProgress(SchedulerListener):
    """Scheduler listener rendering overall byte and chunk progress."""

    def __init__(self, progress: Progress):
        """Initialize with a rich Progress."""
        self.progress = progress
        self.task_id: TaskID | None = None
        self.total_chunks = 0
        self.completed_chunks = 0
        self.retries = 0
        self._lengths: dict[int, int] = {}
        self._counted: dict[int, int] = {}

    def on_run_start(self, state: TransferState) -> None:
        chunks = state.chunks
        self._lengths = {c.index: c.length for c in chunks}
        self._counted = {c.index: c.length if c.completed else c.downloaded for c in chunks}
        self.total_chunks = len(chunks)
        self.completed_chunks = state.completed_count
        self.task_id = self.progress.add_task(
            state.prefix,
            total=state.total_size,
            completed=state.bytes_completed(),
            chunks=self._chunks_text(),
        )

    def _chunks_text(self) -> str:
        text = f"{self.completed_chunks}/{self.total_chunks} chunks"
        if self.retries:
            text += f" ({self.retries} retries)"
        return text

    def _advance(self, index: int, count: int) -> None:
        self._counted[index] = self._counted.get(index, 0) + count
        if self.task_id is not None:
            self.progress.advance(self.task_id, count)

    def on_bytes(self, index: int, count: int) -> None:
        self._advance(index, count)

    def on_chunk_done(self, index: int, outcome: ChunkOutcome) -> None:
        if outcome in (ChunkOutcome.DONE, ChunkOutcome.SKIPPED):
            self.completed_chunks += 1
            # Skipped chunks and bytes resumed from disk were never streamed.
            missing = self._lengths.get(index, 0) - self._counted.get(index, 0)
            if missing > 0:
                self._advance(index, missing)
        if self.task_id is not None:
            self.progress.update(self.task_id, chunks=self._chunks_text())

    def on_chunk_retry(
        self, index: int, attempt: int, delay: float, error: Exception
    ) -> None:
        self.retries += 1
        if self.task_id is not None:
            self.progress.update(self.task_id, chunks=self._chunks_text())
