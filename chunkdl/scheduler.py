"""Concurrent chunk transfer scheduler.

A dispatcher walks the chunk plan in ascending order and feeds a bounded
queue consumed by a fixed pool of worker tasks. Each worker resumes its
chunk from the partial artifact on disk, retries transient failures with
exponential backoff and promotes the artifact once complete. A chunk that
exhausts its retries cancels the whole run; the run returns only after
every worker has unwound and the state has been saved.
"""

from __future__ import annotations

import asyncio
import contextlib
from dataclasses import dataclass, field
from enum import Enum
from typing import TYPE_CHECKING

from chunkdl.chunk_file import ChunkFile
from chunkdl.utils.backoff import ExponentialBackoff
from chunkdl.utils.exceptions import (
    ChunkFailedError,
    TransferCancelledError,
    TransientTransferError,
)
from chunkdl.utils.logging_config import get_logger
from chunkdl.utils.tasks import BackgroundTaskGroup, CancelToken

if TYPE_CHECKING:  # pragma: no cover
    from chunkdl.fetcher import RangeFetcher
    from chunkdl.hooks import HookPipeline
    from chunkdl.models import ChunkDescriptor
    from chunkdl.state import TransferState


class ChunkOutcome(str, Enum):
    """Terminal result of one chunk in a run."""

    SKIPPED = "skipped"
    DONE = "done"
    FAILED = "failed"
    CANCELLED = "cancelled"


@dataclass
class SchedulerReport:
    """Summary of one scheduler run."""

    done: list[int] = field(default_factory=list)
    skipped: list[int] = field(default_factory=list)
    failed: list[int] = field(default_factory=list)
    cancelled: list[int] = field(default_factory=list)
    hooks_resubmitted: list[int] = field(default_factory=list)
    bytes_transferred: int = 0

    def record(self, index: int, outcome: ChunkOutcome) -> None:
        getattr(self, outcome.value).append(index)


class SchedulerListener:
    """Receives progress notifications. Override what you need."""

    def on_run_start(self, state: TransferState) -> None:
        pass

    def on_chunk_start(self, index: int, resume_offset: int) -> None:
        pass

    def on_bytes(self, index: int, count: int) -> None:
        pass

    def on_chunk_done(self, index: int, outcome: ChunkOutcome) -> None:
        pass

    def on_chunk_retry(
        self, index: int, attempt: int, delay: float, error: Exception
    ) -> None:
        pass

    def on_chunk_failed(self, index: int, error: Exception) -> None:
        pass


class TransferScheduler:
    """Transfers every incomplete chunk of a :class:`TransferState`."""

    def __init__(
        self,
        state: TransferState,
        fetcher: RangeFetcher,
        concurrency: int = 1,
        max_retries: int = 10,
        backoff: ExponentialBackoff | None = None,
        hooks: HookPipeline | None = None,
        listener: SchedulerListener | None = None,
    ):
        """Initialize transfer scheduler.

        Args:
            state: Shared transfer state
            fetcher: Range fetcher used for every chunk
            concurrency: Number of chunk workers
            max_retries: Retries per chunk after the first attempt
            backoff: Delay policy between attempts
            hooks: Started hook pipeline receiving completed chunk indices
            listener: Progress listener

        """
        if concurrency < 1:
            msg = f"concurrency must be at least 1, got {concurrency}"
            raise ValueError(msg)
        if max_retries < 0:
            msg = f"max_retries must not be negative, got {max_retries}"
            raise ValueError(msg)
        self.state = state
        self.fetcher = fetcher
        self.concurrency = concurrency
        self.max_retries = max_retries
        self.backoff = backoff or ExponentialBackoff()
        self.hooks = hooks
        self.listener = listener or SchedulerListener()
        self.logger = get_logger(__name__)

        self.report = SchedulerReport()
        self._failure: BaseException | None = None

    async def run(self, token: CancelToken | None = None) -> SchedulerReport:
        """Transfer all incomplete chunks.

        Args:
            token: Run-wide cancellation token; a fresh one is used if None

        Returns:
            Report of the run

        Raises:
            ChunkFailedError: A chunk exhausted its retries
            TransferCancelledError: The token was cancelled externally

        """
        token = token or CancelToken()
        self.report = SchedulerReport()
        self._failure = None

        queue: asyncio.Queue[int | None] = asyncio.Queue(maxsize=self.concurrency)
        workers = BackgroundTaskGroup()
        for worker_id in range(self.concurrency):
            workers.create(
                self._worker(worker_id, queue, token), name=f"chunk-worker-{worker_id}"
            )
        dispatcher = asyncio.create_task(self._dispatch(queue, token))
        workers_done = asyncio.ensure_future(workers.wait())
        cancelled = asyncio.ensure_future(token.wait())

        self.logger.info(
            "Transferring %s: %d/%d chunks complete, %d workers",
            self.state.prefix,
            self.state.completed_count,
            self.state.num_chunks,
            self.concurrency,
        )
        self.listener.on_run_start(self.state)
        try:
            await asyncio.wait(
                {workers_done, cancelled}, return_when=asyncio.FIRST_COMPLETED
            )
        finally:
            if not workers_done.done():
                # Cancelled: abort in-flight reads instead of waiting for them.
                dispatcher.cancel()
                await workers.cancel_and_wait()
            dispatcher.cancel()
            cancelled.cancel()
            await asyncio.gather(
                dispatcher, workers_done, cancelled, return_exceptions=True
            )
            await self.state.save_async()

        if self._failure is not None:
            raise self._failure
        if token.cancelled:
            msg = f"transfer cancelled: {token.reason}"
            raise TransferCancelledError(msg, {"completed": self.state.completed_count})
        return self.report

    async def _dispatch(self, queue: asyncio.Queue[int | None], token: CancelToken) -> None:
        try:
            for chunk in self.state.chunks:
                if token.cancelled:
                    return
                if not chunk.completed:
                    await queue.put(chunk.index)
                elif self.hooks is not None and not chunk.post_part_completed:
                    self.report.hooks_resubmitted.append(chunk.index)
                    self.hooks.submit(chunk.index)
        except Exception as e:
            # Workers would wait forever for their sentinels.
            self.logger.exception("Chunk dispatch failed")
            self._fail(e, token)
            return
        for _ in range(self.concurrency):
            await queue.put(None)

    async def _worker(
        self, worker_id: int, queue: asyncio.Queue[int | None], token: CancelToken
    ) -> None:
        while True:
            index = await queue.get()
            if index is None or token.cancelled:
                return
            try:
                outcome = await self._process_chunk(index, token)
            except asyncio.CancelledError:
                self.report.record(index, ChunkOutcome.CANCELLED)
                raise
            except TransferCancelledError:
                self.report.record(index, ChunkOutcome.CANCELLED)
                self.listener.on_chunk_done(index, ChunkOutcome.CANCELLED)
                return
            except ChunkFailedError as e:
                self.report.record(index, ChunkOutcome.FAILED)
                self.listener.on_chunk_failed(index, e)
                self._fail(e, token)
                return
            except Exception as e:
                self.logger.exception("Worker %d failed on chunk %d", worker_id, index)
                self.report.record(index, ChunkOutcome.FAILED)
                self.listener.on_chunk_failed(index, e)
                self._fail(e, token)
                return

            self.report.record(index, outcome)
            self.listener.on_chunk_done(index, outcome)

    def _fail(self, error: BaseException, token: CancelToken) -> None:
        if self._failure is None:
            self._failure = error
        token.cancel(str(error))

    async def _process_chunk(self, index: int, token: CancelToken) -> ChunkOutcome:
        chunk = self.state.chunk(index)
        chunk_file = ChunkFile(
            self.state.chunk_tmp_path(index),
            self.state.chunk_part_path(index),
            chunk.length,
        )

        if chunk_file.is_complete:
            self.logger.info("Chunk %d already complete, skipping", index)
            outcome = ChunkOutcome.SKIPPED
        else:
            await self._transfer_with_retry(chunk, chunk_file, token)
            outcome = ChunkOutcome.DONE
            self.logger.debug("Chunk %d complete (%d bytes)", index, chunk.length)

        self.state.mark_transfer_complete(index, chunk.length)
        await self.state.save_async()

        if self.hooks is not None:
            self.hooks.submit(index)
        return outcome

    async def _transfer_with_retry(
        self, chunk: ChunkDescriptor, chunk_file: ChunkFile, token: CancelToken
    ) -> None:
        attempts = self.max_retries + 1
        last_error: Exception | None = None

        for attempt in range(1, attempts + 1):
            token.raise_if_cancelled()
            try:
                await self._attempt(chunk, chunk_file, token)
            except TransientTransferError as e:
                last_error = e
                if attempt == attempts:
                    break
                delay = self.backoff.next_delay(attempt)
                self.logger.warning(
                    "Chunk %d attempt %d/%d failed: %s; retrying in %.1fs",
                    chunk.index,
                    attempt,
                    attempts,
                    e,
                    delay,
                )
                self.listener.on_chunk_retry(chunk.index, attempt, delay, e)
                if await token.wait(delay):
                    raise TransferCancelledError(token.reason or "cancelled") from e
            else:
                return

        self.logger.error(
            "Chunk %d failed after %d attempts: %s", chunk.index, attempts, last_error
        )
        raise ChunkFailedError(chunk.index, attempts, last_error)

    async def _attempt(
        self, chunk: ChunkDescriptor, chunk_file: ChunkFile, token: CancelToken
    ) -> None:
        index = chunk.index

        def _count(n: int) -> None:
            self.report.bytes_transferred += n
            self.listener.on_bytes(index, n)

        try:
            chunk_file.open()
        except OSError as e:
            msg = f"cannot open {chunk_file.tmp_path}: {e}"
            raise TransientTransferError(msg) from e

        try:
            resume_from = chunk.start + chunk_file.size
            if resume_from <= chunk.end:
                if chunk_file.size:
                    self.logger.debug(
                        "Resuming chunk %d at byte %d (%d bytes on disk)",
                        index,
                        resume_from,
                        chunk_file.size,
                    )
                self.listener.on_chunk_start(index, chunk_file.size)
                await self.fetcher.fetch(
                    self.state.url,
                    resume_from,
                    chunk.end,
                    chunk_file,
                    token=token,
                    on_progress=_count,
                )
            chunk_file.finalize()
        except OSError as e:
            msg = f"cannot finalize {chunk_file.tmp_path}: {e}"
            raise TransientTransferError(msg) from e
        finally:
            with contextlib.suppress(OSError):
                chunk_file.close()
            self.state.update_chunk_progress(index, chunk_file.size)
