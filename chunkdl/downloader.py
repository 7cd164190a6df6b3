"""Resumable download entry point.

Ties the pieces together: derive the artifact prefix from the URL, reload or
create the durable state, probe the size, run the scheduler (and the hook
pipeline when configured), then remove the state file or merge the chunks.
"""

from __future__ import annotations

import asyncio
import glob
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import TYPE_CHECKING
from urllib.parse import unquote, urlsplit

from chunkdl.config import get_config
from chunkdl.fetcher import RangeFetcher
from chunkdl.hooks import HookPipeline, HookResult
from chunkdl.merger import GroupResult, Merger
from chunkdl.scheduler import SchedulerListener, SchedulerReport, TransferScheduler
from chunkdl.state import TransferState
from chunkdl.transport import HttpTransport
from chunkdl.utils.backoff import ExponentialBackoff
from chunkdl.utils.exceptions import (
    ChunkFailedError,
    StateMismatchError,
)
from chunkdl.utils.formatting import format_bytes, format_duration
from chunkdl.utils.logging_config import LoggingContext, get_logger
from chunkdl.utils.tasks import CancelToken

if TYPE_CHECKING:  # pragma: no cover
    from chunkdl.models import Config

DEFAULT_PREFIX = "download"

logger = get_logger(__name__)


def prefix_from_url(url: str) -> str:
    """Derive the artifact prefix from the last path segment of ``url``.

    The query string and fragment are ignored and percent-escapes decoded;
    ``"download"`` is used when the path has no usable last segment.
    """
    path = unquote(urlsplit(url).path)
    name = path.rstrip("/").rsplit("/", 1)[-1]
    if name in ("", ".", ".."):
        return DEFAULT_PREFIX
    return name


@dataclass
class DownloadResult:
    """Summary of a finished download."""

    url: str
    prefix: str
    directory: Path
    total_size: int
    num_chunks: int
    report: SchedulerReport
    elapsed: float
    hook_results: list[HookResult] = field(default_factory=list)
    merged: list[GroupResult] = field(default_factory=list)

    @property
    def failed_hooks(self) -> list[int]:
        return sorted(r.index for r in self.hook_results if not r.success)


class Downloader:
    """Download one resource in resumable chunks."""

    def __init__(
        self,
        url: str,
        chunk_size: int | None = None,
        concurrency: int | None = None,
        max_retries: int | None = None,
        force_restart: bool = False,
        total_size: int | None = None,
        hook_command: str | None = None,
        hook_concurrency: int | None = None,
        *,
        output_dir: str | Path | None = None,
        merge_after: bool = False,
        config: Config | None = None,
        transport: HttpTransport | None = None,
        listener: SchedulerListener | None = None,
        backoff: ExponentialBackoff | None = None,
    ):
        """Initialize downloader.

        Arguments left as None fall back to the ``transfer`` section of the
        configuration.

        Args:
            url: Resource URL
            chunk_size: Chunk size in bytes for a fresh plan
            concurrency: Number of parallel chunk workers
            max_retries: Retries per chunk
            force_restart: Ignore existing state and stale chunk files
            total_size: Resource size; skips the HEAD probe when given
            hook_command: Command run for each completed chunk
            hook_concurrency: Number of hook workers (0 = default)
            output_dir: Directory for chunk and state files
            merge_after: Merge the chunks once the transfer completes
            config: Configuration; the global one if None
            transport: HTTP transport; created from the config if None
            listener: Scheduler progress listener
            backoff: Retry delay policy

        """
        self.config = config or get_config()
        transfer = self.config.transfer

        self.url = url
        self.chunk_size = chunk_size if chunk_size is not None else transfer.chunk_size
        self.concurrency = concurrency if concurrency is not None else transfer.concurrency
        self.max_retries = max_retries if max_retries is not None else transfer.max_retries
        self.force_restart = force_restart
        self.total_size = total_size
        self.hook_command = hook_command if hook_command is not None else transfer.hook_command
        self.hook_concurrency = (
            hook_concurrency if hook_concurrency is not None else transfer.hook_concurrency
        )
        self.directory = Path(output_dir if output_dir is not None else transfer.output_dir)
        self.merge_after = merge_after
        self.transport = transport or HttpTransport(self.config.network)
        self.listener = listener
        self.backoff = backoff or ExponentialBackoff(max_delay=transfer.backoff_max_delay)

        self.prefix = prefix_from_url(url)
        self.state: TransferState | None = None
        self.hooks: HookPipeline | None = None

    async def download(
        self, token: CancelToken | None = None, timeout: float | None = None
    ) -> DownloadResult:
        """Run the download to completion.

        Args:
            token: Cancellation token, e.g. triggered by a signal handler
            timeout: Cancel the transfer after this many seconds

        Returns:
            Summary of the download

        Raises:
            PlanningError: Invalid sizes
            StateCorruptedError: Unreadable state file without force_restart
            StateMismatchError: State recorded for another URL or size
            ContentLengthError: HEAD probe failed
            ChunkFailedError: A chunk exhausted its retries
            TransferCancelledError: Cancelled or timed out; progress is saved

        """
        token = token or CancelToken()
        loop = asyncio.get_running_loop()
        started = time.monotonic()
        self.directory.mkdir(parents=True, exist_ok=True)

        with LoggingContext("download", log_level=logging.INFO, url=self.url):
            async with self.transport:
                state = await self._prepare_state(loop)
                self.state = state
                self._log_summary(state)

                if self.hook_command:
                    self.hooks = HookPipeline(
                        state, self.hook_command, self.hook_concurrency
                    )
                    self.hooks.start()

                scheduler = TransferScheduler(
                    state,
                    RangeFetcher(self.transport),
                    concurrency=self.concurrency,
                    max_retries=self.max_retries,
                    backoff=self.backoff,
                    hooks=self.hooks,
                    listener=self.listener,
                )

                timer = (
                    loop.call_later(timeout, token.cancel, "timeout")
                    if timeout is not None
                    else None
                )
                try:
                    report = await scheduler.run(token)
                except ChunkFailedError:
                    # Hooks of chunks already on disk still run.
                    await self._close_hooks()
                    raise
                except BaseException:
                    if self.hooks is not None:
                        await self.hooks.abort()
                    raise
                finally:
                    if timer is not None:
                        timer.cancel()

                hook_results = await self._close_hooks()

        result = DownloadResult(
            url=self.url,
            prefix=self.prefix,
            directory=self.directory,
            total_size=state.total_size,
            num_chunks=state.num_chunks,
            report=report,
            elapsed=time.monotonic() - started,
            hook_results=hook_results,
        )
        logger.info(
            "Download complete: %s (%s in %s)",
            self.prefix,
            format_bytes(state.total_size),
            format_duration(result.elapsed),
        )

        # Every chunk is a .part now; any .tmp left over is from an older plan.
        removed = state.cleanup_temp_files()
        if removed:
            logger.info("Removed %d stale partial files for %s", removed, self.prefix)

        if result.failed_hooks:
            logger.warning(
                "Keeping state file so hooks for chunks %s are retried on the next run",
                result.failed_hooks,
            )
        else:
            state.delete()

        if self.merge_after:
            result.merged = await loop.run_in_executor(None, self._merge)
        return result

    async def _prepare_state(self, loop: asyncio.AbstractEventLoop) -> TransferState:
        state: TransferState | None = None
        if not self.force_restart:
            state = await loop.run_in_executor(
                None, TransferState.load, self.prefix, self.directory
            )

        total_size = self.total_size
        if total_size is None:
            total_size = await self.transport.content_length(self.url)

        if state is not None and not state.matches(self.url, total_size):
            msg = "existing state doesn't match URL/size, use force restart to start over"
            raise StateMismatchError(
                msg,
                {
                    "state_url": state.url,
                    "state_size": state.total_size,
                    "url": self.url,
                    "size": total_size,
                },
            )

        if state is None:
            state = TransferState.create(
                self.url, total_size, self.chunk_size, self.prefix, self.directory
            )
            if self.force_restart:
                removed = state.remove_artifacts()
                if removed:
                    logger.warning(
                        "Force restart: removed %d stale chunk files for %s",
                        removed,
                        self.prefix,
                    )
        else:
            logger.info(
                "Resuming %s: %d/%d chunks complete",
                self.prefix,
                state.completed_count,
                state.num_chunks,
            )
            if state.chunk_size != self.chunk_size:
                logger.info(
                    "Using recorded chunk size %s instead of %s",
                    format_bytes(state.chunk_size),
                    format_bytes(self.chunk_size),
                )

        await state.save_async()
        return state

    def _log_summary(self, state: TransferState) -> None:
        logger.info("URL        : %s", self.url)
        logger.info("File       : %s", self.prefix)
        logger.info("Size       : %s", format_bytes(state.total_size))
        logger.info("Chunk size : %s", format_bytes(state.chunk_size))
        logger.info("Chunks     : %d", state.num_chunks)
        logger.info("Jobs       : %d", self.concurrency)

    async def _close_hooks(self) -> list[HookResult]:
        if self.hooks is None:
            return []
        return await self.hooks.close()

    def _merge(self) -> list[GroupResult]:
        pattern = f"{glob.escape(str(self.directory / self.prefix))}.*.part"
        logger.info("Merging chunks matching %s", pattern)
        return Merger(
            pattern=pattern, delete_after=self.config.merge.delete_after
        ).merge()


async def download(
    url: str,
    chunk_size: int,
    concurrency: int = 1,
    max_retries: int = 10,
    force_restart: bool = False,
    total_size: int | None = None,
    hook_command: str | None = None,
    hook_concurrency: int | None = None,
    *,
    output_dir: str | Path = ".",
    merge_after: bool = False,
    token: CancelToken | None = None,
    timeout: float | None = None,
    config: Config | None = None,
    listener: SchedulerListener | None = None,
) -> DownloadResult:
    """Download ``url`` in chunks of ``chunk_size`` bytes, resuming if possible.

    See :class:`Downloader` for the arguments and raised errors.
    """
    downloader = Downloader(
        url,
        chunk_size=chunk_size,
        concurrency=concurrency,
        max_retries=max_retries,
        force_restart=force_restart,
        total_size=total_size,
        hook_command=hook_command,
        hook_concurrency=hook_concurrency,
        output_dir=output_dir,
        merge_after=merge_after,
        config=config,
        listener=listener,
    )
    return await downloader.download(token=token, timeout=timeout)

