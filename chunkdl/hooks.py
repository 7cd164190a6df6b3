"""Post-completion hook pipeline.

Runs a user supplied shell command for every chunk whose bytes are on disk,
on a worker pool independent from the transfer workers. Hook failures are
recorded and logged but never fail the transfer; failed hooks are retried
by the next resume of the same transfer.
"""

from __future__ import annotations

import asyncio
import shlex
from dataclasses import dataclass
from typing import TYPE_CHECKING, Callable

from chunkdl.utils.exceptions import HookError
from chunkdl.utils.logging_config import get_logger
from chunkdl.utils.tasks import BackgroundTaskGroup

if TYPE_CHECKING:  # pragma: no cover
    from chunkdl.state import TransferState

DEFAULT_HOOK_CONCURRENCY = 10


@dataclass
class HookResult:
    """Outcome of one hook execution."""

    index: int
    command: str
    success: bool
    returncode: int | None
    output: str


def render_command(template: str, values: dict[str, str]) -> str:
    """Substitute ``{name}`` placeholders with the given values.

    Values are complete shell words, so a placeholder written inside its own
    quotes (``"{part}"`` or ``'{part}'``) is replaced together with them.
    A placeholder embedded in a longer quoted string is not unquoted. Only the
    names in ``values`` are replaced; other braces are left alone.
    """
    command = template
    for name, value in values.items():
        placeholder = "{" + name + "}"
        for quote in ('"', "'"):
            command = command.replace(quote + placeholder + quote, value)
        command = command.replace(placeholder, value)
    return command


def hook_values(state: TransferState, index: int) -> dict[str, str]:
    """Placeholder values for chunk ``index``.

    ``{part}`` and ``{base}`` are shell-quoted because they derive from the
    resource URL.
    """
    return {
        "part": shlex.quote(str(state.chunk_part_path(index))),
        "idx": str(index),
        "base": shlex.quote(state.prefix),
    }


class HookPipeline:
    """Bounded pool of workers running the hook command per completed chunk."""

    def __init__(
        self,
        state: TransferState,
        command: str,
        concurrency: int = DEFAULT_HOOK_CONCURRENCY,
        on_result: Callable[[HookResult], None] | None = None,
    ):
        """Initialize hook pipeline.

        Args:
            state: Shared transfer state
            command: Shell command template with ``{part}``, ``{idx}``, ``{base}``
            concurrency: Number of hook workers; 0 selects the default
            on_result: Called with every hook result

        """
        if not command.strip():
            msg = "hook command must not be empty"
            raise ValueError(msg)
        self.state = state
        self.command = command
        self.concurrency = concurrency or DEFAULT_HOOK_CONCURRENCY
        self.on_result = on_result
        self.results: list[HookResult] = []
        self.logger = get_logger(__name__)

        self._queue: asyncio.Queue[int | None] | None = None
        self._workers = BackgroundTaskGroup()

    @property
    def started(self) -> bool:
        return self._queue is not None

    def start(self) -> None:
        """Start the workers. The queue holds every chunk so submit never blocks."""
        if self._queue is not None:
            return
        # Every chunk is submitted at most once per run; one slot per
        # worker sentinel on top.
        self._queue = asyncio.Queue(maxsize=self.state.num_chunks + self.concurrency)
        for worker_id in range(self.concurrency):
            self._workers.create(
                self._worker(worker_id, self._queue), name=f"hook-worker-{worker_id}"
            )
        self.logger.debug("Started %d hook workers", self.concurrency)

    def submit(self, index: int) -> None:
        """Queue chunk ``index`` for its hook."""
        if self._queue is None:
            msg = "hook pipeline is not started"
            raise RuntimeError(msg)
        self._queue.put_nowait(index)

    async def close(self) -> list[HookResult]:
        """Run every queued hook to completion and stop the workers."""
        if self._queue is None:
            return self.results
        for _ in range(self.concurrency):
            self._queue.put_nowait(None)
        await self._workers.wait()
        self._queue = None
        failed = sum(1 for r in self.results if not r.success)
        if failed:
            self.logger.warning(
                "%d of %d hooks failed; they will be retried on the next run",
                failed,
                len(self.results),
            )
        return self.results

    async def abort(self) -> None:
        """Stop the workers immediately, killing running hook processes."""
        await self._workers.cancel_and_wait()
        self._queue = None

    async def _worker(self, worker_id: int, queue: asyncio.Queue[int | None]) -> None:
        while True:
            index = await queue.get()
            if index is None:
                return
            result = await self.run_hook(index)
            self.results.append(result)
            self.state.mark_hook_complete(index, result.success)
            try:
                await self.state.save_async()
            except Exception:
                self.logger.exception(
                    "Hook worker %d could not save state after chunk %d",
                    worker_id,
                    index,
                )
            if self.on_result is not None:
                self.on_result(result)

    async def run_hook(self, index: int) -> HookResult:
        """Run the hook for chunk ``index`` and capture its combined output."""
        command = render_command(self.command, hook_values(self.state, index))
        self.logger.debug("Running hook for chunk %d: %s", index, command)
        try:
            returncode, output = await self._execute(command)
        except HookError as e:
            self.logger.warning("Hook for chunk %d could not run: %s", index, e)
            return HookResult(index, command, False, None, str(e))

        success = returncode == 0
        if success:
            self.logger.info("Hook for chunk %d succeeded", index)
            if output:
                self.logger.debug("Hook output for chunk %d: %s", index, output)
        else:
            self.logger.warning(
                "Hook for chunk %d exited with %s: %s", index, returncode, output
            )
        return HookResult(index, command, success, returncode, output)

    async def _execute(self, command: str) -> tuple[int | None, str]:
        try:
            process = await asyncio.create_subprocess_shell(
                command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            msg = f"failed to start hook: {e}"
            raise HookError(msg, {"command": command}) from e

        try:
            stdout, _ = await process.communicate()
        except asyncio.CancelledError:
            if process.returncode is None:
                process.kill()
                await process.wait()
            raise
        return process.returncode, stdout.decode(errors="replace").strip()
