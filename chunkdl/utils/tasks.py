"""Task helpers for tracking, cancelling and signalling background work."""

from __future__ import annotations

import asyncio
import contextlib
from typing import Any, Coroutine

from chunkdl.utils.exceptions import TransferCancelledError


class BackgroundTaskGroup:
    """Tracks background tasks for easier cancellation and cleanup."""

    def __init__(self) -> None:
        """Initialize empty task group."""
        self._tasks: set[asyncio.Task[Any]] = set()

    def __len__(self) -> int:
        return len(self._tasks)

    def create(
        self, coro: Coroutine[Any, Any, Any], name: str | None = None
    ) -> asyncio.Task[Any]:
        """Create and track an asyncio task from a coroutine."""
        task = asyncio.create_task(coro, name=name)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    async def wait(self) -> list[Any]:
        """Wait for all tracked tasks, returning results and exceptions."""
        if not self._tasks:
            return []
        return await asyncio.gather(*self._tasks, return_exceptions=True)

    async def cancel_and_wait(self, timeout: float | None = None) -> None:
        """Cancel all tracked tasks and wait for completion (with optional timeout)."""
        if not self._tasks:
            return
        for t in list(self._tasks):
            if not t.done():
                t.cancel()
        if timeout is None:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        else:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(
                    asyncio.gather(*self._tasks, return_exceptions=True),
                    timeout=timeout,
                )
        self._tasks.clear()


class CancelToken:
    """Cooperative cancellation signal shared by every worker of a run.

    Once cancelled it stays cancelled. Workers check it at each suspension
    point; :meth:`wait` doubles as an interruptible sleep.
    """

    def __init__(self) -> None:
        """Initialize an untriggered token."""
        self._event = asyncio.Event()
        self.reason: str | None = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "cancelled") -> None:
        """Trigger the token. The first reason given is kept."""
        if not self._event.is_set():
            self.reason = reason
            self._event.set()

    def raise_if_cancelled(self) -> None:
        """Raise TransferCancelledError if the token has been triggered."""
        if self._event.is_set():
            raise TransferCancelledError(self.reason or "cancelled")

    async def wait(self, timeout: float | None = None) -> bool:
        """Wait until cancelled or until ``timeout`` elapses.

        Returns:
            True if the token was cancelled, False on timeout.

        """
        if timeout is None:
            await self._event.wait()
            return True
        try:
            await asyncio.wait_for(self._event.wait(), timeout=timeout)
        except asyncio.TimeoutError:
            return self._event.is_set()
        return True
