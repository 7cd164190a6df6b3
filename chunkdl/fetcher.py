"""Resumable range fetcher.

Fetches one inclusive byte range with a single ``Range`` request and
streams it into a sink. The fetcher never retries; retry policy belongs to
the scheduler.
"""

from __future__ import annotations

import asyncio
from typing import TYPE_CHECKING, Callable, Protocol

import aiohttp

from chunkdl.utils.exceptions import (
    IncompleteTransferError,
    TransferCancelledError,
    TransientTransferError,
)
from chunkdl.utils.logging_config import get_logger

if TYPE_CHECKING:  # pragma: no cover
    from chunkdl.transport import HttpTransport
    from chunkdl.utils.tasks import CancelToken

ACCEPTED_STATUSES = (206, 200)


class ByteSink(Protocol):
    """Anything that accepts appended bytes."""

    def write(self, data: bytes) -> int: ...


class RangeFetcher:
    """Fetch a byte range of a resource over HTTP."""

    def __init__(self, transport: HttpTransport, read_size: int | None = None):
        """Initialize range fetcher.

        Args:
            transport: Started HTTP transport
            read_size: Response read block size in bytes

        """
        self.transport = transport
        self.read_size = read_size or transport.config.read_block_kib * 1024
        self.logger = get_logger(__name__)

    async def fetch(
        self,
        url: str,
        start: int,
        end: int,
        sink: ByteSink,
        token: CancelToken | None = None,
        on_progress: Callable[[int], None] | None = None,
    ) -> int:
        """Fetch bytes ``[start, end]`` of ``url`` into ``sink``.

        A 206 body is written as-is. A 200 body (the server ignored the
        range) is read from offset 0 and the first ``start`` bytes are
        discarded. Exactly ``end - start + 1`` bytes are written.

        Args:
            url: Resource URL
            start: First byte offset (inclusive)
            end: Last byte offset (inclusive)
            sink: Destination for the bytes
            token: Cancellation token checked before the request and after
                every block read
            on_progress: Called with the number of bytes written per block

        Returns:
            Number of bytes written

        Raises:
            TransientTransferError: Unexpected status, network failure or
                local write failure
            IncompleteTransferError: Body ended before the range was complete
            TransferCancelledError: The token was cancelled

        """
        expected = end - start + 1
        written = 0
        headers = {"Range": f"bytes={start}-{end}"}

        if token is not None:
            token.raise_if_cancelled()

        try:
            async with self.transport.get(url, headers=headers) as response:
                if response.status not in ACCEPTED_STATUSES:
                    msg = f"unexpected status code: {response.status}"
                    raise TransientTransferError(
                        msg, {"url": url, "range": headers["Range"]}, status=response.status
                    )

                skip = start if response.status == 200 else 0
                if skip:
                    self.logger.debug(
                        "Server ignored range for %s; skipping %d bytes", url, skip
                    )

                async for block in response.content.iter_chunked(self.read_size):
                    if token is not None:
                        token.raise_if_cancelled()
                    if skip:
                        if len(block) <= skip:
                            skip -= len(block)
                            continue
                        block = block[skip:]
                        skip = 0

                    piece = block[: expected - written]
                    sink.write(piece)
                    written += len(piece)
                    if on_progress is not None:
                        on_progress(len(piece))
                    if written >= expected:
                        break
        except (TransientTransferError, TransferCancelledError):
            raise
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            msg = f"request for bytes {start}-{end} failed: {e!r}"
            raise TransientTransferError(msg, {"url": url, "written": written}) from e
        except OSError as e:
            msg = f"writing bytes {start}-{end} failed: {e}"
            raise TransientTransferError(msg, {"url": url, "written": written}) from e

        if written < expected:
            raise IncompleteTransferError(expected, written)
        return written
