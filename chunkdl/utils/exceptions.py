"""Exception hierarchy for chunkdl.

Provides the error taxonomy shared by planning, state persistence,
transfer, hook execution and reassembly.
"""

from __future__ import annotations

from typing import Any


class ChunkDLError(Exception):
    """Base exception for all chunkdl errors."""

    def __init__(self, message: str, details: dict[str, Any] | None = None):
        """Initialize chunkdl error."""
        super().__init__(message)
        self.message = message
        self.details = details or {}

    def __str__(self) -> str:
        """Return string representation of the error."""
        if self.details:
            return f"{self.message} (Details: {self.details})"
        return self.message


class ValidationError(ChunkDLError):
    """Data validation errors."""


class ConfigurationError(ValidationError):
    """Configuration validation errors."""


class PlanningError(ValidationError):
    """Invalid total size or chunk size for a chunk plan."""


class StateError(ChunkDLError):
    """Durable transfer state errors."""


class StateCorruptedError(StateError):
    """State file exists but cannot be parsed or validated."""


class StateMismatchError(StateError):
    """Reloaded state was recorded for a different URL or size."""


class TransferError(ChunkDLError):
    """Network transfer errors."""


class ContentLengthError(TransferError):
    """Resource size could not be determined with a HEAD request."""


class TransientTransferError(TransferError):
    """A single fetch attempt failed and may be retried."""

    def __init__(
        self,
        message: str,
        details: dict[str, Any] | None = None,
        status: int | None = None,
    ):
        """Initialize transient transfer error."""
        super().__init__(message, details)
        self.status = status


class IncompleteTransferError(TransientTransferError):
    """Response body ended before the requested range was complete."""

    def __init__(self, expected: int, received: int):
        """Initialize incomplete transfer error."""
        msg = f"incomplete download: expected {expected} bytes, got {received}"
        super().__init__(msg, {"expected": expected, "received": received})
        self.expected = expected
        self.received = received


class ChunkFailedError(TransferError):
    """A chunk exhausted its retry budget."""

    def __init__(
        self,
        index: int,
        attempts: int,
        last_error: BaseException | None = None,
    ):
        """Initialize chunk failure error."""
        msg = f"chunk {index} failed after {attempts} attempts: {last_error}"
        super().__init__(msg, {"index": index, "attempts": attempts})
        self.index = index
        self.attempts = attempts
        self.last_error = last_error


class TransferCancelledError(ChunkDLError):
    """Transfer stopped by an external interrupt or a timeout.

    Not a failure: progress has been persisted and the transfer can be
    resumed by running it again.
    """


class HookError(ChunkDLError):
    """Post-completion hook could not be executed."""


class MergeError(ChunkDLError):
    """Reassembly of chunk files failed."""
