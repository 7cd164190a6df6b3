"""Shared utilities and infrastructure.

This module contains common utilities used throughout the application.
"""

from __future__ import annotations

from chunkdl.utils.backoff import ExponentialBackoff
from chunkdl.utils.exceptions import (
    ChunkDLError,
    ConfigurationError,
    MergeError,
    PlanningError,
    StateError,
    TransferCancelledError,
    TransferError,
)
from chunkdl.utils.logging_config import get_logger, setup_logging
from chunkdl.utils.tasks import BackgroundTaskGroup, CancelToken

__all__ = [
    "BackgroundTaskGroup",
    "CancelToken",
    # Exceptions
    "ChunkDLError",
    "ConfigurationError",
    "ExponentialBackoff",
    "MergeError",
    "PlanningError",
    "StateError",
    "TransferCancelledError",
    "TransferError",
    # Logging
    "get_logger",
    "setup_logging",
]
