"""Verbosity management for the chunkdl CLI.

Maps repeated ``-v`` flags to logging levels.
"""

from __future__ import annotations

import logging
from enum import IntEnum

from chunkdl.models import LogLevel


class VerbosityLevel(IntEnum):
    """Verbosity levels for CLI commands."""

    QUIET = 0  # Only errors
    NORMAL = 1  # Default: errors, warnings, info
    VERBOSE = 2  # -v: All above + detailed info
    DEBUG = 3  # -vv: All above + debug messages


class VerbosityManager:
    """Manages verbosity levels and maps them to logging levels."""

    COUNT_TO_LEVEL: dict[int, VerbosityLevel] = {
        0: VerbosityLevel.NORMAL,
        1: VerbosityLevel.VERBOSE,
        2: VerbosityLevel.DEBUG,
    }

    LEVEL_TO_LOGGING: dict[VerbosityLevel, int] = {
        VerbosityLevel.QUIET: logging.ERROR,
        VerbosityLevel.NORMAL: logging.INFO,
        VerbosityLevel.VERBOSE: logging.INFO,
        VerbosityLevel.DEBUG: logging.DEBUG,
    }

    def __init__(self, verbosity_count: int = 0, quiet: bool = False):
        """Initialize verbosity manager.

        Args:
            verbosity_count: Number of -v flags
            quiet: Only report errors

        """
        self.verbosity_count = max(0, min(2, verbosity_count))
        if quiet:
            self.level = VerbosityLevel.QUIET
        else:
            self.level = self.COUNT_TO_LEVEL[self.verbosity_count]
        self.logging_level = self.LEVEL_TO_LOGGING[self.level]

    @classmethod
    def from_count(cls, count: int, quiet: bool = False) -> VerbosityManager:
        """Create VerbosityManager from count."""
        return cls(count, quiet)

    def should_log(self, log_level: int) -> bool:
        """Check if a log level should be displayed."""
        return log_level >= self.logging_level

    def is_verbose(self) -> bool:
        return self.level >= VerbosityLevel.VERBOSE

    def is_debug(self) -> bool:
        return self.level >= VerbosityLevel.DEBUG

    def log_level(self, configured: LogLevel) -> LogLevel:
        """Resolve the effective log level given the configured one.

        ``-vv`` forces DEBUG and ``--quiet`` forces ERROR; otherwise the
        configured level is kept.
        """
        if self.level == VerbosityLevel.QUIET:
            return LogLevel.ERROR
        if self.is_debug():
            return LogLevel.DEBUG
        if self.is_verbose() and configured not in (LogLevel.DEBUG, LogLevel.INFO):
            return LogLevel.INFO
        return configured
