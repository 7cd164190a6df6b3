"""Configuration management.

This module handles configuration loading, validation and export.
"""

from __future__ import annotations

from chunkdl.config.config import (
    Config,
    ConfigManager,
    get_config,
    init_config,
    reload_config,
    set_config,
)

__all__ = [
    "Config",
    "ConfigManager",
    "get_config",
    "init_config",
    "reload_config",
    "set_config",
]
