"""Configuration management for chunkdl.

Provides centralized configuration with TOML support and validation,
loaded hierarchically from defaults, then the config file, then the
environment. Command line options override the result per invocation.
"""

from __future__ import annotations

import json
import logging
import os
from pathlib import Path
from typing import Any

import toml

from chunkdl.models import Config
from chunkdl.utils.exceptions import ConfigurationError
from chunkdl.utils.formatting import parse_size
from chunkdl.utils.logging_config import setup_logging

CONFIG_FILE_NAME = "chunkdl.toml"

# Global configuration instance
_config_manager: ConfigManager | None = None

# Mapping of environment variables to config paths
ENV_MAPPINGS: dict[str, str] = {
    # Network
    "CHUNKDL_PROXY": "network.proxy_url",
    "CHUNKDL_CONNECT_TIMEOUT": "network.connect_timeout",
    "CHUNKDL_READ_TIMEOUT": "network.read_timeout",
    "CHUNKDL_USER_AGENT": "network.user_agent",
    "CHUNKDL_READ_BLOCK_KIB": "network.read_block_kib",
    # Transfer
    "CHUNKDL_CHUNK_SIZE": "transfer.chunk_size",
    "CHUNKDL_JOBS": "transfer.concurrency",
    "CHUNKDL_MAX_RETRIES": "transfer.max_retries",
    "CHUNKDL_BACKOFF_MAX_DELAY": "transfer.backoff_max_delay",
    "CHUNKDL_OUTPUT_DIR": "transfer.output_dir",
    "CHUNKDL_POST_PART": "transfer.hook_command",
    "CHUNKDL_POST_PART_JOBS": "transfer.hook_concurrency",
    # Merge
    "CHUNKDL_MERGE_PATTERN": "merge.pattern",
    "CHUNKDL_MERGE_DELETE": "merge.delete_after",
    "CHUNKDL_MERGE_ALLOW_FALLBACK": "merge.allow_fallback",
    # Observability
    "CHUNKDL_LOG_LEVEL": "observability.log_level",
    "CHUNKDL_LOG_FILE": "observability.log_file",
    "CHUNKDL_STRUCTURED_LOGGING": "observability.structured_logging",
}

# Values kept as strings even when they look numeric
_STRING_PATHS = {
    "network.proxy_url",
    "network.user_agent",
    "transfer.output_dir",
    "transfer.hook_command",
    "merge.pattern",
    "observability.log_level",
    "observability.log_file",
}


class ConfigManager:
    """Manages configuration loading and validation."""

    def __init__(self, config_file: str | Path | None = None, setup_log: bool = True):
        """Initialize configuration manager.

        Args:
            config_file: Path to TOML config file. If None, searches for chunkdl.toml
            setup_log: Configure logging from the loaded configuration

        """
        self.config_file = self._find_config_file(config_file)
        self.config = self._load_config()
        if setup_log:
            self._setup_logging()

    def _find_config_file(
        self,
        config_file: str | Path | None,
    ) -> Path | None:
        """Find configuration file in standard locations."""
        if config_file:
            path = Path(config_file)
            if not path.exists():
                msg = f"Config file not found: {path}"
                raise ConfigurationError(msg, {"path": str(path)})
            return path

        # Search in current directory, then home directory
        search_paths = [
            Path.cwd() / CONFIG_FILE_NAME,
            Path.home() / ".config" / "chunkdl" / CONFIG_FILE_NAME,
            Path.home() / f".{CONFIG_FILE_NAME}",
        ]

        for path in search_paths:
            if path.exists():
                return path

        return None

    def _load_config(self) -> Config:
        """Load configuration from file and environment."""
        config_data: dict[str, Any] = {}

        if self.config_file and self.config_file.exists():
            try:
                with open(self.config_file, encoding="utf-8") as f:
                    config_data.update(toml.load(f))
            except (OSError, toml.TomlDecodeError) as e:
                msg = f"Failed to load config file {self.config_file}: {e}"
                raise ConfigurationError(msg, {"path": str(self.config_file)}) from e

        # Sizes may be written as "100M" in the file
        transfer = config_data.get("transfer")
        if isinstance(transfer, dict) and isinstance(transfer.get("chunk_size"), str):
            transfer["chunk_size"] = self._parse_size(transfer["chunk_size"])

        env_config = self._get_env_config()
        config_data = self._merge_config(config_data, env_config)

        try:
            return Config(**config_data)
        except Exception as e:
            msg = f"Invalid configuration: {e}"
            raise ConfigurationError(msg) from e

    @staticmethod
    def _parse_size(raw: str) -> int:
        try:
            return parse_size(raw)
        except ValueError as e:
            msg = f"Invalid chunk size: {raw!r}"
            raise ConfigurationError(msg) from e

    def _get_env_config(self) -> dict[str, Any]:
        """Get configuration from environment variables."""
        env_config: dict[str, Any] = {}

        def _parse_env_value(raw: str, path: str) -> bool | int | float | str:
            if path in _STRING_PATHS:
                return raw
            if path == "transfer.chunk_size":
                return self._parse_size(raw)

            low = raw.lower()
            if low in {"true", "yes", "on"}:
                return True
            if low in {"false", "no", "off"}:
                return False
            try:
                if "." in raw:
                    return float(raw)
                return int(raw)
            except ValueError:
                return raw

        def _set_nested(d: dict[str, Any], path: str, value: Any) -> None:
            parts = path.split(".")
            cur = d
            for p in parts[:-1]:
                cur = cur.setdefault(p, {})
            cur[parts[-1]] = value

        for env_name, cfg_path in ENV_MAPPINGS.items():
            raw = os.getenv(env_name)
            if raw is None:
                continue
            _set_nested(env_config, cfg_path, _parse_env_value(raw, cfg_path))

        return env_config

    def _merge_config(
        self,
        base: dict[str, Any],
        override: dict[str, Any],
    ) -> dict[str, Any]:
        """Merge configuration dictionaries recursively."""
        result = base.copy()

        for key, value in override.items():
            if (
                key in result
                and isinstance(result[key], dict)
                and isinstance(value, dict)
            ):
                result[key] = self._merge_config(result[key], value)
            else:
                result[key] = value

        return result

    def export(self, fmt: str = "toml") -> str:
        """Export current configuration as a string in the given format.

        Args:
            fmt: one of "toml" or "json"

        """
        data = self.config.model_dump(mode="json", exclude_none=True)

        fmt = (fmt or "toml").lower()
        if fmt == "toml":
            return toml.dumps(data)
        if fmt == "json":
            return json.dumps(data, indent=2)
        msg = f"Unsupported export format: {fmt}"
        raise ConfigurationError(msg)

    def _setup_logging(self) -> None:
        """Set up logging configuration."""
        setup_logging(self.config.observability)
        logging.getLogger("chunkdl.config").debug(
            "Configuration loaded from %s", self.config_file or "defaults"
        )


def get_config() -> Config:
    """Get the global configuration instance."""
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager(setup_log=False)
    return _config_manager.config


def init_config(config_file: str | Path | None = None) -> ConfigManager:
    """Initialize the global configuration manager."""
    global _config_manager
    _config_manager = ConfigManager(config_file)
    return _config_manager


def reload_config() -> Config:
    """Reload configuration from file."""
    if _config_manager is None:
        msg = "Configuration not initialized"
        raise ConfigurationError(msg)

    _config_manager.config = _config_manager._load_config()  # noqa: SLF001
    _config_manager._setup_logging()  # noqa: SLF001
    return _config_manager.config


def set_config(new_config: Config) -> None:
    """Replace the global configuration at runtime.

    Reconfigures logging based on the new config.
    """
    global _config_manager
    if _config_manager is None:
        _config_manager = ConfigManager(None, setup_log=False)
    _config_manager.config = new_config
    _config_manager._setup_logging()  # noqa: SLF001
