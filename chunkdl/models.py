"""Pydantic models for chunkdl.

Provides validated data models for the persisted transfer state and the
application configuration.
"""

from __future__ import annotations

from enum import Enum

from pydantic import BaseModel, Field, field_validator, model_validator


class LogLevel(str, Enum):
    """Logging levels."""

    DEBUG = "DEBUG"
    INFO = "INFO"
    WARNING = "WARNING"
    ERROR = "ERROR"
    CRITICAL = "CRITICAL"


class ChunkDescriptor(BaseModel):
    """One contiguous byte range of the resource and its progress flags."""

    index: int = Field(..., ge=0, description="Position in the plan")
    start: int = Field(..., ge=0, description="First byte offset (inclusive)")
    end: int = Field(..., ge=0, description="Last byte offset (inclusive)")
    downloaded: int = Field(default=0, ge=0, description="Bytes on disk for this chunk")
    completed: bool = Field(default=False, description="Chunk bytes fully on disk")
    post_part_completed: bool = Field(
        default=False, description="Post-completion hook succeeded"
    )

    @property
    def length(self) -> int:
        """Number of bytes in the range."""
        return self.end - self.start + 1

    @model_validator(mode="after")
    def validate_range(self) -> ChunkDescriptor:
        """Validate the byte range is well formed."""
        if self.end < self.start:
            msg = f"chunk {self.index}: end {self.end} before start {self.start}"
            raise ValueError(msg)
        return self


class TransferStateModel(BaseModel):
    """Persisted form of a transfer's durable state."""

    url: str = Field(..., min_length=1, description="Resource URL")
    total_size: int = Field(..., gt=0, description="Resource size in bytes")
    chunk_size: int = Field(..., gt=0, description="Nominal chunk size in bytes")
    filename_prefix: str = Field(..., min_length=1, description="Artifact name prefix")
    chunks: list[ChunkDescriptor] = Field(..., min_length=1, description="Chunk plan")
    completed_count: int = Field(default=0, ge=0, description="Completed chunk count")

    @model_validator(mode="after")
    def validate_plan(self) -> TransferStateModel:
        """Validate the chunks cover ``[0, total_size)`` contiguously."""
        expected_start = 0
        for position, chunk in enumerate(self.chunks):
            if chunk.index != position:
                msg = f"chunk at position {position} has index {chunk.index}"
                raise ValueError(msg)
            if chunk.start != expected_start:
                msg = f"chunk {position} starts at {chunk.start}, expected {expected_start}"
                raise ValueError(msg)
            expected_start = chunk.end + 1
        if expected_start != self.total_size:
            msg = f"chunks end at {expected_start - 1}, expected {self.total_size - 1}"
            raise ValueError(msg)
        return self


PROXY_SCHEMES = ("http://", "https://", "socks4://", "socks5://", "socks5h://")


class NetworkConfig(BaseModel):
    """HTTP transport configuration."""

    connect_timeout: float = Field(
        default=30.0, gt=0, description="Connection timeout in seconds"
    )
    read_timeout: float = Field(
        default=60.0, gt=0, description="Socket read timeout in seconds"
    )
    proxy_url: str | None = Field(
        default=None, description="Proxy URL (http, https, socks4, socks5, socks5h)"
    )
    user_agent: str = Field(default="chunkdl/1.0", description="User-Agent header")
    read_block_kib: int = Field(
        default=32, ge=1, le=4096, description="Response read block size in KiB"
    )

    @field_validator("proxy_url")
    @classmethod
    def validate_proxy_url(cls, v: str | None) -> str | None:
        """Validate the proxy uses a scheme aiohttp can speak."""
        if v is None or v == "":
            return None
        if not v.startswith(PROXY_SCHEMES):
            msg = f"unsupported proxy scheme in {v!r}"
            raise ValueError(msg)
        return v


class TransferConfig(BaseModel):
    """Chunked transfer configuration."""

    chunk_size: int = Field(
        default=100_000_000, gt=0, description="Chunk size in bytes"
    )
    concurrency: int = Field(default=1, ge=1, le=256, description="Parallel chunk workers")
    max_retries: int = Field(default=10, ge=0, description="Retries per chunk")
    backoff_max_delay: float = Field(
        default=60.0, ge=0, description="Upper bound for retry backoff in seconds"
    )
    output_dir: str = Field(default=".", description="Directory for chunk and state files")
    hook_command: str | None = Field(
        default=None, description="Command run for each completed chunk"
    )
    hook_concurrency: int = Field(
        default=0, ge=0, le=256, description="Parallel hook workers (0 = default of 10)"
    )


class MergeConfig(BaseModel):
    """Reassembly configuration."""

    pattern: str = Field(default="*.part", description="Glob selecting chunk files")
    delete_after: bool = Field(
        default=False, description="Delete chunk files after a successful merge"
    )
    allow_fallback: bool = Field(
        default=True,
        description="Merge every matched file when the output name matches no group",
    )


class ObservabilityConfig(BaseModel):
    """Observability configuration."""

    log_level: LogLevel = Field(default=LogLevel.INFO, description="Log level")
    log_file: str | None = Field(None, description="Log file path")
    structured_logging: bool = Field(
        default=False, description="Emit JSON log lines instead of rich output"
    )
    log_correlation_id: bool = Field(
        default=True,
        description="Include correlation IDs",
    )


class Config(BaseModel):
    """Main application configuration."""

    network: NetworkConfig = Field(default_factory=NetworkConfig)
    transfer: TransferConfig = Field(default_factory=TransferConfig)
    merge: MergeConfig = Field(default_factory=MergeConfig)
    observability: ObservabilityConfig = Field(default_factory=ObservabilityConfig)
