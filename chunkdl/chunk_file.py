"""On-disk artifacts of a single chunk.

A chunk is written to ``<prefix>.<index>.tmp`` in append mode so an
interrupted transfer can continue where it stopped. Once the full range is
on disk the partial file is flushed, fsynced and atomically renamed to
``<prefix>.<index>.part``.
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import BinaryIO

from chunkdl.utils.logging_config import get_logger

logger = get_logger(__name__)


class ChunkFile:
    """Appendable partial artifact of one chunk."""

    def __init__(self, tmp_path: str | Path, part_path: str | Path, length: int):
        """Initialize chunk file paths.

        Args:
            tmp_path: Partial artifact path
            part_path: Complete artifact path
            length: Expected number of bytes of the chunk

        """
        self.tmp_path = Path(tmp_path)
        self.part_path = Path(part_path)
        self.length = length
        self._file: BinaryIO | None = None
        self._size = 0

    @property
    def is_complete(self) -> bool:
        """Whether the complete artifact already exists."""
        return self.part_path.exists()

    @property
    def size(self) -> int:
        """Bytes currently in the partial artifact."""
        return self._size

    @property
    def remaining(self) -> int:
        return max(0, self.length - self._size)

    def open(self) -> ChunkFile:
        """Open (or create) the partial artifact for appending.

        A partial artifact longer than the chunk is truncated to the chunk
        length.
        """
        self.tmp_path.parent.mkdir(parents=True, exist_ok=True)
        self._file = open(self.tmp_path, "ab")  # noqa: SIM115
        self._size = self._file.tell()
        if self._size > self.length:
            logger.warning(
                "Partial file %s has %d bytes, chunk length is %d; truncating",
                self.tmp_path,
                self._size,
                self.length,
            )
            self._file.truncate(self.length)
            self._file.seek(self.length)
            self._size = self.length
        return self

    def write(self, data: bytes) -> int:
        """Append data to the partial artifact."""
        if self._file is None:
            msg = f"chunk file {self.tmp_path} is not open"
            raise ValueError(msg)
        written = self._file.write(data)
        self._size += written
        return written

    def close(self) -> None:
        """Flush and close the partial artifact, keeping it for resume."""
        if self._file is not None:
            try:
                self._file.flush()
            finally:
                self._file.close()
                self._file = None

    def finalize(self) -> Path:
        """Promote the partial artifact to the complete artifact.

        Returns:
            Path of the complete artifact

        """
        if self._file is not None:
            self._file.flush()
            os.fsync(self._file.fileno())
            self.close()
        os.replace(self.tmp_path, self.part_path)
        logger.debug("Finalized %s (%d bytes)", self.part_path, self._size)
        return self.part_path

    def __enter__(self) -> ChunkFile:
        if self._file is None:
            self.open()
        return self

    def __exit__(self, exc_type, exc_val, exc_tb) -> None:
        self.close()
