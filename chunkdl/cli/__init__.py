"""Command line interface for chunkdl."""

from __future__ import annotations
