"""Reassembly of chunk files into the original resource.

Chunk files matching a glob are grouped by the basename encoded in their
name (``<basename>.<index>.part``); each group is concatenated in index
order into ``<output>.assembling`` and atomically renamed into place.
"""

from __future__ import annotations

import contextlib
import glob
import os
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from chunkdl.state import state_file_name
from chunkdl.utils.exceptions import MergeError
from chunkdl.utils.formatting import format_bytes
from chunkdl.utils.logging_config import get_logger

logger = get_logger(__name__)

PART_FILE_PATTERN = re.compile(r"^(.+?)\.(\d+)\.part$")
ASSEMBLING_SUFFIX = ".assembling"
COPY_BUFFER_SIZE = 1024 * 1024


def extract_basename(path: str | Path) -> tuple[str, int] | None:
    """Split a chunk file name into ``(basename, index)``.

    ``"dir/file.bin.000003.part"`` gives ``("file.bin", 3)``; names that do
    not follow the chunk naming scheme give None.
    """
    match = PART_FILE_PATTERN.match(Path(path).name)
    if match is None:
        return None
    return match.group(1), int(match.group(2))


def chunk_order(path: str) -> tuple[str, int]:
    """Sort key placing chunk files of one basename in index order."""
    parsed = extract_basename(path)
    if parsed is None:
        return path, -1
    return str(Path(path).parent / parsed[0]), parsed[1]


def group_by_basename(paths: list[str]) -> dict[str, list[str]]:
    """Group chunk file paths by basename, ignoring unrelated files."""
    groups: dict[str, list[str]] = {}
    for path in paths:
        parsed = extract_basename(path)
        if parsed is not None:
            groups.setdefault(parsed[0], []).append(path)
    return groups


@dataclass
class GroupResult:
    """Outcome of merging one basename group."""

    basename: str
    output: Path
    files: list[str] = field(default_factory=list)
    bytes_written: int = 0
    error: MergeError | None = None

    @property
    def success(self) -> bool:
        return self.error is None


class Merger:
    """Merge chunk files selected by a glob pattern."""

    def __init__(
        self,
        output: str | Path | None = None,
        pattern: str = "*.part",
        delete_after: bool = False,
        allow_fallback: bool = True,
        on_file: Callable[[int, int, str], None] | None = None,
    ):
        """Initialize merger.

        Args:
            output: Output file; None derives it from the chunk basenames
            pattern: Glob selecting chunk files
            delete_after: Remove chunk files and the state file after a
                successful merge
            allow_fallback: With an explicit output that matches no group,
                merge every matched file instead of failing
            on_file: Called with ``(position, total, path)`` per appended file

        """
        self.output = Path(output) if output else None
        self.pattern = pattern or "*.part"
        self.delete_after = delete_after
        self.allow_fallback = allow_fallback
        self.on_file = on_file

    def _find(self) -> list[str]:
        matches = glob.glob(self.pattern)
        if not matches:
            msg = f"no files match pattern: {self.pattern}"
            raise MergeError(msg, {"pattern": self.pattern})
        return matches

    def merge_groups(self) -> list[GroupResult]:
        """Merge every selected group, reporting each independently.

        Raises:
            MergeError: If nothing matches the pattern, or an explicit output
                matches no group and the fallback is disabled

        """
        matches = self._find()
        groups = group_by_basename(matches)

        if self.output is not None:
            name = self.output.name
            files = groups.get(name)
            if files is None:
                if not self.allow_fallback:
                    msg = f"no chunk files for {name} match pattern {self.pattern}"
                    raise MergeError(msg, {"output": str(self.output)})
                logger.warning(
                    "No chunk group named %s; merging all %d files matching %s",
                    name,
                    len(matches),
                    self.pattern,
                )
                return [self._merge_one(name, matches, self.output, check_gaps=False)]
            return [self._merge_one(name, files, self.output)]

        if not groups:
            msg = f"no valid chunk files among files matching {self.pattern}"
            raise MergeError(msg, {"pattern": self.pattern})

        basenames = sorted(groups)
        if len(basenames) == 1:
            logger.info("Auto-detected output name: %s", basenames[0])
        else:
            logger.info(
                "Found %d download sessions to merge: %s",
                len(basenames),
                ", ".join(f"{b} ({len(groups[b])} files)" for b in basenames),
            )

        results = []
        for basename in basenames:
            files = groups[basename]
            output = Path(files[0]).parent / basename
            results.append(self._merge_one(basename, files, output))
        return results

    def merge(self) -> list[GroupResult]:
        """Merge like :meth:`merge_groups`, then raise if any group failed."""
        results = self.merge_groups()
        failed = [r for r in results if not r.success]
        if failed:
            names = ", ".join(r.basename for r in failed)
            msg = f"failed to merge {len(failed)} of {len(results)} groups: {names}"
            raise MergeError(
                msg, {"failed": {r.basename: str(r.error) for r in failed}}
            )
        return results

    def _merge_one(
        self, basename: str, files: list[str], output: Path, check_gaps: bool = True
    ) -> GroupResult:
        result = GroupResult(
            basename=basename, output=output, files=sorted(files, key=chunk_order)
        )
        try:
            if check_gaps:
                self._check_contiguous(basename, result.files)
            result.bytes_written = self._assemble(result.files, output)
        except MergeError as e:
            logger.error("Merge of %s failed: %s", basename, e)
            result.error = e
            return result

        logger.info(
            "Merge complete: %s (%s)", output, format_bytes(result.bytes_written)
        )
        # Sources go only once the output is in place, so a failed merge leaves
        # every chunk file untouched.
        if self.delete_after:
            self._delete_sources(basename, result.files)
        return result

    def _check_contiguous(self, basename: str, files: list[str]) -> None:
        indices = []
        for path in files:
            parsed = extract_basename(path)
            if parsed is not None:
                indices.append(parsed[1])
        if not indices:
            return
        expected = set(range(min(indices), max(indices) + 1))
        missing = sorted(expected - set(indices))
        if missing:
            msg = f"{basename}: missing chunk files {missing[:10]}"
            raise MergeError(msg, {"basename": basename, "missing": missing})
        if min(indices) != 0:
            logger.warning("%s: first chunk file has index %d", basename, min(indices))

    def _assemble(self, files: list[str], output: Path) -> int:
        tmp_path = output.with_name(output.name + ASSEMBLING_SUFFIX)
        logger.info("Merging %d chunk files into: %s", len(files), output)
        total = 0
        try:
            with open(tmp_path, "wb") as out:
                for position, path in enumerate(files, start=1):
                    logger.debug("[%d/%d] Merging %s", position, len(files), path)
                    with open(path, "rb") as part:
                        shutil.copyfileobj(part, out, COPY_BUFFER_SIZE)
                        total += part.tell()
                    if self.on_file is not None:
                        self.on_file(position, len(files), path)
                out.flush()
                os.fsync(out.fileno())
            os.replace(tmp_path, output)
        except OSError as e:
            with contextlib.suppress(OSError):
                tmp_path.unlink()
            msg = f"failed to assemble {output}: {e}"
            raise MergeError(msg, {"output": str(output)}) from e
        return total

    def _delete_sources(self, basename: str, files: list[str]) -> None:
        for path in files:
            try:
                os.remove(path)
            except OSError as e:
                logger.warning("Failed to delete %s: %s", path, e)

        state_file = Path(files[0]).parent / state_file_name(basename)
        try:
            state_file.unlink()
        except FileNotFoundError:
            pass
        except OSError as e:
            logger.warning("Failed to delete state file %s: %s", state_file, e)
        else:
            logger.debug("Deleted state file %s", state_file)


def merge(
    output: str | Path | None = None,
    pattern: str = "*.part",
    delete_after: bool = False,
    allow_fallback: bool = True,
) -> list[GroupResult]:
    """Merge chunk files matching ``pattern``.

    Raises:
        MergeError: If nothing could be merged or any group failed

    """
    return Merger(
        output=output,
        pattern=pattern,
        delete_after=delete_after,
        allow_fallback=allow_fallback,
    ).merge()
