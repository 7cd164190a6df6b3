"""Chunk planning.

Splits a resource of known size into fixed-size inclusive byte ranges.
"""

from __future__ import annotations

from chunkdl.utils.exceptions import PlanningError


def _validate(total_size: int, chunk_size: int) -> None:
    if total_size <= 0:
        msg = f"total size must be positive, got {total_size}"
        raise PlanningError(msg, {"total_size": total_size})
    if chunk_size <= 0:
        msg = f"chunk size must be positive, got {chunk_size}"
        raise PlanningError(msg, {"chunk_size": chunk_size})


def count_chunks(total_size: int, chunk_size: int) -> int:
    """Return ``ceil(total_size / chunk_size)``.

    Raises:
        PlanningError: If either size is not positive

    """
    _validate(total_size, chunk_size)
    return (total_size + chunk_size - 1) // chunk_size


def plan_chunks(total_size: int, chunk_size: int) -> list[tuple[int, int]]:
    """Split ``[0, total_size)`` into inclusive ``(start, end)`` ranges.

    Every range is ``chunk_size`` bytes long except possibly the last one,
    and together they cover the resource without gaps or overlap.

    Args:
        total_size: Resource size in bytes
        chunk_size: Nominal chunk size in bytes

    Returns:
        Ranges in ascending order

    Raises:
        PlanningError: If either size is not positive

    """
    count = count_chunks(total_size, chunk_size)
    return [
        (i * chunk_size, min((i + 1) * chunk_size, total_size) - 1)
        for i in range(count)
    ]
