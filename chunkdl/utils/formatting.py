"""Human-readable sizes and durations (decimal units)."""

from __future__ import annotations

_SIZE_SUFFIXES: dict[str, int] = {
    "K": 1000,
    "M": 1000 * 1000,
    "G": 1000 * 1000 * 1000,
}

_UNITS = ("KB", "MB", "GB", "TB")


def parse_size(value: str) -> int:
    """Parse a byte count with an optional K/M/G suffix (powers of 1000).

    Args:
        value: Size such as ``"100M"``, ``"2g"`` or ``"4096"``

    Returns:
        Number of bytes

    Raises:
        ValueError: If the value is empty or not a number

    """
    text = value.strip()
    if not text:
        msg = "empty size"
        raise ValueError(msg)

    multiplier = _SIZE_SUFFIXES.get(text[-1].upper())
    if multiplier is not None:
        text = text[:-1]
    else:
        multiplier = 1

    try:
        number = int(text, 10)
    except ValueError as e:
        msg = f"invalid size: {value!r}"
        raise ValueError(msg) from e
    return number * multiplier


def format_bytes(num_bytes: int) -> str:
    """Format a byte count, e.g. ``1500 -> "1.5 KB"``."""
    unit = 1000
    if num_bytes < unit:
        return f"{num_bytes} B"

    div, exp = unit, 0
    n = num_bytes // unit
    while n >= unit and exp < len(_UNITS) - 1:
        div *= unit
        exp += 1
        n //= unit
    return f"{num_bytes / div:.1f} {_UNITS[exp]}"


def format_duration(seconds: float) -> str:
    """Format a duration as seconds, minutes or hours with one decimal."""
    if seconds < 60:
        return f"{seconds:.1f}s"
    if seconds < 3600:
        return f"{seconds / 60:.1f}m"
    return f"{seconds / 3600:.1f}h"
