"""
Human readable renderings of sizes, percentages and durations.
"""
import math
from typing import Tuple

_SIZE_UNITS = ["B", "KB", "MB", "GB", "TB"]


def format_file_size(size: float) -> Tuple[float, str]:
    """Scale a byte count to the largest fitting binary unit.

    Args:
        size: Number of bytes

    Returns:
        Tuple of (value, unit), e.g. (1.5, "MB")
    """
    if not size or size <= 0:
        return 0, "B"
    i = min(max(int(math.floor(math.log(size, 1024))), 0), len(_SIZE_UNITS) - 1)
    ratio = 100 if i >= 3 else 1
    value = round(size * ratio / 1024 ** i, 2) / ratio
    return value, _SIZE_UNITS[i]


def format_percent(percent: float) -> str:
    if percent > 10:
        return f"{percent:.1f}%"
    return f"{percent:.2f}%"


def format_duration(seconds: float) -> str:
    """Format seconds as HH:MM:SS, rounding up."""
    seconds = int(math.ceil(max(seconds, 0)))
    h, rest = divmod(seconds, 3600)
    m, s = divmod(rest, 60)
    return f"{h:02d}:{m:02d}:{s:02d}"
