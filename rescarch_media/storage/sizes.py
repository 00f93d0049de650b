"""Size parsing and formatting.

Sizes on the command line use a binary suffix grammar (``1G``, ``500M``,
``2T``, or a plain byte count). Sizes shown to the user follow
``numfmt --to=iec-i --suffix=B`` so output matches the shell tooling users
already know.
"""

from __future__ import annotations

import math
import re

from .exceptions import InvalidSizeFormat

SIZE_PATTERN = re.compile(r"^([0-9]+)([KMGT]?)$")

MULTIPLIERS = {
    "": 1,
    "K": 1024,
    "M": 1024**2,
    "G": 1024**3,
    "T": 1024**4,
}

_IEC_UNITS = ["Ki", "Mi", "Gi", "Ti", "Pi", "Ei"]


def parse_size(text: str) -> int:
    """Parse a size string like ``500M`` into bytes.

    Raises:
        InvalidSizeFormat: If text is empty, negative, fractional, or uses an
            unknown or lowercase suffix.
    """
    match = SIZE_PATTERN.match(text or "")
    if not match:
        raise InvalidSizeFormat(text)
    number, unit = match.groups()
    return int(number) * MULTIPLIERS[unit]


def format_iec(size_bytes: int | None) -> str:
    """Format bytes like ``numfmt --to=iec-i --suffix=B`` (rounding away from zero)."""
    if size_bytes is None:
        return "0B"
    size_bytes = int(size_bytes)
    if abs(size_bytes) < 1024:
        return f"{size_bytes}B"
    value = float(size_bytes)
    for index, unit in enumerate(_IEC_UNITS):
        value /= 1024.0
        if value < 10:
            rounded = math.ceil(value * 10) / 10
            if rounded < 10:
                return f"{rounded:.1f}{unit}B"
            value = rounded
        rounded_int = math.ceil(value)
        if rounded_int < 1024 or index == len(_IEC_UNITS) - 1:
            return f"{rounded_int}{unit}B"
    return f"{size_bytes}B"
