"""
Byte quantity formatting and parsing.

Uses binary (1024-based) units throughout.
"""

import re

_UNITS = ["B", "KB", "MB", "GB", "TB"]
_MULTIPLIERS = {unit: 1024 ** power for power, unit in enumerate(_UNITS)}
_PATTERN = re.compile(r"^(\d+(?:\.\d+)?)\s*([A-Z]+)$", re.IGNORECASE)


def format_bytes(value: int) -> str:
    """Render a byte count with the largest unit that keeps it >= 1.

    >>> format_bytes(1536)
    '1.5 KB'
    """
    if value == 0:
        return "0 B"
    power = 0
    while abs(value) >= 1024 ** (power + 1) and power < len(_UNITS) - 1:
        power += 1
    scaled = f"{value / 1024 ** power:.2f}".rstrip("0").rstrip(".")
    return f"{scaled} {_UNITS[power]}"


def parse_bytes(text: str) -> int:
    """Parse strings like ``10GB`` or ``1.5 tb`` into a byte count.

    Plain integers are taken as bytes. Fractions of a byte are floored.

    Raises:
        ValueError: If the string is not a number followed by a known unit
    """
    text = text.strip()
    if text.isdigit():
        return int(text)

    match = _PATTERN.match(text)
    if not match:
        raise ValueError(f"Invalid byte string format: {text!r}")

    unit = match.group(2).upper()
    if unit not in _MULTIPLIERS:
        raise ValueError(f"Invalid unit: {match.group(2)}")

    return int(float(match.group(1)) * _MULTIPLIERS[unit])
