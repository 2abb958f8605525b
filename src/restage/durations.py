"""Parsing of human-readable durations such as ``1 week`` or ``1h 30m``.

Used for artifact retention (``expire_in``) and job timeouts (``timeout``).
"""

from __future__ import annotations

import re
from datetime import timedelta

from .errors import ConfigError

# Months and years are calendar-agnostic approximations; expiry is only declared.
_UNITS: dict[str, timedelta] = {
    "s": timedelta(seconds=1),
    "sec": timedelta(seconds=1),
    "secs": timedelta(seconds=1),
    "second": timedelta(seconds=1),
    "seconds": timedelta(seconds=1),
    "m": timedelta(minutes=1),
    "min": timedelta(minutes=1),
    "mins": timedelta(minutes=1),
    "minute": timedelta(minutes=1),
    "minutes": timedelta(minutes=1),
    "h": timedelta(hours=1),
    "hr": timedelta(hours=1),
    "hrs": timedelta(hours=1),
    "hour": timedelta(hours=1),
    "hours": timedelta(hours=1),
    "d": timedelta(days=1),
    "day": timedelta(days=1),
    "days": timedelta(days=1),
    "w": timedelta(weeks=1),
    "week": timedelta(weeks=1),
    "weeks": timedelta(weeks=1),
    "mo": timedelta(days=30),
    "month": timedelta(days=30),
    "months": timedelta(days=30),
    "y": timedelta(days=365),
    "year": timedelta(days=365),
    "years": timedelta(days=365),
}

_COMPONENT = re.compile(r"(\d+(?:\.\d+)?)\s*([a-z]+)")

NEVER = ("never", "forever")


def parse_duration(text: str | int | float) -> timedelta | None:
    """
    Parse a duration string into a timedelta.

    Accepts one or more ``<number> <unit>`` components (``"1 week"``,
    ``"2 days"``, ``"1h 30m"``, ``"3 hrs and 4 mins"``). A bare number is
    read as seconds. ``"never"`` yields None, meaning no expiry.

    Raises:
        ConfigError: If the text is empty or contains an unknown unit.

    """
    if isinstance(text, (int, float)):
        return timedelta(seconds=text)

    normalized = text.strip().lower()
    if not normalized:
        raise ConfigError("Empty duration")
    if normalized in NEVER:
        return None
    if normalized.replace(".", "", 1).isdigit():
        return timedelta(seconds=float(normalized))

    total = timedelta()
    consumed = 0
    for match in _COMPONENT.finditer(normalized):
        amount, unit = match.groups()
        if unit not in _UNITS:
            raise ConfigError(f"Unknown duration unit '{unit}' in '{text}'")
        total += _UNITS[unit] * float(amount)
        consumed += 1

    leftover = _COMPONENT.sub("", normalized).replace("and", "").replace(",", "").strip()
    if consumed == 0 or leftover:
        raise ConfigError(f"Cannot parse duration '{text}'")

    return total


def format_duration(value: timedelta | None) -> str:
    """Render a timedelta in the coarsest unit that represents it exactly."""
    if value is None:
        return "never"

    seconds = int(value.total_seconds())
    for name, size in (("week", 604800), ("day", 86400), ("hour", 3600), ("minute", 60)):
        if seconds and seconds % size == 0:
            count = seconds // size
            return f"{count} {name}{'s' if count != 1 else ''}"
    return f"{seconds} second{'s' if seconds != 1 else ''}"
