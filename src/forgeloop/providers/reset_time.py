"""Best-effort extraction of rate-limit reset times from backend text.

Backends phrase reset times differently ("resets 4am", "retry after 30
seconds", "usage limit reached|1718000000"). These parsers are heuristics,
so results are advisory: callers fall back to a fixed cool-down when
nothing matches.
"""

from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from datetime import datetime, timedelta

DEFAULT_RESET_SECONDS = 60.0

ResetTimeParser = Callable[[str, datetime], datetime | None]

_CLOCK_TIME = re.compile(
    r"reset(?:s)?(?:\s+at)?\s+(\d{1,2})(?::(\d{2}))?\s*(am|pm)\b",
    re.IGNORECASE,
)
_RELATIVE_SECONDS = (
    re.compile(r"resets?\s+in\s+(\d+)\s*(?:s|sec|secs|seconds?)\b", re.IGNORECASE),
    re.compile(r"retry\s+after\s+(\d+)\s*(?:s|sec|secs|seconds?)?\b", re.IGNORECASE),
    re.compile(r"wait\b.{0,20}?(\d+)\s*(?:s|sec|secs|seconds?)\b", re.IGNORECASE),
    re.compile(r"(\d+)\s*seconds?\s+until\s+reset", re.IGNORECASE),
)
_RELATIVE_MINUTES = re.compile(
    r"(?:resets?|try again)\s+in\s+(\d+)\s*(?:m|min|mins|minutes?)\b", re.IGNORECASE,
)
_ABSOLUTE = re.compile(r"(\d{4}-\d{2}-\d{2})[ T](\d{2}:\d{2}:\d{2})")
_EPOCH_SUFFIX = re.compile(r"limit reached\|(\d{10})\b", re.IGNORECASE)


def parse_clock_time(text: str, now: datetime) -> datetime | None:
    """``resets 4am`` / ``reset at 11:30 pm``; rolls to tomorrow if already past."""
    match = _CLOCK_TIME.search(text)
    if not match:
        return None
    hour = int(match.group(1))
    minute = int(match.group(2) or 0)
    meridiem = match.group(3).lower()
    if not 1 <= hour <= 12 or minute > 59:
        return None
    hour = hour % 12 + (12 if meridiem == "pm" else 0)
    candidate = now.replace(hour=hour, minute=minute, second=0, microsecond=0)
    if candidate <= now:
        candidate += timedelta(days=1)
    return candidate


def parse_relative(text: str, now: datetime) -> datetime | None:
    for pattern in _RELATIVE_SECONDS:
        match = pattern.search(text)
        if match:
            return now + timedelta(seconds=int(match.group(1)))
    match = _RELATIVE_MINUTES.search(text)
    if match:
        return now + timedelta(minutes=int(match.group(1)))
    return None


def parse_absolute(text: str, now: datetime) -> datetime | None:
    match = _EPOCH_SUFFIX.search(text)
    if match:
        return datetime.fromtimestamp(int(match.group(1)), tz=now.tzinfo)
    match = _ABSOLUTE.search(text)
    if match:
        try:
            parsed = datetime.fromisoformat(f"{match.group(1)}T{match.group(2)}")
        except ValueError:
            return None
        return parsed.replace(tzinfo=now.tzinfo) if parsed.tzinfo is None else parsed
    return None


DEFAULT_PARSERS: tuple[ResetTimeParser, ...] = (
    parse_absolute,
    parse_clock_time,
    parse_relative,
)


def parse_reset_time(
    text: str,
    now: datetime | None = None,
    parsers: Sequence[ResetTimeParser] = DEFAULT_PARSERS,
) -> datetime | None:
    """Return the first reset time any parser recognises, else None."""
    now = now or datetime.now().astimezone()
    for parser in parsers:
        result = parser(text, now)
        if result is not None:
            return result
    return None


def reset_delay(
    text: str,
    now: datetime | None = None,
    *,
    default: float = DEFAULT_RESET_SECONDS,
    parsers: Sequence[ResetTimeParser] = DEFAULT_PARSERS,
) -> float:
    """Seconds until reset, or ``default`` when the text names no usable time."""
    now = now or datetime.now().astimezone()
    reset_at = parse_reset_time(text, now, parsers)
    if reset_at is None:
        return default
    seconds = (reset_at - now).total_seconds()
    return seconds if seconds > 0 else default
