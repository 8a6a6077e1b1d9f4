"""Timestamp parsing and duration helpers shared by the canonical model."""

from __future__ import annotations

import re
from datetime import datetime, timezone
from typing import Any

_FRACTION_RE = re.compile(r"\.(\d+)")


def utcnow() -> datetime:
    """Return the current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def parse_timestamp(value: Any) -> datetime | None:
    """Parse an ISO-8601 string or epoch milliseconds into an aware datetime.

    Fractional seconds of any precision are accepted (GitHub emits seven
    digits). Naive values are assumed to be UTC. Unparsable input yields
    ``None``.
    """

    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        return value if value.tzinfo else value.replace(tzinfo=timezone.utc)
    if isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return datetime.fromtimestamp(value / 1000, tz=timezone.utc)
    if not isinstance(value, str):
        return None

    text = value.strip()
    if text.endswith(("Z", "z")):
        text = f"{text[:-1]}+00:00"
    text = _FRACTION_RE.sub(lambda match: f".{match.group(1)[:6].ljust(6, '0')}", text, count=1)
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    return parsed if parsed.tzinfo else parsed.replace(tzinfo=timezone.utc)


def compute_duration(started_at: Any, finished_at: Any) -> int | None:
    """Return ``finished_at - started_at`` in milliseconds, clamped to zero."""

    start = parse_timestamp(started_at)
    end = parse_timestamp(finished_at)
    if start is None or end is None:
        return None
    delta_ms = int((end - start).total_seconds() * 1000)
    return max(0, delta_ms)


__all__ = ["compute_duration", "parse_timestamp", "utcnow"]
