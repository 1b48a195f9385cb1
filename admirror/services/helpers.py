"""Shared helpers for the AdMirror service layer."""

from __future__ import annotations

import math
import time
from datetime import date, datetime, timezone
from typing import Any, Optional


def round_half_up(value: float) -> int:
    """Round to the nearest integer, halves away from negative infinity.

    ``round()`` uses banker's rounding (``round(2.5) == 2``); scores here
    always round .5 up.
    """
    return int(math.floor(value + 0.5))


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def elapsed_ms(start: float) -> int:
    """Milliseconds since a ``time.monotonic()`` reading."""
    return int((time.monotonic() - start) * 1000)


def parse_date(value: Any) -> Optional[date]:
    """Coerce a date, datetime or ISO string to a calendar date (None on failure)."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date()
    if isinstance(value, date):
        return value
    try:
        return date.fromisoformat(str(value)[:10])
    except ValueError:
        return None
