"""Time decay of stored memory confidence.

An unused memory loses trust exponentially: with a half-life of 30 days a
confidence of 0.8 is worth 0.4 after a month without use. Memory that was never
used (or whose timestamp cannot be read) is worth nothing.
"""

from __future__ import annotations

import math
from datetime import datetime, timezone

_SECONDS_PER_DAY = 86_400.0


def clamp01(value: float) -> float:
    return max(0.0, min(1.0, value))


def parse_timestamp(value: str | datetime | None) -> datetime | None:
    """Parse an ISO-8601 timestamp; naive values are taken as UTC."""
    if value is None or value == "":
        return None
    if isinstance(value, datetime):
        parsed = value
    else:
        try:
            parsed = datetime.fromisoformat(str(value).strip())
        except ValueError:
            return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


def days_since(last_used_at: str | datetime | None, now: datetime) -> float:
    """Elapsed days between ``last_used_at`` and ``now``.

    Returns ``math.inf`` when the memory was never used or the timestamp is
    unparsable. Timestamps in the future count as zero elapsed days.
    """
    last = parse_timestamp(last_used_at)
    current = parse_timestamp(now)
    if last is None or current is None:
        return math.inf
    return max(0.0, (current - last).total_seconds() / _SECONDS_PER_DAY)


def decayed_confidence(base: float, elapsed_days: float, half_life_days: float = 30.0) -> float:
    """Effective confidence ``base * 2 ** (-elapsed_days / half_life_days)``."""
    if base is None or not math.isfinite(base):
        return 0.0
    if math.isnan(elapsed_days):
        return 0.0
    if math.isinf(elapsed_days) and elapsed_days > 0:
        return 0.0
    if elapsed_days <= 0:
        return clamp01(base)
    half_life = max(1e-6, half_life_days)
    return clamp01(base * math.pow(2.0, -elapsed_days / half_life))
