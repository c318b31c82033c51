"""Shared lifecycle rules of the memory stores.

Every store follows the same contract: bounded learning steps, a status of
``active``/``suspect``/``disabled`` and a usability check that combines raw
confidence, rejections and time decay against the trust floor.
"""

from __future__ import annotations

import hashlib
import uuid
from datetime import datetime, timezone
from typing import Optional, Protocol

from ..config import PipelineConfig
from ..decay import days_since, decayed_confidence

ACTIVE = "active"
SUSPECT = "suspect"
DISABLED = "disabled"


class TrustedEntry(Protocol):
    confidence: float
    reject_count: int
    last_used_at: Optional[str]
    status: str


def iso_timestamp(now: datetime) -> str:
    if now.tzinfo is None:
        now = now.replace(tzinfo=timezone.utc)
    return now.astimezone(timezone.utc).isoformat()


def round_confidence(value: float) -> float:
    return round(float(value), 4)


def clamp(value: float, low: float, high: float) -> float:
    return max(low, min(high, value))


def entry_id(*parts: object) -> str:
    """Deterministic id for a memory entry (same key and generation, same id)."""
    digest = hashlib.sha256("|".join(str(p) for p in parts).encode()).hexdigest()[:32]
    return str(uuid.UUID(digest))


def effective_confidence(entry: TrustedEntry, now: datetime, config: PipelineConfig) -> float:
    return decayed_confidence(
        entry.confidence, days_since(entry.last_used_at, now), config.half_life_days
    )


def untrusted_reason(entry: TrustedEntry, now: datetime, config: PipelineConfig) -> Optional[str]:
    """Why ``entry`` must not be applied, or ``None`` if it is usable."""
    if entry.status == DISABLED:
        return "disabled"
    if entry.status == SUSPECT:
        return "suspect after rejection"
    if entry.reject_count >= config.disable_after_rejections:
        return f"rejected {entry.reject_count} times"
    if entry.confidence < config.trust_floor:
        return f"confidence {entry.confidence:.2f} below trust floor {config.trust_floor:.2f}"
    elapsed = days_since(entry.last_used_at, now)
    effective = decayed_confidence(entry.confidence, elapsed, config.half_life_days)
    if effective < config.trust_floor:
        if elapsed == float("inf"):
            return "never used"
        return f"decayed to {effective:.4f} after {elapsed:.1f} days"
    return None


def is_usable(entry: Optional[TrustedEntry], now: datetime, config: PipelineConfig) -> bool:
    return entry is not None and untrusted_reason(entry, now, config) is None


def status_after_rejection(reject_count: int, config: PipelineConfig, current: str) -> str:
    if reject_count >= config.disable_after_rejections:
        return DISABLED
    return current
