"""Resolution memory: approve/reject history of a strategy class per vendor.

The tally is kept as embedded JSON. A tally that cannot be decoded counts as
empty history rather than as an error.
"""

from __future__ import annotations

import json
from dataclasses import dataclass, field, replace
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple

import sqlalchemy as sa

from ..config import PipelineConfig
from ..schema import RESOLUTION_MEMORY_TABLE, StoreCapabilities
from .base import clamp, entry_id, iso_timestamp, round_confidence

_T = RESOLUTION_MEMORY_TABLE
_BASE_COLUMNS = (
    _T.c.id,
    _T.c.vendor,
    _T.c.key,
    _T.c.tally,
    _T.c.confidence,
    _T.c.reject_count,
    _T.c.last_used_at,
    _T.c.created_at,
)


@dataclass(frozen=True)
class ResolutionTally:
    approved: int = 0
    rejected: int = 0
    last_decision: Optional[str] = None
    last_invoice_id: Optional[str] = None

    @classmethod
    def from_json(cls, raw: Any) -> "ResolutionTally":
        try:
            data = json.loads(raw) if isinstance(raw, str) else raw
            return cls(
                approved=int(data.get("approved") or 0),
                rejected=int(data.get("rejected") or 0),
                last_decision=data.get("last_decision"),
                last_invoice_id=data.get("last_invoice_id"),
            )
        except (TypeError, ValueError, AttributeError):
            return cls()

    def to_json(self) -> str:
        return json.dumps(
            {
                "approved": self.approved,
                "rejected": self.rejected,
                "last_decision": self.last_decision,
                "last_invoice_id": self.last_invoice_id,
            },
            sort_keys=True,
        )


@dataclass(frozen=True)
class ResolutionMemoryEntry:
    id: str
    vendor: str
    key: str
    confidence: float
    tally: ResolutionTally = field(default_factory=ResolutionTally)
    reject_count: int = 0
    last_used_at: Optional[str] = None
    disabled_at: Optional[str] = None
    created_at: Optional[str] = None

    @property
    def disabled(self) -> bool:
        return self.disabled_at is not None

    @property
    def status(self) -> str:
        return "disabled" if self.disabled else "active"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "vendor": self.vendor,
            "key": self.key,
            "confidence": self.confidence,
            "approved": self.tally.approved,
            "rejected": self.tally.rejected,
            "lastDecision": self.tally.last_decision,
            "lastInvoiceId": self.tally.last_invoice_id,
            "rejectCount": self.reject_count,
            "lastUsedAt": self.last_used_at,
            "disabledAt": self.disabled_at,
            "createdAt": self.created_at,
        }


class ResolutionMemory:
    """Store for ``(vendor, key)`` decision tallies."""

    store_name = "resolution_memory"

    def __init__(self, conn, config: PipelineConfig, capabilities: StoreCapabilities):
        self.conn = conn
        self.config = config
        self.capabilities = capabilities

    def _columns(self):
        if self.capabilities.resolution_disabled_at:
            return (*_BASE_COLUMNS, _T.c.disabled_at)
        return _BASE_COLUMNS

    def _is_condemned(self, tally: ResolutionTally) -> bool:
        return tally.rejected >= self.config.disable_after_rejections and tally.approved == 0

    def _from_row(self, row) -> ResolutionMemoryEntry:
        tally = ResolutionTally.from_json(row.tally)
        if self.capabilities.resolution_disabled_at:
            disabled_at = row.disabled_at
        else:
            # derived: no column to carry the timestamp
            disabled_at = (row.last_used_at or row.created_at) if self._is_condemned(tally) else None
        return ResolutionMemoryEntry(
            id=row.id,
            vendor=row.vendor,
            key=row.key,
            confidence=float(row.confidence),
            tally=tally,
            reject_count=int(row.reject_count or 0),
            last_used_at=row.last_used_at,
            disabled_at=disabled_at,
            created_at=row.created_at,
        )

    def get_any(self, vendor: str, key: str) -> Optional[ResolutionMemoryEntry]:
        """Entry for ``(vendor, key)`` whether disabled or not."""
        row = self.conn.execute(
            sa.select(*self._columns()).where(_T.c.vendor == vendor).where(_T.c.key == key)
        ).fetchone()
        return self._from_row(row) if row else None

    def lookup(self, vendor: str, key: str) -> Optional[ResolutionMemoryEntry]:
        entry = self.get_any(vendor, key)
        if entry is None or entry.disabled:
            return None
        return entry

    def for_vendor(self, vendor: str) -> List[ResolutionMemoryEntry]:
        rows = self.conn.execute(sa.select(*self._columns()).where(_T.c.vendor == vendor).order_by(_T.c.key))
        return [self._from_row(row) for row in rows]

    def adjust_confidence(self, vendor: str, key: str, base: float) -> Tuple[float, Optional[str]]:
        """Apply the vendor's history for ``key`` to a base confidence.

        Returns the adjusted confidence and a note for the audit trail (``None``
        when there is no history to apply).
        """
        entry = self.get_any(vendor, key)
        if entry is None:
            return base, None
        tally = entry.tally
        if tally.rejected >= 1:
            adjusted = max(self.config.learn_min, base - self.config.resolution_penalty)
            return adjusted, (
                f"resolution '{key}': approved={tally.approved}, rejected={tally.rejected}; "
                f"{base:.2f} -> {adjusted:.2f}"
            )
        if tally.approved >= self.config.resolution_min_approvals:
            adjusted = min(self.config.learn_max, base + self.config.resolution_boost)
            return adjusted, (
                f"resolution '{key}': approved={tally.approved}, rejected=0; {base:.2f} -> {adjusted:.2f}"
            )
        return base, None

    def record_decision(
        self, vendor: str, key: str, decision: str, invoice_id: str, now: datetime
    ) -> ResolutionMemoryEntry:
        ts = iso_timestamp(now)
        existing = self.get_any(vendor, key)
        tally = existing.tally if existing else ResolutionTally()
        confidence = existing.confidence if existing else self.config.resolution_initial_confidence
        reject_count = existing.reject_count if existing else 0

        if decision == "approved":
            tally = replace(tally, approved=tally.approved + 1)
            confidence = min(self.config.learn_max, confidence + self.config.resolution_approve_step)
        elif decision == "rejected":
            tally = replace(tally, rejected=tally.rejected + 1)
            confidence = max(self.config.learn_min, confidence - self.config.resolution_reject_step)
            reject_count += 1
        tally = replace(tally, last_decision=decision, last_invoice_id=invoice_id)
        confidence = round_confidence(clamp(confidence, 0.0, 1.0))

        disabled_at = existing.disabled_at if existing else None
        if disabled_at is None and self._is_condemned(tally):
            disabled_at = ts

        values = {
            "tally": tally.to_json(),
            "confidence": confidence,
            "reject_count": reject_count,
            "last_used_at": ts,
        }
        if self.capabilities.resolution_disabled_at:
            values["disabled_at"] = disabled_at

        if existing is None:
            memory_id = entry_id(vendor, key)
            self.conn.execute(
                sa.insert(_T).values(id=memory_id, vendor=vendor, key=key, created_at=ts, **values)
            )
            created_at = ts
        else:
            memory_id = existing.id
            self.conn.execute(sa.update(_T).where(_T.c.id == memory_id).values(**values))
            created_at = existing.created_at

        return ResolutionMemoryEntry(
            id=memory_id,
            vendor=vendor,
            key=key,
            confidence=confidence,
            tally=tally,
            reject_count=reject_count,
            last_used_at=ts,
            disabled_at=disabled_at,
            created_at=created_at,
        )
