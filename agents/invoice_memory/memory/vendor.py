"""Vendor memory: learned trust in a named extraction strategy per vendor."""

from __future__ import annotations

from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Dict, List, Optional

import sqlalchemy as sa

from ..config import PipelineConfig
from ..schema import VENDOR_MEMORY_TABLE
from .base import (
    ACTIVE,
    DISABLED,
    SUSPECT,
    clamp,
    entry_id,
    iso_timestamp,
    is_usable,
    round_confidence,
)

_T = VENDOR_MEMORY_TABLE
_COLUMNS = (
    _T.c.id,
    _T.c.vendor,
    _T.c.kind,
    _T.c.pattern,
    _T.c.confidence,
    _T.c.support_count,
    _T.c.reject_count,
    _T.c.last_used_at,
    _T.c.status,
    _T.c.created_at,
)


@dataclass(frozen=True)
class VendorMemoryEntry:
    id: str
    vendor: str
    kind: str
    pattern: str
    confidence: float
    support_count: int = 0
    reject_count: int = 0
    last_used_at: Optional[str] = None
    status: str = ACTIVE
    created_at: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.kind}:{self.pattern}"

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "vendor": self.vendor,
            "kind": self.kind,
            "pattern": self.pattern,
            "confidence": self.confidence,
            "supportCount": self.support_count,
            "rejectCount": self.reject_count,
            "lastUsedAt": self.last_used_at,
            "status": self.status,
            "createdAt": self.created_at,
        }


def _from_row(row) -> VendorMemoryEntry:
    return VendorMemoryEntry(
        id=row.id,
        vendor=row.vendor,
        kind=row.kind,
        pattern=row.pattern,
        confidence=float(row.confidence),
        support_count=int(row.support_count or 0),
        reject_count=int(row.reject_count or 0),
        last_used_at=row.last_used_at,
        status=row.status or ACTIVE,
        created_at=row.created_at,
    )


class VendorMemory:
    """Store for ``(vendor, kind, pattern)`` entries on one open connection."""

    store_name = "vendor_memory"

    def __init__(self, conn, config: PipelineConfig):
        self.conn = conn
        self.config = config

    def get(self, memory_id: str) -> Optional[VendorMemoryEntry]:
        row = self.conn.execute(sa.select(*_COLUMNS).where(_T.c.id == memory_id)).fetchone()
        return _from_row(row) if row else None

    def lookup(self, vendor: str, kind: str, pattern: str) -> Optional[VendorMemoryEntry]:
        """Current non-disabled entry for the key, if any."""
        row = self.conn.execute(
            sa.select(*_COLUMNS)
            .where(_T.c.vendor == vendor)
            .where(_T.c.kind == kind)
            .where(_T.c.pattern == pattern)
            .where(_T.c.status != DISABLED)
            .order_by(_T.c.created_at.desc(), _T.c.id)
            .limit(1)
        ).fetchone()
        return _from_row(row) if row else None

    def active_for_vendor(self, vendor: str) -> List[VendorMemoryEntry]:
        rows = self.conn.execute(
            sa.select(*_COLUMNS)
            .where(_T.c.vendor == vendor)
            .where(_T.c.status == ACTIVE)
            .order_by(_T.c.kind, _T.c.pattern, _T.c.created_at)
        )
        return [_from_row(row) for row in rows]

    def for_vendor(self, vendor: str, kind: Optional[str] = None) -> List[VendorMemoryEntry]:
        """All entries of a vendor, disabled ones included."""
        stmt = sa.select(*_COLUMNS).where(_T.c.vendor == vendor)
        if kind is not None:
            stmt = stmt.where(_T.c.kind == kind)
        rows = self.conn.execute(stmt.order_by(_T.c.kind, _T.c.pattern, _T.c.created_at))
        return [_from_row(row) for row in rows]

    def is_usable(self, entry: Optional[VendorMemoryEntry], now: datetime) -> bool:
        return is_usable(entry, now, self.config)

    def record_approval(self, vendor: str, kind: str, pattern: str, now: datetime) -> VendorMemoryEntry:
        """Raise trust by one step; creates the entry at baseline if absent."""
        ts = iso_timestamp(now)
        current = self.lookup(vendor, kind, pattern)
        if current is None:
            generation = self._generation(vendor, kind, pattern)
            entry = VendorMemoryEntry(
                id=entry_id(vendor, kind, pattern, generation),
                vendor=vendor,
                kind=kind,
                pattern=pattern,
                confidence=self._step_up(self.config.baseline_confidence),
                support_count=1,
                reject_count=0,
                last_used_at=ts,
                status=ACTIVE,
                created_at=ts,
            )
            self.conn.execute(
                sa.insert(_T).values(
                    id=entry.id,
                    vendor=entry.vendor,
                    kind=entry.kind,
                    pattern=entry.pattern,
                    confidence=entry.confidence,
                    support_count=entry.support_count,
                    reject_count=entry.reject_count,
                    last_used_at=entry.last_used_at,
                    status=entry.status,
                    created_at=entry.created_at,
                )
            )
            return entry

        confidence = self._step_up(current.confidence)
        self.conn.execute(
            sa.update(_T)
            .where(_T.c.id == current.id)
            .values(
                confidence=confidence,
                support_count=current.support_count + 1,
                status=ACTIVE,
                last_used_at=ts,
            )
        )
        return replace(
            current,
            confidence=confidence,
            support_count=current.support_count + 1,
            status=ACTIVE,
            last_used_at=ts,
        )

    def record_rejection(self, entry: VendorMemoryEntry, now: datetime) -> VendorMemoryEntry:
        """Lower trust by one step; first rejection marks suspect, the second disables."""
        ts = iso_timestamp(now)
        confidence = round_confidence(
            clamp(entry.confidence - self.config.reject_step, self.config.learn_min, self.config.learn_max)
        )
        reject_count = entry.reject_count + 1
        status = DISABLED if reject_count >= self.config.disable_after_rejections else SUSPECT
        self.conn.execute(
            sa.update(_T)
            .where(_T.c.id == entry.id)
            .values(confidence=confidence, reject_count=reject_count, status=status, last_used_at=ts)
        )
        return replace(entry, confidence=confidence, reject_count=reject_count, status=status, last_used_at=ts)

    def set_state(self, entry: VendorMemoryEntry, **values: Any) -> VendorMemoryEntry:
        """Administrative overwrite of confidence/status/reject_count."""
        if "confidence" in values:
            values["confidence"] = round_confidence(clamp(values["confidence"], 0.0, 1.0))
        self.conn.execute(sa.update(_T).where(_T.c.id == entry.id).values(**values))
        return replace(entry, **values)

    def _step_up(self, confidence: float) -> float:
        return round_confidence(
            clamp(confidence + self.config.approve_step, self.config.learn_min, self.config.learn_max)
        )

    def _generation(self, vendor: str, kind: str, pattern: str) -> int:
        return int(
            self.conn.execute(
                sa.select(sa.func.count())
                .select_from(_T)
                .where(_T.c.vendor == vendor)
                .where(_T.c.kind == kind)
                .where(_T.c.pattern == pattern)
            ).scalar_one()
        )
