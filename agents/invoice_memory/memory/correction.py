"""Correction memory: learned replacement values per vendor, field and pattern."""

from __future__ import annotations

import json
from dataclasses import dataclass, replace
from datetime import datetime
from typing import Any, Dict, List, Optional

import sqlalchemy as sa

from ..config import PipelineConfig
from ..schema import CORRECTION_MEMORY_TABLE, StoreCapabilities
from .base import (
    ACTIVE,
    DISABLED,
    clamp,
    entry_id,
    iso_timestamp,
    is_usable,
    round_confidence,
    status_after_rejection,
)

_T = CORRECTION_MEMORY_TABLE
_BASE_COLUMNS = (
    _T.c.id,
    _T.c.vendor,
    _T.c.field_path,
    _T.c.pattern_type,
    _T.c.pattern_value,
    _T.c.recommended_value,
    _T.c.confidence,
    _T.c.support_count,
    _T.c.reject_count,
    _T.c.last_used_at,
    _T.c.created_at,
)


@dataclass(frozen=True)
class CorrectionMemoryEntry:
    id: str
    vendor: str
    field_path: str
    pattern_type: str
    pattern_value: str
    recommended_value: str
    confidence: float
    support_count: int = 0
    reject_count: int = 0
    last_used_at: Optional[str] = None
    status: str = ACTIVE
    created_at: Optional[str] = None

    @property
    def key(self) -> str:
        return f"{self.field_path}:{self.pattern_type}:{self.pattern_value}"

    def decoded_value(self) -> Any:
        """The recommended value; rows written without JSON encoding come back as text."""
        try:
            return json.loads(self.recommended_value)
        except (TypeError, ValueError):
            return self.recommended_value

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "vendor": self.vendor,
            "fieldPath": self.field_path,
            "patternType": self.pattern_type,
            "patternValue": self.pattern_value,
            "recommendedValue": self.decoded_value(),
            "confidence": self.confidence,
            "supportCount": self.support_count,
            "rejectCount": self.reject_count,
            "lastUsedAt": self.last_used_at,
            "status": self.status,
            "createdAt": self.created_at,
        }


def encode_value(value: Any) -> str:
    """JSON-encode every value so strings such as ``"1.10"`` keep their type."""
    return json.dumps(value, sort_keys=True, default=str, ensure_ascii=False)


class CorrectionMemory:
    """Store for ``(vendor, field_path, pattern_type, pattern_value)`` entries."""

    store_name = "correction_memory"

    def __init__(self, conn, config: PipelineConfig, capabilities: StoreCapabilities):
        self.conn = conn
        self.config = config
        self.capabilities = capabilities

    def _columns(self):
        if self.capabilities.correction_status:
            return (*_BASE_COLUMNS, _T.c.status)
        return _BASE_COLUMNS

    def _from_row(self, row) -> CorrectionMemoryEntry:
        reject_count = int(row.reject_count or 0)
        if self.capabilities.correction_status:
            status = row.status or ACTIVE
        else:
            status = DISABLED if reject_count >= self.config.disable_after_rejections else ACTIVE
        return CorrectionMemoryEntry(
            id=row.id,
            vendor=row.vendor,
            field_path=row.field_path,
            pattern_type=row.pattern_type,
            pattern_value=row.pattern_value,
            recommended_value=row.recommended_value,
            confidence=float(row.confidence),
            support_count=int(row.support_count or 0),
            reject_count=reject_count,
            last_used_at=row.last_used_at,
            status=status,
            created_at=row.created_at,
        )

    def _not_disabled(self):
        if self.capabilities.correction_status:
            return sa.or_(_T.c.status.is_(None), _T.c.status != DISABLED)
        return _T.c.reject_count < self.config.disable_after_rejections

    def get(self, memory_id: str) -> Optional[CorrectionMemoryEntry]:
        row = self.conn.execute(sa.select(*self._columns()).where(_T.c.id == memory_id)).fetchone()
        return self._from_row(row) if row else None

    def find(
        self, vendor: str, field_path: str, pattern_type: str, pattern_value: str
    ) -> Optional[CorrectionMemoryEntry]:
        """Current entry for the key; disabled entries are never returned."""
        row = self.conn.execute(
            sa.select(*self._columns())
            .where(_T.c.vendor == vendor)
            .where(_T.c.field_path == field_path)
            .where(_T.c.pattern_type == pattern_type)
            .where(_T.c.pattern_value == pattern_value)
            .where(self._not_disabled())
            .order_by(_T.c.created_at.desc(), _T.c.id)
            .limit(1)
        ).fetchone()
        return self._from_row(row) if row else None

    lookup = find

    def latest(
        self, vendor: str, field_path: str, pattern_type: str, pattern_value: str
    ) -> Optional[CorrectionMemoryEntry]:
        """Newest entry for the key including disabled ones."""
        row = self.conn.execute(
            sa.select(*self._columns())
            .where(_T.c.vendor == vendor)
            .where(_T.c.field_path == field_path)
            .where(_T.c.pattern_type == pattern_type)
            .where(_T.c.pattern_value == pattern_value)
            .order_by(_T.c.created_at.desc(), _T.c.id)
            .limit(1)
        ).fetchone()
        return self._from_row(row) if row else None

    def for_vendor(self, vendor: str) -> List[CorrectionMemoryEntry]:
        rows = self.conn.execute(
            sa.select(*self._columns())
            .where(_T.c.vendor == vendor)
            .order_by(_T.c.field_path, _T.c.pattern_type, _T.c.pattern_value, _T.c.created_at)
        )
        return [self._from_row(row) for row in rows]

    def is_usable(self, entry: Optional[CorrectionMemoryEntry], now: datetime) -> bool:
        return is_usable(entry, now, self.config)

    def mark_used(self, entry: CorrectionMemoryEntry, now: datetime) -> CorrectionMemoryEntry:
        ts = iso_timestamp(now)
        self.conn.execute(sa.update(_T).where(_T.c.id == entry.id).values(last_used_at=ts))
        return replace(entry, last_used_at=ts)

    def record_approval(
        self,
        vendor: str,
        field_path: str,
        pattern_type: str,
        pattern_value: str,
        recommended_value: Any,
        now: datetime,
    ) -> CorrectionMemoryEntry:
        """Raise trust in the recommended value; creates the entry at baseline if absent."""
        ts = iso_timestamp(now)
        value = encode_value(recommended_value)
        current = self.find(vendor, field_path, pattern_type, pattern_value)
        if current is None:
            generation = self._generation(vendor, field_path, pattern_type, pattern_value)
            entry = CorrectionMemoryEntry(
                id=entry_id(vendor, field_path, pattern_type, pattern_value, generation),
                vendor=vendor,
                field_path=field_path,
                pattern_type=pattern_type,
                pattern_value=pattern_value,
                recommended_value=value,
                confidence=self._step_up(self.config.baseline_confidence),
                support_count=1,
                reject_count=0,
                last_used_at=ts,
                status=ACTIVE,
                created_at=ts,
            )
            values = {
                "id": entry.id,
                "vendor": vendor,
                "field_path": field_path,
                "pattern_type": pattern_type,
                "pattern_value": pattern_value,
                "recommended_value": value,
                "confidence": entry.confidence,
                "support_count": 1,
                "reject_count": 0,
                "last_used_at": ts,
                "created_at": ts,
            }
            if self.capabilities.correction_status:
                values["status"] = ACTIVE
            self.conn.execute(sa.insert(_T).values(**values))
            return entry

        values = {
            "confidence": self._step_up(current.confidence),
            "support_count": current.support_count + 1,
            "recommended_value": value,
            "last_used_at": ts,
        }
        persisted = dict(values, status=ACTIVE) if self.capabilities.correction_status else values
        self.conn.execute(sa.update(_T).where(_T.c.id == current.id).values(**persisted))
        return replace(current, status=ACTIVE, **values)

    def record_rejection(self, entry: CorrectionMemoryEntry, now: datetime) -> CorrectionMemoryEntry:
        ts = iso_timestamp(now)
        confidence = round_confidence(
            clamp(entry.confidence - self.config.reject_step, self.config.learn_min, self.config.learn_max)
        )
        reject_count = entry.reject_count + 1
        status = status_after_rejection(reject_count, self.config, entry.status)
        values = {"confidence": confidence, "reject_count": reject_count, "last_used_at": ts}
        if self.capabilities.correction_status:
            values["status"] = status
        self.conn.execute(sa.update(_T).where(_T.c.id == entry.id).values(**values))
        return replace(entry, status=status, confidence=confidence, reject_count=reject_count, last_used_at=ts)

    def set_state(self, entry: CorrectionMemoryEntry, **values: Any) -> CorrectionMemoryEntry:
        """Administrative overwrite of confidence/status/reject_count."""
        if "confidence" in values:
            values["confidence"] = round_confidence(clamp(values["confidence"], 0.0, 1.0))
        persisted = dict(values)
        if not self.capabilities.correction_status:
            # without a status column, disablement is carried by reject_count
            if persisted.pop("status", None) == DISABLED:
                persisted["reject_count"] = max(
                    values.get("reject_count", entry.reject_count), self.config.disable_after_rejections
                )
                values["reject_count"] = persisted["reject_count"]
        if persisted:
            self.conn.execute(sa.update(_T).where(_T.c.id == entry.id).values(**persisted))
        updated = replace(entry, **values)
        if not self.capabilities.correction_status:
            derived = DISABLED if updated.reject_count >= self.config.disable_after_rejections else ACTIVE
            updated = replace(updated, status=derived)
        return updated

    def _step_up(self, confidence: float) -> float:
        return round_confidence(
            clamp(confidence + self.config.approve_step, self.config.learn_min, self.config.learn_max)
        )

    def _generation(self, vendor: str, field_path: str, pattern_type: str, pattern_value: str) -> int:
        return int(
            self.conn.execute(
                sa.select(sa.func.count())
                .select_from(_T)
                .where(_T.c.vendor == vendor)
                .where(_T.c.field_path == field_path)
                .where(_T.c.pattern_type == pattern_type)
                .where(_T.c.pattern_value == pattern_value)
            ).scalar_one()
        )
