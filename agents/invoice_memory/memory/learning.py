"""Ledger of learned invoices; Learn runs at most once per invoice id."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

import sqlalchemy as sa

from ..schema import LEARNING_EVENTS_TABLE
from .base import iso_timestamp

_T = LEARNING_EVENTS_TABLE


@dataclass(frozen=True)
class LearningEvent:
    invoice_id: str
    decision: str
    learned_at: str


class LearningLedger:
    def __init__(self, conn):
        self.conn = conn

    def get(self, invoice_id: str) -> Optional[LearningEvent]:
        row = self.conn.execute(
            sa.select(_T.c.invoice_id, _T.c.decision, _T.c.learned_at).where(_T.c.invoice_id == invoice_id)
        ).fetchone()
        if not row:
            return None
        return LearningEvent(invoice_id=row.invoice_id, decision=row.decision, learned_at=row.learned_at)

    def has_learned(self, invoice_id: str) -> bool:
        return self.get(invoice_id) is not None

    def record(self, invoice_id: str, decision: str, now: datetime) -> LearningEvent:
        event = LearningEvent(invoice_id=invoice_id, decision=decision, learned_at=iso_timestamp(now))
        self.conn.execute(
            sa.insert(_T).values(invoice_id=event.invoice_id, decision=event.decision, learned_at=event.learned_at)
        )
        return event
