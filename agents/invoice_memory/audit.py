"""Append-only audit events for memory mutations and duplicate detection."""

from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional

import sqlalchemy as sa

from backend.core.observability import get_logger

from .memory.base import iso_timestamp
from .schema import AUDIT_EVENTS_TABLE

logger = get_logger(__name__)


class AuditEventType(str, Enum):
    DUPLICATE_DETECTED = "DUPLICATE_DETECTED"
    LEARN_APPROVED = "LEARN_APPROVED"
    LEARN_REJECTED = "LEARN_REJECTED"
    MEMORY_DISABLED = "MEMORY_DISABLED"
    ADMIN_ACTION = "ADMIN_ACTION"
    MEMORY_CONFIDENCE_RESET = "MEMORY_CONFIDENCE_RESET"


def log_event(
    conn,
    event_type: AuditEventType,
    *,
    now: datetime,
    vendor: Optional[str] = None,
    invoice_id: Optional[str] = None,
    entity_type: Optional[str] = None,
    entity_id: Optional[str] = None,
    meta: Optional[Dict[str, Any]] = None,
) -> int:
    """Insert one audit event and return its id."""
    result = conn.execute(
        sa.insert(AUDIT_EVENTS_TABLE).values(
            ts=iso_timestamp(now),
            event_type=AuditEventType(event_type).value,
            vendor=vendor,
            invoice_id=invoice_id,
            entity_type=entity_type,
            entity_id=entity_id,
            meta=meta or {},
        )
    )
    event_id = result.inserted_primary_key[0]
    logger.info(
        "audit_event",
        extra={
            "event_type": AuditEventType(event_type).value,
            "entity_type": entity_type,
            "entity_id": entity_id,
        },
    )
    return event_id


def list_events(conn, *, vendor: Optional[str] = None, invoice_id: Optional[str] = None) -> list[dict]:
    stmt = sa.select(
        AUDIT_EVENTS_TABLE.c.id,
        AUDIT_EVENTS_TABLE.c.ts,
        AUDIT_EVENTS_TABLE.c.event_type,
        AUDIT_EVENTS_TABLE.c.vendor,
        AUDIT_EVENTS_TABLE.c.invoice_id,
        AUDIT_EVENTS_TABLE.c.entity_type,
        AUDIT_EVENTS_TABLE.c.entity_id,
        AUDIT_EVENTS_TABLE.c.meta,
    ).order_by(AUDIT_EVENTS_TABLE.c.id)
    if vendor is not None:
        stmt = stmt.where(AUDIT_EVENTS_TABLE.c.vendor == vendor)
    if invoice_id is not None:
        stmt = stmt.where(AUDIT_EVENTS_TABLE.c.invoice_id == invoice_id)
    return [dict(row._mapping) for row in conn.execute(stmt)]
