"""Administrative operations on memory entries.

Every mutation writes an audit event of the same shape the pipeline writes, so
the audit log reads as one history of the memory.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Union

from sqlalchemy.engine import Engine

from backend.core.observability import get_logger

from .audit import AuditEventType, log_event
from .config import PipelineConfig
from .errors import MemoryEntryNotFoundError, UnknownMemoryStoreError
from .memory import (
    ACTIVE,
    DISABLED,
    CorrectionMemory,
    CorrectionMemoryEntry,
    ResolutionMemory,
    VendorMemory,
    VendorMemoryEntry,
    effective_confidence,
    untrusted_reason,
)
from .schema import StoreCapabilities, detect_capabilities

logger = get_logger(__name__)

MUTABLE_STORES = ("vendor_memory", "correction_memory")

MemoryEntry = Union[VendorMemoryEntry, CorrectionMemoryEntry]


def _store(conn, store: str, config: PipelineConfig, capabilities: StoreCapabilities):
    if store == VendorMemory.store_name:
        return VendorMemory(conn, config)
    if store == CorrectionMemory.store_name:
        return CorrectionMemory(conn, config, capabilities)
    raise UnknownMemoryStoreError(f"unknown memory store: {store!r} (expected one of {', '.join(MUTABLE_STORES)})")


def _entry(store_obj, store: str, memory_id: str) -> MemoryEntry:
    entry = store_obj.get(memory_id)
    if entry is None:
        raise MemoryEntryNotFoundError(f"{store} entry not found: {memory_id}")
    return entry


def disable_memory(
    engine: Engine,
    store: str,
    memory_id: str,
    now: Optional[datetime] = None,
    config: Optional[PipelineConfig] = None,
) -> MemoryEntry:
    """Disable a vendor or correction memory entry."""
    now = now or datetime.now(timezone.utc)
    config = config or PipelineConfig.from_settings()
    capabilities = detect_capabilities(engine)
    with engine.begin() as conn:
        store_obj = _store(conn, store, config, capabilities)
        entry = _entry(store_obj, store, memory_id)
        updated = store_obj.set_state(entry, status=DISABLED)
        log_event(
            conn,
            AuditEventType.ADMIN_ACTION,
            now=now,
            vendor=entry.vendor,
            entity_type=store,
            entity_id=entry.id,
            meta={"action": "disable", "key": entry.key, "previous_status": entry.status},
        )
    logger.info("memory_disabled_by_admin", extra={"store": store, "memory_id": memory_id})
    return updated


def disable_vendor_memory(engine: Engine, memory_id: str, now: Optional[datetime] = None) -> VendorMemoryEntry:
    return disable_memory(engine, VendorMemory.store_name, memory_id, now)


def reset_memory_confidence(
    engine: Engine,
    store: str,
    memory_id: str,
    to: float = 0.75,
    now: Optional[datetime] = None,
    config: Optional[PipelineConfig] = None,
) -> MemoryEntry:
    """Set confidence to ``to`` and clear rejections; the entry becomes active again."""
    if not 0.0 <= to <= 1.0:
        raise ValueError(f"confidence must be within [0, 1], got {to}")
    now = now or datetime.now(timezone.utc)
    config = config or PipelineConfig.from_settings()
    capabilities = detect_capabilities(engine)
    with engine.begin() as conn:
        store_obj = _store(conn, store, config, capabilities)
        entry = _entry(store_obj, store, memory_id)
        updated = store_obj.set_state(entry, confidence=to, reject_count=0, status=ACTIVE)
        log_event(
            conn,
            AuditEventType.MEMORY_CONFIDENCE_RESET,
            now=now,
            vendor=entry.vendor,
            entity_type=store,
            entity_id=entry.id,
            meta={
                "key": entry.key,
                "from_confidence": entry.confidence,
                "to_confidence": updated.confidence,
                "previous_status": entry.status,
                "previous_reject_count": entry.reject_count,
            },
        )
    logger.info("memory_confidence_reset", extra={"store": store, "memory_id": memory_id, "to": updated.confidence})
    return updated


def _listing(entry, store: str, now: datetime, config: PipelineConfig) -> Dict[str, Any]:
    data = entry.to_dict()
    data["store"] = store
    data["effectiveConfidence"] = round(effective_confidence(entry, now, config), 4)
    data["untrustedReason"] = untrusted_reason(entry, now, config)
    return data


def list_memory(
    engine: Engine,
    vendor: str,
    now: Optional[datetime] = None,
    config: Optional[PipelineConfig] = None,
) -> Dict[str, List[Dict[str, Any]]]:
    """All memory of a vendor with effective (decayed) confidence, disabled entries included."""
    now = now or datetime.now(timezone.utc)
    config = (config or PipelineConfig.from_settings()).for_vendor(vendor)
    capabilities = detect_capabilities(engine)
    with engine.connect() as conn:
        vendor_entries = VendorMemory(conn, config).for_vendor(vendor)
        correction_entries = CorrectionMemory(conn, config, capabilities).for_vendor(vendor)
        resolution_entries = ResolutionMemory(conn, config, capabilities).for_vendor(vendor)

    resolution = []
    for entry in resolution_entries:
        data = entry.to_dict()
        data["store"] = ResolutionMemory.store_name
        data["status"] = entry.status
        resolution.append(data)
    return {
        VendorMemory.store_name: [_listing(e, VendorMemory.store_name, now, config) for e in vendor_entries],
        CorrectionMemory.store_name: [
            _listing(e, CorrectionMemory.store_name, now, config) for e in correction_entries
        ],
        ResolutionMemory.store_name: resolution,
    }
