"""Invoice Memory Agent - memory-augmented correction of extracted invoices.

Proposes field-level fixes for extracted invoice data, decides whether a human
has to review the result and learns per vendor which heuristics to trust from
approve/reject feedback.

Key Components:
- DuplicateGuard: hard stop for resubmitted invoices
- Memory stores: vendor, correction and resolution memory with time decay
- Heuristics: ordered catalogue of hand-coded pattern detectors
- PipelineEngine: duplicate gate -> Recall -> Apply -> Decide -> Learn
- Admin: disable / reset / list memory entries with audit events

All state lives in one SQL database; every invocation is one transaction.
"""

__version__ = "1.0.0"
__author__ = "0Admin-NEXT Team"

from .admin import disable_memory, disable_vendor_memory, list_memory, reset_memory_confidence
from .config import PipelineConfig
from .dto import (
    FieldCorrection,
    HumanDecision,
    Invoice,
    LineItem,
    PipelineOutput,
    ProposedCorrection,
    ReferenceData,
)
from .duplicates import DuplicateGuard, compute_fingerprint
from .errors import (
    InvalidInvoiceError,
    InvoiceMemoryError,
    MemoryEntryNotFoundError,
    UnknownMemoryStoreError,
)
from .pipeline import PipelineEngine
from .schema import StoreCapabilities, create_memory_engine, create_schema, detect_capabilities

__all__ = [
    "PipelineEngine",
    "PipelineConfig",
    "PipelineOutput",
    "Invoice",
    "LineItem",
    "ReferenceData",
    "HumanDecision",
    "FieldCorrection",
    "ProposedCorrection",
    "DuplicateGuard",
    "compute_fingerprint",
    "StoreCapabilities",
    "create_memory_engine",
    "create_schema",
    "detect_capabilities",
    "disable_memory",
    "disable_vendor_memory",
    "reset_memory_confidence",
    "list_memory",
    "InvoiceMemoryError",
    "InvalidInvoiceError",
    "MemoryEntryNotFoundError",
    "UnknownMemoryStoreError",
]
