"""Memory stores: vendor, correction and resolution memory plus the learning ledger."""

from .base import ACTIVE, DISABLED, SUSPECT, effective_confidence, is_usable, untrusted_reason
from .correction import CorrectionMemory, CorrectionMemoryEntry
from .learning import LearningEvent, LearningLedger
from .resolution import ResolutionMemory, ResolutionMemoryEntry, ResolutionTally
from .vendor import VendorMemory, VendorMemoryEntry

__all__ = [
    "ACTIVE",
    "DISABLED",
    "SUSPECT",
    "CorrectionMemory",
    "CorrectionMemoryEntry",
    "LearningEvent",
    "LearningLedger",
    "ResolutionMemory",
    "ResolutionMemoryEntry",
    "ResolutionTally",
    "VendorMemory",
    "VendorMemoryEntry",
    "effective_confidence",
    "is_usable",
    "untrusted_reason",
]
