"""Configuration for the invoice memory pipeline.

Defaults come from ``backend.core.config.settings``; single vendors can
override thresholds via environment variables with the pattern
``INVOICE_MEMORY_<VENDOR>_<SETTING>`` (vendor upper-cased, non-alphanumerics
replaced by ``_``), e.g. ``INVOICE_MEMORY_PARTS_AG_TRUST_FLOOR=0.7``.
"""

import os
import re
from dataclasses import dataclass, replace
from typing import Any, Dict, Optional

from backend.core.config import settings


@dataclass(frozen=True)
class PipelineConfig:
    """Tunables for decay, trust and review decisions."""

    # Decay / trust
    half_life_days: float = 30.0
    trust_floor: float = 0.65
    disable_after_rejections: int = 2

    # Learning steps and bounds
    approve_step: float = 0.1
    reject_step: float = 0.15
    baseline_confidence: float = 0.6
    learn_min: float = 0.2
    learn_max: float = 0.95

    # Resolution memory
    resolution_boost: float = 0.15
    resolution_penalty: float = 0.2
    resolution_min_approvals: int = 2
    resolution_approve_step: float = 0.05
    resolution_reject_step: float = 0.1
    resolution_initial_confidence: float = 0.5

    # Decide
    review_threshold: float = 0.75
    duplicate_confidence: float = 0.2
    default_extraction_confidence: float = 0.5

    # Reference matching
    po_date_window_days: int = 30

    @classmethod
    def from_settings(cls, vendor: Optional[str] = None) -> "PipelineConfig":
        """Create configuration from global settings.

        Args:
            vendor: Optional vendor name for vendor-specific overrides

        Returns:
            Configured instance
        """
        config = cls(
            half_life_days=float(settings.MEMORY_HALF_LIFE_DAYS),
            trust_floor=float(settings.MEMORY_TRUST_FLOOR),
            review_threshold=float(settings.REVIEW_CONFIDENCE_THRESHOLD),
            duplicate_confidence=float(settings.DUPLICATE_CONFIDENCE),
            default_extraction_confidence=float(settings.DEFAULT_EXTRACTION_CONFIDENCE),
            po_date_window_days=int(settings.PO_DATE_WINDOW_DAYS),
        )
        if vendor:
            config = config.for_vendor(vendor)
        return config

    def for_vendor(self, vendor: str) -> "PipelineConfig":
        """Apply ``INVOICE_MEMORY_<VENDOR>_*`` environment overrides."""
        prefix = f"INVOICE_MEMORY_{vendor_env_key(vendor)}"
        overrides: Dict[str, Any] = {}

        half_life = os.getenv(f"{prefix}_HALF_LIFE_DAYS")
        if half_life is not None:
            overrides["half_life_days"] = float(half_life)
        trust_floor = os.getenv(f"{prefix}_TRUST_FLOOR")
        if trust_floor is not None:
            overrides["trust_floor"] = float(trust_floor)
        review = os.getenv(f"{prefix}_REVIEW_THRESHOLD")
        if review is not None:
            overrides["review_threshold"] = float(review)
        window = os.getenv(f"{prefix}_PO_DATE_WINDOW_DAYS")
        if window is not None:
            overrides["po_date_window_days"] = int(window)

        return replace(self, **overrides) if overrides else self

    def to_dict(self) -> Dict[str, Any]:
        return {
            "half_life_days": self.half_life_days,
            "trust_floor": self.trust_floor,
            "disable_after_rejections": self.disable_after_rejections,
            "approve_step": self.approve_step,
            "reject_step": self.reject_step,
            "baseline_confidence": self.baseline_confidence,
            "review_threshold": self.review_threshold,
            "duplicate_confidence": self.duplicate_confidence,
            "po_date_window_days": self.po_date_window_days,
        }


def vendor_env_key(vendor: str) -> str:
    return re.sub(r"[^A-Z0-9]+", "_", vendor.upper()).strip("_")
