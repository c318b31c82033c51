"""Heuristic catalogue for field corrections.

Each heuristic detects correction candidates from raw text, reference data or
correction memory. Trust (vendor memory, resolution history) is applied by the
pipeline; a heuristic only states its base confidences and how a candidate
turns into proposed corrections. Heuristics also tell the learner which vendor
memory pattern and which correction-memory key a human correction maps to.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, List, Optional, Tuple

from .config import PipelineConfig
from .dto import FieldCorrection, Invoice, ProposedCorrection, ReferenceData
from .memory import DISABLED, CorrectionMemory, CorrectionMemoryEntry, untrusted_reason
from .parsers import (
    FREIGHT_SKU_MAP,
    find_currency,
    find_service_date,
    find_skonto,
    find_total,
    find_vat_inclusive_cue,
    find_vat_rate,
    freight_keyword,
    line_index,
    normalize_field_path,
    normalize_text,
    parse_decimal,
    quantize_money,
    to_date,
)

RAW_TEXT = "rawText_heuristic"
REFERENCE_DATA = "reference_data"
VENDOR_MEMORY = "vendor_memory"
CORRECTION_MEMORY = "correction_memory"
HEURISTIC_MAPPING = "heuristic_mapping"

_MONEY_TOLERANCE = Decimal("0.01")

# (field_path, pattern_type, pattern_value, recommended_value)
CorrectionKey = Tuple[str, str, str, Any]


@dataclass
class Candidate:
    pattern: str
    changes: List[Tuple[str, Any, Any]]
    reason: str
    source: str = RAW_TEXT
    correction_memory: Optional[CorrectionMemoryEntry] = None

    @property
    def fields(self) -> List[str]:
        return [change[0] for change in self.changes]


@dataclass
class HeuristicContext:
    invoice: Invoice
    reference: ReferenceData
    config: PipelineConfig
    now: datetime
    corrections: CorrectionMemory
    notes: List[str] = field(default_factory=list)
    proposed_po: Optional[str] = None

    def correction_memory(
        self, field_path: str, pattern_type: str, pattern_value: str
    ) -> Optional[CorrectionMemoryEntry]:
        """Usable correction-memory entry for the key; every skip is noted."""
        label = f"correction memory {field_path} [{pattern_type}={pattern_value}]"
        entry = self.corrections.find(self.invoice.vendor, field_path, pattern_type, pattern_value)
        if entry is None:
            latest = self.corrections.latest(self.invoice.vendor, field_path, pattern_type, pattern_value)
            if latest is not None and latest.status == DISABLED:
                self.notes.append(f"{label} is disabled; skipped.")
            return None
        reason = untrusted_reason(entry, self.now, self.config)
        if reason:
            self.notes.append(f"{label} not trusted ({reason}); skipped.")
            return None
        return entry


class Heuristic:
    name = ""
    kind = ""
    resolution_key = ""
    fields: Tuple[str, ...] = ()
    heuristic_confidence = 0.6
    memory_confidence = 0.85
    fallback_confidence: Optional[float] = None

    def detect(self, ctx: HeuristicContext) -> List[Candidate]:
        raise NotImplementedError

    def base_confidence(self, memory_backed: bool) -> float:
        return self.memory_confidence if memory_backed else self.heuristic_confidence

    def apply(self, candidate: Candidate, confidence: float, source: str) -> List[ProposedCorrection]:
        return [
            ProposedCorrection(
                field=field_path,
                from_value=from_value,
                to_value=to_value,
                source=source,
                confidence=confidence,
                reason=candidate.reason,
                heuristic=self.name,
                resolution_key=self.resolution_key,
            )
            for field_path, from_value, to_value in candidate.changes
        ]

    def covers(self, field_path: str) -> bool:
        return normalize_field_path(field_path) in self.fields

    def memory_pattern(self, correction: FieldCorrection, ctx: HeuristicContext) -> Optional[str]:
        """Vendor-memory pattern to learn from ``correction`` when no candidate fired."""
        return None

    def correction_key(self, correction: FieldCorrection, ctx: HeuristicContext) -> Optional[CorrectionKey]:
        return None


class ServiceDateHeuristic(Heuristic):
    name = "service_date"
    kind = "serviceDate_from_label"
    resolution_key = "service-date-from-label"
    fields = ("serviceDate",)
    heuristic_confidence = 0.55
    memory_confidence = 0.85

    def detect(self, ctx):
        found = find_service_date(ctx.invoice.raw_text)
        if not found:
            return []
        label, value = found
        if ctx.invoice.service_date == value:
            return []
        return [
            Candidate(
                pattern=label,
                changes=[("serviceDate", ctx.invoice.service_date, value)],
                reason=f"Service date taken from '{label}' label in raw text.",
            )
        ]

    def memory_pattern(self, correction, ctx):
        found = find_service_date(ctx.invoice.raw_text)
        return found[0] if found else None


class PurchaseOrderHeuristic(Heuristic):
    name = "po_number"
    kind = "poNumber_from_reference"
    resolution_key = "po-from-sku-date-window"
    fields = ("poNumber",)
    heuristic_confidence = 0.70
    memory_confidence = 0.88
    pattern = "sku_date_window"

    def detect(self, ctx):
        invoice = ctx.invoice
        if invoice.po_number:
            return []
        invoice_date = to_date(invoice.invoice_date)
        skus = {normalize_text(item.sku) for item in invoice.line_items if item.sku}
        if invoice_date is None or not skus:
            return []

        matches = []
        for po in ctx.reference.purchase_orders:
            po_date = to_date(po.date)
            if po_date is None or not po.po_number:
                continue
            if abs((invoice_date - po_date).days) > ctx.config.po_date_window_days:
                continue
            if skus & po.skus:
                matches.append(po)
        if len(matches) != 1:
            return []

        po = matches[0]
        ctx.proposed_po = po.po_number
        return [
            Candidate(
                pattern=self.pattern,
                changes=[("poNumber", None, po.po_number)],
                reason=(
                    f"Unique purchase order {po.po_number} matches line SKUs within "
                    f"{ctx.config.po_date_window_days} days of the invoice date."
                ),
                source=REFERENCE_DATA,
            )
        ]

    def memory_pattern(self, correction, ctx):
        return self.pattern


class VatInclusiveHeuristic(Heuristic):
    name = "vat_inclusive"
    kind = "vat_inclusive_recompute"
    resolution_key = "vat-inclusive-recompute"
    fields = ("netTotal", "taxTotal", "grossTotal")
    heuristic_confidence = 0.60
    memory_confidence = 0.85

    def detect(self, ctx):
        invoice = ctx.invoice
        cue = find_vat_inclusive_cue(invoice.raw_text)
        if not cue:
            return []
        rate = invoice.tax_rate if invoice.tax_rate is not None else find_vat_rate(invoice.raw_text)
        if rate is None:
            ctx.notes.append("VAT-inclusive pricing detected but no tax rate available; skipped.")
            return []

        raw_total = find_total(invoice.raw_text)
        try:
            if raw_total is not None:
                gross = raw_total
                net = quantize_money(gross / (Decimal(1) + rate))
                tax = quantize_money(gross - net)
                basis = f"raw-text total {gross}"
            elif invoice.net_total is not None:
                net = invoice.net_total
                tax = quantize_money(net * rate)
                gross = quantize_money(net + tax)
                basis = f"net total {net}"
            else:
                return []
        except InvalidOperation:
            ctx.notes.append("VAT-inclusive totals out of range; skipped.")
            return []

        changes = []
        for path, current, expected in (
            ("netTotal", invoice.net_total, net),
            ("taxTotal", invoice.tax_total, tax),
            ("grossTotal", invoice.gross_total, gross),
        ):
            if current is None or abs(current - expected) > _MONEY_TOLERANCE:
                changes.append((path, current, expected))
        if not changes:
            return []
        return [
            Candidate(
                pattern=cue,
                changes=changes,
                reason=f"Prices are VAT-inclusive ('{cue}'); totals recomputed from {basis} at {rate:.2%}.",
            )
        ]

    def memory_pattern(self, correction, ctx):
        return find_vat_inclusive_cue(ctx.invoice.raw_text)


class DeliveryNoteQtyHeuristic(Heuristic):
    name = "qty_delivery_note"
    kind = "qty_from_delivery_note"
    resolution_key = "qty-to-delivery-note"
    fields = ("lineItems[].qty",)
    heuristic_confidence = 0.65
    memory_confidence = 0.85
    fallback_confidence = 0.60
    pattern = "delivery_note"

    def _delivered(self, ctx, po_number: str) -> Dict[str, Decimal]:
        delivered: Dict[str, Decimal] = {}
        for note in ctx.reference.delivery_notes:
            if normalize_text(note.po_number) != normalize_text(po_number):
                continue
            for line in note.line_items:
                if line.sku and line.qty_delivered is not None:
                    key = normalize_text(line.sku)
                    delivered[key] = delivered.get(key, Decimal(0)) + line.qty_delivered
        return delivered

    def detect(self, ctx):
        invoice = ctx.invoice
        po_number = invoice.po_number or ctx.proposed_po
        delivered = self._delivered(ctx, po_number) if po_number else {}

        candidates = []
        for index, item in enumerate(invoice.line_items):
            if not item.sku:
                continue
            path = f"lineItems[{index}].qty"
            expected = delivered.get(normalize_text(item.sku))
            if expected is not None:
                if item.qty is None or item.qty != expected:
                    candidates.append(
                        Candidate(
                            pattern=self.pattern,
                            changes=[(path, item.qty, expected)],
                            reason=f"Delivery note for {po_number} shows {expected} delivered for SKU {item.sku}.",
                            source=REFERENCE_DATA,
                        )
                    )
                continue
            if delivered:
                continue
            entry = ctx.correction_memory("lineItems[].qty", "sku", item.sku)
            if entry is None:
                continue
            remembered = parse_decimal(entry.decoded_value())
            if remembered is None or remembered == item.qty:
                continue
            candidates.append(
                Candidate(
                    pattern=f"sku={item.sku}",
                    changes=[(path, item.qty, remembered)],
                    reason=f"No delivery note available; remembered quantity for SKU {item.sku}.",
                    source=CORRECTION_MEMORY,
                    correction_memory=entry,
                )
            )
        return candidates

    def memory_pattern(self, correction, ctx):
        return self.pattern

    def correction_key(self, correction, ctx):
        index = line_index(correction.field)
        if index is None or index >= len(ctx.invoice.line_items) or correction.to_value is None:
            return None
        sku = ctx.invoice.line_items[index].sku
        if not sku:
            return None
        return ("lineItems[].qty", "sku", sku, correction.to_value)


class CurrencyHeuristic(Heuristic):
    name = "currency"
    kind = "currency_from_text"
    resolution_key = "currency-from-text"
    fields = ("currency",)
    heuristic_confidence = 0.60
    memory_confidence = 0.82
    fallback_confidence = 0.55

    def detect(self, ctx):
        if ctx.invoice.currency:
            return []
        found = find_currency(ctx.invoice.raw_text)
        if found:
            pattern, code = found
            return [
                Candidate(
                    pattern=pattern,
                    changes=[("currency", None, code)],
                    reason=f"Currency {code} recovered from raw text ({pattern.replace('_', ' ')}).",
                )
            ]
        entry = ctx.correction_memory("currency", "vendor", "default")
        if entry is None:
            return []
        return [
            Candidate(
                pattern="default",
                changes=[("currency", None, str(entry.decoded_value()))],
                reason="Currency missing in raw text; vendor default from correction memory.",
                source=CORRECTION_MEMORY,
                correction_memory=entry,
            )
        ]

    def memory_pattern(self, correction, ctx):
        found = find_currency(ctx.invoice.raw_text)
        return found[0] if found else None

    def correction_key(self, correction, ctx):
        if correction.to_value is None:
            return None
        return ("currency", "vendor", "default", str(correction.to_value).upper())


class SkontoHeuristic(Heuristic):
    name = "skonto"
    kind = "skonto_from_text"
    resolution_key = "skonto-from-text"
    fields = ("discountTerms",)
    heuristic_confidence = 0.60
    memory_confidence = 0.85
    fallback_confidence = 0.55
    pattern = "skonto_text"

    def detect(self, ctx):
        if ctx.invoice.discount_terms:
            return []
        terms = find_skonto(ctx.invoice.raw_text)
        if terms:
            return [
                Candidate(
                    pattern=self.pattern,
                    changes=[("discountTerms", None, terms)],
                    reason=f"Skonto terms in raw text: {terms['percent']:g}% within {terms['days']} days.",
                )
            ]
        entry = ctx.correction_memory("discountTerms", "vendor", "default")
        if entry is None:
            return []
        return [
            Candidate(
                pattern="default",
                changes=[("discountTerms", None, entry.decoded_value())],
                reason="No Skonto terms in raw text; vendor terms from correction memory.",
                source=CORRECTION_MEMORY,
                correction_memory=entry,
            )
        ]

    def memory_pattern(self, correction, ctx):
        return self.pattern if find_skonto(ctx.invoice.raw_text) else None

    def correction_key(self, correction, ctx):
        if correction.to_value is None:
            return None
        return ("discountTerms", "vendor", "default", correction.to_value)


class FreightSkuHeuristic(Heuristic):
    name = "freight_sku"
    kind = "freight_sku_mapping"
    resolution_key = "freight-sku-mapping"
    fields = ("lineItems[].sku",)
    heuristic_confidence = 0.60
    memory_confidence = 0.85
    fallback_confidence = 0.80

    def detect(self, ctx):
        candidates = []
        for index, item in enumerate(ctx.invoice.line_items):
            if item.sku:
                continue
            keyword = freight_keyword(item.description)
            if not keyword:
                continue
            path = f"lineItems[{index}].sku"
            entry = ctx.correction_memory("lineItems[].sku", "description_keyword", keyword)
            if entry is not None:
                candidates.append(
                    Candidate(
                        pattern=keyword,
                        changes=[(path, None, str(entry.decoded_value()))],
                        reason=f"Freight line '{item.description}' mapped via remembered SKU for '{keyword}'.",
                        source=CORRECTION_MEMORY,
                        correction_memory=entry,
                    )
                )
                continue
            candidates.append(
                Candidate(
                    pattern=keyword,
                    changes=[(path, None, FREIGHT_SKU_MAP[keyword])],
                    reason=f"Freight line '{item.description}' mapped to {FREIGHT_SKU_MAP[keyword]}.",
                    source=HEURISTIC_MAPPING,
                )
            )
        return candidates

    def _keyword(self, correction, ctx) -> Optional[str]:
        index = line_index(correction.field)
        if index is None or index >= len(ctx.invoice.line_items):
            return None
        return freight_keyword(ctx.invoice.line_items[index].description)

    def memory_pattern(self, correction, ctx):
        return self._keyword(correction, ctx)

    def correction_key(self, correction, ctx):
        keyword = self._keyword(correction, ctx)
        if not keyword or correction.to_value is None:
            return None
        return ("lineItems[].sku", "description_keyword", keyword, correction.to_value)


CATALOGUE: Tuple[Heuristic, ...] = (
    ServiceDateHeuristic(),
    PurchaseOrderHeuristic(),
    VatInclusiveHeuristic(),
    DeliveryNoteQtyHeuristic(),
    CurrencyHeuristic(),
    SkontoHeuristic(),
    FreightSkuHeuristic(),
)


def heuristic_for_field(field_path: str, catalogue=CATALOGUE) -> Optional[Heuristic]:
    for heuristic in catalogue:
        if heuristic.covers(field_path):
            return heuristic
    return None
