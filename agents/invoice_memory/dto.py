"""Datentransferobjekte für die Rechnungskorrektur mit Gedächtnis.

Eingaben (extrahierte Rechnung, Referenzdaten, menschliche Entscheidungen)
werden genau einmal beim Einlesen in typisierte Strukturen überführt. Jedes
Rechnungsfeld wird in fester Reihenfolge gesucht: Top-Level-Schlüssel, dann
``fields.<key>``, dann ``normalizedInvoice.<key>``; jeweils camelCase vor
snake_case. Unlesbare Werte gelten als fehlend (``None``).

Beträge sind ``Decimal`` mit ``ROUND_HALF_UP`` auf zwei Nachkommastellen.
Die Ausgabe (``PipelineOutput.to_dict``) verwendet camelCase-Schlüssel.
"""

from __future__ import annotations

import copy
import json
from dataclasses import dataclass, field, replace
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Mapping, Optional, Tuple

from .errors import InvalidInvoiceError
from .parsers import (
    line_index,
    non_empty_str,
    normalize_text,
    parse_amount,
    parse_date,
    parse_decimal,
    parse_tax_rate,
    quantize_money,
)

VERDICTS = ("approved", "rejected")

# camelCase output path -> attribute
FIELD_PATHS: Dict[str, str] = {
    "invoiceNumber": "invoice_number",
    "invoiceDate": "invoice_date",
    "serviceDate": "service_date",
    "dueDate": "due_date",
    "currency": "currency",
    "poNumber": "po_number",
    "netTotal": "net_total",
    "taxRate": "tax_rate",
    "taxTotal": "tax_total",
    "grossTotal": "gross_total",
    "discountTerms": "discount_terms",
}
LINE_FIELD_PATHS: Dict[str, str] = {
    "sku": "sku",
    "description": "description",
    "qty": "qty",
    "unitPrice": "unit_price",
}
_SNAKE_TO_CAMEL = {attr: path for path, attr in FIELD_PATHS.items()}
LINE_FIELD_PATHS_INV = {attr: path for path, attr in LINE_FIELD_PATHS.items()}

_DATE_ATTRS = {"invoice_date", "service_date", "due_date"}
_MONEY_ATTRS = {"net_total", "tax_total", "gross_total", "unit_price"}


def to_json_value(value: Any) -> Any:
    """Make a value JSON-safe (``Decimal`` -> float, dates -> ISO)."""
    if isinstance(value, Decimal):
        return float(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    if isinstance(value, Mapping):
        return {str(k): to_json_value(v) for k, v in value.items()}
    if isinstance(value, (list, tuple)):
        return [to_json_value(v) for v in value]
    return value


def _coerce_discount_terms(value: Any) -> Any:
    if value is None:
        return None
    if isinstance(value, Mapping):
        return dict(value)
    text = non_empty_str(value)
    if text is None:
        return None
    try:
        parsed = json.loads(text)
    except ValueError:
        return text
    return parsed if isinstance(parsed, dict) else text


def coerce_field(attr: str, value: Any) -> Any:
    """Normalise a raw field value for ``attr``; malformed values become ``None``."""
    if attr in _DATE_ATTRS:
        return parse_date(value)
    if attr in _MONEY_ATTRS:
        return parse_amount(value)
    if attr == "tax_rate":
        return parse_tax_rate(value)
    if attr == "qty":
        return parse_decimal(value)
    if attr == "currency":
        text = non_empty_str(value)
        return text.upper() if text else None
    if attr == "discount_terms":
        return _coerce_discount_terms(value)
    return non_empty_str(value)


def _lookup(sources: Iterable[Mapping[str, Any]], keys: Tuple[str, ...]) -> Any:
    for source in sources:
        for key in keys:
            if key in source and source[key] is not None:
                return source[key]
    return None


def _aliases(attr: str) -> Tuple[str, ...]:
    camel = _SNAKE_TO_CAMEL.get(attr) or LINE_FIELD_PATHS_INV.get(attr, attr)
    return (camel, attr) if camel != attr else (attr,)


@dataclass(slots=True)
class LineItem:
    sku: Optional[str] = None
    description: Optional[str] = None
    qty: Optional[Decimal] = None
    unit_price: Optional[Decimal] = None

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "LineItem":
        values = {}
        for attr in ("sku", "description", "qty", "unit_price"):
            values[attr] = coerce_field(attr, _lookup([data], _aliases(attr)))
        return cls(**values)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "sku": self.sku,
            "description": self.description,
            "qty": to_json_value(self.qty),
            "unitPrice": to_json_value(self.unit_price),
        }


@dataclass(slots=True)
class Invoice:
    """Extrahierte Rechnung mit einmalig aufgelösten Feldern."""

    invoice_id: str
    vendor: str
    raw_text: str = ""
    confidence: Optional[float] = None
    invoice_number: Optional[str] = None
    invoice_date: Optional[str] = None
    service_date: Optional[str] = None
    due_date: Optional[str] = None
    currency: Optional[str] = None
    po_number: Optional[str] = None
    net_total: Optional[Decimal] = None
    tax_rate: Optional[Decimal] = None
    tax_total: Optional[Decimal] = None
    gross_total: Optional[Decimal] = None
    discount_terms: Any = None
    line_items: List[LineItem] = field(default_factory=list)

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "Invoice":
        if not isinstance(data, Mapping):
            raise InvalidInvoiceError("invoice payload must be a mapping")
        sources: List[Mapping[str, Any]] = [data]
        for nested in ("fields", "normalizedInvoice", "normalized_invoice"):
            candidate = data.get(nested)
            if isinstance(candidate, Mapping):
                sources.append(candidate)

        invoice_id = non_empty_str(_lookup(sources, ("invoiceId", "invoice_id")))
        vendor = non_empty_str(_lookup(sources, ("vendor",)))
        if not invoice_id:
            raise InvalidInvoiceError("invoice_id is required")
        if not vendor:
            raise InvalidInvoiceError("vendor is required")

        raw_text = _lookup(sources, ("rawText", "raw_text"))
        confidence = parse_decimal(_lookup(sources, ("confidence",)))

        values: Dict[str, Any] = {}
        for attr in FIELD_PATHS.values():
            values[attr] = coerce_field(attr, _lookup(sources, _aliases(attr)))

        raw_items = _lookup(sources, ("lineItems", "line_items"))
        line_items = [
            LineItem.from_dict(item) for item in (raw_items or []) if isinstance(item, Mapping)
        ] if isinstance(raw_items, list) else []

        return cls(
            invoice_id=invoice_id,
            vendor=vendor,
            raw_text=raw_text if isinstance(raw_text, str) else "",
            confidence=float(confidence) if confidence is not None else None,
            line_items=line_items,
            **values,
        )

    def get_field(self, path: str) -> Any:
        """Read a value by output path, e.g. ``grossTotal`` or ``lineItems[1].qty``."""
        if path.startswith("lineItems["):
            index = line_index(path)
            attr = LINE_FIELD_PATHS.get(path.rsplit(".", 1)[-1])
            if index is None or attr is None or index >= len(self.line_items):
                return None
            return getattr(self.line_items[index], attr)
        attr = FIELD_PATHS.get(path)
        return getattr(self, attr) if attr else None

    def with_corrections(self, corrections: Iterable["ProposedCorrection"]) -> "Invoice":
        """Return a copy with every correction applied (later ones win)."""
        result = replace(self, line_items=[copy.copy(item) for item in self.line_items])
        for correction in corrections:
            result._set_field(correction.field, correction.to_value)
        return result

    def _set_field(self, path: str, value: Any) -> None:
        if path.startswith("lineItems["):
            index = line_index(path)
            attr = LINE_FIELD_PATHS.get(path.rsplit(".", 1)[-1])
            if index is None or attr is None or index >= len(self.line_items):
                return
            setattr(self.line_items[index], attr, coerce_field(attr, value))
            return
        attr = FIELD_PATHS.get(path)
        if attr:
            setattr(self, attr, coerce_field(attr, value))

    @property
    def total(self) -> Optional[Decimal]:
        return self.gross_total if self.gross_total is not None else self.net_total

    def to_dict(self) -> Dict[str, Any]:
        payload: Dict[str, Any] = {
            "invoiceId": self.invoice_id,
            "vendor": self.vendor,
        }
        for path, attr in FIELD_PATHS.items():
            payload[path] = to_json_value(getattr(self, attr))
        payload["lineItems"] = [item.to_dict() for item in self.line_items]
        payload["confidence"] = self.confidence
        return payload


@dataclass(frozen=True, slots=True)
class PurchaseOrderLine:
    sku: Optional[str]
    qty: Optional[Decimal] = None
    unit_price: Optional[Decimal] = None


@dataclass(frozen=True, slots=True)
class PurchaseOrder:
    po_number: str
    vendor: str
    date: Optional[str] = None
    line_items: Tuple[PurchaseOrderLine, ...] = ()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "PurchaseOrder":
        lines = tuple(
            PurchaseOrderLine(
                sku=non_empty_str(_lookup([item], ("sku",))),
                qty=parse_decimal(_lookup([item], ("qty",))),
                unit_price=parse_amount(_lookup([item], ("unitPrice", "unit_price"))),
            )
            for item in data.get("lineItems") or data.get("line_items") or []
            if isinstance(item, Mapping)
        )
        return cls(
            po_number=non_empty_str(_lookup([data], ("poNumber", "po_number"))) or "",
            vendor=non_empty_str(data.get("vendor")) or "",
            date=parse_date(data.get("date")),
            line_items=lines,
        )

    @property
    def skus(self) -> set:
        return {normalize_text(line.sku) for line in self.line_items if line.sku}


@dataclass(frozen=True, slots=True)
class DeliveryNoteLine:
    sku: Optional[str]
    qty_delivered: Optional[Decimal] = None


@dataclass(frozen=True, slots=True)
class DeliveryNote:
    dn_number: str
    vendor: str
    po_number: Optional[str] = None
    date: Optional[str] = None
    line_items: Tuple[DeliveryNoteLine, ...] = ()

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "DeliveryNote":
        lines = tuple(
            DeliveryNoteLine(
                sku=non_empty_str(_lookup([item], ("sku",))),
                qty_delivered=parse_decimal(_lookup([item], ("qtyDelivered", "qty_delivered"))),
            )
            for item in data.get("lineItems") or data.get("line_items") or []
            if isinstance(item, Mapping)
        )
        return cls(
            dn_number=non_empty_str(_lookup([data], ("dnNumber", "dn_number"))) or "",
            vendor=non_empty_str(data.get("vendor")) or "",
            po_number=non_empty_str(_lookup([data], ("poNumber", "po_number"))),
            date=parse_date(data.get("date")),
            line_items=lines,
        )


@dataclass(frozen=True, slots=True)
class ReferenceData:
    purchase_orders: Tuple[PurchaseOrder, ...] = ()
    delivery_notes: Tuple[DeliveryNote, ...] = ()

    @classmethod
    def from_dict(cls, data: Optional[Mapping[str, Any]]) -> "ReferenceData":
        data = data or {}
        pos = _lookup([data], ("purchaseOrders", "purchase_orders")) or []
        dns = _lookup([data], ("deliveryNotes", "delivery_notes")) or []
        return cls(
            purchase_orders=tuple(PurchaseOrder.from_dict(po) for po in pos if isinstance(po, Mapping)),
            delivery_notes=tuple(DeliveryNote.from_dict(dn) for dn in dns if isinstance(dn, Mapping)),
        )

    def for_vendor(self, vendor: str) -> "ReferenceData":
        key = normalize_text(vendor)
        return ReferenceData(
            purchase_orders=tuple(po for po in self.purchase_orders if normalize_text(po.vendor) == key),
            delivery_notes=tuple(dn for dn in self.delivery_notes if normalize_text(dn.vendor) == key),
        )


@dataclass(frozen=True, slots=True)
class FieldCorrection:
    field: str
    from_value: Any = None
    to_value: Any = None
    reason: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "FieldCorrection":
        return cls(
            field=str(data.get("field") or "").strip(),
            from_value=data.get("from"),
            to_value=data.get("to"),
            reason=str(data.get("reason") or ""),
        )


@dataclass(frozen=True, slots=True)
class HumanDecision:
    invoice_id: str
    vendor: str
    corrections: Tuple[FieldCorrection, ...] = ()
    final_decision: str = ""

    @classmethod
    def from_dict(cls, data: Mapping[str, Any]) -> "HumanDecision":
        return cls(
            invoice_id=non_empty_str(_lookup([data], ("invoiceId", "invoice_id"))) or "",
            vendor=non_empty_str(data.get("vendor")) or "",
            corrections=tuple(
                FieldCorrection.from_dict(item)
                for item in data.get("corrections") or []
                if isinstance(item, Mapping)
            ),
            final_decision=normalize_text(_lookup([data], ("finalDecision", "final_decision"))),
        )

    @property
    def is_verdict(self) -> bool:
        return self.final_decision in VERDICTS


def latest_verdict(decisions: Iterable[HumanDecision], invoice_id: str) -> Optional[HumanDecision]:
    """The last approve/reject record for ``invoice_id``; other decisions are ignored."""
    verdict = None
    for decision in decisions:
        if decision.invoice_id == invoice_id and decision.is_verdict:
            verdict = decision
    return verdict


@dataclass(slots=True)
class ProposedCorrection:
    field: str
    from_value: Any
    to_value: Any
    source: str
    confidence: float
    reason: str
    heuristic: Optional[str] = None
    resolution_key: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "field": self.field,
            "from": to_json_value(self.from_value),
            "to": to_json_value(self.to_value),
            "source": self.source,
            "confidence": round(self.confidence, 4),
            "reason": self.reason,
        }


@dataclass(frozen=True, slots=True)
class MemoryUpdate:
    store: str
    action: str
    entry_id: str
    vendor: str
    key: str
    confidence: Optional[float] = None
    status: Optional[str] = None
    reason: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "store": self.store,
            "action": self.action,
            "entryId": self.entry_id,
            "vendor": self.vendor,
            "key": self.key,
            "confidence": round(self.confidence, 4) if self.confidence is not None else None,
            "status": self.status,
            "reason": self.reason,
        }


@dataclass(frozen=True, slots=True)
class AuditTrailEntry:
    step: str
    timestamp: str
    details: str

    def to_dict(self) -> Dict[str, Any]:
        return {"step": self.step, "timestamp": self.timestamp, "details": self.details}


@dataclass(slots=True)
class PipelineOutput:
    normalized_invoice: Invoice
    proposed_corrections: List[ProposedCorrection] = field(default_factory=list)
    requires_human_review: bool = True
    reasoning: str = ""
    confidence_score: float = 0.0
    memory_updates: List[MemoryUpdate] = field(default_factory=list)
    audit_trail: List[AuditTrailEntry] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "normalizedInvoice": self.normalized_invoice.to_dict(),
            "proposedCorrections": [c.to_dict() for c in self.proposed_corrections],
            "requiresHumanReview": self.requires_human_review,
            "reasoning": self.reasoning,
            "confidenceScore": round(self.confidence_score, 4),
            "memoryUpdates": [u.to_dict() for u in self.memory_updates],
            "auditTrail": [entry.to_dict() for entry in self.audit_trail],
        }


def money(value: Optional[Decimal]) -> Optional[float]:
    return float(quantize_money(value)) if value is not None else None
