"""Extraktoren für Rechnungsrohtext und lose typisierte Feldwerte.

Alle Funktionen sind tolerant: was sich nicht lesen lässt, wird als fehlend
(``None``) behandelt und nie als Fehler geworfen.
"""

from __future__ import annotations

import re
from datetime import date, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Optional, Tuple

_CENT = Decimal("0.01")

_DATE_FORMATS = ("%Y-%m-%d", "%d.%m.%Y", "%d.%m.%y", "%d/%m/%Y", "%Y/%m/%d")
_ISO_PREFIX_RE = re.compile(r"^(\d{4}-\d{2}-\d{2})[T ]")
_AMOUNT_CLEAN_RE = re.compile(r"[^\d,.\-]")
_THOUSANDS_DOT_RE = re.compile(r"^-?\d{1,3}(?:\.\d{3})+$")
_DECIMAL_COMMA_RE = re.compile(r"^-?\d+,\d{1,2}$")

_AMOUNT = r"(\d{1,3}(?:[.,\s]\d{3})*(?:[.,]\d{2})|\d+(?:[.,]\d{2})?)"

InvoicePatterns = {
    "service_date": re.compile(
        r"\b(Leistungsdatum|Lieferdatum|Leistungszeitraum|Service\s*date|Delivery\s*date|Date\s+of\s+service)"
        r"\s*[:\-]?\s*(\d{1,2}\.\d{1,2}\.\d{2,4}|\d{4}-\d{2}-\d{2}|\d{1,2}/\d{1,2}/\d{4})",
        re.I,
    ),
    "currency_code": re.compile(r"\b(EUR|USD|GBP|CHF)\b"),
    "currency_symbol": re.compile(r"([€$£])"),
    "vat_inclusive": re.compile(
        r"(?:inkl\.?|inklusive|incl\.?|including|includes?)\s*(?:\d{1,2}\s*%\s*)?(?:der\s+)?"
        r"(?:gesetzl(?:\.|ichen)?\s+)?(?:MwSt\.?|USt\.?|VAT|Mehrwertsteuer|Umsatzsteuer)"
        r"|(?:MwSt\.?|USt\.?|VAT)\s*(?:bereits\s+)?(?:inkl\.?|inklusive|enthalten|included)"
        r"|(?:prices|preise)\s+(?:are\s+)?(?:inkl\.?|incl\.?|inclusive|including)\b",
        re.I,
    ),
    "vat_rate": re.compile(
        r"(\d{1,2}(?:[.,]\d{1,2})?)\s*%\s*(?:der\s+)?(?:gesetzl(?:\.|ichen)?\s+)?"
        r"(?:MwSt|USt|VAT|Mehrwertsteuer|Umsatzsteuer)",
        re.I,
    ),
    "skonto": re.compile(
        r"(\d{1,2}(?:[.,]\d{1,2})?)\s*%\s*Skonto\b[^\n]{0,40}?(?:innerhalb|binnen|within|in)\s*(?:von\s*)?"
        r"(\d{1,3})\s*(?:Tagen|Tage|Tg\.?|days)",
        re.I,
    ),
    "skonto_label": re.compile(
        r"Skonto\s*[:\-]?\s*(\d{1,2}(?:[.,]\d{1,2})?)\s*%\s*(?:/|bei\s+Zahlung|innerhalb|within|in)?\s*"
        r"(?:innerhalb\s*)?(\d{1,3})\s*(?:Tagen|Tage|Tg\.?|days)",
        re.I,
    ),
    "early_payment_discount": re.compile(
        r"(\d{1,2}(?:[.,]\d{1,2})?)\s*%\s*(?:early[\s-]payment\s+)?discount[^\n]{0,30}?within\s*(\d{1,3})\s*days",
        re.I,
    ),
    "freight": re.compile(
        r"\b(seefracht|luftfracht|frachtkosten|fracht|versandkosten|versand|shipping|freight|transport|porto)\b",
        re.I,
    ),
}

# Gross total labels, most specific first
_TOTAL_LABELS = (
    "Gesamtbetrag",
    "Rechnungsbetrag",
    "Bruttobetrag",
    "Endbetrag",
    "Grand Total",
    "Total incl",
    "Gesamtsumme",
    "Gesamt",
    "Total",
)
_TOTAL_PATTERNS = [(label, re.compile(rf"\b{re.escape(label)}\b([^\n]*)", re.I)) for label in _TOTAL_LABELS]
# Amounts on a total line; numbers followed by "%" are tax rates
_TOTAL_AMOUNT_RE = re.compile(rf"(?<![\d.,]){_AMOUNT}(?![\d.,]*\s*%)")

_SERVICE_DATE_LABELS = {
    "leistungsdatum": "Leistungsdatum",
    "lieferdatum": "Lieferdatum",
    "leistungszeitraum": "Leistungszeitraum",
    "servicedate": "Service date",
    "deliverydate": "Delivery date",
    "dateofservice": "Date of service",
}

_CURRENCY_SYMBOLS = {"€": "EUR", "$": "USD", "£": "GBP"}

FREIGHT_SKU_MAP = {
    "seefracht": "FREIGHT",
    "luftfracht": "FREIGHT",
    "frachtkosten": "FREIGHT",
    "fracht": "FREIGHT",
    "versandkosten": "FREIGHT",
    "versand": "FREIGHT",
    "shipping": "FREIGHT",
    "freight": "FREIGHT",
    "transport": "FREIGHT",
    "porto": "FREIGHT",
}

DUPLICATE_CUES = ("duplicate submission", "erneute zusendung", "duplicate", "erneut", "doppelt")


def normalize_text(value: Any) -> str:
    return str(value if value is not None else "").strip().lower()


def non_empty_str(value: Any) -> Optional[str]:
    if isinstance(value, (int, float)) and not isinstance(value, bool):
        value = str(value)
    if isinstance(value, str):
        candidate = value.strip()
        if candidate:
            return candidate
    return None


def quantize_money(amount: Decimal) -> Decimal:
    return amount.quantize(_CENT, rounding=ROUND_HALF_UP)


def parse_date(value: Any) -> Optional[str]:
    """Normalise a date to ``YYYY-MM-DD``; unreadable values become ``None``."""
    if value is None:
        return None
    if isinstance(value, datetime):
        return value.date().isoformat()
    if isinstance(value, date):
        return value.isoformat()
    text = non_empty_str(value)
    if text is None:
        return None
    iso_prefix = _ISO_PREFIX_RE.match(text)
    if iso_prefix:
        text = iso_prefix.group(1)
    for fmt in _DATE_FORMATS:
        try:
            return datetime.strptime(text, fmt).date().isoformat()
        except ValueError:
            continue
    return None


def to_date(value: Optional[str]) -> Optional[date]:
    iso = parse_date(value)
    return date.fromisoformat(iso) if iso else None


def parse_decimal(value: Any) -> Optional[Decimal]:
    """Read numbers in German (``1.234,56``) or English (``1,234.56``) notation."""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, Decimal):
        return value if value.is_finite() else None
    if isinstance(value, (int, float)):
        try:
            result = Decimal(str(value))
        except InvalidOperation:
            return None
        return result if result.is_finite() else None
    if not isinstance(value, str):
        return None

    text = _AMOUNT_CLEAN_RE.sub("", value.replace(" ", ""))
    if not text or text in {"-", ".", ","}:
        return None
    if "," in text and "." in text:
        if text.rfind(",") > text.rfind("."):
            text = text.replace(".", "").replace(",", ".")
        else:
            text = text.replace(",", "")
    elif "," in text:
        text = text.replace(",", ".") if _DECIMAL_COMMA_RE.match(text) else text.replace(",", "")
    elif _THOUSANDS_DOT_RE.match(text):
        text = text.replace(".", "")
    try:
        result = Decimal(text)
    except InvalidOperation:
        return None
    return result if result.is_finite() else None


def parse_amount(value: Any) -> Optional[Decimal]:
    amount = parse_decimal(value)
    if amount is None:
        return None
    try:
        return quantize_money(amount)
    except InvalidOperation:
        # beyond the precision of the decimal context
        return None


def parse_tax_rate(value: Any) -> Optional[Decimal]:
    """Tax rate as a fraction; ``19`` and ``"19 %"`` both become ``0.19``."""
    rate = parse_decimal(value)
    if rate is None or rate < 0:
        return None
    if rate > 1:
        rate = rate / Decimal(100)
    return rate


def find_service_date(text: Optional[str]) -> Optional[Tuple[str, str]]:
    """Return ``(label, iso_date)`` for the first labelled service date."""
    if not text:
        return None
    for match in InvoicePatterns["service_date"].finditer(text):
        iso = parse_date(match.group(2))
        if iso:
            key = re.sub(r"\s+", "", match.group(1)).lower()
            return _SERVICE_DATE_LABELS.get(key, match.group(1)), iso
    return None


def find_currency(text: Optional[str]) -> Optional[Tuple[str, str]]:
    """Return ``(pattern, currency_code)``; ISO codes win over symbols."""
    if not text:
        return None
    code = InvoicePatterns["currency_code"].search(text)
    if code:
        return "iso_code", code.group(1)
    symbol = InvoicePatterns["currency_symbol"].search(text)
    if symbol:
        return "symbol", _CURRENCY_SYMBOLS[symbol.group(1)]
    return None


def find_vat_inclusive_cue(text: Optional[str]) -> Optional[str]:
    if not text:
        return None
    match = InvoicePatterns["vat_inclusive"].search(text)
    if not match:
        return None
    return re.sub(r"\s+", " ", match.group(0).strip()).lower()


def find_vat_rate(text: Optional[str]) -> Optional[Decimal]:
    if not text:
        return None
    match = InvoicePatterns["vat_rate"].search(text)
    return parse_tax_rate(match.group(1)) if match else None


def find_total(text: Optional[str]) -> Optional[Decimal]:
    if not text:
        return None
    for _label, pattern in _TOTAL_PATTERNS:
        for line in pattern.finditer(text):
            match = _TOTAL_AMOUNT_RE.search(line.group(1))
            if not match:
                continue
            amount = parse_amount(match.group(1).replace(" ", ""))
            if amount is not None and amount > 0:
                return amount
    return None


def find_skonto(text: Optional[str]) -> Optional[Dict[str, Any]]:
    """Early-payment discount terms, e.g. ``2 % Skonto bei Zahlung innerhalb 10 Tagen``."""
    if not text:
        return None
    for key in ("skonto", "skonto_label", "early_payment_discount"):
        match = InvoicePatterns[key].search(text)
        if not match:
            continue
        percent = parse_decimal(match.group(1))
        try:
            days = int(match.group(2))
        except (TypeError, ValueError):
            continue
        if percent is None or percent <= 0 or days <= 0:
            continue
        return {"percent": float(percent), "days": days}
    return None


def freight_keyword(description: Optional[str]) -> Optional[str]:
    if not description:
        return None
    match = InvoicePatterns["freight"].search(description)
    return match.group(1).lower() if match else None


def has_duplicate_cue(text: Optional[str]) -> bool:
    lowered = normalize_text(text)
    return any(cue in lowered for cue in DUPLICATE_CUES)


def normalize_field_path(field: str) -> str:
    """``lineItems[2].qty`` -> ``lineItems[].qty``."""
    return re.sub(r"\[\d+\]", "[]", field.strip())


def line_index(field: str) -> Optional[int]:
    match = re.search(r"\[(\d+)\]", field)
    return int(match.group(1)) if match else None
