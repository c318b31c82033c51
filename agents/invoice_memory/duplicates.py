"""Duplicate submission guard.

Every pipeline invocation registers an invoice run first; detection then looks
at runs registered before it. Match rules, first hit wins:

1. same vendor and invoice number as an earlier non-duplicate run of another
   invoice id (the earliest such run is the original);
2. same vendor and invoice number as any earlier run, resolved to the root of
   its duplicate-of chain;
3. same vendor and fingerprint as a recorded duplicate (earliest record);
4. otherwise no duplicate. Cue words in the raw text only shape the reason.
"""

from __future__ import annotations

from dataclasses import asdict, dataclass
from datetime import datetime
from typing import Optional

import sqlalchemy as sa
from sqlalchemy.exc import SQLAlchemyError

from backend.core.observability import get_logger

from .dto import Invoice
from .memory.base import iso_timestamp
from .parsers import has_duplicate_cue, normalize_text
from .schema import DUPLICATE_RECORDS_TABLE, INVOICE_RUNS_TABLE

logger = get_logger(__name__)

_RUNS = INVOICE_RUNS_TABLE
_RECORDS = DUPLICATE_RECORDS_TABLE
_RAW_SLICE = 220


@dataclass(frozen=True)
class InvoiceRun:
    id: int
    invoice_id: str
    vendor: str
    dataset: str
    created_at: str
    invoice_number: Optional[str]
    fingerprint: str
    is_duplicate: bool = False
    duplicate_of_invoice_id: Optional[str] = None


@dataclass(frozen=True)
class DuplicateMatch:
    duplicate_of_invoice_id: str
    reason: str
    fingerprint: str
    rule: str


@dataclass(frozen=True)
class DuplicateRecord:
    invoice_id: str
    vendor: str
    fingerprint: str
    duplicate_of_invoice_id: str
    reason: str
    created_at: str


def compute_fingerprint(invoice: Invoice) -> str:
    total = invoice.total
    parts = [
        normalize_text(invoice.vendor),
        normalize_text(invoice.invoice_number),
        normalize_text(invoice.currency),
        f"{total:.2f}" if total is not None else "",
        normalize_text(invoice.raw_text)[:_RAW_SLICE],
    ]
    return "|".join(parts)


def _run_from_row(row) -> InvoiceRun:
    return InvoiceRun(
        id=row.id,
        invoice_id=row.invoice_id,
        vendor=row.vendor,
        dataset=row.dataset,
        created_at=row.created_at,
        invoice_number=row.invoice_number,
        fingerprint=row.fingerprint,
        is_duplicate=bool(row.is_duplicate),
        duplicate_of_invoice_id=row.duplicate_of_invoice_id,
    )


_RUN_COLUMNS = (
    _RUNS.c.id,
    _RUNS.c.invoice_id,
    _RUNS.c.vendor,
    _RUNS.c.dataset,
    _RUNS.c.created_at,
    _RUNS.c.invoice_number,
    _RUNS.c.fingerprint,
    _RUNS.c.is_duplicate,
    _RUNS.c.duplicate_of_invoice_id,
)


class DuplicateGuard:
    """Invoice-run registry and duplicate detection on one open connection."""

    def __init__(self, conn):
        self.conn = conn

    def register_run(self, invoice: Invoice, dataset: str, now: datetime) -> InvoiceRun:
        values = {
            "invoice_id": invoice.invoice_id,
            "vendor": invoice.vendor,
            "dataset": dataset,
            "created_at": iso_timestamp(now),
            "invoice_number": invoice.invoice_number,
            "fingerprint": compute_fingerprint(invoice),
            "is_duplicate": False,
            "duplicate_of_invoice_id": None,
        }
        result = self.conn.execute(sa.insert(_RUNS).values(**values))
        return InvoiceRun(id=result.inserted_primary_key[0], **values)

    def detect(self, invoice: Invoice, run: InvoiceRun) -> Optional[DuplicateMatch]:
        """Return the duplicate match for ``invoice`` or ``None``."""
        fingerprint = run.fingerprint
        number = invoice.invoice_number

        if number:
            prior = self._prior_runs(invoice, run).where(_RUNS.c.is_duplicate == sa.false())
            original = self.conn.execute(prior.order_by(_RUNS.c.id).limit(1)).fetchone()
            if original is not None:
                return DuplicateMatch(
                    duplicate_of_invoice_id=original.invoice_id,
                    reason=self._number_reason(invoice),
                    fingerprint=fingerprint,
                    rule="invoice_number",
                )

            for row in self.conn.execute(self._prior_runs(invoice, run).order_by(_RUNS.c.id)):
                root = self.resolve_root(row.duplicate_of_invoice_id or row.invoice_id)
                if root != invoice.invoice_id:
                    return DuplicateMatch(
                        duplicate_of_invoice_id=root,
                        reason=self._number_reason(invoice),
                        fingerprint=fingerprint,
                        rule="invoice_number_chain",
                    )

        record = self.conn.execute(
            sa.select(_RECORDS.c.invoice_id, _RECORDS.c.duplicate_of_invoice_id)
            .where(_RECORDS.c.vendor == invoice.vendor)
            .where(_RECORDS.c.fingerprint == fingerprint)
            .where(_RECORDS.c.invoice_id != invoice.invoice_id)
            .order_by(_RECORDS.c.created_at, _RECORDS.c.invoice_id)
            .limit(1)
        ).fetchone()
        if record is not None:
            original = record.duplicate_of_invoice_id or record.invoice_id
            if original != invoice.invoice_id:
                return DuplicateMatch(
                    duplicate_of_invoice_id=original,
                    reason="Fingerprint match for vendor (fallback match).",
                    fingerprint=fingerprint,
                    rule="fingerprint",
                )

        if has_duplicate_cue(invoice.raw_text):
            logger.info("duplicate_cue_without_match", extra={"fingerprint_prefix": fingerprint[:40]})
        return None

    def resolve_root(self, invoice_id: str) -> str:
        """Follow duplicate-of links to the original invoice id."""
        seen = {invoice_id}
        current = invoice_id
        while True:
            row = self.conn.execute(
                sa.select(_RUNS.c.duplicate_of_invoice_id)
                .where(_RUNS.c.invoice_id == current)
                .where(_RUNS.c.is_duplicate == sa.true())
                .where(_RUNS.c.duplicate_of_invoice_id.is_not(None))
                .order_by(_RUNS.c.id)
                .limit(1)
            ).fetchone()
            if row is None or row.duplicate_of_invoice_id in seen:
                return current
            current = row.duplicate_of_invoice_id
            seen.add(current)

    def record(
        self,
        invoice_id: str,
        vendor: str,
        fingerprint: str,
        duplicate_of: str,
        reason: str,
        now: datetime,
    ) -> DuplicateRecord:
        """Write the duplicate record once; an existing record is kept unchanged."""
        existing = self.get_record(invoice_id)
        if existing is not None:
            return existing
        record = DuplicateRecord(
            invoice_id=invoice_id,
            vendor=vendor,
            fingerprint=fingerprint,
            duplicate_of_invoice_id=duplicate_of,
            reason=reason,
            created_at=iso_timestamp(now),
        )
        self.conn.execute(sa.insert(_RECORDS).values(**asdict(record)))
        return record

    def get_record(self, invoice_id: str) -> Optional[DuplicateRecord]:
        row = self.conn.execute(
            sa.select(
                _RECORDS.c.invoice_id,
                _RECORDS.c.vendor,
                _RECORDS.c.fingerprint,
                _RECORDS.c.duplicate_of_invoice_id,
                _RECORDS.c.reason,
                _RECORDS.c.created_at,
            ).where(_RECORDS.c.invoice_id == invoice_id)
        ).fetchone()
        return DuplicateRecord(**row._mapping) if row else None

    def mark_run_duplicate(self, run: InvoiceRun, duplicate_of: str) -> bool:
        """Flag the run as duplicate; storage errors are logged, never raised."""
        try:
            with self.conn.begin_nested():
                self.conn.execute(
                    sa.update(_RUNS)
                    .where(_RUNS.c.id == run.id)
                    .values(is_duplicate=True, duplicate_of_invoice_id=duplicate_of)
                )
        except SQLAlchemyError as exc:
            logger.warning(
                "mark_run_duplicate_failed",
                extra={"run_id": run.id, "duplicate_of": duplicate_of, "error": str(exc)},
            )
            return False
        return True

    def runs_for(self, invoice_id: str) -> list[InvoiceRun]:
        rows = self.conn.execute(
            sa.select(*_RUN_COLUMNS).where(_RUNS.c.invoice_id == invoice_id).order_by(_RUNS.c.id)
        )
        return [_run_from_row(row) for row in rows]

    def _prior_runs(self, invoice: Invoice, run: InvoiceRun):
        return (
            sa.select(*_RUN_COLUMNS)
            .where(_RUNS.c.vendor == invoice.vendor)
            .where(_RUNS.c.invoice_number == invoice.invoice_number)
            .where(_RUNS.c.invoice_id != invoice.invoice_id)
            .where(_RUNS.c.id < run.id)
        )

    @staticmethod
    def _number_reason(invoice: Invoice) -> str:
        if has_duplicate_cue(invoice.raw_text):
            return (
                "Duplicate cue found in raw text; vendor+invoice number already seen "
                f"({invoice.invoice_number})."
            )
        return f"Same vendor+invoice number already seen ({invoice.invoice_number})."
