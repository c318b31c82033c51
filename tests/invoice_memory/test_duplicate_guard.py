import logging

import sqlalchemy as sa

from agents.invoice_memory.dto import Invoice
from agents.invoice_memory.duplicates import DuplicateGuard, compute_fingerprint
from tests.invoice_memory.builders import NOW, SUPPLIER_TEXT, days_later, invoice_payload


def _invoice(invoice_id="INV-A-001", **fields):
    return Invoice.from_dict(invoice_payload(invoice_id, **fields))


def _register(guard, invoice, now=NOW):
    return guard.register_run(invoice, "full", now)


def test_fingerprint_format():
    fingerprint = compute_fingerprint(_invoice())
    vendor, number, currency, total, raw = fingerprint.split("|")
    assert (vendor, number, currency, total) == ("supplier gmbh", "inv-2024-001", "eur", "1190.00")
    assert raw == SUPPLIER_TEXT.strip().lower()[:220]


def test_fingerprint_without_total():
    fingerprint = compute_fingerprint(_invoice(grossTotal=None, netTotal=None))
    assert fingerprint.split("|")[3] == ""


def test_fingerprint_ignores_field_presentation():
    values = {"invoiceNumber": "INV-2024-001", "currency": "eur"}
    identity = {"invoiceId": "INV-A-001", "vendor": "Supplier GmbH", "rawText": SUPPLIER_TEXT}
    shapes = [
        dict(identity, **values, grossTotal=1190),
        dict(identity, fields=dict(values, grossTotal=1190.0)),
        dict(identity, normalizedInvoice=dict(values, grossTotal="1.190,00")),
    ]
    fingerprints = {compute_fingerprint(Invoice.from_dict(shape)) for shape in shapes}
    assert fingerprints == {compute_fingerprint(_invoice())}


class TestInvoiceNumberRule:
    def test_same_number_other_id_is_duplicate(self, engine):
        with engine.begin() as conn:
            guard = DuplicateGuard(conn)
            first = _invoice("INV-A-001")
            assert guard.detect(first, _register(guard, first)) is None

            second = _invoice("INV-A-009", invoiceNumber="INV-2024-001")
            match = guard.detect(second, _register(guard, second, days_later(1)))

        assert match.duplicate_of_invoice_id == "INV-A-001"
        assert match.rule == "invoice_number"
        assert match.reason == "Same vendor+invoice number already seen (INV-2024-001)."

    def test_cue_shapes_reason(self, engine):
        with engine.begin() as conn:
            guard = DuplicateGuard(conn)
            first = _invoice("INV-A-001")
            _register(guard, first)
            second = Invoice.from_dict(
                invoice_payload(
                    "INV-A-004",
                    raw_text="DUPLICATE SUBMISSION\n" + SUPPLIER_TEXT,
                    invoiceNumber="INV-2024-001",
                )
            )
            match = guard.detect(second, _register(guard, second))

        assert match.reason == (
            "Duplicate cue found in raw text; vendor+invoice number already seen (INV-2024-001)."
        )

    def test_rerun_of_same_invoice_is_not_duplicate(self, engine):
        with engine.begin() as conn:
            guard = DuplicateGuard(conn)
            invoice = _invoice()
            _register(guard, invoice)
            assert guard.detect(invoice, _register(guard, invoice, days_later(1))) is None
            assert len(guard.runs_for(invoice.invoice_id)) == 2

    def test_other_vendor_is_not_duplicate(self, engine):
        with engine.begin() as conn:
            guard = DuplicateGuard(conn)
            _register(guard, _invoice())
            other = Invoice.from_dict(invoice_payload("INV-C-001", vendor="Other KG", invoiceNumber="INV-2024-001"))
            assert guard.detect(other, _register(guard, other)) is None


class TestChainRule:
    def test_chain_resolves_to_root(self, engine):
        with engine.begin() as conn:
            guard = DuplicateGuard(conn)
            original = _invoice("INV-A-001", invoiceNumber="X-1")
            _register(guard, original)
            copy = _invoice("INV-A-002", invoiceNumber="X-2")
            guard.mark_run_duplicate(_register(guard, copy), "INV-A-001")

            third = _invoice("INV-A-003", invoiceNumber="X-2")
            match = guard.detect(third, _register(guard, third))

        assert match.duplicate_of_invoice_id == "INV-A-001"
        assert match.rule == "invoice_number_chain"

    def test_cycle_terminates(self, engine):
        with engine.begin() as conn:
            guard = DuplicateGuard(conn)
            guard.mark_run_duplicate(_register(guard, _invoice("X", invoiceNumber="N-1")), "Y")
            guard.mark_run_duplicate(_register(guard, _invoice("Y", invoiceNumber="N-2")), "X")
            assert guard.resolve_root("X") in {"X", "Y"}
            assert guard.resolve_root("unknown") == "unknown"


class TestFingerprintRule:
    def test_recorded_fingerprint_matches(self, engine):
        with engine.begin() as conn:
            guard = DuplicateGuard(conn)
            invoice = _invoice("INV-A-007", invoiceNumber=None)
            fingerprint = compute_fingerprint(invoice)
            guard.record("INV-A-005", invoice.vendor, fingerprint, "INV-A-001", "earlier", NOW)

            match = guard.detect(invoice, _register(guard, invoice))

        assert match.duplicate_of_invoice_id == "INV-A-001"
        assert match.rule == "fingerprint"
        assert match.reason == "Fingerprint match for vendor (fallback match)."

    def test_cue_alone_is_not_duplicate(self, engine):
        with engine.begin() as conn:
            guard = DuplicateGuard(conn)
            invoice = Invoice.from_dict(invoice_payload(raw_text="Erneute Zusendung\n" + SUPPLIER_TEXT))
            assert guard.detect(invoice, _register(guard, invoice)) is None


def test_record_is_written_once(engine):
    with engine.begin() as conn:
        guard = DuplicateGuard(conn)
        first = guard.record("INV-A-002", "Supplier GmbH", "fp", "INV-A-001", "first reason", NOW)
        second = guard.record("INV-A-002", "Supplier GmbH", "fp", "INV-A-009", "second reason", days_later(1))

    assert second == first
    assert second.reason == "first reason"


def test_mark_run_duplicate_failure_is_logged(engine, caplog):
    with engine.begin() as conn:
        guard = DuplicateGuard(conn)
        run = _register(guard, _invoice())
        conn.execute(sa.text("DROP TABLE invoice_runs"))
        with caplog.at_level(logging.WARNING):
            assert guard.mark_run_duplicate(run, "INV-A-000") is False

    assert any(record.getMessage() == "mark_run_duplicate_failed" for record in caplog.records)
