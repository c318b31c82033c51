from decimal import Decimal

import pytest

from agents.invoice_memory.dto import (
    HumanDecision,
    Invoice,
    MemoryUpdate,
    PipelineOutput,
    ProposedCorrection,
    ReferenceData,
    latest_verdict,
)
from agents.invoice_memory.errors import InvalidInvoiceError
from tests.invoice_memory.builders import decision, invoice_payload, reference_payload


class TestInvoiceFromDict:
    def test_reads_nested_fields(self):
        invoice = Invoice.from_dict(invoice_payload())
        assert invoice.invoice_id == "INV-A-001"
        assert invoice.vendor == "Supplier GmbH"
        assert invoice.invoice_number == "INV-2024-001"
        assert invoice.gross_total == Decimal("1190.00")
        assert invoice.tax_rate == Decimal("0.19")
        assert invoice.line_items[0].sku == "WIDGET-001"
        assert invoice.line_items[0].qty == Decimal("100")

    def test_top_level_wins_over_fields(self):
        payload = invoice_payload(currency="EUR")
        payload["currency"] = "usd"
        payload["normalizedInvoice"] = {"currency": "GBP", "dueDate": "2026-03-15"}
        invoice = Invoice.from_dict(payload)
        assert invoice.currency == "USD"
        assert invoice.due_date == "2026-03-15"

    def test_snake_case_keys(self):
        invoice = Invoice.from_dict(
            {"invoice_id": "X-1", "vendor": "V", "fields": {"gross_total": "1.190,00", "service_date": "01.02.2026"}}
        )
        assert invoice.gross_total == Decimal("1190.00")
        assert invoice.service_date == "2026-02-01"

    def test_malformed_values_are_missing(self):
        invoice = Invoice.from_dict(invoice_payload(invoiceDate="31.02.2026", grossTotal="n/a", lineItems="oops"))
        assert invoice.invoice_date is None
        assert invoice.gross_total is None
        assert invoice.line_items == []

    def test_out_of_range_amounts_are_missing(self):
        invoice = Invoice.from_dict({"invoiceId": "X", "vendor": "V", "fields": {"grossTotal": 1e30, "netTotal": 100}})
        assert invoice.gross_total is None
        assert invoice.total == Decimal("100.00")

    @pytest.mark.parametrize("payload", [{"invoiceId": "X-1"}, {"vendor": "V"}, {"invoiceId": " ", "vendor": "V"}])
    def test_identity_is_required(self, payload):
        with pytest.raises(InvalidInvoiceError):
            Invoice.from_dict(payload)

    def test_invalid_invoice_is_a_value_error(self):
        with pytest.raises(ValueError):
            Invoice.from_dict([])

    def test_total_falls_back_to_net(self):
        invoice = Invoice.from_dict(invoice_payload(grossTotal=None))
        assert invoice.total == Decimal("1000.00")


class TestFieldAccess:
    def test_get_field_by_path(self):
        invoice = Invoice.from_dict(invoice_payload())
        assert invoice.get_field("grossTotal") == Decimal("1190.00")
        assert invoice.get_field("lineItems[0].qty") == Decimal("100")
        assert invoice.get_field("lineItems[5].qty") is None
        assert invoice.get_field("unknown") is None

    def test_with_corrections_copies(self):
        invoice = Invoice.from_dict(invoice_payload())
        corrections = [
            ProposedCorrection("serviceDate", None, "2026-02-01", "rawText_heuristic", 0.55, "r"),
            ProposedCorrection("lineItems[0].qty", 100, 90, "reference_data", 0.8, "r"),
        ]
        corrected = invoice.with_corrections(corrections)
        assert corrected.service_date == "2026-02-01"
        assert corrected.line_items[0].qty == Decimal("90")
        assert invoice.service_date is None
        assert invoice.line_items[0].qty == Decimal("100")


class TestReferenceData:
    def test_from_dict_and_vendor_filter(self):
        reference = ReferenceData.from_dict(reference_payload())
        assert len(reference.purchase_orders) == 3
        assert reference.delivery_notes[0].line_items[0].qty_delivered == Decimal("480")

        parts = reference.for_vendor("parts ag")
        assert {po.po_number for po in parts.purchase_orders} == {"PO-B-110", "PO-B-090"}
        assert parts.purchase_orders[0].skus == {"bolt-88", "nut-12"}

    def test_missing_reference_is_empty(self):
        assert ReferenceData.from_dict(None) == ReferenceData()


class TestDecisions:
    def test_latest_verdict_ignores_non_verdicts(self):
        decisions = [
            HumanDecision.from_dict(decision("INV-A-001", "rejected")),
            HumanDecision.from_dict(decision("INV-A-001", "approved")),
            HumanDecision.from_dict(decision("INV-A-001", "pending")),
            HumanDecision.from_dict(decision("INV-A-002", "rejected")),
        ]
        verdict = latest_verdict(decisions, "INV-A-001")
        assert verdict is not None
        assert verdict.final_decision == "approved"
        assert latest_verdict(decisions, "INV-A-003") is None

    def test_corrections_parsed(self):
        record = HumanDecision.from_dict(
            decision("INV-A-001", corrections=[{"field": "serviceDate", "from": None, "to": "2026-02-01", "reason": "x"}])
        )
        assert record.corrections[0].field == "serviceDate"
        assert record.corrections[0].to_value == "2026-02-01"


def test_output_uses_camel_case_keys():
    invoice = Invoice.from_dict(invoice_payload())
    output = PipelineOutput(
        normalized_invoice=invoice,
        proposed_corrections=[ProposedCorrection("serviceDate", None, "2026-02-01", "rawText_heuristic", 0.55, "r")],
        requires_human_review=True,
        reasoning="x",
        confidence_score=0.55,
        memory_updates=[MemoryUpdate("vendor_memory", "created", "1", "Supplier GmbH", "k", 0.7, "active")],
    )
    payload = output.to_dict()
    assert set(payload) == {
        "normalizedInvoice",
        "proposedCorrections",
        "requiresHumanReview",
        "reasoning",
        "confidenceScore",
        "memoryUpdates",
        "auditTrail",
    }
    assert payload["normalizedInvoice"]["grossTotal"] == 1190.0
    assert payload["proposedCorrections"][0]["from"] is None
    assert payload["memoryUpdates"][0]["entryId"] == "1"
