from decimal import Decimal

import pytest

from agents.invoice_memory.dto import FieldCorrection, Invoice, ReferenceData
from agents.invoice_memory.heuristics import (
    CORRECTION_MEMORY,
    HEURISTIC_MAPPING,
    RAW_TEXT,
    REFERENCE_DATA,
    CurrencyHeuristic,
    DeliveryNoteQtyHeuristic,
    FreightSkuHeuristic,
    HeuristicContext,
    PurchaseOrderHeuristic,
    ServiceDateHeuristic,
    SkontoHeuristic,
    VatInclusiveHeuristic,
    heuristic_for_field,
)
from agents.invoice_memory.memory import CorrectionMemory
from agents.invoice_memory.schema import StoreCapabilities
from tests.invoice_memory.builders import NOW, invoice_payload, parts_invoice, reference_payload

VAT_TEXT = "Supplier GmbH\nAlle Preise inkl. 19% MwSt.\nGesamtbetrag: 1.190,00 EUR\n"


@pytest.fixture
def make_ctx(engine, config):
    connections = []

    def _make(payload, reference=None):
        conn = engine.connect()
        connections.append(conn)
        return HeuristicContext(
            invoice=Invoice.from_dict(payload),
            reference=ReferenceData.from_dict(reference if reference is not None else reference_payload()),
            config=config,
            now=NOW,
            corrections=CorrectionMemory(conn, config, StoreCapabilities()),
        )

    yield _make
    for conn in connections:
        conn.close()


def _remember(engine, config, vendor, key, value, rejections=0):
    with engine.begin() as conn:
        store = CorrectionMemory(conn, config, StoreCapabilities())
        entry = store.record_approval(vendor, *key, value, NOW)
        for _ in range(rejections):
            entry = store.record_rejection(entry, NOW)
    return entry


class TestServiceDate:
    def test_label_in_raw_text(self, make_ctx):
        ctx = make_ctx(invoice_payload())
        [candidate] = ServiceDateHeuristic().detect(ctx)
        assert candidate.pattern == "Leistungsdatum"
        assert candidate.changes == [("serviceDate", None, "2026-02-01")]
        assert candidate.source == RAW_TEXT

    def test_no_change_when_already_set(self, make_ctx):
        assert ServiceDateHeuristic().detect(make_ctx(invoice_payload(serviceDate="2026-02-01"))) == []


class TestPurchaseOrder:
    def test_unique_match_within_window(self, make_ctx):
        ctx = make_ctx(parts_invoice(poNumber=None, invoiceDate="2026-02-15"))
        [candidate] = PurchaseOrderHeuristic().detect(ctx)
        assert candidate.changes == [("poNumber", None, "PO-B-110")]
        assert candidate.source == REFERENCE_DATA
        assert ctx.proposed_po == "PO-B-110"

    def test_ambiguous_match_proposes_nothing(self, make_ctx):
        reference = reference_payload()
        reference["purchaseOrders"].append(
            {"poNumber": "PO-B-111", "vendor": "Parts AG", "date": "2026-02-12", "lineItems": [{"sku": "NUT-12"}]}
        )
        ctx = make_ctx(parts_invoice(poNumber=None), reference)
        assert PurchaseOrderHeuristic().detect(ctx) == []
        assert ctx.proposed_po is None

    def test_existing_po_is_kept(self, make_ctx):
        assert PurchaseOrderHeuristic().detect(make_ctx(parts_invoice())) == []


class TestVatInclusive:
    def test_recompute_from_raw_total(self, make_ctx):
        ctx = make_ctx(invoice_payload(raw_text=VAT_TEXT, netTotal=1190.0, taxTotal=0.0, grossTotal=1190.0))
        [candidate] = VatInclusiveHeuristic().detect(ctx)
        assert candidate.changes == [
            ("netTotal", Decimal("1190.00"), Decimal("1000.00")),
            ("taxTotal", Decimal("0.00"), Decimal("190.00")),
        ]
        assert "19.00%" in candidate.reason

    def test_rate_from_raw_text(self, make_ctx):
        ctx = make_ctx(invoice_payload(raw_text=VAT_TEXT, taxRate=None, netTotal=1190.0, taxTotal=0.0))
        [candidate] = VatInclusiveHeuristic().detect(ctx)
        assert candidate.fields == ["netTotal", "taxTotal"]

    def test_missing_rate_is_noted(self, make_ctx):
        text = "Supplier GmbH\nPreise inkl. MwSt.\nGesamtbetrag: 1.190,00 EUR\n"
        ctx = make_ctx(invoice_payload(raw_text=text, taxRate=None))
        assert VatInclusiveHeuristic().detect(ctx) == []
        assert ctx.notes == ["VAT-inclusive pricing detected but no tax rate available; skipped."]

    def test_consistent_totals_need_no_change(self, make_ctx):
        assert VatInclusiveHeuristic().detect(make_ctx(invoice_payload(raw_text=VAT_TEXT))) == []

    def test_total_line_naming_the_rate_keeps_consistent_totals(self, make_ctx):
        text = "Supplier GmbH\nGesamtbetrag inkl. 19% MwSt: 1.190,00 EUR\n"
        assert VatInclusiveHeuristic().detect(make_ctx(invoice_payload(raw_text=text))) == []

    def test_total_line_naming_the_rate_recomputes_from_amount(self, make_ctx):
        text = "Supplier GmbH\nGesamtbetrag inkl. 19% MwSt: 1.190,00 EUR\n"
        ctx = make_ctx(invoice_payload(raw_text=text, netTotal=1190.0, taxTotal=0.0))
        [candidate] = VatInclusiveHeuristic().detect(ctx)
        assert candidate.changes == [
            ("netTotal", Decimal("1190.00"), Decimal("1000.00")),
            ("taxTotal", Decimal("0.00"), Decimal("190.00")),
        ]

    def test_out_of_range_totals_are_skipped(self, make_ctx):
        text = "Supplier GmbH\nPreise inkl. MwSt.\n"
        ctx = make_ctx(invoice_payload(raw_text=text, netTotal=1e20, taxRate=1e30, grossTotal=None))
        assert VatInclusiveHeuristic().detect(ctx) == []
        assert ctx.notes == ["VAT-inclusive totals out of range; skipped."]


class TestDeliveryNoteQty:
    def test_quantity_from_delivery_note(self, make_ctx):
        [candidate] = DeliveryNoteQtyHeuristic().detect(make_ctx(parts_invoice()))
        assert candidate.changes == [("lineItems[0].qty", Decimal("500"), Decimal("480"))]
        assert candidate.source == REFERENCE_DATA

    def test_remembered_quantity_without_delivery_note(self, engine, config, make_ctx):
        entry = _remember(engine, config, "Parts AG", ("lineItems[].qty", "sku", "BOLT-88"), 480)
        [candidate] = DeliveryNoteQtyHeuristic().detect(make_ctx(parts_invoice(poNumber="PO-B-999")))
        assert candidate.changes == [("lineItems[0].qty", Decimal("500"), Decimal("480"))]
        assert candidate.source == CORRECTION_MEMORY
        assert candidate.correction_memory.id == entry.id

    def test_disabled_memory_is_skipped_with_note(self, engine, config, make_ctx):
        _remember(engine, config, "Parts AG", ("lineItems[].qty", "sku", "BOLT-88"), 480, rejections=2)
        ctx = make_ctx(parts_invoice(poNumber="PO-B-999"))
        assert DeliveryNoteQtyHeuristic().detect(ctx) == []
        assert ctx.notes == ["correction memory lineItems[].qty [sku=BOLT-88] is disabled; skipped."]

    def test_correction_key(self, make_ctx):
        ctx = make_ctx(parts_invoice())
        key = DeliveryNoteQtyHeuristic().correction_key(FieldCorrection("lineItems[0].qty", 500, 480), ctx)
        assert key == ("lineItems[].qty", "sku", "BOLT-88", 480)
        assert DeliveryNoteQtyHeuristic().correction_key(FieldCorrection("lineItems[7].qty", 1, 2), ctx) is None


class TestCurrency:
    def test_iso_code_in_raw_text(self, make_ctx):
        [candidate] = CurrencyHeuristic().detect(make_ctx(invoice_payload(currency=None)))
        assert candidate.pattern == "iso_code"
        assert candidate.changes == [("currency", None, "EUR")]

    def test_symbol_in_raw_text(self, make_ctx):
        [candidate] = CurrencyHeuristic().detect(make_ctx(invoice_payload(raw_text="Total: 12,00 €", currency=None)))
        assert candidate.pattern == "symbol"

    def test_vendor_default_from_memory(self, engine, config, make_ctx):
        _remember(engine, config, "Parts AG", ("currency", "vendor", "default"), "EUR")
        [candidate] = CurrencyHeuristic().detect(make_ctx(parts_invoice(currency=None)))
        assert candidate.changes == [("currency", None, "EUR")]
        assert candidate.source == CORRECTION_MEMORY

    def test_nothing_to_go_on(self, make_ctx):
        assert CurrencyHeuristic().detect(make_ctx(parts_invoice(currency=None))) == []


class TestSkonto:
    TEXT = "Supplier GmbH\n2% Skonto bei Zahlung innerhalb von 10 Tagen\n"

    def test_terms_from_raw_text(self, make_ctx):
        [candidate] = SkontoHeuristic().detect(make_ctx(invoice_payload(raw_text=self.TEXT)))
        assert candidate.changes == [("discountTerms", None, {"percent": 2.0, "days": 10})]

    def test_existing_terms_are_kept(self, make_ctx):
        payload = invoice_payload(raw_text=self.TEXT, discountTerms={"percent": 2.0, "days": 10})
        assert SkontoHeuristic().detect(make_ctx(payload)) == []

    def test_terms_from_memory(self, engine, config, make_ctx):
        _remember(engine, config, "Parts AG", ("discountTerms", "vendor", "default"), {"percent": 3.0, "days": 14})
        [candidate] = SkontoHeuristic().detect(make_ctx(parts_invoice()))
        assert candidate.changes == [("discountTerms", None, {"days": 14, "percent": 3.0})]
        assert candidate.source == CORRECTION_MEMORY


class TestFreightSku:
    LINES = [
        {"sku": "WIDGET-001", "description": "Widget", "qty": 100, "unitPrice": 10.0},
        {"sku": None, "description": "Seefracht Hamburg", "qty": 1, "unitPrice": 50.0},
    ]

    def test_keyword_mapping(self, make_ctx):
        [candidate] = FreightSkuHeuristic().detect(make_ctx(invoice_payload(line_items=self.LINES)))
        assert candidate.changes == [("lineItems[1].sku", None, "FREIGHT")]
        assert candidate.source == HEURISTIC_MAPPING

    def test_remembered_sku_wins(self, engine, config, make_ctx):
        _remember(engine, config, "Supplier GmbH", ("lineItems[].sku", "description_keyword", "seefracht"), "SEA-FRT")
        [candidate] = FreightSkuHeuristic().detect(make_ctx(invoice_payload(line_items=self.LINES)))
        assert candidate.changes == [("lineItems[1].sku", None, "SEA-FRT")]
        assert candidate.source == CORRECTION_MEMORY


@pytest.mark.parametrize(
    "path, name",
    [
        ("serviceDate", "service_date"),
        ("lineItems[3].qty", "qty_delivery_note"),
        ("lineItems[0].sku", "freight_sku"),
        ("grossTotal", "vat_inclusive"),
        ("discountTerms", "skonto"),
    ],
)
def test_heuristic_for_field(path, name):
    assert heuristic_for_field(path).name == name


def test_unknown_field_has_no_heuristic():
    assert heuristic_for_field("invoiceNumber") is None
