import pytest

from agents.invoice_memory.admin import (
    disable_memory,
    disable_vendor_memory,
    list_memory,
    reset_memory_confidence,
)
from agents.invoice_memory.audit import list_events
from agents.invoice_memory.errors import MemoryEntryNotFoundError, UnknownMemoryStoreError
from agents.invoice_memory.memory import CorrectionMemory, ResolutionMemory, VendorMemory
from agents.invoice_memory.schema import StoreCapabilities
from tests.invoice_memory.builders import NOW, days_later

VENDOR = "Supplier GmbH"


@pytest.fixture
def vendor_entry(engine, config):
    with engine.begin() as conn:
        return VendorMemory(conn, config).record_approval(VENDOR, "serviceDate_from_label", "Leistungsdatum", NOW)


@pytest.fixture
def correction_entry(engine, config):
    with engine.begin() as conn:
        store = CorrectionMemory(conn, config, StoreCapabilities())
        entry = store.record_approval(VENDOR, "currency", "vendor", "default", "EUR", NOW)
        return store.record_rejection(store.record_rejection(entry, NOW), NOW)


def _events(engine):
    with engine.connect() as conn:
        return list_events(conn, vendor=VENDOR)


class TestDisable:
    def test_disable_vendor_memory(self, engine, config, vendor_entry):
        updated = disable_memory(engine, "vendor_memory", vendor_entry.id, days_later(1), config)

        assert updated.status == "disabled"
        with engine.connect() as conn:
            assert VendorMemory(conn, config).lookup(VENDOR, vendor_entry.kind, vendor_entry.pattern) is None

        [event] = _events(engine)
        assert event["event_type"] == "ADMIN_ACTION"
        assert event["entity_type"] == "vendor_memory"
        assert event["entity_id"] == vendor_entry.id
        assert event["invoice_id"] is None
        assert event["meta"] == {
            "action": "disable",
            "key": "serviceDate_from_label:Leistungsdatum",
            "previous_status": "active",
        }

    def test_vendor_shortcut(self, engine, vendor_entry):
        assert disable_vendor_memory(engine, vendor_entry.id, NOW).status == "disabled"

    def test_unknown_id(self, engine, config):
        with pytest.raises(MemoryEntryNotFoundError):
            disable_memory(engine, "vendor_memory", "no-such-id", NOW, config)
        assert _events(engine) == []

    def test_unknown_store(self, engine, config, vendor_entry):
        with pytest.raises(UnknownMemoryStoreError):
            disable_memory(engine, "resolution_memory", vendor_entry.id, NOW, config)


class TestReset:
    def test_reset_reactivates_correction_memory(self, engine, config, correction_entry):
        assert correction_entry.status == "disabled"

        updated = reset_memory_confidence(engine, "correction_memory", correction_entry.id, 0.8, NOW, config)

        assert updated.status == "active"
        assert updated.reject_count == 0
        assert updated.confidence == pytest.approx(0.8)
        with engine.connect() as conn:
            found = CorrectionMemory(conn, config, StoreCapabilities()).find(VENDOR, "currency", "vendor", "default")
        assert found.id == correction_entry.id

        [event] = _events(engine)
        assert event["event_type"] == "MEMORY_CONFIDENCE_RESET"
        assert event["meta"]["from_confidence"] == pytest.approx(0.4)
        assert event["meta"]["to_confidence"] == pytest.approx(0.8)
        assert event["meta"]["previous_status"] == "disabled"
        assert event["meta"]["previous_reject_count"] == 2

    def test_default_target(self, engine, config, vendor_entry):
        assert reset_memory_confidence(engine, "vendor_memory", vendor_entry.id, now=NOW, config=config).confidence == 0.75

    @pytest.mark.parametrize("target", [-0.1, 1.5])
    def test_target_out_of_range(self, engine, config, vendor_entry, target):
        with pytest.raises(ValueError):
            reset_memory_confidence(engine, "vendor_memory", vendor_entry.id, target, NOW, config)


class TestList:
    def test_effective_confidence_decays(self, engine, config, vendor_entry):
        listing = list_memory(engine, VENDOR, days_later(30), config)

        [entry] = listing["vendor_memory"]
        assert entry["store"] == "vendor_memory"
        assert entry["confidence"] == pytest.approx(0.7)
        assert entry["effectiveConfidence"] == pytest.approx(0.35)
        assert entry["untrustedReason"] == "decayed to 0.3500 after 30.0 days"
        assert listing["correction_memory"] == []

    def test_disabled_and_resolution_entries_are_listed(self, engine, config, correction_entry):
        with engine.begin() as conn:
            ResolutionMemory(conn, config, StoreCapabilities()).record_decision(
                VENDOR, "currency-from-text", "approved", "INV-A-001", NOW
            )

        listing = list_memory(engine, VENDOR, NOW, config)

        [correction] = listing["correction_memory"]
        assert correction["status"] == "disabled"
        assert correction["untrustedReason"] == "disabled"
        [resolution] = listing["resolution_memory"]
        assert resolution["status"] == "active"
        assert resolution["approved"] == 1

    def test_unknown_vendor_is_empty(self, engine, config):
        assert list_memory(engine, "Nobody", NOW, config) == {
            "vendor_memory": [],
            "correction_memory": [],
            "resolution_memory": [],
        }
