# Overview: Pytest coverage for degraded (fallback) operation and importing its records into the relational store.

"""
Fallback store tests.

The relational store is made unopenable by pointing DATABASE_URL at a
directory; the engine must then run on the JSON document for the rest of
the process. Once the relational store is back, ``import_fallback`` copies
the degraded run's records across.
"""

import pytest

from pipeflow.engine import StoreEngine
from pipeflow.errors import ValidationError


def _config(tmp_path, **overrides):
    config = {
        "DATABASE_URL": f"sqlite:///{tmp_path / 'store.sqlite3'}",
        "FALLBACK_STORE_PATH": str(tmp_path / "fallback.json"),
    }
    config.update(overrides)
    return config


def _broken_relational(tmp_path):
    blocked = tmp_path / "blocked"
    blocked.mkdir(exist_ok=True)
    return _config(tmp_path, DATABASE_URL=f"sqlite:///{blocked}")


class TestDegradedRun:
    """The engine works normally on the fallback store."""

    def test_inventory_written_while_relational_store_is_down(self, tmp_path, bus, clock):
        engine = StoreEngine.from_config(_broken_relational(tmp_path), bus=bus, clock=clock)
        try:
            status = engine.get_database_status()
            assert status["backend"] == "fallback"
            assert status["using_fallback"] is True
            assert status["fallback_reason"]

            engine.add_inventory_item({"id": "A", "description": "Ceiling board 8ft", "quantity": 5})
            assert [item["id"] for item in engine.get_inventory()] == ["A"]
        finally:
            engine.close()

        # Still there on the next degraded start
        engine = StoreEngine.from_config(_broken_relational(tmp_path), bus=bus, clock=clock)
        try:
            assert engine.get_inventory_item("A")["quantity"] == 5
        finally:
            engine.close()

    def test_import_needs_the_relational_store(self, tmp_path, bus, clock):
        engine = StoreEngine.from_config(_config(tmp_path, FORCE_FALLBACK=True), bus=bus, clock=clock)
        try:
            with pytest.raises(ValidationError):
                engine.import_fallback()
        finally:
            engine.close()


class TestImport:
    """import_fallback merges a degraded run into the relational store."""

    @pytest.fixture
    def degraded_run(self, tmp_path, bus, clock):
        engine = StoreEngine.from_config(_broken_relational(tmp_path), bus=bus, clock=clock)
        try:
            engine.add_inventory_item({"id": "X", "description": "Roofing nails", "quantity": 10,
                                       "selling_price_cents": 500})
            engine.add_customer({"id": "K", "name": "Kassim", "phone": "0713000222"})
            engine.update_settings({"company_name": "Juma Hardware"})
            sale = engine.record_sale({"customer_id": "K", "lines": [{"product_id": "X", "quantity": 3}]})
        finally:
            engine.close()
        return sale

    @pytest.fixture
    def relational(self, tmp_path, bus, clock):
        engine = StoreEngine.from_config(_config(tmp_path), bus=bus, clock=clock)
        yield engine
        engine.close()

    def test_records_are_merged(self, degraded_run, relational, tmp_path, clock):
        assert relational.backend.kind == "relational"
        relational.add_customer({"id": "K", "name": "Kassim", "phone": "0713000222"})
        relational.add_inventory_item({"id": "Y", "description": "Tile adhesive", "quantity": 4,
                                       "selling_price_cents": 800})
        clock.advance(minutes=1)
        own = relational.record_sale({"lines": [{"product_id": "Y", "quantity": 1}]})
        assert own["invoice_number"] == degraded_run["invoice_number"] == "INV-1000"

        summary = relational.import_fallback(str(tmp_path / "fallback.json"))

        assert summary["imported"] == {"inventory_items": 1, "customers": 0, "sales": 1, "sale_lines": 1}
        assert summary["skipped"]["customers"] == 1
        assert summary["renumbered_invoices"] == [{"id": degraded_run["id"], "from": "INV-1000", "to": "INV-1001"}]
        assert summary["settings_applied"] == ["company_name"]
        assert summary["customers_recomputed"] == 1

        imported = relational.get_sale(degraded_run["id"])
        assert imported["invoice_number"] == "INV-1001"
        assert imported["total_amount_cents"] == 1500
        assert relational.get_inventory_item("X")["quantity"] == 7
        kassim = relational.get_customer_by_id("K")
        assert (kassim["total_purchases_cents"], kassim["purchase_count"]) == (1500, 1)
        assert relational.get_settings()["company_name"] == "Juma Hardware"

        assert not (tmp_path / "fallback.json").exists()
        assert (tmp_path / "fallback.json.imported").exists()
        assert summary["archived_to"] == str(tmp_path / "fallback.json.imported")

        # Numbering continues after everything now in the ledger
        assert relational.record_sale({"lines": [{"product_id": "Y", "quantity": 1}]})["invoice_number"] == "INV-1002"

    def test_configured_path_is_the_default(self, degraded_run, relational, tmp_path):
        summary = relational.import_fallback()
        assert summary["imported"]["sales"] == 1

    def test_missing_file(self, relational, tmp_path):
        with pytest.raises(ValidationError):
            relational.import_fallback(str(tmp_path / "nothing-here.json"))
