# Overview: Pytest coverage for inventory CRUD, duplicate detection, search and low-stock queries.

import pytest

from pipeflow.errors import DuplicateItem, NotFound, ValidationError
from pipeflow.services.inventory_service import merge_attributes, promote_catalog_fields


class TestInventoryCreate:
    """add_inventory_item validation and duplicate detection."""

    def test_create_and_read_back(self, engine, clock):
        created = engine.add_inventory_item({
            "id": "A",
            "description": "  Ceiling board 8ft ",
            "category": "boards",
            "quantity": "5",
            "selling_price_cents": 1500,
            "attributes": {"color": "white"},
        })
        assert created["description"] == "Ceiling board 8ft"
        assert created["quantity"] == 5
        assert created["created_at"] == "2026-03-02T09:00:00Z"

        stored = engine.get_inventory_item("A")
        assert stored == created
        assert [item["id"] for item in engine.get_inventory()] == ["A"]

    def test_generated_id_when_none_given(self, engine):
        created = engine.add_inventory_item({"description": "Nails 2in"})
        assert created["id"]
        assert engine.get_inventory_item(created["id"])["description"] == "Nails 2in"

    def test_duplicate_id_is_rejected(self, engine):
        engine.add_inventory_item({"id": "A", "description": "Ceiling board 8ft"})
        with pytest.raises(DuplicateItem):
            engine.add_inventory_item({"id": "A", "description": "Something else"})

    def test_equivalent_item_is_rejected(self, engine):
        """Same description, category and brand (ignoring case) is the same product."""
        engine.add_inventory_item({"id": "A", "description": "Wall paint 4L", "category": "paint", "brand": "Sadolin"})
        with pytest.raises(DuplicateItem) as excinfo:
            engine.add_inventory_item({"id": "B", "description": "WALL PAINT 4L ", "category": "Paint", "brand": "sadolin"})
        assert excinfo.value.details["existing_id"] == "A"

        # A different brand is a different product
        engine.add_inventory_item({"id": "C", "description": "Wall paint 4L", "category": "paint", "brand": "Crown"})

    @pytest.mark.parametrize("payload", [
        {},
        {"description": ""},
        {"description": "Board", "quantity": -1},
        {"description": "Board", "quantity": 2.5},
        {"description": "Board", "quantity": "1e3"},
        {"description": "Board", "selling_price_cents": -5},
        {"description": "Board", "alert_threshold": -1},
        {"description": "Board", "colour": "red"},
        {"description": "Board", "attributes": ["not", "a", "map"]},
    ])
    def test_invalid_payloads(self, engine, payload):
        with pytest.raises(ValidationError):
            engine.add_inventory_item(payload)
        assert engine.get_inventory() == []

    def test_system_fields_are_ignored(self, engine):
        created = engine.add_inventory_item({
            "id": "A",
            "description": "Board",
            "created_at": "1999-01-01T00:00:00Z",
            "is_low_stock": False,
        })
        assert created["created_at"] == "2026-03-02T09:00:00Z"

    def test_alert_threshold_defaults_from_settings(self, engine):
        engine.update_settings({"alert_threshold": 3})
        assert engine.add_inventory_item({"id": "A", "description": "Board"})["alert_threshold"] == 3
        assert engine.add_inventory_item({"id": "B", "description": "Tile", "alert_threshold": 0})["alert_threshold"] == 0

    def test_catalog_values_in_attributes_are_promoted(self, engine):
        created = engine.add_inventory_item({
            "id": "A",
            "description": "Board",
            "attributes": {"brand": "Gypsum Co", "supplier": "Kariakoo Traders"},
        })
        assert created["brand"] == "Gypsum Co"
        assert created["supplier"] == "Kariakoo Traders"


class TestInventoryUpdate:
    """Partial updates, attribute merging and deletion."""

    def test_partial_update_keeps_other_fields(self, engine, clock):
        engine.add_inventory_item({"id": "A", "description": "Board", "quantity": 5, "brand": "Gypsum Co"})
        clock.advance(minutes=5)

        updated = engine.update_inventory_item("A", {"quantity": 9})
        assert updated["quantity"] == 9
        assert updated["brand"] == "Gypsum Co"
        assert updated["updated_at"] == "2026-03-02T09:05:00Z"
        assert engine.get_inventory_item("A") == updated

    def test_attributes_merge_key_wise(self, engine):
        engine.add_inventory_item({"id": "A", "description": "Board", "attributes": {"color": "white", "sku": "B-1"}})
        updated = engine.update_inventory_item("A", {"attributes": {"sku": "B-2", "color": None, "unit": "pc"}})
        assert updated["attributes"] == {"sku": "B-2", "unit": "pc"}

    def test_description_cannot_be_blanked(self, engine):
        engine.add_inventory_item({"id": "A", "description": "Board"})
        with pytest.raises(ValidationError):
            engine.update_inventory_item("A", {"description": "  "})

    def test_update_into_duplicate_is_rejected(self, engine):
        engine.add_inventory_item({"id": "A", "description": "Board"})
        engine.add_inventory_item({"id": "B", "description": "Tile"})
        with pytest.raises(DuplicateItem):
            engine.update_inventory_item("B", {"description": "board"})

    def test_missing_item(self, engine):
        with pytest.raises(NotFound):
            engine.update_inventory_item("nope", {"quantity": 1})
        with pytest.raises(NotFound):
            engine.delete_inventory_item("nope")
        with pytest.raises(NotFound):
            engine.get_inventory_item("nope")

    def test_delete(self, engine):
        engine.add_inventory_item({"id": "A", "description": "Board"})
        assert engine.delete_inventory_item("A") == {"success": True, "id": "A"}
        assert engine.get_inventory() == []

    def test_list_is_newest_first(self, engine, clock):
        engine.add_inventory_item({"id": "A", "description": "Board"})
        clock.advance(seconds=1)
        engine.add_inventory_item({"id": "B", "description": "Tile"})
        clock.advance(seconds=1)
        engine.update_inventory_item("A", {"quantity": 2})
        assert [item["id"] for item in engine.get_inventory()] == ["A", "B"]


class TestInventoryQueries:
    """Search and low-stock listing."""

    @pytest.fixture
    def catalog(self, engine):
        engine.add_inventory_item({"id": "A", "description": "Ceiling board 8ft", "category": "boards", "quantity": 40})
        engine.add_inventory_item({"id": "B", "description": "Wall paint 4L", "category": "paint", "brand": "Crown",
                                   "quantity": 3})
        engine.add_inventory_item({"id": "C", "description": "Gloss paint 1L", "category": "paint", "brand": "Sadolin",
                                   "quantity": 0, "alert_threshold": 0})
        return engine

    def test_low_stock_at_or_below_threshold(self, catalog):
        low = catalog.get_low_stock_items()
        assert [item["id"] for item in low] == ["C", "B"]
        assert all(item["is_low_stock"] for item in low)

    def test_search_by_text(self, catalog):
        assert {i["id"] for i in catalog.search_inventory({"query": "PAINT"})} == {"B", "C"}
        assert [i["id"] for i in catalog.search_inventory({"query": "8ft"})] == ["A"]

    def test_search_by_category_brand_and_stock(self, catalog):
        assert [i["id"] for i in catalog.search_inventory({"category": "paint", "brand": "crown"})] == ["B"]
        assert {i["id"] for i in catalog.search_inventory({"low_stock": True})} == {"B", "C"}
        assert len(catalog.search_inventory()) == 3

    def test_unknown_criteria(self, catalog):
        with pytest.raises(ValidationError):
            catalog.search_inventory({"colour": "red"})


class TestCatalogHelpers:
    def test_promote_only_fills_empty_columns(self):
        row = {"brand": "", "supplier": "Existing", "attributes": {"brand": " Crown ", "supplier": "Other"}}
        assert promote_catalog_fields(row) == {"brand": "Crown"}

    def test_merge_attributes(self):
        assert merge_attributes(None, {"a": 1}) == {"a": 1}
        assert merge_attributes({"a": 1, "b": 2}, {"a": None, "c": 3}) == {"b": 2, "c": 3}
