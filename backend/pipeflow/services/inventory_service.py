# Overview: Service-layer operations for inventory; owns inventory rows and stock-level queries.

from __future__ import annotations

import logging
import uuid

from pipeflow.errors import DuplicateItem, NotFound, StorageFault, ValidationError
from pipeflow.models import InventoryItem, inventory_items
from pipeflow.storage import StorageBackend, Select, Update, Delete, by_id
from pipeflow.validation import ModelValidationPolicy, validate_payload, enforce_rules_inventory

from . import events
from .concurrency import Transactor
from .settings_service import read_settings

logger = logging.getLogger(__name__)

# Columns that older installs kept inside the attribute bag
CATALOG_FIELDS = ("brand", "dimensions", "supplier")

_ALL = Select("inventory_items", order_by=(("updated_at", True), ("id", False)))
_BY_ID = by_id("inventory_items")
_UPDATE = Update("inventory_items")
_DELETE = Delete("inventory_items")

_EDITABLE = {
    "category",
    "description",
    "quantity",
    "cost_price_cents",
    "selling_price_cents",
    "supplier",
    "brand",
    "dimensions",
    "alert_threshold",
    "attributes",
}

CREATE_POLICY = ModelValidationPolicy(
    writable_fields=_EDITABLE | {"id"},
    required_on_create={"description"},
    ignored_fields={"created_at", "updated_at", "is_low_stock"},
)

UPDATE_POLICY = ModelValidationPolicy(
    writable_fields=_EDITABLE,
    # Not enforced on partial updates, but keeps description from being blanked
    required_on_create={"description"},
    ignored_fields={"id", "created_at", "updated_at", "is_low_stock"},
)


def promote_catalog_fields(row: dict) -> dict:
    """
    Values to copy from the attribute bag into the catalog columns, for
    columns that are empty. Returns only the columns that would change.
    """
    attributes = row.get("attributes") or {}
    changes = {}
    for name in CATALOG_FIELDS:
        legacy = attributes.get(name)
        if legacy not in (None, "") and not row.get(name):
            changes[name] = str(legacy).strip()
    return changes


def merge_attributes(current: dict | None, patch: dict) -> dict:
    """Key-wise merge; a None value removes the key."""
    merged = dict(current or {})
    for key, value in patch.items():
        if value is None:
            merged.pop(key, None)
        else:
            merged[key] = value
    return merged


class InventoryStore:
    """
    CRUD over inventory items.

    Quantity changes driven by sales go through ``_decrement_quantity`` /
    ``_restore_quantity``, which only the SalesLedger calls from inside its
    own transaction.
    """

    def __init__(self, backend: StorageBackend, tx: Transactor, *, clock):
        self.backend = backend
        self.tx = tx
        self.clock = clock

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def find(self, item_id: str) -> InventoryItem | None:
        row = self.backend.query_one(_BY_ID, {"id": item_id})
        return InventoryItem.from_row(row) if row else None

    def get(self, item_id: str) -> InventoryItem:
        item = self.find(item_id)
        if item is None:
            raise NotFound(f"Inventory item {item_id} not found", operation="get_inventory_item", entity_id=item_id)
        return item

    def list(self) -> list[InventoryItem]:
        return [InventoryItem.from_row(row) for row in self.backend.run_query(_ALL)]

    def list_below_threshold(self) -> list[InventoryItem]:
        low = [item for item in self.list() if item.is_low_stock]
        low.sort(key=lambda item: (item.quantity, item.description.lower()))
        return low

    def search(self, criteria: dict | None = None) -> list[InventoryItem]:
        """
        criteria:
        - query: case-insensitive substring of id, description or category
        - category / brand: exact match (case-insensitive)
        - low_stock: only items at or below their alert threshold
        """
        criteria = criteria or {}
        unknown = set(criteria) - {"query", "category", "brand", "low_stock"}
        if unknown:
            raise ValidationError(f"Unknown search criteria: {', '.join(sorted(unknown))}")

        needle = str(criteria.get("query") or "").strip().lower()
        category = str(criteria.get("category") or "").strip().lower()
        brand = str(criteria.get("brand") or "").strip().lower()

        results = []
        for item in self.list():
            if needle and not any(needle in field.lower() for field in (item.id, item.description, item.category)):
                continue
            if category and item.category.lower() != category:
                continue
            if brand and item.brand.lower() != brand:
                continue
            if criteria.get("low_stock") and not item.is_low_stock:
                continue
            results.append(item)
        return results

    def _find_equivalent(self, candidate: InventoryItem) -> InventoryItem | None:
        key = candidate.identity_key()
        for item in self.list():
            if item.id != candidate.id and item.identity_key() == key:
                return item
        return None

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def create(self, payload: dict) -> InventoryItem:
        patch = validate_payload(table=inventory_items, payload=payload, policy=CREATE_POLICY, partial=False)
        enforce_rules_inventory(patch)

        item_id = patch.pop("id", None) or uuid.uuid4().hex
        with self.tx.write("add_inventory_item", item_id) as unit:
            if self.find(item_id) is not None:
                raise DuplicateItem(
                    f"Inventory item {item_id} already exists",
                    operation="add_inventory_item",
                    entity_id=item_id,
                )

            now = self.clock()
            row = {
                "id": item_id,
                "category": "",
                "quantity": 0,
                "cost_price_cents": 0,
                "selling_price_cents": 0,
                "supplier": "",
                "brand": "",
                "dimensions": "",
                "attributes": {},
                **patch,
                "created_at": now,
                "updated_at": now,
            }
            if row.get("alert_threshold") is None:
                row["alert_threshold"] = read_settings(self.backend)["alert_threshold"]
            row.update(promote_catalog_fields(row))

            item = InventoryItem.from_row(row)
            existing = self._find_equivalent(item)
            if existing is not None:
                raise DuplicateItem(
                    f"An item '{item.description}' ({item.category or 'uncategorized'}) already exists",
                    operation="add_inventory_item",
                    entity_id=item_id,
                    details={"existing_id": existing.id},
                )

            self.backend.insert("inventory_items", row)
            unit.emit(events.INVENTORY_CREATED, item.to_dict())

        logger.info("Inventory item %s created", item_id)
        return item

    def update(self, item_id: str, payload: dict) -> InventoryItem:
        patch = validate_payload(table=inventory_items, payload=payload, policy=UPDATE_POLICY, partial=True)
        enforce_rules_inventory(patch)

        with self.tx.write("update_inventory_item", item_id) as unit:
            current = self.backend.query_one(_BY_ID, {"id": item_id})
            if current is None:
                raise NotFound(
                    f"Inventory item {item_id} not found",
                    operation="update_inventory_item",
                    entity_id=item_id,
                )

            if "attributes" in patch:
                patch["attributes"] = merge_attributes(current.get("attributes"), patch["attributes"] or {})

            merged = {**current, **patch}
            item = InventoryItem.from_row(merged)
            if {"description", "category", "brand"} & set(patch):
                existing = self._find_equivalent(item)
                if existing is not None:
                    raise DuplicateItem(
                        f"An item '{item.description}' ({item.category or 'uncategorized'}) already exists",
                        operation="update_inventory_item",
                        entity_id=item_id,
                        details={"existing_id": existing.id},
                    )

            patch["updated_at"] = self.clock()
            item.updated_at = patch["updated_at"]
            self.backend.run_mutation(_UPDATE, {"id": item_id, **patch})
            unit.emit(events.INVENTORY_UPDATED, item.to_dict())

        return item

    def delete(self, item_id: str) -> None:
        with self.tx.write("delete_inventory_item", item_id) as unit:
            if not self.backend.run_mutation(_DELETE, {"id": item_id}):
                raise NotFound(
                    f"Inventory item {item_id} not found",
                    operation="delete_inventory_item",
                    entity_id=item_id,
                )
            unit.emit(events.INVENTORY_DELETED, {"id": item_id})
        logger.info("Inventory item %s deleted", item_id)

    # ------------------------------------------------------------------
    # Stock movements (SalesLedger only)
    # ------------------------------------------------------------------

    def _require_transaction(self, operation: str) -> None:
        if not self.backend.in_transaction():
            raise StorageFault("stock movements must run inside the sale transaction", operation=operation)

    def _decrement_quantity(self, item_id: str, amount: int) -> int | None:
        """
        Take up to ``amount`` units off the shelf, clamping at zero.

        Returns the units actually removed, or None when the id is not a
        tracked item (walk-in lines).
        """
        self._require_transaction("decrement_quantity")
        row = self.backend.query_one(_BY_ID, {"id": item_id})
        if row is None:
            return None

        on_hand = max(int(row["quantity"] or 0), 0)
        removed = min(amount, on_hand)
        if removed < amount:
            logger.warning("Oversold %s: requested %d, had %d; clamped at zero", item_id, amount, on_hand)
        self.backend.run_mutation(_UPDATE, {"id": item_id, "quantity": on_hand - removed, "updated_at": self.clock()})
        return removed

    def _restore_quantity(self, item_id: str, amount: int) -> bool:
        """Put ``amount`` units back. False when the item no longer exists."""
        self._require_transaction("restore_quantity")
        if amount <= 0:
            return False
        row = self.backend.query_one(_BY_ID, {"id": item_id})
        if row is None:
            return False
        quantity = max(int(row["quantity"] or 0), 0) + amount
        self.backend.run_mutation(_UPDATE, {"id": item_id, "quantity": quantity, "updated_at": self.clock()})
        return True
