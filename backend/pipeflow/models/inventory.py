from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from pipeflow.time_utils import to_utc_z


@dataclass
class InventoryItem:
    """
    A stocked product.

    Quantity is never negative: sales that oversell clamp it to zero.
    ``attributes`` carries category-specific fields (color, unit, sku,
    notes, ...) and is merged key-wise on partial update.
    """
    id: str
    description: str
    category: str = ""
    quantity: int = 0
    cost_price_cents: int = 0
    selling_price_cents: int = 0
    supplier: str = ""
    brand: str = ""
    dimensions: str = ""
    alert_threshold: int = 10
    attributes: dict = field(default_factory=dict)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict) -> "InventoryItem":
        return cls(
            id=row["id"],
            description=row["description"],
            category=row.get("category") or "",
            quantity=int(row.get("quantity") or 0),
            cost_price_cents=int(row.get("cost_price_cents") or 0),
            selling_price_cents=int(row.get("selling_price_cents") or 0),
            supplier=row.get("supplier") or "",
            brand=row.get("brand") or "",
            dimensions=row.get("dimensions") or "",
            alert_threshold=int(row.get("alert_threshold") or 0),
            attributes=dict(row.get("attributes") or {}),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    @property
    def is_low_stock(self) -> bool:
        return self.quantity <= self.alert_threshold

    def identity_key(self) -> tuple[str, str, str]:
        """Fields that make two items 'the same product' for duplicate detection."""
        return (
            self.description.strip().lower(),
            self.category.strip().lower(),
            self.brand.strip().lower(),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "category": self.category,
            "description": self.description,
            "quantity": self.quantity,
            "cost_price_cents": self.cost_price_cents,
            "selling_price_cents": self.selling_price_cents,
            "supplier": self.supplier,
            "brand": self.brand,
            "dimensions": self.dimensions,
            "alert_threshold": self.alert_threshold,
            "attributes": dict(self.attributes),
            "is_low_stock": self.is_low_stock,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
