from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime

from pipeflow.time_utils import to_utc_z

# Derived from the sales ledger; never accepted from callers
AGGREGATE_FIELDS = ("total_purchases_cents", "purchase_count", "last_purchase_at")


@dataclass
class Customer:
    """
    Customer master data plus purchase aggregates.

    WHY aggregates live on the row: list screens sort and filter by lifetime
    spend without scanning the ledger. They must always equal what the ledger
    implies, so only the stats aggregator writes them.

    ``total_purchases_cents``/``purchase_count`` are None when a legacy row
    never had them populated; such rows are repaired on read.
    """
    id: str
    name: str
    business: str = ""
    email: str = ""
    phone: str = ""
    address: str = ""
    tin: str = ""
    customer_type: str = "regular"
    notes: str = ""
    total_purchases_cents: int | None = 0
    purchase_count: int | None = 0
    last_purchase_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict) -> "Customer":
        return cls(
            id=row["id"],
            name=row["name"],
            business=row.get("business") or "",
            email=row.get("email") or "",
            phone=row.get("phone") or "",
            address=row.get("address") or "",
            tin=row.get("tin") or "",
            customer_type=row.get("customer_type") or "regular",
            notes=row.get("notes") or "",
            total_purchases_cents=row.get("total_purchases_cents"),
            purchase_count=row.get("purchase_count"),
            last_purchase_at=row.get("last_purchase_at"),
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "business": self.business,
            "email": self.email,
            "phone": self.phone,
            "address": self.address,
            "tin": self.tin,
            "customer_type": self.customer_type,
            "notes": self.notes,
            "total_purchases_cents": self.total_purchases_cents or 0,
            "purchase_count": self.purchase_count or 0,
            "last_purchase_at": to_utc_z(self.last_purchase_at) if self.last_purchase_at else None,
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
