from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime

from pipeflow.time_utils import to_utc_z

SALE_STATUSES = ("completed", "pending")


@dataclass
class SaleLineItem:
    """Individual line on a sale. line_total_cents = quantity * unit_price_cents."""
    product_id: str | None
    quantity: int
    unit_price_cents: int
    line_total_cents: int
    description: str = ""
    position: int = 0
    id: str | None = None
    # None: written before stock tracking, or a line with no tracked item
    stock_decremented: int | None = None

    @classmethod
    def from_row(cls, row: dict) -> "SaleLineItem":
        return cls(
            id=row["id"],
            position=row["position"],
            product_id=row.get("product_id"),
            description=row.get("description") or "",
            quantity=row["quantity"],
            unit_price_cents=row["unit_price_cents"],
            line_total_cents=row["line_total_cents"],
            stock_decremented=row.get("stock_decremented"),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "position": self.position,
            "product_id": self.product_id,
            "description": self.description,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
            "stock_decremented": self.stock_decremented,
        }


@dataclass
class SaleRecord:
    """
    A ledger entry.

    total_amount_cents is computed from the lines once, at creation, and
    stored; readers never recompute it. Only status, notes and payment
    method may change afterwards.
    """
    id: str
    invoice_number: str
    sold_at: datetime
    total_amount_cents: int
    customer_id: str | None = None
    payment_method: str = "cash"
    status: str = "completed"
    notes: str = ""
    lines: list[SaleLineItem] = field(default_factory=list)
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @classmethod
    def from_row(cls, row: dict, lines: list[dict] | None = None) -> "SaleRecord":
        line_items = [SaleLineItem.from_row(r) for r in (lines or [])]
        line_items.sort(key=lambda line: line.position)
        return cls(
            id=row["id"],
            invoice_number=row["invoice_number"],
            sold_at=row["sold_at"],
            customer_id=row.get("customer_id"),
            payment_method=row.get("payment_method") or "cash",
            status=row.get("status") or "completed",
            notes=row.get("notes") or "",
            total_amount_cents=row["total_amount_cents"],
            lines=line_items,
            created_at=row.get("created_at"),
            updated_at=row.get("updated_at"),
        )

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "invoice_number": self.invoice_number,
            "sold_at": to_utc_z(self.sold_at),
            "customer_id": self.customer_id,
            "payment_method": self.payment_method,
            "status": self.status,
            "notes": self.notes,
            "total_amount_cents": self.total_amount_cents,
            "lines": [line.to_dict() for line in self.lines],
            "created_at": to_utc_z(self.created_at),
            "updated_at": to_utc_z(self.updated_at),
        }
