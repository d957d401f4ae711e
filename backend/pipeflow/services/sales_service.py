"""
Sales ledger.

WHY: A sale touches three kinds of rows (the sale and its lines, inventory
quantities, the customer's aggregates). The ledger is the only writer of
inventory quantity and customer aggregates, and it applies all of them as
one unit: either the whole sale lands or nothing does.
"""

from __future__ import annotations

import copy
import logging
import uuid
from datetime import datetime, timedelta

from pipeflow.errors import NotFound, StorageFault, ValidationError
from pipeflow.models import SALE_STATUSES, SaleRecord, sale_lines, sales
from pipeflow.storage import StorageBackend, Select, Update, Delete, Range, by_id
from pipeflow.validation import ModelValidationPolicy, validate_payload, enforce_rules_sale_line

from . import events
from .concurrency import Transactor
from .customer_stats_service import CustomerStatsAggregator, recompute_customer
from .inventory_service import InventoryStore
from .sequence_service import next_document_number
from .settings_service import read_settings

logger = logging.getLogger(__name__)

PAYMENT_METHODS = ("cash", "card", "credit_card", "bank_transfer", "mobile_money", "credit", "cheque")

# Tolerated clock skew for caller-supplied sale dates; later dates are rejected
FUTURE_SKEW = timedelta(minutes=2)

_SALE = by_id("sales")
_UPDATE_SALE = Update("sales")
_DELETE_SALE = Delete("sales")
_LINES_FOR_SALE = Select("sale_lines", where=("sale_id",), order_by=(("position", False),))
_ALL_LINES = Select("sale_lines")
_DELETE_LINES = Delete("sale_lines", where=("sale_id",))
_SALES_FOR_CUSTOMER = Select("sales", where=("customer_id",))
_CUSTOMER = by_id("customers")

SALE_POLICY = ModelValidationPolicy(
    writable_fields={"customer_id", "payment_method", "status", "notes", "sold_at"},
    ignored_fields={"id", "invoice_number", "total", "total_amount_cents", "created_at", "updated_at", "lines"},
)

LINE_POLICY = ModelValidationPolicy(
    writable_fields={"product_id", "description", "quantity", "unit_price_cents"},
    required_on_create={"quantity"},
    ignored_fields={"id", "sale_id", "position", "line_total_cents", "stock_decremented"},
)

EDIT_POLICY = ModelValidationPolicy(
    writable_fields={"payment_method", "status", "notes"},
    ignored_fields={"id"},
)


def normalize_payment_method(value: str | None) -> str:
    method = "_".join((value or "cash").strip().lower().replace("-", " ").split())
    if method not in PAYMENT_METHODS:
        raise ValidationError(
            f"Unknown payment method: {value}",
            details={"payment_method": value, "allowed": list(PAYMENT_METHODS)},
        )
    return method


def _check_status(status: str) -> str:
    status = status.strip().lower()
    if status not in SALE_STATUSES:
        raise ValidationError(f"Unknown sale status: {status}", details={"allowed": list(SALE_STATUSES)})
    return status


class SalesLedger:
    def __init__(
        self,
        backend: StorageBackend,
        tx: Transactor,
        *,
        clock,
        inventory: InventoryStore,
        stats: CustomerStatsAggregator,
    ):
        self.backend = backend
        self.tx = tx
        self.clock = clock
        self.inventory = inventory
        self.stats = stats

    # ------------------------------------------------------------------
    # Input handling
    # ------------------------------------------------------------------

    def _normalize_input(self, payload: dict) -> tuple[dict, list[dict]]:
        if not isinstance(payload, dict):
            raise ValidationError("Invalid sale payload", operation="record_sale")

        # Work on a copy; the caller's payload is returned untouched on failure
        payload = copy.deepcopy(payload)
        raw_lines = payload.get("lines")
        if not isinstance(raw_lines, list) or not raw_lines:
            raise ValidationError("A sale needs at least one line item", operation="record_sale")

        header = validate_payload(table=sales, payload=payload, policy=SALE_POLICY, partial=True)
        header["customer_id"] = header.get("customer_id") or None
        header["payment_method"] = normalize_payment_method(header.get("payment_method"))
        header["status"] = _check_status(header.get("status") or "completed")
        header["notes"] = header.get("notes") or ""

        lines = []
        for position, raw in enumerate(raw_lines):
            if not isinstance(raw, dict):
                raise ValidationError(f"line {position}: invalid line item", details={"line": position})
            raw = {k: v for k, v in raw.items() if not (k == "unit_price_cents" and v is None)}
            try:
                line = validate_payload(table=sale_lines, payload=raw, policy=LINE_POLICY, partial=False)
            except ValidationError as exc:
                raise ValidationError(f"line {position}: {exc}", operation="record_sale", details={"line": position}) from exc
            line["product_id"] = line.get("product_id") or None
            enforce_rules_sale_line(line, position)
            line["position"] = position
            lines.append(line)

        return header, lines

    def _resolve_sold_at(self, value: datetime | None, now: datetime) -> datetime:
        if value is None:
            return now
        if value > now + FUTURE_SKEW:
            raise ValidationError(
                "sold_at cannot be in the future",
                operation="record_sale",
                details={"sold_at": value.isoformat()},
            )
        return min(value, now)

    def _price_lines(self, lines: list[dict]) -> None:
        for line in lines:
            item = self.inventory.find(line["product_id"]) if line["product_id"] else None
            if line.get("unit_price_cents") is None:
                if item is None:
                    raise ValidationError(
                        f"line {line['position']}: unknown product {line['product_id']} and no unit price",
                        operation="record_sale",
                        details={"line": line["position"], "product_id": line["product_id"]},
                    )
                line["unit_price_cents"] = item.selling_price_cents
            if not line.get("description"):
                line["description"] = item.description if item else ""
            line["line_total_cents"] = line["quantity"] * line["unit_price_cents"]

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    def _load(self, row: dict) -> SaleRecord:
        return SaleRecord.from_row(row, self.backend.run_query(_LINES_FOR_SALE, {"sale_id": row["id"]}))

    def get_sale(self, sale_id: str) -> SaleRecord:
        row = self.backend.query_one(_SALE, {"id": sale_id})
        if row is None:
            raise NotFound(f"Sale {sale_id} not found", operation="get_sale", entity_id=sale_id)
        return self._load(row)

    def list_sales(
        self,
        *,
        start: datetime | None = None,
        end: datetime | None = None,
        customer_id: str | None = None,
        status: str | None = None,
    ) -> list[SaleRecord]:
        """Newest first. ``start`` is inclusive, ``end`` exclusive."""
        where: tuple[str, ...] = ()
        ranges: tuple[Range, ...] = ()
        params: dict = {}
        if customer_id:
            where += ("customer_id",)
            params["customer_id"] = customer_id
        if status:
            where += ("status",)
            params["status"] = _check_status(status)
        if start is not None:
            ranges += (Range("sold_at", ">=", "start"),)
            params["start"] = start
        if end is not None:
            ranges += (Range("sold_at", "<", "end"),)
            params["end"] = end

        statement = Select("sales", where=where, ranges=ranges, order_by=(("sold_at", True), ("invoice_number", True)))
        rows = self.backend.run_query(statement, params)
        if not rows:
            return []

        lines_by_sale: dict[str, list[dict]] = {}
        wanted = {row["id"] for row in rows}
        for line in self.backend.run_query(_ALL_LINES):
            if line["sale_id"] in wanted:
                lines_by_sale.setdefault(line["sale_id"], []).append(line)
        return [SaleRecord.from_row(row, lines_by_sale.get(row["id"], [])) for row in rows]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    def record_sale(self, payload: dict) -> SaleRecord:
        header, lines = self._normalize_input(payload)
        sale_id = uuid.uuid4().hex

        with self.tx.write("record_sale", sale_id) as unit:
            now = self.clock()
            sold_at = self._resolve_sold_at(header.get("sold_at"), now)

            customer_id = header["customer_id"]
            if customer_id and self.backend.query_one(_CUSTOMER, {"id": customer_id}) is None:
                raise NotFound(f"Customer {customer_id} not found", operation="record_sale", entity_id=customer_id)

            self._price_lines(lines)
            total = sum(line["line_total_cents"] for line in lines)

            settings = read_settings(self.backend)
            invoice_number = next_document_number(
                self.backend,
                prefix=settings["invoice_prefix"],
                start=settings["invoice_start"],
            )

            sale_row = {
                "id": sale_id,
                "invoice_number": invoice_number,
                "sold_at": sold_at,
                "customer_id": customer_id,
                "payment_method": header["payment_method"],
                "status": header["status"],
                "notes": header["notes"],
                "total_amount_cents": total,
                "created_at": now,
                "updated_at": now,
            }
            self.backend.insert("sales", sale_row)

            line_rows = []
            touched: list[str] = []
            for line in lines:
                removed = None
                if line["product_id"]:
                    removed = self.inventory._decrement_quantity(line["product_id"], line["quantity"])
                    if removed is not None and line["product_id"] not in touched:
                        touched.append(line["product_id"])
                row = {
                    "id": f"{sale_id}-{line['position']}",
                    "sale_id": sale_id,
                    "position": line["position"],
                    "product_id": line["product_id"],
                    "description": line["description"],
                    "quantity": line["quantity"],
                    "unit_price_cents": line["unit_price_cents"],
                    "line_total_cents": line["line_total_cents"],
                    "stock_decremented": removed,
                }
                self.backend.insert("sale_lines", row)
                line_rows.append(row)

            record = SaleRecord.from_row(sale_row, line_rows)
            unit.emit(events.SALE_CREATED, record.to_dict())
            for product_id in touched:
                item = self.inventory.find(product_id)
                unit.emit(events.INVENTORY_UPDATED, {"id": product_id, "quantity": item.quantity})

            if customer_id:
                self.stats.apply_new_sale(customer_id, total, sold_at)

        logger.info("Sale %s recorded (%s, %d line(s), total %d)", sale_id, invoice_number, len(lines), total)
        return record

    def delete_sale(self, sale_id: str) -> SaleRecord:
        """
        Remove a sale: put back the stock it actually took, drop its lines,
        and rebuild the customer's aggregate from what remains in the ledger.
        """
        with self.tx.write("delete_sale", sale_id) as unit:
            row = self.backend.query_one(_SALE, {"id": sale_id})
            if row is None:
                raise NotFound(f"Sale {sale_id} not found", operation="delete_sale", entity_id=sale_id)
            record = self._load(row)
            unit.emit(events.SALE_DELETED, {"id": sale_id, "invoice_number": record.invoice_number})

            touched: list[str] = []
            for line in record.lines:
                if not line.product_id:
                    continue
                # Lines from before stock tracking restore their full quantity
                amount = line.quantity if line.stock_decremented is None else line.stock_decremented
                if self.inventory._restore_quantity(line.product_id, amount) and line.product_id not in touched:
                    touched.append(line.product_id)

            self.backend.run_mutation(_DELETE_LINES, {"sale_id": sale_id})
            self.backend.run_mutation(_DELETE_SALE, {"id": sale_id})

            for product_id in touched:
                item = self.inventory.find(product_id)
                unit.emit(events.INVENTORY_UPDATED, {"id": product_id, "quantity": item.quantity})

            customer_id = record.customer_id
            if customer_id and self.backend.query_one(_CUSTOMER, {"id": customer_id}) is not None:
                recompute_customer(self.backend, customer_id, self.clock())
                unit.emit(events.CUSTOMER_STATS_UPDATED, {"id": customer_id})

        logger.info("Sale %s (%s) deleted", sale_id, record.invoice_number)
        return record

    def update_sale(self, sale_id: str, payload: dict) -> SaleRecord:
        """Only status, notes and payment method are editable; lines and totals are immutable."""
        if isinstance(payload, dict):
            frozen = sorted(set(payload) & {"lines", "total_amount_cents", "customer_id", "sold_at", "invoice_number"})
            if frozen:
                raise ValidationError(
                    f"Sale fields cannot be changed: {', '.join(frozen)}",
                    operation="update_sale",
                    entity_id=sale_id,
                )
        patch = validate_payload(table=sales, payload=payload, policy=EDIT_POLICY, partial=True)
        if "payment_method" in patch:
            patch["payment_method"] = normalize_payment_method(patch["payment_method"])
        if "status" in patch:
            patch["status"] = _check_status(patch["status"])
        if "notes" in patch and patch["notes"] is None:
            patch["notes"] = ""

        with self.tx.write("update_sale", sale_id) as unit:
            row = self.backend.query_one(_SALE, {"id": sale_id})
            if row is None:
                raise NotFound(f"Sale {sale_id} not found", operation="update_sale", entity_id=sale_id)
            if patch:
                patch["updated_at"] = self.clock()
                self.backend.run_mutation(_UPDATE_SALE, {"id": sale_id, **patch})
            record = self._load({**row, **patch})
            unit.emit(events.SALE_UPDATED, record.to_dict())
        return record

    def detach_customer(self, customer_id: str) -> int:
        """Clear the customer reference on their sales (inside the caller's transaction)."""
        if not self.backend.in_transaction():
            raise StorageFault("detach_customer must run inside a transaction", operation="detach_customer")
        now = self.clock()
        rows = self.backend.run_query(_SALES_FOR_CUSTOMER, {"customer_id": customer_id})
        for row in rows:
            self.backend.run_mutation(_UPDATE_SALE, {"id": row["id"], "customer_id": None, "updated_at": now})
        return len(rows)
