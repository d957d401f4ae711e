# Overview: Read-only reporting over the sales ledger and inventory; never takes the write lock.

from __future__ import annotations

from collections import defaultdict
from datetime import datetime, timedelta

from pipeflow.errors import ValidationError
from pipeflow.storage import StorageBackend, Select, Range
from pipeflow.time_utils import coerce_datetime, to_utc_z

_SALES_IN_RANGE = Select(
    "sales",
    ranges=(Range("sold_at", ">=", "start"), Range("sold_at", "<", "end")),
    order_by=(("sold_at", False),),
)
_ALL_LINES = Select("sale_lines")
_ALL_ITEMS = Select("inventory_items")

GROUPINGS = ("day", "week", "month")


def _period(dt: datetime, group_by: str) -> str:
    if group_by == "day":
        return dt.strftime("%Y-%m-%d")
    if group_by == "week":
        return dt.strftime("%Y-W%W")
    return dt.strftime("%Y-%m")


def _parse_range(start, end) -> tuple[datetime, datetime]:
    try:
        start_dt = coerce_datetime(start)
        end_dt = coerce_datetime(end)
    except ValueError as exc:
        raise ValidationError(f"Invalid report range: {exc}", operation="get_sales_report") from exc
    if start_dt is None or end_dt is None:
        raise ValidationError("Report needs both start and end", operation="get_sales_report")
    # A bare date as the end means "through the end of that day"
    if isinstance(end, str) and len(end.strip()) == 10:
        end_dt += timedelta(days=1)
    if end_dt <= start_dt:
        raise ValidationError("Report end must be after start", operation="get_sales_report")
    return start_dt, end_dt


def sales_report(backend: StorageBackend, *, start, end, group_by: str = "day") -> dict:
    """
    Summary and per-period breakdown of sales with ``start <= sold_at < end``.

    Cost of goods is estimated from the current cost price of each tracked
    item; walk-in lines have no cost.
    """
    if group_by not in GROUPINGS:
        raise ValidationError("group_by must be day, week, or month", operation="get_sales_report")
    start_dt, end_dt = _parse_range(start, end)

    sale_rows = backend.run_query(_SALES_IN_RANGE, {"start": start_dt, "end": end_dt})
    sale_ids = {row["id"] for row in sale_rows}

    cost_by_item = {row["id"]: row.get("cost_price_cents") or 0 for row in backend.run_query(_ALL_ITEMS)}
    items_sold: dict[str, int] = defaultdict(int)
    cost_by_sale: dict[str, int] = defaultdict(int)
    units_by_product: dict[str, dict] = {}
    for line in backend.run_query(_ALL_LINES):
        if line["sale_id"] not in sale_ids:
            continue
        items_sold[line["sale_id"]] += line["quantity"]
        product_id = line.get("product_id")
        if product_id in cost_by_item:
            cost_by_sale[line["sale_id"]] += cost_by_item[product_id] * line["quantity"]
        key = product_id or f"walk-in:{line.get('description') or ''}"
        entry = units_by_product.setdefault(
            key,
            {"product_id": product_id, "description": line.get("description") or "", "quantity": 0, "revenue_cents": 0},
        )
        entry["quantity"] += line["quantity"]
        entry["revenue_cents"] += line["line_total_cents"]

    periods: dict[str, dict] = {}
    by_payment: dict[str, dict] = {}
    for row in sale_rows:
        bucket = periods.setdefault(
            _period(row["sold_at"], group_by),
            {"sales_count": 0, "items_sold": 0, "revenue_cents": 0, "cost_cents": 0},
        )
        bucket["sales_count"] += 1
        bucket["items_sold"] += items_sold[row["id"]]
        bucket["revenue_cents"] += row["total_amount_cents"]
        bucket["cost_cents"] += cost_by_sale[row["id"]]

        method = by_payment.setdefault(row.get("payment_method") or "cash", {"sales_count": 0, "revenue_cents": 0})
        method["sales_count"] += 1
        method["revenue_cents"] += row["total_amount_cents"]

    revenue = sum(row["total_amount_cents"] for row in sale_rows)
    cost = sum(cost_by_sale.values())
    top_products = sorted(units_by_product.values(), key=lambda e: (-e["revenue_cents"], e["description"]))[:10]

    return {
        "start": to_utc_z(start_dt),
        "end": to_utc_z(end_dt),
        "group_by": group_by,
        "summary": {
            "sales_count": len(sale_rows),
            "items_sold": sum(items_sold.values()),
            "revenue_cents": revenue,
            "estimated_cost_cents": cost,
            "estimated_profit_cents": revenue - cost,
            "average_sale_cents": revenue // len(sale_rows) if sale_rows else 0,
            "first_sale_at": to_utc_z(sale_rows[0]["sold_at"]) if sale_rows else None,
            "last_sale_at": to_utc_z(sale_rows[-1]["sold_at"]) if sale_rows else None,
        },
        "by_payment_method": by_payment,
        "top_products": top_products,
        "data": [
            {
                "period": period,
                **bucket,
                "profit_cents": bucket["revenue_cents"] - bucket["cost_cents"],
            }
            for period, bucket in sorted(periods.items())
        ],
    }
