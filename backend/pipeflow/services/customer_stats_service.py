"""
Customer purchase aggregates.

The sales ledger is the source of truth. Aggregates are kept on the customer
row and maintained two ways:

- incrementally, as each sale is recorded (``apply_new_sale``)
- by full rescan of the ledger (``recompute_from_ledger`` / ``recompute_all``)
  on delete, during migrations, on operator request, and when a read finds
  an aggregate that cannot be right

Read-time repair policy (``needs_repair``): rescan when an aggregate is
NULL or negative, when last_purchase_at is in the future, or when the
stored purchase_count differs from the number of ledger rows for the
customer.
"""

from __future__ import annotations

import logging
from collections import defaultdict
from dataclasses import dataclass
from datetime import datetime

from pipeflow.errors import NotFound, StorageFault
from pipeflow.storage import StorageBackend, Select, Update, by_id

from . import events
from .concurrency import Transactor

logger = logging.getLogger(__name__)

_CUSTOMER = by_id("customers")
_CUSTOMERS = Select("customers", order_by=(("id", False),))
_UPDATE_CUSTOMER = Update("customers")
_SALES_FOR_CUSTOMER = Select("sales", where=("customer_id",))
_ALL_SALES = Select("sales")


@dataclass(frozen=True)
class Aggregate:
    total_purchases_cents: int = 0
    purchase_count: int = 0
    last_purchase_at: datetime | None = None

    def as_params(self) -> dict:
        return {
            "total_purchases_cents": self.total_purchases_cents,
            "purchase_count": self.purchase_count,
            "last_purchase_at": self.last_purchase_at,
        }

    @classmethod
    def from_row(cls, row: dict) -> "Aggregate":
        return cls(
            row.get("total_purchases_cents"),
            row.get("purchase_count"),
            row.get("last_purchase_at"),
        )


def aggregate_sales(sale_rows: list[dict], now: datetime) -> Aggregate:
    """What the ledger implies. The last purchase date is capped at ``now``."""
    if not sale_rows:
        return Aggregate()
    last = max(row["sold_at"] for row in sale_rows)
    return Aggregate(
        total_purchases_cents=sum(int(row["total_amount_cents"] or 0) for row in sale_rows),
        purchase_count=len(sale_rows),
        last_purchase_at=min(last, now),
    )


def needs_repair(row: dict, *, now: datetime, ledger_count: int | None = None) -> bool:
    total = row.get("total_purchases_cents")
    count = row.get("purchase_count")
    last = row.get("last_purchase_at")

    if total is None or count is None:
        return True
    if total < 0 or count < 0:
        return True
    if last is not None and last > now:
        return True
    if ledger_count is not None and count != ledger_count:
        return True
    return False


def recompute_customer(backend: StorageBackend, customer_id: str, now: datetime) -> bool:
    """
    Rewrite one customer's aggregates from the ledger, in the caller's
    transaction. Returns True when the stored values changed.
    """
    row = backend.query_one(_CUSTOMER, {"id": customer_id})
    if row is None:
        raise NotFound(f"Customer {customer_id} not found", operation="recompute_customer_stats", entity_id=customer_id)

    fresh = aggregate_sales(backend.run_query(_SALES_FOR_CUSTOMER, {"customer_id": customer_id}), now)
    if Aggregate.from_row(row) == fresh:
        return False
    backend.run_mutation(_UPDATE_CUSTOMER, {"id": customer_id, **fresh.as_params()})
    return True


def recompute_every_customer(backend: StorageBackend, now: datetime) -> list[str]:
    """Rewrite every customer's aggregates from one ledger scan. Returns ids that changed."""
    by_customer: dict[str, list[dict]] = defaultdict(list)
    for sale in backend.run_query(_ALL_SALES):
        if sale.get("customer_id"):
            by_customer[sale["customer_id"]].append(sale)

    changed = []
    for row in backend.run_query(_CUSTOMERS):
        fresh = aggregate_sales(by_customer.get(row["id"], []), now)
        if Aggregate.from_row(row) != fresh:
            backend.run_mutation(_UPDATE_CUSTOMER, {"id": row["id"], **fresh.as_params()})
            changed.append(row["id"])
    return changed


class CustomerStatsAggregator:
    def __init__(self, backend: StorageBackend, tx: Transactor, *, clock):
        self.backend = backend
        self.tx = tx
        self.clock = clock

    def apply_new_sale(self, customer_id: str, amount_cents: int, when: datetime) -> None:
        """
        Fold one freshly inserted sale into the customer's aggregate.

        Runs inside the sale's transaction. If the stored aggregate is
        already broken it is rebuilt from the ledger (which includes the new
        sale) instead of being incremented.
        """
        if not self.backend.in_transaction():
            raise StorageFault("apply_new_sale must run inside the sale transaction", operation="apply_new_sale")

        row = self.backend.query_one(_CUSTOMER, {"id": customer_id})
        if row is None:
            raise NotFound(f"Customer {customer_id} not found", operation="record_sale", entity_id=customer_id)

        now = self.clock()
        if needs_repair(row, now=now):
            logger.warning("Customer %s aggregate inconsistent; rebuilding from ledger", customer_id)
            recompute_customer(self.backend, customer_id, now)
        else:
            last = row["last_purchase_at"]
            # Backfilled (older) sales never move the date backward
            if last is None or when > last:
                last = when
            self.backend.run_mutation(
                _UPDATE_CUSTOMER,
                {
                    "id": customer_id,
                    "total_purchases_cents": row["total_purchases_cents"] + amount_cents,
                    "purchase_count": row["purchase_count"] + 1,
                    "last_purchase_at": min(last, now),
                },
            )

        self.tx.active.emit(events.CUSTOMER_STATS_UPDATED, {"id": customer_id})

    def recompute_from_ledger(self, customer_id: str) -> bool:
        with self.tx.write("recompute_customer_stats", customer_id) as unit:
            changed = recompute_customer(self.backend, customer_id, self.clock())
            if changed:
                unit.emit(events.CUSTOMER_STATS_UPDATED, {"id": customer_id})
        return changed

    def recompute_all(self) -> int:
        with self.tx.write("recompute_customer_stats") as unit:
            changed = recompute_every_customer(self.backend, self.clock())
            for customer_id in changed:
                unit.emit(events.CUSTOMER_STATS_UPDATED, {"id": customer_id})
        if changed:
            logger.info("Recomputed aggregates for %d customer(s)", len(changed))
        return len(changed)

    # ------------------------------------------------------------------
    # Read-time healing
    # ------------------------------------------------------------------

    def heal(self, rows: list[dict]) -> list[dict]:
        """
        Check customer rows against the ledger and repair the ones that fail
        the policy. Returns the rows to show (re-read where repaired).
        """
        if not rows:
            return rows

        now = self.clock()
        counts: dict[str, int] = defaultdict(int)
        if len(rows) == 1:
            counts[rows[0]["id"]] = len(self.backend.run_query(_SALES_FOR_CUSTOMER, {"customer_id": rows[0]["id"]}))
        else:
            for sale in self.backend.run_query(_ALL_SALES):
                if sale.get("customer_id"):
                    counts[sale["customer_id"]] += 1

        broken = [row["id"] for row in rows if needs_repair(row, now=now, ledger_count=counts[row["id"]])]
        if not broken:
            return rows

        repaired = {}
        with self.tx.write("heal_customer_stats") as unit:
            for customer_id in broken:
                try:
                    changed = recompute_customer(self.backend, customer_id, self.clock())
                except NotFound:
                    # Deleted between the read and the repair
                    continue
                if changed:
                    unit.emit(events.CUSTOMER_STATS_UPDATED, {"id": customer_id})
                repaired[customer_id] = self.backend.query_one(_CUSTOMER, {"id": customer_id})

        logger.info("Healed aggregates for customer(s): %s", ", ".join(repaired))
        return [repaired.get(row["id"]) or row for row in rows]
