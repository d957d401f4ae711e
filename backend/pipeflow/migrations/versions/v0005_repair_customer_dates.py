"""Repair customer dates and statistics

Target version: 5

Earlier builds could store local times as UTC, leaving dates in the future,
and could leave aggregates NULL or negative. Clamp future created_at to now
and rebuild any aggregate that fails the repair policy.
"""

from pipeflow.services.customer_stats_service import needs_repair, recompute_customer
from pipeflow.storage import Select, Update


target_version = 5
name = "repair_customer_dates"

_CUSTOMERS = Select("customers")
_UPDATE = Update("customers")


def upgrade(backend, now):
    for row in backend.run_query(_CUSTOMERS):
        if row.get("created_at") is not None and row["created_at"] > now:
            backend.run_mutation(_UPDATE, {"id": row["id"], "created_at": now})
        if needs_repair(row, now=now):
            recompute_customer(backend, row["id"], now)
