"""Customer purchase statistics

Target version: 4

Add the aggregate columns and fill them from the ledger for every customer.
Recomputing is idempotent: a second run finds nothing to change.
"""

import sqlalchemy as sa

from pipeflow.services.customer_stats_service import recompute_every_customer

from ..ops import ensure_column


target_version = 4
name = "customer_purchase_stats"


def upgrade(backend, now):
    ensure_column(backend, "customers", sa.Column("total_purchases_cents", sa.Integer(), nullable=True, server_default="0"))
    ensure_column(backend, "customers", sa.Column("purchase_count", sa.Integer(), nullable=True, server_default="0"))
    ensure_column(backend, "customers", sa.Column("last_purchase_at", sa.DateTime(), nullable=True))

    recompute_every_customer(backend, now)
