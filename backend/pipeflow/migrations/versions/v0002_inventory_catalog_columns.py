"""Inventory catalog columns

Target version: 2

brand, dimensions and supplier used to live in the attribute bag. Promote
them to columns and copy existing values across where the column is empty.
"""

import sqlalchemy as sa

from pipeflow.services.inventory_service import promote_catalog_fields
from pipeflow.storage import Select, Update

from ..ops import ensure_column


target_version = 2
name = "inventory_catalog_columns"

_ITEMS = Select("inventory_items")
_UPDATE = Update("inventory_items")


def upgrade(backend, now):
    ensure_column(backend, "inventory_items", sa.Column("attributes", sa.JSON(), nullable=True))
    ensure_column(backend, "inventory_items", sa.Column("supplier", sa.String(128), nullable=False, server_default=""))
    ensure_column(backend, "inventory_items", sa.Column("brand", sa.String(128), nullable=False, server_default=""))
    ensure_column(backend, "inventory_items", sa.Column("dimensions", sa.String(64), nullable=False, server_default=""))
    ensure_column(backend, "inventory_items", sa.Column("alert_threshold", sa.Integer(), nullable=False, server_default="10"))

    for row in backend.run_query(_ITEMS):
        changes = promote_catalog_fields(row)
        if changes:
            backend.run_mutation(_UPDATE, {"id": row["id"], **changes})
