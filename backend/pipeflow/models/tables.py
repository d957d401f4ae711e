"""
Logical schema shared by every backend.

The relational backend creates these tables verbatim. The document backend
reads the same metadata to learn primary keys, unique columns, nullability,
scalar defaults and which columns hold datetimes, so both backends enforce
one contract.

Money is stored in integer cents. Datetimes are UTC-naive.
"""

from __future__ import annotations

import sqlalchemy as sa

metadata = sa.MetaData()


# Version marker and other engine bookkeeping (schema_version, migrated_at)
store_meta = sa.Table(
    "store_meta",
    metadata,
    sa.Column("key", sa.String(64), primary_key=True),
    sa.Column("value", sa.String(255), nullable=True),
)


inventory_items = sa.Table(
    "inventory_items",
    metadata,
    sa.Column("id", sa.String(64), primary_key=True),
    sa.Column("category", sa.String(64), nullable=False, default=""),
    sa.Column("description", sa.String(255), nullable=False),
    sa.Column("quantity", sa.Integer, nullable=False, default=0),
    sa.Column("cost_price_cents", sa.Integer, nullable=False, default=0),
    sa.Column("selling_price_cents", sa.Integer, nullable=False, default=0),
    sa.Column("supplier", sa.String(128), nullable=False, default="", server_default=""),
    sa.Column("brand", sa.String(128), nullable=False, default="", server_default=""),
    sa.Column("dimensions", sa.String(64), nullable=False, default="", server_default=""),
    sa.Column("alert_threshold", sa.Integer, nullable=False, default=10),
    # Category-specific fields (color, unit, sku, notes, ...), merged key-wise on update
    sa.Column("attributes", sa.JSON, nullable=True),
    sa.Column("created_at", sa.DateTime, nullable=False),
    sa.Column("updated_at", sa.DateTime, nullable=False),
    sa.Index("ix_inventory_category", "category"),
    sa.Index("ix_inventory_description", "description"),
)


customers = sa.Table(
    "customers",
    metadata,
    sa.Column("id", sa.String(64), primary_key=True),
    sa.Column("name", sa.String(128), nullable=False),
    sa.Column("business", sa.String(128), nullable=False, default=""),
    sa.Column("email", sa.String(255), nullable=False, default=""),
    sa.Column("phone", sa.String(32), nullable=False, default=""),
    sa.Column("address", sa.String(255), nullable=False, default=""),
    sa.Column("tin", sa.String(32), nullable=False, default=""),
    sa.Column("customer_type", sa.String(32), nullable=False, default="regular"),
    sa.Column("notes", sa.Text, nullable=False, default=""),
    # Denormalized aggregates; written only by the sales ledger / stats aggregator
    sa.Column("total_purchases_cents", sa.Integer, nullable=True, default=0, server_default="0"),
    sa.Column("purchase_count", sa.Integer, nullable=True, default=0, server_default="0"),
    sa.Column("last_purchase_at", sa.DateTime, nullable=True),
    sa.Column("created_at", sa.DateTime, nullable=False),
    sa.Column("updated_at", sa.DateTime, nullable=False),
    sa.Index("ix_customers_name", "name"),
)


sales = sa.Table(
    "sales",
    metadata,
    sa.Column("id", sa.String(64), primary_key=True),
    sa.Column("invoice_number", sa.String(64), nullable=False, unique=True),
    sa.Column("sold_at", sa.DateTime, nullable=False),
    sa.Column("customer_id", sa.String(64), nullable=True),
    sa.Column("payment_method", sa.String(32), nullable=False, default="cash", server_default="cash"),
    sa.Column("status", sa.String(16), nullable=False, default="completed"),
    sa.Column("notes", sa.Text, nullable=False, default=""),
    # Computed once from the lines at creation; readers never recompute it
    sa.Column("total_amount_cents", sa.Integer, nullable=False),
    sa.Column("created_at", sa.DateTime, nullable=False),
    sa.Column("updated_at", sa.DateTime, nullable=False),
    sa.Index("ix_sales_sold_at", "sold_at"),
    sa.Index("ix_sales_customer_id", "customer_id"),
)


sale_lines = sa.Table(
    "sale_lines",
    metadata,
    sa.Column("id", sa.String(80), primary_key=True),
    sa.Column("sale_id", sa.String(64), nullable=False),
    sa.Column("position", sa.Integer, nullable=False),
    sa.Column("product_id", sa.String(64), nullable=True),
    sa.Column("description", sa.String(255), nullable=False, default=""),
    sa.Column("quantity", sa.Integer, nullable=False),
    sa.Column("unit_price_cents", sa.Integer, nullable=False),
    sa.Column("line_total_cents", sa.Integer, nullable=False),
    # Units actually taken off the shelf (oversold lines clamp); restored on delete
    sa.Column("stock_decremented", sa.Integer, nullable=True),
    sa.Index("ix_sale_lines_sale_id", "sale_id"),
)


settings = sa.Table(
    "settings",
    metadata,
    sa.Column("key", sa.String(64), primary_key=True),
    sa.Column("value", sa.JSON, nullable=True),
    sa.Column("updated_at", sa.DateTime, nullable=False),
)


sequences = sa.Table(
    "sequences",
    metadata,
    sa.Column("name", sa.String(32), primary_key=True),
    sa.Column("next_value", sa.Integer, nullable=False),
)


# Tables created by the first migration step (store_meta is bootstrapped on open)
DATA_TABLES = (inventory_items, customers, sales, sale_lines, settings, sequences)
