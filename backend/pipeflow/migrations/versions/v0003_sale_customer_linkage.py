"""Sale customer linkage

Target version: 3

Sales gain a customer reference and a payment method; sale lines record how
many units were actually taken off the shelf. Lines written before this step
keep a NULL there, which deletion treats as "restore the full quantity".
"""

import sqlalchemy as sa

from ..ops import ensure_column, ensure_index


target_version = 3
name = "sale_customer_linkage"


def upgrade(backend, now):
    ensure_column(backend, "sales", sa.Column("customer_id", sa.String(64), nullable=True))
    ensure_column(backend, "sales", sa.Column("payment_method", sa.String(32), nullable=False, server_default="cash"))
    ensure_index(backend, "sales", "ix_sales_customer_id", ["customer_id"])

    ensure_column(backend, "sale_lines", sa.Column("stock_decremented", sa.Integer(), nullable=True))
