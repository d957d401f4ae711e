"""
Ordered migration steps.

Each module under ``versions`` declares ``target_version``, ``name`` and
``upgrade(backend, now)``. Add new steps at the end with the next version.
"""

from pipeflow.services.schema_service import MigrationStep

from .versions import (
    v0001_core_tables,
    v0002_inventory_catalog_columns,
    v0003_sale_customer_linkage,
    v0004_customer_purchase_stats,
    v0005_repair_customer_dates,
    v0006_seed_settings,
)

STEPS = [
    MigrationStep.from_module(module)
    for module in (
        v0001_core_tables,
        v0002_inventory_catalog_columns,
        v0003_sale_customer_linkage,
        v0004_customer_purchase_stats,
        v0005_repair_customer_dates,
        v0006_seed_settings,
    )
]

__all__ = ["STEPS"]
