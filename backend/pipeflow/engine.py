"""
StoreEngine: the operation set a UI/IPC layer calls.

Constructed once per process with an explicit backend. Construction applies
pending schema migrations before any operation is accepted; a failed
migration propagates out of the constructor. Every operation takes and
returns plain data (dicts / lists of dicts) and fails with a StoreError
subclass.
"""

from __future__ import annotations

import logging
from typing import Callable, Mapping

from pipeflow.errors import ValidationError
from pipeflow.storage import StorageBackend, Select, open_backend
from pipeflow.time_utils import coerce_datetime, utcnow

from .services.concurrency import Transactor, run_with_retry
from .services.customer_service import CustomerStore
from .services.customer_stats_service import CustomerStatsAggregator
from .services.events import Event, EventBus
from .services.fallback_import_service import import_fallback_store
from .services.inventory_service import InventoryStore
from .services.reporting_service import sales_report
from .services.sales_service import SalesLedger
from .services.schema_service import SchemaManager
from .services.settings_service import SettingsStore

logger = logging.getLogger(__name__)

_COUNTED_TABLES = ("inventory_items", "customers", "sales", "sale_lines")


def _parse_when(value, field: str, operation: str):
    try:
        return coerce_datetime(value)
    except ValueError as exc:
        raise ValidationError(f"{field} must be an ISO-8601 datetime", operation=operation) from exc


class StoreEngine:
    def __init__(
        self,
        backend: StorageBackend,
        *,
        bus: EventBus | None = None,
        clock: Callable = utcnow,
        duplicate_window_seconds: int = 5,
        fallback_reason: str | None = None,
        fallback_store_path: str | None = None,
        migration_steps=None,
    ):
        self.backend = backend
        self.clock = clock
        self.fallback_reason = fallback_reason
        self.fallback_store_path = fallback_store_path
        self._owns_bus = bus is None
        self.bus = bus or EventBus()

        try:
            if not backend.is_open:
                backend.open()

            self.tx = Transactor(backend, publish=self.bus.publish, clock=clock)
            self.schema = SchemaManager(backend, migration_steps, clock=clock, lock=self.tx.lock)
            applied = self.schema.apply_pending_migrations()
            if applied:
                logger.info("Applied migrations %s on %r", applied, backend)
        except BaseException:
            self._shutdown()
            raise

        self.settings = SettingsStore(backend, self.tx, clock=clock)
        self.inventory = InventoryStore(backend, self.tx, clock=clock)
        self.stats = CustomerStatsAggregator(backend, self.tx, clock=clock)
        self.ledger = SalesLedger(backend, self.tx, clock=clock, inventory=self.inventory, stats=self.stats)
        self.customers = CustomerStore(
            backend,
            self.tx,
            clock=clock,
            stats=self.stats,
            ledger=self.ledger,
            duplicate_window_seconds=duplicate_window_seconds,
        )

    @classmethod
    def from_config(cls, config: Mapping, *, bus: EventBus | None = None, clock: Callable = utcnow) -> "StoreEngine":
        """Select the backend per the startup policy and build the engine on it."""
        selection = open_backend(config)
        if bus is None:
            bus = EventBus(maxsize=int(config.get("EVENT_QUEUE_SIZE", 1000)))
        return cls(
            selection.backend,
            bus=bus,
            clock=clock,
            duplicate_window_seconds=int(config.get("DUPLICATE_WINDOW_SECONDS", 5)),
            fallback_reason=selection.fallback_reason,
            fallback_store_path=config.get("FALLBACK_STORE_PATH"),
        )

    def _shutdown(self) -> None:
        try:
            self.backend.close()
        finally:
            if self._owns_bus:
                self.bus.close()

    def close(self) -> None:
        self.bus.flush()
        self._shutdown()
        logger.info("Store engine closed")

    def subscribe(self, name: str, fn: Callable[[Event], None]) -> Callable[[], None]:
        return self.bus.subscribe(name, fn)

    @staticmethod
    def _write(fn, *args):
        return run_with_retry(lambda: fn(*args))

    # ------------------------------------------------------------------
    # Inventory
    # ------------------------------------------------------------------

    def get_inventory(self) -> list[dict]:
        return [item.to_dict() for item in self.inventory.list()]

    def get_inventory_item(self, item_id: str) -> dict:
        return self.inventory.get(item_id).to_dict()

    def add_inventory_item(self, payload: dict) -> dict:
        return self._write(self.inventory.create, payload).to_dict()

    def update_inventory_item(self, item_id: str, payload: dict) -> dict:
        return self._write(self.inventory.update, item_id, payload).to_dict()

    def delete_inventory_item(self, item_id: str) -> dict:
        self._write(self.inventory.delete, item_id)
        return {"success": True, "id": item_id}

    def get_low_stock_items(self) -> list[dict]:
        return [item.to_dict() for item in self.inventory.list_below_threshold()]

    def search_inventory(self, criteria: dict | None = None) -> list[dict]:
        return [item.to_dict() for item in self.inventory.search(criteria)]

    # ------------------------------------------------------------------
    # Sales
    # ------------------------------------------------------------------

    def record_sale(self, payload: dict) -> dict:
        return self._write(self.ledger.record_sale, payload).to_dict()

    def delete_sale(self, sale_id: str) -> dict:
        record = self._write(self.ledger.delete_sale, sale_id)
        return {"success": True, "id": sale_id, "invoice_number": record.invoice_number}

    def get_sales(self, filters: dict | None = None) -> list[dict]:
        filters = dict(filters or {})
        unknown = set(filters) - {"start", "end", "customer_id", "status"}
        if unknown:
            raise ValidationError(f"Unknown sale filters: {', '.join(sorted(unknown))}", operation="get_sales")
        records = self.ledger.list_sales(
            start=_parse_when(filters.get("start"), "start", "get_sales"),
            end=_parse_when(filters.get("end"), "end", "get_sales"),
            customer_id=filters.get("customer_id"),
            status=filters.get("status"),
        )
        return [record.to_dict() for record in records]

    def get_sale(self, sale_id: str) -> dict:
        return self.ledger.get_sale(sale_id).to_dict()

    def update_sale(self, sale_id: str, payload: dict) -> dict:
        return self._write(self.ledger.update_sale, sale_id, payload).to_dict()

    # ------------------------------------------------------------------
    # Customers
    # ------------------------------------------------------------------

    def get_customers(self) -> list[dict]:
        return [customer.to_dict() for customer in self.customers.list()]

    def get_customer_by_id(self, customer_id: str) -> dict:
        return self.customers.get(customer_id).to_dict()

    def add_customer(self, payload: dict) -> dict:
        return self._write(self.customers.create, payload).to_dict()

    def update_customer(self, customer_id: str, payload: dict) -> dict:
        return self._write(self.customers.update, customer_id, payload).to_dict()

    def delete_customer(self, customer_id: str) -> dict:
        detached = self._write(self.customers.delete, customer_id)
        return {"success": True, "id": customer_id, "detached_sales": detached}

    def recompute_customer_stats(self, customer_id: str | None = None) -> dict:
        if customer_id:
            changed = self._write(self.stats.recompute_from_ledger, customer_id)
            return {"repaired": int(changed)}
        return {"repaired": self._write(self.stats.recompute_all)}

    # ------------------------------------------------------------------
    # Settings / reporting / status
    # ------------------------------------------------------------------

    def get_settings(self) -> dict:
        return self.settings.get_all()

    def update_settings(self, patch: dict) -> dict:
        return self._write(self.settings.update, patch)

    def get_sales_report(self, start, end, group_by: str = "day") -> dict:
        return sales_report(self.backend, start=start, end=end, group_by=group_by)

    def get_database_status(self) -> dict:
        return {
            "backend": self.backend.kind,
            "location": self.backend.location,
            "using_fallback": self.fallback_reason is not None,
            "fallback_reason": self.fallback_reason,
            "schema": self.schema.status(),
            "counts": {table: len(self.backend.run_query(Select(table))) for table in _COUNTED_TABLES},
        }

    def migrate(self) -> list[int]:
        return self.schema.apply_pending_migrations()

    def import_fallback(self, path: str | None = None) -> dict:
        path = path or self.fallback_store_path
        if not path:
            raise ValidationError("No fallback store path configured", operation="import_fallback")
        return import_fallback_store(self.backend, self.tx, path, clock=self.clock)
