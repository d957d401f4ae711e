# Overview: Bring records written during a degraded (fallback) run into the relational store.

from __future__ import annotations

import logging
from pathlib import Path

from pipeflow.errors import StoreError, ValidationError
from pipeflow.storage import FallbackKVBackend, StorageBackend, Select, Update

from .concurrency import Transactor
from .customer_stats_service import recompute_every_customer
from .schema_service import SchemaManager
from .sequence_service import INVOICE_SEQUENCE, highest_used_number, next_document_number
from .settings_service import DEFAULT_SETTINGS, read_settings

logger = logging.getLogger(__name__)

IMPORTED_SUFFIX = ".imported"

# Parents before children so sale lines never arrive ahead of their sale
_IMPORT_ORDER = (
    ("inventory_items", "id"),
    ("customers", "id"),
    ("sales", "id"),
    ("sale_lines", "id"),
)

_SETTING = Select("settings", where=("key",))
_UPDATE_SETTING = Update("settings", where=("key",))
_SALE_BY_INVOICE = Select("sales", where=("invoice_number",), limit=1)
_SEQUENCE = Select("sequences", where=("name",))
_UPDATE_SEQUENCE = Update("sequences", where=("name",))


def import_fallback_store(
    target: StorageBackend,
    tx: Transactor,
    path: str | Path,
    *,
    clock,
) -> dict:
    """
    Copy every record from the fallback document at ``path`` into ``target``.

    - rows whose id already exists in the target are skipped
    - imported sales whose invoice number is taken get a fresh one
    - settings still at their default in the target take the fallback value
    - customer aggregates are rebuilt from the merged ledger
    - on success the document is renamed to ``<name>.imported``

    Everything is written in one transaction.
    """
    path = Path(path)
    if target.kind != "relational":
        raise ValidationError("Fallback import needs the relational store to be active", operation="import_fallback")
    if not path.exists():
        raise ValidationError(f"No fallback store at {path}", operation="import_fallback")

    source = FallbackKVBackend(path)
    source.open()
    try:
        # An older document is brought up to the current shape first
        SchemaManager(source, clock=clock).apply_pending_migrations()
        summary = _copy(source, target, tx, clock=clock)
    finally:
        source.close()

    imported_path = path.with_name(path.name + IMPORTED_SUFFIX)
    path.rename(imported_path)
    summary["archived_to"] = str(imported_path)
    logger.info("Imported fallback store %s: %s", path, summary)
    return summary


def _copy(source: StorageBackend, target: StorageBackend, tx: Transactor, *, clock) -> dict:
    summary = {"imported": {}, "skipped": {}, "renumbered_invoices": [], "settings_applied": []}

    with tx.write("import_fallback"):
        settings = read_settings(target)

        for table, pk in _IMPORT_ORDER:
            imported = skipped = 0
            by_pk = Select(table, where=(pk,))
            for row in source.run_query(Select(table)):
                if target.query_one(by_pk, {pk: row[pk]}) is not None:
                    skipped += 1
                    continue
                if table == "sales" and target.query_one(_SALE_BY_INVOICE, {"invoice_number": row["invoice_number"]}):
                    fresh = next_document_number(
                        target,
                        prefix=settings["invoice_prefix"],
                        start=settings["invoice_start"],
                    )
                    summary["renumbered_invoices"].append({"id": row["id"], "from": row["invoice_number"], "to": fresh})
                    row = {**row, "invoice_number": fresh}
                try:
                    target.insert(table, row)
                except StoreError as exc:
                    raise ValidationError(
                        f"Cannot import {table} row {row[pk]}: {exc}",
                        operation="import_fallback",
                        entity_id=row[pk],
                    ) from exc
                imported += 1
            summary["imported"][table] = imported
            summary["skipped"][table] = skipped

        for row in source.run_query(Select("settings")):
            key = row["key"]
            if key not in DEFAULT_SETTINGS or row["value"] == DEFAULT_SETTINGS[key]:
                continue
            current = target.query_one(_SETTING, {"key": key})
            if current is None:
                target.insert("settings", row)
            elif current["value"] == DEFAULT_SETTINGS[key]:
                target.run_mutation(_UPDATE_SETTING, row)
            else:
                continue
            summary["settings_applied"].append(key)

        # Keep the invoice sequence ahead of every imported number
        settings = read_settings(target)
        used = highest_used_number(target, settings["invoice_prefix"])
        sequence = target.query_one(_SEQUENCE, {"name": INVOICE_SEQUENCE})
        if used is not None and sequence is not None and sequence["next_value"] <= used:
            target.run_mutation(_UPDATE_SEQUENCE, {"name": INVOICE_SEQUENCE, "next_value": used + 1})

        summary["customers_recomputed"] = len(recompute_every_customer(target, clock()))

    return summary
