"""
FallbackKVBackend: a single JSON document on disk.

Used when the relational store cannot be opened at startup. It honours the
same StorageBackend contract using the shared SQLAlchemy metadata for
primary keys, unique columns, NOT NULL, scalar defaults and datetime
columns.

Document layout::

    {
      "format": 1,
      "schema":  {table: [column, ...]},
      "indexes": {table: [index_name, ...]},
      "tables":  {table: {primary_key: row}}
    }

Transactions:
- One writer at a time: begin_transaction() takes the write lock and a
  working copy of the committed document; commit() writes the copy to a
  temp file, fsyncs and renames it over the store, then publishes it.
- Readers on other threads always see the last committed document, which
  is never mutated in place.
"""

from __future__ import annotations

import copy
import json
import logging
import os
import threading
from datetime import datetime
from pathlib import Path

import sqlalchemy as sa

from pipeflow.errors import BackendUnavailable, StorageFault
from pipeflow.models import tables
from pipeflow.time_utils import coerce_datetime

from .base import StorageBackend
from .statements import RANGE_OPERATORS, Select, Insert, Update, Delete

logger = logging.getLogger(__name__)

DOCUMENT_FORMAT = 1


def _empty_document() -> dict:
    return {"format": DOCUMENT_FORMAT, "schema": {}, "indexes": {}, "tables": {}}


def _sort_key(value):
    # NULLs sort first, like SQLite
    return (0,) if value is None else (1, value)


class FallbackKVBackend(StorageBackend):
    kind = "fallback"

    def __init__(self, path: str | os.PathLike, *, metadata: sa.MetaData = tables.metadata):
        self._path = Path(path)
        self._metadata = metadata
        self._lock = threading.RLock()
        self._doc: dict | None = None
        self._work: dict | None = None
        self._owner: int | None = None

    @property
    def location(self) -> str:
        return str(self._path)

    @property
    def is_open(self) -> bool:
        return self._doc is not None

    # ------------------------------------------------------------------
    # Lifecycle / persistence
    # ------------------------------------------------------------------

    def open(self) -> None:
        with self._lock:
            if self._doc is not None:
                return

            if self._path.exists():
                try:
                    with self._path.open("r", encoding="utf-8") as fh:
                        raw = json.load(fh)
                except (OSError, ValueError) as exc:
                    raise BackendUnavailable(f"cannot read fallback store {self._path}: {exc}", operation="open") from exc
                if not isinstance(raw, dict) or not isinstance(raw.get("tables"), dict):
                    raise BackendUnavailable(f"fallback store {self._path} is not a store document", operation="open")
                doc = self._decode(raw)
            else:
                doc = _empty_document()

            if "store_meta" not in doc["tables"]:
                doc["schema"]["store_meta"] = [c.name for c in tables.store_meta.columns]
                doc["indexes"]["store_meta"] = []
                doc["tables"]["store_meta"] = {}
                try:
                    self._flush(doc)
                except OSError as exc:
                    raise BackendUnavailable(f"cannot write fallback store {self._path}: {exc}", operation="open") from exc

            self._doc = doc
            logger.info("Fallback store opened at %s", self._path)

    def close(self) -> None:
        with self._lock:
            if self.in_transaction():
                logger.warning("Closing fallback store with an open transaction; rolling back")
                self.rollback()
            self._doc = None

    def _decode(self, raw: dict) -> dict:
        doc = _empty_document()
        doc["schema"] = {name: list(cols) for name, cols in raw.get("schema", {}).items()}
        doc["indexes"] = {name: list(ix) for name, ix in raw.get("indexes", {}).items()}

        for name, rows in raw["tables"].items():
            table = self._metadata.tables.get(name)
            datetime_cols = (
                [c.name for c in table.columns if isinstance(c.type, sa.DateTime)] if table is not None else []
            )
            decoded = {}
            for pk, row in rows.items():
                row = dict(row)
                for col in datetime_cols:
                    if isinstance(row.get(col), str):
                        row[col] = datetime.fromisoformat(row[col])
                decoded[pk] = row
            doc["tables"][name] = decoded
            doc["schema"].setdefault(name, sorted({k for row in decoded.values() for k in row}))
        return doc

    @staticmethod
    def _encode_value(value):
        if isinstance(value, datetime):
            return value.isoformat()
        return value

    def _flush(self, doc: dict) -> None:
        payload = dict(doc)
        payload["tables"] = {
            name: {pk: {k: self._encode_value(v) for k, v in row.items()} for pk, row in rows.items()}
            for name, rows in doc["tables"].items()
        }

        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp = self._path.with_name(self._path.name + ".tmp")
        with tmp.open("w", encoding="utf-8") as fh:
            json.dump(payload, fh, indent=2, sort_keys=True)
            fh.flush()
            os.fsync(fh.fileno())
        os.replace(tmp, self._path)

    # ------------------------------------------------------------------
    # Transactions
    # ------------------------------------------------------------------

    def in_transaction(self) -> bool:
        return self._work is not None and self._owner == threading.get_ident()

    def begin_transaction(self) -> None:
        if self._doc is None:
            raise BackendUnavailable("fallback store is not open", operation="begin_transaction")
        if self.in_transaction():
            raise StorageFault("transaction already open on this thread", operation="begin_transaction")

        self._lock.acquire()
        if self._doc is None:
            self._lock.release()
            raise BackendUnavailable("fallback store was closed", operation="begin_transaction")
        self._work = copy.deepcopy(self._doc)
        self._owner = threading.get_ident()

    def commit(self) -> None:
        if not self.in_transaction():
            return
        try:
            self._flush(self._work)
        except OSError as exc:
            self.rollback()
            raise StorageFault(f"cannot write fallback store {self._path}: {exc}", operation="commit") from exc
        self._doc = self._work
        self._end()

    def rollback(self) -> None:
        if not self.in_transaction():
            return
        self._end()

    def _end(self) -> None:
        self._work = None
        self._owner = None
        self._lock.release()

    def _current(self) -> dict:
        if self.in_transaction():
            return self._work
        if self._doc is None:
            raise StorageFault("fallback store is not open", operation="read")
        return self._doc

    def _mutate(self, fn):
        # Statements outside a transaction commit on their own
        if self.in_transaction():
            return fn(self._work)
        self.begin_transaction()
        try:
            result = fn(self._work)
        except BaseException:
            self.rollback()
            raise
        self.commit()
        return result

    # ------------------------------------------------------------------
    # Statements
    # ------------------------------------------------------------------

    def _rows(self, doc: dict, name: str) -> dict:
        try:
            return doc["tables"][name]
        except KeyError:
            raise StorageFault(f"no such table: {name}") from None

    def _table(self, name: str) -> sa.Table:
        try:
            return self._metadata.tables[name]
        except KeyError:
            raise StorageFault(f"unknown table {name!r}") from None

    def _pk(self, name: str) -> str:
        return list(self._table(name).primary_key.columns)[0].name

    @staticmethod
    def _matches(row: dict, criteria: dict) -> bool:
        return all(row.get(col) == value for col, value in criteria.items())

    def _coerce(self, table: sa.Table, values: dict) -> dict:
        out = {}
        for key, value in values.items():
            col = table.columns.get(key)
            if col is not None and isinstance(col.type, sa.DateTime) and value is not None:
                try:
                    value = coerce_datetime(value)
                except ValueError as exc:
                    raise StorageFault(f"{table.name}.{key}: {exc}") from exc
            out[key] = copy.deepcopy(value)
        return out

    def _check_row(self, doc: dict, table: sa.Table, pk: str, row: dict) -> None:
        present = doc["schema"][table.name]
        for name in present:
            col = table.columns.get(name)
            if col is None:
                continue
            if row.get(name) is None and not col.nullable:
                raise StorageFault(f"NOT NULL constraint failed: {table.name}.{name}", entity_id=row.get(pk))
            if col.unique and row.get(name) is not None:
                for other_pk, other in doc["tables"][table.name].items():
                    if other_pk != str(row[pk]) and other.get(name) == row[name]:
                        raise StorageFault(f"UNIQUE constraint failed: {table.name}.{name}", entity_id=row.get(pk))

    def run_query(self, statement: Select, params: dict | None = None) -> list[dict]:
        params = params or {}
        with self._lock:
            rows = list(self._rows(self._current(), statement.table).values())

            criteria = {col: params[col] for col in statement.where}
            rows = [r for r in rows if self._matches(r, criteria)]

            for rng in statement.ranges:
                compare = RANGE_OPERATORS[rng.op]
                bound = params[rng.param]
                rows = [r for r in rows if r.get(rng.column) is not None and compare(r[rng.column], bound)]

            # Stable sorts applied last key first
            for col, descending in reversed(statement.order_by):
                rows.sort(key=lambda r, c=col: _sort_key(r.get(c)), reverse=descending)

            if statement.limit is not None:
                rows = rows[: statement.limit]

            return [copy.deepcopy(r) for r in rows]

    def run_mutation(self, statement: Insert | Update | Delete, params: dict | None = None) -> int:
        params = dict(params or {})
        table = self._table(statement.table)

        if isinstance(statement, Insert):
            return self._mutate(lambda doc: self._insert(doc, table, params))
        if isinstance(statement, Update):
            return self._mutate(lambda doc: self._update(doc, table, statement, params))
        if isinstance(statement, Delete):
            return self._mutate(lambda doc: self._delete(doc, table, statement, params))
        raise TypeError(f"not a mutation: {statement!r}")

    def _insert(self, doc: dict, table: sa.Table, params: dict) -> int:
        rows = self._rows(doc, table.name)
        present = doc["schema"][table.name]

        unknown = set(params) - set(present)
        if unknown:
            raise StorageFault(f"table {table.name} has no column(s) {', '.join(sorted(unknown))}")

        row = {}
        for name in present:
            if name in params:
                row[name] = params[name]
                continue
            col = table.columns.get(name)
            default = col.default if col is not None else None
            row[name] = default.arg if default is not None and default.is_scalar else None
        row = self._coerce(table, row)

        pk = self._pk(table.name)
        if row.get(pk) is None:
            raise StorageFault(f"NOT NULL constraint failed: {table.name}.{pk}")
        key = str(row[pk])
        if key in rows:
            raise StorageFault(f"UNIQUE constraint failed: {table.name}.{pk}", entity_id=key)

        self._check_row(doc, table, pk, row)
        rows[key] = row
        return 1

    def _update(self, doc: dict, table: sa.Table, statement: Update, params: dict) -> int:
        rows = self._rows(doc, table.name)
        criteria, values = statement.split(params)
        if not values:
            return 0

        unknown = set(values) - set(doc["schema"][table.name])
        if unknown:
            raise StorageFault(f"table {table.name} has no column(s) {', '.join(sorted(unknown))}")

        pk = self._pk(table.name)
        if pk in values:
            raise StorageFault(f"cannot change primary key of {table.name}")

        values = self._coerce(table, values)
        count = 0
        for key, row in rows.items():
            if not self._matches(row, criteria):
                continue
            updated = {**row, **copy.deepcopy(values)}
            self._check_row(doc, table, pk, updated)
            rows[key] = updated
            count += 1
        return count

    def _delete(self, doc: dict, table: sa.Table, statement: Delete, params: dict) -> int:
        rows = self._rows(doc, table.name)
        criteria = {col: params[col] for col in statement.where}
        doomed = [key for key, row in rows.items() if self._matches(row, criteria)]
        for key in doomed:
            del rows[key]
        return len(doomed)

    # ------------------------------------------------------------------
    # Schema evolution
    # ------------------------------------------------------------------

    def has_table(self, name: str) -> bool:
        return name in self._current()["tables"]

    def create_table(self, table: sa.Table) -> None:
        def _create(doc):
            if table.name in doc["tables"]:
                return
            doc["schema"][table.name] = [c.name for c in table.columns]
            doc["indexes"][table.name] = sorted(ix.name for ix in table.indexes)
            doc["tables"][table.name] = {}

        self._mutate(_create)

    def has_column(self, table_name: str, column_name: str) -> bool:
        return column_name in self._current()["schema"].get(table_name, [])

    @staticmethod
    def _backfill_value(column: sa.Column):
        # Existing rows take the server default, as ALTER TABLE ADD COLUMN does
        server_default = column.server_default
        if server_default is None:
            return None
        text = getattr(server_default.arg, "text", server_default.arg)
        if isinstance(column.type, sa.Integer):
            return int(text)
        return text

    def add_column(self, table_name: str, column: sa.Column) -> None:
        def _add(doc):
            self._rows(doc, table_name)
            present = doc["schema"][table_name]
            if column.name in present:
                raise StorageFault(f"duplicate column name: {table_name}.{column.name}")
            value = self._backfill_value(column)
            if value is None and not column.nullable and doc["tables"][table_name]:
                raise StorageFault(f"cannot add NOT NULL column {table_name}.{column.name} without a default")
            present.append(column.name)
            for row in doc["tables"][table_name].values():
                row[column.name] = value

        self._mutate(_add)

    def has_index(self, table_name: str, index_name: str) -> bool:
        return index_name in self._current()["indexes"].get(table_name, [])

    def create_index(self, table_name: str, index_name: str, columns: list[str]) -> None:
        def _index(doc):
            self._rows(doc, table_name)
            missing = [c for c in columns if c not in doc["schema"][table_name]]
            if missing:
                raise StorageFault(f"no such column(s) for index {index_name}: {', '.join(missing)}")
            names = doc["indexes"].setdefault(table_name, [])
            if index_name in names:
                raise StorageFault(f"index {index_name} already exists")
            names.append(index_name)

        self._mutate(_index)
