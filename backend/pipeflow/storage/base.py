"""
StorageBackend contract.

Invariants every implementation upholds:

- Writes between ``begin_transaction()`` and ``commit()`` become durable
  together or not at all; ``rollback()`` discards every write since begin.
- Inside a transaction, the owning thread reads its own uncommitted writes.
  Other readers never observe them.
- ``begin_transaction()`` raises BackendUnavailable when the store cannot be
  reached; every other operation raises StorageFault on I/O or constraint
  errors (primary key, unique, NOT NULL).
- A mutation issued outside a transaction commits on its own.
- Schema helpers (``has_table``/``create_table``/``has_column``/
  ``add_column``/``has_index``/``create_index``) take part in the current
  transaction, so a migration step's DDL and data rewrite land together.
"""

from __future__ import annotations

from abc import ABC, abstractmethod

import sqlalchemy as sa

from .statements import Select, Insert, Update, Delete


class StorageBackend(ABC):
    #: short identifier reported by the status operation
    kind: str = "abstract"

    @property
    @abstractmethod
    def location(self) -> str:
        """Where the data lives (URL or file path), for status reporting."""

    @abstractmethod
    def open(self) -> None:
        """Connect / load. Raises BackendUnavailable on failure."""

    @abstractmethod
    def close(self) -> None:
        ...

    @property
    @abstractmethod
    def is_open(self) -> bool:
        ...

    @abstractmethod
    def in_transaction(self) -> bool:
        """True when the calling thread owns the open transaction."""

    @abstractmethod
    def begin_transaction(self) -> None:
        ...

    @abstractmethod
    def commit(self) -> None:
        ...

    @abstractmethod
    def rollback(self) -> None:
        ...

    @abstractmethod
    def run_query(self, statement: Select, params: dict | None = None) -> list[dict]:
        ...

    @abstractmethod
    def run_mutation(self, statement: Insert | Update | Delete, params: dict | None = None) -> int:
        """Apply the mutation and return the number of affected rows."""

    # ------------------------------------------------------------------
    # Schema evolution helpers (used by migration steps)
    # ------------------------------------------------------------------

    @abstractmethod
    def has_table(self, name: str) -> bool:
        ...

    @abstractmethod
    def create_table(self, table: sa.Table) -> None:
        ...

    @abstractmethod
    def has_column(self, table_name: str, column_name: str) -> bool:
        ...

    @abstractmethod
    def add_column(self, table_name: str, column: sa.Column) -> None:
        """Add a column; existing rows take the column's server default (or NULL)."""

    @abstractmethod
    def has_index(self, table_name: str, index_name: str) -> bool:
        ...

    @abstractmethod
    def create_index(self, table_name: str, index_name: str, columns: list[str]) -> None:
        ...

    # ------------------------------------------------------------------
    # Bookkeeping (store_meta is created by open() on every backend)
    # ------------------------------------------------------------------

    _META_BY_KEY = Select("store_meta", where=("key",))
    _META_UPDATE = Update("store_meta", where=("key",))

    def get_meta(self, key: str) -> str | None:
        row = self.query_one(self._META_BY_KEY, {"key": key})
        return row["value"] if row else None

    def set_meta(self, key: str, value: str | None) -> None:
        if not self.run_mutation(self._META_UPDATE, {"key": key, "value": value}):
            self.insert("store_meta", {"key": key, "value": value})

    # ------------------------------------------------------------------
    # Conveniences shared by both implementations
    # ------------------------------------------------------------------

    def query_one(self, statement: Select, params: dict | None = None) -> dict | None:
        rows = self.run_query(statement, params)
        return rows[0] if rows else None

    def insert(self, table: str, row: dict) -> int:
        return self.run_mutation(Insert(table), row)

    def __repr__(self) -> str:
        return f"<{type(self).__name__} {self.location}>"
