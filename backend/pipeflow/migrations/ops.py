"""Idempotent schema helpers shared by migration steps."""

from __future__ import annotations

import sqlalchemy as sa

from pipeflow.storage import StorageBackend


def ensure_table(backend: StorageBackend, table: sa.Table) -> bool:
    if backend.has_table(table.name):
        return False
    backend.create_table(table)
    return True


def ensure_column(backend: StorageBackend, table_name: str, column: sa.Column) -> bool:
    if backend.has_column(table_name, column.name):
        return False
    backend.add_column(table_name, column)
    return True


def ensure_index(backend: StorageBackend, table_name: str, index_name: str, columns: list[str]) -> bool:
    if backend.has_index(table_name, index_name):
        return False
    backend.create_index(table_name, index_name, columns)
    return True
