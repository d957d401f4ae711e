"""
Backend-neutral statements.

A statement names a table and the *shape* of the operation; the values come
separately as ``params`` when it is run, the way a prepared SQL statement
does. Statements are immutable and are usually module-level constants.

- ``Select(table, where=("customer_id",))`` with ``{"customer_id": "c-1"}``
- ``Select(table, ranges=(Range("sold_at", ">=", "start"),))`` with ``{"start": dt}``
- ``Insert(table)`` with the full row as params
- ``Update(table, where=("id",))`` with ``{"id": ..., <columns to set>...}``
- ``Delete(table, where=("id",))`` with ``{"id": ...}``

Equality against ``None`` means IS NULL on every backend.
"""

from __future__ import annotations

import operator
from dataclasses import dataclass

RANGE_OPERATORS = {
    ">=": operator.ge,
    ">": operator.gt,
    "<=": operator.le,
    "<": operator.lt,
}


@dataclass(frozen=True)
class Range:
    column: str
    op: str
    param: str

    def __post_init__(self):
        if self.op not in RANGE_OPERATORS:
            raise ValueError(f"unsupported range operator {self.op!r}")


@dataclass(frozen=True)
class Select:
    table: str
    where: tuple[str, ...] = ()
    ranges: tuple[Range, ...] = ()
    # (column, descending)
    order_by: tuple[tuple[str, bool], ...] = ()
    limit: int | None = None


@dataclass(frozen=True)
class Insert:
    table: str


@dataclass(frozen=True)
class Update:
    table: str
    where: tuple[str, ...] = ("id",)

    def split(self, params: dict) -> tuple[dict, dict]:
        """Return (filter values, values to set)."""
        criteria = {k: params[k] for k in self.where}
        values = {k: v for k, v in params.items() if k not in self.where}
        return criteria, values


@dataclass(frozen=True)
class Delete:
    table: str
    where: tuple[str, ...] = ("id",)


def by_id(table: str) -> Select:
    return Select(table, where=("id",))
