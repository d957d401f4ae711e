# Overview: Monotonic document numbers (invoice numbers) drawn inside the caller's transaction.

from __future__ import annotations

import re

from pipeflow.errors import StorageFault
from pipeflow.storage import StorageBackend, Select, Update

INVOICE_SEQUENCE = "invoice"

_SEQUENCE = Select("sequences", where=("name",))
_ADVANCE = Update("sequences", where=("name",))
_ALL_SALES = Select("sales")
_SALE_BY_INVOICE = Select("sales", where=("invoice_number",), limit=1)


def format_document_number(prefix: str, value: int) -> str:
    return f"{prefix}-{value}"


def highest_used_number(backend: StorageBackend, prefix: str) -> int | None:
    """Largest numeric suffix among existing invoice numbers carrying ``prefix``."""
    pattern = re.compile(rf"^{re.escape(prefix)}-(\d+)$")
    highest = None
    for row in backend.run_query(_ALL_SALES):
        match = pattern.match(row.get("invoice_number") or "")
        if match:
            value = int(match.group(1))
            highest = value if highest is None else max(highest, value)
    return highest


def seed_sequence(backend: StorageBackend, *, name: str, start: int, prefix: str) -> bool:
    """
    Create the sequence row if absent, continuing after any number already
    used by existing sales. Returns True when a row was created.
    """
    if backend.query_one(_SEQUENCE, {"name": name}) is not None:
        return False
    used = highest_used_number(backend, prefix)
    next_value = start if used is None else max(start, used + 1)
    backend.insert("sequences", {"name": name, "next_value": next_value})
    return True


def next_document_number(
    backend: StorageBackend,
    *,
    name: str = INVOICE_SEQUENCE,
    prefix: str,
    start: int,
    max_skips: int = 1000,
) -> str:
    """
    Allocate the next number for ``name``.

    Must run inside the write transaction that stores the document, so a
    rolled-back sale gives its number back.
    """
    if not backend.in_transaction():
        raise StorageFault("document numbers must be drawn inside a transaction", operation="next_document_number")

    row = backend.query_one(_SEQUENCE, {"name": name})
    value = start if row is None else int(row["next_value"])

    # Skip numbers already taken (imported or legacy sales)
    for _ in range(max_skips):
        candidate = format_document_number(prefix, value)
        if backend.query_one(_SALE_BY_INVOICE, {"invoice_number": candidate}) is None:
            break
        value += 1
    else:
        raise StorageFault(f"could not find a free {name} number after {max_skips} attempts", operation="next_document_number")

    if row is None:
        backend.insert("sequences", {"name": name, "next_value": value + 1})
    else:
        backend.run_mutation(_ADVANCE, {"name": name, "next_value": value + 1})
    return candidate
