"""
Storage backends and the startup selection policy.

The relational store is tried exactly once. If it cannot be opened the
engine runs on the document store for the rest of the process; there is no
switching back mid-session.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Mapping

from pipeflow.errors import BackendUnavailable

from .base import StorageBackend
from .fallback import FallbackKVBackend
from .relational import RelationalBackend
from .statements import Select, Insert, Update, Delete, Range, by_id

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class BackendSelection:
    backend: StorageBackend
    # Why the relational store was not used (None when it was)
    fallback_reason: str | None = None

    @property
    def using_fallback(self) -> bool:
        return self.fallback_reason is not None


def open_backend(config: Mapping) -> BackendSelection:
    """
    Open the primary store, or the fallback document store if the primary
    cannot be initialized. Raises BackendUnavailable only when neither opens.
    """
    reason = None
    if config.get("FORCE_FALLBACK"):
        reason = "FORCE_FALLBACK is set"
    else:
        relational = RelationalBackend(
            config.get("DATABASE_URL", "sqlite:///pipeflow.sqlite3"),
            busy_timeout=float(config.get("SQLITE_BUSY_TIMEOUT", 5)),
        )
        try:
            relational.open()
            return BackendSelection(relational)
        except BackendUnavailable as exc:
            reason = str(exc)
            logger.warning("Relational store unavailable (%s); switching to fallback store", reason)

    fallback = FallbackKVBackend(config.get("FALLBACK_STORE_PATH", "pipeflow-store.json"))
    fallback.open()
    return BackendSelection(fallback, fallback_reason=reason)


__all__ = [
    "StorageBackend",
    "RelationalBackend",
    "FallbackKVBackend",
    "BackendSelection",
    "open_backend",
    "Select",
    "Insert",
    "Update",
    "Delete",
    "Range",
    "by_id",
]
