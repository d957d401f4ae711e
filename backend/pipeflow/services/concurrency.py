# Overview: Write serialization, atomic units of work and retry on transient lock contention.

from __future__ import annotations

import logging
import threading
import time
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Callable

from pipeflow.errors import StoreError, StorageFault
from pipeflow.storage import StorageBackend
from pipeflow.time_utils import utcnow

from .events import Event

logger = logging.getLogger(__name__)


@dataclass
class UnitOfWork:
    """
    One atomic write. Change notifications are collected here and only
    published once the whole unit has committed.
    """
    operation: str
    entity_id: str | None = None
    events: list[Event] = field(default_factory=list)
    clock: Callable = utcnow

    def emit(self, event_type: str, payload: dict | None = None) -> None:
        self.events.append(Event(event_type, payload or {}, occurred_at=self.clock()))


class Transactor:
    """
    Serializes every write in the engine and maps each one onto a single
    backend transaction.

    A write started while the same thread already has one open joins it, so
    composite operations (record a sale, then update customer stats) commit
    or roll back together.
    """

    def __init__(self, backend: StorageBackend, *, publish=None, clock: Callable = utcnow):
        self.backend = backend
        self.clock = clock
        self.lock = threading.RLock()
        self._publish = publish
        self._local = threading.local()

    @property
    def active(self) -> UnitOfWork | None:
        return getattr(self._local, "unit", None)

    @contextmanager
    def write(self, operation: str, entity_id: str | None = None):
        with self.lock:
            outer = self.active
            if outer is not None:
                yield outer
                return

            # The unit is registered only once the backend transaction is open
            self.backend.begin_transaction()
            unit = UnitOfWork(operation, entity_id, clock=self.clock)
            self._local.unit = unit
            try:
                yield unit
                self.backend.commit()
            except StoreError:
                self.backend.rollback()
                raise
            except Exception as exc:
                self.backend.rollback()
                raise StorageFault(
                    f"{operation} failed: {exc}",
                    operation=operation,
                    entity_id=entity_id,
                ) from exc
            except BaseException:
                self.backend.rollback()
                raise
            finally:
                self._local.unit = None

        if self._publish is not None:
            for event in unit.events:
                self._publish(event)


def run_with_retry(func, *, attempts: int = 3, backoff_base: float = 0.1):
    """
    Execute a write with retry on transient lock contention.

    The failed attempt's transaction has already been rolled back by the
    Transactor, so ``func`` starts clean each time.
    """
    for attempt in range(attempts):
        try:
            return func()
        except StorageFault as exc:
            if not exc.transient or attempt >= attempts - 1:
                raise
            logger.warning("Transient storage fault in %s (attempt %d/%d): %s", exc.operation, attempt + 1, attempts, exc)
            time.sleep(backoff_base * (2 ** attempt))
