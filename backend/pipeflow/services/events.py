# Overview: Post-commit change notifications delivered on a background dispatcher thread.

from __future__ import annotations

import logging
import queue
import threading
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable

from pipeflow.time_utils import utcnow

logger = logging.getLogger(__name__)

WILDCARD = "*"

INVENTORY_CREATED = "inventory-created"
INVENTORY_UPDATED = "inventory-updated"
INVENTORY_DELETED = "inventory-deleted"
SALE_CREATED = "sale-created"
SALE_UPDATED = "sale-updated"
SALE_DELETED = "sale-deleted"
CUSTOMER_CREATED = "customer-created"
CUSTOMER_UPDATED = "customer-updated"
CUSTOMER_DELETED = "customer-deleted"
CUSTOMER_STATS_UPDATED = "customer-stats-updated"
SETTINGS_UPDATED = "settings-updated"


@dataclass(frozen=True)
class Event:
    name: str
    payload: dict = field(default_factory=dict)
    occurred_at: object = field(default_factory=utcnow)

    @property
    def entity_id(self):
        return self.payload.get("id")


class _Marker:
    """Queue entry signalling that everything published before it was delivered."""

    def __init__(self):
        self.done = threading.Event()


_STOP = object()


class EventBus:
    """
    Fire-and-forget pub/sub.

    publish() only enqueues, so a committing writer never waits on a
    subscriber. One dispatcher thread drains the queue in FIFO order, which
    keeps delivery in commit order. A failing subscriber is logged and the
    remaining subscribers still run.
    """

    def __init__(self, *, maxsize: int = 1000, name: str = "pipeflow-events"):
        self._subscribers: dict[str, list[Callable[[Event], None]]] = defaultdict(list)
        self._sub_lock = threading.Lock()
        self._queue: queue.Queue = queue.Queue(maxsize=maxsize)
        self._closed = False
        self._thread = threading.Thread(target=self._run, name=name, daemon=True)
        self._thread.start()

    def subscribe(self, name: str, fn: Callable[[Event], None]) -> Callable[[], None]:
        """Register ``fn`` for ``name`` (or ``"*"``). Returns an unsubscribe callable."""
        with self._sub_lock:
            self._subscribers[name].append(fn)

        def unsubscribe() -> None:
            with self._sub_lock:
                try:
                    self._subscribers[name].remove(fn)
                except ValueError:
                    pass

        return unsubscribe

    def publish(self, event: Event) -> None:
        if self._closed:
            logger.warning("Event bus closed; dropping %s", event.name)
            return
        try:
            self._queue.put_nowait(event)
        except queue.Full:
            logger.error("Event queue full; dropping %s for %s", event.name, event.entity_id)

    def flush(self, timeout: float | None = 5.0) -> bool:
        """Wait until every event published so far has been delivered."""
        if self._closed or not self._thread.is_alive():
            return True
        marker = _Marker()
        try:
            self._queue.put(marker, timeout=timeout)
        except queue.Full:
            return False
        return marker.done.wait(timeout)

    def close(self, timeout: float | None = 5.0) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put(_STOP)
        self._thread.join(timeout)

    def _listeners(self, name: str) -> list[Callable[[Event], None]]:
        with self._sub_lock:
            return list(self._subscribers.get(name, ())) + list(self._subscribers.get(WILDCARD, ()))

    def _run(self) -> None:
        while True:
            item = self._queue.get()
            if item is _STOP:
                return
            if isinstance(item, _Marker):
                item.done.set()
                continue
            for fn in self._listeners(item.name):
                try:
                    fn(item)
                except Exception:
                    logger.exception("Event subscriber %r failed on %s", fn, item.name)
