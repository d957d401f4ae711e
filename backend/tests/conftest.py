"""
Pytest fixtures for store engine tests.

Every engine runs against real files in tmp_path: a SQLite database for the
relational backend, a JSON document for the fallback backend. Fixtures that
depend on ``backend_kind`` run once per backend.
"""

import threading
from datetime import datetime, timedelta

import pytest

from pipeflow.engine import StoreEngine
from pipeflow.models import tables
from pipeflow.services.events import EventBus
from pipeflow.storage import FallbackKVBackend, RelationalBackend


START = datetime(2026, 3, 2, 9, 0, 0)


class FakeClock:
    """Deterministic engine clock; tests move it with advance()."""

    def __init__(self, start=START):
        self.now = start
        self._lock = threading.Lock()

    def __call__(self):
        with self._lock:
            return self.now

    def advance(self, **delta):
        with self._lock:
            self.now += timedelta(**delta)
            return self.now


class EventRecorder:
    def __init__(self, bus):
        self.bus = bus
        self.events = []
        self.unsubscribe = bus.subscribe("*", self.events.append)

    def names(self):
        self.bus.flush()
        return [event.name for event in self.events]

    def clear(self):
        self.bus.flush()
        self.events.clear()


def make_backend(kind, directory):
    if kind == "relational":
        return RelationalBackend(f"sqlite:///{directory / 'store.sqlite3'}")
    return FallbackKVBackend(directory / "store.json")


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture(params=["relational", "fallback"])
def backend_kind(request):
    return request.param


@pytest.fixture
def backend(backend_kind, tmp_path):
    """An open backend with the current data tables and no migrations applied."""
    store = make_backend(backend_kind, tmp_path)
    store.open()
    for table in tables.DATA_TABLES:
        store.create_table(table)
    yield store
    store.close()


@pytest.fixture
def bus():
    bus = EventBus()
    yield bus
    bus.close()


@pytest.fixture
def engine(backend_kind, tmp_path, clock, bus):
    engine = StoreEngine(make_backend(backend_kind, tmp_path), bus=bus, clock=clock)
    yield engine
    engine.close()


@pytest.fixture
def recorder(engine):
    return EventRecorder(engine.bus)


@pytest.fixture
def stocked(engine):
    """Two tracked items: A (qty 5 @ 15.00) and B (qty 2 @ 4.00)."""
    engine.add_inventory_item({
        "id": "A",
        "description": "Ceiling board 8ft",
        "category": "boards",
        "quantity": 5,
        "cost_price_cents": 1000,
        "selling_price_cents": 1500,
    })
    engine.add_inventory_item({
        "id": "B",
        "description": "Wall paint 4L",
        "category": "paint",
        "quantity": 2,
        "cost_price_cents": 250,
        "selling_price_cents": 400,
    })
    return engine


@pytest.fixture
def customer(engine):
    return engine.add_customer({"id": "C", "name": "Amina Juma", "phone": "+255 712 000 111"})
