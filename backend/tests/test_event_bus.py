# Overview: Pytest coverage for post-commit change notifications.

import logging
import threading
from datetime import datetime

import pytest

from pipeflow.errors import DuplicateItem
from pipeflow.services import events
from pipeflow.services.events import Event, EventBus


@pytest.fixture
def local_bus():
    bus = EventBus(maxsize=10)
    yield bus
    bus.close()


class TestEventBus:
    """Delivery order, subscription management and failure isolation."""

    def test_delivers_in_publish_order(self, local_bus):
        seen = []
        local_bus.subscribe("sale-created", lambda e: seen.append(e.payload["n"]))
        for n in range(5):
            local_bus.publish(Event("sale-created", {"n": n}))
        assert local_bus.flush()
        assert seen == [0, 1, 2, 3, 4]

    def test_wildcard_and_named_subscribers(self, local_bus):
        named, everything = [], []
        local_bus.subscribe("inventory-updated", named.append)
        local_bus.subscribe("*", everything.append)
        local_bus.publish(Event("inventory-updated", {"id": "A"}))
        local_bus.publish(Event("sale-created", {"id": "s1"}))
        local_bus.flush()
        assert [e.entity_id for e in named] == ["A"]
        assert [e.name for e in everything] == ["inventory-updated", "sale-created"]

    def test_unsubscribe(self, local_bus):
        seen = []
        unsubscribe = local_bus.subscribe("*", seen.append)
        local_bus.publish(Event("a"))
        local_bus.flush()
        unsubscribe()
        unsubscribe()
        local_bus.publish(Event("b"))
        local_bus.flush()
        assert [e.name for e in seen] == ["a"]

    def test_failing_subscriber_does_not_stop_others(self, local_bus, caplog):
        seen = []

        def explode(event):
            raise RuntimeError("subscriber bug")

        local_bus.subscribe("*", explode)
        local_bus.subscribe("*", seen.append)
        with caplog.at_level(logging.ERROR, logger="pipeflow.services.events"):
            local_bus.publish(Event("a"))
            local_bus.publish(Event("b"))
            local_bus.flush()
        assert [e.name for e in seen] == ["a", "b"]
        assert "subscriber bug" in caplog.text

    def test_full_queue_drops_instead_of_blocking(self, caplog):
        bus = EventBus(maxsize=1)
        started, release = threading.Event(), threading.Event()
        seen = []

        def slow(event):
            started.set()
            release.wait(5)
            seen.append(event.name)

        bus.subscribe("*", slow)
        try:
            bus.publish(Event("first"))
            assert started.wait(5)
            bus.publish(Event("second"))
            with caplog.at_level(logging.ERROR, logger="pipeflow.services.events"):
                bus.publish(Event("third"))
            release.set()
            assert bus.flush()
        finally:
            bus.close()
        assert seen == ["first", "second"]
        assert "queue full" in caplog.text

    def test_publish_after_close_is_dropped(self):
        bus = EventBus()
        bus.close()
        bus.publish(Event("late"))
        assert bus.flush()


class TestEngineEvents:
    """Engine writes publish only after they commit."""

    def test_crud_events(self, engine, recorder):
        engine.add_inventory_item({"id": "A", "description": "Board"})
        engine.update_inventory_item("A", {"quantity": 3})
        engine.delete_inventory_item("A")
        engine.add_customer({"id": "C", "name": "Amina"})
        engine.update_customer("C", {"notes": "pays cash"})
        engine.update_settings({"company_name": "Juma Hardware"})

        assert recorder.names() == [
            events.INVENTORY_CREATED,
            events.INVENTORY_UPDATED,
            events.INVENTORY_DELETED,
            events.CUSTOMER_CREATED,
            events.CUSTOMER_UPDATED,
            events.SETTINGS_UPDATED,
        ]
        assert recorder.events[0].payload["description"] == "Board"
        assert recorder.events[-1].payload == {"keys": ["company_name"]}

    def test_sale_lifecycle_events(self, stocked, recorder):
        recorder.clear()
        sale = stocked.record_sale({"lines": [{"product_id": "A", "quantity": 1}, {"product_id": "B", "quantity": 1}]})
        stocked.update_sale(sale["id"], {"notes": "paid"})
        stocked.delete_sale(sale["id"])

        assert recorder.names() == [
            events.SALE_CREATED,
            events.INVENTORY_UPDATED,
            events.INVENTORY_UPDATED,
            events.SALE_UPDATED,
            events.SALE_DELETED,
            events.INVENTORY_UPDATED,
            events.INVENTORY_UPDATED,
        ]
        assert recorder.events[1].payload == {"id": "A", "quantity": 4}

    def test_events_are_stamped_with_the_engine_clock(self, engine, recorder, clock):
        clock.advance(minutes=5)
        item = engine.add_inventory_item({"id": "A", "description": "Board"})
        clock.advance(minutes=5)
        engine.update_inventory_item("A", {"quantity": 3})

        assert recorder.names() == [events.INVENTORY_CREATED, events.INVENTORY_UPDATED]
        created, updated = recorder.events
        assert created.occurred_at == datetime(2026, 3, 2, 9, 5, 0)
        assert item["updated_at"] == "2026-03-02T09:05:00Z"
        assert updated.occurred_at == clock()

    def test_failed_write_publishes_nothing(self, engine, recorder):
        engine.add_inventory_item({"id": "A", "description": "Board"})
        recorder.clear()
        with pytest.raises(DuplicateItem):
            engine.add_inventory_item({"id": "A", "description": "Board again"})
        assert recorder.names() == []
