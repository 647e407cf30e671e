"""Event bus: delivery, isolation and unsubscription."""

import threading

from conftest import make_draft
from delivery_dispatch.domain import LocationSample, build_order, utcnow
from delivery_dispatch.services.events import (
    DriverLocationUpdated,
    EventKind,
    OrderAssigned,
    OrderUpdated,
)


def _updated():
    return OrderUpdated(order=build_order("o-1", make_draft(), 500.0, utcnow()))


def _location(driver_id="D1"):
    return DriverLocationUpdated(driver_id=driver_id, location=LocationSample(lat=36.7, lng=3.05))


class TestEventBus:
    def test_delivers_to_subscribers_of_the_kind(self, bus):
        orders, locations = [], []
        bus.subscribe(EventKind.ORDER_UPDATED, orders.append)
        bus.subscribe(EventKind.DRIVER_LOCATION_UPDATED, locations.append)

        event = _updated()
        assert bus.publish(event) == 1
        assert orders == [event]
        assert locations == []

    def test_failing_subscriber_is_isolated(self, bus, caplog):
        received = []

        def broken(event):
            raise RuntimeError("boom")

        bus.subscribe(EventKind.ORDER_UPDATED, broken)
        bus.subscribe(EventKind.ORDER_UPDATED, received.append)

        assert bus.publish(_updated()) == 1
        assert len(received) == 1
        assert "failed handling order_updated" in caplog.text

    def test_unsubscribe_is_idempotent(self, bus):
        received = []
        token = bus.subscribe(EventKind.ORDER_UPDATED, received.append)
        assert token.active

        assert bus.unsubscribe(token) is True
        assert bus.unsubscribe(token) is False
        token.cancel()

        bus.publish(_updated())
        assert received == []
        assert not token.active

    def test_same_handler_subscribed_twice(self, bus):
        received = []
        first = bus.subscribe(EventKind.ORDER_UPDATED, received.append)
        bus.subscribe(EventKind.ORDER_UPDATED, received.append)

        bus.publish(_updated())
        assert len(received) == 2

        first.cancel()
        bus.publish(_updated())
        assert len(received) == 3

    def test_publish_order_is_kept_per_subscriber(self, bus):
        received = []
        bus.subscribe(EventKind.DRIVER_LOCATION_UPDATED, received.append)
        events = [_location(f"D{n}") for n in range(10)]
        for event in events:
            bus.publish(event)
        assert received == events

    def test_unsubscribe_during_publish(self, bus):
        received = []
        tokens = {}

        def once(event):
            received.append(event)
            tokens["self"].cancel()

        tokens["self"] = bus.subscribe(EventKind.ORDER_ASSIGNED, once)
        event = OrderAssigned(order=_updated().order, driver_id="D1")
        bus.publish(event)
        bus.publish(event)
        assert received == [event]

    def test_cancelling_a_later_subscriber_during_publish(self, bus):
        later = []
        tokens = {}

        def cancel_later(event):
            tokens["later"].cancel()

        bus.subscribe(EventKind.ORDER_UPDATED, cancel_later)
        tokens["later"] = bus.subscribe(EventKind.ORDER_UPDATED, later.append)

        first, second = _updated(), _updated()
        assert bus.publish(first) == 2
        bus.publish(second)
        # the event being dispatched still reaches it, the next one does not
        assert later == [first]

    def test_subscribing_during_publish(self, bus):
        added = []

        def subscribe_more(event):
            if not added:
                bus.subscribe(EventKind.ORDER_UPDATED, added.append)
                added.append("subscribed")

        bus.subscribe(EventKind.ORDER_UPDATED, subscribe_more)

        first, second = _updated(), _updated()
        assert bus.publish(first) == 1
        assert added == ["subscribed"]
        bus.publish(second)
        assert added == ["subscribed", second]

    def test_publish_without_subscribers(self, bus):
        assert bus.subscriber_count(EventKind.ORDER_ASSIGNED) == 0
        event = OrderAssigned(order=_updated().order, driver_id="D1")
        assert bus.publish(event) == 0

    def test_subscriber_count(self, bus):
        token = bus.subscribe(EventKind.ORDER_ASSIGNED, print)
        assert bus.subscriber_count(EventKind.ORDER_ASSIGNED) == 1
        token.cancel()
        assert bus.subscriber_count(EventKind.ORDER_ASSIGNED) == 0

    def test_concurrent_publishers(self, bus):
        received = []
        lock = threading.Lock()

        def handler(event):
            with lock:
                received.append(event)

        bus.subscribe(EventKind.DRIVER_LOCATION_UPDATED, handler)

        def publish_many(driver_id):
            for _ in range(50):
                bus.publish(_location(driver_id))

        threads = [threading.Thread(target=publish_many, args=(f"D{n}",)) for n in range(4)]
        for thread in threads:
            thread.start()
        for thread in threads:
            thread.join(timeout=10)

        assert len(received) == 200
