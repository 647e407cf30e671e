"""
Live Tracking Subscribers

- LocationTracker keeps only the most recent location sample of each
  driver, for live display. No history is retained.
- EventStream bridges bus events into an asyncio queue for one live
  viewer (a websocket connection), filtered by order and/or driver.
"""

import asyncio
import logging
import threading
from typing import Optional

from delivery_dispatch.services.events.bus import EventBus, Subscription
from delivery_dispatch.services.events.types import (
    DomainEvent,
    DriverLocationUpdated,
    EventKind,
    OrderAssigned,
    OrderUpdated,
)

logger = logging.getLogger(__name__)


class LocationTracker:
    """Latest DriverLocationUpdated per driver."""

    def __init__(self, bus: EventBus):
        self._latest: dict[str, DriverLocationUpdated] = {}
        self._lock = threading.Lock()
        self._subscription = bus.subscribe(EventKind.DRIVER_LOCATION_UPDATED, self._on_location)

    def _on_location(self, event: DomainEvent) -> None:
        with self._lock:
            previous = self._latest.get(event.driver_id)
            # late samples never replace a newer one
            if previous is None or previous.timestamp <= event.timestamp:
                self._latest[event.driver_id] = event

    def latest(self, driver_id: str) -> Optional[DriverLocationUpdated]:
        with self._lock:
            return self._latest.get(driver_id)

    def close(self) -> None:
        self._subscription.cancel()


class EventStream:
    """
    Per-viewer event feed.

    Must be created on the event loop that will consume it. Handlers run
    on the publisher's context and only hand events over to that loop, so
    a slow viewer never blocks a publisher; when the viewer's queue is full
    the oldest pending event is dropped.
    """

    def __init__(
        self,
        bus: EventBus,
        order_id: Optional[str] = None,
        driver_id: Optional[str] = None,
        order_driver_id: Optional[str] = None,
        max_pending: int = 100,
    ):
        self.order_id = order_id
        self.driver_id = driver_id
        # driver currently carrying the watched order, learned from events
        self._order_driver_id = order_driver_id
        self._loop = asyncio.get_running_loop()
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_pending)
        self._subscriptions: list[Subscription] = [
            bus.subscribe(kind, self._on_event) for kind in EventKind
        ]

    def matches(self, event: DomainEvent) -> bool:
        if isinstance(event, (OrderAssigned, OrderUpdated)):
            order = event.order
            if self.order_id is not None:
                if order.id != self.order_id:
                    return False
                self._order_driver_id = order.driver_id
            if self.driver_id is not None:
                return order.driver_id == self.driver_id
            return True

        if isinstance(event, DriverLocationUpdated):
            if self.driver_id is not None and event.driver_id != self.driver_id:
                return False
            if self.order_id is not None:
                return (
                    event.location.order_id == self.order_id
                    or (self._order_driver_id is not None and event.driver_id == self._order_driver_id)
                )
            return True

        return False

    def _on_event(self, event: DomainEvent) -> None:
        if self.matches(event):
            self._loop.call_soon_threadsafe(self._offer, event)

    def _offer(self, event: DomainEvent) -> None:
        if self._queue.full():
            self._queue.get_nowait()
            logger.debug("Live viewer lagging; dropped oldest pending event")
        self._queue.put_nowait(event)

    async def get(self) -> DomainEvent:
        return await self._queue.get()

    def close(self) -> None:
        for subscription in self._subscriptions:
            subscription.cancel()
        self._subscriptions = []

    async def __aenter__(self) -> "EventStream":
        return self

    async def __aexit__(self, *exc) -> None:
        self.close()
