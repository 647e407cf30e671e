"""
Event Bus Factory

One process-wide bus; the live location tracker is attached to it the
first time it is requested.

Usage:
    from delivery_dispatch.services.events import get_event_bus

    bus = get_event_bus()
    token = bus.subscribe(EventKind.ORDER_UPDATED, handler)
"""

import logging
from functools import lru_cache

from delivery_dispatch.services.events.bus import EventBus, Subscription
from delivery_dispatch.services.events.tracking import EventStream, LocationTracker
from delivery_dispatch.services.events.types import (
    DomainEvent,
    DriverLocationUpdated,
    EventKind,
    OrderAssigned,
    OrderUpdated,
)

logger = logging.getLogger(__name__)


@lru_cache()
def get_event_bus() -> EventBus:
    """Get the process-wide event bus."""
    logger.info("Event Bus: created")
    return EventBus()


@lru_cache()
def get_location_tracker() -> LocationTracker:
    """Get the tracker holding each driver's latest location."""
    return LocationTracker(get_event_bus())


def reset_event_bus() -> None:
    """Drop all subscriptions and cached instances (tests, shutdown)."""
    if get_event_bus.cache_info().currsize:
        get_event_bus().clear()
    get_location_tracker.cache_clear()
    get_event_bus.cache_clear()
    logger.debug("Event bus cache cleared")


__all__ = [
    "get_event_bus",
    "get_location_tracker",
    "reset_event_bus",
    "DomainEvent",
    "DriverLocationUpdated",
    "EventBus",
    "EventKind",
    "EventStream",
    "LocationTracker",
    "OrderAssigned",
    "OrderUpdated",
    "Subscription",
]
