"""
                        Services Module

Business logic of the dispatch core. Backends with a development and a
production flavour (order store, notifications, idempotency) are chosen
by ENV_MODE inside their own factories.

Services:
    - orders: order store (in-memory / relational)
    - events: event bus, live tracking subscribers
    - dispatch: accept and status-transition orchestration
    - location: driver location ingestion
    - notifications: customer SMS/email on order events
    - idempotency: replay protection for mutating requests
"""

from functools import lru_cache

from delivery_dispatch.services.dispatch import DispatchCoordinator
from delivery_dispatch.services.events import get_event_bus, get_location_tracker
from delivery_dispatch.services.location import LocationReporter
from delivery_dispatch.services.orders import get_order_store


@lru_cache()
def get_dispatch_coordinator() -> DispatchCoordinator:
    return DispatchCoordinator(get_order_store(), get_event_bus())


@lru_cache()
def get_location_reporter() -> LocationReporter:
    # tracker must be listening before the first sample is published
    get_location_tracker()
    return LocationReporter(get_event_bus())


def reset_services() -> None:
    get_dispatch_coordinator.cache_clear()
    get_location_reporter.cache_clear()


__all__ = [
    "DispatchCoordinator",
    "LocationReporter",
    "get_dispatch_coordinator",
    "get_location_reporter",
    "reset_services",
]
