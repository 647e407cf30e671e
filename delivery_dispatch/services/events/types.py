"""
Domain Events

Closed set of events published on the bus. Each variant is an immutable
dataclass with a fixed ``kind``; subscribers dispatch on the class, never
on loosely-typed dictionaries.
"""

import enum
from dataclasses import dataclass, field
from datetime import datetime
from typing import Union

from delivery_dispatch.domain import LocationSample, Order, utcnow


class EventKind(str, enum.Enum):
    ORDER_ASSIGNED = "order_assigned"
    ORDER_UPDATED = "order_updated"
    DRIVER_LOCATION_UPDATED = "driver_location_updated"


@dataclass(frozen=True)
class OrderAssigned:
    """A driver won the assignment of an order."""
    order: Order
    driver_id: str
    timestamp: datetime = field(default_factory=utcnow)

    kind = EventKind.ORDER_ASSIGNED


@dataclass(frozen=True)
class OrderUpdated:
    """An order was created or changed status."""
    order: Order
    timestamp: datetime = field(default_factory=utcnow)

    kind = EventKind.ORDER_UPDATED


@dataclass(frozen=True)
class DriverLocationUpdated:
    """A validated driver position sample."""
    driver_id: str
    location: LocationSample
    timestamp: datetime = field(default_factory=utcnow)

    kind = EventKind.DRIVER_LOCATION_UPDATED


DomainEvent = Union[OrderAssigned, OrderUpdated, DriverLocationUpdated]
