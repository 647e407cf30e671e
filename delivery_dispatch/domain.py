"""
Order Lifecycle Domain

Plain value types shared by every layer: the order status workflow, the
allowed transition table, immutable order snapshots and the typed result
returned by the order store and the dispatch coordinator.

Order snapshots are frozen dataclasses. Stores never hand out mutable
records; a mutation produces a new snapshot.
"""

import enum
from dataclasses import dataclass, replace
from datetime import datetime, timezone
from typing import Optional


class OrderStatus(str, enum.Enum):
    """Order status workflow."""
    PENDING = "PENDING"
    ACCEPTED = "ACCEPTED"
    PREPARING = "PREPARING"
    READY = "READY"
    ASSIGNED = "ASSIGNED"
    IN_DELIVERY = "IN_DELIVERY"
    DELIVERED = "DELIVERED"
    CANCELLED = "CANCELLED"

    @classmethod
    def parse(cls, value: "str | OrderStatus") -> "OrderStatus":
        """Case-insensitive lookup; raises ValueError for unknown names."""
        if isinstance(value, cls):
            return value
        return cls(str(value).strip().upper())


class ErrorCode(str, enum.Enum):
    """Failure kinds surfaced to callers (and on the wire)."""
    NOT_FOUND = "NotFound"
    INVALID_STATE = "InvalidState"
    INVALID_TRANSITION = "InvalidTransition"
    ALREADY_ASSIGNED = "AlreadyAssigned"
    MISSING_FIELD = "MissingField"
    VALIDATION_ERROR = "ValidationError"


# =============================================================================
# STATE MACHINE
# =============================================================================

ALLOWED_TRANSITIONS: dict[OrderStatus, frozenset[OrderStatus]] = {
    OrderStatus.PENDING: frozenset({OrderStatus.ACCEPTED, OrderStatus.CANCELLED}),
    OrderStatus.ACCEPTED: frozenset({OrderStatus.PREPARING, OrderStatus.CANCELLED}),
    OrderStatus.PREPARING: frozenset({OrderStatus.READY, OrderStatus.CANCELLED}),
    OrderStatus.READY: frozenset({OrderStatus.ASSIGNED, OrderStatus.CANCELLED}),
    OrderStatus.ASSIGNED: frozenset({OrderStatus.IN_DELIVERY, OrderStatus.CANCELLED}),
    OrderStatus.IN_DELIVERY: frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED}),
    OrderStatus.DELIVERED: frozenset(),
    OrderStatus.CANCELLED: frozenset(),
}

TERMINAL_STATUSES = frozenset({OrderStatus.DELIVERED, OrderStatus.CANCELLED})

# driver_id is set if and only if the order is in one of these
DRIVER_STATUSES = frozenset({
    OrderStatus.ASSIGNED,
    OrderStatus.IN_DELIVERY,
    OrderStatus.DELIVERED,
})

STATUS_TIMESTAMP_FIELDS: dict[OrderStatus, str] = {
    OrderStatus.ACCEPTED: "accepted_at",
    OrderStatus.PREPARING: "preparing_at",
    OrderStatus.READY: "ready_at",
    OrderStatus.ASSIGNED: "assigned_at",
    OrderStatus.IN_DELIVERY: "in_delivery_at",
    OrderStatus.DELIVERED: "delivered_at",
    OrderStatus.CANCELLED: "cancelled_at",
}


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def can_transition(current: OrderStatus, target: OrderStatus) -> bool:
    """Whether ``current -> target`` appears in the transition table."""
    return target in ALLOWED_TRANSITIONS[current]


# =============================================================================
# VALUE TYPES
# =============================================================================

@dataclass(frozen=True)
class LineItem:
    """Single product line of an order."""
    product_id: str
    quantity: int
    unit_price: float
    name: Optional[str] = None

    @property
    def subtotal(self) -> float:
        return round(self.quantity * self.unit_price, 2)

    def to_dict(self) -> dict:
        """Convert to dictionary for JSON serialization."""
        return {
            "product_id": self.product_id,
            "name": self.name,
            "quantity": self.quantity,
            "unit_price": self.unit_price,
            "subtotal": self.subtotal,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "LineItem":
        return cls(
            product_id=data["product_id"],
            name=data.get("name"),
            quantity=int(data["quantity"]),
            unit_price=float(data["unit_price"]),
        )


@dataclass(frozen=True)
class OrderDraft:
    """Input for creating an order; totals are always computed."""
    items: tuple[LineItem, ...]
    delivery_address: str
    city: str
    customer_name: str
    customer_phone: str
    customer_email: Optional[str] = None
    delivery_fee: Optional[float] = None
    notes: Optional[str] = None


@dataclass(frozen=True)
class Order:
    """
    Immutable snapshot of an order.

    Attributes:
        id: Opaque unique identifier
        items: Ordered line items
        subtotal: Sum of line item subtotals
        delivery_fee: Delivery charge
        total: subtotal + delivery_fee
        status: Current lifecycle status
        driver_id: Assigned driver (only in DRIVER_STATUSES)
        *_at: Timestamp of each transition actually taken
    """
    id: str
    items: tuple[LineItem, ...]
    subtotal: float
    delivery_fee: float
    total: float
    status: OrderStatus
    delivery_address: str
    city: str
    customer_name: str
    customer_phone: str
    created_at: datetime
    updated_at: datetime
    customer_email: Optional[str] = None
    notes: Optional[str] = None
    driver_id: Optional[str] = None
    accepted_at: Optional[datetime] = None
    preparing_at: Optional[datetime] = None
    ready_at: Optional[datetime] = None
    assigned_at: Optional[datetime] = None
    in_delivery_at: Optional[datetime] = None
    delivered_at: Optional[datetime] = None
    cancelled_at: Optional[datetime] = None

    def latest_timestamp(self) -> datetime:
        """Most recent lifecycle timestamp recorded on this order."""
        stamps = [self.created_at, self.updated_at]
        stamps.extend(
            getattr(self, name) for name in STATUS_TIMESTAMP_FIELDS.values()
        )
        return max(s for s in stamps if s is not None)


def build_order(order_id: str, draft: OrderDraft, default_fee: float, now: datetime) -> Order:
    """Create the PENDING snapshot for ``draft``."""
    subtotal = round(sum(item.subtotal for item in draft.items), 2)
    fee = default_fee if draft.delivery_fee is None else draft.delivery_fee
    fee = round(fee, 2)
    return Order(
        id=order_id,
        items=tuple(draft.items),
        subtotal=subtotal,
        delivery_fee=fee,
        total=round(subtotal + fee, 2),
        status=OrderStatus.PENDING,
        delivery_address=draft.delivery_address,
        city=draft.city,
        customer_name=draft.customer_name,
        customer_phone=draft.customer_phone,
        customer_email=draft.customer_email,
        notes=draft.notes,
        created_at=now,
        updated_at=now,
    )


def validate_draft(draft: OrderDraft) -> Optional[str]:
    """Return a message describing what is wrong with ``draft``, or None."""
    if not draft.items:
        return "order must contain at least one item"
    for item in draft.items:
        if not item.product_id:
            return "every item needs a product reference"
        if item.quantity < 1:
            return f"quantity for {item.product_id} must be at least 1"
        if item.unit_price < 0:
            return f"unit price for {item.product_id} must not be negative"
    if draft.delivery_fee is not None and draft.delivery_fee < 0:
        return "delivery fee must not be negative"
    return None


def check_transition(
    order: Order,
    target: OrderStatus,
    driver_id: Optional[str] = None,
) -> Optional[str]:
    """
    Validate a direct status transition.

    ASSIGNED is never reachable here; it is granted only by the store's
    compare-and-set assignment.

    Returns:
        None when allowed, otherwise a human-readable reason
    """
    if target == OrderStatus.ASSIGNED:
        return "orders are assigned only by a driver accepting the delivery"
    if not can_transition(order.status, target):
        return f"cannot change order from {order.status.value} to {target.value}"
    if driver_id and order.driver_id and driver_id != order.driver_id:
        return "order is assigned to another driver"
    return None


def transition_changes(order: Order, target: OrderStatus, now: datetime) -> dict:
    """
    Field changes for ``order -> target``; caller has already validated it.

    The transition timestamp never precedes earlier lifecycle timestamps,
    even if the wall clock stepped backwards.
    """
    stamp = max(now, order.latest_timestamp())
    changes = {
        "status": target,
        "updated_at": stamp,
        STATUS_TIMESTAMP_FIELDS[target]: stamp,
    }
    if target not in DRIVER_STATUSES:
        changes["driver_id"] = None
    return changes


def assignment_changes(order: Order, driver_id: str, now: datetime) -> dict:
    stamp = max(now, order.latest_timestamp())
    return {
        "status": OrderStatus.ASSIGNED,
        "driver_id": driver_id,
        "assigned_at": stamp,
        "updated_at": stamp,
    }


def apply_changes(order: Order, changes: dict) -> Order:
    return replace(order, **changes)


# =============================================================================
# RESULTS
# =============================================================================

@dataclass
class OrderResult:
    """
    Typed outcome of an order store or dispatch operation.

    Failures are values, not exceptions, so the API layer maps each
    error code to a response code deterministically.
    """
    success: bool
    order: Optional[Order] = None
    error: Optional[ErrorCode] = None
    message: Optional[str] = None

    @classmethod
    def ok(cls, order: Order) -> "OrderResult":
        return cls(success=True, order=order)

    @classmethod
    def fail(cls, error: ErrorCode, message: str, order: Optional[Order] = None) -> "OrderResult":
        return cls(success=False, order=order, error=error, message=message)


@dataclass(frozen=True)
class LocationSample:
    """One position tick from a driver device."""
    lat: float
    lng: float
    heading: float = 0.0
    speed: float = 0.0
    timestamp: Optional[datetime] = None
    order_id: Optional[str] = None
