"""
Order Store Abstract Base Class

Defines the interface contract of the order authority. The store is the
only component permitted to mutate order state; everything else reads
snapshots or asks it for transitions.

Design Pattern: Strategy Pattern
    - InMemoryOrderStore: lock-guarded table for development and tests
    - SqlOrderStore: relational backend with conditional updates

Both implementations guarantee the same concurrency contract:
``assign_driver`` is one indivisible compare-and-set, and ``transition``
never overwrites a concurrent transition it did not observe.
"""

from abc import ABC, abstractmethod
from typing import Optional

from delivery_dispatch.domain import (
    ErrorCode,
    Order,
    OrderDraft,
    OrderResult,
    OrderStatus,
)


ALREADY_TAKEN_MESSAGE = "Order already taken by another driver"
NOT_READY_MESSAGE = "Order is not ready for pickup"


def not_found(order_id: str) -> OrderResult:
    return OrderResult.fail(ErrorCode.NOT_FOUND, f"Order {order_id} not found")


def explain_failed_assignment(order: Order, driver_id: str) -> OrderResult:
    """
    Classify why a compare-and-set assignment did not apply.

    Checked in the same order the coordinator validates: an order already
    holding a driver reports AlreadyAssigned even though it is no longer
    READY, so the losing side of an accept race always sees the race.
    """
    if order.driver_id is not None:
        if order.driver_id == driver_id:
            message = "Order already accepted by this driver"
        else:
            message = ALREADY_TAKEN_MESSAGE
        return OrderResult.fail(ErrorCode.ALREADY_ASSIGNED, message, order=order)
    return OrderResult.fail(ErrorCode.INVALID_STATE, NOT_READY_MESSAGE, order=order)


class BaseOrderStore(ABC):
    """
    Abstract base class for order stores.

    Example:
        >>> store = get_order_store()
        >>> created = await store.create_order(draft)
        >>> result = await store.transition(created.id, OrderStatus.ACCEPTED)
        >>> if result.success:
        ...     print(result.order.accepted_at)
    """

    @property
    @abstractmethod
    def backend_name(self) -> str:
        """Return the backend name (e.g., "memory", "sql")."""
        pass

    @abstractmethod
    async def create_order(self, draft: OrderDraft) -> Order:
        """Store a new PENDING order built from ``draft``."""
        pass

    @abstractmethod
    async def get_order(self, order_id: str) -> OrderResult:
        """Return the order or a NOT_FOUND result."""
        pass

    @abstractmethod
    async def list_orders(
        self,
        status: Optional[OrderStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[int, list[Order]]:
        """
        Page through orders, newest first.

        Returns:
            (total matching, page of orders)
        """
        pass

    @abstractmethod
    async def transition(
        self,
        order_id: str,
        target: OrderStatus,
        driver_id: Optional[str] = None,
    ) -> OrderResult:
        """
        Apply a state-machine transition.

        Sets the transition timestamp and clears the driver when leaving
        the driver-holding statuses.

        Returns:
            OrderResult with the new snapshot, NOT_FOUND or INVALID_TRANSITION
        """
        pass

    @abstractmethod
    async def assign_driver(self, order_id: str, driver_id: str) -> OrderResult:
        """
        Atomically move a READY, driverless order to ASSIGNED.

        Of any number of concurrent calls for the same order exactly one
        succeeds; the rest get ALREADY_ASSIGNED.

        Returns:
            OrderResult with the new snapshot, NOT_FOUND, ALREADY_ASSIGNED
            or INVALID_STATE (not ready)
        """
        pass

    async def health_check(self) -> bool:
        """Check backend connectivity."""
        return True

    async def close(self) -> None:
        """Release backend resources."""
        return None
