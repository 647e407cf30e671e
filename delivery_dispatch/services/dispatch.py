"""
Dispatch Coordinator

Thin orchestration over the order store: validates requests, asks the
store for the mutation and publishes the matching domain event on
success. Holds no locks and no state of its own; the at-most-one-driver
guarantee comes from the store's compare-and-set.

Every operation returns an OrderResult; nothing here raises for an
expected failure.
"""

import logging
from typing import Optional, Union

from delivery_dispatch.domain import (
    ErrorCode,
    OrderDraft,
    OrderResult,
    OrderStatus,
    validate_draft,
)
from delivery_dispatch.services.events.bus import EventBus
from delivery_dispatch.services.events.types import OrderAssigned, OrderUpdated
from delivery_dispatch.services.orders.base import (
    ALREADY_TAKEN_MESSAGE,
    NOT_READY_MESSAGE,
    BaseOrderStore,
)

logger = logging.getLogger(__name__)

INVALID_TRANSITION_MESSAGE = "Cannot change order to that status from its current state"


class DispatchCoordinator:
    """
    Order lifecycle entry point used by the API layer.

    Example:
        >>> coordinator = DispatchCoordinator(store, bus)
        >>> result = await coordinator.accept_delivery(order_id, "driver-1")
        >>> if not result.success:
        ...     print(result.error, result.message)
    """

    def __init__(self, store: BaseOrderStore, bus: EventBus):
        self.store = store
        self.bus = bus

    async def create_order(self, draft: OrderDraft) -> OrderResult:
        problem = validate_draft(draft)
        if problem is not None:
            return OrderResult.fail(ErrorCode.VALIDATION_ERROR, problem)

        order = await self.store.create_order(draft)
        self.bus.publish(OrderUpdated(order=order))
        return OrderResult.ok(order)

    async def get_order(self, order_id: str) -> OrderResult:
        return await self.store.get_order(order_id)

    async def accept_delivery(self, order_id: str, driver_id: Optional[str]) -> OrderResult:
        """
        Assign ``driver_id`` to a READY order.

        The pre-checks give callers a precise error for the common cases;
        the store's atomic assignment is what actually decides a race, so
        a driver that passes the checks can still get ALREADY_ASSIGNED.
        """
        if not driver_id:
            return OrderResult.fail(ErrorCode.MISSING_FIELD, "driverId is required")

        current = await self.store.get_order(order_id)
        if not current.success:
            return current

        order = current.order
        if order.driver_id is not None:
            return OrderResult.fail(ErrorCode.ALREADY_ASSIGNED, ALREADY_TAKEN_MESSAGE, order=order)
        if order.status != OrderStatus.READY:
            return OrderResult.fail(ErrorCode.INVALID_STATE, NOT_READY_MESSAGE, order=order)

        result = await self.store.assign_driver(order_id, driver_id)
        if not result.success:
            logger.info(f"Driver {driver_id} lost assignment of order {order_id}: {result.error.value}")
            return result

        logger.info(f"Driver {driver_id} accepted delivery of order {order_id}")
        self.bus.publish(OrderAssigned(order=result.order, driver_id=driver_id))
        return result

    async def update_status(
        self,
        order_id: str,
        new_status: Union[OrderStatus, str, None],
        driver_id: Optional[str] = None,
    ) -> OrderResult:
        """Move an order along the state machine and announce it."""
        if new_status is None or new_status == "":
            return OrderResult.fail(ErrorCode.MISSING_FIELD, "status is required")

        try:
            target = OrderStatus.parse(new_status)
        except ValueError:
            valid = [s.value for s in OrderStatus]
            return OrderResult.fail(
                ErrorCode.VALIDATION_ERROR,
                f"Invalid status {new_status!r}. Options: {valid}",
            )

        result = await self.store.transition(order_id, target, driver_id)
        if not result.success:
            if result.error == ErrorCode.INVALID_TRANSITION:
                logger.info(f"Rejected transition of order {order_id} to {target.value}: {result.message}")
                return OrderResult.fail(
                    ErrorCode.INVALID_TRANSITION,
                    f"{INVALID_TRANSITION_MESSAGE} ({result.message})",
                    order=result.order,
                )
            return result

        self.bus.publish(OrderUpdated(order=result.order))
        return result
