"""
In-Memory Order Store

Process-local order table used in development mode and by the test-suite.
Every read-check-write sequence runs under one lock, so each operation is
atomic with respect to concurrent callers whether they are coroutines on
one event loop or threads.
"""

import logging
import threading
import uuid
from typing import Optional

from delivery_dispatch.core.config import get_settings
from delivery_dispatch.domain import (
    ErrorCode,
    Order,
    OrderDraft,
    OrderResult,
    OrderStatus,
    apply_changes,
    assignment_changes,
    build_order,
    check_transition,
    transition_changes,
    utcnow,
)
from delivery_dispatch.services.orders.base import (
    BaseOrderStore,
    explain_failed_assignment,
    not_found,
)

logger = logging.getLogger(__name__)


class InMemoryOrderStore(BaseOrderStore):
    """Lock-guarded order table indexed by order id."""

    def __init__(self, default_delivery_fee: Optional[float] = None):
        if default_delivery_fee is None:
            default_delivery_fee = get_settings().delivery_fee
        self._default_fee = default_delivery_fee
        self._orders: dict[str, Order] = {}
        self._lock = threading.Lock()
        logger.info("InMemoryOrderStore initialized")

    @property
    def backend_name(self) -> str:
        return "memory"

    async def create_order(self, draft: OrderDraft) -> Order:
        order = build_order(uuid.uuid4().hex, draft, self._default_fee, utcnow())
        with self._lock:
            self._orders[order.id] = order
        logger.info(f"Order {order.id} created (total={order.total:.2f})")
        return order

    async def get_order(self, order_id: str) -> OrderResult:
        with self._lock:
            order = self._orders.get(order_id)
        if order is None:
            return not_found(order_id)
        return OrderResult.ok(order)

    async def list_orders(
        self,
        status: Optional[OrderStatus] = None,
        limit: int = 50,
        offset: int = 0,
    ) -> tuple[int, list[Order]]:
        with self._lock:
            orders = list(self._orders.values())
        if status is not None:
            orders = [o for o in orders if o.status == status]
        orders.sort(key=lambda o: o.created_at, reverse=True)
        return len(orders), orders[offset:offset + limit]

    async def transition(
        self,
        order_id: str,
        target: OrderStatus,
        driver_id: Optional[str] = None,
    ) -> OrderResult:
        with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                return not_found(order_id)

            reason = check_transition(order, target, driver_id)
            if reason is not None:
                return OrderResult.fail(ErrorCode.INVALID_TRANSITION, reason, order=order)

            updated = apply_changes(order, transition_changes(order, target, utcnow()))
            self._orders[order_id] = updated

        logger.info(f"Order {order_id}: {order.status.value} -> {target.value}")
        return OrderResult.ok(updated)

    async def assign_driver(self, order_id: str, driver_id: str) -> OrderResult:
        with self._lock:
            order = self._orders.get(order_id)
            if order is None:
                return not_found(order_id)

            # compare-and-set: READY and no driver, evaluated and applied under one lock
            if order.status != OrderStatus.READY or order.driver_id is not None:
                return explain_failed_assignment(order, driver_id)

            updated = apply_changes(order, assignment_changes(order, driver_id, utcnow()))
            self._orders[order_id] = updated

        logger.info(f"Order {order_id} assigned to driver {driver_id}")
        return OrderResult.ok(updated)
