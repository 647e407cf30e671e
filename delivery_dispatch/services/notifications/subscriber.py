"""
Order Notifier

Event-bus subscriber that turns order events into customer notifications.

Bus handlers run synchronously on the publisher's context, so the notifier
never sends anything itself; it hands the notice to a delivery strategy:
    - Celery task (staging/production): durable, retried by the worker
    - Event-loop task (development): fire-and-forget on the running loop
"""

import asyncio
import logging
from typing import Callable

from delivery_dispatch.services.events.bus import EventBus, Subscription
from delivery_dispatch.services.events.types import (
    DomainEvent,
    EventKind,
    OrderAssigned,
    OrderUpdated,
)
from delivery_dispatch.services.notifications.base import (
    BaseNotificationService,
    OrderNotice,
    notice_message,
)

logger = logging.getLogger(__name__)

NoticeDelivery = Callable[[OrderNotice], None]


def celery_delivery(notice: OrderNotice) -> None:
    """Queue the notice on the Celery worker."""
    from delivery_dispatch.tasks import deliver_order_notice

    deliver_order_notice.delay(notice.to_dict())


class LoopDelivery:
    """Send notices as tasks on the currently running event loop."""

    def __init__(self, service: BaseNotificationService, platform_name: str):
        self.service = service
        self.platform_name = platform_name
        self._pending: set[asyncio.Task] = set()

    def __call__(self, notice: OrderNotice) -> None:
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(f"No running event loop; notice for order {notice.order_id} not sent")
            return

        task = loop.create_task(self.service.send_order_notice(notice, self.platform_name))
        self._pending.add(task)
        task.add_done_callback(self._finished)

    def _finished(self, task: asyncio.Task) -> None:
        self._pending.discard(task)
        if task.cancelled():
            return
        error = task.exception()
        if error is not None:
            logger.error(f"Notification task failed: {error}")
        elif not task.result().success:
            logger.warning(f"Notification not delivered: {task.result().error_message}")

    async def drain(self) -> None:
        """Wait for in-flight notices (used at shutdown)."""
        if self._pending:
            await asyncio.gather(*self._pending, return_exceptions=True)


class OrderNotifier:
    """Subscribes to order events and forwards customer notices."""

    def __init__(self, bus: EventBus, deliver: NoticeDelivery, platform_name: str = ""):
        self._deliver = deliver
        self._platform_name = platform_name
        self._subscriptions: list[Subscription] = [
            bus.subscribe(EventKind.ORDER_ASSIGNED, self._on_event),
            bus.subscribe(EventKind.ORDER_UPDATED, self._on_event),
        ]

    def _on_event(self, event: DomainEvent) -> None:
        if not isinstance(event, (OrderAssigned, OrderUpdated)):
            return

        # OrderUpdated(ASSIGNED) never happens; assignment has its own event
        notice = OrderNotice.from_order(event.order)
        if notice_message(notice, self._platform_name) is None:
            return

        logger.debug(f"Notifying customer of order {notice.order_id} ({notice.status})")
        self._deliver(notice)

    def close(self) -> None:
        for subscription in self._subscriptions:
            subscription.cancel()
        self._subscriptions = []

    async def aclose(self) -> None:
        """Unsubscribe and wait for notices still being sent."""
        self.close()
        drain = getattr(self._deliver, "drain", None)
        if drain is not None:
            await drain()
