"""
Notification Service Factory

Returns Mock or Real notification service based on ENV_MODE, and wires
the order notifier onto the event bus.
"""

import logging
from functools import lru_cache

from delivery_dispatch.core.config import get_settings
from delivery_dispatch.services.events.bus import EventBus
from delivery_dispatch.services.notifications.base import (
    BaseNotificationService,
    NotificationResult,
    OrderNotice,
)
from delivery_dispatch.services.notifications.mock import MockNotificationService
from delivery_dispatch.services.notifications.real import RealNotificationService
from delivery_dispatch.services.notifications.subscriber import (
    LoopDelivery,
    OrderNotifier,
    celery_delivery,
)

logger = logging.getLogger(__name__)


@lru_cache()
def get_notification_service() -> BaseNotificationService:
    """Get the configured notification service."""
    settings = get_settings()

    if settings.is_development:
        logger.info("Notification Service: Using MockNotificationService (development mode)")
        return MockNotificationService(failure_rate=0.05)
    else:
        logger.info(f"Notification Service: Using RealNotificationService ({settings.env_mode.value} mode)")
        return RealNotificationService()


def reset_notification_service() -> None:
    """Clear the cached service instance."""
    get_notification_service.cache_clear()


def attach_order_notifier(bus: EventBus) -> OrderNotifier:
    """
    Subscribe customer notifications to ``bus``.

    Real environments deliver through Celery; development sends through the
    mock service on the running event loop.
    """
    settings = get_settings()
    if settings.use_real_services:
        deliver = celery_delivery
    else:
        deliver = LoopDelivery(get_notification_service(), settings.platform_name)
    return OrderNotifier(bus, deliver, platform_name=settings.platform_name)


__all__ = [
    "get_notification_service",
    "reset_notification_service",
    "attach_order_notifier",
    "BaseNotificationService",
    "NotificationResult",
    "OrderNotice",
    "OrderNotifier",
]
