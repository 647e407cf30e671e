"""
Celery Tasks
Background delivery of customer notifications raised by order events.
"""

import asyncio
import logging
import time

from delivery_dispatch.celery_worker import celery_app
from delivery_dispatch.core.config import get_settings
from delivery_dispatch.services.notifications import get_notification_service
from delivery_dispatch.services.notifications.base import OrderNotice

logger = logging.getLogger(__name__)


class NotificationDeliveryError(Exception):
    """No channel accepted the notification; the task is retried."""


@celery_app.task(
    bind=True,
    max_retries=3,
    default_retry_delay=5,
    autoretry_for=(NotificationDeliveryError,),
    retry_backoff=True
)
def deliver_order_notice(self, notice_data: dict) -> dict:
    """
    Send one order notice through the notification service.

    Args:
        notice_data: OrderNotice fields

    Returns:
        dict: Result of the delivery
    """
    task_id = self.request.id
    notice = OrderNotice(**notice_data)
    start_time = time.time()

    service = get_notification_service()
    result = asyncio.run(service.send_order_notice(notice, get_settings().platform_name))

    elapsed = round(time.time() - start_time, 3)
    if not result.success:
        logger.warning(
            f"Task {task_id}: notice for order {notice.order_id} failed after {elapsed}s "
            f"- {result.error_message}"
        )
        raise NotificationDeliveryError(result.error_message or "delivery failed")

    logger.info(f"Task {task_id}: notice for order {notice.order_id} ({notice.status}) sent in {elapsed}s")
    return {
        'success': True,
        'order_id': notice.order_id,
        'status': notice.status,
        'message_id': result.message_id,
        'task_id': task_id,
        'processing_time_seconds': elapsed,
    }

