"""
Notification Service Abstract Base Class

Defines interface for telling customers about their order's progress by
SMS and email. Supports both Mock (development) and Real (production)
implementations.
"""

from abc import ABC, abstractmethod
from dataclasses import asdict, dataclass
from typing import Optional

from delivery_dispatch.domain import Order, OrderStatus


@dataclass
class NotificationResult:
    """Result from sending a notification."""
    success: bool
    message_id: Optional[str] = None
    error_message: Optional[str] = None
    provider: str = "unknown"


@dataclass
class OrderNotice:
    """
    What a customer is told about one order event.

    Plain JSON-compatible fields so it can travel through Celery.
    """
    order_id: str
    status: str
    customer_name: str
    customer_phone: str
    total: float
    customer_email: Optional[str] = None
    driver_id: Optional[str] = None

    @classmethod
    def from_order(cls, order: Order) -> "OrderNotice":
        return cls(
            order_id=order.id,
            status=order.status.value,
            customer_name=order.customer_name,
            customer_phone=order.customer_phone,
            customer_email=order.customer_email,
            total=order.total,
            driver_id=order.driver_id,
        )

    def to_dict(self) -> dict:
        return asdict(self)


STATUS_MESSAGES: dict[str, str] = {
    OrderStatus.PENDING.value: "we received your order #{ref}",
    OrderStatus.ACCEPTED.value: "your order #{ref} was accepted by the store",
    OrderStatus.READY.value: "your order #{ref} is ready and waiting for a driver",
    OrderStatus.ASSIGNED.value: "a driver is on the way to pick up your order #{ref}",
    OrderStatus.IN_DELIVERY.value: "your order #{ref} is out for delivery",
    OrderStatus.DELIVERED.value: "your order #{ref} was delivered. Enjoy!",
    OrderStatus.CANCELLED.value: "your order #{ref} was cancelled",
}


def notice_message(notice: OrderNotice, platform_name: str) -> Optional[str]:
    """Customer-facing text for ``notice``; None when the status is silent."""
    template = STATUS_MESSAGES.get(notice.status)
    if template is None:
        return None
    body = template.format(ref=notice.order_id[:8])
    return f"Hi {notice.customer_name}, {body}\n- {platform_name}"


class BaseNotificationService(ABC):
    """Abstract base class for notification services."""

    @property
    @abstractmethod
    def provider_name(self) -> str:
        """Return the provider name."""
        pass

    @abstractmethod
    async def send_sms(
        self,
        to_phone: str,
        message: str,
    ) -> NotificationResult:
        """Send an SMS message."""
        pass

    @abstractmethod
    async def send_email(
        self,
        to_email: str,
        subject: str,
        body_html: str,
        body_text: Optional[str] = None,
    ) -> NotificationResult:
        """Send an email."""
        pass

    async def send_order_notice(
        self,
        notice: OrderNotice,
        platform_name: str,
    ) -> NotificationResult:
        """
        Tell the customer about an order event via SMS, and email if known.

        Succeeds when at least one channel delivered.
        """
        message = notice_message(notice, platform_name)
        if message is None:
            return NotificationResult(success=True, provider=self.provider_name)

        sms_result = await self.send_sms(notice.customer_phone, message)

        email_result = None
        if notice.customer_email:
            email_result = await self.send_email(
                to_email=notice.customer_email,
                subject=f"Order #{notice.order_id[:8]} - {notice.status.replace('_', ' ').title()}",
                body_html=f"<p>{message}</p>",
                body_text=message,
            )

        return NotificationResult(
            success=sms_result.success or bool(email_result and email_result.success),
            message_id=sms_result.message_id,
            error_message=sms_result.error_message,
            provider=self.provider_name,
        )

    @abstractmethod
    async def health_check(self) -> bool:
        """Check service connectivity."""
        pass
