"""
SQLAlchemy Database Models

Relational layout of the order store. Line items are stored as a JSON
string, one row per order; every lifecycle transition has its own
timestamp column.
"""

import json
from datetime import datetime, timezone
from typing import Optional

from sqlalchemy import Column, String, Float, DateTime, Text, Enum, Integer

from delivery_dispatch.database import Base
from delivery_dispatch.domain import LineItem, Order, OrderStatus


def _aware(value: Optional[datetime]) -> Optional[datetime]:
    """SQLite drops tzinfo; stored values are always UTC."""
    if value is not None and value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


class OrderRecord(Base):
    """
    Main order table.

    Tracks the complete lifecycle from creation to delivery/cancellation.
    ``version`` is bumped on every write so concurrent writers can detect
    each other.
    """
    __tablename__ = "orders"

    id = Column(String(32), primary_key=True)

    # =========================================================================
    # ORDER DETAILS
    # =========================================================================
    items = Column(Text, nullable=False)  # JSON string of line items
    notes = Column(Text, nullable=True)

    # =========================================================================
    # PRICING
    # =========================================================================
    subtotal = Column(Float, nullable=False)
    delivery_fee = Column(Float, nullable=False, default=0.0)
    total = Column(Float, nullable=False)

    # =========================================================================
    # CUSTOMER & DELIVERY ADDRESS
    # =========================================================================
    customer_name = Column(String(100), nullable=False)
    customer_phone = Column(String(20), nullable=False, index=True)
    customer_email = Column(String(255), nullable=True)
    delivery_address = Column(String(255), nullable=False)
    city = Column(String(50), nullable=False)

    # =========================================================================
    # DISPATCH
    # =========================================================================
    status = Column(
        Enum(OrderStatus, native_enum=False, length=20),
        default=OrderStatus.PENDING,
        nullable=False,
        index=True
    )
    driver_id = Column(String(64), nullable=True, index=True)
    version = Column(Integer, nullable=False, default=1)

    # =========================================================================
    # TIMESTAMPS
    # =========================================================================
    created_at = Column(DateTime(timezone=True), nullable=False)
    updated_at = Column(DateTime(timezone=True), nullable=False)
    accepted_at = Column(DateTime(timezone=True), nullable=True)
    preparing_at = Column(DateTime(timezone=True), nullable=True)
    ready_at = Column(DateTime(timezone=True), nullable=True)
    assigned_at = Column(DateTime(timezone=True), nullable=True)
    in_delivery_at = Column(DateTime(timezone=True), nullable=True)
    delivered_at = Column(DateTime(timezone=True), nullable=True)
    cancelled_at = Column(DateTime(timezone=True), nullable=True)

    def __repr__(self):
        return f"<OrderRecord #{self.id} - {self.status.value} - driver={self.driver_id}>"

    @classmethod
    def from_domain(cls, order: Order) -> "OrderRecord":
        return cls(
            id=order.id,
            items=json.dumps([item.to_dict() for item in order.items]),
            notes=order.notes,
            subtotal=order.subtotal,
            delivery_fee=order.delivery_fee,
            total=order.total,
            customer_name=order.customer_name,
            customer_phone=order.customer_phone,
            customer_email=order.customer_email,
            delivery_address=order.delivery_address,
            city=order.city,
            status=order.status,
            driver_id=order.driver_id,
            version=1,
            created_at=order.created_at,
            updated_at=order.updated_at,
        )

    def to_domain(self) -> Order:
        return Order(
            id=self.id,
            items=tuple(LineItem.from_dict(i) for i in json.loads(self.items)),
            subtotal=self.subtotal,
            delivery_fee=self.delivery_fee,
            total=self.total,
            status=self.status,
            delivery_address=self.delivery_address,
            city=self.city,
            customer_name=self.customer_name,
            customer_phone=self.customer_phone,
            customer_email=self.customer_email,
            notes=self.notes,
            driver_id=self.driver_id,
            created_at=_aware(self.created_at),
            updated_at=_aware(self.updated_at),
            accepted_at=_aware(self.accepted_at),
            preparing_at=_aware(self.preparing_at),
            ready_at=_aware(self.ready_at),
            assigned_at=_aware(self.assigned_at),
            in_delivery_at=_aware(self.in_delivery_at),
            delivered_at=_aware(self.delivered_at),
            cancelled_at=_aware(self.cancelled_at),
        )
