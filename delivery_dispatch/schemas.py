"""
Pydantic Schemas for Request/Response Validation

Wire format of the dispatch API and of pushed events. JSON keys are
camelCase (``driverId``, ``deliveryFee``); Python attributes stay
snake_case.
"""

import re
from datetime import datetime
from typing import List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator
from pydantic.alias_generators import to_camel

from delivery_dispatch.domain import LineItem, LocationSample, OrderDraft, OrderStatus
from delivery_dispatch.services.events.types import (
    DomainEvent,
    DriverLocationUpdated,
    OrderAssigned,
    OrderUpdated,
)


class CamelModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        from_attributes=True,
    )

    def to_json(self) -> dict:
        return self.model_dump(by_alias=True, mode="json")


# =============================================================================
# REQUEST SCHEMAS
# =============================================================================

class LineItemCreate(CamelModel):
    """Single item in an order."""
    product_id: str = Field(..., min_length=1, max_length=64, examples=["prod-001"])
    name: Optional[str] = Field(None, max_length=100, examples=["Chicken Shawarma"])
    quantity: int = Field(..., ge=1, le=999, examples=[2])
    unit_price: float = Field(..., ge=0, examples=[450.0])


class OrderCreate(CamelModel):
    """Request schema for creating a new order."""
    items: List[LineItemCreate] = Field(..., min_length=1)
    delivery_fee: Optional[float] = Field(None, ge=0)
    delivery_address: str = Field(..., min_length=3, max_length=255, examples=["12 Rue Didouche Mourad"])
    city: str = Field(..., min_length=2, max_length=50, examples=["Algiers"])
    customer_name: str = Field(..., min_length=2, max_length=100, examples=["Amina B."])
    customer_phone: str = Field(..., min_length=8, max_length=20, examples=["+213 555 12 34 56"])
    customer_email: Optional[str] = Field(None, examples=["amina@example.com"])
    notes: Optional[str] = Field(None, max_length=500)

    @field_validator('customer_phone')
    @classmethod
    def validate_phone(cls, v: str) -> str:
        cleaned = re.sub(r'[^\d]', '', v)
        if len(cleaned) < 8:
            raise ValueError('Phone number must have at least 8 digits')
        return v

    @field_validator('customer_email')
    @classmethod
    def validate_email(cls, v: Optional[str]) -> Optional[str]:
        if v is None or v == "":
            return None
        if not re.match(r'^[\w\.\+-]+@[\w\.-]+\.\w+$', v):
            raise ValueError('Invalid email format')
        return v

    def to_draft(self) -> OrderDraft:
        return OrderDraft(
            items=tuple(
                LineItem(
                    product_id=item.product_id,
                    name=item.name,
                    quantity=item.quantity,
                    unit_price=item.unit_price,
                )
                for item in self.items
            ),
            delivery_address=self.delivery_address,
            city=self.city,
            customer_name=self.customer_name,
            customer_phone=self.customer_phone,
            customer_email=self.customer_email,
            delivery_fee=self.delivery_fee,
            notes=self.notes,
        )


class AcceptDeliveryRequest(CamelModel):
    """Body of POST /orders/{id}/accept."""
    driver_id: Optional[str] = Field(None, examples=["driver-42"])


class StatusUpdateRequest(CamelModel):
    """Body of PATCH /orders/{id}."""
    status: Optional[str] = Field(None, examples=["PREPARING"])
    driver_id: Optional[str] = None


class LocationPayload(CamelModel):
    """One position sample as sent by a driver device."""
    lat: float = Field(..., strict=True, examples=[36.7538])
    lng: float = Field(..., strict=True, examples=[3.0588])
    heading: float = Field(..., strict=True, examples=[180.0])
    speed: float = Field(..., strict=True, examples=[7.5])
    timestamp: Optional[datetime] = None
    order_id: Optional[str] = None

    def to_sample(self) -> LocationSample:
        return LocationSample(
            lat=self.lat,
            lng=self.lng,
            heading=self.heading,
            speed=self.speed,
            timestamp=self.timestamp,
            order_id=self.order_id,
        )


class DriverLocationReport(CamelModel):
    """Body of POST /drivers/location."""
    driver_id: Optional[str] = None
    location: LocationPayload


# =============================================================================
# RESPONSE SCHEMAS
# =============================================================================

class LineItemResponse(CamelModel):
    product_id: str
    name: Optional[str]
    quantity: int
    unit_price: float
    subtotal: float


class OrderResponse(CamelModel):
    """Response schema for a single order."""
    id: str
    items: List[LineItemResponse]
    subtotal: float
    delivery_fee: float
    total: float
    status: OrderStatus
    driver_id: Optional[str]
    delivery_address: str
    city: str
    customer_name: str
    customer_phone: str
    customer_email: Optional[str]
    notes: Optional[str]
    created_at: datetime
    updated_at: datetime
    accepted_at: Optional[datetime]
    preparing_at: Optional[datetime]
    ready_at: Optional[datetime]
    assigned_at: Optional[datetime]
    in_delivery_at: Optional[datetime]
    delivered_at: Optional[datetime]
    cancelled_at: Optional[datetime]


class OrderEnvelope(CamelModel):
    success: bool = True
    order: OrderResponse


class OrderListResponse(CamelModel):
    """Response for listing multiple orders."""
    success: bool = True
    total: int
    orders: List[OrderResponse]


class LocationResponse(CamelModel):
    lat: float
    lng: float
    heading: float
    speed: float
    timestamp: Optional[datetime]
    order_id: Optional[str]


class DriverLocationResponse(CamelModel):
    success: bool = True
    driver_id: str
    location: LocationResponse
    timestamp: datetime


class ErrorResponse(CamelModel):
    """Standard error response."""
    success: bool = False
    error: str
    detail: Optional[str] = None


class HealthResponse(CamelModel):
    """Health check response."""
    status: str
    environment: str
    order_store: str
    redis: str
    event_subscribers: dict[str, int]
    timestamp: datetime


# =============================================================================
# EVENT PAYLOADS
# =============================================================================

def serialize_event(event: DomainEvent) -> dict:
    """
    Wire payload of a domain event: ``{"type": kind, ...payload}``.

    OrderAssigned -> {order, driverId}; OrderUpdated -> {order};
    DriverLocationUpdated -> {driverId, location, timestamp}.
    """
    payload: dict = {"type": event.kind.value}
    if isinstance(event, OrderAssigned):
        payload["order"] = OrderResponse.model_validate(event.order).to_json()
        payload["driverId"] = event.driver_id
    elif isinstance(event, OrderUpdated):
        payload["order"] = OrderResponse.model_validate(event.order).to_json()
    elif isinstance(event, DriverLocationUpdated):
        payload["driverId"] = event.driver_id
        payload["location"] = LocationResponse.model_validate(event.location).to_json()
    else:
        raise TypeError(f"Unknown event type: {type(event).__name__}")
    payload["timestamp"] = event.timestamp.isoformat()
    return payload
