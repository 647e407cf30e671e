import asyncio
import os

# Must be set before the application settings are first read
os.environ["ENV_MODE"] = "development"
os.environ["NOTIFICATIONS_ENABLED"] = "false"
os.environ["DEBUG"] = "false"

import pytest

from delivery_dispatch.domain import LineItem, OrderDraft, OrderStatus
from delivery_dispatch.services import DispatchCoordinator, reset_services
from delivery_dispatch.services.events import EventBus, reset_event_bus
from delivery_dispatch.services.idempotency import reset_idempotency_store
from delivery_dispatch.services.notifications import reset_notification_service
from delivery_dispatch.services.orders import InMemoryOrderStore, reset_order_store


READY_PATH = (OrderStatus.ACCEPTED, OrderStatus.PREPARING, OrderStatus.READY)


def make_draft(**overrides) -> OrderDraft:
    values = dict(
        items=(
            LineItem(product_id="prod-001", name="Chicken Shawarma", quantity=2, unit_price=450.0),
            LineItem(product_id="prod-002", name="Mint Tea", quantity=1, unit_price=120.0),
        ),
        delivery_address="12 Rue Didouche Mourad",
        city="Algiers",
        customer_name="Amina B.",
        customer_phone="+213 555 12 34 56",
    )
    values.update(overrides)
    return OrderDraft(**values)


def order_payload(**overrides) -> dict:
    payload = {
        "items": [
            {"productId": "prod-001", "name": "Chicken Shawarma", "quantity": 2, "unitPrice": 450.0},
            {"productId": "prod-002", "name": "Mint Tea", "quantity": 1, "unitPrice": 120.0},
        ],
        "deliveryAddress": "12 Rue Didouche Mourad",
        "city": "Algiers",
        "customerName": "Amina B.",
        "customerPhone": "+213 555 12 34 56",
    }
    payload.update(overrides)
    return payload


def run(coro):
    return asyncio.run(coro)


@pytest.fixture(autouse=True)
def reset_singletons():
    """Every test starts with fresh stores, bus and registries."""
    reset_services()
    reset_order_store()
    reset_event_bus()
    reset_idempotency_store()
    reset_notification_service()
    yield
    reset_services()
    reset_order_store()
    reset_event_bus()
    reset_idempotency_store()
    reset_notification_service()


@pytest.fixture()
def store():
    return InMemoryOrderStore(default_delivery_fee=500.0)


@pytest.fixture()
def bus():
    return EventBus()


@pytest.fixture()
def coordinator(store, bus):
    return DispatchCoordinator(store, bus)


@pytest.fixture()
def recorded(bus):
    """Every event published on ``bus``, in order."""
    from delivery_dispatch.services.events import EventKind

    events = []
    for kind in EventKind:
        bus.subscribe(kind, events.append)
    return events


async def create_ready_order(coordinator: DispatchCoordinator, **overrides):
    result = await coordinator.create_order(make_draft(**overrides))
    for status in READY_PATH:
        result = await coordinator.update_status(result.order.id, status)
        assert result.success, result.message
    return result.order
