"""
Order Store Factory

Provides a single entry point for obtaining the order store.
Automatically selects the in-memory or relational backend based on
ENV_MODE configuration.

Usage:
    from delivery_dispatch.services.orders import get_order_store

    store = get_order_store()
    result = await store.get_order(order_id)
"""

import logging
from functools import lru_cache

from delivery_dispatch.core.config import get_settings
from delivery_dispatch.services.orders.base import BaseOrderStore
from delivery_dispatch.services.orders.memory import InMemoryOrderStore
from delivery_dispatch.services.orders.sql import SqlOrderStore

logger = logging.getLogger(__name__)


@lru_cache()
def get_order_store() -> BaseOrderStore:
    """
    Get the configured order store instance.

    Returns:
        BaseOrderStore: InMemoryOrderStore in development,
        SqlOrderStore otherwise
    """
    settings = get_settings()

    if settings.is_development:
        logger.info("Order Store: Using InMemoryOrderStore (development mode)")
        return InMemoryOrderStore()
    else:
        logger.info(f"Order Store: Using SqlOrderStore ({settings.env_mode.value} mode)")
        return SqlOrderStore()


def reset_order_store() -> None:
    """Clear the cached store instance."""
    get_order_store.cache_clear()
    logger.debug("Order store cache cleared")


__all__ = [
    "get_order_store",
    "reset_order_store",
    "BaseOrderStore",
    "InMemoryOrderStore",
    "SqlOrderStore",
]
