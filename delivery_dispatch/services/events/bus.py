"""
In-Process Event Bus

Synchronous publish/subscribe hub keyed by event kind.

Guarantees:
    - Subscribers of a kind are called in registration order.
    - Delivery iterates over a snapshot of the subscriber list, so
      subscribing or unsubscribing (even from inside a handler) only
      affects later publishes.
    - A handler that raises is logged and skipped; neither the publisher
      nor the remaining handlers see the error.
    - Best effort, at most once per subscriber per publish. No persistence,
      no replay, no ordering across kinds.
"""

import itertools
import logging
import threading
from dataclasses import dataclass, field
from typing import Callable, Optional

from delivery_dispatch.services.events.types import DomainEvent, EventKind

logger = logging.getLogger(__name__)

EventHandler = Callable[[DomainEvent], None]


@dataclass(eq=False)
class Subscription:
    """Token returned by ``subscribe``; cancel it to stop receiving events."""
    kind: EventKind
    handler: EventHandler
    id: int
    _bus: Optional["EventBus"] = field(default=None, repr=False)

    @property
    def active(self) -> bool:
        return self._bus is not None and self._bus.is_subscribed(self)

    def cancel(self) -> None:
        if self._bus is not None:
            self._bus.unsubscribe(self)


class EventBus:
    """
    Process-wide event hub.

    Example:
        >>> bus = EventBus()
        >>> token = bus.subscribe(EventKind.ORDER_UPDATED, print)
        >>> bus.publish(OrderUpdated(order=order))
        >>> token.cancel()
    """

    def __init__(self):
        self._subscribers: dict[EventKind, tuple[Subscription, ...]] = {}
        self._lock = threading.Lock()
        self._ids = itertools.count(1)

    def subscribe(self, kind: EventKind, handler: EventHandler) -> Subscription:
        """Register ``handler`` for events of ``kind``."""
        kind = EventKind(kind)
        with self._lock:
            subscription = Subscription(kind=kind, handler=handler, id=next(self._ids), _bus=self)
            # copy-on-write; in-flight publishes keep their old tuple
            self._subscribers[kind] = self._subscribers.get(kind, ()) + (subscription,)
        logger.debug(f"Subscribed #{subscription.id} to {kind.value}")
        return subscription

    def unsubscribe(self, subscription: Subscription) -> bool:
        """
        Remove a subscription. Safe to call more than once.

        Returns:
            True if the subscription was active
        """
        with self._lock:
            current = self._subscribers.get(subscription.kind, ())
            remaining = tuple(s for s in current if s is not subscription)
            if len(remaining) == len(current):
                return False
            self._subscribers[subscription.kind] = remaining
        logger.debug(f"Unsubscribed #{subscription.id} from {subscription.kind.value}")
        return True

    def is_subscribed(self, subscription: Subscription) -> bool:
        with self._lock:
            return subscription in self._subscribers.get(subscription.kind, ())

    def subscriber_count(self, kind: EventKind) -> int:
        with self._lock:
            return len(self._subscribers.get(EventKind(kind), ()))

    def publish(self, event: DomainEvent) -> int:
        """
        Deliver ``event`` to every current subscriber of its kind.

        Returns:
            Number of handlers that completed without raising
        """
        with self._lock:
            snapshot = self._subscribers.get(event.kind, ())

        delivered = 0
        for subscription in snapshot:
            try:
                subscription.handler(event)
                delivered += 1
            except Exception:
                logger.exception(
                    f"Subscriber #{subscription.id} failed handling {event.kind.value}"
                )

        logger.debug(f"Event {event.kind.value} delivered to {delivered}/{len(snapshot)} subscribers")
        return delivered

    def clear(self) -> None:
        """Drop every subscription."""
        with self._lock:
            self._subscribers.clear()
