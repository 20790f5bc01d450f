"""In-process event bus for engine notifications.

Observers subscribe to an event class (``StatusUpdated``, ``PurchaseCompleted``
or ``EngineEvent`` for everything) and receive events synchronously on the
publishing thread. A failing handler is logged and never affects the
publisher or other handlers.
"""

import itertools
from threading import RLock
from typing import Callable, Dict, List, Tuple, Type, TypeVar

from entitlement_sync.logging_config import get_logger
from entitlement_sync.models.events import EngineEvent

logger = get_logger(__name__)

E = TypeVar("E", bound=EngineEvent)
Handler = Callable[[E], None]


class EventSubscription:
    """Handle returned by ``EventBus.subscribe``."""

    def __init__(self, bus: "EventBus", subscription_id: int, event_type: Type[EngineEvent]):
        self._bus = bus
        self.subscription_id = subscription_id
        self.event_type = event_type

    def unsubscribe(self) -> None:
        self._bus.unsubscribe(self)


class EventBus:
    """Typed publish/subscribe channel. Thread-safe."""

    def __init__(self):
        self._lock = RLock()
        self._ids = itertools.count(1)
        self._handlers: Dict[Type[EngineEvent], List[Tuple[int, Callable]]] = {}

    def subscribe(self, event_type: Type[E], handler: Handler) -> EventSubscription:
        """Register a handler for an event class and its subclasses."""
        with self._lock:
            subscription_id = next(self._ids)
            self._handlers.setdefault(event_type, []).append((subscription_id, handler))
        logger.debug(
            "event_handler_subscribed",
            event_type=event_type.__name__,
            subscription_id=subscription_id,
        )
        return EventSubscription(self, subscription_id, event_type)

    def unsubscribe(self, subscription: EventSubscription) -> None:
        """Remove a handler; unknown or already removed subscriptions are ignored."""
        with self._lock:
            handlers = self._handlers.get(subscription.event_type, [])
            self._handlers[subscription.event_type] = [
                (sid, h) for sid, h in handlers if sid != subscription.subscription_id
            ]

    def publish(self, event: EngineEvent) -> int:
        """Deliver an event to all matching handlers.

        Returns:
            Number of handlers that ran without raising
        """
        with self._lock:
            matching = [
                handler
                for event_type, handlers in self._handlers.items()
                if isinstance(event, event_type)
                for _, handler in handlers
            ]

        delivered = 0
        for handler in matching:
            try:
                handler(event)
                delivered += 1
            except Exception as e:
                logger.error(
                    "event_handler_failed",
                    event_type=type(event).__name__,
                    handler=getattr(handler, "__qualname__", repr(handler)),
                    error=str(e),
                    error_type=type(e).__name__,
                    exc_info=True,
                )
        return delivered

    def handler_count(self) -> int:
        with self._lock:
            return sum(len(h) for h in self._handlers.values())
