"""
In-process event bus for funnel events.

Handlers are side observers: an exception in a handler is logged and never
reaches the publisher.
"""

import logging
from typing import Callable, Dict, List, Type

from funnel.events import FunnelEvent

logger = logging.getLogger(__name__)

Handler = Callable[[FunnelEvent], None]


class EventBus:
    """
    Simple in-process event bus for publishing funnel events.

    Events are delivered to all handlers registered for their exact type,
    then to global handlers.
    """

    def __init__(self):
        self._handlers: Dict[Type[FunnelEvent], List[Handler]] = {}
        self._global_handlers: List[Handler] = []

    def subscribe(self, event_type: Type[FunnelEvent], handler: Handler) -> None:
        """
        Subscribe to events of a specific type.

        Args:
            event_type: Type of event to subscribe to
            handler: Callback function to invoke
        """
        self._handlers.setdefault(event_type, []).append(handler)
        logger.debug(f"Subscribed handler to {event_type.__name__}")

    def subscribe_all(self, handler: Handler) -> None:
        """Subscribe to all events."""
        self._global_handlers.append(handler)

    def unsubscribe(self, event_type: Type[FunnelEvent], handler: Handler) -> bool:
        """
        Unsubscribe a handler from an event type.

        Returns:
            True if handler was removed
        """
        try:
            self._handlers.get(event_type, []).remove(handler)
            return True
        except ValueError:
            return False

    def publish(self, event: FunnelEvent) -> None:
        """Publish an event to its subscribers."""
        handlers = self._handlers.get(type(event), []) + self._global_handlers

        for handler in handlers:
            try:
                handler(event)
            except Exception as e:
                logger.error(f"Error in event handler for {event.event_type.value}: {e}", exc_info=True)

    def clear(self) -> None:
        """Remove all handlers (used in tests)."""
        self._handlers.clear()
        self._global_handlers.clear()
