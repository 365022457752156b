"""Event bus delivering exchange lifecycle events to listeners.

Usage:
    bus = ExchangeEventBus()

    async def on_chunk(event: ResponseArriving) -> None:
        print(event.response_chunk.content, end="")

    bus.subscribe(ResponseArriving, on_chunk)

    await bus.publish(event)
"""

from __future__ import annotations

import asyncio
from collections.abc import Callable
import logging
from typing import Any

from .events import ChatMessageEvent

LOGGER = logging.getLogger(__name__)

Handler = Callable[[Any], Any]


class ExchangeEventBus:
    """Publish/subscribe hub keyed by event type.

    Delivery uses ``isinstance``: a handler subscribed to ``Started`` also
    receives ``ResponseArriving`` events, and a handler subscribed to
    ``ChatMessageEvent`` receives every event. Handlers run in subscription
    order.
    """

    def __init__(self) -> None:
        self._subscribers: list[tuple[type[ChatMessageEvent], Handler]] = []

    def subscribe(self, event_type: type[ChatMessageEvent], handler: Handler) -> None:
        """Subscribe to an event type.

        Args:
            event_type: Event class to listen for (e.g. ``ResponseArriving``)
            handler: Sync or async callable invoked with the event
        """
        self._subscribers.append((event_type, handler))
        LOGGER.debug("Subscribed to event: %s", event_type.__name__)

    def unsubscribe(self, event_type: type[ChatMessageEvent], handler: Handler) -> None:
        """Remove a previously subscribed handler; unknown pairs are ignored."""
        try:
            self._subscribers.remove((event_type, handler))
            LOGGER.debug("Unsubscribed from event: %s", event_type.__name__)
        except ValueError:
            pass

    def handlers_for(self, event: ChatMessageEvent) -> list[Handler]:
        return [
            handler
            for event_type, handler in self._subscribers
            if isinstance(event, event_type)
        ]

    async def publish(self, event: ChatMessageEvent) -> None:
        """Deliver an event to all matching subscribers."""
        handlers = self.handlers_for(event)
        if not handlers:
            LOGGER.debug("No subscribers for event: %s", type(event).__name__)
            return

        for handler in handlers:
            try:
                result = handler(event)
                if asyncio.iscoroutine(result):
                    await result
            except Exception as e:
                LOGGER.error(
                    "Event handler failed for %s: %s", type(event).__name__, e
                )

    def clear(self, event_type: type[ChatMessageEvent] | None = None) -> None:
        """Clear subscribers.

        Args:
            event_type: Specific event type to clear, or None for all
        """
        if event_type is None:
            self._subscribers.clear()
        else:
            self._subscribers = [
                (subscribed, handler)
                for subscribed, handler in self._subscribers
                if subscribed is not event_type
            ]
