"""
Event bus for ledger domain events.

Synchronous in-process pub/sub. Handlers execute immediately in the same
thread as the publisher. Handler errors are logged but never propagate:
the ledger write they react to has already committed.
"""

import logging
from typing import Callable, Dict, List

from core.events import LedgerEvent

logger = logging.getLogger(__name__)


class EventBus:
    """
    In-process event bus for ledger domain events.

    Subscribe by event class name (string), publish by event instance.
    Handlers are called synchronously in subscription order.
    """

    def __init__(self):
        self._subscribers: Dict[str, List[Callable]] = {}

    def subscribe(self, event_type: str, callback: Callable):
        """
        Subscribe to events of a specific type.

        Args:
            event_type: Name of event class to subscribe to (e.g. 'PaymentRecorded')
            callback: Function to call when event is published
        """
        self._subscribers.setdefault(event_type, []).append(callback)

    def subscriber_count(self, event_type: str) -> int:
        """Number of handlers registered for an event type."""
        return len(self._subscribers.get(event_type, []))

    def publish(self, event: LedgerEvent):
        """
        Publish an event to all subscribers of that type.

        Handler errors are logged with the event id and swallowed.
        """
        event_type = event.__class__.__name__

        for callback in self._subscribers.get(event_type, []):
            try:
                callback(event)
            except Exception:
                logger.exception(
                    "Handler %s failed for %s (event_id=%s)",
                    getattr(callback, "__name__", repr(callback)),
                    event_type,
                    event.event_id,
                )
