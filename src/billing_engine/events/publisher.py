"""Event publisher for the audit and notification sink.

The publisher fans every event out to registered sinks and keeps a small
buffer of recent events. Sinks are fire-and-forget: a failing sink is
logged and never affects the billing operation that emitted the event.
"""

from collections import deque
from collections.abc import Callable, Iterable
from typing import Any

import structlog

from billing_engine.events.types import BillingEvent, EventType

logger = structlog.get_logger(__name__)

EventSink = Callable[[BillingEvent], None]


class EventPublisher:
    """Fan-out publisher for billing events.

    Usage:
        publisher = EventPublisher()
        publisher.add_sink(audit_log.append)

        publisher.publish(some_event)
    """

    def __init__(self, buffer_size: int = 100):
        self._buffer_size = buffer_size
        self._event_buffer: deque[BillingEvent] = deque(maxlen=buffer_size)
        self._sinks: list[EventSink] = []
        self._published_count = 0
        self._failed_count = 0

        self._logger = logger.bind(component="event_publisher")

    @property
    def recent_events(self) -> list[BillingEvent]:
        """Get recently published events."""
        return list(self._event_buffer)

    @property
    def sink_count(self) -> int:
        return len(self._sinks)

    def add_sink(self, sink: EventSink) -> None:
        """Register a sink called for every event.

        Args:
            sink: Function that receives each event.
        """
        self._sinks.append(sink)

    def remove_sink(self, sink: EventSink) -> None:
        """Remove a sink."""
        if sink in self._sinks:
            self._sinks.remove(sink)

    def publish(self, event: BillingEvent) -> None:
        """Publish an event to all sinks.

        Args:
            event: The event to publish.
        """
        self._event_buffer.append(event)
        self._published_count += 1

        for sink in list(self._sinks):
            try:
                sink(event)
            except Exception as e:
                self._failed_count += 1
                self._logger.error(
                    "sink_failed",
                    event_type=event.event_type.value,
                    event_id=str(event.event_id),
                    error=str(e),
                )

    def publish_all(self, events: Iterable[BillingEvent]) -> None:
        """Publish events in order."""
        for event in events:
            self.publish(event)

    def events_of_type(self, event_type: EventType) -> list[BillingEvent]:
        """Get buffered events of one type."""
        return [e for e in self._event_buffer if e.event_type == event_type]

    def get_status(self) -> dict[str, Any]:
        """Get publisher status information."""
        return {
            "sink_count": len(self._sinks),
            "buffer_size": len(self._event_buffer),
            "published": self._published_count,
            "sink_failures": self._failed_count,
        }
