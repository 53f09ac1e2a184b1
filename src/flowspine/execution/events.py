"""
Instrumentation events for flow execution.

Manifesto:
    Dashboards, metrics exporters and alerting should not need hooks
    inside the executor. The executor publishes one event per lifecycle
    step; anything interested subscribes by pattern.

Events are delivered synchronously, in the publishing thread, to every
matching handler. A handler that raises is logged and skipped; the run
and the remaining handlers are unaffected.

Event types::

    flow.started      flow.completed    flow.failed
    flow.retried      flow.discarded    flow.cancelled
    batch.processed   run.enqueued

Example::

    bus = EventBus()
    bus.subscribe("flow.*", lambda event: print(event.event_type, event.payload))
    bus.publish(Event(event_type=FLOW_STARTED, source="executor"))

Tags:
    flowspine, events, instrumentation, observability
"""

from __future__ import annotations

import threading
import uuid
from collections.abc import Callable
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any

from flowspine.core.logging import get_logger

from .models import utcnow

logger = get_logger(__name__)

FLOW_STARTED = "flow.started"
FLOW_COMPLETED = "flow.completed"
FLOW_FAILED = "flow.failed"
FLOW_RETRIED = "flow.retried"
FLOW_DISCARDED = "flow.discarded"
FLOW_CANCELLED = "flow.cancelled"
BATCH_PROCESSED = "batch.processed"
RUN_ENQUEUED = "run.enqueued"


@dataclass
class Event:
    """Immutable event payload.

    Attributes:
        event_type: Dot-separated type (e.g., ``flow.started``)
        source: Origin component (``executor``, ``scheduler``)
        payload: Event-specific data
        timestamp: When the event occurred (UTC)
        correlation_id: Run id the event belongs to, when there is one
        event_id: Unique event identifier
    """

    event_type: str
    source: str
    payload: dict[str, Any] = field(default_factory=dict)
    timestamp: datetime = field(default_factory=utcnow)
    correlation_id: str | None = None
    event_id: str = field(default_factory=lambda: str(uuid.uuid4()))

    def matches(self, pattern: str) -> bool:
        """Check if event type matches a pattern (supports wildcards).

        Examples:
            - ``flow.*`` matches ``flow.started``, ``flow.completed``
            - ``*`` matches everything
            - ``batch.processed`` matches exactly ``batch.processed``
        """
        if pattern == "*":
            return True
        if pattern.endswith(".*"):
            prefix = pattern[:-2]
            return self.event_type.startswith(prefix + ".")
        return self.event_type == pattern


EventHandler = Callable[[Event], Any]


@dataclass
class Subscription:
    """Internal subscription record."""

    id: str
    pattern: str
    handler: EventHandler


class EventBus:
    """In-process, synchronous event bus."""

    def __init__(self) -> None:
        self._subscriptions: dict[str, Subscription] = {}
        self._lock = threading.Lock()

    def publish(self, event: Event) -> int:
        """Deliver ``event`` to every matching handler.

        Returns the number of handlers that completed without raising.
        """
        with self._lock:
            targets = [s for s in self._subscriptions.values() if event.matches(s.pattern)]

        delivered = 0
        for sub in targets:
            try:
                sub.handler(event)
                delivered += 1
            except Exception as e:
                logger.warning(
                    "event_handler_error",
                    subscription_id=sub.id,
                    event_type=event.event_type,
                    error=str(e),
                )
        return delivered

    def emit(
        self,
        event_type: str,
        source: str,
        correlation_id: str | None = None,
        **payload: Any,
    ) -> Event:
        """Build and publish an event in one call."""
        event = Event(
            event_type=event_type,
            source=source,
            payload=payload,
            correlation_id=correlation_id,
        )
        self.publish(event)
        return event

    def subscribe(self, pattern: str, handler: EventHandler) -> str:
        """Subscribe to events matching a pattern (``*`` and ``type.*`` supported).

        Returns:
            Subscription ID
        """
        sub_id = f"sub_{uuid.uuid4().hex[:12]}"
        with self._lock:
            self._subscriptions[sub_id] = Subscription(id=sub_id, pattern=pattern, handler=handler)
        return sub_id

    def unsubscribe(self, subscription_id: str) -> bool:
        with self._lock:
            return self._subscriptions.pop(subscription_id, None) is not None

    def clear(self) -> None:
        with self._lock:
            self._subscriptions.clear()

    @property
    def subscription_count(self) -> int:
        return len(self._subscriptions)


__all__ = [
    "FLOW_STARTED",
    "FLOW_COMPLETED",
    "FLOW_FAILED",
    "FLOW_RETRIED",
    "FLOW_DISCARDED",
    "FLOW_CANCELLED",
    "BATCH_PROCESSED",
    "RUN_ENQUEUED",
    "Event",
    "EventHandler",
    "Subscription",
    "EventBus",
]
