"""Notification event sinks.

Delivery (e-mail, webhooks) is outside the engine; it hands finished events
to an ``EventSink`` after the state change is committed.
"""
from __future__ import annotations

import logging
import threading
from abc import ABC, abstractmethod
from typing import List, Optional

from signing.models.events import EventType, NotificationEvent

logger = logging.getLogger(__name__)


class EventSink(ABC):
    @abstractmethod
    def publish(self, event: NotificationEvent) -> None:
        raise NotImplementedError


class LoggingEventSink(EventSink):
    """Default sink: records events in the application log only."""

    def publish(self, event: NotificationEvent) -> None:
        logger.info(
            "event %s doc=%s recipient=%s context=%s",
            event.event_type.value, event.doc_id, event.recipient_id, event.context,
        )


class InMemoryEventSink(EventSink):
    """Collects events; used by tests and polling integrations."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._events: List[NotificationEvent] = []

    def publish(self, event: NotificationEvent) -> None:
        with self._lock:
            self._events.append(event)

    def events(self, event_type: Optional[EventType] = None) -> List[NotificationEvent]:
        with self._lock:
            if event_type is None:
                return list(self._events)
            return [e for e in self._events if e.event_type == event_type]
