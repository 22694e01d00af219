"""Outbound notification events.

The engine only emits these; e-mail and webhook layers subscribe through an
``EventSink`` and do the delivery.
"""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Dict, Optional


class EventType(str, Enum):
    DOCUMENT_SENT = "DocumentSent"
    RECIPIENT_REMINDER_DUE = "RecipientReminderDue"
    DOCUMENT_COMPLETED = "DocumentCompleted"
    DOCUMENT_CANCELLED = "DocumentCancelled"
    DOCUMENT_EXPIRED = "DocumentExpired"


@dataclass(frozen=True)
class NotificationEvent:
    event_type: EventType
    doc_id: str
    occurred_at: datetime
    recipient_id: Optional[str] = None
    context: Dict[str, Any] = field(default_factory=dict)
