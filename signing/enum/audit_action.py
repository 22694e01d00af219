"""Audit action identifiers.

The audit log is the record the final certificate is derived from, so these
values are persisted and must stay stable.
"""
from __future__ import annotations

from enum import Enum


class AuditAction(str, Enum):
    """Actions recorded in a document's audit trail."""

    # Lifecycle
    CREATED = "CREATED"
    SENT = "SENT"
    COMPOSED = "COMPOSED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"

    # Recipient activity
    VIEWED = "VIEWED"
    FIELD_FILLED = "FIELD_FILLED"
    RECIPIENT_COMPLETED = "RECIPIENT_COMPLETED"
    DECLINED = "DECLINED"

    # Access
    TOKEN_ROTATED = "TOKEN_ROTATED"
    ACCESS_DENIED = "ACCESS_DENIED"
