"""Document status enumeration."""
from __future__ import annotations

from enum import Enum


class DocumentStatus(str, Enum):
    """Document lifecycle statuses."""

    DRAFT = "DRAFT"
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    CANCELLED = "CANCELLED"
    EXPIRED = "EXPIRED"

    @property
    def is_terminal(self) -> bool:
        return self in (DocumentStatus.COMPLETED, DocumentStatus.CANCELLED, DocumentStatus.EXPIRED)
