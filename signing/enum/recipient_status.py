from __future__ import annotations

from enum import Enum


class RecipientStatus(str, Enum):
    """Per-recipient progress on a document."""

    PENDING = "PENDING"
    VIEWED = "VIEWED"
    COMPLETED = "COMPLETED"
    DECLINED = "DECLINED"

    @property
    def can_act(self) -> bool:
        return self in (RecipientStatus.PENDING, RecipientStatus.VIEWED)
