from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from signing.enum.recipient_status import RecipientStatus


@dataclass
class RecipientEntry:
    """
    A person who must act on a document. Identified by a scoped access token,
    never by an account. Only the SHA-256 of the token is kept.
    """
    recipient_id: str
    doc_id: str
    contact: str
    signing_order: int
    status: RecipientStatus = RecipientStatus.PENDING
    display_name: Optional[str] = None
    token_hash: Optional[str] = None
    token_expires_at: Optional[datetime] = None
    token_revoked: bool = False
    created_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    decline_reason: Optional[str] = None
    last_reminded_at: Optional[datetime] = None

    @property
    def label(self) -> str:
        return self.display_name or self.contact
