"""
Document domain model for the signing feature.

Keeps the data layer independent from storage details.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from signing.enum.document_status import DocumentStatus


@dataclass
class Document:
    doc_id: str
    title: str
    status: DocumentStatus
    issuer_id: str
    source_ref: str
    page_count: int
    created_at: datetime
    updated_at: datetime
    allow_parallel: bool = True
    sent_at: Optional[datetime] = None
    expires_at: Optional[datetime] = None
    final_ref: Optional[str] = None
    final_fingerprint: Optional[str] = None
    certificate_ref: Optional[str] = None
    cancel_reason: Optional[str] = None

    @property
    def is_editable(self) -> bool:
        return self.status == DocumentStatus.DRAFT

    def is_past_deadline(self, now: datetime) -> bool:
        return self.expires_at is not None and now >= self.expires_at
