"""Read models handed to issuers and recipients."""
from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import List, Optional

from signing.enum.document_status import DocumentStatus
from signing.enum.job_status import JobStatus
from signing.enum.recipient_status import RecipientStatus
from signing.models.field_definition import FieldDefinition


@dataclass(frozen=True)
class RecipientSummary:
    recipient_id: str
    contact: str
    display_name: Optional[str]
    signing_order: int
    status: RecipientStatus
    token_expires_at: Optional[datetime]
    fields_total: int
    fields_filled: int


@dataclass(frozen=True)
class JobSummary:
    status: JobStatus
    attempts: int
    max_attempts: int
    last_error: Optional[str]
    next_attempt_at: Optional[datetime]


@dataclass(frozen=True)
class StatusReport:
    doc_id: str
    title: str
    status: DocumentStatus
    created_at: datetime
    updated_at: datetime
    expires_at: Optional[datetime]
    final_ref: Optional[str]
    final_fingerprint: Optional[str]
    cancel_reason: Optional[str]
    recipients: List[RecipientSummary] = field(default_factory=list)
    job: Optional[JobSummary] = None


@dataclass(frozen=True)
class RecipientView:
    """What a recipient sees after opening their link."""
    doc_id: str
    title: str
    page_count: int
    recipient_id: str
    recipient_status: RecipientStatus
    may_act: bool
    pending_fields: List[FieldDefinition] = field(default_factory=list)
    filled_field_ids: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class SubmissionResult:
    field_id: str
    recipient_ready: bool
    missing_field_ids: List[str] = field(default_factory=list)


@dataclass(frozen=True)
class VerificationReport:
    """Outcome of re-deriving a completed document's certificate."""
    doc_id: str
    valid: bool
    fingerprint: Optional[str] = None
    problems: List[str] = field(default_factory=list)
