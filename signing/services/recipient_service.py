"""Recipient-facing API. Every call is gated by the access token."""
from __future__ import annotations

import logging
from typing import Any, Optional

from signing.logic.job_runner import CompositionQueue
from signing.logic.workflow_service import WorkflowService
from signing.models.document import Document
from signing.models.recipient import RecipientEntry
from signing.models.status_report import RecipientView, SubmissionResult
from signing.repository.signing_repository import SigningRepository

logger = logging.getLogger(__name__)


class RecipientService:
    """
    Token failures raise a ``TokenError`` subclass whose ``public_message`` is
    the same generic text for every cause; show that, not ``str(exc)``.
    """

    def __init__(self, *, repository: SigningRepository, workflow: WorkflowService,
                 queue: CompositionQueue) -> None:
        self._repo = repository
        self._workflow = workflow
        self._queue = queue

    def get_document_view(self, token: str, ip_address: Optional[str] = None) -> RecipientView:
        ctx = self._workflow.mark_viewed(token, ip_address)
        rid = ctx.recipient.recipient_id
        own = [f for f in self._repo.list_fields(ctx.doc.doc_id) if f.recipient_id == rid]
        assignments = self._repo.list_assignments(ctx.doc.doc_id)
        filled = [f.field_id for f in own if f.field_id in assignments]
        may_act = (
            ctx.recipient.status.can_act
            and self._workflow.engine.is_turn_of(ctx.recipient, ctx.recipients)
            and not self._queue.is_in_flight(ctx.doc.doc_id)
        )
        return RecipientView(
            doc_id=ctx.doc.doc_id,
            title=ctx.doc.title,
            page_count=ctx.doc.page_count,
            recipient_id=rid,
            recipient_status=ctx.recipient.status,
            may_act=may_act,
            pending_fields=[f for f in own if f.field_id not in assignments],
            filled_field_ids=filled,
        )

    def submit_field(self, token: str, field_id: str, value: Any,
                     ip_address: Optional[str] = None) -> SubmissionResult:
        return self._workflow.record_field_value(token, field_id, value, ip_address)

    def complete_signing(self, token: str, ip_address: Optional[str] = None) -> RecipientEntry:
        return self._workflow.complete_signing(token, ip_address)

    def decline(self, token: str, reason: str, ip_address: Optional[str] = None) -> Document:
        return self._workflow.decline(token, reason, ip_address)
