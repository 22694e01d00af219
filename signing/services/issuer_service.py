"""Issuer-facing API of the signing engine."""
from __future__ import annotations

import logging
from datetime import datetime
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence, Union

from signature.logic.audit_certificate import CertificateRecord
from signature.logic.pdf_composer import UnreadablePdf, inspect_pdf
from signing.adapters.filesystem_storage_adapter import fingerprint
from signing.adapters.storage_adapter import ArtifactStore
from signing.enum.document_status import DocumentStatus
from signing.exceptions.errors import (
    DocumentNotCompleted,
    DocumentNotFound,
    DocumentNotPending,
    InvalidSourceDocument,
    SigningValidationError,
)
from signing.logic.audit_log import AuditLog
from signing.logic.composition_engine import CompositionEngine
from signing.logic.document_lock import DocumentLocks
from signing.logic.field_model import FieldModel
from signing.logic.job_runner import CompositionQueue
from signing.logic.recipient_ledger import RecipientLedger
from signing.logic.workflow_service import WorkflowService
from signing.models.audit_entry import AuditEntry
from signing.models.document import Document
from signing.models.field_definition import FieldDefinition, FieldSpec
from signing.models.recipient import RecipientEntry
from signing.models.status_report import JobSummary, RecipientSummary, StatusReport, VerificationReport
from signing.repository.signing_repository import SigningRepository

logger = logging.getLogger(__name__)

FieldInput = Union[FieldSpec, Mapping[str, Any]]


def _to_spec(item: FieldInput, idx: int) -> FieldSpec:
    if isinstance(item, FieldSpec):
        return item
    try:
        return FieldSpec(**dict(item))
    except TypeError as ex:
        raise SigningValidationError(f"Field #{idx}: malformed definition ({ex})") from ex


class IssuerService:
    """
    Everything an issuer can do with a document.

    Thin facade: validation and state changes live in the logic layer; this
    class adapts inputs and assembles read models.
    """

    def __init__(
        self,
        *,
        repository: SigningRepository,
        locks: DocumentLocks,
        store: ArtifactStore,
        fields: FieldModel,
        ledger: RecipientLedger,
        audit: AuditLog,
        queue: CompositionQueue,
        workflow: WorkflowService,
        composition: CompositionEngine,
    ) -> None:
        self._repo = repository
        self._locks = locks
        self._store = store
        self._fields = fields
        self._ledger = ledger
        self._audit = audit
        self._queue = queue
        self._workflow = workflow
        self._composition = composition

    # ---- drafting -----------------------------------------------------------

    def create_document(self, source_bytes: bytes, title: str, issuer_id: str,
                        allow_parallel: Optional[bool] = None) -> Document:
        try:
            info = inspect_pdf(source_bytes)
        except UnreadablePdf as ex:
            raise InvalidSourceDocument(str(ex)) from ex
        source_ref = self._store.put_artifact(source_bytes)
        return self._workflow.create_document(
            title=title,
            issuer_id=issuer_id,
            source_ref=source_ref,
            page_count=info.page_count,
            source_fingerprint=fingerprint(source_bytes),
            allow_parallel=allow_parallel,
        )

    def define_fields(self, doc_id: str, definitions: Sequence[FieldInput]) -> List[FieldDefinition]:
        specs = [_to_spec(item, idx) for idx, item in enumerate(definitions)]
        return self._fields.define_fields(doc_id, specs)

    def assign_recipient(self, field_id: str, recipient_id: str) -> FieldDefinition:
        return self._fields.assign_recipient(field_id, recipient_id)

    def remove_field(self, field_id: str) -> None:
        self._fields.remove_field(field_id)

    def add_recipient(self, doc_id: str, contact: str, signing_order: Optional[int] = None,
                      display_name: Optional[str] = None) -> RecipientEntry:
        return self._ledger.add_recipient(doc_id, contact, signing_order, display_name)

    def add_recipients(self, doc_id: str, recipients: Iterable[Mapping[str, Any]]) -> List[RecipientEntry]:
        """Add several recipients; if one is rejected none is added."""
        added: List[RecipientEntry] = []
        with self._locks.hold(doc_id):
            with self._repo.db.transaction():
                for item in recipients:
                    added.append(self._ledger.add_recipient(
                        doc_id,
                        item["contact"],
                        item.get("signing_order"),
                        item.get("display_name"),
                    ))
        return added

    def remove_recipient(self, recipient_id: str) -> None:
        self._ledger.remove_recipient(recipient_id)

    def discard_draft(self, doc_id: str, actor: str) -> None:
        self._workflow.discard_draft(doc_id, actor)

    # ---- lifecycle ----------------------------------------------------------

    def send(self, doc_id: str, actor: str, expires_at: Optional[datetime] = None) -> Dict[str, str]:
        return self._workflow.send(doc_id, actor, expires_at)

    def cancel(self, doc_id: str, actor: str, reason: Optional[str] = None) -> Document:
        return self._workflow.cancel(doc_id, actor, reason)

    def rotate_token(self, recipient_id: str, actor: str) -> str:
        return self._ledger.rotate_token(recipient_id, actor)

    def retry_composition(self, doc_id: str) -> bool:
        """Requeue a composition that ran out of attempts."""
        doc = self._repo.require_document(doc_id)
        if doc.status != DocumentStatus.PENDING:
            raise DocumentNotPending(doc_id, doc.status)
        requeued = self._queue.requeue_failed(doc_id)
        if requeued:
            logger.info("Composition of %s requeued by issuer", doc_id)
        return requeued

    # ---- reading ------------------------------------------------------------

    def get_status(self, doc_id: str) -> StatusReport:
        doc = self._repo.require_document(doc_id)
        fields = self._repo.list_fields(doc_id)
        assignments = self._repo.list_assignments(doc_id)
        summaries = []
        for r in self._repo.list_recipients(doc_id):
            own = [f for f in fields if f.recipient_id == r.recipient_id]
            summaries.append(RecipientSummary(
                recipient_id=r.recipient_id,
                contact=r.contact,
                display_name=r.display_name,
                signing_order=r.signing_order,
                status=r.status,
                token_expires_at=r.token_expires_at,
                fields_total=len(own),
                fields_filled=sum(1 for f in own if f.field_id in assignments),
            ))
        job = self._queue.get(doc_id)
        return StatusReport(
            doc_id=doc.doc_id,
            title=doc.title,
            status=doc.status,
            created_at=doc.created_at,
            updated_at=doc.updated_at,
            expires_at=doc.expires_at,
            final_ref=doc.final_ref,
            final_fingerprint=doc.final_fingerprint,
            cancel_reason=doc.cancel_reason,
            recipients=summaries,
            job=JobSummary(
                status=job.status,
                attempts=job.attempts,
                max_attempts=job.max_attempts,
                last_error=job.last_error,
                next_attempt_at=job.next_attempt_at,
            ) if job else None,
        )

    def get_audit_trail(self, doc_id: str) -> List[AuditEntry]:
        """Ordered audit entries; also available for discarded drafts."""
        entries = self._audit.entries(doc_id)
        if not entries and self._repo.get_document(doc_id) is None:
            raise DocumentNotFound(doc_id)
        return entries

    def download_final(self, doc_id: str) -> bytes:
        doc = self._repo.require_document(doc_id)
        if doc.status != DocumentStatus.COMPLETED or not doc.final_ref:
            raise DocumentNotCompleted(doc_id, doc.status)
        return self._store.get_artifact(doc.final_ref)

    def get_certificate(self, doc_id: str) -> CertificateRecord:
        """The stored audit certificate, including the final artifact fingerprint."""
        doc = self._repo.require_document(doc_id)
        if doc.status != DocumentStatus.COMPLETED or not doc.certificate_ref:
            raise DocumentNotCompleted(doc_id, doc.status)
        return CertificateRecord.from_json_bytes(self._store.get_artifact(doc.certificate_ref))

    def verify_certificate(self, doc_id: str) -> VerificationReport:
        return self._composition.verify_certificate(doc_id)
