"""
Composition: turn a fully signed document into its final artifact.

The snapshot is taken under the document lock, rendering and store writes
happen outside it, and the PENDING -> COMPLETED transition is applied by the
workflow service in a single transaction. A crash anywhere before that
transaction leaves the document PENDING; a retry renders the same bytes.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Dict, List, Optional, Tuple

from signature.logic.audit_certificate import (
    AuditCertificate,
    CertificateEntry,
    CertificateRecord,
    render_certificate,
)
from signature.logic.pdf_composer import PdfComposer, UnreadablePdf, extract_certificate
from signature.logic.signature_vault import SignatureVault
from signature.models.overlay_item import OverlayItem, OverlayKind
from signing.adapters.filesystem_storage_adapter import fingerprint
from signing.adapters.signature_adapter import ArtifactSigner, PassthroughSigner
from signing.adapters.storage_adapter import ArtifactStore
from signing.enum.audit_action import AuditAction
from signing.enum.document_status import DocumentStatus
from signing.enum.recipient_status import RecipientStatus
from signing.exceptions.errors import (
    IncompleteFields,
    InvalidSourceDocument,
    InvalidTransition,
    InvariantViolation,
)
from signing.logic.document_lock import DocumentLocks
from signing.logic.workflow_engine import WorkflowEngine
from signing.logic.workflow_service import WorkflowService
from signing.models.audit_entry import AuditEntry
from signing.models.document import Document
from signing.models.field_definition import FieldAssignment, FieldDefinition
from signing.models.field_values import (
    CheckboxValue,
    DateValue,
    FieldValue,
    InitialMarkValue,
    SignatureValue,
    TextValue,
    variant_for,
)
from signing.models.recipient import RecipientEntry
from signing.models.status_report import VerificationReport
from signing.repository.signing_repository import SigningRepository

logger = logging.getLogger(__name__)


@dataclass
class _Snapshot:
    doc: Document
    fields: List[FieldDefinition]
    assignments: Dict[str, FieldAssignment]
    recipients: List[RecipientEntry]
    entries: List[AuditEntry] = field(default_factory=list)


@dataclass(frozen=True)
class RenderedArtifact:
    doc_id: str
    payload: bytes
    certificate: AuditCertificate

    @property
    def fingerprint(self) -> str:
        return fingerprint(self.payload)

    @property
    def record(self) -> CertificateRecord:
        return CertificateRecord(certificate=self.certificate, final_fingerprint=self.fingerprint)


class CompositionEngine:
    def __init__(
        self,
        *,
        repository: SigningRepository,
        locks: DocumentLocks,
        store: ArtifactStore,
        vault: SignatureVault,
        workflow: WorkflowService,
        composer: Optional[PdfComposer] = None,
        signer: Optional[ArtifactSigner] = None,
    ) -> None:
        self._repo = repository
        self._locks = locks
        self._store = store
        self._vault = vault
        self._workflow = workflow
        self._composer = composer or PdfComposer()
        self._signer = signer or PassthroughSigner()

    # ------------------------------------------------------------------ #
    # Snapshot & validation
    # ------------------------------------------------------------------ #
    def _snapshot(self, doc_id: str) -> _Snapshot:
        with self._locks.hold(doc_id):
            doc = self._repo.require_document(doc_id)
            return _Snapshot(
                doc=doc,
                fields=self._repo.list_fields(doc_id),
                assignments=self._repo.list_assignments(doc_id),
                recipients=self._repo.list_recipients(doc_id),
                entries=self._repo.list_audit_entries(doc_id),
            )

    @staticmethod
    def _validate(snap: _Snapshot) -> None:
        """Check the snapshot on its own terms, independent of workflow bookkeeping."""
        doc = snap.doc
        if doc.status != DocumentStatus.PENDING:
            raise InvalidTransition(doc.doc_id, doc.status, DocumentStatus.COMPLETED)
        pending = [r.recipient_id for r in snap.recipients if r.status != RecipientStatus.COMPLETED]
        if pending:
            raise IncompleteFields(f"{doc.doc_id}: recipients not completed: {', '.join(pending)}")
        missing = WorkflowEngine.missing_required_fields(snap.fields, snap.assignments)
        if missing:
            raise IncompleteFields(f"{doc.doc_id}: required fields empty", missing)
        for definition in snap.fields:
            assignment = snap.assignments.get(definition.field_id)
            if assignment is not None and not isinstance(assignment.value, variant_for(definition.field_type)):
                raise IncompleteFields(
                    f"{doc.doc_id}: value of {definition.field_id} does not match "
                    f"{definition.field_type.value}",
                    [definition.field_id],
                )

    # ------------------------------------------------------------------ #
    # Rendering
    # ------------------------------------------------------------------ #
    def _overlay_for(self, definition: FieldDefinition, value: FieldValue) -> Optional[OverlayItem]:
        g = definition.geometry
        place = dict(page_index=definition.page_index, x=g.x, y=g.y, width=g.width, height=g.height)
        if isinstance(value, (SignatureValue, InitialMarkValue)):
            return OverlayItem(kind=OverlayKind.IMAGE, image=self._vault.load_image(value.image_ref), **place)
        if isinstance(value, TextValue):
            if not value.text.strip():
                return None
            return OverlayItem(kind=OverlayKind.TEXT, text=value.text, **place)
        if isinstance(value, DateValue):
            return OverlayItem(kind=OverlayKind.TEXT, text=value.value.isoformat(), **place)
        if isinstance(value, CheckboxValue):
            return OverlayItem(kind=OverlayKind.CHECKMARK, **place) if value.checked else None
        raise InvariantViolation(f"Unhandled field value {type(value).__name__}")

    def _render_content(self, snap: _Snapshot) -> Tuple[bytes, bytes]:
        """Source bytes and the source with every value painted on it."""
        source = self._store.get_artifact(snap.doc.source_ref)
        items = []
        for definition in snap.fields:
            assignment = snap.assignments.get(definition.field_id)
            if assignment is None:
                continue
            item = self._overlay_for(definition, assignment.value)
            if item is not None:
                items.append(item)
        try:
            content = self._composer.render(source, items)
        except UnreadablePdf as ex:
            raise InvalidSourceDocument(f"Source of {snap.doc.doc_id} cannot be rendered: {ex}") from ex
        return source, content

    @staticmethod
    def _certified_range(snap: _Snapshot) -> List[AuditEntry]:
        """Entries up to the signature that finished the document.

        Whatever is appended while the job waits (refused requests, token
        rotations) is left out, so every attempt certifies the same history.
        """
        completed = [e.sequence for e in snap.entries if e.action == AuditAction.RECIPIENT_COMPLETED]
        if not completed:
            raise InvariantViolation(f"{snap.doc.doc_id} is ready to compose without a RECIPIENT_COMPLETED entry")
        last = max(completed)
        return [e for e in snap.entries if e.sequence <= last]

    @staticmethod
    def _certificate_entries(entries: List[AuditEntry],
                             recipients: List[RecipientEntry]) -> Tuple[CertificateEntry, ...]:
        contacts = {r.recipient_id: r.contact for r in recipients}
        return tuple(
            CertificateEntry(
                sequence=e.sequence,
                actor=f"{contacts[e.actor]} ({e.actor})" if e.actor in contacts else e.actor,
                action=e.action.value,
                timestamp=e.occurred_at.isoformat(timespec="seconds"),
            )
            for e in entries
        )

    def render(self, doc_id: str) -> RenderedArtifact:
        """Produce the final artifact without storing it or changing state."""
        snap = self._snapshot(doc_id)
        self._validate(snap)
        source, content = self._render_content(snap)
        certificate = AuditCertificate(
            doc_id=doc_id,
            title=snap.doc.title,
            source_fingerprint=fingerprint(source),
            content_fingerprint=fingerprint(content),
            entries=self._certificate_entries(self._certified_range(snap), snap.recipients),
        )
        try:
            final = self._composer.finalize(content, certificate.to_json_bytes(), render_certificate(certificate))
        except UnreadablePdf as ex:
            raise InvalidSourceDocument(f"Final artifact of {doc_id} cannot be assembled: {ex}") from ex
        return RenderedArtifact(doc_id=doc_id, payload=self._signer.sign(doc_id=doc_id, payload=final),
                                certificate=certificate)

    # ------------------------------------------------------------------ #
    # Composition
    # ------------------------------------------------------------------ #
    def compose(self, doc_id: str, attempt: Optional[int] = None) -> Optional[str]:
        """
        Render, store and complete. Returns the final artifact reference, or
        None when this attempt was superseded (cancelled or a newer attempt).
        """
        doc = self._repo.require_document(doc_id)
        if doc.status == DocumentStatus.COMPLETED:
            return doc.final_ref

        artifact = self.render(doc_id)
        final_ref = self._store.put_artifact(artifact.payload)
        certificate_ref = self._store.put_artifact(artifact.record.to_json_bytes())

        applied = self._workflow.apply_composition(
            doc_id,
            attempt=attempt,
            final_ref=final_ref,
            final_fingerprint=artifact.fingerprint,
            certificate_ref=certificate_ref,
            certified_through=artifact.certificate.certified_through,
        )
        if applied:
            return final_ref
        current = self._repo.require_document(doc_id)
        if current.status == DocumentStatus.COMPLETED:
            return current.final_ref
        return None

    # ------------------------------------------------------------------ #
    # Verification
    # ------------------------------------------------------------------ #
    def verify_certificate(self, doc_id: str) -> VerificationReport:
        """Re-derive the certificate from the audit log and check the stored artifact against it."""
        snap = self._snapshot(doc_id)
        doc = snap.doc
        if doc.status != DocumentStatus.COMPLETED or not doc.final_ref:
            return VerificationReport(doc_id=doc_id, valid=False, problems=[f"document is {doc.status.value}"])

        problems: List[str] = []
        final = self._store.get_artifact(doc.final_ref)
        actual = fingerprint(final)
        if actual != doc.final_fingerprint:
            problems.append("final artifact fingerprint does not match the document record")

        composed = [e for e in snap.entries if e.action == AuditAction.COMPOSED]
        if len(composed) != 1:
            raise InvariantViolation(f"{doc_id} has {len(composed)} COMPOSED entries")
        marker = composed[0]
        if marker.metadata.get("fingerprint") != actual:
            problems.append("final artifact fingerprint does not match the COMPOSED audit entry")

        record: Optional[CertificateRecord] = None
        if not doc.certificate_ref:
            problems.append("no stored certificate")
        else:
            try:
                record = CertificateRecord.from_json_bytes(self._store.get_artifact(doc.certificate_ref))
            except (ValueError, KeyError) as ex:
                problems.append(f"stored certificate is unreadable: {ex}")
        if record is not None and record.final_fingerprint != actual:
            problems.append("stored certificate names a different final artifact")

        certificate: Optional[AuditCertificate] = None
        embedded = extract_certificate(final)
        if embedded is None:
            problems.append("final artifact carries no embedded certificate")
        else:
            try:
                certificate = AuditCertificate.from_json_bytes(embedded)
            except (ValueError, KeyError) as ex:
                problems.append(f"embedded certificate is unreadable: {ex}")
        if certificate is not None and record is not None and certificate != record.certificate:
            problems.append("embedded certificate differs from the stored certificate")

        certificate = certificate or (record.certificate if record is not None else None)
        if certificate is None:
            logger.warning("Certificate check failed for %s: %s", doc_id, "; ".join(problems))
            return VerificationReport(doc_id=doc_id, valid=False, fingerprint=actual, problems=problems)

        certified = self._certified_range(snap)
        if int(marker.metadata.get("certified_through", 0)) != certified[-1].sequence:
            problems.append("COMPOSED audit entry certifies a different range of the audit log")
        expected = self._certificate_entries(certified, snap.recipients)
        if certificate.entries != expected:
            problems.append("certificate entries differ from the audit log")
        if certificate.doc_id != doc_id or certificate.title != doc.title:
            problems.append("certificate header does not describe this document")

        source, content = self._render_content(snap)
        if fingerprint(source) != certificate.source_fingerprint:
            problems.append("source document fingerprint mismatch")
        if fingerprint(content) != certificate.content_fingerprint:
            problems.append("re-rendered content differs from the certified content")

        if problems:
            logger.warning("Certificate check failed for %s: %s", doc_id, "; ".join(problems))
        return VerificationReport(doc_id=doc_id, valid=not problems, fingerprint=actual, problems=problems)
