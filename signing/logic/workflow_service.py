# signing/logic/workflow_service.py
"""
Orchestrates document lifecycle transitions.

Every state change follows the same pattern: take the document lock, load
fresh rows, check the rules in :class:`WorkflowEngine`, write everything in
one database transaction (audit entry included), release the lock, then hand
notification events to the sink.
"""
from __future__ import annotations

import logging
from contextlib import contextmanager
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Iterator, List, Optional

from core.config.config_service import WorkflowConfig
from signing.adapters.event_sink import EventSink
from signing.enum.audit_action import AuditAction
from signing.enum.document_status import DocumentStatus
from signing.enum.recipient_status import RecipientStatus
from signing.exceptions.errors import (
    AccessDeniedError,
    DocumentLocked,
    IncompleteFields,
    InvalidDeadline,
    InvariantViolation,
    OutOfOrder,
    RecipientNotActive,
    SigningValidationError,
    TokenRevoked,
    UnknownField,
)
from signing.logic.audit_log import AuditLog
from signing.logic.clock import Clock, as_utc, utc_now
from signing.logic.document_lock import DocumentLocks
from signing.logic.job_runner import CompositionQueue
from signing.logic.recipient_ledger import RecipientLedger
from signing.logic.token_guard import TokenGuard
from signing.logic.workflow_engine import WorkflowEngine
from signing.models.audit_entry import SYSTEM_ACTOR
from signing.models.document import Document
from signing.models.events import EventType, NotificationEvent
from signing.models.field_definition import FieldAssignment
from signing.models.field_values import coerce_value
from signing.models.ids import new_id
from signing.models.recipient import RecipientEntry
from signing.models.status_report import SubmissionResult
from signing.repository.signing_repository import SigningRepository

logger = logging.getLogger(__name__)

ImageSink = Callable[[bytes], str]


@dataclass
class RecipientContext:
    """Fresh rows a recipient action works on, loaded under the document lock."""
    doc: Document
    recipient: RecipientEntry
    recipients: List[RecipientEntry] = field(default_factory=list)


def _meta(ip_address: Optional[str] = None, **values: Any) -> Dict[str, Any]:
    data = {k: v for k, v in values.items() if v is not None}
    if ip_address:
        data["ip_address"] = ip_address
    return data


class WorkflowService:
    """The only component that changes a document's status."""

    def __init__(
        self,
        *,
        repository: SigningRepository,
        locks: DocumentLocks,
        audit: AuditLog,
        ledger: RecipientLedger,
        guard: TokenGuard,
        queue: CompositionQueue,
        events: EventSink,
        config: WorkflowConfig,
        image_sink: Optional[ImageSink] = None,
        clock: Clock = utc_now,
    ) -> None:
        self._repo = repository
        self._locks = locks
        self._audit = audit
        self._ledger = ledger
        self._guard = guard
        self._queue = queue
        self._events = events
        self._cfg = config
        self._image_sink = image_sink
        self._clock = clock
        self._engine = WorkflowEngine()

    @property
    def engine(self) -> WorkflowEngine:
        return self._engine

    # ---- helpers ------------------------------------------------------------

    def _publish(self, events: List[NotificationEvent]) -> None:
        for event in events:
            try:
                self._events.publish(event)
            except Exception:
                # state already committed
                logger.exception("Event sink failed for %s on %s", event.event_type.value, event.doc_id)

    def _event(self, event_type: EventType, doc_id: str, now: datetime,
               recipient_id: Optional[str] = None, **context: Any) -> NotificationEvent:
        return NotificationEvent(
            event_type=event_type, doc_id=doc_id, occurred_at=now,
            recipient_id=recipient_id, context=context,
        )

    def _record_denial(self, ex: AccessDeniedError, operation: str, ip_address: Optional[str]) -> None:
        if ex.doc_id is None:
            logger.warning("Denied %s: %s", operation, type(ex).__name__)
            return
        with self._locks.hold(ex.doc_id):
            if self._repo.get_document(ex.doc_id) is None:
                return
            self._audit.append(
                ex.doc_id,
                ex.recipient_id or SYSTEM_ACTOR,
                AuditAction.ACCESS_DENIED,
                _meta(ip_address, operation=operation, reason=type(ex).__name__),
            )
        logger.warning("Denied %s on %s for %s: %s", operation, ex.doc_id, ex.recipient_id, ex)

    @contextmanager
    def _recipient_action(
        self,
        token: str,
        operation: str,
        *,
        ip_address: Optional[str] = None,
        check_locked: bool = True,
        require_active: bool = True,
        require_turn: bool = True,
    ) -> Iterator[RecipientContext]:
        """
        Authorize, lock, authorize again, check gates, then yield fresh rows.

        The second authorization runs under the document lock, so a token
        rotated while this request waited for the lock is refused.
        """
        try:
            grant = self._guard.authorize(token)
        except AccessDeniedError as ex:
            self._record_denial(ex, operation, ip_address)
            raise

        with self._locks.hold(grant.doc_id):
            try:
                grant = self._guard.authorize(token)
                ctx = self._check_gates(grant.doc_id, grant.recipient_id, check_locked=check_locked,
                                        require_active=require_active, require_turn=require_turn)
            except AccessDeniedError as ex:
                self._record_denial(ex, operation, ip_address)
                raise
            yield ctx

    def _check_gates(self, doc_id: str, recipient_id: str, *, check_locked: bool,
                     require_active: bool, require_turn: bool) -> RecipientContext:
        doc = self._repo.require_document(doc_id)
        recipient = self._repo.get_recipient(recipient_id)
        if recipient is None:
            raise InvariantViolation(f"Token resolved to missing recipient {recipient_id}")
        if doc.status != DocumentStatus.PENDING:
            raise TokenRevoked(f"Document is {doc.status.value}", doc_id=doc_id, recipient_id=recipient_id)
        if check_locked and self._queue.is_in_flight(doc_id):
            raise DocumentLocked("Composition in progress", doc_id=doc_id, recipient_id=recipient_id)
        if require_active and not recipient.status.can_act:
            raise RecipientNotActive(
                f"Recipient is {recipient.status.value}", doc_id=doc_id, recipient_id=recipient_id
            )
        recipients = self._repo.list_recipients(doc_id)
        if require_turn and not self._engine.is_turn_of(recipient, recipients):
            raise OutOfOrder(
                f"Order {recipient.signing_order} waits for tier {self._engine.active_tier(recipients)}",
                doc_id=doc_id, recipient_id=recipient_id,
            )
        return RecipientContext(doc=doc, recipient=recipient, recipients=recipients)

    # ---- issuer transitions -------------------------------------------------

    def create_document(
        self,
        *,
        title: str,
        issuer_id: str,
        source_ref: str,
        page_count: int,
        source_fingerprint: str,
        allow_parallel: Optional[bool] = None,
    ) -> Document:
        title = (title or "").strip()
        if not title:
            raise SigningValidationError("Document title is required")
        if not (issuer_id or "").strip():
            raise SigningValidationError("Issuer id is required")
        now = self._clock()
        doc = Document(
            doc_id=new_id("doc"),
            title=title,
            status=DocumentStatus.DRAFT,
            issuer_id=issuer_id,
            source_ref=source_ref,
            page_count=page_count,
            created_at=now,
            updated_at=now,
            allow_parallel=self._cfg.allow_parallel if allow_parallel is None else bool(allow_parallel),
        )
        with self._locks.hold(doc.doc_id):
            with self._repo.db.transaction():
                self._repo.insert_document(doc)
                self._audit.append(
                    doc.doc_id, issuer_id, AuditAction.CREATED,
                    {"title": title, "page_count": page_count, "source_fingerprint": source_fingerprint},
                )
        logger.info("Document %s created by %s (%d pages)", doc.doc_id, issuer_id, page_count)
        return doc

    def send(self, doc_id: str, actor: str, expires_at: Optional[datetime] = None) -> Dict[str, str]:
        """DRAFT -> PENDING. Returns the clear token of every recipient, once."""
        with self._locks.hold(doc_id):
            doc = self._repo.require_document(doc_id)
            self._engine.ensure_transition(doc, DocumentStatus.PENDING)
            recipients = self._repo.list_recipients(doc_id)
            fields = self._repo.list_fields(doc_id)
            problems = self._engine.send_problems(recipients, fields)
            if problems:
                raise IncompleteFields(
                    f"Cannot send {doc_id}: " + "; ".join(problems),
                    self._engine.unassigned_fields(recipients, fields),
                )
            now = self._clock()
            if expires_at is not None:
                deadline = as_utc(expires_at)
            else:
                deadline = now + timedelta(hours=self._cfg.document_ttl_hours)
            if deadline <= now:
                raise InvalidDeadline(f"Deadline {deadline.isoformat()} is not in the future")

            with self._repo.db.transaction():
                doc.status = DocumentStatus.PENDING
                doc.sent_at = now
                doc.expires_at = deadline
                doc.updated_at = now
                self._repo.update_document(doc)
                tokens = self._ledger.issue_tokens(doc, now)
                self._audit.append(
                    doc_id, actor, AuditAction.SENT,
                    {"recipients": len(tokens), "expires_at": deadline.isoformat()},
                )
            events = [self._event(
                EventType.DOCUMENT_SENT, doc_id, now,
                recipient_ids=list(tokens), expires_at=deadline.isoformat(),
            )]
        logger.info("Document %s sent to %d recipient(s)", doc_id, len(tokens))
        self._publish(events)
        return tokens

    def cancel(self, doc_id: str, actor: str, reason: Optional[str] = None) -> Document:
        """PENDING -> CANCELLED."""
        with self._locks.hold(doc_id):
            doc = self._repo.require_document(doc_id)
            self._engine.ensure_transition(doc, DocumentStatus.CANCELLED)
            with self._repo.db.transaction():
                events = self._cancel_locked(doc, actor, reason, self._clock())
        self._publish(events)
        return doc

    def _cancel_locked(self, doc: Document, actor: str, reason: Optional[str],
                       now: datetime) -> List[NotificationEvent]:
        self._engine.ensure_transition(doc, DocumentStatus.CANCELLED)
        doc.status = DocumentStatus.CANCELLED
        doc.cancel_reason = reason
        doc.updated_at = now
        self._repo.update_document(doc)
        self._ledger.revoke_all(doc.doc_id)
        self._audit.append(doc.doc_id, actor, AuditAction.CANCELLED, _meta(reason=reason))
        if self._queue.cancel(doc.doc_id):
            logger.info("Composition job for %s cancelled", doc.doc_id)
        logger.info("Document %s cancelled by %s", doc.doc_id, actor)
        return [self._event(EventType.DOCUMENT_CANCELLED, doc.doc_id, now, reason=reason)]

    def discard_draft(self, doc_id: str, actor: str) -> None:
        """Delete a draft. Audit entries already written are kept."""
        with self._locks.hold(doc_id):
            doc = self._repo.require_document(doc_id)
            self._engine.ensure_editable(doc)
            with self._repo.db.transaction():
                self._repo.delete_document(doc_id)
        logger.info("Draft %s discarded by %s", doc_id, actor)

    # ---- recipient transitions ----------------------------------------------

    def mark_viewed(self, token: str, ip_address: Optional[str] = None) -> RecipientContext:
        """Record the first view of a PENDING recipient; later views change nothing."""
        with self._recipient_action(token, "view", ip_address=ip_address, check_locked=False,
                                    require_active=False, require_turn=False) as ctx:
            if ctx.recipient.status == RecipientStatus.PENDING:
                with self._repo.db.transaction():
                    self._ledger.mark_status(ctx.recipient, RecipientStatus.VIEWED, self._clock())
                    self._audit.append(
                        ctx.doc.doc_id, ctx.recipient.recipient_id, AuditAction.VIEWED, _meta(ip_address)
                    )
        return ctx

    def record_field_value(self, token: str, field_id: str, value: Any,
                           ip_address: Optional[str] = None) -> SubmissionResult:
        """Store one field value. Overwrites are allowed until the recipient completes."""
        with self._recipient_action(token, "submit_field", ip_address=ip_address) as ctx:
            doc_id = ctx.doc.doc_id
            recipient_id = ctx.recipient.recipient_id
            definition = self._repo.get_field(field_id)
            if definition is None or definition.doc_id != doc_id or definition.recipient_id != recipient_id:
                raise UnknownField(f"Field {field_id!r} is not assigned to this recipient")
            coerced = coerce_value(definition.field_type, value, image_sink=self._image_sink)

            now = self._clock()
            with self._repo.db.transaction():
                self._repo.upsert_assignment(
                    doc_id, FieldAssignment(field_id=field_id, recipient_id=recipient_id,
                                            value=coerced, filled_at=now)
                )
                self._audit.append(
                    doc_id, recipient_id, AuditAction.FIELD_FILLED,
                    _meta(ip_address, field_id=field_id, field_type=definition.field_type.value),
                )
            missing = self._engine.missing_required_fields(
                self._repo.list_fields(doc_id), self._repo.list_assignments(doc_id), recipient_id
            )
        logger.info("Field %s filled on %s by %s", field_id, doc_id, recipient_id)
        return SubmissionResult(field_id=field_id, recipient_ready=not missing, missing_field_ids=missing)

    def complete_signing(self, token: str, ip_address: Optional[str] = None) -> RecipientEntry:
        """Finish a recipient; the last one to finish queues the composition."""
        queued = False
        with self._recipient_action(token, "complete_signing", ip_address=ip_address) as ctx:
            doc_id = ctx.doc.doc_id
            recipient = ctx.recipient
            missing = self._engine.missing_required_fields(
                self._repo.list_fields(doc_id), self._repo.list_assignments(doc_id), recipient.recipient_id
            )
            if missing:
                raise IncompleteFields(f"{len(missing)} required field(s) still empty", missing)

            with self._repo.db.transaction():
                self._ledger.mark_status(recipient, RecipientStatus.COMPLETED, self._clock())
                self._audit.append(
                    doc_id, recipient.recipient_id, AuditAction.RECIPIENT_COMPLETED, _meta(ip_address)
                )
                if self._engine.all_completed(self._repo.list_recipients(doc_id)):
                    queued = self._queue.enqueue(doc_id)
        logger.info("Recipient %s completed %s", recipient.recipient_id, doc_id)
        if queued:
            self._queue.notify()
        return recipient

    def decline(self, token: str, reason: str, ip_address: Optional[str] = None) -> Document:
        """A recipient refuses to sign; the document is cancelled."""
        reason = (reason or "").strip() or "no reason given"
        with self._recipient_action(token, "decline", ip_address=ip_address, require_turn=False) as ctx:
            recipient = ctx.recipient
            now = self._clock()
            with self._repo.db.transaction():
                recipient.status = RecipientStatus.DECLINED
                recipient.decline_reason = reason
                self._repo.update_recipient(recipient)
                self._audit.append(
                    ctx.doc.doc_id, recipient.recipient_id, AuditAction.DECLINED,
                    _meta(ip_address, reason=reason),
                )
                events = self._cancel_locked(
                    ctx.doc, recipient.recipient_id, f"Declined by {recipient.label}: {reason}", now
                )
        self._publish(events)
        return ctx.doc

    # ---- system transitions -------------------------------------------------

    def expire_if_due(self, doc_id: str) -> bool:
        """
        PENDING -> EXPIRED once the deadline passed with recipients outstanding.

        Loses gracefully: returns False when the document already reached a
        terminal state or every recipient finished (composition owns it then).
        """
        with self._locks.hold(doc_id):
            doc = self._repo.get_document(doc_id)
            if doc is None or doc.status != DocumentStatus.PENDING:
                return False
            now = self._clock()
            if not doc.is_past_deadline(now):
                return False
            if self._engine.all_completed(self._repo.list_recipients(doc_id)):
                return False
            self._engine.ensure_transition(doc, DocumentStatus.EXPIRED)
            with self._repo.db.transaction():
                doc.status = DocumentStatus.EXPIRED
                doc.updated_at = now
                self._repo.update_document(doc)
                self._ledger.expire_all(doc_id, now)
                self._audit.append(
                    doc_id, SYSTEM_ACTOR, AuditAction.EXPIRED, {"deadline": doc.expires_at.isoformat()}
                )
                self._queue.cancel(doc_id)
            events = [self._event(EventType.DOCUMENT_EXPIRED, doc_id, now, deadline=doc.expires_at.isoformat())]
        logger.info("Document %s expired", doc_id)
        self._publish(events)
        return True

    def apply_composition(
        self,
        doc_id: str,
        *,
        attempt: Optional[int],
        final_ref: str,
        final_fingerprint: str,
        certificate_ref: str,
        certified_through: int,
    ) -> bool:
        """
        PENDING -> COMPLETED with the artifact reference, in one transaction.

        Returns False without changing anything when the document is no
        longer PENDING or ``attempt`` is not the job's current attempt.
        """
        if not final_ref:
            raise InvariantViolation(f"Completion of {doc_id} without a final artifact")
        with self._locks.hold(doc_id):
            doc = self._repo.require_document(doc_id)
            if doc.status != DocumentStatus.PENDING:
                logger.info("Composition result for %s dropped: document is %s", doc_id, doc.status.value)
                return False
            self._engine.ensure_transition(doc, DocumentStatus.COMPLETED)
            if self._audit.count(doc_id, AuditAction.COMPOSED):
                raise InvariantViolation(f"PENDING document {doc_id} already has a COMPOSED entry")

            now = self._clock()
            with self._repo.db.transaction():
                if not self._queue.mark_succeeded(doc_id, attempt):
                    logger.warning("Composition attempt %s for %s is stale; result dropped", attempt, doc_id)
                    return False
                doc.status = DocumentStatus.COMPLETED
                doc.final_ref = final_ref
                doc.final_fingerprint = final_fingerprint
                doc.certificate_ref = certificate_ref
                doc.updated_at = now
                self._repo.update_document(doc)
                self._ledger.revoke_all(doc_id)
                self._audit.append(
                    doc_id, SYSTEM_ACTOR, AuditAction.COMPOSED,
                    {
                        "final_ref": final_ref,
                        "fingerprint": final_fingerprint,
                        "certificate_ref": certificate_ref,
                        "certified_through": certified_through,
                    },
                )
            events = [self._event(
                EventType.DOCUMENT_COMPLETED, doc_id, now, final_ref=final_ref, fingerprint=final_fingerprint,
            )]
        logger.info("Document %s completed (%s)", doc_id, final_fingerprint[:12])
        self._publish(events)
        return True

    def remind_due(self, doc_id: str) -> List[NotificationEvent]:
        """
        Emit RecipientReminderDue for active-tier recipients who have not been
        reminded within the configured interval since their turn began.
        """
        interval = timedelta(hours=self._cfg.reminder_interval_hours)
        if interval <= timedelta(0):
            return []
        with self._locks.hold(doc_id):
            doc = self._repo.get_document(doc_id)
            if doc is None or doc.status != DocumentStatus.PENDING or doc.sent_at is None:
                return []
            recipients = self._repo.list_recipients(doc_id)
            tier = self._engine.active_tier(recipients)
            if tier is None:
                return []
            turn_started = max(
                [doc.sent_at] + [r.completed_at for r in recipients
                                 if r.signing_order < tier and r.completed_at is not None]
            )
            now = self._clock()
            due = [
                r for r in recipients
                if r.signing_order == tier and r.status.can_act
                and (r.last_reminded_at or turn_started) + interval <= now
            ]
            if not due:
                return []
            with self._repo.db.transaction():
                for r in due:
                    r.last_reminded_at = now
                    self._repo.update_recipient(r)
            events = [
                self._event(EventType.RECIPIENT_REMINDER_DUE, doc_id, now, recipient_id=r.recipient_id,
                            contact=r.contact, expires_at=doc.expires_at.isoformat())
                for r in due
            ]
        self._publish(events)
        return events
