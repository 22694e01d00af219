"""
Recipient ledger: who signs, in which order, with which access token.

Clear tokens leave this module exactly twice: from ``issue_tokens`` at send
time and from ``rotate_token``. Only their SHA-256 digests are persisted.
"""
from __future__ import annotations

import logging
import re
import secrets
from datetime import datetime, timedelta
from typing import Dict, List, Optional

from core.config.config_service import TokensConfig
from signing.enum.audit_action import AuditAction
from signing.enum.document_status import DocumentStatus
from signing.enum.recipient_status import RecipientStatus
from signing.exceptions.errors import (
    DocumentNotPending,
    DuplicateSigningOrder,
    InvalidRecipient,
    InvariantViolation,
    UnknownRecipient,
)
from signing.logic.audit_log import AuditLog
from signing.logic.clock import Clock, utc_now
from signing.logic.document_lock import DocumentLocks
from signing.logic.token_guard import hash_token
from signing.logic.workflow_engine import WorkflowEngine
from signing.models.document import Document
from signing.models.ids import new_id
from signing.models.recipient import RecipientEntry
from signing.repository.signing_repository import SigningRepository

logger = logging.getLogger(__name__)

_CONTACT_RE = re.compile(r"^[^@\s]+@[^@\s]+\.[^@\s]+$")


class RecipientLedger:
    def __init__(
        self,
        repo: SigningRepository,
        locks: DocumentLocks,
        audit: AuditLog,
        tokens: TokensConfig,
        clock: Clock = utc_now,
    ) -> None:
        self._repo = repo
        self._locks = locks
        self._audit = audit
        self._cfg = tokens
        self._clock = clock

    def recipients(self, doc_id: str) -> List[RecipientEntry]:
        return self._repo.list_recipients(doc_id)

    # ------------------------------------------------------------------ #
    # Draft editing
    # ------------------------------------------------------------------ #
    def add_recipient(
        self,
        doc_id: str,
        contact: str,
        signing_order: Optional[int] = None,
        display_name: Optional[str] = None,
    ) -> RecipientEntry:
        """
        Add a recipient to a draft.

        ``signing_order=None`` opens a new tier after the current last one.
        Reusing an existing order makes a parallel tier, which the document
        must allow.
        """
        contact = (contact or "").strip()
        if not _CONTACT_RE.match(contact):
            raise InvalidRecipient(f"Contact {contact!r} is not an e-mail address")
        if signing_order is not None and (
            not isinstance(signing_order, int) or isinstance(signing_order, bool) or signing_order < 1
        ):
            raise InvalidRecipient(f"Signing order must be a positive integer, got {signing_order!r}")

        with self._locks.hold(doc_id):
            doc = self._repo.require_document(doc_id)
            WorkflowEngine.ensure_editable(doc)
            existing = self._repo.list_recipients(doc_id)
            if any(r.contact.lower() == contact.lower() for r in existing):
                raise InvalidRecipient(f"{contact} is already a recipient of {doc_id}")

            orders = {r.signing_order for r in existing}
            if signing_order is None:
                signing_order = max(orders, default=0) + 1
            elif signing_order in orders and not doc.allow_parallel:
                raise DuplicateSigningOrder(
                    f"Signing order {signing_order} already used on {doc_id} and parallel tiers are off"
                )

            entry = RecipientEntry(
                recipient_id=new_id("rcp"),
                doc_id=doc_id,
                contact=contact,
                signing_order=signing_order,
                display_name=(display_name or "").strip() or None,
                created_at=self._clock(),
            )
            self._repo.insert_recipient(entry)
        logger.info("Recipient %s added to %s (order %d)", entry.recipient_id, doc_id, signing_order)
        return entry

    def remove_recipient(self, recipient_id: str) -> None:
        entry = self._repo.get_recipient(recipient_id)
        if entry is None:
            raise UnknownRecipient(f"Recipient {recipient_id!r} not found")
        with self._locks.hold(entry.doc_id):
            doc = self._repo.require_document(entry.doc_id)
            WorkflowEngine.ensure_editable(doc)
            # fields bound to the recipient fall back to unassigned (ON DELETE SET NULL)
            self._repo.delete_recipient(recipient_id)
        logger.info("Recipient %s removed from %s", recipient_id, entry.doc_id)

    # ------------------------------------------------------------------ #
    # Tokens
    # ------------------------------------------------------------------ #
    def token_expiry(self, doc: Document, now: datetime) -> datetime:
        expiry = now + timedelta(hours=self._cfg.ttl_hours)
        if doc.expires_at is not None and doc.expires_at < expiry:
            expiry = doc.expires_at
        return expiry

    def _new_token(self) -> str:
        return secrets.token_urlsafe(self._cfg.token_bytes)

    def issue_tokens(self, doc: Document, now: datetime) -> Dict[str, str]:
        """One token per recipient. Runs inside the send transaction, lock held."""
        tokens: Dict[str, str] = {}
        expiry = self.token_expiry(doc, now)
        for entry in self._repo.list_recipients(doc.doc_id):
            if entry.token_hash is not None:
                raise InvariantViolation(f"Tokens for {doc.doc_id} were already issued")
            token = self._new_token()
            entry.token_hash = hash_token(token)
            entry.token_expires_at = expiry
            entry.token_revoked = False
            self._repo.update_recipient(entry)
            tokens[entry.recipient_id] = token
        return tokens

    def rotate_token(self, recipient_id: str, actor: str) -> str:
        """
        Replace a recipient's token. The old digest is retired in the same
        transaction, so once this returns the old token only yields TokenRevoked.
        """
        entry = self._repo.get_recipient(recipient_id)
        if entry is None:
            raise UnknownRecipient(f"Recipient {recipient_id!r} not found")
        with self._locks.hold(entry.doc_id):
            doc = self._repo.require_document(entry.doc_id)
            if doc.status != DocumentStatus.PENDING:
                raise DocumentNotPending(doc.doc_id, doc.status)
            entry = self._repo.get_recipient(recipient_id)
            if not entry.status.can_act:
                raise InvalidRecipient(f"Recipient {recipient_id} is {entry.status.value}")

            now = self._clock()
            token = self._new_token()
            with self._repo.db.transaction():
                if entry.token_hash:
                    self._repo.retire_token(entry.token_hash, recipient_id, doc.doc_id, now)
                entry.token_hash = hash_token(token)
                entry.token_expires_at = self.token_expiry(doc, now)
                entry.token_revoked = False
                self._repo.update_recipient(entry)
                self._audit.append(
                    doc.doc_id, actor, AuditAction.TOKEN_ROTATED,
                    {"recipient_id": recipient_id},
                )
        logger.info("Token rotated for %s on %s", recipient_id, doc.doc_id)
        return token

    def revoke_all(self, doc_id: str) -> None:
        """Mark every token of the document revoked (lock held by caller)."""
        for entry in self._repo.list_recipients(doc_id):
            if entry.token_hash and not entry.token_revoked:
                entry.token_revoked = True
                self._repo.update_recipient(entry)

    def expire_all(self, doc_id: str, now: datetime) -> None:
        """Clamp every token's expiry to ``now`` (lock held by caller)."""
        for entry in self._repo.list_recipients(doc_id):
            if entry.token_hash and (entry.token_expires_at is None or entry.token_expires_at > now):
                entry.token_expires_at = now
                self._repo.update_recipient(entry)

    def mark_status(self, entry: RecipientEntry, status: RecipientStatus, now: datetime) -> None:
        entry.status = status
        if status == RecipientStatus.COMPLETED:
            entry.completed_at = now
        self._repo.update_recipient(entry)
