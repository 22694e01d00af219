"""Append-only audit log, one gap-free sequence per document."""
from __future__ import annotations

import logging
from typing import Any, Dict, List, Optional

from signing.enum.audit_action import AuditAction
from signing.exceptions.errors import InvariantViolation
from signing.logic.clock import Clock, utc_now
from signing.logic.document_lock import DocumentLocks
from signing.models.audit_entry import AuditEntry
from signing.repository.signing_repository import SigningRepository

logger = logging.getLogger(__name__)


class AuditLog:
    """
    Append and read-all only. There is intentionally no update or delete.

    ``append`` must run under the document lock; the next sequence number is
    read and written inside one database transaction, so two appends for the
    same document can never share a number.
    """

    def __init__(self, repo: SigningRepository, locks: DocumentLocks, clock: Clock = utc_now) -> None:
        self._repo = repo
        self._locks = locks
        self._clock = clock

    def append(self, doc_id: str, actor: str, action: AuditAction,
               metadata: Optional[Dict[str, Any]] = None) -> AuditEntry:
        if not self._locks.held(doc_id):
            raise InvariantViolation(f"Audit append for {doc_id} outside the document lock")
        with self._repo.db.transaction():
            entry = AuditEntry(
                doc_id=doc_id,
                sequence=self._repo.max_audit_sequence(doc_id) + 1,
                actor=actor,
                action=action,
                occurred_at=self._clock(),
                metadata=dict(metadata or {}),
            )
            self._repo.insert_audit_entry(entry)
        logger.debug("audit %s", entry.to_log_string())
        return entry

    def entries(self, doc_id: str) -> List[AuditEntry]:
        return self._repo.list_audit_entries(doc_id)

    def count(self, doc_id: str, action: AuditAction) -> int:
        return sum(1 for e in self.entries(doc_id) if e.action == action)
