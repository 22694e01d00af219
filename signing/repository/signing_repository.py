"""SQLite implementation of the signing repository.

Lightweight repository - only CRUD and simple queries.
Business logic is in the logic layer. Callers that need several statements
to be atomic wrap them in ``db.transaction()``.
"""

from __future__ import annotations

import json
import logging
import sqlite3
from datetime import datetime
from typing import Any, Dict, List, Optional

from signing.adapters.database_adapter import DatabaseAdapter
from signing.enum.audit_action import AuditAction
from signing.enum.document_status import DocumentStatus
from signing.enum.field_type import FieldType
from signing.enum.job_status import JobStatus
from signing.enum.recipient_status import RecipientStatus
from signing.exceptions.errors import DocumentNotFound, InvariantViolation
from signing.models.audit_entry import AuditEntry
from signing.models.composition_job import CompositionJob
from signing.models.document import Document
from signing.models.field_definition import FieldAssignment, FieldDefinition, FieldGeometry
from signing.models.field_values import value_from_json, value_to_json
from signing.models.recipient import RecipientEntry

logger = logging.getLogger(__name__)


_SCHEMA = """
CREATE TABLE IF NOT EXISTS documents (
    doc_id TEXT PRIMARY KEY,
    title TEXT NOT NULL,
    status TEXT NOT NULL,
    issuer_id TEXT NOT NULL,
    source_ref TEXT NOT NULL,
    page_count INTEGER NOT NULL,
    allow_parallel INTEGER NOT NULL DEFAULT 1,
    sent_at TEXT,
    expires_at TEXT,
    final_ref TEXT,
    final_fingerprint TEXT,
    certificate_ref TEXT,
    cancel_reason TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS recipients (
    recipient_id TEXT PRIMARY KEY,
    doc_id TEXT NOT NULL REFERENCES documents(doc_id) ON DELETE CASCADE,
    contact TEXT NOT NULL,
    display_name TEXT,
    signing_order INTEGER NOT NULL,
    status TEXT NOT NULL,
    token_hash TEXT UNIQUE,
    token_expires_at TEXT,
    token_revoked INTEGER NOT NULL DEFAULT 0,
    created_at TEXT NOT NULL,
    completed_at TEXT,
    decline_reason TEXT,
    last_reminded_at TEXT,
    UNIQUE (doc_id, contact)
);

CREATE TABLE IF NOT EXISTS fields (
    field_id TEXT PRIMARY KEY,
    doc_id TEXT NOT NULL REFERENCES documents(doc_id) ON DELETE CASCADE,
    field_type TEXT NOT NULL,
    page_index INTEGER NOT NULL,
    x REAL NOT NULL,
    y REAL NOT NULL,
    w REAL NOT NULL,
    h REAL NOT NULL,
    required INTEGER NOT NULL DEFAULT 1,
    recipient_id TEXT REFERENCES recipients(recipient_id) ON DELETE SET NULL,
    label TEXT,
    position INTEGER NOT NULL DEFAULT 0
);

CREATE TABLE IF NOT EXISTS assignments (
    field_id TEXT PRIMARY KEY REFERENCES fields(field_id) ON DELETE CASCADE,
    doc_id TEXT NOT NULL REFERENCES documents(doc_id) ON DELETE CASCADE,
    recipient_id TEXT NOT NULL,
    value_json TEXT NOT NULL,
    filled_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS audit_log (
    doc_id TEXT NOT NULL,
    seq INTEGER NOT NULL,
    actor TEXT NOT NULL,
    action TEXT NOT NULL,
    occurred_at TEXT NOT NULL,
    metadata_json TEXT NOT NULL DEFAULT '{}',
    PRIMARY KEY (doc_id, seq)
);

CREATE TABLE IF NOT EXISTS retired_tokens (
    token_hash TEXT PRIMARY KEY,
    recipient_id TEXT NOT NULL,
    doc_id TEXT NOT NULL,
    retired_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS composition_jobs (
    doc_id TEXT PRIMARY KEY,
    status TEXT NOT NULL,
    attempts INTEGER NOT NULL DEFAULT 0,
    max_attempts INTEGER NOT NULL,
    last_error TEXT,
    next_attempt_at TEXT,
    enqueued_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_recipients_doc ON recipients(doc_id);
CREATE INDEX IF NOT EXISTS idx_fields_doc ON fields(doc_id);
CREATE INDEX IF NOT EXISTS idx_documents_status ON documents(status);
CREATE INDEX IF NOT EXISTS idx_jobs_due ON composition_jobs(status, next_attempt_at);
"""


def _ts(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat(timespec="microseconds") if value is not None else None


def _dt(value: Optional[str]) -> Optional[datetime]:
    return datetime.fromisoformat(value) if value else None


class SigningRepository:
    """SQLite backend for documents, recipients, fields, audit and jobs."""

    def __init__(self, db: DatabaseAdapter) -> None:
        """
        Args:
            db: Database adapter (shared with the logic layer for transactions)
        """
        self._db = db
        self._ensure_schema()

    @property
    def db(self) -> DatabaseAdapter:
        return self._db

    def _ensure_schema(self) -> None:
        self._db.executescript(_SCHEMA)

    # =========================================================================
    # Documents
    # =========================================================================

    @staticmethod
    def _row_to_document(row: Dict[str, Any]) -> Document:
        return Document(
            doc_id=row["doc_id"],
            title=row["title"],
            status=DocumentStatus(row["status"]),
            issuer_id=row["issuer_id"],
            source_ref=row["source_ref"],
            page_count=int(row["page_count"]),
            created_at=_dt(row["created_at"]),
            updated_at=_dt(row["updated_at"]),
            allow_parallel=bool(row["allow_parallel"]),
            sent_at=_dt(row["sent_at"]),
            expires_at=_dt(row["expires_at"]),
            final_ref=row["final_ref"],
            final_fingerprint=row["final_fingerprint"],
            certificate_ref=row["certificate_ref"],
            cancel_reason=row["cancel_reason"],
        )

    def insert_document(self, doc: Document) -> None:
        self._db.execute(
            """
            INSERT INTO documents(doc_id, title, status, issuer_id, source_ref, page_count,
                                  allow_parallel, sent_at, expires_at, final_ref, final_fingerprint,
                                  certificate_ref, cancel_reason, created_at, updated_at)
            VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?,?,?)
            """,
            (
                doc.doc_id, doc.title, doc.status.value, doc.issuer_id, doc.source_ref,
                doc.page_count, int(doc.allow_parallel), _ts(doc.sent_at), _ts(doc.expires_at), doc.final_ref,
                doc.final_fingerprint, doc.certificate_ref, doc.cancel_reason,
                _ts(doc.created_at), _ts(doc.updated_at),
            ),
        )

    def get_document(self, doc_id: str) -> Optional[Document]:
        row = self._db.fetchone("SELECT * FROM documents WHERE doc_id=?", (doc_id,))
        return self._row_to_document(row) if row else None

    def require_document(self, doc_id: str) -> Document:
        doc = self.get_document(doc_id)
        if doc is None:
            raise DocumentNotFound(doc_id)
        return doc

    def update_document(self, doc: Document) -> None:
        """Persist the mutable columns of ``doc``."""
        self._db.execute(
            """
            UPDATE documents
               SET title=?, status=?, allow_parallel=?, sent_at=?, expires_at=?, final_ref=?,
                   final_fingerprint=?, certificate_ref=?, cancel_reason=?, updated_at=?
             WHERE doc_id=?
            """,
            (
                doc.title, doc.status.value, int(doc.allow_parallel), _ts(doc.sent_at), _ts(doc.expires_at),
                doc.final_ref, doc.final_fingerprint, doc.certificate_ref, doc.cancel_reason,
                _ts(doc.updated_at), doc.doc_id,
            ),
        )

    def delete_document(self, doc_id: str) -> None:
        """Remove a document with its fields, recipients, assignments and job."""
        self._db.execute("DELETE FROM composition_jobs WHERE doc_id=?", (doc_id,))
        self._db.execute("DELETE FROM documents WHERE doc_id=?", (doc_id,))

    def list_documents(self, status: Optional[DocumentStatus] = None) -> List[Document]:
        if status is None:
            rows = self._db.fetchall("SELECT * FROM documents ORDER BY created_at, doc_id")
        else:
            rows = self._db.fetchall(
                "SELECT * FROM documents WHERE status=? ORDER BY created_at, doc_id",
                (status.value,),
            )
        return [self._row_to_document(r) for r in rows]

    # =========================================================================
    # Recipients
    # =========================================================================

    @staticmethod
    def _row_to_recipient(row: Dict[str, Any]) -> RecipientEntry:
        return RecipientEntry(
            recipient_id=row["recipient_id"],
            doc_id=row["doc_id"],
            contact=row["contact"],
            signing_order=int(row["signing_order"]),
            status=RecipientStatus(row["status"]),
            display_name=row["display_name"],
            token_hash=row["token_hash"],
            token_expires_at=_dt(row["token_expires_at"]),
            token_revoked=bool(row["token_revoked"]),
            created_at=_dt(row["created_at"]),
            completed_at=_dt(row["completed_at"]),
            decline_reason=row["decline_reason"],
            last_reminded_at=_dt(row["last_reminded_at"]),
        )

    def insert_recipient(self, entry: RecipientEntry) -> None:
        self._db.execute(
            """
            INSERT INTO recipients(recipient_id, doc_id, contact, display_name, signing_order,
                                   status, token_hash, token_expires_at, token_revoked,
                                   created_at, completed_at, decline_reason, last_reminded_at)
            VALUES(?,?,?,?,?,?,?,?,?,?,?,?,?)
            """,
            (
                entry.recipient_id, entry.doc_id, entry.contact, entry.display_name,
                entry.signing_order, entry.status.value, entry.token_hash,
                _ts(entry.token_expires_at), int(entry.token_revoked), _ts(entry.created_at),
                _ts(entry.completed_at), entry.decline_reason, _ts(entry.last_reminded_at),
            ),
        )

    def get_recipient(self, recipient_id: str) -> Optional[RecipientEntry]:
        row = self._db.fetchone("SELECT * FROM recipients WHERE recipient_id=?", (recipient_id,))
        return self._row_to_recipient(row) if row else None

    def list_recipients(self, doc_id: str) -> List[RecipientEntry]:
        rows = self._db.fetchall(
            "SELECT * FROM recipients WHERE doc_id=? ORDER BY signing_order, created_at, recipient_id",
            (doc_id,),
        )
        return [self._row_to_recipient(r) for r in rows]

    def update_recipient(self, entry: RecipientEntry) -> None:
        self._db.execute(
            """
            UPDATE recipients
               SET status=?, token_hash=?, token_expires_at=?, token_revoked=?,
                   completed_at=?, decline_reason=?, last_reminded_at=?
             WHERE recipient_id=?
            """,
            (
                entry.status.value, entry.token_hash, _ts(entry.token_expires_at),
                int(entry.token_revoked), _ts(entry.completed_at), entry.decline_reason,
                _ts(entry.last_reminded_at), entry.recipient_id,
            ),
        )

    def delete_recipient(self, recipient_id: str) -> None:
        self._db.execute("DELETE FROM recipients WHERE recipient_id=?", (recipient_id,))

    def find_recipient_by_token_hash(self, token_hash: str) -> Optional[RecipientEntry]:
        row = self._db.fetchone("SELECT * FROM recipients WHERE token_hash=?", (token_hash,))
        return self._row_to_recipient(row) if row else None

    # =========================================================================
    # Retired tokens
    # =========================================================================

    def retire_token(self, token_hash: str, recipient_id: str, doc_id: str,
                     retired_at: datetime) -> None:
        self._db.execute(
            "INSERT OR IGNORE INTO retired_tokens(token_hash, recipient_id, doc_id, retired_at) "
            "VALUES(?,?,?,?)",
            (token_hash, recipient_id, doc_id, _ts(retired_at)),
        )

    def find_retired_token(self, token_hash: str) -> Optional[Dict[str, Any]]:
        return self._db.fetchone("SELECT * FROM retired_tokens WHERE token_hash=?", (token_hash,))

    # =========================================================================
    # Fields
    # =========================================================================

    @staticmethod
    def _row_to_field(row: Dict[str, Any]) -> FieldDefinition:
        return FieldDefinition(
            field_id=row["field_id"],
            doc_id=row["doc_id"],
            field_type=FieldType(row["field_type"]),
            page_index=int(row["page_index"]),
            geometry=FieldGeometry(float(row["x"]), float(row["y"]), float(row["w"]), float(row["h"])),
            required=bool(row["required"]),
            recipient_id=row["recipient_id"],
            label=row["label"],
        )

    def insert_field(self, definition: FieldDefinition) -> None:
        g = definition.geometry
        self._db.execute(
            """
            INSERT INTO fields(field_id, doc_id, field_type, page_index, x, y, w, h,
                               required, recipient_id, label, position)
            VALUES(?,?,?,?,?,?,?,?,?,?,?,
                   (SELECT COALESCE(MAX(position), 0) + 1 FROM fields WHERE doc_id=?))
            """,
            (
                definition.field_id, definition.doc_id, definition.field_type.value,
                definition.page_index, g.x, g.y, g.width, g.height, int(definition.required),
                definition.recipient_id, definition.label, definition.doc_id,
            ),
        )

    def get_field(self, field_id: str) -> Optional[FieldDefinition]:
        row = self._db.fetchone("SELECT * FROM fields WHERE field_id=?", (field_id,))
        return self._row_to_field(row) if row else None

    def list_fields(self, doc_id: str) -> List[FieldDefinition]:
        rows = self._db.fetchall(
            "SELECT * FROM fields WHERE doc_id=? ORDER BY position, field_id", (doc_id,)
        )
        return [self._row_to_field(r) for r in rows]

    def set_field_recipient(self, field_id: str, recipient_id: Optional[str]) -> None:
        self._db.execute("UPDATE fields SET recipient_id=? WHERE field_id=?", (recipient_id, field_id))

    def delete_field(self, field_id: str) -> None:
        self._db.execute("DELETE FROM fields WHERE field_id=?", (field_id,))

    # =========================================================================
    # Assignments
    # =========================================================================

    def upsert_assignment(self, doc_id: str, assignment: FieldAssignment) -> None:
        self._db.execute(
            """
            INSERT INTO assignments(field_id, doc_id, recipient_id, value_json, filled_at)
            VALUES(?,?,?,?,?)
            ON CONFLICT(field_id) DO UPDATE SET
                recipient_id=excluded.recipient_id,
                value_json=excluded.value_json,
                filled_at=excluded.filled_at
            """,
            (
                assignment.field_id, doc_id, assignment.recipient_id,
                json.dumps(value_to_json(assignment.value), sort_keys=True),
                _ts(assignment.filled_at),
            ),
        )

    def list_assignments(self, doc_id: str) -> Dict[str, FieldAssignment]:
        rows = self._db.fetchall("SELECT * FROM assignments WHERE doc_id=?", (doc_id,))
        return {
            r["field_id"]: FieldAssignment(
                field_id=r["field_id"],
                recipient_id=r["recipient_id"],
                value=value_from_json(json.loads(r["value_json"])),
                filled_at=_dt(r["filled_at"]),
            )
            for r in rows
        }

    # =========================================================================
    # Audit log (append/read only)
    # =========================================================================

    def max_audit_sequence(self, doc_id: str) -> int:
        row = self._db.fetchone("SELECT MAX(seq) AS seq FROM audit_log WHERE doc_id=?", (doc_id,))
        return int(row["seq"]) if row and row["seq"] is not None else 0

    def insert_audit_entry(self, entry: AuditEntry) -> None:
        try:
            self._db.execute(
                "INSERT INTO audit_log(doc_id, seq, actor, action, occurred_at, metadata_json) "
                "VALUES(?,?,?,?,?,?)",
                (
                    entry.doc_id, entry.sequence, entry.actor, entry.action.value,
                    _ts(entry.occurred_at), json.dumps(entry.metadata, sort_keys=True, default=str),
                ),
            )
        except sqlite3.IntegrityError as ex:
            raise InvariantViolation(
                f"Audit sequence {entry.sequence} already used for document {entry.doc_id}"
            ) from ex

    def list_audit_entries(self, doc_id: str) -> List[AuditEntry]:
        rows = self._db.fetchall("SELECT * FROM audit_log WHERE doc_id=? ORDER BY seq", (doc_id,))
        return [
            AuditEntry(
                doc_id=r["doc_id"],
                sequence=int(r["seq"]),
                actor=r["actor"],
                action=AuditAction(r["action"]),
                occurred_at=_dt(r["occurred_at"]),
                metadata=json.loads(r["metadata_json"] or "{}"),
            )
            for r in rows
        ]

    # =========================================================================
    # Composition jobs
    # =========================================================================

    @staticmethod
    def _row_to_job(row: Dict[str, Any]) -> CompositionJob:
        return CompositionJob(
            doc_id=row["doc_id"],
            status=JobStatus(row["status"]),
            attempts=int(row["attempts"]),
            max_attempts=int(row["max_attempts"]),
            enqueued_at=_dt(row["enqueued_at"]),
            updated_at=_dt(row["updated_at"]),
            next_attempt_at=_dt(row["next_attempt_at"]),
            last_error=row["last_error"],
        )

    def get_job(self, doc_id: str) -> Optional[CompositionJob]:
        row = self._db.fetchone("SELECT * FROM composition_jobs WHERE doc_id=?", (doc_id,))
        return self._row_to_job(row) if row else None

    def save_job(self, job: CompositionJob) -> None:
        self._db.execute(
            """
            INSERT INTO composition_jobs(doc_id, status, attempts, max_attempts, last_error,
                                         next_attempt_at, enqueued_at, updated_at)
            VALUES(?,?,?,?,?,?,?,?)
            ON CONFLICT(doc_id) DO UPDATE SET
                status=excluded.status,
                attempts=excluded.attempts,
                max_attempts=excluded.max_attempts,
                last_error=excluded.last_error,
                next_attempt_at=excluded.next_attempt_at,
                enqueued_at=excluded.enqueued_at,
                updated_at=excluded.updated_at
            """,
            (
                job.doc_id, job.status.value, job.attempts, job.max_attempts, job.last_error,
                _ts(job.next_attempt_at), _ts(job.enqueued_at), _ts(job.updated_at),
            ),
        )

    def list_due_jobs(self, now: datetime, limit: int = 10) -> List[CompositionJob]:
        rows = self._db.fetchall(
            """
            SELECT * FROM composition_jobs
             WHERE status=? AND (next_attempt_at IS NULL OR next_attempt_at<=?)
             ORDER BY next_attempt_at, enqueued_at, doc_id
             LIMIT ?
            """,
            (JobStatus.QUEUED.value, _ts(now), limit),
        )
        return [self._row_to_job(r) for r in rows]

    def list_jobs(self, status: JobStatus) -> List[CompositionJob]:
        rows = self._db.fetchall(
            "SELECT * FROM composition_jobs WHERE status=? ORDER BY enqueued_at, doc_id",
            (status.value,),
        )
        return [self._row_to_job(r) for r in rows]
