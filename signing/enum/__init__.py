"""Canonical enumerations for the signing feature."""

from signing.enum.audit_action import AuditAction
from signing.enum.document_status import DocumentStatus
from signing.enum.field_type import FieldType
from signing.enum.job_status import JobStatus
from signing.enum.recipient_status import RecipientStatus

__all__ = [
    "AuditAction",
    "DocumentStatus",
    "FieldType",
    "JobStatus",
    "RecipientStatus",
]
