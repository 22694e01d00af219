# signing/logic/workflow_engine.py
"""
Workflow rules & guards for the signing feature.

- Stateless: pure transition/guard logic, no storage or locking here.
- Keeps the set of transitions small & explicit:

    DRAFT -> PENDING -> COMPLETED
                     -> CANCELLED
                     -> EXPIRED

  COMPLETED, CANCELLED and EXPIRED are terminal.
"""

from __future__ import annotations

from typing import Dict, FrozenSet, Iterable, List, Mapping, Optional

from signing.enum.document_status import DocumentStatus
from signing.enum.recipient_status import RecipientStatus
from signing.exceptions.errors import DocumentNotEditable, InvalidTransition
from signing.models.document import Document
from signing.models.field_definition import FieldAssignment, FieldDefinition
from signing.models.field_values import is_filled
from signing.models.recipient import RecipientEntry

_TRANSITIONS: Dict[DocumentStatus, FrozenSet[DocumentStatus]] = {
    DocumentStatus.DRAFT: frozenset({DocumentStatus.PENDING}),
    DocumentStatus.PENDING: frozenset({
        DocumentStatus.COMPLETED,
        DocumentStatus.CANCELLED,
        DocumentStatus.EXPIRED,
    }),
}


class WorkflowEngine:
    """Stateless rules engine; the workflow service persists resulting changes."""

    # ----------------- Transitions -------------------------------------------
    @staticmethod
    def can_transition(current: DocumentStatus, target: DocumentStatus) -> bool:
        return target in _TRANSITIONS.get(current, frozenset())

    @classmethod
    def ensure_transition(cls, doc: Document, target: DocumentStatus) -> None:
        if not cls.can_transition(doc.status, target):
            raise InvalidTransition(doc.doc_id, doc.status, target)

    @staticmethod
    def ensure_editable(doc: Document) -> None:
        if not doc.is_editable:
            raise DocumentNotEditable(doc.doc_id, doc.status)

    # ----------------- Ordering ----------------------------------------------
    @staticmethod
    def active_tier(recipients: Iterable[RecipientEntry]) -> Optional[int]:
        """Lowest signing order that still has a recipient who has not completed."""
        open_orders = [r.signing_order for r in recipients if r.status != RecipientStatus.COMPLETED]
        return min(open_orders) if open_orders else None

    @classmethod
    def is_turn_of(cls, recipient: RecipientEntry, recipients: Iterable[RecipientEntry]) -> bool:
        return cls.active_tier(recipients) == recipient.signing_order

    @staticmethod
    def all_completed(recipients: Iterable[RecipientEntry]) -> bool:
        items = list(recipients)
        return bool(items) and all(r.status == RecipientStatus.COMPLETED for r in items)

    # ----------------- Field bookkeeping -------------------------------------
    @staticmethod
    def missing_required_fields(
        fields: Iterable[FieldDefinition],
        assignments: Mapping[str, FieldAssignment],
        recipient_id: Optional[str] = None,
    ) -> List[str]:
        """Ids of required fields (of one recipient, or of all) with no usable value."""
        missing = []
        for f in fields:
            if not f.required:
                continue
            if recipient_id is not None and f.recipient_id != recipient_id:
                continue
            a = assignments.get(f.field_id)
            if a is None or a.recipient_id != f.recipient_id or not is_filled(a.value):
                missing.append(f.field_id)
        return missing

    @classmethod
    def send_problems(cls, recipients: List[RecipientEntry], fields: List[FieldDefinition]) -> List[str]:
        """Reasons a draft cannot be sent yet (empty when it can)."""
        problems = []
        if not recipients:
            problems.append("no recipients")
        if not any(f.required for f in fields):
            problems.append("no required field")
        unassigned = cls.unassigned_fields(recipients, fields)
        if unassigned:
            problems.append("unassigned fields: " + ", ".join(unassigned))
        return problems

    @staticmethod
    def unassigned_fields(recipients: List[RecipientEntry], fields: List[FieldDefinition]) -> List[str]:
        known = {r.recipient_id for r in recipients}
        return [f.field_id for f in fields if f.recipient_id not in known]
