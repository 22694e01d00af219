"""Lifecycle transitions, recipient gates and signing order."""
from __future__ import annotations

from datetime import timedelta

import pytest

from signing.enum.audit_action import AuditAction
from signing.enum.document_status import DocumentStatus
from signing.enum.field_type import FieldType
from signing.enum.recipient_status import RecipientStatus
from signing.exceptions.errors import (
    DocumentNotFound,
    IncompleteFields,
    InvalidDeadline,
    InvalidTransition,
    OutOfOrder,
    RecipientNotActive,
    TokenRevoked,
    UnknownField,
)
from signing.logic.workflow_engine import WorkflowEngine
from signing.models.events import EventType
from signing.tests.helpers import make_draft, make_pdf, sign, value_for


def _actions(engine, doc_id):
    return [e.action for e in engine.issuer.get_audit_trail(doc_id)]


# ---------------------------------------------------------------------------
#  Pure rules
# ---------------------------------------------------------------------------

@pytest.mark.parametrize("current,target,allowed", [
    (DocumentStatus.DRAFT, DocumentStatus.PENDING, True),
    (DocumentStatus.DRAFT, DocumentStatus.COMPLETED, False),
    (DocumentStatus.PENDING, DocumentStatus.COMPLETED, True),
    (DocumentStatus.PENDING, DocumentStatus.EXPIRED, True),
    (DocumentStatus.PENDING, DocumentStatus.DRAFT, False),
    (DocumentStatus.COMPLETED, DocumentStatus.CANCELLED, False),
    (DocumentStatus.EXPIRED, DocumentStatus.PENDING, False),
])
def test_transition_table(current, target, allowed):
    assert WorkflowEngine.can_transition(current, target) is allowed


# ---------------------------------------------------------------------------
#  Send
# ---------------------------------------------------------------------------

def test_send_needs_recipients_and_fields(engine):
    doc = engine.issuer.create_document(make_pdf(), "NDA", "issuer-1")
    with pytest.raises(IncompleteFields):
        engine.issuer.send(doc.doc_id, "issuer-1")
    engine.issuer.add_recipient(doc.doc_id, "ann@example.com")
    with pytest.raises(IncompleteFields):
        engine.issuer.send(doc.doc_id, "issuer-1")
    assert engine.repository.require_document(doc.doc_id).status == DocumentStatus.DRAFT


def test_send_reports_unassigned_fields(engine):
    draft = make_draft(engine, [("ann@example.com", None), ("bob@example.com", None)])
    engine.issuer.remove_recipient(draft.recipient("bob@example.com").recipient_id)
    with pytest.raises(IncompleteFields) as ctx:
        engine.issuer.send(draft.doc.doc_id, "issuer-1")
    assert ctx.value.field_ids == tuple(f.field_id for f in draft.fields_of("bob@example.com"))


def test_send_rejects_past_deadline(engine, clock):
    draft = make_draft(engine, [("ann@example.com", None)])
    with pytest.raises(InvalidDeadline):
        engine.issuer.send(draft.doc.doc_id, "issuer-1", expires_at=clock() - timedelta(minutes=1))
    assert engine.repository.get_recipient(draft.recipients[0].recipient_id).token_hash is None


def test_send_once(engine, events, clock):
    draft = make_draft(engine, [("ann@example.com", None)])
    engine.issuer.send(draft.doc.doc_id, "issuer-1")
    with pytest.raises(InvalidTransition):
        engine.issuer.send(draft.doc.doc_id, "issuer-1")

    doc = engine.repository.require_document(draft.doc.doc_id)
    assert doc.status == DocumentStatus.PENDING
    assert doc.expires_at == clock() + timedelta(hours=720)
    sent = events.events(EventType.DOCUMENT_SENT)
    assert len(sent) == 1 and sent[0].doc_id == doc.doc_id
    assert _actions(engine, doc.doc_id) == [AuditAction.CREATED, AuditAction.SENT]


# ---------------------------------------------------------------------------
#  Recipient gates
# ---------------------------------------------------------------------------

def test_sequential_order_is_enforced(engine):
    """B acts before A: refused, nothing stored, the denial is audited."""
    draft = make_draft(engine, [("a@example.com", 1), ("b@example.com", 2)])
    tokens = engine.issuer.send(draft.doc.doc_id, "issuer-1")
    a = draft.recipient("a@example.com")
    b = draft.recipient("b@example.com")
    b_field = draft.fields_of("b@example.com")[0]

    with pytest.raises(OutOfOrder) as ctx:
        engine.recipient.submit_field(tokens[b.recipient_id], b_field.field_id, "Bob", "198.51.100.2")
    assert ctx.value.public_message == "It is not your turn to sign yet."
    assert engine.repository.list_assignments(draft.doc.doc_id) == {}

    denial = engine.issuer.get_audit_trail(draft.doc.doc_id)[-1]
    assert denial.action == AuditAction.ACCESS_DENIED
    assert denial.actor == b.recipient_id
    assert denial.metadata == {"operation": "submit_field", "reason": "OutOfOrder", "ip_address": "198.51.100.2"}

    sign(engine, tokens[a.recipient_id], draft.fields_of("a@example.com"))
    result = engine.recipient.submit_field(tokens[b.recipient_id], b_field.field_id, "Bob")
    assert result.recipient_ready


def test_parallel_tier_unlocks_only_when_all_complete(engine):
    draft = make_draft(
        engine,
        [("a1@example.com", 1), ("a2@example.com", 1), ("b@example.com", 2)],
        allow_parallel=True,
    )
    tokens = engine.issuer.send(draft.doc.doc_id, "issuer-1")
    token_of = {r.contact: tokens[r.recipient_id] for r in draft.recipients}

    sign(engine, token_of["a2@example.com"], draft.fields_of("a2@example.com"))
    with pytest.raises(OutOfOrder):
        sign(engine, token_of["b@example.com"], draft.fields_of("b@example.com"))

    sign(engine, token_of["a1@example.com"], draft.fields_of("a1@example.com"))
    sign(engine, token_of["b@example.com"], draft.fields_of("b@example.com"))
    assert engine.queue.get(draft.doc.doc_id) is not None


def test_complete_requires_every_required_field(engine):
    draft = make_draft(engine, [("ann@example.com", None)], field_types=(FieldType.TEXT, FieldType.CHECKBOX))
    token = next(iter(engine.issuer.send(draft.doc.doc_id, "issuer-1").values()))
    text_field, checkbox = draft.fields_of("ann@example.com")

    engine.recipient.submit_field(token, text_field.field_id, "Ann")
    result = engine.recipient.submit_field(token, checkbox.field_id, False)
    assert not result.recipient_ready
    assert result.missing_field_ids == [checkbox.field_id]
    with pytest.raises(IncompleteFields) as ctx:
        engine.recipient.complete_signing(token)
    assert ctx.value.field_ids == (checkbox.field_id,)

    # overwrite until completion
    assert engine.recipient.submit_field(token, checkbox.field_id, True).recipient_ready
    entry = engine.recipient.complete_signing(token)
    assert entry.status == RecipientStatus.COMPLETED
    assert engine.queue.is_in_flight(draft.doc.doc_id)


def test_field_of_another_recipient_is_unknown(engine):
    draft = make_draft(engine, [("a1@example.com", 1), ("a2@example.com", 1)])
    tokens = engine.issuer.send(draft.doc.doc_id, "issuer-1")
    a1 = draft.recipient("a1@example.com")
    with pytest.raises(UnknownField):
        engine.recipient.submit_field(
            tokens[a1.recipient_id], draft.fields_of("a2@example.com")[0].field_id, "x"
        )


def test_completed_recipient_cannot_act_again(engine):
    draft = make_draft(engine, [("a@example.com", 1), ("b@example.com", 2)])
    tokens = engine.issuer.send(draft.doc.doc_id, "issuer-1")
    a = draft.recipient("a@example.com")
    field = draft.fields_of("a@example.com")[0]
    sign(engine, tokens[a.recipient_id], [field])
    with pytest.raises(RecipientNotActive):
        engine.recipient.submit_field(tokens[a.recipient_id], field.field_id, "changed my mind")
    assert engine.repository.list_assignments(draft.doc.doc_id)[field.field_id].value.text == "Jane Roe"


def test_view_is_recorded_once(engine):
    draft = make_draft(engine, [("a@example.com", 1), ("b@example.com", 2)])
    tokens = engine.issuer.send(draft.doc.doc_id, "issuer-1")
    b = draft.recipient("b@example.com")

    view = engine.recipient.get_document_view(tokens[b.recipient_id], "192.0.2.1")
    assert view.recipient_status == RecipientStatus.VIEWED
    assert not view.may_act
    assert [f.field_id for f in view.pending_fields] == [f.field_id for f in draft.fields_of("b@example.com")]
    engine.recipient.get_document_view(tokens[b.recipient_id])
    assert _actions(engine, draft.doc.doc_id).count(AuditAction.VIEWED) == 1


# ---------------------------------------------------------------------------
#  Cancel, decline, discard
# ---------------------------------------------------------------------------

def test_cancel_revokes_tokens(engine, events):
    draft = make_draft(engine, [("ann@example.com", None)])
    token = next(iter(engine.issuer.send(draft.doc.doc_id, "issuer-1").values()))
    doc = engine.issuer.cancel(draft.doc.doc_id, "issuer-1", "wrong version")
    assert doc.status == DocumentStatus.CANCELLED
    assert doc.cancel_reason == "wrong version"

    with pytest.raises(TokenRevoked) as ctx:
        engine.recipient.get_document_view(token)
    assert ctx.value.public_message == "This link is no longer valid."
    assert [e.doc_id for e in events.events(EventType.DOCUMENT_CANCELLED)] == [doc.doc_id]
    with pytest.raises(InvalidTransition):
        engine.issuer.cancel(draft.doc.doc_id, "issuer-1")
    assert _actions(engine, doc.doc_id)[-2:] == [AuditAction.CANCELLED, AuditAction.ACCESS_DENIED]


def test_decline_cancels_the_document(engine, events):
    draft = make_draft(engine, [("a@example.com", 1), ("b@example.com", 2)])
    tokens = engine.issuer.send(draft.doc.doc_id, "issuer-1")
    b = draft.recipient("b@example.com")

    # declining does not wait for the recipient's turn
    doc = engine.recipient.decline(tokens[b.recipient_id], "terms changed")
    assert doc.status == DocumentStatus.CANCELLED
    assert "terms changed" in doc.cancel_reason

    assert engine.repository.get_recipient(b.recipient_id).status == RecipientStatus.DECLINED
    assert _actions(engine, doc.doc_id)[-2:] == [AuditAction.DECLINED, AuditAction.CANCELLED]
    assert len(events.events(EventType.DOCUMENT_CANCELLED)) == 1


def test_discard_draft_keeps_audit(engine):
    draft = make_draft(engine, [("ann@example.com", None)])
    engine.issuer.discard_draft(draft.doc.doc_id, "issuer-1")
    with pytest.raises(DocumentNotFound):
        engine.issuer.get_status(draft.doc.doc_id)
    assert _actions(engine, draft.doc.doc_id) == [AuditAction.CREATED]
    with pytest.raises(DocumentNotFound):
        engine.issuer.get_audit_trail("doc_unknown")


def test_status_report(engine):
    draft = make_draft(engine, [("a@example.com", 1), ("b@example.com", 2)],
                       field_types=(FieldType.TEXT, FieldType.DATE))
    tokens = engine.issuer.send(draft.doc.doc_id, "issuer-1")
    a = draft.recipient("a@example.com")
    first = draft.fields_of("a@example.com")[0]
    engine.recipient.submit_field(tokens[a.recipient_id], first.field_id, value_for(first.field_type))

    report = engine.issuer.get_status(draft.doc.doc_id)
    assert report.status == DocumentStatus.PENDING
    assert report.job is None
    summary = {s.contact: s for s in report.recipients}
    assert (summary["a@example.com"].fields_filled, summary["a@example.com"].fields_total) == (1, 2)
    assert summary["b@example.com"].fields_filled == 0
