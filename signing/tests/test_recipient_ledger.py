"""Recipient ledger, access tokens and the token guard."""
from __future__ import annotations

import unittest
from datetime import timedelta

import pytest

from signing.enum.audit_action import AuditAction
from signing.exceptions.errors import (
    LINK_INVALID_MESSAGE,
    DocumentNotEditable,
    DocumentNotPending,
    DuplicateSigningOrder,
    InvalidRecipient,
    TokenExpired,
    TokenInvalid,
    TokenRevoked,
)
from signing.logic.token_guard import hash_token
from signing.tests.helpers import make_draft, make_pdf


def test_orders_default_to_new_tiers(engine):
    doc = engine.issuer.create_document(make_pdf(), "NDA", "issuer-1")
    a = engine.issuer.add_recipient(doc.doc_id, "ann@example.com")
    b = engine.issuer.add_recipient(doc.doc_id, "bob@example.com")
    c = engine.issuer.add_recipient(doc.doc_id, "cy@example.com", signing_order=7)
    d = engine.issuer.add_recipient(doc.doc_id, "di@example.com")
    assert [a.signing_order, b.signing_order, c.signing_order, d.signing_order] == [1, 2, 7, 8]


@pytest.mark.parametrize("contact,order", [
    ("not-an-address", None),
    ("ann@example.com", 0),
    ("ann@example.com", True),
])
def test_invalid_recipient_input(engine, contact, order):
    doc = engine.issuer.create_document(make_pdf(), "NDA", "issuer-1")
    with pytest.raises(InvalidRecipient):
        engine.issuer.add_recipient(doc.doc_id, contact, order)


def test_contact_unique_per_document(engine):
    doc = engine.issuer.create_document(make_pdf(), "NDA", "issuer-1")
    engine.issuer.add_recipient(doc.doc_id, "ann@example.com")
    with pytest.raises(InvalidRecipient):
        engine.issuer.add_recipient(doc.doc_id, "ANN@example.com")


def test_parallel_tier_needs_permission(engine):
    strict = engine.issuer.create_document(make_pdf(), "NDA", "issuer-1", allow_parallel=False)
    engine.issuer.add_recipient(strict.doc_id, "ann@example.com", 1)
    with pytest.raises(DuplicateSigningOrder):
        engine.issuer.add_recipient(strict.doc_id, "bob@example.com", 1)

    relaxed = engine.issuer.create_document(make_pdf(), "NDA", "issuer-1", allow_parallel=True)
    engine.issuer.add_recipient(relaxed.doc_id, "ann@example.com", 1)
    assert engine.issuer.add_recipient(relaxed.doc_id, "bob@example.com", 1).signing_order == 1


def test_add_recipients_is_atomic(engine):
    doc = engine.issuer.create_document(make_pdf(), "NDA", "issuer-1")
    with pytest.raises(InvalidRecipient):
        engine.issuer.add_recipients(doc.doc_id, [
            {"contact": "ann@example.com"},
            {"contact": "bob@example.com", "signing_order": 2},
            {"contact": "broken"},
        ])
    assert engine.ledger.recipients(doc.doc_id) == []


def test_removed_recipient_unassigns_fields(engine):
    draft = make_draft(engine, [("ann@example.com", None), ("bob@example.com", None)])
    engine.issuer.remove_recipient(draft.recipient("bob@example.com").recipient_id)
    orphan = draft.fields_of("bob@example.com")[0]
    stored = {f.field_id: f for f in engine.fields.fields(draft.doc.doc_id)}
    assert stored[orphan.field_id].recipient_id is None


def test_recipients_frozen_after_send(engine):
    draft = make_draft(engine, [("ann@example.com", None)])
    engine.issuer.send(draft.doc.doc_id, "issuer-1")
    with pytest.raises(DocumentNotEditable):
        engine.issuer.add_recipient(draft.doc.doc_id, "late@example.com")
    with pytest.raises(DocumentNotEditable):
        engine.issuer.remove_recipient(draft.recipient("ann@example.com").recipient_id)


def test_send_issues_one_token_per_recipient(engine, clock):
    draft = make_draft(engine, [("ann@example.com", None), ("bob@example.com", None)])
    deadline = clock() + timedelta(days=3)
    tokens = engine.issuer.send(draft.doc.doc_id, "issuer-1", expires_at=deadline)
    assert set(tokens) == {r.recipient_id for r in draft.recipients}
    assert len(set(tokens.values())) == 2
    for rid, token in tokens.items():
        stored = engine.repository.get_recipient(rid)
        assert stored.token_hash == hash_token(token)
        assert stored.token_hash != token
        # token TTL (30 days) is longer than the document deadline
        assert stored.token_expires_at == deadline


class TestTokenGuard(unittest.TestCase):
    """Guard outcomes for the token life cycle."""

    @pytest.fixture(autouse=True)
    def _setup(self, engine, clock):
        self.engine = engine
        self.clock = clock
        self.draft = make_draft(engine, [("ann@example.com", None), ("bob@example.com", None)])
        self.tokens = engine.issuer.send(
            self.draft.doc.doc_id, "issuer-1", expires_at=clock() + timedelta(days=2)
        )
        self.ann = self.draft.recipient("ann@example.com").recipient_id

    def test_valid_token(self) -> None:
        grant = self.engine.guard.authorize(self.tokens[self.ann])
        self.assertEqual(grant.doc_id, self.draft.doc.doc_id)
        self.assertEqual(grant.recipient_id, self.ann)

    def test_unknown_token(self) -> None:
        with self.assertRaises(TokenInvalid) as ctx:
            self.engine.guard.authorize("definitely-not-issued")
        self.assertEqual(ctx.exception.public_message, LINK_INVALID_MESSAGE)
        with self.assertRaises(TokenInvalid):
            self.engine.guard.authorize("")

    def test_expired_token(self) -> None:
        self.clock.advance(days=2)
        with self.assertRaises(TokenExpired) as ctx:
            self.engine.guard.authorize(self.tokens[self.ann])
        self.assertEqual(ctx.exception.public_message, LINK_INVALID_MESSAGE)

    def test_revoked_token(self) -> None:
        self.engine.issuer.cancel(self.draft.doc.doc_id, "issuer-1", "superseded")
        with self.assertRaises(TokenRevoked):
            self.engine.guard.authorize(self.tokens[self.ann])

    def test_expiry_is_reported_before_revocation(self) -> None:
        self.engine.issuer.cancel(self.draft.doc.doc_id, "issuer-1")
        self.clock.advance(days=3)
        with self.assertRaises(TokenExpired):
            self.engine.guard.authorize(self.tokens[self.ann])

    def test_rotation_retires_the_old_token(self) -> None:
        fresh = self.engine.issuer.rotate_token(self.ann, "issuer-1")
        self.assertNotEqual(fresh, self.tokens[self.ann])
        with self.assertRaises(TokenRevoked) as ctx:
            self.engine.guard.authorize(self.tokens[self.ann])
        self.assertEqual(ctx.exception.recipient_id, self.ann)
        self.assertEqual(self.engine.guard.authorize(fresh).recipient_id, self.ann)

        rotated = [e for e in self.engine.issuer.get_audit_trail(self.draft.doc.doc_id)
                   if e.action == AuditAction.TOKEN_ROTATED]
        self.assertEqual(len(rotated), 1)
        self.assertEqual(rotated[0].metadata["recipient_id"], self.ann)
        self.assertNotIn(fresh, str(rotated[0].metadata))

    def test_rotation_needs_a_pending_document(self) -> None:
        self.engine.issuer.cancel(self.draft.doc.doc_id, "issuer-1")
        with self.assertRaises(DocumentNotPending):
            self.engine.issuer.rotate_token(self.ann, "issuer-1")


def test_rotation_on_draft_is_refused(engine):
    draft = make_draft(engine, [("ann@example.com", None)])
    with pytest.raises(DocumentNotPending):
        engine.issuer.rotate_token(draft.recipient("ann@example.com").recipient_id, "issuer-1")
