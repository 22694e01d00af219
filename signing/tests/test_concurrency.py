"""Locking, audit sequencing and races between recipients, issuers and the sweeper."""
from __future__ import annotations

import threading
import time
from concurrent.futures import ThreadPoolExecutor

import pytest

from signing.enum.audit_action import AuditAction
from signing.enum.document_status import DocumentStatus
from signing.enum.field_type import FieldType
from signing.exceptions.errors import InvariantViolation, OutOfOrder, TokenRevoked
from signing.logic.document_lock import DocumentLocks
from signing.models.field_values import TextValue
from signing.tests.helpers import make_draft, sign


def test_locks_are_per_document():
    locks = DocumentLocks()
    entered = threading.Event()
    release = threading.Event()

    def hold_a():
        with locks.hold("doc_a"):
            entered.set()
            release.wait(5)

    t = threading.Thread(target=hold_a)
    t.start()
    try:
        assert entered.wait(5)
        # doc_a is held elsewhere; doc_b is free
        with locks.hold("doc_b"):
            assert locks.held("doc_b")
            assert not locks.held("doc_a")
    finally:
        release.set()
        t.join(5)


def test_lock_is_reentrant_and_slots_are_dropped():
    locks = DocumentLocks()
    with locks.hold("doc_a"):
        with locks.hold("doc_a"):
            assert locks.held("doc_a")
        assert locks.held("doc_a")
    assert not locks.held("doc_a")
    assert len(locks) == 0


def test_audit_append_requires_the_document_lock(engine):
    draft = make_draft(engine, [("a@example.com", None)])
    with pytest.raises(InvariantViolation):
        engine.audit.append(draft.doc.doc_id, "issuer-1", AuditAction.SENT)


def test_audit_sequence_is_gap_free_under_concurrency(engine):
    contacts = [(f"p{i}@example.com", 1) for i in range(4)]
    draft = make_draft(engine, contacts, field_types=(FieldType.TEXT, FieldType.TEXT, FieldType.DATE))
    tokens = engine.issuer.send(draft.doc.doc_id, "issuer-1")

    def work(recipient):
        token = tokens[recipient.recipient_id]
        for round_no in range(3):
            for definition in draft.fields[recipient.recipient_id]:
                value = "2026-03-02" if definition.field_type == FieldType.DATE else f"v{round_no}"
                engine.recipient.submit_field(token, definition.field_id, value)
        engine.recipient.complete_signing(token)

    with ThreadPoolExecutor(max_workers=4) as pool:
        for future in [pool.submit(work, r) for r in draft.recipients]:
            future.result()

    trail = engine.issuer.get_audit_trail(draft.doc.doc_id)
    assert [e.sequence for e in trail] == list(range(1, len(trail) + 1))
    assert [e.action for e in trail].count(AuditAction.FIELD_FILLED) == 4 * 3 * 3
    assert [e.action for e in trail].count(AuditAction.RECIPIENT_COMPLETED) == 4
    assert engine.queue.get(draft.doc.doc_id).attempts == 0


def test_only_one_composition_is_queued_by_a_parallel_tier(engine):
    contacts = [(f"p{i}@example.com", 1) for i in range(5)]
    draft = make_draft(engine, contacts)
    tokens = engine.issuer.send(draft.doc.doc_id, "issuer-1")
    barrier = threading.Barrier(len(draft.recipients))

    def work(recipient):
        token = tokens[recipient.recipient_id]
        engine.recipient.submit_field(token, draft.fields[recipient.recipient_id][0].field_id, "ok")
        barrier.wait(5)
        engine.recipient.complete_signing(token)

    with ThreadPoolExecutor(max_workers=len(draft.recipients)) as pool:
        for future in [pool.submit(work, r) for r in draft.recipients]:
            future.result()

    assert engine.runner.run_pending() == 1
    doc = engine.repository.require_document(draft.doc.doc_id)
    assert doc.status == DocumentStatus.COMPLETED
    actions = [e.action for e in engine.issuer.get_audit_trail(doc.doc_id)]
    assert actions.count(AuditAction.COMPOSED) == 1


def test_rotation_refuses_a_submission_waiting_for_the_lock(engine):
    draft = make_draft(engine, [("a@example.com", None)])
    doc_id = draft.doc.doc_id
    a = draft.recipients[0]
    old = engine.issuer.send(doc_id, "issuer-1")[a.recipient_id]
    field = draft.fields_of("a@example.com")[0]
    outcome = {}

    def submit():
        try:
            engine.recipient.submit_field(old, field.field_id, "stale")
        except TokenRevoked as ex:
            outcome["error"] = ex

    with engine.locks.hold(doc_id):
        t = threading.Thread(target=submit)
        t.start()
        time.sleep(0.1)
        fresh = engine.issuer.rotate_token(a.recipient_id, "issuer-1")
    t.join(5)

    assert isinstance(outcome.get("error"), TokenRevoked)
    assert engine.repository.list_assignments(doc_id) == {}
    assert engine.recipient.submit_field(fresh, field.field_id, "fresh").recipient_ready


def test_cancel_during_composition_wins(engine):
    draft = make_draft(engine, [("a@example.com", None)])
    doc_id = draft.doc.doc_id
    tokens = engine.issuer.send(doc_id, "issuer-1")
    sign(engine, tokens[draft.recipients[0].recipient_id], draft.fields_of("a@example.com"))

    job = engine.queue.claim_next()
    rendered = engine.composition.render(doc_id)
    engine.issuer.cancel(doc_id, "issuer-1", "pulled back")

    applied = engine.workflow.apply_composition(
        doc_id, attempt=job.attempts,
        final_ref=engine.store.put_artifact(rendered.payload),
        final_fingerprint=rendered.fingerprint,
        certificate_ref=engine.store.put_artifact(rendered.record.to_json_bytes()),
        certified_through=rendered.certificate.certified_through,
    )
    assert applied is False
    doc = engine.repository.require_document(doc_id)
    assert doc.status == DocumentStatus.CANCELLED
    assert doc.final_ref is None
    assert engine.runner.process(job) is None


def test_second_tier_cannot_fill_while_first_tier_signs(engine):
    draft = make_draft(
        engine,
        [("a1@example.com", 1), ("a2@example.com", 1), ("b1@example.com", 2), ("b2@example.com", 2)],
        allow_parallel=True,
    )
    doc_id = draft.doc.doc_id
    tokens = engine.issuer.send(doc_id, "issuer-1")
    tier_one = [r for r in draft.recipients if r.signing_order == 1]
    tier_two = [r for r in draft.recipients if r.signing_order == 2]
    start = threading.Barrier(len(draft.recipients))
    refused = {r.recipient_id: 0 for r in tier_two}

    def sign_first_tier(recipient):
        start.wait(5)
        sign(engine, tokens[recipient.recipient_id], draft.fields[recipient.recipient_id])

    def push_second_tier(recipient):
        field = draft.fields[recipient.recipient_id][0]
        start.wait(5)
        deadline = time.monotonic() + 10
        while time.monotonic() < deadline:
            try:
                return engine.recipient.submit_field(tokens[recipient.recipient_id], field.field_id, recipient.contact)
            except OutOfOrder:
                refused[recipient.recipient_id] += 1
                time.sleep(0.001)
        raise AssertionError(f"{recipient.contact} never got its turn")

    with ThreadPoolExecutor(max_workers=len(draft.recipients)) as pool:
        futures = [pool.submit(sign_first_tier, r) for r in tier_one]
        futures += [pool.submit(push_second_tier, r) for r in tier_two]
        for future in futures:
            future.result(timeout=20)

    trail = engine.issuer.get_audit_trail(doc_id)
    tier_one_ids = {r.recipient_id for r in tier_one}
    tier_two_ids = {r.recipient_id for r in tier_two}
    unlocked_at = max(
        e.sequence for e in trail if e.action == AuditAction.RECIPIENT_COMPLETED and e.actor in tier_one_ids
    )
    second_tier_entries = [e for e in trail if e.actor in tier_two_ids]
    for entry in second_tier_entries:
        if entry.action == AuditAction.FIELD_FILLED:
            assert entry.sequence > unlocked_at
        elif entry.action == AuditAction.ACCESS_DENIED:
            assert entry.sequence < unlocked_at
            assert entry.metadata["reason"] == "OutOfOrder"
    denials = [e for e in second_tier_entries if e.action == AuditAction.ACCESS_DENIED]
    assert len(denials) == sum(refused.values())

    assignments = engine.repository.list_assignments(doc_id)
    for recipient in tier_two:
        field = draft.fields[recipient.recipient_id][0]
        assert assignments[field.field_id].value == TextValue(text=recipient.contact)
