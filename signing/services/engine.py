"""
Engine wiring.

``build_engine`` assembles every component from an :class:`AppConfig`. The
collaborators a deployment typically swaps (store, event sink, signer,
clock) can be injected; everything else follows from the config.
"""
from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Optional

from core.config.config_service import AppConfig
from signature.logic.signature_vault import InvalidSignatureImage, SignatureVault, load_keyring
from signing.adapters.database_adapter import DatabaseAdapter
from signing.adapters.event_sink import EventSink, LoggingEventSink
from signing.adapters.filesystem_storage_adapter import FilesystemArtifactStore
from signing.adapters.signature_adapter import ArtifactSigner
from signing.adapters.sqlite_adapter import SQLiteAdapter
from signing.adapters.storage_adapter import ArtifactStore
from signing.exceptions.errors import InvalidFieldValue
from signing.logic.audit_log import AuditLog
from signing.logic.clock import Clock, utc_now
from signing.logic.composition_engine import CompositionEngine
from signing.logic.document_lock import DocumentLocks
from signing.logic.expiry_sweeper import ExpirySweeper
from signing.logic.field_model import FieldModel
from signing.logic.job_runner import CompositionJobRunner, CompositionQueue
from signing.logic.recipient_ledger import RecipientLedger
from signing.logic.token_guard import TokenGuard
from signing.logic.workflow_service import WorkflowService
from signing.repository.signing_repository import SigningRepository
from signing.services.issuer_service import IssuerService
from signing.services.recipient_service import RecipientService

logger = logging.getLogger(__name__)


@dataclass
class SigningEngine:
    config: AppConfig
    db: DatabaseAdapter
    repository: SigningRepository
    locks: DocumentLocks
    store: ArtifactStore
    vault: SignatureVault
    events: EventSink
    audit: AuditLog
    guard: TokenGuard
    ledger: RecipientLedger
    fields: FieldModel
    queue: CompositionQueue
    workflow: WorkflowService
    composition: CompositionEngine
    runner: CompositionJobRunner
    sweeper: ExpirySweeper
    issuer: IssuerService
    recipient: RecipientService

    def start(self) -> None:
        """Recover jobs of a previous run, then start workers and the sweeper."""
        self.runner.recover_stale_jobs()
        self.runner.start()
        self.sweeper.start()

    def stop(self, timeout: Optional[float] = None) -> None:
        self.sweeper.stop(timeout)
        self.runner.stop(timeout)

    def close(self) -> None:
        self.stop()
        self.db.close()


def _image_sink(vault: SignatureVault):
    def store(data: bytes) -> str:
        try:
            return vault.store_image(data)
        except InvalidSignatureImage as ex:
            raise InvalidFieldValue(str(ex)) from ex
    return store


def build_engine(
    config: AppConfig,
    *,
    clock: Clock = utc_now,
    events: Optional[EventSink] = None,
    store: Optional[ArtifactStore] = None,
    signer: Optional[ArtifactSigner] = None,
    db: Optional[DatabaseAdapter] = None,
) -> SigningEngine:
    db = db or SQLiteAdapter(config.database.path)
    repository = SigningRepository(db)
    locks = DocumentLocks()
    store = store or FilesystemArtifactStore(config.storage.artifacts_dir)
    vault = SignatureVault(store, load_keyring(config.security.signature_key_file))
    events = events or LoggingEventSink()

    audit = AuditLog(repository, locks, clock)
    guard = TokenGuard(repository, clock)
    ledger = RecipientLedger(repository, locks, audit, config.tokens, clock)
    fields = FieldModel(repository, locks)
    queue = CompositionQueue(repository, config.composition, clock)
    workflow = WorkflowService(
        repository=repository,
        locks=locks,
        audit=audit,
        ledger=ledger,
        guard=guard,
        queue=queue,
        events=events,
        config=config.workflow,
        image_sink=_image_sink(vault),
        clock=clock,
    )
    composition = CompositionEngine(
        repository=repository,
        locks=locks,
        store=store,
        vault=vault,
        workflow=workflow,
        signer=signer,
    )
    runner = CompositionJobRunner(queue, composition, config.composition)
    sweeper = ExpirySweeper(repository, workflow, config.sweep, clock)
    issuer = IssuerService(
        repository=repository,
        locks=locks,
        store=store,
        fields=fields,
        ledger=ledger,
        audit=audit,
        queue=queue,
        workflow=workflow,
        composition=composition,
    )
    recipient = RecipientService(repository=repository, workflow=workflow, queue=queue)
    logger.info("Signing engine ready (db=%s, artifacts=%s)", config.database.path, config.storage.artifacts_dir)
    return SigningEngine(
        config=config,
        db=db,
        repository=repository,
        locks=locks,
        store=store,
        vault=vault,
        events=events,
        audit=audit,
        guard=guard,
        ledger=ledger,
        fields=fields,
        queue=queue,
        workflow=workflow,
        composition=composition,
        runner=runner,
        sweeper=sweeper,
        issuer=issuer,
        recipient=recipient,
    )
