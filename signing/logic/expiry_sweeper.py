"""Periodic sweep: expire overdue documents and emit reminder events."""
from __future__ import annotations

import logging
import threading
from dataclasses import dataclass, field
from typing import List, Optional

from core.config.config_service import SweepConfig
from signing.enum.document_status import DocumentStatus
from signing.exceptions.errors import InvariantViolation
from signing.logic.clock import Clock, utc_now
from signing.logic.workflow_service import WorkflowService
from signing.repository.signing_repository import SigningRepository

logger = logging.getLogger(__name__)


@dataclass
class SweepResult:
    expired: List[str] = field(default_factory=list)
    reminders: int = 0


class ExpirySweeper:
    def __init__(
        self,
        repository: SigningRepository,
        workflow: WorkflowService,
        cfg: SweepConfig,
        clock: Clock = utc_now,
    ) -> None:
        self._repo = repository
        self._workflow = workflow
        self._cfg = cfg
        self._clock = clock
        self._stop = threading.Event()
        self._thread: Optional[threading.Thread] = None

    def sweep_once(self) -> SweepResult:
        result = SweepResult()
        now = self._clock()
        for doc in self._repo.list_documents(DocumentStatus.PENDING):
            if doc.is_past_deadline(now):
                # competes with completion for the lock; a no-op if it lost
                if self._workflow.expire_if_due(doc.doc_id):
                    result.expired.append(doc.doc_id)
                continue
            result.reminders += len(self._workflow.remind_due(doc.doc_id))
        if result.expired or result.reminders:
            logger.info("Sweep: %d expired, %d reminder(s)", len(result.expired), result.reminders)
        return result

    def start(self) -> None:
        if self._thread is not None:
            return
        self._stop.clear()
        self._thread = threading.Thread(target=self._loop, name="expiry-sweeper", daemon=True)
        self._thread.start()

    def _loop(self) -> None:
        while not self._stop.wait(self._cfg.interval_seconds):
            try:
                self.sweep_once()
            except InvariantViolation:
                logger.critical("Invariant violated during sweep; sweeper stopping")
                raise
            except Exception:
                logger.exception("Sweep failed; retrying next interval")

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        if self._thread is not None:
            self._thread.join(timeout)
            self._thread = None
