"""
Composition job queue and worker pool.

Jobs live in the ``composition_jobs`` table, one row per document, so a crash
loses nothing: ``recover_stale_jobs`` puts RUNNING rows back in the queue at
start-up. Every attempt carries its attempt number; status updates for an
attempt that is no longer current are ignored, so a timed-out render that
finishes late cannot overwrite a newer attempt's outcome.
"""
from __future__ import annotations

import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from concurrent.futures import TimeoutError as FutureTimeout
from datetime import timedelta
from typing import List, Optional, Protocol

from core.config.config_service import CompositionConfig
from signing.enum.job_status import JobStatus
from signing.exceptions.errors import (
    CompositionTimeout,
    InvariantViolation,
    SigningValidationError,
    TransientError,
)
from signing.logic.clock import Clock, utc_now
from signing.models.composition_job import CompositionJob
from signing.repository.signing_repository import SigningRepository

logger = logging.getLogger(__name__)


class Composer(Protocol):
    def compose(self, doc_id: str, attempt: Optional[int] = None) -> Optional[str]: ...


class CompositionQueue:
    """DB-backed queue. All methods are safe to call from any thread."""

    def __init__(self, repo: SigningRepository, cfg: CompositionConfig, clock: Clock = utc_now) -> None:
        self._repo = repo
        self._cfg = cfg
        self._clock = clock
        self._wakeup = threading.Condition()

    # ------------------------------------------------------------------ #
    def get(self, doc_id: str) -> Optional[CompositionJob]:
        return self._repo.get_job(doc_id)

    def is_in_flight(self, doc_id: str) -> bool:
        job = self._repo.get_job(doc_id)
        return job is not None and job.status.in_flight

    def backoff_seconds(self, attempt: int) -> float:
        return min(self._cfg.backoff_base_seconds * 2 ** max(0, attempt - 1), self._cfg.backoff_max_seconds)

    def enqueue(self, doc_id: str) -> bool:
        """
        Queue composition for ``doc_id``. Called with the document lock held.

        Returns False (no-op) when a job is already queued, running or done.
        """
        now = self._clock()
        with self._repo.db.transaction():
            job = self._repo.get_job(doc_id)
            if job is not None and job.status in (JobStatus.QUEUED, JobStatus.RUNNING, JobStatus.SUCCEEDED):
                logger.debug("Composition for %s already %s", doc_id, job.status.value)
                return False
            self._repo.save_job(CompositionJob(
                doc_id=doc_id,
                status=JobStatus.QUEUED,
                attempts=0,
                max_attempts=self._cfg.max_attempts,
                enqueued_at=now,
                updated_at=now,
                next_attempt_at=now,
            ))
        logger.info("Composition queued for %s", doc_id)
        return True

    def notify(self) -> None:
        with self._wakeup:
            self._wakeup.notify_all()

    def wait(self, timeout: float) -> None:
        with self._wakeup:
            self._wakeup.wait(timeout)

    def claim_next(self) -> Optional[CompositionJob]:
        """Atomically move the oldest due job to RUNNING and bump its attempt."""
        now = self._clock()
        with self._repo.db.transaction():
            due = self._repo.list_due_jobs(now, limit=1)
            if not due:
                return None
            job = due[0]
            job.status = JobStatus.RUNNING
            job.attempts += 1
            job.updated_at = now
            job.next_attempt_at = None
            self._repo.save_job(job)
        return job

    def _current(self, doc_id: str, attempt: int) -> Optional[CompositionJob]:
        job = self._repo.get_job(doc_id)
        if job is None or job.status != JobStatus.RUNNING or job.attempts != attempt:
            return None
        return job

    def mark_succeeded(self, doc_id: str, attempt: Optional[int]) -> bool:
        """Record success. Runs inside the completion transaction."""
        now = self._clock()
        with self._repo.db.transaction():
            job = self._repo.get_job(doc_id)
            if job is None:
                return attempt is None
            if attempt is not None and (job.status != JobStatus.RUNNING or job.attempts != attempt):
                return False
            job.status = JobStatus.SUCCEEDED
            job.last_error = None
            job.next_attempt_at = None
            job.updated_at = now
            self._repo.save_job(job)
        return True

    def mark_retry(self, doc_id: str, attempt: int, error: str) -> Optional[CompositionJob]:
        """Schedule the next attempt, or fail the job when attempts are used up."""
        now = self._clock()
        with self._repo.db.transaction():
            job = self._current(doc_id, attempt)
            if job is None:
                return None
            job.last_error = error
            job.updated_at = now
            if job.attempts >= job.max_attempts:
                job.status = JobStatus.FAILED
                job.next_attempt_at = None
            else:
                job.status = JobStatus.QUEUED
                job.next_attempt_at = now + timedelta(seconds=self.backoff_seconds(job.attempts))
            self._repo.save_job(job)
        return job

    def mark_failed(self, doc_id: str, attempt: int, error: str) -> Optional[CompositionJob]:
        now = self._clock()
        with self._repo.db.transaction():
            job = self._current(doc_id, attempt)
            if job is None:
                return None
            job.status = JobStatus.FAILED
            job.last_error = error
            job.next_attempt_at = None
            job.updated_at = now
            self._repo.save_job(job)
        return job

    def cancel(self, doc_id: str) -> bool:
        """Stop a queued or running job. Called with the document lock held."""
        now = self._clock()
        with self._repo.db.transaction():
            job = self._repo.get_job(doc_id)
            if job is None or not job.status.in_flight:
                return False
            job.status = JobStatus.CANCELLED
            job.next_attempt_at = None
            job.updated_at = now
            self._repo.save_job(job)
        return True

    def requeue_failed(self, doc_id: str) -> bool:
        """Give a FAILED job a fresh attempt budget."""
        now = self._clock()
        with self._repo.db.transaction():
            job = self._repo.get_job(doc_id)
            if job is None or job.status != JobStatus.FAILED:
                return False
            job.status = JobStatus.QUEUED
            job.max_attempts = job.attempts + self._cfg.max_attempts
            job.next_attempt_at = now
            job.updated_at = now
            self._repo.save_job(job)
        self.notify()
        return True

    def recover_stale(self) -> int:
        """Requeue RUNNING jobs left behind by a crashed process."""
        now = self._clock()
        with self._repo.db.transaction():
            stale = self._repo.list_jobs(JobStatus.RUNNING)
            for job in stale:
                job.status = JobStatus.QUEUED
                job.next_attempt_at = now
                job.updated_at = now
                job.last_error = job.last_error or "worker stopped mid-composition"
                self._repo.save_job(job)
        if stale:
            logger.warning("Requeued %d stale composition job(s)", len(stale))
            self.notify()
        return len(stale)


class CompositionJobRunner:
    """
    Drains the composition queue.

    ``start()`` launches worker threads that poll the queue; ``run_pending()``
    drains due jobs on the calling thread. Each render runs on an executor
    thread so it can be abandoned after ``timeout_seconds``.
    """

    def __init__(
        self,
        queue: CompositionQueue,
        composer: Composer,
        cfg: CompositionConfig,
    ) -> None:
        self._queue = queue
        self._composer = composer
        self._cfg = cfg
        self._executor = ThreadPoolExecutor(
            max_workers=max(1, cfg.workers) * 2, thread_name_prefix="compose"
        )
        self._stop = threading.Event()
        self._threads: List[threading.Thread] = []

    # ------------------------------------------------------------------ #
    def recover_stale_jobs(self) -> int:
        return self._queue.recover_stale()

    def run_pending(self, max_jobs: Optional[int] = None) -> int:
        """Process due jobs until none is due. Returns how many were processed."""
        done = 0
        while max_jobs is None or done < max_jobs:
            job = self._queue.claim_next()
            if job is None:
                break
            self.process(job)
            done += 1
        return done

    def process(self, job: CompositionJob) -> Optional[JobStatus]:
        """Run one claimed attempt and record its outcome."""
        attempt = job.attempts
        doc_id = job.doc_id
        logger.info("Composing %s (attempt %d/%d)", doc_id, attempt, job.max_attempts)
        future = self._executor.submit(self._composer.compose, doc_id, attempt)
        try:
            ref = future.result(timeout=self._cfg.timeout_seconds)
        except FutureTimeout:
            return self._retry(doc_id, attempt, CompositionTimeout(
                f"Composition of {doc_id} exceeded {self._cfg.timeout_seconds}s"
            ))
        except InvariantViolation as ex:
            logger.critical("Invariant violated while composing %s: %s", doc_id, ex)
            self._queue.mark_failed(doc_id, attempt, f"{type(ex).__name__}: {ex}")
            raise
        except (TransientError, OSError) as ex:
            return self._retry(doc_id, attempt, ex)
        except SigningValidationError as ex:
            logger.warning("Composition of %s rejected: %s", doc_id, ex)
            updated = self._queue.mark_failed(doc_id, attempt, f"{type(ex).__name__}: {ex}")
            return updated.status if updated else None
        except Exception as ex:
            logger.exception("Composition of %s failed unexpectedly", doc_id)
            updated = self._queue.mark_failed(doc_id, attempt, f"{type(ex).__name__}: {ex}")
            return updated.status if updated else None

        if ref is None:
            logger.info("Composition attempt %d of %s was superseded", attempt, doc_id)
            return None
        return JobStatus.SUCCEEDED

    def _retry(self, doc_id: str, attempt: int, ex: Exception) -> Optional[JobStatus]:
        updated = self._queue.mark_retry(doc_id, attempt, f"{type(ex).__name__}: {ex}")
        if updated is None:
            return None
        if updated.status == JobStatus.FAILED:
            logger.error("Composition of %s failed after %d attempt(s): %s", doc_id, attempt, ex)
        else:
            logger.warning(
                "Composition of %s failed (attempt %d), retry at %s: %s",
                doc_id, attempt, updated.next_attempt_at.isoformat(), ex,
            )
        return updated.status

    # ------------------------------------------------------------------ #
    def start(self) -> None:
        if self._threads:
            return
        self._stop.clear()
        for idx in range(max(1, self._cfg.workers)):
            t = threading.Thread(target=self._worker_loop, name=f"composition-worker-{idx}", daemon=True)
            t.start()
            self._threads.append(t)
        logger.info("Started %d composition worker(s)", len(self._threads))

    def _worker_loop(self) -> None:
        while not self._stop.is_set():
            job = self._queue.claim_next()
            if job is None:
                self._queue.wait(self._cfg.poll_interval_seconds)
                continue
            try:
                self.process(job)
            except InvariantViolation:
                logger.critical("Composition worker %s stopping", threading.current_thread().name)
                raise

    def stop(self, timeout: Optional[float] = None) -> None:
        self._stop.set()
        self._queue.notify()
        for t in self._threads:
            t.join(timeout)
        self._threads.clear()
        self._executor.shutdown(wait=False)
        logger.info("Composition workers stopped")
