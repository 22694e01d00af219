from __future__ import annotations

from enum import Enum


class JobStatus(str, Enum):
    """Composition job states."""

    QUEUED = "QUEUED"
    RUNNING = "RUNNING"
    SUCCEEDED = "SUCCEEDED"
    FAILED = "FAILED"
    CANCELLED = "CANCELLED"

    @property
    def in_flight(self) -> bool:
        return self in (JobStatus.QUEUED, JobStatus.RUNNING)
