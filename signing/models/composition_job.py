from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Optional

from signing.enum.job_status import JobStatus


@dataclass
class CompositionJob:
    """Queue entry for rendering one document's final artifact."""
    doc_id: str
    status: JobStatus
    attempts: int
    max_attempts: int
    enqueued_at: datetime
    updated_at: datetime
    next_attempt_at: Optional[datetime] = None
    last_error: Optional[str] = None

    @property
    def retries_left(self) -> int:
        return max(0, self.max_attempts - self.attempts)
