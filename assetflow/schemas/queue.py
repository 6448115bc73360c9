from __future__ import annotations

from datetime import datetime, timezone
from typing import Any

from pydantic import BaseModel, Field


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


class QueueJob(BaseModel):
    """Envelope stored by the queue fabric; ``id`` doubles as the ledger job_id."""

    id: str
    queue: str
    name: str
    data: dict[str, Any] = Field(default_factory=dict)
    attempt: int = 0
    max_attempts: int = 5
    enqueued_at: datetime = Field(default_factory=_utcnow)
    last_error: str | None = None

    @property
    def exhausted(self) -> bool:
        return self.attempt >= self.max_attempts


class FailureOutcome(BaseModel):
    job_id: str
    dead_lettered: bool
    retry_in_seconds: int | None = None
