"""Contract between the worker core and durable job storage."""

from __future__ import annotations

from collections.abc import Collection
from datetime import datetime, timezone
from typing import Protocol

from ..schemas.job import FileUpdate, JobRecord, JobStatus, QueuedJob

DEFAULT_UPLOAD_MAX_BYTES = 20 * 1024 * 1024
MAX_LIST_LIMIT = 200


class JobRepository(Protocol):
    """Durable queue and record store consumed by the scheduler."""

    def list_queued(self, limit: int) -> list[QueuedJob]:
        """Return up to ``limit`` queued jobs, oldest first."""

    def get_job(self, job_id: str) -> JobRecord | None:
        """Return the job, or ``None`` when it does not exist."""

    def update_job_status(
        self,
        job_id: str,
        status: JobStatus,
        error_message: str | None = None,
        *,
        expected: JobStatus | None = None,
    ) -> bool:
        """Persist a status change.

        When ``expected`` is given the write only applies if the stored status
        still equals it. Returns whether the write was applied.
        """

    def update_file(self, file_id: str, file_update: FileUpdate) -> None:
        """Apply the attributes set on ``file_update`` to the file."""

    def get_upload_max_bytes(self) -> int:
        """Return the current upload budget in bytes."""

    def requeue_stale_processing(
        self, older_than: datetime, exclude: Collection[str] = ()
    ) -> int:
        """Move processing jobs last touched before ``older_than`` back to queued.

        Ids in ``exclude`` are still running in this worker and are left alone.
        """


def clamp_limit(limit: int) -> int:
    return max(1, min(MAX_LIST_LIMIT, int(limit)))


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive timestamps read back from SQLite."""

    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def next_updated_at(previous: datetime | None) -> datetime:
    """Return a timestamp that never moves backwards relative to ``previous``."""

    now = utcnow()
    if previous is None:
        return now
    return max(now, as_utc(previous))


def resolve_budget(raw: object) -> int:
    """Return a positive budget, falling back to the default when unset."""

    try:
        value = int(raw)  # type: ignore[arg-type]
    except (TypeError, ValueError):
        return DEFAULT_UPLOAD_MAX_BYTES
    return value if value > 0 else DEFAULT_UPLOAD_MAX_BYTES


__all__ = [
    "DEFAULT_UPLOAD_MAX_BYTES",
    "JobRepository",
    "MAX_LIST_LIMIT",
    "as_utc",
    "clamp_limit",
    "next_updated_at",
    "resolve_budget",
    "utcnow",
]
