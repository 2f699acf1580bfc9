"""Job lifecycle state machine.

``queued -> processing -> done | error`` is the normal path. ``processing ->
queued`` exists only for lease reclaim of jobs abandoned by a crashed worker.
``done`` and ``error`` are terminal.
"""

from __future__ import annotations

from collections.abc import Collection
from datetime import timedelta

import structlog

from ..core.errors import InvalidTransition, RepositoryError
from ..schemas.job import JobRecord, JobStatus
from .job_repository import JobRepository, utcnow
from .transcode import ProcessResult

LOGGER = structlog.get_logger(__name__)

ALLOWED_TRANSITIONS: dict[JobStatus, frozenset[JobStatus]] = {
    JobStatus.QUEUED: frozenset({JobStatus.PROCESSING}),
    JobStatus.PROCESSING: frozenset({JobStatus.DONE, JobStatus.ERROR, JobStatus.QUEUED}),
    JobStatus.DONE: frozenset(),
    JobStatus.ERROR: frozenset(),
}


def is_terminal(status: JobStatus | str) -> bool:
    return not ALLOWED_TRANSITIONS[JobStatus(status)]


def ensure_transition(current: JobStatus | str, target: JobStatus | str) -> None:
    """Raise :class:`InvalidTransition` unless ``current -> target`` is legal."""

    current, target = JobStatus(current), JobStatus(target)
    if target not in ALLOWED_TRANSITIONS[current]:
        raise InvalidTransition(current.value, target.value)


class JobLifecycle:
    """Persist legal status transitions through the job repository.

    Every write is a compare-and-set against the expected previous status, so
    a job that another worker already claimed or finished is never rewritten.
    """

    def __init__(self, repository: JobRepository) -> None:
        self.repository = repository

    def claim(self, job: JobRecord) -> bool:
        """Move a queued job to processing; ``False`` means it was not queued."""

        if job.status != JobStatus.QUEUED:
            return False
        ensure_transition(JobStatus.QUEUED, JobStatus.PROCESSING)
        claimed = self.repository.update_job_status(
            job.job_id, JobStatus.PROCESSING, expected=JobStatus.QUEUED
        )
        if not claimed:
            LOGGER.info("image_job_claim_lost", job_id=job.job_id)
        return claimed

    def complete(self, job: JobRecord, result: ProcessResult) -> None:
        """Persist derived file attributes, then mark the job done."""

        ensure_transition(JobStatus.PROCESSING, JobStatus.DONE)
        update = result.file_update()
        if update is not None:
            self.repository.update_file(job.file_id, update)
        if not self.repository.update_job_status(
            job.job_id, JobStatus.DONE, expected=JobStatus.PROCESSING
        ):
            raise RepositoryError(f"job {job.job_id} is no longer processing")

    def fail(self, job_id: str, message: str) -> bool:
        """Mark a processing job as errored; returns whether the write applied."""

        ensure_transition(JobStatus.PROCESSING, JobStatus.ERROR)
        return self.repository.update_job_status(
            job_id, JobStatus.ERROR, message, expected=JobStatus.PROCESSING
        )

    def reclaim_stale(self, lease_seconds: int, exclude: Collection[str] = ()) -> int:
        """Re-queue processing jobs untouched for longer than ``lease_seconds``.

        ``exclude`` names jobs the caller is still running, which are never
        re-queued however long they take.
        """

        if lease_seconds <= 0:
            return 0
        ensure_transition(JobStatus.PROCESSING, JobStatus.QUEUED)
        requeued = self.repository.requeue_stale_processing(
            utcnow() - timedelta(seconds=lease_seconds), exclude
        )
        if requeued:
            LOGGER.warning("stale_image_jobs_requeued", count=requeued, lease_seconds=lease_seconds)
        return requeued


__all__ = ["ALLOWED_TRANSITIONS", "JobLifecycle", "ensure_transition", "is_terminal"]
