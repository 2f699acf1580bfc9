"""Per-job processing task for uploaded images."""

from __future__ import annotations

import asyncio
import threading
from dataclasses import dataclass, field
from enum import Enum
from time import perf_counter

import structlog

from ..core.errors import ImageWorkerError, RepositoryError
from ..schemas.job import JobStatus
from ..services.lifecycle import JobLifecycle
from ..services.metrics import (
    image_job_duration_seconds,
    image_jobs_in_flight,
    image_jobs_total,
    transcode_soft_failures_total,
)
from ..services.transcode import TranscodePolicy

LOGGER = structlog.get_logger(__name__)


class JobOutcome(str, Enum):
    SKIPPED = "skipped"
    DEFERRED = "deferred"
    DONE = "done"
    ERROR = "error"


@dataclass
class WorkerStats:
    """Counters shared between the scheduler, job tasks and the status endpoint."""

    processed: int = 0
    errors: int = 0
    in_flight: int = 0
    _lock: threading.Lock = field(default_factory=threading.Lock, repr=False, compare=False)

    def job_started(self) -> None:
        with self._lock:
            self.in_flight += 1
            image_jobs_in_flight.set(self.in_flight)

    def job_finished(self) -> None:
        with self._lock:
            self.in_flight = max(0, self.in_flight - 1)
            image_jobs_in_flight.set(self.in_flight)

    def record(self, outcome: JobOutcome) -> None:
        with self._lock:
            if outcome is JobOutcome.DONE:
                self.processed += 1
            elif outcome is JobOutcome.ERROR:
                self.errors += 1

    def snapshot(self) -> dict[str, int]:
        with self._lock:
            return {
                "processed": self.processed,
                "errors": self.errors,
                "in_flight": self.in_flight,
            }


def describe_failure(exc: BaseException) -> str:
    """Return a human-readable message for a job failure."""

    if isinstance(exc, ImageWorkerError):
        return str(exc) or exc.__class__.__name__
    detail = str(exc)
    return f"{exc.__class__.__name__}: {detail}" if detail else exc.__class__.__name__


async def process_image_job(
    job_id: str,
    *,
    lifecycle: JobLifecycle,
    policy: TranscodePolicy,
    stats: WorkerStats | None = None,
) -> JobOutcome:
    """Drive one job from queued to a terminal status.

    No exception escapes: every fault after the claim becomes an ``error``
    status on this job only.
    """

    repository = lifecycle.repository
    with structlog.contextvars.bound_contextvars(job_id=job_id):
        try:
            job = await asyncio.to_thread(repository.get_job, job_id)
            if job is None or job.status != JobStatus.QUEUED:
                LOGGER.debug("image_job_skipped", status=getattr(job, "status", None))
                return JobOutcome.SKIPPED
            if not await asyncio.to_thread(lifecycle.claim, job):
                return JobOutcome.SKIPPED
        except RepositoryError as exc:
            LOGGER.warning("image_job_claim_failed", error=str(exc))
            return JobOutcome.DEFERRED

        start = perf_counter()
        LOGGER.info("image_job_started", file_id=job.file_id, content_type=job.raw_content_type)
        try:
            max_bytes = await asyncio.to_thread(repository.get_upload_max_bytes)
            result = await asyncio.to_thread(
                policy.process,
                job.file_id,
                job.raw_object_key,
                job.raw_content_type,
                job.raw_size_bytes,
                max_bytes,
            )
            await asyncio.to_thread(lifecycle.complete, job, result)
        except Exception as exc:  # job-task boundary: never reaches the scheduler
            message = describe_failure(exc)
            LOGGER.error("image_job_failed", file_id=job.file_id, error=message)
            try:
                if not await asyncio.to_thread(lifecycle.fail, job_id, message):
                    LOGGER.warning("image_job_error_not_recorded", reason="status changed")
            except Exception as write_exc:
                LOGGER.error("image_job_error_write_failed", error=describe_failure(write_exc))
            _finish(stats, JobOutcome.ERROR, start)
            return JobOutcome.ERROR

        await asyncio.to_thread(policy.discard_superseded, job.file_id, result)
        for failure in result.soft_failures:
            transcode_soft_failures_total.labels(stage=failure.stage).inc()
        LOGGER.info(
            "image_job_done",
            file_id=job.file_id,
            compressed=result.compressed,
            thumbnail=result.thumb_key is not None,
        )
        _finish(stats, JobOutcome.DONE, start)
        return JobOutcome.DONE


def _finish(stats: WorkerStats | None, outcome: JobOutcome, start: float) -> None:
    image_job_duration_seconds.observe(perf_counter() - start)
    image_jobs_total.labels(status=outcome.value).inc()
    if stats is not None:
        stats.record(outcome)


__all__ = ["JobOutcome", "WorkerStats", "describe_failure", "process_image_job"]
