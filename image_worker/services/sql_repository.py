"""Single-node relational implementation of the job repository."""

from __future__ import annotations

from collections.abc import Collection, Iterator
from contextlib import contextmanager
from datetime import datetime

import structlog
from sqlalchemy import select, update
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker

from ..core.errors import RepositoryError
from ..db import session_scope
from ..models import CONFIG_ROW_ID, File, ImageJob, ServerConfig
from ..schemas.job import FileRecord, FileUpdate, JobRecord, JobStatus, QueuedJob
from .job_repository import as_utc, clamp_limit, next_updated_at, resolve_budget, utcnow

LOGGER = structlog.get_logger(__name__)


class SqlJobRepository:
    """Job repository backed by a table with a directly queryable status column."""

    def __init__(self, session_factory: sessionmaker[Session]) -> None:
        self._session_factory = session_factory

    @contextmanager
    def _scope(self, operation: str) -> Iterator[Session]:
        try:
            with session_scope(self._session_factory) as session:
                yield session
        except SQLAlchemyError as exc:
            raise RepositoryError(f"{operation} failed: {exc}") from exc

    def list_queued(self, limit: int) -> list[QueuedJob]:
        stmt = (
            select(ImageJob.job_id, ImageJob.created_at)
            .where(ImageJob.status == JobStatus.QUEUED.value)
            .order_by(ImageJob.created_at.asc(), ImageJob.job_id.asc())
            .limit(clamp_limit(limit))
        )
        with self._scope("list_queued") as session:
            rows = session.execute(stmt).all()
        return [QueuedJob(job_id=row.job_id, created_at=as_utc(row.created_at)) for row in rows]

    def get_job(self, job_id: str) -> JobRecord | None:
        with self._scope("get_job") as session:
            job = session.get(ImageJob, job_id)
            if job is None:
                return None
            record = JobRecord.model_validate(job)
        return record.model_copy(
            update={"created_at": as_utc(record.created_at), "updated_at": as_utc(record.updated_at)}
        )

    def update_job_status(
        self,
        job_id: str,
        status: JobStatus,
        error_message: str | None = None,
        *,
        expected: JobStatus | None = None,
    ) -> bool:
        status = JobStatus(status)
        with self._scope("update_job_status") as session:
            job = session.get(ImageJob, job_id)
            if job is None:
                raise RepositoryError(f"job {job_id} not found")

            values = {
                "status": status.value,
                "updated_at": next_updated_at(job.updated_at),
                "error_message": (error_message or "unknown error")
                if status is JobStatus.ERROR
                else None,
            }
            stmt = update(ImageJob).where(ImageJob.job_id == job_id)
            if expected is not None:
                stmt = stmt.where(ImageJob.status == JobStatus(expected).value)
            result = session.execute(stmt.values(**values).execution_options(synchronize_session=False))
            applied = result.rowcount == 1

        if applied:
            LOGGER.debug("image_job_status_updated", job_id=job_id, status=status.value)
        return applied

    def update_file(self, file_id: str, file_update: FileUpdate) -> None:
        changes = file_update.changes()
        if not changes:
            return
        with self._scope("update_file") as session:
            result = session.execute(
                update(File).where(File.file_id == file_id).values(**changes)
            )
            if result.rowcount == 0:
                raise RepositoryError(f"file {file_id} not found")

    def get_upload_max_bytes(self) -> int:
        with self._scope("get_upload_max_bytes") as session:
            config = session.get(ServerConfig, CONFIG_ROW_ID)
            raw = config.upload_max_bytes if config is not None else None
        return resolve_budget(raw)

    def requeue_stale_processing(
        self, older_than: datetime, exclude: Collection[str] = ()
    ) -> int:
        stmt = (
            update(ImageJob)
            .where(ImageJob.status == JobStatus.PROCESSING.value)
            .where(ImageJob.updated_at < as_utc(older_than))
        )
        if exclude:
            stmt = stmt.where(ImageJob.job_id.not_in(list(exclude)))
        stmt = stmt.values(
            status=JobStatus.QUEUED.value, error_message=None, updated_at=utcnow()
        ).execution_options(synchronize_session=False)
        with self._scope("requeue_stale_processing") as session:
            result = session.execute(stmt)
        return result.rowcount or 0

    # -- helpers for the upload path and tests ---------------------------------

    def add_file(self, record: FileRecord) -> None:
        with self._scope("add_file") as session:
            session.add(File(**record.model_dump()))

    def add_job(self, record: JobRecord) -> None:
        with self._scope("add_job") as session:
            values = record.model_dump()
            values["status"] = JobStatus(record.status).value
            session.add(ImageJob(**values))

    def get_file(self, file_id: str) -> FileRecord | None:
        with self._scope("get_file") as session:
            row = session.get(File, file_id)
            return FileRecord.model_validate(row) if row is not None else None

    def set_upload_max_bytes(self, value: int | None) -> None:
        with self._scope("set_upload_max_bytes") as session:
            config = session.get(ServerConfig, CONFIG_ROW_ID)
            if config is None:
                session.add(ServerConfig(id=CONFIG_ROW_ID, upload_max_bytes=value))
            else:
                config.upload_max_bytes = value


__all__ = ["SqlJobRepository"]
