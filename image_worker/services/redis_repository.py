"""Distributed job repository with a denormalized status index.

Records live in hashes (``image_job:<id>``) and every status has its own
sorted set (``image_jobs:status:<status>``) scored by creation time. A status
change writes the record, adds the job to the new index and only then
removes it from the old one, all inside one WATCH/MULTI transaction.
"""

from __future__ import annotations

from collections.abc import Collection
from datetime import datetime, timezone

import structlog
from redis import Redis
from redis.exceptions import RedisError, WatchError

from ..core.errors import RepositoryError
from ..schemas.job import FileRecord, FileUpdate, JobRecord, JobStatus, QueuedJob
from .job_repository import as_utc, clamp_limit, next_updated_at, resolve_budget, utcnow

LOGGER = structlog.get_logger(__name__)


def _encode_dt(value: datetime) -> str:
    return as_utc(value).isoformat()


def _decode_dt(value: str | None) -> datetime | None:
    if not value:
        return None
    return as_utc(datetime.fromisoformat(value))


class RedisJobRepository:
    """Job repository kept in Redis hashes and per-status sorted sets."""

    def __init__(self, client: Redis, *, key_prefix: str = "image_worker") -> None:
        self.client = client
        self.key_prefix = key_prefix

    @classmethod
    def from_url(cls, url: str, **kwargs: object) -> "RedisJobRepository":
        return cls(Redis.from_url(url, decode_responses=True), **kwargs)

    def _key(self, suffix: str) -> str:
        return f"{self.key_prefix}:{suffix}"

    def _job_key(self, job_id: str) -> str:
        return self._key(f"image_job:{job_id}")

    def _index_key(self, status: JobStatus | str) -> str:
        return self._key(f"image_jobs:status:{JobStatus(status).value}")

    def _file_key(self, file_id: str) -> str:
        return self._key(f"file:{file_id}")

    def _config_key(self) -> str:
        return self._key("server_config")

    def list_queued(self, limit: int) -> list[QueuedJob]:
        limit = clamp_limit(limit)
        index = self._index_key(JobStatus.QUEUED)
        found: list[QueuedJob] = []
        offset = 0
        try:
            while len(found) < limit:
                batch = self.client.zrange(index, offset, offset + limit - 1, withscores=True)
                if not batch:
                    break
                statuses = self._fetch_statuses([job_id for job_id, _ in batch])
                stale: list[str] = []
                for (job_id, score), status in zip(batch, statuses):
                    if status != JobStatus.QUEUED.value:
                        stale.append(job_id)
                        continue
                    if len(found) < limit:
                        found.append(
                            QueuedJob(
                                job_id=job_id,
                                created_at=datetime.fromtimestamp(score, timezone.utc),
                            )
                        )
                if stale:
                    self.client.zrem(index, *stale)
                    LOGGER.info("queued_index_pruned", stale=len(stale))
                offset += len(batch) - len(stale)
        except RedisError as exc:
            raise RepositoryError(f"list_queued failed: {exc}") from exc
        return found

    def _fetch_statuses(self, job_ids: list[str]) -> list[str | None]:
        pipe = self.client.pipeline(transaction=False)
        for job_id in job_ids:
            pipe.hget(self._job_key(job_id), "status")
        return pipe.execute()

    def get_job(self, job_id: str) -> JobRecord | None:
        try:
            data = self.client.hgetall(self._job_key(job_id))
        except RedisError as exc:
            raise RepositoryError(f"get_job failed: {exc}") from exc
        if not data:
            return None
        return JobRecord(
            job_id=job_id,
            file_id=data["file_id"],
            status=data["status"],
            raw_object_key=data["raw_object_key"],
            raw_content_type=data["raw_content_type"],
            raw_size_bytes=int(data.get("raw_size_bytes") or 0),
            error_message=data.get("error_message") or None,
            created_at=_decode_dt(data["created_at"]),
            updated_at=_decode_dt(data["updated_at"]),
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
        key = self._job_key(job_id)
        try:
            with self.client.pipeline() as pipe:
                while True:
                    try:
                        pipe.watch(key)
                        current = pipe.hgetall(key)
                        if not current:
                            raise RepositoryError(f"job {job_id} not found")
                        previous = current["status"]
                        if expected is not None and previous != JobStatus(expected).value:
                            return False

                        created_at = _decode_dt(current["created_at"]) or utcnow()
                        message = (error_message or "unknown error") if status is JobStatus.ERROR else ""
                        pipe.multi()
                        pipe.hset(
                            key,
                            mapping={
                                "status": status.value,
                                "error_message": message,
                                "updated_at": _encode_dt(
                                    next_updated_at(_decode_dt(current.get("updated_at")))
                                ),
                            },
                        )
                        pipe.zadd(self._index_key(status), {job_id: created_at.timestamp()})
                        if previous != status.value:
                            pipe.zrem(self._index_key(previous), job_id)
                        pipe.execute()
                        return True
                    except WatchError:
                        LOGGER.debug("image_job_status_retry", job_id=job_id)
                        continue
        except RedisError as exc:
            raise RepositoryError(f"update_job_status failed: {exc}") from exc

    def update_file(self, file_id: str, file_update: FileUpdate) -> None:
        changes = file_update.changes()
        if not changes:
            return
        key = self._file_key(file_id)
        try:
            if not self.client.exists(key):
                raise RepositoryError(f"file {file_id} not found")
            self.client.hset(key, mapping={name: str(value) for name, value in changes.items()})
        except RedisError as exc:
            raise RepositoryError(f"update_file failed: {exc}") from exc

    def get_upload_max_bytes(self) -> int:
        try:
            raw = self.client.hget(self._config_key(), "upload_max_bytes")
        except RedisError as exc:
            raise RepositoryError(f"get_upload_max_bytes failed: {exc}") from exc
        return resolve_budget(raw)

    def requeue_stale_processing(
        self, older_than: datetime, exclude: Collection[str] = ()
    ) -> int:
        cutoff = as_utc(older_than)
        skip = set(exclude)
        requeued = 0
        try:
            job_ids = self.client.zrange(self._index_key(JobStatus.PROCESSING), 0, -1)
            for job_id in job_ids:
                if job_id in skip:
                    continue
                updated_at = _decode_dt(self.client.hget(self._job_key(job_id), "updated_at"))
                if updated_at is None or updated_at >= cutoff:
                    continue
                if self.update_job_status(job_id, JobStatus.QUEUED, expected=JobStatus.PROCESSING):
                    requeued += 1
        except RedisError as exc:
            raise RepositoryError(f"requeue_stale_processing failed: {exc}") from exc
        return requeued

    # -- helpers for the upload path and tests ---------------------------------

    def add_job(self, record: JobRecord) -> None:
        status = JobStatus(record.status)
        mapping = {
            "file_id": record.file_id,
            "status": status.value,
            "raw_object_key": record.raw_object_key,
            "raw_content_type": record.raw_content_type,
            "raw_size_bytes": str(record.raw_size_bytes),
            "error_message": record.error_message or "",
            "created_at": _encode_dt(record.created_at),
            "updated_at": _encode_dt(record.updated_at),
        }
        try:
            pipe = self.client.pipeline()
            pipe.hset(self._job_key(record.job_id), mapping=mapping)
            pipe.zadd(self._index_key(status), {record.job_id: as_utc(record.created_at).timestamp()})
            pipe.execute()
        except RedisError as exc:
            raise RepositoryError(f"add_job failed: {exc}") from exc

    def add_file(self, record: FileRecord) -> None:
        mapping = {
            name: str(value)
            for name, value in record.model_dump(exclude={"file_id"}).items()
            if value is not None
        }
        try:
            self.client.hset(self._file_key(record.file_id), mapping=mapping)
        except RedisError as exc:
            raise RepositoryError(f"add_file failed: {exc}") from exc

    def get_file(self, file_id: str) -> FileRecord | None:
        try:
            data = self.client.hgetall(self._file_key(file_id))
        except RedisError as exc:
            raise RepositoryError(f"get_file failed: {exc}") from exc
        if not data:
            return None
        return FileRecord(
            file_id=file_id,
            storage_key=data["storage_key"],
            mime_type=data["mime_type"],
            size_bytes=int(data.get("size_bytes") or 0),
            thumbnail_key=data.get("thumbnail_key") or None,
        )

    def set_upload_max_bytes(self, value: int | None) -> None:
        try:
            if value is None:
                self.client.hdel(self._config_key(), "upload_max_bytes")
            else:
                self.client.hset(self._config_key(), "upload_max_bytes", str(value))
        except RedisError as exc:
            raise RepositoryError(f"set_upload_max_bytes failed: {exc}") from exc


__all__ = ["RedisJobRepository"]
