"""Records exchanged between the worker core and the job repository."""

from __future__ import annotations

from datetime import datetime
from enum import Enum

from pydantic import BaseModel, ConfigDict


class JobStatus(str, Enum):
    """Lifecycle states of an image job."""

    QUEUED = "queued"
    PROCESSING = "processing"
    DONE = "done"
    ERROR = "error"


class QueuedJob(BaseModel):
    """Identifier of a queued job and its creation time."""

    job_id: str
    created_at: datetime


class JobRecord(BaseModel):
    """Snapshot of an image job as stored by the repository."""

    model_config = ConfigDict(from_attributes=True)

    job_id: str
    file_id: str
    status: JobStatus
    raw_object_key: str
    raw_content_type: str
    raw_size_bytes: int
    error_message: str | None = None
    created_at: datetime
    updated_at: datetime


class FileRecord(BaseModel):
    """Snapshot of a media file row."""

    model_config = ConfigDict(from_attributes=True)

    file_id: str
    storage_key: str
    mime_type: str
    size_bytes: int
    thumbnail_key: str | None = None


class FileUpdate(BaseModel):
    """Partial update applied to a file once its job completes."""

    storage_key: str | None = None
    mime_type: str | None = None
    size_bytes: int | None = None
    thumbnail_key: str | None = None

    def changes(self) -> dict[str, object]:
        """Return only the attributes that were set."""

        return self.model_dump(exclude_none=True)


__all__ = ["FileRecord", "FileUpdate", "JobRecord", "JobStatus", "QueuedJob"]
