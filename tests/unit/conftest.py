from __future__ import annotations

import io
from datetime import datetime, timedelta, timezone

import pytest
from PIL import Image

from image_worker.core.errors import CodecError, StorageIOError, StorageNotFound
from image_worker.db import create_db_engine, create_session_factory, create_tables
from image_worker.schemas.job import FileRecord, JobRecord
from image_worker.services.codec import ImageInfo
from image_worker.services.sql_repository import SqlJobRepository

BUCKET = "media"
EPOCH = datetime(2024, 1, 1, 12, 0, tzinfo=timezone.utc)


class InMemoryStorage:
    """Dictionary-backed storage double."""

    def __init__(self) -> None:
        self.objects: dict[tuple[str, str], bytes] = {}
        self.content_types: dict[tuple[str, str], str | None] = {}
        self.fail_delete = False
        self.fail_put_prefix: str | None = None

    def get(self, bucket: str, key: str) -> bytes:
        try:
            return self.objects[(bucket, key)]
        except KeyError:
            raise StorageNotFound(bucket, key) from None

    def put(self, bucket: str, key: str, data: bytes, content_type: str | None = None) -> None:
        if self.fail_put_prefix and key.startswith(self.fail_put_prefix):
            raise StorageIOError(f"put refused for {bucket}/{key}", bucket=bucket, key=key)
        self.objects[(bucket, key)] = data
        self.content_types[(bucket, key)] = content_type

    def delete(self, bucket: str, key: str) -> None:
        if self.fail_delete:
            raise StorageIOError(f"delete refused for {bucket}/{key}", bucket=bucket, key=key)
        self.objects.pop((bucket, key), None)
        self.content_types.pop((bucket, key), None)


class FakeCodec:
    """Codec double that reports a fixed frame count and encoded size."""

    def __init__(
        self,
        *,
        frames: int = 1,
        encoded_size: int = 1_000,
        fail_thumbnail: bool = False,
    ) -> None:
        self.frames = frames
        self.encoded_size = encoded_size
        self.fail_thumbnail = fail_thumbnail
        self.encode_calls = 0
        self.thumbnail_calls = 0
        self.probe_animated: list[bool] = []

    def probe(self, data: bytes, *, animated: bool = False) -> ImageInfo:
        self.probe_animated.append(animated)
        return ImageInfo(format="JPEG", width=800, height=600, frames=self.frames if animated else 1)

    def encode(self, data: bytes, *, quality: int) -> bytes:
        self.encode_calls += 1
        return b"a" * self.encoded_size

    def thumbnail(self, data: bytes, *, width: int, quality: int) -> bytes:
        self.thumbnail_calls += 1
        if self.fail_thumbnail:
            raise CodecError("thumbnail encoder unavailable")
        return b"thumb"


def image_bytes(
    fmt: str,
    size: tuple[int, int] = (800, 600),
    *,
    frames: int = 1,
) -> bytes:
    """Render a noisy test image so encoders cannot compress it to nothing."""

    buffer = io.BytesIO()
    images = [
        Image.effect_noise(size, 64 + index * 10).convert("RGB") for index in range(frames)
    ]
    if fmt == "GIF":
        images = [image.convert("P") for image in images]
    if frames > 1:
        images[0].save(
            buffer, format=fmt, save_all=True, append_images=images[1:], duration=100, loop=0
        )
    else:
        images[0].save(buffer, format=fmt)
    return buffer.getvalue()


def make_job(
    job_id: str = "job-1",
    *,
    file_id: str = "file-1",
    status: str = "queued",
    raw_key: str | None = None,
    content_type: str = "image/jpeg",
    size: int = 1_000,
    created_at: datetime | None = None,
    error_message: str | None = None,
) -> JobRecord:
    created = created_at or EPOCH
    return JobRecord(
        job_id=job_id,
        file_id=file_id,
        status=status,
        raw_object_key=raw_key or f"raw/{file_id}",
        raw_content_type=content_type,
        raw_size_bytes=size,
        error_message=error_message,
        created_at=created,
        updated_at=created,
    )


def make_file(file_id: str = "file-1", *, mime: str = "image/jpeg", size: int = 1_000) -> FileRecord:
    return FileRecord(file_id=file_id, storage_key=f"raw/{file_id}", mime_type=mime, size_bytes=size)


def minutes(value: int) -> timedelta:
    return timedelta(minutes=value)


@pytest.fixture()
def engine(tmp_path):
    engine = create_db_engine(f"sqlite:///{tmp_path / 'image_worker.db'}")
    create_tables(engine)
    yield engine
    engine.dispose()


@pytest.fixture()
def sql_repository(engine) -> SqlJobRepository:
    return SqlJobRepository(create_session_factory(engine))


@pytest.fixture()
def storage() -> InMemoryStorage:
    return InMemoryStorage()
