"""Storage backends for raw and derived image objects.

Both backends honour the same contract:

* ``get`` raises :class:`StorageNotFound` for a missing key and
  :class:`StorageIOError` for any other fault.
* ``put`` overwrites an existing key.
* ``delete`` of a missing key succeeds. S3 behaves this way natively and the
  filesystem backend ignores ``FileNotFoundError``.
"""

from __future__ import annotations

import json
import os
import re
import tempfile
from pathlib import Path
from typing import Protocol

import boto3
import structlog
from botocore.client import BaseClient
from botocore.config import Config
from botocore.exceptions import BotoCoreError, ClientError

from .config import Settings
from .errors import StorageIOError, StorageNotFound

LOGGER = structlog.get_logger(__name__)

_NOT_FOUND_CODES = {"NoSuchKey", "404", "NotFound"}
META_SUFFIX = ".meta"


class StorageBackend(Protocol):
    """Uniform get/put/delete over binary objects."""

    def get(self, bucket: str, key: str) -> bytes:
        """Return the object payload."""

    def put(
        self, bucket: str, key: str, data: bytes, content_type: str | None = None
    ) -> None:
        """Persist ``data`` at ``bucket/key``, replacing any previous object."""

    def delete(self, bucket: str, key: str) -> None:
        """Remove ``bucket/key``; a missing key is not an error."""


def sanitize_object_key(key: str) -> str:
    """Collapse duplicate slashes and strip a leading slash."""

    sanitized = re.sub(r"/+", "/", str(key or "").strip())
    return sanitized.lstrip("/")


class S3Storage:
    """Object storage reached through an S3-compatible API."""

    def __init__(self, client: BaseClient) -> None:
        self._client = client

    @classmethod
    def from_settings(cls, settings: Settings) -> "S3Storage":
        client_kwargs: dict[str, object] = {
            "config": Config(
                signature_version="s3v4",
                s3={"addressing_style": "path" if settings.s3_force_path_style else "virtual"},
            ),
            "region_name": settings.s3_region or "auto",
        }
        if settings.s3_endpoint:
            client_kwargs["endpoint_url"] = settings.s3_endpoint
        if settings.s3_access_key_id and settings.s3_secret_access_key:
            client_kwargs["aws_access_key_id"] = settings.s3_access_key_id
            client_kwargs["aws_secret_access_key"] = settings.s3_secret_access_key

        LOGGER.info(
            "s3_storage_initialized",
            endpoint=settings.s3_endpoint,
            region=client_kwargs["region_name"],
            path_style=settings.s3_force_path_style,
        )
        return cls(boto3.client("s3", **client_kwargs))

    def get(self, bucket: str, key: str) -> bytes:
        try:
            response = self._client.get_object(Bucket=bucket, Key=key)
        except ClientError as exc:
            code = str(exc.response.get("Error", {}).get("Code", ""))
            if code in _NOT_FOUND_CODES:
                raise StorageNotFound(bucket, key) from exc
            raise StorageIOError(
                f"s3 get failed for {bucket}/{key}: {exc}", bucket=bucket, key=key
            ) from exc
        except BotoCoreError as exc:
            raise StorageIOError(
                f"s3 get failed for {bucket}/{key}: {exc}", bucket=bucket, key=key
            ) from exc

        body = response.get("Body")
        if body is None:
            raise StorageIOError(f"empty s3 body for {bucket}/{key}", bucket=bucket, key=key)
        try:
            return body.read()
        except (BotoCoreError, OSError) as exc:
            raise StorageIOError(
                f"s3 read failed for {bucket}/{key}: {exc}", bucket=bucket, key=key
            ) from exc

    def put(
        self, bucket: str, key: str, data: bytes, content_type: str | None = None
    ) -> None:
        params: dict[str, object] = {"Bucket": bucket, "Key": key, "Body": data}
        if content_type:
            params["ContentType"] = content_type
        try:
            self._client.put_object(**params)
        except (BotoCoreError, ClientError) as exc:
            raise StorageIOError(
                f"s3 put failed for {bucket}/{key}: {exc}", bucket=bucket, key=key
            ) from exc
        LOGGER.debug("uploaded_s3", bucket=bucket, key=key, size=len(data))

    def delete(self, bucket: str, key: str) -> None:
        try:
            self._client.delete_object(Bucket=bucket, Key=key)
        except (BotoCoreError, ClientError) as exc:
            raise StorageIOError(
                f"s3 delete failed for {bucket}/{key}: {exc}", bucket=bucket, key=key
            ) from exc


class FilesystemStorage:
    """Objects stored as files under ``<root>/<bucket>/<key>``.

    The filesystem has no metadata slot, so the content type lives in a JSON
    sidecar next to the payload.
    """

    def __init__(self, root: str | Path) -> None:
        self.root = Path(root)

    def _path(self, bucket: str, key: str) -> Path:
        sanitized = sanitize_object_key(key)
        parts = [bucket, *sanitized.split("/")]
        if not sanitized or any(part in {"", ".", ".."} for part in parts):
            raise StorageIOError(f"invalid object key {bucket}/{key}", bucket=bucket, key=key)
        return self.root.joinpath(*parts)

    def get(self, bucket: str, key: str) -> bytes:
        path = self._path(bucket, key)
        try:
            return path.read_bytes()
        except FileNotFoundError as exc:
            raise StorageNotFound(bucket, key) from exc
        except OSError as exc:
            raise StorageIOError(
                f"read failed for {bucket}/{key}: {exc}", bucket=bucket, key=key
            ) from exc

    def put(
        self, bucket: str, key: str, data: bytes, content_type: str | None = None
    ) -> None:
        path = self._path(bucket, key)
        try:
            path.parent.mkdir(parents=True, exist_ok=True)
            _atomic_write(path, data)
            meta_path = path.with_name(path.name + META_SUFFIX)
            if content_type:
                meta = json.dumps({"contentType": content_type}).encode("utf-8")
                _atomic_write(meta_path, meta)
            else:
                meta_path.unlink(missing_ok=True)
        except OSError as exc:
            raise StorageIOError(
                f"write failed for {bucket}/{key}: {exc}", bucket=bucket, key=key
            ) from exc
        LOGGER.debug("stored_local", key=key, path=str(path))

    def delete(self, bucket: str, key: str) -> None:
        path = self._path(bucket, key)
        for target in (path, path.with_name(path.name + META_SUFFIX)):
            try:
                target.unlink()
            except FileNotFoundError:
                continue
            except OSError as exc:
                raise StorageIOError(
                    f"delete failed for {bucket}/{key}: {exc}", bucket=bucket, key=key
                ) from exc

    def content_type(self, bucket: str, key: str) -> str | None:
        """Return the content type recorded in the sidecar, if any."""

        meta_path = self._path(bucket, key)
        meta_path = meta_path.with_name(meta_path.name + META_SUFFIX)
        try:
            return json.loads(meta_path.read_text(encoding="utf-8")).get("contentType")
        except FileNotFoundError:
            return None
        except (OSError, ValueError) as exc:
            raise StorageIOError(
                f"metadata read failed for {bucket}/{key}: {exc}", bucket=bucket, key=key
            ) from exc


def _atomic_write(path: Path, data: bytes) -> None:
    fd, tmp_name = tempfile.mkstemp(dir=path.parent, prefix=f".{path.name}.", suffix=".tmp")
    try:
        with os.fdopen(fd, "wb") as handle:
            handle.write(data)
        os.replace(tmp_name, path)
    except BaseException:
        Path(tmp_name).unlink(missing_ok=True)
        raise


def build_storage(settings: Settings) -> StorageBackend:
    """Select the storage backend once for the process lifetime."""

    if settings.storage_backend == "filesystem":
        root = Path(settings.data_dir)
        root.mkdir(parents=True, exist_ok=True)
        LOGGER.info("filesystem_storage_initialized", root=str(root.resolve()))
        return FilesystemStorage(root)
    return S3Storage.from_settings(settings)


__all__ = [
    "FilesystemStorage",
    "S3Storage",
    "StorageBackend",
    "build_storage",
    "sanitize_object_key",
]
