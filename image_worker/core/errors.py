"""Error taxonomy shared by the storage, codec and persistence layers."""

from __future__ import annotations


class ImageWorkerError(Exception):
    """Base class for faults raised while processing an image job."""


class StorageError(ImageWorkerError):
    """Base class for storage backend faults."""

    def __init__(self, message: str, *, bucket: str | None = None, key: str | None = None) -> None:
        super().__init__(message)
        self.bucket = bucket
        self.key = key


class StorageNotFound(StorageError):
    """The requested object does not exist."""

    def __init__(self, bucket: str, key: str) -> None:
        super().__init__(f"object not found: {bucket}/{key}", bucket=bucket, key=key)


class StorageIOError(StorageError):
    """A transient or permanent backend fault."""


class CodecError(ImageWorkerError):
    """The image is corrupt, oversized or in an unsupported format."""


class RepositoryError(ImageWorkerError):
    """A persistence fault while reading or writing job or file state."""


class InvalidTransition(ImageWorkerError):
    """A job status change that the lifecycle does not allow."""

    def __init__(self, current: str, target: str) -> None:
        super().__init__(f"illegal status transition {current} -> {target}")
        self.current = current
        self.target = target


__all__ = [
    "CodecError",
    "ImageWorkerError",
    "InvalidTransition",
    "RepositoryError",
    "StorageError",
    "StorageIOError",
    "StorageNotFound",
]
