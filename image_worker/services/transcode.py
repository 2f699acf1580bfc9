"""Size and format aware transcoding policy for uploaded images.

The policy decides, per upload, whether to replace the raw object with a
smaller AVIF rendition and always tries to produce an AVIF thumbnail.

* GIF, AVIF and animated WEBP sources are never re-encoded.
* Re-encoding only happens when a positive budget is configured and the raw
  object exceeds it; the result is kept only if it fits the budget.
* The superseded raw object is only recorded on the result. It is deleted
  by :meth:`TranscodePolicy.discard_superseded` once the job is done, so the
  file record never points at a missing object.
* Deleting the superseded raw object and building the thumbnail are best
  effort. Their failures are recorded as :class:`SoftFailure` entries and
  never fail the job. Everything else raises.
"""

from __future__ import annotations

from dataclasses import dataclass, field

import structlog

from ..core.errors import CodecError, StorageError
from ..core.storage import StorageBackend
from ..schemas.job import FileUpdate
from .codec import AVIF_MIME, ImageCodec

LOGGER = structlog.get_logger(__name__)

GIF_MIME = "image/gif"
WEBP_MIME = "image/webp"

DEFAULT_THUMBNAIL_WIDTH = 320
DEFAULT_THUMBNAIL_QUALITY = 50
DEFAULT_TRANSCODE_QUALITY = 60


@dataclass(frozen=True)
class SoftFailure:
    """A degraded step that did not fail the job."""

    stage: str
    message: str


@dataclass
class ProcessResult:
    compressed: bool = False
    new_key: str | None = None
    new_mime: str | None = None
    new_size: int | None = None
    thumb_key: str | None = None
    superseded_key: str | None = None
    soft_failures: list[SoftFailure] = field(default_factory=list)

    def file_update(self) -> FileUpdate | None:
        """Return the file attributes to persist, or ``None`` when nothing changed."""

        update = FileUpdate()
        if self.compressed and self.new_key and self.new_mime and self.new_size is not None:
            update.storage_key = self.new_key
            update.mime_type = self.new_mime
            update.size_bytes = self.new_size
        if self.thumb_key:
            update.thumbnail_key = self.thumb_key
        return update if update.changes() else None


@dataclass(frozen=True)
class FormatClass:
    is_gif: bool
    is_webp: bool
    is_avif: bool

    @property
    def potentially_animated(self) -> bool:
        return self.is_gif or self.is_webp


def classify_content_type(content_type: str | None) -> FormatClass:
    """Classify a declared content type, ignoring case and parameters."""

    mime = (content_type or "").split(";", 1)[0].strip().lower()
    return FormatClass(is_gif=mime == GIF_MIME, is_webp=mime == WEBP_MIME, is_avif=mime == AVIF_MIME)


def should_keep_original(fmt: FormatClass, animated: bool) -> bool:
    return fmt.is_gif or fmt.is_avif or (fmt.is_webp and animated)


def replacement_key(file_id: str) -> str:
    return f"uploads/{file_id}.avif"


def thumbnail_key(file_id: str) -> str:
    return f"thumbnails/{file_id}.avif"


class TranscodePolicy:
    """Apply the transcoding policy to one raw object."""

    def __init__(
        self,
        storage: StorageBackend,
        bucket: str,
        codec: ImageCodec,
        *,
        thumbnail_width: int = DEFAULT_THUMBNAIL_WIDTH,
        thumbnail_quality: int = DEFAULT_THUMBNAIL_QUALITY,
        transcode_quality: int = DEFAULT_TRANSCODE_QUALITY,
    ) -> None:
        self.storage = storage
        self.bucket = bucket
        self.codec = codec
        self.thumbnail_width = thumbnail_width
        self.thumbnail_quality = thumbnail_quality
        self.transcode_quality = transcode_quality

    def process(
        self,
        file_id: str,
        raw_key: str,
        content_type: str,
        raw_size: int,
        max_bytes: int | None,
    ) -> ProcessResult:
        raw = self.storage.get(self.bucket, raw_key)

        fmt = classify_content_type(content_type)
        info = self.codec.probe(raw, animated=fmt.potentially_animated)
        animated = fmt.potentially_animated and info.frames > 1
        keep_original = should_keep_original(fmt, animated)

        result = ProcessResult()
        has_limit = max_bytes is not None and max_bytes > 0
        if not keep_original and has_limit and raw_size > max_bytes:
            self._replace(result, file_id, raw_key, raw, max_bytes)

        self._thumbnail(result, file_id, raw)

        LOGGER.info(
            "transcode_policy_applied",
            file_id=file_id,
            content_type=content_type,
            animated=animated,
            keep_original=keep_original,
            compressed=result.compressed,
            thumbnail=result.thumb_key is not None,
        )
        return result

    def _replace(
        self, result: ProcessResult, file_id: str, raw_key: str, raw: bytes, max_bytes: int
    ) -> None:
        encoded = self.codec.encode(raw, quality=self.transcode_quality)
        if len(encoded) > max_bytes:
            LOGGER.info(
                "transcode_discarded_over_budget",
                file_id=file_id,
                encoded_size=len(encoded),
                max_bytes=max_bytes,
            )
            return

        new_key = replacement_key(file_id)
        self.storage.put(self.bucket, new_key, encoded, AVIF_MIME)
        result.compressed = True
        result.new_key = new_key
        result.new_mime = AVIF_MIME
        result.new_size = len(encoded)
        if new_key != raw_key:
            result.superseded_key = raw_key

    def discard_superseded(self, file_id: str, result: ProcessResult) -> None:
        """Delete the raw object replaced by ``result``; failures are soft."""

        key = result.superseded_key
        if not key:
            return
        try:
            self.storage.delete(self.bucket, key)
        except StorageError as exc:
            LOGGER.warning("raw_object_delete_failed", file_id=file_id, key=key, error=str(exc))
            result.soft_failures.append(SoftFailure("delete_raw", str(exc)))
            return
        result.superseded_key = None

    def _thumbnail(self, result: ProcessResult, file_id: str, raw: bytes) -> None:
        key = thumbnail_key(file_id)
        try:
            thumb = self.codec.thumbnail(
                raw, width=self.thumbnail_width, quality=self.thumbnail_quality
            )
            self.storage.put(self.bucket, key, thumb, AVIF_MIME)
        except (CodecError, StorageError) as exc:
            LOGGER.warning("thumbnail_failed", file_id=file_id, error=str(exc))
            result.soft_failures.append(SoftFailure("thumbnail", str(exc)))
            return
        result.thumb_key = key


__all__ = [
    "FormatClass",
    "ProcessResult",
    "SoftFailure",
    "TranscodePolicy",
    "classify_content_type",
    "replacement_key",
    "should_keep_original",
    "thumbnail_key",
]
