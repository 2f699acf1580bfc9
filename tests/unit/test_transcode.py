from __future__ import annotations

import io

import pytest
from PIL import Image, features

from conftest import BUCKET, FakeCodec, InMemoryStorage, image_bytes
from image_worker.core.errors import StorageNotFound
from image_worker.core.storage import FilesystemStorage
from image_worker.services.codec import PillowCodec
from image_worker.services.transcode import (
    ProcessResult,
    SoftFailure,
    TranscodePolicy,
    classify_content_type,
)

MB = 1024 * 1024

requires_avif = pytest.mark.skipif(
    not features.check("avif"), reason="Pillow built without AVIF support"
)


def _policy(storage, codec) -> TranscodePolicy:
    return TranscodePolicy(storage, BUCKET, codec)


def _seed(storage: InMemoryStorage, key: str = "raw/f1", data: bytes = b"raw-bytes") -> None:
    storage.put(BUCKET, key, data, "image/jpeg")


def test_oversized_still_image_is_replaced_and_raw_kept_until_discarded(storage) -> None:
    _seed(storage)
    codec = FakeCodec(encoded_size=4 * MB)
    policy = _policy(storage, codec)

    result = policy.process("f1", "raw/f1", "image/jpeg", 25 * MB, 5 * MB)

    assert result.compressed is True
    assert result.new_key == "uploads/f1.avif"
    assert result.new_mime == "image/avif"
    assert result.new_size == 4 * MB
    assert result.thumb_key == "thumbnails/f1.avif"
    assert result.superseded_key == "raw/f1"
    assert (BUCKET, "raw/f1") in storage.objects
    assert storage.content_types[(BUCKET, "uploads/f1.avif")] == "image/avif"

    policy.discard_superseded("f1", result)

    assert (BUCKET, "raw/f1") not in storage.objects
    assert result.superseded_key is None
    assert result.soft_failures == []


def test_reencode_still_over_budget_is_discarded(storage) -> None:
    _seed(storage)
    codec = FakeCodec(encoded_size=6 * MB)

    result = _policy(storage, codec).process("f1", "raw/f1", "image/png", 25 * MB, 5 * MB)

    assert codec.encode_calls == 1
    assert result.compressed is False
    assert result.new_key is None and result.new_size is None
    assert (BUCKET, "raw/f1") in storage.objects
    assert (BUCKET, "uploads/f1.avif") not in storage.objects
    assert result.thumb_key == "thumbnails/f1.avif"


def test_reencode_exactly_at_budget_is_accepted(storage) -> None:
    _seed(storage)

    result = _policy(storage, FakeCodec(encoded_size=5 * MB)).process(
        "f1", "raw/f1", "image/jpeg", 6 * MB, 5 * MB
    )

    assert result.compressed is True
    assert result.new_size == 5 * MB


@pytest.mark.parametrize(
    ("content_type", "frames"),
    [
        ("image/gif", 1),
        ("image/gif", 12),
        ("image/avif", 1),
        ("image/webp", 2),
        ("IMAGE/GIF; charset=binary", 3),
    ],
)
def test_keep_original_formats_are_never_reencoded(storage, content_type, frames) -> None:
    _seed(storage)
    codec = FakeCodec(frames=frames)

    result = _policy(storage, codec).process("f1", "raw/f1", content_type, 30 * MB, 1 * MB)

    assert codec.encode_calls == 0
    assert result.compressed is False
    assert (result.new_key, result.new_mime, result.new_size) == (None, None, None)
    assert (BUCKET, "raw/f1") in storage.objects
    assert result.thumb_key == "thumbnails/f1.avif"


def test_still_webp_is_eligible_for_reencode(storage) -> None:
    _seed(storage)
    codec = FakeCodec(frames=1, encoded_size=MB)

    result = _policy(storage, codec).process("f1", "raw/f1", "image/webp", 3 * MB, 2 * MB)

    assert codec.probe_animated == [True]
    assert result.compressed is True


def test_only_gif_and_webp_are_probed_for_animation(storage) -> None:
    _seed(storage)
    codec = FakeCodec(frames=5)

    _policy(storage, codec).process("f1", "raw/f1", "image/png", 100, 5 * MB)

    assert codec.probe_animated == [False]


@pytest.mark.parametrize(
    ("raw_size", "max_bytes"),
    [(2 * MB, 5 * MB), (5 * MB, 5 * MB), (50 * MB, 0), (50 * MB, -1), (50 * MB, None)],
)
def test_no_reencode_without_positive_budget_overrun(storage, raw_size, max_bytes) -> None:
    _seed(storage)
    codec = FakeCodec()

    result = _policy(storage, codec).process("f1", "raw/f1", "image/jpeg", raw_size, max_bytes)

    assert codec.encode_calls == 0
    assert result.compressed is False
    assert result.thumb_key == "thumbnails/f1.avif"


def test_thumbnail_failure_is_soft(storage) -> None:
    _seed(storage)

    result = _policy(storage, FakeCodec(fail_thumbnail=True)).process(
        "f1", "raw/f1", "image/png", 100, 5 * MB
    )

    assert result.thumb_key is None
    assert [failure.stage for failure in result.soft_failures] == ["thumbnail"]
    assert (BUCKET, "thumbnails/f1.avif") not in storage.objects


def test_thumbnail_upload_failure_is_soft(storage) -> None:
    _seed(storage)
    storage.fail_put_prefix = "thumbnails/"

    result = _policy(storage, FakeCodec(encoded_size=MB)).process(
        "f1", "raw/f1", "image/jpeg", 10 * MB, 5 * MB
    )

    assert result.compressed is True
    assert result.thumb_key is None
    assert result.soft_failures[0].stage == "thumbnail"


def test_raw_delete_failure_is_swallowed(storage) -> None:
    _seed(storage)
    storage.fail_delete = True
    policy = _policy(storage, FakeCodec(encoded_size=MB))

    result = policy.process("f1", "raw/f1", "image/jpeg", 10 * MB, 5 * MB)
    policy.discard_superseded("f1", result)

    assert result.compressed is True
    assert (BUCKET, "raw/f1") in storage.objects
    assert [failure.stage for failure in result.soft_failures] == ["delete_raw"]


def test_raw_not_deleted_when_replacement_reuses_key(storage) -> None:
    _seed(storage, key="uploads/f1.avif")
    storage.fail_delete = True
    policy = _policy(storage, FakeCodec(encoded_size=MB))

    result = policy.process("f1", "uploads/f1.avif", "image/png", 10 * MB, 5 * MB)
    policy.discard_superseded("f1", result)

    assert result.compressed is True
    assert result.superseded_key is None
    assert result.soft_failures == []


def test_nothing_superseded_without_replacement(storage) -> None:
    _seed(storage)
    storage.fail_delete = True
    policy = _policy(storage, FakeCodec(encoded_size=6 * MB))

    result = policy.process("f1", "raw/f1", "image/jpeg", 10 * MB, 5 * MB)
    policy.discard_superseded("f1", result)

    assert result.superseded_key is None
    assert result.soft_failures == []


def test_missing_raw_object_propagates(storage) -> None:
    with pytest.raises(StorageNotFound, match="raw/f1"):
        _policy(storage, FakeCodec()).process("f1", "raw/f1", "image/jpeg", 100, 5 * MB)


def test_file_update_reflects_derived_objects() -> None:
    assert ProcessResult().file_update() is None
    assert ProcessResult(thumb_key="thumbnails/x.avif").file_update().changes() == {
        "thumbnail_key": "thumbnails/x.avif"
    }
    full = ProcessResult(
        compressed=True,
        new_key="uploads/x.avif",
        new_mime="image/avif",
        new_size=10,
        soft_failures=[SoftFailure("thumbnail", "boom")],
    )
    assert full.file_update().changes() == {
        "storage_key": "uploads/x.avif",
        "mime_type": "image/avif",
        "size_bytes": 10,
    }


def test_classify_content_type() -> None:
    gif = classify_content_type("image/gif")
    webp = classify_content_type(" Image/WebP ")
    jpeg = classify_content_type("image/jpeg")

    assert gif.is_gif and gif.potentially_animated
    assert webp.is_webp and webp.potentially_animated
    assert classify_content_type("image/avif").is_avif
    assert not jpeg.potentially_animated
    assert not classify_content_type(None).potentially_animated


@requires_avif
def test_large_jpeg_scenario(tmp_path) -> None:
    fs = FilesystemStorage(tmp_path)
    fs.put(BUCKET, "raw/f1.jpg", image_bytes("JPEG", (800, 600)), "image/jpeg")

    policy = TranscodePolicy(fs, BUCKET, PillowCodec())
    result = policy.process("f1", "raw/f1.jpg", "image/jpeg", 25_000_000, 5_000_000)

    assert result.compressed is True
    assert result.new_mime == "image/avif"
    assert result.new_size <= 5_000_000
    assert len(fs.get(BUCKET, "uploads/f1.avif")) == result.new_size
    policy.discard_superseded("f1", result)
    with pytest.raises(StorageNotFound):
        fs.get(BUCKET, "raw/f1.jpg")
    with Image.open(io.BytesIO(fs.get(BUCKET, result.thumb_key))) as thumb:
        assert thumb.width <= 320


@requires_avif
def test_animated_gif_scenario(tmp_path) -> None:
    fs = FilesystemStorage(tmp_path)
    fs.put(BUCKET, "raw/f2.gif", image_bytes("GIF", (480, 240), frames=3), "image/gif")

    result = TranscodePolicy(fs, BUCKET, PillowCodec()).process(
        "f2", "raw/f2.gif", "image/gif", 3_000_000, 1_000_000
    )

    assert result.compressed is False
    assert result.new_key is None
    assert fs.get(BUCKET, "raw/f2.gif")
    with Image.open(io.BytesIO(fs.get(BUCKET, "thumbnails/f2.avif"))) as thumb:
        assert getattr(thumb, "n_frames", 1) == 1
        assert thumb.size == (320, 160)


@requires_avif
def test_small_png_scenario(tmp_path) -> None:
    fs = FilesystemStorage(tmp_path)
    fs.put(BUCKET, "raw/f3.png", image_bytes("PNG", (640, 480)), "image/png")

    result = TranscodePolicy(fs, BUCKET, PillowCodec()).process(
        "f3", "raw/f3.png", "image/png", 2_000_000, 5_000_000
    )

    assert result.compressed is False
    assert result.thumb_key == "thumbnails/f3.avif"
    assert result.file_update().changes() == {"thumbnail_key": "thumbnails/f3.avif"}
