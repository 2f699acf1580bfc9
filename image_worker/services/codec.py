"""Pillow-backed image decoding and AVIF encoding."""

from __future__ import annotations

import io
import warnings
from dataclasses import dataclass
from typing import Protocol

from PIL import Image, UnidentifiedImageError

from ..core.errors import CodecError

AVIF_MIME = "image/avif"
AVIF_FORMAT = "AVIF"
DEFAULT_MAX_INPUT_PIXELS = 100_000_000


@dataclass(frozen=True)
class ImageInfo:
    """Header-level facts about a decoded image."""

    format: str | None
    width: int
    height: int
    frames: int = 1


class ImageCodec(Protocol):
    def probe(self, data: bytes, *, animated: bool = False) -> ImageInfo:
        ...

    def encode(self, data: bytes, *, quality: int) -> bytes:
        ...

    def thumbnail(self, data: bytes, *, width: int, quality: int) -> bytes:
        ...


class PillowCodec:
    """Decode arbitrary raster input and re-encode the first frame as AVIF.

    ``max_input_pixels`` is enforced before any pixel data is decoded, so a
    small file declaring huge dimensions is rejected up front.
    """

    def __init__(self, max_input_pixels: int = DEFAULT_MAX_INPUT_PIXELS) -> None:
        self.max_input_pixels = max_input_pixels

    def _open(self, data: bytes) -> Image.Image:
        try:
            with warnings.catch_warnings():
                warnings.simplefilter("ignore", Image.DecompressionBombWarning)
                image = Image.open(io.BytesIO(data))
        except Image.DecompressionBombError as exc:
            raise CodecError(f"image exceeds pixel limit: {exc}") from exc
        except UnidentifiedImageError as exc:
            raise CodecError("unsupported or corrupt image") from exc
        except (OSError, ValueError) as exc:
            raise CodecError(f"failed to decode image: {exc}") from exc

        width, height = image.size
        if width * height > self.max_input_pixels:
            image.close()
            raise CodecError(
                f"image is {width}x{height}, above the {self.max_input_pixels} pixel limit"
            )
        return image

    def probe(self, data: bytes, *, animated: bool = False) -> ImageInfo:
        image = self._open(data)
        try:
            frames = int(getattr(image, "n_frames", 1) or 1) if animated else 1
            return ImageInfo(format=image.format, width=image.width, height=image.height, frames=frames)
        except (OSError, ValueError, EOFError, SyntaxError) as exc:
            raise CodecError(f"failed to read image frames: {exc}") from exc
        finally:
            image.close()

    def encode(self, data: bytes, *, quality: int) -> bytes:
        image = self._open(data)
        try:
            return _save_avif(_first_frame(image), quality)
        except (OSError, ValueError, EOFError, KeyError, SyntaxError) as exc:
            raise CodecError(f"failed to encode image: {exc}") from exc
        finally:
            image.close()

    def thumbnail(self, data: bytes, *, width: int, quality: int) -> bytes:
        image = self._open(data)
        try:
            frame = _first_frame(image)
            if frame.width > width:
                height = max(1, round(frame.height * width / frame.width))
                frame = frame.resize((width, height), Image.Resampling.LANCZOS)
            return _save_avif(frame, quality)
        except (OSError, ValueError, EOFError, KeyError, SyntaxError) as exc:
            raise CodecError(f"failed to build thumbnail: {exc}") from exc
        finally:
            image.close()


def _first_frame(image: Image.Image) -> Image.Image:
    image.seek(0)
    frame = image.copy()
    if frame.mode in ("RGB", "RGBA"):
        return frame
    has_alpha = frame.mode in ("LA", "PA", "RGBa") or (
        frame.mode == "P" and "transparency" in frame.info
    )
    return frame.convert("RGBA" if has_alpha else "RGB")


def _save_avif(frame: Image.Image, quality: int) -> bytes:
    buffer = io.BytesIO()
    frame.save(buffer, format=AVIF_FORMAT, quality=quality)
    return buffer.getvalue()


__all__ = ["AVIF_MIME", "ImageCodec", "ImageInfo", "PillowCodec"]
