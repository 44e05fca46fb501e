"""Image codec adapter — wire formats to raw RGB buffers and back.

Every image that enters or leaves the generation pipeline passes through this
module:

- **Decoding** turns a base64 data URI or a file on disk into a
  :class:`RawImage`: a 3-channel interleaved RGB byte buffer.
- **Encoding** turns a :class:`RawImage` (usually a
  :class:`GenerationResult`) into PNG or JPEG bytes for the HTTP response.
- **Canny preprocessing** replaces a control image's pixels with the edge map
  computed by the engine.

Buffer ownership
----------------
A :class:`RawImage` owns its pixel buffer.  Whoever receives one must call
:meth:`RawImage.release` exactly once; a second release raises
``RuntimeError`` so that double frees surface immediately instead of being
silently ignored.
"""

from __future__ import annotations

import base64
import io
import logging
import re
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import TYPE_CHECKING

from PIL import Image

from sdserver.core.errors import EngineFailure, MalformedEncoding, UnsupportedImageContent

if TYPE_CHECKING:
    from sdserver.core.engine import Engine

logger = logging.getLogger(__name__)

# Fixed canny thresholds handed to the engine's edge detector.
CANNY_LOW_THRESHOLD = 0.08
CANNY_HIGH_THRESHOLD = 0.08
CANNY_WEAK = 0.8
CANNY_STRONG = 1.0
CANNY_INVERT = False

_BASE64_ALPHABET = re.compile(r"[A-Za-z0-9+/]*")

_PIL_MODES = {1: "L", 3: "RGB", 4: "RGBA"}


class OutputFormat(str, Enum):
    """Image container written to the HTTP response."""

    PNG = "png"
    JPEG = "jpeg"

    @property
    def content_type(self) -> str:
        return f"image/{self.value}"


@dataclass(eq=False)
class RawImage:
    """A decoded pixel buffer with single-owner release semantics.

    Attributes:
        width: Image width in pixels.
        height: Image height in pixels.
        channels: Bytes per pixel (3 for every decode path).
    """

    width: int
    height: int
    channels: int
    _data: bytes | None = field(repr=False)

    @property
    def data(self) -> bytes:
        """The interleaved pixel bytes.

        Raises:
            RuntimeError: If the buffer has already been released.
        """
        if self._data is None:
            raise RuntimeError(f"{type(self).__name__} buffer used after release")
        return self._data

    @data.setter
    def data(self, value: bytes) -> None:
        if self._data is None:
            raise RuntimeError(f"{type(self).__name__} buffer replaced after release")
        self._data = value

    @property
    def released(self) -> bool:
        return self._data is None

    def release(self) -> None:
        """Free the pixel buffer.

        Raises:
            RuntimeError: If the buffer was already released.
        """
        if self._data is None:
            raise RuntimeError(f"{type(self).__name__} released twice")
        self._data = None


class GenerationResult(RawImage):
    """A pixel buffer produced by an engine inference call."""


# ---------------------------------------------------------------------------
# PIL bridges.
# ---------------------------------------------------------------------------


def image_from_pil(image: Image.Image, cls: type[RawImage] = RawImage) -> RawImage:
    """Convert a PIL image to an RGB :class:`RawImage` (or subclass)."""
    rgb = image.convert("RGB")
    return cls(rgb.width, rgb.height, 3, rgb.tobytes())


def image_to_pil(image: RawImage) -> Image.Image:
    """Wrap a :class:`RawImage` buffer in a PIL image (copies the bytes)."""
    mode = _PIL_MODES.get(image.channels)
    if mode is None:
        raise ValueError(f"Unsupported channel count: {image.channels}")
    return Image.frombytes(mode, (image.width, image.height), image.data)


# ---------------------------------------------------------------------------
# Decoding.
# ---------------------------------------------------------------------------


def b64decode_strict(text: str) -> bytes:
    """Decode standard-alphabet base64, stopping at the first ``=``.

    Padding is optional.  Any character outside ``A-Z a-z 0-9 + /`` that
    appears before the first ``=`` is rejected.

    Raises:
        MalformedEncoding: On an out-of-alphabet character.
    """
    payload = text.split("=", 1)[0]
    if not _BASE64_ALPHABET.fullmatch(payload):
        raise MalformedEncoding("Invalid base64 character")

    # A lone trailing sextet carries no complete byte.
    if len(payload) % 4 == 1:
        payload = payload[:-1]
    payload += "=" * (-len(payload) % 4)
    return base64.b64decode(payload)


def _decode_bytes(data: bytes) -> RawImage:
    try:
        with Image.open(io.BytesIO(data)) as img:
            img.load()
            return image_from_pil(img)
    except (OSError, ValueError, Image.DecompressionBombError) as e:
        raise UnsupportedImageContent(f"Failed to load image from data URI: {e}") from e


def decode_data_uri(uri: str) -> RawImage:
    """Decode a ``data:<mime>;base64,<payload>`` URI into RGB pixels.

    Only the part after the first comma is read; the metadata prefix is
    ignored and the container format is detected from the content.

    Raises:
        MalformedEncoding: If there is no comma or the payload is not base64.
        UnsupportedImageContent: If the bytes are not a readable image.
    """
    prefix, sep, payload = uri.partition(",")
    if not sep:
        raise MalformedEncoding("Invalid data URI format")
    return _decode_bytes(b64decode_strict(payload))


def decode_file(path: str | Path) -> RawImage:
    """Load and decode an image file into RGB pixels.

    Raises:
        UnsupportedImageContent: If the file is missing or unreadable.
    """
    try:
        with Image.open(path) as img:
            img.load()
            return image_from_pil(img)
    except (OSError, ValueError, Image.DecompressionBombError) as e:
        raise UnsupportedImageContent(f"Failed to load image from {path}: {e}") from e


# ---------------------------------------------------------------------------
# Encoding.
# ---------------------------------------------------------------------------


def encode(image: RawImage, fmt: OutputFormat | str, quality: float = 0.9) -> bytes:
    """Encode *image* as PNG or JPEG.

    Args:
        image: The pixels to encode.  Not released by this function.
        fmt: ``png``, ``jpeg`` or ``jpg``.
        quality: JPEG quality in ``[0, 1]``, mapped to ``round(quality*100)``.
            Ignored for PNG.

    Returns:
        The encoded container bytes.

    Raises:
        ValueError: For any other format.  The builder rejects unknown
            formats, so reaching this is a programming error.
    """
    fmt_value = fmt.value if isinstance(fmt, OutputFormat) else str(fmt).lower()
    pil = image_to_pil(image)
    buf = io.BytesIO()

    if fmt_value == "png":
        pil.save(buf, format="PNG")
    elif fmt_value in ("jpeg", "jpg"):
        if pil.mode != "RGB":
            pil = pil.convert("RGB")
        pil.save(buf, format="JPEG", quality=round(quality * 100))
    else:
        raise ValueError(f"Unsupported image format: {fmt_value}")

    return buf.getvalue()


# ---------------------------------------------------------------------------
# Control-image preprocessing.
# ---------------------------------------------------------------------------


def apply_canny_preprocess(image: RawImage, engine: Engine) -> RawImage:
    """Replace *image*'s pixels with the engine's canny edge map.

    The buffer is swapped in place and the same object is returned.

    Raises:
        EngineFailure: If the engine returns no edge map.
    """
    edges = engine.canny_edge_detect(
        image.data,
        image.width,
        image.height,
        CANNY_LOW_THRESHOLD,
        CANNY_HIGH_THRESHOLD,
        CANNY_WEAK,
        CANNY_STRONG,
        CANNY_INVERT,
    )
    if edges is None:
        raise EngineFailure("Canny preprocessing failed")

    image.data = edges
    logger.debug("Canny preprocessing applied (%dx%d).", image.width, image.height)
    return image
