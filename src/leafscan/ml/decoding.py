"""Image decoding and resizing.

Raw encoded bytes are turned into an ``HxWx3`` RGB ``uint8`` grid of exactly
the model's input size. Decoders are tried in order and the first one that
produces a correctly sized grid wins:

1. Pillow, the general-purpose raster decoder.
2. OpenCV engine decode, scaled onto an exact-size RGBA canvas.
3. OpenCV codec decode with a size reduction hint.
"""

from __future__ import annotations

import io
import logging
from typing import TYPE_CHECKING

import cv2
import numpy as np
from PIL import Image, ImageOps

from leafscan.errors import DecodeError

if TYPE_CHECKING:
    from collections.abc import Callable, Sequence

    from numpy.typing import NDArray

    DecodeStrategy = Callable[[bytes, int, int], NDArray[np.uint8]]

logger = logging.getLogger(__name__)

_REDUCTIONS: tuple[tuple[int, int], ...] = (
    (8, cv2.IMREAD_REDUCED_COLOR_8),
    (4, cv2.IMREAD_REDUCED_COLOR_4),
    (2, cv2.IMREAD_REDUCED_COLOR_2),
)


# ---------------------------------------------------------------------------
# Strategies
# ---------------------------------------------------------------------------


def decode_with_pillow(image_bytes: bytes, width: int, height: int) -> NDArray[np.uint8]:
    """Decode with Pillow, apply EXIF orientation, drop alpha, bilinear resize."""
    with Image.open(io.BytesIO(image_bytes)) as image:
        oriented = ImageOps.exif_transpose(image)
        rgb = oriented.convert("RGB")
    resized = rgb.resize((width, height), Image.Resampling.BILINEAR)
    return np.asarray(resized, dtype=np.uint8)


def decode_with_opencv(image_bytes: bytes, width: int, height: int) -> NDArray[np.uint8]:
    """Decode with OpenCV and render onto a ``width x height`` RGBA canvas."""
    decoded = cv2.imdecode(_as_buffer(image_bytes), cv2.IMREAD_UNCHANGED)
    if decoded is None:
        raise ValueError("cv2.imdecode could not interpret the bytes")

    canvas = cv2.resize(_to_rgba(decoded), (width, height), interpolation=cv2.INTER_AREA)
    return np.ascontiguousarray(canvas[:, :, :3])


def decode_with_reduced_codec(image_bytes: bytes, width: int, height: int) -> NDArray[np.uint8]:
    """Decode at a reduced scale close to the target size, then resize exactly."""
    factor, flag = _reduction_for(image_bytes, width, height)
    frame = cv2.imdecode(_as_buffer(image_bytes), flag)
    if frame is None:
        raise ValueError(f"cv2.imdecode failed at reduction 1/{factor}")

    if frame.shape[1] != width or frame.shape[0] != height:
        frame = cv2.resize(frame, (width, height), interpolation=cv2.INTER_AREA)
    return cv2.cvtColor(frame, cv2.COLOR_BGR2RGB)


DEFAULT_STRATEGIES: tuple[DecodeStrategy, ...] = (
    decode_with_pillow,
    decode_with_opencv,
    decode_with_reduced_codec,
)


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def decode_image(
    image_bytes: bytes,
    width: int,
    height: int,
    strategies: Sequence[DecodeStrategy] = DEFAULT_STRATEGIES,
) -> NDArray[np.uint8]:
    """Decode raw image bytes into a resized RGB grid.

    Args:
        image_bytes: Raw file bytes (any format a strategy understands).
        width: Target width in pixels.
        height: Target height in pixels.
        strategies: Decoders tried in order until one succeeds.

    Returns:
        ``height x width x 3`` RGB uint8 numpy array.

    Raises:
        DecodeError: If no strategy produced an image of the target size.
    """
    if not image_bytes:
        raise DecodeError("Image bytes are empty")

    failures: list[str] = []
    for strategy in strategies:
        name = strategy.__name__
        try:
            pixels = strategy(image_bytes, width, height)
        except Exception as exc:  # noqa: BLE001
            logger.debug("Decoder %s failed: %s", name, exc)
            failures.append(f"{name}: {exc}")
            continue

        if pixels.shape != (height, width, 3):
            failures.append(f"{name}: produced shape {pixels.shape}, expected {(height, width, 3)}")
            continue
        if failures:
            logger.info("Decoded image with fallback %s after %d failure(s)", name, len(failures))
        return pixels

    message = "; ".join(failures)
    logger.warning("All decoders failed for %d bytes: %s", len(image_bytes), message)
    raise DecodeError(f"Could not decode image: {message}")


# ---------------------------------------------------------------------------
# Internal
# ---------------------------------------------------------------------------


def _as_buffer(image_bytes: bytes) -> NDArray[np.uint8]:
    buffer = np.frombuffer(image_bytes, dtype=np.uint8)
    if buffer.size == 0:
        raise ValueError("empty image buffer")
    return buffer


def _to_rgba(decoded: NDArray[np.generic]) -> NDArray[np.uint8]:
    """Convert any OpenCV decode result (gray, BGR, BGRA, 16-bit, float) to 8-bit RGBA."""
    if decoded.dtype == np.uint16:
        decoded = (decoded // 257).astype(np.uint8)
    elif decoded.dtype.kind == "f":
        decoded = (np.clip(decoded, 0.0, 1.0) * 255.0).round().astype(np.uint8)
    elif decoded.dtype != np.uint8:
        raise ValueError(f"unsupported pixel depth {decoded.dtype}")

    channels = 1 if decoded.ndim == 2 else decoded.shape[2]
    if channels == 1:
        return cv2.cvtColor(decoded, cv2.COLOR_GRAY2RGBA)
    if channels == 3:
        return cv2.cvtColor(decoded, cv2.COLOR_BGR2RGBA)
    if channels == 4:
        return cv2.cvtColor(decoded, cv2.COLOR_BGRA2RGBA)
    raise ValueError(f"unsupported channel count {channels}")


def _reduction_for(image_bytes: bytes, width: int, height: int) -> tuple[int, int]:
    """Pick the largest reduction whose frame still covers the target size.

    The source size comes from the header only, so this works even when the
    pixel data itself is too damaged for a full Pillow decode.
    """
    try:
        with Image.open(io.BytesIO(image_bytes)) as probe:
            src_width, src_height = probe.size
    except (OSError, ValueError, Image.DecompressionBombError):
        return 1, cv2.IMREAD_COLOR

    for factor, flag in _REDUCTIONS:
        if src_width // factor >= width and src_height // factor >= height:
            return factor, flag
    return 1, cv2.IMREAD_COLOR
