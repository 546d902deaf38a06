"""Tests for image decoding and the decoder fallback chain."""

from __future__ import annotations

import io

import numpy as np
import pytest
from PIL import Image

from leafscan.errors import DecodeError
from leafscan.ml.decoding import (
    decode_image,
    decode_with_opencv,
    decode_with_pillow,
    decode_with_reduced_codec,
)

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _encode(image: Image.Image, fmt: str = "PNG", **params: object) -> bytes:
    buffer = io.BytesIO()
    image.save(buffer, format=fmt, **params)
    return buffer.getvalue()


def _solid(size: tuple[int, int], color: tuple[int, ...], mode: str = "RGB") -> Image.Image:
    return Image.new(mode, size, color)


def _two_halves(size: tuple[int, int]) -> Image.Image:
    """Left half red, right half blue."""
    image = Image.new("RGB", size, (0, 0, 255))
    image.paste((255, 0, 0), (0, 0, size[0] // 2, size[1]))
    return image


# ---------------------------------------------------------------------------
# decode_image
# ---------------------------------------------------------------------------


class TestDecodeImage:
    @pytest.mark.parametrize(
        ("size", "fmt"),
        [((640, 480), "JPEG"), ((31, 97), "PNG"), ((8, 8), "PNG"), ((300, 40), "BMP")],
    )
    def test_output_has_target_shape(self, size: tuple[int, int], fmt: str) -> None:
        data = _encode(_solid(size, (30, 120, 60)), fmt)
        pixels = decode_image(data, 24, 16)
        assert pixels.shape == (16, 24, 3)
        assert pixels.dtype == np.uint8

    def test_alpha_channel_is_dropped(self) -> None:
        data = _encode(_solid((10, 10), (10, 20, 30, 0), mode="RGBA"))
        pixels = decode_image(data, 4, 4)
        assert pixels.shape == (4, 4, 3)
        assert pixels[0, 0].tolist() == [10, 20, 30]

    def test_grayscale_and_palette_become_rgb(self) -> None:
        gray = decode_image(_encode(_solid((6, 6), 200, mode="L")), 3, 3)
        assert gray[1, 1].tolist() == [200, 200, 200]

        palette = _solid((6, 6), (0, 255, 0)).convert("P")
        assert decode_image(_encode(palette), 3, 3)[1, 1].tolist() == [0, 255, 0]

    def test_repeatable_for_identical_input(self) -> None:
        rng = np.random.default_rng(3)
        noise = Image.fromarray(rng.integers(0, 256, size=(50, 70, 3), dtype=np.uint8))
        data = _encode(noise)
        np.testing.assert_array_equal(decode_image(data, 13, 11), decode_image(data, 13, 11))

    def test_corrupted_bytes_raise_decode_error(self) -> None:
        with pytest.raises(DecodeError, match="Could not decode image"):
            decode_image(b"this is definitely not an image", 8, 8)

    def test_truncated_png_raises_decode_error(self) -> None:
        data = _encode(_solid((64, 64), (1, 2, 3)))
        with pytest.raises(DecodeError):
            decode_image(data[:40], 8, 8)

    def test_empty_bytes_raise_decode_error(self) -> None:
        with pytest.raises(DecodeError, match="empty"):
            decode_image(b"", 8, 8)

    def test_exif_orientation_applied(self) -> None:
        exif = Image.Exif()
        exif[0x0112] = 6  # rotate 90 degrees clockwise for display
        data = _encode(_two_halves((40, 20)), "JPEG", exif=exif, quality=95)

        pixels = decode_image(data, 8, 8).astype(int)

        top, bottom = pixels[0, 4], pixels[7, 4]
        assert top[0] > top[2]
        assert bottom[2] > bottom[0]


# ---------------------------------------------------------------------------
# Fallback chain
# ---------------------------------------------------------------------------


class TestFallbackChain:
    def test_next_strategy_used_after_failure(self) -> None:
        calls: list[str] = []

        def broken(image_bytes: bytes, width: int, height: int) -> np.ndarray:
            calls.append("broken")
            raise OSError("cannot identify image file")

        def working(image_bytes: bytes, width: int, height: int) -> np.ndarray:
            calls.append("working")
            return np.full((height, width, 3), 7, dtype=np.uint8)

        pixels = decode_image(b"\x00\x01", 5, 4, strategies=(broken, working))

        assert calls == ["broken", "working"]
        assert pixels.shape == (4, 5, 3)

    def test_later_strategies_skipped_after_success(self) -> None:
        def first(image_bytes: bytes, width: int, height: int) -> np.ndarray:
            return np.zeros((height, width, 3), dtype=np.uint8)

        def never(image_bytes: bytes, width: int, height: int) -> np.ndarray:
            raise AssertionError("should not run")

        decode_image(b"\x00", 2, 2, strategies=(first, never))

    def test_wrong_shape_counts_as_failure(self) -> None:
        def too_small(image_bytes: bytes, width: int, height: int) -> np.ndarray:
            return np.zeros((1, 1, 3), dtype=np.uint8)

        with pytest.raises(DecodeError, match="too_small: produced shape"):
            decode_image(b"\x00", 4, 4, strategies=(too_small,))

    def test_error_message_names_every_strategy(self) -> None:
        with pytest.raises(DecodeError) as excinfo:
            decode_image(b"garbage bytes", 4, 4)
        message = str(excinfo.value)
        assert "decode_with_pillow" in message
        assert "decode_with_opencv" in message
        assert "decode_with_reduced_codec" in message


# ---------------------------------------------------------------------------
# Individual strategies
# ---------------------------------------------------------------------------


class TestStrategies:
    def test_pillow(self) -> None:
        pixels = decode_with_pillow(_encode(_solid((20, 10), (255, 0, 0))), 5, 5)
        assert pixels.shape == (5, 5, 3)
        assert pixels[2, 2].tolist() == [255, 0, 0]

    def test_opencv_returns_rgb_order(self) -> None:
        pixels = decode_with_opencv(_encode(_solid((20, 10), (255, 0, 0))), 5, 5)
        assert pixels.shape == (5, 5, 3)
        assert pixels[2, 2].tolist() == [255, 0, 0]

    def test_opencv_drops_alpha(self) -> None:
        data = _encode(_solid((12, 12), (10, 20, 30, 128), mode="RGBA"))
        pixels = decode_with_opencv(data, 6, 6)
        assert pixels[3, 3].tolist() == [10, 20, 30]

    def test_opencv_handles_16_bit(self) -> None:
        image = Image.fromarray(np.full((8, 8), 65535, dtype=np.uint16))
        pixels = decode_with_opencv(_encode(image), 4, 4)
        assert pixels[0, 0].tolist() == [255, 255, 255]

    def test_opencv_rejects_garbage(self) -> None:
        with pytest.raises(ValueError, match="imdecode"):
            decode_with_opencv(b"not an image", 4, 4)

    def test_reduced_codec_on_large_jpeg(self) -> None:
        data = _encode(_solid((800, 600), (0, 0, 255)), "JPEG", quality=95)
        pixels = decode_with_reduced_codec(data, 32, 32)
        assert pixels.shape == (32, 32, 3)
        red, green, blue = pixels[16, 16].tolist()
        assert blue > 200
        assert red < 40
        assert green < 40

    def test_reduced_codec_on_small_png(self) -> None:
        pixels = decode_with_reduced_codec(_encode(_solid((10, 10), (0, 255, 0))), 20, 20)
        assert pixels.shape == (20, 20, 3)
        assert pixels[5, 5].tolist() == [0, 255, 0]
