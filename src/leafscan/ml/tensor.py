"""Input tensor construction: flatten an RGB grid into the model's element type."""

from __future__ import annotations

import logging
from enum import StrEnum
from typing import TYPE_CHECKING

import numpy as np

from leafscan.errors import PreprocessError

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import NDArray

logger = logging.getLogger(__name__)

CHANNELS = 3


class ElementType(StrEnum):
    UINT8 = "uint8"
    FLOAT32 = "float32"

    @classmethod
    def from_onnx(cls, onnx_type: str) -> ElementType:
        """Map an ONNX type string such as ``tensor(uint8)`` to an element type.

        Anything other than uint8 is fed as float32.
        """
        if onnx_type == "tensor(uint8)":
            return cls.UINT8
        if onnx_type != "tensor(float)":
            logger.warning("Unexpected input type %s, feeding float32", onnx_type)
        return cls.FLOAT32


def build_input_tensor(pixels: NDArray[np.uint8], element_type: ElementType) -> NDArray[np.generic]:
    """Flatten an ``HxWx3`` RGB grid in row-major, channel-interleaved order.

    Args:
        pixels: HxWx3 RGB uint8 array.
        element_type: UINT8 keeps raw 0-255 values, FLOAT32 scales to 0.0-1.0.

    Returns:
        1-D array of length ``H * W * 3``.

    Raises:
        PreprocessError: If the grid is not a 3-channel image.
    """
    if pixels.ndim != 3 or pixels.shape[2] != CHANNELS:
        raise PreprocessError(f"Expected an HxWx{CHANNELS} pixel grid, got shape {pixels.shape}")

    flat = np.ascontiguousarray(pixels, dtype=np.uint8).reshape(-1)
    if element_type == ElementType.UINT8:
        return flat.copy()
    return flat.astype(np.float32) / np.float32(255.0)


def as_batch(tensor: NDArray[np.generic], input_shape: Sequence[int]) -> NDArray[np.generic]:
    """Wrap a flat single-image tensor into the model's batch-of-one shape."""
    shape = tuple(input_shape)
    if shape[0] != 1:
        raise PreprocessError(f"Only batch size 1 is supported, model declares {shape}")
    try:
        return tensor.reshape(shape)
    except ValueError as exc:
        raise PreprocessError(f"Cannot reshape tensor of {tensor.size} values to {shape}") from exc
