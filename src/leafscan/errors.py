"""Error kinds raised by the classification pipeline stages."""

from __future__ import annotations

from enum import StrEnum


class ErrorKind(StrEnum):
    ASSET_MISSING = "asset_missing"
    MODEL_LOAD_FAILURE = "model_load_failure"
    DECODE_FAILURE = "decode_failure"
    RUNTIME_NOT_READY = "runtime_not_ready"
    INFERENCE_FAILURE = "inference_failure"
    PREPROCESS_FAILURE = "preprocess_failure"


class LeafScanError(Exception):
    """Base class for pipeline failures; each subclass pins its ``kind``."""

    kind: ErrorKind = ErrorKind.INFERENCE_FAILURE


class AssetMissingError(LeafScanError):
    """The bundled model or label file was not found under any candidate path."""

    kind = ErrorKind.ASSET_MISSING


class ModelLoadError(LeafScanError):
    """The model file exists but could not be opened or has an unsupported contract."""

    kind = ErrorKind.MODEL_LOAD_FAILURE


class DecodeError(LeafScanError):
    """No decoder strategy could interpret the image bytes."""

    kind = ErrorKind.DECODE_FAILURE


class RuntimeNotReadyError(LeafScanError):
    kind = ErrorKind.RUNTIME_NOT_READY


class InferenceError(LeafScanError):
    kind = ErrorKind.INFERENCE_FAILURE


class PreprocessError(LeafScanError):
    """Tensor construction failed after a successful decode."""

    kind = ErrorKind.PREPROCESS_FAILURE
