"""Model runtime: open the bundled ONNX model and labels, run inference.

Owns the single InferenceSession and label list for one classifier. Load
failures are never raised to the caller; they are retained and exposed via
``last_load_error`` until the next load attempt.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Protocol

import numpy as np
from onnxruntime import InferenceSession, SessionOptions
from onnxruntime.capi.onnxruntime_pybind11_state import ExecutionMode

from leafscan.errors import (
    AssetMissingError,
    ErrorKind,
    InferenceError,
    LeafScanError,
    ModelLoadError,
    RuntimeNotReadyError,
)
from leafscan.ml.postprocessing import OutputKind
from leafscan.ml.tensor import CHANNELS, ElementType

if TYPE_CHECKING:
    from numpy.typing import NDArray

    from leafscan.config import Settings

logger = logging.getLogger(__name__)

OUTPUT_KIND_METADATA_KEY = "output_kind"


# ---------------------------------------------------------------------------
# Protocol (kept for test doubles)
# ---------------------------------------------------------------------------


class ModelRuntime(Protocol):
    """Protocol for model lifecycle and inference."""

    @property
    def is_ready(self) -> bool:
        """Return True once a model and its labels are loaded."""
        ...

    @property
    def info(self) -> ModelInfo:
        """Return the loaded model's declared tensor contract."""
        ...

    @property
    def labels(self) -> list[str]:
        """Return the label list, index-aligned with output classes."""
        ...

    @property
    def last_load_error(self) -> str | None:
        """Return the most recent load failure message, or None."""
        ...

    @property
    def last_load_error_kind(self) -> ErrorKind | None:
        """Return the kind of the most recent load failure, or None."""
        ...

    def load(self) -> bool:
        """Open model and labels; return False (and retain the error) on failure."""
        ...

    def classify(self, batch: NDArray[np.generic]) -> NDArray[np.float64]:
        """Run the model on a batch-of-one tensor and return the raw class scores."""
        ...

    def release(self) -> None:
        """Free the model resources."""
        ...


# ---------------------------------------------------------------------------
# Model contract
# ---------------------------------------------------------------------------


@dataclass(frozen=True)
class ModelInfo:
    """Declared input/output contract of a loaded model (NHWC input)."""

    path: Path
    input_name: str
    output_name: str
    input_shape: tuple[int, int, int, int]
    input_type: ElementType
    output_shape: tuple[int, int]
    output_kind: OutputKind | None

    @property
    def height(self) -> int:
        return self.input_shape[1]

    @property
    def width(self) -> int:
        return self.input_shape[2]

    @property
    def num_classes(self) -> int:
        return self.output_shape[1]


def load_labels(path: Path) -> list[str]:
    """Read one label per line, trimmed, blank lines discarded."""
    if not path.is_file():
        raise AssetMissingError(f"Label file not found: {path}")
    try:
        text = path.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError) as exc:
        raise ModelLoadError(f"Label file {path} could not be read: {exc}") from exc
    return [line.strip() for line in text.splitlines() if line.strip()]


# ---------------------------------------------------------------------------
# Concrete implementation
# ---------------------------------------------------------------------------


class OnnxModelRuntime:
    """Loads the bundled ONNX model and labels and runs single-image inference."""

    def __init__(self, settings: Settings) -> None:
        self._settings = settings
        self._session: InferenceSession | None = None
        self._labels: list[str] | None = None
        self._info: ModelInfo | None = None
        self._last_load_error: LeafScanError | None = None

        self._providers = self._build_providers()
        self._session_options = self._build_session_options()

    # -- Public API ---------------------------------------------------------

    @property
    def is_ready(self) -> bool:
        return self._session is not None and self._labels is not None and self._info is not None

    @property
    def info(self) -> ModelInfo:
        if self._info is None:
            raise RuntimeNotReadyError("Model not loaded")
        return self._info

    @property
    def labels(self) -> list[str]:
        if self._labels is None:
            raise RuntimeNotReadyError("Model not loaded")
        return list(self._labels)

    @property
    def last_load_error(self) -> str | None:
        return None if self._last_load_error is None else str(self._last_load_error)

    @property
    def last_load_error_kind(self) -> ErrorKind | None:
        return None if self._last_load_error is None else self._last_load_error.kind

    def candidate_paths(self) -> list[Path]:
        """Return the model paths to try, in order."""
        paths = [self._settings.model_path]
        fallback = self._settings.model_fallback_path
        if fallback is not None and fallback != self._settings.model_path:
            paths.append(fallback)
        return paths

    def load(self) -> bool:
        """Open the model and labels, recording the tensor contract.

        Returns:
            True on success. On failure all state is cleared, the error is
            retained for ``last_load_error`` and False is returned.
        """
        try:
            path, session = self._open_session()
            labels = load_labels(self._settings.labels_path)
            info = self._read_info(path, session, labels)
        except LeafScanError as exc:
            logger.error("Error loading model: %s", exc)
            self._session = None
            self._labels = None
            self._info = None
            self._last_load_error = exc
            return False

        self._session = session
        self._labels = labels
        self._info = info
        self._last_load_error = None

        logger.info(
            "Input tensor: name=%s shape=%s type=%s",
            info.input_name,
            info.input_shape,
            info.input_type,
        )
        logger.info(
            "Output tensor: name=%s shape=%s kind=%s",
            info.output_name,
            info.output_shape,
            info.output_kind or "auto",
        )
        if len(labels) != info.num_classes:
            logger.warning("Label count %d differs from model class count %d", len(labels), info.num_classes)
        logger.info("Model and %d labels loaded from %s", len(labels), path)
        return True

    def classify(self, batch: NDArray[np.generic]) -> NDArray[np.float64]:
        """Run the model on a batch-of-one tensor.

        Raises:
            RuntimeNotReadyError: If no model is loaded.
            InferenceError: If the session raises or returns an unexpected shape
                or non-finite values.
        """
        session, info = self._session, self._info
        if session is None or info is None:
            raise RuntimeNotReadyError("Model not loaded")

        try:
            outputs = session.run([info.output_name], {info.input_name: batch})
        except Exception as exc:
            raise InferenceError(f"Exception during inference: {exc}") from exc

        raw = np.asarray(outputs[0])
        if raw.size != info.num_classes:
            raise InferenceError(f"Model returned {raw.size} values, expected {info.num_classes}")
        if raw.dtype.kind == "f" and not np.isfinite(raw).all():
            raise InferenceError("Model returned non-finite values")
        if raw.dtype == np.uint8:
            return raw.reshape(-1).astype(np.float64) / 255.0
        return raw.reshape(-1).astype(np.float64)

    def release(self) -> None:
        """Drop the session and labels; safe to call repeatedly."""
        if self._session is not None:
            logger.info("Model session released")
        self._session = None
        self._labels = None
        self._info = None

    # -- Internal -----------------------------------------------------------

    def _open_session(self) -> tuple[Path, InferenceSession]:
        failures: list[str] = []
        found_any = False
        for path in self.candidate_paths():
            if not path.is_file():
                logger.warning("Model asset not found at %s", path)
                failures.append(f"{path}: not found")
                continue
            found_any = True
            logger.info("Model asset found at %s, size=%d bytes", path, path.stat().st_size)
            try:
                session = InferenceSession(
                    str(path),
                    sess_options=self._session_options,
                    providers=self._providers,
                )
            except Exception as exc:  # noqa: BLE001
                logger.warning("Opening model %s failed: %s", path, exc)
                failures.append(f"{path}: {exc}")
                continue
            return path, session

        message = "Model could not be opened from any candidate path: " + " ; ".join(failures)
        if found_any:
            raise ModelLoadError(message)
        raise AssetMissingError(message)

    def _read_info(self, path: Path, session: InferenceSession, labels: list[str]) -> ModelInfo:
        model_input = session.get_inputs()[0]
        model_output = session.get_outputs()[0]

        input_shape = self._resolve_input_shape(model_input.shape)
        output_dims = list(model_output.shape)
        num_classes = output_dims[-1] if output_dims else None
        if not isinstance(num_classes, int) or num_classes <= 0:
            num_classes = len(labels)
        if num_classes == 0:
            raise ModelLoadError(f"Cannot determine class count from output shape {model_output.shape}")

        return ModelInfo(
            path=path,
            input_name=model_input.name,
            output_name=model_output.name,
            input_shape=input_shape,
            input_type=ElementType.from_onnx(model_input.type),
            output_shape=(1, num_classes),
            output_kind=self._resolve_output_kind(session),
        )

    def _resolve_input_shape(self, dims: list[int | str | None]) -> tuple[int, int, int, int]:
        if len(dims) != 4:
            raise ModelLoadError(f"Expected a 4-D NHWC input, model declares {dims}")

        default = self._settings.default_input_size
        _batch, height, width, channels = (d if isinstance(d, int) and d > 0 else None for d in dims)
        if channels is not None and channels != CHANNELS:
            raise ModelLoadError(f"Expected {CHANNELS} input channels (NHWC), model declares {dims}")
        return (1, height or default, width or default, CHANNELS)

    def _resolve_output_kind(self, session: InferenceSession) -> OutputKind | None:
        configured = self._settings.output_kind
        if configured != "auto":
            return OutputKind(configured)

        declared = session.get_modelmeta().custom_metadata_map.get(OUTPUT_KIND_METADATA_KEY)
        if declared is None:
            return None
        try:
            return OutputKind(declared.strip().lower())
        except ValueError:
            logger.warning("Ignoring unknown %s metadata value %r", OUTPUT_KIND_METADATA_KEY, declared)
            return None

    def _build_providers(self) -> list[str | tuple[str, dict[str, object]]]:
        device = self._settings.device
        if device == "cuda":
            return [
                (
                    "CUDAExecutionProvider",
                    {
                        "device_id": 0,
                        "gpu_mem_limit": self._settings.gpu_mem_limit,
                        "arena_extend_strategy": "kSameAsRequested",
                    },
                ),
                "CPUExecutionProvider",
            ]
        if device == "openvino":
            return [
                ("OpenVINOExecutionProvider", {"device_type": "CPU"}),
                "CPUExecutionProvider",
            ]
        return ["CPUExecutionProvider"]

    def _build_session_options(self) -> SessionOptions:
        opts = SessionOptions()
        opts.intra_op_num_threads = self._settings.intra_op_threads
        opts.inter_op_num_threads = self._settings.inter_op_threads
        opts.execution_mode = ExecutionMode.ORT_SEQUENTIAL
        opts.enable_mem_pattern = True
        opts.enable_mem_reuse = True

        if self._settings.device == "openvino":
            # OpenVINO does its own graph optimization
            from onnxruntime import GraphOptimizationLevel

            opts.graph_optimization_level = GraphOptimizationLevel.ORT_DISABLE_ALL
        return opts
