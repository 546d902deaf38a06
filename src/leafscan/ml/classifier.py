"""Leaf disease classifier: decode, build tensor, run model, rank labels.

Every call ends in an ``InferenceReport``. Stage failures are raised inside
the stages and converted to failure reports here, so the caller never sees
an exception from a classify call.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from leafscan.errors import ErrorKind, InferenceError, LeafScanError, RuntimeNotReadyError
from leafscan.ml import postprocessing
from leafscan.ml.decoding import decode_image
from leafscan.ml.tensor import as_batch, build_input_tensor
from leafscan.schemas import InferenceReport, LabelScore

if TYPE_CHECKING:
    from leafscan.config import Settings
    from leafscan.ml.inference import InferencePool
    from leafscan.ml.runtime import ModelRuntime

logger = logging.getLogger(__name__)


def image_signature(image_bytes: bytes, length: int) -> str:
    """Hex-encode the first ``length`` bytes, for correlating logs with results."""
    return image_bytes[:length].hex()


class LeafClassifier:
    """Runs the classification pipeline against one owned model runtime."""

    def __init__(self, runtime: ModelRuntime, pool: InferencePool, settings: Settings) -> None:
        self._runtime = runtime
        self._pool = pool
        self._settings = settings
        self._closed = False

    @property
    def runtime(self) -> ModelRuntime:
        return self._runtime

    @property
    def is_ready(self) -> bool:
        return self._runtime.is_ready

    async def ensure_loaded(self) -> bool:
        """Load the model on the inference pool unless it is already loaded."""
        if self._runtime.is_ready:
            return True
        if self._closed:
            return False
        try:
            return await self._pool.run(self._runtime.load)
        except TimeoutError:
            logger.warning("Timed out waiting to load the model")
            return False

    async def classify(self, image_bytes: bytes) -> InferenceReport:
        """Classify encoded image bytes, loading the model first if needed."""
        signature = image_signature(image_bytes, self._settings.signature_bytes)

        if self._closed:
            error = RuntimeNotReadyError("Classifier is closed")
            return InferenceReport.failure(error.kind, str(error), image_signature=signature)
        if not await self.ensure_loaded():
            return self._load_failure(signature)

        try:
            return await self._pool.run(self.run_pipeline, image_bytes)
        except TimeoutError:
            error = InferenceError("Timed out waiting for an inference slot")
            return InferenceReport.failure(error.kind, str(error), image_signature=signature)

    async def classify_top1(self, image_bytes: bytes) -> dict[str, float] | None:
        """Return ``{label: confidence}`` for the best class, or None on failure."""
        report = await self.classify(image_bytes)
        if not report.ok:
            logger.warning("Classification failed (%s): %s", report.error_kind, report.error)
            return None
        return postprocessing.top1(report.probabilities, report.labels)

    def run_pipeline(self, image_bytes: bytes) -> InferenceReport:
        """Run decode, tensor build, inference and postprocessing synchronously.

        Requires a loaded runtime; otherwise returns a ``runtime_not_ready``
        failure without decoding anything.
        """
        signature = image_signature(image_bytes, self._settings.signature_bytes)
        report = InferenceReport(image_signature=signature)

        try:
            info = self._runtime.info
            labels = self._runtime.labels
            report.input_type = str(info.input_type)
            report.input_shape = list(info.input_shape)
            report.output_shape = list(info.output_shape)
            report.labels = labels

            logger.debug(
                "Running inference: input_type=%s input_shape=%s output_shape=%s",
                info.input_type,
                info.input_shape,
                info.output_shape,
            )

            pixels = decode_image(image_bytes, info.width, info.height)
            tensor = build_input_tensor(pixels, info.input_type)
            batch = as_batch(tensor, info.input_shape)
            raw = self._runtime.classify(batch)
        except LeafScanError as exc:
            logger.warning("Inference failed at %s (signature=%s): %s", exc.kind, signature, exc)
            report.error = str(exc)
            report.error_kind = exc.kind
            return report

        probs = postprocessing.normalize(raw, info.output_kind)
        ranked = postprocessing.top_k(probs, labels, self._settings.top_k)

        report.raw_output = raw.tolist()
        report.probabilities = probs.tolist()
        report.top_results = [LabelScore(label=p.label, confidence=p.confidence) for p in ranked]
        logger.debug("Output signature=%s probs=%s", signature, report.probabilities)
        return report

    def close(self) -> None:
        """Release the model and stop the inference pool; later calls report failure."""
        self._closed = True
        self._runtime.release()
        self._pool.shutdown()

    def _load_failure(self, signature: str) -> InferenceReport:
        kind = self._runtime.last_load_error_kind or ErrorKind.MODEL_LOAD_FAILURE
        message = self._runtime.last_load_error or "Model could not be loaded"
        return InferenceReport.failure(kind, message, image_signature=signature)
