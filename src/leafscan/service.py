"""Classifier lifecycle: build on startup, release on shutdown."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

from leafscan.config import Settings, get_settings
from leafscan.ml.classifier import LeafClassifier
from leafscan.ml.inference import InferencePool
from leafscan.ml.runtime import OnnxModelRuntime

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

logger = logging.getLogger(__name__)


def create_classifier(settings: Settings | None = None) -> LeafClassifier:
    """Build a classifier with its own runtime and inference pool (model not loaded yet)."""
    settings = settings or get_settings()
    return LeafClassifier(OnnxModelRuntime(settings), InferencePool(settings), settings)


@asynccontextmanager
async def open_classifier(settings: Settings | None = None) -> AsyncIterator[LeafClassifier]:
    """Classifier lifespan: configure logging, optionally preload, clean up on exit."""
    settings = settings or get_settings()

    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting LeafScan (device=%s, model=%s, labels=%s, max_concurrent=%s)",
        settings.device,
        settings.model_path,
        settings.labels_path,
        settings.max_concurrent,
    )

    classifier = create_classifier(settings)

    if settings.preload and not await classifier.ensure_loaded():
        logger.error("Model preload failed: %s", classifier.runtime.last_load_error)

    try:
        yield classifier
    finally:
        logger.info("Shutting down LeafScan")
        classifier.close()
        logger.info("LeafScan shutdown complete")
