"""Output postprocessing: probability normalization and label ranking.

Models may emit either probabilities or raw logits. When the model does not
declare which, the output is treated as probabilities only if it has no
negative values and sums to 1.0 within ``SUM_TOLERANCE``.
"""

from __future__ import annotations

from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

import numpy as np

if TYPE_CHECKING:
    from collections.abc import Sequence

    from numpy.typing import ArrayLike, NDArray

SUM_TOLERANCE: float = 0.01


class OutputKind(StrEnum):
    PROBABILITIES = "probabilities"
    LOGITS = "logits"


@dataclass(frozen=True)
class Prediction:
    """A single ranked label prediction."""

    label: str
    confidence: float


def softmax(values: ArrayLike) -> NDArray[np.float64]:
    """Numerically stable softmax; an all-zero exponential sum yields zeros."""
    logits = np.asarray(values, dtype=np.float64)
    if logits.size == 0:
        return logits
    exps = np.exp(logits - logits.max())
    total = exps.sum()
    if total == 0:
        return np.zeros_like(exps)
    return exps / total


def looks_like_probabilities(values: NDArray[np.float64]) -> bool:
    total = float(values.sum())
    return not bool((values < 0).any()) and (1.0 - SUM_TOLERANCE) <= total <= (1.0 + SUM_TOLERANCE)


def normalize(raw_output: ArrayLike, output_kind: OutputKind | None = None) -> NDArray[np.float64]:
    """Turn raw model output into a probability distribution.

    Args:
        raw_output: Flat model output, one value per class.
        output_kind: What the model declares it emits. ``None`` falls back to
            the sum/negativity heuristic.

    Returns:
        Probabilities in [0, 1], same length as the input.
    """
    values = np.asarray(raw_output, dtype=np.float64).reshape(-1)
    if values.size == 0:
        return values

    if output_kind is None:
        output_kind = OutputKind.PROBABILITIES if looks_like_probabilities(values) else OutputKind.LOGITS

    if output_kind == OutputKind.LOGITS:
        return softmax(values)
    return np.clip(values, 0.0, 1.0)


def label_for(index: int, labels: Sequence[str]) -> str:
    if index < len(labels):
        return labels[index].strip()
    return f"class_{index}"


def top_k(probs: ArrayLike, labels: Sequence[str], k: int) -> list[Prediction]:
    """Return the ``min(k, len(probs))`` highest scores, earlier index first on ties."""
    scores = np.asarray(probs, dtype=np.float64).reshape(-1)
    order = np.argsort(-scores, kind="stable")
    return [Prediction(label=label_for(int(i), labels), confidence=float(scores[i])) for i in order[: max(k, 0)]]


def top1(probs: ArrayLike, labels: Sequence[str]) -> dict[str, float]:
    """Return ``{label: score}`` for the best class, or ``{}`` for empty input."""
    scores = np.asarray(probs, dtype=np.float64).reshape(-1)
    best_index = -1
    best_score = -np.inf
    for index, score in enumerate(scores):
        if score > best_score:
            best_index = index
            best_score = score

    if best_index == -1:
        return {}
    return {label_for(best_index, labels): float(best_score)}
