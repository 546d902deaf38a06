"""Pydantic result schemas handed to the UI layer."""

from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field

from leafscan.errors import ErrorKind


class LabelScore(BaseModel):
    """A single classification label with confidence score."""

    label: str
    confidence: float = Field(ge=0.0, le=1.0)


class InferenceReport(BaseModel):
    """Outcome of one classify call, successful or not.

    On failure only ``error``, ``error_kind`` and whatever stages completed
    before the failure are populated.
    """

    input_type: str | None = None
    input_shape: list[int] = Field(default_factory=list)
    output_shape: list[int] = Field(default_factory=list)
    raw_output: list[float] = Field(default_factory=list, description="Model output before normalization")
    probabilities: list[float] = Field(default_factory=list)
    top_results: list[LabelScore] = Field(default_factory=list)
    labels: list[str] = Field(default_factory=list)
    image_signature: str = Field(default="", description="First bytes of the input, hex encoded")
    error: str | None = None
    error_kind: ErrorKind | None = None

    @classmethod
    def failure(cls, kind: ErrorKind, message: str, **fields: Any) -> InferenceReport:
        return cls(error=message, error_kind=kind, **fields)

    @property
    def ok(self) -> bool:
        return self.error is None

    @property
    def best(self) -> LabelScore | None:
        return self.top_results[0] if self.top_results else None

    def as_top1(self) -> dict[str, float]:
        """Return ``{label: confidence}`` for the best result, or ``{}``."""
        best = self.best
        return {} if best is None else {best.label: best.confidence}

    def to_dict(self) -> dict[str, Any]:
        """Render as nested primitives for the UI."""
        return self.model_dump(mode="json")
