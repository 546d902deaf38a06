"""Environment-based configuration for LeafScan."""

from __future__ import annotations

from pathlib import Path
from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from LEAFSCAN_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="LEAFSCAN_",
        case_sensitive=False,
        protected_namespaces=("settings_",),
    )

    # Bundled assets
    model_path: Path = Path("assets/leaf_disease_efficientnetb0.onnx")
    model_fallback_path: Path | None = None
    labels_path: Path = Path("assets/labels.txt")

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Concurrency (None = wait for a slot indefinitely)
    max_concurrent: int = Field(default=1, ge=1)
    queue_timeout: float | None = Field(default=None, gt=0)

    # Pipeline
    top_k: int = Field(default=3, ge=1)
    signature_bytes: int = Field(default=8, ge=0)
    default_input_size: int = Field(default=224, ge=1)
    output_kind: Literal["auto", "probabilities", "logits"] = "auto"
    preload: bool = True

    log_level: str = "INFO"


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
