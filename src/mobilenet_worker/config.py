"""Environment-based configuration for the MobileNet inference worker."""

from __future__ import annotations

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Worker settings loaded from MOBILENET_WORKER_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="MOBILENET_WORKER_",
        case_sensitive=False,
        protected_namespaces=(),
    )

    # Retrained classifier location: local directory or http(s) URL
    model_dir: str = "./model"
    # Bundled label asset overriding <model_dir>/labels.json
    labels_path: str | None = None
    # Download cache for the feature extractor and remote model directories
    models_dir: str = "./models"
    load_on_startup: bool = False
    http_timeout: float = Field(default=30.0, gt=0)

    # Predictions
    top_k: int = Field(default=5, ge=1)

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency (one graph execution at a time per worker)
    max_concurrent: int = Field(default=1, ge=1)
    queue_timeout: float = Field(default=5.0, ge=0)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=209_715_200, ge=1)


def get_settings() -> Settings:
    """Create and return worker settings."""
    return Settings()
