"""Environment-based configuration for PresidentFace."""

from __future__ import annotations

from typing import Literal

from pydantic import Field
from pydantic_settings import BaseSettings, SettingsConfigDict

from presidentface.analysis.types import Category, CategoryConfig


class Settings(BaseSettings):
    """Application settings loaded from PRESIDENTFACE_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="PRESIDENTFACE_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8082

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Classifier location on the Hugging Face Hub
    hub_repo_id: str = "presidentface/president-lookalike"
    weights_filename: str = "model.onnx"
    metadata_filename: str = "metadata.json"
    hub_revision: str | None = None
    models_dir: str = "models"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Concurrency (None = queue without a deadline)
    max_concurrent: int = Field(default=2, ge=1)
    queue_timeout: float | None = Field(default=None, gt=0)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=20_971_520, ge=1)

    # Categories. The target label list has no built-in default: it is
    # deployment data and must match the labels the model was trained on.
    target_category: str = "president"
    target_labels: list[str] = Field(default_factory=list)
    target_prefix: str | None = "대통령_"
    secondary_prefixes: dict[str, str] = Field(default_factory=lambda: {"celebrity": "유명인_"})
    top_k: int = Field(default=3, ge=1)

    # Sessions
    max_sessions: int = Field(default=1024, ge=1)
    commentary_seed: int | None = None


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()


def build_categories(settings: Settings) -> CategoryConfig:
    """Build the target and secondary categories from settings."""
    target = Category(
        name=settings.target_category,
        labels=frozenset(settings.target_labels),
        prefix=settings.target_prefix or None,
    )
    secondary = tuple(
        Category(name=name, prefix=prefix) for name, prefix in sorted(settings.secondary_prefixes.items())
    )
    return CategoryConfig(target=target, secondary=secondary)
