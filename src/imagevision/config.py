"""Environment-based configuration for ImageVision."""

from __future__ import annotations

from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from imagevision.ml.model_manager import MODEL_REGISTRY

DEFAULT_UNKNOWN_OBJECT_MESSAGE = "I'm not sure what this is. Please try again."


class Settings(BaseSettings):
    """Application settings loaded from IMAGEVISION_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="IMAGEVISION_",
        case_sensitive=False,
        protected_namespaces=("settings_",),
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8083
    log_level: Literal["DEBUG", "INFO", "WARNING", "ERROR"] = "INFO"

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Classifier
    classifier_model: str = "squeezenet1.1"
    model_path: str | None = None
    labels_path: str | None = None
    models_dir: str = "models"
    top_k: int = Field(default=5, ge=1)
    confidence_threshold: float = Field(default=0.5, ge=0.0, le=1.0)
    unknown_object_message: str = DEFAULT_UNKNOWN_OBJECT_MESSAGE

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    # Camera
    camera_index: int = Field(default=0, ge=0)
    resolution_preset: Literal["vga640x480", "hd1280x720", "hd1920x1080"] = "hd1920x1080"
    orientation: Literal["landscape", "portrait"] = "landscape"
    jpeg_quality: int = Field(default=90, ge=1, le=100)
    thumbnail_size: int = Field(default=160, ge=16)

    # Speech
    speech_rate: int = Field(default=180, ge=1)
    speech_voice: str | None = None

    # Pipeline stages
    stage_workers: int = Field(default=2, ge=1)
    capture_timeout: float = Field(default=10.0, gt=0)
    classify_timeout: float = Field(default=30.0, gt=0)
    speech_timeout: float = Field(default=30.0, gt=0)

    @field_validator("classifier_model")
    @classmethod
    def check_classifier_model(cls, value: str) -> str:
        if value not in MODEL_REGISTRY:
            known = ", ".join(sorted(MODEL_REGISTRY))
            raise ValueError(f"Unknown classifier model '{value}' (available: {known})")
        return value


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
