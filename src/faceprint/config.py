"""Environment-based configuration for Faceprint."""

from __future__ import annotations

from typing import Literal

from pydantic import Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict


class Settings(BaseSettings):
    """Application settings loaded from FACEPRINT_* environment variables."""

    model_config = SettingsConfigDict(
        env_prefix="FACEPRINT_",
        case_sensitive=False,
    )

    # Server
    host: str = "0.0.0.0"  # noqa: S104
    port: int = 8082

    # Authentication (None = disabled)
    api_key: str | None = None

    # ML device
    device: Literal["cpu", "cuda", "openvino"] = "cpu"

    # Model selection
    face_detection_model: str = "retinaface_resnet34"
    face_recognition_model: str = "auraface_v1"
    accept_insightface_license: bool = False
    models_dir: str = "models"

    # ONNX Runtime threading
    intra_op_threads: int = Field(default=0, ge=0)
    inter_op_threads: int = Field(default=1, ge=1)

    # Concurrency. The model runtime is treated as an exclusive resource, so
    # only raise this when the configured runtime is known to be re-entrant.
    max_concurrent: int = Field(default=1, ge=1)
    queue_timeout: float = Field(default=30.0, gt=0)

    # Input limits
    max_image_pixels: int = Field(default=16_777_216, ge=1)
    max_file_size: int = Field(default=209_715_200, ge=1)
    max_batch_size: int = Field(default=3, ge=1)

    # Canonical canvas
    canvas_size: int = Field(default=256, ge=1)
    fill_color: tuple[int, int, int] = (255, 255, 255)

    # Detection
    detection_threshold: float = Field(default=0.5, ge=0.0, le=1.0)

    # Model management
    model_ttl: int = Field(default=300, ge=0)
    gpu_mem_limit: int = Field(default=2_147_483_648, ge=0)

    @field_validator("fill_color")
    @classmethod
    def _check_fill_color(cls, value: tuple[int, int, int]) -> tuple[int, int, int]:
        if any(not 0 <= channel <= 255 for channel in value):
            raise ValueError("fill_color channels must be in 0..255")
        return value


def get_settings() -> Settings:
    """Create and return application settings."""
    return Settings()
