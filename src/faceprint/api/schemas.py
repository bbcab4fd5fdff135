"""Pydantic request/response schemas for the Faceprint API."""

from __future__ import annotations

from pydantic import BaseModel, Field

from faceprint.ml.extraction import FailureReason  # noqa: TC001
from faceprint.ml.registry import ModelStatus, ModelTask  # noqa: TC001


class FaceDescriptor(BaseModel):
    """Descriptor extracted from one uploaded image."""

    filename: str
    vector: list[float] = Field(description="L2-normalized face embedding")


class ImageFailure(BaseModel):
    """An uploaded image that did not yield a descriptor."""

    filename: str
    reason: FailureReason
    detail: str | None = None
    message: str = Field(description="One-line human-readable summary")


class ExtractDescriptorsResponse(BaseModel):
    """Response for the batch descriptor extraction endpoint."""

    descriptors: list[FaceDescriptor]
    failures: list[ImageFailure]
    cancelled: bool = False


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    models_loaded: list[str]
    concurrent_requests: int
    queue_depth: int


class ModelInfo(BaseModel):
    """Information about an available model."""

    name: str
    task: ModelTask
    status: ModelStatus
    license: str


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
