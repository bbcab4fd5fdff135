"""API route definitions."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, Request, UploadFile, status
from fastapi.responses import JSONResponse

from faceprint.api.middleware import verify_api_key
from faceprint.api.schemas import (
    ErrorResponse,
    ExtractDescriptorsResponse,
    FaceDescriptor,
    HealthResponse,
    ImageFailure,
    ModelInfo,
    ModelsResponse,
)
from faceprint.errors import ModelInitFailed, NoFacesDetected
from faceprint.ml.preprocessing import SourceImage
from faceprint.ml.registry import MODEL_REGISTRY, model_status

if TYPE_CHECKING:
    from faceprint.config import Settings
    from faceprint.ml.extraction import FaceExtractor
    from faceprint.ml.inference import InferencePool
    from faceprint.ml.model_manager import ModelManager

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_inference_pool(request: Request) -> InferencePool:
    pool: InferencePool = request.app.state.inference_pool
    return pool


def _get_model_manager(request: Request) -> ModelManager:
    manager: ModelManager = request.app.state.model_manager
    return manager


def _get_extractor(request: Request) -> FaceExtractor:
    extractor: FaceExtractor = request.app.state.extractor
    return extractor


def _error(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail})


@router.post(
    "/extract-descriptors",
    response_model=ExtractDescriptorsResponse,
    responses={
        status.HTTP_413_REQUEST_ENTITY_TOO_LARGE: {"model": ErrorResponse},
        status.HTTP_422_UNPROCESSABLE_ENTITY: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Extract face descriptors from a batch of images",
)
async def extract_descriptors(request: Request, files: list[UploadFile]) -> ExtractDescriptorsResponse | JSONResponse:
    """Extract one face descriptor per uploaded image.

    Only the first ``max_batch_size`` files are processed. Images without a
    usable face are reported under ``failures``; if no image yields a
    descriptor the request fails with 422 and one line per file.
    """
    settings = _get_settings(request)
    batch = files[: settings.max_batch_size]
    if len(files) > len(batch):
        logger.info(
            "Ignoring %d file(s) beyond the batch limit of %d",
            len(files) - len(batch),
            settings.max_batch_size,
        )

    images: list[SourceImage] = []
    for upload in batch:
        data = await upload.read()
        filename = upload.filename or "upload"
        if len(data) > settings.max_file_size:
            return _error(
                status.HTTP_413_REQUEST_ENTITY_TOO_LARGE,
                f"{filename} exceeds the {settings.max_file_size} byte limit",
            )
        images.append(SourceImage(filename=filename, data=data, content_type=upload.content_type))

    try:
        result = await _get_extractor(request).extract_batch(images)
    except NoFacesDetected as exc:
        return _error(status.HTTP_422_UNPROCESSABLE_ENTITY, str(exc))
    except ModelInitFailed as exc:
        logger.error("Face models unavailable: %s", exc)
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, f"Face models unavailable: {exc}")
    except TimeoutError:
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "Inference queue is full, retry later")

    return ExtractDescriptorsResponse(
        descriptors=[FaceDescriptor(filename=d.filename, vector=list(d.vector)) for d in result.descriptors],
        failures=[
            ImageFailure(filename=f.filename, reason=f.reason, detail=f.detail, message=f.message)
            for f in result.failures
        ],
        cancelled=result.cancelled,
    )


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    pool = _get_inference_pool(request)
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        models_loaded=_get_model_manager(request).loaded_models(),
        concurrent_requests=pool.active_count,
        queue_depth=pool.queue_depth,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return available models and their status based on current configuration."""
    settings = _get_settings(request)
    return ModelsResponse(
        models=[
            ModelInfo(
                name=spec.name,
                task=spec.task,
                status=model_status(spec, settings),
                license=spec.license,
            )
            for spec in MODEL_REGISTRY.values()
        ]
    )
