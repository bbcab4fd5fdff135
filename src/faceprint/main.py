"""FastAPI application entry point."""

from __future__ import annotations

import asyncio
import contextlib
import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

    from faceprint.ml.model_manager import ModelManager

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from faceprint.api.routes import router
from faceprint.config import Settings, get_settings
from faceprint.ml.extraction import FaceExtractor
from faceprint.ml.inference import InferencePool
from faceprint.ml.model_manager import OnnxModelManager
from faceprint.ml.pipeline import OnnxFacePipeline

logger = logging.getLogger(__name__)


def init_state(app: FastAPI, settings: Settings) -> None:
    """Build the inference stack and attach it to ``app.state``."""
    pool = InferencePool(settings)
    model_manager = OnnxModelManager(settings)
    app.state.settings = settings
    app.state.inference_pool = pool
    app.state.model_manager = model_manager
    app.state.extractor = FaceExtractor(
        OnnxFacePipeline(settings, model_manager),
        pool,
        target_size=settings.canvas_size,
        fill_color=settings.fill_color,
        max_pixels=settings.max_image_pixels,
    )


async def _evict_idle_models(model_manager: ModelManager, interval: float) -> None:
    while True:
        await asyncio.sleep(interval)
        try:
            model_manager.evict_idle()
        except Exception:
            logger.exception("Idle model eviction failed")


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: initialize on startup, clean up on shutdown."""
    settings = get_settings()

    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting Faceprint (device=%s, max_concurrent=%s, detection=%s, recognition=%s, canvas=%s)",
        settings.device,
        settings.max_concurrent,
        settings.face_detection_model,
        settings.face_recognition_model,
        settings.canvas_size,
    )

    init_state(app, settings)
    evictor: asyncio.Task[None] | None = None
    if settings.model_ttl > 0:
        evictor = asyncio.create_task(_evict_idle_models(app.state.model_manager, settings.model_ttl / 2))

    logger.info("Faceprint ready")
    yield

    logger.info("Shutting down Faceprint")
    if evictor is not None:
        evictor.cancel()
        with contextlib.suppress(asyncio.CancelledError):
            await evictor
    app.state.inference_pool.shutdown()
    app.state.model_manager.shutdown()
    logger.info("Faceprint shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="Faceprint",
        description="Batch face descriptor extraction over normalized image canvases",
        version="0.1.0",
        lifespan=lifespan,
    )

    application.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    application.include_router(router)
    return application


app = create_app()


def run() -> None:
    """Serve the app with uvicorn using the configured host and port."""
    import uvicorn

    settings = get_settings()
    uvicorn.run("faceprint.main:app", host=settings.host, port=settings.port)
