"""FastAPI application entry point."""

from __future__ import annotations

import logging
from contextlib import asynccontextmanager
from typing import TYPE_CHECKING

if TYPE_CHECKING:
    from collections.abc import AsyncIterator

import uvicorn
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from imagevision.api.routes import router
from imagevision.camera.session import CaptureConfiguration, CaptureSessionManager
from imagevision.config import get_settings
from imagevision.errors import ModelLoadError
from imagevision.ml.image_classifier import OnnxImageClassifier
from imagevision.ml.model_manager import OnnxModelManager
from imagevision.pipeline.controller import SessionController
from imagevision.pipeline.workers import StagePool
from imagevision.speech.announcer import SpeechAnnouncer

logger = logging.getLogger(__name__)


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Application lifespan: build every component once, tear down on shutdown."""
    settings = get_settings()
    app.state.settings = settings

    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )

    logger.info(
        "Starting ImageVision (device=%s, model=%s, camera=%d, preset=%s)",
        settings.device,
        settings.classifier_model,
        settings.camera_index,
        settings.resolution_preset,
    )

    camera = CaptureSessionManager(CaptureConfiguration.from_settings(settings))
    if not camera.configure():
        logger.warning("No camera: captures are disabled until restart")
    app.state.camera = camera

    model_manager = OnnxModelManager(settings)
    app.state.model_manager = model_manager
    spec = model_manager.get_spec(settings.classifier_model)
    classifier = OnnxImageClassifier(model_manager, spec.name, spec.input_size, top_k=settings.top_k)
    try:
        classifier.load()
    except ModelLoadError as e:
        logger.error("%s; will retry on first capture", e)

    stage_pool = StagePool(settings.stage_workers)
    app.state.stage_pool = stage_pool
    app.state.controller = SessionController(
        camera=camera,
        classifier=classifier,
        announcer=SpeechAnnouncer(rate=settings.speech_rate, voice=settings.speech_voice),
        pool=stage_pool,
        settings=settings,
    )

    logger.info("ImageVision ready")
    yield

    logger.info("Shutting down ImageVision")
    await app.state.controller.wait_idle()
    stage_pool.shutdown()
    camera.release()
    model_manager.shutdown()
    logger.info("ImageVision shutdown complete")


def create_app() -> FastAPI:
    """Create and configure the FastAPI application."""
    application = FastAPI(
        title="ImageVision",
        description="Tap to photograph, classify and announce the dominant object",
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


def serve() -> None:
    """Run the application with uvicorn using the configured host and port."""
    settings = get_settings()
    uvicorn.run("imagevision.main:app", host=settings.host, port=settings.port, log_level=settings.log_level.lower())
