"""API route definitions: the single screen's controls and displays."""

from __future__ import annotations

from typing import TYPE_CHECKING

from fastapi import APIRouter, Depends, Request, Response, status
from fastapi.responses import JSONResponse

from imagevision.api.middleware import verify_api_key
from imagevision.api.schemas import (
    CaptureResponse,
    ErrorResponse,
    HealthResponse,
    ModelInfo,
    ModelsResponse,
    RunOutcomeResponse,
    StateResponse,
    ToggleResponse,
)
from imagevision.camera.session import FlashMode
from imagevision.ml.model_manager import MODEL_REGISTRY

if TYPE_CHECKING:
    from imagevision.camera.session import CaptureSessionManager
    from imagevision.config import Settings
    from imagevision.ml.model_manager import ModelManager
    from imagevision.pipeline.controller import RunOutcome, SessionController
    from imagevision.pipeline.workers import StagePool

router = APIRouter(prefix="/api/v1", dependencies=[Depends(verify_api_key)])

JPEG_MEDIA_TYPE = "image/jpeg"


def _get_settings(request: Request) -> Settings:
    settings: Settings = request.app.state.settings
    return settings


def _get_controller(request: Request) -> SessionController:
    controller: SessionController = request.app.state.controller
    return controller


def _get_camera(request: Request) -> CaptureSessionManager:
    camera: CaptureSessionManager = request.app.state.camera
    return camera


def _error(status_code: int, detail: str) -> JSONResponse:
    return JSONResponse(status_code=status_code, content={"detail": detail})


def _outcome_response(outcome: RunOutcome) -> RunOutcomeResponse:
    announcement = outcome.announcement
    return RunOutcomeResponse(
        status=outcome.status,
        duration_ms=outcome.duration_ms,
        identification=announcement.identification if announcement else None,
        confidence=announcement.confidence if announcement else None,
        sentence=announcement.sentence if announcement else None,
        spoken=outcome.spoken,
    )


@router.post(
    "/capture",
    status_code=status.HTTP_202_ACCEPTED,
    response_model=CaptureResponse,
    responses={
        status.HTTP_409_CONFLICT: {"model": ErrorResponse},
        status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse},
    },
    summary="Take a photo, classify it and announce the result",
)
async def capture(request: Request, wait: bool = False) -> CaptureResponse | JSONResponse:
    """Equivalent of tapping the camera preview.

    With ``wait=true`` the response is sent once the run has finished.
    """
    camera = _get_camera(request)
    if not camera.ready:
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "Camera is not available")

    controller = _get_controller(request)
    if not controller.tap():
        return _error(status.HTTP_409_CONFLICT, "A capture is already in progress")

    if not wait:
        return CaptureResponse()

    outcome = await controller.wait_idle()
    if outcome is None:
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "Capture did not produce an outcome")
    return CaptureResponse(outcome=_outcome_response(outcome))


@router.post("/flash/toggle", response_model=ToggleResponse, summary="Toggle the flash")
async def toggle_flash(request: Request) -> ToggleResponse:
    controller = _get_controller(request)
    flash = controller.toggle_flash()
    return ToggleResponse(enabled=flash is FlashMode.ON, label=controller.state.flash_label)


@router.post("/speech/toggle", response_model=ToggleResponse, summary="Toggle spoken announcements")
async def toggle_speech(request: Request) -> ToggleResponse:
    controller = _get_controller(request)
    enabled = controller.toggle_speech()
    return ToggleResponse(enabled=enabled, label=controller.state.speech_label)


@router.get("/state", response_model=StateResponse, summary="Current screen state")
async def get_state(request: Request) -> StateResponse:
    """Return labels, toggles and the busy indicator."""
    state = _get_controller(request).state
    return StateResponse(
        state=state.pipeline,
        busy=state.busy,
        identification=state.identification_text,
        confidence=state.confidence_text,
        flash_label=state.flash_label,
        speech_label=state.speech_label,
        has_photo=state.last_image is not None,
    )


@router.get(
    "/photo",
    response_class=Response,
    responses={status.HTTP_404_NOT_FOUND: {"model": ErrorResponse}},
    summary="Last captured photo",
)
async def get_photo(request: Request, thumbnail: bool = False) -> Response:
    image = _get_controller(request).state.last_image
    if image is None:
        return _error(status.HTTP_404_NOT_FOUND, "No photo has been captured yet")
    return Response(content=image.thumbnail if thumbnail else image.data, media_type=JPEG_MEDIA_TYPE)


@router.get(
    "/preview",
    response_class=Response,
    responses={status.HTTP_503_SERVICE_UNAVAILABLE: {"model": ErrorResponse}},
    summary="Latest live camera frame",
)
async def get_preview(request: Request) -> Response:
    camera = _get_camera(request)
    frame = camera.preview_frame() if camera.ready else None
    if frame is None:
        return _error(status.HTTP_503_SERVICE_UNAVAILABLE, "Camera is not streaming")
    return Response(content=frame, media_type=JPEG_MEDIA_TYPE)


@router.get(
    "/health",
    response_model=HealthResponse,
    summary="Health check",
)
async def health(request: Request) -> HealthResponse:
    """Return service health status."""
    settings = _get_settings(request)
    manager: ModelManager = request.app.state.model_manager
    pool: StagePool = request.app.state.stage_pool
    return HealthResponse(
        status="ok",
        gpu=settings.device == "cuda",
        camera_ready=_get_camera(request).ready,
        models_loaded=manager.get_loaded_models(),
        busy=_get_controller(request).state.busy,
        active_stages=pool.active_count,
    )


@router.get(
    "/models",
    response_model=ModelsResponse,
    summary="List available classifier models",
)
async def list_models(request: Request) -> ModelsResponse:
    """Return known classifiers; the configured one is marked active."""
    settings = _get_settings(request)
    return ModelsResponse(
        models=[
            ModelInfo(
                name=spec.name,
                status="active" if spec.name == settings.classifier_model else "available",
                input_size=spec.input_size,
                license=spec.license,
            )
            for spec in MODEL_REGISTRY.values()
        ]
    )
