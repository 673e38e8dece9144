"""Pydantic request/response schemas for the ImageVision API."""

from __future__ import annotations

from pydantic import BaseModel, Field


class ToggleResponse(BaseModel):
    """New value of a flash or speech toggle."""

    enabled: bool
    label: str = Field(description="Button title, e.g. 'Flash: On' or 'Speech: Off'")


class StateResponse(BaseModel):
    """Everything the single screen displays."""

    state: str = Field(description="Pipeline state: 'idle', 'capturing', 'classifying' or 'announcing'")
    busy: bool
    identification: str
    confidence: str
    flash_label: str
    speech_label: str
    has_photo: bool


class RunOutcomeResponse(BaseModel):
    """Result of a finished pipeline run."""

    status: str = Field(
        description="'announced', 'capture_failed', 'classification_failed' or 'speech_failed'"
    )
    duration_ms: int
    identification: str | None = None
    confidence: str | None = None
    sentence: str | None = None
    spoken: bool = False


class CaptureResponse(BaseModel):
    """A pipeline run was started; ``outcome`` is set when the caller waited for it."""

    accepted: bool = True
    outcome: RunOutcomeResponse | None = None


class HealthResponse(BaseModel):
    """Health check response."""

    status: str = "ok"
    gpu: bool
    camera_ready: bool
    models_loaded: list[str]
    busy: bool
    active_stages: int


class ModelInfo(BaseModel):
    """Information about an available classifier model."""

    name: str
    status: str = Field(description="Model status: 'active' or 'available'")
    input_size: int
    license: str


class ModelsResponse(BaseModel):
    """Response for the models listing endpoint."""

    models: list[ModelInfo]


class ErrorResponse(BaseModel):
    """Standard error response."""

    detail: str
