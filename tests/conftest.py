"""Shared fakes and fixtures for the pipeline and API tests."""

from __future__ import annotations

import threading
import time
from typing import TYPE_CHECKING

import pytest

from imagevision.camera.session import CapturedImage, FlashMode
from imagevision.config import Settings
from imagevision.errors import CaptureError
from imagevision.ml.image_classifier import Classification, ClassificationResult
from imagevision.pipeline.workers import StagePool

if TYPE_CHECKING:
    from collections.abc import Iterator

PHOTO = CapturedImage(
    data=b"\xff\xd8photo",
    thumbnail=b"\xff\xd8thumb",
    width=1920,
    height=1080,
    flash=FlashMode.OFF,
    captured_at=0.0,
)


def make_result(*pairs: tuple[str, float]) -> ClassificationResult:
    return ClassificationResult(tuple(Classification(label=label, confidence=conf) for label, conf in pairs))


class FakeCamera:
    def __init__(self, error: Exception | None = None, ready: bool = True) -> None:
        self.error = error
        self.ready = ready
        self.flash = FlashMode.OFF
        self.calls: list[FlashMode | None] = []
        self.frame: bytes | None = b"\xff\xd8preview"

    def set_flash(self, flash: FlashMode) -> None:
        self.flash = flash

    def capture_photo(self, flash: FlashMode | None = None) -> CapturedImage:
        self.calls.append(flash)
        if self.error is not None:
            raise self.error
        return PHOTO

    def preview_frame(self) -> bytes | None:
        return self.frame

    def release(self) -> None:
        self.ready = False


class FakeClassifier:
    """Returns a canned result; optionally blocks until ``gate`` is set."""

    def __init__(
        self,
        result: ClassificationResult | None = None,
        error: Exception | None = None,
        gate: threading.Event | None = None,
    ) -> None:
        self.result = result if result is not None else make_result()
        self.error = error
        self.gate = gate
        self.images: list[bytes] = []

    def classify(self, image: bytes) -> ClassificationResult:
        self.images.append(image)
        if self.gate is not None:
            self.gate.wait(5)
        if self.error is not None:
            raise self.error
        return self.result


class FakeAnnouncer:
    def __init__(self, error: Exception | None = None, delay: float = 0.0) -> None:
        self.error = error
        self.delay = delay
        self.requests: list[tuple[str, bool]] = []
        self.spoken: list[str] = []

    def announce(self, text: str, enabled: bool) -> bool:
        self.requests.append((text, enabled))
        if not enabled:
            return False
        if self.delay:
            time.sleep(self.delay)
        if self.error is not None:
            raise self.error
        self.spoken.append(text)
        return True


def make_settings(**overrides: object) -> Settings:
    defaults: dict[str, object] = {
        "unknown_object_message": "I'm not sure what this is. Please try again.",
        "confidence_threshold": 0.5,
        "capture_timeout": 2.0,
        "classify_timeout": 2.0,
        "speech_timeout": 2.0,
        "stage_workers": 2,
        "models_dir": "/tmp/imagevision_test_models",
    }
    defaults.update(overrides)
    return Settings(**defaults)  # type: ignore[arg-type]


@pytest.fixture()
def stage_pool() -> Iterator[StagePool]:
    pool = StagePool(max_workers=2)
    yield pool
    pool.shutdown()


@pytest.fixture()
def failing_camera() -> FakeCamera:
    return FakeCamera(error=CaptureError("shutter jammed"))
