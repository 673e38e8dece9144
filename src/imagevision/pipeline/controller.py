"""Session controller: the capture -> classify -> announce state machine.

One tap starts one pipeline run. The controller holds the busy state for
the whole run and releases it exactly once on every exit path, so the
capture surface can never be left locked.

States:
    idle --tap--> capturing --photo--> classifying --result--> announcing --spoken--> idle

Any stage failure (error or timeout) goes straight back to idle.
"""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING, Protocol

from imagevision.camera.session import FlashMode
from imagevision.errors import ImageVisionError

if TYPE_CHECKING:
    from collections.abc import Callable

    from imagevision.camera.session import CapturedImage
    from imagevision.config import Settings
    from imagevision.ml.image_classifier import ClassificationResult
    from imagevision.pipeline.workers import StagePool

logger = logging.getLogger(__name__)

SENTENCE_TEMPLATE = "This looks like a {label} and I am {confidence} percent sure"
CONFIDENCE_TEMPLATE = "Confidence: {confidence}%"

FLASH_LABELS = {FlashMode.ON: "Flash: On", FlashMode.OFF: "Flash: Off"}
SPEECH_LABELS = {True: "Speech: On", False: "Speech: Off"}


# ---------------------------------------------------------------------------
# Collaborator protocols
# ---------------------------------------------------------------------------


class PhotoCamera(Protocol):
    def set_flash(self, flash: FlashMode) -> None: ...

    def capture_photo(self, flash: FlashMode | None = None) -> CapturedImage: ...


class Classifier(Protocol):
    def classify(self, image: bytes) -> ClassificationResult: ...


class Announcer(Protocol):
    def announce(self, text: str, enabled: bool) -> bool: ...


# ---------------------------------------------------------------------------
# State
# ---------------------------------------------------------------------------


class PipelineState(StrEnum):
    IDLE = "idle"
    CAPTURING = "capturing"
    CLASSIFYING = "classifying"
    ANNOUNCING = "announcing"


class RunStatus(StrEnum):
    ANNOUNCED = "announced"
    CAPTURE_FAILED = "capture_failed"
    CLASSIFICATION_FAILED = "classification_failed"
    SPEECH_FAILED = "speech_failed"


_FAILURE_BY_STATE: dict[PipelineState, RunStatus] = {
    PipelineState.CAPTURING: RunStatus.CAPTURE_FAILED,
    PipelineState.CLASSIFYING: RunStatus.CLASSIFICATION_FAILED,
    PipelineState.ANNOUNCING: RunStatus.SPEECH_FAILED,
}


@dataclass(frozen=True)
class Announcement:
    """Display texts and spoken sentence derived from one classification."""

    identification: str
    confidence: str
    sentence: str


@dataclass(frozen=True)
class RunOutcome:
    """Result of one finished pipeline run."""

    status: RunStatus
    duration_ms: int
    announcement: Announcement | None = None
    spoken: bool = False


@dataclass
class ControllerState:
    """Everything the single screen displays."""

    pipeline: PipelineState = PipelineState.IDLE
    flash: FlashMode = FlashMode.OFF
    speech_enabled: bool = False
    identification_text: str = ""
    confidence_text: str = ""
    last_image: CapturedImage | None = None

    @property
    def busy(self) -> bool:
        return self.pipeline is not PipelineState.IDLE

    @property
    def flash_label(self) -> str:
        return FLASH_LABELS[self.flash]

    @property
    def speech_label(self) -> str:
        return SPEECH_LABELS[self.speech_enabled]


def describe(result: ClassificationResult, threshold: float, unknown_message: str) -> Announcement:
    """Turn a classification into display texts and a sentence.

    Only the top prediction counts. A confidence equal to ``threshold`` is
    treated as confident.
    """
    top = result.top
    if top is None or top.confidence < threshold:
        return Announcement(identification=unknown_message, confidence="", sentence=unknown_message)

    percent = round(top.confidence * 100)
    return Announcement(
        identification=top.label,
        confidence=CONFIDENCE_TEMPLATE.format(confidence=percent),
        sentence=SENTENCE_TEMPLATE.format(label=top.label, confidence=percent),
    )


# ---------------------------------------------------------------------------
# Controller
# ---------------------------------------------------------------------------


class SessionController:
    """Orchestrates camera, classifier and announcer for the single screen."""

    def __init__(
        self,
        camera: PhotoCamera,
        classifier: Classifier,
        announcer: Announcer,
        pool: StagePool,
        settings: Settings,
        on_state_change: Callable[[PipelineState], None] | None = None,
    ) -> None:
        self._camera = camera
        self._classifier = classifier
        self._announcer = announcer
        self._pool = pool
        self._settings = settings
        self._on_state_change = on_state_change
        self._task: asyncio.Task[RunOutcome] | None = None
        self.state = ControllerState()
        self.last_outcome: RunOutcome | None = None

    # -- Toggles ------------------------------------------------------------

    def toggle_flash(self) -> FlashMode:
        """Invert the flash mode. Allowed in any state."""
        self.state.flash = FlashMode.OFF if self.state.flash is FlashMode.ON else FlashMode.ON
        self._camera.set_flash(self.state.flash)
        logger.info("%s", self.state.flash_label)
        return self.state.flash

    def toggle_speech(self) -> bool:
        """Invert the announcement toggle. Allowed in any state."""
        self.state.speech_enabled = not self.state.speech_enabled
        logger.info("%s", self.state.speech_label)
        return self.state.speech_enabled

    # -- Pipeline -----------------------------------------------------------

    def tap(self) -> bool:
        """Start one pipeline run on the running event loop.

        Returns False without doing anything while a run is in progress.
        """
        return self._start() is not None

    async def capture(self) -> RunOutcome | None:
        """Tap and wait for the run to finish. Returns None if the tap was ignored."""
        task = self._start()
        if task is None:
            return None
        return await task

    async def wait_idle(self) -> RunOutcome | None:
        """Wait for the current run, if any, and return the latest outcome."""
        if self._task is not None and not self._task.done():
            await asyncio.shield(self._task)
        return self.last_outcome

    def _start(self) -> asyncio.Task[RunOutcome] | None:
        if self.state.busy:
            logger.info("Tap ignored while %s", self.state.pipeline)
            return None

        loop = asyncio.get_running_loop()
        logger.debug("%s -> %s", self.state.pipeline, PipelineState.CAPTURING)
        self.state.pipeline = PipelineState.CAPTURING
        task = loop.create_task(self._run(), name="pipeline-run")
        self._task = task
        self._notify(PipelineState.CAPTURING)
        return task

    async def _run(self) -> RunOutcome:
        t0 = time.monotonic()
        settings = self._settings
        status = RunStatus.CAPTURE_FAILED
        announcement: Announcement | None = None
        spoken = False
        try:
            image = await self._pool.run(
                self._camera.capture_photo, self.state.flash, timeout=settings.capture_timeout
            )
            self.state.last_image = image
            self._enter(PipelineState.CLASSIFYING)

            result = await self._pool.run(self._classifier.classify, image.data, timeout=settings.classify_timeout)
            announcement = describe(result, settings.confidence_threshold, settings.unknown_object_message)
            self.state.identification_text = announcement.identification
            self.state.confidence_text = announcement.confidence
            self._enter(PipelineState.ANNOUNCING)

            spoken = await self._pool.run(
                self._announcer.announce,
                announcement.sentence,
                self.state.speech_enabled,
                timeout=settings.speech_timeout,
            )
            status = RunStatus.ANNOUNCED
        except (ImageVisionError, TimeoutError) as e:
            status = _FAILURE_BY_STATE[self.state.pipeline]
            logger.warning("%s while %s: %s", type(e).__name__, self.state.pipeline, str(e) or "timed out")
        except Exception:
            status = _FAILURE_BY_STATE[self.state.pipeline]
            logger.exception("Unexpected error while %s", self.state.pipeline)
        finally:
            self._enter(PipelineState.IDLE)

        outcome = RunOutcome(
            status=status,
            duration_ms=int((time.monotonic() - t0) * 1000),
            announcement=announcement,
            spoken=spoken,
        )
        self.last_outcome = outcome
        logger.info("Run finished: %s in %dms", outcome.status, outcome.duration_ms)
        return outcome

    def _enter(self, new_state: PipelineState) -> None:
        logger.debug("%s -> %s", self.state.pipeline, new_state)
        self.state.pipeline = new_state
        self._notify(new_state)

    def _notify(self, new_state: PipelineState) -> None:
        if self._on_state_change is None:
            return
        # Listener errors never interrupt a run.
        try:
            self._on_state_change(new_state)
        except Exception:
            logger.exception("State listener failed on %s", new_state)
