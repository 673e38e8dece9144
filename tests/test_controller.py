"""Tests for the session controller state machine."""

from __future__ import annotations

import asyncio
import threading
from typing import TYPE_CHECKING

import pytest
from conftest import PHOTO, FakeAnnouncer, FakeCamera, FakeClassifier, make_result, make_settings

from imagevision.camera.session import FlashMode
from imagevision.errors import InferenceError, ModelLoadError, SpeechError
from imagevision.pipeline.controller import (
    PipelineState,
    RunStatus,
    SessionController,
    describe,
)

if TYPE_CHECKING:
    from imagevision.ml.image_classifier import ClassificationResult
    from imagevision.pipeline.workers import StagePool

UNKNOWN = "I'm not sure what this is. Please try again."

# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------


def _make_controller(
    pool: StagePool,
    camera: FakeCamera | None = None,
    classifier: FakeClassifier | None = None,
    announcer: FakeAnnouncer | None = None,
    states: list[PipelineState] | None = None,
    **settings_overrides: object,
) -> SessionController:
    return SessionController(
        camera=camera or FakeCamera(),
        classifier=classifier or FakeClassifier(),
        announcer=announcer or FakeAnnouncer(),
        pool=pool,
        settings=make_settings(**settings_overrides),
        on_state_change=states.append if states is not None else None,
    )


async def _wait_for_state(controller: SessionController, state: PipelineState) -> None:
    for _ in range(200):
        if controller.state.pipeline is state:
            return
        await asyncio.sleep(0.01)
    raise AssertionError(f"controller never reached {state}")


# ---------------------------------------------------------------------------
# describe()
# ---------------------------------------------------------------------------


class TestDescribe:
    @pytest.mark.parametrize(
        ("confidence", "percent"),
        [(0.92, 92), (0.5, 50), (0.999, 100), (0.755, 76), (1.0, 100)],
    )
    def test_confident_prediction(self, confidence: float, percent: int) -> None:
        announcement = describe(make_result(("golden retriever", confidence)), 0.5, UNKNOWN)
        assert announcement.identification == "golden retriever"
        assert announcement.confidence == f"Confidence: {percent}%"
        assert announcement.sentence == f"This looks like a golden retriever and I am {percent} percent sure"

    @pytest.mark.parametrize("confidence", [0.0, 0.31, 0.4999])
    def test_low_confidence_is_unknown(self, confidence: float) -> None:
        announcement = describe(make_result(("sponge", confidence)), 0.5, UNKNOWN)
        assert announcement.identification == UNKNOWN
        assert announcement.confidence == ""
        assert announcement.sentence == UNKNOWN

    def test_empty_result_is_unknown(self) -> None:
        announcement = describe(make_result(), 0.5, UNKNOWN)
        assert announcement.identification == UNKNOWN
        assert announcement.confidence == ""
        assert announcement.sentence == UNKNOWN

    def test_only_top_prediction_counts(self) -> None:
        result = make_result(("sponge", 0.45), ("starfish", 0.44))
        assert describe(result, 0.5, UNKNOWN).identification == UNKNOWN

    def test_unknown_message_is_configurable(self) -> None:
        announcement = describe(make_result(), 0.5, "No idea")
        assert announcement.sentence == "No idea"


# ---------------------------------------------------------------------------
# Toggles
# ---------------------------------------------------------------------------


class TestToggles:
    def test_initial_labels(self, stage_pool: StagePool) -> None:
        controller = _make_controller(stage_pool)
        assert controller.state.flash_label == "Flash: Off"
        assert controller.state.speech_label == "Speech: Off"

    def test_flash_toggle_twice_restores(self, stage_pool: StagePool) -> None:
        camera = FakeCamera()
        controller = _make_controller(stage_pool, camera=camera)

        assert controller.toggle_flash() is FlashMode.ON
        assert controller.state.flash_label == "Flash: On"
        assert camera.flash is FlashMode.ON

        assert controller.toggle_flash() is FlashMode.OFF
        assert controller.state.flash_label == "Flash: Off"
        assert camera.flash is FlashMode.OFF

    def test_speech_toggle_twice_restores(self, stage_pool: StagePool) -> None:
        controller = _make_controller(stage_pool)

        assert controller.toggle_speech() is True
        assert controller.state.speech_label == "Speech: On"
        assert controller.toggle_speech() is False
        assert controller.state.speech_label == "Speech: Off"

    def test_toggles_do_not_change_pipeline_state(self, stage_pool: StagePool) -> None:
        states: list[PipelineState] = []
        controller = _make_controller(stage_pool, states=states)
        controller.toggle_flash()
        controller.toggle_speech()
        assert states == []
        assert controller.state.pipeline is PipelineState.IDLE


# ---------------------------------------------------------------------------
# Pipeline runs
# ---------------------------------------------------------------------------


class TestPipeline:
    async def test_confident_result_is_announced(self, stage_pool: StagePool) -> None:
        announcer = FakeAnnouncer()
        states: list[PipelineState] = []
        controller = _make_controller(
            stage_pool,
            classifier=FakeClassifier(make_result(("golden retriever", 0.92))),
            announcer=announcer,
            states=states,
        )
        controller.toggle_speech()

        outcome = await controller.capture()

        assert outcome is not None
        assert outcome.status is RunStatus.ANNOUNCED
        assert outcome.spoken is True
        assert controller.state.identification_text == "golden retriever"
        assert controller.state.confidence_text == "Confidence: 92%"
        assert announcer.spoken == ["This looks like a golden retriever and I am 92 percent sure"]
        assert states == [
            PipelineState.CAPTURING,
            PipelineState.CLASSIFYING,
            PipelineState.ANNOUNCING,
            PipelineState.IDLE,
        ]
        assert controller.state.busy is False

    async def test_captured_photo_is_kept_for_display(self, stage_pool: StagePool) -> None:
        classifier = FakeClassifier(make_result(("golden retriever", 0.92)))
        controller = _make_controller(stage_pool, classifier=classifier)

        await controller.capture()

        assert controller.state.last_image is PHOTO
        assert classifier.images == [PHOTO.data]

    @pytest.mark.parametrize("result", [make_result(("sponge", 0.31)), make_result()])
    async def test_unknown_object_path(self, stage_pool: StagePool, result: ClassificationResult) -> None:
        announcer = FakeAnnouncer()
        controller = _make_controller(stage_pool, classifier=FakeClassifier(result), announcer=announcer)
        controller.toggle_speech()

        outcome = await controller.capture()

        assert outcome is not None
        assert outcome.status is RunStatus.ANNOUNCED
        assert controller.state.identification_text == UNKNOWN
        assert controller.state.confidence_text == ""
        assert announcer.spoken == [UNKNOWN]

    async def test_speech_off_completes_without_audio(self, stage_pool: StagePool) -> None:
        announcer = FakeAnnouncer()
        controller = _make_controller(
            stage_pool,
            classifier=FakeClassifier(make_result(("golden retriever", 0.92))),
            announcer=announcer,
        )

        outcome = await controller.capture()

        assert outcome is not None
        assert outcome.status is RunStatus.ANNOUNCED
        assert outcome.spoken is False
        assert announcer.spoken == []
        assert announcer.requests == [("This looks like a golden retriever and I am 92 percent sure", False)]
        assert controller.state.pipeline is PipelineState.IDLE

    async def test_flash_is_read_at_capture_time(self, stage_pool: StagePool) -> None:
        camera = FakeCamera()
        controller = _make_controller(stage_pool, camera=camera)

        await controller.capture()
        controller.toggle_flash()
        await controller.capture()

        assert camera.calls == [FlashMode.OFF, FlashMode.ON]

    async def test_capture_error_leaves_display_unchanged(
        self, stage_pool: StagePool, failing_camera: FakeCamera
    ) -> None:
        announcer = FakeAnnouncer()
        states: list[PipelineState] = []
        controller = _make_controller(stage_pool, camera=failing_camera, announcer=announcer, states=states)
        controller.toggle_speech()
        controller.state.identification_text = "teapot"
        controller.state.confidence_text = "Confidence: 80%"

        outcome = await controller.capture()

        assert outcome is not None
        assert outcome.status is RunStatus.CAPTURE_FAILED
        assert outcome.announcement is None
        assert controller.state.identification_text == "teapot"
        assert controller.state.confidence_text == "Confidence: 80%"
        assert controller.state.last_image is None
        assert announcer.requests == []
        assert states == [PipelineState.CAPTURING, PipelineState.IDLE]

    @pytest.mark.parametrize(
        "error",
        [ModelLoadError("model missing"), InferenceError("corrupt image"), RuntimeError("boom")],
    )
    async def test_classification_error_returns_to_idle(self, stage_pool: StagePool, error: Exception) -> None:
        announcer = FakeAnnouncer()
        states: list[PipelineState] = []
        controller = _make_controller(
            stage_pool, classifier=FakeClassifier(error=error), announcer=announcer, states=states
        )

        outcome = await controller.capture()

        assert outcome is not None
        assert outcome.status is RunStatus.CLASSIFICATION_FAILED
        assert controller.state.identification_text == ""
        assert controller.state.confidence_text == ""
        assert announcer.requests == []
        assert states == [PipelineState.CAPTURING, PipelineState.CLASSIFYING, PipelineState.IDLE]

    async def test_speech_error_keeps_labels(self, stage_pool: StagePool) -> None:
        controller = _make_controller(
            stage_pool,
            classifier=FakeClassifier(make_result(("golden retriever", 0.92))),
            announcer=FakeAnnouncer(error=SpeechError("no audio device")),
        )
        controller.toggle_speech()

        outcome = await controller.capture()

        assert outcome is not None
        assert outcome.status is RunStatus.SPEECH_FAILED
        assert controller.state.identification_text == "golden retriever"
        assert controller.state.busy is False

    async def test_classification_timeout_returns_to_idle(self, stage_pool: StagePool) -> None:
        gate = threading.Event()
        controller = _make_controller(
            stage_pool,
            classifier=FakeClassifier(make_result(("golden retriever", 0.92)), gate=gate),
            classify_timeout=0.05,
        )
        try:
            outcome = await controller.capture()
        finally:
            gate.set()

        assert outcome is not None
        assert outcome.status is RunStatus.CLASSIFICATION_FAILED
        assert controller.state.busy is False
        assert controller.state.identification_text == ""

    async def test_speech_timeout_returns_to_idle(self, stage_pool: StagePool) -> None:
        controller = _make_controller(
            stage_pool,
            classifier=FakeClassifier(make_result(("golden retriever", 0.92))),
            announcer=FakeAnnouncer(delay=0.5),
            speech_timeout=0.05,
        )
        controller.toggle_speech()

        outcome = await controller.capture()

        assert outcome is not None
        assert outcome.status is RunStatus.SPEECH_FAILED
        assert controller.state.busy is False

    async def test_busy_released_once_per_run(self, stage_pool: StagePool, failing_camera: FakeCamera) -> None:
        states: list[PipelineState] = []
        ok = _make_controller(stage_pool, states=states)
        await ok.capture()
        await ok.capture()
        bad = _make_controller(stage_pool, camera=failing_camera, states=states)
        await bad.capture()

        assert states.count(PipelineState.CAPTURING) == 3
        assert states.count(PipelineState.IDLE) == 3

    async def test_tap_while_busy_is_ignored(self, stage_pool: StagePool) -> None:
        gate = threading.Event()
        camera = FakeCamera()
        classifier = FakeClassifier(make_result(("golden retriever", 0.92)), gate=gate)
        controller = _make_controller(stage_pool, camera=camera, classifier=classifier)

        run = asyncio.create_task(controller.capture())
        try:
            await _wait_for_state(controller, PipelineState.CLASSIFYING)
            assert controller.tap() is False
            assert await controller.capture() is None
        finally:
            gate.set()
        outcome = await run

        assert outcome is not None
        assert outcome.status is RunStatus.ANNOUNCED
        assert len(camera.calls) == 1
        assert controller.state.identification_text == "golden retriever"

    async def test_toggles_during_classification(self, stage_pool: StagePool) -> None:
        gate = threading.Event()
        camera = FakeCamera()
        announcer = FakeAnnouncer()
        states: list[PipelineState] = []
        controller = _make_controller(
            stage_pool,
            camera=camera,
            classifier=FakeClassifier(make_result(("golden retriever", 0.92)), gate=gate),
            announcer=announcer,
            states=states,
        )

        run = asyncio.create_task(controller.capture())
        try:
            await _wait_for_state(controller, PipelineState.CLASSIFYING)
            assert controller.toggle_flash() is FlashMode.ON
            assert controller.toggle_speech() is True
            assert controller.state.pipeline is PipelineState.CLASSIFYING
            assert states == [PipelineState.CAPTURING, PipelineState.CLASSIFYING]
        finally:
            gate.set()
        outcome = await run

        assert outcome is not None
        assert outcome.status is RunStatus.ANNOUNCED
        assert states == [
            PipelineState.CAPTURING,
            PipelineState.CLASSIFYING,
            PipelineState.ANNOUNCING,
            PipelineState.IDLE,
        ]
        assert camera.calls == [FlashMode.OFF]
        assert announcer.requests == [("This looks like a golden retriever and I am 92 percent sure", True)]
        assert outcome.spoken is True

    async def test_failing_listener_does_not_block_runs(self, stage_pool: StagePool) -> None:
        seen: list[PipelineState] = []

        def listener(state: PipelineState) -> None:
            seen.append(state)
            raise RuntimeError("display gone")

        controller = SessionController(
            camera=FakeCamera(),
            classifier=FakeClassifier(make_result(("golden retriever", 0.92))),
            announcer=FakeAnnouncer(),
            pool=stage_pool,
            settings=make_settings(),
            on_state_change=listener,
        )

        outcome = await controller.capture()

        assert outcome is not None
        assert outcome.status is RunStatus.ANNOUNCED
        assert controller.state.busy is False
        assert seen[0] is PipelineState.CAPTURING
        assert seen[-1] is PipelineState.IDLE
        assert await controller.capture() is not None

    async def test_tap_marks_busy_immediately(self, stage_pool: StagePool) -> None:
        controller = _make_controller(stage_pool)

        assert controller.tap() is True
        assert controller.state.busy is True
        assert controller.tap() is False

        outcome = await controller.wait_idle()
        assert outcome is not None
        assert controller.state.busy is False

    async def test_wait_idle_without_run(self, stage_pool: StagePool) -> None:
        controller = _make_controller(stage_pool)
        assert await controller.wait_idle() is None
