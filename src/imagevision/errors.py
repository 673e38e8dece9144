"""Exception hierarchy shared by the camera, classifier and speech components."""

from __future__ import annotations


class ImageVisionError(Exception):
    """Base class for all errors raised by ImageVision components."""


class DeviceUnavailableError(ImageVisionError):
    """No camera device was found, or it could not be opened."""


class CaptureError(ImageVisionError):
    """A single photo capture failed."""


class ModelLoadError(ImageVisionError):
    """The classifier model or its labels could not be loaded."""


class InferenceError(ImageVisionError):
    """The classifier could not process the given image bytes."""


class SpeechError(ImageVisionError):
    """The text-to-speech engine failed to speak an utterance."""
