"""Capture session manager.

Owns the OpenCV camera device: opens it once, streams frames on a
background thread so the latest frame can serve as a live preview, and
turns single frames into JPEG photos on demand.
"""

from __future__ import annotations

import logging
import threading
import time
from dataclasses import dataclass
from enum import StrEnum
from typing import TYPE_CHECKING

import cv2

from imagevision.errors import CaptureError, DeviceUnavailableError

if TYPE_CHECKING:
    import numpy as np
    from numpy.typing import NDArray

    from imagevision.config import Settings

logger = logging.getLogger(__name__)

RESOLUTION_PRESETS: dict[str, tuple[int, int]] = {
    "vga640x480": (640, 480),
    "hd1280x720": (1280, 720),
    "hd1920x1080": (1920, 1080),
}

# Pause between failed reads so a dead device does not spin the streaming thread.
_READ_RETRY_SECONDS = 0.05
# Consecutive failed reads after which the last good frame is dropped.
MAX_FAILED_READS = 5
FIRST_FRAME_TIMEOUT_SECONDS = 2.0
# A photo must come from a frame streamed at most this long ago.
MAX_FRAME_AGE_SECONDS = 1.0


class FlashMode(StrEnum):
    OFF = "off"
    ON = "on"


@dataclass(frozen=True)
class CaptureConfiguration:
    """Camera settings fixed at setup time, except for the flash mode."""

    device_index: int
    width: int
    height: int
    portrait: bool
    jpeg_quality: int
    thumbnail_size: int

    @classmethod
    def from_settings(cls, settings: Settings) -> CaptureConfiguration:
        width, height = RESOLUTION_PRESETS[settings.resolution_preset]
        return cls(
            device_index=settings.camera_index,
            width=width,
            height=height,
            portrait=settings.orientation == "portrait",
            jpeg_quality=settings.jpeg_quality,
            thumbnail_size=settings.thumbnail_size,
        )


@dataclass(frozen=True)
class CapturedImage:
    """One encoded photo plus its embedded thumbnail."""

    data: bytes
    thumbnail: bytes
    width: int
    height: int
    flash: FlashMode
    captured_at: float


class CaptureSessionManager:
    """Single owner of the camera device, preview stream and photo output."""

    def __init__(self, config: CaptureConfiguration) -> None:
        self._config = config
        self._flash = FlashMode.OFF
        self._capture: cv2.VideoCapture | None = None
        self._configured = False

        self._frame_lock = threading.Lock()
        self._latest_frame: NDArray[np.uint8] | None = None
        self._frame_time = 0.0
        self._frame_ready = threading.Event()
        self._stop = threading.Event()
        self._stream_thread: threading.Thread | None = None

    @property
    def ready(self) -> bool:
        """True once the device is open and streaming."""
        return self._capture is not None and self._stream_thread is not None and self._stream_thread.is_alive()

    @property
    def flash(self) -> FlashMode:
        return self._flash

    def configure(self) -> bool:
        """Open the camera and start streaming. Only the first call has an effect.

        A missing or unopenable device is logged and leaves the manager
        non-functional; it never raises.
        """
        if self._configured:
            return self.ready
        self._configured = True

        try:
            self._capture = self._open_device()
        except DeviceUnavailableError as e:
            logger.error("Camera unavailable: %s", e)
            return False

        self._stop.clear()
        self._stream_thread = threading.Thread(
            target=self._stream, args=(self._capture,), name="camera-stream", daemon=True
        )
        self._stream_thread.start()
        logger.info(
            "Camera %d streaming at %dx%d (%s)",
            self._config.device_index,
            self._config.width,
            self._config.height,
            "portrait" if self._config.portrait else "landscape",
        )
        return True

    def set_flash(self, flash: FlashMode) -> None:
        """Store the flash mode used by the next capture."""
        self._flash = flash

    def capture_photo(self, flash: FlashMode | None = None) -> CapturedImage:
        """Capture one photo with the given flash mode.

        Raises:
            CaptureError: If the camera is not streaming, its latest frame is
                stale, or encoding fails.
        """
        mode = self._flash if flash is None else flash
        if not self.ready:
            raise CaptureError("Camera is not available")

        self._frame_ready.wait(FIRST_FRAME_TIMEOUT_SECONDS)
        frame, frame_time = self._snapshot()
        if frame is None:
            raise CaptureError("No frame available from camera")
        age = time.monotonic() - frame_time
        if age > MAX_FRAME_AGE_SECONDS:
            raise CaptureError(f"Latest camera frame is stale ({age:.1f}s old)")

        if mode is FlashMode.ON:
            # OpenCV devices expose no flash unit; the mode is recorded on the photo.
            logger.debug("Flash requested for capture on device %d", self._config.device_index)

        height, width = frame.shape[:2]
        data = self._encode(frame, self._config.jpeg_quality)
        thumbnail = self._encode(self._thumbnail(frame), self._config.jpeg_quality)
        logger.info("Captured %dx%d photo (%d bytes, flash=%s)", width, height, len(data), mode)
        return CapturedImage(
            data=data,
            thumbnail=thumbnail,
            width=width,
            height=height,
            flash=mode,
            captured_at=time.time(),
        )

    def preview_frame(self) -> bytes | None:
        """Return the latest streamed frame as JPEG, or None if nothing is streaming."""
        frame, _frame_time = self._snapshot()
        if frame is None:
            return None
        try:
            return self._encode(frame, self._config.jpeg_quality)
        except CaptureError:
            logger.warning("Failed to encode preview frame")
            return None

    def release(self) -> None:
        """Stop streaming and release the device."""
        self._stop.set()
        if self._stream_thread is not None:
            self._stream_thread.join(timeout=2.0)
            self._stream_thread = None
        if self._capture is not None:
            self._capture.release()
            self._capture = None
            logger.info("Camera %d released", self._config.device_index)

    # -- Internal -----------------------------------------------------------

    def _open_device(self) -> cv2.VideoCapture:
        capture = cv2.VideoCapture(self._config.device_index)
        if not capture.isOpened():
            capture.release()
            raise DeviceUnavailableError(f"Cannot open camera device {self._config.device_index}")
        capture.set(cv2.CAP_PROP_FRAME_WIDTH, self._config.width)
        capture.set(cv2.CAP_PROP_FRAME_HEIGHT, self._config.height)
        return capture

    def _stream(self, capture: cv2.VideoCapture) -> None:
        failed_reads = 0
        while not self._stop.is_set():
            ok, frame = capture.read()
            if not ok or frame is None:
                failed_reads += 1
                if failed_reads == MAX_FAILED_READS:
                    logger.warning("Camera %d stopped delivering frames", self._config.device_index)
                    self._drop_frame()
                self._stop.wait(_READ_RETRY_SECONDS)
                continue
            if failed_reads >= MAX_FAILED_READS:
                logger.info("Camera %d delivering frames again", self._config.device_index)
            failed_reads = 0
            if self._config.portrait:
                frame = cv2.rotate(frame, cv2.ROTATE_90_CLOCKWISE)
            with self._frame_lock:
                self._latest_frame = frame
                self._frame_time = time.monotonic()
            self._frame_ready.set()

    def _drop_frame(self) -> None:
        with self._frame_lock:
            self._latest_frame = None
            self._frame_ready.clear()

    def _snapshot(self) -> tuple[NDArray[np.uint8] | None, float]:
        with self._frame_lock:
            if self._latest_frame is None:
                return None, 0.0
            return self._latest_frame.copy(), self._frame_time

    def _thumbnail(self, frame: NDArray[np.uint8]) -> NDArray[np.uint8]:
        height, width = frame.shape[:2]
        scale = self._config.thumbnail_size / max(height, width)
        if scale >= 1.0:
            return frame
        size = (max(1, int(width * scale)), max(1, int(height * scale)))
        return cv2.resize(frame, size, interpolation=cv2.INTER_AREA)

    @staticmethod
    def _encode(frame: NDArray[np.uint8], quality: int) -> bytes:
        ok, buf = cv2.imencode(".jpg", frame, [cv2.IMWRITE_JPEG_QUALITY, quality])
        if not ok:
            raise CaptureError("JPEG encoding failed")
        return bytes(buf)
