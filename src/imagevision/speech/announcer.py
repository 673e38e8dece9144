"""Text-to-speech announcer backed by the local pyttsx3 engine."""

from __future__ import annotations

import logging
import threading

import pyttsx3

from imagevision.errors import SpeechError

logger = logging.getLogger(__name__)


class SpeechAnnouncer:
    """Speaks one utterance at a time.

    ``announce`` blocks until playback has finished, which is the completion
    signal the session controller waits on. The engine is created per
    utterance so it always lives on the thread that drives it.
    """

    def __init__(self, rate: int = 180, voice: str | None = None) -> None:
        self._rate = rate
        self._voice = voice
        self._lock = threading.Lock()

    def announce(self, text: str, enabled: bool) -> bool:
        """Speak ``text`` if announcements are enabled.

        Returns:
            True if the text was spoken, False if announcements are off.

        Raises:
            SpeechError: If the speech engine fails.
        """
        if not enabled:
            logger.debug("Announcement disabled, skipping: %s", text)
            return False

        with self._lock:
            logger.info("Speaking: %s", text)
            try:
                engine = pyttsx3.init()
                engine.setProperty("rate", self._rate)
                if self._voice:
                    engine.setProperty("voice", self._voice)
                engine.say(text)
                engine.runAndWait()
                engine.stop()
            except Exception as e:
                raise SpeechError(f"Speech engine failed: {e}") from e
        return True
