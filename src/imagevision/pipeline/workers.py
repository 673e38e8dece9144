"""Stage execution layer.

Architecture:
    SessionController (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> camera / ONNX / TTS

Each blocking stage runs in the pool under its own timeout. A stage that
exceeds its timeout raises TimeoutError to the caller; the worker thread
finishes in the background since threads cannot be interrupted.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

logger = logging.getLogger(__name__)

T = TypeVar("T")


class StagePool:
    """Manages the semaphore and thread pool for blocking pipeline stages."""

    def __init__(self, max_workers: int) -> None:
        self._semaphore = asyncio.Semaphore(max_workers)
        self._executor = ThreadPoolExecutor(
            max_workers=max_workers,
            thread_name_prefix="pipeline-stage",
        )
        self._active_count: int = 0
        self._counter_lock = threading.Lock()

    async def run(self, func: Callable[..., T], *args: object, timeout: float) -> T:
        """Run a synchronous function in the stage pool.

        The timeout covers both waiting for a free slot and running the function.

        Raises:
            TimeoutError: If the stage does not complete within ``timeout`` seconds.
        """
        return await asyncio.wait_for(self._run(func, *args), timeout=timeout)

    async def _run(self, func: Callable[..., T], *args: object) -> T:
        async with self._semaphore:
            with self._counter_lock:
                self._active_count += 1
            try:
                loop = asyncio.get_running_loop()
                return await loop.run_in_executor(self._executor, func, *args)
            finally:
                with self._counter_lock:
                    self._active_count -= 1

    @property
    def active_count(self) -> int:
        """Number of stages currently running."""
        with self._counter_lock:
            return self._active_count

    def shutdown(self) -> None:
        """Shut down the thread pool without waiting for stuck stages."""
        self._executor.shutdown(wait=False, cancel_futures=True)
