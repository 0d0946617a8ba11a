"""Worker pool shared by every session.

Architecture:
    FastAPI (async) -> asyncio.Semaphore(N) -> ThreadPoolExecutor(N) -> decode / ONNX inference

Model download, image decoding and classification all block, so they run
here and the event loop keeps serving session requests. A caller waits for
a slot without a deadline unless ``queue_timeout`` is configured; callers
that give up are counted and reported by the health endpoint.
"""

from __future__ import annotations

import asyncio
import logging
import threading
from concurrent.futures import ThreadPoolExecutor
from typing import TYPE_CHECKING, TypeVar

if TYPE_CHECKING:
    from collections.abc import Callable

    from presidentface.config import Settings

logger = logging.getLogger(__name__)

T = TypeVar("T")


class InferencePool:
    """Bounded worker pool for the classifier and the image decoder."""

    def __init__(self, settings: Settings) -> None:
        self._slots = settings.max_concurrent
        self._semaphore = asyncio.Semaphore(self._slots)
        self._queue_timeout = settings.queue_timeout
        self._executor = ThreadPoolExecutor(
            max_workers=self._slots,
            thread_name_prefix="presidentface-worker",
        )
        self._active_count = 0
        self._queue_depth = 0
        self._timeout_count = 0
        self._counter_lock = threading.Lock()

    async def run(self, func: Callable[..., T], *args: object) -> T:
        """Run ``func(*args)`` on a worker thread once a slot is free.

        Raises:
            TimeoutError: If ``queue_timeout`` is set and no slot frees up in time.
        """
        await self._acquire_slot(getattr(func, "__qualname__", repr(func)))
        with self._counter_lock:
            self._active_count += 1
        try:
            loop = asyncio.get_running_loop()
            return await loop.run_in_executor(self._executor, func, *args)
        finally:
            self._semaphore.release()
            with self._counter_lock:
                self._active_count -= 1

    async def _acquire_slot(self, task_name: str) -> None:
        with self._counter_lock:
            self._queue_depth += 1
        try:
            await asyncio.wait_for(self._semaphore.acquire(), timeout=self._queue_timeout)
        except TimeoutError:
            with self._counter_lock:
                self._timeout_count += 1
            logger.warning(
                "Gave up waiting %.2fs for a worker slot for %s (%d/%d busy)",
                self._queue_timeout,
                task_name,
                self.active_count,
                self._slots,
            )
            raise
        finally:
            with self._counter_lock:
                self._queue_depth -= 1

    @property
    def active_count(self) -> int:
        """Number of tasks running on worker threads."""
        with self._counter_lock:
            return self._active_count

    @property
    def queue_depth(self) -> int:
        """Number of callers waiting for a slot."""
        with self._counter_lock:
            return self._queue_depth

    @property
    def timeout_count(self) -> int:
        """Callers that gave up waiting since startup."""
        with self._counter_lock:
            return self._timeout_count

    def shutdown(self) -> None:
        self._executor.shutdown(wait=True)
        logger.info("Worker pool shut down after %d queue timeouts", self.timeout_count)
