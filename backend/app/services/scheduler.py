from __future__ import annotations

import asyncio
import logging
import threading
from collections.abc import Callable
from concurrent.futures import Future, ThreadPoolExecutor
from typing import Any, TypeVar


T = TypeVar("T")
logger = logging.getLogger(__name__)


class Overloaded(RuntimeError):
    def __init__(self, pool: str, capacity: int) -> None:
        super().__init__(f"{pool} pool saturated (capacity {capacity})")
        self.pool = pool
        self.capacity = capacity


class BoundedPool:
    """Thread pool with ``workers`` running slots and ``queue_depth`` waiting slots.

    Submissions beyond ``workers + queue_depth`` outstanding jobs fail fast with
    ``Overloaded``. Jobs already handed to the executor are never cancelled.
    """

    def __init__(self, name: str, workers: int, queue_depth: int) -> None:
        self.name = name
        self.workers = workers
        self.queue_depth = queue_depth
        self.capacity = workers + queue_depth
        self._executor = ThreadPoolExecutor(max_workers=workers, thread_name_prefix=f"{name}-worker")
        self._lock = threading.Lock()
        self._outstanding = 0
        self._rejected = 0
        self._completed = 0

    def submit(self, fn: Callable[..., T], *args: Any, **kwargs: Any) -> Future[T]:
        with self._lock:
            if self._outstanding >= self.capacity:
                self._rejected += 1
                logger.warning("pool=%s overloaded outstanding=%s", self.name, self._outstanding)
                raise Overloaded(self.name, self.capacity)
            self._outstanding += 1
        try:
            future = self._executor.submit(fn, *args, **kwargs)
        except RuntimeError:
            self._release(None)
            raise
        future.add_done_callback(self._release)
        return future

    async def run(self, fn: Callable[..., T], *args: Any, timeout: float | None = None, **kwargs: Any) -> T:
        wrapped = asyncio.wrap_future(self.submit(fn, *args, **kwargs))
        if timeout is None:
            return await wrapped
        # Shield so a timed-out caller leaves the engine call running to completion.
        return await asyncio.wait_for(asyncio.shield(wrapped), timeout)

    def _release(self, _future: Future[Any] | None) -> None:
        with self._lock:
            self._outstanding -= 1
            if _future is not None:
                self._completed += 1

    def stats(self) -> dict[str, int]:
        with self._lock:
            return {
                "workers": self.workers,
                "capacity": self.capacity,
                "outstanding": self._outstanding,
                "completed": self._completed,
                "rejected": self._rejected,
            }

    def shutdown(self, wait: bool = True) -> None:
        self._executor.shutdown(wait=wait)


class ConcurrencyScheduler:
    """Separate pools so translation bursts cannot starve detection and vice versa."""

    def __init__(
        self,
        detection_workers: int = 2,
        detection_queue_depth: int = 8,
        translation_workers: int = 4,
        translation_queue_depth: int = 16,
    ) -> None:
        self.detection = BoundedPool("detection", detection_workers, detection_queue_depth)
        self.translation = BoundedPool("translation", translation_workers, translation_queue_depth)

    async def run_detection(self, fn: Callable[..., T], *args: Any, timeout: float | None = None) -> T:
        return await self.detection.run(fn, *args, timeout=timeout)

    async def run_translation(self, fn: Callable[..., T], *args: Any) -> T:
        return await self.translation.run(fn, *args)

    def stats(self) -> dict[str, dict[str, int]]:
        return {"detection": self.detection.stats(), "translation": self.translation.stats()}

    def shutdown(self, wait: bool = True) -> None:
        self.detection.shutdown(wait=wait)
        self.translation.shutdown(wait=wait)
