from __future__ import annotations

import asyncio
from collections.abc import Hashable

import structlog

logger = structlog.get_logger()

_SHUTDOWN = object()


class WorkQueue:
    """
    Keyed asyncio work queue.

    A key that is already waiting is coalesced. A key added while a worker
    holds it is marked dirty and handed out again after done(), so the same
    key is never processed by two workers at once.
    """

    def __init__(
        self,
        name: str = "workqueue",
        *,
        base_delay: float = 0.005,
        max_delay: float = 1000.0,
    ) -> None:
        self.name = name
        self.base_delay = base_delay
        self.max_delay = max_delay
        self._queue: asyncio.Queue[object] = asyncio.Queue()
        self._queued: set[Hashable] = set()
        self._processing: set[Hashable] = set()
        self._dirty: set[Hashable] = set()
        self._failures: dict[Hashable, int] = {}
        self._timers: dict[Hashable, asyncio.TimerHandle] = {}
        self._shutting_down = False

    def add(self, key: Hashable) -> None:
        if self._shutting_down:
            return
        if key in self._processing:
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        self._queued.add(key)
        self._queue.put_nowait(key)

    async def get(self) -> Hashable | None:
        """Wait for the next key. Returns None once the queue is shut down."""
        item = await self._queue.get()
        if item is _SHUTDOWN:
            # Leave the marker for the remaining workers
            self._queue.put_nowait(_SHUTDOWN)
            return None
        self._queued.discard(item)
        self._processing.add(item)
        return item

    def done(self, key: Hashable) -> None:
        self._processing.discard(key)
        if key in self._dirty:
            self._dirty.discard(key)
            self.add(key)

    def add_after(self, key: Hashable, delay: float) -> None:
        if self._shutting_down:
            return
        if delay <= 0:
            self.add(key)
            return

        existing = self._timers.get(key)
        if existing is not None:
            # Keep whichever fires first
            loop_time = asyncio.get_running_loop().time()
            if existing.when() <= loop_time + delay:
                return
            existing.cancel()

        loop = asyncio.get_running_loop()
        self._timers[key] = loop.call_later(delay, self._fire, key)

    def add_rate_limited(self, key: Hashable) -> float:
        """Requeue with exponential per-key backoff. Returns the delay used."""
        failures = self._failures.get(key, 0) + 1
        self._failures[key] = failures
        delay = min(self.base_delay * (2 ** (failures - 1)), self.max_delay)
        self.add_after(key, delay)
        return delay

    def forget(self, key: Hashable) -> None:
        self._failures.pop(key, None)

    def num_requeues(self, key: Hashable) -> int:
        return self._failures.get(key, 0)

    def shutdown(self) -> None:
        if self._shutting_down:
            return
        self._shutting_down = True
        for timer in self._timers.values():
            timer.cancel()
        self._timers.clear()
        self._queue.put_nowait(_SHUTDOWN)
        logger.debug("workqueue_shutdown", queue=self.name)

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def size(self) -> int:
        return len(self._queued)

    def _fire(self, key: Hashable) -> None:
        self._timers.pop(key, None)
        self.add(key)
