"""
Reconcile work queue with per-key exclusion and failure backoff.
"""

import asyncio
from typing import Awaitable, Callable, Dict, Hashable, List, Optional, Set

import structlog


class ReconcileQueue:
    """
    Deduplicating queue that feeds a bounded pool of reconcile workers.

    A key is never processed by two workers at once. Adding a key that is
    already queued is a no-op; adding a key that is in flight marks it dirty
    and it is queued again once the in-flight pass finishes. Failed passes
    are re-queued after an exponential backoff.
    """

    def __init__(self,
                 handler: Callable[[Hashable], Awaitable[None]],
                 max_concurrent: int = 1,
                 base_delay: float = 0.5,
                 max_delay: float = 300.0,
                 logger=None) -> None:
        self.handler = handler
        self.max_concurrent = max_concurrent
        self.base_delay = base_delay
        self.max_delay = max_delay
        self.logger = (logger or structlog.get_logger()).bind(component="reconcile_queue")

        self._queue: "asyncio.Queue[Hashable]" = asyncio.Queue()
        self._queued: Set[Hashable] = set()
        self._processing: Set[Hashable] = set()
        self._dirty: Set[Hashable] = set()
        self._failures: Dict[Hashable, int] = {}
        self._delayed: Dict[Hashable, asyncio.TimerHandle] = {}
        self._workers: List[asyncio.Task] = []

    def add(self, key: Hashable) -> None:
        """Queue a key for reconciliation."""
        if key in self._processing:
            self._dirty.add(key)
            return
        if key in self._queued:
            return
        timer = self._delayed.pop(key, None)
        if timer is not None:
            timer.cancel()
        self._queued.add(key)
        self._queue.put_nowait(key)

    def add_after(self, key: Hashable, delay: float) -> None:
        """Queue a key once a delay has elapsed."""
        if key in self._queued or key in self._delayed:
            return
        loop = asyncio.get_running_loop()
        self._delayed[key] = loop.call_later(delay, self._fire_delayed, key)

    def _fire_delayed(self, key: Hashable) -> None:
        self._delayed.pop(key, None)
        self.add(key)

    def backoff(self, key: Hashable) -> float:
        """Delay before retrying a key given its consecutive failures."""
        failures = self._failures.get(key, 0)
        return min(self.base_delay * (2 ** failures), self.max_delay)

    def pending(self) -> int:
        return self._queue.qsize()

    def in_flight(self) -> int:
        return len(self._processing)

    async def join(self) -> None:
        """Wait until every queued key has been processed once."""
        await self._queue.join()

    def start(self) -> None:
        if self._workers:
            raise RuntimeError("Reconcile queue is already running")
        self._workers = [
            asyncio.create_task(self._worker(index)) for index in range(self.max_concurrent)
        ]

    async def stop(self) -> None:
        for timer in self._delayed.values():
            timer.cancel()
        self._delayed.clear()
        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []

    async def _worker(self, index: int) -> None:
        while True:
            key = await self._queue.get()
            self._queued.discard(key)
            self._processing.add(key)
            try:
                await self._process(key)
            finally:
                self._processing.discard(key)
                self._queue.task_done()
                if key in self._dirty:
                    self._dirty.discard(key)
                    self.add(key)

    async def _process(self, key: Hashable) -> None:
        try:
            await self.handler(key)
        except asyncio.CancelledError:
            raise
        except Exception as e:
            delay = self.backoff(key)
            self._failures[key] = self._failures.get(key, 0) + 1
            self.logger.error(
                "Reconcile failed, requeueing",
                key=str(key),
                error=str(e),
                failures=self._failures[key],
                retry_in=delay
            )
            self.add_after(key, delay)
            return

        self._failures.pop(key, None)

    def failures(self, key: Hashable) -> Optional[int]:
        return self._failures.get(key)
