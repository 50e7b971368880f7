"""
Work Queue - a delaying, deduplicating queue of record keys.

Modelled on the Kubernetes client-go work queue:

- a key is queued at most once; adding it again keeps the earlier due time;
- a key handed out by get() is not handed out again until done() is called;
- a key added while it is being processed is queued again on done().
"""

import asyncio
import heapq
import itertools
import logging
import time
from typing import Callable, Dict, Hashable, List, Optional, Set, Tuple

logger = logging.getLogger(__name__)


class QueueShutDown(Exception):
    """Raised by get() once the queue has been shut down."""


class WorkQueue:
    """Priority queue of ``(due_at, key)`` driving the controller's workers."""

    def __init__(self, clock: Callable[[], float] = time.monotonic):
        self._clock = clock
        self._heap: List[Tuple[float, int, Hashable]] = []
        self._due: Dict[Hashable, float] = {}
        self._processing: Set[Hashable] = set()
        self._deferred: Dict[Hashable, float] = {}
        self._counter = itertools.count()
        self._wakeup = asyncio.Event()
        self._shutting_down = False

    def __len__(self) -> int:
        return len(self._due)

    def __contains__(self, key: Hashable) -> bool:
        return key in self._due

    def add(self, key: Hashable) -> None:
        """Queue ``key`` for immediate processing."""
        self.add_after(key, 0)

    def add_after(self, key: Hashable, delay: float) -> None:
        """Queue ``key`` to be handed out after ``delay`` seconds."""
        if self._shutting_down:
            return
        self._schedule(key, self._clock() + max(delay, 0))

    def _schedule(self, key: Hashable, due: float) -> None:
        if key in self._processing:
            current = self._deferred.get(key)
            if current is None or due < current:
                self._deferred[key] = due
            return

        current = self._due.get(key)
        if current is not None and current <= due:
            return

        self._due[key] = due
        heapq.heappush(self._heap, (due, next(self._counter), key))
        self._wakeup.set()

    def done(self, key: Hashable) -> None:
        """Mark ``key`` as processed, re-queueing it if it was added meanwhile."""
        self._processing.discard(key)
        due = self._deferred.pop(key, None)
        if due is not None and not self._shutting_down:
            self._schedule(key, due)

    def forget(self, key: Hashable) -> None:
        """Drop any pending entry for ``key``."""
        self._due.pop(key, None)
        self._deferred.pop(key, None)

    def due_at(self, key: Hashable) -> Optional[float]:
        """Due time of a pending key, or None."""
        return self._due.get(key)

    def shutdown(self) -> None:
        """Stop handing out keys and wake every waiting getter."""
        self._shutting_down = True
        self._wakeup.set()

    @property
    def shutting_down(self) -> bool:
        return self._shutting_down

    def _drop_stale(self) -> None:
        while self._heap:
            due, _, key = self._heap[0]
            if self._due.get(key) == due:
                return
            heapq.heappop(self._heap)

    async def get(self) -> Hashable:
        """
        Wait for the next due key and mark it as being processed.

        Raises:
            QueueShutDown: If the queue is shut down while waiting.
        """
        while True:
            if self._shutting_down:
                raise QueueShutDown()

            self._drop_stale()
            now = self._clock()
            if self._heap and self._heap[0][0] <= now:
                _, _, key = heapq.heappop(self._heap)
                del self._due[key]
                self._processing.add(key)
                return key

            timeout = self._heap[0][0] - now if self._heap else None
            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout)
            except asyncio.TimeoutError:
                pass
