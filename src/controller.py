"""
Operator Controller - drives reconcile cycles from the work queue.

Similar to a Kubernetes controller manager: workers take keys from the queue,
run a reconcile cycle, and put the key back after the delay the cycle asked
for, or after an exponential backoff when the cycle failed. A resync loop
periodically enqueues every known record so the system stays level-triggered.
"""

import asyncio
import logging
import random
from dataclasses import dataclass
from datetime import timedelta
from typing import Dict, List, Optional

from errors import ReconcileError
from models import NamespacedName
from reconciler import ImageRepositoryReconciler
from stores import RecordStore
from workqueue import QueueShutDown, WorkQueue

logger = logging.getLogger(__name__)


@dataclass
class ControllerConfig:
    """Configuration for the controller."""

    max_concurrent_reconciles: int = 5
    resync_interval: int = 300  # seconds

    # Exponential backoff configuration
    backoff_base_delay: float = 5.0  # seconds
    backoff_max_delay: float = 1000.0  # seconds
    backoff_jitter_factor: float = 0.1  # ±10% jitter


class Controller:
    """
    Runs reconcile cycles for ImageRepository keys.

    At most one cycle per key is active at a time (the work queue guarantees
    it); cycles for different keys run concurrently on up to
    ``max_concurrent_reconciles`` workers.
    """

    def __init__(
        self,
        reconciler: ImageRepositoryReconciler,
        records: RecordStore,
        config: Optional[ControllerConfig] = None,
        queue: Optional[WorkQueue] = None,
    ):
        self.reconciler = reconciler
        self.records = records
        self.config = config or ControllerConfig()
        self.queue = queue or WorkQueue()
        self.running = False
        self._failures: Dict[NamespacedName, int] = {}
        self._tasks: List[asyncio.Task] = []

    async def start(self):
        """Start the workers and the resync loop, and wait for them."""
        logger.info(
            f"Starting controller with {self.config.max_concurrent_reconciles} workers"
        )
        self.running = True

        self._tasks = [
            asyncio.create_task(self._worker(i))
            for i in range(self.config.max_concurrent_reconciles)
        ]
        self._tasks.append(asyncio.create_task(self._resync_loop()))

        try:
            await asyncio.gather(*self._tasks)
        except asyncio.CancelledError:
            logger.info("Controller tasks cancelled")

    async def stop(self):
        """Stop handing out work and cancel in-flight cycles."""
        logger.info("Stopping controller")
        self.running = False
        self.queue.shutdown()

        for task in self._tasks:
            if not task.done():
                task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks.clear()

    def enqueue(self, key: NamespacedName, delay: float = 0) -> None:
        """Ask for ``key`` to be reconciled after ``delay`` seconds."""
        self.queue.add_after(key, delay)

    def forget(self, key: NamespacedName) -> None:
        """Drop pending work and failure history for a deleted record."""
        self.queue.forget(key)
        self._failures.pop(key, None)

    def backoff_delay(self, failures: int) -> float:
        """
        Delay before retrying a key that has failed ``failures`` times in a row.

        Doubles from ``backoff_base_delay`` up to ``backoff_max_delay``, with
        ±``backoff_jitter_factor`` jitter to spread retries out.
        """
        delay = min(
            self.config.backoff_base_delay * (2 ** min(failures - 1, 30)),
            self.config.backoff_max_delay,
        )
        jitter = random.uniform(
            -self.config.backoff_jitter_factor, self.config.backoff_jitter_factor
        )
        return delay * (1 + jitter)

    async def _worker(self, worker_id: int):
        while True:
            try:
                key = await self.queue.get()
            except QueueShutDown:
                logger.debug(f"Worker {worker_id} exiting")
                return

            try:
                await self.process(key)
            finally:
                self.queue.done(key)

    async def process(self, key: NamespacedName) -> None:
        """Run one cycle for ``key`` and schedule its next one."""
        try:
            result = await self.reconciler.reconcile(key)
        except ReconcileError as e:
            if not e.retryable:
                self._failures.pop(key, None)
                logger.error(f"Error reconciling {key}, not retrying: {e}")
                return
            self._retry_later(key, e)
            return
        except Exception as e:
            self._retry_later(key, e)
            return

        self._failures.pop(key, None)
        # Zero means no requeue; the resync loop still picks the key up
        if result.requeue_after is not None and result.requeue_after > timedelta(0):
            self.queue.add_after(key, result.requeue_after.total_seconds())

    def _retry_later(self, key: NamespacedName, e: Exception) -> None:
        failures = self._failures.get(key, 0) + 1
        self._failures[key] = failures
        delay = self.backoff_delay(failures)
        logger.error(
            f"Error reconciling {key} (attempt {failures}), "
            f"retrying in {delay:.1f}s: {e}",
            exc_info=not isinstance(e, ReconcileError),
        )
        self.queue.add_after(key, delay)

    async def _resync_loop(self):
        """Periodically enqueue every record."""
        while self.running:
            try:
                keys = await self.records.list_image_repository_keys()
                for key in keys:
                    self.queue.add(key)
                logger.debug(f"Resync enqueued {len(keys)} image repositories")
            except Exception as e:
                logger.error(f"Error in resync loop: {e}", exc_info=True)

            await asyncio.sleep(self.config.resync_interval)
