"""Bounded worker pool for webhook events

The receiver acknowledges a delivery as soon as the event is queued. A fixed
number of workers drain the queue, each running the synchronous pipeline in a
thread so database and Stripe calls never block the event loop.
"""
import asyncio
import logging
from typing import Any, Callable, List, Optional

from app.core.config import settings
from app.core.logging import webhook_logger
from app.core.metrics import webhook_queue_depth_gauge
from app.schemas.webhooks import StripeWebhookEvent

logger = logging.getLogger(__name__)


class WebhookWorkerPool:
    def __init__(self,
                 handler: Callable[[StripeWebhookEvent], Any],
                 concurrency: Optional[int] = None,
                 max_queue: Optional[int] = None,
                 shutdown_timeout: Optional[float] = None):
        self.handler = handler
        self.concurrency = concurrency or settings.WEBHOOK_WORKER_CONCURRENCY
        self.max_queue = max_queue or settings.WEBHOOK_QUEUE_MAX_SIZE
        self.shutdown_timeout = settings.WEBHOOK_SHUTDOWN_TIMEOUT if shutdown_timeout is None else shutdown_timeout
        self._queue: Optional[asyncio.Queue] = None
        self._workers: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return self._queue is not None

    @property
    def depth(self) -> int:
        return self._queue.qsize() if self._queue is not None else 0

    async def start(self) -> None:
        """Create the queue and worker tasks on the running event loop"""
        if self.running:
            return
        self._queue = asyncio.Queue(maxsize=self.max_queue)
        self._workers = [
            asyncio.create_task(self._worker(index), name=f"webhook-worker-{index}")
            for index in range(self.concurrency)
        ]
        logger.info(f"Webhook worker pool started ({self.concurrency} workers, queue size {self.max_queue})")

    def submit(self, event: StripeWebhookEvent) -> bool:
        """Queue an event without waiting. Returns False when the queue is full.

        Raises:
            RuntimeError: if the pool has not been started
        """
        if self._queue is None:
            raise RuntimeError("Webhook worker pool is not running")
        try:
            self._queue.put_nowait(event)
        except asyncio.QueueFull:
            webhook_logger.warning(f"Webhook queue full ({self.max_queue}); shedding {event.type} {event.id}")
            return False
        webhook_queue_depth_gauge.set(self._queue.qsize())
        return True

    async def _worker(self, index: int) -> None:
        queue = self._queue
        while True:
            event = await queue.get()
            webhook_queue_depth_gauge.set(queue.qsize())
            try:
                await asyncio.to_thread(self.handler, event)
            except Exception as e:
                # The handler guards its own errors; this only catches wiring failures
                logger.error(f"Worker {index} failed on event {event.id} ({event.type}): {e}", exc_info=True)
            finally:
                queue.task_done()

    async def stop(self) -> None:
        """Drain queued events (bounded by the shutdown timeout), then cancel the workers"""
        if self._queue is None:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=self.shutdown_timeout)
        except asyncio.TimeoutError:
            logger.warning(f"Shutdown timeout reached with {self._queue.qsize()} webhook events unprocessed")

        for worker in self._workers:
            worker.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)

        self._workers = []
        self._queue = None
        webhook_queue_depth_gauge.set(0)
        logger.info("Webhook worker pool stopped")
