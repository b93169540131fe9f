"""In-process delivery queue drained by a bounded pool of asyncio workers."""

import asyncio
import logging
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)

Job = Callable[[], Awaitable[object]]


class DeliveryQueue:
    """Lightweight task queue: ``submit`` never blocks, workers run the jobs.

    Durable state lives in the delivery ledger; anything still queued when the
    process dies is picked up again by the retry scheduler's poll.
    """

    def __init__(self, workers: int = 4, maxsize: int = 0):
        self.worker_count = max(1, workers)
        self._queue: asyncio.Queue[Job] = asyncio.Queue(maxsize=maxsize)
        self._workers: list[asyncio.Task] = []

    @property
    def is_running(self) -> bool:
        return bool(self._workers)

    @property
    def size(self) -> int:
        return self._queue.qsize()

    def submit(self, job: Job) -> bool:
        try:
            self._queue.put_nowait(job)
        except asyncio.QueueFull:
            logger.warning("Delivery queue full; job dropped until the next poll")
            return False
        return True

    async def start(self) -> None:
        if self._workers:
            logger.warning("DeliveryQueue already running")
            return
        self._workers = [
            asyncio.create_task(self._worker(), name=f"webhook-worker-{n}")
            for n in range(self.worker_count)
        ]
        logger.info(f"DeliveryQueue started with {self.worker_count} workers")

    async def stop(self, timeout: Optional[float] = 5.0) -> None:
        """Let queued jobs finish (up to ``timeout``), then cancel the workers."""
        if not self._workers:
            return
        try:
            await asyncio.wait_for(self._queue.join(), timeout=timeout)
        except asyncio.TimeoutError:
            logger.warning(f"DeliveryQueue stopped with {self.size} jobs still queued")
        for task in self._workers:
            task.cancel()
        await asyncio.gather(*self._workers, return_exceptions=True)
        self._workers = []
        logger.info("DeliveryQueue stopped")

    async def join(self) -> None:
        """Wait until every submitted job, including ones submitted by jobs, is done."""
        if self._workers:
            await self._queue.join()
            return
        # No workers: drain inline (tests, one-off scripts)
        while not self._queue.empty():
            await self._run_one(self._queue.get_nowait())

    async def _worker(self) -> None:
        while True:
            job = await self._queue.get()
            await self._run_one(job)

    async def _run_one(self, job: Job) -> None:
        try:
            await job()
        except Exception:
            logger.exception("Webhook delivery job failed")
        finally:
            self._queue.task_done()
