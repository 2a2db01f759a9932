"""
Background worker pool.

N asyncio tasks, each polling the event store through the processor. Claims
are exclusive, so workers never handle the same event twice; they only
sleep when a poll finds nothing due.
"""

import asyncio
import logging
from typing import Optional

from settlement_engine.config import settings
from settlement_engine.engine.processor import EventProcessor

logger = logging.getLogger("settlement_engine.worker")


class WorkerPool:
    def __init__(
        self,
        processor: EventProcessor,
        workers: Optional[int] = None,
        poll_interval: Optional[float] = None,
        batch_size: Optional[int] = None,
    ):
        self.processor = processor
        self.workers = workers if workers is not None else settings.worker_count
        self.poll_interval = poll_interval if poll_interval is not None else settings.worker_poll_interval_seconds
        self.batch_size = batch_size if batch_size is not None else settings.claim_batch_size
        self._tasks: list[asyncio.Task] = []
        self._stopping = asyncio.Event()

    @property
    def running(self) -> bool:
        return any(not t.done() for t in self._tasks)

    def start(self) -> None:
        if self.running:
            return
        self._stopping.clear()
        self._tasks = [
            asyncio.create_task(self._run(i), name=f"settlement-worker-{i}")
            for i in range(self.workers)
        ]
        logger.info("Started %d worker(s), polling every %.2fs", self.workers, self.poll_interval)

    async def stop(self, timeout: Optional[float] = None) -> None:
        """
        Let every worker finish its current batch, then stop.

        Workers still busy after ``timeout`` seconds are cancelled; the
        processor hands their in-flight event back to the store as failed.
        """
        timeout = timeout if timeout is not None else settings.worker_shutdown_timeout_seconds
        self._stopping.set()
        if self._tasks:
            _, pending = await asyncio.wait(self._tasks, timeout=timeout)
            if pending:
                logger.warning("Cancelling %d worker(s) still busy after %.1fs", len(pending), timeout)
                for task in pending:
                    task.cancel()
            await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
        logger.info("Worker pool stopped")

    async def _run(self, worker_id: int) -> None:
        while not self._stopping.is_set():
            try:
                processed = await self.processor.run_once(self.batch_size)
            except asyncio.CancelledError:
                raise
            except Exception:
                # Event failures are recorded by the processor; this is the store itself failing
                logger.exception("Worker %d poll failed", worker_id)
                processed = 0

            if processed == 0:
                try:
                    await asyncio.wait_for(self._stopping.wait(), timeout=self.poll_interval)
                except asyncio.TimeoutError:
                    pass
