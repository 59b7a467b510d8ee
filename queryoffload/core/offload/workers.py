import asyncio
import logging
from typing import List

from queryoffload.core.offload.executor import JobExecutor
from queryoffload.core.offload.notifications import JobCompleted
from queryoffload.core.offload.queue import JobQueue

logger = logging.getLogger(__name__)


class WorkerPool:
    """
    Fixed number of consumers, each running one job at a time.

    Pool size bounds the number of jobs (and database connections) in flight.
    """

    def __init__(
        self,
        queue: JobQueue,
        executor: JobExecutor,
        concurrency: int = 1,
        poll_interval: float = 1.0,
    ):
        self.queue = queue
        self.executor = executor
        self.concurrency = concurrency
        self.poll_interval = poll_interval
        self._tasks: List[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return any(not task.done() for task in self._tasks)

    def start(self) -> None:
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._work(index), name=f"query-worker-{index}")
            for index in range(self.concurrency)
        ]
        logger.info(f"Started {self.concurrency} query worker(s) on {self.queue.name}")

    async def stop(self) -> None:
        """Stop consuming. In-flight jobs are cancelled, not awaited to completion."""
        tasks, self._tasks = self._tasks, []
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)

    async def run_once(self) -> bool:
        """Claim and process a single entry; False when the queue was empty."""
        job = await self.queue.claim()
        if job is None:
            return False

        event = await self.executor.process(job)
        try:
            if isinstance(event, JobCompleted):
                await self.queue.mark_completed(job.id)
            else:
                await self.queue.mark_failed(job.id, event.message)
        except Exception:
            logger.exception(f"Could not settle queue entry for job {job.id}")
        return True

    async def _work(self, index: int) -> None:
        while True:
            try:
                processed = await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception:
                logger.exception(f"Worker {index} could not read from the queue")
                processed = False

            if not processed:
                await asyncio.sleep(self.poll_interval)
