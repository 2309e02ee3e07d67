"""In-process job queue backed by asyncio.

A fixed pool of worker tasks consumes job ids from an ``asyncio.Queue``, so
at most ``workers`` jobs are processed at once across all users. Each job
gets a cancel event the API can set; the processor checks it before every
file. No external broker (Redis, Celery) is needed.
"""

import asyncio
import logging
from typing import Dict, List, Optional, Set

from pdfbatch.jobs.dispatcher import JobDispatcher
from pdfbatch.jobs.processor import BatchJobProcessor
from pdfbatch.jobs.repository import BatchJobRepository

logger = logging.getLogger(__name__)


class InProcessQueue(JobDispatcher):
    """Local async job queue with a bounded worker pool."""

    def __init__(self, processor: BatchJobProcessor, workers: int = 2):
        self._processor = processor
        self._workers = max(1, workers)
        self._queue: asyncio.Queue[str] = asyncio.Queue()
        self._queued: Set[str] = set()
        self._active: Set[str] = set()
        self._cancel_events: Dict[str, asyncio.Event] = {}
        self._tasks: List[asyncio.Task] = []
        self._running = False

    @property
    def active_jobs(self) -> Set[str]:
        return set(self._active)

    async def submit(self, job_id: str) -> bool:
        if job_id in self._queued or job_id in self._active:
            return False
        self._queued.add(job_id)
        self._cancel_events.setdefault(job_id, asyncio.Event())
        await self._queue.put(job_id)
        return True

    def cancel(self, job_id: str) -> None:
        event = self._cancel_events.get(job_id)
        if event is not None:
            event.set()

    async def start(self) -> None:
        self._running = True
        self._tasks = [
            asyncio.create_task(self._worker_loop(n), name=f"batch-worker-{n}")
            for n in range(self._workers)
        ]
        logger.info("Job queue started with %d worker(s)", self._workers)

    async def stop(self) -> None:
        self._running = False
        for task in self._tasks:
            task.cancel()
        for task in self._tasks:
            try:
                await task
            except asyncio.CancelledError:
                pass
        self._tasks = []

    async def join(self) -> None:
        """Wait until every submitted job has been processed."""
        await self._queue.join()

    async def resume_unfinished(self, repository: BatchJobRepository) -> int:
        """Re-enqueue jobs left pending, running or paused by a previous process."""
        jobs = await repository.list_unfinished()
        resumed = 0
        for job in jobs:
            if await self.submit(job.id):
                resumed += 1
        if resumed:
            logger.info("Re-enqueued %d unfinished batch job(s)", resumed)
        return resumed

    async def _worker_loop(self, worker: int) -> None:
        """Process jobs one at a time from the queue."""
        while self._running:
            try:
                job_id = await asyncio.wait_for(self._queue.get(), timeout=1.0)
            except asyncio.TimeoutError:
                continue

            self._queued.discard(job_id)
            self._active.add(job_id)
            event = self._cancel_events.setdefault(job_id, asyncio.Event())
            try:
                logger.debug("Worker %d picked up batch job %s", worker, job_id)
                await self._processor.process(job_id, event)
            except Exception:
                # process() records its own failures; this only guards the pool.
                logger.exception("Worker %d crashed on batch job %s", worker, job_id)
            finally:
                self._active.discard(job_id)
                self._cancel_events.pop(job_id, None)
                self._queue.task_done()
