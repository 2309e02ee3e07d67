"""Batch job processor: walks a job's files in order and finalizes the job.

Contract: ``process(job_id)`` returns nothing useful to its caller; every
outcome is recorded on the job and file rows. Once processing has started
the job always ends in a terminal status: per-file errors are recorded on
the file and counted, anything else marks the whole job failed.

Between files the processor re-reads the job. A paused job makes it wait,
a cancelled job (or a set cancel event) makes it stop without writing
further progress.
"""

import asyncio
import logging
import time
from typing import Callable, Dict, Optional

from pdfbatch.cache.store import CacheCategory, CacheStore
from pdfbatch.errors import JobNotFound
from pdfbatch.jobs.handlers import FileHandler
from pdfbatch.jobs.models import (
    BatchJob,
    BatchJobFile,
    FileStatus,
    JobStatus,
    final_status,
    utcnow_iso,
)
from pdfbatch.jobs.repository import BatchJobRepository

logger = logging.getLogger(__name__)


def owner_cache_prefix(owner_id: str) -> str:
    return f"user:{owner_id}"


def invalidate_owner(cache: Optional[CacheStore], owner_id: str) -> None:
    """Drop cached list/summary reads belonging to one owner."""
    if cache is None:
        return
    pattern = f"{owner_cache_prefix(owner_id)}:"
    cache.invalidate_by_pattern(CacheCategory.BATCH_JOBS, pattern)
    cache.invalidate_by_pattern(CacheCategory.METRICS, pattern)


class _Stop(Exception):
    """Raised inside the file loop when the job was cancelled."""


class BatchJobProcessor:
    def __init__(
        self,
        repository: BatchJobRepository,
        handler: FileHandler,
        cache: Optional[CacheStore] = None,
        file_timeout: Optional[float] = 120.0,
        job_timeout: Optional[float] = 3600.0,
        pause_poll: float = 1.0,
        clock: Callable[[], float] = time.monotonic,
        load_attempts: int = 3,
        retry_delay: float = 0.5,
    ):
        self._repo = repository
        self._handler = handler
        self._cache = cache
        self._file_timeout = file_timeout
        self._job_timeout = job_timeout
        self._pause_poll = pause_poll
        self._clock = clock
        self._load_attempts = max(1, load_attempts)
        self._retry_delay = retry_delay

    async def process(self, job_id: str, cancel_event: Optional[asyncio.Event] = None) -> None:
        """Run a job to a terminal status. No-op if it is already terminal."""
        job = await self._load_with_retry(job_id)
        if job is None:
            return
        if job.is_terminal:
            logger.info("Batch job %s already %s, skipping", job_id, job.job_status.value)
            return

        cancel_event = cancel_event or asyncio.Event()
        current: Dict[str, BatchJobFile] = {}
        try:
            if self._job_timeout:
                await asyncio.wait_for(self._run(job, cancel_event, current), timeout=self._job_timeout)
            else:
                await self._run(job, cancel_event, current)
        except asyncio.TimeoutError:
            logger.error("Batch job %s exceeded %ss, marking failed", job_id, self._job_timeout)
            if "file" in current:
                await self._fail_file(job, current["file"], "Job exceeded time limit")
            await self._fail(job, f"Job exceeded time limit of {self._job_timeout:g}s")
        except asyncio.CancelledError:
            # Worker shutdown: leave the job resumable on next start.
            logger.warning("Processing of batch job %s interrupted", job_id)
            raise
        except Exception as exc:
            logger.exception("Batch job %s failed", job_id)
            await self._fail(job, f"{type(exc).__name__}: {exc}")

    async def _load_with_retry(self, job_id: str) -> Optional[BatchJob]:
        """Load the job, retrying store errors; None if it cannot be loaded."""
        for attempt in range(self._load_attempts):
            try:
                return await self._repo.load(job_id)
            except JobNotFound:
                logger.warning("Batch job %s no longer exists", job_id)
                return None
            except Exception:
                if attempt + 1 >= self._load_attempts:
                    logger.exception("Could not load batch job %s", job_id)
                    return None
                delay = self._retry_delay * (2 ** attempt)
                logger.warning("Loading batch job %s failed, retry %d in %.2fs", job_id, attempt + 1, delay)
                await asyncio.sleep(delay)
        return None

    async def _fail(self, job: BatchJob, message: str) -> None:
        try:
            await self._repo.finalize(job.id, JobStatus.FAILED, message)
        except Exception:
            logger.exception("Could not mark batch job %s as failed", job.id)
        invalidate_owner(self._cache, job.user_id)

    async def _fail_file(self, job: BatchJob, job_file: BatchJobFile, message: str) -> None:
        try:
            await self._record_file_failure(job_file, message)
        except Exception:
            logger.exception("Could not mark file %s of job %s as failed", job_file.file_name, job.id)

    async def _run(self, job: BatchJob, cancel_event: asyncio.Event, current: Dict[str, BatchJobFile]) -> None:
        job = await self._repo.mark_running(job.id)
        invalidate_owner(self._cache, job.user_id)
        if job.is_terminal:
            return

        files = await self._repo.list_files(job.id)
        processed = sum(1 for f in files if f.processing_status == FileStatus.COMPLETED)
        failed = sum(1 for f in files if f.processing_status == FileStatus.FAILED)
        if processed or failed:
            logger.info("Resuming batch job %s at %d/%d", job.id, processed + failed, len(files))

        try:
            for job_file in files:
                if job_file.is_terminal:
                    continue
                job = await self._wait_while_paused(job.id, cancel_event)

                current["file"] = job_file
                ok = await self._process_file(job, job_file)
                current.pop("file", None)
                if ok:
                    processed += 1
                else:
                    failed += 1

                job = await self._repo.record_progress(job.id, processed, failed)
                invalidate_owner(self._cache, job.user_id)
                if job.is_terminal:
                    raise _Stop()
        except _Stop:
            logger.info("Batch job %s stopped: %s", job.id, job.job_status.value)
            return

        status = final_status(job.total_files, failed)
        job = await self._repo.finalize(job.id, status)
        invalidate_owner(self._cache, job.user_id)
        logger.info(
            "Batch job %s finished with status %s (%d ok, %d failed)",
            job.id, job.job_status.value, processed, failed,
        )

    async def _wait_while_paused(self, job_id: str, cancel_event: asyncio.Event) -> BatchJob:
        """Return the fresh job once it may proceed; raise _Stop if cancelled."""
        while True:
            if cancel_event.is_set():
                raise _Stop()
            job = await self._repo.load(job_id)
            if job.is_terminal:
                raise _Stop()
            if job.job_status != JobStatus.PAUSED:
                return job
            try:
                await asyncio.wait_for(cancel_event.wait(), timeout=self._pause_poll)
            except asyncio.TimeoutError:
                pass

    async def _process_file(self, job: BatchJob, job_file: BatchJobFile) -> bool:
        """Run the unit of work for one file and record its outcome."""
        await self._repo.update_file(job_file.id, {"processing_status": FileStatus.PROCESSING.value})
        started = self._clock()
        try:
            if self._file_timeout:
                output_name = await asyncio.wait_for(
                    self._handler.handle(job, job_file), timeout=self._file_timeout
                )
            else:
                output_name = await self._handler.handle(job, job_file)
        except asyncio.TimeoutError:
            error = f"Processing timed out after {self._file_timeout:g}s"
        except Exception as exc:
            error = str(exc) or type(exc).__name__
        else:
            await self._repo.update_file(job_file.id, {
                "processing_status": FileStatus.COMPLETED.value,
                "output_name": output_name,
                "completed_at": utcnow_iso(),
            })
            logger.debug("File %s of job %s done in %.2fs", job_file.file_name, job.id, self._clock() - started)
            return True

        logger.warning("File %s of job %s failed: %s", job_file.file_name, job.id, error)
        await self._record_file_failure(job_file, error)
        return False

    async def _record_file_failure(self, job_file: BatchJobFile, error: str) -> None:
        await self._repo.update_file(job_file.id, {
            "processing_status": FileStatus.FAILED.value,
            "error_message": error,
            "completed_at": utcnow_iso(),
        })
