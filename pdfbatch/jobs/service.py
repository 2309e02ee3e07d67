"""Batch job use cases shared by the HTTP routes.

Ties together the repository, the upload spool, the dispatcher and the
cache: reads go through the cache, every mutation invalidates the
``batch_jobs`` and ``metrics`` categories.
"""

import json
import logging
from contextlib import asynccontextmanager
from dataclasses import dataclass
from typing import Any, Dict, List, Optional

from pdfbatch.cache.store import CacheCategory, CacheStore, generate_cache_key
from pdfbatch.errors import ValidationFailed
from pdfbatch.jobs.dispatcher import JobDispatcher
from pdfbatch.jobs.models import BatchJob, JobStatus
from pdfbatch.jobs.processor import owner_cache_prefix
from pdfbatch.jobs.repository import BatchJobRepository, NewJobFile
from pdfbatch.storage.query import JobFilters, Pagination, to_timestamp, total_pages
from pdfbatch.storage.spool import JobSpool

logger = logging.getLogger(__name__)


@dataclass
class Upload:
    file_name: str
    data: bytes


def parse_config(config: Any) -> Dict[str, Any]:
    """Accept the job config as a JSON string (multipart form) or a mapping."""
    if config is None or config == "":
        return {}
    if isinstance(config, str):
        try:
            config = json.loads(config)
        except json.JSONDecodeError as exc:
            raise ValidationFailed(f"Job configuration is not valid JSON: {exc.msg}") from exc
    if not isinstance(config, dict):
        raise ValidationFailed("Job configuration must be a JSON object")
    return config


class BatchJobService:
    def __init__(
        self,
        repository: BatchJobRepository,
        spool: JobSpool,
        dispatcher: JobDispatcher,
        cache: CacheStore,
        max_files_per_job: int = 100,
        max_file_bytes: int = 50 * 1024 * 1024,
    ):
        self.repository = repository
        self.spool = spool
        self.dispatcher = dispatcher
        self.cache = cache
        self.max_files_per_job = max_files_per_job
        self.max_file_bytes = max_file_bytes

    def _invalidate(self) -> None:
        self.cache.invalidate(CacheCategory.BATCH_JOBS)
        self.cache.invalidate(CacheCategory.METRICS)

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_jobs(self, owner_id: str, filters: JobFilters, pagination: Pagination) -> Dict[str, Any]:
        key = generate_cache_key(owner_cache_prefix(owner_id), {
            "view": "list",
            "status": filters.status,
            "priority": filters.priority,
            "type": filters.type,
            "dateFrom": to_timestamp(filters.date_from) if filters.date_from else None,
            "dateTo": to_timestamp(filters.date_to) if filters.date_to else None,
            "search": filters.search,
            "page": pagination.page,
            "offset": pagination.start,
            "limit": pagination.limit,
        })

        async def fetch() -> Dict[str, Any]:
            jobs, total = await self.repository.list_jobs(owner_id, filters, pagination)
            return {
                "data": [j.model_dump(mode="json") for j in jobs],
                "pagination": {
                    "total": total,
                    "page": pagination.page,
                    "limit": pagination.limit,
                    "totalPages": total_pages(total, pagination.limit),
                },
            }

        return await self.cache.get_or_fetch(CacheCategory.BATCH_JOBS, key, fetch)

    async def get_job(self, owner_id: str, job_id: str) -> Dict[str, Any]:
        key = generate_cache_key(owner_cache_prefix(owner_id), {"view": "job", "id": job_id})

        async def fetch() -> Dict[str, Any]:
            job = await self.repository.get_job(owner_id, job_id)
            return job.model_dump(mode="json")

        return await self.cache.get_or_fetch(CacheCategory.BATCH_JOBS, key, fetch)

    async def summary(self, owner_id: str) -> Dict[str, Any]:
        key = generate_cache_key(owner_cache_prefix(owner_id), {"view": "summary"})
        return await self.cache.get_or_fetch(
            CacheCategory.METRICS, key, lambda: self.repository.summary(owner_id)
        )

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    @asynccontextmanager
    async def _writing(self):
        """Drop cached reads around a write.

        Reads that ran while the write was in flight may have re-cached the
        old rows, so the categories are cleared again once it settles.
        """
        self._invalidate()
        try:
            yield
        finally:
            self._invalidate()

    async def create_job(
        self,
        owner_id: str,
        job_name: Optional[str],
        uploads: List[Upload],
        description: Optional[str] = None,
        config: Any = None,
        priority: Optional[str] = None,
        output_format: Optional[str] = None,
    ) -> BatchJob:
        """Persist a job with its files, spool the bytes and queue processing."""
        if not job_name or not uploads:
            raise ValidationFailed("Job name and files are required")
        if len(uploads) > self.max_files_per_job:
            raise ValidationFailed(f"Too many files (max {self.max_files_per_job})")

        async with self._writing():
            job = await self.repository.create_job(
                owner_id,
                job_name,
                [NewJobFile(file_name=u.file_name, file_size=len(u.data)) for u in uploads],
                description=description or "",
                config=parse_config(config),
                priority=priority or "medium",
                output_format=output_format or "pdf",
            )

            try:
                for job_file, upload in zip(job.batch_job_files, uploads):
                    self.spool.write_input(job.id, job_file.file_order, job_file.file_name, upload.data)
            except OSError:
                logger.exception("Could not spool uploads for batch job %s", job.id)
                await self.repository.finalize(job.id, JobStatus.FAILED, "Could not store uploaded files")
                raise

        await self.dispatcher.submit(job.id)
        return job

    async def update_job(self, owner_id: str, job_id: str, changes: Dict[str, Any]) -> BatchJob:
        if "job_config" in changes and changes["job_config"] is not None:
            changes = {**changes, "job_config": parse_config(changes["job_config"])}
        async with self._writing():
            return await self.repository.update_job(owner_id, job_id, changes)

    async def toggle_job(self, owner_id: str, job_id: str) -> BatchJob:
        async with self._writing():
            return await self.repository.toggle_job(owner_id, job_id)

    async def cancel_job(self, owner_id: str, job_id: str) -> BatchJob:
        async with self._writing():
            job = await self.repository.cancel_job(owner_id, job_id)
        self.dispatcher.cancel(job_id)
        return job

    async def output_path(self, owner_id: str, job_id: str, file_name: str) -> Optional[str]:
        """Path of a produced output, or None if the job has no such output."""
        job = await self.repository.get_job(owner_id, job_id)
        names = {f.output_name for f in job.batch_job_files or [] if f.output_name}
        if file_name not in names or not self.spool.output_exists(job_id, file_name):
            return None
        return self.spool.output_path(job_id, file_name)
