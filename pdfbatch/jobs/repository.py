"""Persistence and guarded state transitions for batch jobs and their files.

Every write to a job row is a compare-and-swap on its ``version`` column:
the row is read, the change is computed from what was read, and the update
only applies if the version is still the one that was read. A lost race is
retried against the fresh row, so a user's pause/cancel and the processor's
progress writes never silently overwrite each other.
"""

import logging
import os
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from pydantic import ValidationError

from pdfbatch.errors import ConcurrentUpdate, InvalidTransition, JobNotFound, ValidationFailed
from pdfbatch.jobs.models import (
    BatchJob,
    BatchJobFile,
    FileStatus,
    JobConfig,
    JobStatus,
    OutputFormat,
    Priority,
    can_cancel,
    ensure_editable,
    toggled_status,
    utcnow_iso,
)
from pdfbatch.storage.base import RecordStore, Row
from pdfbatch.storage.query import JobFilters, Pagination, apply_filters, apply_pagination, count_matching

logger = logging.getLogger(__name__)

JOBS_TABLE = "batch_jobs"
FILES_TABLE = "batch_job_files"

MAX_SWAP_ATTEMPTS = 5

UNFINISHED_STATUSES = (JobStatus.PENDING.value, JobStatus.RUNNING.value, JobStatus.PAUSED.value)


@dataclass
class NewJobFile:
    file_name: str
    file_size: int


def file_type_of(file_name: str) -> str:
    return os.path.splitext(file_name)[1].lstrip(".").lower()


def _validated_config(config: Any) -> Dict[str, Any]:
    try:
        return JobConfig.model_validate(config or {}).model_dump()
    except ValidationError as exc:
        raise ValidationFailed(f"Invalid job configuration: {exc.errors()[0]['msg']}") from exc


def _enum_value(enum_cls, value: Any, label: str) -> str:
    try:
        return enum_cls(value).value
    except ValueError:
        allowed = ", ".join(m.value for m in enum_cls)
        raise ValidationFailed(f"Invalid {label} '{value}'. Valid: {allowed}") from None


class BatchJobRepository:
    def __init__(self, store: RecordStore):
        self._store = store

    # ------------------------------------------------------------------
    # Creation
    # ------------------------------------------------------------------

    async def create_job(
        self,
        owner_id: str,
        job_name: str,
        files: List[NewJobFile],
        description: str = "",
        config: Optional[Dict[str, Any]] = None,
        priority: str = Priority.MEDIUM.value,
        output_format: str = OutputFormat.PDF.value,
    ) -> BatchJob:
        """Insert a pending job and one file row per upload, in upload order."""
        if not job_name or not job_name.strip():
            raise ValidationFailed("Job name and files are required")
        if not files:
            raise ValidationFailed("Job name and files are required")

        now = utcnow_iso()
        job_row = {
            "user_id": owner_id,
            "job_name": job_name.strip(),
            "description": description or "",
            "job_config": _validated_config(config),
            "priority": _enum_value(Priority, priority, "priority"),
            "output_format": _enum_value(OutputFormat, output_format, "output format"),
            "job_status": JobStatus.PENDING.value,
            "total_files": len(files),
            "processed_files": 0,
            "failed_files": 0,
            "version": 1,
            "created_at": now,
            "updated_at": now,
        }
        job = BatchJob.model_validate((await self._store.insert(JOBS_TABLE, [job_row]))[0])

        file_rows = [
            {
                "job_id": job.id,
                "file_name": f.file_name,
                "file_type": file_type_of(f.file_name),
                "file_size": f.file_size,
                "file_order": index + 1,
                "processing_status": FileStatus.PENDING.value,
                "created_at": now,
            }
            for index, f in enumerate(files)
        ]
        try:
            stored = await self._store.insert(FILES_TABLE, file_rows)
        except Exception:
            # No multi-table transaction: close the orphaned job so it never
            # looks processable.
            await self.finalize(job.id, JobStatus.FAILED, "Could not record job files")
            raise

        job.batch_job_files = sorted(
            (BatchJobFile.model_validate(r) for r in stored), key=lambda f: f.file_order
        )
        logger.info("Created batch job %s with %d file(s) for user %s", job.id, len(files), owner_id)
        return job

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def _job_row(self, job_id: str, owner_id: Optional[str] = None) -> Optional[Row]:
        query = self._store.select(JOBS_TABLE).eq("id", job_id)
        if owner_id is not None:
            query = query.eq("user_id", owner_id)
        result = await query.execute()
        return result.data[0] if result.data else None

    async def load(self, job_id: str) -> BatchJob:
        row = await self._job_row(job_id)
        if row is None:
            raise JobNotFound(job_id)
        return BatchJob.model_validate(row)

    async def get_job(self, owner_id: str, job_id: str, with_files: bool = True) -> BatchJob:
        """Fetch a job owned by ``owner_id``; other owners' jobs look missing."""
        row = await self._job_row(job_id, owner_id)
        if row is None:
            raise JobNotFound(job_id)
        job = BatchJob.model_validate(row)
        if with_files:
            job.batch_job_files = await self.list_files(job_id)
        return job

    async def list_files(self, job_id: str) -> List[BatchJobFile]:
        result = await self._store.select(FILES_TABLE).eq("job_id", job_id).order("file_order").execute()
        return [BatchJobFile.model_validate(r) for r in result.data]

    async def list_jobs(
        self, owner_id: str, filters: JobFilters, pagination: Pagination
    ) -> Tuple[List[BatchJob], int]:
        """One page of the owner's jobs (with files) and the total match count."""
        query = apply_filters(self._store.select(JOBS_TABLE, count=True).eq("user_id", owner_id), filters)
        result = await apply_pagination(query, pagination).execute()
        total = result.count
        if total is None:
            total = await count_matching(self._store, JOBS_TABLE, owner_id, filters)

        jobs = [BatchJob.model_validate(r) for r in result.data]
        if jobs:
            files = await self._store.select(FILES_TABLE).in_("job_id", [j.id for j in jobs]).order("file_order").execute()
            by_job: Dict[str, List[BatchJobFile]] = {j.id: [] for j in jobs}
            for r in files.data:
                by_job.setdefault(r["job_id"], []).append(BatchJobFile.model_validate(r))
            for job in jobs:
                job.batch_job_files = by_job[job.id]
        return jobs, total

    async def list_unfinished(self) -> List[BatchJob]:
        """Jobs of any owner that have not reached a terminal status."""
        result = await (
            self._store.select(JOBS_TABLE)
            .in_("job_status", UNFINISHED_STATUSES)
            .order("created_at", ascending=True)
            .execute()
        )
        return [BatchJob.model_validate(r) for r in result.data]

    async def summary(self, owner_id: str) -> Dict[str, Any]:
        """Aggregate counters across all of the owner's jobs."""
        result = await self._store.select(JOBS_TABLE).eq("user_id", owner_id).execute()
        status_summary: Dict[str, int] = {}
        total_files = processed = failed = 0
        for row in result.data:
            status = row.get("job_status")
            status_summary[status] = status_summary.get(status, 0) + 1
            total_files += row.get("total_files") or 0
            processed += row.get("processed_files") or 0
            failed += row.get("failed_files") or 0

        return {
            "totalJobs": len(result.data),
            "totalFiles": total_files,
            "processedFiles": processed,
            "failedFiles": failed,
            "successRate": round(processed / total_files * 100, 2) if total_files else 0,
            "statusSummary": status_summary,
        }

    # ------------------------------------------------------------------
    # Guarded writes
    # ------------------------------------------------------------------

    async def _swap(
        self,
        job_id: str,
        change: Callable[[BatchJob], Optional[Row]],
        owner_id: Optional[str] = None,
    ) -> BatchJob:
        """Apply ``change`` with an optimistic version check.

        ``change`` receives the current job and returns the columns to write,
        or ``None`` to leave the row untouched. It may raise to reject.
        """
        for _ in range(MAX_SWAP_ATTEMPTS):
            row = await self._job_row(job_id, owner_id)
            if row is None:
                raise JobNotFound(job_id)
            job = BatchJob.model_validate(row)
            values = change(job)
            if values is None:
                return job
            values = {**values, "version": job.version + 1, "updated_at": utcnow_iso()}
            updated = await self._store.update(JOBS_TABLE, values, {"id": job_id, "version": job.version})
            if updated:
                return BatchJob.model_validate(updated[0])
            logger.debug("Version conflict on job %s (version %d), retrying", job_id, job.version)
        raise ConcurrentUpdate(f"Batch job {job_id} is being modified concurrently, try again")

    async def update_job(self, owner_id: str, job_id: str, changes: Dict[str, Any]) -> BatchJob:
        """Edit name/description/config/priority/output format of a pending or paused job."""
        values: Row = {}
        if changes.get("job_name"):
            values["job_name"] = str(changes["job_name"]).strip()
        if changes.get("description") is not None:
            values["description"] = changes["description"]
        if changes.get("job_config"):
            values["job_config"] = _validated_config(changes["job_config"])
        if changes.get("priority"):
            values["priority"] = _enum_value(Priority, changes["priority"], "priority")
        if changes.get("output_format"):
            values["output_format"] = _enum_value(OutputFormat, changes["output_format"], "output format")

        def change(job: BatchJob) -> Optional[Row]:
            ensure_editable(job.job_status)
            return values or None

        return await self._swap(job_id, change, owner_id)

    async def toggle_job(self, owner_id: str, job_id: str) -> BatchJob:
        """Flip running <-> paused."""
        def change(job: BatchJob) -> Row:
            return {"job_status": toggled_status(job.job_status).value}

        job = await self._swap(job_id, change, owner_id)
        logger.info("Batch job %s is now %s", job_id, job.job_status.value)
        return job

    async def cancel_job(self, owner_id: str, job_id: str) -> BatchJob:
        """Soft-cancel. Completed jobs are rejected; other terminal jobs are left as they are."""
        def change(job: BatchJob) -> Optional[Row]:
            if not can_cancel(job.job_status):
                raise InvalidTransition("A completed job cannot be cancelled")
            if job.is_terminal:
                return None
            return {"job_status": JobStatus.CANCELLED.value, "completed_at": utcnow_iso()}

        job = await self._swap(job_id, change, owner_id)
        logger.info("Batch job %s cancelled by user %s", job_id, owner_id)
        return job

    # ------------------------------------------------------------------
    # Processor-side writes
    # ------------------------------------------------------------------

    async def mark_running(self, job_id: str) -> BatchJob:
        """pending -> running with a start timestamp; any other status is kept."""
        def change(job: BatchJob) -> Optional[Row]:
            if job.job_status != JobStatus.PENDING:
                return None
            return {"job_status": JobStatus.RUNNING.value, "started_at": utcnow_iso()}

        return await self._swap(job_id, change)

    async def record_progress(self, job_id: str, processed: int, failed: int) -> BatchJob:
        """Persist file counters. Terminal jobs are not touched."""
        def change(job: BatchJob) -> Optional[Row]:
            if job.is_terminal:
                return None
            if processed + failed > job.total_files:
                raise ValueError(
                    f"Counters {processed}+{failed} exceed total_files={job.total_files} for job {job_id}"
                )
            if processed < job.processed_files or failed < job.failed_files:
                raise ValueError(f"Counters of job {job_id} cannot decrease")
            return {"processed_files": processed, "failed_files": failed}

        return await self._swap(job_id, change)

    async def finalize(self, job_id: str, status: JobStatus, error: Optional[str] = None) -> BatchJob:
        """Move a non-terminal job to a terminal status. Terminal jobs are kept."""
        def change(job: BatchJob) -> Optional[Row]:
            if job.is_terminal:
                return None
            values: Row = {"job_status": status.value, "completed_at": utcnow_iso()}
            if error is not None:
                values["error_message"] = error
            return values

        return await self._swap(job_id, change)

    async def update_file(self, file_id: str, values: Row) -> None:
        await self._store.update(FILES_TABLE, values, {"id": file_id})
