"""Batch job API: submit jobs, poll status, pause/resume, cancel, stats.

All routes require a Supabase bearer token; every query is scoped by the
authenticated user's id, and another user's job is reported as not found.
"""

from datetime import datetime
from typing import Any, Dict, List, Optional, Union

from fastapi import APIRouter, Depends, File, Form, HTTPException, Query, UploadFile
from fastapi.responses import FileResponse
from pydantic import BaseModel

from pdfbatch.api.deps import get_batch_job_service
from pdfbatch.api.envelope import ok
from pdfbatch.auth.supabase_auth import AuthenticatedUser, verify_jwt
from pdfbatch.jobs.models import JobStatus
from pdfbatch.jobs.service import BatchJobService, Upload
from pdfbatch.storage.query import DEFAULT_LIMIT, MAX_LIMIT, JobFilters, Pagination

router = APIRouter()

_CHUNK = 1024 * 1024


class JobUpdateRequest(BaseModel):
    jobName: Optional[str] = None
    description: Optional[str] = None
    config: Optional[Union[Dict[str, Any], str]] = None
    priority: Optional[str] = None
    outputFormat: Optional[str] = None


async def _read_upload(file: UploadFile, max_bytes: int) -> Upload:
    """Read an upload into memory, refusing anything over ``max_bytes``."""
    chunks = []
    total = 0
    while True:
        chunk = await file.read(_CHUNK)
        if not chunk:
            break
        total += len(chunk)
        if total > max_bytes:
            raise HTTPException(
                status_code=413,
                detail=f"File '{file.filename}' is too large (max {max_bytes} bytes)",
            )
        chunks.append(chunk)
    return Upload(file_name=file.filename or "upload", data=b"".join(chunks))


# ---------------------------------------------------------------------------
# GET /api/batch-jobs
# ---------------------------------------------------------------------------

@router.get("")
async def list_batch_jobs(
    status: Optional[JobStatus] = None,
    priority: Optional[str] = None,
    type: Optional[str] = None,
    limit: int = Query(DEFAULT_LIMIT, ge=1, le=MAX_LIMIT),
    offset: Optional[int] = Query(None, ge=0),
    page: Optional[int] = Query(None, ge=1),
    dateFrom: Optional[datetime] = None,
    dateTo: Optional[datetime] = None,
    search: Optional[str] = None,
    user: AuthenticatedUser = Depends(verify_jwt),
    service: BatchJobService = Depends(get_batch_job_service),
):
    """List the caller's jobs, newest first, with their files.

    ``offset`` is honored exactly when given without ``page``.
    """
    if page is None and offset:
        pagination = Pagination.from_offset(offset, limit)
    else:
        pagination = Pagination(page=page or 1, limit=limit)

    filters = JobFilters(
        status=status.value if status else None,
        priority=priority,
        type=type,
        date_from=dateFrom,
        date_to=dateTo,
        search=search,
    )
    result = await service.list_jobs(user.id, filters, pagination)
    return ok(result["data"], pagination=result["pagination"])


# ---------------------------------------------------------------------------
# GET /api/batch-jobs/stats/summary
# ---------------------------------------------------------------------------

@router.get("/stats/summary")
async def batch_job_summary(
    user: AuthenticatedUser = Depends(verify_jwt),
    service: BatchJobService = Depends(get_batch_job_service),
):
    """Aggregate counts across the caller's jobs."""
    return ok(await service.summary(user.id))


# ---------------------------------------------------------------------------
# GET /api/batch-jobs/{job_id}
# ---------------------------------------------------------------------------

@router.get("/{job_id}")
async def get_batch_job(
    job_id: str,
    user: AuthenticatedUser = Depends(verify_jwt),
    service: BatchJobService = Depends(get_batch_job_service),
):
    return ok(await service.get_job(user.id, job_id))


@router.get("/{job_id}/outputs/{file_name}")
async def download_output(
    job_id: str,
    file_name: str,
    user: AuthenticatedUser = Depends(verify_jwt),
    service: BatchJobService = Depends(get_batch_job_service),
):
    """Download a file produced by a job."""
    path = await service.output_path(user.id, job_id, file_name)
    if path is None:
        raise HTTPException(status_code=404, detail="Output file not found")
    return FileResponse(path, filename=file_name)


# ---------------------------------------------------------------------------
# POST /api/batch-jobs
# ---------------------------------------------------------------------------

@router.post("", status_code=201)
async def create_batch_job(
    files: Optional[List[UploadFile]] = File(None),
    jobName: Optional[str] = Form(None),
    description: Optional[str] = Form(None),
    config: Optional[str] = Form(None),
    priority: Optional[str] = Form(None),
    outputFormat: Optional[str] = Form(None),
    user: AuthenticatedUser = Depends(verify_jwt),
    service: BatchJobService = Depends(get_batch_job_service),
):
    """Create a job from a multipart upload and start processing it.

    Processing runs in the background; poll GET /api/batch-jobs/{id}.
    """
    files = files or []
    if len(files) > service.max_files_per_job:
        raise HTTPException(status_code=400, detail=f"Too many files (max {service.max_files_per_job})")
    uploads = [await _read_upload(f, service.max_file_bytes) for f in files]

    job = await service.create_job(
        user.id,
        jobName,
        uploads,
        description=description,
        config=config,
        priority=priority,
        output_format=outputFormat,
    )
    return ok(job.model_dump(mode="json"), message="Batch job created")


# ---------------------------------------------------------------------------
# PUT /api/batch-jobs/{job_id}
# ---------------------------------------------------------------------------

@router.put("/{job_id}")
async def update_batch_job(
    job_id: str,
    request: JobUpdateRequest,
    user: AuthenticatedUser = Depends(verify_jwt),
    service: BatchJobService = Depends(get_batch_job_service),
):
    """Edit a pending or paused job."""
    job = await service.update_job(user.id, job_id, {
        "job_name": request.jobName,
        "description": request.description,
        "job_config": request.config,
        "priority": request.priority,
        "output_format": request.outputFormat,
    })
    return ok(job.model_dump(mode="json"), message="Batch job updated")


# ---------------------------------------------------------------------------
# PATCH /api/batch-jobs/{job_id}/toggle
# ---------------------------------------------------------------------------

@router.patch("/{job_id}/toggle")
async def toggle_batch_job(
    job_id: str,
    user: AuthenticatedUser = Depends(verify_jwt),
    service: BatchJobService = Depends(get_batch_job_service),
):
    """Pause a running job or resume a paused one."""
    job = await service.toggle_job(user.id, job_id)
    verb = "paused" if job.job_status == JobStatus.PAUSED else "resumed"
    return ok(job.model_dump(mode="json"), message=f"Batch job {verb}")


# ---------------------------------------------------------------------------
# DELETE /api/batch-jobs/{job_id}
# ---------------------------------------------------------------------------

@router.delete("/{job_id}")
async def cancel_batch_job(
    job_id: str,
    user: AuthenticatedUser = Depends(verify_jwt),
    service: BatchJobService = Depends(get_batch_job_service),
):
    """Cancel a job. The record is kept; only its status changes."""
    job = await service.cancel_job(user.id, job_id)
    if job.job_status == JobStatus.CANCELLED:
        message = "Batch job cancelled"
    else:
        message = f"Batch job already {job.job_status.value}"
    return ok(job.model_dump(mode="json"), message=message)
