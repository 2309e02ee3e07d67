"""Request-scoped access to the services built at startup."""

from fastapi import Request

from pdfbatch.cache.store import CacheStore
from pdfbatch.jobs.service import BatchJobService


def get_batch_job_service(request: Request) -> BatchJobService:
    return request.app.state.batch_jobs


def get_cache(request: Request) -> CacheStore:
    return request.app.state.cache
