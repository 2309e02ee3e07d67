"""Aggregate all API routers."""

from fastapi import APIRouter

from pdfbatch.api.batch_jobs import router as batch_jobs_router
from pdfbatch.api.health import router as health_router

api_router = APIRouter()
api_router.include_router(health_router, tags=["health"])
api_router.include_router(batch_jobs_router, prefix="/api/batch-jobs", tags=["batch-jobs"])
