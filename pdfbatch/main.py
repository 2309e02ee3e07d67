"""pdfbatch - batch document processing service (FastAPI application)."""

import logging
from contextlib import asynccontextmanager
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from pdfbatch.api.envelope import install_exception_handlers
from pdfbatch.api.router import api_router
from pdfbatch.cache.store import CacheStore
from pdfbatch.config import Settings, settings
from pdfbatch.jobs.handlers import FileHandler, PillowFileHandler
from pdfbatch.jobs.in_process_queue import InProcessQueue
from pdfbatch.jobs.processor import BatchJobProcessor
from pdfbatch.jobs.repository import BatchJobRepository
from pdfbatch.jobs.service import BatchJobService
from pdfbatch.storage.base import RecordStore
from pdfbatch.storage.factory import build_record_store
from pdfbatch.storage.spool import JobSpool

logger = logging.getLogger(__name__)


async def init_services(
    app: FastAPI,
    config: Settings,
    store: Optional[RecordStore] = None,
    handler: Optional[FileHandler] = None,
    start_sweeper: bool = True,
) -> None:
    """Build the cache, store, worker pool and job service onto ``app.state``."""
    cache = CacheStore(sweep_interval=config.cache_sweep_seconds)
    store = store or build_record_store(config)
    spool = JobSpool(config.upload_dir, ttl_hours=config.job_result_ttl_hours)
    repository = BatchJobRepository(store)
    processor = BatchJobProcessor(
        repository,
        handler or PillowFileHandler(spool),
        cache=cache,
        file_timeout=config.file_timeout_seconds,
        job_timeout=config.job_timeout_seconds,
        pause_poll=config.pause_poll_seconds,
    )
    dispatcher = InProcessQueue(processor, workers=config.max_concurrent_jobs)

    app.state.cache = cache
    app.state.store = store
    app.state.spool = spool
    app.state.dispatcher = dispatcher
    app.state.batch_jobs = BatchJobService(
        repository, spool, dispatcher, cache, max_files_per_job=config.max_files_per_job,
        max_file_bytes=config.max_file_bytes,
    )

    if start_sweeper:
        await cache.start()
    await dispatcher.start()
    logger.info("Job dispatcher started with %d worker(s)", config.max_concurrent_jobs)

    if config.resume_jobs_on_startup:
        await dispatcher.resume_unfinished(repository)


async def shutdown_services(app: FastAPI) -> None:
    await app.state.dispatcher.stop()
    await app.state.cache.stop()
    await app.state.store.close()
    app.state.spool.cleanup_expired()


@asynccontextmanager
async def lifespan(app: FastAPI):
    """Startup and shutdown logic."""
    logging.basicConfig(
        level=settings.log_level.upper(),
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    logger.info("Starting pdfbatch on port %d (record store: %s)", settings.port, settings.record_store)
    logger.info("Upload spool: %s", settings.upload_dir)

    await init_services(app, settings)
    yield

    logger.info("Shutting down pdfbatch")
    await shutdown_services(app)


def create_app(use_lifespan: bool = True) -> FastAPI:
    app = FastAPI(
        title="pdfbatch",
        description="Batch document processing: job lifecycle, worker pool and read-through cache",
        version="0.1.0",
        lifespan=lifespan if use_lifespan else None,
    )
    app.add_middleware(
        CORSMiddleware,
        allow_origins=settings.cors_origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    install_exception_handlers(app)
    app.include_router(api_router)
    return app


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run("pdfbatch.main:app", host="0.0.0.0", port=settings.port)
