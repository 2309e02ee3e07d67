"""Fixtures: in-memory store, scripted file handler and an ASGI test client."""

import pytest
from httpx import ASGITransport, AsyncClient

from helpers import ScriptedHandler
from pdfbatch.auth.supabase_auth import AuthenticatedUser, verify_jwt
from pdfbatch.config import Settings
from pdfbatch.jobs.repository import BatchJobRepository
from pdfbatch.main import create_app, init_services, shutdown_services
from pdfbatch.storage.memory_store import MemoryRecordStore


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def handler():
    return ScriptedHandler()


@pytest.fixture
def memory_store():
    return MemoryRecordStore()


@pytest.fixture
def repository(memory_store):
    return BatchJobRepository(memory_store)


@pytest.fixture
def test_settings(tmp_path):
    return Settings(
        _env_file=None,
        upload_dir=str(tmp_path / "spool"),
        resume_jobs_on_startup=False,
        pause_poll_seconds=0.01,
        max_concurrent_jobs=2,
        max_files_per_job=5,
        max_file_bytes=1024,
    )


def as_user(app, user_id: str) -> None:
    app.dependency_overrides[verify_jwt] = lambda: AuthenticatedUser(id=user_id)


@pytest.fixture
async def app(test_settings, handler, memory_store):
    application = create_app(use_lifespan=False)
    await init_services(application, test_settings, store=memory_store, handler=handler, start_sweeper=False)
    handler.spool = application.state.spool
    as_user(application, "user-1")
    yield application
    application.dependency_overrides.clear()
    await shutdown_services(application)


@pytest.fixture
async def client(app):
    async with AsyncClient(transport=ASGITransport(app=app), base_url="http://test") as http:
        yield http
