import asyncio

import pytest

from pdfbatch.cache.store import CacheCategory, CacheStore
from pdfbatch.errors import JobNotFound
from pdfbatch.jobs.dispatcher import JobDispatcher
from pdfbatch.jobs.repository import BatchJobRepository
from pdfbatch.jobs.service import BatchJobService, Upload
from pdfbatch.storage.memory_store import MemoryRecordStore
from pdfbatch.storage.query import JobFilters, Pagination
from pdfbatch.storage.spool import JobSpool


class SlowUpdateStore(MemoryRecordStore):
    """Updates take a while, so reads can interleave with them."""

    async def update(self, table, values, match):
        await asyncio.sleep(0.05)
        return await super().update(table, values, match)


class RecordingDispatcher(JobDispatcher):
    def __init__(self):
        self.submitted = []
        self.cancelled = []

    async def submit(self, job_id):
        self.submitted.append(job_id)
        return True

    def cancel(self, job_id):
        self.cancelled.append(job_id)

    async def start(self):
        pass

    async def stop(self):
        pass


@pytest.fixture
def service(tmp_path):
    return BatchJobService(
        BatchJobRepository(SlowUpdateStore()),
        JobSpool(str(tmp_path / "spool")),
        RecordingDispatcher(),
        CacheStore(),
    )


@pytest.mark.anyio
async def test_read_during_cancel_is_not_served_afterwards(service):
    job = await service.create_job("u1", "Race", [Upload("a.pdf", b"%PDF-1.4")])

    cancel = asyncio.create_task(service.cancel_job("u1", job.id))
    await asyncio.sleep(0.01)
    during = await service.get_job("u1", job.id)
    await cancel

    assert during["job_status"] == "pending"
    assert (await service.get_job("u1", job.id))["job_status"] == "cancelled"
    assert service.dispatcher.cancelled == [job.id]


@pytest.mark.anyio
async def test_list_and_summary_read_during_toggle_are_dropped(service):
    job = await service.create_job("u1", "Race", [Upload("a.pdf", b"%PDF-1.4")])
    await service.repository.mark_running(job.id)

    toggle = asyncio.create_task(service.toggle_job("u1", job.id))
    await asyncio.sleep(0.01)
    await service.list_jobs("u1", JobFilters(), Pagination())
    await service.summary("u1")
    await toggle

    listed = await service.list_jobs("u1", JobFilters(), Pagination())
    summary = await service.summary("u1")
    assert [j["job_status"] for j in listed["data"]] == ["paused"]
    assert summary["statusSummary"] == {"paused": 1}


@pytest.mark.anyio
async def test_failed_write_still_clears_cache(service):
    service.cache.set(CacheCategory.BATCH_JOBS, "user:u1:view=list", ["stale"])

    with pytest.raises(JobNotFound):
        await service.toggle_job("u1", "missing")

    assert service.cache.get(CacheCategory.BATCH_JOBS, "user:u1:view=list") is None


@pytest.mark.anyio
async def test_create_spools_inputs_and_submits(service):
    job = await service.create_job("u1", "Spooled", [Upload("a.pdf", b"%PDF-1.4 one"), Upload("b.png", b"png")])

    assert service.dispatcher.submitted == [job.id]
    assert service.spool.read_input(job.id, 2, "b.png") == b"png"
