import asyncio

import pytest

from helpers import ScriptedHandler, wait_until
from pdfbatch.cache.store import CacheCategory, CacheStore
from pdfbatch.errors import StoreError
from pdfbatch.jobs.models import FileStatus, JobStatus
from pdfbatch.jobs.processor import BatchJobProcessor
from pdfbatch.jobs.repository import BatchJobRepository, NewJobFile


def _files(*names):
    return [NewJobFile(file_name=n, file_size=10) for n in names]


def _processor(repository, handler, **kwargs):
    kwargs.setdefault("pause_poll", 0.01)
    return BatchJobProcessor(repository, handler, **kwargs)


@pytest.mark.anyio
async def test_all_files_succeed(repository, handler):
    job = await repository.create_job("u1", "Three", _files("a.pdf", "b.pdf", "c.pdf"))

    await _processor(repository, handler).process(job.id)

    done = await repository.get_job("u1", job.id)
    assert done.job_status == JobStatus.COMPLETED
    assert (done.processed_files, done.failed_files) == (3, 0)
    assert done.started_at is not None and done.completed_at is not None
    assert handler.calls == ["a.pdf", "b.pdf", "c.pdf"]
    assert all(f.processing_status == FileStatus.COMPLETED for f in done.batch_job_files)
    assert all(f.output_name for f in done.batch_job_files)


@pytest.mark.anyio
async def test_all_files_fail(repository, handler):
    job = await repository.create_job("u1", "Two", _files("bad1.pdf", "bad2.pdf"))

    await _processor(repository, handler).process(job.id)

    done = await repository.get_job("u1", job.id)
    assert done.job_status == JobStatus.FAILED
    assert (done.processed_files, done.failed_files) == (0, 2)
    assert all(f.error_message == "forced failure" for f in done.batch_job_files)
    assert all(f.completed_at is not None for f in done.batch_job_files)


@pytest.mark.anyio
async def test_partial_failure_completes(repository, handler):
    job = await repository.create_job("u1", "Mixed", _files("a.pdf", "bad.pdf", "c.pdf"))

    await _processor(repository, handler).process(job.id)

    done = await repository.get_job("u1", job.id)
    assert done.job_status == JobStatus.COMPLETED
    assert (done.processed_files, done.failed_files) == (2, 1)
    assert [f.processing_status for f in done.batch_job_files] == [
        FileStatus.COMPLETED, FileStatus.FAILED, FileStatus.COMPLETED,
    ]


@pytest.mark.anyio
async def test_rerun_on_terminal_job_is_noop(repository, handler):
    job = await repository.create_job("u1", "Once", _files("a.pdf"))
    processor = _processor(repository, handler)

    await processor.process(job.id)
    first = await repository.load(job.id)
    await processor.process(job.id)

    assert handler.calls == ["a.pdf"]
    assert (await repository.load(job.id)).version == first.version


@pytest.mark.anyio
async def test_pause_holds_processing_until_resumed(repository, handler):
    job = await repository.create_job("u1", "Pausable", _files("a.pdf", "b.pdf"))
    handler.gate = asyncio.Event()
    task = asyncio.create_task(_processor(repository, handler).process(job.id))

    await wait_until(lambda: len(handler.calls) == 1)
    await repository.toggle_job("u1", job.id)
    handler.gate.set()

    await wait_until(lambda: not task.done() and len(handler.calls) == 1)
    await asyncio.sleep(0.05)
    paused = await repository.load(job.id)
    assert paused.job_status == JobStatus.PAUSED
    assert paused.processed_files == 1
    assert handler.calls == ["a.pdf"]

    await repository.toggle_job("u1", job.id)
    await asyncio.wait_for(task, timeout=2)

    done = await repository.load(job.id)
    assert done.job_status == JobStatus.COMPLETED
    assert done.processed_files == 2


@pytest.mark.anyio
async def test_cancel_stops_before_next_file(repository, handler):
    job = await repository.create_job("u1", "Cancel me", _files("a.pdf", "b.pdf", "c.pdf"))
    handler.gate = asyncio.Event()
    cancel = asyncio.Event()
    task = asyncio.create_task(_processor(repository, handler).process(job.id, cancel))

    await wait_until(lambda: len(handler.calls) == 1)
    await repository.cancel_job("u1", job.id)
    cancel.set()
    handler.gate.set()
    await asyncio.wait_for(task, timeout=2)

    done = await repository.get_job("u1", job.id)
    assert done.job_status == JobStatus.CANCELLED
    assert handler.calls == ["a.pdf"]
    assert done.processed_files == 0
    assert [f.processing_status for f in done.batch_job_files][1:] == [FileStatus.PENDING, FileStatus.PENDING]


@pytest.mark.anyio
async def test_file_timeout_fails_the_file(repository, handler):
    job = await repository.create_job("u1", "Slow", _files("slow.pdf", "a.pdf"))

    await _processor(repository, handler, file_timeout=0.05).process(job.id)

    done = await repository.get_job("u1", job.id)
    assert done.job_status == JobStatus.COMPLETED
    assert (done.processed_files, done.failed_files) == (1, 1)
    assert "timed out" in done.batch_job_files[0].error_message


@pytest.mark.anyio
async def test_job_timeout_marks_job_failed(repository, handler):
    job = await repository.create_job("u1", "Stuck", _files("slow.pdf", "a.pdf"))

    await _processor(repository, handler, file_timeout=None, job_timeout=0.05).process(job.id)

    done = await repository.get_job("u1", job.id)
    assert done.job_status == JobStatus.FAILED
    assert "time limit" in done.error_message
    assert done.completed_at is not None
    stuck, untouched = done.batch_job_files
    assert stuck.processing_status == FileStatus.FAILED
    assert stuck.error_message == "Job exceeded time limit"
    assert stuck.completed_at is not None
    assert untouched.processing_status == FileStatus.PENDING


class BrokenRepository(BatchJobRepository):
    async def list_files(self, job_id):
        raise RuntimeError("files table unavailable")


@pytest.mark.anyio
async def test_fatal_error_marks_job_failed(memory_store, handler):
    repository = BrokenRepository(memory_store)
    job = await repository.create_job("u1", "Broken", _files("a.pdf"))

    await _processor(repository, handler).process(job.id)

    done = await repository.load(job.id)
    assert done.job_status == JobStatus.FAILED
    assert done.error_message == "RuntimeError: files table unavailable"
    assert handler.calls == []


@pytest.mark.anyio
async def test_resume_skips_terminal_files(repository, handler):
    job = await repository.create_job("u1", "Resumed", _files("a.pdf", "b.pdf", "c.pdf"))
    await repository.mark_running(job.id)
    first = job.batch_job_files[0]
    await repository.update_file(first.id, {"processing_status": FileStatus.COMPLETED.value})
    await repository.record_progress(job.id, 1, 0)
    await repository.update_file(job.batch_job_files[1].id, {"processing_status": FileStatus.PROCESSING.value})

    await _processor(repository, handler).process(job.id)

    done = await repository.load(job.id)
    assert handler.calls == ["b.pdf", "c.pdf"]
    assert done.job_status == JobStatus.COMPLETED
    assert done.processed_files == 3


@pytest.mark.anyio
async def test_progress_invalidates_owner_cache(repository):
    cache = CacheStore()
    cache.set(CacheCategory.BATCH_JOBS, "user:u1:view=list", ["stale"])
    cache.set(CacheCategory.BATCH_JOBS, "user:u2:view=list", ["other"])
    cache.set(CacheCategory.METRICS, "user:u1:view=summary", {"stale": True})
    job = await repository.create_job("u1", "Cached", _files("a.pdf"))

    await _processor(repository, ScriptedHandler(), cache=cache).process(job.id)

    assert cache.get(CacheCategory.BATCH_JOBS, "user:u1:view=list") is None
    assert cache.get(CacheCategory.METRICS, "user:u1:view=summary") is None
    assert cache.get(CacheCategory.BATCH_JOBS, "user:u2:view=list") == ["other"]


class FlakyRepository(BatchJobRepository):
    """The first ``load`` hits a store outage."""

    def __init__(self, store):
        super().__init__(store)
        self.load_calls = 0

    async def load(self, job_id):
        self.load_calls += 1
        if self.load_calls == 1:
            raise StoreError("Record store unavailable")
        return await super().load(job_id)


@pytest.mark.anyio
async def test_transient_load_error_is_retried(memory_store, handler):
    repository = FlakyRepository(memory_store)
    job = await repository.create_job("u1", "Flaky", _files("a.pdf"))

    await _processor(repository, handler, retry_delay=0).process(job.id)

    assert (await repository.load(job.id)).job_status == JobStatus.COMPLETED
    assert handler.calls == ["a.pdf"]


@pytest.mark.anyio
async def test_missing_job_is_not_retried(memory_store, handler):
    repository = FlakyRepository(memory_store)
    repository.load_calls = 1

    await _processor(repository, handler, retry_delay=0).process("no-such-job")

    assert repository.load_calls == 2
    assert handler.calls == []
