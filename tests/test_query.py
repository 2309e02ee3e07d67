from datetime import datetime, timezone

import pytest

from pdfbatch.storage.memory_store import MemoryRecordStore
from pdfbatch.storage.query import (
    JobFilters,
    Pagination,
    apply_filters,
    apply_pagination,
    count_matching,
    total_pages,
)


def _row(n, **extra):
    row = {
        "id": f"job-{n}",
        "user_id": "u1",
        "job_name": f"Job {n}",
        "description": "",
        "job_status": "pending",
        "priority": "medium",
        "output_format": "pdf",
        "created_at": datetime(2024, 1, n, tzinfo=timezone.utc).isoformat(),
    }
    row.update(extra)
    return row


async def _store_with(rows):
    store = MemoryRecordStore()
    await store.insert("batch_jobs", rows)
    return store


async def _page(store, filters, pagination):
    query = apply_filters(store.select("batch_jobs", count=True).eq("user_id", "u1"), filters)
    return await apply_pagination(query, pagination).execute()


@pytest.mark.anyio
@pytest.mark.parametrize("total,page,limit", [(0, 1, 10), (7, 1, 3), (7, 3, 3), (7, 4, 3), (10, 2, 5)])
async def test_page_sizes(total, page, limit):
    store = await _store_with([_row(n) for n in range(1, total + 1)])
    result = await _page(store, JobFilters(), Pagination(page=page, limit=limit))

    assert len(result.data) == min(limit, max(0, total - (page - 1) * limit))
    assert result.count == total
    assert total_pages(result.count, limit) == -(-total // limit)


@pytest.mark.anyio
async def test_default_order_is_newest_first():
    store = await _store_with([_row(n) for n in (3, 1, 2)])
    result = await _page(store, JobFilters(), Pagination())
    assert [r["id"] for r in result.data] == ["job-3", "job-2", "job-1"]


@pytest.mark.anyio
async def test_filters_are_conjunctive():
    store = await _store_with([
        _row(1, job_status="running", priority="high"),
        _row(2, job_status="running", priority="low"),
        _row(3, job_status="pending", priority="high"),
    ])
    result = await _page(store, JobFilters(status="running", priority="high"), Pagination())
    assert [r["id"] for r in result.data] == ["job-1"]


@pytest.mark.anyio
async def test_search_matches_name_or_description_case_insensitively():
    store = await _store_with([
        _row(1, job_name="Lote_Test"),
        _row(2, description="segundo LOTE de facturas"),
        _row(3, job_name="Other"),
    ])
    result = await _page(store, JobFilters(search="lote"), Pagination())
    assert {r["id"] for r in result.data} == {"job-1", "job-2"}

    result = await _page(store, JobFilters(search="NoMatch"), Pagination())
    assert result.data == []


@pytest.mark.anyio
async def test_date_range_and_count_query():
    store = await _store_with([_row(n) for n in range(1, 6)])
    filters = JobFilters(
        date_from=datetime(2024, 1, 2),
        date_to=datetime(2024, 1, 4, tzinfo=timezone.utc),
    )
    result = await _page(store, filters, Pagination())
    assert {r["id"] for r in result.data} == {"job-2", "job-3", "job-4"}
    assert await count_matching(store, "batch_jobs", "u1", filters) == 3
    assert await count_matching(store, "batch_jobs", "other", filters) == 0


def test_total_pages_edges():
    assert total_pages(0, 50) == 0
    assert total_pages(50, 50) == 1
    assert total_pages(51, 50) == 2


@pytest.mark.anyio
async def test_explicit_offset_is_not_rounded_to_a_page():
    store = await _store_with([_row(n) for n in range(1, 8)])
    pagination = Pagination.from_offset(5, limit=3)

    result = await _page(store, JobFilters(), pagination)

    assert pagination.page == 2
    assert [r["id"] for r in result.data] == ["job-2", "job-1"]
