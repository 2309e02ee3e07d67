"""Filter, search and pagination helpers for job list queries.

Filters are conjunctive; ``search`` is a case-insensitive substring match
over name and description (either may match). Pages are 1-indexed.
"""

import math
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Optional, Sequence

from pdfbatch.storage.base import RecordQuery, RecordStore

DEFAULT_PAGE = 1
DEFAULT_LIMIT = 50
MAX_LIMIT = 100

SEARCH_FIELDS = ("job_name", "description")


@dataclass
class JobFilters:
    status: Optional[str] = None
    priority: Optional[str] = None
    type: Optional[str] = None
    date_from: Optional[datetime] = None
    date_to: Optional[datetime] = None
    search: Optional[str] = None


@dataclass
class Pagination:
    page: int = DEFAULT_PAGE
    limit: int = DEFAULT_LIMIT
    order_by: str = "created_at"
    ascending: bool = False
    # Explicit row offset; overrides the page boundary when set.
    start: Optional[int] = None

    @classmethod
    def from_offset(cls, offset: int, limit: int = DEFAULT_LIMIT) -> "Pagination":
        return cls(page=offset // limit + 1, limit=limit, start=offset)

    @property
    def offset(self) -> int:
        if self.start is not None:
            return self.start
        return (self.page - 1) * self.limit

    @property
    def range_end(self) -> int:
        return self.offset + self.limit - 1


def to_timestamp(value: datetime) -> str:
    """Render a datetime the way timestamps are stored (UTC ISO-8601)."""
    if value.tzinfo is None:
        value = value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc).isoformat()


def apply_filters(query: RecordQuery, filters: JobFilters) -> RecordQuery:
    if filters.status:
        query = query.eq("job_status", filters.status)
    if filters.priority:
        query = query.eq("priority", filters.priority)
    if filters.type:
        query = query.eq("output_format", filters.type)
    if filters.date_from:
        query = query.gte("created_at", to_timestamp(filters.date_from))
    if filters.date_to:
        query = query.lte("created_at", to_timestamp(filters.date_to))
    return apply_search(query, filters.search, SEARCH_FIELDS)


def apply_search(query: RecordQuery, term: Optional[str], fields: Sequence[str]) -> RecordQuery:
    if not term or not term.strip() or not fields:
        return query
    return query.ilike_any(fields, term.strip())


def apply_pagination(query: RecordQuery, pagination: Pagination) -> RecordQuery:
    return query.order(pagination.order_by, ascending=pagination.ascending).range(
        pagination.offset, pagination.range_end
    )


def total_pages(total: int, limit: int) -> int:
    if total <= 0 or limit <= 0:
        return 0
    return math.ceil(total / limit)


async def count_matching(store: RecordStore, table: str, owner_id: str, filters: JobFilters) -> int:
    """Count the owner's rows matching ``filters``, ignoring pagination."""
    query = apply_filters(store.select(table, count=True, head=True).eq("user_id", owner_id), filters)
    result = await query.execute()
    return result.count or 0
