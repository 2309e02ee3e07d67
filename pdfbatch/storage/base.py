"""Record store interface: per-table insert, update, filtered select and count.

Two backends implement it: ``MemoryRecordStore`` for local development and
tests, and ``SupabaseRecordStore`` for the hosted Postgres API. The query
object mirrors the subset of the PostgREST builder the repository needs, so
filter/pagination helpers compose against either backend.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

Row = Dict[str, Any]


@dataclass
class QueryResult:
    data: List[Row] = field(default_factory=list)
    count: Optional[int] = None


class RecordQuery(ABC):
    """Chainable select query. Every filter narrows the result (AND)."""

    @abstractmethod
    def eq(self, column: str, value: Any) -> "RecordQuery":
        ...

    @abstractmethod
    def in_(self, column: str, values: Sequence[Any]) -> "RecordQuery":
        ...

    @abstractmethod
    def gte(self, column: str, value: Any) -> "RecordQuery":
        ...

    @abstractmethod
    def lte(self, column: str, value: Any) -> "RecordQuery":
        ...

    @abstractmethod
    def ilike_any(self, columns: Sequence[str], term: str) -> "RecordQuery":
        """Case-insensitive substring match on any of ``columns`` (OR)."""
        ...

    @abstractmethod
    def order(self, column: str, ascending: bool = True) -> "RecordQuery":
        ...

    @abstractmethod
    def range(self, start: int, end: int) -> "RecordQuery":
        """Restrict to rows ``start``..``end`` inclusive, zero-based."""
        ...

    @abstractmethod
    async def execute(self) -> QueryResult:
        ...


class RecordStore(ABC):
    """Row-oriented backing store."""

    @abstractmethod
    def select(self, table: str, count: bool = False, head: bool = False) -> RecordQuery:
        """Start a query. ``count`` requests an exact row count of the
        filtered (unpaginated) set; ``head`` skips returning rows."""
        ...

    @abstractmethod
    async def insert(self, table: str, rows: List[Row]) -> List[Row]:
        """Insert rows and return them as stored."""
        ...

    @abstractmethod
    async def update(self, table: str, values: Row, match: Row) -> List[Row]:
        """Update rows equal to every item of ``match``; return updated rows.

        A stale value in ``match`` (e.g. an old ``version``) updates nothing,
        which callers use as a compare-and-swap.
        """
        ...

    async def close(self) -> None:
        return None
