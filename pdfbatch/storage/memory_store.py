"""In-process record store for local development and tests."""

import asyncio
import copy
import uuid
from typing import Any, Callable, Dict, List, Optional, Sequence

from pdfbatch.storage.base import QueryResult, RecordQuery, RecordStore, Row


class MemoryQuery(RecordQuery):
    def __init__(self, store: "MemoryRecordStore", table: str, count: bool, head: bool):
        self._store = store
        self._table = table
        self._count = count
        self._head = head
        self._predicates: List[Callable[[Row], bool]] = []
        self._order: List[tuple] = []
        self._range: Optional[tuple] = None

    def eq(self, column: str, value: Any) -> "MemoryQuery":
        self._predicates.append(lambda r: r.get(column) == value)
        return self

    def in_(self, column: str, values: Sequence[Any]) -> "MemoryQuery":
        allowed = list(values)
        self._predicates.append(lambda r: r.get(column) in allowed)
        return self

    def gte(self, column: str, value: Any) -> "MemoryQuery":
        self._predicates.append(lambda r: r.get(column) is not None and r[column] >= value)
        return self

    def lte(self, column: str, value: Any) -> "MemoryQuery":
        self._predicates.append(lambda r: r.get(column) is not None and r[column] <= value)
        return self

    def ilike_any(self, columns: Sequence[str], term: str) -> "MemoryQuery":
        needle = term.lower()
        cols = list(columns)
        self._predicates.append(
            lambda r: any(needle in str(r.get(c) or "").lower() for c in cols)
        )
        return self

    def order(self, column: str, ascending: bool = True) -> "MemoryQuery":
        self._order.append((column, ascending))
        return self

    def range(self, start: int, end: int) -> "MemoryQuery":
        self._range = (start, end)
        return self

    async def execute(self) -> QueryResult:
        async with self._store.lock:
            rows = [r for r in self._store.tables.get(self._table, []) if all(p(r) for p in self._predicates)]
            rows = copy.deepcopy(rows)

        # Apply sort keys last-to-first so the first order() call dominates.
        for column, ascending in reversed(self._order):
            present = [r for r in rows if r.get(column) is not None]
            missing = [r for r in rows if r.get(column) is None]
            present.sort(key=lambda r: r[column], reverse=not ascending)
            rows = present + missing

        total = len(rows) if self._count else None
        if self._range is not None:
            start, end = self._range
            rows = rows[start:end + 1]
        if self._head:
            rows = []
        return QueryResult(data=rows, count=total)


class MemoryRecordStore(RecordStore):
    """Dict-of-lists store. Rows get a uuid ``id`` when none is supplied."""

    def __init__(self):
        self.tables: Dict[str, List[Row]] = {}
        self.lock = asyncio.Lock()

    def select(self, table: str, count: bool = False, head: bool = False) -> MemoryQuery:
        return MemoryQuery(self, table, count, head)

    async def insert(self, table: str, rows: List[Row]) -> List[Row]:
        stored = []
        async with self.lock:
            target = self.tables.setdefault(table, [])
            for row in rows:
                row = copy.deepcopy(row)
                row.setdefault("id", str(uuid.uuid4()))
                target.append(row)
                stored.append(copy.deepcopy(row))
        return stored

    async def update(self, table: str, values: Row, match: Row) -> List[Row]:
        updated = []
        async with self.lock:
            for row in self.tables.get(table, []):
                if all(row.get(k) == v for k, v in match.items()):
                    row.update(copy.deepcopy(values))
                    updated.append(copy.deepcopy(row))
        return updated
