"""Record store backed by the Supabase (PostgREST) table API.

The supabase client is synchronous, so every ``execute()`` runs in the
default thread executor to keep the event loop free. Network-level failures
(``httpx.TransportError``) are retried with exponential backoff; anything
else the client raises is a query error and surfaces as ``StoreError``.
"""

import asyncio
import logging
from typing import Any, Callable, List, Sequence

import httpx
from supabase import Client

from pdfbatch.errors import StoreError
from pdfbatch.storage.base import QueryResult, RecordQuery, RecordStore, Row

logger = logging.getLogger(__name__)

# Characters with meaning inside a PostgREST or=() filter
_RESERVED = str.maketrans({",": " ", "(": " ", ")": " ", '"': " "})


class SupabaseQuery(RecordQuery):
    def __init__(self, store: "SupabaseRecordStore", table: str, builder: Any):
        self._store = store
        self._table = table
        self._builder = builder

    def eq(self, column: str, value: Any) -> "SupabaseQuery":
        self._builder = self._builder.eq(column, value)
        return self

    def in_(self, column: str, values: Sequence[Any]) -> "SupabaseQuery":
        self._builder = self._builder.in_(column, list(values))
        return self

    def gte(self, column: str, value: Any) -> "SupabaseQuery":
        self._builder = self._builder.gte(column, value)
        return self

    def lte(self, column: str, value: Any) -> "SupabaseQuery":
        self._builder = self._builder.lte(column, value)
        return self

    def ilike_any(self, columns: Sequence[str], term: str) -> "SupabaseQuery":
        safe = term.translate(_RESERVED).strip()
        if safe:
            self._builder = self._builder.or_(
                ",".join(f"{c}.ilike.%{safe}%" for c in columns)
            )
        return self

    def order(self, column: str, ascending: bool = True) -> "SupabaseQuery":
        self._builder = self._builder.order(column, desc=not ascending)
        return self

    def range(self, start: int, end: int) -> "SupabaseQuery":
        self._builder = self._builder.range(start, end)
        return self

    async def execute(self) -> QueryResult:
        response = await self._store.run(f"select {self._table}", self._builder.execute)
        return QueryResult(data=list(response.data or []), count=response.count)


class SupabaseRecordStore(RecordStore):
    def __init__(self, client: Client, max_retries: int = 3, backoff_seconds: float = 0.25):
        self._client = client
        self._max_retries = max_retries
        self._backoff = backoff_seconds

    async def run(self, what: str, call: Callable[[], Any]) -> Any:
        """Run a blocking client call off the event loop, retrying transient errors."""
        loop = asyncio.get_running_loop()
        attempt = 0
        while True:
            try:
                return await loop.run_in_executor(None, call)
            except httpx.TransportError as exc:
                if attempt >= self._max_retries:
                    logger.error("Store %s failed after %d retries: %s", what, attempt, exc)
                    raise StoreError(f"Record store unavailable: {exc}") from exc
                delay = self._backoff * (2 ** attempt)
                attempt += 1
                logger.warning("Store %s transient error (%s), retry %d in %.2fs", what, exc, attempt, delay)
                await asyncio.sleep(delay)
            except Exception as exc:
                logger.error("Store %s failed: %s", what, exc)
                raise StoreError(f"Record store error: {exc}") from exc

    def select(self, table: str, count: bool = False, head: bool = False) -> SupabaseQuery:
        builder = self._client.table(table).select(
            "*", count="exact" if count else None, head=head or None
        )
        return SupabaseQuery(self, table, builder)

    async def insert(self, table: str, rows: List[Row]) -> List[Row]:
        builder = self._client.table(table).insert(rows)
        response = await self.run(f"insert {table}", builder.execute)
        return list(response.data or [])

    async def update(self, table: str, values: Row, match: Row) -> List[Row]:
        builder = self._client.table(table).update(values)
        for column, value in match.items():
            builder = builder.eq(column, value)
        response = await self.run(f"update {table}", builder.execute)
        return list(response.data or [])
