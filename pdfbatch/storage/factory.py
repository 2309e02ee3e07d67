"""Pick the record store backend from settings."""

from pdfbatch.config import Settings
from pdfbatch.storage.base import RecordStore
from pdfbatch.storage.memory_store import MemoryRecordStore


def build_record_store(settings: Settings) -> RecordStore:
    if settings.record_store == "memory":
        return MemoryRecordStore()
    if settings.record_store == "supabase":
        from pdfbatch.db.supabase_client import create_service_client
        from pdfbatch.storage.supabase_store import SupabaseRecordStore

        return SupabaseRecordStore(
            create_service_client(settings),
            max_retries=settings.store_max_retries,
            backoff_seconds=settings.store_retry_backoff_seconds,
        )
    raise ValueError(f"Unknown record_store backend: {settings.record_store!r}")
