"""Application configuration via environment variables."""

import os
import tempfile
from typing import List

from pydantic_settings import BaseSettings


class Settings(BaseSettings):
    # Supabase
    supabase_url: str = ""
    supabase_service_role_key: str = ""
    supabase_anon_key: str = ""

    # Record store backend: "memory" or "supabase"
    record_store: str = "memory"

    # HTTP
    port: int = 8000
    log_level: str = "INFO"
    cors_origins: List[str] = ["http://localhost:5173", "http://localhost:3000"]

    # Upload spool
    upload_dir: str = os.path.join(tempfile.gettempdir(), "pdfbatch_jobs")
    job_result_ttl_hours: int = 24
    max_files_per_job: int = 100
    max_file_bytes: int = 50 * 1024 * 1024

    # Job processing
    max_concurrent_jobs: int = 2
    file_timeout_seconds: float = 120.0
    job_timeout_seconds: float = 3600.0
    pause_poll_seconds: float = 1.0
    resume_jobs_on_startup: bool = True

    # Store retries (transient network errors only)
    store_max_retries: int = 3
    store_retry_backoff_seconds: float = 0.25

    # Cache
    cache_sweep_seconds: float = 60.0

    model_config = {"env_file": ".env", "env_file_encoding": "utf-8"}


settings = Settings()
