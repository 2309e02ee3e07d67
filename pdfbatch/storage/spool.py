"""On-disk spool for uploaded inputs and produced outputs, with TTL cleanup."""

import logging
import os
import re
import shutil
import time

logger = logging.getLogger(__name__)

_UNSAFE = re.compile(r"[^A-Za-z0-9._-]+")


def safe_name(name: str) -> str:
    """Flatten a client-supplied file name into a single safe path component."""
    base = os.path.basename(name.replace("\\", "/"))
    cleaned = _UNSAFE.sub("_", base).strip("._")
    return cleaned or "file"


class JobSpool:
    """Manages per-job directories holding input and output files."""

    def __init__(self, base_dir: str, ttl_hours: int = 24):
        self._base_dir = base_dir
        os.makedirs(self._base_dir, exist_ok=True)
        self._ttl_seconds = ttl_hours * 3600

    def get_job_dir(self, job_id: str) -> str:
        """Get or create directory for a job's files."""
        job_dir = os.path.join(self._base_dir, safe_name(job_id))
        os.makedirs(os.path.join(job_dir, "inputs"), exist_ok=True)
        os.makedirs(os.path.join(job_dir, "outputs"), exist_ok=True)
        return job_dir

    def input_path(self, job_id: str, file_order: int, file_name: str) -> str:
        return os.path.join(self.get_job_dir(job_id), "inputs", f"{file_order:04d}_{safe_name(file_name)}")

    def output_path(self, job_id: str, file_name: str) -> str:
        return os.path.join(self.get_job_dir(job_id), "outputs", safe_name(file_name))

    def write_input(self, job_id: str, file_order: int, file_name: str, data: bytes) -> str:
        path = self.input_path(job_id, file_order, file_name)
        with open(path, "wb") as dst:
            dst.write(data)
        return path

    def read_input(self, job_id: str, file_order: int, file_name: str) -> bytes:
        with open(self.input_path(job_id, file_order, file_name), "rb") as src:
            return src.read()

    def output_exists(self, job_id: str, file_name: str) -> bool:
        return os.path.isfile(self.output_path(job_id, file_name))

    def cleanup_expired(self) -> int:
        """Remove job directories older than TTL. Returns count of removed dirs."""
        now = time.time()
        removed = 0
        if not os.path.exists(self._base_dir):
            return 0
        for entry in os.listdir(self._base_dir):
            job_dir = os.path.join(self._base_dir, entry)
            if not os.path.isdir(job_dir):
                continue
            if now - os.path.getmtime(job_dir) > self._ttl_seconds:
                shutil.rmtree(job_dir, ignore_errors=True)
                removed += 1
        if removed:
            logger.info("Removed %d expired job directories", removed)
        return removed
