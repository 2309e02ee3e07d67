"""Shared test doubles."""

import asyncio
from typing import Callable, List, Optional

from pdfbatch.jobs.handlers import FileHandler, UnprocessableFile


class ScriptedHandler(FileHandler):
    """Fake unit of work driven by file names.

    ``bad`` in the name fails the file, ``slow`` makes it hang. An optional
    ``gate`` event holds every file until it is set.
    """

    def __init__(self):
        self.calls: List[str] = []
        self.gate: Optional[asyncio.Event] = None
        self.spool = None

    async def handle(self, job, job_file) -> str:
        self.calls.append(job_file.file_name)
        if self.gate is not None:
            await self.gate.wait()
        if "slow" in job_file.file_name:
            await asyncio.sleep(30)
        if "bad" in job_file.file_name:
            raise UnprocessableFile("forced failure")
        out_name = f"{job_file.file_order:04d}_out.pdf"
        if self.spool is not None:
            with open(self.spool.output_path(job.id, out_name), "wb") as dst:
                dst.write(b"%PDF-1.4 processed")
        return out_name


async def wait_until(predicate: Callable[[], bool], timeout: float = 2.0) -> None:
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not reached in time")
        await asyncio.sleep(0.005)
