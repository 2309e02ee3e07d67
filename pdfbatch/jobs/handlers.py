"""Per-file unit of work: turn one uploaded input into the job's output format."""

import asyncio
import io
import os
from abc import ABC, abstractmethod
from typing import List

from PIL import Image

from pdfbatch.jobs.models import BatchJob, BatchJobFile, OutputFormat
from pdfbatch.storage.spool import JobSpool, safe_name

IMAGE_TYPES = frozenset({"png", "jpg", "jpeg", "bmp", "gif", "tif", "tiff", "webp"})

_EXTENSIONS = {
    OutputFormat.PDF: "pdf",
    OutputFormat.PNG: "png",
    OutputFormat.JPEG: "jpg",
}


class UnprocessableFile(Exception):
    """The input cannot be turned into the requested output."""


class FileHandler(ABC):
    """Processes a single job file. Raises on failure; returns the output name."""

    @abstractmethod
    async def handle(self, job: BatchJob, job_file: BatchJobFile) -> str:
        ...


def output_name_for(job_file: BatchJobFile, output_format: OutputFormat) -> str:
    stem = os.path.splitext(safe_name(job_file.file_name))[0] or "file"
    return f"{job_file.file_order:04d}_{stem}.{_EXTENSIONS[output_format]}"


class PillowFileHandler(FileHandler):
    """Converts images with Pillow; validates and passes PDFs through.

    Conversion is CPU bound, so it runs in the default thread executor.
    """

    def __init__(self, spool: JobSpool):
        self._spool = spool

    async def handle(self, job: BatchJob, job_file: BatchJobFile) -> str:
        try:
            data = self._spool.read_input(job.id, job_file.file_order, job_file.file_name)
        except FileNotFoundError:
            raise UnprocessableFile("Input file is no longer available") from None

        loop = asyncio.get_running_loop()
        return await loop.run_in_executor(None, self._convert, job, job_file, data)

    def _convert(self, job: BatchJob, job_file: BatchJobFile, data: bytes) -> str:
        output_format = job.output_format
        out_name = output_name_for(job_file, output_format)
        out_path = self._spool.output_path(job.id, out_name)
        file_type = job_file.file_type.lower()

        if file_type == "pdf":
            if not data.startswith(b"%PDF-"):
                raise UnprocessableFile("Not a valid PDF document")
            if output_format != OutputFormat.PDF:
                raise UnprocessableFile(f"Converting PDF to {output_format.value} is not supported")
            with open(out_path, "wb") as dst:
                dst.write(data)
            return out_name

        if file_type not in IMAGE_TYPES:
            raise UnprocessableFile(f"Unsupported file type '.{file_type}'")

        config = job.config
        try:
            with Image.open(io.BytesIO(data)) as img:
                frames = self._frames(img, grayscale=config.grayscale)
        except (OSError, Image.DecompressionBombError) as exc:
            raise UnprocessableFile(f"Could not read image: {exc}") from exc

        first, rest = frames[0], frames[1:]
        if output_format == OutputFormat.PDF:
            first.save(out_path, "PDF", resolution=config.resolution, save_all=True, append_images=rest)
        elif output_format == OutputFormat.PNG:
            first.save(out_path, "PNG")
        else:
            first.save(out_path, "JPEG", quality=config.quality)
        return out_name

    @staticmethod
    def _frames(img: Image.Image, grayscale: bool) -> List[Image.Image]:
        mode = "L" if grayscale else "RGB"
        frames = []
        for index in range(getattr(img, "n_frames", 1)):
            img.seek(index)
            frames.append(img.convert(mode))
        return frames
