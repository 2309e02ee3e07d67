"""Job dispatcher interface."""

from abc import ABC, abstractmethod


class JobDispatcher(ABC):
    """Abstract interface for running batch jobs in the background."""

    @abstractmethod
    async def submit(self, job_id: str) -> bool:
        """Queue a job for processing. Returns False if it is already queued or running."""
        ...

    @abstractmethod
    def cancel(self, job_id: str) -> None:
        """Signal a queued or running job to stop before its next file."""
        ...

    @abstractmethod
    async def start(self) -> None:
        """Start the dispatcher (e.g., start worker loop)."""
        ...

    @abstractmethod
    async def stop(self) -> None:
        """Stop the dispatcher gracefully."""
        ...
