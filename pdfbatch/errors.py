"""Domain exceptions raised by the repository, processor and routes.

Each exception carries the HTTP status the API layer answers with, so the
route handlers can stay free of try/except boilerplate.
"""


class BatchJobError(Exception):
    """Base class for all batch-job errors."""

    status_code = 500

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationFailed(BatchJobError):
    status_code = 400


class InvalidTransition(BatchJobError):
    """A state-machine guard rejected the requested change."""

    status_code = 400


class JobNotFound(BatchJobError):
    """Job does not exist, or belongs to another user."""

    status_code = 404

    def __init__(self, job_id: str):
        super().__init__("Batch job not found")
        self.job_id = job_id


class ConcurrentUpdate(BatchJobError):
    """Optimistic version check kept losing against another writer."""

    status_code = 409


class StoreError(BatchJobError):
    """The backing record store failed."""

    status_code = 500
