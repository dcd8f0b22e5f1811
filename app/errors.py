"""Domain exception hierarchy for the jobs service.

Services and repos raise these instead of bare ``ValueError`` so that the
global exception handler can map them to the correct HTTP status code
without fragile string matching.
"""


class JobsError(Exception):
    """Base for all domain exceptions."""

    def __init__(self, message: str = "An unexpected error occurred", *, status_code: int = 500):
        super().__init__(message)
        self.status_code = status_code


class NotFoundError(JobsError):
    """Job or result not found (404)."""

    def __init__(self, message: str = "Not found"):
        super().__init__(message, status_code=404)


class BadRequestError(JobsError):
    """Client sent an invalid request (400)."""

    def __init__(self, message: str = "Bad request"):
        super().__init__(message, status_code=400)


class ConflictError(JobsError):
    """The job is already running (409)."""

    def __init__(self, message: str = "Conflict"):
        super().__init__(message, status_code=409)


class CorruptStoreError(JobsError):
    """A storage file exists but cannot be parsed (500).

    Writes refuse to proceed so the unreadable file is never overwritten.
    """

    def __init__(self, path: object):
        super().__init__(
            f"Storage file {path} is corrupt; repair or move it aside before saving again",
        )
        self.path = path


def format_error_response(
    *,
    error: str,
    detail: object = None,
    request_id: str = "",
) -> dict:
    """Build a structured error response dict.

    Returns
    -------
    dict
        ``{"error": ..., "detail": ..., "request_id": ...}``
    """
    return {
        "error": error,
        "detail": detail if detail is not None else error,
        "request_id": request_id,
    }
