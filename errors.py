"""Exceptions raised by the acquisition pipeline"""

from typing import Optional


class PipelineError(Exception):
    """Base exception for the acquisition pipeline"""

    pass


class TransportError(PipelineError):
    """A single outbound request failed (timeout, refused connection or bad status)"""

    TIMEOUT = "timeout"
    REFUSED = "refused"
    BAD_STATUS = "bad_status"

    def __init__(self, kind: str, message: str = "", status_code: Optional[int] = None):
        self.kind = kind
        self.status_code = status_code
        msg = f"Transport error ({kind})"
        if status_code is not None:
            msg += f" HTTP {status_code}"
        if message:
            msg += f": {message}"
        super().__init__(msg)


class QuotaExceededError(PipelineError):
    """Daily request quota has been used up"""

    def __init__(self, limit: int):
        self.limit = limit
        super().__init__(f"Daily request limit exceeded ({limit} requests)")


class FetchCancelled(PipelineError):
    """Fetch was abandoned because its cancel signal was set"""

    pass


class ExtractionFailure(PipelineError):
    """A fetched document could not be turned into a listing record"""

    def __init__(self, message: str, url: Optional[str] = None):
        self.url = url
        if url:
            message = f"{message} ({url})"
        super().__init__(message)


class PersistenceError(PipelineError):
    """A storage operation failed"""

    pass


class ConcurrentJobError(PipelineError):
    """Another single-flight job already holds the slot"""

    def __init__(self, running_kind: Optional[str], requested_kind: Optional[str] = None):
        self.running_kind = running_kind
        self.requested_kind = requested_kind
        msg = "Another scraping job is already running"
        if running_kind:
            msg += f": {running_kind}"
        super().__init__(msg)
