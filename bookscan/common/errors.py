"""
Error taxonomy shared by the extraction components and the job layer.

Only these types ever reach a job's ``failure_reason``; heuristic
uncertainty (low confidence, page gaps, ambiguous headings) is reported
as data and never raised.
"""

from typing import Optional


class PipelineError(Exception):
    """Base exception for media-to-text pipeline errors."""

    retryable = True

    def __init__(self, message: str, source: Optional[str] = None):
        self.source = source
        super().__init__(message)

    def describe(self) -> str:
        """Render as the ``failure_reason`` string exposed to callers."""
        return f"{type(self).__name__}: {self}"


class InvalidJobData(PipelineError):
    """Malformed job request. Rejected before dispatch and never retried."""

    retryable = False


class ExtractionError(PipelineError):
    """Unreadable source, decoder failure or unavailable OCR primitive."""


class JobTimeoutError(PipelineError, TimeoutError):
    """Job execution exceeded its wall-clock bound."""


class JobNotFoundError(PipelineError, LookupError):
    """No job with the requested id exists on the channel."""

    retryable = False

    def __init__(self, job_id: str):
        self.job_id = job_id
        super().__init__(f"Job not found: {job_id}")
