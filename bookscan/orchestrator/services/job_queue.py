"""
Job queue front end: submission, status polling and statistics.

Submissions are validated before anything reaches the store, so a
malformed request never occupies a worker slot.
"""

from typing import Any, Optional, Union

import structlog

from bookscan.common.errors import JobNotFoundError
from bookscan.orchestrator.core.config import Settings
from bookscan.orchestrator.core.jobs import (
    Job,
    JobKind,
    JobPayload,
    build_payload,
    validate_payload,
)
from bookscan.orchestrator.core.logging import log_job_event
from bookscan.orchestrator.services.job_store import JobStore
from bookscan.schemas.job import JobStatusResponse, QueueStats

logger = structlog.get_logger(__name__)


class JobQueue:
    """Enqueue side of one named channel."""

    def __init__(self, store: JobStore, settings: Settings, channel: Optional[str] = None):
        self.store = store
        self.settings = settings
        self.channel = channel or settings.queue_name
        self._closed = False
        self.logger = logger.bind(component="JobQueue", channel=self.channel)

    async def submit(
        self,
        kind: Union[JobKind, str],
        payload: Any,
        language: Optional[str] = None,
    ) -> str:
        """
        Validate and enqueue a job.

        Args:
            kind: ``single``, ``batch`` or ``video``
            payload: Mapping with the fields of the payload kind
            language: OCR language hint, defaults to the configured language

        Returns:
            Job ID

        Raises:
            InvalidJobData: If the kind is unknown or the payload is malformed
        """
        return await self.enqueue(build_payload(kind, payload), language=language)

    async def enqueue(self, payload: JobPayload, language: Optional[str] = None) -> str:
        """Enqueue an already built payload."""
        if self._closed:
            raise RuntimeError("Job queue is closed")

        validate_payload(payload)
        job = Job.new(
            payload,
            channel=self.channel,
            language=language or self.settings.default_language,
            max_attempts=self.settings.max_attempts,
        )
        await self.store.add(job)

        log_job_event(
            self.logger,
            "Job enqueued",
            job.id,
            kind=job.kind.value,
            language=job.language,
        )
        return job.id

    async def get_job(self, job_id: str) -> Job:
        job = await self.store.get(job_id)
        if job is None or job.channel != self.channel:
            raise JobNotFoundError(job_id)
        return job

    async def get_status(self, job_id: str) -> JobStatusResponse:
        """
        Current state of a job.

        Raises:
            JobNotFoundError: If the id is unknown or its record was evicted
        """
        return JobStatusResponse.from_job(await self.get_job(job_id))

    async def get_stats(self) -> QueueStats:
        counts = await self.store.counts(self.channel)
        return QueueStats(channel=self.channel, **counts)

    async def close(self) -> None:
        """Stop accepting submissions and release the store; safe to repeat."""
        if self._closed:
            return
        self._closed = True
        await self.store.close()
        self.logger.info("Job queue closed")
