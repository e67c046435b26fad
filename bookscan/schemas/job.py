from datetime import datetime
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, Field

from bookscan.orchestrator.core.jobs import Job, JobKind, JobState


class JobSubmission(BaseModel):
    kind: JobKind
    payload: Dict[str, Any]
    language: Optional[str] = None


class PerImageResult(BaseModel):
    text: str
    confidence: float = Field(ge=0, le=100)
    image_path: str


class SingleImageResult(PerImageResult):
    pass


class BatchResult(BaseModel):
    per_image: List[PerImageResult]
    combined_text: str
    average_confidence: float = Field(ge=0, le=100)


class ChapterSummary(BaseModel):
    chapter_number: int
    title: str
    text: str
    page_start: Optional[int] = None
    page_end: Optional[int] = None


class ChaptersResult(BaseModel):
    has_chapters: bool
    total_chapters: int
    page_range: Optional[Dict[str, int]] = None
    pages: List[int] = []
    page_gaps: List[Dict[str, int]] = []
    uncertain_chapters: List[Dict[str, Any]] = []
    chapters: List[ChapterSummary]


class VideoResult(BatchResult):
    rotation: int
    frames_extracted: int
    frames_selected: int
    chapters: ChaptersResult


class ArchiveResult(BatchResult):
    total_images: int
    heic_converted: int = 0
    chapters: ChaptersResult


class JobStatusResponse(BaseModel):
    job_id: str
    kind: JobKind
    state: JobState
    channel: str
    language: str
    progress: int = 0
    attempts: int = 0
    max_attempts: int
    result: Optional[Dict[str, Any]] = None
    failure_reason: Optional[str] = None
    worker_id: Optional[str] = None
    created_at: datetime
    started_at: Optional[datetime] = None
    finished_at: Optional[datetime] = None

    @classmethod
    def from_job(cls, job: Job) -> "JobStatusResponse":
        return cls(
            job_id=job.id,
            kind=job.kind,
            state=job.state,
            channel=job.channel,
            language=job.language,
            progress=job.progress,
            attempts=job.attempts,
            max_attempts=job.max_attempts,
            result=job.result if job.state == JobState.COMPLETED else None,
            failure_reason=job.failure_reason if job.state == JobState.FAILED else None,
            worker_id=job.worker_id,
            created_at=job.created_at,
            started_at=job.started_at,
            finished_at=job.finished_at,
        )


class QueueStats(BaseModel):
    channel: str
    waiting: int = 0
    active: int = 0
    delayed: int = 0
    completed: int = 0
    failed: int = 0
