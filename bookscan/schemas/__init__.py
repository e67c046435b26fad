from .job import (
    ArchiveResult,
    BatchResult,
    ChaptersResult,
    JobStatusResponse,
    JobSubmission,
    PerImageResult,
    QueueStats,
    SingleImageResult,
    VideoResult,
)

__all__ = [
    "JobSubmission",
    "JobStatusResponse",
    "QueueStats",
    "PerImageResult",
    "SingleImageResult",
    "BatchResult",
    "ChaptersResult",
    "VideoResult",
    "ArchiveResult",
]
