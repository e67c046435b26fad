from .config import Settings, get_settings
from .jobs import (
    ImageBatch,
    Job,
    JobKind,
    JobPayload,
    JobState,
    PageArchive,
    SingleImage,
    VideoSource,
    build_payload,
)

__all__ = [
    "Settings",
    "get_settings",
    "Job",
    "JobKind",
    "JobState",
    "JobPayload",
    "SingleImage",
    "ImageBatch",
    "VideoSource",
    "PageArchive",
    "build_payload",
]
