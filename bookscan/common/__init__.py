"""
Types shared by the extraction components and the job layer.
"""

from .errors import (
    ExtractionError,
    InvalidJobData,
    JobNotFoundError,
    JobTimeoutError,
    PipelineError,
)
from .files import IMAGE_EXTENSIONS, list_image_paths
from .process import ProcessGuard

__all__ = [
    "PipelineError",
    "InvalidJobData",
    "ExtractionError",
    "JobTimeoutError",
    "JobNotFoundError",
    "ProcessGuard",
    "IMAGE_EXTENSIONS",
    "list_image_paths",
]
