"""
Video frame handling: extraction, quality scoring and rotation detection.
"""

from .extractor import FrameExtractor, validate_rotation
from .quality import FrameQualityScorer, copy_best_frames
from .rotation import RotationDetector
from .types import (
    SUPPORTED_ROTATIONS,
    BestFramesResult,
    ExtractionResult,
    Frame,
    ScoredFrame,
)

__all__ = [
    "FrameExtractor",
    "FrameQualityScorer",
    "RotationDetector",
    "copy_best_frames",
    "validate_rotation",
    "Frame",
    "ScoredFrame",
    "ExtractionResult",
    "BestFramesResult",
    "SUPPORTED_ROTATIONS",
]
