"""
Type definitions for frame extraction and frame quality scoring.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional


SUPPORTED_ROTATIONS = (0, 90, 180, 270)


@dataclass
class Frame:
    """One sampled still image."""

    path: str
    timestamp_seconds: float
    quality_score: Optional[float] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "timestamp_seconds": self.timestamp_seconds,
            "quality_score": self.quality_score,
        }


@dataclass
class ScoredFrame:
    """Quality measurements for a single frame."""

    path: str
    timestamp_seconds: float
    sharpness: float
    brightness: float
    contrast: float
    overall_score: float

    def to_frame(self) -> Frame:
        return Frame(
            path=self.path,
            timestamp_seconds=self.timestamp_seconds,
            quality_score=self.overall_score,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "path": self.path,
            "timestamp_seconds": self.timestamp_seconds,
            "sharpness": self.sharpness,
            "brightness": self.brightness,
            "contrast": self.contrast,
            "overall_score": self.overall_score,
        }


@dataclass
class ExtractionResult:
    """Frames written by one extraction run, in temporal order."""

    frames: List[Frame] = field(default_factory=list)

    @property
    def frame_count(self) -> int:
        return len(self.frames)


@dataclass
class BestFramesResult:
    """Outcome of best-per-window frame selection."""

    best_frames: List[Frame]
    all_scores: List[ScoredFrame]
    window_count: int = 0

    @property
    def selected_paths(self) -> List[str]:
        return [frame.path for frame in self.best_frames]

    @property
    def average_best_score(self) -> float:
        if not self.best_frames:
            return 0.0
        return sum(f.quality_score or 0.0 for f in self.best_frames) / len(
            self.best_frames
        )
