"""
Rotation detection for handheld book recordings.

Phones often store portrait recordings with a rotation flag that the
decoder ignores, so the pages arrive sideways. The detector OCRs one frame
at each cardinal rotation and keeps the orientation Tesseract reads best.
"""

import tempfile
from dataclasses import dataclass
from pathlib import Path
from typing import List, Optional, Union

import structlog

from ..common.errors import ExtractionError
from ..common.process import ProcessGuard
from ..ocr.aggregator import OCRAggregator
from .extractor import FrameExtractor
from .types import SUPPORTED_ROTATIONS

logger = structlog.get_logger(__name__)


@dataclass
class RotationCandidate:
    rotation: int
    confidence: float = 0.0
    text_length: int = 0
    error: Optional[str] = None


class RotationDetector:
    """Picks the rotation of a video that yields the most readable text."""

    def __init__(
        self,
        extractor: FrameExtractor,
        aggregator: OCRAggregator,
        candidates=SUPPORTED_ROTATIONS,
    ):
        self.extractor = extractor
        self.aggregator = aggregator
        self.candidates = tuple(candidates)
        self.logger = logger.bind(component="RotationDetector")

    def detect_best_rotation(
        self, video_path: Union[str, Path], guard: Optional[ProcessGuard] = None
    ) -> int:
        """
        Return the rotation in degrees (0, 90, 180 or 270) to apply.

        Raises:
            ExtractionError: If the video duration cannot be read
        """
        candidates = self.evaluate(video_path, guard=guard)
        best = choose_rotation(candidates)

        self.logger.info(
            "Rotation detected",
            video_path=str(video_path),
            rotation=best.rotation,
            confidence=round(best.confidence, 1),
            text_length=best.text_length,
        )
        return best.rotation

    def evaluate(
        self, video_path: Union[str, Path], guard: Optional[ProcessGuard] = None
    ) -> List[RotationCandidate]:
        """OCR the midpoint frame once per candidate rotation."""
        duration = self.extractor.get_video_duration(video_path)
        midpoint = duration / 2

        results: List[RotationCandidate] = []
        with tempfile.TemporaryDirectory(prefix="bookscan-rotation-") as temp_dir:
            for rotation in self.candidates:
                if guard:
                    guard.check()
                results.append(
                    self._try_rotation(video_path, Path(temp_dir), midpoint, rotation, guard)
                )
        return results

    def _try_rotation(
        self,
        video_path: Union[str, Path],
        temp_dir: Path,
        at_seconds: float,
        rotation: int,
        guard: Optional[ProcessGuard],
    ) -> RotationCandidate:
        frame_path = temp_dir / f"rotation_{rotation}.jpg"
        try:
            self.extractor.extract_single_frame(
                video_path, frame_path, at_seconds, rotation=rotation, guard=guard
            )
            result = self.aggregator.extract_text_from_image(frame_path, guard=guard)
        except ExtractionError as e:
            self.logger.warning(
                "Rotation candidate failed", rotation=rotation, error=str(e)
            )
            return RotationCandidate(rotation=rotation, error=str(e))

        self.logger.debug(
            "Rotation candidate scored",
            rotation=rotation,
            confidence=round(result.confidence, 1),
            text_length=len(result.text),
        )
        return RotationCandidate(
            rotation=rotation,
            confidence=result.confidence,
            text_length=len(result.text),
        )


def choose_rotation(candidates: List[RotationCandidate]) -> RotationCandidate:
    """Highest confidence, then longer text; the first candidate wins full ties."""
    best = candidates[0]
    for candidate in candidates[1:]:
        if (candidate.confidence, candidate.text_length) > (best.confidence, best.text_length):
            best = candidate
    return best
