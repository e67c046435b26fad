"""
Frame quality scoring and best-frame-per-window selection.

A camera sweeping over book pages produces many near-duplicate frames per
page, most of them blurred by motion. Scoring every frame and keeping the
sharpest one of each time window gives OCR one clear image per page.
"""

import math
import shutil
from pathlib import Path
from typing import List, Optional, Union

import cv2
import numpy as np
import structlog

from ..common.errors import ExtractionError, InvalidJobData
from ..common.files import list_image_paths
from .types import BestFramesResult, Frame, ScoredFrame

logger = structlog.get_logger(__name__)

PathLike = Union[str, Path]

MID_GREY = 128.0


class FrameQualityScorer:
    """
    Scores frames by sharpness, exposure and contrast.

    Sharpness is the variance of the Laplacian of the greyscale image, so
    the score grows with fine detail; it is normalised and capped, then
    damped for badly exposed frames and boosted by contrast, which is what
    separates printed text from the page.
    """

    def __init__(
        self,
        sharpness_scale: float = 1000.0,
        sharpness_cap: float = 5.0,
        brightness_weight: float = 0.3,
        contrast_weight: float = 0.2,
    ):
        self.sharpness_scale = sharpness_scale
        self.sharpness_cap = sharpness_cap
        self.brightness_weight = brightness_weight
        self.contrast_weight = contrast_weight
        self.logger = logger.bind(component="FrameQualityScorer")

    def score_frame(self, frame_path: PathLike, timestamp_seconds: float = 0.0) -> ScoredFrame:
        """
        Score a single frame.

        Raises:
            ExtractionError: If the image cannot be read
        """
        gray = cv2.imread(str(frame_path), cv2.IMREAD_GRAYSCALE)
        if gray is None:
            raise ExtractionError(
                f"Could not read frame image: {frame_path}", source=str(frame_path)
            )

        pixels = gray.astype(np.float64)
        sharpness = float(cv2.Laplacian(pixels, cv2.CV_64F).var())
        brightness = float(pixels.mean())
        contrast = float(pixels.std())

        return ScoredFrame(
            path=str(frame_path),
            timestamp_seconds=timestamp_seconds,
            sharpness=sharpness,
            brightness=brightness,
            contrast=contrast,
            overall_score=self.combine(sharpness, brightness, contrast),
        )

    def combine(self, sharpness: float, brightness: float, contrast: float) -> float:
        """Fold the raw measurements into one comparable score."""
        normalized_sharpness = min(sharpness / self.sharpness_scale, self.sharpness_cap)
        brightness_penalty = abs(brightness - MID_GREY) / MID_GREY
        contrast_bonus = contrast / MID_GREY

        return (
            normalized_sharpness
            * (1 - brightness_penalty * self.brightness_weight)
            * (1 + contrast_bonus * self.contrast_weight)
        )

    def score_all_frames(self, frames_dir: PathLike, fps: float = 0.5) -> List[ScoredFrame]:
        """Score every image in ``frames_dir`` in sorted order."""
        if fps <= 0:
            raise InvalidJobData(f"Sampling rate must be positive, got {fps}")

        frames_dir = Path(frames_dir)
        if not frames_dir.is_dir():
            raise ExtractionError(
                f"Frame directory not found: {frames_dir}", source=str(frames_dir)
            )

        paths = list_image_paths(frames_dir)
        self.logger.info("Scoring frames", frame_count=len(paths), frames_dir=str(frames_dir))

        return [
            self.score_frame(path, timestamp_seconds=index / fps)
            for index, path in enumerate(paths)
        ]

    def select_best_frames(
        self,
        frames_dir: PathLike,
        fps: float = 0.5,
        window_seconds: float = 3.0,
        min_score: float = 0.5,
    ) -> BestFramesResult:
        """
        Pick the highest scoring frame of each time window.

        Args:
            frames_dir: Directory of extracted frames
            fps: Rate the frames were sampled at; timestamp = ordinal / fps
            window_seconds: Length of the consecutive, non-overlapping windows
            min_score: A window whose best frame scores below this
                contributes no frame at all

        Returns:
            BestFramesResult; ``all_scores`` keeps one entry per input frame
        """
        if window_seconds <= 0:
            raise InvalidJobData(f"Window length must be positive, got {window_seconds}")

        all_scores = self.score_all_frames(frames_dir, fps=fps)
        windows = group_into_windows(all_scores, window_seconds)

        best_frames: List[Frame] = []
        for window in windows:
            best = pick_best(window)
            if best.overall_score >= min_score:
                best_frames.append(best.to_frame())

        result = BestFramesResult(
            best_frames=best_frames,
            all_scores=all_scores,
            window_count=len(windows),
        )

        self.logger.info(
            "Frame quality analysis completed",
            total_frames=len(all_scores),
            windows=len(windows),
            window_seconds=window_seconds,
            selected=len(best_frames),
            average_score=round(result.average_best_score, 3),
        )
        return result


def group_into_windows(scores: List[ScoredFrame], window_seconds: float) -> List[List[ScoredFrame]]:
    """Partition scored frames by ``floor(timestamp / window_seconds)``."""
    windows: List[List[ScoredFrame]] = []
    current_index: Optional[int] = None

    for score in scores:
        index = math.floor(score.timestamp_seconds / window_seconds)
        if index != current_index:
            windows.append([])
            current_index = index
        windows[-1].append(score)

    return windows


def pick_best(window: List[ScoredFrame]) -> ScoredFrame:
    """Highest score of a window; the earliest frame wins ties."""
    best = window[0]
    for candidate in window[1:]:
        if candidate.overall_score > best.overall_score:
            best = candidate
    return best


def copy_best_frames(best_frames: List[Frame], output_dir: PathLike) -> List[str]:
    """Copy selected frames to ``output_dir`` as ``best_0001.<ext>``, ..."""
    output_dir = Path(output_dir)
    output_dir.mkdir(parents=True, exist_ok=True)

    copied = []
    for index, frame in enumerate(best_frames, start=1):
        source = Path(frame.path)
        target = output_dir / f"best_{index:04d}{source.suffix}"
        shutil.copyfile(source, target)
        copied.append(str(target))

    logger.info("Copied best frames", count=len(copied), output_dir=str(output_dir))
    return copied
