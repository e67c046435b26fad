"""
Media-to-text pipeline. A video goes through rotation, frame extraction,
best-frame selection, OCR and chapter detection; a zip archive of page
photos goes through unpacking, OCR and chapter detection.
"""

import tempfile
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Dict, List, Optional, Union

import structlog

from .chapters import ChapterDetectionResult, ChapterDetector
from .common.errors import ExtractionError
from .common.process import ProcessGuard
from .frames import FrameExtractor, FrameQualityScorer, RotationDetector
from .frames.types import Frame, ScoredFrame
from .ingest import ArchiveExtraction, PageArchiveExtractor
from .ocr import BatchOcrResult, OCRAggregator, TesseractRecognizer

logger = structlog.get_logger(__name__)

ProgressCallback = Callable[[float], None]
PathLike = Union[str, Path]

# Share of overall progress reached at the end of each stage
STAGE_PROGRESS = {
    "rotation": 5,
    "extraction": 25,
    "scoring": 35,
    "ocr": 95,
    "chapters": 100,
}

# Same for a page archive
ARCHIVE_STAGE_PROGRESS = {
    "unpacking": 10,
    "ocr": 95,
    "chapters": 100,
}


@dataclass
class VideoTextResult:
    """Everything one pipeline run produced."""

    rotation: int
    frames_extracted: int
    best_frames: List[Frame]
    all_scores: List[ScoredFrame]
    ocr: BatchOcrResult
    chapters: ChapterDetectionResult
    frames_dir: Optional[str] = None
    best_frame_paths: List[str] = field(default_factory=list)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "rotation": self.rotation,
            "frames_extracted": self.frames_extracted,
            "frames_selected": len(self.best_frames),
            "per_image": [result.to_dict() for result in self.ocr.per_image],
            "combined_text": self.ocr.combined_text,
            "average_confidence": self.ocr.average_confidence,
            "chapters": self.chapters.to_dict(),
        }


@dataclass
class ArchiveTextResult:
    """Everything one page archive run produced."""

    archive: ArchiveExtraction
    ocr: BatchOcrResult
    chapters: ChapterDetectionResult

    def to_dict(self) -> Dict[str, Any]:
        return {
            "total_images": self.archive.image_count,
            "heic_converted": self.archive.heic_converted,
            "per_image": [result.to_dict() for result in self.ocr.per_image],
            "combined_text": self.ocr.combined_text,
            "average_confidence": self.ocr.average_confidence,
            "chapters": self.chapters.to_dict(),
        }


class VideoTextPipeline:
    """
    Turns filmed or photographed book pages into chaptered text.

    Frames are written to ``work_dir`` when given (the caller owns it);
    otherwise to a private temporary directory removed after the run.
    """

    def __init__(
        self,
        extractor: FrameExtractor,
        scorer: FrameQualityScorer,
        aggregator: OCRAggregator,
        chapter_detector: Optional[ChapterDetector] = None,
        rotation_detector: Optional[RotationDetector] = None,
        archive_extractor: Optional[PageArchiveExtractor] = None,
        temp_root: Optional[str] = None,
    ):
        self.extractor = extractor
        self.scorer = scorer
        self.aggregator = aggregator
        self.chapter_detector = chapter_detector or ChapterDetector()
        self.rotation_detector = rotation_detector or RotationDetector(extractor, aggregator)
        self.archive_extractor = archive_extractor or PageArchiveExtractor()
        self.temp_root = temp_root
        self.logger = logger.bind(component="VideoTextPipeline")

    @classmethod
    def from_settings(cls, settings) -> "VideoTextPipeline":
        """Wire the production components from a ``Settings`` instance."""
        extractor = FrameExtractor(ffmpeg_cmd=settings.ffmpeg_cmd, ffprobe_cmd=settings.ffprobe_cmd)
        aggregator = OCRAggregator(
            TesseractRecognizer(
                tesseract_cmd=settings.tesseract_cmd,
                default_timeout=settings.tesseract_timeout_seconds,
                config=settings.tesseract_config,
            ),
            default_language=settings.default_language,
        )
        return cls(
            extractor=extractor,
            scorer=FrameQualityScorer(),
            aggregator=aggregator,
            chapter_detector=ChapterDetector(
                max_page_number=settings.max_page_number,
                max_page_jump=settings.max_page_jump,
            ),
            archive_extractor=PageArchiveExtractor(keep_width=settings.archive_keep_width),
            temp_root=settings.temp_directory,
        )

    def run(
        self,
        video_path: PathLike,
        language: Optional[str] = None,
        rotation: Optional[int] = None,
        detect_rotation: bool = False,
        fps: float = 2.0,
        max_frames: int = 200,
        window_seconds: float = 2.0,
        min_score: float = 0.3,
        work_dir: Optional[PathLike] = None,
        progress: Optional[ProgressCallback] = None,
        guard: Optional[ProcessGuard] = None,
    ) -> VideoTextResult:
        """
        Run every stage for one video.

        ``rotation`` overrides everything; without it the angle comes from
        ``detect_rotation`` or, failing that, from the stream metadata.
        When no frame meets ``min_score`` the run still completes, with no
        recognized text and a single empty ``Untitled`` chapter.

        Raises:
            InvalidJobData: On an unsupported rotation or sampling option
            ExtractionError: If the video is unreadable or no frame was
                extracted
            JobTimeoutError: If ``guard`` expires between or during stages
        """
        if work_dir is not None:
            return self._run_in(
                Path(work_dir), video_path, language, rotation, detect_rotation,
                fps, max_frames, window_seconds, min_score, progress, guard,
            )

        with tempfile.TemporaryDirectory(prefix="bookscan-frames-", dir=self.temp_root) as temp_dir:
            result = self._run_in(
                Path(temp_dir), video_path, language, rotation, detect_rotation,
                fps, max_frames, window_seconds, min_score, progress, guard,
            )
            result.frames_dir = None
            return result

    def _run_in(
        self,
        frames_dir: Path,
        video_path: PathLike,
        language: Optional[str],
        rotation: Optional[int],
        detect_rotation: bool,
        fps: float,
        max_frames: int,
        window_seconds: float,
        min_score: float,
        progress: Optional[ProgressCallback],
        guard: Optional[ProcessGuard],
    ) -> VideoTextResult:
        report = progress or (lambda percent: None)

        rotation = self._resolve_rotation(video_path, rotation, detect_rotation, guard)
        report(STAGE_PROGRESS["rotation"])

        extraction = self.extractor.extract_frames(
            video_path,
            frames_dir,
            fps=fps,
            max_frames=max_frames,
            rotation=rotation,
            guard=guard,
        )
        if not extraction.frames:
            raise ExtractionError(f"No frames extracted from {video_path}", source=str(video_path))
        report(STAGE_PROGRESS["extraction"])

        selection = self.scorer.select_best_frames(
            frames_dir, fps=fps, window_seconds=window_seconds, min_score=min_score
        )
        report(STAGE_PROGRESS["scoring"])

        if selection.best_frames:
            ocr_start, ocr_end = STAGE_PROGRESS["scoring"], STAGE_PROGRESS["ocr"]
            ocr = self.aggregator.extract_text_from_images(
                selection.selected_paths,
                language,
                progress=lambda done, total: report(ocr_start + (ocr_end - ocr_start) * done / total),
                guard=guard,
            )
        else:
            # Low quality is a result, not a failure; the caller sees the scores
            self.logger.warning(
                "No frame reached the quality threshold",
                video_path=str(video_path),
                min_score=min_score,
                frames_scored=len(selection.all_scores),
            )
            ocr = BatchOcrResult(language=language or self.aggregator.default_language)
        report(STAGE_PROGRESS["ocr"])

        chapters = self.chapter_detector.detect(ocr.combined_text)
        report(STAGE_PROGRESS["chapters"])

        self.logger.info(
            "Video processed",
            video_path=str(video_path),
            rotation=rotation,
            frames_extracted=extraction.frame_count,
            frames_selected=len(selection.best_frames),
            average_confidence=round(ocr.average_confidence, 1),
            chapters=chapters.total_chapters,
        )

        return VideoTextResult(
            rotation=rotation,
            frames_extracted=extraction.frame_count,
            best_frames=selection.best_frames,
            all_scores=selection.all_scores,
            ocr=ocr,
            chapters=chapters,
            frames_dir=str(frames_dir),
            best_frame_paths=selection.selected_paths,
        )

    def _resolve_rotation(
        self,
        video_path: PathLike,
        rotation: Optional[int],
        detect_rotation: bool,
        guard: Optional[ProcessGuard],
    ) -> int:
        # An explicit angle wins, then OCR detection, then the camera's metadata
        if rotation is not None:
            return rotation
        if detect_rotation:
            return self.rotation_detector.detect_best_rotation(video_path, guard=guard)

        rotation = self.extractor.get_stream_rotation(video_path)
        if rotation:
            self.logger.info("Using recorded stream rotation", video_path=str(video_path), rotation=rotation)
        return rotation

    def run_archive(
        self,
        archive_path: PathLike,
        language: Optional[str] = None,
        work_dir: Optional[PathLike] = None,
        progress: Optional[ProgressCallback] = None,
        guard: Optional[ProcessGuard] = None,
    ) -> ArchiveTextResult:
        """
        Unpack a zip of page photos, recognize every page in natural file
        order and split the text into chapters.

        Page images land in ``work_dir`` when given, otherwise in a
        temporary directory removed after the run.

        Raises:
            ExtractionError: If the archive is unreadable, has no pages, or
                a page cannot be recognized
            JobTimeoutError: If ``guard`` expires between pages
        """
        report = progress or (lambda percent: None)

        with tempfile.TemporaryDirectory(prefix="bookscan-pages-", dir=self.temp_root) as temp_dir:
            pages_dir = Path(work_dir) if work_dir is not None else Path(temp_dir)
            unpack_end = ARCHIVE_STAGE_PROGRESS["unpacking"]
            archive = self.archive_extractor.extract(
                archive_path,
                pages_dir,
                progress=lambda done, total: report(unpack_end * done / total),
                guard=guard,
            )

            ocr_start, ocr_end = unpack_end, ARCHIVE_STAGE_PROGRESS["ocr"]
            ocr = self.aggregator.extract_text_from_images(
                archive.image_paths,
                language,
                progress=lambda done, total: report(ocr_start + (ocr_end - ocr_start) * done / total),
                guard=guard,
            )

        chapters = self.chapter_detector.detect(ocr.combined_text)
        report(ARCHIVE_STAGE_PROGRESS["chapters"])

        self.logger.info(
            "Page archive processed",
            archive_path=str(archive_path),
            images=archive.image_count,
            heic_converted=archive.heic_converted,
            average_confidence=round(ocr.average_confidence, 1),
            chapters=chapters.total_chapters,
        )
        return ArchiveTextResult(archive=archive, ocr=ocr, chapters=chapters)
