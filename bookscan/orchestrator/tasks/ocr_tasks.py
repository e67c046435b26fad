"""
Handler executing OCR jobs for the job worker.

Blocking work (Tesseract, ffmpeg, OpenCV, Pillow) runs in a worker thread so the
event loop keeps dispatching and can enforce the job timeout.
"""

import asyncio
from typing import Any, Dict, Optional

import structlog

from bookscan.common.errors import InvalidJobData
from bookscan.ocr import OCRAggregator
from bookscan.orchestrator.core.config import Settings
from bookscan.orchestrator.core.jobs import ImageBatch, Job, PageArchive, SingleImage, VideoSource
from bookscan.orchestrator.services.job_worker import JobContext
from bookscan.pipeline import VideoTextPipeline
from bookscan.schemas.job import ArchiveResult, BatchResult, SingleImageResult, VideoResult

logger = structlog.get_logger(__name__)


class OCRJobHandler:
    """Dispatches a job on its payload type."""

    def __init__(
        self,
        aggregator: OCRAggregator,
        pipeline: VideoTextPipeline,
        settings: Settings,
    ):
        self.aggregator = aggregator
        self.pipeline = pipeline
        self.settings = settings
        self.logger = logger.bind(component="OCRJobHandler")

    @classmethod
    def from_settings(cls, settings: Settings) -> "OCRJobHandler":
        pipeline = VideoTextPipeline.from_settings(settings)
        return cls(aggregator=pipeline.aggregator, pipeline=pipeline, settings=settings)

    async def __call__(self, job: Job, context: JobContext) -> Dict[str, Any]:
        payload = job.payload
        if isinstance(payload, SingleImage):
            return await asyncio.to_thread(self.process_single, job, context)
        if isinstance(payload, ImageBatch):
            return await asyncio.to_thread(self.process_batch, job, context)
        if isinstance(payload, VideoSource):
            return await asyncio.to_thread(self.process_video, job, context)
        if isinstance(payload, PageArchive):
            return await asyncio.to_thread(self.process_archive, job, context)
        raise InvalidJobData(f"Unsupported job payload: {type(payload).__name__}")

    def process_single(self, job: Job, context: JobContext) -> Dict[str, Any]:
        self.logger.info("Processing single image", job_id=job.id, language=job.language)
        result = self.aggregator.extract_text_from_image(
            job.payload.image_path, job.language, guard=context.guard
        )
        return SingleImageResult(**result.to_dict()).model_dump()

    def process_batch(self, job: Job, context: JobContext) -> Dict[str, Any]:
        image_paths = job.payload.image_paths
        self.logger.info(
            "Processing image batch", job_id=job.id, image_count=len(image_paths), language=job.language
        )
        batch = self.aggregator.extract_text_from_images(
            image_paths,
            job.language,
            progress=lambda done, total: context.report_progress(100 * done / total),
            guard=context.guard,
        )
        return BatchResult(
            per_image=[result.to_dict() for result in batch.per_image],
            combined_text=batch.combined_text,
            average_confidence=batch.average_confidence,
        ).model_dump()

    def process_video(self, job: Job, context: JobContext) -> Dict[str, Any]:
        source: VideoSource = job.payload
        self.logger.info("Processing video", job_id=job.id, video_path=source.video_path)
        result = self.pipeline.run(
            source.video_path,
            language=job.language,
            rotation=source.rotation,
            detect_rotation=source.detect_rotation or self.settings.detect_rotation,
            fps=_or_default(source.fps, self.settings.extraction_fps),
            max_frames=_or_default(source.max_frames, self.settings.max_frames),
            window_seconds=_or_default(source.window_seconds, self.settings.window_seconds),
            min_score=_or_default(source.min_score, self.settings.min_frame_score),
            progress=context.report_progress,
            guard=context.guard,
        )
        return VideoResult(**result.to_dict()).model_dump()

    def process_archive(self, job: Job, context: JobContext) -> Dict[str, Any]:
        archive_path = job.payload.archive_path
        self.logger.info("Processing page archive", job_id=job.id, archive_path=archive_path)
        result = self.pipeline.run_archive(
            archive_path,
            language=job.language,
            progress=context.report_progress,
            guard=context.guard,
        )
        return ArchiveResult(**result.to_dict()).model_dump()


def _or_default(value: Optional[Any], default: Any) -> Any:
    return default if value is None else value
