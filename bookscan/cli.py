"""
Command line interface for running the extraction pipeline locally and for
operating the job worker.
"""

import asyncio
import json
import signal
import sys
import tempfile
from pathlib import Path
from typing import Any, Dict, List, Optional

import click
import structlog
import yaml

from bookscan.chapters import ChapterDetectionResult, format_chapter_summary
from bookscan.common.errors import InvalidJobData, PipelineError
from bookscan.frames import FrameExtractor, RotationDetector, copy_best_frames
from bookscan.frames.rotation import choose_rotation
from bookscan.frames.types import Frame, ScoredFrame
from bookscan.orchestrator.core.config import Settings, get_settings
from bookscan.orchestrator.core.logging import configure_logging
from bookscan.orchestrator.services.job_queue import JobQueue
from bookscan.orchestrator.services.job_store import JobStore, create_job_store
from bookscan.orchestrator.services.job_worker import JobWorker
from bookscan.orchestrator.tasks.ocr_tasks import OCRJobHandler
from bookscan.pipeline import VideoTextPipeline
from bookscan.schemas.job import JobSubmission

logger = structlog.get_logger(__name__)

RULE = "─" * 60


def chapter_filename(chapter_number: int) -> str:
    return f"chapter_{chapter_number:02d}.txt"


def build_metadata(result: ChapterDetectionResult) -> Dict[str, Any]:
    """Chapter metadata written next to the chapter files."""
    return {
        "total_chapters": result.total_chapters,
        "has_chapters": result.has_chapters,
        "page_range": result.page_range,
        "pages": list(result.pages),
        "page_gaps": [gap.to_dict() for gap in result.page_gaps],
        "uncertain_chapters": [u.to_dict() for u in result.uncertain_chapters],
        "chapters": [
            {
                "chapter_number": chapter.chapter_number,
                "title": chapter.title,
                "text_length": len(chapter.clean_text),
                "page_start": chapter.page_start,
                "page_end": chapter.page_end,
                "file": chapter_filename(chapter.chapter_number),
            }
            for chapter in result.chapters
        ],
    }


def write_outputs(
    output_dir: Path,
    combined_text: str,
    result: ChapterDetectionResult,
    metadata_format: str = "json",
) -> Path:
    """
    Write ``ocr_output.txt`` and a ``chapters/`` directory holding one
    ``chapter_NN.txt`` per chapter plus the metadata file.

    Returns:
        Path of the chapters directory
    """
    output_dir.mkdir(parents=True, exist_ok=True)
    (output_dir / "ocr_output.txt").write_text(combined_text, encoding="utf-8")

    chapters_dir = output_dir / "chapters"
    chapters_dir.mkdir(exist_ok=True)
    for chapter in result.chapters:
        content = f"# {chapter.chapter_number}. {chapter.title}\n\n{chapter.clean_text}"
        (chapters_dir / chapter_filename(chapter.chapter_number)).write_text(content, encoding="utf-8")

    metadata = build_metadata(result)
    if metadata_format == "yaml":
        (chapters_dir / "chapters.yaml").write_text(
            yaml.safe_dump(metadata, allow_unicode=True, sort_keys=False), encoding="utf-8"
        )
    else:
        (chapters_dir / "chapters.json").write_text(
            json.dumps(metadata, indent=2, ensure_ascii=False), encoding="utf-8"
        )
    return chapters_dir


def write_frame_scores(
    output_dir: Path,
    best_frames: List[Frame],
    all_scores: List[ScoredFrame],
    copied_paths: List[str],
) -> Path:
    """Write ``frame_scores.json``; frame paths are reduced to file names."""
    data = {
        "best_frames": [
            dict(frame.to_dict(), path=Path(frame.path).name, file=Path(copied).name)
            for frame, copied in zip(best_frames, copied_paths)
        ],
        "all_scores": [dict(score.to_dict(), path=Path(score.path).name) for score in all_scores],
    }
    path = output_dir / "frame_scores.json"
    path.write_text(json.dumps(data, indent=2), encoding="utf-8")
    return path


def _echo_quality_distribution(all_scores: List[ScoredFrame], count: int = 5) -> None:
    ranked = sorted(all_scores, key=lambda score: score.overall_score, reverse=True)
    for label, scores in (("Top", ranked[:count]), ("Bottom", ranked[-count:])):
        click.echo(f"  {label} {len(scores)} frames:")
        for position, score in enumerate(scores, start=1):
            click.echo(
                f"    {position}. {Path(score.path).name} - score: {score.overall_score:.2f}, "
                f"sharpness: {score.sharpness:.0f}"
            )


def _echo_detection_report(result: ChapterDetectionResult) -> None:
    click.echo(format_chapter_summary(result))

    if result.page_range:
        click.echo(
            f"Pages detected: {result.page_range['start']} - {result.page_range['end']} "
            f"({len(result.pages)} unique)"
        )

    if result.page_gaps:
        click.echo("\n⚠️  Missing pages:")
        for gap in result.page_gaps:
            click.echo(
                f"   Pages {gap.after_page + 1}-{gap.before_page - 1} not found "
                f"({gap.missing_count} pages)"
            )

    if result.uncertain_chapters:
        click.echo("\n❓ Uncertain chapters (may need confirmation):")
        for uncertain in result.uncertain_chapters:
            hint = f" [near page {uncertain.near_page}]" if uncertain.near_page else ""
            click.echo(
                f'   {uncertain.chapter_number}. "{uncertain.possible_title}"{hint} - {uncertain.reason}'
            )


def _fail(error: PipelineError) -> None:
    click.echo(f"❌ {error.describe()}", err=True)
    sys.exit(1)


def shared_job_store(settings: Settings, command: str) -> JobStore:
    """
    Store for commands that hand jobs between processes. A memory store
    would be private to this one, so it is refused.
    """
    if not settings.uses_redis:
        raise InvalidJobData(
            f"{command} requires the redis store backend, not {settings.store_backend!r}"
        )
    return create_job_store(settings)


@click.group()
@click.option(
    "--log-format",
    type=click.Choice(["json", "console"]),
    default=None,
    help="Override the configured log format",
)
@click.option("--verbose", "-v", is_flag=True, help="Enable debug logging")
@click.pass_context
def cli(ctx, log_format, verbose):
    """Turn photographed or filmed book pages into chaptered text."""
    updates: Dict[str, Any] = {}
    if log_format:
        updates["log_format"] = log_format
    if verbose:
        updates["log_level"] = "DEBUG"

    settings = get_settings().model_copy(update=updates)
    configure_logging(settings)
    ctx.obj = settings


@cli.command()
@click.argument("video_path", type=click.Path(exists=True, dir_okay=False))
@click.option(
    "--rotation",
    type=click.Choice(["0", "90", "180", "270"]),
    default=None,
    help="Rotation to apply; detected automatically when omitted",
)
@click.option("--output-dir", "-o", type=click.Path(file_okay=False), default="best-frames")
@click.option("--language", "-l", default=None, help="OCR language (e.g. swe, eng)")
@click.option("--fps", type=float, default=None, help="Frames sampled per second")
@click.option("--max-frames", type=int, default=None)
@click.option("--window", "window_seconds", type=float, default=None, help="Selection window in seconds")
@click.option("--min-score", type=float, default=None)
@click.option(
    "--metadata-format",
    "-f",
    type=click.Choice(["json", "yaml"]),
    default="json",
    help="Chapter metadata format",
)
@click.pass_obj
def video(
    settings: Settings,
    video_path,
    rotation,
    output_dir,
    language,
    fps,
    max_frames,
    window_seconds,
    min_score,
    metadata_format,
):
    """Extract chaptered text from a video of book pages."""
    pipeline = VideoTextPipeline.from_settings(settings)
    output_dir = Path(output_dir)
    fps = fps or settings.extraction_fps

    click.echo(f"🎬 Processing {video_path}")
    try:
        with tempfile.TemporaryDirectory(prefix="bookscan-all-frames-") as frames_dir:
            result = pipeline.run(
                video_path,
                language=language,
                rotation=int(rotation) if rotation is not None else None,
                detect_rotation=rotation is None,
                fps=fps,
                max_frames=max_frames or settings.max_frames,
                window_seconds=window_seconds or settings.window_seconds,
                min_score=settings.min_frame_score if min_score is None else min_score,
                work_dir=frames_dir,
            )
            copied = copy_best_frames(result.best_frames, output_dir)
    except PipelineError as e:
        _fail(e)

    chapters_dir = write_outputs(output_dir, result.ocr.combined_text, result.chapters, metadata_format)
    write_frame_scores(output_dir, result.best_frames, result.all_scores, copied)

    reduction = 1 - len(result.best_frames) / result.frames_extracted
    click.echo(RULE)
    click.echo(f"Rotation: {result.rotation}°")
    click.echo(f"Total frames extracted: {result.frames_extracted}")
    click.echo(f"Best frames selected: {len(result.best_frames)} (reduction: {reduction:.0%})")
    click.echo("Quality distribution:")
    _echo_quality_distribution(result.all_scores)
    click.echo(f"OCR confidence: {result.ocr.average_confidence:.1f}%")
    click.echo(f"Text extracted: {len(result.ocr.combined_text)} characters")
    click.echo(RULE)
    _echo_detection_report(result.chapters)
    click.echo(f"\n✅ Output saved to: {output_dir}")
    click.echo(f"   Chapter files saved to: {chapters_dir}")


@cli.command()
@click.argument("image_paths", nargs=-1, required=True, type=click.Path(exists=True, dir_okay=False))
@click.option("--output-dir", "-o", type=click.Path(file_okay=False), default="ocr-output")
@click.option("--language", "-l", default=None, help="OCR language (e.g. swe, eng)")
@click.option(
    "--metadata-format",
    "-f",
    type=click.Choice(["json", "yaml"]),
    default="json",
    help="Chapter metadata format",
)
@click.pass_obj
def images(settings: Settings, image_paths, output_dir, language, metadata_format):
    """OCR page images in the given order and detect chapters."""
    pipeline = VideoTextPipeline.from_settings(settings)

    click.echo(f"📄 Recognizing {len(image_paths)} image(s)")
    try:
        batch = pipeline.aggregator.extract_text_from_images(list(image_paths), language)
    except PipelineError as e:
        _fail(e)

    for result in batch.per_image:
        click.echo(
            f"  {Path(result.image_path).name}: confidence={result.confidence:.1f}%, "
            f"text={len(result.text)} chars"
        )

    chapters = pipeline.chapter_detector.detect(batch.combined_text)
    chapters_dir = write_outputs(Path(output_dir), batch.combined_text, chapters, metadata_format)

    click.echo(f"Average confidence: {batch.average_confidence:.1f}%")
    _echo_detection_report(chapters)
    click.echo(f"\n✅ Chapter files saved to: {chapters_dir}")


@cli.command()
@click.argument("archive_path", type=click.Path(exists=True, dir_okay=False))
@click.option("--output-dir", "-o", type=click.Path(file_okay=False), default="zip-output")
@click.option("--language", "-l", default=None, help="OCR language (e.g. swe, eng)")
@click.option(
    "--keep-pages",
    is_flag=True,
    help="Keep the unpacked page images in <output-dir>/pages",
)
@click.option(
    "--metadata-format",
    "-f",
    type=click.Choice(["json", "yaml"]),
    default="json",
    help="Chapter metadata format",
)
@click.pass_obj
def archive(settings: Settings, archive_path, output_dir, language, keep_pages, metadata_format):
    """OCR a zip of photographed pages and detect chapters."""
    pipeline = VideoTextPipeline.from_settings(settings)
    output_dir = Path(output_dir)

    click.echo(f"📦 Processing {archive_path}")
    try:
        summary = pipeline.archive_extractor.summarize(archive_path)
        click.echo(
            f"  {summary.image_files} page image(s) of {summary.total_files} file(s), "
            f"{summary.heic_files} HEIC"
        )
        result = pipeline.run_archive(
            archive_path,
            language=language,
            work_dir=output_dir / "pages" if keep_pages else None,
        )
    except PipelineError as e:
        _fail(e)

    if result.archive.heic_converted:
        click.echo(f"  Converted: {result.archive.heic_converted} HEIC → JPEG")
    for page in result.ocr.per_image:
        click.echo(
            f"  {Path(page.image_path).name}: confidence={page.confidence:.1f}%, "
            f"text={len(page.text)} chars"
        )

    chapters_dir = write_outputs(output_dir, result.ocr.combined_text, result.chapters, metadata_format)

    click.echo(RULE)
    click.echo(f"Pages recognized: {result.archive.image_count}")
    click.echo(f"OCR confidence: {result.ocr.average_confidence:.1f}%")
    click.echo(f"Text extracted: {len(result.ocr.combined_text)} characters")
    click.echo(RULE)
    _echo_detection_report(result.chapters)
    click.echo(f"\n✅ Output saved to: {output_dir}")
    click.echo(f"   Chapter files saved to: {chapters_dir}")


@cli.command()
@click.argument("video_path", type=click.Path(exists=True, dir_okay=False))
@click.argument("output_dir", type=click.Path(file_okay=False))
@click.option("--fps", type=float, default=None, help="Frames sampled per second")
@click.option("--max-frames", type=int, default=None)
@click.option(
    "--rotation",
    type=click.Choice(["0", "90", "180", "270"]),
    default=None,
    help="Rotation to apply; read from the stream metadata when omitted",
)
@click.option("--format", "output_format", type=click.Choice(["jpg", "png"]), default="jpg")
@click.pass_obj
def frames(settings: Settings, video_path, output_dir, fps, max_frames, rotation, output_format):
    """Extract frames from a video without running OCR."""
    extractor = FrameExtractor(ffmpeg_cmd=settings.ffmpeg_cmd, ffprobe_cmd=settings.ffprobe_cmd)
    try:
        duration = extractor.get_video_duration(video_path)
        rotation = int(rotation) if rotation is not None else extractor.get_stream_rotation(video_path)
        result = extractor.extract_frames(
            video_path,
            output_dir,
            fps=fps or settings.extraction_fps,
            output_format=output_format,
            max_frames=max_frames or settings.max_frames,
            rotation=rotation,
        )
    except PipelineError as e:
        _fail(e)

    click.echo(f"Video duration: {duration:.1f} seconds")
    click.echo(f"Rotation: {rotation}°")
    click.echo(f"✅ Extracted {result.frame_count} frames to {output_dir}")


@cli.command()
@click.argument("video_path", type=click.Path(exists=True, dir_okay=False))
@click.pass_obj
def rotation(settings: Settings, video_path):
    """Detect the rotation that makes a video's pages readable."""
    pipeline = VideoTextPipeline.from_settings(settings)
    detector: RotationDetector = pipeline.rotation_detector

    try:
        candidates = detector.evaluate(video_path)
    except PipelineError as e:
        _fail(e)

    for candidate in candidates:
        if candidate.error:
            click.echo(f"  {candidate.rotation}°: failed ({candidate.error})")
        else:
            click.echo(
                f"  {candidate.rotation}°: confidence={candidate.confidence:.1f}%, "
                f"text={candidate.text_length} chars"
            )

    best = choose_rotation(candidates)
    click.echo(f"Best rotation: {best.rotation}°")


@cli.command()
@click.argument("kind", type=click.Choice(["single", "batch", "video", "archive"]))
@click.argument("paths", nargs=-1, required=True)
@click.option("--language", "-l", default=None)
@click.pass_obj
def submit(settings: Settings, kind, paths, language):
    """Enqueue a job on the configured job store."""
    if kind == "batch":
        payload = {"image_paths": list(paths)}
    elif kind == "single":
        payload = {"image_path": paths[0]}
    elif kind == "archive":
        payload = {"archive_path": paths[0]}
    else:
        payload = {"video_path": paths[0], "detect_rotation": settings.detect_rotation}
    submission = JobSubmission(kind=kind, payload=payload, language=language)

    async def _submit() -> str:
        queue = JobQueue(shared_job_store(settings, "submit"), settings)
        try:
            return await queue.submit(submission.kind, submission.payload, language=submission.language)
        finally:
            await queue.close()

    try:
        job_id = asyncio.run(_submit())
    except PipelineError as e:
        _fail(e)
    click.echo(job_id)


@cli.command()
@click.argument("job_id")
@click.pass_obj
def status(settings: Settings, job_id):
    """Show the status of a job on the configured job store."""

    async def _status():
        queue = JobQueue(shared_job_store(settings, "status"), settings)
        try:
            return await queue.get_status(job_id)
        finally:
            await queue.close()

    try:
        response = asyncio.run(_status())
    except PipelineError as e:
        _fail(e)
    click.echo(response.model_dump_json(indent=2))


@cli.command()
@click.option("--concurrency", type=int, default=None, help="Jobs executed at once")
@click.pass_obj
def worker(settings: Settings, concurrency: Optional[int]):
    """Run a job worker until interrupted."""
    if concurrency:
        settings = settings.model_copy(update={"worker_concurrency": concurrency})
    try:
        store = shared_job_store(settings, "worker")
    except PipelineError as e:
        _fail(e)
    asyncio.run(serve_worker(settings, store))


async def serve_worker(settings: Settings, store: JobStore) -> None:
    worker = JobWorker(store, OCRJobHandler.from_settings(settings), settings)
    stop = asyncio.Event()

    loop = asyncio.get_running_loop()
    for signum in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(signum, stop.set)

    await worker.start()
    logger.info("Worker running", channel=worker.channel, concurrency=worker.concurrency)
    try:
        await stop.wait()
    finally:
        await worker.close()


def main():
    cli()


if __name__ == "__main__":
    main()
