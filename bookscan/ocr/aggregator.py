"""
OCR aggregation over single images and ordered batches of images.
"""

from pathlib import Path
from typing import Callable, List, Optional, Sequence, Union

import structlog

from ..common.errors import ExtractionError, InvalidJobData
from ..common.process import ProcessGuard
from ..common.files import list_image_paths
from .engine import Recognizer
from .types import DEFAULT_LANGUAGE, BatchOcrResult, OcrResult

logger = structlog.get_logger(__name__)

ProgressCallback = Callable[[int, int], None]
PathLike = Union[str, Path]


class OCRAggregator:
    """
    Runs the OCR primitive over one image or a batch of images.

    A low-confidence or empty image never fails a batch; only unreachable
    files or an unavailable OCR primitive do.
    """

    def __init__(
        self,
        recognizer: Recognizer,
        default_language: str = DEFAULT_LANGUAGE,
        call_timeout: Optional[float] = None,
    ):
        self.recognizer = recognizer
        self.default_language = default_language
        self.call_timeout = call_timeout
        self.logger = logger.bind(component="OCRAggregator")

    def extract_text_from_image(
        self,
        image_path: PathLike,
        language: Optional[str] = None,
        guard: Optional[ProcessGuard] = None,
    ) -> OcrResult:
        """
        Recognize a single image.

        Raises:
            ExtractionError: If the file is missing, the OCR primitive is
                unavailable, or it reports a confidence outside [0, 100]
        """
        image_path = str(image_path)
        if not Path(image_path).is_file():
            raise ExtractionError(f"Image file not found: {image_path}", source=image_path)

        if guard:
            guard.check()
        timeout = guard.remaining(self.call_timeout) if guard else self.call_timeout

        try:
            recognized = self.recognizer.recognize(
                image_path, language or self.default_language, timeout=timeout
            )
        except ExtractionError:
            # A per-call timeout derived from the job deadline is a job timeout
            if guard:
                guard.check()
            raise

        confidence = float(recognized.confidence)
        if not 0.0 <= confidence <= 100.0:
            raise ExtractionError(
                f"OCR confidence {confidence} out of range for {image_path}",
                source=image_path,
            )

        return OcrResult(
            text=(recognized.text or "").strip(),
            confidence=confidence,
            image_path=image_path,
        )

    def extract_text_from_images(
        self,
        image_paths: Sequence[PathLike],
        language: Optional[str] = None,
        progress: Optional[ProgressCallback] = None,
        guard: Optional[ProcessGuard] = None,
    ) -> BatchOcrResult:
        """
        Recognize an ordered batch; ``per_image[i]`` belongs to ``image_paths[i]``.

        Raises:
            InvalidJobData: If ``image_paths`` is empty
            ExtractionError: If any image is unreachable or OCR is unavailable
        """
        if not image_paths:
            raise InvalidJobData("OCR batch requires at least one image path")

        language = language or self.default_language
        total = len(image_paths)
        results: List[OcrResult] = []

        self.logger.info("Processing image batch", image_count=total, language=language)

        for index, image_path in enumerate(image_paths, start=1):
            result = self.extract_text_from_image(image_path, language, guard=guard)
            results.append(result)

            self.logger.debug(
                "Batch image processed",
                position=index,
                total=total,
                image=Path(result.image_path).name,
                confidence=round(result.confidence, 1),
                text_length=len(result.text),
            )
            if progress:
                progress(index, total)

        batch = BatchOcrResult(per_image=results, language=language)

        self.logger.info(
            "Image batch completed",
            image_count=total,
            empty_images=batch.empty_image_count,
            average_confidence=round(batch.average_confidence, 1),
        )
        return batch

    def process_frame_directory(
        self,
        frame_dir: PathLike,
        language: Optional[str] = None,
        progress: Optional[ProgressCallback] = None,
    ) -> BatchOcrResult:
        """Recognize every image of a directory in sorted order."""
        frame_dir = Path(frame_dir)
        if not frame_dir.is_dir():
            raise ExtractionError(f"Directory not found: {frame_dir}", source=str(frame_dir))

        paths = list_image_paths(frame_dir)
        if not paths:
            raise ExtractionError(f"No image files found in: {frame_dir}", source=str(frame_dir))

        return self.extract_text_from_images(paths, language, progress=progress)
