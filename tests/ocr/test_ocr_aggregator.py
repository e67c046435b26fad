"""
Unit tests for OCR aggregation.
"""

import pytest

from bookscan.common.errors import ExtractionError, InvalidJobData
from bookscan.ocr.aggregator import OCRAggregator
from bookscan.ocr.types import PAGE_SEPARATOR, BatchOcrResult, OcrResult, RecognizedText
from conftest import FakeRecognizer, write_checkerboard


class TestOCRAggregator:
    """Test single-image and batch OCR."""

    def setup_method(self):
        self.recognizer = FakeRecognizer(
            results={
                "page_1.png": RecognizedText("  Första sidan  ", 90.0),
                "page_2.png": RecognizedText("", 0.0),
                "page_3.png": RecognizedText("Tredje sidan", 60.0),
            }
        )
        self.aggregator = OCRAggregator(self.recognizer, default_language="swe")

    def test_single_image(self, page_images):
        result = self.aggregator.extract_text_from_image(page_images[0])

        assert result.text == "Första sidan"
        assert result.confidence == 90.0
        assert result.image_path == str(page_images[0])
        assert self.recognizer.calls[0]["language"] == "swe"

    def test_language_override(self, page_images):
        self.aggregator.extract_text_from_image(page_images[0], language="eng")

        assert self.recognizer.calls[0]["language"] == "eng"

    def test_batch_preserves_order_and_length(self, page_images):
        batch = self.aggregator.extract_text_from_images(page_images)

        assert len(batch.per_image) == 3
        assert [r.image_path for r in batch.per_image] == [str(p) for p in page_images]

    def test_batch_average_is_exact_mean(self, page_images):
        batch = self.aggregator.extract_text_from_images(page_images)

        assert batch.average_confidence == pytest.approx(50.0)

    def test_combined_text_separates_every_image(self, page_images):
        batch = self.aggregator.extract_text_from_images(page_images)

        assert batch.combined_text.count(PAGE_SEPARATOR) == 2
        assert batch.combined_text == (
            f"Första sidan\n\n{PAGE_SEPARATOR}\n\n\n\n{PAGE_SEPARATOR}\n\nTredje sidan"
        )
        assert batch.empty_image_count == 1

    def test_empty_batch(self):
        with pytest.raises(InvalidJobData):
            self.aggregator.extract_text_from_images([])

    def test_missing_image_fails_batch(self, page_images, temp_directory):
        paths = page_images + [temp_directory / "missing.png"]

        with pytest.raises(ExtractionError):
            self.aggregator.extract_text_from_images(paths)

    def test_confidence_out_of_range(self, temp_directory):
        image = write_checkerboard(temp_directory / "odd.png")
        recognizer = FakeRecognizer(results={"odd.png": RecognizedText("x", 140.0)})

        with pytest.raises(ExtractionError, match="out of range"):
            OCRAggregator(recognizer).extract_text_from_image(image)

    def test_recognizer_failure_propagates(self, temp_directory):
        image = write_checkerboard(temp_directory / "page.png")
        recognizer = FakeRecognizer(results={"page.png": ExtractionError("Tesseract is not installed")})

        with pytest.raises(ExtractionError):
            OCRAggregator(recognizer).extract_text_from_images([image])

    def test_progress_callback(self, page_images):
        seen = []

        self.aggregator.extract_text_from_images(
            page_images, progress=lambda done, total: seen.append((done, total))
        )

        assert seen == [(1, 3), (2, 3), (3, 3)]

    def test_process_frame_directory(self, temp_directory):
        for index in (2, 1):
            write_checkerboard(temp_directory / f"frame_{index:04d}.png")

        batch = self.aggregator.process_frame_directory(temp_directory)

        assert [r.image_path.rsplit("/", 1)[-1] for r in batch.per_image] == [
            "frame_0001.png",
            "frame_0002.png",
        ]

    def test_process_empty_directory(self, temp_directory):
        with pytest.raises(ExtractionError, match="No image files"):
            self.aggregator.process_frame_directory(temp_directory)


class TestBatchOcrResult:
    def test_empty_batch_average(self):
        assert BatchOcrResult().average_confidence == 0.0

    def test_to_dict(self):
        batch = BatchOcrResult(
            per_image=[OcrResult("a", 80.0, "1.png"), OcrResult("b", 40.0, "2.png")]
        )

        data = batch.to_dict()

        assert data["average_confidence"] == pytest.approx(60.0)
        assert data["per_image"][1] == {"text": "b", "confidence": 40.0, "image_path": "2.png"}
        assert OcrResult.from_dict(data["per_image"][0]) == batch.per_image[0]
