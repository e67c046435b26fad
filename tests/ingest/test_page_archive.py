"""
Unit tests for unpacking zip archives of photographed pages.
"""

import io
import zipfile
from pathlib import Path

import pytest
from PIL import Image

from bookscan.common.errors import ExtractionError, InvalidJobData, JobTimeoutError
from bookscan.common.process import ProcessGuard
from bookscan.frames import FrameExtractor, FrameQualityScorer
from bookscan.ingest import PageArchiveExtractor, is_page_entry, natural_sort_key
from bookscan.ocr import OCRAggregator
from bookscan.ocr.types import RecognizedText
from bookscan.pipeline import ARCHIVE_STAGE_PROGRESS, VideoTextPipeline
from conftest import FakeRecognizer


def image_bytes(width=200, height=80, image_format="PNG"):
    buffer = io.BytesIO()
    Image.new("RGB", (width, height), (240, 240, 240)).save(buffer, image_format)
    return buffer.getvalue()


def write_archive(path: Path, entries) -> Path:
    """Zip ``entries`` (name -> bytes); names ending in "/" become folders."""
    with zipfile.ZipFile(path, "w") as archive:
        for name, data in entries.items():
            archive.writestr(name, data if data is not None else b"")
    return path


class TestArchiveHelpers:
    def test_natural_sort_key(self):
        names = ["IMG_10.jpg", "img_2.jpg", "IMG_1.jpg", "IMG_1b.jpg"]

        assert sorted(names, key=natural_sort_key) == ["IMG_1.jpg", "IMG_1b.jpg", "img_2.jpg", "IMG_10.jpg"]

    @pytest.mark.parametrize(
        "name,expected",
        [
            ("IMG_1.JPG", True),
            ("pages/IMG_1.heic", True),
            ("scan.png", True),
            ("pages/", False),
            ("__MACOSX/pages/._IMG_1.jpg", False),
            (".DS_Store", False),
            ("pages/.hidden.jpg", False),
            ("notes.txt", False),
        ],
    )
    def test_is_page_entry(self, name, expected):
        assert is_page_entry(zipfile.ZipInfo(name)) is expected


class TestPageArchiveExtractor:
    """Test flattening, ordering, conversion and cropping."""

    def setup_method(self):
        self.extractor = PageArchiveExtractor()

    def test_pages_in_natural_order(self, temp_directory):
        archive = write_archive(temp_directory / "book.zip", {
            "IMG_10.png": image_bytes(),
            "IMG_2.png": image_bytes(),
            "IMG_1.png": image_bytes(),
        })

        result = self.extractor.extract(archive, temp_directory / "pages")

        assert [Path(p).name for p in result.image_paths] == ["IMG_1.png", "IMG_2.png", "IMG_10.png"]
        assert result.total_files == 3
        assert result.heic_converted == 0

    def test_clutter_is_skipped(self, temp_directory):
        archive = write_archive(temp_directory / "book.zip", {
            "pages/": None,
            "pages/p1.png": image_bytes(),
            "pages/.hidden.png": image_bytes(),
            "__MACOSX/pages/._p1.png": b"resource fork",
            ".DS_Store": b"finder",
            "readme.txt": b"hello",
        })

        result = self.extractor.extract(archive, temp_directory / "pages")

        assert [Path(p).name for p in result.image_paths] == ["p1.png"]
        assert result.total_files == 5

    def test_entries_are_flattened(self, temp_directory):
        archive = write_archive(temp_directory / "book.zip", {
            "a/IMG_1.png": image_bytes(),
            "b/IMG_1.png": image_bytes(),
        })
        output_dir = temp_directory / "pages"

        result = self.extractor.extract(archive, output_dir)

        assert [Path(p).name for p in result.image_paths] == ["IMG_1.png", "IMG_1_2.png"]
        assert all(Path(p).parent == output_dir for p in result.image_paths)

    def test_right_edge_is_cropped(self, temp_directory):
        archive = write_archive(temp_directory / "book.zip", {
            "p1.png": image_bytes(width=200, height=80),
            "p2.jpg": image_bytes(width=101, height=50, image_format="JPEG"),
        })

        result = self.extractor.extract(archive, temp_directory / "pages")

        sizes = []
        for path in result.image_paths:
            with Image.open(path) as image:
                sizes.append(image.size)
        assert sizes == [(170, 80), (85, 50)]

    def test_custom_keep_width(self, temp_directory):
        archive = write_archive(temp_directory / "book.zip", {"p1.png": image_bytes(width=200)})

        result = PageArchiveExtractor(keep_width=1.0).extract(archive, temp_directory / "pages")

        with Image.open(result.image_paths[0]) as image:
            assert image.width == 200

    def test_heic_becomes_jpeg(self, temp_directory):
        archive = write_archive(temp_directory / "book.zip", {
            "IMG_0001.HEIC": image_bytes(width=64, height=32, image_format="HEIF"),
            "IMG_0002.jpg": image_bytes(width=64, height=32, image_format="JPEG"),
        })

        result = self.extractor.extract(archive, temp_directory / "pages")

        assert [Path(p).name for p in result.image_paths] == ["IMG_0001.jpg", "IMG_0002.jpg"]
        assert result.heic_converted == 1
        with Image.open(result.image_paths[0]) as image:
            assert image.format == "JPEG"
            assert image.width == 54

    def test_progress(self, temp_directory):
        archive = write_archive(temp_directory / "book.zip", {
            "p1.png": image_bytes(),
            "p2.png": image_bytes(),
        })
        calls = []

        self.extractor.extract(archive, temp_directory / "pages", progress=lambda d, t: calls.append((d, t)))

        assert calls == [(1, 2), (2, 2)]

    def test_summarize(self, temp_directory):
        archive = write_archive(temp_directory / "book.zip", {
            "pages/": None,
            "pages/a.heic": b"heic",
            "pages/b.jpg": b"jpeg",
            "__MACOSX/pages/._a.heic": b"fork",
            "notes.txt": b"hello",
        })

        summary = self.extractor.summarize(archive)

        assert summary.to_dict() == {"total_files": 4, "image_files": 2, "heic_files": 1}

    def test_missing_archive(self, temp_directory):
        with pytest.raises(ExtractionError, match="not found"):
            self.extractor.extract(temp_directory / "missing.zip", temp_directory / "pages")

    def test_not_a_zip(self, temp_directory):
        path = temp_directory / "book.zip"
        path.write_bytes(b"definitely not a zip")

        with pytest.raises(ExtractionError, match="zip archive"):
            self.extractor.extract(path, temp_directory / "pages")

    def test_archive_without_pages(self, temp_directory):
        archive = write_archive(temp_directory / "book.zip", {"notes.txt": b"hello"})

        with pytest.raises(ExtractionError, match="no page images"):
            self.extractor.extract(archive, temp_directory / "pages")

    def test_undecodable_page(self, temp_directory):
        archive = write_archive(temp_directory / "book.zip", {"p1.png": b"not an image"})

        with pytest.raises(ExtractionError) as exc_info:
            self.extractor.extract(archive, temp_directory / "pages")
        assert exc_info.value.source == "p1.png"

    def test_cancelled_guard_stops_unpacking(self, temp_directory):
        archive = write_archive(temp_directory / "book.zip", {"p1.png": image_bytes()})
        guard = ProcessGuard()
        guard.cancel()

        with pytest.raises(JobTimeoutError):
            self.extractor.extract(archive, temp_directory / "pages", guard=guard)

    @pytest.mark.parametrize("keep_width", [0, -0.5, 1.5])
    def test_invalid_keep_width(self, keep_width):
        with pytest.raises(InvalidJobData):
            PageArchiveExtractor(keep_width=keep_width)


class TestArchivePipeline:
    """Test OCR and chapter detection over an unpacked archive."""

    def setup_method(self):
        self.recognizer = FakeRecognizer(
            results={
                "page_1.png": RecognizedText("Kapitel 1: Början\n\nText ett.\n\n1", 90.0),
                "page_2.png": RecognizedText("Mer text.\n\n2", 70.0),
                "page_10.png": RecognizedText("Kapitel 2: Slutet\n\nSista texten.\n\n3", 80.0),
            }
        )
        self.pipeline = VideoTextPipeline(
            extractor=FrameExtractor(),
            scorer=FrameQualityScorer(),
            aggregator=OCRAggregator(self.recognizer),
        )

    def _archive(self, temp_directory):
        return write_archive(temp_directory / "book.zip", {
            "page_10.png": image_bytes(),
            "page_2.png": image_bytes(),
            "page_1.png": image_bytes(),
        })

    def test_pages_recognized_in_order(self, temp_directory):
        progress = []

        result = self.pipeline.run_archive(
            self._archive(temp_directory), language="swe", progress=progress.append
        )

        assert [Path(c["image_path"]).name for c in self.recognizer.calls] == [
            "page_1.png",
            "page_2.png",
            "page_10.png",
        ]
        assert result.ocr.average_confidence == pytest.approx(80.0)
        assert [c.title for c in result.chapters.chapters] == ["Början", "Slutet"]
        assert progress == sorted(progress)
        assert progress[-1] == ARCHIVE_STAGE_PROGRESS["chapters"]

    def test_to_dict(self, temp_directory):
        data = self.pipeline.run_archive(self._archive(temp_directory)).to_dict()

        assert data["total_images"] == 3
        assert data["heic_converted"] == 0
        assert len(data["per_image"]) == 3
        assert data["chapters"]["total_chapters"] == 2

    def test_pages_are_kept_in_work_dir(self, temp_directory):
        work_dir = temp_directory / "kept"

        result = self.pipeline.run_archive(self._archive(temp_directory), work_dir=work_dir)

        assert all(Path(p).parent == work_dir and Path(p).is_file() for p in result.archive.image_paths)

    def test_temporary_pages_are_removed(self, temp_directory):
        result = self.pipeline.run_archive(self._archive(temp_directory))

        assert not any(Path(p).exists() for p in result.archive.image_paths)
