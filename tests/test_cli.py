"""
Tests for the command line interface and its output files.
"""

import json
import re
import zipfile
from unittest.mock import patch

import pytest
import yaml
from click.testing import CliRunner

from bookscan.chapters import detect_chapters
from bookscan.cli import build_metadata, chapter_filename, cli, write_frame_scores, write_outputs
from bookscan.frames import FrameExtractor, FrameQualityScorer
from bookscan.frames.types import Frame, ScoredFrame
from bookscan.ocr import OCRAggregator
from bookscan.ocr.types import PAGE_JOINER, RecognizedText
from bookscan.orchestrator.core.config import Settings
from bookscan.orchestrator.services.job_store import RedisJobStore
from bookscan.pipeline import VideoTextPipeline
from conftest import FakeRecognizer

BOOK_TEXT = PAGE_JOINER.join([
    "1. DE FREDLÖSA I SHERWOOD-SKOGEN\n\nRobin levde i skogen.\n\n7",
    "2. ROBIN MÖTER LILLE JOHN\n\nDe slogs på en bro. | @\n\n9",
])


@pytest.fixture(autouse=True)
def quiet_logging():
    with patch("bookscan.cli.configure_logging"):
        yield


class TestWriteOutputs:
    """Test chapter files and metadata."""

    def test_chapter_files(self, temp_directory):
        result = detect_chapters(BOOK_TEXT)

        chapters_dir = write_outputs(temp_directory, BOOK_TEXT, result)

        assert (temp_directory / "ocr_output.txt").read_text(encoding="utf-8") == BOOK_TEXT
        first = (chapters_dir / "chapter_01.txt").read_text(encoding="utf-8")
        assert first.startswith("# 1. DE FREDLÖSA I SHERWOOD-SKOGEN\n\n")
        assert "Robin levde i skogen." in first
        second = (chapters_dir / "chapter_02.txt").read_text(encoding="utf-8")
        assert "|" not in second and "@" not in second

    def test_json_metadata(self, temp_directory):
        result = detect_chapters(BOOK_TEXT)

        chapters_dir = write_outputs(temp_directory, BOOK_TEXT, result)
        metadata = json.loads((chapters_dir / "chapters.json").read_text(encoding="utf-8"))

        assert metadata["total_chapters"] == 2
        assert metadata["has_chapters"] is True
        assert metadata["page_range"] == {"start": 7, "end": 9}
        assert metadata["page_gaps"] == [{"after_page": 7, "before_page": 9, "missing_count": 1}]
        assert metadata["chapters"][1]["file"] == "chapter_02.txt"
        assert metadata["chapters"][1]["page_start"] == 9

    def test_yaml_metadata(self, temp_directory):
        chapters_dir = write_outputs(temp_directory, BOOK_TEXT, detect_chapters(BOOK_TEXT), "yaml")

        metadata = yaml.safe_load((chapters_dir / "chapters.yaml").read_text(encoding="utf-8"))

        assert metadata["chapters"][0]["title"] == "DE FREDLÖSA I SHERWOOD-SKOGEN"
        assert not (chapters_dir / "chapters.json").exists()

    def test_text_length_uses_clean_text(self):
        result = detect_chapters(BOOK_TEXT)

        metadata = build_metadata(result)

        assert metadata["chapters"][0]["text_length"] == len(result.chapters[0].clean_text)

    def test_frame_scores(self, temp_directory):
        best = Frame(path="/tmp/all/frame_0003.jpg", timestamp_seconds=1.0, quality_score=2.5)
        scores = [
            ScoredFrame("/tmp/all/frame_0001.jpg", 0.0, 10.0, 128.0, 1.0, 0.01),
            ScoredFrame("/tmp/all/frame_0003.jpg", 1.0, 2500.0, 128.0, 0.0, 2.5),
        ]

        path = write_frame_scores(temp_directory, [best], scores, [str(temp_directory / "best_0001.jpg")])
        data = json.loads(path.read_text(encoding="utf-8"))

        assert data["best_frames"] == [
            {"path": "frame_0003.jpg", "timestamp_seconds": 1.0, "quality_score": 2.5, "file": "best_0001.jpg"}
        ]
        assert [s["path"] for s in data["all_scores"]] == ["frame_0001.jpg", "frame_0003.jpg"]
        assert data["all_scores"][1]["sharpness"] == 2500.0

    def test_chapter_filename(self):
        assert chapter_filename(3) == "chapter_03.txt"
        assert chapter_filename(112) == "chapter_112.txt"


class TestCli:
    """Test commands through click's runner."""

    def setup_method(self):
        self.runner = CliRunner()

    def _pipeline(self, results):
        return VideoTextPipeline(
            extractor=FrameExtractor(),
            scorer=FrameQualityScorer(),
            aggregator=OCRAggregator(FakeRecognizer(results=results)),
        )

    def test_images_command(self, page_images, temp_directory):
        pipeline = self._pipeline({
            "page_1.png": RecognizedText("Kapitel 1: Början\n\nText ett.", 90.0),
            "page_2.png": RecognizedText("Mer text.", 70.0),
            "page_3.png": RecognizedText("Kapitel 2: Slutet\n\nSista texten.", 80.0),
        })
        output_dir = temp_directory / "out"

        with patch("bookscan.cli.VideoTextPipeline.from_settings", return_value=pipeline):
            result = self.runner.invoke(
                cli, ["images", *[str(p) for p in page_images], "-o", str(output_dir)]
            )

        assert result.exit_code == 0, result.output
        assert "Detected 2 chapter(s)" in result.output
        assert "Average confidence: 80.0%" in result.output
        assert (output_dir / "chapters" / "chapter_02.txt").is_file()

    def test_images_command_reports_failure(self, page_images):
        pipeline = self._pipeline({"page_2.png": RecognizedText("x", 250.0)})

        with patch("bookscan.cli.VideoTextPipeline.from_settings", return_value=pipeline):
            result = self.runner.invoke(cli, ["images", *[str(p) for p in page_images]])

        assert result.exit_code == 1
        assert "ExtractionError" in result.output

    def test_archive_command(self, page_images, temp_directory):
        archive_path = temp_directory / "book.zip"
        with zipfile.ZipFile(archive_path, "w") as archive:
            for path in reversed(page_images):
                archive.write(path, f"scans/{path.name}")
            archive.writestr("__MACOSX/scans/._page_1.png", b"fork")
        pipeline = self._pipeline({
            "page_1.png": RecognizedText("Kapitel 1: Början\n\nText ett.", 90.0),
            "page_2.png": RecognizedText("Mer text.", 70.0),
            "page_3.png": RecognizedText("Kapitel 2: Slutet\n\nSista texten.", 80.0),
        })
        output_dir = temp_directory / "out"

        with patch("bookscan.cli.VideoTextPipeline.from_settings", return_value=pipeline):
            result = self.runner.invoke(
                cli, ["archive", str(archive_path), "-o", str(output_dir), "--keep-pages"]
            )

        assert result.exit_code == 0, result.output
        assert "3 page image(s) of 4 file(s), 0 HEIC" in result.output
        assert result.output.index("page_1.png") < result.output.index("page_3.png")
        assert "Pages recognized: 3" in result.output
        assert "Detected 2 chapter(s)" in result.output
        assert (output_dir / "chapters" / "chapter_02.txt").is_file()
        assert sorted(p.name for p in (output_dir / "pages").iterdir()) == ["page_1.png", "page_2.png", "page_3.png"]

    def test_archive_command_rejects_non_zip(self, page_images):
        pipeline = self._pipeline({})

        with patch("bookscan.cli.VideoTextPipeline.from_settings", return_value=pipeline):
            result = self.runner.invoke(cli, ["archive", str(page_images[0])])

        assert result.exit_code == 1
        assert "ExtractionError" in result.output

    def test_submit_prints_job_id(self, page_images, fake_redis):
        store = RedisJobStore(fake_redis)

        with patch("bookscan.cli.create_job_store", return_value=store):
            result = self.runner.invoke(cli, ["submit", "batch", *[str(p) for p in page_images]])

        assert result.exit_code == 0, result.output
        job_id = result.output.strip().splitlines()[-1]
        assert re.fullmatch(r"[0-9a-f]{32}", job_id)
        assert fake_redis.lists["bookscan:ocr-processing:waiting"] == [job_id]

    def test_submit_rejects_malformed_job(self, fake_redis):
        with patch("bookscan.cli.create_job_store", return_value=RedisJobStore(fake_redis)):
            result = self.runner.invoke(cli, ["submit", "single", "  "])

        assert result.exit_code == 1
        assert "InvalidJobData" in result.output

    def test_status_of_unknown_job(self, fake_redis):
        with patch("bookscan.cli.create_job_store", return_value=RedisJobStore(fake_redis)):
            result = self.runner.invoke(cli, ["status", "does-not-exist"])

        assert result.exit_code == 1
        assert "JobNotFoundError" in result.output

    @pytest.mark.parametrize(
        "args",
        [["submit", "single", "page.png"], ["status", "abc"], ["worker"]],
    )
    def test_queue_commands_refuse_memory_store(self, args):
        settings = Settings(_env_file=None, store_backend="memory")

        with patch("bookscan.cli.get_settings", return_value=settings), \
                patch("bookscan.cli.serve_worker") as serve_worker:
            result = self.runner.invoke(cli, args)

        assert result.exit_code == 1
        assert "InvalidJobData" in result.output
        assert "requires the redis store backend" in result.output
        serve_worker.assert_not_called()

    def test_default_backend_is_redis(self):
        assert Settings(_env_file=None).uses_redis
