"""
Photographed pages delivered as a zip archive.

Entries are flattened into one directory and ordered naturally, so
``IMG_2.jpg`` comes before ``IMG_10.jpg``. HEIC photos are re-encoded as
JPEG, and every page is cropped to the left part of the photo: the right
edge of a phone shot of an open book shows the facing page bleeding through.
"""

import re
import zipfile
from dataclasses import dataclass, field
from pathlib import Path, PurePosixPath
from typing import Any, Callable, Dict, List, Optional, Union

import structlog
from PIL import Image, ImageOps, UnidentifiedImageError
from pillow_heif import register_heif_opener

from ..common.errors import ExtractionError, InvalidJobData
from ..common.process import ProcessGuard

register_heif_opener()

logger = structlog.get_logger(__name__)

PathLike = Union[str, Path]

PAGE_EXTENSIONS = (".jpg", ".jpeg", ".png", ".heic", ".heif")
HEIC_EXTENSIONS = (".heic", ".heif")

# Share of the photo width kept from the left edge
DEFAULT_KEEP_WIDTH = 0.85

JPEG_QUALITY = 90


def natural_sort_key(name: str) -> List[Any]:
    """Sort key comparing digit runs by value and the rest case-insensitively."""
    return [int(part) if part.isdigit() else part.lower() for part in re.split(r"(\d+)", name)]


def is_page_entry(info: zipfile.ZipInfo) -> bool:
    """Whether an archive entry is a page photo rather than a folder or OS clutter."""
    if info.is_dir():
        return False
    path = PurePosixPath(info.filename)
    if "__MACOSX" in path.parts or any(part.startswith(".") for part in path.parts):
        return False
    return path.suffix.lower() in PAGE_EXTENSIONS


@dataclass
class ArchiveSummary:
    """What an archive holds, without extracting it."""

    total_files: int
    image_files: int
    heic_files: int

    def to_dict(self) -> Dict[str, int]:
        return {
            "total_files": self.total_files,
            "image_files": self.image_files,
            "heic_files": self.heic_files,
        }


@dataclass
class ArchiveExtraction:
    """Page images written from one archive, in reading order."""

    image_paths: List[str] = field(default_factory=list)
    total_files: int = 0
    heic_converted: int = 0

    @property
    def image_count(self) -> int:
        return len(self.image_paths)


class PageArchiveExtractor:
    """Unpacks page photos from a zip archive into a flat, ordered directory."""

    def __init__(self, keep_width: float = DEFAULT_KEEP_WIDTH):
        if not 0 < keep_width <= 1:
            raise InvalidJobData(f"keep_width must be in (0, 1], got {keep_width}")
        self.keep_width = keep_width
        self.logger = logger.bind(component="PageArchiveExtractor")

    def _open(self, archive_path: Path) -> zipfile.ZipFile:
        if not archive_path.is_file():
            raise ExtractionError(f"Archive not found: {archive_path}", source=str(archive_path))
        try:
            return zipfile.ZipFile(archive_path)
        except zipfile.BadZipFile as e:
            raise ExtractionError(
                f"Not a readable zip archive: {archive_path}", source=str(archive_path)
            ) from e

    def summarize(self, archive_path: PathLike) -> ArchiveSummary:
        """Count the files, page images and HEIC photos of an archive."""
        archive_path = Path(archive_path)
        with self._open(archive_path) as archive:
            entries = [info for info in archive.infolist() if not info.is_dir()]
            pages = [info for info in entries if is_page_entry(info)]
        return ArchiveSummary(
            total_files=len(entries),
            image_files=len(pages),
            heic_files=sum(
                1 for info in pages if PurePosixPath(info.filename).suffix.lower() in HEIC_EXTENSIONS
            ),
        )

    def extract(
        self,
        archive_path: PathLike,
        output_dir: PathLike,
        progress: Optional[Callable[[int, int], None]] = None,
        guard: Optional[ProcessGuard] = None,
    ) -> ArchiveExtraction:
        """
        Write every page photo of ``archive_path`` into ``output_dir``.

        Args:
            archive_path: Zip archive of page photos
            output_dir: Destination directory, created if missing
            progress: Called with ``(done, total)`` after each page
            guard: Optional guard checked between pages

        Returns:
            ArchiveExtraction with image paths in natural order

        Raises:
            ExtractionError: If the archive is missing or unreadable, holds
                no page images, or a page cannot be decoded
        """
        archive_path = Path(archive_path)
        output_dir = Path(output_dir)
        output_dir.mkdir(parents=True, exist_ok=True)

        with self._open(archive_path) as archive:
            entries = [info for info in archive.infolist() if not info.is_dir()]
            pages = sorted(
                (info for info in entries if is_page_entry(info)),
                key=lambda info: natural_sort_key(PurePosixPath(info.filename).name),
            )
            if not pages:
                raise ExtractionError(
                    f"Archive {archive_path} contains no page images", source=str(archive_path)
                )

            self.logger.info(
                "Extracting page archive",
                archive_path=str(archive_path),
                total_files=len(entries),
                image_files=len(pages),
            )

            result = ArchiveExtraction(total_files=len(entries))
            used_names = set()
            for index, info in enumerate(pages, start=1):
                if guard:
                    guard.check()
                target = self._target_path(output_dir, PurePosixPath(info.filename), used_names)
                self._write_page(archive, info, target)
                if target.suffix.lower() != PurePosixPath(info.filename).suffix.lower():
                    result.heic_converted += 1
                result.image_paths.append(str(target))
                if progress:
                    progress(index, len(pages))

        self.logger.info(
            "Page archive extracted",
            image_count=result.image_count,
            heic_converted=result.heic_converted,
        )
        return result

    @staticmethod
    def _target_path(output_dir: Path, entry: PurePosixPath, used_names: set) -> Path:
        suffix = ".jpg" if entry.suffix.lower() in HEIC_EXTENSIONS else entry.suffix.lower()
        name = f"{entry.stem}{suffix}"
        counter = 2
        # Same file name in two folders of the archive
        while name.lower() in used_names:
            name = f"{entry.stem}_{counter}{suffix}"
            counter += 1
        used_names.add(name.lower())
        return output_dir / name

    def _write_page(self, archive: zipfile.ZipFile, info: zipfile.ZipInfo, target: Path) -> None:
        try:
            with archive.open(info) as source, Image.open(source) as image:
                page = ImageOps.exif_transpose(image)
                width, height = page.size
                page = page.crop((0, 0, max(1, int(width * self.keep_width)), height))
                if target.suffix == ".png":
                    page.save(target)
                else:
                    if page.mode not in ("RGB", "L"):
                        page = page.convert("RGB")
                    page.save(target, "JPEG", quality=JPEG_QUALITY)
        except (UnidentifiedImageError, OSError, zipfile.BadZipFile) as e:
            raise ExtractionError(
                f"Could not decode page {info.filename}: {e}", source=info.filename
            ) from e
