"""
Type definitions for chapter and page detection.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from .cleaning import clean_ocr_text

UNTITLED = "Untitled"


class HeadingStrength(Enum):
    """How confidently a line was recognized as a chapter heading."""
    STRONG = "strong"     # Starts a new chapter
    PARTIAL = "partial"   # Recorded as uncertain, stays in the body


@dataclass
class HeadingCandidate:
    """A heading proposed by one heading rule."""

    title: str
    strength: HeadingStrength
    rule: str
    number: Optional[int] = None
    line_count: int = 1
    reason: str = ""

    @property
    def is_strong(self) -> bool:
        return self.strength == HeadingStrength.STRONG


@dataclass
class Chapter:
    """A contiguous span of recognized text believed to be one chapter."""

    chapter_number: int
    title: str
    text: str
    page_start: Optional[int] = None
    page_end: Optional[int] = None

    @property
    def clean_text(self) -> str:
        """Body text with OCR noise and page markers removed, for display."""
        return clean_ocr_text(self.text)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chapter_number": self.chapter_number,
            "title": self.title,
            "text": self.text,
            "page_start": self.page_start,
            "page_end": self.page_end,
        }


@dataclass
class PageGap:
    """A discontinuity between two consecutive accepted page numbers."""

    after_page: int
    before_page: int

    @property
    def missing_count(self) -> int:
        return self.before_page - self.after_page - 1

    def to_dict(self) -> Dict[str, Any]:
        return {
            "after_page": self.after_page,
            "before_page": self.before_page,
            "missing_count": self.missing_count,
        }


@dataclass
class UncertainChapter:
    """A chapter boundary the detector could not confidently place."""

    chapter_number: int
    possible_title: str
    reason: str
    near_page: Optional[int] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "chapter_number": self.chapter_number,
            "possible_title": self.possible_title,
            "near_page": self.near_page,
            "reason": self.reason,
        }


@dataclass
class ChapterDetectionResult:
    """Chapters, page numbering and uncertainty found in combined OCR text."""

    has_chapters: bool
    chapters: List[Chapter] = field(default_factory=list)
    pages: List[int] = field(default_factory=list)
    page_gaps: List[PageGap] = field(default_factory=list)
    uncertain_chapters: List[UncertainChapter] = field(default_factory=list)

    @property
    def page_range(self) -> Optional[Dict[str, int]]:
        if not self.pages:
            return None
        return {"start": self.pages[0], "end": self.pages[-1]}

    @property
    def total_chapters(self) -> int:
        return len(self.chapters)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "has_chapters": self.has_chapters,
            "total_chapters": self.total_chapters,
            "page_range": self.page_range,
            "pages": list(self.pages),
            "page_gaps": [gap.to_dict() for gap in self.page_gaps],
            "uncertain_chapters": [u.to_dict() for u in self.uncertain_chapters],
            "chapters": [chapter.to_dict() for chapter in self.chapters],
        }
