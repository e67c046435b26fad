"""
Chapter and page-number detection for combined OCR text.
"""

from .cleaning import clean_ocr_text
from .detector import ChapterDetector, detect_chapters, format_chapter_summary
from .pages import PageTracker, find_page_token
from .patterns import (
    ExplicitChapterRule,
    HeadingRule,
    IsolatedTitleRule,
    NumberedTitleRule,
    default_rules,
    has_real_words,
    parse_page_number,
)
from .types import (
    UNTITLED,
    Chapter,
    ChapterDetectionResult,
    HeadingCandidate,
    HeadingStrength,
    PageGap,
    UncertainChapter,
)

__all__ = [
    "ChapterDetector",
    "detect_chapters",
    "format_chapter_summary",
    "clean_ocr_text",
    "PageTracker",
    "find_page_token",
    # Heading rules
    "HeadingRule",
    "ExplicitChapterRule",
    "NumberedTitleRule",
    "IsolatedTitleRule",
    "default_rules",
    "has_real_words",
    "parse_page_number",
    # Data types
    "Chapter",
    "ChapterDetectionResult",
    "HeadingCandidate",
    "HeadingStrength",
    "PageGap",
    "UncertainChapter",
    "UNTITLED",
]
