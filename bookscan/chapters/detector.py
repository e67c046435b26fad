"""
Chapter and page detection over combined OCR text.

The scanner walks the text line by line. Page separators split it into
page segments whose page-number tokens feed a ``PageTracker``; heading
rules propose chapter boundaries, and only strong, forward-moving headings
actually start a chapter. Everything else is kept as body text and, where
it looked like a heading, reported as an uncertain chapter.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Set

import structlog

from .pages import PageTracker, track_pages
from .patterns import HeadingRule, default_rules, is_separator, parse_page_number
from .types import (
    UNTITLED,
    Chapter,
    ChapterDetectionResult,
    HeadingCandidate,
    UncertainChapter,
)

logger = structlog.get_logger(__name__)


@dataclass
class _ChapterDraft:
    number: int
    title: str
    lines: List[str] = field(default_factory=list)
    segments: Set[int] = field(default_factory=set)


class ChapterDetector:
    """
    Splits combined OCR text into chapters.

    Concatenating the text of the returned chapters reproduces the input
    minus the consumed heading lines and the page separator lines.
    """

    def __init__(
        self,
        rules: Optional[List[HeadingRule]] = None,
        max_page_number: int = 2000,
        max_page_jump: int = 10,
        max_chapter_skip: int = 3,
    ):
        self.rules = rules if rules is not None else default_rules()
        self.max_page_number = max_page_number
        self.max_page_jump = max_page_jump
        self.max_chapter_skip = max_chapter_skip
        self.logger = logger.bind(component="ChapterDetector")

    def detect(self, combined_text: str) -> ChapterDetectionResult:
        raw_lines = combined_text.splitlines(keepends=True)
        stripped = [line.strip() for line in raw_lines]
        line_segments = self._assign_segments(stripped)

        segments: List[List[str]] = [[] for _ in range(line_segments[-1] + 1 if line_segments else 1)]
        for line, segment in zip(stripped, line_segments):
            if not is_separator(line):
                segments[segment].append(line)

        tracker = track_pages(
            segments,
            max_page_number=self.max_page_number,
            max_page_jump=self.max_page_jump,
        )

        scan = _Scan(self.rules, raw_lines, stripped, line_segments, tracker, self.max_chapter_skip)
        scan.run()

        if not scan.drafts:
            result = self._single_chapter(raw_lines, stripped, line_segments, tracker)
        else:
            result = ChapterDetectionResult(
                has_chapters=True,
                chapters=[scan.to_chapter(draft) for draft in scan.drafts],
                pages=tracker.pages,
                page_gaps=tracker.page_gaps(),
                uncertain_chapters=scan.uncertain,
            )

        self.logger.info(
            "Chapter detection completed",
            has_chapters=result.has_chapters,
            chapters=result.total_chapters,
            pages=len(result.pages),
            page_gaps=len(result.page_gaps),
            uncertain=len(result.uncertain_chapters),
        )
        return result

    @staticmethod
    def _assign_segments(stripped: List[str]) -> List[int]:
        segment = 0
        assigned = []
        for line in stripped:
            if is_separator(line):
                segment += 1
            assigned.append(segment)
        return assigned

    @staticmethod
    def _single_chapter(
        raw_lines: List[str],
        stripped: List[str],
        line_segments: List[int],
        tracker: PageTracker,
    ) -> ChapterDetectionResult:
        text = "".join(
            raw for raw, line in zip(raw_lines, stripped) if not is_separator(line)
        )
        pages = tracker.pages
        chapter = Chapter(
            chapter_number=1,
            title=UNTITLED,
            text=text,
            page_start=pages[0] if pages else None,
            page_end=pages[-1] if pages else None,
        )
        return ChapterDetectionResult(
            has_chapters=False,
            chapters=[chapter],
            pages=pages,
            page_gaps=tracker.page_gaps(),
            uncertain_chapters=[],
        )


class _Scan:
    """Mutable state of one heading pass."""

    def __init__(
        self,
        rules: List[HeadingRule],
        raw_lines: List[str],
        stripped: List[str],
        line_segments: List[int],
        tracker: PageTracker,
        max_chapter_skip: int = 3,
    ):
        self.rules = rules
        self.max_chapter_skip = max_chapter_skip
        self.raw_lines = raw_lines
        self.stripped = stripped
        self.line_segments = line_segments
        self.segment_pages = tracker.segment_pages

        self.current_number = 0
        self.seen_titles: Set[str] = set()
        self.intro_lines: List[str] = []
        self.intro_segments: Set[int] = set()
        self.drafts: List[_ChapterDraft] = []
        self.uncertain: List[UncertainChapter] = []

    def run(self) -> None:
        index = 0
        while index < len(self.raw_lines):
            line = self.stripped[index]
            if is_separator(line):
                index += 1
                continue

            candidate = self._match(index) if line else None
            if candidate is None:
                self._append_body(index, 1)
                index += 1
                continue

            if not candidate.is_strong:
                self._uncertain(
                    candidate.number or self.current_number + 1,
                    candidate.title,
                    self._page_near(index),
                    candidate.reason or "partial heading match",
                )
                self._append_body(index, candidate.line_count)
            elif self._accept(candidate, index):
                self._start_chapter(candidate, index)
            else:
                self._append_body(index, candidate.line_count)
            index += candidate.line_count

    def _match(self, index: int) -> Optional[HeadingCandidate]:
        if parse_page_number(self.stripped[index]) is not None:
            return None
        near_break = self._near_page_break(index)
        for rule in self.rules:
            candidate = rule.match(self.stripped, index, near_page_break=near_break)
            if candidate is not None:
                return candidate
        return None

    def _accept(self, candidate: HeadingCandidate, index: int) -> bool:
        """Decide whether a strong heading opens a chapter, recording doubts."""
        near_page = self._page_near(index)
        title_key = candidate.title.lower()

        if candidate.number is not None and candidate.number <= self.current_number:
            self._uncertain(
                candidate.number, candidate.title, near_page,
                "repeated or decreasing chapter number, treated as running head",
            )
            return False
        if title_key in self.seen_titles:
            self._uncertain(
                candidate.number or self.current_number, candidate.title, near_page,
                "repeated chapter title, treated as running head",
            )
            return False

        number = candidate.number or self.current_number + 1
        skipped = number - self.current_number - 1
        if skipped > self.max_chapter_skip:
            if self.drafts:
                # One misread heading must not swallow the rest of the book
                self._uncertain(
                    number, candidate.title, near_page,
                    f"chapter number jumps from {self.current_number} to {number}",
                )
                return False
            # A scan may start in the middle of a book
            return True

        for missing in range(self.current_number + 1, number):
            self._uncertain(
                missing, "", near_page, f"chapter number skipped before chapter {number}"
            )
        return True

    def _start_chapter(self, candidate: HeadingCandidate, index: int) -> None:
        number = candidate.number or self.current_number + 1
        draft = _ChapterDraft(number=number, title=candidate.title)
        for position in range(index, index + candidate.line_count):
            draft.segments.add(self.line_segments[position])

        if not self.drafts:
            draft.lines.extend(self.intro_lines)
            draft.segments.update(self.intro_segments)

        self.drafts.append(draft)
        self.current_number = number
        self.seen_titles.add(candidate.title.lower())

    def _append_body(self, index: int, count: int) -> None:
        for position in range(index, min(index + count, len(self.raw_lines))):
            if self.drafts:
                target_lines, target_segments = self.drafts[-1].lines, self.drafts[-1].segments
            else:
                target_lines, target_segments = self.intro_lines, self.intro_segments
            target_lines.append(self.raw_lines[position])
            if self.stripped[position]:
                target_segments.add(self.line_segments[position])

    def _uncertain(self, number: int, title: str, near_page: Optional[int], reason: str) -> None:
        self.uncertain.append(
            UncertainChapter(
                chapter_number=number,
                possible_title=title,
                near_page=near_page,
                reason=reason,
            )
        )

    def _near_page_break(self, index: int) -> bool:
        """Whether the nearest non-blank neighbour on either side is a page separator."""
        for step in (-1, 1):
            position = index + step
            while 0 <= position < len(self.stripped):
                line = self.stripped[position]
                if is_separator(line):
                    return True
                if line:
                    break
                position += step
        return False

    def _page_near(self, index: int) -> Optional[int]:
        """Page of the segment holding ``index``, else the last page before it."""
        segment = self.line_segments[index]
        if segment in self.segment_pages:
            return self.segment_pages[segment]
        earlier = [seg for seg in self.segment_pages if seg < segment]
        return self.segment_pages[max(earlier)] if earlier else None

    def to_chapter(self, draft: _ChapterDraft) -> Chapter:
        pages = sorted(
            self.segment_pages[segment]
            for segment in draft.segments
            if segment in self.segment_pages
        )
        return Chapter(
            chapter_number=draft.number,
            title=draft.title,
            text="".join(draft.lines),
            page_start=pages[0] if pages else None,
            page_end=pages[-1] if pages else None,
        )


def detect_chapters(combined_text: str, **kwargs) -> ChapterDetectionResult:
    """Detect chapters with the default rules; see ``ChapterDetector``."""
    return ChapterDetector(**kwargs).detect(combined_text)


def format_chapter_summary(result: ChapterDetectionResult) -> str:
    """Human readable overview of a detection result."""
    if not result.has_chapters:
        return "No chapters detected - treating as single chapter"

    lines = [f"Detected {result.total_chapters} chapter(s):"]
    for chapter in result.chapters:
        text = chapter.clean_text
        preview = text[:100].replace("\n", " ")
        lines.append(f"  {chapter.chapter_number}. {chapter.title} ({len(text)} chars)")
        lines.append(f'     Preview: "{preview}..."')

    if result.page_gaps:
        gaps = ", ".join(f"{gap.after_page}-{gap.before_page}" for gap in result.page_gaps)
        lines.append(f"Page gaps: {gaps}")
    if result.uncertain_chapters:
        lines.append(f"Uncertain chapters: {len(result.uncertain_chapters)}")

    return "\n".join(lines)
