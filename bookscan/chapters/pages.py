"""
Page-number tracking across the page segments of combined OCR text.
"""

from typing import Dict, List, Optional, Tuple

import structlog

from .patterns import is_blank, parse_page_number
from .types import PageGap

logger = structlog.get_logger(__name__)


class PageTracker:
    """
    State machine over the page-number tokens of consecutive segments.

    A token is accepted when it continues the current page by at most
    ``max_page_jump``. Smaller or repeated numbers are ignored as OCR
    noise. A larger jump is held as pending and only accepted when the
    next token continues from it; otherwise it is dropped.
    """

    def __init__(self, max_page_number: int = 2000, max_page_jump: int = 10):
        self.max_page_number = max_page_number
        self.max_page_jump = max_page_jump
        self.current: Optional[int] = None
        self.pending: Optional[Tuple[int, int]] = None
        self.accepted: List[Tuple[int, int]] = []
        self.rejected: List[int] = []

    def observe(self, number: int, segment: int) -> None:
        """Feed the page-number token found in ``segment``."""
        if not 1 <= number <= self.max_page_number:
            self.rejected.append(number)
            return

        if self.pending is not None:
            pending_number, pending_segment = self.pending
            self.pending = None
            if pending_number < number <= pending_number + self.max_page_jump:
                self._accept(pending_number, pending_segment)
                self._accept(number, segment)
                return
            self.rejected.append(pending_number)

        if self.current is None or self.current < number <= self.current + self.max_page_jump:
            self._accept(number, segment)
        elif number <= self.current:
            self.rejected.append(number)
        else:
            self.pending = (number, segment)

    def finish(self) -> None:
        """Drop a pending jump nothing confirmed."""
        if self.pending is not None:
            self.rejected.append(self.pending[0])
            self.pending = None

    def _accept(self, number: int, segment: int) -> None:
        self.current = number
        self.accepted.append((number, segment))

    @property
    def pages(self) -> List[int]:
        return [number for number, _ in self.accepted]

    @property
    def segment_pages(self) -> Dict[int, int]:
        return {segment: number for number, segment in self.accepted}

    def page_gaps(self) -> List[PageGap]:
        pages = self.pages
        return [
            PageGap(after_page=previous, before_page=following)
            for previous, following in zip(pages, pages[1:])
            if following - previous > 1
        ]


def find_page_token(segment_lines: List[str]) -> Optional[int]:
    """
    Page number printed at the top or bottom of a segment.

    Only the first and last non-blank lines are considered; the bottom
    line wins when both carry a number.
    """
    content = [line for line in segment_lines if not is_blank(line)]
    if not content:
        return None

    for line in (content[-1], content[0]):
        number = parse_page_number(line)
        if number is not None:
            return number
    return None


def track_pages(
    segments: List[List[str]], max_page_number: int = 2000, max_page_jump: int = 10
) -> PageTracker:
    """Run a ``PageTracker`` over the segments of a text."""
    tracker = PageTracker(max_page_number=max_page_number, max_page_jump=max_page_jump)
    for index, segment_lines in enumerate(segments):
        number = find_page_token(segment_lines)
        if number is not None:
            tracker.observe(number, index)
    tracker.finish()

    if tracker.rejected:
        logger.debug("Ignored implausible page numbers", rejected=tracker.rejected)
    return tracker
