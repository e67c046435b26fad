"""
Heading and page-number rules for chapter detection.

Each heading rule inspects one line of OCR text (with its neighbours) and
either proposes a ``HeadingCandidate`` or declines. The scanner in
``detector`` only sees the ``HeadingRule`` interface, so rules can be
tested and swapped independently of the scanning control flow.
"""

import re
from typing import List, Optional, Pattern

import structlog

from ..ocr.types import PAGE_SEPARATOR
from .types import HeadingCandidate, HeadingStrength

logger = structlog.get_logger(__name__)

UPPER = "A-ZÅÄÖÆØÜÉ"
LETTERS = "A-Za-zÅÄÖåäöÆØæøÜüÉé"

REAL_WORD = re.compile(rf"[{LETTERS}]{{3,}}")
WHITESPACE = re.compile(r"\s+")

# "- 12 -", "[12]", "s. 12", "Sida 12", "Page 12" or a bare number
PAGE_NUMBER_LINE = re.compile(
    r"^(?:[-–—]\s*)?"
    r"(?:(?:s\.|sid\.|sida|page|p\.)\s*)?"
    r"[\[(]?(\d{1,4})[\])]?"
    r"(?:\s*[-–—])?$",
    re.IGNORECASE,
)

ROMAN_NUMERAL = re.compile(r"^M{0,3}(CM|CD|D?C{0,3})(XC|XL|L?X{0,3})(IX|IV|V?I{0,3})$")
ROMAN_VALUES = {"I": 1, "V": 5, "X": 10, "L": 50, "C": 100, "D": 500, "M": 1000}

TERMINAL_PUNCTUATION = ".,;:!?-"


def has_real_words(title: str) -> bool:
    """
    Whether a heading title looks like language rather than OCR noise.

    Needs two words of three or more letters, or one word of at least
    eight, and at least eight non-space characters overall.
    """
    words = REAL_WORD.findall(title)
    real = len(words) >= 2 or any(len(word) >= 8 for word in words)
    return real and len(WHITESPACE.sub("", title)) >= 8


def parse_page_number(line: str) -> Optional[int]:
    """Page number printed on ``line``, or None if the line is not a page token."""
    match = PAGE_NUMBER_LINE.match(line.strip())
    if not match:
        return None
    return int(match.group(1))


def parse_roman(numeral: str) -> Optional[int]:
    numeral = numeral.upper()
    if not numeral or not ROMAN_NUMERAL.match(numeral):
        return None

    total = 0
    for index, char in enumerate(numeral):
        value = ROMAN_VALUES[char]
        following = ROMAN_VALUES[numeral[index + 1]] if index + 1 < len(numeral) else 0
        total += -value if value < following else value
    return total


def is_separator(line: str) -> bool:
    return line.strip() == PAGE_SEPARATOR


def is_blank(line: str) -> bool:
    return not line.strip() or is_separator(line)


def normalize_title(title: str) -> str:
    return WHITESPACE.sub(" ", title).strip()


class HeadingRule:
    """Strategy interface for recognizing one family of chapter headings."""

    name = "heading"

    def match(
        self, lines: List[str], index: int, near_page_break: bool = False
    ) -> Optional[HeadingCandidate]:
        """
        Inspect ``lines[index]``.

        Args:
            lines: Stripped lines of the text being scanned
            index: Position of the line to inspect
            near_page_break: The line is the first or last of a page segment
                with another page on that side

        Returns:
            A candidate, or None if the rule does not apply
        """
        raise NotImplementedError


class ExplicitChapterRule(HeadingRule):
    """``Kapitel 3``, ``Kap. 3: Titel``, ``Chapter IV - Title``, ``Ch. 2``."""

    name = "explicit"

    def __init__(self, max_title_words: int = 10, max_number: int = 99):
        self.max_title_words = max_title_words
        self.max_number = max_number
        self.pattern: Pattern = re.compile(
            r"^(kapitel|kap\.?|chapter|ch\.)\s+(\d{1,3}|[ivxlcdm]+)\b[\s:.\-–—]*(.*)$",
            re.IGNORECASE,
        )

    def match(self, lines, index, near_page_break=False):
        match = self.pattern.match(lines[index])
        if not match:
            return None

        keyword, raw_number, rest = match.groups()
        number = int(raw_number) if raw_number.isdigit() else parse_roman(raw_number)
        if not number:
            return None

        title = normalize_title(rest)
        placeholder = "Kapitel" if keyword.lower().startswith("kap") else "Chapter"

        if number > self.max_number:
            # Misread digits; no book gets this far
            return HeadingCandidate(
                title=title or normalize_title(lines[index]),
                strength=HeadingStrength.PARTIAL,
                rule=self.name,
                reason=f"chapter number {number} out of range",
            )

        if len(title.split()) > self.max_title_words:
            return HeadingCandidate(
                title=title,
                number=number,
                strength=HeadingStrength.PARTIAL,
                rule=self.name,
                reason="chapter marker followed by running text",
            )

        return HeadingCandidate(
            title=title or f"{placeholder} {number}",
            number=number,
            strength=HeadingStrength.STRONG,
            rule=self.name,
        )


class NumberedTitleRule(HeadingRule):
    """
    ``1. DE FREDLÖSA I SHERWOOD-SKOGEN``.

    The uppercase title may follow on the next line and continue over up to
    ``max_continuation`` further uppercase lines. Titles without real words
    (``7. XYZ ABC``) are only partial matches.
    """

    name = "numbered"

    def __init__(self, max_number: int = 99, max_continuation: int = 2):
        self.max_number = max_number
        self.max_continuation = max_continuation
        self.number_pattern: Pattern = re.compile(r"^(\d{1,2})\.\s*(.*)$")
        self.title_pattern: Pattern = re.compile(rf"^[{UPPER}][{UPPER}\s\-']*$")

    def match(self, lines, index, near_page_break=False):
        match = self.number_pattern.match(lines[index])
        if not match:
            return None

        number = int(match.group(1))
        if not 1 <= number <= self.max_number:
            return None

        title_parts: List[str] = []
        line_count = 1
        rest = match.group(2).strip()

        if rest:
            if not self.title_pattern.match(rest):
                return None
            title_parts.append(rest)
        elif index + 1 < len(lines) and self.title_pattern.match(lines[index + 1]):
            title_parts.append(lines[index + 1])
            line_count = 2
        else:
            return None

        for _ in range(self.max_continuation):
            position = index + line_count
            if position >= len(lines):
                break
            following = lines[position]
            if len(following) <= 3 or not self.title_pattern.match(following):
                break
            title_parts.append(following)
            line_count += 1

        title = normalize_title(" ".join(title_parts))
        if has_real_words(title):
            return HeadingCandidate(
                title=title,
                number=number,
                strength=HeadingStrength.STRONG,
                rule=self.name,
                line_count=line_count,
            )

        return HeadingCandidate(
            title=title,
            number=number,
            strength=HeadingStrength.PARTIAL,
            rule=self.name,
            line_count=line_count,
            reason="numbered heading without recognizable title words",
        )


class IsolatedTitleRule(HeadingRule):
    """
    An unnumbered short line standing alone between blank lines.

    ALL CAPS with real words is a strong match and Title Case a partial
    one. Lines next to a page break are usually running heads, so any match
    there is downgraded to partial.
    """

    name = "isolated"

    def __init__(self, max_words: int = 8, max_length: int = 60):
        self.max_words = max_words
        self.max_length = max_length

    def match(self, lines, index, near_page_break=False):
        line = lines[index]
        if not self._is_isolated(lines, index):
            return None
        if len(line) > self.max_length or len(line.split()) > self.max_words:
            return None
        if line[0].isdigit() or line[-1] in TERMINAL_PUNCTUATION:
            return None

        letters = [char for char in line if char.isalpha()]
        if not letters:
            return None

        title = normalize_title(line)
        if all(char.isupper() for char in letters):
            if has_real_words(title):
                strength, reason = HeadingStrength.STRONG, ""
            else:
                strength, reason = HeadingStrength.PARTIAL, "short uppercase line"
        elif self._is_title_case(title):
            strength, reason = HeadingStrength.PARTIAL, "isolated title case line"
        else:
            return None

        if strength == HeadingStrength.STRONG and near_page_break:
            strength, reason = HeadingStrength.PARTIAL, "possible running head at page break"

        return HeadingCandidate(title=title, strength=strength, rule=self.name, reason=reason)

    @staticmethod
    def _is_isolated(lines: List[str], index: int) -> bool:
        before = index == 0 or is_blank(lines[index - 1])
        after = index + 1 >= len(lines) or is_blank(lines[index + 1])
        return before and after

    @staticmethod
    def _is_title_case(title: str) -> bool:
        words = [word for word in title.split() if word[0].isalpha()]
        return len(words) >= 2 and all(word[0].isupper() for word in words)


def default_rules() -> List[HeadingRule]:
    """Rules in priority order; the first match wins."""
    return [ExplicitChapterRule(), NumberedTitleRule(), IsolatedTitleRule()]
