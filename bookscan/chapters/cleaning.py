"""
Normalization of raw OCR text for display.
"""

import re

from ..ocr.types import PAGE_SEPARATOR

# Characters Tesseract emits for specks, rules and bleed-through
OCR_NOISE = re.compile(r"[|\\/<>{}\[\]@#$%^&*+=~`]")
HORIZONTAL_SPACE = re.compile(r"[ \t]+")
EXCESS_NEWLINES = re.compile(r"\n{3,}")


def clean_ocr_text(text: str) -> str:
    """Drop OCR noise symbols and page markers and normalize whitespace."""
    text = text.replace(PAGE_SEPARATOR, "\n\n")
    text = OCR_NOISE.sub(" ", text)
    text = HORIZONTAL_SPACE.sub(" ", text)
    text = "\n".join(line.strip() for line in text.split("\n"))
    return EXCESS_NEWLINES.sub("\n\n", text).strip()
