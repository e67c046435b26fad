"""
OCR over page images: the Tesseract primitive and batch aggregation.
"""

from .aggregator import OCRAggregator
from .engine import Recognizer, TesseractRecognizer, resolve_language
from .types import (
    DEFAULT_LANGUAGE,
    PAGE_JOINER,
    PAGE_SEPARATOR,
    BatchOcrResult,
    OcrResult,
    RecognizedText,
)

__all__ = [
    "OCRAggregator",
    "Recognizer",
    "TesseractRecognizer",
    "resolve_language",
    "RecognizedText",
    "OcrResult",
    "BatchOcrResult",
    "PAGE_SEPARATOR",
    "PAGE_JOINER",
    "DEFAULT_LANGUAGE",
]
