"""
Type definitions for OCR processing.
"""

from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional

# Separates per-image texts in combined output. Chapter detection relies on
# it to locate image (page) boundaries inside otherwise free text.
PAGE_SEPARATOR = "---PAGE---"
PAGE_JOINER = f"\n\n{PAGE_SEPARATOR}\n\n"

DEFAULT_LANGUAGE = "swe"


@dataclass
class RecognizedText:
    """Raw output of the OCR primitive for one image."""

    text: str
    confidence: float


@dataclass
class OcrResult:
    """Recognized text of a single image."""

    text: str
    confidence: float
    image_path: str

    @property
    def has_text(self) -> bool:
        return bool(self.text)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.text,
            "confidence": self.confidence,
            "image_path": self.image_path,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "OcrResult":
        return cls(
            text=data["text"],
            confidence=float(data["confidence"]),
            image_path=data["image_path"],
        )


@dataclass
class BatchOcrResult:
    """Recognized text of an ordered batch of images."""

    per_image: List[OcrResult] = field(default_factory=list)
    language: Optional[str] = None

    @property
    def combined_text(self) -> str:
        return PAGE_JOINER.join(result.text for result in self.per_image)

    @property
    def average_confidence(self) -> float:
        if not self.per_image:
            return 0.0
        return sum(result.confidence for result in self.per_image) / len(
            self.per_image
        )

    @property
    def empty_image_count(self) -> int:
        return sum(1 for result in self.per_image if not result.has_text)

    def to_dict(self) -> Dict[str, Any]:
        return {
            "text": self.combined_text,
            "confidence": self.average_confidence,
            "per_image": [result.to_dict() for result in self.per_image],
            "combined_text": self.combined_text,
            "average_confidence": self.average_confidence,
        }
