"""
OCR primitive: Tesseract through pytesseract.

The pipeline only depends on the ``Recognizer`` protocol (image path and
language hint in, text and a 0-100 confidence out); ``TesseractRecognizer``
is the production implementation.
"""

from pathlib import Path
from typing import Dict, List, Optional, Protocol, Tuple

import pytesseract
import structlog
from PIL import Image, UnidentifiedImageError

from ..common.errors import ExtractionError
from .types import RecognizedText

logger = structlog.get_logger(__name__)

# ISO 639-1 hints accepted alongside Tesseract's own language codes
LANGUAGE_ALIASES: Dict[str, str] = {
    "sv": "swe",
    "en": "eng",
    "de": "deu",
    "fr": "fra",
    "es": "spa",
    "da": "dan",
    "no": "nor",
    "nb": "nor",
    "fi": "fin",
}


def resolve_language(language: str) -> str:
    """Map a language hint onto a Tesseract language code."""
    parts = [LANGUAGE_ALIASES.get(part.strip().lower(), part.strip()) for part in language.split("+")]
    return "+".join(part for part in parts if part)


class Recognizer(Protocol):
    def recognize(
        self, image_path: str, language: str, timeout: Optional[float] = None
    ) -> RecognizedText:
        ...


class TesseractRecognizer:
    """
    Recognizes a page image with Tesseract.

    Confidence is the mean of Tesseract's word confidences, ignoring the
    -1 entries it reports for layout elements; an image without words has
    confidence 0.
    """

    def __init__(
        self,
        tesseract_cmd: Optional[str] = None,
        default_timeout: float = 0,
        config: str = "",
    ):
        """
        Initialize recognizer.

        Args:
            tesseract_cmd: Path to the Tesseract executable
            default_timeout: Seconds per call, 0 for no limit
            config: Extra Tesseract command line options
        """
        if tesseract_cmd:
            pytesseract.pytesseract.tesseract_cmd = tesseract_cmd
        self.default_timeout = default_timeout
        self.config = config
        self.logger = logger.bind(component="TesseractRecognizer")

    def recognize(
        self, image_path: str, language: str, timeout: Optional[float] = None
    ) -> RecognizedText:
        path = Path(image_path)
        if not path.is_file():
            raise ExtractionError(f"Image file not found: {path}", source=str(path))

        lang = resolve_language(language)
        call_timeout = self.default_timeout if timeout is None else timeout

        try:
            with Image.open(path) as image:
                data = pytesseract.image_to_data(
                    image,
                    lang=lang,
                    config=self.config,
                    output_type=pytesseract.Output.DICT,
                    timeout=call_timeout,
                )
        except pytesseract.TesseractNotFoundError as e:
            raise ExtractionError("Tesseract is not installed or not on PATH") from e
        except (UnidentifiedImageError, OSError) as e:
            raise ExtractionError(
                f"Could not open image {path}: {e}", source=str(path)
            ) from e
        except pytesseract.TesseractError as e:
            raise ExtractionError(
                f"Tesseract failed on {path}: {e.message}", source=str(path)
            ) from e
        except RuntimeError as e:
            # pytesseract signals a killed process with a bare RuntimeError
            raise ExtractionError(f"Tesseract timed out on {path}", source=str(path)) from e

        text, confidence = assemble_text(data)

        self.logger.debug(
            "Image recognized",
            image_path=str(path),
            language=lang,
            confidence=round(confidence, 1),
            text_length=len(text),
        )
        return RecognizedText(text=text, confidence=confidence)


def assemble_text(data: Dict[str, List]) -> Tuple[str, float]:
    """
    Rebuild page text from ``image_to_data`` output.

    Words on the same line are joined by spaces; a new paragraph or block
    starts after a blank line so headings stay isolated.
    """
    lines: List[str] = []
    confidences: List[float] = []
    current_key = None
    current_para = None
    words: List[str] = []

    for index, word in enumerate(data.get("text", [])):
        conf = float(data["conf"][index])
        word = (word or "").strip()
        if not word or conf < 0:
            continue

        para_key = (data["block_num"][index], data["par_num"][index])
        line_key = para_key + (data["line_num"][index],)

        if line_key != current_key:
            if words:
                lines.append(" ".join(words))
            if current_para is not None and para_key != current_para:
                lines.append("")
            words = []
            current_key = line_key
            current_para = para_key

        words.append(word)
        confidences.append(conf)

    if words:
        lines.append(" ".join(words))

    confidence = sum(confidences) / len(confidences) if confidences else 0.0
    return "\n".join(lines).strip(), confidence
