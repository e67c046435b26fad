from .ocr_tasks import OCRJobHandler

__all__ = ["OCRJobHandler"]
