"""
Background job layer: queue, worker and job handlers for OCR processing.
"""
