"""
Ingestion of photographed pages delivered as archives.
"""

from .archive import (
    ArchiveExtraction,
    ArchiveSummary,
    PageArchiveExtractor,
    is_page_entry,
    natural_sort_key,
)

__all__ = [
    "PageArchiveExtractor",
    "ArchiveExtraction",
    "ArchiveSummary",
    "is_page_entry",
    "natural_sort_key",
]
