"""
Helpers for the image directories shared by the pipeline stages.
"""

from pathlib import Path
from typing import Iterable, List, Optional, Union

IMAGE_EXTENSIONS = (".jpg", ".jpeg", ".png")


def list_image_paths(
    directory: Union[str, Path], extensions: Optional[Iterable[str]] = None
) -> List[Path]:
    """Image files of a directory in sorted (temporal) order."""
    allowed = tuple(extensions or IMAGE_EXTENSIONS)
    return sorted(
        path
        for path in Path(directory).iterdir()
        if path.is_file() and path.suffix.lower() in allowed
    )
