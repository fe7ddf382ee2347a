"""Photo discovery helpers."""

from pathlib import Path
from typing import List, Union

import structlog

from photojury.models.batch import BatchItem

logger = structlog.get_logger()

SUPPORTED_EXTENSIONS = frozenset({".jpg", ".jpeg", ".png", ".gif", ".webp", ".heic"})


def is_supported_photo(path: Path) -> bool:
    return path.suffix.lower() in SUPPORTED_EXTENSIONS


def discover_photos(directory: Union[str, Path]) -> List[BatchItem]:
    """Find supported photos in a directory (non-recursive).

    Args:
        directory: Directory to scan

    Returns:
        BatchItems sorted by filename; the filename is the item ID

    Raises:
        FileNotFoundError: If the directory does not exist
    """
    root = Path(directory)
    if not root.is_dir():
        raise FileNotFoundError(f"Photo directory not found: {root}")

    items = [
        BatchItem(item_id=path.name, path=path)
        for path in sorted(root.iterdir(), key=lambda p: p.name)
        if path.is_file() and is_supported_photo(path)
    ]

    logger.info("photos_discovered", directory=str(root), count=len(items))
    return items
