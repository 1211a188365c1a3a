"""
File scanner module for discovering images in a project folder.

Lists the top level of a folder, filtered to supported image files.
Subfolders are not descended into.
"""

import logging
from pathlib import Path
from typing import Iterator

from pipeline.errors import FolderNotFoundError

logger = logging.getLogger(__name__)

# Supported image extensions
IMAGE_EXTENSIONS = {".jpg", ".jpeg", ".png", ".gif", ".webp", ".bmp"}


class FileScanner:
    """
    Scanner for discovering image files in a directory.

    Attributes:
        extensions: Set of file extensions to include.
    """

    def __init__(self, extensions: set[str] | None = None):
        """
        Initialize the file scanner.

        Args:
            extensions: Set of file extensions to scan for.
                       Defaults to IMAGE_EXTENSIONS.
        """
        self.extensions = extensions or IMAGE_EXTENSIONS

    def scan(self, directory: str | Path) -> list[Path]:
        """
        Scan directory for image files.

        Args:
            directory: Path to directory to scan.

        Returns:
            List of paths to image files, sorted by name.

        Raises:
            FolderNotFoundError: If the directory doesn't exist, isn't a
                                 directory or can't be listed.
        """
        directory = Path(directory)

        if not directory.exists():
            raise FolderNotFoundError(f"Folder not found: {directory}")

        if not directory.is_dir():
            raise FolderNotFoundError(f"Path is not a directory: {directory}")

        try:
            images = list(self._scan_iter(directory))
        except OSError as e:
            raise FolderNotFoundError(f"Cannot read folder {directory}: {e}") from e

        images.sort(key=lambda p: p.name.lower())

        logger.info(f"Found {len(images)} image(s) in {directory}")
        return images

    def _scan_iter(self, directory: Path) -> Iterator[Path]:
        for path in directory.iterdir():
            if self._is_image(path):
                yield path

    def _is_image(self, path: Path) -> bool:
        """
        Check if path is a supported image file.

        Args:
            path: Path to check.

        Returns:
            True if path is an image file.
        """
        return (
            path.is_file() and
            path.suffix.lower() in self.extensions and
            not path.name.startswith(".")  # Skip hidden files
        )
