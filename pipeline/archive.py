"""
ZIP export of a project's images.

Files are stored under their current names; records whose file is gone
are skipped.
"""

import io
import logging
import zipfile
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable

from db.records import ImageRecord
from pipeline.blob_store import sanitize_path_segment
from pipeline.errors import NoTargetsError

logger = logging.getLogger(__name__)


@dataclass
class ArchiveResult:
    """An in-memory archive ready to send."""
    buffer: io.BytesIO
    added: int = 0
    skipped: int = 0


def archive_filename(project_name: str) -> str:
    """Download name for a project archive, e.g. 'holiday_photos.zip'."""
    return f"{sanitize_path_segment(project_name or '') or 'images'}.zip"


def build_archive(records: Iterable[ImageRecord]) -> ArchiveResult:
    """
    Write the records' files into a deflated ZIP archive.

    Args:
        records: Image records; each file is added as its current name.

    Returns:
        ArchiveResult with the buffer rewound to the start.

    Raises:
        NoTargetsError: If there are no records at all.
    """
    records = list(records)
    if not records:
        raise NoTargetsError("No images found for this project")

    result = ArchiveResult(buffer=io.BytesIO())
    with zipfile.ZipFile(result.buffer, "w", compression=zipfile.ZIP_DEFLATED) as archive:
        for record in records:
            path = Path(record.local_path)
            name = record.current_name or path.name
            try:
                archive.write(path, arcname=name)
            except OSError as e:
                logger.warning(f"Skipping missing file for archive: {path} ({e})")
                result.skipped += 1
                continue
            result.added += 1

    result.buffer.seek(0)
    return result
