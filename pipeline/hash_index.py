"""
Content hashing and duplicate grouping.

Provides:
- MD5 fingerprints over full file bytes (duplicate detection, not security)
- Grouping of one scan pass into duplicate sets
- Deterministic choice of the primary file in a duplicate set
"""

import hashlib
import logging
from collections import defaultdict
from pathlib import Path
from typing import Iterable

logger = logging.getLogger(__name__)


def compute_hash(data: bytes) -> str:
    """
    Calculate the content fingerprint of a byte buffer.

    Args:
        data: Full file contents.

    Returns:
        32-character hexadecimal MD5 digest.
    """
    return hashlib.md5(data).hexdigest()


def hash_file(filepath: str | Path) -> str:
    """
    Calculate the content fingerprint of a file without loading it at once.

    Args:
        filepath: Path to the file.

    Returns:
        Hexadecimal MD5 digest, identical to compute_hash() of the bytes.
    """
    md5_hash = hashlib.md5()

    with open(filepath, "rb") as f:
        for chunk in iter(lambda: f.read(8192), b""):
            md5_hash.update(chunk)

    return md5_hash.hexdigest()


def group_duplicates(entries: Iterable[tuple[str, str]]) -> dict[str, list[str]]:
    """
    Group keys (filenames or record ids) that share a content hash.

    Args:
        entries: (key, digest) pairs for one scan pass.

    Returns:
        Mapping of digest to sorted keys, only for groups of two or more.
    """
    groups: dict[str, list[str]] = defaultdict(list)
    for filename, digest in entries:
        if not digest:
            continue
        groups[digest].append(filename)

    duplicates = {
        digest: sorted(names)
        for digest, names in groups.items()
        if len(names) > 1
    }

    if duplicates:
        logger.debug(
            f"Found {len(duplicates)} duplicate group(s) covering "
            f"{sum(len(v) for v in duplicates.values())} files"
        )
    return duplicates


def pick_primary(names: Iterable[str]) -> str:
    """Return the file kept when a duplicate group is cleaned up."""
    return min(names)
