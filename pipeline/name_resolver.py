"""
Filename generation and collision handling.

Provides:
- Pattern cleaning of camera/export prefixes (IMG_, DSC_, dates, ids)
- Sanitizing AI suggestions into safe filename bases
- Collision-free name resolution across every namespace a rename touches
"""

import logging
import re
from pathlib import Path
from typing import Callable, Iterable

from pipeline.blob_store import BlobStore, storage_path
from pipeline.errors import NameCollisionError

logger = logging.getLogger(__name__)

MAX_NAME_LENGTH = 50
MIN_CLEAN_LENGTH = 3
MAX_COLLISION_ATTEMPTS = 10000

# A camera counter is stripped only when more text follows it; a bare
# counter ("IMG_2045") keeps the digits as the name.
_COUNTER = r"[_-]?(?:\d+[_ -]+|(?=\d+$))"

# Tried in order; the first match is applied once.
PREFIX_PATTERNS = [
    re.compile(r"^imgi?" + _COUNTER, re.IGNORECASE),
    re.compile(r"^dsc[nf]?" + _COUNTER, re.IGNORECASE),
    re.compile(r"^photo" + _COUNTER, re.IGNORECASE),
    re.compile(r"^image" + _COUNTER, re.IGNORECASE),
    re.compile(r"^pic" + _COUNTER, re.IGNORECASE),
    re.compile(r"^screenshot" + _COUNTER, re.IGNORECASE),
    re.compile(r"^\d{4}-\d{2}-\d{2}[_ -]*"),
    re.compile(r"^\d{8}[_-]+(?:\d+[_-]+)?"),
    re.compile(r"^\d+[_-]+"),
]

_UNSAFE_CHARS = re.compile(r"[^a-z0-9_]")
_ILLEGAL_PATH_CHARS = re.compile(r'[<>:"/\\|?*]')

Namespace = Callable[[str], bool]


def sanitize(name: str) -> str:
    """
    Turn a free-form name into a filename base.

    Lowercases, replaces every character outside [a-z0-9_] with an
    underscore and truncates to 50 characters.
    """
    return _UNSAFE_CHARS.sub("_", name.lower())[:MAX_NAME_LENGTH]


def sanitize_filename(name: str) -> str:
    """Replace only characters that are illegal in paths."""
    return _ILLEGAL_PATH_CHARS.sub("_", name)


def pattern_clean(original_name: str) -> str | None:
    """
    Strip a camera/export prefix from a filename.

    Args:
        original_name: Filename including extension.

    Returns:
        Sanitized base without extension, or None when no pattern matches
        or what is left is too short to be a useful name.
    """
    base = Path(original_name).stem

    for pattern in PREFIX_PATTERNS:
        if pattern.search(base):
            cleaned = pattern.sub("", base, count=1)
            break
    else:
        return None

    cleaned = cleaned.strip(" _-")
    if len(cleaned) < MIN_CLEAN_LENGTH:
        return None

    return sanitize(cleaned)


class LocalNamespace:
    """Filenames taken in a local directory."""

    def __init__(self, directory: str | Path, own_name: str | None = None):
        self.directory = Path(directory)
        self.own_name = own_name

    def __call__(self, filename: str) -> bool:
        if filename == self.own_name:
            return False
        return (self.directory / filename).exists()


class BlobNamespace:
    """Filenames taken under a project's prefix in the blob store."""

    def __init__(
        self,
        store: BlobStore,
        project_name: str,
        own_name: str | None = None
    ):
        self.store = store
        self.project_name = project_name
        self.own_name = own_name

    def __call__(self, filename: str) -> bool:
        if filename == self.own_name:
            return False
        return self.store.exists(storage_path(self.project_name, filename))


def resolve_collision(
    directory: str | Path | None,
    candidate_base: str,
    extension: str,
    extra_namespaces: Iterable[Namespace] = (),
    own_name: str | None = None,
    max_attempts: int = MAX_COLLISION_ATTEMPTS
) -> str:
    """
    Find a filename that is free in every target namespace.

    Probes base+ext, base_1+ext, base_2+ext, ... and returns the first
    name no namespace reports as taken.

    Args:
        directory: Local directory being renamed into, or None.
        candidate_base: Desired name without extension.
        extension: Extension including the dot.
        extra_namespaces: Additional is_taken(filename) predicates,
                          e.g. a BlobNamespace.
        own_name: Current name of the file being renamed; counts as free.
        max_attempts: Probe limit before giving up.

    Returns:
        Final filename including extension.

    Raises:
        NameCollisionError: If every probed name is taken.
    """
    namespaces: list[Namespace] = []
    if directory is not None:
        namespaces.append(LocalNamespace(directory, own_name))
    namespaces.extend(extra_namespaces)

    candidate = f"{candidate_base}{extension}"
    counter = 1
    while counter <= max_attempts:
        if not any(is_taken(candidate) for is_taken in namespaces):
            if counter > 1:
                logger.debug(f"Name collision: {candidate_base}{extension} -> {candidate}")
            return candidate
        candidate = f"{candidate_base}_{counter}{extension}"
        counter += 1

    raise NameCollisionError(
        f"No free name for {candidate_base}{extension} after {max_attempts} attempts"
    )
