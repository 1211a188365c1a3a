"""
Per-file and per-project state tracked by the pipeline.

Provides:
- ImageRecord: one entry per physical file known to a project
- ImageMetadata: typed metadata bag with an open extension map
- Project: a named folder with aggregate counters
- TaxonomyEntry: a shared tag/color/category/style/mood label
- Record status ordering and JSON merge-patch helpers

Records serialize to plain JSON documents. Unset (None) fields are
omitted so heterogeneous documents round-trip through any store.
"""

import re
import secrets
import time
from dataclasses import dataclass, field, fields
from datetime import datetime, timezone
from enum import Enum
from typing import Any


class RecordStatus(Enum):
    """Lifecycle status of an image record."""
    SCANNED = "scanned"
    ANALYZED = "analyzed"
    RENAMED = "renamed"
    ERROR = "error"


class ProjectStatus(Enum):
    """Lifecycle status of a project."""
    CREATED = "created"
    SCANNED = "scanned"


_STATUS_ORDER = {
    RecordStatus.SCANNED: 0,
    RecordStatus.ANALYZED: 1,
    RecordStatus.RENAMED: 2,
}


def advance_status(current: RecordStatus, new: RecordStatus) -> RecordStatus:
    """
    Apply a status transition.

    Forward moves and moves to ERROR are applied; backward moves keep the
    current status. A record in ERROR may move to any status.
    """
    if new is RecordStatus.ERROR or current is RecordStatus.ERROR:
        return new
    if _STATUS_ORDER[new] >= _STATUS_ORDER[current]:
        return new
    return current


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def to_base36(number: int) -> str:
    if number == 0:
        return "0"
    digits = []
    while number:
        number, remainder = divmod(number, 36)
        digits.append(_BASE36[remainder])
    return "".join(reversed(digits))


def generate_id(prefix: str) -> str:
    """Unique id: prefix, base36 millisecond timestamp, 6 random base36 chars."""
    timestamp = to_base36(int(time.time() * 1000))
    suffix = "".join(secrets.choice(_BASE36) for _ in range(6))
    return f"{prefix}_{timestamp}_{suffix}"


def to_iso(value: datetime | None) -> str | None:
    return value.isoformat() if value else None


def from_iso(value: Any) -> datetime | None:
    if value is None or isinstance(value, datetime):
        return value
    return datetime.fromisoformat(value)


_ID_UNSAFE = re.compile(r"[^a-zA-Z0-9._-]")


def generate_image_id(content_hash: str, original_name: str) -> str:
    """
    Derive a record id from content hash and original filename.

    The same unchanged file always yields the same id, so rescans
    overwrite rather than duplicate.
    """
    safe_name = _ID_UNSAFE.sub("_", original_name)[:50]
    return f"{content_hash[:8]}_{safe_name}"


def merge_patch(target: dict, patch: dict) -> dict:
    """
    Apply a JSON merge-patch to a document.

    Nested dicts merge key-wise, None removes a key, anything else
    replaces. Returns a new dict; neither argument is modified.
    """
    result = dict(target)
    for key, value in patch.items():
        if value is None:
            result.pop(key, None)
        elif isinstance(value, dict) and isinstance(result.get(key), dict):
            result[key] = merge_patch(result[key], value)
        elif isinstance(value, dict):
            result[key] = merge_patch({}, value)
        else:
            result[key] = value
    return result


def _compact(data: dict) -> dict:
    return {k: v for k, v in data.items() if v is not None}


# ────────────────────────────────────────────────────────────────────────────────
# Metadata
# ────────────────────────────────────────────────────────────────────────────────

@dataclass
class ImageMetadata:
    """
    Image metadata from the header parse, EXIF and the analyzer.

    Keys the model does not know about are kept in `extra` so newer
    analyzer fields survive a round trip.
    """
    # File/header
    width: int | None = None
    height: int | None = None
    resolution: str | None = None
    megapixels: float | None = None
    filesize_kb: float | None = None
    filesize_mb: float | None = None
    colorspace: str | None = None

    # EXIF
    camera_make: str | None = None
    camera_model: str | None = None
    date_taken: str | None = None

    # Analysis
    title: str | None = None
    description: str | None = None
    tags: list[str] | None = None
    colors: list[str] | None = None
    objects: list[str] | None = None
    category: str | None = None
    subcategory: str | None = None
    style: str | None = None
    mood: str | None = None
    confidence: float | None = None
    analysis_model: str | None = None
    analysis_error: str | None = None
    analyzed_at: str | None = None
    last_modified: str | None = None

    # Taxonomy ids
    tag_ids: list[str] | None = None
    color_ids: list[str] | None = None
    category_id: str | None = None
    style_id: str | None = None
    mood_id: str | None = None

    extra: dict[str, Any] = field(default_factory=dict)

    def merge(self, newer: "ImageMetadata") -> "ImageMetadata":
        """
        Field-level merge with a newer bag.

        Values set on `newer` win; unset values fall through to self.
        """
        merged = {}
        for f in fields(self):
            if f.name == "extra":
                continue
            value = getattr(newer, f.name)
            merged[f.name] = value if value is not None else getattr(self, f.name)
        return ImageMetadata(**merged, extra={**self.extra, **newer.extra})

    def to_dict(self) -> dict:
        data = {f.name: getattr(self, f.name) for f in fields(self) if f.name != "extra"}
        data = _compact(data)
        for key, value in self.extra.items():
            data.setdefault(key, value)
        return data

    @classmethod
    def from_dict(cls, data: dict | None) -> "ImageMetadata":
        if not data:
            return cls()
        known = {f.name for f in fields(cls)} - {"extra"}
        values = {k: v for k, v in data.items() if k in known}
        extra = {k: v for k, v in data.items() if k not in known}
        return cls(**values, extra=extra)


# ────────────────────────────────────────────────────────────────────────────────
# Image record
# ────────────────────────────────────────────────────────────────────────────────

@dataclass
class ImageRecord:
    """One physical file known to a project."""
    id: str
    project_id: str
    original_name: str
    current_name: str
    local_path: str
    size_bytes: int
    content_hash: str
    extension: str
    created_at: datetime | None = None
    modified_at: datetime | None = None
    scanned_at: datetime | None = None
    analyzed_at: datetime | None = None
    renamed_at: datetime | None = None
    status: RecordStatus = RecordStatus.SCANNED
    suggested_name: str | None = None
    pattern_clean_name: str | None = None
    ai_description: str | None = None
    is_duplicate: bool = False
    duplicate_of: list[str] = field(default_factory=list)
    renamed: bool = False
    blob_url: str | None = None
    blob_path: str | None = None
    metadata: ImageMetadata = field(default_factory=ImageMetadata)

    _DATETIME_FIELDS = ("created_at", "modified_at", "scanned_at", "analyzed_at", "renamed_at")

    def __repr__(self) -> str:
        return (
            f"<ImageRecord(id='{self.id}', current_name='{self.current_name}', "
            f"status={self.status.value})>"
        )

    def to_dict(self) -> dict:
        """Convert to a JSON document, omitting unset fields."""
        data = {
            "id": self.id,
            "project_id": self.project_id,
            "original_name": self.original_name,
            "current_name": self.current_name,
            "local_path": self.local_path,
            "size_bytes": self.size_bytes,
            "content_hash": self.content_hash,
            "extension": self.extension,
            "status": self.status.value,
            "suggested_name": self.suggested_name,
            "pattern_clean_name": self.pattern_clean_name,
            "ai_description": self.ai_description,
            "is_duplicate": self.is_duplicate,
            "duplicate_of": list(self.duplicate_of),
            "renamed": self.renamed,
            "blob_url": self.blob_url,
            "blob_path": self.blob_path,
            "metadata": self.metadata.to_dict(),
        }
        for name in self._DATETIME_FIELDS:
            data[name] = to_iso(getattr(self, name))
        return _compact(data)

    @classmethod
    def from_dict(cls, data: dict) -> "ImageRecord":
        """Build a record from a stored document."""
        return cls(
            id=data["id"],
            project_id=data["project_id"],
            original_name=data["original_name"],
            current_name=data.get("current_name", data["original_name"]),
            local_path=data.get("local_path", ""),
            size_bytes=data.get("size_bytes", 0),
            content_hash=data.get("content_hash", ""),
            extension=data.get("extension", ""),
            created_at=from_iso(data.get("created_at")),
            modified_at=from_iso(data.get("modified_at")),
            scanned_at=from_iso(data.get("scanned_at")),
            analyzed_at=from_iso(data.get("analyzed_at")),
            renamed_at=from_iso(data.get("renamed_at")),
            status=RecordStatus(data.get("status", RecordStatus.SCANNED.value)),
            suggested_name=data.get("suggested_name"),
            pattern_clean_name=data.get("pattern_clean_name"),
            ai_description=data.get("ai_description"),
            is_duplicate=data.get("is_duplicate", False),
            duplicate_of=list(data.get("duplicate_of", [])),
            renamed=data.get("renamed", False),
            blob_url=data.get("blob_url"),
            blob_path=data.get("blob_path"),
            metadata=ImageMetadata.from_dict(data.get("metadata")),
        )


# ────────────────────────────────────────────────────────────────────────────────
# Project
# ────────────────────────────────────────────────────────────────────────────────

@dataclass
class Project:
    """A named image folder tracked with aggregate counters."""
    id: str
    name: str
    folder_path: str
    description: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    image_count: int = 0
    analyzed_count: int = 0
    renamed_count: int = 0
    status: ProjectStatus = ProjectStatus.CREATED

    @classmethod
    def new(cls, name: str, folder_path: str, description: str | None = None) -> "Project":
        return cls(
            id=generate_id("proj"),
            name=name,
            folder_path=folder_path,
            description=description,
        )

    def to_dict(self) -> dict:
        return _compact({
            "id": self.id,
            "name": self.name,
            "folder_path": self.folder_path,
            "description": self.description,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
            "image_count": self.image_count,
            "analyzed_count": self.analyzed_count,
            "renamed_count": self.renamed_count,
            "status": self.status.value,
        })

    @classmethod
    def from_dict(cls, data: dict) -> "Project":
        return cls(
            id=data["id"],
            name=data["name"],
            folder_path=data["folder_path"],
            description=data.get("description"),
            created_at=from_iso(data.get("created_at")) or utcnow(),
            updated_at=from_iso(data.get("updated_at")) or utcnow(),
            image_count=data.get("image_count", 0),
            analyzed_count=data.get("analyzed_count", 0),
            renamed_count=data.get("renamed_count", 0),
            status=ProjectStatus(data.get("status", ProjectStatus.CREATED.value)),
        )


# ────────────────────────────────────────────────────────────────────────────────
# Taxonomy
# ────────────────────────────────────────────────────────────────────────────────

class TaxonomyType(Enum):
    """Kinds of shared labels referenced by id from image metadata."""
    TAG = "tag"
    COLOR = "color"
    CATEGORY = "category"
    STYLE = "style"
    MOOD = "mood"


@dataclass
class TaxonomyEntry:
    """A canonical label, unique per (type, name)."""
    id: str
    type: TaxonomyType
    name: str
    description: str | None = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    def to_dict(self) -> dict:
        return _compact({
            "id": self.id,
            "type": self.type.value,
            "name": self.name,
            "description": self.description,
            "created_at": to_iso(self.created_at),
            "updated_at": to_iso(self.updated_at),
        })

    @classmethod
    def from_dict(cls, data: dict) -> "TaxonomyEntry":
        return cls(
            id=data["id"],
            type=TaxonomyType(data["type"]),
            name=data["name"],
            description=data.get("description"),
            created_at=from_iso(data.get("created_at")) or utcnow(),
            updated_at=from_iso(data.get("updated_at")) or utcnow(),
        )
