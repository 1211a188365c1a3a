"""
Store interfaces and in-memory implementations.

Provides:
- ImageStore: per-project image records keyed by (project_id, image_id)
- ProjectStore: projects with aggregate counters
- TaxonomyStore: shared labels, get-or-create by (type, name)
- JobStore: job documents written through by the job tracker
- Process-lifetime in-memory implementations of all four

The SQLAlchemy implementations live in db.operations. Which pair is used
is decided once at startup by db.database.create_stores().
"""

import copy
import logging
import threading
from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Iterable

from db.records import (
    ImageRecord,
    Project,
    TaxonomyEntry,
    TaxonomyType,
    generate_id,
    merge_patch,
    to_iso,
    utcnow,
)

logger = logging.getLogger(__name__)


# ────────────────────────────────────────────────────────────────────────────────
# Interfaces
# ────────────────────────────────────────────────────────────────────────────────

class ImageStore(ABC):
    """
    Per-project image records.

    Listing order is unspecified; callers that need determinism sort.
    """

    @abstractmethod
    def list(self, project_id: str) -> list[ImageRecord]:
        """All records of a project."""

    @abstractmethod
    def get(self, project_id: str, image_id: str) -> ImageRecord | None:
        """One record, or None."""

    @abstractmethod
    def put(self, project_id: str, record: ImageRecord) -> None:
        """Upsert a record, replacing any stored version."""

    @abstractmethod
    def put_many(self, project_id: str, records: Iterable[ImageRecord]) -> int:
        """Bulk upsert. Returns the number of records written."""

    @abstractmethod
    def update(self, project_id: str, image_id: str, patch: dict) -> ImageRecord | None:
        """
        Merge-patch a stored record.

        Nested dicts merge, None removes a field. Returns the updated
        record, or None if it does not exist.
        """

    @abstractmethod
    def delete(self, project_id: str, image_id: str) -> bool:
        """Delete one record. Returns False if it did not exist."""

    @abstractmethod
    def clear(self, project_id: str) -> int:
        """Delete all records of a project. Returns the number deleted."""


class ProjectStore(ABC):
    """Projects and their aggregate counters."""

    @abstractmethod
    def create(self, project: Project) -> Project:
        """Insert a new project."""

    @abstractmethod
    def get(self, project_id: str) -> Project | None:
        """One project, or None."""

    @abstractmethod
    def list(self) -> list[Project]:
        """All projects, most recently updated first."""

    @abstractmethod
    def update(self, project_id: str, patch: dict) -> Project | None:
        """Merge-patch a project and bump updated_at."""

    @abstractmethod
    def increment_stats(
        self,
        project_id: str,
        analyzed: int = 0,
        renamed: int = 0,
        image_count: int | None = None
    ) -> Project | None:
        """Add to the analyzed/renamed counters and optionally set image_count."""

    @abstractmethod
    def delete(self, project_id: str) -> bool:
        """Delete a project. Returns False if it did not exist."""


class TaxonomyStore(ABC):
    """Shared label registry."""

    @abstractmethod
    def get_or_create(self, taxonomy_type: TaxonomyType, name: str) -> TaxonomyEntry | None:
        """
        Find the entry with exactly this name (case-sensitive, trimmed)
        for the type, creating it if missing. Returns None for a blank name.
        """

    @abstractmethod
    def list(self, taxonomy_type: TaxonomyType | None = None) -> list[TaxonomyEntry]:
        """Entries sorted by name, optionally of one type."""


class JobStore(ABC):
    """Job documents. The job tracker owns the model; the store keeps JSON."""

    @abstractmethod
    def save(self, document: dict) -> None:
        """Upsert a job document keyed by its id."""

    @abstractmethod
    def get(self, job_id: str) -> dict | None:
        """One job document, or None."""

    @abstractmethod
    def list(self, project_id: str | None = None) -> list[dict]:
        """Job documents, optionally of one project."""

    @abstractmethod
    def delete(self, job_id: str) -> bool:
        """Delete a job document. Returns False if it did not exist."""


@dataclass
class Stores:
    """The store set a process runs against."""
    images: ImageStore
    projects: ProjectStore
    taxonomies: TaxonomyStore
    jobs: JobStore
    backend: str = "memory"


# ────────────────────────────────────────────────────────────────────────────────
# In-memory implementations
# ────────────────────────────────────────────────────────────────────────────────

class InMemoryImageStore(ImageStore):
    """Image records held as documents in a process-lifetime dict."""

    def __init__(self):
        self._documents: dict[str, dict[str, dict]] = {}
        self._lock = threading.Lock()

    def list(self, project_id: str) -> list[ImageRecord]:
        with self._lock:
            documents = copy.deepcopy(list(self._documents.get(project_id, {}).values()))
        return [ImageRecord.from_dict(doc) for doc in documents]

    def get(self, project_id: str, image_id: str) -> ImageRecord | None:
        with self._lock:
            document = copy.deepcopy(self._documents.get(project_id, {}).get(image_id))
        return ImageRecord.from_dict(document) if document else None

    def put(self, project_id: str, record: ImageRecord) -> None:
        document = copy.deepcopy(record.to_dict())
        with self._lock:
            self._documents.setdefault(project_id, {})[record.id] = document

    def put_many(self, project_id: str, records: Iterable[ImageRecord]) -> int:
        documents = [copy.deepcopy(record.to_dict()) for record in records]
        with self._lock:
            bucket = self._documents.setdefault(project_id, {})
            for document in documents:
                bucket[document["id"]] = document
        return len(documents)

    def update(self, project_id: str, image_id: str, patch: dict) -> ImageRecord | None:
        with self._lock:
            bucket = self._documents.get(project_id, {})
            if image_id not in bucket:
                return None
            document = merge_patch(bucket[image_id], patch)
            bucket[image_id] = document
        return ImageRecord.from_dict(copy.deepcopy(document))

    def delete(self, project_id: str, image_id: str) -> bool:
        with self._lock:
            return self._documents.get(project_id, {}).pop(image_id, None) is not None

    def clear(self, project_id: str) -> int:
        with self._lock:
            removed = self._documents.pop(project_id, {})
        return len(removed)


class InMemoryProjectStore(ProjectStore):

    def __init__(self):
        self._documents: dict[str, dict] = {}
        self._lock = threading.Lock()

    def create(self, project: Project) -> Project:
        with self._lock:
            self._documents[project.id] = project.to_dict()
        logger.info(f"Project created in memory: {project.id}")
        return project

    def get(self, project_id: str) -> Project | None:
        with self._lock:
            document = self._documents.get(project_id)
        return Project.from_dict(document) if document else None

    def list(self) -> list[Project]:
        with self._lock:
            projects = [Project.from_dict(doc) for doc in self._documents.values()]
        return sorted(projects, key=lambda p: p.updated_at, reverse=True)

    def update(self, project_id: str, patch: dict) -> Project | None:
        patch = {**patch, "updated_at": to_iso(utcnow())}
        with self._lock:
            if project_id not in self._documents:
                return None
            document = merge_patch(self._documents[project_id], patch)
            self._documents[project_id] = document
        return Project.from_dict(document)

    def increment_stats(
        self,
        project_id: str,
        analyzed: int = 0,
        renamed: int = 0,
        image_count: int | None = None
    ) -> Project | None:
        with self._lock:
            document = self._documents.get(project_id)
            if document is None:
                return None
            document["analyzed_count"] = document.get("analyzed_count", 0) + analyzed
            document["renamed_count"] = document.get("renamed_count", 0) + renamed
            if image_count is not None:
                document["image_count"] = image_count
            document["updated_at"] = to_iso(utcnow())
            return Project.from_dict(document)

    def delete(self, project_id: str) -> bool:
        with self._lock:
            return self._documents.pop(project_id, None) is not None


class InMemoryTaxonomyStore(TaxonomyStore):

    def __init__(self):
        self._entries: dict[tuple[TaxonomyType, str], TaxonomyEntry] = {}
        self._lock = threading.Lock()

    def get_or_create(self, taxonomy_type: TaxonomyType, name: str) -> TaxonomyEntry | None:
        trimmed = name.strip()
        if not trimmed:
            return None

        key = (taxonomy_type, trimmed)
        with self._lock:
            entry = self._entries.get(key)
            if entry is None:
                entry = TaxonomyEntry(id=generate_id("tax"), type=taxonomy_type, name=trimmed)
                self._entries[key] = entry
            return copy.copy(entry)

    def list(self, taxonomy_type: TaxonomyType | None = None) -> list[TaxonomyEntry]:
        with self._lock:
            entries = [
                copy.copy(entry) for entry in self._entries.values()
                if taxonomy_type is None or entry.type is taxonomy_type
            ]
        return sorted(entries, key=lambda e: e.name)


class InMemoryJobStore(JobStore):

    def __init__(self):
        self._documents: dict[str, dict] = {}
        self._lock = threading.Lock()

    def save(self, document: dict) -> None:
        with self._lock:
            self._documents[document["id"]] = copy.deepcopy(document)

    def get(self, job_id: str) -> dict | None:
        with self._lock:
            document = self._documents.get(job_id)
            return copy.deepcopy(document) if document else None

    def list(self, project_id: str | None = None) -> list[dict]:
        with self._lock:
            return [
                copy.deepcopy(doc) for doc in self._documents.values()
                if project_id is None or doc.get("project_id") == project_id
            ]

    def delete(self, job_id: str) -> bool:
        with self._lock:
            return self._documents.pop(job_id, None) is not None


def create_memory_stores() -> Stores:
    """Fresh in-memory store set."""
    return Stores(
        images=InMemoryImageStore(),
        projects=InMemoryProjectStore(),
        taxonomies=InMemoryTaxonomyStore(),
        jobs=InMemoryJobStore(),
        backend="memory",
    )
