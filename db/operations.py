"""
SQLAlchemy store implementations.

Provides SQL-backed versions of every store interface:
- SqlImageStore: image record documents keyed by (project_id, id)
- SqlProjectStore: project documents with counter updates
- SqlTaxonomyStore: get-or-create labels with a unique (type, name)
- SqlJobStore: job documents

Every operation runs in its own session via session_scope(), so stores
can be shared between threads.
"""

import logging
from datetime import datetime
from typing import Iterable

from sqlalchemy import delete, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import sessionmaker

from db.database import session_scope
from db.models import ImageRecordRow, JobRow, ProjectRow, TaxonomyRow
from db.records import (
    ImageRecord,
    Project,
    TaxonomyEntry,
    TaxonomyType,
    from_iso,
    generate_id,
    merge_patch,
    to_iso,
    utcnow,
)
from db.stores import ImageStore, JobStore, ProjectStore, Stores, TaxonomyStore

logger = logging.getLogger(__name__)


def _naive_utc(value: datetime) -> datetime:
    """Columns are timezone-naive UTC."""
    return value.replace(tzinfo=None)


class _SqlStore:
    """Shared session handling for the SQL stores."""

    def __init__(self, session_factory: sessionmaker | None = None):
        """
        Args:
            session_factory: Factory for sessions. If None, the global
                             engine from db.database is used.
        """
        self._session_factory = session_factory

    def _scope(self):
        return session_scope(self._session_factory)


# ────────────────────────────────────────────────────────────────────────────────
# Images
# ────────────────────────────────────────────────────────────────────────────────

class SqlImageStore(_SqlStore, ImageStore):
    """Image records stored one JSON document per row."""

    def list(self, project_id: str) -> list[ImageRecord]:
        stmt = select(ImageRecordRow).where(ImageRecordRow.project_id == project_id)
        with self._scope() as session:
            rows = session.execute(stmt).scalars().all()
            return [ImageRecord.from_dict(row.document) for row in rows]

    def get(self, project_id: str, image_id: str) -> ImageRecord | None:
        with self._scope() as session:
            row = session.get(ImageRecordRow, (project_id, image_id))
            return ImageRecord.from_dict(row.document) if row else None

    @staticmethod
    def _upsert(session, project_id: str, record: ImageRecord) -> None:
        document = record.to_dict()
        row = session.get(ImageRecordRow, (project_id, record.id))
        if row is None:
            session.add(ImageRecordRow(
                project_id=project_id,
                id=record.id,
                content_hash=record.content_hash,
                document=document,
            ))
        else:
            row.content_hash = record.content_hash
            row.document = document

    def put(self, project_id: str, record: ImageRecord) -> None:
        with self._scope() as session:
            self._upsert(session, project_id, record)

    def put_many(self, project_id: str, records: Iterable[ImageRecord]) -> int:
        count = 0
        with self._scope() as session:
            for record in records:
                self._upsert(session, project_id, record)
                count += 1
        logger.debug(f"Persisted {count} records for project {project_id}")
        return count

    def update(self, project_id: str, image_id: str, patch: dict) -> ImageRecord | None:
        with self._scope() as session:
            row = session.get(ImageRecordRow, (project_id, image_id))
            if row is None:
                return None
            document = merge_patch(row.document, patch)
            row.document = document
            row.content_hash = document.get("content_hash", row.content_hash)
            return ImageRecord.from_dict(document)

    def delete(self, project_id: str, image_id: str) -> bool:
        with self._scope() as session:
            row = session.get(ImageRecordRow, (project_id, image_id))
            if row is None:
                return False
            session.delete(row)
            return True

    def clear(self, project_id: str) -> int:
        stmt = delete(ImageRecordRow).where(ImageRecordRow.project_id == project_id)
        with self._scope() as session:
            count = session.execute(stmt).rowcount or 0
        logger.info(f"Cleared {count} records for project {project_id}")
        return count


# ────────────────────────────────────────────────────────────────────────────────
# Projects
# ────────────────────────────────────────────────────────────────────────────────

class SqlProjectStore(_SqlStore, ProjectStore):

    def create(self, project: Project) -> Project:
        with self._scope() as session:
            session.add(ProjectRow(
                id=project.id,
                name=project.name,
                document=project.to_dict(),
                updated_at=_naive_utc(project.updated_at),
            ))
        logger.info(f"Project created: {project.id}")
        return project

    def get(self, project_id: str) -> Project | None:
        with self._scope() as session:
            row = session.get(ProjectRow, project_id)
            return Project.from_dict(row.document) if row else None

    def list(self) -> list[Project]:
        stmt = select(ProjectRow).order_by(ProjectRow.updated_at.desc())
        with self._scope() as session:
            rows = session.execute(stmt).scalars().all()
            return [Project.from_dict(row.document) for row in rows]

    @staticmethod
    def _write(row: ProjectRow, document: dict) -> Project:
        now = utcnow()
        document["updated_at"] = to_iso(now)
        row.document = document
        row.name = document["name"]
        row.updated_at = _naive_utc(now)
        return Project.from_dict(document)

    def update(self, project_id: str, patch: dict) -> Project | None:
        with self._scope() as session:
            row = session.get(ProjectRow, project_id)
            if row is None:
                return None
            return self._write(row, merge_patch(row.document, patch))

    def increment_stats(
        self,
        project_id: str,
        analyzed: int = 0,
        renamed: int = 0,
        image_count: int | None = None
    ) -> Project | None:
        with self._scope() as session:
            row = session.get(ProjectRow, project_id, with_for_update=True)
            if row is None:
                return None
            document = dict(row.document)
            document["analyzed_count"] = document.get("analyzed_count", 0) + analyzed
            document["renamed_count"] = document.get("renamed_count", 0) + renamed
            if image_count is not None:
                document["image_count"] = image_count
            return self._write(row, document)

    def delete(self, project_id: str) -> bool:
        with self._scope() as session:
            row = session.get(ProjectRow, project_id)
            if row is None:
                return False
            session.delete(row)
            return True


# ────────────────────────────────────────────────────────────────────────────────
# Taxonomies
# ────────────────────────────────────────────────────────────────────────────────

class SqlTaxonomyStore(_SqlStore, TaxonomyStore):

    def _find(self, taxonomy_type: TaxonomyType, name: str) -> TaxonomyEntry | None:
        stmt = select(TaxonomyRow).where(
            TaxonomyRow.type == taxonomy_type.value,
            TaxonomyRow.name == name,
        )
        with self._scope() as session:
            row = session.execute(stmt).scalar_one_or_none()
            return TaxonomyEntry.from_dict(row.document) if row else None

    def get_or_create(self, taxonomy_type: TaxonomyType, name: str) -> TaxonomyEntry | None:
        trimmed = name.strip()
        if not trimmed:
            return None

        existing = self._find(taxonomy_type, trimmed)
        if existing:
            return existing

        entry = TaxonomyEntry(id=generate_id("tax"), type=taxonomy_type, name=trimmed)
        try:
            with self._scope() as session:
                session.add(TaxonomyRow(
                    id=entry.id,
                    type=taxonomy_type.value,
                    name=trimmed,
                    document=entry.to_dict(),
                ))
        except IntegrityError:
            # Created concurrently by another run
            return self._find(taxonomy_type, trimmed)

        logger.debug(f"Created {taxonomy_type.value} '{trimmed}'")
        return entry

    def list(self, taxonomy_type: TaxonomyType | None = None) -> list[TaxonomyEntry]:
        stmt = select(TaxonomyRow).order_by(TaxonomyRow.name)
        if taxonomy_type is not None:
            stmt = stmt.where(TaxonomyRow.type == taxonomy_type.value)
        with self._scope() as session:
            rows = session.execute(stmt).scalars().all()
            return [TaxonomyEntry.from_dict(row.document) for row in rows]


# ────────────────────────────────────────────────────────────────────────────────
# Jobs
# ────────────────────────────────────────────────────────────────────────────────

class SqlJobStore(_SqlStore, JobStore):

    def save(self, document: dict) -> None:
        with self._scope() as session:
            row = session.get(JobRow, document["id"])
            if row is None:
                session.add(JobRow(
                    id=document["id"],
                    project_id=document["project_id"],
                    type=document["type"],
                    status=document["status"],
                    created_at=_naive_utc(from_iso(document["created_at"])),
                    document=document,
                ))
            else:
                row.status = document["status"]
                row.document = document

    def get(self, job_id: str) -> dict | None:
        with self._scope() as session:
            row = session.get(JobRow, job_id)
            return dict(row.document) if row else None

    def list(self, project_id: str | None = None) -> list[dict]:
        stmt = select(JobRow).order_by(JobRow.created_at.desc())
        if project_id is not None:
            stmt = stmt.where(JobRow.project_id == project_id)
        with self._scope() as session:
            rows = session.execute(stmt).scalars().all()
            return [dict(row.document) for row in rows]

    def delete(self, job_id: str) -> bool:
        with self._scope() as session:
            row = session.get(JobRow, job_id)
            if row is None:
                return False
            session.delete(row)
            return True


def create_sql_stores(session_factory: sessionmaker | None = None) -> Stores:
    """SQL store set sharing one session factory."""
    return Stores(
        images=SqlImageStore(session_factory),
        projects=SqlProjectStore(session_factory),
        taxonomies=SqlTaxonomyStore(session_factory),
        jobs=SqlJobStore(session_factory),
        backend="sql",
    )
