"""
SQLAlchemy models for the image renamer stores.

Each row holds one JSON document plus the columns needed to query it.

Database Schema:
----------------
image_records table:
    - project_id: Owning project (composite primary key)
    - id: Record id derived from content hash + original name (composite primary key)
    - content_hash: MD5 of the file contents, for duplicate lookups
    - document: Full record (JSON, JSONB on PostgreSQL)
    - updated_at: Timestamp of the last write

projects table:
    - id: Primary key
    - name: Display name
    - document: Full project (JSON)
    - updated_at: Timestamp of the last write (list ordering)

taxonomies table:
    - id: Primary key
    - type: tag, color, category, style or mood
    - name: Exact label text, unique per type
    - document: Full entry (JSON)

jobs table:
    - id: Primary key
    - project_id: Owning project
    - status / type: Copied from the document for filtering
    - created_at: Job creation time (list ordering)
    - document: Full job including targets and errors (JSON)
"""

from datetime import datetime

from sqlalchemy import JSON, DateTime, Index, String, UniqueConstraint, func
from sqlalchemy.dialects.postgresql import JSONB
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# JSONB on PostgreSQL, plain JSON elsewhere (SQLite in tests)
DocumentType = JSON().with_variant(JSONB(), "postgresql")


class Base(DeclarativeBase):
    """Base class for all SQLAlchemy models."""
    pass


class ImageRecordRow(Base):
    """One image record document per (project_id, id)."""
    __tablename__ = "image_records"

    project_id: Mapped[str] = mapped_column(String(64), primary_key=True)
    id: Mapped[str] = mapped_column(String(128), primary_key=True)
    content_hash: Mapped[str] = mapped_column(String(32), nullable=False, default="")
    document: Mapped[dict] = mapped_column(DocumentType, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(
        DateTime,
        nullable=False,
        server_default=func.now(),
        onupdate=func.now()
    )

    __table_args__ = (
        Index("idx_image_records_content_hash", "project_id", "content_hash"),
    )

    def __repr__(self) -> str:
        return f"<ImageRecordRow(project_id='{self.project_id}', id='{self.id}')>"


class ProjectRow(Base):
    """One project document."""
    __tablename__ = "projects"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    document: Mapped[dict] = mapped_column(DocumentType, nullable=False)
    updated_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)

    __table_args__ = (
        Index("idx_projects_updated_at", "updated_at"),
    )

    def __repr__(self) -> str:
        return f"<ProjectRow(id='{self.id}', name='{self.name}')>"


class TaxonomyRow(Base):
    """One shared label, unique per (type, name)."""
    __tablename__ = "taxonomies"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    name: Mapped[str] = mapped_column(String(255), nullable=False)
    document: Mapped[dict] = mapped_column(DocumentType, nullable=False)

    __table_args__ = (
        UniqueConstraint("type", "name", name="uq_taxonomy_type_name"),
    )

    def __repr__(self) -> str:
        return f"<TaxonomyRow(type='{self.type}', name='{self.name}')>"


class JobRow(Base):
    """One job document."""
    __tablename__ = "jobs"

    id: Mapped[str] = mapped_column(String(64), primary_key=True)
    project_id: Mapped[str] = mapped_column(String(64), nullable=False)
    type: Mapped[str] = mapped_column(String(20), nullable=False)
    status: Mapped[str] = mapped_column(String(20), nullable=False)
    created_at: Mapped[datetime] = mapped_column(DateTime, nullable=False)
    document: Mapped[dict] = mapped_column(DocumentType, nullable=False)

    __table_args__ = (
        Index("idx_jobs_project_id", "project_id"),
        Index("idx_jobs_created_at", "created_at"),
    )

    def __repr__(self) -> str:
        return f"<JobRow(id='{self.id}', type='{self.type}', status='{self.status}')>"
