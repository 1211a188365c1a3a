"""
Database module for the image renamer.

This module provides the record types, the store interfaces with their
in-memory and SQLAlchemy implementations, and database connectivity.
"""

from db.database import create_stores, get_engine, get_session, init_db
from db.records import ImageMetadata, ImageRecord, Project, RecordStatus, TaxonomyType
from db.stores import ImageStore, JobStore, ProjectStore, Stores, TaxonomyStore

__all__ = [
    "create_stores",
    "get_engine",
    "get_session",
    "init_db",
    "ImageMetadata",
    "ImageRecord",
    "Project",
    "RecordStatus",
    "TaxonomyType",
    "ImageStore",
    "JobStore",
    "ProjectStore",
    "Stores",
    "TaxonomyStore",
]
