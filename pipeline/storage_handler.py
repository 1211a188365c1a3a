"""
Store access for the pipeline.

Provides:
- Record and project reads that raise on missing projects
- Guarded writes: backing-store failures are logged and reported as
  False/None instead of aborting a batch
- Aggregate counter maintenance for projects
"""

import logging
from typing import Iterable

from db.records import ImageRecord, Project, ProjectStatus
from db.stores import Stores
from pipeline.errors import ProjectNotFoundError

logger = logging.getLogger(__name__)


class StorageHandler:
    """
    Handles reading and writing pipeline state through the injected stores.

    Reads propagate store errors to the caller; the pipelines count a
    read failing inside an item as that item's failure and fail the job
    for any other. Writes made from inside a batch loop never raise;
    callers check the return value.
    """

    def __init__(self, stores: Stores):
        """
        Initialize storage handler.

        Args:
            stores: Store set selected at startup.
        """
        self.stores = stores

    # ────────────────────────────────────────────────────────────────────────────
    # Projects
    # ────────────────────────────────────────────────────────────────────────────

    def get_project(self, project_id: str) -> Project:
        """
        Get a project.

        Raises:
            ProjectNotFoundError: If the project does not exist.
        """
        project = self.stores.projects.get(project_id)
        if project is None:
            raise ProjectNotFoundError(f"Project not found: {project_id}")
        return project

    def update_project(self, project_id: str, patch: dict) -> Project | None:
        try:
            return self.stores.projects.update(project_id, patch)
        except Exception as e:
            logger.error(f"Failed to update project {project_id}: {e}")
            return None

    def increment_project_stats(
        self,
        project_id: str,
        analyzed: int = 0,
        renamed: int = 0,
        image_count: int | None = None
    ) -> Project | None:
        try:
            return self.stores.projects.increment_stats(
                project_id, analyzed=analyzed, renamed=renamed, image_count=image_count
            )
        except Exception as e:
            logger.error(f"Failed to update stats for project {project_id}: {e}")
            return None

    def recompute_project_stats(
        self,
        project_id: str,
        records: list[ImageRecord]
    ) -> Project | None:
        """
        Recompute aggregate counters from a full record set.

        analyzed_count counts records with a suggested name; renamed_count
        counts records that have been renamed.
        """
        patch = {
            "image_count": len(records),
            "analyzed_count": sum(1 for r in records if r.suggested_name),
            "renamed_count": sum(1 for r in records if r.renamed),
            "status": ProjectStatus.SCANNED.value,
        }
        project = self.update_project(project_id, patch)
        if project:
            logger.info(
                f"Project {project_id}: {patch['image_count']} images, "
                f"{patch['analyzed_count']} analyzed, {patch['renamed_count']} renamed"
            )
        return project

    # ────────────────────────────────────────────────────────────────────────────
    # Records
    # ────────────────────────────────────────────────────────────────────────────

    def list_records(self, project_id: str) -> list[ImageRecord]:
        """All records of a project, sorted by original name."""
        records = self.stores.images.list(project_id)
        return sorted(records, key=lambda r: r.original_name)

    def get_record(self, project_id: str, image_id: str) -> ImageRecord | None:
        return self.stores.images.get(project_id, image_id)

    def save_record(self, project_id: str, record: ImageRecord) -> bool:
        try:
            self.stores.images.put(project_id, record)
            return True
        except Exception as e:
            logger.error(f"Failed to save record {record.id}: {e}")
            return False

    def save_records(self, project_id: str, records: Iterable[ImageRecord]) -> bool:
        try:
            count = self.stores.images.put_many(project_id, records)
            logger.info(f"Persisted {count} records for project {project_id}")
            return True
        except Exception as e:
            logger.error(f"Failed to persist records for project {project_id}: {e}")
            return False

    def replace_records(self, project_id: str, records: list[ImageRecord]) -> bool:
        """Clear a project's records and write the given set."""
        try:
            cleared = self.stores.images.clear(project_id)
            logger.debug(f"Cleared {cleared} stored records for project {project_id}")
        except Exception as e:
            logger.error(f"Failed to clear records for project {project_id}: {e}")
            return False
        return self.save_records(project_id, records)

    def update_record(
        self,
        project_id: str,
        image_id: str,
        patch: dict
    ) -> ImageRecord | None:
        """
        Merge-patch a record.

        Returns:
            The updated record, or None if it is missing or the write failed.
        """
        try:
            record = self.stores.images.update(project_id, image_id, patch)
        except Exception as e:
            logger.error(f"Failed to update record {image_id}: {e}")
            return None
        if record is None:
            logger.warning(f"Record {image_id} not found for update")
        return record

    def delete_record(self, project_id: str, image_id: str) -> bool:
        try:
            return self.stores.images.delete(project_id, image_id)
        except Exception as e:
            logger.error(f"Failed to delete record {image_id}: {e}")
            return False
