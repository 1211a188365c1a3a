"""
Rename and duplicate cleanup pipeline.

Provides:
- Batch rename from AI suggestions or pattern-cleaned names
- Single image rename with a user supplied name
- Duplicate cleanup keeping one copy per content hash

The local file is renamed first and its blob object is then moved with
copy, verify and delete. A failed blob copy puts the local file back; a
failed delete of the old object leaves a stray copy but keeps the rename.
"""

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Callable

from db.records import ImageRecord, Project, RecordStatus, advance_status, to_iso, utcnow
from pipeline.blob_store import BlobStore, move_object, storage_path
from pipeline.errors import (
    BlobStoreError,
    ImageNotFoundError,
    NameCollisionError,
    NoTargetsError,
    PipelineError,
)
from pipeline.hash_index import group_duplicates, pick_primary
from pipeline.jobs import Job, JobStatus, JobTracker, JobType, TargetUpdate
from pipeline.name_resolver import BlobNamespace, resolve_collision, sanitize, sanitize_filename
from pipeline.scan_pipeline import mark_duplicates
from pipeline.storage_handler import StorageHandler

logger = logging.getLogger(__name__)


@dataclass
class RenameOutcome:
    """One applied rename."""
    image_id: str
    old_name: str
    new_name: str
    local_path: str
    blob_url: str | None = None
    renamed_at: str | None = None


@dataclass
class RenameResult:
    """Result of one batch rename run."""
    job: Job
    renamed_count: int = 0
    error_count: int = 0
    cancelled: bool = False
    outcomes: list[RenameOutcome] = field(default_factory=list)


@dataclass
class CleanupResult:
    """Result of one duplicate cleanup run."""
    job: Job
    removed_count: int = 0
    error_count: int = 0
    kept_count: int = 0
    cancelled: bool = False


@dataclass
class RenamePlan:
    """Targets and job of a prepared batch rename."""
    project: Project
    job: Job
    targets: list[str]
    use_ai_suggestion: bool = True
    use_pattern_clean: bool = False


@dataclass
class CleanupPlan:
    """Duplicate copies selected for removal by a prepared cleanup."""
    project: Project
    job: Job
    image_count: int
    to_remove: list[ImageRecord] = field(default_factory=list)


class RenameError(PipelineError):
    """A single rename could not be applied."""
    pass


def pick_candidate(
    record: ImageRecord,
    use_ai_suggestion: bool = True,
    use_pattern_clean: bool = False
) -> str | None:
    """
    Choose the new base name for a record.

    The AI suggestion wins over the pattern-cleaned name when both
    strategies are enabled.

    Returns:
        Sanitized base name, or None if no enabled strategy has one.
    """
    base = None
    if use_ai_suggestion and record.suggested_name:
        base = record.suggested_name
    elif use_pattern_clean and record.pattern_clean_name:
        base = record.pattern_clean_name

    if not base:
        return None
    return sanitize(base) or None


class RenamePipeline:
    """
    Applies new names to image files, their blob objects and records.

    A failed item never writes to the record store. Batch renames and
    duplicate cleanups are split into a prepare step, which selects the
    targets and creates the job, and an execute step.
    """

    def __init__(
        self,
        storage: StorageHandler,
        tracker: JobTracker,
        blob_store: BlobStore | None = None,
        progress_callback: Callable[[int, int, str], None] | None = None
    ):
        self.storage = storage
        self.tracker = tracker
        self.blob_store = blob_store
        self.progress_callback = progress_callback

    # ────────────────────────────────────────────────────────────────────────────
    # Batch rename
    # ────────────────────────────────────────────────────────────────────────────

    def run(
        self,
        project: Project,
        image_ids: list[str] | None = None,
        use_ai_suggestion: bool = True,
        use_pattern_clean: bool = False
    ) -> RenameResult:
        """Prepare and execute a batch rename."""
        return self.execute(self.prepare(
            project,
            image_ids=image_ids,
            use_ai_suggestion=use_ai_suggestion,
            use_pattern_clean=use_pattern_clean,
        ))

    def prepare(
        self,
        project: Project,
        image_ids: list[str] | None = None,
        use_ai_suggestion: bool = True,
        use_pattern_clean: bool = False
    ) -> RenamePlan:
        """
        Select rename targets and create a pending job.

        Args:
            project: Project whose images are renamed.
            image_ids: Explicit targets. Defaults to records not yet
                       renamed that have a name for an enabled strategy.
            use_ai_suggestion: Use the analyzer's suggested name.
            use_pattern_clean: Use the pattern-cleaned original name.

        Returns:
            RenamePlan to pass to execute().

        Raises:
            NoTargetsError: If there is nothing to rename.
        """
        if image_ids is None:
            targets = [
                r.id for r in self.storage.list_records(project.id)
                if not r.renamed and pick_candidate(r, use_ai_suggestion, use_pattern_clean)
            ]
        else:
            targets = list(dict.fromkeys(image_ids))
        if not targets:
            raise NoTargetsError("No images to rename")

        job = self.tracker.create_job(
            project.id,
            project.name,
            JobType.RENAME,
            len(targets),
            config={
                "use_ai_suggestion": use_ai_suggestion,
                "use_pattern_clean": use_pattern_clean,
                "image_ids": targets,
            },
        )
        return RenamePlan(
            project=project,
            job=job,
            targets=targets,
            use_ai_suggestion=use_ai_suggestion,
            use_pattern_clean=use_pattern_clean,
        )

    def execute(self, plan: RenamePlan) -> RenameResult:
        """
        Rename the planned images.

        A failure outside a single item marks the job failed before it
        propagates.
        """
        self.tracker.start_job(plan.job.id)
        try:
            return self._execute(plan)
        except Exception as e:
            logger.error(f"Rename of '{plan.project.name}' aborted: {e}")
            self.tracker.complete_job(plan.job.id, JobStatus.FAILED, f"Rename aborted: {e}")
            raise

    def _execute(self, plan: RenamePlan) -> RenameResult:
        project, job, targets = plan.project, plan.job, plan.targets
        logger.info(f"Renaming {len(targets)} images for project '{project.name}'")

        outcomes: list[RenameOutcome] = []
        errors = 0
        cancelled = False

        for index, image_id in enumerate(targets):
            if self.tracker.is_cancelled(job.id):
                logger.warning(f"Rename cancelled after {index} of {len(targets)} images")
                cancelled = True
                break

            if self.progress_callback:
                self.progress_callback(index + 1, len(targets), image_id)

            target_name = image_id
            try:
                record = self.storage.get_record(project.id, image_id)
                if record is None:
                    raise RenameError("Image not found")
                target_name = record.current_name
                self.tracker.update_progress(
                    job.id,
                    status_message=f"Renaming: {target_name}",
                    current_target=TargetUpdate(target_name, JobStatus.RUNNING),
                )

                base = pick_candidate(record, plan.use_ai_suggestion, plan.use_pattern_clean)
                if not base:
                    raise RenameError("No suggested name available")
                outcome = self._apply_rename(project, record, base)
            except Exception as e:
                errors += 1
                logger.error(f"Rename failed for {target_name}: {e}")
                self.tracker.update_progress(
                    job.id,
                    processed_items=index + 1,
                    error_count=errors,
                    current_target=TargetUpdate(target_name, JobStatus.FAILED, error=str(e)),
                )
                continue

            outcomes.append(outcome)
            self.tracker.update_progress(
                job.id,
                processed_items=index + 1,
                success_count=len(outcomes),
                current_target=TargetUpdate(
                    target_name,
                    JobStatus.COMPLETED,
                    data={"old_name": outcome.old_name, "new_name": outcome.new_name},
                ),
            )

        if outcomes:
            self.storage.increment_project_stats(project.id, renamed=len(outcomes))

        if cancelled:
            return RenameResult(
                job=self.tracker.get_job(job.id) or job,
                renamed_count=len(outcomes),
                error_count=errors,
                cancelled=True,
                outcomes=outcomes,
            )

        status = JobStatus.FAILED if errors == len(targets) else JobStatus.COMPLETED
        finished = self.tracker.complete_job(
            job.id, status, f"Renamed {len(outcomes)} files, {errors} failed"
        )
        logger.info(f"Rename complete: {len(outcomes)} renamed, {errors} failed")

        return RenameResult(
            job=finished or job,
            renamed_count=len(outcomes),
            error_count=errors,
            outcomes=outcomes,
        )

    def rename_image(self, project: Project, image_id: str, new_name: str) -> RenameOutcome:
        """
        Rename one image to a user supplied name.

        Only path-illegal characters are replaced; an extension matching
        the record's is dropped from `new_name` before the collision probe.

        Raises:
            ImageNotFoundError: If the record does not exist.
            RenameError: If the name is empty or the rename fails.
        """
        record = self.storage.get_record(project.id, image_id)
        if record is None:
            raise ImageNotFoundError(f"Image not found: {image_id}")

        base = sanitize_filename(new_name.strip())
        extension = record.extension or Path(record.current_name).suffix
        if extension and base.lower().endswith(extension.lower()):
            base = base[: -len(extension)]
        if not base:
            raise RenameError("New name required")

        was_renamed = record.renamed
        try:
            outcome = self._apply_rename(project, record, base)
        except (OSError, BlobStoreError, NameCollisionError) as e:
            raise RenameError(f"Rename failed for {record.current_name}: {e}") from e

        # Only a first rename counts towards the project total
        if not was_renamed:
            self.storage.increment_project_stats(project.id, renamed=1)
        return outcome

    def _apply_rename(self, project: Project, record: ImageRecord, base: str) -> RenameOutcome:
        """
        Rename one record's file, blob object and stored document.

        The local file is renamed first and the blob object is then moved
        with copy, verify and delete. A failed blob copy puts the local
        file back, so nothing changes for a failed item.

        Raises:
            RenameError: If the file is missing or the record cannot be saved.
            NameCollisionError: If no free name is found.
            BlobStoreError: If the blob copy fails.
            OSError: If the local rename fails.
        """
        old_path = Path(record.local_path)
        if not old_path.exists():
            raise RenameError("File not found")

        extension = record.extension or old_path.suffix
        use_blob = self.blob_store is not None and bool(record.blob_path)

        namespaces = []
        if use_blob:
            namespaces.append(BlobNamespace(self.blob_store, project.name, own_name=record.current_name))

        new_name = resolve_collision(
            old_path.parent, base, extension, namespaces, own_name=record.current_name
        )
        new_path = old_path.parent / new_name
        old_blob_path = record.blob_path
        new_blob_path = storage_path(project.name, new_name) if use_blob else old_blob_path
        blob_url = record.blob_url

        if new_name != record.current_name:
            logger.info(f"Renaming: {record.current_name} -> {new_name}")
            old_path.rename(new_path)

            if use_blob and new_blob_path != old_blob_path:
                try:
                    move_object(self.blob_store, old_blob_path, new_blob_path)
                except BlobStoreError:
                    self._restore_local(new_path, old_path)
                    raise
                blob_url = self.blob_store.public_url(new_blob_path)

        renamed_at = to_iso(utcnow())
        patch = {
            "current_name": new_name,
            "local_path": str(new_path),
            "renamed": True,
            "renamed_at": renamed_at,
            "status": advance_status(record.status, RecordStatus.RENAMED).value,
            "blob_path": new_blob_path,
            "blob_url": blob_url,
            "metadata": {"last_modified": renamed_at},
        }
        if self.storage.update_record(project.id, record.id, patch) is None:
            logger.error(f"{record.current_name} was renamed to {new_name} but its record was not updated")
            raise RenameError("Failed to save renamed record")

        return RenameOutcome(
            image_id=record.id,
            old_name=record.current_name,
            new_name=new_name,
            local_path=str(new_path),
            blob_url=blob_url,
            renamed_at=renamed_at,
        )

    def _restore_local(self, new_path: Path, old_path: Path) -> None:
        try:
            new_path.rename(old_path)
        except OSError as e:
            logger.error(f"Could not move {new_path.name} back to {old_path.name}: {e}")

    # ────────────────────────────────────────────────────────────────────────────
    # Removal
    # ────────────────────────────────────────────────────────────────────────────

    def remove_image(
        self,
        project: Project,
        record: ImageRecord,
        delete_file: bool = True,
        delete_from_cloud: bool = True
    ) -> None:
        """
        Remove an image's file, blob object and record, in that order.

        The record is only deleted after the file and blob removals
        succeed. A file that is already gone counts as removed.

        Raises:
            OSError: If the local file cannot be deleted.
            BlobStoreError: If the blob object cannot be deleted.
            RenameError: If the record cannot be deleted.
        """
        if delete_file:
            Path(record.local_path).unlink(missing_ok=True)

        if delete_from_cloud and self.blob_store is not None and record.blob_path:
            self.blob_store.delete(record.blob_path)

        if not self.storage.delete_record(project.id, record.id):
            raise RenameError(f"Failed to delete record {record.id}")

    # ────────────────────────────────────────────────────────────────────────────
    # Duplicate cleanup
    # ────────────────────────────────────────────────────────────────────────────

    def cleanup_duplicates(self, project: Project) -> CleanupResult:
        """Prepare and execute a duplicate cleanup."""
        return self.execute_cleanup(self.prepare_cleanup(project))

    def prepare_cleanup(self, project: Project) -> CleanupPlan:
        """
        Select the duplicate copies to remove and create a pending job.

        The record with the smallest original name in each content group
        is kept; every other record is removed from disk, blob storage and
        the store.

        Raises:
            NoTargetsError: If the project has no duplicates.
        """
        records = self.storage.list_records(project.id)
        by_id = {r.id: r for r in records}
        groups = group_duplicates((r.id, r.content_hash) for r in records)

        to_remove: list[ImageRecord] = []
        for ids in groups.values():
            members = [by_id[i] for i in ids]
            primary_name = pick_primary(r.original_name for r in members)
            primary = next(r for r in members if r.original_name == primary_name)
            to_remove.extend(r for r in members if r is not primary)

        if not to_remove:
            raise NoTargetsError("No duplicates found")

        job = self.tracker.create_job(
            project.id,
            project.name,
            JobType.CLEANUP,
            len(to_remove),
            config={"mode": "duplicates"},
        )
        return CleanupPlan(project=project, job=job, image_count=len(records), to_remove=to_remove)

    def execute_cleanup(self, plan: CleanupPlan) -> CleanupResult:
        """
        Remove the planned duplicates.

        A failure outside a single item marks the job failed before it
        propagates.
        """
        self.tracker.start_job(plan.job.id)
        try:
            return self._execute_cleanup(plan)
        except Exception as e:
            logger.error(f"Duplicate cleanup of '{plan.project.name}' aborted: {e}")
            self.tracker.complete_job(plan.job.id, JobStatus.FAILED, f"Cleanup aborted: {e}")
            raise

    def _execute_cleanup(self, plan: CleanupPlan) -> CleanupResult:
        project, job, to_remove = plan.project, plan.job, plan.to_remove
        logger.info(f"Removing {len(to_remove)} duplicate images for project '{project.name}'")

        removed = errors = 0
        cancelled = False

        for index, record in enumerate(to_remove):
            if self.tracker.is_cancelled(job.id):
                logger.warning(f"Cleanup cancelled after {index} of {len(to_remove)} images")
                cancelled = True
                break

            if self.progress_callback:
                self.progress_callback(index + 1, len(to_remove), record.current_name)

            self.tracker.update_progress(
                job.id,
                status_message=f"Removing duplicate {index + 1}/{len(to_remove)}",
                current_target=TargetUpdate(record.id, JobStatus.RUNNING),
            )

            try:
                self.remove_image(project, record)
            except Exception as e:
                errors += 1
                logger.error(f"Failed to remove duplicate {record.current_name}: {e}")
                self.tracker.update_progress(
                    job.id,
                    processed_items=index + 1,
                    error_count=errors,
                    current_target=TargetUpdate(record.id, JobStatus.FAILED, error=str(e)),
                )
                continue

            removed += 1
            logger.info(f"Removed duplicate: {record.current_name}")
            self.tracker.update_progress(
                job.id,
                processed_items=index + 1,
                success_count=removed,
                current_target=TargetUpdate(
                    record.id,
                    JobStatus.COMPLETED,
                    data={"original_name": record.original_name, "current_name": record.current_name},
                ),
            )

        remaining = self.storage.list_records(project.id)
        self._refresh_duplicate_flags(project.id, remaining)
        kept = plan.image_count - removed
        self.storage.update_project(project.id, {"image_count": kept})

        logger.info(f"Duplicate cleanup complete: {removed} removed, {errors} errors")

        if cancelled:
            return CleanupResult(
                job=self.tracker.get_job(job.id) or job,
                removed_count=removed,
                error_count=errors,
                kept_count=kept,
                cancelled=True,
            )

        status = JobStatus.FAILED if errors == len(to_remove) else JobStatus.COMPLETED
        finished = self.tracker.complete_job(
            job.id, status, f"Removed {removed} duplicates, {errors} failed"
        )
        return CleanupResult(
            job=finished or job,
            removed_count=removed,
            error_count=errors,
            kept_count=kept,
        )

    def _refresh_duplicate_flags(self, project_id: str, records: list[ImageRecord]) -> None:
        """Recompute duplicate flags and persist the records whose flags changed."""
        before = {r.id: (r.is_duplicate, list(r.duplicate_of)) for r in records}
        mark_duplicates(records)

        now = to_iso(utcnow())
        for record in records:
            if before[record.id] == (record.is_duplicate, record.duplicate_of):
                continue
            self.storage.update_record(
                project_id,
                record.id,
                {
                    "is_duplicate": record.is_duplicate,
                    "duplicate_of": record.duplicate_of,
                    "metadata": {"last_modified": now},
                },
            )
