"""
Main image pipeline orchestrator.

Coordinates the pipeline stages for a project:
1. Scan: fingerprint files, find duplicates, optionally upload
2. Analyze: AI suggested names and descriptive metadata
3. Rename: apply suggested or pattern-cleaned names
4. Cleanup: remove duplicate copies
5. Export: ZIP archive of the current files

Mutating operations on one project are serialized: a second request
while one is running raises ProjectBusyError before any job is created.
Different projects run independently.
"""

import logging
import threading
from contextlib import contextmanager
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Iterator

from db.database import create_stores
from db.records import ImageRecord, Project
from db.stores import Stores
from pipeline.ai_tagger import ImageAnalyzer, create_analyzer
from pipeline.analyze_pipeline import AnalyzePipeline, AnalyzeResult
from pipeline.archive import ArchiveResult, archive_filename, build_archive
from pipeline.blob_store import BlobStore, create_blob_store
from pipeline.errors import FolderNotFoundError, ImageNotFoundError, ProjectBusyError
from pipeline.jobs import DEFAULT_LIST_LIMIT, Job, JobStatus, JobTracker, JobType
from pipeline.rename_pipeline import CleanupResult, RenameOutcome, RenamePipeline, RenameResult
from pipeline.scan_pipeline import ScanPipeline, ScanResult
from pipeline.storage_handler import StorageHandler
from pipeline.taxonomy import TaxonomyRegistry

logger = logging.getLogger(__name__)

BACKGROUND_OPERATIONS = ("scan", "analyze", "rename", "cleanup")


@dataclass
class BackgroundRun:
    """A prepared operation running on a worker thread."""
    job: Job
    thread: threading.Thread


class ImageProcessor:
    """
    Entry point for project and pipeline operations.

    Owns the job tracker and the per-project locks; the stores, blob
    store and analyzer are injected.
    """

    def __init__(
        self,
        stores: Stores,
        blob_store: BlobStore | None = None,
        analyzer: ImageAnalyzer | None = None,
        tracker: JobTracker | None = None,
        progress_callback: Callable[[int, int, str], None] | None = None
    ):
        """
        Initialize the image processor.

        Args:
            stores: Record, project, taxonomy and job stores.
            blob_store: Blob storage, or None to disable cloud copies.
            analyzer: Image analyzer, or None if analysis is unavailable.
            tracker: Job tracker. Defaults to one persisting into stores.jobs.
            progress_callback: Callback(current, total, name) for progress.
        """
        self.stores = stores
        self.blob_store = blob_store
        self.analyzer = analyzer
        self.storage = StorageHandler(stores)
        self.tracker = tracker or JobTracker(stores.jobs)
        self.taxonomy = TaxonomyRegistry(stores.taxonomies)

        self.scanner = ScanPipeline(
            self.storage, self.tracker, blob_store, progress_callback=progress_callback
        )
        self.analyzer_pipeline = AnalyzePipeline(
            self.storage, self.tracker, analyzer, self.taxonomy, progress_callback=progress_callback
        )
        self.renamer = RenamePipeline(
            self.storage, self.tracker, blob_store, progress_callback=progress_callback
        )

        self._locks_guard = threading.Lock()
        self._busy: set[str] = set()

    # ────────────────────────────────────────────────────────────────────────────
    # Per-project serialization
    # ────────────────────────────────────────────────────────────────────────────

    def _acquire(self, project_id: str) -> None:
        with self._locks_guard:
            if project_id in self._busy:
                raise ProjectBusyError(f"Another operation is running for project {project_id}")
            self._busy.add(project_id)

    def _release(self, project_id: str) -> None:
        with self._locks_guard:
            self._busy.discard(project_id)

    @contextmanager
    def _project_lock(self, project_id: str) -> Iterator[None]:
        self._acquire(project_id)
        try:
            yield
        finally:
            self._release(project_id)

    def is_busy(self, project_id: str) -> bool:
        with self._locks_guard:
            return project_id in self._busy

    # ────────────────────────────────────────────────────────────────────────────
    # Projects
    # ────────────────────────────────────────────────────────────────────────────

    def create_project(
        self,
        name: str,
        folder_path: str | Path,
        description: str | None = None
    ) -> Project:
        """
        Create a project for an image folder.

        Raises:
            ValueError: If the name is empty.
            FolderNotFoundError: If the folder does not exist.
        """
        name = (name or "").strip()
        if not name:
            raise ValueError("Project name is required")

        folder = Path(folder_path).expanduser()
        if not folder.is_dir():
            raise FolderNotFoundError(f"Folder not found: {folder}")

        project = self.stores.projects.create(
            Project.new(name, str(folder.resolve()), description)
        )
        logger.info(f"Created project '{project.name}' ({project.id}) for {project.folder_path}")
        return project

    def get_project(self, project_id: str) -> Project:
        return self.storage.get_project(project_id)

    def list_projects(self) -> list[Project]:
        return self.stores.projects.list()

    def delete_project(self, project_id: str) -> bool:
        """Delete a project and its records. Files and blobs are left alone."""
        with self._project_lock(project_id):
            self.storage.get_project(project_id)
            cleared = self.stores.images.clear(project_id)
            deleted = self.stores.projects.delete(project_id)
            logger.info(f"Deleted project {project_id} ({cleared} records)")
            return deleted

    # ────────────────────────────────────────────────────────────────────────────
    # Images
    # ────────────────────────────────────────────────────────────────────────────

    def list_images(self, project_id: str) -> list[ImageRecord]:
        self.storage.get_project(project_id)
        return self.storage.list_records(project_id)

    def get_image(self, project_id: str, image_id: str) -> ImageRecord:
        record = self.storage.get_record(project_id, image_id)
        if record is None:
            raise ImageNotFoundError(f"Image not found: {image_id}")
        return record

    def delete_image(
        self,
        project_id: str,
        image_id: str,
        delete_file: bool = False,
        delete_from_cloud: bool = True
    ) -> None:
        """
        Delete one image record, optionally with its file and blob object.

        Raises:
            ProjectNotFoundError: If the project does not exist.
            ImageNotFoundError: If the record does not exist.
        """
        with self._project_lock(project_id):
            project = self.storage.get_project(project_id)
            record = self.get_image(project_id, image_id)
            self.renamer.remove_image(
                project, record, delete_file=delete_file, delete_from_cloud=delete_from_cloud
            )
            remaining = len(self.storage.list_records(project_id))
            self.storage.update_project(project_id, {"image_count": remaining})
            logger.info(f"Deleted image {record.current_name} from project '{project.name}'")

    # ────────────────────────────────────────────────────────────────────────────
    # Pipeline operations
    # ────────────────────────────────────────────────────────────────────────────

    def scan(self, project_id: str, upload_to_cloud: bool | None = None) -> ScanResult:
        with self._project_lock(project_id):
            project = self.storage.get_project(project_id)
            return self.scanner.run(project, upload_to_cloud=upload_to_cloud)

    def analyze(
        self,
        project_id: str,
        image_ids: list[str] | None = None,
        model: str | None = None
    ) -> AnalyzeResult:
        with self._project_lock(project_id):
            project = self.storage.get_project(project_id)
            return self.analyzer_pipeline.run(project, image_ids=image_ids, model=model)

    def rename(
        self,
        project_id: str,
        image_ids: list[str] | None = None,
        use_ai_suggestion: bool = True,
        use_pattern_clean: bool = False
    ) -> RenameResult:
        with self._project_lock(project_id):
            project = self.storage.get_project(project_id)
            return self.renamer.run(
                project,
                image_ids=image_ids,
                use_ai_suggestion=use_ai_suggestion,
                use_pattern_clean=use_pattern_clean,
            )

    def rename_image(self, project_id: str, image_id: str, new_name: str) -> RenameOutcome:
        with self._project_lock(project_id):
            project = self.storage.get_project(project_id)
            return self.renamer.rename_image(project, image_id, new_name)

    def cleanup_duplicates(self, project_id: str) -> CleanupResult:
        with self._project_lock(project_id):
            project = self.storage.get_project(project_id)
            return self.renamer.cleanup_duplicates(project)

    def start_background(self, operation: str, project_id: str, **kwargs) -> BackgroundRun:
        """
        Prepare a pipeline operation and execute it on a worker thread.

        The project lookup, lock and the pipeline's prepare step run in
        the caller's thread, so unknown and busy projects, missing
        configuration and empty target sets are reported to the caller
        and no job is left behind. Failures inside the thread are logged
        and recorded on the job.

        Args:
            operation: One of BACKGROUND_OPERATIONS.
            project_id: Target project.
            **kwargs: Passed to the pipeline's prepare method.

        Returns:
            BackgroundRun with the created job and the started thread.

        Raises:
            ValueError: If the operation is unknown.
            ProjectNotFoundError: If the project does not exist.
            ProjectBusyError: If the project is already running an operation.
            PipelineError: If the prepare step rejects the request.
        """
        steps = {
            "scan": (self.scanner.prepare, self.scanner.execute),
            "analyze": (self.analyzer_pipeline.prepare, self.analyzer_pipeline.execute),
            "rename": (self.renamer.prepare, self.renamer.execute),
            "cleanup": (self.renamer.prepare_cleanup, self.renamer.execute_cleanup),
        }
        if operation not in steps:
            raise ValueError(f"Unknown operation: {operation}")
        prepare, execute = steps[operation]

        project = self.storage.get_project(project_id)
        self._acquire(project_id)
        try:
            plan = prepare(project, **kwargs)
        except BaseException:
            self._release(project_id)
            raise

        def work() -> None:
            try:
                execute(plan)
            except Exception as e:
                logger.error(f"Background {operation} failed for project '{project.name}': {e}")
            finally:
                self._release(project_id)

        thread = threading.Thread(target=work, name=f"{operation}-{project_id}", daemon=True)
        thread.start()
        logger.info(f"Started background {operation} for project '{project.name}' (job {plan.job.id})")
        return BackgroundRun(job=plan.job, thread=thread)

    # ────────────────────────────────────────────────────────────────────────────
    # Export
    # ────────────────────────────────────────────────────────────────────────────

    def export_archive(self, project_id: str) -> tuple[str, ArchiveResult]:
        """
        Build a ZIP archive of a project's images under their current names.

        Returns:
            Tuple of (download filename, archive).

        Raises:
            ProjectNotFoundError: If the project does not exist.
            NoTargetsError: If the project has no image records.
        """
        project = self.storage.get_project(project_id)
        archive = build_archive(self.storage.list_records(project_id))
        logger.info(
            f"Built archive for project '{project.name}': "
            f"{archive.added} files, {archive.skipped} skipped"
        )
        return archive_filename(project.name), archive

    # ────────────────────────────────────────────────────────────────────────────
    # Jobs
    # ────────────────────────────────────────────────────────────────────────────

    def get_job(self, job_id: str) -> Job | None:
        return self.tracker.get_job(job_id)

    def list_jobs(
        self,
        project_id: str | None = None,
        status: JobStatus | None = None,
        job_type: JobType | None = None,
        limit: int = DEFAULT_LIST_LIMIT
    ) -> list[Job]:
        return self.tracker.list_jobs(
            project_id=project_id, status=status, job_type=job_type, limit=limit
        )

    def cancel_job(self, job_id: str, remove: bool = False) -> Job | None:
        return self.tracker.cancel_or_remove(job_id, remove=remove)


def create_processor(
    progress_callback: Callable[[int, int, str], None] | None = None
) -> ImageProcessor:
    """
    Build a processor from environment configuration.

    Stores follow STORE_BACKEND, blob storage follows BLOB_BACKEND and the
    analyzer is enabled when OPENAI_API_KEY is set.
    """
    return ImageProcessor(
        stores=create_stores(),
        blob_store=create_blob_store(),
        analyzer=create_analyzer(),
        progress_callback=progress_callback,
    )
