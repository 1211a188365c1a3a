"""
Folder scan pipeline.

Walks a project folder, fingerprints every image, extracts lightweight
metadata, optionally uploads new files to blob storage and merges the
result with the project's prior records so a rescan never discards
analysis or rename state.
"""

import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Callable

from db.records import ImageRecord, Project, generate_image_id, utcnow
from pipeline.blob_store import BlobStore, upload_image
from pipeline.errors import BlobStoreError, ConfigurationError
from pipeline.file_scanner import FileScanner
from pipeline.hash_index import compute_hash, group_duplicates
from pipeline.jobs import Job, JobStatus, JobTracker, JobType, TargetUpdate
from pipeline.metadata_extractor import MetadataExtractor
from pipeline.name_resolver import pattern_clean
from pipeline.storage_handler import StorageHandler

logger = logging.getLogger(__name__)


@dataclass
class ScanResult:
    """Result of one scan run."""
    job: Job
    image_count: int = 0
    duplicate_count: int = 0
    uploaded_count: int = 0
    skipped_count: int = 0
    cancelled: bool = False
    records: list[ImageRecord] = field(default_factory=list)


@dataclass
class ScanPlan:
    """A listed folder and its pending job, ready to execute."""
    project: Project
    job: Job
    files: list[Path]
    prior_records: list[ImageRecord]
    upload_to_cloud: bool


def select_prior(
    candidates: list[ImageRecord],
    local_path: str,
    filename: str,
    claimed: set[str] | None = None,
    present_names: set[str] | None = None
) -> ImageRecord | None:
    """
    Pick the prior record a freshly scanned file inherits from.

    Prefers a record at the same path or current name, then a never
    renamed record with this original name, then the first record with
    the same content. Records already claimed in this scan are skipped,
    and records whose current name is another file in the folder are
    left for that file.
    """
    claimed = claimed or set()
    present_names = present_names or set()

    free = [r for r in candidates if r.id not in claimed]
    for record in free:
        if record.local_path == local_path or record.current_name == filename:
            return record

    unowned = [r for r in free if r.current_name not in present_names]
    for record in unowned:
        if not record.renamed and record.original_name == filename:
            return record
    return unowned[0] if unowned else None


def merge_forward(fresh: ImageRecord, prior: ImageRecord) -> ImageRecord:
    """
    Carry analysis and rename state from a prior record onto a fresh one.

    A renamed file is found on disk under its new name; when the prior
    record's current name is this file it keeps its original name and id
    so the record stays the same across rescans.
    """
    if prior.current_name == fresh.current_name:
        fresh.original_name = prior.original_name
        fresh.id = prior.id

    def carried(old, new):
        return old if old is not None else new

    fresh.suggested_name = carried(prior.suggested_name, fresh.suggested_name)
    fresh.pattern_clean_name = carried(prior.pattern_clean_name, fresh.pattern_clean_name)
    fresh.ai_description = carried(prior.ai_description, fresh.ai_description)
    fresh.status = prior.status
    fresh.analyzed_at = carried(prior.analyzed_at, fresh.analyzed_at)
    fresh.renamed = prior.renamed
    fresh.renamed_at = carried(prior.renamed_at, fresh.renamed_at)
    fresh.is_duplicate = prior.is_duplicate
    fresh.duplicate_of = list(prior.duplicate_of)
    fresh.blob_url = carried(prior.blob_url, fresh.blob_url)
    fresh.blob_path = carried(prior.blob_path, fresh.blob_path)
    fresh.metadata = prior.metadata.merge(fresh.metadata)
    return fresh


def mark_duplicates(records: list[ImageRecord]) -> int:
    """
    Recompute duplicate flags over a full record set.

    Each record's duplicate_of lists the original names of the other
    records with the same content.

    Returns:
        Number of records that belong to a duplicate group.
    """
    by_id = {r.id: r for r in records}
    groups = group_duplicates((r.id, r.content_hash) for r in records)

    duplicate_count = 0
    for record in records:
        ids = groups.get(record.content_hash)
        if ids:
            record.is_duplicate = True
            record.duplicate_of = sorted(by_id[i].original_name for i in ids if i != record.id)
            duplicate_count += 1
        else:
            record.is_duplicate = False
            record.duplicate_of = []
    return duplicate_count


def unique_image_id(image_id: str, taken: set[str]) -> str:
    """Suffix an image id with a counter until it is not in `taken`."""
    if image_id not in taken:
        return image_id
    counter = 1
    while f"{image_id}_{counter}" in taken:
        counter += 1
    return f"{image_id}_{counter}"


class ScanPipeline:
    """
    Scans a project folder into image records.

    prepare() lists the folder and creates the job; execute() processes
    the files one at a time, checking the job for cancellation before
    each file. run() does both.
    """

    def __init__(
        self,
        storage: StorageHandler,
        tracker: JobTracker,
        blob_store: BlobStore | None = None,
        scanner: FileScanner | None = None,
        extractor: MetadataExtractor | None = None,
        progress_callback: Callable[[int, int, str], None] | None = None
    ):
        self.storage = storage
        self.tracker = tracker
        self.blob_store = blob_store
        self.scanner = scanner or FileScanner()
        self.extractor = extractor or MetadataExtractor()
        self.progress_callback = progress_callback

    def run(self, project: Project, upload_to_cloud: bool | None = None) -> ScanResult:
        """Prepare and execute a scan of the project's folder."""
        return self.execute(self.prepare(project, upload_to_cloud))

    def prepare(self, project: Project, upload_to_cloud: bool | None = None) -> ScanPlan:
        """
        List the folder, load prior records and create a pending job.

        Args:
            project: Project to scan.
            upload_to_cloud: Upload files to blob storage. Defaults to
                             True when a blob store is configured.

        Returns:
            ScanPlan to pass to execute().

        Raises:
            FolderNotFoundError: If the folder cannot be listed (no job is created).
            ConfigurationError: If upload is requested without a blob store.
        """
        if upload_to_cloud is None:
            upload_to_cloud = self.blob_store is not None
        if upload_to_cloud and self.blob_store is None:
            raise ConfigurationError("Cloud upload requested but no blob store is configured")

        files = self.scanner.scan(project.folder_path)
        prior_records = self.storage.list_records(project.id)

        job = self.tracker.create_job(
            project.id,
            project.name,
            JobType.SCAN,
            len(files),
            config={"upload_to_cloud": upload_to_cloud, "folder_path": project.folder_path},
        )
        return ScanPlan(
            project=project,
            job=job,
            files=files,
            prior_records=prior_records,
            upload_to_cloud=upload_to_cloud,
        )

    def execute(self, plan: ScanPlan) -> ScanResult:
        """
        Process a prepared scan.

        A failure outside a single file's processing marks the job failed
        before it propagates.
        """
        self.tracker.start_job(plan.job.id)
        try:
            return self._execute(plan)
        except Exception as e:
            logger.error(f"Scan of '{plan.project.name}' aborted: {e}")
            self.tracker.complete_job(plan.job.id, JobStatus.FAILED, f"Scan aborted: {e}")
            raise

    def _execute(self, plan: ScanPlan) -> ScanResult:
        project, job, files = plan.project, plan.job, plan.files
        upload_to_cloud = plan.upload_to_cloud

        prior_by_hash: dict[str, list[ImageRecord]] = {}
        for record in plan.prior_records:
            if record.content_hash:
                prior_by_hash.setdefault(record.content_hash, []).append(record)

        # Ids of prior records whose file is still here belong to that file
        present_names = {path.name for path in files}
        reserved_ids = {r.id for r in plan.prior_records if r.current_name in present_names}
        claimed: set[str] = set()
        assigned: set[str] = set()

        logger.info(
            f"Scanning {len(files)} files for project '{project.name}' "
            f"(cloud upload: {'on' if upload_to_cloud else 'off'})"
        )

        records: list[ImageRecord] = []
        uploaded = skipped = errors = 0
        cancelled = False

        for index, path in enumerate(files):
            if self.tracker.is_cancelled(job.id):
                logger.warning(f"Scan cancelled after {index} of {len(files)} files")
                cancelled = True
                break

            filename = path.name
            if self.progress_callback:
                self.progress_callback(index + 1, len(files), filename)

            self.tracker.update_progress(
                job.id,
                processed_items=index,
                status_message=f"Scanning: {filename}",
                current_target=TargetUpdate(filename, JobStatus.RUNNING),
            )

            try:
                record, prior, was_uploaded, was_skipped = self._scan_file(
                    project, path, prior_by_hash, upload_to_cloud, claimed, present_names
                )
            except Exception as e:
                errors += 1
                logger.error(f"Failed to scan {filename}: {e}")
                self.tracker.update_progress(
                    job.id,
                    processed_items=index + 1,
                    error_count=errors,
                    current_target=TargetUpdate(filename, JobStatus.FAILED, error=str(e)),
                )
                continue

            if prior is not None:
                claimed.add(prior.id)
            inherited = prior is not None and prior.id == record.id
            taken = assigned if inherited else assigned | reserved_ids
            if record.id in taken:
                record.id = unique_image_id(record.id, taken)
                logger.debug(f"Record id for {filename} is taken, using {record.id}")
            assigned.add(record.id)

            records.append(record)
            uploaded += was_uploaded
            skipped += was_skipped
            self.tracker.update_progress(
                job.id,
                processed_items=index + 1,
                success_count=len(records),
                current_target=TargetUpdate(
                    filename,
                    JobStatus.COMPLETED,
                    data={
                        "size": record.size_bytes,
                        "width": record.metadata.width,
                        "height": record.metadata.height,
                        "uploaded": was_uploaded,
                        "skipped": was_skipped,
                    },
                ),
            )

        if cancelled:
            # Keep unprocessed prior records; only upsert what was scanned
            merged = {r.id: r for r in plan.prior_records if r.id not in claimed}
            merged.update((r.id, r) for r in records)
            all_records = sorted(merged.values(), key=lambda r: r.original_name)
            duplicate_count = mark_duplicates(all_records)
            self.storage.save_records(project.id, all_records)
            self.storage.recompute_project_stats(project.id, all_records)
            return ScanResult(
                job=self.tracker.get_job(job.id) or job,
                image_count=len(records),
                duplicate_count=duplicate_count,
                uploaded_count=uploaded,
                skipped_count=skipped,
                cancelled=True,
                records=records,
            )

        records.sort(key=lambda r: r.original_name)
        duplicate_count = mark_duplicates(records)

        logger.info(f"Found {len(records)} images, {duplicate_count} duplicates")
        if upload_to_cloud:
            logger.info(f"Storage: {uploaded} uploaded, {skipped} already existed")

        self.storage.replace_records(project.id, records)
        self.storage.recompute_project_stats(project.id, records)

        if upload_to_cloud:
            message = (
                f"Scanned {len(records)} images, {uploaded} uploaded "
                f"({skipped} skipped), {duplicate_count} duplicates"
            )
        else:
            message = f"Scanned {len(records)} images, {duplicate_count} duplicates"

        status = JobStatus.FAILED if files and not records else JobStatus.COMPLETED
        finished = self.tracker.complete_job(job.id, status, message)

        return ScanResult(
            job=finished or job,
            image_count=len(records),
            duplicate_count=duplicate_count,
            uploaded_count=uploaded,
            skipped_count=skipped,
            records=records,
        )

    def _scan_file(
        self,
        project: Project,
        path: Path,
        prior_by_hash: dict[str, list[ImageRecord]],
        upload_to_cloud: bool,
        claimed: set[str],
        present_names: set[str]
    ) -> tuple[ImageRecord, ImageRecord | None, bool, bool]:
        """
        Build the record for one file.

        Returns:
            (record, prior record it inherited from, uploaded, skipped)

        Raises:
            OSError: If the file cannot be stat'ed or read.
        """
        filename = path.name
        stats = path.stat()
        data = path.read_bytes()
        digest = compute_hash(data)
        metadata = self.extractor.extract(data, filename)

        blob_url = blob_path = None
        uploaded = skipped = False
        if upload_to_cloud:
            try:
                result = upload_image(self.blob_store, data, project.name, filename, skip_if_exists=True)
                blob_url, blob_path = result.url, result.path
                skipped = result.skipped
                uploaded = not result.skipped
            except BlobStoreError as e:
                logger.warning(f"Upload failed for {filename}: {e}")

        record = ImageRecord(
            id=generate_image_id(digest, filename),
            project_id=project.id,
            original_name=filename,
            current_name=filename,
            local_path=str(path),
            size_bytes=stats.st_size,
            content_hash=digest,
            extension=path.suffix.lower(),
            created_at=datetime.fromtimestamp(stats.st_ctime, tz=timezone.utc),
            modified_at=datetime.fromtimestamp(stats.st_mtime, tz=timezone.utc),
            scanned_at=utcnow(),
            pattern_clean_name=pattern_clean(filename),
            blob_url=blob_url,
            blob_path=blob_path,
            metadata=metadata,
        )

        prior = select_prior(
            prior_by_hash.get(digest, []), str(path), filename, claimed, present_names
        )
        if prior is not None:
            record = merge_forward(record, prior)
            logger.debug(f"Merged prior state for {filename} from {prior.id}")

        return record, prior, uploaded, skipped
