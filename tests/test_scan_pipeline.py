"""Tests for the folder scan pipeline."""

import shutil
from unittest.mock import MagicMock

import pytest

from db.records import Project, RecordStatus
from pipeline.errors import ConfigurationError, FolderNotFoundError
from pipeline.hash_index import compute_hash
from pipeline.jobs import JobStatus
from pipeline.scan_pipeline import ScanPipeline, mark_duplicates


@pytest.fixture
def scanner(storage, tracker):
    return ScanPipeline(storage, tracker)


def records_by_name(storage, project):
    return {r.original_name: r for r in storage.list_records(project.id)}


class TestScan:

    def test_scan_creates_records(self, scanner, storage, stores, project, photo_dir, make_image):
        make_image(photo_dir / "IMG_2045.jpg")
        make_image(photo_dir / "b.png", color=(0, 0, 255))
        make_image(photo_dir / ".hidden.jpg")
        (photo_dir / "notes.txt").write_text("not an image")

        result = scanner.run(project)

        assert result.image_count == 2
        assert result.duplicate_count == 0
        assert result.job.status is JobStatus.COMPLETED
        assert result.job.status_message == "Scanned 2 images, 0 duplicates"
        assert result.job.progress == 100
        assert [t.name for t in result.job.targets] == ["b.png", "IMG_2045.jpg"]

        records = records_by_name(storage, project)
        record = records["IMG_2045.jpg"]
        data = (photo_dir / "IMG_2045.jpg").read_bytes()
        assert record.id == f"{compute_hash(data)[:8]}_IMG_2045.jpg"
        assert record.status is RecordStatus.SCANNED
        assert record.pattern_clean_name == "2045"
        assert record.extension == ".jpg"
        assert record.size_bytes == len(data)
        assert record.metadata.width == 32

        saved = stores.projects.get(project.id)
        assert saved.image_count == 2
        assert saved.status.value == "scanned"

    def test_duplicates_are_flagged(self, scanner, storage, project, photo_dir, make_image):
        make_image(photo_dir / "a.jpg")
        shutil.copyfile(photo_dir / "a.jpg", photo_dir / "b.jpg")
        make_image(photo_dir / "c.jpg", color=(0, 255, 0))

        result = scanner.run(project)

        assert result.duplicate_count == 2
        assert result.job.status_message == "Scanned 3 images, 2 duplicates"
        records = records_by_name(storage, project)
        assert records["a.jpg"].is_duplicate and records["a.jpg"].duplicate_of == ["b.jpg"]
        assert records["b.jpg"].duplicate_of == ["a.jpg"]
        assert not records["c.jpg"].is_duplicate

    def test_rescan_is_idempotent_and_keeps_analysis(
        self, scanner, storage, project, photo_dir, make_image
    ):
        make_image(photo_dir / "a.jpg")
        make_image(photo_dir / "b.jpg", color=(1, 2, 3))
        scanner.run(project)
        record = records_by_name(storage, project)["a.jpg"]
        storage.update_record(project.id, record.id, {
            "status": "analyzed",
            "suggested_name": "red_square",
            "metadata": {"tags": ["red"]},
        })

        scanner.run(project)

        records = records_by_name(storage, project)
        assert len(records) == 2
        rescanned = records["a.jpg"]
        assert rescanned.id == record.id
        assert rescanned.status is RecordStatus.ANALYZED
        assert rescanned.suggested_name == "red_square"
        assert rescanned.metadata.tags == ["red"]
        assert rescanned.metadata.width == 32

    def test_renamed_file_keeps_id(self, scanner, storage, project, photo_dir, make_image):
        make_image(photo_dir / "a.jpg")
        scanner.run(project)
        record = storage.list_records(project.id)[0]
        (photo_dir / "a.jpg").rename(photo_dir / "sunset.jpg")
        storage.update_record(project.id, record.id, {
            "current_name": "sunset.jpg",
            "local_path": str(photo_dir / "sunset.jpg"),
            "renamed": True,
        })

        scanner.run(project)

        records = storage.list_records(project.id)
        assert len(records) == 1
        assert records[0].id == record.id
        assert records[0].original_name == "a.jpg"
        assert records[0].current_name == "sunset.jpg"
        assert records[0].renamed is True

    def test_restored_original_gets_its_own_record(
        self, scanner, storage, stores, project, photo_dir, make_image
    ):
        make_image(photo_dir / "IMG_0001.jpg")
        scanner.run(project)
        record = storage.list_records(project.id)[0]
        (photo_dir / "IMG_0001.jpg").rename(photo_dir / "sunset.jpg")
        storage.update_record(project.id, record.id, {
            "current_name": "sunset.jpg",
            "local_path": str(photo_dir / "sunset.jpg"),
            "renamed": True,
        })
        shutil.copyfile(photo_dir / "sunset.jpg", photo_dir / "IMG_0001.jpg")

        result = scanner.run(project)

        records = {r.current_name: r for r in storage.list_records(project.id)}
        assert result.image_count == 2
        assert sorted(records) == ["IMG_0001.jpg", "sunset.jpg"]
        assert records["sunset.jpg"].id == record.id
        assert records["sunset.jpg"].renamed is True
        assert records["IMG_0001.jpg"].id != record.id
        assert records["IMG_0001.jpg"].renamed is False
        assert stores.projects.get(project.id).image_count == 2
        assert records["IMG_0001.jpg"].duplicate_of == ["IMG_0001.jpg"]

    def test_removed_files_are_dropped(self, scanner, storage, project, photo_dir, make_image):
        make_image(photo_dir / "a.jpg")
        make_image(photo_dir / "b.jpg", color=(9, 9, 9))
        scanner.run(project)
        (photo_dir / "b.jpg").unlink()

        result = scanner.run(project)

        assert result.image_count == 1
        assert [r.original_name for r in storage.list_records(project.id)] == ["a.jpg"]

    def test_missing_folder_creates_no_job(self, scanner, stores, tracker, tmp_path):
        project = stores.projects.create(Project.new("Gone", str(tmp_path / "missing")))

        with pytest.raises(FolderNotFoundError):
            scanner.run(project)
        assert tracker.list_jobs() == []

    def test_empty_folder_completes(self, scanner, project):
        result = scanner.run(project)

        assert result.image_count == 0
        assert result.job.status is JobStatus.COMPLETED

    def test_unreadable_file_fails_item(self, storage, tracker, project, photo_dir, make_image):
        make_image(photo_dir / "a.jpg")
        file_scanner = MagicMock()
        file_scanner.scan.return_value = [photo_dir / "a.jpg", photo_dir / "ghost.jpg"]
        pipeline = ScanPipeline(storage, tracker, scanner=file_scanner)

        result = pipeline.run(project)

        assert result.image_count == 1
        assert result.job.status is JobStatus.COMPLETED
        assert result.job.error_count == 1
        ghost = result.job.targets[1]
        assert ghost.name == "ghost.jpg"
        assert ghost.status is JobStatus.FAILED
        assert result.job.errors[0].startswith("ghost.jpg: ")

    def test_all_files_unreadable_fails_job(self, storage, tracker, project, photo_dir):
        file_scanner = MagicMock()
        file_scanner.scan.return_value = [photo_dir / "ghost.jpg"]

        result = ScanPipeline(storage, tracker, scanner=file_scanner).run(project)

        assert result.job.status is JobStatus.FAILED

    def test_unexpected_item_error_fails_only_that_file(
        self, scanner, project, photo_dir, make_image, monkeypatch
    ):
        make_image(photo_dir / "a.jpg")
        make_image(photo_dir / "b.jpg", color=(9, 9, 9))
        real_extract = scanner.extractor.extract

        def extract(data, filename=""):
            if filename == "b.jpg":
                raise RuntimeError("decoder crashed")
            return real_extract(data, filename)

        monkeypatch.setattr(scanner.extractor, "extract", extract)

        result = scanner.run(project)

        assert result.image_count == 1
        assert result.job.status is JobStatus.COMPLETED
        assert result.job.find_target("b.jpg").error == "decoder crashed"

    def test_error_outside_items_fails_the_job(
        self, scanner, storage, tracker, project, photo_dir, make_image, monkeypatch
    ):
        make_image(photo_dir / "a.jpg")

        def broken_stats(*args, **kwargs):
            raise RuntimeError("stats unavailable")

        monkeypatch.setattr(storage, "recompute_project_stats", broken_stats)

        with pytest.raises(RuntimeError):
            scanner.run(project)

        job = tracker.list_jobs()[0]
        assert job.status is JobStatus.FAILED
        assert job.status_message == "Scan aborted: stats unavailable"


class TestUpload:

    def test_upload_then_skip(self, storage, tracker, blob_store, project, photo_dir, make_image):
        make_image(photo_dir / "a.jpg")
        make_image(photo_dir / "b.jpg", color=(4, 5, 6))
        pipeline = ScanPipeline(storage, tracker, blob_store=blob_store)

        first = pipeline.run(project)
        second = pipeline.run(project)

        assert first.uploaded_count == 2
        assert first.job.status_message == "Scanned 2 images, 2 uploaded (0 skipped), 0 duplicates"
        assert second.uploaded_count == 0
        assert second.skipped_count == 2
        record = records_by_name(storage, project)["a.jpg"]
        assert record.blob_path == "projects/holiday_photos/images/a.jpg"
        assert blob_store.exists(record.blob_path)

    def test_upload_can_be_disabled(self, storage, tracker, blob_store, project, photo_dir, make_image):
        make_image(photo_dir / "a.jpg")

        result = ScanPipeline(storage, tracker, blob_store=blob_store).run(project, upload_to_cloud=False)

        assert result.uploaded_count == 0
        assert storage.list_records(project.id)[0].blob_path is None

    def test_upload_without_store_is_rejected(self, scanner, project):
        with pytest.raises(ConfigurationError):
            scanner.run(project, upload_to_cloud=True)


class TestCancellation:

    def test_cancel_keeps_prior_records(self, storage, tracker, project, photo_dir, make_image):
        for index, name in enumerate(["a.jpg", "b.jpg", "c.jpg"]):
            make_image(photo_dir / name, color=(80 * index, 0, 0))
        ScanPipeline(storage, tracker).run(project)
        make_image(photo_dir / "d.jpg", color=(50, 50, 50))

        def cancel_on_first(current, total, name):
            if current == 1:
                job = tracker.list_jobs(status=JobStatus.RUNNING)[0]
                tracker.cancel_or_remove(job.id)

        result = ScanPipeline(storage, tracker, progress_callback=cancel_on_first).run(project)

        assert result.cancelled is True
        assert result.image_count == 1
        assert result.job.status is JobStatus.CANCELLED
        names = sorted(r.original_name for r in storage.list_records(project.id))
        assert names == ["a.jpg", "b.jpg", "c.jpg"]


class TestMarkDuplicates:

    def test_flags_are_recomputed(self, scanner, storage, project, photo_dir, make_image):
        make_image(photo_dir / "a.jpg")
        shutil.copyfile(photo_dir / "a.jpg", photo_dir / "b.jpg")
        scanner.run(project)
        records = storage.list_records(project.id)

        remaining = [r for r in records if r.original_name == "a.jpg"]

        assert mark_duplicates(remaining) == 0
        assert remaining[0].is_duplicate is False
        assert remaining[0].duplicate_of == []
