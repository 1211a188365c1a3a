"""Tests for the AI analysis pipeline."""

import pytest

from db.records import RecordStatus, TaxonomyType
from pipeline.analyze_pipeline import AnalyzePipeline
from pipeline.errors import AnalyzerError, AnalyzerNotConfiguredError, NoTargetsError
from pipeline.hash_index import compute_hash
from pipeline.jobs import JobStatus, JobType
from pipeline.scan_pipeline import ScanPipeline


@pytest.fixture
def scanned(storage, tracker, project, photo_dir, make_image):
    """Scan three distinct images and return their records by name."""
    make_image(photo_dir / "a.jpg", color=(255, 0, 0))
    make_image(photo_dir / "b.jpg", color=(0, 255, 0))
    make_image(photo_dir / "c.png", color=(0, 0, 255))
    ScanPipeline(storage, tracker).run(project)
    return {r.original_name: r for r in storage.list_records(project.id)}


@pytest.fixture
def pipeline(storage, tracker, analyzer):
    return AnalyzePipeline(storage, tracker, analyzer)


class TestAnalyze:

    def test_analyzes_all_scanned_records(self, pipeline, storage, stores, project, scanned, analyzer):
        analyzer.names[scanned["a.jpg"].content_hash] = "red_square"

        result = pipeline.run(project)

        assert result.analyzed_count == 3
        assert result.job.status is JobStatus.COMPLETED
        assert result.job.status_message == "Analyzed 3 images, 0 failed"
        assert result.job.config["model"] == "fake-vision"

        record = storage.get_record(project.id, scanned["a.jpg"].id)
        assert record.status is RecordStatus.ANALYZED
        assert record.suggested_name == "red_square"
        assert record.ai_description == "A picture of red square"
        assert record.analyzed_at is not None
        assert record.metadata.tags == ["outdoor", "blue"]
        assert record.metadata.analysis_model == "fake-vision"
        assert record.metadata.width == 32
        assert len(record.metadata.tag_ids) == 2

        assert stores.projects.get(project.id).analyzed_count == 3

    def test_labels_share_taxonomy_entries(self, pipeline, storage, stores, project, scanned):
        pipeline.run(project)

        records = storage.list_records(project.id)
        assert len({tuple(r.metadata.tag_ids) for r in records}) == 1
        assert [e.name for e in stores.taxonomies.list(TaxonomyType.TAG)] == ["blue", "outdoor"]
        assert [e.name for e in stores.taxonomies.list(TaxonomyType.COLOR)] == ["blue"]

    def test_mime_type_follows_extension(self, pipeline, project, scanned, analyzer):
        pipeline.run(project)

        assert sorted(mime for _, mime, _ in analyzer.calls) == ["image/jpeg", "image/jpeg", "image/png"]

    def test_model_override_is_passed(self, pipeline, project, scanned, analyzer):
        result = pipeline.run(project, model="custom-model")

        assert result.job.config["model"] == "custom-model"
        assert {model for _, _, model in analyzer.calls} == {"custom-model"}

    def test_explicit_targets(self, pipeline, project, scanned, analyzer):
        result = pipeline.run(project, image_ids=[scanned["b.jpg"].id])

        assert result.analyzed_count == 1
        assert result.job.total_items == 1
        assert len(analyzer.calls) == 1

    def test_analyzed_records_are_not_default_targets(self, pipeline, project, scanned):
        pipeline.run(project)

        with pytest.raises(NoTargetsError):
            pipeline.run(project)

    def test_requires_analyzer(self, storage, tracker, project, scanned):
        with pytest.raises(AnalyzerNotConfiguredError):
            AnalyzePipeline(storage, tracker, None).run(project)


class TestFailures:

    def test_analyzer_error_marks_record(self, pipeline, storage, project, scanned, analyzer):
        analyzer.failures[scanned["b.jpg"].content_hash] = AnalyzerError("rate limited")

        result = pipeline.run(project)

        assert result.analyzed_count == 2
        assert result.error_count == 1
        assert result.job.status is JobStatus.COMPLETED
        assert result.job.status_message == "Analyzed 2 images, 1 failed"
        assert "b.jpg: rate limited" in result.job.errors

        record = storage.get_record(project.id, scanned["b.jpg"].id)
        assert record.status is RecordStatus.ERROR
        assert record.metadata.analysis_error == "rate limited"
        assert record.metadata.analysis_model == "fake-vision"

    def test_error_records_are_retried(self, pipeline, storage, project, scanned, analyzer):
        digest = scanned["b.jpg"].content_hash
        analyzer.failures[digest] = AnalyzerError("timeout")
        pipeline.run(project)
        del analyzer.failures[digest]

        result = pipeline.run(project)

        assert result.analyzed_count == 1
        record = storage.get_record(project.id, scanned["b.jpg"].id)
        assert record.status is RecordStatus.ANALYZED
        assert record.metadata.analysis_error is None

    def test_missing_file(self, pipeline, storage, project, scanned, photo_dir):
        (photo_dir / "a.jpg").unlink()

        result = pipeline.run(project, image_ids=[scanned["a.jpg"].id])

        assert result.job.status is JobStatus.FAILED
        assert result.job.targets[0].error == "File not found"
        record = storage.get_record(project.id, scanned["a.jpg"].id)
        assert record.status is RecordStatus.ERROR

    def test_unknown_image_id(self, pipeline, project, scanned):
        result = pipeline.run(project, image_ids=["nope", scanned["a.jpg"].id])

        assert result.analyzed_count == 1
        assert result.job.targets[0].name == "nope"
        assert result.job.targets[0].error == "Image not found"

    def test_all_failures_fail_the_job(self, pipeline, project, scanned, analyzer, photo_dir):
        for name in ("a.jpg", "b.jpg", "c.png"):
            analyzer.failures[compute_hash((photo_dir / name).read_bytes())] = RuntimeError("boom")

        result = pipeline.run(project)

        assert result.job.status is JobStatus.FAILED
        assert result.job.error_count == 3

    def test_store_read_error_fails_only_that_item(
        self, pipeline, storage, project, scanned, analyzer, monkeypatch
    ):
        broken_id = scanned["a.jpg"].id
        real_get = storage.get_record

        def flaky_get(project_id, image_id):
            if image_id == broken_id:
                raise ConnectionError("store unavailable")
            return real_get(project_id, image_id)

        monkeypatch.setattr(storage, "get_record", flaky_get)

        result = pipeline.run(project)

        assert result.analyzed_count == 2
        assert result.error_count == 1
        assert result.job.status is JobStatus.COMPLETED
        failed = result.job.find_target(broken_id)
        assert failed.status is JobStatus.FAILED
        assert failed.error == "store unavailable"
        assert len(analyzer.calls) == 2

    def test_error_outside_items_fails_the_job(
        self, pipeline, storage, tracker, project, scanned, monkeypatch
    ):
        def broken_stats(*args, **kwargs):
            raise RuntimeError("stats unavailable")

        monkeypatch.setattr(storage, "increment_project_stats", broken_stats)

        with pytest.raises(RuntimeError):
            pipeline.run(project)

        job = tracker.list_jobs(job_type=JobType.ANALYZE)[0]
        assert job.status is JobStatus.FAILED
        assert job.status_message == "Analysis aborted: stats unavailable"


class TestCancellation:

    def test_cancel_stops_before_next_item(self, storage, tracker, project, scanned, analyzer):
        def cancel_on_first(current, total, name):
            if current == 1:
                job = tracker.list_jobs(status=JobStatus.RUNNING)[0]
                tracker.cancel_or_remove(job.id)

        pipeline = AnalyzePipeline(storage, tracker, analyzer, progress_callback=cancel_on_first)

        result = pipeline.run(project)

        assert result.cancelled is True
        assert result.analyzed_count == 1
        assert len(analyzer.calls) == 1
        assert tracker.get_job(result.job.id).status is JobStatus.CANCELLED
