"""
AI analysis pipeline.

Sends each target image to the configured analyzer, resolves the returned
labels through the taxonomy registry and writes suggested names and
descriptive metadata back onto the records.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Callable

from db.records import ImageRecord, Project, RecordStatus, advance_status, to_iso, utcnow
from pipeline.ai_tagger import AnalysisResult, ImageAnalyzer
from pipeline.blob_store import get_content_type
from pipeline.errors import AnalyzerNotConfiguredError, NoTargetsError
from pipeline.jobs import Job, JobStatus, JobTracker, JobType, TargetUpdate
from pipeline.storage_handler import StorageHandler
from pipeline.taxonomy import TaxonomyRegistry

logger = logging.getLogger(__name__)


@dataclass
class AnalyzeResult:
    """Result of one analyze run."""
    job: Job
    analyzed_count: int = 0
    error_count: int = 0
    cancelled: bool = False


@dataclass
class AnalyzePlan:
    """Selected targets and their pending job, ready to execute."""
    project: Project
    job: Job
    targets: list[str]
    model: str | None = None


class ItemError(Exception):
    """Per-item failure reported on the job target."""

    def __init__(self, message: str, target: str):
        super().__init__(message)
        self.target = target


def default_targets(records: list[ImageRecord]) -> list[ImageRecord]:
    """Records that still need analysis."""
    return [
        r for r in records
        if r.status is RecordStatus.SCANNED or not r.suggested_name
    ]


class AnalyzePipeline:
    """
    Runs the analyzer over a project's images, one image at a time.

    Failures are recorded per image (status "error" plus
    metadata.analysis_error) and never abort the run.
    """

    def __init__(
        self,
        storage: StorageHandler,
        tracker: JobTracker,
        analyzer: ImageAnalyzer | None,
        taxonomy: TaxonomyRegistry | None = None,
        progress_callback: Callable[[int, int, str], None] | None = None
    ):
        self.storage = storage
        self.tracker = tracker
        self.analyzer = analyzer
        self.taxonomy = taxonomy or TaxonomyRegistry(storage.stores.taxonomies)
        self.progress_callback = progress_callback

    def run(
        self,
        project: Project,
        image_ids: list[str] | None = None,
        model: str | None = None
    ) -> AnalyzeResult:
        """Prepare and execute an analyze run."""
        return self.execute(self.prepare(project, image_ids=image_ids, model=model))

    def prepare(
        self,
        project: Project,
        image_ids: list[str] | None = None,
        model: str | None = None
    ) -> AnalyzePlan:
        """
        Select targets and create a pending job.

        Args:
            project: Project whose images are analyzed.
            image_ids: Explicit targets. Defaults to records still
                       scanned or without a suggested name.
            model: Model tried before the configured ones.

        Returns:
            AnalyzePlan to pass to execute().

        Raises:
            AnalyzerNotConfiguredError: If no analyzer is configured.
            NoTargetsError: If there is nothing to analyze.
        """
        if self.analyzer is None:
            raise AnalyzerNotConfiguredError(
                "AI analyzer not configured. Add OPENAI_API_KEY to your .env file."
            )

        if image_ids is None:
            targets = [r.id for r in default_targets(self.storage.list_records(project.id))]
        else:
            targets = list(dict.fromkeys(image_ids))
        if not targets:
            raise NoTargetsError("No images to analyze")

        models = self.analyzer.candidate_models(model)
        job = self.tracker.create_job(
            project.id,
            project.name,
            JobType.ANALYZE,
            len(targets),
            config={"model": models[0] if models else None, "image_ids": targets},
        )
        return AnalyzePlan(project=project, job=job, targets=targets, model=model)

    def execute(self, plan: AnalyzePlan) -> AnalyzeResult:
        """
        Analyze the planned images.

        A failure outside a single item marks the job failed before it
        propagates.
        """
        self.tracker.start_job(plan.job.id)
        try:
            return self._execute(plan)
        except Exception as e:
            logger.error(f"Analysis of '{plan.project.name}' aborted: {e}")
            self.tracker.complete_job(plan.job.id, JobStatus.FAILED, f"Analysis aborted: {e}")
            raise

    def _execute(self, plan: AnalyzePlan) -> AnalyzeResult:
        project, job, targets, model = plan.project, plan.job, plan.targets, plan.model
        logger.info(f"Analyzing {len(targets)} images for project '{project.name}'")

        success = errors = 0
        cancelled = False

        for index, image_id in enumerate(targets):
            if self.tracker.is_cancelled(job.id):
                logger.warning(f"Analysis cancelled after {index} of {len(targets)} images")
                cancelled = True
                break

            if self.progress_callback:
                self.progress_callback(index + 1, len(targets), image_id)

            try:
                name = self._analyze_one(project, image_id, model, job.id)
            except Exception as e:
                errors += 1
                target = e.target if isinstance(e, ItemError) else image_id
                logger.error(f"Analysis failed for {image_id}: {e}")
                self.tracker.update_progress(
                    job.id,
                    processed_items=index + 1,
                    error_count=errors,
                    current_target=TargetUpdate(target, JobStatus.FAILED, error=str(e)),
                )
                continue

            success += 1
            self.tracker.update_progress(
                job.id,
                processed_items=index + 1,
                success_count=success,
                current_target=TargetUpdate(name, JobStatus.COMPLETED),
            )

        if success > 0:
            self.storage.increment_project_stats(project.id, analyzed=success)

        if cancelled:
            return AnalyzeResult(
                job=self.tracker.get_job(job.id) or job,
                analyzed_count=success,
                error_count=errors,
                cancelled=True,
            )

        status = JobStatus.FAILED if errors == len(targets) else JobStatus.COMPLETED
        finished = self.tracker.complete_job(
            job.id, status, f"Analyzed {success} images, {errors} failed"
        )
        logger.info(f"Analysis complete: {success} analyzed, {errors} failed")

        return AnalyzeResult(job=finished or job, analyzed_count=success, error_count=errors)

    def _analyze_one(
        self,
        project: Project,
        image_id: str,
        model: str | None,
        job_id: str
    ) -> str:
        """
        Analyze and persist one record.

        Returns:
            The record's current name.

        Raises:
            ItemError: When the item fails.
        """
        record = self.storage.get_record(project.id, image_id)
        if record is None:
            raise ItemError("Image not found", image_id)

        name = record.current_name
        self.tracker.update_progress(
            job_id,
            status_message=f"Analyzing: {name}",
            current_target=TargetUpdate(name, JobStatus.RUNNING),
        )

        path = Path(record.local_path)
        try:
            data = path.read_bytes()
        except FileNotFoundError:
            self._record_failure(project.id, record, "File not found", model)
            raise ItemError("File not found", name)
        except OSError as e:
            self._record_failure(project.id, record, f"Cannot read file: {e}", model)
            raise ItemError(f"Cannot read file: {e}", name)

        try:
            result = self.analyzer.analyze(data, get_content_type(name), model=model)
        except Exception as e:
            self._record_failure(project.id, record, str(e), model)
            raise ItemError(str(e), name) from e

        if result.parse_failed:
            logger.warning(f"Analyzer returned malformed output for {name}, using fallback")

        try:
            patch = self._success_patch(record, result)
        except Exception as e:
            raise ItemError(f"Failed to save analysis: {e}", name) from e
        saved = self.storage.update_record(project.id, record.id, patch)
        if saved is None:
            raise ItemError("Failed to save analysis", name)

        logger.info(f"Analyzed: {name} -> {result.suggested_name}")
        return name

    def _success_patch(self, record: ImageRecord, result: AnalysisResult) -> dict:
        labels = self.taxonomy.resolve(
            result.tags, result.colors, result.category, result.style, result.mood
        )
        now = to_iso(utcnow())
        return {
            "status": advance_status(record.status, RecordStatus.ANALYZED).value,
            "suggested_name": result.suggested_name,
            "ai_description": result.description,
            "analyzed_at": now,
            "metadata": {
                "title": result.title,
                "description": result.description,
                "tags": result.tags,
                "colors": result.colors,
                "objects": result.objects,
                "category": result.category,
                "subcategory": result.subcategory,
                "style": result.style,
                "mood": result.mood,
                "tag_ids": labels.tag_ids,
                "color_ids": labels.color_ids,
                "category_id": labels.category_id,
                "style_id": labels.style_id,
                "mood_id": labels.mood_id,
                "confidence": result.confidence,
                "analysis_model": result.model,
                "analysis_error": None,
                "analyzed_at": now,
                "last_modified": now,
            },
        }

    def _record_failure(
        self,
        project_id: str,
        record: ImageRecord,
        error: str,
        model: str | None
    ) -> None:
        patch = {
            "status": RecordStatus.ERROR.value,
            "metadata": {
                "analysis_error": error,
                "analysis_model": model or next(iter(self.analyzer.candidate_models()), None),
                "last_modified": to_iso(utcnow()),
            },
        }
        self.storage.update_record(project_id, record.id, patch)
