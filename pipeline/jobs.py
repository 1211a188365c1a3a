"""
Job tracking for long-running pipeline runs.

Provides:
- Job and JobTarget models with per-item progress
- JobTracker: thread-safe state machine with write-through persistence
- Display helpers for job types and durations

State machine:
    pending --start--> running --progress*--> running --complete--> completed|failed
    pending|running --cancel--> cancelled

Terminal jobs never change again except by explicit removal.
"""

import copy
import logging
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any

from db.records import from_iso, generate_id, to_iso, utcnow
from db.stores import JobStore

logger = logging.getLogger(__name__)

DEFAULT_LIST_LIMIT = 200

# Finished jobs kept in memory when they cannot be handed to a store
MAX_FINISHED_IN_MEMORY = 500


class JobType(Enum):
    """Kind of pipeline run."""
    SCAN = "scan"
    ANALYZE = "analyze"
    RENAME = "rename"
    CLEANUP = "cleanup"


class JobStatus(Enum):
    """Lifecycle status of a job or job target."""
    PENDING = "pending"
    RUNNING = "running"
    COMPLETED = "completed"
    FAILED = "failed"
    CANCELLED = "cancelled"

    @property
    def is_terminal(self) -> bool:
        return self in TERMINAL_STATUSES


TERMINAL_STATUSES = frozenset({JobStatus.COMPLETED, JobStatus.FAILED, JobStatus.CANCELLED})


def calculate_progress(processed_items: int, total_items: int) -> int:
    """Percentage complete, rounded half up and clamped to [0, 100]."""
    if total_items <= 0:
        return 0
    progress = int(100 * processed_items / total_items + 0.5)
    return max(0, min(100, progress))


@dataclass
class JobTarget:
    """Per-item progress entry inside a job."""
    name: str
    status: JobStatus
    started_at: datetime | None = None
    completed_at: datetime | None = None
    error: str | None = None
    data: dict[str, Any] | None = None

    def to_dict(self) -> dict:
        result = {"name": self.name, "status": self.status.value}
        if self.started_at:
            result["started_at"] = to_iso(self.started_at)
        if self.completed_at:
            result["completed_at"] = to_iso(self.completed_at)
        if self.error is not None:
            result["error"] = self.error
        if self.data is not None:
            result["data"] = self.data
        return result

    @classmethod
    def from_dict(cls, data: dict) -> "JobTarget":
        return cls(
            name=data["name"],
            status=JobStatus(data["status"]),
            started_at=from_iso(data.get("started_at")),
            completed_at=from_iso(data.get("completed_at")),
            error=data.get("error"),
            data=data.get("data"),
        )


@dataclass
class TargetUpdate:
    """Fields reported for the item currently being processed."""
    name: str
    status: JobStatus
    error: str | None = None
    data: dict[str, Any] | None = None


@dataclass
class Job:
    """One tracked pipeline run."""
    id: str
    project_id: str
    project_name: str
    type: JobType
    status: JobStatus = JobStatus.PENDING
    priority: str = "normal"
    progress: int = 0
    total_items: int = 0
    processed_items: int = 0
    success_count: int = 0
    error_count: int = 0
    created_at: datetime = field(default_factory=utcnow)
    started_at: datetime | None = None
    completed_at: datetime | None = None
    duration_ms: int | None = None
    status_message: str = ""
    targets: list[JobTarget] = field(default_factory=list)
    errors: list[str] = field(default_factory=list)
    config: dict[str, Any] = field(default_factory=dict)

    def __repr__(self) -> str:
        return f"<Job(id='{self.id}', type={self.type.value}, status={self.status.value})>"

    def find_target(self, name: str) -> JobTarget | None:
        for target in self.targets:
            if target.name == name:
                return target
        return None

    def to_dict(self) -> dict:
        """Convert to a JSON document. `targets` and `errors` are always lists."""
        result = {
            "id": self.id,
            "project_id": self.project_id,
            "project_name": self.project_name,
            "type": self.type.value,
            "status": self.status.value,
            "priority": self.priority,
            "progress": self.progress,
            "total_items": self.total_items,
            "processed_items": self.processed_items,
            "success_count": self.success_count,
            "error_count": self.error_count,
            "created_at": to_iso(self.created_at),
            "status_message": self.status_message,
            "targets": [t.to_dict() for t in self.targets],
            "errors": list(self.errors),
            "config": dict(self.config),
        }
        if self.started_at:
            result["started_at"] = to_iso(self.started_at)
        if self.completed_at:
            result["completed_at"] = to_iso(self.completed_at)
        if self.duration_ms is not None:
            result["duration_ms"] = self.duration_ms
        return result

    @classmethod
    def from_dict(cls, data: dict) -> "Job":
        return cls(
            id=data["id"],
            project_id=data["project_id"],
            project_name=data.get("project_name", ""),
            type=JobType(data["type"]),
            status=JobStatus(data.get("status", JobStatus.PENDING.value)),
            priority=data.get("priority", "normal"),
            progress=data.get("progress", 0),
            total_items=data.get("total_items", 0),
            processed_items=data.get("processed_items", 0),
            success_count=data.get("success_count", 0),
            error_count=data.get("error_count", 0),
            created_at=from_iso(data.get("created_at")) or utcnow(),
            started_at=from_iso(data.get("started_at")),
            completed_at=from_iso(data.get("completed_at")),
            duration_ms=data.get("duration_ms"),
            status_message=data.get("status_message", ""),
            targets=[JobTarget.from_dict(t) for t in data.get("targets", [])],
            errors=list(data.get("errors", [])),
            config=dict(data.get("config", {})),
        )


class JobTracker:
    """
    Creates, advances and finalizes jobs.

    The in-memory map is authoritative for the unfinished jobs of this
    process. Every change is written through to the job store; store
    failures are logged and swallowed so a persistence hiccup never blocks
    a run. Finished jobs leave the map once the store holds them, and
    without a store only the newest MAX_FINISHED_IN_MEMORY are kept.
    Operations on unknown ids return None instead of raising.

    Returned jobs are snapshots; mutate only through the tracker.
    """

    def __init__(self, store: JobStore | None = None):
        self.store = store
        self._jobs: dict[str, Job] = {}
        self._lock = threading.Lock()

    # ────────────────────────────────────────────────────────────────────────────
    # Persistence
    # ────────────────────────────────────────────────────────────────────────────

    def _persist(self, job: Job) -> bool:
        if self.store is None:
            return False
        try:
            self.store.save(job.to_dict())
            return True
        except Exception as e:
            logger.error(f"Failed to persist job {job.id}: {e}")
            return False

    def _load(self, job_id: str) -> Job | None:
        if self.store is None:
            return None
        try:
            document = self.store.get(job_id)
        except Exception as e:
            logger.error(f"Failed to load job {job_id}: {e}")
            return None
        return Job.from_dict(document) if document else None

    def _lookup(self, job_id: str) -> Job | None:
        """Find a job in memory, falling back to the store. Caller holds the lock."""
        job = self._jobs.get(job_id)
        if job is None:
            job = self._load(job_id)
        return job

    def _retire(self, job: Job, persisted: bool) -> None:
        """Drop a finished job from memory. Caller holds the lock."""
        if persisted:
            self._jobs.pop(job.id, None)
            return

        if job.id not in self._jobs:
            self._jobs[job.id] = job
        finished = [j for j in self._jobs.values() if j.status.is_terminal]
        overflow = len(finished) - MAX_FINISHED_IN_MEMORY
        if overflow > 0:
            finished.sort(key=lambda j: j.completed_at or j.created_at)
            for old in finished[:overflow]:
                del self._jobs[old.id]

    # ────────────────────────────────────────────────────────────────────────────
    # State transitions
    # ────────────────────────────────────────────────────────────────────────────

    def create_job(
        self,
        project_id: str,
        project_name: str,
        job_type: JobType,
        total_items: int,
        config: dict[str, Any] | None = None
    ) -> Job:
        """
        Create a pending job.

        Args:
            project_id: Project the run belongs to.
            project_name: Display name, stored for listings.
            job_type: Kind of run.
            total_items: Number of items the run will process.
            config: Run parameters, stored as-is.

        Returns:
            Snapshot of the new job.
        """
        job = Job(
            id=generate_id("job"),
            project_id=project_id,
            project_name=project_name,
            type=job_type,
            total_items=total_items,
            status_message=f"Job created: {job_type.value} {total_items} items",
            config=dict(config or {}),
        )

        with self._lock:
            self._jobs[job.id] = job
            self._persist(job)
            snapshot = copy.deepcopy(job)

        logger.info(f"Job created: {job.id} ({job.type.value}, {total_items} items)")
        return snapshot

    def start_job(self, job_id: str) -> Job | None:
        """Move a pending job to running. No-op on terminal jobs."""
        with self._lock:
            job = self._lookup(job_id)
            if job is None:
                return None
            if job.status.is_terminal:
                return copy.deepcopy(job)

            job.status = JobStatus.RUNNING
            job.started_at = utcnow()
            job.status_message = f"Processing {job.type.value}..."
            self._persist(job)
            snapshot = copy.deepcopy(job)

        logger.info(f"Job started: {job_id}")
        return snapshot

    def update_progress(
        self,
        job_id: str,
        processed_items: int | None = None,
        success_count: int | None = None,
        error_count: int | None = None,
        status_message: str | None = None,
        current_target: TargetUpdate | None = None
    ) -> Job | None:
        """
        Report progress for a running job.

        Counters are absolute values, not increments. A target update is
        merged into the existing target of the same name or appended.
        Target errors are also appended to the job's error list as
        "name: error". No-op on terminal jobs.

        Returns:
            Snapshot of the job, or None if the id is unknown.
        """
        with self._lock:
            job = self._lookup(job_id)
            if job is None:
                return None
            if job.status.is_terminal:
                return copy.deepcopy(job)

            if processed_items is not None:
                job.processed_items = processed_items
                job.progress = calculate_progress(processed_items, job.total_items)
            if success_count is not None:
                job.success_count = success_count
            if error_count is not None:
                job.error_count = error_count
            if status_message:
                job.status_message = status_message

            if current_target is not None:
                self._upsert_target(job, current_target)

            self._persist(job)
            return copy.deepcopy(job)

    @staticmethod
    def _upsert_target(job: Job, update: TargetUpdate) -> None:
        now = utcnow()
        target = job.find_target(update.name)

        if target is None:
            target = JobTarget(name=update.name, status=update.status, started_at=now)
            job.targets.append(target)
        else:
            target.status = update.status

        if update.error is not None:
            target.error = update.error
        if update.data is not None:
            target.data = {**(target.data or {}), **update.data}
        if update.status in (JobStatus.COMPLETED, JobStatus.FAILED):
            target.completed_at = now

        if update.error:
            job.errors.append(f"{update.name}: {update.error}")

    def complete_job(
        self,
        job_id: str,
        status: JobStatus = JobStatus.COMPLETED,
        status_message: str | None = None
    ) -> Job | None:
        """
        Finish a job as completed or failed.

        Sets completed_at, progress=100 and the duration. Without a message
        a summary of the success/error counters is used. No-op on jobs
        that are already terminal.

        Raises:
            ValueError: If status is not COMPLETED or FAILED.
        """
        if status not in (JobStatus.COMPLETED, JobStatus.FAILED):
            raise ValueError(f"Jobs can only be completed as completed or failed, not {status.value}")

        with self._lock:
            job = self._lookup(job_id)
            if job is None:
                return None
            if job.status.is_terminal:
                return copy.deepcopy(job)

            job.status = status
            job.completed_at = utcnow()
            job.progress = 100
            if job.started_at:
                elapsed = job.completed_at - job.started_at
                job.duration_ms = int(elapsed.total_seconds() * 1000)

            if status_message:
                job.status_message = status_message
            elif status is JobStatus.COMPLETED:
                job.status_message = (
                    f"Completed: {job.success_count} succeeded, {job.error_count} failed"
                )
            else:
                job.status_message = f"Failed: {job.error_count} errors"

            self._retire(job, self._persist(job))
            snapshot = copy.deepcopy(job)

        if status is JobStatus.COMPLETED:
            logger.info(f"Job completed: {job_id} - {snapshot.status_message}")
        else:
            logger.error(f"Job failed: {job_id} - {snapshot.status_message}")
        return snapshot

    def cancel_or_remove(self, job_id: str, remove: bool = False) -> Job | None:
        """
        Cancel a pending/running job, or delete it entirely.

        Cancelling stops no in-flight work; the running loop notices the
        status before its next item.

        Args:
            job_id: Job to cancel.
            remove: Delete the job record instead (any status).

        Returns:
            The job as it was last seen, or None if the id is unknown.
        """
        with self._lock:
            job = self._lookup(job_id)
            if job is None:
                return None

            if remove:
                self._jobs.pop(job_id, None)
                if self.store is not None:
                    try:
                        self.store.delete(job_id)
                    except Exception as e:
                        logger.error(f"Failed to delete job {job_id} from store: {e}")
                logger.info(f"Job removed: {job_id}")
                return copy.deepcopy(job)

            if job.status in (JobStatus.PENDING, JobStatus.RUNNING):
                job.status = JobStatus.CANCELLED
                job.completed_at = utcnow()
                if job.started_at:
                    elapsed = job.completed_at - job.started_at
                    job.duration_ms = int(elapsed.total_seconds() * 1000)
                job.status_message = "Job cancelled by user"
                self._retire(job, self._persist(job))
                logger.info(f"Job cancelled: {job_id}")

            return copy.deepcopy(job)

    def is_cancelled(self, job_id: str) -> bool:
        """
        Check whether a job has been cancelled.

        Also consults the store so a cancel issued by another process
        (e.g. the CLI against a shared database) is observed.
        """
        with self._lock:
            job = self._jobs.get(job_id)
            if job is not None and job.status is JobStatus.CANCELLED:
                return True

            stored = self._load(job_id)
            if stored is not None and stored.status is JobStatus.CANCELLED:
                if job is not None and not job.status.is_terminal:
                    job.status = JobStatus.CANCELLED
                    job.completed_at = stored.completed_at or utcnow()
                    job.status_message = stored.status_message
                    self._jobs.pop(job_id, None)
                return True

            return False

    # ────────────────────────────────────────────────────────────────────────────
    # Queries
    # ────────────────────────────────────────────────────────────────────────────

    def get_job(self, job_id: str) -> Job | None:
        with self._lock:
            job = self._lookup(job_id)
            return copy.deepcopy(job) if job else None

    def list_jobs(
        self,
        project_id: str | None = None,
        status: JobStatus | None = None,
        job_type: JobType | None = None,
        limit: int = DEFAULT_LIST_LIMIT
    ) -> list[Job]:
        """
        List jobs newest first, optionally filtered.

        Jobs held in memory take precedence over their stored copies.
        """
        with self._lock:
            jobs: dict[str, Job] = {}
            if self.store is not None:
                try:
                    for document in self.store.list(project_id=project_id):
                        job = Job.from_dict(document)
                        jobs[job.id] = job
                except Exception as e:
                    logger.error(f"Failed to list jobs from store: {e}")
            jobs.update(self._jobs)

            selected = [
                job for job in jobs.values()
                if (project_id is None or job.project_id == project_id)
                and (status is None or job.status is status)
                and (job_type is None or job.type is job_type)
            ]
            selected.sort(key=lambda j: j.created_at, reverse=True)
            return copy.deepcopy(selected[:limit])

    def list_project_jobs(self, project_id: str) -> list[Job]:
        return self.list_jobs(project_id=project_id)


# ────────────────────────────────────────────────────────────────────────────────
# Display helpers
# ────────────────────────────────────────────────────────────────────────────────

def summarize(jobs: list[Job]) -> dict[str, int]:
    """Count jobs by status."""
    summary = {"total": len(jobs)}
    for status in JobStatus:
        summary[status.value] = sum(1 for job in jobs if job.status is status)
    return summary


JOB_TYPE_LABELS = {
    JobType.SCAN: "Folder Scan",
    JobType.ANALYZE: "AI Analysis",
    JobType.RENAME: "Batch Rename",
    JobType.CLEANUP: "Duplicate Cleanup",
}


def format_job_type(job_type: JobType) -> str:
    return JOB_TYPE_LABELS.get(job_type, job_type.value)


def format_duration(ms: int | None) -> str:
    """Human readable duration: 350ms, 2.5s, 3m 12s."""
    if ms is None:
        return "-"
    if ms < 1000:
        return f"{ms}ms"
    if ms < 60000:
        return f"{ms / 1000:.1f}s"
    minutes, remainder = divmod(ms, 60000)
    return f"{minutes}m {round(remainder / 1000)}s"
