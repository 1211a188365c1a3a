#!/usr/bin/env python3
"""
CLI entry point for the image renaming pipeline.

Commands:
    create-project NAME FOLDER   Register a folder as a project
    projects                     List projects
    scan PROJECT_ID              Scan the folder, hash files, find duplicates
    analyze PROJECT_ID           Generate AI suggested names
    rename PROJECT_ID            Apply suggested or pattern-cleaned names
    rename-one PROJECT_ID IMAGE_ID NEW_NAME
    cleanup PROJECT_ID           Remove duplicate copies
    export PROJECT_ID [-o FILE]  Write a ZIP of the current files
    jobs [--project ID]          List jobs
    job JOB_ID                   Show one job with its targets
    cancel JOB_ID [--remove]     Cancel (or delete) a job

Usage:
    python run_pipeline.py create-project "Holiday" /path/to/photos
    python run_pipeline.py scan proj_lx2k9a_3f8k1p --upload
    python run_pipeline.py analyze proj_lx2k9a_3f8k1p --model gpt-4o
    python run_pipeline.py rename proj_lx2k9a_3f8k1p --pattern-clean
"""

import argparse
import logging
import sys
from pathlib import Path

from db.database import dispose_engine, get_store_backend, verify_connection
from pipeline.errors import PipelineError
from pipeline.jobs import Job, JobStatus, JobType, format_duration, format_job_type, summarize
from pipeline.processor import ImageProcessor, create_processor


def setup_logging(verbose: bool = False, log_file: str | None = None) -> None:
    """Configure logging for the pipeline run."""
    level = logging.DEBUG if verbose else logging.INFO

    handlers: list[logging.Handler] = [logging.StreamHandler()]

    if log_file:
        handlers.append(logging.FileHandler(log_file))

    logging.basicConfig(
        level=level,
        format="%(asctime)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
        handlers=handlers
    )


def print_progress(current: int, total: int, name: str) -> None:
    """Print progress to console."""
    pct = (current / total) * 100 if total > 0 else 0
    print(f"[{current:4d}/{total:4d}] ({pct:5.1f}%) {name}")


def print_job(job: Job, show_targets: bool = False) -> None:
    """Print a job summary."""
    print("=" * 50)
    print(f"{format_job_type(job.type)} - {job.project_name}")
    print("=" * 50)
    print(f"Job ID: {job.id}")
    print(f"Status: {job.status.value}")
    print(f"Progress: {job.progress}% ({job.processed_items}/{job.total_items})")
    print(f"Succeeded: {job.success_count}")
    print(f"Failed: {job.error_count}")
    print(f"Duration: {format_duration(job.duration_ms)}")
    if job.status_message:
        print(f"Message: {job.status_message}")

    if show_targets and job.targets:
        print()
        print("Targets:")
        for target in job.targets:
            line = f"  [{target.status.value:9s}] {target.name}"
            if target.error:
                line += f" - {target.error}"
            print(line)

    if job.errors:
        print()
        print("Errors:")
        for error in job.errors:
            print(f"  - {error}")


def job_exit_code(job: Job) -> int:
    return 0 if job.status is JobStatus.COMPLETED else 1


# ────────────────────────────────────────────────────────────────────────────────
# Commands
# ────────────────────────────────────────────────────────────────────────────────

def cmd_create_project(processor: ImageProcessor, args: argparse.Namespace) -> int:
    project = processor.create_project(args.name, args.folder, args.description)
    print(f"Created project: {project.name}")
    print(f"  ID: {project.id}")
    print(f"  Folder: {project.folder_path}")
    return 0


def cmd_projects(processor: ImageProcessor, args: argparse.Namespace) -> int:
    projects = processor.list_projects()
    if not projects:
        print("No projects found.")
        return 0

    for project in projects:
        print(
            f"{project.id}  {project.name:30s} {project.image_count:5d} images  "
            f"{project.analyzed_count:5d} analyzed  {project.renamed_count:5d} renamed"
        )
    return 0


def cmd_scan(processor: ImageProcessor, args: argparse.Namespace) -> int:
    result = processor.scan(args.project_id, upload_to_cloud=args.upload)
    print()
    print_job(result.job)
    return job_exit_code(result.job)


def cmd_analyze(processor: ImageProcessor, args: argparse.Namespace) -> int:
    result = processor.analyze(args.project_id, image_ids=args.images, model=args.model)
    print()
    print_job(result.job)
    return job_exit_code(result.job)


def cmd_rename(processor: ImageProcessor, args: argparse.Namespace) -> int:
    result = processor.rename(
        args.project_id,
        image_ids=args.images,
        use_ai_suggestion=not args.no_ai_suggestion,
        use_pattern_clean=args.pattern_clean,
    )
    print()
    for outcome in result.outcomes:
        print(f"  {outcome.old_name} -> {outcome.new_name}")
    print_job(result.job)
    return job_exit_code(result.job)


def cmd_rename_one(processor: ImageProcessor, args: argparse.Namespace) -> int:
    outcome = processor.rename_image(args.project_id, args.image_id, args.new_name)
    print(f"Renamed: {outcome.old_name} -> {outcome.new_name}")
    return 0


def cmd_cleanup(processor: ImageProcessor, args: argparse.Namespace) -> int:
    if not args.yes:
        print("WARNING: duplicate copies will be deleted from disk and storage!")
        confirm = input("Type 'yes' to confirm: ")
        if confirm.lower() != "yes":
            print("Aborted.")
            return 0

    result = processor.cleanup_duplicates(args.project_id)
    print()
    print(f"Kept {result.kept_count} images")
    print_job(result.job)
    return job_exit_code(result.job)


def cmd_export(processor: ImageProcessor, args: argparse.Namespace) -> int:
    filename, archive = processor.export_archive(args.project_id)
    output = Path(args.output) if args.output else Path(filename)
    output.write_bytes(archive.buffer.getvalue())
    print(f"Wrote {archive.added} images to {output}")
    if archive.skipped:
        print(f"Skipped {archive.skipped} missing files")
    return 0


def cmd_jobs(processor: ImageProcessor, args: argparse.Namespace) -> int:
    jobs = processor.list_jobs(
        project_id=args.project,
        status=JobStatus(args.status) if args.status else None,
        job_type=JobType(args.type) if args.type else None,
        limit=args.limit,
    )
    if not jobs:
        print("No jobs found.")
        return 0

    for job in jobs:
        print(
            f"{job.id}  {format_job_type(job.type):18s} {job.status.value:10s} "
            f"{job.progress:3d}%  {job.project_name}"
        )

    summary = summarize(jobs)
    print()
    print(", ".join(f"{key}: {value}" for key, value in summary.items()))
    return 0


def cmd_job(processor: ImageProcessor, args: argparse.Namespace) -> int:
    job = processor.get_job(args.job_id)
    if job is None:
        print(f"ERROR: Job not found: {args.job_id}")
        return 1
    print_job(job, show_targets=True)
    return 0


def cmd_cancel(processor: ImageProcessor, args: argparse.Namespace) -> int:
    job = processor.cancel_job(args.job_id, remove=args.remove)
    if job is None:
        print(f"ERROR: Job not found: {args.job_id}")
        return 1
    if args.remove:
        print(f"Removed job {job.id}")
    else:
        print(f"Job {job.id}: {job.status.value}")
    return 0


COMMANDS = {
    "create-project": cmd_create_project,
    "projects": cmd_projects,
    "scan": cmd_scan,
    "analyze": cmd_analyze,
    "rename": cmd_rename,
    "rename-one": cmd_rename_one,
    "cleanup": cmd_cleanup,
    "export": cmd_export,
    "jobs": cmd_jobs,
    "job": cmd_job,
    "cancel": cmd_cancel,
}


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        description="Scan, analyze and rename image folders",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog=__doc__
    )

    # Output options
    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Show detailed progress output"
    )
    parser.add_argument(
        "--log-file",
        help="Write logs to file"
    )

    subparsers = parser.add_subparsers(dest="command", required=True)

    create = subparsers.add_parser("create-project", help="Register a folder as a project")
    create.add_argument("name", help="Project name")
    create.add_argument("folder", help="Image folder")
    create.add_argument("--description", help="Free-text description")

    subparsers.add_parser("projects", help="List projects")

    scan = subparsers.add_parser("scan", help="Scan a project folder")
    scan.add_argument("project_id")
    upload = scan.add_mutually_exclusive_group()
    upload.add_argument(
        "--upload",
        dest="upload",
        action="store_true",
        default=None,
        help="Upload images to blob storage (default: on when configured)"
    )
    upload.add_argument(
        "--no-upload",
        dest="upload",
        action="store_false",
        help="Do not upload images"
    )

    analyze = subparsers.add_parser("analyze", help="Generate AI suggested names")
    analyze.add_argument("project_id")
    analyze.add_argument("--images", nargs="+", help="Only these image ids")
    analyze.add_argument("--model", help="Model to try first (default: ANALYZER_MODEL)")

    rename = subparsers.add_parser("rename", help="Rename analyzed images")
    rename.add_argument("project_id")
    rename.add_argument("--images", nargs="+", help="Only these image ids")
    rename.add_argument(
        "--no-ai-suggestion",
        action="store_true",
        help="Ignore AI suggested names"
    )
    rename.add_argument(
        "--pattern-clean",
        action="store_true",
        help="Use names with camera prefixes and dates stripped"
    )

    rename_one = subparsers.add_parser("rename-one", help="Rename a single image")
    rename_one.add_argument("project_id")
    rename_one.add_argument("image_id")
    rename_one.add_argument("new_name")

    cleanup = subparsers.add_parser("cleanup", help="Remove duplicate images")
    cleanup.add_argument("project_id")
    cleanup.add_argument("-y", "--yes", action="store_true", help="Do not ask for confirmation")

    export = subparsers.add_parser("export", help="Write a ZIP archive of a project's images")
    export.add_argument("project_id")
    export.add_argument("-o", "--output", help="Archive path (default: <project>.zip)")

    jobs = subparsers.add_parser("jobs", help="List jobs")
    jobs.add_argument("--project", help="Only jobs of this project")
    jobs.add_argument("--status", choices=[s.value for s in JobStatus])
    jobs.add_argument("--type", choices=[t.value for t in JobType])
    jobs.add_argument("--limit", type=int, default=50)

    job = subparsers.add_parser("job", help="Show a job")
    job.add_argument("job_id")

    cancel = subparsers.add_parser("cancel", help="Cancel a job")
    cancel.add_argument("job_id")
    cancel.add_argument("--remove", action="store_true", help="Delete the job instead")

    return parser


def main() -> int:
    """Main entry point."""
    parser = build_parser()
    args = parser.parse_args()

    # Setup logging
    setup_logging(args.verbose, args.log_file)

    try:
        if get_store_backend() == "sql":
            if not verify_connection():
                print("ERROR: Could not connect to database.")
                print("Please check your .env configuration and ensure PostgreSQL is running.")
                return 1

        processor = create_processor(progress_callback=print_progress if args.verbose else None)
        return COMMANDS[args.command](processor, args)
    except KeyboardInterrupt:
        print("\n\nPipeline interrupted by user.")
        return 130
    except PipelineError as e:
        print(f"ERROR: {e}")
        return 1
    except Exception as e:
        print(f"\nERROR: {e}")
        if args.verbose:
            import traceback
            traceback.print_exc()
        return 1
    finally:
        dispose_engine()


if __name__ == "__main__":
    sys.exit(main())
