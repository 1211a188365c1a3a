"""
Flask JSON API for projects, images and jobs.

Pipeline runs triggered over HTTP are prepared in the request, so
configuration problems and empty target sets answer 400, then execute on
a worker thread. The 202 response carries the job id to poll.
"""

import logging

from flask import Flask, current_app, jsonify, request, send_file

from db.records import ImageRecord, Project
from pipeline.errors import (
    BlobStoreError,
    ConfigurationError,
    ImageNotFoundError,
    NoTargetsError,
    PipelineError,
    ProjectBusyError,
    ProjectNotFoundError,
)
from pipeline.jobs import JobStatus, JobType, summarize
from pipeline.processor import ImageProcessor, create_processor

logger = logging.getLogger(__name__)

app = Flask(__name__)
app.config["PROCESSOR"] = None


def get_processor() -> ImageProcessor:
    """Processor for this app, built from the environment on first use."""
    processor = current_app.config.get("PROCESSOR")
    if processor is None:
        processor = create_processor()
        current_app.config["PROCESSOR"] = processor
    return processor


def arg_flag(name: str, default: bool = False) -> bool:
    """Read a boolean query parameter (true/1/yes)."""
    value = request.args.get(name)
    if value is None:
        return default
    return value.lower() in ("1", "true", "yes")


def json_body() -> dict:
    return request.get_json(silent=True) or {}


def project_json(project: Project) -> dict:
    return project.to_dict()


def image_json(record: ImageRecord) -> dict:
    return record.to_dict()


# ────────────────────────────────────────────────────────────────────────────────
# Error mapping
# ────────────────────────────────────────────────────────────────────────────────

@app.errorhandler(ProjectNotFoundError)
@app.errorhandler(ImageNotFoundError)
def handle_not_found(error):
    return jsonify({"error": str(error)}), 404


@app.errorhandler(ProjectBusyError)
def handle_busy(error):
    return jsonify({"error": str(error)}), 409


@app.errorhandler(ConfigurationError)
@app.errorhandler(NoTargetsError)
@app.errorhandler(ValueError)
def handle_bad_request(error):
    return jsonify({"error": str(error)}), 400


@app.errorhandler(BlobStoreError)
@app.errorhandler(OSError)
@app.errorhandler(PipelineError)
def handle_pipeline_error(error):
    logger.error(f"Request failed: {error}")
    return jsonify({"error": str(error)}), 500


# ────────────────────────────────────────────────────────────────────────────────
# Jobs
# ────────────────────────────────────────────────────────────────────────────────

@app.route("/api/jobs")
def list_jobs():
    """List jobs, newest first, with a per-status summary."""
    status = request.args.get("status")
    job_type = request.args.get("type")
    limit = request.args.get("limit", 200, type=int)

    jobs = get_processor().list_jobs(
        project_id=request.args.get("projectId"),
        status=JobStatus(status) if status else None,
        job_type=JobType(job_type) if job_type else None,
        limit=limit,
    )
    return jsonify({
        "jobs": [job.to_dict() for job in jobs],
        "summary": summarize(jobs),
    })


@app.route("/api/jobs/<job_id>")
def get_job(job_id):
    job = get_processor().get_job(job_id)
    if job is None:
        return jsonify({"error": "Job not found"}), 404
    return jsonify({"job": job.to_dict()})


@app.route("/api/jobs/<job_id>", methods=["DELETE"])
def cancel_job(job_id):
    """Cancel a job, or delete it with ?remove=true."""
    remove = arg_flag("remove")
    job = get_processor().cancel_job(job_id, remove=remove)
    if job is None:
        return jsonify({"error": "Job not found"}), 404
    return jsonify({"success": True, "removed": remove, "job": job.to_dict()})


# ────────────────────────────────────────────────────────────────────────────────
# Projects
# ────────────────────────────────────────────────────────────────────────────────

@app.route("/api/projects")
def list_projects():
    projects = get_processor().list_projects()
    return jsonify({"projects": [project_json(p) for p in projects]})


@app.route("/api/projects", methods=["POST"])
def create_project():
    body = json_body()
    if not body.get("name") or not body.get("folderPath"):
        return jsonify({"error": "Name and folder path are required"}), 400

    project = get_processor().create_project(
        body["name"], body["folderPath"], body.get("description")
    )
    return jsonify({"project": project_json(project)}), 201


@app.route("/api/projects/<project_id>")
def get_project(project_id):
    project = get_processor().get_project(project_id)
    return jsonify({"project": project_json(project)})


@app.route("/api/projects/<project_id>", methods=["DELETE"])
def delete_project(project_id):
    deleted = get_processor().delete_project(project_id)
    return jsonify({"success": deleted})


def start_run(operation: str, project_id: str, **kwargs):
    run = get_processor().start_background(operation, project_id, **kwargs)
    return jsonify({
        "success": True,
        "projectId": project_id,
        "operation": operation,
        "jobId": run.job.id,
    }), 202


@app.route("/api/projects/<project_id>/scan", methods=["POST"])
def scan_project(project_id):
    body = json_body()
    return start_run("scan", project_id, upload_to_cloud=body.get("uploadToCloud"))


@app.route("/api/projects/<project_id>/analyze", methods=["POST"])
def analyze_project(project_id):
    body = json_body()
    return start_run(
        "analyze", project_id, image_ids=body.get("imageIds"), model=body.get("model")
    )


@app.route("/api/projects/<project_id>/rename", methods=["POST"])
def rename_project(project_id):
    body = json_body()
    return start_run(
        "rename",
        project_id,
        image_ids=body.get("imageIds"),
        use_ai_suggestion=body.get("useAiSuggestion", True),
        use_pattern_clean=body.get("usePatternClean", False),
    )


@app.route("/api/projects/<project_id>/cleanup-duplicates", methods=["POST"])
def cleanup_project(project_id):
    return start_run("cleanup", project_id)


@app.route("/api/projects/<project_id>/download-zip")
def download_zip(project_id):
    """Download the project's current files as a ZIP archive."""
    filename, archive = get_processor().export_archive(project_id)
    return send_file(
        archive.buffer,
        mimetype="application/zip",
        as_attachment=True,
        download_name=filename,
    )


# ────────────────────────────────────────────────────────────────────────────────
# Images
# ────────────────────────────────────────────────────────────────────────────────

@app.route("/api/projects/<project_id>/images")
def list_images(project_id):
    records = get_processor().list_images(project_id)
    return jsonify({"images": [image_json(r) for r in records], "total": len(records)})


@app.route("/api/projects/<project_id>/images/<image_id>/rename", methods=["POST"])
def rename_image(project_id, image_id):
    new_name = json_body().get("newName")
    if not new_name:
        return jsonify({"error": "New name required"}), 400

    outcome = get_processor().rename_image(project_id, image_id, new_name)
    return jsonify({
        "success": True,
        "oldName": outcome.old_name,
        "newName": outcome.new_name,
        "newPath": outcome.local_path,
        "storageUrl": outcome.blob_url,
        "renamedAt": outcome.renamed_at,
    })


@app.route("/api/projects/<project_id>/images/<image_id>", methods=["DELETE"])
def delete_image(project_id, image_id):
    get_processor().delete_image(
        project_id,
        image_id,
        delete_file=arg_flag("deleteFile"),
        delete_from_cloud=arg_flag("deleteFromCloud", default=True),
    )
    return jsonify({"success": True})


if __name__ == "__main__":
    logging.basicConfig(
        level=logging.INFO,
        format="%(asctime)s - %(levelname)s - %(message)s",
    )
    app.run(debug=True, port=5000)
