"""Tests for the Flask JSON API."""

import io
import time
import zipfile

import pytest

from db.records import Project
from pipeline.jobs import JobType
from pipeline.processor import ImageProcessor
from web.app import app


def wait_until_idle(processor: ImageProcessor, project_id: str, timeout: float = 10.0) -> None:
    deadline = time.monotonic() + timeout
    while processor.is_busy(project_id):
        if time.monotonic() > deadline:
            raise AssertionError(f"Project {project_id} still busy after {timeout}s")
        time.sleep(0.01)


@pytest.fixture
def processor(stores, analyzer):
    return ImageProcessor(stores, analyzer=analyzer)


@pytest.fixture
def client(processor):
    app.config["TESTING"] = True
    app.config["PROCESSOR"] = processor
    with app.test_client() as client:
        yield client
    app.config["PROCESSOR"] = None


@pytest.fixture
def scanned_project(processor, project, photo_dir, make_image):
    make_image(photo_dir / "a.jpg", color=(255, 0, 0))
    make_image(photo_dir / "b.jpg", color=(0, 255, 0))
    processor.scan(project.id)
    return project


class TestProjectRoutes:

    def test_create_and_get_project(self, client, photo_dir):
        response = client.post("/api/projects", json={
            "name": "Trip",
            "folderPath": str(photo_dir),
            "description": "Summer",
        })

        assert response.status_code == 201
        project = response.get_json()["project"]
        assert project["name"] == "Trip"

        response = client.get(f"/api/projects/{project['id']}")
        assert response.status_code == 200
        assert response.get_json()["project"]["description"] == "Summer"

        listed = client.get("/api/projects").get_json()["projects"]
        assert [p["id"] for p in listed] == [project["id"]]

    def test_create_requires_name_and_folder(self, client):
        response = client.post("/api/projects", json={"name": "Trip"})

        assert response.status_code == 400
        assert response.get_json()["error"] == "Name and folder path are required"

    def test_create_with_missing_folder(self, client, tmp_path):
        response = client.post("/api/projects", json={
            "name": "Trip",
            "folderPath": str(tmp_path / "missing"),
        })

        assert response.status_code == 400

    def test_unknown_project_is_404(self, client):
        assert client.get("/api/projects/proj_missing").status_code == 404
        assert client.post("/api/projects/proj_missing/scan").status_code == 404

    def test_delete_project(self, client, project):
        response = client.delete(f"/api/projects/{project.id}")

        assert response.get_json() == {"success": True}
        assert client.get(f"/api/projects/{project.id}").status_code == 404


class TestPipelineRoutes:

    def test_scan_runs_in_background(self, client, processor, project, photo_dir, make_image):
        make_image(photo_dir / "a.jpg")

        response = client.post(f"/api/projects/{project.id}/scan", json={})

        assert response.status_code == 202
        body = response.get_json()
        job_id = body.pop("jobId")
        assert body == {"success": True, "projectId": project.id, "operation": "scan"}
        wait_until_idle(processor, project.id)

        assert client.get(f"/api/jobs/{job_id}").get_json()["job"]["status"] == "completed"
        body = client.get(f"/api/jobs?projectId={project.id}").get_json()
        assert body["summary"]["completed"] == 1
        job = body["jobs"][0]
        assert job["type"] == "scan"
        assert job["status_message"] == "Scanned 1 images, 0 duplicates"

        images = client.get(f"/api/projects/{project.id}/images").get_json()
        assert images["total"] == 1

    def test_analyze_and_rename(self, client, processor, scanned_project):
        project_id = scanned_project.id

        assert client.post(f"/api/projects/{project_id}/analyze", json={}).status_code == 202
        wait_until_idle(processor, project_id)
        assert client.post(f"/api/projects/{project_id}/rename", json={}).status_code == 202
        wait_until_idle(processor, project_id)

        images = client.get(f"/api/projects/{project_id}/images").get_json()["images"]
        assert sorted(i["current_name"] for i in images) == ["analyzed_image.jpg", "analyzed_image_1.jpg"]

    def test_busy_project_is_409(self, client, processor, project):
        processor._acquire(project.id)
        try:
            response = client.post(f"/api/projects/{project.id}/scan", json={})
        finally:
            processor._release(project.id)

        assert response.status_code == 409

    def test_missing_folder_is_400_without_a_job(self, client, processor, stores, tmp_path):
        project = stores.projects.create(Project.new("Gone", str(tmp_path / "missing")))

        response = client.post(f"/api/projects/{project.id}/scan", json={})

        assert response.status_code == 400
        assert "Folder not found" in response.get_json()["error"]
        assert processor.list_jobs() == []
        assert not processor.is_busy(project.id)

    def test_analyze_without_analyzer_is_400(self, stores, scanned_project):
        processor = ImageProcessor(stores, analyzer=None)
        app.config["PROCESSOR"] = processor
        try:
            response = app.test_client().post(f"/api/projects/{scanned_project.id}/analyze", json={})
        finally:
            app.config["PROCESSOR"] = None

        assert response.status_code == 400
        assert processor.list_jobs(job_type=JobType.ANALYZE) == []

    def test_cleanup_without_duplicates_is_400(self, client, processor, scanned_project):
        response = client.post(f"/api/projects/{scanned_project.id}/cleanup-duplicates")

        assert response.status_code == 400
        assert response.get_json()["error"] == "No duplicates found"
        assert processor.list_jobs(job_type=JobType.CLEANUP) == []


class TestImageRoutes:

    def test_rename_image(self, client, scanned_project, processor):
        image = processor.list_images(scanned_project.id)[0]

        response = client.post(
            f"/api/projects/{scanned_project.id}/images/{image.id}/rename",
            json={"newName": "red_square"},
        )

        body = response.get_json()
        assert response.status_code == 200
        assert body["success"] is True
        assert body["oldName"] == "a.jpg"
        assert body["newName"] == "red_square.jpg"
        assert body["newPath"].endswith("red_square.jpg")
        assert body["storageUrl"] is None

    def test_rename_requires_name(self, client, scanned_project, processor):
        image = processor.list_images(scanned_project.id)[0]

        response = client.post(
            f"/api/projects/{scanned_project.id}/images/{image.id}/rename", json={}
        )

        assert response.status_code == 400

    def test_rename_unknown_image(self, client, scanned_project):
        response = client.post(
            f"/api/projects/{scanned_project.id}/images/nope/rename", json={"newName": "x"}
        )

        assert response.status_code == 404

    def test_delete_image(self, client, scanned_project, processor):
        image = processor.list_images(scanned_project.id)[0]

        response = client.delete(f"/api/projects/{scanned_project.id}/images/{image.id}?deleteFile=true")

        assert response.get_json() == {"success": True}
        assert client.get(f"/api/projects/{scanned_project.id}/images").get_json()["total"] == 1


class TestDownloadZip:

    def test_archive_uses_current_names(self, client, processor, scanned_project, photo_dir):
        image = processor.list_images(scanned_project.id)[0]
        processor.rename_image(scanned_project.id, image.id, "red_square")

        response = client.get(f"/api/projects/{scanned_project.id}/download-zip")

        assert response.status_code == 200
        assert response.mimetype == "application/zip"
        disposition = response.headers["Content-Disposition"]
        assert disposition.startswith("attachment")
        assert "holiday_photos.zip" in disposition
        with zipfile.ZipFile(io.BytesIO(response.data)) as archive:
            assert sorted(archive.namelist()) == ["b.jpg", "red_square.jpg"]
            assert archive.getinfo("red_square.jpg").compress_type == zipfile.ZIP_DEFLATED
            assert archive.read("red_square.jpg") == (photo_dir / "red_square.jpg").read_bytes()

    def test_missing_files_are_skipped(self, client, scanned_project, photo_dir):
        (photo_dir / "b.jpg").unlink()

        response = client.get(f"/api/projects/{scanned_project.id}/download-zip")

        assert response.status_code == 200
        with zipfile.ZipFile(io.BytesIO(response.data)) as archive:
            assert archive.namelist() == ["a.jpg"]

    def test_empty_project_is_400(self, client, project):
        response = client.get(f"/api/projects/{project.id}/download-zip")

        assert response.status_code == 400
        assert response.get_json()["error"] == "No images found for this project"

    def test_unknown_project_is_404(self, client):
        assert client.get("/api/projects/proj_missing/download-zip").status_code == 404


class TestJobRoutes:

    def test_get_and_cancel_job(self, client, processor, project):
        job = processor.tracker.create_job(project.id, project.name, JobType.ANALYZE, 3)

        assert client.get(f"/api/jobs/{job.id}").get_json()["job"]["status"] == "pending"

        body = client.delete(f"/api/jobs/{job.id}").get_json()
        assert body["removed"] is False
        assert body["job"]["status"] == "cancelled"

        body = client.delete(f"/api/jobs/{job.id}?remove=true").get_json()
        assert body["removed"] is True
        assert client.get(f"/api/jobs/{job.id}").status_code == 404

    def test_unknown_job(self, client):
        assert client.get("/api/jobs/job_missing").status_code == 404
        assert client.delete("/api/jobs/job_missing").status_code == 404

    def test_invalid_status_filter(self, client):
        assert client.get("/api/jobs?status=exploded").status_code == 400
