"""Tests for blob storage backends and helpers."""

import subprocess
from unittest.mock import MagicMock

import pytest
import requests

from pipeline.blob_store import (
    GCSBlobStore,
    LocalBlobStore,
    copy_object,
    create_blob_store,
    get_content_type,
    move_object,
    sanitize_path_segment,
    storage_path,
    upload_image,
)
from pipeline.errors import BlobStoreError


def make_response(status_code: int) -> requests.Response:
    response = requests.Response()
    response.status_code = status_code
    response.url = "https://storage.googleapis.com/test"
    return response


class TestPaths:

    def test_sanitize_path_segment(self):
        assert sanitize_path_segment("My  Holiday (2024)!") == "my_holiday_2024_"

    def test_storage_path(self):
        assert storage_path("Holiday Photos", "a.jpg") == "projects/holiday_photos/images/a.jpg"

    def test_content_type(self):
        assert get_content_type("A.JPG") == "image/jpeg"
        assert get_content_type("notes.txt") == "application/octet-stream"


class TestLocalBlobStore:

    def test_put_exists_copy_delete(self, blob_store):
        blob_store.put("projects/p/images/a.jpg", b"data", "image/jpeg")
        blob_store.copy("projects/p/images/a.jpg", "projects/p/images/b.jpg")

        assert blob_store.exists("projects/p/images/b.jpg")
        blob_store.delete("projects/p/images/a.jpg")
        blob_store.delete("projects/p/images/missing.jpg")
        assert not blob_store.exists("projects/p/images/a.jpg")

    def test_copy_missing_source_raises(self, blob_store):
        with pytest.raises(BlobStoreError):
            blob_store.copy("projects/p/images/none.jpg", "projects/p/images/b.jpg")

    def test_public_url(self, tmp_path):
        store = LocalBlobStore(tmp_path / "blobs", base_url="https://cdn.example.com/")

        assert store.public_url("projects/p/images/a.jpg") == "https://cdn.example.com/projects/p/images/a.jpg"


class TestUploadImage:

    def test_upload_then_skip(self, blob_store):
        first = upload_image(blob_store, b"data", "Holiday", "a.jpg")
        second = upload_image(blob_store, b"data", "Holiday", "a.jpg")

        assert first.skipped is False
        assert second.skipped is True
        assert first.path == "projects/holiday/images/a.jpg"
        assert second.url == first.url

    def test_upload_without_skip_overwrites(self, blob_store):
        upload_image(blob_store, b"old", "Holiday", "a.jpg")

        result = upload_image(blob_store, b"new", "Holiday", "a.jpg", skip_if_exists=False)

        assert result.skipped is False
        assert (blob_store.root / result.path).read_bytes() == b"new"


class TestMoveObject:

    def test_move(self, blob_store):
        blob_store.put("src.jpg", b"x", "image/jpeg")

        assert move_object(blob_store, "src.jpg", "dst.jpg") is True
        assert blob_store.exists("dst.jpg")
        assert not blob_store.exists("src.jpg")

    def test_unverified_copy_keeps_source(self):
        store = MagicMock()
        store.exists.return_value = False

        with pytest.raises(BlobStoreError):
            move_object(store, "src.jpg", "dst.jpg")
        store.delete.assert_not_called()

    def test_failed_source_delete_is_reported(self):
        store = MagicMock()
        store.exists.return_value = True
        store.delete.side_effect = BlobStoreError("denied")

        assert move_object(store, "src.jpg", "dst.jpg") is False

    def test_copy_object_verifies(self):
        store = MagicMock()
        store.exists.return_value = True

        copy_object(store, "src.jpg", "dst.jpg")

        store.copy.assert_called_once_with("src.jpg", "dst.jpg")
        store.exists.assert_called_once_with("dst.jpg")


class TestGCSBlobStore:

    @pytest.fixture
    def gcs(self):
        store = GCSBlobStore("bucket", access_token="token")
        store._session = MagicMock()
        return store

    def test_exists_maps_404_to_false(self, gcs):
        gcs._session.request.return_value = make_response(404)

        assert gcs.exists("projects/p/images/a.jpg") is False

    def test_exists_sends_auth_and_encoded_path(self, gcs):
        gcs._session.request.return_value = make_response(200)

        assert gcs.exists("projects/p/images/a.jpg") is True
        method, url = gcs._session.request.call_args.args
        assert method == "GET"
        assert url.endswith("/b/bucket/o/projects%2Fp%2Fimages%2Fa.jpg")
        assert gcs._session.request.call_args.kwargs["headers"]["Authorization"] == "Bearer token"

    def test_put_uses_media_upload(self, gcs):
        gcs._session.request.return_value = make_response(200)

        gcs.put("projects/p/images/a.jpg", b"data", "image/jpeg")

        kwargs = gcs._session.request.call_args.kwargs
        assert kwargs["params"] == {"uploadType": "media", "name": "projects/p/images/a.jpg"}
        assert kwargs["headers"]["Content-Type"] == "image/jpeg"
        assert kwargs["data"] == b"data"

    def test_server_error_raises(self, gcs):
        gcs._session.request.return_value = make_response(500)

        with pytest.raises(BlobStoreError):
            gcs.delete("projects/p/images/a.jpg")

    def test_transport_error_raises(self, gcs):
        gcs._session.request.side_effect = requests.exceptions.ConnectionError("down")

        with pytest.raises(BlobStoreError):
            gcs.exists("projects/p/images/a.jpg")

    def test_public_url(self, gcs):
        assert gcs.public_url("projects/p/images/a.jpg") == (
            "https://storage.googleapis.com/bucket/projects/p/images/a.jpg"
        )

    @pytest.mark.parametrize("error", [
        subprocess.TimeoutExpired(["gcloud"], 15),
        FileNotFoundError("gcloud"),
    ])
    def test_token_lookup_failure_raises(self, monkeypatch, error):
        monkeypatch.delenv("GCS_ACCESS_TOKEN", raising=False)
        store = GCSBlobStore("bucket")
        store._session = MagicMock()

        def fail(*args, **kwargs):
            raise error

        monkeypatch.setattr(subprocess, "run", fail)

        with pytest.raises(BlobStoreError, match="gcloud auth failed"):
            store.exists("projects/p/images/a.jpg")
        store._session.request.assert_not_called()


class TestCreateBlobStore:

    def test_disabled_by_default(self, monkeypatch):
        monkeypatch.delenv("BLOB_BACKEND", raising=False)

        assert create_blob_store() is None

    def test_local_backend(self, monkeypatch, tmp_path):
        monkeypatch.setenv("BLOB_BACKEND", "local")
        monkeypatch.setenv("BLOB_LOCAL_ROOT", str(tmp_path / "store"))

        store = create_blob_store()

        assert isinstance(store, LocalBlobStore)
        assert (tmp_path / "store").is_dir()

    def test_gcs_requires_bucket(self, monkeypatch):
        monkeypatch.setenv("BLOB_BACKEND", "gcs")
        monkeypatch.delenv("GCS_BUCKET", raising=False)

        with pytest.raises(ValueError):
            create_blob_store()
