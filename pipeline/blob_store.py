"""
Cloud object storage for project images.

Provides:
- A narrow BlobStore interface (exists/put/copy/delete)
- A local-directory implementation for offline use and tests
- A Google Cloud Storage implementation over the JSON API
- Upload-if-missing and copy-verify-delete move helpers
"""

import logging
import os
import re
import shutil
import subprocess
from abc import ABC, abstractmethod
from dataclasses import dataclass
from pathlib import Path
from urllib.parse import quote

import requests
from dotenv import load_dotenv
from requests.adapters import HTTPAdapter
from urllib3.util.retry import Retry

from pipeline.errors import BlobStoreError

load_dotenv()

logger = logging.getLogger(__name__)

CONTENT_TYPES = {
    ".jpg": "image/jpeg",
    ".jpeg": "image/jpeg",
    ".png": "image/png",
    ".gif": "image/gif",
    ".webp": "image/webp",
    ".bmp": "image/bmp",
    ".svg": "image/svg+xml",
}


def get_content_type(filename: str) -> str:
    """Get MIME type from a filename extension."""
    return CONTENT_TYPES.get(Path(filename).suffix.lower(), "application/octet-stream")


def sanitize_path_segment(name: str) -> str:
    """
    Sanitize a project name for use in an object path.

    Lowercases, replaces characters outside [a-z0-9_-] with underscores,
    collapses underscore runs and truncates to 50 characters.
    """
    segment = re.sub(r"[^a-z0-9_-]", "_", name.lower())
    segment = re.sub(r"_+", "_", segment)
    return segment[:50]


def storage_path(project_name: str, filename: str) -> str:
    """Deterministic object path for a project image."""
    return f"projects/{sanitize_path_segment(project_name)}/images/{filename}"


# ────────────────────────────────────────────────────────────────────────────────
# Stores
# ────────────────────────────────────────────────────────────────────────────────

class BlobStore(ABC):
    """Object store keyed by path."""

    @abstractmethod
    def exists(self, path: str) -> bool:
        """Check whether an object exists."""

    @abstractmethod
    def put(self, path: str, data: bytes, content_type: str) -> None:
        """Write an object, replacing any existing one."""

    @abstractmethod
    def copy(self, src_path: str, dst_path: str) -> None:
        """Copy an object to a new path."""

    @abstractmethod
    def delete(self, path: str) -> None:
        """Delete an object. Deleting a missing object is not an error."""

    @abstractmethod
    def public_url(self, path: str) -> str:
        """URL an object is served from."""


class LocalBlobStore(BlobStore):
    """
    Blob store backed by a local directory.

    Object paths map to files below the root directory.
    """

    def __init__(self, root: str | Path, base_url: str | None = None):
        self.root = Path(root)
        self.base_url = base_url or self.root.resolve().as_uri()
        self.root.mkdir(parents=True, exist_ok=True)

    def _resolve(self, path: str) -> Path:
        return self.root / path

    def exists(self, path: str) -> bool:
        return self._resolve(path).is_file()

    def put(self, path: str, data: bytes, content_type: str) -> None:
        target = self._resolve(path)
        try:
            target.parent.mkdir(parents=True, exist_ok=True)
            target.write_bytes(data)
        except OSError as e:
            raise BlobStoreError(f"Failed to write {path}: {e}") from e

    def copy(self, src_path: str, dst_path: str) -> None:
        src = self._resolve(src_path)
        dst = self._resolve(dst_path)
        try:
            dst.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(src, dst)
        except OSError as e:
            raise BlobStoreError(f"Failed to copy {src_path} -> {dst_path}: {e}") from e

    def delete(self, path: str) -> None:
        try:
            self._resolve(path).unlink(missing_ok=True)
        except OSError as e:
            raise BlobStoreError(f"Failed to delete {path}: {e}") from e

    def public_url(self, path: str) -> str:
        return f"{self.base_url.rstrip('/')}/{path}"


class GCSBlobStore(BlobStore):
    """
    Google Cloud Storage bucket accessed through the JSON API.

    Usage:
        store = GCSBlobStore("my-bucket")  # token from GCS_ACCESS_TOKEN or gcloud
        store.put("projects/demo/images/a.jpg", data, "image/jpeg")
    """

    API_URL = "https://storage.googleapis.com/storage/v1"
    UPLOAD_URL = "https://storage.googleapis.com/upload/storage/v1"
    PUBLIC_URL = "https://storage.googleapis.com"

    def __init__(
        self,
        bucket: str,
        access_token: str | None = None,
        max_retries: int = 3,
        timeout: int = 60,
    ):
        """
        Initialize the GCS client.

        Args:
            bucket: Bucket name (without gs://).
            access_token: OAuth bearer token. If None, reads GCS_ACCESS_TOKEN
                          or asks gcloud for application-default credentials.
            max_retries: Retries for 5xx responses.
            timeout: Request timeout in seconds.
        """
        self.bucket = bucket
        self.timeout = timeout
        self._access_token = access_token or os.getenv("GCS_ACCESS_TOKEN")

        self._session = requests.Session()
        retry_strategy = Retry(
            total=max_retries,
            backoff_factor=1,
            status_forcelist=[500, 502, 503, 504],
        )
        adapter = HTTPAdapter(
            pool_connections=5,
            pool_maxsize=10,
            max_retries=retry_strategy,
        )
        self._session.mount("https://", adapter)

    def _get_token(self) -> str:
        if not self._access_token:
            try:
                result = subprocess.run(
                    ["gcloud", "auth", "application-default", "print-access-token"],
                    capture_output=True, text=True, timeout=15,
                )
            except (OSError, subprocess.SubprocessError) as e:
                raise BlobStoreError(f"gcloud auth failed: {e}") from e
            if result.returncode != 0:
                raise BlobStoreError(f"gcloud auth failed: {result.stderr.strip()}")
            self._access_token = result.stdout.strip()
        return self._access_token

    def _object_url(self, path: str) -> str:
        return f"{self.API_URL}/b/{self.bucket}/o/{quote(path, safe='')}"

    def _make_request(self, method: str, url: str, **kwargs) -> requests.Response:
        """
        Make an authenticated request.

        404 responses are returned to the caller; other HTTP errors raise.

        Raises:
            BlobStoreError: On transport errors or non-404 error statuses.
        """
        headers = kwargs.pop("headers", {})
        headers["Authorization"] = f"Bearer {self._get_token()}"
        kwargs.setdefault("timeout", self.timeout)

        try:
            response = self._session.request(method, url, headers=headers, **kwargs)
        except requests.exceptions.RequestException as e:
            raise BlobStoreError(f"{method} {url} failed: {e}") from e

        if response.status_code == 404:
            return response
        if response.status_code == 401:
            raise BlobStoreError("GCS access token expired or invalid")

        try:
            response.raise_for_status()
        except requests.exceptions.HTTPError as e:
            raise BlobStoreError(f"{method} {url} failed: {e}") from e
        return response

    def exists(self, path: str) -> bool:
        response = self._make_request("GET", self._object_url(path))
        return response.status_code != 404

    def put(self, path: str, data: bytes, content_type: str) -> None:
        response = self._make_request(
            "POST",
            f"{self.UPLOAD_URL}/b/{self.bucket}/o",
            params={"uploadType": "media", "name": path},
            data=data,
            headers={"Content-Type": content_type},
        )
        if response.status_code == 404:
            raise BlobStoreError(f"Bucket not found: {self.bucket}")

    def copy(self, src_path: str, dst_path: str) -> None:
        url = (
            f"{self._object_url(src_path)}/copyTo/b/{self.bucket}"
            f"/o/{quote(dst_path, safe='')}"
        )
        response = self._make_request("POST", url)
        if response.status_code == 404:
            raise BlobStoreError(f"Source object not found: {src_path}")

    def delete(self, path: str) -> None:
        self._make_request("DELETE", self._object_url(path))

    def public_url(self, path: str) -> str:
        return f"{self.PUBLIC_URL}/{self.bucket}/{path}"

    def close(self) -> None:
        """Close the HTTP session."""
        self._session.close()


def create_blob_store() -> BlobStore | None:
    """
    Build the configured blob store.

    BLOB_BACKEND selects "gcs" (GCS_BUCKET), "local" (BLOB_LOCAL_ROOT)
    or "none". Returns None when cloud upload is disabled.
    """
    backend = os.getenv("BLOB_BACKEND", "none").lower()

    if backend == "gcs":
        bucket = os.getenv("GCS_BUCKET")
        if not bucket:
            raise ValueError("BLOB_BACKEND=gcs requires GCS_BUCKET")
        logger.info(f"Blob storage: gs://{bucket}")
        return GCSBlobStore(bucket)

    if backend == "local":
        root = os.getenv("BLOB_LOCAL_ROOT", "blob_storage")
        logger.info(f"Blob storage: local directory {root}")
        return LocalBlobStore(root)

    logger.info("Blob storage: disabled")
    return None


# ────────────────────────────────────────────────────────────────────────────────
# Helpers
# ────────────────────────────────────────────────────────────────────────────────

@dataclass
class UploadResult:
    """Result of uploading one image."""
    url: str
    path: str
    skipped: bool = False


def upload_image(
    store: BlobStore,
    data: bytes,
    project_name: str,
    filename: str,
    skip_if_exists: bool = True
) -> UploadResult:
    """
    Upload an image to its deterministic project path.

    Args:
        store: Target blob store.
        data: File contents.
        project_name: Project display name (sanitized into the path).
        filename: Object filename.
        skip_if_exists: Do not transfer when the object is already there.

    Returns:
        UploadResult with the public URL and whether the upload was skipped.

    Raises:
        BlobStoreError: If the existence check or upload fails.
    """
    path = storage_path(project_name, filename)

    if skip_if_exists and store.exists(path):
        logger.debug(f"Skipping {filename} (already in storage)")
        return UploadResult(url=store.public_url(path), path=path, skipped=True)

    store.put(path, data, get_content_type(filename))
    return UploadResult(url=store.public_url(path), path=path, skipped=False)


def copy_object(store: BlobStore, src_path: str, dst_path: str) -> None:
    """
    Copy an object and confirm the copy exists.

    Raises:
        BlobStoreError: If the copy fails or cannot be verified.
    """
    store.copy(src_path, dst_path)

    if not store.exists(dst_path):
        raise BlobStoreError(f"Copy of {src_path} not found at {dst_path}")


def move_object(store: BlobStore, src_path: str, dst_path: str) -> bool:
    """
    Move an object by copying, verifying and then deleting the source.

    The source is only deleted after the copy is confirmed, so an
    interruption leaves both objects rather than neither.

    Returns:
        True if the source was removed, False if it had to be left behind.

    Raises:
        BlobStoreError: If the copy fails or cannot be verified.
    """
    copy_object(store, src_path, dst_path)

    try:
        store.delete(src_path)
    except BlobStoreError as e:
        logger.warning(f"Copied {src_path} -> {dst_path} but could not delete source: {e}")
        return False

    logger.info(f"Storage renamed: {src_path} -> {dst_path}")
    return True
