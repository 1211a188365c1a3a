"""Shared fixtures for the pipeline tests."""

from pathlib import Path

import pytest
from PIL import Image

from db.records import Project
from db.stores import create_memory_stores
from pipeline.ai_tagger import AnalysisResult, ImageAnalyzer
from pipeline.blob_store import LocalBlobStore
from pipeline.hash_index import compute_hash
from pipeline.jobs import JobTracker
from pipeline.storage_handler import StorageHandler


class FakeAnalyzer(ImageAnalyzer):
    """
    Analyzer keyed by content hash.

    `names` maps a hash to the suggested name returned for it and
    `failures` maps a hash to the exception raised for it.
    """

    def __init__(self):
        self.names: dict[str, str] = {}
        self.failures: dict[str, Exception] = {}
        self.calls: list[tuple[str, str, str | None]] = []

    def candidate_models(self, override: str | None = None) -> list[str]:
        return [m for m in (override, "fake-vision") if m]

    def analyze(self, data: bytes, mime_type: str, model: str | None = None) -> AnalysisResult:
        digest = compute_hash(data)
        self.calls.append((digest, mime_type, model))
        if digest in self.failures:
            raise self.failures[digest]

        name = self.names.get(digest, "analyzed_image")
        return AnalysisResult(
            suggested_name=name,
            title=name.replace("_", " "),
            description=f"A picture of {name.replace('_', ' ')}",
            tags=["outdoor", "blue"],
            colors=["blue"],
            objects=["sky"],
            category="photo",
            style="modern",
            mood="calm",
            confidence=0.9,
            model=model or "fake-vision",
        )


@pytest.fixture
def make_image():
    """Write a small solid-color image and return its path."""
    def _make(path: Path, color=(200, 30, 30), size=(32, 24), mode="RGB") -> Path:
        Image.new(mode, size, color).save(path)
        return path
    return _make


@pytest.fixture
def stores():
    return create_memory_stores()


@pytest.fixture
def storage(stores):
    return StorageHandler(stores)


@pytest.fixture
def tracker(stores):
    return JobTracker(stores.jobs)


@pytest.fixture
def photo_dir(tmp_path):
    directory = tmp_path / "photos"
    directory.mkdir()
    return directory


@pytest.fixture
def blob_store(tmp_path):
    return LocalBlobStore(tmp_path / "blobs")


@pytest.fixture
def analyzer():
    return FakeAnalyzer()


@pytest.fixture
def project(stores, photo_dir):
    return stores.projects.create(Project.new("Holiday Photos", str(photo_dir)))
