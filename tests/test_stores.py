"""Tests for the in-memory and SQLAlchemy store implementations."""

import time

import pytest
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from db.models import Base
from db.operations import create_sql_stores
from db.records import ImageRecord, Project, TaxonomyType
from db.stores import create_memory_stores


@pytest.fixture(params=["memory", "sql"])
def any_stores(request):
    if request.param == "memory":
        yield create_memory_stores()
        return

    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    Base.metadata.create_all(engine)
    yield create_sql_stores(sessionmaker(bind=engine, expire_on_commit=False))
    engine.dispose()


def build_record(image_id: str, name: str, content_hash: str = "a" * 32) -> ImageRecord:
    return ImageRecord(
        id=image_id,
        project_id="proj_1",
        original_name=name,
        current_name=name,
        local_path=f"/photos/{name}",
        size_bytes=10,
        content_hash=content_hash,
        extension=".jpg",
    )


class TestImageStore:

    def test_put_get_list(self, any_stores):
        images = any_stores.images
        images.put("proj_1", build_record("a_1", "one.jpg"))
        images.put_many("proj_1", [build_record("a_2", "two.jpg"), build_record("a_3", "three.jpg")])

        assert images.get("proj_1", "a_1").original_name == "one.jpg"
        assert sorted(r.id for r in images.list("proj_1")) == ["a_1", "a_2", "a_3"]
        assert images.list("proj_2") == []
        assert images.get("proj_2", "a_1") is None

    def test_put_overwrites_same_id(self, any_stores):
        images = any_stores.images
        images.put("proj_1", build_record("a_1", "one.jpg"))
        record = build_record("a_1", "one.jpg")
        record.suggested_name = "river"
        images.put("proj_1", record)

        assert len(images.list("proj_1")) == 1
        assert images.get("proj_1", "a_1").suggested_name == "river"

    def test_update_applies_merge_patch(self, any_stores):
        images = any_stores.images
        record = build_record("a_1", "one.jpg")
        record.metadata.width = 100
        images.put("proj_1", record)

        updated = images.update("proj_1", "a_1", {
            "suggested_name": "river_bank",
            "metadata": {"height": 50},
        })

        assert updated.suggested_name == "river_bank"
        assert updated.metadata.width == 100
        assert updated.metadata.height == 50
        assert images.get("proj_1", "a_1").metadata.height == 50

    def test_update_missing_returns_none(self, any_stores):
        assert any_stores.images.update("proj_1", "nope", {"renamed": True}) is None

    def test_delete_and_clear(self, any_stores):
        images = any_stores.images
        images.put_many("proj_1", [build_record("a_1", "one.jpg"), build_record("a_2", "two.jpg")])
        images.put("proj_2", build_record("a_9", "nine.jpg"))

        assert images.delete("proj_1", "a_1") is True
        assert images.delete("proj_1", "a_1") is False
        assert images.clear("proj_1") == 1
        assert images.list("proj_1") == []
        assert len(images.list("proj_2")) == 1


class TestProjectStore:

    def test_create_get_update(self, any_stores):
        projects = any_stores.projects
        project = projects.create(Project.new("Holiday", "/photos", "Summer trip"))

        updated = projects.update(project.id, {"image_count": 4})

        assert updated.image_count == 4
        assert projects.get(project.id).description == "Summer trip"
        assert projects.update("missing", {"image_count": 1}) is None

    def test_increment_stats(self, any_stores):
        projects = any_stores.projects
        project = projects.create(Project.new("Holiday", "/photos"))

        projects.increment_stats(project.id, analyzed=3)
        result = projects.increment_stats(project.id, analyzed=1, renamed=2, image_count=7)

        assert result.analyzed_count == 4
        assert result.renamed_count == 2
        assert result.image_count == 7
        assert projects.increment_stats("missing", analyzed=1) is None

    def test_list_most_recently_updated_first(self, any_stores):
        projects = any_stores.projects
        first = projects.create(Project.new("First", "/a"))
        time.sleep(0.01)
        second = projects.create(Project.new("Second", "/b"))
        time.sleep(0.01)
        projects.increment_stats(first.id, analyzed=1)

        assert [p.id for p in projects.list()] == [first.id, second.id]

    def test_delete(self, any_stores):
        projects = any_stores.projects
        project = projects.create(Project.new("Holiday", "/photos"))

        assert projects.delete(project.id) is True
        assert projects.get(project.id) is None
        assert projects.delete(project.id) is False


class TestTaxonomyStore:

    def test_get_or_create_is_idempotent(self, any_stores):
        taxonomies = any_stores.taxonomies
        first = taxonomies.get_or_create(TaxonomyType.TAG, " beach ")
        second = taxonomies.get_or_create(TaxonomyType.TAG, "beach")

        assert first.id == second.id
        assert first.name == "beach"

    def test_names_are_case_sensitive_and_scoped_by_type(self, any_stores):
        taxonomies = any_stores.taxonomies
        tag = taxonomies.get_or_create(TaxonomyType.TAG, "Blue")
        lower = taxonomies.get_or_create(TaxonomyType.TAG, "blue")
        color = taxonomies.get_or_create(TaxonomyType.COLOR, "Blue")

        assert len({tag.id, lower.id, color.id}) == 3
        assert [e.name for e in taxonomies.list(TaxonomyType.TAG)] == ["Blue", "blue"]
        assert len(taxonomies.list()) == 3

    def test_blank_name_is_skipped(self, any_stores):
        assert any_stores.taxonomies.get_or_create(TaxonomyType.MOOD, "   ") is None


class TestJobStore:

    def test_save_get_list_delete(self, any_stores):
        jobs = any_stores.jobs
        document = {
            "id": "job_1",
            "project_id": "proj_1",
            "type": "scan",
            "status": "pending",
            "created_at": "2024-05-01T12:00:00+00:00",
        }
        jobs.save(document)
        jobs.save({**document, "status": "running"})
        jobs.save({**document, "id": "job_2", "project_id": "proj_2"})

        assert jobs.get("job_1")["status"] == "running"
        assert [d["id"] for d in jobs.list("proj_1")] == ["job_1"]
        assert len(jobs.list()) == 2
        assert jobs.delete("job_1") is True
        assert jobs.get("job_1") is None
