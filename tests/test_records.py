"""Tests for record types and document helpers."""

import re
from datetime import datetime, timezone

from db.records import (
    ImageMetadata,
    ImageRecord,
    Project,
    RecordStatus,
    advance_status,
    generate_id,
    generate_image_id,
    merge_patch,
)


def build_record(**overrides) -> ImageRecord:
    values = dict(
        id="5d41402a_sunset.jpg",
        project_id="proj_1",
        original_name="sunset.jpg",
        current_name="sunset.jpg",
        local_path="/photos/sunset.jpg",
        size_bytes=1024,
        content_hash="5d41402abc4b2a76b9719d911017c592",
        extension=".jpg",
    )
    values.update(overrides)
    return ImageRecord(**values)


class TestIds:

    def test_image_id_from_hash_and_name(self):
        image_id = generate_image_id("0123456789abcdef0123456789abcdef", "my photo (1).jpg")

        assert image_id == "01234567_my_photo__1_.jpg"

    def test_image_id_name_is_truncated(self):
        image_id = generate_image_id("0" * 32, "a" * 80 + ".jpg")

        assert image_id == "00000000_" + "a" * 50

    def test_generated_ids_are_prefixed_and_unique(self):
        first, second = generate_id("job"), generate_id("job")

        assert re.fullmatch(r"job_[0-9a-z]+_[0-9a-z]{6}", first)
        assert first != second


class TestAdvanceStatus:

    def test_forward_moves_apply(self):
        assert advance_status(RecordStatus.SCANNED, RecordStatus.ANALYZED) is RecordStatus.ANALYZED
        assert advance_status(RecordStatus.ANALYZED, RecordStatus.RENAMED) is RecordStatus.RENAMED

    def test_backward_moves_are_ignored(self):
        assert advance_status(RecordStatus.RENAMED, RecordStatus.ANALYZED) is RecordStatus.RENAMED

    def test_error_is_reachable_and_recoverable(self):
        assert advance_status(RecordStatus.RENAMED, RecordStatus.ERROR) is RecordStatus.ERROR
        assert advance_status(RecordStatus.ERROR, RecordStatus.ANALYZED) is RecordStatus.ANALYZED


class TestMergePatch:

    def test_nested_merge_and_removal(self):
        target = {"a": 1, "meta": {"x": 1, "y": 2}}

        result = merge_patch(target, {"a": None, "meta": {"y": 3, "z": 4}})

        assert result == {"meta": {"x": 1, "y": 3, "z": 4}}
        assert target == {"a": 1, "meta": {"x": 1, "y": 2}}

    def test_lists_replace(self):
        assert merge_patch({"tags": ["a", "b"]}, {"tags": ["c"]}) == {"tags": ["c"]}


class TestImageMetadata:

    def test_newer_values_win_and_unset_fall_through(self):
        old = ImageMetadata(width=10, title="Old", tags=["a"])
        new = ImageMetadata(width=20)

        merged = old.merge(new)

        assert merged.width == 20
        assert merged.title == "Old"
        assert merged.tags == ["a"]

    def test_unknown_keys_round_trip(self):
        metadata = ImageMetadata.from_dict({"width": 5, "lens": "50mm"})

        assert metadata.extra == {"lens": "50mm"}
        assert metadata.to_dict() == {"width": 5, "lens": "50mm"}


class TestImageRecord:

    def test_unset_fields_are_omitted(self):
        document = build_record().to_dict()

        assert "suggested_name" not in document
        assert "blob_url" not in document
        assert document["status"] == "scanned"
        assert document["metadata"] == {}

    def test_document_round_trip(self):
        record = build_record(
            status=RecordStatus.ANALYZED,
            suggested_name="golden_sunset",
            analyzed_at=datetime(2024, 5, 1, 12, 0, tzinfo=timezone.utc),
            is_duplicate=True,
            duplicate_of=["other.jpg"],
            metadata=ImageMetadata(width=640, height=480, tags=["sky"]),
        )

        restored = ImageRecord.from_dict(record.to_dict())

        assert restored == record

    def test_current_name_defaults_to_original(self):
        document = build_record().to_dict()
        del document["current_name"]

        assert ImageRecord.from_dict(document).current_name == "sunset.jpg"


class TestProject:

    def test_new_project_defaults(self):
        project = Project.new("Holiday", "/photos")

        assert project.id.startswith("proj_")
        assert project.image_count == 0
        assert Project.from_dict(project.to_dict()) == project
