"""Tests for the record schema and its helpers."""

import time

import pytest

from gitboard.exceptions import RecordValidationError
from gitboard.records.models import (
    FieldTimestamps,
    LWWField,
    Priority,
    Record,
    Status,
    add_comment,
    add_subtask,
    complete_record,
    create_record,
    is_valid_record,
    parse_timestamp,
    toggle_subtask,
    update_record,
    utc_now,
)


class TestTimestamps:
    def test_utc_now_format(self):
        stamp = utc_now()
        assert stamp.endswith("Z")
        assert parse_timestamp(stamp).utcoffset().total_seconds() == 0

    def test_parse_naive_as_utc(self):
        assert parse_timestamp("2024-01-01T00:00:00") == parse_timestamp(
            "2024-01-01T00:00:00Z"
        )

    def test_parse_offset(self):
        assert parse_timestamp("2024-01-01T02:00:00+02:00") == parse_timestamp(
            "2024-01-01T00:00:00Z"
        )

    def test_parse_invalid(self):
        with pytest.raises(ValueError):
            parse_timestamp("yesterday")
        with pytest.raises(ValueError):
            parse_timestamp(None)


class TestFieldTimestamps:
    def test_from_wire_ignores_junk(self):
        stamps = FieldTimestamps.from_wire(
            {"text": "2024-01-01T00:00:00Z", "bogus": "x", "status": 5}
        )

        assert stamps.get(LWWField.TEXT) == "2024-01-01T00:00:00Z"
        assert stamps.get(LWWField.STATUS) is None
        assert stamps.to_wire() == {"text": "2024-01-01T00:00:00Z"}

    def test_from_wire_non_dict(self):
        assert FieldTimestamps.from_wire(["text"]).to_wire() == {}

    def test_camel_case_names(self):
        stamps = FieldTimestamps()
        stamps.set(LWWField.DUE_DATE, "2024-01-01T00:00:00Z")
        stamps.set(LWWField.ARCHIVED_AT, "2024-01-02T00:00:00Z")

        assert stamps.due_date == "2024-01-01T00:00:00Z"
        assert stamps.to_wire() == {
            "dueDate": "2024-01-01T00:00:00Z",
            "archivedAt": "2024-01-02T00:00:00Z",
        }

    def test_one_attribute_per_tracked_field(self):
        assert len(FieldTimestamps.model_fields) == len(LWWField)


class TestRecord:
    def test_wire_round_trip_preserves_unknown_fields(self):
        data = {
            "id": "r1",
            "text": "Task",
            "status": "in-progress",
            "priority": "high",
            "project": "home",
            "createdBy": "alice",
            "createdAt": "2024-01-01T00:00:00.000Z",
            "modifiedAt": "2024-01-01T00:00:00.000Z",
            "fieldTimestamps": {"text": "2024-01-01T00:00:00.000Z"},
            "color": "teal",
        }

        record = Record.from_wire(data)
        wire = record.to_wire()

        assert record.status == Status.IN_PROGRESS.value
        assert wire["color"] == "teal"
        assert wire["createdBy"] == "alice"
        assert wire["fieldTimestamps"] == {"text": "2024-01-01T00:00:00.000Z"}
        assert "description" not in wire

    def test_from_wire_invalid(self):
        with pytest.raises(RecordValidationError):
            Record.from_wire({"id": "r1", "text": "x", "status": "nope"})

    def test_is_valid_record(self):
        valid = {
            "id": "r1",
            "text": "Task",
            "status": "todo",
            "priority": "low",
            "project": "p",
            "createdBy": "bob",
        }
        assert is_valid_record(valid)
        assert not is_valid_record({**valid, "priority": "someday"})
        assert not is_valid_record({k: v for k, v in valid.items() if k != "id"})
        assert not is_valid_record("not a record")


class TestCreateRecord:
    def test_stamps_given_fields(self):
        record = create_record(
            "Buy milk", "home", "alice", priority=Priority.HIGH, tags=["shop"]
        )
        wire = record.to_wire()

        assert record.priority == "high"
        assert wire["createdAt"] == wire["modifiedAt"]
        for name in ("text", "status", "priority", "project", "tags"):
            assert wire["fieldTimestamps"][name] == wire["createdAt"]
        assert "description" not in wire["fieldTimestamps"]
        assert "archived" not in wire["fieldTimestamps"]

    def test_unique_ids(self):
        assert create_record("a", "p", "u").id != create_record("a", "p", "u").id

    def test_empty_text_rejected(self):
        with pytest.raises(RecordValidationError):
            create_record("", "home", "alice")


class TestUpdateRecord:
    def test_stamps_only_changed_fields(self):
        record = create_record("Task", "home", "alice")
        original = record.field_timestamps.get(LWWField.STATUS)
        time.sleep(0.002)

        updated = update_record(record, {"status": "done", "project": "home"})

        assert updated.status == "done"
        assert updated.field_timestamps.get(LWWField.STATUS) > original
        assert updated.field_timestamps.get(LWWField.PROJECT) == original
        assert updated.modified_at == updated.field_timestamps.get(LWWField.STATUS)

    def test_no_change_keeps_modified_at(self):
        record = create_record("Task", "home", "alice")
        updated = update_record(record, {"text": "Task"})
        assert updated.modified_at == record.modified_at

    def test_accepts_camel_case_keys(self):
        record = create_record("Task", "home", "alice")
        updated = update_record(record, {"dueDate": "2024-06-01T00:00:00Z"})

        assert updated.due_date == "2024-06-01T00:00:00Z"
        assert updated.field_timestamps.get(LWWField.DUE_DATE) is not None

    def test_input_not_modified(self):
        record = create_record("Task", "home", "alice")
        update_record(record, {"text": "Changed"})
        assert record.text == "Task"

    def test_protected_fields(self):
        record = create_record("Task", "home", "alice")
        with pytest.raises(RecordValidationError):
            update_record(record, {"id": "other"})
        with pytest.raises(RecordValidationError):
            update_record(record, {"createdBy": "mallory"})

    def test_invalid_value(self):
        record = create_record("Task", "home", "alice")
        with pytest.raises(RecordValidationError):
            update_record(record, {"status": "sideways"})


class TestRecordHelpers:
    def test_complete(self):
        record = complete_record(create_record("Task", "home", "alice"))

        assert record.status == "done"
        assert record.completed_at is not None
        assert record.field_timestamps.get(LWWField.COMPLETED_AT) is not None

    def test_comments_and_subtasks(self):
        record = create_record("Task", "home", "alice")
        record = add_comment(record, "bob", "looks good")
        record = add_subtask(record, "step one")

        assert record.comments[0].user == "bob"
        assert record.subtasks[0].completed is False
        assert record.field_timestamps.get(LWWField.COMMENTS) is not None

        toggled = toggle_subtask(record, record.subtasks[0].id)
        assert toggled.subtasks[0].completed is True
        assert toggled.to_wire()["subtasks"][0]["completed"] is True
