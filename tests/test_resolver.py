"""Tests for field-level conflict resolution."""

import json

import pytest

from gitboard.sync.resolver import ConflictResolver, FieldLevelResolver

T0 = "2024-01-01T00:00:00.000Z"
T1 = "2024-01-01T00:00:01.000Z"
T2 = "2024-01-01T00:00:02.000Z"
T3 = "2024-01-01T00:00:03.000Z"


def make_record(record_id="r1", timestamps=None, **overrides):
    """Build a valid wire-format record with every field stamped at T0."""
    record = {
        "id": record_id,
        "text": "Task",
        "status": "todo",
        "priority": "medium",
        "project": "home",
        "tags": [],
        "createdBy": "alice",
        "createdAt": T0,
        "modifiedAt": T0,
        "fieldTimestamps": {
            "text": T0,
            "status": T0,
            "priority": T0,
            "project": T0,
            "tags": T0,
        },
    }
    if timestamps is not None:
        record["fieldTimestamps"] = timestamps
    record.update(overrides)
    return record


@pytest.fixture
def resolver():
    return FieldLevelResolver()


class TestConflictResolverInterface:
    def test_cannot_instantiate_abstract(self):
        with pytest.raises(TypeError):
            ConflictResolver()

    def test_field_level_is_a_resolver(self, resolver):
        assert isinstance(resolver, ConflictResolver)


class TestMergeRecord:
    """Tests for FieldLevelResolver.merge_record."""

    def test_remote_none_means_deleted(self, resolver):
        """A remote deletion wins over any local version."""
        assert resolver.merge_record(make_record(), None) is None

    def test_local_none_takes_remote(self, resolver):
        remote = make_record()
        assert resolver.merge_record(None, remote) == remote

    def test_merge_with_itself_is_identity(self, resolver):
        record = make_record(description="details", timestamps={"text": T1})
        assert resolver.merge_record(record, record) == record

    def test_later_remote_field_wins(self, resolver):
        local = make_record()
        remote = make_record(
            status="done",
            timestamps={**make_record()["fieldTimestamps"], "status": T1},
        )

        merged = resolver.merge_record(local, remote)

        assert merged["status"] == "done"
        assert merged["fieldTimestamps"]["status"] == T1

    def test_later_local_field_kept(self, resolver):
        local = make_record(
            text="local edit",
            timestamps={**make_record()["fieldTimestamps"], "text": T2},
        )
        remote = make_record(
            text="remote edit",
            timestamps={**make_record()["fieldTimestamps"], "text": T1},
        )

        merged = resolver.merge_record(local, remote)

        assert merged["text"] == "local edit"
        assert merged["fieldTimestamps"]["text"] == T2

    def test_equal_timestamps_keep_local(self, resolver):
        local = make_record(text="local")
        remote = make_record(text="remote")

        assert resolver.merge_record(local, remote)["text"] == "local"

    def test_independent_field_edits_combine(self, resolver):
        """Local edits text at T2, remote edits status at T3."""
        base_ts = make_record()["fieldTimestamps"]
        local = make_record(
            text="Buy oat milk",
            modifiedAt=T2,
            timestamps={**base_ts, "text": T2},
        )
        remote = make_record(
            status="done",
            modifiedAt=T3,
            timestamps={**base_ts, "status": T3},
        )

        merged = resolver.merge_record(local, remote)

        assert merged["text"] == "Buy oat milk"
        assert merged["status"] == "done"
        assert merged["modifiedAt"] == T3
        assert merged["fieldTimestamps"]["text"] == T2
        assert merged["fieldTimestamps"]["status"] == T3

    def test_local_without_timestamp_adopts_remote(self, resolver):
        local = make_record(priority="high", timestamps={"text": T0})
        remote = make_record(priority="low", timestamps={"text": T0})

        merged = resolver.merge_record(local, remote)

        assert merged["priority"] == "low"
        assert "priority" not in merged["fieldTimestamps"]

    def test_stamped_local_beats_unstamped_remote(self, resolver):
        local = make_record(priority="high", timestamps={"priority": T1})
        remote = make_record(priority="low", timestamps={})

        assert resolver.merge_record(local, remote)["priority"] == "high"

    def test_merge_is_not_commutative(self, resolver):
        """Unstamped fields always take the second argument's value."""
        a = make_record(priority="high", timestamps={})
        b = make_record(priority="low", timestamps={})

        assert resolver.merge_record(a, b)["priority"] == "low"
        assert resolver.merge_record(b, a)["priority"] == "high"

    def test_remote_win_removes_field_missing_remotely(self, resolver):
        local = make_record(description="old notes", timestamps={"description": T1})
        remote = make_record(timestamps={"description": T2})

        merged = resolver.merge_record(local, remote)

        assert "description" not in merged
        assert merged["fieldTimestamps"]["description"] == T2

    def test_archive_merges_like_any_field(self, resolver):
        local = make_record()
        remote = make_record(
            archived=True,
            archivedAt=T2,
            timestamps={
                **make_record()["fieldTimestamps"],
                "archived": T2,
                "archivedAt": T2,
            },
        )

        merged = resolver.merge_record(local, remote)

        assert merged["archived"] is True
        assert merged["archivedAt"] == T2

    def test_nested_lists_taken_whole(self, resolver):
        local = make_record(
            subtasks=[{"id": "s1", "text": "one", "completed": False}],
            timestamps={"subtasks": T1},
        )
        remote = make_record(
            subtasks=[
                {"id": "s1", "text": "one", "completed": True},
                {"id": "s2", "text": "two", "completed": False},
            ],
            timestamps={"subtasks": T2},
        )

        merged = resolver.merge_record(local, remote)

        assert merged["subtasks"] == remote["subtasks"]
        assert merged["subtasks"] is not remote["subtasks"]

    def test_unknown_remote_fields_preserved(self, resolver):
        local = make_record(localOnly="keep")
        remote = make_record(customColor="teal")

        merged = resolver.merge_record(local, remote)

        assert merged["customColor"] == "teal"
        assert merged["localOnly"] == "keep"

    def test_invalid_local_takes_remote(self, resolver):
        local = make_record()
        del local["project"]
        remote = make_record(text="valid")

        assert resolver.merge_record(local, remote) == remote

    def test_invalid_remote_keeps_local(self, resolver):
        local = make_record()
        remote = make_record(status="sideways")

        assert resolver.merge_record(local, remote) == local

    def test_both_invalid_keeps_local(self, resolver):
        local = make_record(priority="whenever")
        remote = make_record(status="sideways")

        assert resolver.merge_record(local, remote) == local

    def test_inputs_not_modified(self, resolver):
        local = make_record(timestamps={"text": T0})
        remote = make_record(text="new", timestamps={"text": T1})
        local_before = json.dumps(local, sort_keys=True)
        remote_before = json.dumps(remote, sort_keys=True)

        resolver.merge_record(local, remote)

        assert json.dumps(local, sort_keys=True) == local_before
        assert json.dumps(remote, sort_keys=True) == remote_before


class TestMergeCollection:
    """Tests for FieldLevelResolver.merge_collection."""

    def test_local_order_then_remote_only(self, resolver):
        local = [make_record("b"), make_record("a")]
        remote = [make_record("a"), make_record("c"), make_record("b")]

        merged = resolver.merge_collection(local, remote)

        assert [r["id"] for r in merged] == ["b", "a", "c"]

    def test_missing_from_remote_is_deleted(self, resolver):
        local = [make_record("a"), make_record("b")]
        remote = [make_record("a")]

        merged = resolver.merge_collection(local, remote)

        assert [r["id"] for r in merged] == ["a"]

    def test_empty_remote_keeps_local(self, resolver):
        local = [make_record("a"), make_record("b")]

        merged = resolver.merge_collection(local, [])

        assert [r["id"] for r in merged] == ["a", "b"]

    def test_empty_local_takes_remote(self, resolver):
        remote = [make_record("a")]
        assert resolver.merge_collection([], remote) == remote

    def test_records_merged_by_id(self, resolver):
        local = [make_record("a", text="local", timestamps={"text": T2})]
        remote = [make_record("a", text="remote", timestamps={"text": T1})]

        merged = resolver.merge_collection(local, remote)

        assert len(merged) == 1
        assert merged[0]["text"] == "local"

    def test_records_without_id_skipped(self, resolver):
        local = [make_record("a"), {"text": "orphan"}]
        remote = [make_record("a")]

        merged = resolver.merge_collection(local, remote)

        assert [r["id"] for r in merged] == ["a"]


class TestResolveFileContent:
    """Tests for document-level merging."""

    def test_merges_documents(self, resolver):
        local = json.dumps({"todos": [make_record("a", text="mine", timestamps={"text": T2})]})
        remote = json.dumps(
            {"todos": [make_record("a", timestamps={"text": T1}), make_record("b")]}
        )

        merged = json.loads(resolver.resolve_file_content(local, remote))

        assert list(merged) == ["todos"]
        assert [r["id"] for r in merged["todos"]] == ["a", "b"]
        assert merged["todos"][0]["text"] == "mine"

    def test_output_is_indented(self, resolver):
        document = json.dumps({"todos": [make_record()]})
        output = resolver.resolve_file_content(document, document)
        assert output.startswith('{\n  "todos"')

    def test_corrupt_local_returns_local(self, resolver):
        remote = json.dumps({"todos": [make_record()]})
        assert resolver.resolve_file_content("{not json", remote) == "{not json"

    def test_corrupt_remote_returns_local(self, resolver):
        local = json.dumps({"todos": [make_record()]})
        assert resolver.resolve_file_content(local, "<<<<<<< HEAD") == local

    def test_missing_todos_key_treated_as_empty(self, resolver):
        local = json.dumps({"todos": [make_record("a")]})

        merged = json.loads(resolver.resolve_file_content(local, json.dumps({})))

        assert [r["id"] for r in merged["todos"]] == ["a"]

    def test_resolve_conflict_delegates(self, resolver):
        document = json.dumps({"todos": [make_record()]})
        result = resolver.resolve_conflict("todos.json", document, document)
        assert json.loads(result) == json.loads(document)
