"""
Record schema for the shared list document.

Records are stored on the wire with camelCase keys so that every client of
the document reads the same format; Python code uses snake_case attributes.
Each mutable field has an entry in ``fieldTimestamps`` recording when it was
last changed, which is what field-level merging compares.
"""

import json
import uuid
from datetime import datetime, timezone
from enum import Enum
from typing import Any, List, Optional

from pydantic import BaseModel, ConfigDict, Field, ValidationError
from pydantic.alias_generators import to_camel

from gitboard.exceptions import RecordValidationError

DOCUMENT_KEY = "todos"


class Status(str, Enum):
    TODO = "todo"
    IN_PROGRESS = "in-progress"
    BLOCKED = "blocked"
    DONE = "done"


class Priority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


PRIORITY_ORDER = {
    Priority.URGENT: 0,
    Priority.HIGH: 1,
    Priority.MEDIUM: 2,
    Priority.LOW: 3,
}


class LWWField(str, Enum):
    """Fields merged last-write-wins. Values are the wire names."""

    TEXT = "text"
    DESCRIPTION = "description"
    STATUS = "status"
    PRIORITY = "priority"
    PROJECT = "project"
    TAGS = "tags"
    ASSIGNEE = "assignee"
    DUE_DATE = "dueDate"
    COMPLETED_AT = "completedAt"
    DEPENDENCIES = "dependencies"
    SUBTASKS = "subtasks"
    COMMENTS = "comments"
    ARCHIVED = "archived"
    ARCHIVED_AT = "archivedAt"


REQUIRED_FIELDS = ("id", "text", "status", "priority", "project", "createdBy")

# Every wire key the schema knows about
KNOWN_FIELDS = frozenset(
    {f.value for f in LWWField}
    | {"id", "createdBy", "createdAt", "modifiedAt", "fieldTimestamps"}
)


def utc_now() -> str:
    """Current time as an ISO-8601 UTC string with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace(
        "+00:00", "Z"
    )


def parse_timestamp(value: str) -> datetime:
    """Parse an ISO-8601 timestamp. Naive values are taken as UTC.

    Raises:
        ValueError: If the value is not a valid timestamp
    """
    if not isinstance(value, str):
        raise ValueError(f"timestamp must be a string, got {type(value).__name__}")
    parsed = datetime.fromisoformat(value.replace("Z", "+00:00"))
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


class _WireModel(BaseModel):
    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
        validate_default=True,
    )


class Subtask(_WireModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    text: str = Field(min_length=1)
    completed: bool = False


class Comment(_WireModel):
    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    user: str
    text: str = Field(min_length=1)
    timestamp: str = Field(default_factory=utc_now)


class FieldTimestamps(_WireModel):
    """One optional timestamp per LWW-tracked field.

    A missing entry means the field was never explicitly set.
    """

    text: Optional[str] = None
    description: Optional[str] = None
    status: Optional[str] = None
    priority: Optional[str] = None
    project: Optional[str] = None
    tags: Optional[str] = None
    assignee: Optional[str] = None
    due_date: Optional[str] = None
    completed_at: Optional[str] = None
    dependencies: Optional[str] = None
    subtasks: Optional[str] = None
    comments: Optional[str] = None
    archived: Optional[str] = None
    archived_at: Optional[str] = None

    @classmethod
    def from_wire(cls, data: Any) -> "FieldTimestamps":
        """Build from a raw fieldTimestamps mapping, ignoring junk entries."""
        if not isinstance(data, dict):
            return cls()
        clean = {
            key: value
            for key, value in data.items()
            if key in _TIMESTAMP_ATTRS and isinstance(value, str)
        }
        return cls.model_validate(clean)

    def get(self, name: LWWField) -> Optional[str]:
        return getattr(self, _TIMESTAMP_ATTRS[name.value])

    def set(self, name: LWWField, value: Optional[str]) -> None:
        setattr(self, _TIMESTAMP_ATTRS[name.value], value)

    def to_wire(self) -> dict[str, str]:
        return self.model_dump(by_alias=True, exclude_none=True)


# wire name -> attribute name
_TIMESTAMP_ATTRS = {to_camel(name): name for name in FieldTimestamps.model_fields}


class Record(_WireModel):
    """A single list entry."""

    model_config = ConfigDict(
        alias_generator=to_camel,
        populate_by_name=True,
        use_enum_values=True,
        validate_default=True,
        extra="allow",
    )

    id: str = Field(default_factory=lambda: str(uuid.uuid4()))
    text: str = Field(min_length=1)
    description: Optional[str] = None
    status: Status = Status.TODO
    priority: Priority = Priority.MEDIUM
    project: str
    tags: List[str] = Field(default_factory=list)
    assignee: Optional[str] = None
    created_by: str
    created_at: str = Field(default_factory=utc_now)
    modified_at: str = Field(default_factory=utc_now)
    due_date: Optional[str] = None
    completed_at: Optional[str] = None
    dependencies: List[str] = Field(default_factory=list)
    subtasks: List[Subtask] = Field(default_factory=list)
    comments: List[Comment] = Field(default_factory=list)
    archived: bool = False
    archived_at: Optional[str] = None
    field_timestamps: FieldTimestamps = Field(default_factory=FieldTimestamps)

    def to_wire(self) -> dict[str, Any]:
        """Serialize for the document file."""
        data = self.model_dump(by_alias=True, exclude_none=True)
        if self.completed_at is None and "completed_at" in self.model_fields_set:
            data["completedAt"] = None
        return data

    @classmethod
    def from_wire(cls, data: dict[str, Any]) -> "Record":
        try:
            return cls.model_validate(data)
        except ValidationError as e:
            raise RecordValidationError(str(e)) from e


def is_valid_record(data: Any) -> bool:
    """Structural check used before merging.

    Requires the identifying fields and in-range enum values. Looser than
    Record: ids, timestamps and nested lists are not checked.
    """
    if not isinstance(data, dict):
        return False
    if any(name not in data for name in REQUIRED_FIELDS):
        return False
    if not isinstance(data["text"], str):
        return False
    if data["status"] not in {s.value for s in Status}:
        return False
    if data["priority"] not in {p.value for p in Priority}:
        return False
    return True


def create_record(
    text: str,
    project: str,
    created_by: str,
    **fields: Any,
) -> Record:
    """Create a record, stamping every field that was given a value.

    Raises:
        RecordValidationError: If the resulting record is invalid
    """
    now = utc_now()
    data = {"text": text, "project": project, "created_by": created_by}
    data.update({k: v for k, v in fields.items() if v is not None})
    data.setdefault("created_at", now)
    data.setdefault("modified_at", now)

    try:
        record = Record.model_validate(data)
    except ValidationError as e:
        raise RecordValidationError(str(e)) from e

    wire = record.to_wire()
    timestamps = FieldTimestamps()
    for name in LWWField:
        if name in (LWWField.ARCHIVED, LWWField.ARCHIVED_AT) and not record.archived:
            continue
        if name.value in wire:
            timestamps.set(name, now)
    record.field_timestamps = timestamps
    return record


def _wire_key(name: str) -> str:
    return to_camel(name) if "_" in name else name


def update_record(record: Record, changes: dict[str, Any]) -> Record:
    """Apply changes, stamping only the fields whose value actually changed.

    Args:
        record: Record to update (not modified)
        changes: snake_case or camelCase field names mapped to new values.
            id, createdAt, createdBy and fieldTimestamps cannot be changed.

    Returns:
        New Record

    Raises:
        RecordValidationError: If a change is not allowed or invalid
    """
    protected = {"id", "created_at", "createdAt", "created_by", "createdBy",
                 "field_timestamps", "fieldTimestamps"}
    blocked = protected & set(changes)
    if blocked:
        raise RecordValidationError(f"Cannot update fields: {', '.join(sorted(blocked))}")

    before = record.to_wire()
    data = record.model_dump(by_alias=True, exclude_none=True)
    for key, value in changes.items():
        data[_wire_key(key)] = value

    try:
        updated = Record.model_validate(data)
    except ValidationError as e:
        raise RecordValidationError(str(e)) from e

    after = updated.to_wire()
    now = utc_now()
    changed = False
    timestamps = record.field_timestamps.model_copy()
    for key in {_wire_key(k) for k in changes}:
        if json.dumps(before.get(key), sort_keys=True) == json.dumps(
            after.get(key), sort_keys=True
        ):
            continue
        changed = True
        try:
            timestamps.set(LWWField(key), now)
        except ValueError:
            pass  # not tracked

    updated.field_timestamps = timestamps
    if changed:
        updated.modified_at = now
    return updated


def add_comment(record: Record, user: str, text: str) -> Record:
    comment = Comment(user=user, text=text)
    return update_record(record, {"comments": [*record.comments, comment]})


def add_subtask(record: Record, text: str) -> Record:
    subtask = Subtask(text=text)
    return update_record(record, {"subtasks": [*record.subtasks, subtask]})


def toggle_subtask(record: Record, subtask_id: str) -> Record:
    subtasks = [
        s.model_copy(update={"completed": not s.completed}) if s.id == subtask_id else s
        for s in record.subtasks
    ]
    return update_record(record, {"subtasks": subtasks})


def complete_record(record: Record) -> Record:
    return update_record(record, {"status": Status.DONE.value, "completed_at": utc_now()})
