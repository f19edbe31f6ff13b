"""Record schema and CRUD for the shared document."""

from gitboard.records.models import (
    Comment,
    FieldTimestamps,
    LWWField,
    Priority,
    Record,
    Status,
    Subtask,
    create_record,
    update_record,
)
from gitboard.records.repository import RecordRepository

__all__ = [
    "Comment",
    "FieldTimestamps",
    "LWWField",
    "Priority",
    "Record",
    "RecordRepository",
    "Status",
    "Subtask",
    "create_record",
    "update_record",
]
