"""gitboard: a shared list kept in a git repository.

Edits from different clones are merged field by field, last write wins.
"""

__version__ = "0.1.0"

from gitboard.config import SyncSettings, load_settings
from gitboard.exceptions import FailureKind, GitboardError
from gitboard.records import Record, RecordRepository
from gitboard.sync import FieldLevelResolver, GitTransport, SyncCoordinator, SyncResult

__all__ = [
    "FailureKind",
    "FieldLevelResolver",
    "GitTransport",
    "GitboardError",
    "Record",
    "RecordRepository",
    "SyncCoordinator",
    "SyncResult",
    "SyncSettings",
    "load_settings",
]
