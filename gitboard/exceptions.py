"""
Exceptions for gitboard.
"""

from enum import Enum


class FailureKind(str, Enum):
    """Closed set of transport failure categories."""

    NETWORK = "network"
    TRANSIENT = "transient"
    AUTHENTICATION = "authentication"
    CONFLICT = "conflict"
    REJECTED = "rejected"
    MISSING_REF = "missing_ref"
    NOTHING_TO_COMMIT = "nothing_to_commit"
    UNKNOWN = "unknown"


RETRYABLE_FAILURES = frozenset({FailureKind.NETWORK, FailureKind.TRANSIENT})


class GitboardError(Exception):
    """Base exception for gitboard operations."""


class ConfigError(GitboardError):
    """Raised when configuration cannot be loaded or is invalid."""


class AtomicWriteError(GitboardError):
    """Raised when an atomic write fails. The destination is left untouched."""


class RepositoryNotInitializedError(GitboardError):
    """Raised when the record repository is used before initialize()."""


class RecordNotFoundError(GitboardError):
    """Raised when a record id does not exist (or is archived)."""

    def __init__(self, record_id: str):
        self.record_id = record_id
        super().__init__(f"Record not found: {record_id}")


class RecordValidationError(GitboardError):
    """Raised when record data does not satisfy the schema."""


class GitTransportError(GitboardError):
    """Raised for git failures that are not reported as a result."""

    def __init__(self, message: str, failure: FailureKind = FailureKind.UNKNOWN):
        self.failure = failure
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return self.failure in RETRYABLE_FAILURES


class ConflictResolutionError(GitboardError):
    """Raised when a conflicted path cannot be resolved."""


class SyncQueueFullError(GitboardError):
    """Raised when the deferred-operation queue is at capacity."""
