"""Synchronization and conflict resolution.

This package provides:
- GitTransport: pull/push/commit/status against the working tree
- ConflictResolver / FieldLevelResolver: last-write-wins record merging
- SyncCoordinator: single-flight sync workflow, queueing and triggers
"""

from gitboard.sync.coordinator import SyncCoordinator, SyncResult, SyncStats
from gitboard.sync.resolver import ConflictResolver, FieldLevelResolver
from gitboard.sync.transport import (
    CONFLICT_COMMIT_MESSAGE,
    GitOperationResult,
    GitStatus,
    GitTransport,
    classify_git_error,
)

__all__ = [
    # Coordinator
    "SyncCoordinator",
    "SyncResult",
    "SyncStats",
    # Resolver
    "ConflictResolver",
    "FieldLevelResolver",
    # Transport
    "CONFLICT_COMMIT_MESSAGE",
    "GitOperationResult",
    "GitStatus",
    "GitTransport",
    "classify_git_error",
]
