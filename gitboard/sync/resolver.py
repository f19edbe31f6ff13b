"""Conflict resolution for the shared document.

This module provides an abstract interface for resolving a conflicted file,
and the field-level last-write-wins implementation used for the record
document.

Merging is ordered: ``local`` is the base and ``remote`` values are adopted
field by field. Two consequences follow:

- A field with no local timestamp always takes the remote value, even when
  remote has no timestamp either. ``merge_record(a, b)`` and
  ``merge_record(b, a)`` can therefore differ.
- A record missing from a non-empty remote collection is a remote deletion.
  An entirely empty remote collection deletes nothing, so a remote that was
  emptied on purpose cannot propagate that through a merge.
"""

import copy
import json
import logging
from abc import ABC, abstractmethod
from typing import Any

from gitboard.records.models import (
    DOCUMENT_KEY,
    KNOWN_FIELDS,
    FieldTimestamps,
    LWWField,
    is_valid_record,
    parse_timestamp,
)

logger = logging.getLogger(__name__)

RecordData = dict[str, Any]


class ConflictResolver(ABC):
    """Abstract interface for resolving a conflicted file."""

    @abstractmethod
    def resolve_conflict(
        self,
        path: str,
        local_content: str,
        remote_content: str,
    ) -> str:
        """Merge two versions of a file.

        Args:
            path: Repository-relative path (for context)
            local_content: Our version of the file
            remote_content: The incoming version of the file

        Returns:
            Merged content
        """


class FieldLevelResolver(ConflictResolver):
    """Last-write-wins merge on per-field timestamps. Stateless."""

    def resolve_conflict(
        self,
        path: str,
        local_content: str,
        remote_content: str,
    ) -> str:
        logger.debug(f"Resolving {path} field by field")
        return self.resolve_file_content(local_content, remote_content)

    def merge_record(
        self, local: RecordData | None, remote: RecordData | None
    ) -> RecordData | None:
        """Merge two versions of one record.

        Args:
            local: Local version, None if it does not exist locally
            remote: Remote version, None if deleted remotely

        Returns:
            Merged record, or None if the record is deleted
        """
        if remote is None:
            return None
        if local is None:
            return remote

        local_valid = is_valid_record(local)
        remote_valid = is_valid_record(remote)
        if not (local_valid and remote_valid):
            if local_valid:
                return local
            if remote_valid:
                return remote
            return local

        merged = copy.deepcopy(local)
        local_ts = FieldTimestamps.from_wire(local.get("fieldTimestamps"))
        remote_ts = FieldTimestamps.from_wire(remote.get("fieldTimestamps"))
        raw_ts = merged.get("fieldTimestamps")
        merged_ts = dict(raw_ts) if isinstance(raw_ts, dict) else {}

        for name in LWWField:
            remote_stamp = remote_ts.get(name)
            if not _remote_wins(local_ts.get(name), remote_stamp):
                continue

            key = name.value
            if key in remote:
                merged[key] = copy.deepcopy(remote[key])
            else:
                merged.pop(key, None)

            if remote_stamp is not None:
                merged_ts[key] = remote_stamp
            else:
                merged_ts.pop(key, None)

        if "fieldTimestamps" in merged or merged_ts:
            merged["fieldTimestamps"] = merged_ts

        modified_at = _later(local.get("modifiedAt"), remote.get("modifiedAt"))
        if modified_at is not None:
            merged["modifiedAt"] = modified_at

        for key, value in remote.items():
            if key not in KNOWN_FIELDS and key not in merged:
                merged[key] = copy.deepcopy(value)

        return merged

    def merge_collection(
        self, local_records: list[RecordData], remote_records: list[RecordData]
    ) -> list[RecordData]:
        """Merge two record lists keyed by id.

        Local order is kept, followed by records that only exist remotely.
        """
        local_map = _by_id(local_records)
        remote_map = _by_id(remote_records)
        remote_empty = len(remote_map) == 0

        merged: list[RecordData] = []
        for record_id, local in local_map.items():
            remote = remote_map.get(record_id)
            if remote is not None:
                result = self.merge_record(local, remote)
                if result is not None:
                    merged.append(result)
            elif remote_empty:
                merged.append(local)
            else:
                logger.debug(f"Dropping record {record_id}: deleted remotely")

        for record_id, remote in remote_map.items():
            if record_id not in local_map:
                merged.append(remote)

        return merged

    def resolve_file_content(self, local_content: str, remote_content: str) -> str:
        """Merge two serialized documents.

        If either side cannot be parsed, the local content is returned
        unchanged.
        """
        try:
            local_data = json.loads(local_content)
            remote_data = json.loads(remote_content)
        except (json.JSONDecodeError, TypeError) as e:
            logger.error(f"Failed to parse document during conflict resolution: {e}")
            return local_content

        merged = self.merge_collection(
            _records_of(local_data), _records_of(remote_data)
        )
        return json.dumps({DOCUMENT_KEY: merged}, indent=2)


def _remote_wins(local_stamp: str | None, remote_stamp: str | None) -> bool:
    """Decide whether the remote value replaces the local one.

    Local without a timestamp always loses. Remote without a timestamp never
    wins against a stamped local. Unparseable timestamps favour remote.
    """
    if local_stamp is None:
        return True
    if remote_stamp is None:
        return False
    try:
        return parse_timestamp(remote_stamp) > parse_timestamp(local_stamp)
    except ValueError:
        return True


def _later(first: Any, second: Any) -> Any:
    if first is None:
        return second
    if second is None:
        return first
    try:
        return second if parse_timestamp(second) > parse_timestamp(first) else first
    except ValueError:
        return first


def _by_id(records: list[RecordData]) -> dict[str, RecordData]:
    result: dict[str, RecordData] = {}
    for record in records:
        if isinstance(record, dict) and "id" in record:
            result[record["id"]] = record
        else:
            logger.warning(f"Skipping record without id: {record!r}")
    return result


def _records_of(document: Any) -> list[RecordData]:
    if isinstance(document, dict) and isinstance(document.get(DOCUMENT_KEY), list):
        return document[DOCUMENT_KEY]
    return []
