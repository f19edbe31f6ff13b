"""Record CRUD over the shared document file.

The whole document is held in memory and rewritten atomically on every
change. Deletion archives by default so that the removal is visible to other
clients as an ordinary field change.
"""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timedelta, timezone
from pathlib import Path
from typing import Any

from gitboard.exceptions import (
    RecordNotFoundError,
    RecordValidationError,
    RepositoryNotInitializedError,
)
from gitboard.records.models import (
    DOCUMENT_KEY,
    PRIORITY_ORDER,
    Priority,
    Record,
    Status,
    complete_record,
    create_record,
    parse_timestamp,
    update_record,
    utc_now,
)
from gitboard.atomic import AtomicDocumentStore

logger = logging.getLogger(__name__)

SORT_FIELDS = ("priority", "createdAt", "modifiedAt", "dueDate")


class RecordRepository:
    """In-memory view of the document with atomic persistence."""

    def __init__(self, document_path: Path | str, store: AtomicDocumentStore | None = None):
        self.document_path = Path(document_path)
        self.store = store or AtomicDocumentStore()
        # Document order; entries this version cannot read stay as raw dicts.
        self._entries: list[Record | dict[str, Any]] = []
        self._initialized = False

    @property
    def _records(self) -> list[Record]:
        return [e for e in self._entries if isinstance(e, Record)]

    @property
    def initialized(self) -> bool:
        return self._initialized

    async def initialize(self) -> None:
        """Load the document, creating an empty one if it does not exist."""
        if self.document_path.exists():
            await self._load()
        else:
            logger.info(f"Creating empty document at {self.document_path}")
            self._entries = []
            await self._save()
        self._initialized = True

    async def reload(self) -> None:
        """Re-read the document after it was changed on disk."""
        if not self.document_path.exists():
            logger.info(f"{self.document_path} does not exist; no records")
            self._entries = []
        else:
            await self._load()
        self._initialized = True

    async def _load(self) -> None:
        content = await asyncio.to_thread(self.document_path.read_text, encoding="utf-8")
        data = json.loads(content)
        raw_records = data.get(DOCUMENT_KEY, []) if isinstance(data, dict) else []

        entries: list[Record | dict[str, Any]] = []
        for raw in raw_records:
            try:
                entries.append(Record.from_wire(raw))
            except RecordValidationError as e:
                record_id = raw.get("id", "?") if isinstance(raw, dict) else "?"
                logger.warning(f"Keeping unreadable record {record_id} as-is: {e}")
                entries.append(raw)
        self._entries = entries
        logger.debug(f"Loaded {len(entries)} records from {self.document_path}")

    async def _save(self) -> None:
        document = {
            DOCUMENT_KEY: [
                e.to_wire() if isinstance(e, Record) else e for e in self._entries
            ]
        }
        await self.store.write_atomic(self.document_path, json.dumps(document, indent=2))

    def _ensure_initialized(self) -> None:
        if not self._initialized:
            raise RepositoryNotInitializedError(
                "Repository not initialized. Call initialize() first."
            )

    def _index_of(self, record_id: str) -> int:
        for index, entry in enumerate(self._entries):
            if isinstance(entry, Record) and entry.id == record_id and not entry.archived:
                return index
        raise RecordNotFoundError(record_id)

    async def create(self, text: str, project: str, created_by: str, **fields: Any) -> Record:
        self._ensure_initialized()
        record = create_record(text, project, created_by, **fields)
        self._entries.append(record)
        await self._save()
        return record

    async def update(self, record_id: str, changes: dict[str, Any]) -> Record:
        self._ensure_initialized()
        index = self._index_of(record_id)
        updated = update_record(self._entries[index], changes)
        self._entries[index] = updated
        await self._save()
        return updated

    async def get(self, record_id: str) -> Record:
        self._ensure_initialized()
        return self._entries[self._index_of(record_id)]

    async def list(
        self,
        status: Status | str | None = None,
        priority: Priority | str | None = None,
        project: str | None = None,
        assignee: str | None = None,
        tags: list[str] | None = None,
        sort_by: str | None = None,
        descending: bool = False,
        offset: int = 0,
        limit: int | None = None,
        include_archived: bool = False,
    ) -> list[Record]:
        """List records matching every given filter.

        Args:
            tags: Matches records carrying any of these tags
            sort_by: One of priority, createdAt, modifiedAt, dueDate.
                Records without a date sort last.
        """
        self._ensure_initialized()

        records = [r for r in self._records if include_archived or not r.archived]
        if status is not None:
            records = [r for r in records if r.status == Status(status).value]
        if priority is not None:
            records = [r for r in records if r.priority == Priority(priority).value]
        if project is not None:
            records = [r for r in records if r.project == project]
        if assignee is not None:
            records = [r for r in records if r.assignee == assignee]
        if tags:
            records = [r for r in records if any(tag in r.tags for tag in tags)]

        if sort_by is not None:
            if sort_by not in SORT_FIELDS:
                raise ValueError(f"Cannot sort by {sort_by}; use one of {SORT_FIELDS}")
            present = [r for r in records if _sort_key(r, sort_by) is not None]
            missing = [r for r in records if _sort_key(r, sort_by) is None]
            present.sort(key=lambda r: _sort_key(r, sort_by), reverse=descending)
            records = present + missing

        end = offset + limit if limit is not None else None
        return records[offset:end]

    async def delete(self, record_id: str, hard: bool = False) -> None:
        """Archive a record, or remove it from the document when hard=True."""
        self._ensure_initialized()
        index = self._index_of(record_id)
        if hard:
            del self._entries[index]
        else:
            self._entries[index] = update_record(
                self._entries[index], {"archived": True, "archived_at": utc_now()}
            )
        await self._save()

    async def search(self, query: str) -> list[Record]:
        """Case-insensitive match on text, description and tags."""
        self._ensure_initialized()
        needle = query.lower()
        return [
            r
            for r in self._records
            if not r.archived
            and (
                needle in r.text.lower()
                or (r.description and needle in r.description.lower())
                or any(needle in tag.lower() for tag in r.tags)
            )
        ]

    async def complete(self, record_id: str) -> Record:
        self._ensure_initialized()
        index = self._index_of(record_id)
        updated = complete_record(self._entries[index])
        self._entries[index] = updated
        await self._save()
        return updated

    async def stats(self) -> dict[str, Any]:
        self._ensure_initialized()
        active = [r for r in self._records if not r.archived]

        by_status = {s.value: 0 for s in Status}
        by_priority = {p.value: 0 for p in Priority}
        by_project: dict[str, int] = {}
        for record in active:
            by_status[record.status] += 1
            by_priority[record.priority] += 1
            by_project[record.project] = by_project.get(record.project, 0) + 1

        completed = by_status[Status.DONE.value]
        return {
            "total": len(active),
            "by_status": by_status,
            "by_priority": by_priority,
            "by_project": by_project,
            "completed": completed,
            "completion_rate": (completed / len(active) * 100.0) if active else 0.0,
        }

    async def overdue(self, now: datetime | None = None) -> list[Record]:
        self._ensure_initialized()
        now = now or datetime.now(timezone.utc)
        return [
            r
            for r in self._records
            if not r.archived
            and r.status != Status.DONE.value
            and _due(r) is not None
            and _due(r) < now
        ]

    async def due_today(self, now: datetime | None = None) -> list[Record]:
        return await self._due_within(timedelta(days=1), now)

    async def due_this_week(self, now: datetime | None = None) -> list[Record]:
        return await self._due_within(timedelta(days=7), now)

    async def _due_within(self, span: timedelta, now: datetime | None) -> list[Record]:
        self._ensure_initialized()
        now = now or datetime.now(timezone.utc)
        start = now.replace(hour=0, minute=0, second=0, microsecond=0)
        end = start + span
        return [
            r
            for r in self._records
            if not r.archived and _due(r) is not None and start <= _due(r) < end
        ]


def _due(record: Record) -> datetime | None:
    if not record.due_date:
        return None
    try:
        return parse_timestamp(record.due_date)
    except ValueError:
        return None


def _sort_key(record: Record, sort_by: str):
    if sort_by == "priority":
        return PRIORITY_ORDER[Priority(record.priority)]
    value = {
        "createdAt": record.created_at,
        "modifiedAt": record.modified_at,
        "dueDate": record.due_date,
    }[sort_by]
    if not value:
        return None
    try:
        return parse_timestamp(value)
    except ValueError:
        return None
