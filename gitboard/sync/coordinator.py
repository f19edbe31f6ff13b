"""Sync coordination.

SyncCoordinator runs the end-to-end workflow (commit local changes, pull,
resolve conflicts, commit, push, reload) and makes sure only one sync runs at
a time within the process. A second sync() while one is running is rejected
immediately rather than queued; callers that need to wait for the running
sync use queue_operation().

The single-flight guard is in-process only. Two processes sharing one
working tree are not coordinated.
"""

import asyncio
import logging
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Any, Awaitable, Callable, TypeVar

from gitboard.exceptions import FailureKind, GitTransportError, SyncQueueFullError
from gitboard.records.models import Record
from gitboard.records.repository import RecordRepository
from gitboard.sync.transport import CONFLICT_COMMIT_MESSAGE, GitTransport

logger = logging.getLogger(__name__)

T = TypeVar("T")

SYNC_IN_PROGRESS = "Sync already in progress"
LOCAL_CHANGES_MESSAGE = "Sync local changes"


@dataclass
class SyncResult:
    """Outcome of one sync attempt."""

    success: bool
    has_conflicts: bool = False
    resolved_conflicts: list[str] = field(default_factory=list)
    error: str | None = None
    sync_time: datetime | None = None


@dataclass
class SyncStats:
    """Counters for the lifetime of a coordinator. Never persisted."""

    total_syncs: int = 0
    successful_syncs: int = 0
    failed_syncs: int = 0
    conflicts_resolved: int = 0
    last_sync_time: datetime | None = None
    last_error: str | None = None


class SyncCoordinator:
    """Orchestrates sync between the local document and the remote.

    Usage:
        coordinator = SyncCoordinator(transport, repository)
        await coordinator.initial_sync()

        coordinator.start_auto_sync(60)
        ...
        await coordinator.close()
    """

    def __init__(
        self,
        transport: GitTransport,
        repository: RecordRepository,
        max_race_retries: int = 3,
        max_queued_operations: int = 100,
        max_pull_attempts: int = 3,
        max_push_attempts: int = 3,
    ):
        """Initialize the coordinator.

        Args:
            transport: Git transport for the working tree
            repository: Record repository reloaded after every sync
            max_race_retries: Extra pull/push rounds allowed when a push is
                rejected because the remote moved during the sync
            max_queued_operations: Capacity of the deferred-operation queue
            max_pull_attempts: Tries per pull when it fails on the network
            max_push_attempts: Tries per push when it fails on the network
        """
        self.transport = transport
        self.repository = repository
        self.max_race_retries = max_race_retries
        self.max_pull_attempts = max_pull_attempts
        self.max_push_attempts = max_push_attempts

        self._lock = asyncio.Lock()
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queued_operations)
        self._draining = False
        self._stats = SyncStats()

        self._sync_on_write = False
        self._debounce = 0.0
        self._debounce_handle: asyncio.TimerHandle | None = None
        self._auto_sync_task: asyncio.Task | None = None
        self._background: set[asyncio.Task] = set()

    @classmethod
    def from_settings(cls, settings) -> "SyncCoordinator":
        """Build transport, repository and coordinator from SyncSettings."""
        transport = GitTransport.from_settings(settings)
        repository = RecordRepository(settings.document_path, transport.store)
        coordinator = cls(
            transport,
            repository,
            max_race_retries=settings.max_race_retries,
            max_queued_operations=settings.max_queued_operations,
            max_pull_attempts=settings.max_pull_attempts,
            max_push_attempts=settings.max_push_attempts,
        )
        if settings.sync_on_write:
            coordinator.enable_sync_on_write()
        if settings.debounce:
            coordinator.enable_debounce(settings.debounce)
        return coordinator

    # Sync

    def is_syncing(self) -> bool:
        """True from the start of a sync until its queued operations have run."""
        return self._lock.locked() or self._draining

    async def sync(self) -> SyncResult:
        """Run one full sync. Never raises.

        Returns:
            SyncResult; error is SYNC_IN_PROGRESS if a sync is already running
        """
        if self.is_syncing():
            return SyncResult(success=False, error=SYNC_IN_PROGRESS)

        # Uncontended, so this completes without yielding to other tasks.
        await self._lock.acquire()
        self._stats.total_syncs += 1
        logger.info("Sync started")

        try:
            result = await self._run_sync()
        except Exception as e:
            logger.error(f"Sync failed: {e}")
            self._stats.failed_syncs += 1
            self._stats.last_error = str(e)
            result = SyncResult(success=False, error=str(e))
        finally:
            self._lock.release()

        await self._drain_queue()
        return result

    async def _run_sync(self) -> SyncResult:
        commit_result = await self.transport.commit(LOCAL_CHANGES_MESSAGE)
        if not commit_result.success:
            raise _as_error(commit_result, "Commit of local changes failed")

        race_retries = 0
        while True:
            pull_result = await self.transport.pull_with_retry(self.max_pull_attempts)

            if pull_result.has_conflicts:
                return await self._finish_conflicted(pull_result.conflicted_files)

            if not pull_result.success:
                raise _as_error(pull_result, "Pull failed")

            push_result = await self.transport.push_with_retry(self.max_push_attempts)
            if push_result.success:
                return await self._finish()

            if not push_result.needs_pull:
                raise _as_error(push_result, "Push failed")

            if race_retries >= self.max_race_retries:
                raise GitTransportError(
                    f"Push rejected after {race_retries} race retries",
                    FailureKind.REJECTED,
                )
            race_retries += 1
            logger.info(
                f"Remote moved during sync, pulling again "
                f"({race_retries}/{self.max_race_retries})"
            )

    async def _finish_conflicted(self, conflicted_files: list[str]) -> SyncResult:
        resolved = await self.resolve_conflicts(conflicted_files)

        commit_result = await self.transport.commit(CONFLICT_COMMIT_MESSAGE)
        if not commit_result.success:
            raise _as_error(commit_result, "Commit failed after conflict resolution")

        push_result = await self.transport.push_with_retry(self.max_push_attempts)
        if not push_result.success:
            raise _as_error(push_result, "Push failed after conflict resolution")

        self._stats.conflicts_resolved += len(resolved)
        return await self._finish(has_conflicts=True, resolved=resolved)

    async def _finish(
        self, has_conflicts: bool = False, resolved: list[str] | None = None
    ) -> SyncResult:
        await self.repository.reload()

        now = datetime.now(timezone.utc)
        self._stats.successful_syncs += 1
        self._stats.last_sync_time = now
        logger.info("Sync finished")
        return SyncResult(
            success=True,
            has_conflicts=has_conflicts,
            resolved_conflicts=resolved or [],
            sync_time=now,
        )

    async def initial_sync(self) -> SyncResult:
        """Make sure the document exists, then sync once."""
        try:
            await self.repository.initialize()
        except Exception as e:
            logger.error(f"Initial sync failed: {e}")
            return SyncResult(success=False, error=f"Initial sync failed: {e}")

        result = await self.sync()
        if not result.success and result.error != SYNC_IN_PROGRESS:
            result.error = f"Initial sync failed: {result.error}"
        return result

    async def resolve_conflicts(self, paths: list[str]) -> list[str]:
        """Resolve each conflicted path in the working tree (no commit)."""
        resolved = []
        for path in paths:
            await self.transport.resolve_conflict(path)
            resolved.append(path)
        return resolved

    async def has_conflicts(self) -> bool:
        status = await self.transport.get_status()
        return bool(status.conflicted)

    # Deferred operations

    async def queue_operation(self, operation: Callable[[], Awaitable[T]]) -> T:
        """Run operation now, or after the running sync finishes.

        Queued operations run one at a time in submission order. Each
        caller gets its own operation's result or exception.

        Raises:
            SyncQueueFullError: If the queue is at capacity
        """
        if not self.is_syncing() and self._queue.empty():
            return await operation()

        future = asyncio.get_running_loop().create_future()
        try:
            self._queue.put_nowait((operation, future))
        except asyncio.QueueFull as e:
            raise SyncQueueFullError(
                f"Sync queue is full ({self._queue.maxsize} operations)"
            ) from e

        logger.debug(f"Queued operation ({self._queue.qsize()} pending)")
        return await future

    async def _drain_queue(self) -> None:
        if self._draining:
            return

        self._draining = True
        try:
            while not self._queue.empty():
                operation, future = self._queue.get_nowait()
                try:
                    result = await operation()
                except Exception as e:
                    if not future.done():
                        future.set_exception(e)
                except BaseException:
                    if not future.done():
                        future.cancel()
                    self._cancel_queued()
                    raise
                else:
                    if not future.done():
                        future.set_result(result)
                finally:
                    self._queue.task_done()
        finally:
            self._draining = False

    def _cancel_queued(self) -> None:
        while not self._queue.empty():
            _, future = self._queue.get_nowait()
            future.cancel()
            self._queue.task_done()

    # Triggers

    def _spawn(self, coro: Awaitable[Any]) -> asyncio.Task:
        task = asyncio.ensure_future(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task

    def start_auto_sync(self, interval: float) -> None:
        """Sync every interval seconds, skipping ticks while a sync runs.

        The first sync happens after one interval. Must be called from a
        running event loop.
        """
        self.stop_auto_sync()
        self._auto_sync_task = asyncio.get_running_loop().create_task(
            self._auto_sync_loop(interval)
        )
        logger.info(f"Auto-sync every {interval}s")

    def stop_auto_sync(self) -> None:
        """Cancel the auto-sync timer. A sync already running is not cancelled."""
        if self._auto_sync_task is not None:
            self._auto_sync_task.cancel()
            self._auto_sync_task = None

    async def _auto_sync_loop(self, interval: float) -> None:
        while True:
            await asyncio.sleep(interval)
            if self.is_syncing():
                logger.debug("Auto-sync tick skipped: sync in progress")
                continue
            await asyncio.shield(self._spawn(self.sync()))

    def enable_debounce(self, delay: float) -> None:
        self._debounce = delay

    def trigger_sync(self) -> None:
        """Request a sync.

        With debounce enabled, each call restarts the timer and only the
        last call in the window syncs.
        """
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None

        if self._debounce > 0:
            loop = asyncio.get_running_loop()
            self._debounce_handle = loop.call_later(self._debounce, self._fire_debounced)
        else:
            self._spawn(self.sync())

    def _fire_debounced(self) -> None:
        self._debounce_handle = None
        self._spawn(self.sync())

    async def close(self) -> None:
        """Stop timers and wait for background syncs to finish."""
        self.stop_auto_sync()
        if self._debounce_handle is not None:
            self._debounce_handle.cancel()
            self._debounce_handle = None
        if self._background:
            await asyncio.gather(*self._background, return_exceptions=True)

    # Sync on write

    def enable_sync_on_write(self) -> None:
        self._sync_on_write = True

    def disable_sync_on_write(self) -> None:
        self._sync_on_write = False

    async def create_with_sync(
        self, text: str, project: str, created_by: str, **fields: Any
    ) -> Record:
        async def operation() -> Record:
            record = await self.repository.create(text, project, created_by, **fields)
            await self._commit_and_push(f"Add record: {text}")
            return record

        return await self.queue_operation(operation)

    async def update_with_sync(self, record_id: str, changes: dict[str, Any]) -> Record:
        async def operation() -> Record:
            record = await self.repository.update(record_id, changes)
            await self._commit_and_push(f"Update record: {record_id}")
            return record

        return await self.queue_operation(operation)

    async def delete_with_sync(self, record_id: str, hard: bool = False) -> None:
        async def operation() -> None:
            await self.repository.delete(record_id, hard=hard)
            await self._commit_and_push(f"Delete record: {record_id}")

        await self.queue_operation(operation)

    async def _commit_and_push(self, message: str) -> None:
        """Commit and push without pulling first.

        A rejected push is left for the next full sync to reconcile.
        """
        if not self._sync_on_write:
            return

        commit_result = await self.transport.commit(message)
        if not commit_result.success:
            logger.warning(f"Commit after write failed: {commit_result.error}")
            return
        if not commit_result.committed:
            return

        push_result = await self.transport.push()
        if not push_result.success:
            logger.warning(f"Push after write failed: {push_result.error}")

    # Accessors

    def get_last_sync_time(self) -> datetime | None:
        return self._stats.last_sync_time

    def get_last_sync_error(self) -> str | None:
        return self._stats.last_error

    def get_stats(self) -> SyncStats:
        return replace(self._stats)

    def reset_stats(self) -> None:
        self._stats = SyncStats()


def _as_error(result, default: str) -> GitTransportError:
    return GitTransportError(result.error or default, result.failure or FailureKind.UNKNOWN)
