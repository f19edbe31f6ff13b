"""Git transport for the shared document repository.

Wraps pull, push, commit and status on a local clone using GitPython, and
reports expected failures (merge conflicts, rejected pushes, network trouble)
as GitOperationResult values instead of exceptions. Unexpected failures are
raised as GitTransportError carrying a FailureKind.

Git output is only inspected in classify_git_error(); everything else works
with FailureKind values.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable

import git
from git.exc import GitCommandError, InvalidGitRepositoryError, NoSuchPathError

from gitboard.exceptions import (
    RETRYABLE_FAILURES,
    ConflictResolutionError,
    FailureKind,
    GitboardError,
    GitTransportError,
)
from gitboard.atomic import AtomicDocumentStore
from gitboard.sync.resolver import ConflictResolver, FieldLevelResolver

logger = logging.getLogger(__name__)

CONFLICT_COMMIT_MESSAGE = "Resolved merge conflicts"

# Checked in order; the first matching kind wins.
_FAILURE_PATTERNS: list[tuple[FailureKind, tuple[str, ...]]] = [
    (
        FailureKind.AUTHENTICATION,
        (
            "authentication failed",
            "permission denied",
            "could not read username",
            "could not read password",
            "terminal prompts disabled",
            "invalid username or password",
            "returned error: 401",
            "returned error: 403",
        ),
    ),
    (
        FailureKind.REJECTED,
        (
            "non-fast-forward",
            "[rejected]",
            "fetch first",
            "updates were rejected",
        ),
    ),
    (
        FailureKind.MISSING_REF,
        ("couldn't find remote ref", "no such ref was fetched"),
    ),
    (
        FailureKind.NOTHING_TO_COMMIT,
        ("nothing to commit", "nothing added to commit"),
    ),
    (
        FailureKind.CONFLICT,
        ("merge conflict", "unmerged files", "fix conflicts", "conflict ("),
    ),
    (
        FailureKind.TRANSIENT,
        (
            "temporary failure",
            "timed out",
            "connection reset",
            "early eof",
            "remote end hung up",
            "rpc failed",
            "index.lock",
        ),
    ),
    (
        FailureKind.NETWORK,
        (
            "could not resolve host",
            "unable to access",
            "network is unreachable",
            "connection refused",
            "no route to host",
            "failed to connect",
            "could not read from remote repository",
        ),
    ),
]

_CONFLICT_CODES = {"DD", "AU", "UD", "UA", "DU", "AA", "UU"}


def classify_git_error(message: str) -> FailureKind:
    """Map git's error output to a FailureKind."""
    lowered = message.lower()
    for kind, patterns in _FAILURE_PATTERNS:
        if any(pattern in lowered for pattern in patterns):
            return kind
    return FailureKind.UNKNOWN


def _error_text(error: GitCommandError) -> str:
    """The human-readable part of a GitCommandError (its stderr)."""
    text = (error.stderr or "").strip()
    if text.startswith("stderr:"):
        text = text[len("stderr:"):].strip().strip("'").strip()
    return text or str(error)


@dataclass
class GitOperationResult:
    """Outcome of a transport operation."""

    success: bool
    error: str | None = None
    failure: FailureKind | None = None
    has_conflicts: bool = False
    conflicted_files: list[str] = field(default_factory=list)
    needs_pull: bool = False
    committed: bool = False

    @property
    def retryable(self) -> bool:
        return self.failure in RETRYABLE_FAILURES


@dataclass
class GitStatus:
    """Working tree status."""

    has_changes: bool = False
    ahead: int = 0
    behind: int = 0
    modified: list[str] = field(default_factory=list)
    created: list[str] = field(default_factory=list)
    deleted: list[str] = field(default_factory=list)
    conflicted: list[str] = field(default_factory=list)
    current: str | None = None
    tracking: str | None = None


def parse_porcelain_status(output: str) -> GitStatus:
    """Parse `git status --porcelain=v1 --branch` output."""
    status = GitStatus()

    for line in output.splitlines():
        if not line.strip():
            continue

        if line.startswith("## "):
            _parse_branch_header(line[3:], status)
            continue

        code, path = line[:2], line[3:]
        if " -> " in path:
            path = path.split(" -> ", 1)[1]
        if len(path) >= 2 and path.startswith('"') and path.endswith('"'):
            path = path[1:-1]

        status.has_changes = True
        if code in _CONFLICT_CODES:
            status.conflicted.append(path)
        elif code == "??" or code[0] == "A":
            status.created.append(path)
        elif "D" in code:
            status.deleted.append(path)
        else:
            status.modified.append(path)

    return status


def _parse_branch_header(header: str, status: GitStatus) -> None:
    for prefix in ("No commits yet on ", "Initial commit on "):
        if header.startswith(prefix):
            status.current = header[len(prefix):].strip()
            return
    if header.startswith("HEAD (no branch)"):
        return

    names, _, counts = header.partition(" [")
    current, _, tracking = names.partition("...")
    status.current = current.strip() or None
    status.tracking = tracking.strip() or None

    for item in counts.rstrip("]").split(","):
        word, _, number = item.strip().partition(" ")
        if word == "ahead":
            status.ahead = int(number)
        elif word == "behind":
            status.behind = int(number)


class GitTransport:
    """Repository operations for one working tree.

    All blocking git calls run in a worker thread, one at a time.
    """

    def __init__(
        self,
        repo_path: Path | str,
        remote_name: str = "origin",
        branch: str | None = None,
        resolver: ConflictResolver | None = None,
        store: AtomicDocumentStore | None = None,
        backoff_base: float = 1.0,
    ):
        """Initialize the transport.

        Args:
            repo_path: Working tree of the repository
            remote_name: Remote to pull from and push to
            branch: Branch to sync (default: the active branch)
            resolver: Resolver for conflicted files (default: FieldLevelResolver)
            store: Atomic writer for resolved files
            backoff_base: Seconds; retry n waits backoff_base * 2**n
        """
        self.repo_path = Path(repo_path)
        self.remote_name = remote_name
        self.branch = branch
        self.resolver = resolver or FieldLevelResolver()
        self.store = store or AtomicDocumentStore()
        self.backoff_base = backoff_base

        self._repo: git.Repo | None = None
        self._lock = asyncio.Lock()

    @classmethod
    def from_settings(cls, settings, **kwargs) -> "GitTransport":
        return cls(
            repo_path=settings.repo_path,
            remote_name=settings.remote_name,
            branch=settings.branch,
            backoff_base=settings.backoff_base,
            **kwargs,
        )

    @property
    def repo(self) -> git.Repo:
        if self._repo is None:
            try:
                self._repo = git.Repo(self.repo_path)
            except (InvalidGitRepositoryError, NoSuchPathError) as e:
                raise GitTransportError(
                    f"Not a git repository: {self.repo_path}"
                ) from e
        return self._repo

    def close(self) -> None:
        if self._repo is not None:
            self._repo.close()
            self._repo = None

    async def _run(self, func: Callable[..., Any], *args: Any) -> Any:
        async with self._lock:
            return await asyncio.to_thread(func, *args)

    def _branch_name(self) -> str:
        if self.branch:
            return self.branch
        try:
            return self.repo.active_branch.name
        except TypeError as e:
            raise GitTransportError(
                "HEAD is detached; configure a branch to sync"
            ) from e

    async def initialize(self, remote_url: str | None = None) -> None:
        """Create the repository if needed and register the remote."""
        await self._run(self._initialize_sync, remote_url)

    def _initialize_sync(self, remote_url: str | None) -> None:
        self.repo_path.mkdir(parents=True, exist_ok=True)
        try:
            repo = git.Repo(self.repo_path)
        except InvalidGitRepositoryError:
            logger.info(f"Initializing git repository in {self.repo_path}")
            repo = git.Repo.init(self.repo_path)

        if remote_url and self.remote_name not in [r.name for r in repo.remotes]:
            logger.info(f"Adding remote {self.remote_name} -> {remote_url}")
            repo.create_remote(self.remote_name, remote_url)

        self._repo = repo

    async def has_remote(self) -> bool:
        return await self._run(
            lambda: self.remote_name in [r.name for r in self.repo.remotes]
        )

    async def pull(self) -> GitOperationResult:
        """Pull the configured branch, merging (never rebasing).

        Returns:
            Success, or a result describing a conflict or network failure

        Raises:
            GitTransportError: For any other failure
        """
        try:
            await self._run(self._pull_sync)
            return GitOperationResult(success=True)
        except GitCommandError as e:
            message = _error_text(e)
            kind = classify_git_error(str(e))

        status = await self.get_status()
        if status.conflicted:
            logger.info(f"Pull produced conflicts in {status.conflicted}")
            return GitOperationResult(
                success=False,
                has_conflicts=True,
                conflicted_files=status.conflicted,
                error="Merge conflict detected",
                failure=FailureKind.CONFLICT,
            )

        if kind == FailureKind.NETWORK:
            return GitOperationResult(
                success=False,
                error=f"Network error: {message}",
                failure=FailureKind.NETWORK,
            )

        if kind == FailureKind.MISSING_REF:
            logger.info("Remote branch does not exist yet; nothing to pull")
            return GitOperationResult(success=True)

        raise GitTransportError(message, kind)

    def _pull_sync(self) -> None:
        self.repo.git.pull("--no-rebase", "--no-edit", self.remote_name, self._branch_name())

    async def push(self) -> GitOperationResult:
        """Push the configured branch.

        A push rejected because the remote is ahead returns needs_pull=True.
        """
        try:
            await self._run(self._push_sync)
            return GitOperationResult(success=True)
        except GitCommandError as e:
            kind = classify_git_error(str(e))
            if kind == FailureKind.REJECTED:
                return GitOperationResult(
                    success=False,
                    needs_pull=True,
                    error="Remote has newer changes, pull required",
                    failure=FailureKind.REJECTED,
                )
            return GitOperationResult(success=False, error=_error_text(e), failure=kind)

    def _push_sync(self) -> None:
        self.repo.git.push(self.remote_name, self._branch_name())

    async def commit(self, message: str) -> GitOperationResult:
        """Stage everything and commit.

        A clean tree with no merge in progress is a success with
        committed=False.
        """
        try:
            committed = await self._run(self._commit_sync, message)
            return GitOperationResult(success=True, committed=committed)
        except GitCommandError as e:
            kind = classify_git_error(str(e))
            if kind == FailureKind.NOTHING_TO_COMMIT:
                return GitOperationResult(success=True, committed=False)
            return GitOperationResult(success=False, error=_error_text(e), failure=kind)

    def _commit_sync(self, message: str) -> bool:
        repo = self.repo
        repo.git.add("--all")
        merging = (Path(repo.git_dir) / "MERGE_HEAD").exists()
        if not merging and not repo.git.status("--porcelain").strip():
            logger.debug("Nothing to commit")
            return False
        repo.git.commit("-m", message)
        logger.debug(f"Committed: {message}")
        return True

    async def get_status(self) -> GitStatus:
        output = await self._run(
            lambda: self.repo.git.status("--porcelain=v1", "--branch")
        )
        return parse_porcelain_status(output)

    async def get_current_branch(self) -> str | None:
        def current() -> str | None:
            try:
                return self.repo.active_branch.name
            except TypeError:
                return None

        return await self._run(current)

    async def checkout(self, branch: str) -> None:
        try:
            await self._run(self.repo.git.checkout, branch)
        except GitCommandError as e:
            raise GitTransportError(_error_text(e), classify_git_error(str(e))) from e

    async def write_atomic(self, path: Path | str, content: str) -> None:
        await self.store.write_atomic(path, content)

    async def resolve_conflict(self, path: str) -> None:
        """Merge both sides of a conflicted file into the working tree.

        Reads "ours" (stage 2) and "theirs" (stage 3) from the index. A side
        that is missing falls back to the working-tree content. The result is
        written but not staged or committed.

        Raises:
            ConflictResolutionError: If the file cannot be read or written
        """
        full_path = self.repo_path / path
        try:
            local_content = await self._run(self._read_stage, 2, path)
            remote_content = await self._run(self._read_stage, 3, path)

            if local_content is None:
                local_content = (
                    full_path.read_text(encoding="utf-8") if full_path.exists() else ""
                )
            if remote_content is None:
                remote_content = local_content

            merged = self.resolver.resolve_conflict(path, local_content, remote_content)
            await self.write_atomic(full_path, merged)
        except (GitboardError, OSError, UnicodeDecodeError) as e:
            logger.error(f"Failed to resolve conflict in {path}: {e}")
            raise ConflictResolutionError(
                f"Failed to resolve conflict in {path}: {e}"
            ) from e

        logger.info(f"Resolved conflict in {path}")

    def _read_stage(self, stage: int, path: str) -> str | None:
        try:
            return self.repo.git.show(f":{stage}:{path}", strip_newline_in_stdout=False)
        except GitCommandError:
            return None

    async def _backoff(self, attempt: int) -> None:
        delay = self.backoff_base * 2**attempt
        logger.info(f"Retrying in {delay:.1f}s (attempt {attempt})")
        await asyncio.sleep(delay)

    async def _with_retry(self, operation, max_attempts: int, name: str) -> GitOperationResult:
        attempts = 0
        last_error: str | None = None
        last_failure: FailureKind | None = None

        while attempts < max_attempts:
            try:
                result = await operation()
            except GitTransportError as e:
                if not e.retryable:
                    return GitOperationResult(
                        success=False, error=str(e), failure=e.failure
                    )
                last_error, last_failure = str(e), e.failure
            else:
                if result.success or result.has_conflicts or not result.retryable:
                    return result
                last_error, last_failure = result.error, result.failure

            attempts += 1
            if attempts < max_attempts:
                await self._backoff(attempts)

        return GitOperationResult(
            success=False,
            error=last_error or f"{name} failed after retries",
            failure=last_failure,
        )

    async def pull_with_retry(self, max_attempts: int = 3) -> GitOperationResult:
        """Pull, retrying retryable failures with exponential backoff.

        Non-retryable failures return immediately.
        """
        return await self._with_retry(self.pull, max_attempts, "Pull")

    async def push_with_retry(self, max_attempts: int = 3) -> GitOperationResult:
        """Push, retrying network and transient failures with backoff.

        A rejection (needs_pull) is returned at once for the caller to pull.
        """
        return await self._with_retry(self.push, max_attempts, "Push")

    async def sync_with_retry(self, max_attempts: int = 3) -> GitOperationResult:
        """Push, pulling and resolving conflicts whenever the push is rejected.

        Up to max_attempts retries follow the first push. Every pull is
        followed by another push.
        """
        attempts = 0

        while True:
            push_result = await self.push()
            if push_result.success:
                return push_result
            if not (push_result.needs_pull or push_result.retryable):
                return push_result
            if attempts >= max_attempts:
                break
            attempts += 1

            if not push_result.needs_pull:
                await self._backoff(attempts)
                continue

            try:
                pull_result = await self.pull()
            except GitTransportError as e:
                if not e.retryable:
                    return GitOperationResult(
                        success=False, error=str(e), failure=e.failure
                    )
                await self._backoff(attempts)
                continue

            if pull_result.has_conflicts:
                for conflicted in pull_result.conflicted_files:
                    await self.resolve_conflict(conflicted)
                commit_result = await self.commit(CONFLICT_COMMIT_MESSAGE)
                if not commit_result.success:
                    return commit_result
            elif not pull_result.success:
                if not pull_result.retryable:
                    return pull_result
                await self._backoff(attempts)

        return GitOperationResult(
            success=False,
            error=f"Failed after {max_attempts} attempts",
            failure=push_result.failure,
        )
