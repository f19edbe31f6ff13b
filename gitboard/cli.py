"""Command line interface for gitboard.

Example:
    gitboard init --remote-url git@example.com:team/board.git
    gitboard add "Write release notes" --project docs --priority high
    gitboard sync
    gitboard watch --interval 60
"""

import asyncio
import logging
from pathlib import Path
from typing import Annotated, Optional

import cyclopts
from dotenv import load_dotenv
from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from gitboard import __version__
from gitboard.config import SyncSettings, load_settings
from gitboard.exceptions import GitboardError
from gitboard.records.models import Priority, Record, Status, utc_now
from gitboard.sync.coordinator import SyncCoordinator, SyncResult
from gitboard.sync.transport import CONFLICT_COMMIT_MESSAGE

logger = logging.getLogger(__name__)

app = cyclopts.App(
    name="gitboard",
    help="A shared list kept in a git repository",
    version=__version__,
)

RepoOption = Annotated[
    Optional[Path],
    cyclopts.Parameter(help="Repository path (default: GITBOARD_REPO or cwd)"),
]
VerboseOption = Annotated[bool, cyclopts.Parameter(help="Enable debug logging")]

PRIORITY_STYLES = {
    Priority.URGENT.value: "red bold",
    Priority.HIGH.value: "red",
    Priority.MEDIUM.value: "yellow",
    Priority.LOW.value: "dim",
}


def _get_console() -> Console:
    return Console()


def _setup(repo: Path | None, verbose: bool) -> SyncSettings:
    """Load .env and settings, then configure logging."""
    load_dotenv()
    settings = load_settings(repo)
    logging.basicConfig(
        level=logging.DEBUG if verbose else settings.log_level,
        format="%(asctime)s - %(name)s - %(levelname)s - %(message)s",
    )
    return settings


def _print_sync_result(console: Console, result: SyncResult) -> None:
    if not result.success:
        console.print(
            Panel(
                Text.assemble(("✗ ", "red bold"), (result.error or "Sync failed", "red")),
                title="Sync",
                border_style="red",
            )
        )
        return

    body = Text.assemble(("✓ ", "green bold"), ("Sync complete", "green"))
    if result.resolved_conflicts:
        body.append("\n\nResolved conflicts:\n", style="cyan")
        for path in result.resolved_conflicts:
            body.append(f"  • {path}\n", style="white")
    console.print(Panel(body, title="Sync", border_style="green"))


def _records_table(records: list[Record], title: str) -> Table:
    table = Table(title=title)
    table.add_column("ID", style="dim", no_wrap=True)
    table.add_column("Status", style="cyan")
    table.add_column("Priority")
    table.add_column("Project", style="magenta")
    table.add_column("Text", style="white")
    table.add_column("Tags", style="dim")

    for record in records:
        text = f"[strike]{record.text}[/strike]" if record.archived else record.text
        table.add_row(
            record.id[:8],
            record.status,
            f"[{PRIORITY_STYLES[record.priority]}]{record.priority}[/]",
            record.project,
            text,
            ", ".join(record.tags),
        )
    return table


async def _open(settings: SyncSettings) -> SyncCoordinator:
    coordinator = SyncCoordinator.from_settings(settings)
    await coordinator.repository.initialize()
    return coordinator


async def _find_id(coordinator: SyncCoordinator, prefix: str) -> str:
    """Expand a unique id prefix to the full record id."""
    matches = [
        r.id for r in await coordinator.repository.list() if r.id.startswith(prefix)
    ]
    if len(matches) == 1:
        return matches[0]
    if not matches:
        raise GitboardError(f"No record matches {prefix}")
    raise GitboardError(f"{prefix} matches {len(matches)} records; use a longer id")


@app.command
def init(
    *,
    remote_url: Annotated[
        Optional[str], cyclopts.Parameter(help="URL of the shared remote")
    ] = None,
    repo: RepoOption = None,
    verbose: VerboseOption = False,
):
    """Create the repository and document, then sync once if a remote exists.

    Example:
        gitboard init --remote-url git@example.com:team/board.git
    """
    console = _get_console()
    settings = _setup(repo, verbose)

    async def run() -> SyncResult | None:
        coordinator = SyncCoordinator.from_settings(settings)
        try:
            await coordinator.transport.initialize(remote_url or settings.remote_url)
            if await coordinator.transport.has_remote():
                return await coordinator.initial_sync()
            await coordinator.repository.initialize()
            commit_result = await coordinator.transport.commit("Initialize gitboard")
            if not commit_result.success:
                logger.warning(f"Initial commit failed: {commit_result.error}")
            return None
        finally:
            await coordinator.close()
            coordinator.transport.close()

    try:
        result = asyncio.run(run())
    except GitboardError as e:
        console.print(f"[red]Error during init: {e}[/red]")
        return 1

    console.print(f"[green]✓ Initialized {settings.document_path}[/green]")
    if result is None:
        console.print("[dim]No remote configured; run 'gitboard init --remote-url URL' to add one[/dim]")
        return 0
    _print_sync_result(console, result)
    return 0 if result.success else 1


@app.command
def sync(*, repo: RepoOption = None, verbose: VerboseOption = False):
    """Pull, resolve conflicts, and push.

    Example:
        gitboard sync
    """
    console = _get_console()
    settings = _setup(repo, verbose)

    async def run() -> SyncResult:
        coordinator = await _open(settings)
        try:
            return await coordinator.sync()
        finally:
            await coordinator.close()
            coordinator.transport.close()

    try:
        with console.status("[cyan]Syncing...[/cyan]"):
            result = asyncio.run(run())
    except GitboardError as e:
        console.print(f"[red]Error during sync: {e}[/red]")
        return 1

    _print_sync_result(console, result)
    return 0 if result.success else 1


@app.command
def status(*, repo: RepoOption = None, verbose: VerboseOption = False):
    """Show repository and document status.

    Example:
        gitboard status
    """
    console = _get_console()
    settings = _setup(repo, verbose)

    async def run():
        coordinator = await _open(settings)
        try:
            return (
                await coordinator.transport.get_status(),
                await coordinator.repository.stats(),
            )
        finally:
            coordinator.transport.close()

    try:
        git_status, stats = asyncio.run(run())
    except GitboardError as e:
        console.print(f"[red]Error getting status: {e}[/red]")
        return 1

    table = Table(title="gitboard Status", show_header=False, box=None)
    table.add_column("Key", style="cyan", no_wrap=True)
    table.add_column("Value", style="white")

    table.add_row("Document", str(settings.document_path))
    table.add_row("Branch", git_status.current or "(detached)")
    table.add_row("Tracking", git_status.tracking or "None")
    table.add_row("Ahead / Behind", f"{git_status.ahead} / {git_status.behind}")
    table.add_row("Local changes", "Yes" if git_status.has_changes else "No")
    if git_status.conflicted:
        table.add_row("Conflicts", "[red]" + ", ".join(git_status.conflicted) + "[/red]")
    table.add_row("Records", str(stats["total"]))
    table.add_row("Completed", f"{stats['completed']} ({stats['completion_rate']:.0f}%)")
    table.add_row("Sync on write", "✓ Enabled" if settings.sync_on_write else "✗ Disabled")

    console.print(table)
    if git_status.conflicted:
        console.print("\n[dim]To resolve conflicts: gitboard resolve[/dim]")
    return 0


@app.command
def resolve(*, repo: RepoOption = None, verbose: VerboseOption = False):
    """Resolve conflicted files left by an interrupted merge and commit.

    Example:
        gitboard resolve
    """
    console = _get_console()
    settings = _setup(repo, verbose)

    async def run() -> list[str]:
        coordinator = SyncCoordinator.from_settings(settings)
        try:
            git_status = await coordinator.transport.get_status()
            if not git_status.conflicted:
                return []
            resolved = await coordinator.resolve_conflicts(git_status.conflicted)
            result = await coordinator.transport.commit(CONFLICT_COMMIT_MESSAGE)
            if not result.success:
                raise GitboardError(result.error or "Commit failed")
            return resolved
        finally:
            coordinator.transport.close()

    try:
        resolved = asyncio.run(run())
    except GitboardError as e:
        console.print(f"[red]Error resolving conflicts: {e}[/red]")
        return 1

    if not resolved:
        console.print("[green]No conflicts to resolve[/green]")
    else:
        for path in resolved:
            console.print(f"[green]✓ Resolved {path}[/green]")
    return 0


@app.command
def watch(
    *,
    interval: Annotated[
        Optional[float], cyclopts.Parameter(help="Seconds between automatic syncs")
    ] = None,
    debounce: Annotated[
        Optional[float],
        cyclopts.Parameter(help="Seconds to wait after a local edit before syncing"),
    ] = None,
    repo: RepoOption = None,
    verbose: VerboseOption = False,
):
    """Keep syncing until interrupted.

    Syncs every --interval seconds, and shortly after the document changes
    on disk.

    Example:
        gitboard watch --interval 60 --debounce 2
    """
    console = _get_console()
    settings = _setup(repo, verbose)
    interval = interval or settings.auto_sync_interval or 60.0
    debounce = debounce if debounce is not None else (settings.debounce or 2.0)

    async def run() -> None:
        coordinator = await _open(settings)
        coordinator.enable_debounce(debounce)
        result = await coordinator.sync()
        _print_sync_result(console, result)

        coordinator.start_auto_sync(interval)
        watcher = _DocumentWatcher(settings.document_path, coordinator)
        try:
            while True:
                await asyncio.sleep(1.0)
                if watcher.changed():
                    logger.debug("Document changed on disk")
                    coordinator.trigger_sync()
        finally:
            await coordinator.close()
            coordinator.transport.close()

    console.print(
        f"[cyan]Watching {settings.document_path} "
        f"(every {interval:g}s, debounce {debounce:g}s). Ctrl+C to stop.[/cyan]"
    )
    try:
        asyncio.run(run())
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped[/yellow]")
    except GitboardError as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1
    return 0


def _mtime(path: Path) -> float | None:
    try:
        return path.stat().st_mtime
    except FileNotFoundError:
        return None



class _DocumentWatcher:
    """Spots edits to the document made outside of a sync.

    Writes made by a sync (pull, merge, reload) move the mtime too; once a
    sync has finished its mtime becomes the new baseline.
    """

    def __init__(self, path: Path, coordinator: SyncCoordinator):
        self.path = path
        self.coordinator = coordinator
        self._mtime = _mtime(path)
        self._syncs = coordinator.get_stats().total_syncs

    def changed(self) -> bool:
        if self.coordinator.is_syncing():
            return False

        mtime = _mtime(self.path)
        syncs = self.coordinator.get_stats().total_syncs
        if syncs != self._syncs:
            self._syncs = syncs
            self._mtime = mtime
            return False

        if mtime == self._mtime:
            return False
        self._mtime = mtime
        return True


@app.command
def add(
    text: Annotated[str, cyclopts.Parameter(help="Record text")],
    *,
    project: Annotated[str, cyclopts.Parameter(help="Project name")],
    priority: Annotated[Priority, cyclopts.Parameter(help="Priority")] = Priority.MEDIUM,
    tag: Annotated[
        Optional[list[str]], cyclopts.Parameter(help="Tag (repeatable)")
    ] = None,
    repo: RepoOption = None,
    verbose: VerboseOption = False,
):
    """Add a record.

    Example:
        gitboard add "Fix login redirect" --project web --priority high --tag bug
    """
    console = _get_console()
    settings = _setup(repo, verbose)

    async def run() -> Record:
        coordinator = await _open(settings)
        try:
            return await coordinator.create_with_sync(
                text, project, settings.author, priority=priority, tags=tag or []
            )
        finally:
            await coordinator.close()
            coordinator.transport.close()

    try:
        record = asyncio.run(run())
    except GitboardError as e:
        console.print(f"[red]Error adding record: {e}[/red]")
        return 1

    console.print(f"[green]✓ Added {record.id[:8]}: {record.text}[/green]")
    return 0


@app.command(name="list")
def list_records(
    *,
    status: Annotated[Optional[Status], cyclopts.Parameter(help="Filter by status")] = None,
    project: Annotated[Optional[str], cyclopts.Parameter(help="Filter by project")] = None,
    include_archived: Annotated[
        bool, cyclopts.Parameter(name="--all", help="Include archived records")
    ] = False,
    repo: RepoOption = None,
    verbose: VerboseOption = False,
):
    """List records, most urgent first.

    Example:
        gitboard list --status in-progress --project web
    """
    console = _get_console()
    settings = _setup(repo, verbose)

    async def run() -> list[Record]:
        coordinator = await _open(settings)
        try:
            return await coordinator.repository.list(
                status=status,
                project=project,
                sort_by="priority",
                include_archived=include_archived,
            )
        finally:
            coordinator.transport.close()

    try:
        records = asyncio.run(run())
    except GitboardError as e:
        console.print(f"[red]Error listing records: {e}[/red]")
        return 1

    if not records:
        console.print("[dim]No records[/dim]")
        return 0
    console.print(_records_table(records, f"Records ({len(records)})"))
    return 0


@app.command
def done(
    record_id: Annotated[str, cyclopts.Parameter(help="Record id or unique prefix")],
    *,
    repo: RepoOption = None,
    verbose: VerboseOption = False,
):
    """Mark a record as done.

    Example:
        gitboard done 3f2a9c1e
    """
    console = _get_console()
    settings = _setup(repo, verbose)

    async def run() -> Record:
        coordinator = await _open(settings)
        try:
            full_id = await _find_id(coordinator, record_id)
            return await coordinator.update_with_sync(
                full_id, {"status": Status.DONE.value, "completed_at": utc_now()}
            )
        finally:
            await coordinator.close()
            coordinator.transport.close()

    try:
        record = asyncio.run(run())
    except GitboardError as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1

    console.print(f"[green]✓ Done: {record.text}[/green]")
    return 0


@app.command
def remove(
    record_id: Annotated[str, cyclopts.Parameter(help="Record id or unique prefix")],
    *,
    hard: Annotated[
        bool, cyclopts.Parameter(help="Delete from the document instead of archiving")
    ] = False,
    repo: RepoOption = None,
    verbose: VerboseOption = False,
):
    """Archive a record (or delete it with --hard).

    Example:
        gitboard remove 3f2a9c1e
        gitboard remove 3f2a9c1e --hard
    """
    console = _get_console()
    settings = _setup(repo, verbose)

    async def run() -> str:
        coordinator = await _open(settings)
        try:
            full_id = await _find_id(coordinator, record_id)
            await coordinator.delete_with_sync(full_id, hard=hard)
            return full_id
        finally:
            await coordinator.close()
            coordinator.transport.close()

    try:
        full_id = asyncio.run(run())
    except GitboardError as e:
        console.print(f"[red]Error: {e}[/red]")
        return 1

    action = "Deleted" if hard else "Archived"
    console.print(f"[yellow]{action} {full_id[:8]}[/yellow]")
    return 0


def main():
    app()


if __name__ == "__main__":
    main()
