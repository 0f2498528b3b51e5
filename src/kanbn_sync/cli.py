"""CLI interface for kanbn-sync."""

from __future__ import annotations

import asyncio
from pathlib import Path
from typing import TYPE_CHECKING, Annotated

import typer
from pydantic import ValidationError
from rich.console import Console
from rich.table import Table

from kanbn_sync import __version__
from kanbn_sync.config import Config, Secrets, effective_interval, verify_config
from kanbn_sync.logging import setup_logging
from kanbn_sync.service import SyncService
from kanbn_sync.sync.errors import ConfigurationError, SyncError
from kanbn_sync.sync.kanbn_client import KanbnClient
from kanbn_sync.sync.remote import RateLimitedClient

if TYPE_CHECKING:
    from kanbn_sync.sync.orchestrator import CycleReport

app = typer.Typer(
    name="kanbn-sync",
    help="Mirror GitHub issues onto Kanbn boards.",
    no_args_is_help=True,
)
console = Console()

ConfigOption = Annotated[
    Path | None,
    typer.Option("--config", "-c", help="Config file (default: config/config.yaml, config.json, ...)"),
]
DryRunOption = Annotated[
    bool,
    typer.Option("--dry-run", "-n", help="Log board changes without writing them"),
]
LogLevelOption = Annotated[
    str | None,
    typer.Option("--log-level", "-l", help="DEBUG, INFO, WARNING or ERROR (default: $KANBN_SYNC_LOG_LEVEL or INFO)"),
]


def _load_config(config_path: Path | None) -> tuple[Config, Path | None]:
    """Load configuration or exit with a readable error."""
    path = config_path or Config.find_path()
    try:
        return Config.load(path), path
    except FileNotFoundError as e:
        console.print(f"[red]Error:[/red] {e}")
        console.print("[dim]Copy config/config.example.yaml to config/config.yaml and edit it.[/dim]")
        raise typer.Exit(1) from e
    except ValidationError as e:
        console.print(f"[red]Invalid configuration in {path}:[/red]")
        for error in e.errors():
            location = ".".join(str(part) for part in error["loc"])
            console.print(f"  - {location}: {error['msg']}")
        raise typer.Exit(1) from e


def _print_config_errors(errors: list[str]) -> None:
    console.print("[bold red]Configuration errors:[/bold red]")
    for error in errors:
        console.print(f"  - {error}")


def _display_report(report: CycleReport) -> None:
    table = Table(title="Sync Results")
    table.add_column("Repository")
    table.add_column("Created", justify="right")
    table.add_column("Updated", justify="right")
    table.add_column("Unchanged", justify="right")
    table.add_column("Duplicates", justify="right")
    table.add_column("Errors", justify="right")
    table.add_column("Status")

    for repo in report.repositories:
        if repo.skipped:
            status = "[yellow]skipped (rate limited)[/yellow]"
        elif repo.error:
            status = f"[red]{repo.error}[/red]"
        elif repo.errors:
            status = "[yellow]partial[/yellow]"
        else:
            status = "[green]ok[/green]"
        table.add_row(
            repo.repository,
            str(repo.created),
            str(repo.updated),
            str(repo.unchanged),
            str(repo.duplicates_removed),
            str(repo.errors),
            status,
        )

    console.print(table)
    if report.rate_limited:
        reset = f" (resets at {report.rate_limit_reset:%H:%M:%S})" if report.rate_limit_reset else ""
        console.print(f"[yellow]GitHub rate limit reached{reset}; remaining repositories were skipped.[/yellow]")


@app.command()
def run(
    config_path: ConfigOption = None,
    dry_run: DryRunOption = False,
    log_level: LogLevelOption = None,
    log_file: Annotated[
        Path | None,
        typer.Option("--log-file", help="Also write logs to this rotating file"),
    ] = None,
) -> None:
    """Run the sync service until interrupted.

    Syncs immediately, then every sync.interval_minutes. Edits to the config
    file are picked up without a restart.
    """
    setup_logging(log_level, log_file)
    config, path = _load_config(config_path)
    secrets = Secrets.from_env()

    console.print(f"[bold cyan]kanbn-sync {__version__}[/bold cyan]")
    console.print(f"  [bold]Repositories:[/bold] {len(config.repositories)}")
    console.print(f"  [bold]Interval:[/bold] {effective_interval(config, secrets)} min")
    if dry_run or config.sync.dry_run:
        console.print("  [yellow]DRY RUN - no board changes will be written[/yellow]")

    async def serve() -> None:
        async with SyncService(config, secrets, path, dry_run=dry_run) as service:
            await service.start()
            await asyncio.Event().wait()

    try:
        asyncio.run(serve())
    except ConfigurationError as e:
        _print_config_errors(e.errors or [str(e)])
        raise typer.Exit(1) from e
    except SyncError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e
    except KeyboardInterrupt:
        console.print("\n[yellow]Stopped[/yellow]")


@app.command()
def sync(
    repo: Annotated[
        str | None,
        typer.Option("--repo", "-r", help="Only sync this repository ('owner/name')"),
    ] = None,
    config_path: ConfigOption = None,
    dry_run: DryRunOption = False,
    log_level: LogLevelOption = None,
) -> None:
    """Run a single sync cycle and print the results."""
    setup_logging(log_level)
    config, _ = _load_config(config_path)
    secrets = Secrets.from_env()

    if repo is not None and config.repository(repo) is None:
        console.print(f"[red]Error:[/red] Repository '{repo}' is not configured")
        raise typer.Exit(1)

    async def run_once() -> CycleReport | None:
        async with SyncService(config, secrets, dry_run=dry_run) as service:
            return await service.run_one_cycle(only=repo)

    try:
        report = asyncio.run(run_once())
    except ConfigurationError as e:
        _print_config_errors(e.errors or [str(e)])
        raise typer.Exit(1) from e
    except SyncError as e:
        console.print(f"[red]Sync failed:[/red] {e}")
        raise typer.Exit(1) from e

    if report is None:
        return
    _display_report(report)
    if report.has_errors:
        raise typer.Exit(1)


@app.command()
def check(config_path: ConfigOption = None) -> None:
    """Validate the configuration and show how issues are routed."""
    config, path = _load_config(config_path)
    secrets = Secrets.from_env()
    result = verify_config(config, secrets)

    console.print(f"\n[bold]Config:[/bold] {path}")
    console.print(f"  Kanbn: {config.kanbn.base_url or '[red]not set[/red]'}")
    console.print(f"  Workspace: {config.kanbn.workspace_url_slug or '[red]not set[/red]'}")
    console.print(f"  GitHub token: {'set' if secrets.github_token else '[yellow]not set (60 requests/hour)[/yellow]'}")
    console.print(f"  Interval: {effective_interval(config, secrets)} min")

    table = Table(title="Repositories")
    table.add_column("Repository")
    table.add_column("Board")
    for repository in config.repositories:
        table.add_row(repository.full_name, repository.display_name)
    console.print(table)

    lists = config.lists
    routing = Table(title="List Routing")
    routing.add_column("When")
    routing.add_column("List")
    routing.add_row("Issue closed", lists.completed)
    if lists.pr_aware:
        routing.add_row("Linked PR with assignees or reviewers", lists.quality_assurance or "")
        routing.add_row("Linked draft PR", lists.in_progress)
        routing.add_row("Linked PR", lists.ready_for_qa or "")
    else:
        routing.add_row("Linked PR", lists.in_progress)
    routing.add_row("Issue assigned", lists.selected)
    routing.add_row("Otherwise", lists.backlog)
    console.print(routing)

    if not result.valid:
        _print_config_errors(result.errors)
        if result.has_placeholders:
            console.print("[dim]Replace the example values copied from the sample config and env.example.[/dim]")
        raise typer.Exit(1)
    console.print("[green]Configuration is valid[/green]")


@app.command()
def workspaces(config_path: ConfigOption = None) -> None:
    """List the Kanbn workspaces the API key can access."""
    config, _ = _load_config(config_path)
    secrets = Secrets.from_env()
    if not config.kanbn.base_url or not secrets.kan_api_key:
        console.print("[red]Error:[/red] kanbn.base_url and KAN_API_KEY are required")
        raise typer.Exit(1)

    async def fetch() -> list:
        async with RateLimitedClient(config.kanbn.base_url, secrets.kan_api_key) as remote:
            return await KanbnClient(remote).list_workspaces()

    try:
        found = asyncio.run(fetch())
    except SyncError as e:
        console.print(f"[red]Error:[/red] {e}")
        raise typer.Exit(1) from e

    if not found:
        console.print("[yellow]No workspaces found[/yellow]")
        return

    table = Table(title="Workspaces")
    table.add_column("Name")
    table.add_column("Slug")
    table.add_column("ID")
    for workspace in found:
        marker = " [green](configured)[/green]" if workspace.slug == config.kanbn.workspace_url_slug else ""
        table.add_row(f"{workspace.name}{marker}", workspace.slug or "", workspace.public_id)
    console.print(table)


if __name__ == "__main__":
    app()
