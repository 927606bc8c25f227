#!/usr/bin/env python3
"""
Index Notifier CLI Tool

Operator interface for the Index Notifier Service:
- run the service
- inspect which events pending index commits would produce
- explain a single commit pair
- manage subscriptions and check configuration
"""

import asyncio
import json
import sys
from typing import List, Optional

import click
from git import BadName, InvalidGitRepositoryError, NoSuchPathError, Repo
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from config.settings import export_config, settings, validate_configuration
from shared.database import DatabaseManager, SubscriberRepository
from shared.events import EventSerializer, LifecycleEvent, LifecycleKind
from services.index_notifier.errors import ExtractError
from services.index_notifier.extractor import DiffExtractor
from services.index_notifier.synchronizer import commit_pairs, pending_commits

# Initialize Rich console for beautiful output
console = Console()

KIND_STYLES = {
    LifecycleKind.NEW_VERSION: "green",
    LifecycleKind.YANKED: "red",
    LifecycleKind.UNYANKED: "yellow",
}


def open_repo(repo_path: str) -> Repo:
    try:
        return Repo(repo_path)
    except (InvalidGitRepositoryError, NoSuchPathError):
        console.print(f"[red]Not a git repository: {repo_path}[/red]")
        sys.exit(1)


def display_event(event: Optional[LifecycleEvent]):
    """Display one derived event in a panel."""
    if event is None:
        console.print(Panel("No event (commit skipped)", title="Result", border_style="dim"))
        return

    style = KIND_STYLES[event.kind]
    table = Table(show_header=False, box=None)
    table.add_column("Property", style="cyan", no_wrap=True)
    table.add_column("Value")
    table.add_row("Kind", f"[{style}]{event.kind.value}[/{style}]")
    table.add_row("Package", event.record.name)
    table.add_row("Version", event.record.vers)
    table.add_row("Yanked", str(event.record.yanked))
    table.add_row("Commits", f"{event.prev_commit[:12]} -> {event.next_commit[:12]}")
    console.print(Panel(table, title="Lifecycle event", border_style=style))


def display_pending(rows: List[tuple]):
    """Display pending commits and what each would produce."""
    table = Table(title="Pending index commits", show_header=True, header_style="bold magenta")
    table.add_column("Commit", style="cyan", no_wrap=True)
    table.add_column("Author")
    table.add_column("Result")

    for commit, result in rows:
        table.add_row(commit.hexsha[:12], commit.author.name or "?", result)

    console.print(table)


@click.group()
def cli():
    """Index Notifier - package index change notifications."""
    pass


@cli.command()
def run():
    """Run the notifier until interrupted."""
    from services.index_notifier.main import main

    asyncio.run(main())


@cli.command()
@click.argument("prev")
@click.argument("next")
@click.option("--repo-path", default=lambda: settings.index.path, help="Index checkout")
@click.option("--json", "as_json", is_flag=True, help="Print the event as JSON")
def extract(prev: str, next: str, repo_path: str, as_json: bool):
    """Show the event derived from the PREV -> NEXT commit pair."""
    repo = open_repo(repo_path)
    extractor = DiffExtractor(bot_author=settings.index.bot_author)
    try:
        event = extractor.extract(repo.commit(prev), repo.commit(next))
    except ExtractError as e:
        console.print(f"[red]❌ {type(e).__name__}: {e}[/red]")
        sys.exit(1)
    except (BadName, ValueError) as e:
        console.print(f"[red]❌ Unknown commit: {e}[/red]")
        sys.exit(1)

    if as_json:
        click.echo(EventSerializer.serialize(event) if event else "null")
    else:
        display_event(event)


@cli.command()
@click.option("--repo-path", default=lambda: settings.index.path, help="Index checkout")
@click.option("--fetch/--no-fetch", default=False, help="Fetch the remote first")
@click.option("--limit", default=50, show_default=True, help="Maximum commits to inspect")
def pending(repo_path: str, fetch: bool, limit: int):
    """Dry run: events the next cycle would dispatch."""
    repo = open_repo(repo_path)
    index = settings.index
    remote = repo.remote(index.remote)
    if fetch:
        with console.status("Fetching..."):
            remote.fetch(f"+refs/heads/{index.branch}:refs/remotes/{index.remote}/{index.branch}")

    commits = pending_commits(repo, index.branch, remote.refs[index.branch].commit)[: limit + 1]
    extractor = DiffExtractor(bot_author=index.bot_author)

    rows = []
    for prev, next in commit_pairs(commits):
        try:
            event = extractor.extract(prev, next)
            result = str(event) if event else "[dim]skipped[/dim]"
        except ExtractError as e:
            result = f"[red]{type(e).__name__}[/red]"
        rows.append((next, result))

    if not rows:
        console.print("[green]✅ Index is up to date[/green]")
        return
    display_pending(rows)


@cli.command("config")
def show_config():
    """Validate and print the effective configuration."""
    validation = validate_configuration()
    console.print_json(json.dumps(export_config()))
    for warning in validation["warnings"]:
        console.print(f"[yellow]⚠ {warning}[/yellow]")
    for error in validation["errors"]:
        console.print(f"[red]❌ {error}[/red]")
    if not validation["valid"]:
        sys.exit(1)


async def _with_repository(action):
    manager = DatabaseManager()
    try:
        await manager.create_tables()
        return await action(SubscriberRepository(manager))
    finally:
        await manager.close()


@cli.command()
@click.argument("chat_id", type=int)
@click.argument("package")
def subscribe(chat_id: int, package: str):
    """Subscribe CHAT_ID to PACKAGE."""
    added = asyncio.run(_with_repository(lambda repo: repo.subscribe(chat_id, package)))
    if added:
        console.print(f"[green]✅ {chat_id} subscribed to {package}[/green]")
    else:
        console.print(f"[yellow]{chat_id} is already subscribed to {package}[/yellow]")


@cli.command()
@click.argument("chat_id", type=int)
@click.argument("package")
def unsubscribe(chat_id: int, package: str):
    """Unsubscribe CHAT_ID from PACKAGE."""
    removed = asyncio.run(_with_repository(lambda repo: repo.unsubscribe(chat_id, package)))
    if removed:
        console.print(f"[green]✅ {chat_id} unsubscribed from {package}[/green]")
    else:
        console.print(f"[yellow]{chat_id} was not subscribed to {package}[/yellow]")


@cli.command()
@click.argument("chat_id", type=int)
def subscriptions(chat_id: int):
    """List the packages CHAT_ID is subscribed to."""
    packages = asyncio.run(_with_repository(lambda repo: repo.list_packages(chat_id)))
    if not packages:
        console.print("No subscriptions")
        return
    for package in packages:
        console.print(f"• {package}")


if __name__ == "__main__":
    cli()
