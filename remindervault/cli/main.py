"""Main CLI entry point and application setup."""

import asyncio
import getpass
import logging
import sys
from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from datetime import datetime
from pathlib import Path
from typing import Any, TypeVar

import click
import msgspec
from click.exceptions import Exit
from rich.console import Console

from remindervault import __version__
from remindervault.cli.formatters import (
    format_backend_info,
    format_capability_report,
    format_health,
    format_reminder_table,
    format_statistics,
)
from remindervault.config import StorageSettings, load_settings
from remindervault.core.models import Category, Reminder, Status
from remindervault.exceptions import StorageError
from remindervault.storage.exchange import encode_envelope
from remindervault.storage.helpers import with_timeout
from remindervault.storage.monitoring import MonitoredBackend
from remindervault.storage.query import SORT_KEYS
from remindervault.storage.selector import BackendSelector

T = TypeVar("T")

DUE_FORMATS = ["%Y-%m-%d %H:%M", "%Y-%m-%dT%H:%M", "%Y-%m-%d"]


@dataclass
class Context:
    """CLI context that holds shared resources."""

    selector: BackendSelector
    settings: StorageSettings
    owner: str
    console: Console
    debug: bool = False


def setup_logging(
    verbose: bool = False, quiet: bool = False, debug: bool = False
) -> None:
    """Configure logging based on CLI flags."""
    if quiet:
        level = logging.WARNING
    elif verbose or debug:
        level = logging.DEBUG
    else:
        level = logging.INFO

    logging.basicConfig(
        level=level,
        format="%(levelname)s: %(message)s"
        if not debug
        else "%(asctime)s - %(name)s - %(levelname)s - %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def create_console(no_color: bool = False, width: int | None = None) -> Console:
    """Create Rich console with appropriate settings."""
    return Console(
        no_color=no_color,
        width=width or 120,
        highlight=not no_color,
        color_system=None if no_color else "auto",
    )


def default_owner() -> str:
    try:
        return getpass.getuser()
    except (KeyError, OSError):
        return "default"


def run_with_backend(
    ctx: click.Context, operation: Callable[[MonitoredBackend], Awaitable[T]]
) -> T:
    """Select the owner's backend, run ``operation`` on it, then close storage."""
    obj: Context = ctx.obj

    async def runner() -> T:
        try:
            backend = await obj.selector.get(obj.owner)
            return await with_timeout(
                operation(backend), obj.settings.operation_timeout, "cli"
            )
        finally:
            await obj.selector.close()

    return asyncio.run(runner())


def run_with_selector(
    ctx: click.Context, operation: Callable[[BackendSelector], Awaitable[T]]
) -> T:
    obj: Context = ctx.obj

    async def runner() -> T:
        try:
            return await operation(obj.selector)
        finally:
            await obj.selector.close()

    return asyncio.run(runner())


class RemindervaultGroup(click.Group):
    """Custom group that turns storage errors into exit code 1."""

    def invoke(self, ctx):
        try:
            return super().invoke(ctx)
        except KeyboardInterrupt:
            console = getattr(ctx.obj, "console", None) if ctx.obj else None
            if console:
                console.print("[yellow]Interrupted[/yellow]")
            ctx.exit(130)
        except (click.ClickException, click.Abort, Exit, SystemExit):
            raise
        except (StorageError, ValueError) as e:
            debug = getattr(ctx.obj, "debug", False) if ctx.obj else False
            if debug:
                raise
            console = getattr(ctx.obj, "console", None) if ctx.obj else None
            if console:
                console.print(f"[red]Error:[/red] {e}")
            else:
                click.echo(f"Error: {e}", err=True)
            ctx.exit(1)


@click.group(cls=RemindervaultGroup)
@click.option("--verbose", "-v", is_flag=True, help="Enable verbose output")
@click.option("--quiet", "-q", is_flag=True, help="Suppress non-error output")
@click.option("--no-color", is_flag=True, help="Disable colored output")
@click.option("--debug", is_flag=True, help="Enable debug mode with full tracebacks")
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    help="Path to configuration file",
)
@click.option(
    "--data-dir",
    "-d",
    type=click.Path(path_type=Path),
    help="Override data directory location",
)
@click.option(
    "--owner",
    "-o",
    envvar="REMINDERVAULT_OWNER",
    default=default_owner,
    help="Owner whose reminders to work with",
)
@click.version_option(
    version=__version__,
    prog_name="remindervault",
    message="remindervault version %(version)s",
)
@click.pass_context
def cli(
    ctx: click.Context,
    verbose: bool,
    quiet: bool,
    no_color: bool,
    debug: bool,
    config: Path | None,
    data_dir: Path | None,
    owner: str,
) -> None:
    """Reminder storage tool.

    Inspect which storage tier this machine supports and manage the
    reminders kept in it.
    """
    setup_logging(verbose=verbose, quiet=quiet, debug=debug)
    console = create_console(no_color=no_color)

    overrides: dict[str, Any] = {}
    if data_dir is not None:
        overrides["data_dir"] = str(data_dir)

    try:
        settings = load_settings(config, overrides)
    except ValueError as e:
        if debug:
            raise
        console.print(f"[red]Error loading configuration:[/red] {e}")
        ctx.exit(1)

    ctx.obj = Context(
        selector=BackendSelector(settings),
        settings=settings,
        owner=owner,
        console=console,
        debug=debug,
    )


@cli.command()
@click.option("--json", "as_json", is_flag=True, help="Print the report as JSON")
@click.pass_context
def capabilities(ctx: click.Context, as_json: bool) -> None:
    """Probe which storage tiers work on this machine."""
    report = run_with_selector(ctx, lambda selector: selector.capability_report())

    if as_json:
        click.echo(msgspec.json.format(msgspec.json.encode(report)).decode())
        return
    for table in format_capability_report(report):
        ctx.obj.console.print(table)


@cli.command()
@click.pass_context
def info(ctx: click.Context) -> None:
    """Show which tier was selected and what it holds."""
    details = run_with_backend(ctx, lambda backend: backend.info())
    ctx.obj.console.print(format_backend_info(details))


@cli.command()
@click.pass_context
def health(ctx: click.Context) -> None:
    """Run a save/read/delete round trip against the selected tier."""
    report = run_with_backend(ctx, lambda backend: backend.health_check())
    ctx.obj.console.print(format_health(report))
    if not report.healthy:
        ctx.exit(1)


@cli.command()
@click.argument("title")
@click.option(
    "--due", required=True, type=click.DateTime(formats=DUE_FORMATS), help="Due time (UTC)"
)
@click.option("--description", default="", help="Longer description")
@click.option(
    "--category",
    type=click.Choice([c.value for c in Category]),
    default=Category.PERSONAL.value,
    help="Reminder category",
)
@click.option("--priority", type=click.IntRange(1, 4), default=2, help="Priority 1-4")
@click.option(
    "--alert",
    "alerts",
    type=int,
    multiple=True,
    help="Alert offset in minutes before due (repeatable)",
)
@click.option("--no-notify", is_flag=True, help="Do not schedule notifications")
@click.pass_context
def add(
    ctx: click.Context,
    title: str,
    due: datetime,
    description: str,
    category: str,
    priority: int,
    alerts: tuple[int, ...],
    no_notify: bool,
) -> None:
    """Add a reminder."""
    reminder = Reminder(
        owner=ctx.obj.owner,
        title=title,
        due=due,
        description=description,
        category=Category(category),
        priority=priority,
        notify=not no_notify,
        alert_offsets=alerts or (5, 15),
    )
    saved = run_with_backend(ctx, lambda backend: backend.save(reminder))
    ctx.obj.console.print(f"[green]✓[/green] Added reminder {saved.id}")


@cli.command(name="list")
@click.option("--status", type=click.Choice([s.value for s in Status]))
@click.option("--category", type=click.Choice([c.value for c in Category]))
@click.option("--priority", type=click.IntRange(1, 4))
@click.option("--search", help="Text to look for in title and description")
@click.option("--sort", "sort_by", type=click.Choice(list(SORT_KEYS)), default="due")
@click.option("--desc", is_flag=True, help="Sort descending")
@click.option("--limit", type=click.IntRange(min=0), help="Maximum number of results")
@click.pass_context
def list_reminders(
    ctx: click.Context,
    status: str | None,
    category: str | None,
    priority: int | None,
    search: str | None,
    sort_by: str,
    desc: bool,
    limit: int | None,
) -> None:
    """List reminders."""
    filters = {
        "status": status,
        "category": category,
        "priority": priority,
        "search": search,
        "sort_by": sort_by,
        "sort_direction": "desc" if desc else "asc",
        "limit": limit,
    }
    reminders = run_with_backend(ctx, lambda backend: backend.list(ctx.obj.owner, filters))

    if not reminders:
        ctx.obj.console.print("[yellow]No reminders found[/yellow]")
        return
    ctx.obj.console.print(format_reminder_table(reminders))


@cli.command()
@click.argument("reminder_id")
@click.pass_context
def complete(ctx: click.Context, reminder_id: str) -> None:
    """Mark a reminder completed."""
    run_with_backend(
        ctx, lambda backend: backend.update(reminder_id, {"status": Status.COMPLETED})
    )
    ctx.obj.console.print(f"[green]✓[/green] Completed {reminder_id}")


@cli.command()
@click.argument("reminder_id", required=False)
@click.option(
    "--status",
    type=click.Choice([s.value for s in Status]),
    help="Delete every reminder in this status instead",
)
@click.pass_context
def delete(ctx: click.Context, reminder_id: str | None, status: str | None) -> None:
    """Delete a reminder, or all reminders in a status."""
    console = ctx.obj.console
    if (reminder_id is None) == (status is None):
        raise click.UsageError("Give either a reminder ID or --status")

    if status is not None:
        count = run_with_backend(
            ctx, lambda backend: backend.delete_by_status(ctx.obj.owner, status)
        )
        console.print(f"[green]✓[/green] Deleted {count} {status} reminders")
        return

    if run_with_backend(ctx, lambda backend: backend.delete(reminder_id)):
        console.print(f"[green]✓[/green] Deleted {reminder_id}")
    else:
        console.print(f"[yellow]Reminder not found: {reminder_id}[/yellow]")
        ctx.exit(1)


@cli.command()
@click.pass_context
def stats(ctx: click.Context) -> None:
    """Show reminder statistics."""
    result = run_with_backend(ctx, lambda backend: backend.statistics(ctx.obj.owner))
    ctx.obj.console.print(format_statistics(result))


@cli.command()
@click.option(
    "--output",
    "-o",
    type=click.Path(dir_okay=False, path_type=Path),
    help="Write to this file instead of stdout",
)
@click.pass_context
def export(ctx: click.Context, output: Path | None) -> None:
    """Export reminders, preferences and metadata as JSON."""
    envelope = run_with_backend(ctx, lambda backend: backend.export_all(ctx.obj.owner))
    payload = msgspec.json.format(encode_envelope(envelope))

    if output is None:
        sys.stdout.write(payload.decode() + "\n")
        return
    output.write_bytes(payload)
    ctx.obj.console.print(
        f"[green]✓[/green] Exported {len(envelope.data.records)} reminders to {output}"
    )


@cli.command(name="import")
@click.argument("source", type=click.Path(exists=True, dir_okay=False, path_type=Path))
@click.pass_context
def import_(ctx: click.Context, source: Path) -> None:
    """Import reminders from an export file."""
    payload = source.read_bytes()
    count = run_with_backend(
        ctx, lambda backend: backend.import_all(payload, ctx.obj.owner)
    )
    ctx.obj.console.print(f"[green]✓[/green] Imported {count} reminders")


@cli.command()
@click.option("--yes", "-y", is_flag=True, help="Do not ask for confirmation")
@click.pass_context
def clear(ctx: click.Context, yes: bool) -> None:
    """Remove all reminders and preferences of the owner."""
    if not yes:
        click.confirm(f"Delete all reminders of {ctx.obj.owner}?", abort=True)
    count = run_with_backend(ctx, lambda backend: backend.clear(ctx.obj.owner))
    ctx.obj.console.print(f"[green]✓[/green] Removed {count} reminders")
