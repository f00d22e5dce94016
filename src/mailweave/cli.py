"""Command-line interface for mailweave.

Provides commands for configuration validation, database setup, message
import, rethreading and manual thread edits.

Usage:
    python -m mailweave validate-config
    python -m mailweave init-db
    python -m mailweave import-messages export.json
    python -m mailweave rethread --days 30
    python -m mailweave group-create KEY KEY --target KEY
"""

from __future__ import annotations

import asyncio
import sys
from collections.abc import Awaitable, Callable
from datetime import UTC, datetime, timedelta
from pathlib import Path
from typing import TYPE_CHECKING, TypeVar

import click
from rich.console import Console
from rich.table import Table

from mailweave.config import validate_config_file
from mailweave.core.errors import MailweaveError
from mailweave.core.logging import configure_logging

if TYPE_CHECKING:
    from mailweave.config_schema import AppConfig
    from mailweave.db.store import DatabaseStore
    from mailweave.engine.models import ThreadingResult

console = Console()

T = TypeVar("T")


async def _open_store() -> tuple[AppConfig, DatabaseStore]:
    """Load config and open the database named in it.

    Prints an actionable error message and calls sys.exit(1) on failure.
    """
    from mailweave.config import get_config
    from mailweave.core.errors import ConfigLoadError, ConfigValidationError
    from mailweave.db.store import DatabaseStore

    try:
        config = get_config()
    except (ConfigLoadError, ConfigValidationError) as e:
        console.print(
            f"[red]Config error:[/red] {e}\n\n"
            "Run [cyan]mailweave validate-config[/cyan] for details."
        )
        sys.exit(1)

    store = DatabaseStore(config.database.path)
    await store.initialize()
    return config, store


def _run(coro_factory: Callable[[], Awaitable[T]]) -> T:
    """Run an async command body, mapping failures to exit codes."""
    try:
        return asyncio.run(coro_factory())
    except KeyboardInterrupt:
        console.print("\n[yellow]Cancelled.[/yellow]")
        sys.exit(130)
    except MailweaveError as e:
        console.print(f"\n[red]Error:[/red] {e}")
        sys.exit(1)


def _render_threads(result: ThreadingResult, limit: int) -> Table:
    table = Table(
        title=f"Threads ({len(result.threads)})",
        caption=f"{result.message_count} message(s), {result.unread_count} unread",
    )
    table.add_column("Thread", style="cyan", overflow="fold")
    table.add_column("Subject")
    table.add_column("Messages", justify="right")
    table.add_column("Unread", justify="right")
    table.add_column("Last updated")
    table.add_column("Group", style="magenta")

    for thread, root in list(zip(result.threads, result.roots))[:limit]:
        table.add_row(
            thread.id,
            thread.subject or "[dim](no subject)[/dim]",
            str(thread.message_count),
            str(thread.unread_count) if thread.unread_count else "",
            thread.last_updated.strftime("%Y-%m-%d %H:%M"),
            result.manual_group_by_message_key.get(root.key, ""),
        )
    return table


@click.group()
@click.option("--debug/--no-debug", default=False, help="Enable debug logging")
def cli(debug: bool) -> None:
    """mailweave - conversation threading for email archives."""
    log_level = "DEBUG" if debug else "INFO"
    # Human-readable output for the terminal
    configure_logging(log_level=log_level, json_output=False)


@cli.command("validate-config")
@click.option(
    "--config",
    "-c",
    "config_path",
    type=click.Path(exists=False, path_type=Path),
    default=None,
    help="Path to config file (default: config/config.yaml)",
)
def validate_config(config_path: Path | None) -> None:
    """Validate the configuration file.

    Checks that config.yaml exists and passes Pydantic schema validation.
    Reports specific errors for invalid fields.
    """
    if config_path:
        console.print(f"Validating config: [cyan]{config_path}[/cyan]")
    else:
        console.print("Validating config: [cyan]config/config.yaml[/cyan]")

    is_valid, message = validate_config_file(config_path)

    if is_valid:
        console.print(f"\n[green]✓[/green] {message}")
        sys.exit(0)
    else:
        console.print(f"\n[red]✗[/red] {message}")
        sys.exit(1)


@cli.command("init-db")
def init_db() -> None:
    """Create the database and its tables."""

    async def body() -> str:
        config, _ = await _open_store()
        return config.database.path

    path = _run(body)
    console.print(f"[green]✓[/green] Database ready at [cyan]{path}[/cyan]")


@cli.command("import-messages")
@click.argument("export_file", type=click.Path(exists=True, dir_okay=False, path_type=Path))
def import_messages(export_file: Path) -> None:
    """Import messages from a JSON export into the database."""
    from mailweave.ingest import load_messages

    async def body() -> int:
        records = load_messages(export_file)
        _, store = await _open_store()
        return await store.upsert_messages(records)

    count = _run(body)
    console.print(f"[green]✓[/green] Imported {count} messages from [cyan]{export_file}[/cyan]")


@cli.command("rethread")
@click.option("--days", type=int, default=None, help="Only thread messages from the last N days")
@click.option("--limit", type=int, default=50, help="Maximum number of threads to display")
@click.option(
    "--watch",
    type=int,
    default=None,
    metavar="SECONDS",
    help="Keep rethreading every SECONDS, reloading config when it changes",
)
def rethread(days: int | None, limit: int, watch: int | None) -> None:
    """Recompute threads and show the result."""
    from mailweave.config import get_config, reload_config_if_changed
    from mailweave.engine.pipeline import RethreadPipeline

    since = datetime.now(UTC) - timedelta(days=days) if days is not None else None
    debug = click.get_current_context().find_root().params.get("debug", False)

    async def body() -> None:
        config, store = await _open_store()
        if watch is not None and not debug:
            # Long-running mode logs like a service
            configure_logging(config.logging.level, json_output=config.logging.json_output)
        pipeline = RethreadPipeline(store, config)
        while True:
            outcome = await pipeline.rethread(since=since)
            console.print(_render_threads(outcome.result, limit))
            if outcome.invalid_override_keys:
                console.print(
                    f"[yellow]{len(outcome.invalid_override_keys)} override(s) could not be applied[/yellow]"
                )
            if outcome.corrected_groups:
                console.print(
                    f"[yellow]{len(outcome.corrected_groups)} conflicting group(s) corrected[/yellow]"
                )
            if watch is None:
                return
            await asyncio.sleep(watch)
            if reload_config_if_changed():
                pipeline.update_config(get_config())

    _run(body)


@cli.command("override-set")
@click.argument("message_key")
@click.argument("thread_id")
def override_set(message_key: str, thread_id: str) -> None:
    """Force MESSAGE_KEY into the thread THREAD_ID."""

    async def body() -> None:
        _, store = await _open_store()
        await store.upsert_manual_thread_overrides({message_key: thread_id})

    _run(body)
    console.print(f"[green]✓[/green] {message_key} -> {thread_id}")


@cli.command("override-clear")
@click.argument("message_keys", nargs=-1, required=True)
def override_clear(message_keys: tuple[str, ...]) -> None:
    """Remove overrides for the given message keys."""

    async def body() -> int:
        _, store = await _open_store()
        return await store.delete_manual_thread_overrides(message_keys)

    removed = _run(body)
    console.print(f"[green]✓[/green] Removed {removed} override(s)")


@cli.command("group-create")
@click.argument("message_keys", nargs=-1, required=True)
@click.option("--target", "target_key", required=True, help="Message key the selection is grouped onto")
def group_create(message_keys: tuple[str, ...], target_key: str) -> None:
    """Group the selected messages' threads together.

    Uses the current thread membership, so run ``rethread`` first.
    """
    from mailweave.engine.pipeline import RethreadPipeline
    from mailweave.engine.selection import group_selection

    async def body() -> tuple[int, int]:
        config, store = await _open_store()
        outcome = await RethreadPipeline(store, config).rethread()
        groups = {group.id: group for group in await store.fetch_manual_thread_groups()}
        edit = group_selection(message_keys, target_key, outcome.result, groups)
        if edit.is_empty:
            return (0, 0)
        await store.upsert_manual_thread_groups(edit.upserts)
        for group_id in edit.deletes:
            await store.delete_manual_thread_group(group_id)
        await RethreadPipeline(store, config).rethread()
        return (len(edit.upserts), len(edit.deletes))

    saved, deleted = _run(body)
    if not saved and not deleted:
        console.print("[yellow]Nothing to group:[/yellow] select at least two messages from different threads.")
        sys.exit(1)
    console.print(f"[green]✓[/green] Saved {saved} group(s), merged away {deleted}")


@cli.command("group-delete")
@click.argument("message_keys", nargs=-1, required=True)
def group_delete(message_keys: tuple[str, ...]) -> None:
    """Take the selected messages (or their threads) out of their groups."""
    from mailweave.engine.pipeline import RethreadPipeline
    from mailweave.engine.selection import ungroup_selection

    async def body() -> tuple[int, int]:
        config, store = await _open_store()
        outcome = await RethreadPipeline(store, config).rethread()
        groups = {group.id: group for group in await store.fetch_manual_thread_groups()}
        edit = ungroup_selection(message_keys, outcome.result, groups)
        await store.upsert_manual_thread_groups(edit.upserts)
        for group_id in edit.deletes:
            await store.delete_manual_thread_group(group_id)
        if not edit.is_empty:
            await RethreadPipeline(store, config).rethread()
        return (len(edit.upserts), len(edit.deletes))

    updated, deleted = _run(body)
    console.print(f"[green]✓[/green] Updated {updated} group(s), deleted {deleted}")


@cli.command("migrate-overrides")
def migrate_overrides() -> None:
    """Convert stored single-message overrides into manual groups."""

    async def body() -> int:
        _, store = await _open_store()
        return len(await store.migrate_legacy_overrides())

    count = _run(body)
    console.print(f"[green]✓[/green] Migrated overrides into {count} group(s)")


def main() -> None:
    """Entry point for the CLI."""
    cli()


if __name__ == "__main__":
    main()
