"""
CLI entry point for mistakebook.
"""

# Standard library imports
import logging
import shutil
from datetime import date, datetime, timedelta, timezone
from pathlib import Path
from typing import NoReturn, Optional
from uuid import UUID

# Third-party imports
import typer
from rich.console import Console
from rich.logging import RichHandler
from rich.markup import escape
from rich.table import Table

# Local application imports
from mistakebook import config as mistakebook_config
from mistakebook.cli.review_ui import start_review_flow
from mistakebook.db.database import MistakeDatabase
from mistakebook.db.db_utils import backup_database, find_latest_backup
from mistakebook.exceptions import DatabaseError, ItemNotFoundError
from mistakebook.importer import (
    ImportFileError,
    import_items,
    load_items_yaml,
    parse_batch_text,
)
from mistakebook.models import ItemKind, ItemStatus, MistakeCategory, ReviewItem, UserSettings
from mistakebook.priority import priority_score
from mistakebook.rebalancer import apply_rebalance, build_rebalance_plan
from mistakebook.review_manager import QueueMode, ReviewSessionManager
from mistakebook.review_processor import ReviewProcessor
from mistakebook.scheduler import LadderScheduler

console = Console()

app = typer.Typer(
    name="mistakebook",
    help="Mistakebook: spaced review of corrected sentences.",
    add_completion=False,
    rich_markup_mode="markdown",
)

YAML_SUFFIXES = (".yaml", ".yml")


# ---------------------------------------------------------------------------
# Logging and shared helpers
# ---------------------------------------------------------------------------


@app.callback()
def main_callback(
    verbose: bool = typer.Option(
        False, "--verbose", "-v", help="Show debug logging."
    ),
):
    """Mistakebook: spaced review of corrected sentences."""
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(message)s",
        datefmt="[%X]",
        handlers=[RichHandler(console=Console(stderr=True), rich_tracebacks=True)],
        force=True,
    )


def _resolve_db_path(db: Optional[Path]) -> Path:
    """Resolve db path from the --db flag, falling back to settings."""
    if db is not None:
        return db
    return mistakebook_config.settings.db_path


# Common typer options reused across commands
_db_option = typer.Option(  # noqa: B008
    None,
    "--db",
    help="Path to the DuckDB database file. "
    "Falls back to MISTAKEBOOK_DB_PATH or ~/.mistakebook/mistakebook.db.",
    envvar="MISTAKEBOOK_DB_PATH",
)


def _make_processor(db: MistakeDatabase) -> ReviewProcessor:
    return ReviewProcessor(
        db,
        LadderScheduler(),
        horizon_days=mistakebook_config.settings.forecast_horizon_days,
    )


def _announce_backup(db_path: Path) -> None:
    backup_path = backup_database(db_path)
    if backup_path != db_path:
        console.print(f"Database backed up to: [dim]{backup_path}[/dim]")


def _resolve_item_id(db: MistakeDatabase, value: str) -> UUID:
    """
    Accept a full id or a unique prefix of one, as shown by `list`.
    """
    try:
        return UUID(value)
    except ValueError:
        pass
    prefix = value.lower()
    matches = [item.id for item in db.get_items() if str(item.id).startswith(prefix)]
    if len(matches) == 1:
        return matches[0]
    if not matches:
        raise ItemNotFoundError(f"No item id starts with '{value}'.")
    console.print(f"[bold red]Error: '{value}' matches {len(matches)} items; use more characters.[/bold red]")
    raise typer.Exit(code=1)


def _short_id(item_id: UUID) -> str:
    return str(item_id)[:8]


def _format_day(ts: Optional[datetime]) -> str:
    if ts is None:
        return "-"
    if ts.year == 9999:
        return "never"
    return ts.strftime("%Y-%m-%d")


def _truncate(text: str, width: int = 48) -> str:
    return text if len(text) <= width else text[: width - 1] + "…"


def _items_table(title: str, items, today: Optional[date] = None) -> Table:
    table = Table(title=title)
    table.add_column("ID", style="cyan", no_wrap=True)
    table.add_column("Kind")
    table.add_column("Category")
    table.add_column("Stage", justify="right")
    table.add_column("Next review", style="yellow")
    if today is not None:
        table.add_column("Priority", justify="right", style="magenta")
    table.add_column("Original")
    for item in items:
        row = [
            _short_id(item.id),
            item.kind.value,
            item.category.value,
            str(item.stage),
            _format_day(item.next_review_at),
        ]
        if today is not None:
            row.append(str(priority_score(item, today)))
        row.append(escape(_truncate(item.original_text)))
        table.add_row(*row)
    return table


def _fail(message: str, error: Exception) -> NoReturn:
    console.print(f"[bold red]{message}:[/bold red] {escape(str(error))}")
    raise typer.Exit(code=1) from error


# ---------------------------------------------------------------------------
# Add / import
# ---------------------------------------------------------------------------


@app.command()
def add(
    original: str = typer.Argument(..., help="The incorrect sentence or original phrasing."),
    corrected: str = typer.Argument(..., help="The corrected sentence or improved phrasing."),
    explanation: Optional[str] = typer.Option(None, "--explanation", "-e", help="Why the correction is better."),
    kind: ItemKind = typer.Option(ItemKind.MISTAKE, "--kind", "-k", help="mistake or expression."),
    category: MistakeCategory = typer.Option(MistakeCategory.UNCATEGORIZED, "--category", "-c"),
    db: Optional[Path] = _db_option,
):
    """Record one item and schedule its first review."""
    db_path = _resolve_db_path(db)
    try:
        with MistakeDatabase(db_path) as db_inst:
            item = _make_processor(db_inst).create_item(
                original, corrected, explanation=explanation, kind=kind, category=category
            )
    except DatabaseError as e:
        _fail("Database Error", e)
    except ValueError as e:
        _fail("Invalid item", e)

    console.print(
        f"[green]Added[/green] [cyan]{_short_id(item.id)}[/cyan]. "
        f"First review on {_format_day(item.next_review_at)}."
    )


@app.command("import")
def import_command(
    source: Path = typer.Argument(
        ..., exists=True, dir_okay=False, readable=True,
        help="Text file with 'original | corrected | explanation' lines, or a YAML file.",
    ),
    kind: ItemKind = typer.Option(ItemKind.MISTAKE, "--kind", "-k", help="Kind for text files."),
    category: MistakeCategory = typer.Option(
        MistakeCategory.UNCATEGORIZED, "--category", "-c", help="Category for text files."
    ),
    allow_duplicates: bool = typer.Option(
        False, "--allow-duplicates", help="Import items whose original text already exists."
    ),
    db: Optional[Path] = _db_option,
):
    """Import many items at once."""
    db_path = _resolve_db_path(db)
    try:
        if source.suffix.lower() in YAML_SUFFIXES:
            drafts, errors = load_items_yaml(source), []
        else:
            drafts, errors = parse_batch_text(source.read_text(encoding="utf-8"), kind, category)
    except ImportFileError as e:
        _fail("Import Error", e)

    for error in errors:
        console.print(f"[yellow]Skipped {escape(str(error))}[/yellow]")
    if not drafts:
        console.print("[bold red]No valid items found.[/bold red]")
        raise typer.Exit(code=1)

    try:
        _announce_backup(db_path)
        with MistakeDatabase(db_path) as db_inst:
            summary = import_items(
                _make_processor(db_inst), drafts, skip_duplicates=not allow_duplicates
            )
    except DatabaseError as e:
        _fail("Database Error", e)

    for error in summary.errors:
        console.print(f"[yellow]Failed {escape(str(error))}[/yellow]")
    console.print("[bold green]Import complete![/bold green]")
    console.print(f"- [green]{len(summary.created)}[/green] items created.")
    console.print(f"- [yellow]{len(summary.duplicates)}[/yellow] duplicates skipped.")
    if errors or summary.errors:
        console.print(f"- [red]{len(errors) + len(summary.errors)}[/red] lines rejected.")


# ---------------------------------------------------------------------------
# Browsing
# ---------------------------------------------------------------------------


@app.command("list")
def list_items(
    status: Optional[ItemStatus] = typer.Option(None, "--status", "-s"),
    kind: Optional[ItemKind] = typer.Option(None, "--kind", "-k"),
    category: Optional[MistakeCategory] = typer.Option(None, "--category", "-c"),
    limit: Optional[int] = typer.Option(None, "--limit", "-l", min=1),
    due: bool = typer.Option(False, "--due", help="Only items due now, health checks included."),
    db: Optional[Path] = _db_option,
):
    """List stored items, oldest first."""
    db_path = _resolve_db_path(db)
    try:
        with MistakeDatabase(db_path) as db_inst:
            items = db_inst.get_items(
                status=status, kind=kind, category=category, limit=None if due else limit
            )
    except DatabaseError as e:
        _fail("Database Error", e)

    if due:
        now = datetime.now(timezone.utc)
        items = [item for item in items if item.is_due(now)][:limit]

    if not items:
        console.print("[yellow]No items found.[/yellow]")
        return
    console.print(_items_table(f"{len(items)} items", items))


@app.command()
def queue(
    mode: QueueMode = typer.Option(QueueMode.TODAY, "--mode", "-m", help="today, backlog or continue."),
    limit: Optional[int] = typer.Option(None, "--limit", "-l", min=1),
    db: Optional[Path] = _db_option,
):
    """Show the review queue in priority order without reviewing."""
    db_path = _resolve_db_path(db)
    try:
        with MistakeDatabase(db_path) as db_inst:
            manager = ReviewSessionManager(db_inst, LadderScheduler())
            items = manager.initialize_session(mode=mode, limit=limit)
    except DatabaseError as e:
        _fail("Database Error", e)

    if not items:
        console.print("[yellow]Nothing is due for review.[/yellow]")
        return
    today = datetime.now(timezone.utc).date()
    console.print(_items_table(f"Queue ({mode.value}): {len(items)} items", items, today=today))


@app.command()
def review(
    mode: QueueMode = typer.Option(QueueMode.TODAY, "--mode", "-m", help="today, backlog or continue."),
    limit: Optional[int] = typer.Option(None, "--limit", "-l", min=1),
    db: Optional[Path] = _db_option,
):
    """Start an interactive review session."""
    db_path = _resolve_db_path(db)
    try:
        _announce_backup(db_path)
        with MistakeDatabase(db_path) as db_inst:
            manager = ReviewSessionManager(db_inst, LadderScheduler())
            start_review_flow(manager, mode=mode, limit=limit)
    except DatabaseError as e:
        _fail("A database error occurred", e)


@app.command()
def forecast(
    days: int = typer.Option(14, "--days", "-d", min=1, help="Number of days to show."),
    db: Optional[Path] = _db_option,
):
    """Show how many reviews are scheduled for each upcoming day."""
    db_path = _resolve_db_path(db)
    try:
        with MistakeDatabase(db_path) as db_inst:
            load = db_inst.get_load_forecast(days)
            target = db_inst.get_settings(mistakebook_config.settings.default_daily_target).daily_target
    except DatabaseError as e:
        _fail("Database Error", e)

    table = Table(title=f"Review forecast (daily target {target})")
    table.add_column("Day", style="cyan")
    table.add_column("Due", justify="right", style="magenta")
    table.add_column("")
    for day, count in load.items():
        style = "red" if count > target else "green"
        table.add_row(day.strftime("%a %Y-%m-%d"), str(count), f"[{style}]{'█' * min(count, 40)}[/{style}]")
    console.print(table)


@app.command()
def calendar(
    start: Optional[datetime] = typer.Option(None, "--start", formats=["%Y-%m-%d"], help="First day (default today)."),
    end: Optional[datetime] = typer.Option(None, "--end", formats=["%Y-%m-%d"], help="Last day (default start + 27 days)."),
    db: Optional[Path] = _db_option,
):
    """Show scheduled reviews per day between two dates."""
    first = start.date() if start else datetime.now(timezone.utc).date()
    last = end.date() if end else first + timedelta(days=27)
    if last < first:
        console.print("[bold red]Error: --end is before --start.[/bold red]")
        raise typer.Exit(code=1)

    db_path = _resolve_db_path(db)
    try:
        with MistakeDatabase(db_path) as db_inst:
            counts = db_inst.get_calendar_counts(first, last)
    except DatabaseError as e:
        _fail("Database Error", e)

    table = Table(title=f"Calendar {first} to {last}")
    for name in ("Mon", "Tue", "Wed", "Thu", "Fri", "Sat", "Sun"):
        table.add_column(name, justify="center")
    week = [""] * first.weekday()
    for day, count in counts.items():
        week.append(f"{day:%m-%d}\n[bold]{count}[/bold]" if count else f"[dim]{day:%m-%d}[/dim]")
        if len(week) == 7:
            table.add_row(*week)
            week = []
    if week:
        table.add_row(*(week + [""] * (7 - len(week))))
    console.print(table)


@app.command()
def stats(
    db: Optional[Path] = _db_option,
):
    """Display statistics about stored items and reviews."""
    db_path = _resolve_db_path(db)
    try:
        with MistakeDatabase(db_path) as db_inst:
            stats_data = db_inst.get_database_stats()
    except DatabaseError as e:
        _fail("A database error occurred", e)

    overall_table = Table(title="Overall Stats", show_header=False)
    overall_table.add_column("Metric", style="cyan")
    overall_table.add_column("Value", style="magenta")
    overall_table.add_row("Total Items", str(stats_data["total_items"]))
    overall_table.add_row("Active", str(stats_data["active_items"]))
    overall_table.add_row("Retired", str(stats_data["retired_items"]))
    overall_table.add_row("Due Today", str(stats_data["due_today"]))
    overall_table.add_row("Reviews Today", str(stats_data["reviews_today"]))
    overall_table.add_row("Total Reviews", str(stats_data["total_reviews"]))
    console.print(overall_table)

    if not stats_data["total_items"]:
        console.print("[yellow]No items found in the database.[/yellow]")
        return

    breakdown = Table(title="Active Items")
    breakdown.add_column("Group", style="cyan")
    breakdown.add_column("Value")
    breakdown.add_column("Count", justify="right", style="magenta")
    for kind_name, count in sorted(stats_data["by_kind"].items()):
        breakdown.add_row("kind", kind_name, str(count))
    for category_name, count in sorted(stats_data["by_category"].items()):
        breakdown.add_row("category", category_name, str(count))
    console.print(breakdown)


# ---------------------------------------------------------------------------
# Item lifecycle
# ---------------------------------------------------------------------------


def _change_item(item_ref: str, db: Optional[Path], action) -> ReviewItem:
    db_path = _resolve_db_path(db)
    try:
        with MistakeDatabase(db_path) as db_inst:
            return action(db_inst, _resolve_item_id(db_inst, item_ref))
    except DatabaseError as e:
        _fail("Error", e)


@app.command()
def retire(
    item_ref: str = typer.Argument(..., metavar="ITEM_ID", help="Item id or unique prefix."),
    db: Optional[Path] = _db_option,
):
    """Stop scheduling an item without deleting it."""
    item = _change_item(item_ref, db, lambda d, item_id: d.retire_item(item_id))
    console.print(f"[green]Retired[/green] [cyan]{_short_id(item.id)}[/cyan].")


@app.command()
def reactivate(
    item_ref: str = typer.Argument(..., metavar="ITEM_ID", help="Item id or unique prefix."),
    db: Optional[Path] = _db_option,
):
    """Put a retired item back into rotation, due now."""
    item = _change_item(item_ref, db, lambda d, item_id: d.reactivate_item(item_id))
    console.print(f"[green]Reactivated[/green] [cyan]{_short_id(item.id)}[/cyan].")


@app.command()
def delete(
    item_ref: str = typer.Argument(..., metavar="ITEM_ID", help="Item id or unique prefix."),
    yes: bool = typer.Option(False, "--yes", "-y", help="Bypass confirmation prompt."),
    db: Optional[Path] = _db_option,
):
    """Delete an item and its review history."""
    if not yes and not typer.confirm(f"Delete item {item_ref} and its review history?"):
        console.print("Delete cancelled.")
        raise typer.Exit()

    def _delete(db_inst: MistakeDatabase, item_id: UUID) -> UUID:
        db_inst.delete_item(item_id)
        return item_id

    item_id = _change_item(item_ref, db, _delete)
    console.print(f"[green]Deleted[/green] [cyan]{_short_id(item_id)}[/cyan].")


# ---------------------------------------------------------------------------
# Settings / rebalance
# ---------------------------------------------------------------------------


@app.command()
def settings(
    daily_target: Optional[int] = typer.Option(
        None, "--daily-target", "-t", help="Reviews you want to do per day (1-1000)."
    ),
    db: Optional[Path] = _db_option,
):
    """Show or change user settings."""
    db_path = _resolve_db_path(db)
    default_target = mistakebook_config.settings.default_daily_target
    try:
        with MistakeDatabase(db_path) as db_inst:
            if daily_target is None:
                current = db_inst.get_settings(default_target)
            else:
                current = db_inst.update_settings(UserSettings(daily_target=daily_target))
    except DatabaseError as e:
        _fail("Database Error", e)
    except ValueError as e:
        _fail("Invalid setting", e)

    console.print(f"Daily target: [bold magenta]{current.daily_target}[/bold magenta]")


@app.command()
def rebalance(
    days: int = typer.Option(14, "--days", "-d", min=1, help="Days ahead to analyse."),
    max_shift: int = typer.Option(7, "--max-shift", min=1, help="Furthest an item may move, in days."),
    target: Optional[int] = typer.Option(None, "--target", min=1, help="Daily target (default: stored setting)."),
    dry_run: bool = typer.Option(False, "--dry-run", help="Show the plan without changing anything."),
    db: Optional[Path] = _db_option,
):
    """Spread reviews away from overloaded days."""
    db_path = _resolve_db_path(db)
    try:
        if not dry_run:
            _announce_backup(db_path)
        with MistakeDatabase(db_path) as db_inst:
            plan = build_rebalance_plan(
                db_inst,
                daily_target=target or db_inst.get_settings(mistakebook_config.settings.default_daily_target).daily_target,
                days=days,
                max_shift=max_shift,
            )
            moved = 0 if dry_run else apply_rebalance(db_inst, plan)
    except DatabaseError as e:
        _fail("Database Error", e)

    table = Table(title=f"Load (daily target {plan.daily_target})")
    table.add_column("Day", style="cyan")
    table.add_column("Before", justify="right")
    table.add_column("After", justify="right", style="magenta")
    for day, before in plan.load_before.items():
        table.add_row(day.strftime("%a %Y-%m-%d"), str(before), str(plan.load_after[day]))
    console.print(table)
    console.print(
        f"Std dev {plan.std_dev_before:.2f} -> {plan.std_dev_after:.2f}; "
        f"{len(plan.moves)} moves planned."
    )
    if dry_run:
        console.print("[yellow]Dry run: no changes written.[/yellow]")
    else:
        console.print(f"[bold green]{moved} items rescheduled.[/bold green]")


# ---------------------------------------------------------------------------
# Restore command
# ---------------------------------------------------------------------------


@app.command()
def restore(
    db: Optional[Path] = _db_option,
    yes: bool = typer.Option(False, "--yes", "-y", help="Bypass confirmation prompt."),
):
    """Restores the database from the most recent backup."""
    db_path = _resolve_db_path(db)
    console.print("[bold yellow]Attempting to restore database from backup...[/bold yellow]")

    latest_backup = find_latest_backup(db_path)
    if not latest_backup:
        console.print("[bold red]Error: No backup files found.[/bold red]")
        raise typer.Exit(code=1)

    console.print(f"Found latest backup: [cyan]{latest_backup.name}[/cyan]")

    if not yes:
        confirmed = typer.confirm(
            "Are you sure you want to overwrite the current database with this backup?"
        )
        if not confirmed:
            console.print("Restore operation cancelled.")
            raise typer.Exit()

    try:
        shutil.copy2(latest_backup, db_path)
    except OSError as e:
        _fail("Restore failed", e)
    console.print(f"[bold green]Database successfully restored from {latest_backup.name}[/bold green]")


# ---------------------------------------------------------------------------
# Entry point
# ---------------------------------------------------------------------------


def main():
    """
    Run the CLI application, exiting with status 1 on any unexpected error.
    """
    try:
        app()
    except Exception as e:
        console.print(f"[bold red]UNEXPECTED ERROR: {e}[/bold red]")
        raise SystemExit(1)


if __name__ == "__main__":
    main()
