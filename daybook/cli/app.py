"""
daybook CLI — all commands.

Commands:
  timeline        Past and upcoming days, newest first
  today           Today's items bucketed by hour
  tasks           Task list (today / overdue / upcoming / completed / all)
  add task|note   Create a task or a note
  done            Toggle a task's completion (offers undo)
  archive         Archive (or --restore) a note
  delete          Delete an item (notes are archived unless --permanent)
  convert         Turn a note into a task
  reschedule      Change or clear a task's due date
  related         Notes related to a note
  focus           Pending tasks ranked by what matters today
  people          People mentioned in recordings
  person          Everything connected to one person
  recording add   Register a recording for transcription
  recording list  List recent recordings
  recording summary  Replace a recording's summary
  watch           Follow a recording until processing settles
  reprocess       Ask for a recording to be processed again, then watch it
  doctor          Diagnose setup issues
  config          Show or edit configuration

Ids can be given as any unique prefix of the id shown in listings.
"""
from __future__ import annotations

import asyncio
import logging
import os
import subprocess
import sys
from datetime import date, datetime, time, timedelta
from typing import Optional

import typer
from rich.console import Console
from rich.markup import escape

from ..config import CONFIG_FILE, Config, load_config, save_config
from ..enrichment.client import EnrichmentClient, validate_api_url
from ..errors import DaybookError
from ..extraction.auto_tags import filter_by_tag
from ..mutations.coordinator import MutationCoordinator
from ..related.people import known_people, person_profile
from ..related.prioritizer import prioritize_tasks
from ..related.scorer import find_related
from ..storage.db import SqliteGateway
from ..storage.gateway import DateAnchor
from ..storage.models import Item, ItemKind, TaskPriority, TaskStatus, as_utc, utcnow
from ..timeline.aggregator import Order, TimelineAggregator, future_view, past_view
from ..timeline.filters import (
    StatusFilter,
    TaskFilter,
    TaskSort,
    filter_by_status,
    filter_tasks,
    sort_tasks,
)
from ..watcher.watcher import ProcessingWatcher, WatcherPhase
from . import display

app = typer.Typer(
    name="daybook",
    help="Your voice-first day at a glance.",
    no_args_is_help=True,
    add_completion=False,
    pretty_exceptions_enable=False,
)
console = Console()
logger = logging.getLogger(__name__)


def _setup_logging(level: str) -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
        datefmt="%H:%M:%S",
    )


def _load() -> Config:
    config = load_config()
    _setup_logging(config.display.log_level)
    return config


def _get_gateway(config: Config) -> SqliteGateway:
    return SqliteGateway(config.db_path)


def _run(coro):
    """Run a command coroutine; daybook errors become a clean exit."""
    try:
        return asyncio.run(coro)
    except DaybookError as exc:
        display.print_error(escape(str(exc)))
        raise typer.Exit(1)


async def _open_coordinator(config: Config) -> MutationCoordinator:
    """Coordinator with the owner's items loaded into its local view."""
    gateway = _get_gateway(config)
    owner = config.owner_id
    tasks, notes, recordings = await asyncio.gather(
        gateway.list_items(ItemKind.TASK, owner),
        gateway.list_items(ItemKind.NOTE, owner, include_archived=True),
        gateway.list_items(ItemKind.RECORDING, owner),
    )
    coordinator = MutationCoordinator(gateway)
    coordinator.view.load(tasks, notes, recordings)
    return coordinator


def _resolve(coordinator: MutationCoordinator, kind: ItemKind, prefix: str) -> Item:
    matches = [i for i in coordinator.view.of_kind(kind) if i.id.startswith(prefix)]
    if not matches:
        display.print_error(f"No {kind.value} matches '{escape(prefix)}'.")
        raise typer.Exit(1)
    if len(matches) > 1:
        display.print_error(f"'{escape(prefix)}' matches {len(matches)} {kind.value}s; use a longer id.")
        raise typer.Exit(1)
    return matches[0]


def _parse_due(value: Optional[str], config: Config) -> Optional[datetime]:
    """'today', 'tomorrow', '+3' (days) or YYYY-MM-DD, as local midnight in UTC."""
    if value is None or value.lower() in ("", "none", "clear"):
        return None
    tz = config.timeline.tz
    today = as_utc(utcnow()).astimezone(tz).date()
    lowered = value.lower()
    if lowered == "today":
        day = today
    elif lowered == "tomorrow":
        day = today + timedelta(days=1)
    elif lowered.startswith("+") and lowered[1:].isdigit():
        day = today + timedelta(days=int(lowered[1:]))
    else:
        try:
            day = date.fromisoformat(value)
        except ValueError:
            display.print_error(f"Can't read due date '{escape(value)}'. Use YYYY-MM-DD, today, tomorrow or +N.")
            raise typer.Exit(1)
    return as_utc(datetime.combine(day, time.min, tzinfo=tz))


# ── timeline ──────────────────────────────────────────────────────────────────

@app.command()
def timeline(
    future: bool = typer.Option(False, "--future", "-f", help="Show upcoming days instead"),
    days_back: Optional[int] = typer.Option(None, "--days-back", "-b", min=0),
    days_forward: Optional[int] = typer.Option(None, "--days-forward", min=0),
    status: Optional[StatusFilter] = typer.Option(None, "--status", "-s", help="todo or done"),
    calendar: bool = typer.Option(False, "--calendar", help="Place tasks on their due date"),
    empty: bool = typer.Option(False, "--empty", help="Show days with nothing in them"),
) -> None:
    """Show the timeline: today and earlier (default) or the days ahead."""
    config = _load()
    tl = config.timeline
    aggregator = TimelineAggregator(
        _get_gateway(config),
        days_back=tl.days_back if days_back is None else days_back,
        days_forward=tl.days_forward if days_forward is None else days_forward,
        task_anchor=DateAnchor.DUE if calendar else tl.task_anchor,
    )
    days = _run(aggregator.refresh(config.owner_id, utcnow(), tl.tz))
    days = future_view(days) if future else past_view(days)
    if status is not None:
        for day in days:
            day.entries = filter_by_status(day.entries, status)
    display.print_timeline(days, show_empty=empty)


@app.command()
def today() -> None:
    """Show today's items, hour by hour."""
    config = _load()
    aggregator = TimelineAggregator(_get_gateway(config), days_back=0, days_forward=0)
    days = _run(aggregator.refresh(config.owner_id, utcnow(), config.timeline.tz, Order.ASCENDING))
    display.print_today(days[0])


# ── tasks ─────────────────────────────────────────────────────────────────────

@app.command()
def tasks(
    which: TaskFilter = typer.Option(TaskFilter.TODAY, "--filter", "-f"),
    sort: TaskSort = typer.Option(TaskSort.DUE, "--sort"),
    tag: Optional[str] = typer.Option(None, "--tag", "-t", help="Only tasks with this tag"),
) -> None:
    """List tasks."""
    config = _load()
    gateway = _get_gateway(config)
    items = _run(gateway.list_items(ItemKind.TASK, config.owner_id))
    now = utcnow()
    selected = filter_tasks(items, which, now, config.timeline.tz)
    if tag:
        selected = filter_by_tag(selected, tag.lstrip("#").lower())
    display.print_task_table(sort_tasks(selected, sort), now, config.timeline.tz)


# ── add ───────────────────────────────────────────────────────────────────────

add_app = typer.Typer(name="add", help="Create a task or a note.", no_args_is_help=True)
app.add_typer(add_app)


@add_app.command("task")
def add_task(
    text: str = typer.Argument(..., help="What needs doing"),
    due: Optional[str] = typer.Option(None, "--due", "-d", help="YYYY-MM-DD, today, tomorrow or +N"),
    priority: TaskPriority = typer.Option(TaskPriority.MEDIUM, "--priority", "-p"),
    tags: Optional[list[str]] = typer.Option(None, "--tag", "-t", help="Tag (repeatable); default: auto"),
) -> None:
    """Add a task."""
    config = _load()
    due_date = _parse_due(due, config)

    async def _add():
        coordinator = await _open_coordinator(config)
        return await coordinator.insert_task(
            config.owner_id, text, due_date=due_date, priority=priority,
            tags=[t.lstrip("#").lower() for t in tags] if tags else None,
        )

    task = _run(_add())
    display.print_success(f"Task added  [dim]{display.short_id(task.id)}[/dim]")


@add_app.command("note")
def add_note(
    text: str = typer.Argument(..., help="Note text"),
    tags: Optional[list[str]] = typer.Option(None, "--tag", "-t", help="Tag (repeatable); default: auto"),
) -> None:
    """Add a note."""
    config = _load()

    async def _add():
        coordinator = await _open_coordinator(config)
        return await coordinator.insert_note(
            config.owner_id, text,
            tags=[t.lstrip("#").lower() for t in tags] if tags else None,
        )

    note = _run(_add())
    display.print_success(f"Note added  [dim]{display.short_id(note.id)}[/dim]")


# ── done ──────────────────────────────────────────────────────────────────────

@app.command()
def done(
    task_id: str = typer.Argument(..., help="Task id (prefix)"),
) -> None:
    """Toggle a task between pending and completed."""
    config = _load()
    window = config.display.undo_window_seconds

    async def _toggle():
        coordinator = await _open_coordinator(config)
        task = _resolve(coordinator, ItemKind.TASK, task_id)
        return coordinator, await coordinator.toggle_task(task.id)

    coordinator, updated = _run(_toggle())
    if updated is None:
        display.print_warn("That task no longer exists.")
        return
    if updated.status == TaskStatus.PENDING:
        display.print_success(f"Reopened: {escape(updated.text)}")
        return

    display.print_success(f"Done: {escape(updated.text)}")
    slot = coordinator.undo
    if slot is None or not sys.stdin.isatty():
        return
    # Prompt runs outside the event loop
    if typer.confirm("Undo?", default=False):
        if slot.expired(utcnow(), window):
            display.print_info("Undo window has passed; run 'daybook done' again to reopen.")
            return
        _run(coordinator.undo_last_completion())
        display.print_info("Undone.")


# ── notes ─────────────────────────────────────────────────────────────────────

@app.command()
def archive(
    note_id: str = typer.Argument(..., help="Note id (prefix)"),
    restore: bool = typer.Option(False, "--restore", help="Unarchive instead"),
) -> None:
    """Archive a note, or bring one back with --restore."""
    config = _load()

    async def _archive():
        coordinator = await _open_coordinator(config)
        note = _resolve(coordinator, ItemKind.NOTE, note_id)
        if restore:
            await coordinator.unarchive_note(note.id)
        else:
            await coordinator.archive_note(note.id)
        return note

    note = _run(_archive())
    display.print_success(f"{'Restored' if restore else 'Archived'}: {escape(note.text[:60])}")


@app.command()
def delete(
    kind: ItemKind = typer.Argument(..., help="task, note or recording"),
    item_id: str = typer.Argument(..., help="Item id (prefix)"),
    permanent: bool = typer.Option(False, "--permanent", help="Really delete a note"),
    yes: bool = typer.Option(False, "--yes", "-y", help="Don't ask for confirmation"),
) -> None:
    """Delete an item. Notes are archived unless --permanent is given."""
    config = _load()
    hard = kind != ItemKind.NOTE or permanent

    async def _find():
        coordinator = await _open_coordinator(config)
        return coordinator, _resolve(coordinator, kind, item_id)

    coordinator, item = _run(_find())
    if hard and not yes and not typer.confirm(f"Delete {kind.value} '{item.text[:40]}'?"):
        raise typer.Exit(0)
    _run(coordinator.delete_item(kind, item.id, permanent=permanent))
    display.print_success("Deleted." if hard else "Archived.")


@app.command()
def convert(
    note_id: str = typer.Argument(..., help="Note id (prefix)"),
    due: Optional[str] = typer.Option(None, "--due", "-d"),
) -> None:
    """Turn a note into a task and archive the note."""
    config = _load()
    due_date = _parse_due(due, config)

    async def _convert():
        coordinator = await _open_coordinator(config)
        note = _resolve(coordinator, ItemKind.NOTE, note_id)
        return await coordinator.convert_note_to_task(note.id, due_date=due_date)

    task = _run(_convert())
    display.print_success(f"Converted to task  [dim]{display.short_id(task.id)}[/dim]")


@app.command()
def reschedule(
    task_id: str = typer.Argument(..., help="Task id (prefix)"),
    due: str = typer.Argument(..., help="YYYY-MM-DD, today, tomorrow, +N or none"),
) -> None:
    """Change or clear a task's due date."""
    config = _load()
    due_date = _parse_due(due, config)

    async def _reschedule():
        coordinator = await _open_coordinator(config)
        task = _resolve(coordinator, ItemKind.TASK, task_id)
        return await coordinator.reschedule_task(task.id, due_date)

    task = _run(_reschedule())
    if task is not None:
        display.print_success(f"Rescheduled: {escape(task.text[:60])}")


@app.command()
def related(
    note_id: str = typer.Argument(..., help="Note id (prefix)"),
    limit: Optional[int] = typer.Option(None, "--limit", "-n", min=1),
) -> None:
    """Show notes sharing keywords with a note."""
    config = _load()

    async def _related():
        coordinator = await _open_coordinator(config)
        note = _resolve(coordinator, ItemKind.NOTE, note_id)
        results = await find_related(
            coordinator.gateway,
            note,
            pool_size=config.related.pool_size,
            limit=limit or config.related.limit,
        )
        return note, results

    note, results = _run(_related())
    display.print_related(note, results)


@app.command()
def focus(
    limit: int = typer.Option(5, "--limit", "-n", min=1, help="How many tasks to show"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Show every scoring factor"),
) -> None:
    """Rank pending tasks by what deserves attention today."""
    config = _load()
    gateway = _get_gateway(config)

    async def _gather():
        return await asyncio.gather(
            gateway.list_items(ItemKind.TASK, config.owner_id),
            gateway.list_items(ItemKind.NOTE, config.owner_id),
        )

    items, notes = _run(_gather())
    display.print_focus(prioritize_tasks(items, notes, utcnow(), limit=limit), verbose=verbose)


@app.command()
def people() -> None:
    """List people mentioned in your recordings."""
    config = _load()
    gateway = _get_gateway(config)
    recordings = _run(gateway.list_items(ItemKind.RECORDING, config.owner_id))
    display.print_people(known_people(recordings))


@app.command()
def person(
    name: str = typer.Argument(..., help="Name as it appears in recordings"),
) -> None:
    """Recordings, tasks and notes connected to one person."""
    config = _load()
    profile = _run(person_profile(_get_gateway(config), config.owner_id, name))
    display.print_person(profile, utcnow())


# ── recordings ────────────────────────────────────────────────────────────────

recording_app = typer.Typer(name="recording", help="Manage voice recordings.", no_args_is_help=True)
app.add_typer(recording_app)


@recording_app.command("add")
def recording_add(
    audio_url: str = typer.Argument(..., help="Where the audio lives"),
    duration: int = typer.Option(0, "--duration", help="Length in seconds"),
    transcript: Optional[str] = typer.Option(None, "--transcript", help="Transcript, if already known"),
    process: bool = typer.Option(True, "--process/--no-process", help="Send for transcription"),
) -> None:
    """Register a recording and (optionally) send it for processing."""
    config = _load()

    async def _add():
        coordinator = await _open_coordinator(config)
        recording = await coordinator.insert_recording(
            config.owner_id, audio_url, duration_seconds=duration, transcript=transcript
        )
        if process and config.enrichment.api_url:
            async with _enrichment_client(config) as client:
                await client.request_reprocess(recording.id, recording.audio_url)
        return recording

    recording = _run(_add())
    display.print_success(f"Recording added  [dim]{display.short_id(recording.id)}[/dim]")
    if process and not config.enrichment.api_url:
        display.print_info("No enrichment.api_url configured; it will stay unprocessed.")


@recording_app.command("list")
def recording_list(
    limit: int = typer.Option(10, "--limit", "-n", help="Number of recordings to show"),
) -> None:
    """List recent recordings."""
    config = _load()
    gateway = _get_gateway(config)
    recordings = _run(gateway.list_items(ItemKind.RECORDING, config.owner_id, limit=limit))
    display.print_recording_list(recordings, utcnow())


@recording_app.command("summary")
def recording_summary(
    recording_id: str = typer.Argument(..., help="Recording id (prefix)"),
    summary: str = typer.Argument(..., help="New summary text"),
) -> None:
    """Replace a recording's summary."""
    config = _load()

    async def _summary():
        coordinator = await _open_coordinator(config)
        recording = _resolve(coordinator, ItemKind.RECORDING, recording_id)
        return await coordinator.update_summary(recording.id, summary)

    _run(_summary())
    display.print_success("Summary saved.")


# ── watch / reprocess ─────────────────────────────────────────────────────────

def _enrichment_client(config: Config) -> EnrichmentClient:
    return EnrichmentClient(
        config.enrichment.api_url,
        config.enrichment.api_key,
        timeout=config.enrichment.timeout_seconds,
    )


async def _follow(config: Config, recording_prefix: str, reprocess: bool) -> None:
    coordinator = await _open_coordinator(config)
    recording = _resolve(coordinator, ItemKind.RECORDING, recording_prefix)

    client = _enrichment_client(config) if reprocess and config.enrichment.api_url else None
    watcher = ProcessingWatcher(
        coordinator.gateway,
        config.watcher,
        enrichment=client,
        on_update=display.print_watch_snapshot,
    )
    try:
        async with watcher:
            snapshot = await watcher.watch(recording.id)
            if snapshot is None:
                display.print_warn("Recording not found.")
                return
            if reprocess:
                if client is None:
                    display.print_warn("No enrichment.api_url configured; only resetting the flag.")
                await watcher.reprocess()
            await watcher.drain()
            if watcher.phase == WatcherPhase.STALLED:
                # One last full read; a flip seen here still gets its catch-up polls
                await watcher.refresh()
                await watcher.drain()
            if watcher.phase == WatcherPhase.STALLED:
                display.print_warn(f"{escape(str(watcher.stall))}. Try 'daybook reprocess'.")
            display.print_watch_result(watcher.snapshot)
    finally:
        if client is not None:
            await client.close()


@app.command()
def watch(
    recording_id: str = typer.Argument(..., help="Recording id (prefix)"),
) -> None:
    """Follow a recording until processing settles. Ctrl+C to stop."""
    config = _load()
    try:
        _run(_follow(config, recording_id, reprocess=False))
    except KeyboardInterrupt:
        display.print_info("Stopped watching.")


@app.command()
def reprocess(
    recording_id: str = typer.Argument(..., help="Recording id (prefix)"),
) -> None:
    """Ask for a recording to be processed again, then watch it."""
    config = _load()
    try:
        _run(_follow(config, recording_id, reprocess=True))
    except KeyboardInterrupt:
        display.print_info("Stopped watching.")


# ── doctor ────────────────────────────────────────────────────────────────────

@app.command()
def doctor() -> None:
    """Diagnose daybook setup."""
    console.print("\n[bold]daybook doctor[/bold]\n")
    all_ok = True

    # Config
    config_exists = CONFIG_FILE.exists()
    display.print_check(
        f"Config file ({CONFIG_FILE})",
        config_exists,
        "using defaults — run 'daybook config edit' to create" if not config_exists else "",
    )
    try:
        config = load_config()
        display.print_check("Config is valid", True)
    except ValueError as exc:
        display.print_check("Config is valid", False, str(exc).splitlines()[0])
        display.print_error("Fix the config file, then re-run 'daybook doctor'.")
        raise typer.Exit(1)

    # Timezone
    tz = config.timeline.tz
    display.print_check(f"Timezone ({config.timeline.timezone or 'system'})", True, str(tz))

    # Database
    try:
        gateway = _get_gateway(config)
        count = len(asyncio.run(gateway.list_items(ItemKind.TASK, config.owner_id, limit=1)))
        display.print_check(f"Database ({config.db_path})", True, "" if count else "no tasks yet")
    except (OSError, DaybookError) as exc:
        display.print_check(f"Database ({config.db_path})", False, str(exc))
        all_ok = False

    # Enrichment service
    if config.enrichment.api_url:
        try:
            validate_api_url(config.enrichment.api_url)
            display.print_check(f"Enrichment API ({config.enrichment.api_url})", True)
        except ValueError as exc:
            display.print_check("Enrichment API", False, str(exc))
            all_ok = False
    else:
        display.print_check("Enrichment API", False, "not configured — recordings won't be processed")

    console.print()
    if all_ok:
        display.print_success("All checks passed.")
    else:
        display.print_error("Some checks failed. Fix issues above, then re-run 'daybook doctor'.")


# ── config ────────────────────────────────────────────────────────────────────

config_app = typer.Typer(name="config", help="View or edit configuration.", no_args_is_help=True)
app.add_typer(config_app)


@config_app.command("show")
def config_show() -> None:
    """Print current configuration."""
    config = load_config()
    import yaml
    console.print(
        yaml.safe_dump(config.model_dump(mode="json"), default_flow_style=False),
        markup=False, highlight=False,
    )


@config_app.command("path")
def config_path() -> None:
    """Show path to the config file."""
    console.print(str(CONFIG_FILE), markup=False, highlight=False)


@config_app.command("edit")
def config_edit() -> None:
    """Open config file in $EDITOR (creates it with defaults if missing)."""
    if not CONFIG_FILE.exists():
        save_config(Config())

    editor = os.environ.get("EDITOR", "nano")
    subprocess.run([editor, str(CONFIG_FILE)])
