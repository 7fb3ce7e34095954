"""
Rich display helpers for daybook CLI.
All terminal output goes through this module for consistency.
"""
from __future__ import annotations

from datetime import datetime, tzinfo
from typing import Optional, Sequence

from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from ..related.people import PersonProfile
from ..related.prioritizer import FocusList
from ..related.scorer import ScoredItem
from ..storage.models import Item, ItemKind, Recording, Task, TaskPriority, as_utc
from ..timeline.aggregator import Day, TimelineEntry
from ..timeline.labels import format_due_date, format_relative
from ..watcher.watcher import WatchSnapshot, WatcherPhase

console = Console()

KIND_ICONS = {
    ItemKind.TASK: "☐",
    ItemKind.NOTE: "✎",
    ItemKind.RECORDING: "●",
}

KIND_COLORS = {
    ItemKind.TASK: "cyan",
    ItemKind.NOTE: "magenta",
    ItemKind.RECORDING: "yellow",
}

PRIORITY_COLORS = {
    TaskPriority.LOW: "dim",
    TaskPriority.MEDIUM: "white",
    TaskPriority.HIGH: "yellow",
    TaskPriority.URGENT: "bold red",
}


def short_id(item_id: str) -> str:
    return item_id[:8]


# ── Timeline ──────────────────────────────────────────────────────────────────

def _entry_line(entry: TimelineEntry, show_time: bool = True) -> Text:
    kind = entry.kind
    icon = KIND_ICONS[kind]
    if isinstance(entry.item, Task) and entry.item.is_completed:
        icon = "☑"
    line = Text()
    if show_time:
        line.append(f"{entry.local_time:%H:%M}  ", style="dim")
    line.append(f"{icon} ", style=KIND_COLORS[kind])
    text_style = "strike dim" if isinstance(entry.item, Task) and entry.item.is_completed else ""
    line.append(entry.text.strip().splitlines()[0] if entry.text.strip() else "", style=text_style)
    line.append(f"  {short_id(entry.id)}", style="dim")
    return line


def print_timeline(days: Sequence[Day], show_empty: bool = False) -> None:
    shown = 0
    for day in days:
        if not day.entries and not show_empty:
            continue
        shown += 1
        style = "bold green" if day.is_today else "bold"
        counts = ", ".join(
            f"{day.count(kind)} {kind.value}{'s' if day.count(kind) != 1 else ''}"
            for kind in ItemKind if day.count(kind)
        )
        console.print(f"[{style}]{day.heading}[/{style}]  [dim]{counts}[/dim]")
        if not day.entries:
            console.print("  [dim]nothing[/dim]")
        for entry in day.entries:
            console.print(Text("  ") + _entry_line(entry))
        console.print()

    if not shown:
        console.print("[dim]Nothing in this window. Try 'daybook add note \"...\"'.[/dim]")


def print_today(day: Day) -> None:
    console.print(f"[bold green]{day.heading}[/bold green]\n")
    if not day.entries:
        console.print("[dim]Nothing yet today.[/dim]")
        return
    for bucket in day.hours:
        if not bucket.entries:
            continue
        console.print(f"[bold]{bucket.hour:02d}:00[/bold]")
        for entry in bucket.entries:
            console.print(Text("  ") + _entry_line(entry))
    console.print()


# ── Tasks ─────────────────────────────────────────────────────────────────────

def print_task_table(tasks: Sequence[Task], now: datetime, tz: tzinfo) -> None:
    if not tasks:
        console.print("[dim]No tasks here.[/dim]")
        return

    today = as_utc(now).astimezone(tz).date()
    table = Table(
        show_header=True,
        header_style="bold",
        box=None,
        padding=(0, 1),
        show_edge=False,
    )
    table.add_column("ID", style="dim", width=8, no_wrap=True)
    table.add_column("", width=1, no_wrap=True)
    table.add_column("Task", min_width=30)
    table.add_column("Due", width=16, no_wrap=True)
    table.add_column("Priority", width=8, no_wrap=True)
    table.add_column("Tags", style="dim")

    for task in tasks:
        due = Text("—", style="dim")
        if task.due_date:
            label = format_due_date(as_utc(task.due_date).astimezone(tz).date(), today)
            style = "red" if label.is_overdue else "yellow" if label.is_today else ""
            due = Text(label.label, style=style)
        table.add_row(
            short_id(task.id),
            "☑" if task.is_completed else "☐",
            Text(task.text, style="strike dim" if task.is_completed else ""),
            due,
            Text(task.priority.value, style=PRIORITY_COLORS[task.priority]),
            Text(" ".join(f"#{t}" for t in task.tags)),
        )

    console.print(table)


# ── Recordings ────────────────────────────────────────────────────────────────

def print_recording_list(recordings: Sequence[Recording], now: datetime) -> None:
    if not recordings:
        console.print("[dim]No recordings found. Run 'daybook recording add <audio-url>'.[/dim]")
        return

    table = Table(
        show_header=True,
        header_style="bold",
        box=None,
        padding=(0, 1),
        show_edge=False,
    )
    table.add_column("ID", style="dim", width=8, no_wrap=True)
    table.add_column("When", width=10, no_wrap=True)
    table.add_column("Length", width=7, no_wrap=True)
    table.add_column("State", width=12, no_wrap=True)
    table.add_column("Summary", min_width=24)

    for r in recordings:
        secs = r.duration_seconds
        table.add_row(
            short_id(r.id),
            format_relative(as_utc(r.created_at), as_utc(now)),
            f"{secs // 60}:{secs % 60:02d}",
            Text(r.processing_state.value, style="green" if r.is_processed else "yellow"),
            Text(r.text[:80]),
        )

    console.print(table)


# ── Watcher ───────────────────────────────────────────────────────────────────

_PHASE_STYLES = {
    WatcherPhase.IDLE: "dim",
    WatcherPhase.POLLING: "yellow",
    WatcherPhase.CATCHING_UP: "blue",
    WatcherPhase.SETTLED: "green",
    WatcherPhase.STALLED: "red",
    WatcherPhase.CLOSED: "dim",
}


def print_watch_snapshot(snapshot: WatchSnapshot) -> None:
    style = _PHASE_STYLES[snapshot.phase]
    console.print(
        f"[{style}]{snapshot.phase.name.lower()}[/{style}]  "
        f"[dim]{snapshot.state.value} · {len(snapshot.tasks)} task(s) · "
        f"{len(snapshot.notes)} note(s)[/dim]"
    )


def print_watch_result(snapshot: WatchSnapshot) -> None:
    recording = snapshot.recording
    if recording is None:
        console.print("[dim]Recording is gone.[/dim]")
        return
    console.print()
    body = recording.summary or recording.transcript
    console.print(Panel(
        Text(body) if body else Text("(no transcript yet)", style="dim"),
        title=f"Recording {short_id(recording.id)}",
        border_style="dim",
    ))
    if recording.extracted_people:
        console.print(f"[bold]People:[/bold] {escape(', '.join(recording.extracted_people))}")
    for task in snapshot.tasks:
        console.print(f"  [cyan]☐[/cyan] {escape(task.text)}  [dim]{short_id(task.id)}[/dim]")
    for note in snapshot.notes:
        console.print(f"  [magenta]✎[/magenta] {escape(note.text)}  [dim]{short_id(note.id)}[/dim]")
    console.print()


# ── Related ───────────────────────────────────────────────────────────────────

def print_related(source: Item, related: Sequence[ScoredItem]) -> None:
    console.print(f"[bold]Related to:[/bold] {escape(source.text[:80])}\n")
    if not related:
        console.print("[dim]No related notes.[/dim]")
        return
    for scored in related:
        console.print(
            f"  [green]{scored.score}[/green]  {escape(scored.item.text[:80])}  "
            f"[dim]{short_id(scored.item.id)}[/dim]"
        )


# ── Focus ─────────────────────────────────────────────────────────────────────

_LABEL_STYLES = {
    "URGENT": "bold red",
    "HIGH": "dark_orange",
    "MODERATE": "yellow",
    "LOW": "green",
}


def print_focus(focus: FocusList, verbose: bool = False) -> None:
    if not focus.top:
        console.print("[dim]No pending tasks to prioritize.[/dim]")
        return
    console.print(
        f"[bold]Focus on these[/bold]  [dim]top {len(focus.top)} of "
        f"{focus.total_pending} pending[/dim]\n"
    )
    for rank, item in enumerate(focus.top, 1):
        line = Text(f"{rank}. ", style="bold")
        line.append(f"{item.score:>3} {item.label:<8}", style=_LABEL_STYLES[item.label])
        line.append(f"  {item.task.text}")
        line.append(f"  {short_id(item.task.id)}", style="dim")
        console.print(line)
        console.print(Text(f"     {item.reasoning}", style="dim"))
        if verbose:
            for factor in item.factors:
                console.print(Text(f"       {factor.impact:+d}  {factor.name}: {factor.description}", style="dim"))
        for note in item.related_notes:
            console.print(Text(f"     ✎ {note.text[:70]}", style="magenta"))
    console.print()


# ── People ────────────────────────────────────────────────────────────────────

def print_people(people: Sequence[tuple[str, int]]) -> None:
    if not people:
        console.print("[dim]Nobody mentioned in your recordings yet.[/dim]")
        return
    for name, count in people:
        line = Text(f"  {name}", style="bold")
        line.append(f"  {count} recording{'s' if count != 1 else ''}", style="dim")
        console.print(line)


def print_person(profile: PersonProfile, now: datetime) -> None:
    console.print(Text(profile.name, style="bold"))
    if not profile.recordings:
        console.print("[dim]No recordings mention this person.[/dim]")
        return
    pending = len(profile.pending_tasks)
    console.print(
        f"[dim]{len(profile.recordings)} recording(s) · {pending} open task(s) · "
        f"{len(profile.notes)} note(s)[/dim]\n"
    )
    for recording in profile.recordings:
        line = Text("  ● ", style=KIND_COLORS[ItemKind.RECORDING])
        line.append(f"{format_relative(as_utc(recording.created_at), as_utc(now))}  ", style="dim")
        line.append(recording.text[:70])
        console.print(line)
    for task in profile.tasks:
        line = Text("  ☑ " if task.is_completed else "  ☐ ", style=KIND_COLORS[ItemKind.TASK])
        line.append(task.text, style="strike dim" if task.is_completed else "")
        line.append(f"  {short_id(task.id)}", style="dim")
        console.print(line)
    for note in profile.notes:
        line = Text("  ✎ ", style=KIND_COLORS[ItemKind.NOTE])
        line.append(note.text)
        line.append(f"  {short_id(note.id)}", style="dim")
        console.print(line)
    console.print()


# ── Doctor ────────────────────────────────────────────────────────────────────

def print_check(label: str, ok: bool, note: str = "") -> None:
    """Label and note are plain text (paths, exception messages)."""
    icon = "[green]✓[/green]" if ok else "[red]✗[/red]"
    line = f"  {icon}  {escape(label)}"
    if note:
        line += f"  [dim]{escape(note)}[/dim]"
    console.print(line)


# ── Utility ───────────────────────────────────────────────────────────────────
# Messages below are markup; callers escape any user text they embed.

def print_error(msg: str) -> None:
    console.print(f"\n[bold red]Error:[/bold red] {msg}\n")


def print_success(msg: str) -> None:
    console.print(f"[bold green]✓[/bold green]  {msg}")


def print_warn(msg: str) -> None:
    console.print(f"[yellow]⚠[/yellow]   {msg}")


def print_info(msg: str, detail: Optional[str] = None) -> None:
    console.print(f"[dim]{msg}[/dim]")
    if detail:
        console.print(f"  [dim]{detail}[/dim]")
