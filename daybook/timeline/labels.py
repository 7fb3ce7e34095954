"""
Date labels for the timeline and task lists.

Nothing here reads the wall clock: "today" and "now" are always passed in,
already converted to the viewer's timezone.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime

# Offsets under this many days get a weekday name instead of a date
WEEKDAY_WINDOW_DAYS = 7


def short_date(day: date) -> str:
    """'Jan 5'"""
    return f"{day:%b} {day.day}"


def day_label(day: date, today: date) -> str:
    """
    'Today' / 'Yesterday' / 'Tomorrow' for offsets 0 / -1 / +1, the weekday
    name inside a week either way, otherwise 'Jan 5' for the past and
    'Mon, Jan 5' for the distant future.
    """
    offset = (day - today).days
    if offset == 0:
        return "Today"
    if offset == -1:
        return "Yesterday"
    if offset == 1:
        return "Tomorrow"
    if abs(offset) < WEEKDAY_WINDOW_DAYS:
        return f"{day:%A}"
    if offset > 0:
        return f"{day:%a}, {short_date(day)}"
    return short_date(day)


def day_heading(day: date, today: date) -> str:
    """Label with the short date appended, e.g. 'Today · Jan 5'."""
    label = day_label(day, today)
    if abs((day - today).days) < WEEKDAY_WINDOW_DAYS:
        return f"{label} · {short_date(day)}"
    return label


@dataclass(frozen=True)
class DueLabel:
    label: str
    is_overdue: bool = False
    is_today: bool = False


def format_due_date(due: date, today: date) -> DueLabel:
    diff = (due - today).days
    if diff < 0:
        return DueLabel(f"Overdue ({abs(diff)}d)", is_overdue=True)
    if diff == 0:
        return DueLabel("Due today", is_today=True)
    if diff == 1:
        return DueLabel("Due tomorrow")
    if diff < WEEKDAY_WINDOW_DAYS:
        return DueLabel(f"Due {due:%A}")
    return DueLabel(f"Due {short_date(due)}")


def format_relative(moment: datetime, now: datetime) -> str:
    """'Just now', '5m ago', '2h ago', 'Yesterday', '3d ago', else 'Jan 5'."""
    seconds = (now - moment).total_seconds()
    minutes = int(seconds // 60)
    hours = int(seconds // 3600)
    days = int(seconds // 86400)

    if minutes < 1:
        return "Just now"
    if minutes < 60:
        return f"{minutes}m ago"
    if hours < 24:
        return f"{hours}h ago"
    if days == 1:
        return "Yesterday"
    if days < WEEKDAY_WINDOW_DAYS:
        return f"{days}d ago"
    return short_date(moment.date())
