"""
Task list filters and sorts, plus the feed's to-do/done toggle.
"""
from __future__ import annotations

from datetime import datetime, tzinfo
from enum import Enum
from typing import Iterable

from ..storage.models import Task, TaskStatus, as_utc
from .aggregator import TimelineEntry, local_today


class TaskFilter(str, Enum):
    TODAY = "today"
    OVERDUE = "overdue"
    UPCOMING = "upcoming"
    COMPLETED = "completed"
    ALL = "all"


class TaskSort(str, Enum):
    DUE = "due"
    CREATED = "created"


class StatusFilter(str, Enum):
    TODO = "todo"
    DONE = "done"


def filter_tasks(
    tasks: Iterable[Task], which: TaskFilter, now: datetime, tz: tzinfo
) -> list[Task]:
    today = local_today(now, tz)

    def due_day(task: Task):
        return as_utc(task.due_date).astimezone(tz).date() if task.due_date else None

    result = []
    for task in tasks:
        pending = task.status == TaskStatus.PENDING
        due = due_day(task)
        if which == TaskFilter.TODAY:
            keep = pending and (due is None or due == today)
        elif which == TaskFilter.OVERDUE:
            keep = pending and due is not None and due < today
        elif which == TaskFilter.UPCOMING:
            keep = pending and due is not None and due > today
        elif which == TaskFilter.COMPLETED:
            keep = task.status == TaskStatus.COMPLETED
        else:
            keep = True
        if keep:
            result.append(task)
    return result


def sort_tasks(tasks: Iterable[Task], how: TaskSort) -> list[Task]:
    tasks = list(tasks)
    if how == TaskSort.DUE:
        # Undated tasks last, newest first among themselves
        dated = sorted((t for t in tasks if t.due_date), key=lambda t: as_utc(t.due_date))
        undated = sorted(
            (t for t in tasks if not t.due_date), key=lambda t: as_utc(t.created_at), reverse=True
        )
        return dated + undated
    return sorted(tasks, key=lambda t: as_utc(t.created_at), reverse=True)


def filter_by_status(entries: Iterable[TimelineEntry], which: StatusFilter) -> list[TimelineEntry]:
    """Notes and recordings always show; tasks follow the to-do/done toggle."""
    result = []
    for entry in entries:
        if entry.status is None:
            result.append(entry)
        elif which == StatusFilter.TODO and entry.status != TaskStatus.COMPLETED:
            result.append(entry)
        elif which == StatusFilter.DONE and entry.status == TaskStatus.COMPLETED:
            result.append(entry)
    return result
