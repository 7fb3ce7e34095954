"""
TimelineAggregator: merges tasks, notes and recordings into Day buckets.

Every date in the window gets a Day, even an empty one, so a missing item is
meaningful rather than ambiguous. Items are keyed by their timestamp in the
caller's timezone; anything outside the window is dropped. The "today" Day
also carries 24 hour buckets.

Each pass builds fresh Day objects. Nothing is patched in place, so a pass
can be re-run after any refresh or mutation.
"""
from __future__ import annotations

import asyncio
import logging
from dataclasses import dataclass, field
from datetime import date, datetime, time, timedelta, tzinfo
from enum import Enum
from typing import Iterable, Optional, Sequence

from ..storage.gateway import DataGateway, DateAnchor
from ..storage.models import Item, ItemKind, Note, Recording, Task, TaskStatus, as_utc
from .labels import day_heading, day_label, short_date

logger = logging.getLogger(__name__)


class Order(str, Enum):
    ASCENDING = "ascending"    # future view
    DESCENDING = "descending"  # past view


@dataclass(frozen=True)
class TimelineEntry:
    item: Item
    local_time: datetime
    hour: Optional[int] = None  # only set inside the today Day

    @property
    def id(self) -> str:
        return self.item.id

    @property
    def kind(self) -> ItemKind:
        return self.item.kind

    @property
    def text(self) -> str:
        return self.item.text

    @property
    def created_at(self) -> datetime:
        return self.item.created_at

    @property
    def status(self) -> Optional[TaskStatus]:
        return self.item.status if isinstance(self.item, Task) else None


@dataclass
class HourBucket:
    hour: int
    entries: list[TimelineEntry] = field(default_factory=list)


@dataclass
class Day:
    date: date
    date_key: str
    offset: int
    label: str
    heading: str
    entries: list[TimelineEntry] = field(default_factory=list)
    hours: list[HourBucket] = field(default_factory=list)

    @property
    def is_today(self) -> bool:
        return self.offset == 0

    @property
    def is_future(self) -> bool:
        return self.offset > 0

    @property
    def short_date(self) -> str:
        return short_date(self.date)

    def count(self, kind: ItemKind) -> int:
        return sum(1 for e in self.entries if e.kind == kind)


def date_key(day: date) -> str:
    return day.isoformat()


def local_today(now: datetime, tz: tzinfo) -> date:
    return as_utc(now).astimezone(tz).date()


def window_bounds(
    now: datetime, tz: tzinfo, days_back: int, days_forward: int
) -> tuple[datetime, datetime]:
    """UTC [start, end) covering local midnight of today-N to the end of today+M."""
    today = local_today(now, tz)
    first = today - timedelta(days=days_back)
    last = today + timedelta(days=days_forward)
    start = datetime.combine(first, time.min, tzinfo=tz)
    end = datetime.combine(last + timedelta(days=1), time.min, tzinfo=tz)
    return as_utc(start), as_utc(end)


def _anchor_time(item: Item, task_anchor: DateAnchor) -> datetime:
    if task_anchor == DateAnchor.DUE and isinstance(item, Task) and item.due_date:
        return item.due_date
    return item.created_at


def aggregate(
    tasks: Iterable[Task],
    notes: Iterable[Note],
    recordings: Iterable[Recording],
    *,
    now: datetime,
    tz: tzinfo,
    days_back: int,
    days_forward: int,
    task_anchor: DateAnchor = DateAnchor.CREATED,
    order: Order = Order.ASCENDING,
) -> list[Day]:
    """Build one Day per date in [today - days_back, today + days_forward]."""
    if days_back < 0 or days_forward < 0:
        raise ValueError("window sizes must be non-negative")

    today = local_today(now, tz)
    days: list[Day] = []
    by_key: dict[str, Day] = {}
    for offset in range(-days_back, days_forward + 1):
        d = today + timedelta(days=offset)
        day = Day(
            date=d,
            date_key=date_key(d),
            offset=offset,
            label=day_label(d, today),
            heading=day_heading(d, today),
            hours=[HourBucket(h) for h in range(24)] if offset == 0 else [],
        )
        days.append(day)
        by_key[day.date_key] = day

    dropped = 0
    sources: tuple[Iterable[Item], ...] = (tasks, notes, recordings)
    for items in sources:
        for item in items:
            if isinstance(item, Note) and item.is_archived:
                continue
            local = as_utc(_anchor_time(item, task_anchor)).astimezone(tz)
            day = by_key.get(date_key(local.date()))
            if day is None:
                dropped += 1
                continue
            if day.is_today:
                entry = TimelineEntry(item, local, hour=local.hour)
                day.hours[local.hour].entries.append(entry)
            else:
                entry = TimelineEntry(item, local)
            day.entries.append(entry)

    if dropped:
        logger.debug(f"Dropped {dropped} item(s) outside the {len(days)}-day window")

    for day in days:
        day.entries.sort(key=lambda e: as_utc(e.created_at), reverse=True)

    if order == Order.DESCENDING:
        days.reverse()
    return days


def past_view(days: Sequence[Day]) -> list[Day]:
    """Today and earlier, newest first."""
    return sorted((d for d in days if d.offset <= 0), key=lambda d: d.date, reverse=True)


def future_view(days: Sequence[Day]) -> list[Day]:
    """After today, soonest first."""
    return sorted((d for d in days if d.is_future), key=lambda d: d.date)


class TimelineAggregator:
    """
    Fetches an owner's items for the window and keeps the latest pass.

    A failed fetch leaves `days` at the last-known-good pass and re-raises
    TransientFetchError; retry is up to the caller.
    """

    def __init__(
        self,
        gateway: DataGateway,
        days_back: int = 30,
        days_forward: int = 7,
        task_anchor: DateAnchor = DateAnchor.CREATED,
    ):
        self.gateway = gateway
        self.days_back = days_back
        self.days_forward = days_forward
        self.task_anchor = task_anchor
        self.days: list[Day] = []

    async def fetch(
        self, owner_id: str, now: datetime, tz: tzinfo
    ) -> tuple[list[Task], list[Note], list[Recording]]:
        since, until = window_bounds(now, tz, self.days_back, self.days_forward)
        tasks, notes, recordings = await asyncio.gather(
            self.gateway.list_items(
                ItemKind.TASK, owner_id, since=since, until=until, anchor=self.task_anchor
            ),
            self.gateway.list_items(ItemKind.NOTE, owner_id, since=since, until=until),
            self.gateway.list_items(ItemKind.RECORDING, owner_id, since=since, until=until),
        )
        return tasks, notes, recordings

    async def refresh(
        self, owner_id: str, now: datetime, tz: tzinfo, order: Order = Order.ASCENDING
    ) -> list[Day]:
        tasks, notes, recordings = await self.fetch(owner_id, now, tz)
        self.days = self.build(tasks, notes, recordings, now=now, tz=tz, order=order)
        logger.debug(
            f"Timeline refreshed: {len(tasks)} task(s), {len(notes)} note(s), "
            f"{len(recordings)} recording(s)"
        )
        return self.days

    def build(
        self,
        tasks: Iterable[Task],
        notes: Iterable[Note],
        recordings: Iterable[Recording],
        *,
        now: datetime,
        tz: tzinfo,
        order: Order = Order.ASCENDING,
    ) -> list[Day]:
        """Aggregate already-fetched items (e.g. a LocalView after a mutation)."""
        return aggregate(
            tasks,
            notes,
            recordings,
            now=now,
            tz=tz,
            days_back=self.days_back,
            days_forward=self.days_forward,
            task_anchor=self.task_anchor,
            order=order,
        )
