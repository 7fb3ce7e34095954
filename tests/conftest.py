"""Shared fixtures: an in-memory DataGateway with failure injection."""

import asyncio
import dataclasses
from collections import Counter
from datetime import datetime, timezone
from typing import Callable, Optional

import pytest

from daybook.errors import StaleReference
from daybook.storage.gateway import DateAnchor
from daybook.storage.models import Item, ItemKind, Note, Task, as_utc


class FakeGateway:
    """
    DataGateway kept in dicts. Rows are copied in and out so callers never
    share objects with the store.

    Failure injection:
      fail_reads       raised by every read while set
      on_read          called as on_read(method, kind) before each read; may raise or mutate rows
      fail_writes      raised by every write while set
      write_failures   {write number: exception} for individual writes
      write_gates      {write number: asyncio.Event} awaited before that write completes
    """

    def __init__(self):
        self.rows: dict[ItemKind, dict[str, Item]] = {kind: {} for kind in ItemKind}
        self.calls: Counter = Counter()
        self.fail_reads: Optional[Exception] = None
        self.on_read: Optional[Callable[[str, ItemKind], None]] = None
        self.fail_writes: Optional[Exception] = None
        self.write_failures: dict[int, Exception] = {}
        self.write_gates: dict[int, asyncio.Event] = {}
        self.writes = 0

    # ── helpers for tests ──

    def add(self, *items: Item) -> None:
        for item in items:
            self.rows[item.kind][item.id] = dataclasses.replace(item)

    def row(self, kind: ItemKind, item_id: str) -> Optional[Item]:
        return self.rows[kind].get(item_id)

    def set_fields(self, kind: ItemKind, item_id: str, **changes) -> None:
        self.rows[kind][item_id] = dataclasses.replace(self.rows[kind][item_id], **changes)

    # ── reads ──

    async def _before_read(self, method: str, kind: ItemKind) -> None:
        self.calls[(method, kind)] += 1
        await asyncio.sleep(0)
        if self.on_read is not None:
            self.on_read(method, kind)
        if self.fail_reads is not None:
            raise self.fail_reads

    async def list_items(
        self,
        kind,
        owner_id,
        *,
        since=None,
        until=None,
        anchor=DateAnchor.CREATED,
        include_archived=False,
        newest_first=True,
        limit=None,
    ):
        await self._before_read("list_items", kind)

        def stamp(item):
            if anchor == DateAnchor.DUE and isinstance(item, Task) and item.due_date:
                return as_utc(item.due_date)
            return as_utc(item.created_at)

        result = []
        for item in self.rows[kind].values():
            if item.owner_id != owner_id:
                continue
            if isinstance(item, Note) and item.is_archived and not include_archived:
                continue
            if since is not None and stamp(item) < since:
                continue
            if until is not None and stamp(item) >= until:
                continue
            result.append(dataclasses.replace(item))
        result.sort(key=stamp, reverse=newest_first)
        return result[:limit] if limit is not None else result

    async def get_item(self, kind, item_id):
        await self._before_read("get_item", kind)
        item = self.rows[kind].get(item_id)
        return dataclasses.replace(item) if item else None

    async def list_children(self, kind, recording_id):
        await self._before_read("list_children", kind)
        result = [
            dataclasses.replace(item) for item in self.rows[kind].values()
            if item.source_recording_id == recording_id
            and not (isinstance(item, Note) and item.is_archived)
        ]
        result.sort(key=lambda i: as_utc(i.created_at))
        return result

    # ── writes ──

    async def _before_write(self, method: str, kind: ItemKind) -> None:
        number = self.writes
        self.writes += 1
        self.calls[(method, kind)] += 1
        gate = self.write_gates.get(number)
        if gate is not None:
            await gate.wait()
        else:
            await asyncio.sleep(0)
        if number in self.write_failures:
            raise self.write_failures[number]
        if self.fail_writes is not None:
            raise self.fail_writes

    async def insert_item(self, item):
        await self._before_write("insert_item", item.kind)
        self.rows[item.kind][item.id] = dataclasses.replace(item)
        return dataclasses.replace(item)

    async def update_item(self, kind, item_id, changes):
        await self._before_write("update_item", kind)
        if item_id not in self.rows[kind]:
            raise StaleReference(kind.value, item_id)
        self.rows[kind][item_id] = dataclasses.replace(self.rows[kind][item_id], **changes)
        return dataclasses.replace(self.rows[kind][item_id])

    async def delete_item(self, kind, item_id):
        await self._before_write("delete_item", kind)
        if self.rows[kind].pop(item_id, None) is None:
            raise StaleReference(kind.value, item_id)


@pytest.fixture
def gateway():
    return FakeGateway()


@pytest.fixture
def now():
    return datetime(2024, 1, 10, 21, 0, tzinfo=timezone.utc)


@pytest.fixture
def clock(now):
    return lambda: now
