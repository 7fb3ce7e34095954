"""
People mentioned in recordings, and everything that came out of those recordings.

Names come from Recording.extracted_people, filled in by the enrichment
service. Matching is case-insensitive on the whole name.
"""
from __future__ import annotations

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from typing import Iterable

from ..storage.gateway import DataGateway
from ..storage.models import ItemKind, Note, Recording, Task, as_utc

logger = logging.getLogger(__name__)


@dataclass
class PersonProfile:
    name: str
    recordings: list[Recording] = field(default_factory=list)
    tasks: list[Task] = field(default_factory=list)
    notes: list[Note] = field(default_factory=list)

    @property
    def pending_tasks(self) -> list[Task]:
        return [t for t in self.tasks if not t.is_completed]


def mentions(recording: Recording, name: str) -> bool:
    wanted = name.strip().casefold()
    return any(p.strip().casefold() == wanted for p in recording.extracted_people)


def known_people(recordings: Iterable[Recording]) -> list[tuple[str, int]]:
    """(name, recordings mentioning it), most mentioned first, then by name."""
    counts: Counter = Counter()
    spelling: dict[str, str] = {}
    for recording in recordings:
        names: dict[str, str] = {}
        for person in recording.extracted_people:
            if person.strip():
                names.setdefault(person.strip().casefold(), person.strip())
        for key, person in names.items():
            spelling.setdefault(key, person)
            counts[key] += 1
    return sorted(
        ((spelling[key], n) for key, n in counts.items()),
        key=lambda pair: (-pair[1], pair[0].casefold()),
    )


def _newest_first(items: list) -> list:
    return sorted(items, key=lambda i: as_utc(i.created_at), reverse=True)


async def person_profile(gateway: DataGateway, owner_id: str, name: str) -> PersonProfile:
    """
    The owner's recordings mentioning `name` plus the tasks and non-archived
    notes derived from them, each list newest first.
    """
    recordings = await gateway.list_items(ItemKind.RECORDING, owner_id, newest_first=True)
    matched = [r for r in recordings if mentions(r, name)]
    profile = PersonProfile(name=name, recordings=_newest_first(matched))
    if not matched:
        return profile

    children = await asyncio.gather(*(
        gateway.list_children(kind, r.id)
        for r in matched
        for kind in (ItemKind.TASK, ItemKind.NOTE)
    ))
    tasks, notes = [], []
    for rows in children:
        for row in rows:
            if row.owner_id != owner_id:
                continue
            if isinstance(row, Task):
                tasks.append(row)
            elif isinstance(row, Note) and not row.is_archived:
                notes.append(row)

    profile.tasks = _newest_first(tasks)
    profile.notes = _newest_first(notes)
    logger.debug(
        f"{name}: {len(matched)} recording(s), {len(tasks)} task(s), {len(notes)} note(s)"
    )
    return profile
