"""
LocalView: the in-memory working copy the UI renders from.

Items are keyed by (kind, id). Every write to a key bumps that key's version,
so a late rollback can tell whether a newer change has landed since it
applied its own.
"""
from __future__ import annotations

from typing import Iterable, Optional

from ..storage.models import Item, ItemKind, Note, Recording, Task

Key = tuple[ItemKind, str]


class LocalView:
    def __init__(self) -> None:
        self._items: dict[Key, Item] = {}
        self._versions: dict[Key, int] = {}

    def load(
        self,
        tasks: Iterable[Task] = (),
        notes: Iterable[Note] = (),
        recordings: Iterable[Recording] = (),
    ) -> None:
        """Replace the whole view with a freshly fetched snapshot."""
        stale = set(self._items)
        self._items = {}
        for items in (tasks, notes, recordings):
            for item in items:
                self.put(item)
                stale.discard((item.kind, item.id))
        for key in stale:
            self._bump(key)

    def _bump(self, key: Key) -> int:
        self._versions[key] = self._versions.get(key, 0) + 1
        return self._versions[key]

    def get(self, kind: ItemKind, item_id: str) -> Optional[Item]:
        return self._items.get((kind, item_id))

    def put(self, item: Item) -> int:
        key = (item.kind, item.id)
        self._items[key] = item
        return self._bump(key)

    def remove(self, kind: ItemKind, item_id: str) -> int:
        key = (kind, item_id)
        self._items.pop(key, None)
        return self._bump(key)

    def version(self, kind: ItemKind, item_id: str) -> int:
        return self._versions.get((kind, item_id), 0)

    def of_kind(self, kind: ItemKind) -> list[Item]:
        return [item for (k, _), item in self._items.items() if k == kind]
