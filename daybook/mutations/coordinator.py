"""
MutationCoordinator: every user-initiated change to an item goes through here.

Each mutation snapshots the item, applies the new state to the LocalView
straight away, then writes through the DataGateway. A failed write rolls the
view back and raises MutationRejected. A write against a row the store no
longer has drops the item from the view and returns None.

Two mutations on the same item are not serialized. Rollback compares the
view's version for the item against the one it produced: if nothing newer
landed, the snapshot is restored wholesale; otherwise only the fields still
holding this mutation's values are reverted.
"""
from __future__ import annotations

import asyncio
import dataclasses
import logging
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Awaitable, Callable, Optional

from ..errors import MutationRejected, StaleReference
from ..extraction.auto_tags import auto_tags
from ..storage.gateway import DataGateway
from ..storage.models import (
    Item,
    ItemKind,
    Note,
    Recording,
    Task,
    TaskPriority,
    TaskStatus,
    utcnow,
)
from .view import LocalView

logger = logging.getLogger(__name__)

# Fields that must be reverted together or not at all
_LINKED_FIELDS = (("status", "completed_at"),)

_ROUTES = {
    ItemKind.TASK: "/task/{id}",
    ItemKind.NOTE: "/note/{id}",
    ItemKind.RECORDING: "/entry/{id}",
}


@dataclass(frozen=True)
class UndoSlot:
    """Pre-completion snapshot of the most recently completed task."""
    task_id: str
    snapshot: Task
    recorded_at: datetime

    def expired(self, now: datetime, window_seconds: float) -> bool:
        return now - self.recorded_at > timedelta(seconds=window_seconds)


def view_target(item: Item) -> str:
    """Detail route for an item. Pure; never touches state."""
    return _ROUTES[item.kind].format(id=item.id)


def _changed_groups(before: Item, after: Item) -> list[tuple[str, ...]]:
    changed = [
        f.name for f in dataclasses.fields(before)
        if getattr(before, f.name) != getattr(after, f.name)
    ]
    groups: list[tuple[str, ...]] = []
    seen: set[str] = set()
    for name in changed:
        if name in seen:
            continue
        group = next((g for g in _LINKED_FIELDS if name in g), (name,))
        groups.append(group)
        seen.update(group)
    return groups


class MutationCoordinator:
    def __init__(
        self,
        gateway: DataGateway,
        view: Optional[LocalView] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        self.gateway = gateway
        self.view = view if view is not None else LocalView()
        self.clock = clock
        self.undo: Optional[UndoSlot] = None

    # ------------------------------------------------------------------
    # Core apply / rollback
    # ------------------------------------------------------------------

    def _require(self, kind: ItemKind, item_id: str) -> Item:
        item = self.view.get(kind, item_id)
        if item is None:
            raise KeyError(f"{kind.value} {item_id} is not in the local view")
        return item

    async def _apply(
        self,
        action: str,
        kind: ItemKind,
        item_id: str,
        before: Optional[Item],
        after: Optional[Item],
        write: Callable[[], Awaitable[Any]],
    ) -> Optional[Item]:
        if after is not None:
            applied = self.view.put(after)
        else:
            applied = self.view.remove(kind, item_id)

        try:
            await write()
        except StaleReference:
            logger.info(f"{action}: {kind.value} {item_id} no longer exists, dropping it")
            self.view.remove(kind, item_id)
            return None
        except asyncio.CancelledError:
            self._rollback(kind, item_id, before, after, applied)
            raise
        except Exception as exc:
            self._rollback(kind, item_id, before, after, applied)
            logger.warning(f"{action} on {kind.value} {item_id} failed, rolled back: {exc}")
            raise MutationRejected(action, kind.value, item_id, reason=str(exc)) from exc

        return after

    def _rollback(
        self,
        kind: ItemKind,
        item_id: str,
        before: Optional[Item],
        after: Optional[Item],
        applied: int,
    ) -> None:
        if self.view.version(kind, item_id) == applied:
            if before is not None:
                self.view.put(before)
            else:
                self.view.remove(kind, item_id)
            return

        # A newer mutation touched the item after ours was applied
        current = self.view.get(kind, item_id)
        if current is None or before is None or after is None:
            if before is None and current is not None and current == after:
                self.view.remove(kind, item_id)
            return

        reverts: dict[str, Any] = {}
        for group in _changed_groups(before, after):
            if all(getattr(current, name) == getattr(after, name) for name in group):
                reverts.update({name: getattr(before, name) for name in group})
        if reverts:
            logger.debug(f"Merging rollback of {kind.value} {item_id}: {sorted(reverts)}")
            self.view.put(dataclasses.replace(current, **reverts))

    async def _update(
        self, action: str, before: Item, changes: dict[str, Any]
    ) -> Optional[Item]:
        after = dataclasses.replace(before, **changes)
        return await self._apply(
            action,
            before.kind,
            before.id,
            before,
            after,
            lambda: self.gateway.update_item(before.kind, before.id, changes),
        )

    # ------------------------------------------------------------------
    # Tasks
    # ------------------------------------------------------------------

    async def set_task_status(self, task_id: str, status: TaskStatus) -> Optional[Task]:
        before = self._require(ItemKind.TASK, task_id)
        if before.status == status:
            return before
        now = self.clock()
        after = before.with_status(status, now)
        result = await self._update(
            "set_status",
            before,
            {"status": after.status, "completed_at": after.completed_at},
        )
        if result is not None and result.is_completed:
            self.undo = UndoSlot(task_id, before, now)
        return result

    async def toggle_task(self, task_id: str) -> Optional[Task]:
        task = self._require(ItemKind.TASK, task_id)
        target = TaskStatus.PENDING if task.is_completed else TaskStatus.COMPLETED
        return await self.set_task_status(task_id, target)

    async def complete_task(self, task_id: str) -> Optional[Task]:
        return await self.set_task_status(task_id, TaskStatus.COMPLETED)

    async def undo_last_completion(self) -> Optional[Task]:
        """Re-apply the snapshot held in the undo slot, then clear the slot."""
        slot, self.undo = self.undo, None
        if slot is None:
            return None
        current = self.view.get(ItemKind.TASK, slot.task_id)
        if current is None:
            logger.info(f"Undo target task {slot.task_id} is gone")
            return None
        changes = {"status": slot.snapshot.status, "completed_at": slot.snapshot.completed_at}
        return await self._update("undo_completion", current, changes)

    async def reschedule_task(
        self, task_id: str, due_date: Optional[datetime]
    ) -> Optional[Task]:
        before = self._require(ItemKind.TASK, task_id)
        return await self._update("reschedule", before, {"due_date": due_date})

    async def insert_task(
        self,
        owner_id: str,
        text: str,
        *,
        due_date: Optional[datetime] = None,
        priority: TaskPriority = TaskPriority.MEDIUM,
        tags: Optional[list[str]] = None,
        source_recording_id: Optional[str] = None,
    ) -> Optional[Task]:
        task = Task(
            owner_id=owner_id,
            text=text.strip(),
            priority=priority,
            due_date=due_date,
            tags=auto_tags(text) if tags is None else list(tags),
            source_recording_id=source_recording_id,
            created_at=self.clock(),
        )
        return await self._insert(task)

    # ------------------------------------------------------------------
    # Notes
    # ------------------------------------------------------------------

    async def insert_note(
        self,
        owner_id: str,
        text: str,
        *,
        tags: Optional[list[str]] = None,
        source_recording_id: Optional[str] = None,
    ) -> Optional[Note]:
        now = self.clock()
        note = Note(
            owner_id=owner_id,
            text=text.strip(),
            tags=auto_tags(text) if tags is None else list(tags),
            source_recording_id=source_recording_id,
            created_at=now,
            updated_at=now,
        )
        return await self._insert(note)

    async def update_note(
        self,
        note_id: str,
        *,
        text: Optional[str] = None,
        tags: Optional[list[str]] = None,
    ) -> Optional[Note]:
        before = self._require(ItemKind.NOTE, note_id)
        changes: dict[str, Any] = {"updated_at": self.clock()}
        if text is not None:
            changes["text"] = text.strip()
        if tags is not None:
            changes["tags"] = list(tags)
        return await self._update("update_note", before, changes)

    async def archive_note(self, note_id: str) -> Optional[Note]:
        return await self._set_archived(note_id, True)

    async def unarchive_note(self, note_id: str) -> Optional[Note]:
        return await self._set_archived(note_id, False)

    async def _set_archived(self, note_id: str, archived: bool) -> Optional[Note]:
        before = self._require(ItemKind.NOTE, note_id)
        if before.is_archived == archived:
            return before
        return await self._update(
            "archive" if archived else "unarchive",
            before,
            {"is_archived": archived, "updated_at": self.clock()},
        )

    async def convert_note_to_task(
        self, note_id: str, *, due_date: Optional[datetime] = None
    ) -> Optional[Task]:
        """
        Insert a task carrying the note's text, then archive the note.

        Not transactional: if archiving fails after the insert succeeded, the
        task is kept, the note's local state is rolled back and
        MutationRejected is raised.
        """
        note = self._require(ItemKind.NOTE, note_id)
        task = Task(
            owner_id=note.owner_id,
            text=note.text,
            due_date=due_date,
            tags=list(note.tags),
            source_recording_id=note.source_recording_id,
            created_at=note.created_at,
        )
        inserted = await self._insert(task)
        await self.archive_note(note_id)
        return inserted

    # ------------------------------------------------------------------
    # Recordings
    # ------------------------------------------------------------------

    async def insert_recording(
        self,
        owner_id: str,
        audio_url: str,
        *,
        duration_seconds: int = 0,
        transcript: Optional[str] = None,
    ) -> Optional[Recording]:
        recording = Recording(
            owner_id=owner_id,
            audio_url=audio_url,
            duration_seconds=duration_seconds,
            transcript=transcript,
            created_at=self.clock(),
        )
        return await self._insert(recording)

    async def update_summary(self, recording_id: str, summary: str) -> Optional[Recording]:
        before = self._require(ItemKind.RECORDING, recording_id)
        return await self._update("update_summary", before, {"summary": summary.strip()})

    # ------------------------------------------------------------------
    # Generic
    # ------------------------------------------------------------------

    async def _insert(self, item: Item) -> Optional[Item]:
        return await self._apply(
            "insert",
            item.kind,
            item.id,
            None,
            item,
            lambda: self.gateway.insert_item(item),
        )

    async def delete_item(
        self, kind: ItemKind, item_id: str, *, permanent: bool = False
    ) -> Optional[Item]:
        """Notes are archived unless `permanent`; tasks and recordings are hard-deleted."""
        if kind == ItemKind.NOTE and not permanent:
            return await self.archive_note(item_id)
        before = self._require(kind, item_id)
        await self._apply(
            "delete",
            kind,
            item_id,
            before,
            None,
            lambda: self.gateway.delete_item(kind, item_id),
        )
        if self.undo is not None and self.undo.task_id == item_id:
            self.undo = None
        return None

    view_target = staticmethod(view_target)
