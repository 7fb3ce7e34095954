"""Tests for daybook.related.people."""

from datetime import datetime, timedelta, timezone

import pytest

from daybook.errors import TransientFetchError
from daybook.related.people import known_people, mentions, person_profile
from daybook.storage.models import ItemKind, Note, Recording, Task, TaskStatus

UTC = timezone.utc
OWNER = "user-1"
BASE = datetime(2024, 1, 10, 9, tzinfo=UTC)


def recording(people, hours=0, owner=OWNER):
    return Recording(owner, "https://cdn.example.com/memo.m4a", extracted_people=people,
                     is_processed=True, created_at=BASE + timedelta(hours=hours))


def test_mentions_ignores_case_and_padding():
    r = recording([" Ana ", "Ben"])
    assert mentions(r, "ana")
    assert mentions(r, "BEN ")
    assert not mentions(r, "An")


def test_known_people_most_mentioned_first():
    recordings = [
        recording(["Ben", "Ana"]),
        recording(["ana", "Ana"]),
        recording(["Cleo", ""]),
    ]
    assert known_people(recordings) == [("Ana", 2), ("Ben", 1), ("Cleo", 1)]


class TestPersonProfile:
    @pytest.mark.asyncio
    async def test_collects_children_newest_first(self, gateway):
        older = recording(["Ana"], hours=0)
        newer = recording(["Ana", "Ben"], hours=2)
        unrelated = recording(["Ben"], hours=3)
        first = Task(OWNER, "Send Ana the deck", source_recording_id=older.id, created_at=BASE)
        second = Task(OWNER, "Book lunch", source_recording_id=newer.id, created_at=BASE + timedelta(hours=2),
                      status=TaskStatus.COMPLETED)
        kept = Note(OWNER, "Ana likes oat milk", source_recording_id=older.id, created_at=BASE)
        archived = Note(OWNER, "Old note", source_recording_id=newer.id, created_at=BASE, is_archived=True)
        elsewhere = Task(OWNER, "Ben's thing", source_recording_id=unrelated.id, created_at=BASE)
        gateway.add(older, newer, unrelated, first, second, kept, archived, elsewhere)

        profile = await person_profile(gateway, OWNER, "ana")

        assert [r.id for r in profile.recordings] == [newer.id, older.id]
        assert [t.id for t in profile.tasks] == [second.id, first.id]
        assert [t.id for t in profile.pending_tasks] == [first.id]
        assert [n.id for n in profile.notes] == [kept.id]

    @pytest.mark.asyncio
    async def test_other_owners_recordings_ignored(self, gateway):
        theirs = recording(["Ana"], owner="someone-else")
        gateway.add(theirs, Task("someone-else", "Private", source_recording_id=theirs.id))

        profile = await person_profile(gateway, OWNER, "Ana")

        assert profile.recordings == []
        assert profile.tasks == []
        assert gateway.calls[("list_children", ItemKind.TASK)] == 0

    @pytest.mark.asyncio
    async def test_fetch_failure_propagates(self, gateway):
        gateway.add(recording(["Ana"]))

        def fail(method, kind):
            if method == "list_children":
                raise TransientFetchError("offline")

        gateway.on_read = fail
        with pytest.raises(TransientFetchError):
            await person_profile(gateway, OWNER, "Ana")
