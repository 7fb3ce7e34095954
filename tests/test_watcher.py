"""Tests for daybook.watcher.watcher."""

import asyncio
from datetime import datetime, timedelta, timezone
from unittest.mock import AsyncMock

import pytest

from daybook.config import WatcherConfig
from daybook.errors import EnrichmentError, TransientFetchError
from daybook.storage.models import ItemKind, Note, ProcessingState, Recording, Task
from daybook.watcher.watcher import ProcessingWatcher, WatcherPhase

UTC = timezone.utc
OWNER = "user-1"
CREATED = datetime(2024, 1, 10, 9, tzinfo=UTC)


def yielding_sleep(record):
    async def fake_sleep(delay):
        record.append(delay)
        await asyncio.sleep(0)
    return fake_sleep


def blocking_sleep(record):
    async def fake_sleep(delay):
        record.append(delay)
        await asyncio.Event().wait()
    return fake_sleep


def counting_hook(gateway, recording_id, on_get):
    """on_read hook calling on_get(n) on the n-th get_item of the recording."""
    count = 0

    def hook(method, kind):
        nonlocal count
        if method == "get_item" and kind == ItemKind.RECORDING:
            count += 1
            on_get(count)
    return hook


@pytest.fixture
def recording():
    return Recording(OWNER, "https://cdn.example.com/memo.m4a", duration_seconds=42, created_at=CREATED)


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def config():
    return WatcherConfig(poll_interval_seconds=2.0, catch_up_delays=[0.5, 1.5, 3.0])


class TestFlip:
    @pytest.mark.asyncio
    async def test_flip_stops_interval_and_fires_catch_ups(self, gateway, recording, sleeps, config):
        gateway.add(recording)

        def on_get(n):
            if n == 3:
                gateway.set_fields(ItemKind.RECORDING, recording.id, is_processed=True)

        gateway.on_read = counting_hook(gateway, recording.id, on_get)
        watcher = ProcessingWatcher(gateway, config, sleep=yielding_sleep(sleeps))

        snapshot = await watcher.watch(recording.id)
        assert snapshot.state == ProcessingState.UNPROCESSED
        assert watcher.phase == WatcherPhase.POLLING

        await watcher.drain()

        assert sleeps == [2.0, 2.0, 0.5, 1.5, 3.0]
        assert gateway.calls[("get_item", ItemKind.RECORDING)] == 3
        assert gateway.calls[("list_children", ItemKind.TASK)] == 6
        assert watcher.phase == WatcherPhase.SETTLED
        assert watcher.snapshot.state == ProcessingState.PROCESSED
        assert watcher.active_timers == 0

    @pytest.mark.asyncio
    async def test_catch_up_picks_up_lagging_children(self, gateway, recording, sleeps, config):
        gateway.add(recording)
        late_note = Note(OWNER, "Remember the budget", source_recording_id=recording.id, created_at=CREATED)
        flipped = False
        note_reads_after_flip = 0

        def on_get(n):
            nonlocal flipped
            if n == 2:
                gateway.set_fields(ItemKind.RECORDING, recording.id, is_processed=True)
                flipped = True

        def hook(method, kind):
            nonlocal note_reads_after_flip
            counter(method, kind)
            if flipped and method == "list_children" and kind == ItemKind.NOTE:
                note_reads_after_flip += 1
                # the flip poll itself misses it; the second catch-up sees it
                if note_reads_after_flip == 3:
                    gateway.add(late_note)

        counter = counting_hook(gateway, recording.id, on_get)
        gateway.on_read = hook
        watcher = ProcessingWatcher(gateway, config, sleep=yielding_sleep(sleeps))

        await watcher.watch(recording.id)
        await watcher.drain()

        assert [n.id for n in watcher.snapshot.notes] == [late_note.id]
        assert gateway.calls[("get_item", ItemKind.RECORDING)] == 2

    @pytest.mark.asyncio
    async def test_children_deduplicated_latest_wins(self, gateway, recording, sleeps, config):
        first = Task(OWNER, "draft", source_recording_id=recording.id, created_at=CREATED)
        second = Task(OWNER, "second", source_recording_id=recording.id, created_at=CREATED + timedelta(minutes=1))
        gateway.add(recording, first, second)

        def on_get(n):
            if n == 2:
                gateway.set_fields(ItemKind.TASK, first.id, text="final")
            if n == 3:
                gateway.set_fields(ItemKind.RECORDING, recording.id, is_processed=True)

        gateway.on_read = counting_hook(gateway, recording.id, on_get)
        watcher = ProcessingWatcher(gateway, config, sleep=yielding_sleep(sleeps))

        await watcher.watch(recording.id)
        await watcher.drain()

        tasks = watcher.snapshot.tasks
        assert [t.id for t in tasks] == [first.id, second.id]
        assert tasks[0].text == "final"

    @pytest.mark.asyncio
    async def test_archived_or_deleted_children_drop_out(self, gateway, recording, sleeps, config):
        kept = Task(OWNER, "keep me", source_recording_id=recording.id, created_at=CREATED)
        deleted = Task(OWNER, "delete me", source_recording_id=recording.id, created_at=CREATED)
        archived = Note(OWNER, "archive me", source_recording_id=recording.id, created_at=CREATED)
        gateway.add(recording, kept, deleted, archived)

        def on_get(n):
            if n == 2:
                gateway.set_fields(ItemKind.NOTE, archived.id, is_archived=True)
                del gateway.rows[ItemKind.TASK][deleted.id]
            if n == 3:
                gateway.set_fields(ItemKind.RECORDING, recording.id, is_processed=True)

        gateway.on_read = counting_hook(gateway, recording.id, on_get)
        watcher = ProcessingWatcher(gateway, config, sleep=yielding_sleep(sleeps))

        first = await watcher.watch(recording.id)
        assert len(first.tasks) == 2 and len(first.notes) == 1
        await watcher.drain()

        assert [t.id for t in watcher.snapshot.tasks] == [kept.id]
        assert watcher.snapshot.notes == []

    @pytest.mark.asyncio
    async def test_failed_child_poll_keeps_cached_children(self, gateway, recording, sleeps, config):
        child = Task(OWNER, "stay", source_recording_id=recording.id, created_at=CREATED)
        gateway.add(recording, child)

        def on_get(n):
            if n == 3:
                gateway.set_fields(ItemKind.RECORDING, recording.id, is_processed=True)

        def hook(method, kind):
            if method == "list_children" and gateway.calls[(method, kind)] == 2:
                raise TransientFetchError("blip")
            counter(method, kind)

        counter = counting_hook(gateway, recording.id, on_get)
        gateway.on_read = hook
        watcher = ProcessingWatcher(gateway, config, sleep=yielding_sleep(sleeps))

        await watcher.watch(recording.id)
        await watcher.drain()

        assert [t.id for t in watcher.snapshot.tasks] == [child.id]

    @pytest.mark.asyncio
    async def test_already_processed_settles_without_timers(self, gateway, recording, sleeps, config):
        recording.is_processed = True
        gateway.add(recording)
        watcher = ProcessingWatcher(gateway, config, sleep=yielding_sleep(sleeps))

        await watcher.watch(recording.id)

        assert watcher.phase == WatcherPhase.SETTLED
        assert watcher.active_timers == 0
        assert sleeps == []

    @pytest.mark.asyncio
    async def test_on_update_receives_snapshots(self, gateway, recording, sleeps, config):
        gateway.add(recording)
        gateway.on_read = counting_hook(
            gateway, recording.id,
            lambda n: n == 2 and gateway.set_fields(ItemKind.RECORDING, recording.id, is_processed=True),
        )
        updates = []
        watcher = ProcessingWatcher(gateway, config, on_update=updates.append, sleep=yielding_sleep(sleeps))

        await watcher.watch(recording.id)
        await watcher.drain()

        assert updates[0].phase == WatcherPhase.POLLING
        assert updates[-1].phase == WatcherPhase.SETTLED


class TestFailures:
    @pytest.mark.asyncio
    async def test_initial_fetch_failure_propagates(self, gateway, recording, config):
        gateway.add(recording)
        gateway.fail_reads = TransientFetchError("offline")
        watcher = ProcessingWatcher(gateway, config)

        with pytest.raises(TransientFetchError):
            await watcher.watch(recording.id)
        assert watcher.active_timers == 0

    @pytest.mark.asyncio
    async def test_poll_failure_keeps_polling(self, gateway, recording, sleeps, config):
        gateway.add(recording)

        def on_get(n):
            if n == 2:
                raise TransientFetchError("blip")
            if n == 4:
                gateway.set_fields(ItemKind.RECORDING, recording.id, is_processed=True)

        gateway.on_read = counting_hook(gateway, recording.id, on_get)
        watcher = ProcessingWatcher(gateway, config, sleep=yielding_sleep(sleeps))

        await watcher.watch(recording.id)
        await watcher.drain()

        assert sleeps[:3] == [2.0, 2.0, 2.0]
        assert watcher.phase == WatcherPhase.SETTLED

    @pytest.mark.asyncio
    async def test_missing_recording(self, gateway, config):
        watcher = ProcessingWatcher(gateway, config)

        assert await watcher.watch("nope") is None
        assert watcher.phase == WatcherPhase.IDLE
        assert watcher.active_timers == 0

    @pytest.mark.asyncio
    async def test_recording_deleted_while_polling(self, gateway, recording, sleeps, config):
        gateway.add(recording)

        def on_get(n):
            if n == 2:
                del gateway.rows[ItemKind.RECORDING][recording.id]

        gateway.on_read = counting_hook(gateway, recording.id, on_get)
        watcher = ProcessingWatcher(gateway, config, sleep=yielding_sleep(sleeps))

        await watcher.watch(recording.id)
        await watcher.drain()

        assert watcher.phase == WatcherPhase.IDLE
        assert watcher.snapshot.recording is None
        assert watcher.active_timers == 0

    @pytest.mark.asyncio
    async def test_stall_timeout(self, gateway, recording, sleeps):
        gateway.add(recording)
        ticks = iter(range(0, 1000, 10))
        config = WatcherConfig(poll_interval_seconds=2.0, stall_timeout_seconds=25)
        watcher = ProcessingWatcher(
            gateway, config, sleep=yielding_sleep(sleeps), clock=lambda: next(ticks)
        )

        await watcher.watch(recording.id)
        await watcher.drain()

        assert watcher.phase == WatcherPhase.STALLED
        assert watcher.stall.recording_id == recording.id
        assert watcher.stall.waited_seconds == 30
        # initial fetch plus two polls before the third tick crossed the limit
        assert gateway.calls[("get_item", ItemKind.RECORDING)] == 3

    @pytest.mark.asyncio
    async def test_no_stall_timeout_by_default(self):
        assert WatcherConfig().stall_timeout_seconds == 0


class TestTimers:
    @pytest.mark.asyncio
    async def test_changing_recording_cancels_timers(self, gateway, recording, sleeps, config):
        other = Recording(OWNER, "https://cdn.example.com/other.m4a", created_at=CREATED)
        gateway.add(recording, other)
        watcher = ProcessingWatcher(gateway, config, sleep=blocking_sleep(sleeps))

        await watcher.watch(recording.id)
        old_timers = list(watcher._timers)
        await watcher.watch(other.id)
        await asyncio.sleep(0)

        assert all(t.cancelled() for t in old_timers)
        assert watcher.active_timers == 1
        assert watcher.recording_id == other.id
        await watcher.close()

    @pytest.mark.asyncio
    async def test_close_cancels_everything(self, gateway, recording, sleeps, config):
        gateway.add(recording)
        watcher = ProcessingWatcher(gateway, config, sleep=blocking_sleep(sleeps))

        await watcher.watch(recording.id)
        timers = list(watcher._timers)
        await watcher.close()

        assert all(t.done() for t in timers)
        assert watcher.active_timers == 0
        assert watcher.phase == WatcherPhase.CLOSED
        with pytest.raises(RuntimeError):
            await watcher.watch(recording.id)

    @pytest.mark.asyncio
    async def test_context_manager_closes(self, gateway, recording, sleeps, config):
        gateway.add(recording)
        async with ProcessingWatcher(gateway, config, sleep=blocking_sleep(sleeps)) as watcher:
            await watcher.watch(recording.id)
            assert watcher.active_timers == 1
        assert watcher.active_timers == 0
        assert watcher.phase == WatcherPhase.CLOSED


class TestReprocess:
    @pytest.mark.asyncio
    async def test_reprocess_resets_and_rearms(self, gateway, recording, sleeps, config):
        recording.is_processed = True
        child = Task(OWNER, "old extraction", source_recording_id=recording.id, created_at=CREATED)
        gateway.add(recording, child)
        enrichment = AsyncMock()
        watcher = ProcessingWatcher(gateway, config, enrichment=enrichment, sleep=blocking_sleep(sleeps))

        await watcher.watch(recording.id)
        assert len(watcher.snapshot.tasks) == 1

        snapshot = await watcher.reprocess()

        assert gateway.row(ItemKind.RECORDING, recording.id).is_processed is False
        assert snapshot.state == ProcessingState.UNPROCESSED
        assert snapshot.tasks == []
        assert watcher.phase == WatcherPhase.POLLING
        enrichment.request_reprocess.assert_awaited_once_with(recording.id, recording.audio_url)
        await watcher.close()

    @pytest.mark.asyncio
    async def test_reprocess_after_stall_clears_it(self, gateway, recording, sleeps):
        gateway.add(recording)
        ticks = iter(range(0, 1000, 10))
        config = WatcherConfig(poll_interval_seconds=2.0, stall_timeout_seconds=5)
        watcher = ProcessingWatcher(
            gateway, config, sleep=yielding_sleep(sleeps), clock=lambda: next(ticks)
        )
        await watcher.watch(recording.id)
        await watcher.drain()
        assert watcher.phase == WatcherPhase.STALLED

        await watcher.reprocess()
        assert watcher.stall is None
        assert watcher.phase == WatcherPhase.POLLING
        await watcher.close()

    @pytest.mark.asyncio
    async def test_enrichment_failure_raises_but_keeps_polling(self, gateway, recording, sleeps, config):
        gateway.add(recording)
        enrichment = AsyncMock()
        enrichment.request_reprocess.side_effect = EnrichmentError("503")
        watcher = ProcessingWatcher(gateway, config, enrichment=enrichment, sleep=blocking_sleep(sleeps))
        await watcher.watch(recording.id)

        with pytest.raises(EnrichmentError):
            await watcher.reprocess()

        assert watcher.phase == WatcherPhase.POLLING
        assert watcher.active_timers == 1
        await watcher.close()

    @pytest.mark.asyncio
    async def test_reprocess_without_watch(self, gateway, config):
        watcher = ProcessingWatcher(gateway, config)
        with pytest.raises(RuntimeError):
            await watcher.reprocess()


class TestRefresh:
    @pytest.mark.asyncio
    async def test_refresh_sees_flip_while_polling(self, gateway, recording, sleeps, config):
        gateway.add(recording)
        watcher = ProcessingWatcher(gateway, config, sleep=blocking_sleep(sleeps))
        await watcher.watch(recording.id)
        assert watcher.phase == WatcherPhase.POLLING

        gateway.set_fields(ItemKind.RECORDING, recording.id, is_processed=True)
        snapshot = await watcher.refresh()

        assert snapshot.state == ProcessingState.PROCESSED
        assert watcher.phase == WatcherPhase.CATCHING_UP
        assert watcher.active_timers == len(config.catch_up_delays)
        await watcher.close()

    @pytest.mark.asyncio
    async def test_refresh_after_stall_resumes_catch_up(self, gateway, recording, sleeps):
        gateway.add(recording)
        ticks = iter(range(0, 1000, 10))
        config = WatcherConfig(poll_interval_seconds=2.0, stall_timeout_seconds=5, catch_up_delays=[0.5])
        watcher = ProcessingWatcher(
            gateway, config, sleep=yielding_sleep(sleeps), clock=lambda: next(ticks)
        )
        await watcher.watch(recording.id)
        await watcher.drain()
        assert watcher.phase == WatcherPhase.STALLED

        gateway.set_fields(ItemKind.RECORDING, recording.id, is_processed=True)
        await watcher.refresh()
        assert watcher.stall is None
        assert watcher.phase == WatcherPhase.CATCHING_UP

        await watcher.drain()
        assert watcher.phase == WatcherPhase.SETTLED

    @pytest.mark.asyncio
    async def test_refresh_while_unprocessed_keeps_polling(self, gateway, recording, sleeps, config):
        gateway.add(recording)
        watcher = ProcessingWatcher(gateway, config, sleep=blocking_sleep(sleeps))
        await watcher.watch(recording.id)

        await watcher.refresh()

        assert watcher.phase == WatcherPhase.POLLING
        assert watcher.active_timers == 1
        await watcher.close()

    @pytest.mark.asyncio
    async def test_refresh_of_deleted_recording(self, gateway, recording, sleeps, config):
        gateway.add(recording)
        watcher = ProcessingWatcher(gateway, config, sleep=blocking_sleep(sleeps))
        await watcher.watch(recording.id)
        del gateway.rows[ItemKind.RECORDING][recording.id]

        assert await watcher.refresh() is None
        assert watcher.phase == WatcherPhase.IDLE
        assert watcher.active_timers == 0

    @pytest.mark.asyncio
    async def test_refresh_without_watch(self, gateway, config):
        watcher = ProcessingWatcher(gateway, config)
        assert await watcher.refresh() is None
