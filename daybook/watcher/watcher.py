"""
ProcessingWatcher: follows a recording until server-side enrichment lands.

State machine:
  IDLE ──watch(unprocessed)──► POLLING
  IDLE ──watch(processed)──► SETTLED
  POLLING ──(poll sees is_processed)──► CATCHING_UP    (interval loop ends for good)
  POLLING ──(stall timeout, if set)──► STALLED
  POLLING | STALLED ──refresh() sees is_processed──► CATCHING_UP
  CATCHING_UP ──(last one-shot poll done)──► SETTLED
  any ──reprocess()──► POLLING
  any ──close()──► CLOSED

While POLLING, the recording row and its derived tasks/notes are re-read every
poll_interval_seconds. Derived rows can lag the parent flag, so the flip is
followed by a fixed set of one-shot child polls (catch_up_delays). Each successful
child poll replaces the cached children by id; archived or deleted rows drop out.

Every timer is an asyncio task owned by the watcher. Changing the watched id,
reprocessing or closing cancels them all.
"""
from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import Any, Awaitable, Callable, Coroutine, Optional

from ..config import WatcherConfig
from ..errors import EnrichmentError, ProcessingStall, StaleReference, TransientFetchError
from ..storage.gateway import DataGateway, EnrichmentService
from ..storage.models import ItemKind, Note, ProcessingState, Recording, Task

logger = logging.getLogger(__name__)


class WatcherPhase(Enum):
    IDLE = auto()
    POLLING = auto()
    CATCHING_UP = auto()    # flip observed, one-shot child polls pending
    SETTLED = auto()
    STALLED = auto()        # stall timeout exceeded; reprocess() or a processed refresh() moves on
    CLOSED = auto()


@dataclass
class WatchSnapshot:
    recording: Optional[Recording]
    tasks: list[Task] = field(default_factory=list)
    notes: list[Note] = field(default_factory=list)
    phase: WatcherPhase = WatcherPhase.IDLE

    @property
    def state(self) -> ProcessingState:
        if self.recording is None:
            return ProcessingState.UNPROCESSED
        return self.recording.processing_state


class ProcessingWatcher:
    def __init__(
        self,
        gateway: DataGateway,
        config: Optional[WatcherConfig] = None,
        *,
        enrichment: Optional[EnrichmentService] = None,
        on_update: Optional[Callable[[WatchSnapshot], None]] = None,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.gateway = gateway
        self.config = config or WatcherConfig()
        self.enrichment = enrichment
        self.on_update = on_update
        self._sleep = sleep
        self._clock = clock

        self._phase = WatcherPhase.IDLE
        self._recording_id: Optional[str] = None
        self._recording: Optional[Recording] = None
        self._tasks: dict[str, Task] = {}
        self._notes: dict[str, Note] = {}
        self._timers: set[asyncio.Task] = set()
        self._generation = 0
        self._catch_ups_left = 0
        self.stall: Optional[ProcessingStall] = None

    # ── Public surface ────────────────────────────────────────────────────────

    @property
    def phase(self) -> WatcherPhase:
        return self._phase

    @property
    def recording_id(self) -> Optional[str]:
        return self._recording_id

    @property
    def active_timers(self) -> int:
        return sum(1 for t in self._timers if not t.done())

    @property
    def snapshot(self) -> WatchSnapshot:
        return WatchSnapshot(
            recording=self._recording,
            tasks=list(self._tasks.values()),
            notes=list(self._notes.values()),
            phase=self._phase,
        )

    async def watch(self, recording_id: str) -> Optional[WatchSnapshot]:
        """
        Start following a recording, dropping whatever was watched before.

        The initial fetch propagates TransientFetchError. Returns None if the
        recording does not exist.
        """
        self._ensure_open()
        self._reset(recording_id)
        generation = self._generation

        recording = await self.gateway.get_item(ItemKind.RECORDING, recording_id)
        if generation != self._generation:
            return None
        if recording is None:
            logger.info(f"Recording {recording_id} not found, nothing to watch")
            self._enter_phase(WatcherPhase.IDLE)
            return None

        self._recording = recording
        await self._fetch_children(generation, propagate=True)
        if generation != self._generation:
            return None

        if recording.is_processed:
            self._enter_phase(WatcherPhase.SETTLED)
        else:
            self._arm_polling()
        self._notify()
        return self.snapshot

    async def refresh(self) -> Optional[WatchSnapshot]:
        """
        Caller-initiated full re-read. Propagates TransientFetchError.

        A flip seen here while POLLING or STALLED starts the catch-up polls.
        """
        self._ensure_open()
        if self._recording_id is None:
            return None
        generation = self._generation
        recording = await self.gateway.get_item(ItemKind.RECORDING, self._recording_id)
        if generation != self._generation:
            return None
        if recording is None:
            self._gone()
            return None
        self._recording = recording
        await self._fetch_children(generation, propagate=True)
        if generation != self._generation:
            return None
        if recording.is_processed and self._phase in (WatcherPhase.POLLING, WatcherPhase.STALLED):
            self._cancel_timers()
            self._generation += 1
            self.stall = None
            self._begin_catch_up(self._generation)
        self._notify()
        return self.snapshot

    async def reprocess(self) -> Optional[WatchSnapshot]:
        """
        Force the recording back to unprocessed, ask the enrichment service to
        redo it and re-arm polling.

        A failed reprocess request is logged and raised as EnrichmentError;
        polling stays armed either way.
        """
        self._ensure_open()
        if self._recording_id is None:
            raise RuntimeError("no recording is being watched")
        recording_id = self._recording_id

        try:
            updated = await self.gateway.update_item(
                ItemKind.RECORDING, recording_id, {"is_processed": False}
            )
        except StaleReference:
            self._gone()
            return None
        if recording_id != self._recording_id or self._phase == WatcherPhase.CLOSED:
            return None

        self._cancel_timers()
        self._generation += 1
        self._recording = updated
        self._tasks.clear()
        self._notes.clear()
        self.stall = None
        self._arm_polling()
        self._notify()

        if self.enrichment is not None:
            try:
                await self.enrichment.request_reprocess(recording_id, updated.audio_url)
            except EnrichmentError as exc:
                logger.warning(f"Reprocess request for {recording_id} failed: {exc}")
                raise
        logger.info(f"Reprocessing recording {recording_id}")
        return self.snapshot

    async def close(self) -> None:
        if self._phase == WatcherPhase.CLOSED:
            return
        timers = self._cancel_timers()
        self._generation += 1
        self._enter_phase(WatcherPhase.CLOSED)
        if timers:
            await asyncio.gather(*timers, return_exceptions=True)

    async def drain(self) -> None:
        """Wait until no timer is outstanding (settled, stalled, gone or closed)."""
        while self._timers:
            await asyncio.gather(*list(self._timers), return_exceptions=True)

    async def __aenter__(self) -> "ProcessingWatcher":
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        await self.close()

    # ── State machine ─────────────────────────────────────────────────────────

    def _enter_phase(self, phase: WatcherPhase) -> None:
        if phase != self._phase:
            logger.debug(f"Watcher {self._recording_id}: {self._phase.name} → {phase.name}")
        self._phase = phase

    def _ensure_open(self) -> None:
        if self._phase == WatcherPhase.CLOSED:
            raise RuntimeError("watcher is closed")

    def _reset(self, recording_id: str) -> None:
        self._cancel_timers()
        self._generation += 1
        self._recording_id = recording_id
        self._recording = None
        self._tasks.clear()
        self._notes.clear()
        self._catch_ups_left = 0
        self.stall = None
        self._enter_phase(WatcherPhase.IDLE)

    def _gone(self) -> None:
        logger.info(f"Recording {self._recording_id} no longer exists, stopping watcher")
        self._cancel_timers()
        self._generation += 1
        self._recording = None
        self._enter_phase(WatcherPhase.IDLE)
        self._notify()

    def _arm_polling(self) -> None:
        self._enter_phase(WatcherPhase.POLLING)
        self._spawn(self._poll_loop(self._generation))

    def _begin_catch_up(self, generation: int) -> None:
        delays = list(self.config.catch_up_delays)
        if not delays:
            self._enter_phase(WatcherPhase.SETTLED)
            return
        logger.info(
            f"Recording {self._recording_id} processed, "
            f"{len(delays)} catch-up poll(s) scheduled"
        )
        self._enter_phase(WatcherPhase.CATCHING_UP)
        self._catch_ups_left = len(delays)
        for delay in delays:
            self._spawn(self._catch_up(generation, delay))

    async def _poll_loop(self, generation: int) -> None:
        started = self._clock()
        timeout = self.config.stall_timeout_seconds
        while generation == self._generation:
            await self._sleep(self.config.poll_interval_seconds)
            if generation != self._generation:
                return

            waited = self._clock() - started
            if timeout and waited >= timeout:
                self.stall = ProcessingStall(self._recording_id, waited)
                logger.warning(str(self.stall))
                self._enter_phase(WatcherPhase.STALLED)
                self._notify()
                return

            try:
                recording = await self.gateway.get_item(ItemKind.RECORDING, self._recording_id)
            except TransientFetchError as exc:
                logger.warning(f"Poll of recording {self._recording_id} failed: {exc}")
                continue
            if generation != self._generation:
                return
            if recording is None:
                self._gone()
                return

            self._recording = recording
            await self._fetch_children(generation)
            if generation != self._generation:
                return
            self._notify()

            if recording.is_processed:
                # Interval polling stops here for good
                self._begin_catch_up(generation)
                return

    async def _catch_up(self, generation: int, delay: float) -> None:
        await self._sleep(delay)
        if generation != self._generation:
            return
        await self._fetch_children(generation)
        if generation != self._generation:
            return
        self._catch_ups_left -= 1
        if self._catch_ups_left <= 0:
            self._enter_phase(WatcherPhase.SETTLED)
        self._notify()

    async def _fetch_children(self, generation: int, propagate: bool = False) -> None:
        try:
            tasks, notes = await asyncio.gather(
                self.gateway.list_children(ItemKind.TASK, self._recording_id),
                self.gateway.list_children(ItemKind.NOTE, self._recording_id),
            )
        except TransientFetchError as exc:
            if propagate:
                raise
            logger.warning(f"Child poll of recording {self._recording_id} failed: {exc}")
            return
        if generation != self._generation:
            return
        _sync(self._tasks, tasks)
        _sync(self._notes, notes)

    # ── Timers ────────────────────────────────────────────────────────────────

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._timers.add(task)
        task.add_done_callback(self._timer_done)
        return task

    def _timer_done(self, task: asyncio.Task) -> None:
        self._timers.discard(task)
        if task.cancelled():
            return
        exc = task.exception()
        if exc is not None:
            logger.error(f"Watcher timer failed: {exc}", exc_info=exc)

    def _cancel_timers(self) -> list[asyncio.Task]:
        timers = list(self._timers)
        for task in timers:
            task.cancel()
        self._timers.clear()
        return timers

    def _notify(self) -> None:
        if self.on_update is not None:
            self.on_update(self.snapshot)


def _sync(cache: dict, rows: list) -> None:
    """Latest row wins and first-seen position is kept; ids no longer returned are dropped."""
    seen = {row.id for row in rows}
    for stale in [key for key in cache if key not in seen]:
        del cache[stale]
    for row in rows:
        cache[row.id] = row
