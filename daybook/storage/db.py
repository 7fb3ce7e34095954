"""
SQLite storage layer for daybook.

Implements the DataGateway protocol over a local database file so the CLI
works without a hosted backend. Uses WAL journal mode for better concurrent
read performance. Schema is applied automatically on startup.

Every public method is a coroutine; the blocking sqlite3 work runs in a
worker thread with its own connection.
"""
from __future__ import annotations

import asyncio
import json
import logging
import sqlite3
from contextlib import contextmanager
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Iterator, Optional

from ..errors import GatewayWriteError, StaleReference, TransientFetchError
from .gateway import DateAnchor
from .models import (
    Item,
    ItemKind,
    Note,
    Recording,
    Task,
    TaskPriority,
    TaskStatus,
    as_utc,
)

logger = logging.getLogger(__name__)

SCHEMA = """
PRAGMA journal_mode=WAL;

CREATE TABLE IF NOT EXISTS tasks (
    id                  TEXT PRIMARY KEY,
    owner_id            TEXT NOT NULL,
    text                TEXT NOT NULL,
    status              TEXT NOT NULL DEFAULT 'pending',
    priority            TEXT NOT NULL DEFAULT 'medium',
    due_date            TEXT,
    completed_at        TEXT,
    tags                TEXT NOT NULL DEFAULT '[]',
    source_recording_id TEXT,
    created_at          TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS notes (
    id                  TEXT PRIMARY KEY,
    owner_id            TEXT NOT NULL,
    text                TEXT NOT NULL,
    is_archived         INTEGER NOT NULL DEFAULT 0,
    tags                TEXT NOT NULL DEFAULT '[]',
    source_recording_id TEXT,
    created_at          TEXT NOT NULL,
    updated_at          TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS recordings (
    id                  TEXT PRIMARY KEY,
    owner_id            TEXT NOT NULL,
    audio_url           TEXT NOT NULL DEFAULT '',
    duration_seconds    INTEGER NOT NULL DEFAULT 0,
    transcript          TEXT,
    summary             TEXT,
    tags                TEXT NOT NULL DEFAULT '[]',
    extracted_people    TEXT NOT NULL DEFAULT '[]',
    is_processed        INTEGER NOT NULL DEFAULT 0,
    source_recording_id TEXT,
    created_at          TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_tasks_owner      ON tasks(owner_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_tasks_source     ON tasks(source_recording_id);
CREATE INDEX IF NOT EXISTS idx_notes_owner      ON notes(owner_id, created_at DESC);
CREATE INDEX IF NOT EXISTS idx_notes_source     ON notes(source_recording_id);
CREATE INDEX IF NOT EXISTS idx_recordings_owner ON recordings(owner_id, created_at DESC);
"""

_TABLES = {
    ItemKind.TASK: "tasks",
    ItemKind.NOTE: "notes",
    ItemKind.RECORDING: "recordings",
}

_COLUMNS = {
    ItemKind.TASK: (
        "id", "owner_id", "text", "status", "priority", "due_date",
        "completed_at", "tags", "source_recording_id", "created_at",
    ),
    ItemKind.NOTE: (
        "id", "owner_id", "text", "is_archived", "tags",
        "source_recording_id", "created_at", "updated_at",
    ),
    ItemKind.RECORDING: (
        "id", "owner_id", "audio_url", "duration_seconds", "transcript",
        "summary", "tags", "extracted_people", "is_processed",
        "source_recording_id", "created_at",
    ),
}

_JSON_COLUMNS = {"tags", "extracted_people"}


class SqliteGateway:
    def __init__(self, db_path: Path):
        self.db_path = db_path
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._apply_schema()

    # ------------------------------------------------------------------
    # Connection management
    # ------------------------------------------------------------------

    @contextmanager
    def _conn(self) -> Iterator[sqlite3.Connection]:
        conn = sqlite3.connect(str(self.db_path))
        conn.row_factory = sqlite3.Row
        try:
            yield conn
            conn.commit()
        except Exception:
            conn.rollback()
            raise
        finally:
            conn.close()

    def _apply_schema(self) -> None:
        with self._conn() as conn:
            conn.executescript(SCHEMA)

    async def _read(self, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except sqlite3.Error as exc:
            logger.warning(f"Read failed: {exc}")
            raise TransientFetchError(str(exc)) from exc

    async def _write(self, fn, *args, **kwargs):
        try:
            return await asyncio.to_thread(fn, *args, **kwargs)
        except sqlite3.Error as exc:
            logger.warning(f"Write failed: {exc}")
            raise GatewayWriteError(str(exc)) from exc

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    async def list_items(
        self,
        kind: ItemKind,
        owner_id: str,
        *,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        anchor: DateAnchor = DateAnchor.CREATED,
        include_archived: bool = False,
        newest_first: bool = True,
        limit: Optional[int] = None,
    ) -> list[Item]:
        return await self._read(
            self._list_items, kind, owner_id, since, until, anchor,
            include_archived, newest_first, limit,
        )

    def _list_items(
        self,
        kind: ItemKind,
        owner_id: str,
        since: Optional[datetime],
        until: Optional[datetime],
        anchor: DateAnchor,
        include_archived: bool,
        newest_first: bool,
        limit: Optional[int],
    ) -> list[Item]:
        stamp = "created_at"
        if anchor == DateAnchor.DUE and kind == ItemKind.TASK:
            stamp = "COALESCE(due_date, created_at)"

        clauses = ["owner_id = ?"]
        params: list = [owner_id]
        if since is not None:
            clauses.append(f"{stamp} >= ?")
            params.append(_ts(since))
        if until is not None:
            clauses.append(f"{stamp} < ?")
            params.append(_ts(until))
        if kind == ItemKind.NOTE and not include_archived:
            clauses.append("is_archived = 0")

        sql = (
            f"SELECT * FROM {_TABLES[kind]} WHERE {' AND '.join(clauses)} "
            f"ORDER BY {stamp} {'DESC' if newest_first else 'ASC'}"
        )
        if limit is not None:
            sql += " LIMIT ?"
            params.append(limit)

        with self._conn() as conn:
            rows = conn.execute(sql, params).fetchall()
            return [_row_to_item(kind, r) for r in rows]

    async def get_item(self, kind: ItemKind, item_id: str) -> Optional[Item]:
        return await self._read(self._get_item, kind, item_id)

    def _get_item(self, kind: ItemKind, item_id: str) -> Optional[Item]:
        with self._conn() as conn:
            row = conn.execute(
                f"SELECT * FROM {_TABLES[kind]} WHERE id = ?", (item_id,)
            ).fetchone()
            return _row_to_item(kind, row) if row else None

    async def list_children(self, kind: ItemKind, recording_id: str) -> list[Item]:
        return await self._read(self._list_children, kind, recording_id)

    def _list_children(self, kind: ItemKind, recording_id: str) -> list[Item]:
        sql = f"SELECT * FROM {_TABLES[kind]} WHERE source_recording_id = ?"
        if kind == ItemKind.NOTE:
            sql += " AND is_archived = 0"
        sql += " ORDER BY created_at ASC"
        with self._conn() as conn:
            rows = conn.execute(sql, (recording_id,)).fetchall()
            return [_row_to_item(kind, r) for r in rows]

    # ------------------------------------------------------------------
    # Writes
    # ------------------------------------------------------------------

    async def insert_item(self, item: Item) -> Item:
        return await self._write(self._insert_item, item)

    def _insert_item(self, item: Item) -> Item:
        kind = item.kind
        columns = _COLUMNS[kind]
        values = [_to_db(col, getattr(item, col)) for col in columns]
        with self._conn() as conn:
            conn.execute(
                f"INSERT INTO {_TABLES[kind]} ({', '.join(columns)}) "
                f"VALUES ({', '.join('?' for _ in columns)})",
                values,
            )
            row = conn.execute(
                f"SELECT * FROM {_TABLES[kind]} WHERE id = ?", (item.id,)
            ).fetchone()
            return _row_to_item(kind, row)

    async def update_item(self, kind: ItemKind, item_id: str, changes: dict[str, Any]) -> Item:
        return await self._write(self._update_item, kind, item_id, changes)

    def _update_item(self, kind: ItemKind, item_id: str, changes: dict[str, Any]) -> Item:
        unknown = set(changes) - set(_COLUMNS[kind]) | ({"id", "owner_id"} & set(changes))
        if unknown:
            raise ValueError(f"cannot update {kind.value} fields: {sorted(unknown)}")

        updates = [f"{col} = ?" for col in changes]
        params: list = [_to_db(col, val) for col, val in changes.items()]
        params.append(item_id)

        with self._conn() as conn:
            cursor = conn.execute(
                f"UPDATE {_TABLES[kind]} SET {', '.join(updates)} WHERE id = ?",
                params,
            )
            if cursor.rowcount == 0:
                raise StaleReference(kind.value, item_id)
            row = conn.execute(
                f"SELECT * FROM {_TABLES[kind]} WHERE id = ?", (item_id,)
            ).fetchone()
            return _row_to_item(kind, row)

    async def delete_item(self, kind: ItemKind, item_id: str) -> None:
        await self._write(self._delete_item, kind, item_id)

    def _delete_item(self, kind: ItemKind, item_id: str) -> None:
        with self._conn() as conn:
            cursor = conn.execute(
                f"DELETE FROM {_TABLES[kind]} WHERE id = ?", (item_id,)
            )
            if cursor.rowcount == 0:
                raise StaleReference(kind.value, item_id)
            if kind == ItemKind.RECORDING:
                # Derived tasks go with their recording; notes keep a dangling back-reference
                conn.execute(
                    "DELETE FROM tasks WHERE source_recording_id = ?", (item_id,)
                )


# ------------------------------------------------------------------
# Row ↔ model converters
# ------------------------------------------------------------------

def _ts(value: datetime) -> str:
    return as_utc(value).isoformat(timespec="microseconds")


def _parse_ts(value: Optional[str]) -> Optional[datetime]:
    return as_utc(datetime.fromisoformat(value)) if value else None


def _to_db(column: str, value: Any) -> Any:
    if column in _JSON_COLUMNS:
        return json.dumps(list(value or []))
    if isinstance(value, datetime):
        return _ts(value)
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, bool):
        return int(value)
    return value


def _row_to_item(kind: ItemKind, row: sqlite3.Row) -> Item:
    if kind == ItemKind.TASK:
        return _row_to_task(row)
    if kind == ItemKind.NOTE:
        return _row_to_note(row)
    return _row_to_recording(row)


def _row_to_task(row: sqlite3.Row) -> Task:
    return Task(
        id=row["id"],
        owner_id=row["owner_id"],
        text=row["text"],
        status=TaskStatus(row["status"]),
        priority=TaskPriority(row["priority"]),
        due_date=_parse_ts(row["due_date"]),
        completed_at=_parse_ts(row["completed_at"]),
        tags=json.loads(row["tags"] or "[]"),
        source_recording_id=row["source_recording_id"],
        created_at=_parse_ts(row["created_at"]),
    )


def _row_to_note(row: sqlite3.Row) -> Note:
    return Note(
        id=row["id"],
        owner_id=row["owner_id"],
        text=row["text"],
        is_archived=bool(row["is_archived"]),
        tags=json.loads(row["tags"] or "[]"),
        source_recording_id=row["source_recording_id"],
        created_at=_parse_ts(row["created_at"]),
        updated_at=_parse_ts(row["updated_at"]),
    )


def _row_to_recording(row: sqlite3.Row) -> Recording:
    return Recording(
        id=row["id"],
        owner_id=row["owner_id"],
        audio_url=row["audio_url"] or "",
        duration_seconds=row["duration_seconds"] or 0,
        transcript=row["transcript"],
        summary=row["summary"],
        tags=json.loads(row["tags"] or "[]"),
        extracted_people=json.loads(row["extracted_people"] or "[]"),
        is_processed=bool(row["is_processed"]),
        source_recording_id=row["source_recording_id"],
        created_at=_parse_ts(row["created_at"]),
    )
