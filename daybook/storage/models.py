"""
Data models for tasks, notes and recordings.
Plain dataclasses, no ORM.

All timestamps are timezone-aware UTC. Naive datetimes are read as UTC.
"""
from __future__ import annotations

import dataclasses
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from enum import Enum
from typing import ClassVar, Optional, Union


class ItemKind(str, Enum):
    TASK = "task"
    NOTE = "note"
    RECORDING = "recording"


class TaskStatus(str, Enum):
    PENDING = "pending"
    COMPLETED = "completed"


class TaskPriority(str, Enum):
    LOW = "low"
    MEDIUM = "medium"
    HIGH = "high"
    URGENT = "urgent"


class ProcessingState(str, Enum):
    UNPROCESSED = "unprocessed"
    PROCESSED = "processed"

    @classmethod
    def from_flag(cls, is_processed: bool) -> "ProcessingState":
        return cls.PROCESSED if is_processed else cls.UNPROCESSED


def new_id() -> str:
    return str(uuid.uuid4())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    """Attach UTC to naive datetimes, convert aware ones."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


@dataclass
class Task:
    owner_id: str
    text: str
    status: TaskStatus = TaskStatus.PENDING
    priority: TaskPriority = TaskPriority.MEDIUM
    due_date: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    tags: list[str] = field(default_factory=list)
    source_recording_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)

    kind: ClassVar[ItemKind] = ItemKind.TASK

    def __post_init__(self) -> None:
        # completed_at is set exactly when the task is completed
        if (self.status == TaskStatus.COMPLETED) != (self.completed_at is not None):
            raise ValueError(
                f"task {self.id}: completed_at must be set iff status is completed "
                f"(status={self.status.value}, completed_at={self.completed_at})"
            )

    @property
    def is_completed(self) -> bool:
        return self.status == TaskStatus.COMPLETED

    def with_status(self, status: TaskStatus, now: datetime) -> "Task":
        """Return a copy in the given status, keeping completed_at in step."""
        if status == self.status:
            return dataclasses.replace(self)
        completed_at = now if status == TaskStatus.COMPLETED else None
        return dataclasses.replace(self, status=status, completed_at=completed_at)


@dataclass
class Note:
    owner_id: str
    text: str
    is_archived: bool = False
    tags: list[str] = field(default_factory=list)
    source_recording_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)

    kind: ClassVar[ItemKind] = ItemKind.NOTE


@dataclass
class Recording:
    owner_id: str
    audio_url: str = ""
    duration_seconds: int = 0
    transcript: Optional[str] = None
    summary: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    extracted_people: list[str] = field(default_factory=list)
    is_processed: bool = False
    source_recording_id: Optional[str] = None
    created_at: datetime = field(default_factory=utcnow)
    id: str = field(default_factory=new_id)

    kind: ClassVar[ItemKind] = ItemKind.RECORDING

    @property
    def processing_state(self) -> ProcessingState:
        return ProcessingState.from_flag(self.is_processed)

    @property
    def text(self) -> str:
        """Best available text for display and relatedness."""
        if self.summary:
            return self.summary
        if self.transcript:
            return self.transcript
        return "Voice recording"


Item = Union[Task, Note, Recording]
