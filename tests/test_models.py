"""Tests for daybook.storage.models."""

from datetime import datetime, timedelta, timezone

import pytest

from daybook.storage.models import (
    ItemKind,
    ProcessingState,
    Recording,
    Task,
    TaskStatus,
    as_utc,
)

UTC = timezone.utc
NOW = datetime(2024, 1, 10, 12, tzinfo=UTC)


def test_completed_task_requires_completed_at():
    with pytest.raises(ValueError):
        Task("u", "x", status=TaskStatus.COMPLETED)
    with pytest.raises(ValueError):
        Task("u", "x", completed_at=NOW)


def test_status_round_trip():
    task = Task("u", "x", created_at=NOW)

    done = task.with_status(TaskStatus.COMPLETED, NOW)
    undone = done.with_status(TaskStatus.PENDING, NOW + timedelta(hours=1))

    assert done.status == TaskStatus.COMPLETED
    assert done.completed_at == NOW
    assert undone == task
    assert task.status == TaskStatus.PENDING


def test_with_same_status_returns_copy():
    task = Task("u", "x", created_at=NOW)
    copy = task.with_status(TaskStatus.PENDING, NOW)
    assert copy == task
    assert copy is not task


def test_recording_text_fallback():
    recording = Recording("u")
    assert recording.text == "Voice recording"
    recording.transcript = "raw words"
    assert recording.text == "raw words"
    recording.summary = "Planning call"
    assert recording.text == "Planning call"


def test_recording_processing_state():
    assert Recording("u").processing_state == ProcessingState.UNPROCESSED
    assert Recording("u", is_processed=True).processing_state == ProcessingState.PROCESSED
    assert Recording.kind == ItemKind.RECORDING


def test_as_utc():
    assert as_utc(datetime(2024, 1, 1, 12)) == datetime(2024, 1, 1, 12, tzinfo=UTC)
    plus_two = timezone(timedelta(hours=2))
    assert as_utc(datetime(2024, 1, 1, 12, tzinfo=plus_two)).hour == 10
