"""
Focus list: which pending tasks deserve attention today.

Every pending task starts at 50 and gains points for its priority, its age,
an approaching or missed due date, urgency and time words in its text and
notes that share keywords with it. Very short tasks lose a few points. The
result is clamped to 0..100.

Keyword phrases are matched as plain substrings of the lowercased text, so
"now" also fires inside "know".
"""
from __future__ import annotations

import math
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from typing import Iterable, Optional, Sequence

from ..storage.models import Note, Task, TaskPriority, TaskStatus, as_utc
from .scorer import tokenize

BASE_SCORE = 50
MAX_SCORE = 100
DEFAULT_LIMIT = 5
MAX_RELATED_NOTES = 3
SHORT_TASK_LENGTH = 15
MIN_KEYWORD_LENGTH = 3

PRIORITY_WEIGHTS = {
    TaskPriority.URGENT: 40,
    TaskPriority.HIGH: 25,
    TaskPriority.MEDIUM: 10,
    TaskPriority.LOW: 0,
}

URGENCY_KEYWORDS = (
    "asap", "urgent", "immediately", "critical", "deadline",
    "today", "tonight", "now", "right away", "emergency",
    "important", "priority", "crucial", "must", "need to",
)

TIME_SENSITIVE_KEYWORDS = (
    "tomorrow", "monday", "tuesday", "wednesday", "thursday",
    "friday", "saturday", "sunday", "this week", "next week",
    "end of day", "eod", "by friday", "before", "meeting",
)

STOP_WORDS = frozenset({
    "the", "and", "for", "are", "but", "not", "you", "all",
    "can", "had", "her", "was", "one", "our", "out", "has",
    "have", "been", "would", "could", "their", "what", "from",
    "they", "will", "with", "this", "that", "about", "which",
})

# (threshold, label) from the top; anything lower is LOW
SCORE_LABELS = ((80, "URGENT"), (65, "HIGH"), (50, "MODERATE"))


@dataclass(frozen=True)
class PriorityFactor:
    name: str
    impact: int
    description: str


@dataclass
class PrioritizedTask:
    task: Task
    score: int
    factors: list[PriorityFactor] = field(default_factory=list)
    reasoning: str = ""
    related_notes: list[Note] = field(default_factory=list)

    @property
    def label(self) -> str:
        return score_label(self.score)


@dataclass
class FocusList:
    top: list[PrioritizedTask]
    total_pending: int
    generated_at: datetime


def score_label(score: int) -> str:
    for threshold, label in SCORE_LABELS:
        if score >= threshold:
            return label
    return "LOW"


def keywords(text: str) -> list[str]:
    return [
        t for t in tokenize(text)
        if len(t) >= MIN_KEYWORD_LENGTH and t not in STOP_WORDS
    ]


def _overlaps(task_words: Sequence[str], note: Note) -> bool:
    note_words = keywords(note.text)
    return any(tw in nw or nw in tw for tw in task_words for nw in note_words)


def _plural(n: int, word: str) -> str:
    return f"{n} {word}{'' if n == 1 else 's'}"


def _days_between(start: datetime, end: datetime) -> int:
    """Whole days from start to end, floored (negative when end is earlier)."""
    return (as_utc(end) - as_utc(start)) // timedelta(days=1)


def _due_factor(days_left: int) -> Optional[PriorityFactor]:
    if days_left < 0:
        return PriorityFactor("Due Date", 35, f"Overdue by {_plural(-days_left, 'day')}!")
    if days_left == 0:
        return PriorityFactor("Due Date", 30, "Due today!")
    if days_left == 1:
        return PriorityFactor("Due Date", 25, "Due tomorrow")
    if days_left <= 3:
        return PriorityFactor("Due Date", 18, f"Due in {days_left} days")
    if days_left <= 7:
        return PriorityFactor("Due Date", 10, "Due this week")
    return None


def score_factors(task: Task, notes: Sequence[Note], now: datetime) -> list[PriorityFactor]:
    factors = []

    weight = PRIORITY_WEIGHTS[task.priority]
    if weight > 0:
        factors.append(PriorityFactor(
            "Priority Level", weight, f"Marked as {task.priority.value} priority"
        ))

    # Older pending tasks bubble up, on a log scale capped at 20
    days_old = _days_between(task.created_at, now)
    if days_old > 0:
        points = min(math.floor(math.log2(days_old + 1) * 5 + 0.5), 20)
        factors.append(PriorityFactor("Age", points, f"Pending for {_plural(days_old, 'day')}"))

    if task.due_date is not None:
        due = _due_factor(_days_between(now, task.due_date))
        if due is not None:
            factors.append(due)

    lowered = task.text.lower()
    urgent = [k for k in URGENCY_KEYWORDS if k in lowered]
    if urgent:
        factors.append(PriorityFactor(
            "Urgency Signal", min(len(urgent) * 8, 15), f"Contains: {', '.join(urgent[:2])}"
        ))

    timely = [k for k in TIME_SENSITIVE_KEYWORDS if k in lowered]
    if timely:
        factors.append(PriorityFactor(
            "Time Reference", min(len(timely) * 5, 10), f"Mentions: {', '.join(timely[:2])}"
        ))

    task_words = keywords(task.text)
    refs = sum(1 for note in notes if _overlaps(task_words, note))
    if refs:
        factors.append(PriorityFactor(
            "Context", min(refs * 5, 15), f"Referenced in {_plural(refs, 'note')}"
        ))

    if len(task.text) < SHORT_TASK_LENGTH:
        factors.append(PriorityFactor("Detail", -5, "Task is vague/short"))

    return factors


def calculate_task_score(
    task: Task, notes: Sequence[Note], now: datetime
) -> tuple[int, list[PriorityFactor]]:
    factors = score_factors(task, notes, now)
    total = BASE_SCORE + sum(f.impact for f in factors)
    return max(0, min(total, MAX_SCORE)), factors


def reasoning(factors: Sequence[PriorityFactor]) -> str:
    """Descriptions of the two strongest positive factors."""
    top = sorted((f for f in factors if f.impact > 0), key=lambda f: f.impact, reverse=True)[:2]
    if not top:
        return "Standard priority task"
    return ". ".join(f.description for f in top)


def related_notes(task: Task, notes: Iterable[Note]) -> list[Note]:
    """Notes from the same recording or sharing a keyword, at most three."""
    task_words = keywords(task.text)
    found = []
    for note in notes:
        same_source = task.source_recording_id is not None and (
            note.source_recording_id == task.source_recording_id
        )
        if same_source or _overlaps(task_words, note):
            found.append(note)
            if len(found) == MAX_RELATED_NOTES:
                break
    return found


def prioritize_tasks(
    tasks: Iterable[Task],
    notes: Sequence[Note],
    now: datetime,
    limit: int = DEFAULT_LIMIT,
) -> FocusList:
    """
    Score every pending task against `notes` and keep the best `limit`.

    Ties keep the incoming order of `tasks`. Archived notes are ignored.
    """
    notes = [n for n in notes if not n.is_archived]
    pending = [t for t in tasks if t.status == TaskStatus.PENDING]

    scored = []
    for task in pending:
        score, factors = calculate_task_score(task, notes, now)
        scored.append(PrioritizedTask(
            task=task,
            score=score,
            factors=factors,
            reasoning=reasoning(factors),
            related_notes=related_notes(task, notes),
        ))

    scored.sort(key=lambda p: p.score, reverse=True)
    return FocusList(top=scored[:limit], total_pending=len(pending), generated_at=now)
