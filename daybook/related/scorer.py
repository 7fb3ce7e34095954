"""
Lexical relatedness between a note and the owner's other notes.

A cheap heuristic, not search: keywords are lowercased, stripped of
non-alphanumerics and matched by substring containment in either direction.
No stemming, no synonyms.
"""
from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Iterable, Sequence

from ..storage.gateway import DataGateway
from ..storage.models import Item, ItemKind, Note

logger = logging.getLogger(__name__)

MIN_KEYWORD_LENGTH = 4
DEFAULT_LIMIT = 5
DEFAULT_POOL_SIZE = 50

_NON_ALNUM = re.compile(r"[^a-z0-9]")


@dataclass(frozen=True)
class ScoredItem:
    item: Item
    score: int


def tokenize(text: str) -> list[str]:
    tokens = (_NON_ALNUM.sub("", word) for word in text.lower().split())
    return [t for t in tokens if t]


def extract_keywords(text: str) -> list[str]:
    """Distinct tokens longer than three characters, in first-seen order."""
    words = [t for t in tokenize(text) if len(t) >= MIN_KEYWORD_LENGTH]
    return list(dict.fromkeys(words))


def score(keywords: Sequence[str], text: str) -> int:
    """Number of keywords with at least one token containing it or contained by it."""
    tokens = tokenize(text)
    return sum(
        1 for keyword in keywords
        if any(keyword in token or token in keyword for token in tokens)
    )


def rank_related(
    source: Item, candidates: Iterable[Item], limit: int = DEFAULT_LIMIT
) -> list[ScoredItem]:
    """
    Top `limit` candidates by score, highest first. Ties keep the candidates'
    incoming (recency) order. The source itself, other owners' items, archived
    notes and zero scores are never returned.
    """
    keywords = extract_keywords(source.text)
    if not keywords:
        return []

    scored = []
    for candidate in candidates:
        if candidate.id == source.id or candidate.owner_id != source.owner_id:
            continue
        if isinstance(candidate, Note) and candidate.is_archived:
            continue
        points = score(keywords, candidate.text)
        if points > 0:
            scored.append(ScoredItem(candidate, points))

    # sorted() is stable, which keeps recency order among equal scores
    scored = sorted(scored, key=lambda s: s.score, reverse=True)
    return scored[:limit]


async def find_related(
    gateway: DataGateway,
    note: Note,
    *,
    pool_size: int = DEFAULT_POOL_SIZE,
    limit: int = DEFAULT_LIMIT,
) -> list[ScoredItem]:
    """Rank the owner's most recent non-archived notes against `note`."""
    if not extract_keywords(note.text):
        return []
    pool = await gateway.list_items(
        ItemKind.NOTE,
        note.owner_id,
        include_archived=False,
        newest_first=True,
        limit=pool_size + 1,
    )
    pool = [n for n in pool if n.id != note.id][:pool_size]
    related = rank_related(note, pool, limit=limit)
    logger.debug(f"{len(related)} related note(s) for {note.id} from a pool of {len(pool)}")
    return related
