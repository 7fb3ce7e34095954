"""
Auto-tagging for tasks and notes.

Hashtags written in the text come first, then category tags whose keywords
appear anywhere in the lowercased text. Capped at MAX_TAGS.
"""
from __future__ import annotations

import re
from typing import Iterable

MAX_TAGS = 5

TAG_PATTERNS: dict[str, tuple[str, ...]] = {
    "work": ("meeting", "email", "call", "deadline", "project", "client", "boss",
             "office", "report", "presentation"),
    "personal": ("home", "family", "friend", "birthday", "anniversary", "vacation", "weekend"),
    "health": ("doctor", "gym", "workout", "exercise", "medicine", "appointment",
               "dentist", "therapy"),
    "finance": ("pay", "bill", "invoice", "budget", "bank", "money", "expense",
                "refund", "subscription"),
    "shopping": ("buy", "order", "amazon", "grocery", "store", "return", "pickup"),
    "travel": ("flight", "hotel", "trip", "passport", "booking", "airport", "uber", "lyft"),
    "learning": ("read", "book", "course", "study", "learn", "practice", "tutorial"),
    "urgent": ("urgent", "asap", "immediately", "critical", "emergency", "today", "now"),
}

_HASHTAG = re.compile(r"#(\w+)")


def extract_hashtags(text: str) -> list[str]:
    return [tag.lower() for tag in _HASHTAG.findall(text)]


def keyword_tags(text: str) -> list[str]:
    lowered = text.lower()
    return [
        tag for tag, keywords in TAG_PATTERNS.items()
        if any(keyword in lowered for keyword in keywords)
    ]


def auto_tags(text: str) -> list[str]:
    tags = list(dict.fromkeys(extract_hashtags(text) + keyword_tags(text)))
    return tags[:MAX_TAGS]


def filter_by_tag(items: Iterable, tag: str) -> list:
    return [item for item in items if tag in (getattr(item, "tags", None) or [])]
