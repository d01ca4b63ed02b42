"""Resolve a loose book reference (id or title fragment) to a library entry.

Matchers run in priority order and the first hit wins:

1. exact book id
2. exact title, ignoring case (``_`` and ``-`` read as spaces)
3. title contains the query, or the query contains the title's first 20 chars
4. every significant word (longer than two characters) appears in the title
"""

from __future__ import annotations

import re
from typing import Callable, Optional, Sequence

from .models import LibraryEntry

Matcher = Callable[[Sequence[LibraryEntry], str], Optional[LibraryEntry]]

TITLE_PREFIX = 20


def normalize_title(value: str) -> str:
    value = re.sub(r"[_-]", " ", value.lower())
    return re.sub(r"\s+", " ", value).strip()


def match_id(entries: Sequence[LibraryEntry], query: str) -> Optional[LibraryEntry]:
    for entry in entries:
        if entry.id == query:
            return entry
    return None


def match_exact_title(
    entries: Sequence[LibraryEntry], query: str
) -> Optional[LibraryEntry]:
    wanted = normalize_title(query)
    for entry in entries:
        if normalize_title(entry.title) == wanted:
            return entry
    return None


def match_partial_title(
    entries: Sequence[LibraryEntry], query: str
) -> Optional[LibraryEntry]:
    wanted = normalize_title(query)
    if not wanted:
        return None
    for entry in entries:
        title = normalize_title(entry.title)
        if not title:
            continue
        if wanted in title or title[:TITLE_PREFIX] in wanted:
            return entry
    return None


def match_title_words(
    entries: Sequence[LibraryEntry], query: str
) -> Optional[LibraryEntry]:
    words = [w for w in normalize_title(query).split() if len(w) > 2]
    if not words:
        return None
    for entry in entries:
        title = normalize_title(entry.title)
        if all(w in title for w in words):
            return entry
    return None


MATCHERS: tuple[Matcher, ...] = (
    match_id,
    match_exact_title,
    match_partial_title,
    match_title_words,
)


def resolve_book(
    entries: Sequence[LibraryEntry],
    query: str,
    matchers: Sequence[Matcher] = MATCHERS,
) -> Optional[LibraryEntry]:
    query = (query or "").strip()
    if not query:
        return None
    for matcher in matchers:
        entry = matcher(entries, query)
        if entry is not None:
            return entry
    return None
