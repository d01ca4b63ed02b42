"""Data models for the book library, annotations, search index and feeds."""

from __future__ import annotations

import hashlib
from dataclasses import asdict, dataclass, field, fields
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Iterable, Optional, Union

HIGHLIGHT_COLORS = ("yellow", "green", "blue", "pink")

_HASH_CHUNK = 1 << 20


def now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def make_book_id(file_path: Union[str, Path]) -> str:
    """SHA-256 of the file bytes, truncated to 16 hex chars."""
    digest = hashlib.sha256()
    with open(file_path, "rb") as fh:
        for chunk in iter(lambda: fh.read(_HASH_CHUNK), b""):
            digest.update(chunk)
    return digest.hexdigest()[:16]


def content_hash(chapters: Iterable["ExtractedChapter"]) -> str:
    """Digest of a book's extracted text corpus, used to detect re-indexing."""
    digest = hashlib.sha256()
    for ch in chapters:
        digest.update(f"{ch.index}\x1f{ch.title}\x1f{ch.content}\x1e".encode())
    return digest.hexdigest()


def _from_dict(cls, data: dict[str, Any]):
    names = {f.name for f in fields(cls)}
    return cls(**{k: v for k, v in data.items() if k in names})


# ── Library ────────────────────────────────────────────


@dataclass
class LibraryEntry:
    id: str  # content hash of the file bytes
    path: str
    title: str
    author: str = "Unknown Author"
    format: str = "epub"  # epub | pdf
    cover_url: Optional[str] = None
    description: Optional[str] = None
    chapter_count: Optional[int] = None
    added_at: str = field(default_factory=now_iso)
    last_read: Optional[str] = None

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "LibraryEntry":
        return _from_dict(cls, data)


@dataclass
class ReadingPosition:
    chapter_index: int = 0
    scroll_position: float = 0.0  # 0.0 - 1.0
    last_read: str = field(default_factory=now_iso)

    def to_dict(self) -> dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ReadingPosition":
        return _from_dict(cls, data)


@dataclass
class ScannedBook:
    """Lightweight metadata gathered while walking the library directory."""

    path: str
    format: str
    title: str
    author: str = "Unknown Author"
    cover_url: Optional[str] = None
    description: Optional[str] = None
    chapter_count: Optional[int] = None


# ── Document structure ─────────────────────────────────


@dataclass
class TocItem:
    title: str
    index: int  # chapter (EPUB) or 0-based page (PDF) the entry points at
    level: int = 0
    href: Optional[str] = None


@dataclass
class BookMetadata:
    id: str
    title: str
    author: str
    format: str
    chapter_count: int
    cover_url: Optional[str] = None


@dataclass
class BookInfo:
    metadata: BookMetadata
    toc: list[TocItem] = field(default_factory=list)


@dataclass
class ExtractedChapter:
    index: int
    title: str
    content: str  # plain text


@dataclass
class Extracted:
    index: int
    title: str
    length: int


@dataclass
class Skipped:
    index: int
    reason: str


@dataclass
class ExtractionReport:
    units: list[Union[Extracted, Skipped]] = field(default_factory=list)

    @property
    def extracted(self) -> list[Extracted]:
        return [u for u in self.units if isinstance(u, Extracted)]

    @property
    def skipped(self) -> list[Skipped]:
        return [u for u in self.units if isinstance(u, Skipped)]


@dataclass
class ExtractedBook:
    book_id: str
    title: str
    author: str
    chapters: list[ExtractedChapter] = field(default_factory=list)
    report: ExtractionReport = field(default_factory=ExtractionReport)

    def chapter(self, index: int) -> Optional[ExtractedChapter]:
        for ch in self.chapters:
            if ch.index == index:
                return ch
        return None


# ── Annotations ────────────────────────────────────────


@dataclass
class Highlight:
    id: str
    book_id: str
    chapter_index: int
    text: str
    color: str = "yellow"
    cfi_range: Optional[str] = None
    page_number: Optional[int] = None
    created_at: str = field(default_factory=now_iso)


@dataclass
class Note:
    id: str
    book_id: str
    chapter_index: int
    text: str
    quote: Optional[str] = None
    cfi_range: Optional[str] = None
    page_number: Optional[int] = None
    created_at: str = field(default_factory=now_iso)


@dataclass
class Bookmark:
    id: str
    book_id: str
    chapter_index: int
    title: Optional[str] = None
    cfi_range: Optional[str] = None
    page_number: Optional[int] = None
    created_at: str = field(default_factory=now_iso)


# ── Search ─────────────────────────────────────────────


@dataclass
class SearchResult:
    book_id: str
    book_title: Optional[str]
    author: Optional[str]
    chapter_title: str
    chapter_index: int
    content: str
    score: float  # 0-1, comparable only within one result set


@dataclass
class IndexedBook:
    book_id: str
    book_title: Optional[str]
    author: Optional[str]
    chapter_count: int
    indexed_at: str


@dataclass
class SemanticIndex:
    id: str
    book_id: str
    index_data: str  # JSON written by the assistant
    created_at: str
    updated_at: str


# ── RSS ────────────────────────────────────────────────


@dataclass
class Feed:
    id: str
    url: str
    title: str
    description: Optional[str] = None
    icon_url: Optional[str] = None
    last_fetched: Optional[str] = None
    unread_count: int = 0


@dataclass
class Article:
    id: str
    feed_id: str
    guid: str
    title: str
    link: Optional[str] = None
    author: Optional[str] = None
    pub_date: Optional[str] = None
    summary: Optional[str] = None
    content: Optional[str] = None
    is_read: bool = False
    is_saved: bool = False
    score: Optional[float] = None  # set on search results
