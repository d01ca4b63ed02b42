"""Per-process state shared by every tool: stores, engines, caches and context."""

from __future__ import annotations

import asyncio
import logging
import time
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Optional

import httpx

from libralm.config import AppConfig
from libralm.library.cache import TTLCache
from libralm.library.catalog import CatalogStore
from libralm.library.database import Database
from libralm.library.models import ExtractedBook, LibraryEntry, content_hash, now_iso
from libralm.library.resolver import resolve_book
from libralm.parsers.base import BaseParser, get_parser
from libralm.parsers.epub_parser import EpubParser
from libralm.parsers.pdf_parser import PdfParser, close_document
from libralm.rss.engine import RssEngine

log = logging.getLogger(__name__)

LIBRARY_HINT = "Use view_library to see available books."


@dataclass
class ToolResult:
    """What every tool hands back: text for the assistant plus structured data."""

    text: str
    data: Optional[dict[str, Any]] = None
    is_error: bool = False


def error(text: str, **data: Any) -> ToolResult:
    return ToolResult(text=text, data=data or None, is_error=True)


def book_not_found(query: str) -> ToolResult:
    return ToolResult(text=f'Book not found: "{query}". {LIBRARY_HINT}')


@dataclass
class ReadingContext:
    book_id: str
    title: str
    author: str
    position: str
    visible_text: str
    last_updated: str = field(default_factory=now_iso)


@dataclass
class RssContext:
    article_id: str
    feed_title: str
    article_title: str
    content: str
    author: Optional[str] = None
    pub_date: Optional[str] = None


class ReaderSession:
    """Owns everything a running server needs.

    Only one current book and one current article are tracked, whichever the
    host synced last.
    """

    def __init__(
        self,
        config: AppConfig,
        http_client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self.config = config
        self.catalog = CatalogStore(config.library_path, config.session_path)
        self.db = Database(config.db_path)

        def cache(name: str, **kwargs: Any) -> TTLCache:
            return TTLCache(
                ttl=config.cache_ttl,
                sweep_interval=config.cache_sweep_interval,
                clock=clock,
                name=name,
                **kwargs,
            )

        self.epub = EpubParser(cache=cache("epub"), dedup=config.dedup)
        self.pdf = PdfParser(cache=cache("pdf", on_evict=close_document))
        self.extractions: TTLCache[ExtractedBook] = cache("extracted")
        self.rss = RssEngine(
            self.db,
            cache_ttl=config.feed_cache_ttl,
            timeout=config.feed_timeout,
            image_timeout=config.image_timeout,
            client=http_client,
            clock=clock,
        )

        self.reading_context: Optional[ReadingContext] = None
        self.rss_context: Optional[RssContext] = None

    @property
    def parsers(self) -> tuple[BaseParser, ...]:
        return (self.epub, self.pdf)

    def parser_for(self, path: str) -> BaseParser:
        return get_parser(path, self.parsers)

    # ── Books ──────────────────────────────────────────

    def resolve(self, query: str) -> Optional[LibraryEntry]:
        return resolve_book(self.catalog.list_books(), query)

    def extract(self, entry: LibraryEntry) -> ExtractedBook:
        """Extracted text of a book, cached by book id."""

        def load() -> ExtractedBook:
            extracted = self.parser_for(entry.path).extract_text(entry.path, entry.id)
            skipped = extracted.report.skipped
            if skipped:
                log.warning(
                    "%s: skipped %d of %d units",
                    Path(entry.path).name,
                    len(skipped),
                    len(extracted.report.units),
                )
            return extracted

        return self.extractions.get_or_populate(entry.id, load)

    def index_book(self, entry: LibraryEntry, force: bool = False) -> tuple[ExtractedBook, bool]:
        """Make sure the search index holds the current text of ``entry``.

        Returns the extraction and whether the index was rewritten.
        """
        extracted = self.extract(entry)
        digest = content_hash(extracted.chapters)
        if not force and self.db.get_book_content_hash(entry.id) == digest:
            return extracted, False
        # Chapter lengths cached for the TOC may be stale once the text changed.
        self.db.delete_book_structure(entry.id)
        self.db.index_book_content(
            entry.id,
            extracted.chapters,
            digest,
            book_title=extracted.title,
            author=extracted.author,
        )
        return extracted, True

    # ── Maintenance ────────────────────────────────────

    def sweep_caches(self) -> int:
        evicted = (
            self.epub.cache.sweep()
            + self.pdf.cache.sweep()
            + self.extractions.sweep()
            + self.rss.sweep_cache()
        )
        if evicted:
            log.debug("Cache sweep evicted %d entries", evicted)
        return evicted

    async def run_maintenance(self) -> None:
        """Sweep idle cache entries forever; cancel the task to stop."""
        while True:
            await asyncio.sleep(self.config.cache_sweep_interval)
            self.sweep_caches()

    async def aclose(self) -> None:
        await self.rss.close()
        self.epub.cache.clear()
        self.pdf.cache.clear()
        self.extractions.clear()
        self.db.close()
