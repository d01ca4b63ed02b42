"""LibraLM Reader - MCP server for reading books and feeds with an assistant."""

from __future__ import annotations

import asyncio
import logging
import sys
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from typing import Any, Optional, Union

from mcp.server.fastmcp import FastMCP
from mcp.server.fastmcp.exceptions import ToolError

from libralm.config import AppConfig, load_config
from libralm.tools import annotations as annotation_tools
from libralm.tools import books, feeds, indexing
from libralm.tools.session import ReaderSession, ToolResult

log = logging.getLogger(__name__)

SERVER_NAME = "libralm-reader"


def render(result: ToolResult) -> Union[str, dict[str, Any]]:
    """Turn a tool result into what FastMCP sends back to the client."""
    if result.is_error:
        raise ToolError(result.text)
    if result.data is None:
        return result.text
    return {"text": result.text, "data": result.data}


# ── Library and reading ────────────────────────────────


def register_book_tools(mcp: FastMCP, session: ReaderSession) -> None:
    @mcp.tool()
    def view_library():
        """List every EPUB and PDF in the configured book directory."""
        return render(books.view_library(session))

    @mcp.tool()
    def load_book(path: str):
        """Open a book file and return its metadata, table of contents and last position."""
        return render(books.load_book(session, path))

    @mcp.tool()
    def save_position(book_id: str, chapter_index: int, scroll_position: float = 0.0):
        """Remember where the reader is in a book (scroll_position from 0 to 1)."""
        return render(books.save_position(session, book_id, chapter_index, scroll_position))

    @mcp.tool()
    def get_book_cover(book_id: str):
        """Return the cover image of a book as a data URI."""
        return render(books.get_book_cover(session, book_id))

    @mcp.tool()
    def sync_reading_context(
        book_id: str, title: str, author: str, position: str, visible_text: str
    ):
        """Record what the user currently sees in the reader."""
        return render(
            books.sync_reading_context(session, book_id, title, author, position, visible_text)
        )

    @mcp.tool()
    def get_current_context():
        """Get the book and passage the user is reading right now."""
        return render(books.get_current_context(session))

    @mcp.tool()
    def get_book_toc(book: str):
        """Table of contents of a book, by id or title."""
        return render(indexing.get_book_toc(session, book))

    @mcp.tool()
    def read_chapter(
        book: str, chapter_index: int, offset: int = 0, limit: Optional[int] = None
    ):
        """Read a chapter. Long chapters come back in slices; pass next_offset to continue."""
        return render(indexing.read_chapter(session, book, chapter_index, offset, limit))

    @mcp.tool()
    def read_pdf_page(book: str, page_number: int, page_count: int = 1):
        """Read up to 10 pages of a PDF starting at page_number (1-based)."""
        return render(indexing.read_pdf_page(session, book, page_number, page_count))

    @mcp.tool()
    def get_pdf_toc(book: str):
        """Outline and page count of a PDF."""
        return render(indexing.get_pdf_toc(session, book))


# ── Indexes and search ─────────────────────────────────


def register_index_tools(mcp: FastMCP, session: ReaderSession) -> None:
    @mcp.tool()
    def get_book_index(book: str):
        """Get the saved semantic index (themes, topics, chapter summaries) of a book."""
        return render(indexing.get_book_index(session, book))

    @mcp.tool()
    def save_book_index(book: str, index_data: dict[str, Any]):
        """Save a semantic index for a book.

        index_data may hold overallSummary, themes, keyTopics, chapterSummaries
        and importantQuotes. Saving again replaces the previous index.
        """
        return render(indexing.save_book_index(session, book, index_data))

    @mcp.tool()
    def index_book(book: str, force: bool = False):
        """Add a book's text to the full-text search index."""
        return render(indexing.index_book(session, book, force))

    @mcp.tool()
    def search_content(
        query: str, book_ids: Optional[list[str]] = None, limit: int = 20
    ):
        """Full-text search across indexed books, ranked by relevance."""
        return render(indexing.search_content(session, query, book_ids, limit))

    @mcp.tool()
    def list_indexed_books():
        """List the books in the full-text search index."""
        return render(indexing.list_indexed_books(session))


# ── Annotations ────────────────────────────────────────


def register_annotation_tools(mcp: FastMCP, session: ReaderSession) -> None:
    @mcp.tool()
    def add_highlight(
        text: str,
        book_id: Optional[str] = None,
        chapter_index: Optional[int] = None,
        color: str = "yellow",
        cfi_range: Optional[str] = None,
        page_number: Optional[int] = None,
    ):
        """Highlight a passage in yellow, green, blue or pink."""
        return render(
            annotation_tools.add_highlight(
                session, text, book_id, chapter_index, color, cfi_range, page_number
            )
        )

    @mcp.tool()
    def add_note(
        text: str,
        book_id: Optional[str] = None,
        chapter_index: Optional[int] = None,
        quote: Optional[str] = None,
        cfi_range: Optional[str] = None,
        page_number: Optional[int] = None,
    ):
        """Attach a note to a chapter, optionally quoting a passage."""
        return render(
            annotation_tools.add_note(session, text, book_id, chapter_index, quote, cfi_range, page_number)
        )

    @mcp.tool()
    def add_bookmark(
        book_id: str,
        chapter_index: int,
        title: Optional[str] = None,
        cfi_range: Optional[str] = None,
        page_number: Optional[int] = None,
    ):
        """Bookmark a chapter or page."""
        return render(
            annotation_tools.add_bookmark(session, book_id, chapter_index, title, cfi_range, page_number)
        )

    @mcp.tool()
    def list_annotations(
        book_id: Optional[str] = None, chapter_index: Optional[int] = None
    ):
        """Highlights and notes of a book, optionally for one chapter."""
        return render(annotation_tools.list_annotations(session, book_id, chapter_index))

    @mcp.tool()
    def list_bookmarks(book_id: str):
        """Bookmarks of a book in reading order."""
        return render(annotation_tools.list_bookmarks(session, book_id))

    @mcp.tool()
    def delete_annotation(annotation_id: str, type: str):
        """Delete a highlight, note or bookmark by id."""
        return render(annotation_tools.delete_annotation(session, annotation_id, type))

    @mcp.tool()
    def delete_bookmark(bookmark_id: str):
        """Delete a bookmark by id."""
        return render(annotation_tools.delete_bookmark(session, bookmark_id))

    @mcp.tool()
    def search_highlights(
        book_id: Optional[str] = None,
        search_text: Optional[str] = None,
        color: Optional[str] = None,
        limit: int = annotation_tools.SEARCH_LIMIT,
    ):
        """Find highlights by text, color or book."""
        return render(annotation_tools.search_highlights(session, book_id, search_text, color, limit))

    @mcp.tool()
    def search_notes(
        book_id: Optional[str] = None,
        search_text: Optional[str] = None,
        limit: int = annotation_tools.SEARCH_LIMIT,
    ):
        """Find notes whose text or quote contains search_text."""
        return render(annotation_tools.search_notes(session, book_id, search_text, limit))

    @mcp.tool()
    def export_annotations(book_id: str, format: str = "markdown"):
        """Export all annotations of a book as markdown or json."""
        return render(annotation_tools.export_annotations(session, book_id, format))


# ── Feeds ──────────────────────────────────────────────


def register_feed_tools(mcp: FastMCP, session: ReaderSession) -> None:
    @mcp.tool()
    async def subscribe_feed(url: str):
        """Subscribe to an RSS or Atom feed."""
        return render(await feeds.subscribe_feed(session, url))

    @mcp.tool()
    def unsubscribe_feed(feed_id: str):
        """Remove a feed and all of its articles."""
        return render(feeds.unsubscribe_feed(session, feed_id))

    @mcp.tool()
    async def refresh_feed(feed_id: str):
        """Fetch new articles for one feed."""
        return render(await feeds.refresh_feed(session, feed_id))

    @mcp.tool()
    async def refresh_all_feeds():
        """Fetch new articles for every feed."""
        return render(await feeds.refresh_all_feeds(session))

    @mcp.tool()
    def list_feeds():
        """Subscribed feeds with unread counts."""
        return render(feeds.list_feeds(session))

    @mcp.tool()
    def list_subscriptions():
        """Feed URLs and titles only."""
        return render(feeds.list_subscriptions(session))

    @mcp.tool()
    def get_feed_articles(
        feed_id: Optional[str] = None, unread_only: bool = False, limit: int = 50, offset: int = 0
    ):
        """Articles of one feed, or of all feeds, newest first."""
        return render(feeds.get_feed_articles(session, feed_id, unread_only, limit, offset))

    @mcp.tool()
    def get_saved_articles(limit: int = 50):
        """Articles the user saved for later."""
        return render(feeds.get_saved_articles(session, limit))

    @mcp.tool()
    def get_article_content(article_id: str):
        """Full article as markdown. Marks it as read."""
        return render(feeds.get_article_content(session, article_id))

    @mcp.tool()
    def mark_article_read(article_id: str, is_read: bool = True):
        """Mark an article read or unread."""
        return render(feeds.mark_article_read(session, article_id, is_read))

    @mcp.tool()
    def mark_all_read(feed_id: Optional[str] = None):
        """Mark every article, or every article of one feed, as read."""
        return render(feeds.mark_all_read(session, feed_id))

    @mcp.tool()
    def save_article(article_id: str):
        """Toggle the saved flag of an article."""
        return render(feeds.save_article(session, article_id))

    @mcp.tool()
    def search_rss_articles(
        query: str, feed_id: Optional[str] = None, limit: int = 20
    ):
        """Full-text search over stored articles."""
        return render(feeds.search_rss_articles(session, query, feed_id, limit))

    @mcp.tool()
    def sync_rss_context(
        article_id: str,
        feed_title: str,
        article_title: str,
        content: str,
        author: Optional[str] = None,
        pub_date: Optional[str] = None,
    ):
        """Record which article the user has open."""
        return render(
            feeds.sync_rss_context(
                session, article_id, feed_title, article_title, content, author, pub_date
            )
        )

    @mcp.tool()
    def get_rss_context():
        """Get the article the user is reading right now."""
        return render(feeds.get_rss_context(session))

    @mcp.tool()
    async def proxy_image(url: str):
        """Fetch a remote image and return it as a data URI."""
        return render(await feeds.proxy_image(session, url))


def create_server(session: ReaderSession) -> FastMCP:
    @asynccontextmanager
    async def lifespan(_server: FastMCP) -> AsyncIterator[None]:
        sweeper = asyncio.create_task(session.run_maintenance())
        try:
            yield
        finally:
            sweeper.cancel()
            try:
                await sweeper
            except asyncio.CancelledError:
                pass
            await session.aclose()

    mcp = FastMCP(SERVER_NAME, lifespan=lifespan)
    register_book_tools(mcp, session)
    register_index_tools(mcp, session)
    register_annotation_tools(mcp, session)
    register_feed_tools(mcp, session)
    return mcp


def _setup_logging(config: AppConfig) -> None:
    # stdout carries the MCP protocol; logs go to the file and stderr only.
    formatter = logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s")
    file_handler = logging.FileHandler(config.log_path, encoding="utf-8")
    file_handler.setFormatter(formatter)
    stderr_handler = logging.StreamHandler(sys.stderr)
    stderr_handler.setFormatter(formatter)
    stderr_handler.setLevel(logging.WARNING)

    root = logging.getLogger("libralm")
    root.setLevel(getattr(logging, config.log_level, logging.INFO))
    root.addHandler(file_handler)
    root.addHandler(stderr_handler)


def main() -> None:
    config = load_config()
    _setup_logging(config)
    log.info("Starting %s (books: %s, data: %s)", SERVER_NAME, config.book_path, config.data_dir)

    session = ReaderSession(config)
    mcp = create_server(session)
    mcp.run(transport="stdio")


if __name__ == "__main__":
    main()
