"""Library browsing, book loading and reading-position tools."""

from __future__ import annotations

import json
import logging
from pathlib import Path
from typing import Optional

from libralm.library.models import LibraryEntry, make_book_id, now_iso
from libralm.library.scanner import reconcile_library, scan_directory

from .session import LIBRARY_HINT, ReaderSession, ReadingContext, ToolResult, error

log = logging.getLogger(__name__)

SUMMARY_PREVIEW = 200


def _index_summary(session: ReaderSession, book_id: str) -> Optional[str]:
    index = session.db.get_semantic_index(book_id)
    if index is None:
        return None
    try:
        summary = json.loads(index.index_data).get("overallSummary")
    except (ValueError, AttributeError):
        return None
    if not summary:
        return None
    if len(summary) > SUMMARY_PREVIEW:
        return summary[:SUMMARY_PREVIEW] + "..."
    return summary


def _summary(entry: LibraryEntry, description: Optional[str]) -> dict:
    # Covers are left out; get_book_cover serves them on demand.
    return {
        "id": entry.id,
        "path": entry.path,
        "title": entry.title,
        "author": entry.author,
        "format": entry.format,
        "description": description,
        "chapter_count": entry.chapter_count,
        "last_read": entry.last_read,
    }


def view_library(session: ReaderSession) -> ToolResult:
    root = session.config.book_path
    scanned = scan_directory(root, session.parsers)
    report = reconcile_library(session.catalog, scanned, root)

    lines = []
    summaries = []
    for entry in report.books:
        description = entry.description or _index_summary(session, entry.id)
        label = "[PDF]" if entry.format == "pdf" else "[EPUB]"
        line = f'- {label} "{entry.title}" by {entry.author}'
        if description:
            line += f"\n  {description}"
        lines.append(line)
        summaries.append(_summary(entry, description))

    text = f"Found {len(report.books)} books in your library at {root}:"
    if lines:
        text += "\n\n" + "\n".join(lines)
    return ToolResult(
        text=text,
        data={
            "books": summaries,
            "collections": session.catalog.load_library().collections,
            "book_path": str(root),
        },
    )


def load_book(session: ReaderSession, path: str) -> ToolResult:
    file_path = Path(path).expanduser()
    if not file_path.is_file():
        return ToolResult(text=f"Book file not found: {path}. {LIBRARY_HINT}")
    try:
        parser = session.parser_for(str(file_path))
    except ValueError as e:
        return error(str(e))

    book_id = make_book_id(file_path)
    try:
        info = parser.load(str(file_path), book_id)
    except Exception as e:
        log.exception("Failed to load %s", file_path)
        return error(f"Failed to load book: {e}")
    meta = info.metadata

    position = session.catalog.get_position(book_id)
    if position is not None and position.chapter_index >= meta.chapter_count:
        log.info(
            "Saved chapter %d is past the end of %s (%d chapters); resetting",
            position.chapter_index,
            meta.title,
            meta.chapter_count,
        )
        position = session.catalog.save_position(book_id, 0, 0.0)

    entry = session.catalog.update_book(
        book_id, last_read=now_iso(), chapter_count=meta.chapter_count
    )
    if entry is None:
        session.catalog.add_or_update(
            LibraryEntry(
                id=book_id,
                path=str(file_path),
                title=meta.title,
                author=meta.author,
                format=meta.format,
                cover_url=meta.cover_url,
                chapter_count=meta.chapter_count,
                last_read=now_iso(),
            )
        )
    session.catalog.set_last_book(book_id)

    return ToolResult(
        text=f'Loaded "{meta.title}" by {meta.author}',
        data={
            "book": {
                "id": meta.id,
                "title": meta.title,
                "author": meta.author,
                "format": meta.format,
                "cover_url": meta.cover_url,
                "chapter_count": meta.chapter_count,
                "toc": [
                    {"title": t.title, "index": t.index, "level": t.level, "href": t.href}
                    for t in info.toc
                ],
            },
            "last_position": (
                {
                    "chapter_index": position.chapter_index,
                    "scroll_position": position.scroll_position,
                }
                if position
                else None
            ),
        },
    )


def save_position(
    session: ReaderSession, book_id: str, chapter_index: int, scroll_position: float = 0.0
) -> ToolResult:
    if chapter_index < 0:
        return error("chapter_index must be 0 or greater")
    if not 0.0 <= scroll_position <= 1.0:
        return error("scroll_position must be between 0 and 1")
    session.catalog.save_position(book_id, chapter_index, scroll_position)
    session.catalog.update_book(book_id, last_read=now_iso())
    return ToolResult(text="Position saved.", data={"success": True})


def get_book_cover(session: ReaderSession, book_id: str) -> ToolResult:
    entry = session.catalog.get_book(book_id)
    if entry is None:
        return ToolResult(text="Book not found.", data={"cover_url": None})
    return ToolResult(text="Cover loaded.", data={"cover_url": entry.cover_url})


def sync_reading_context(
    session: ReaderSession,
    book_id: str,
    title: str,
    author: str,
    position: str,
    visible_text: str,
) -> ToolResult:
    session.reading_context = ReadingContext(
        book_id=book_id,
        title=title,
        author=author,
        position=position,
        visible_text=visible_text,
    )
    return ToolResult(text="Reading context synced.", data={"success": True})


def get_current_context(session: ReaderSession) -> ToolResult:
    ctx = session.reading_context
    if ctx is None:
        return ToolResult(
            text="No book is currently being read. "
            "The user needs to open a book in LibraLM Reader first."
        )
    return ToolResult(
        text=(
            f'**Currently Reading:** "{ctx.title}" by {ctx.author}\n'
            f"**{ctx.position}**\n\n"
            f"**Visible content on current page:**\n{ctx.visible_text}"
        ),
        data={
            "book_id": ctx.book_id,
            "title": ctx.title,
            "author": ctx.author,
            "position": ctx.position,
            "last_updated": ctx.last_updated,
        },
    )
