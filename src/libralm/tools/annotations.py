"""Highlight, note and bookmark tools."""

from __future__ import annotations

import json
from dataclasses import asdict
from datetime import datetime
from typing import Optional

from libralm.library.models import HIGHLIGHT_COLORS, now_iso

from .session import ReaderSession, ToolResult, error

ANNOTATION_TYPES = ("highlight", "note", "bookmark")
EXPORT_FORMATS = ("markdown", "json")
SEARCH_LIMIT = 50


def _clip(text: str, length: int) -> str:
    return text if len(text) <= length else text[:length] + "..."


def _plural(count: int, word: str) -> str:
    return f"{count} {word}" if count == 1 else f"{count} {word}s"


def _date(iso: str) -> str:
    try:
        return datetime.fromisoformat(iso).date().isoformat()
    except ValueError:
        return iso


def _target(
    session: ReaderSession, book_id: Optional[str], chapter_index: Optional[int]
) -> tuple[Optional[str], Optional[ToolResult]]:
    if not book_id and session.reading_context is not None:
        book_id = session.reading_context.book_id
    if not book_id:
        return None, error("No book specified")
    if chapter_index is None:
        return None, error("No chapter specified")
    if chapter_index < 0:
        return None, error("chapter_index must be 0 or greater")
    return book_id, None


def add_highlight(
    session: ReaderSession,
    text: str,
    book_id: Optional[str] = None,
    chapter_index: Optional[int] = None,
    color: str = "yellow",
    cfi_range: Optional[str] = None,
    page_number: Optional[int] = None,
) -> ToolResult:
    book_id, problem = _target(session, book_id, chapter_index)
    if problem:
        return problem
    color = color or "yellow"
    if color not in HIGHLIGHT_COLORS:
        return error(f"Invalid color {color!r}. Choose one of: {', '.join(HIGHLIGHT_COLORS)}")
    if not text.strip():
        return error("Highlight text is empty")

    highlight = session.db.add_highlight(
        book_id, chapter_index, text, color, cfi_range=cfi_range, page_number=page_number
    )
    return ToolResult(
        text=f'Highlight added: "{_clip(text, 50)}"',
        data={"highlight": asdict(highlight)},
    )


def add_note(
    session: ReaderSession,
    text: str,
    book_id: Optional[str] = None,
    chapter_index: Optional[int] = None,
    quote: Optional[str] = None,
    cfi_range: Optional[str] = None,
    page_number: Optional[int] = None,
) -> ToolResult:
    book_id, problem = _target(session, book_id, chapter_index)
    if problem:
        return problem
    if not text.strip():
        return error("Note text is empty")

    note = session.db.add_note(
        book_id, chapter_index, text, quote=quote, cfi_range=cfi_range, page_number=page_number
    )
    on = f' on "{_clip(quote, 30)}"' if quote else ""
    return ToolResult(
        text=f'Note saved{on}: "{_clip(text, 50)}"',
        data={"note": asdict(note)},
    )


def add_bookmark(
    session: ReaderSession,
    book_id: str,
    chapter_index: int,
    title: Optional[str] = None,
    cfi_range: Optional[str] = None,
    page_number: Optional[int] = None,
) -> ToolResult:
    book_id, problem = _target(session, book_id, chapter_index)
    if problem:
        return problem
    bookmark = session.db.add_bookmark(
        book_id, chapter_index, title=title, cfi_range=cfi_range, page_number=page_number
    )
    where = f': "{title}"' if title else f" at chapter {chapter_index}"
    return ToolResult(text=f"Bookmark added{where}", data={"bookmark": asdict(bookmark)})


def list_annotations(
    session: ReaderSession, book_id: Optional[str] = None, chapter_index: Optional[int] = None
) -> ToolResult:
    if not book_id and session.reading_context is not None:
        book_id = session.reading_context.book_id
    if not book_id:
        return error("No book specified")
    highlights = session.db.list_highlights(book_id, chapter_index)
    notes = session.db.list_notes(book_id, chapter_index)
    return ToolResult(
        text=f"Loaded {_plural(len(highlights), 'highlight')} and {_plural(len(notes), 'note')}.",
        data={
            "highlights": [asdict(h) for h in highlights],
            "notes": [asdict(n) for n in notes],
        },
    )


def list_bookmarks(session: ReaderSession, book_id: str) -> ToolResult:
    bookmarks = session.db.list_bookmarks(book_id)
    return ToolResult(
        text=f"Found {_plural(len(bookmarks), 'bookmark')}.",
        data={"bookmarks": [asdict(b) for b in bookmarks]},
    )


def delete_annotation(
    session: ReaderSession, annotation_id: str, annotation_type: str
) -> ToolResult:
    if annotation_type not in ANNOTATION_TYPES:
        return error(
            f"Unknown annotation type {annotation_type!r}. "
            f"Use one of: {', '.join(ANNOTATION_TYPES)}"
        )
    delete = {
        "highlight": session.db.delete_highlight,
        "note": session.db.delete_note,
        "bookmark": session.db.delete_bookmark,
    }[annotation_type]
    label = annotation_type.capitalize()
    if not delete(annotation_id):
        return ToolResult(text=f"{label} {annotation_id} not found.")
    return ToolResult(
        text=f"{label} deleted.",
        data={"deleted": {"id": annotation_id, "type": annotation_type}},
    )


def delete_bookmark(session: ReaderSession, bookmark_id: str) -> ToolResult:
    return delete_annotation(session, bookmark_id, "bookmark")


def search_highlights(
    session: ReaderSession,
    book_id: Optional[str] = None,
    search_text: Optional[str] = None,
    color: Optional[str] = None,
    limit: int = SEARCH_LIMIT,
) -> ToolResult:
    if color and color not in HIGHLIGHT_COLORS:
        return error(f"Invalid color {color!r}. Choose one of: {', '.join(HIGHLIGHT_COLORS)}")
    highlights = session.db.search_highlights(
        book_id=book_id, search_text=search_text, color=color, limit=limit or SEARCH_LIMIT
    )
    if not highlights:
        text = "No highlights found matching your criteria."
    else:
        parts = [f"**Found {_plural(len(highlights), 'highlight')}:**\n"]
        for h in highlights:
            parts.append(f'- [{h.color}] "{h.text}"\n  Created: {_date(h.created_at)}\n')
        text = "\n".join(parts)
    return ToolResult(
        text=text,
        data={"highlights": [asdict(h) for h in highlights], "count": len(highlights)},
    )


def search_notes(
    session: ReaderSession,
    book_id: Optional[str] = None,
    search_text: Optional[str] = None,
    limit: int = SEARCH_LIMIT,
) -> ToolResult:
    notes = session.db.search_notes(
        book_id=book_id, search_text=search_text, limit=limit or SEARCH_LIMIT
    )
    if not notes:
        text = "No notes found matching your criteria."
    else:
        parts = [f"**Found {_plural(len(notes), 'note')}:**\n"]
        for n in notes:
            if n.quote:
                parts.append(f'- On "{n.quote}":\n  "{n.text}"\n  Created: {_date(n.created_at)}\n')
            else:
                parts.append(f'- "{n.text}"\n  Created: {_date(n.created_at)}\n')
        text = "\n".join(parts)
    return ToolResult(
        text=text,
        data={"notes": [asdict(n) for n in notes], "count": len(notes)},
    )


def export_annotations(
    session: ReaderSession, book_id: str, format: str = "markdown"
) -> ToolResult:
    if format not in EXPORT_FORMATS:
        return error(f"Unknown export format {format!r}. Use markdown or json.")

    entry = session.catalog.get_book(book_id)
    title = entry.title if entry else "Unknown Book"
    author = entry.author if entry else "Unknown Author"
    highlights = session.db.list_highlights(book_id)
    notes = session.db.list_notes(book_id)
    bookmarks = session.db.list_bookmarks(book_id)

    if format == "json":
        payload = {
            "book": {"id": book_id, "title": title, "author": author},
            "exported_at": now_iso(),
            "highlights": [asdict(h) for h in highlights],
            "notes": [asdict(n) for n in notes],
            "bookmarks": [asdict(b) for b in bookmarks],
        }
        return ToolResult(
            text=json.dumps(payload, indent=2, ensure_ascii=False),
            data={"format": "json", "export": payload},
        )

    lines = [
        f"# {title}",
        f"**Author:** {author}",
        f"**Exported:** {_date(now_iso())}",
        "",
    ]
    if highlights:
        lines += [f"## Highlights ({len(highlights)})", ""]
        for h in highlights:
            lines += [f"> {h.text}", f"> *Chapter {h.chapter_index + 1}, {h.color} highlight*", ""]
    if notes:
        lines += [f"## Notes ({len(notes)})", ""]
        for n in notes:
            if n.quote:
                lines += [f"> {n.quote}", ""]
            lines += [f"**Note:** {n.text}", f"*Chapter {n.chapter_index + 1}*", ""]
    if bookmarks:
        lines += [f"## Bookmarks ({len(bookmarks)})", ""]
        for b in bookmarks:
            label = b.title or f"Chapter {b.chapter_index + 1}"
            lines.append(f"- {label} (chapter {b.chapter_index + 1})")
        lines.append("")

    markdown = "\n".join(lines).rstrip() + "\n"
    return ToolResult(text=markdown, data={"format": "markdown", "export": markdown})
