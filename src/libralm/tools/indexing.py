"""Reading, full-text search and semantic index tools.

These tools accept a book id or a loose title and resolve it against the
library, so the assistant can refer to books the way the user does.
"""

from __future__ import annotations

import json
import logging
import re
from typing import Any, Optional

from libralm.library.models import LibraryEntry

from .session import ReaderSession, ToolResult, book_not_found, error

log = logging.getLogger(__name__)

PASSAGE_WIDTH = 300


def _is_pdf(entry: LibraryEntry) -> bool:
    return entry.format == "pdf" or entry.path.lower().endswith(".pdf")


def _index_status(session: ReaderSession, book_id: str, unit: str) -> str:
    if session.db.has_semantic_index(book_id):
        return "✓ This book has a semantic index saved."
    return (
        f"⚠ No semantic index yet. Consider reading key {unit} "
        "and creating one using save_book_index."
    )


def passage(content: str, query: str, width: int = PASSAGE_WIDTH) -> str:
    """A window of ``content`` around the first occurrence of a query term."""
    lowered = content.lower()
    hit = -1
    for term in query.lower().split():
        term = term.strip("\"'*")
        if term:
            pos = lowered.find(term)
            if pos != -1 and (hit == -1 or pos < hit):
                hit = pos
    if hit == -1 or len(content) <= width:
        snippet = content[:width]
        return snippet + ("..." if len(content) > width else "")
    start = max(0, hit - width // 3)
    end = min(len(content), start + width)
    snippet = content[start:end].replace("\n", " ")
    return ("..." if start else "") + snippet + ("..." if end < len(content) else "")


# ── Table of contents ──────────────────────────────────


def _chapter_list(session: ReaderSession, entry: LibraryEntry) -> dict[str, Any]:
    cached = session.db.get_book_structure(entry.id)
    if cached:
        try:
            return json.loads(cached)
        except ValueError:
            log.warning("Discarding unreadable structure cache for %s", entry.id)

    extracted = session.extract(entry)
    structure = {
        "title": extracted.title,
        "author": extracted.author,
        "chapters": [
            {"index": ch.index, "title": ch.title, "length": len(ch.content)}
            for ch in extracted.chapters
        ],
    }
    session.db.save_book_structure(entry.id, json.dumps(structure))
    return structure


def get_book_toc(session: ReaderSession, book: str) -> ToolResult:
    entry = session.resolve(book)
    if entry is None:
        return book_not_found(book)
    try:
        structure = _chapter_list(session, entry)
    except Exception as e:
        log.exception("Failed to read %s", entry.path)
        return error(f"Error reading book: {e}")

    chapters = structure["chapters"]
    toc_text = "\n".join(
        f"{ch['index']}. {ch['title']} ({round(ch['length'] / 1000)}k chars)"
        for ch in chapters
    )
    has_index = session.db.has_semantic_index(entry.id)
    searchable = session.db.is_book_indexed(entry.id)
    return ToolResult(
        text=(
            f"**{structure['title']}** by {structure['author']}\n\n"
            f"**Table of Contents ({len(chapters)} chapters):**\n{toc_text}\n\n"
            f"{_index_status(session, entry.id, 'chapters')}"
        ),
        data={
            "book_id": entry.id,
            "title": structure["title"],
            "author": structure["author"],
            "chapters": chapters,
            "has_semantic_index": has_index,
            "search_indexed": searchable,
        },
    )


# ── Reading ────────────────────────────────────────────


def read_chapter(
    session: ReaderSession,
    book: str,
    chapter_index: int,
    offset: int = 0,
    limit: Optional[int] = None,
) -> ToolResult:
    entry = session.resolve(book)
    if entry is None:
        return book_not_found(book)
    if offset < 0:
        return error("offset must be 0 or greater")
    if limit is not None and limit < 1:
        return error("limit must be positive")

    try:
        extracted = session.extract(entry)
    except Exception as e:
        log.exception("Failed to extract %s", entry.path)
        return error(f"Error reading book: {e}")

    chapter = extracted.chapter(chapter_index)
    if chapter is None:
        count = len(extracted.chapters)
        return ToolResult(
            text=(
                f"Chapter {chapter_index} not found. "
                f"Book has {count} chapters (0-{max(count - 1, 0)})."
            )
        )

    chunking = session.config.chunking
    total = len(chapter.content)
    if offset > 0 and offset >= total:
        return error(
            f"offset {offset} is beyond chapter length ({total}). "
            "Use offset=0 to read from the start."
        )
    if limit is None:
        limit = chunking.chunk_size if total > chunking.auto_chunk_threshold else total
    limit = min(limit, chunking.auto_chunk_threshold)

    content = chapter.content[offset : offset + limit]
    end = offset + len(content)
    has_more = end < total
    remaining = total - end

    header = f"**{extracted.title}** - Chapter {chapter.index}: {chapter.title}"
    if offset > 0 or has_more:
        header += f"\nReading chars {offset + 1}-{end} of {total}"
        if has_more:
            header += f" | {round(remaining / 1000)}k chars remaining"
            header += f"\nTo continue: read_chapter with offset={end}"

    return ToolResult(
        text=f"{header}\n\n---\n\n{content}",
        data={
            "book_id": extracted.book_id,
            "book_title": extracted.title,
            "chapter_index": chapter.index,
            "chapter_title": chapter.title,
            "content": content,
            "total_length": total,
            "offset": offset,
            "length": len(content),
            "has_more": has_more,
            "remaining": remaining,
            "next_offset": end if has_more else None,
        },
    )


def read_pdf_page(
    session: ReaderSession, book: str, page_number: int, page_count: int = 1
) -> ToolResult:
    entry = session.resolve(book)
    if entry is None:
        return book_not_found(book)
    if not _is_pdf(entry):
        return ToolResult(text=f'"{entry.title}" is not a PDF. Use read_chapter for EPUB books.')
    max_pages = session.config.chunking.max_pdf_pages
    if page_number < 1:
        return error("page_number is 1-based")
    if not 1 <= page_count <= max_pages:
        return error(f"page_count must be between 1 and {max_pages}")

    try:
        pages, total = session.pdf.read_pages(entry.path, page_number, page_count)
    except Exception as e:
        log.exception("Failed to read pages from %s", entry.path)
        return error(f"Error reading PDF page: {e}")

    if not pages:
        return ToolResult(
            text=f"No content found on page {page_number}. Book has {total} pages.",
            data={"book_id": entry.id, "pages": [], "total_pages": total},
        )

    last = pages[-1].page_number
    page_range = f"Pages {page_number}-{last}" if last > page_number else f"Page {page_number}"
    body = "\n\n".join(f"--- Page {p.page_number} ---\n\n{p.text}" for p in pages)
    return ToolResult(
        text=f"**{entry.title}** - {page_range} of {total}\n\n{body}",
        data={
            "book_id": entry.id,
            "book_title": entry.title,
            "pages": [{"page_number": p.page_number, "text": p.text} for p in pages],
            "total_pages": total,
            "start_page": page_number,
            "pages_returned": len(pages),
        },
    )


def get_pdf_toc(session: ReaderSession, book: str) -> ToolResult:
    entry = session.resolve(book)
    if entry is None:
        return book_not_found(book)
    if not _is_pdf(entry):
        return ToolResult(text=f'"{entry.title}" is not a PDF. Use get_book_toc for EPUB books.')

    try:
        pdf = session.pdf.open(entry.path)
    except Exception as e:
        log.exception("Failed to open %s", entry.path)
        return error(f"Error reading PDF: {e}")

    if pdf.toc:
        toc_text = "\n".join(
            f"{'  ' * item.level}{item.title} (page {item.page_number})" for item in pdf.toc
        )
    else:
        toc_text = "(No outline/bookmarks found in this PDF)"

    return ToolResult(
        text=(
            f"**{pdf.title}** by {pdf.author}\n\n"
            f"**Format:** PDF ({pdf.page_count} pages)\n\n"
            f"**Table of Contents:**\n{toc_text}\n\n"
            f"{_index_status(session, entry.id, 'pages')}\n\n"
            "**Tip:** Use read_pdf_page with page_number to read specific pages."
        ),
        data={
            "book_id": entry.id,
            "title": pdf.title,
            "author": pdf.author,
            "page_count": pdf.page_count,
            "toc": [
                {"title": t.title, "page_number": t.page_number, "level": t.level}
                for t in pdf.toc
            ],
            "has_toc": bool(pdf.toc),
            "has_semantic_index": session.db.has_semantic_index(entry.id),
        },
    )


# ── Semantic index ─────────────────────────────────────


def _format_index(title: str, data: dict[str, Any], created: str, updated: str) -> str:
    lines = [f'**Semantic Index for "{title}"**', f"Created: {created}", f"Updated: {updated}", ""]
    if data.get("overallSummary"):
        lines += ["**Summary:**", data["overallSummary"], ""]
    if data.get("themes"):
        lines += [f"**Themes:** {', '.join(map(str, data['themes']))}", ""]
    if data.get("keyTopics"):
        lines.append("**Key Topics:**")
        for topic in data["keyTopics"]:
            chapters = ", ".join(str(c) for c in topic.get("chapters", []))
            lines.append(f"- {topic.get('topic', '')} (chapters: {chapters})")
            if topic.get("summary"):
                lines.append(f"  {topic['summary']}")
        lines.append("")
    if data.get("chapterSummaries"):
        lines.append("**Chapter Summaries:**")
        for ch in data["chapterSummaries"]:
            lines.append(f"{ch.get('chapterIndex')}. {ch.get('title', '')}: {ch.get('summary', '')}")
    return "\n".join(lines).rstrip()


def get_book_index(session: ReaderSession, book: str) -> ToolResult:
    entry = session.resolve(book)
    if entry is None:
        return book_not_found(book)

    index = session.db.get_semantic_index(entry.id)
    if index is None:
        return ToolResult(
            text=(
                f'No semantic index found for "{entry.title}". Use get_book_toc and '
                "read_chapter to analyze the book, then save_book_index to create an index."
            ),
            data={"book_id": entry.id, "book_title": entry.title, "has_index": False},
        )

    try:
        data = json.loads(index.index_data)
    except ValueError:
        return error(f'The saved index for "{entry.title}" is not valid JSON.')
    if not isinstance(data, dict):
        data = {"value": data}

    return ToolResult(
        text=_format_index(entry.title, data, index.created_at, index.updated_at),
        data={
            "book_id": entry.id,
            "book_title": entry.title,
            "has_index": True,
            "index": data,
            "created_at": index.created_at,
            "updated_at": index.updated_at,
        },
    )


def save_book_index(session: ReaderSession, book: str, index_data: dict[str, Any]) -> ToolResult:
    entry = session.resolve(book)
    if entry is None:
        return book_not_found(book)
    if not isinstance(index_data, dict):
        return error("index_data must be an object")

    saved = session.db.save_semantic_index(entry.id, json.dumps(index_data, ensure_ascii=False))
    stats = {
        key: len(index_data.get(key) or [])
        for key in ("themes", "keyTopics", "chapterSummaries", "importantQuotes")
    }
    return ToolResult(
        text=(
            f'✓ Semantic index saved for "{entry.title}"\n\n'
            "Indexed:\n"
            f"- {stats['themes']} themes\n"
            f"- {stats['keyTopics']} key topics\n"
            f"- {stats['chapterSummaries']} chapter summaries\n"
            f"- {stats['importantQuotes']} important quotes"
        ),
        data={
            "success": True,
            "book_id": entry.id,
            "book_title": entry.title,
            "index_id": saved.id,
            "stats": stats,
            "updated_at": saved.updated_at,
        },
    )


# ── Full-text search ───────────────────────────────────


def index_book(session: ReaderSession, book: str, force: bool = False) -> ToolResult:
    entry = session.resolve(book)
    if entry is None:
        return book_not_found(book)
    try:
        extracted, reindexed = session.index_book(entry, force=force)
    except Exception as e:
        log.exception("Failed to index %s", entry.path)
        return error(f"Error indexing book: {e}")

    report = extracted.report
    text = (
        f'Indexed "{extracted.title}": {len(extracted.chapters)} chapters.'
        if reindexed
        else f'"{extracted.title}" is already indexed and unchanged.'
    )
    if report.skipped:
        text += f" Skipped {len(report.skipped)} units without usable text."
    return ToolResult(
        text=text,
        data={
            "book_id": entry.id,
            "reindexed": reindexed,
            "chapters": len(extracted.chapters),
            "skipped": [{"index": s.index, "reason": s.reason} for s in report.skipped],
        },
    )


def search_content(
    session: ReaderSession,
    query: str,
    book_ids: Optional[list[str]] = None,
    limit: int = 20,
) -> ToolResult:
    if not query.strip():
        return error("Search query is empty")

    resolved: Optional[list[str]] = None
    if book_ids:
        resolved = []
        for ref in book_ids:
            entry = session.resolve(ref)
            if entry is None:
                return book_not_found(ref)
            try:
                session.index_book(entry)
            except Exception as e:
                log.exception("Failed to index %s", entry.path)
                return error(f'Error indexing "{entry.title}": {e}')
            resolved.append(entry.id)
    elif not session.db.get_indexed_books():
        return ToolResult(text="No books are indexed yet. Use index_book on a book first.")

    results = session.db.search_book_content(query, book_ids=resolved, limit=limit)
    if not results:
        return ToolResult(
            text=f'No passages found for "{query}".',
            data={"query": query, "results": []},
        )

    lines = [f'**Found {len(results)} passages for "{query}":**', ""]
    items = []
    for r in results:
        snippet = passage(r.content, query)
        lines.append(
            f"- **{r.book_title or r.book_id}**, chapter {r.chapter_index}: "
            f"{r.chapter_title} (score {r.score:.2f})\n  {snippet}"
        )
        items.append(
            {
                "book_id": r.book_id,
                "book_title": r.book_title,
                "author": r.author,
                "chapter_index": r.chapter_index,
                "chapter_title": r.chapter_title,
                "passage": snippet,
                "score": r.score,
            }
        )
    return ToolResult(text="\n".join(lines), data={"query": query, "results": items})


def list_indexed_books(session: ReaderSession) -> ToolResult:
    books = session.db.get_indexed_books()
    if not books:
        return ToolResult(text="No books are indexed yet.", data={"books": []})
    with_semantic = set(session.db.get_books_with_semantic_index())
    lines = [
        f"- {b.book_title or b.book_id} ({b.chapter_count} chapters, indexed {b.indexed_at})"
        + (" ✓ semantic index" if b.book_id in with_semantic else "")
        for b in books
    ]
    return ToolResult(
        text=f"**{len(books)} indexed books:**\n" + "\n".join(lines),
        data={
            "books": [
                {
                    "book_id": b.book_id,
                    "book_title": b.book_title,
                    "author": b.author,
                    "chapter_count": b.chapter_count,
                    "indexed_at": b.indexed_at,
                    "has_semantic_index": b.book_id in with_semantic,
                }
                for b in books
            ]
        },
    )
