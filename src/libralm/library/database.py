"""SQLite store for annotations, indexed book content, semantic indexes and feeds."""

from __future__ import annotations

import logging
import sqlite3
import uuid
from dataclasses import dataclass
from pathlib import Path
from typing import Iterable, Optional

from libralm.parsers.text import clean_text

from .models import (
    Article,
    Bookmark,
    ExtractedChapter,
    Feed,
    Highlight,
    IndexedBook,
    Note,
    SearchResult,
    SemanticIndex,
    now_iso,
)

log = logging.getLogger(__name__)

# Weights follow column order: body text outranks incidental title matches.
CONTENT_BM25 = "bm25(book_content_fts, 10.0, 1.0)"
ARTICLE_BM25 = "bm25(articles_fts, 2.0, 1.0, 10.0)"

_SCHEMA = """
CREATE TABLE IF NOT EXISTS highlights (
    id TEXT PRIMARY KEY,
    book_id TEXT NOT NULL,
    chapter_index INTEGER NOT NULL,
    text TEXT NOT NULL,
    color TEXT DEFAULT 'yellow',
    cfi_range TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS notes (
    id TEXT PRIMARY KEY,
    book_id TEXT NOT NULL,
    chapter_index INTEGER NOT NULL,
    text TEXT NOT NULL,
    quote TEXT,
    cfi_range TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS bookmarks (
    id TEXT PRIMARY KEY,
    book_id TEXT NOT NULL,
    chapter_index INTEGER NOT NULL,
    title TEXT,
    created_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_highlights_book ON highlights(book_id);
CREATE INDEX IF NOT EXISTS idx_notes_book ON notes(book_id);
CREATE INDEX IF NOT EXISTS idx_bookmarks_book ON bookmarks(book_id);

CREATE TABLE IF NOT EXISTS book_content (
    id TEXT PRIMARY KEY,
    book_id TEXT NOT NULL,
    chapter_index INTEGER NOT NULL,
    chapter_title TEXT,
    content TEXT NOT NULL,
    content_hash TEXT NOT NULL,
    indexed_at TEXT NOT NULL
);

CREATE INDEX IF NOT EXISTS idx_book_content_book ON book_content(book_id);
CREATE INDEX IF NOT EXISTS idx_book_content_hash ON book_content(content_hash);

CREATE VIRTUAL TABLE IF NOT EXISTS book_content_fts USING fts5(
    content,
    chapter_title,
    content_id UNINDEXED,
    book_id UNINDEXED,
    tokenize='porter unicode61'
);

CREATE TABLE IF NOT EXISTS book_structure (
    book_id TEXT PRIMARY KEY,
    structure_json TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS semantic_index (
    id TEXT PRIMARY KEY,
    book_id TEXT NOT NULL UNIQUE,
    index_data TEXT NOT NULL,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS feeds (
    id TEXT PRIMARY KEY,
    url TEXT UNIQUE NOT NULL,
    title TEXT NOT NULL,
    description TEXT,
    icon_url TEXT,
    last_fetched TEXT,
    created_at TEXT NOT NULL
);

CREATE TABLE IF NOT EXISTS articles (
    id TEXT PRIMARY KEY,
    feed_id TEXT NOT NULL REFERENCES feeds(id) ON DELETE CASCADE,
    guid TEXT NOT NULL,
    title TEXT NOT NULL,
    link TEXT,
    author TEXT,
    pub_date TEXT,
    summary TEXT,
    content TEXT,
    is_read INTEGER DEFAULT 0,
    is_saved INTEGER DEFAULT 0,
    created_at TEXT NOT NULL,
    UNIQUE(feed_id, guid)
);

CREATE INDEX IF NOT EXISTS idx_articles_feed ON articles(feed_id);

CREATE VIRTUAL TABLE IF NOT EXISTS articles_fts USING fts5(
    title,
    summary,
    content,
    article_id UNINDEXED,
    feed_id UNINDEXED,
    tokenize='porter unicode61'
);
"""


@dataclass(frozen=True)
class Migration:
    version: int
    table: str
    column: str
    definition: str


# Additive only. Each entry is applied when its column is missing.
MIGRATIONS: tuple[Migration, ...] = (
    Migration(2, "book_content", "book_title", "TEXT"),
    Migration(2, "book_content", "author", "TEXT"),
    Migration(3, "bookmarks", "cfi_range", "TEXT"),
    Migration(4, "highlights", "page_number", "INTEGER"),
    Migration(4, "notes", "page_number", "INTEGER"),
    Migration(4, "bookmarks", "page_number", "INTEGER"),
)

SCHEMA_VERSION = max(m.version for m in MIGRATIONS)


def like_pattern(text: str) -> str:
    """Substring LIKE pattern with the wildcards in `text` matched literally."""
    escaped = text.replace("\\", "\\\\").replace("%", "\\%").replace("_", "\\_")
    return f"%{escaped}%"


def build_match_query(query: str) -> str:
    """Whitespace-separated terms become quoted prefix terms joined with AND."""
    terms = []
    for term in query.split():
        if not any(ch.isalnum() for ch in term):
            continue
        terms.append('"%s"*' % term.replace('"', '""'))
    return " AND ".join(terms)


def normalize_scores(raw: list[float]) -> list[float]:
    """Map raw bm25 values into [0, 1] relative to the best hit in this set."""
    if not raw:
        return []
    top = max(abs(s) for s in raw)
    if top == 0:
        return [0.0 for _ in raw]
    return [abs(s) / top for s in raw]


def _new_id() -> str:
    return str(uuid.uuid4())


class Database:
    def __init__(self, db_path: Path) -> None:
        self._db_path = db_path
        self._conn = sqlite3.connect(str(db_path), check_same_thread=False)
        self._conn.row_factory = sqlite3.Row
        self._conn.execute("PRAGMA journal_mode=WAL")
        self._conn.execute("PRAGMA foreign_keys=ON")
        self._init_schema()

    def _init_schema(self) -> None:
        self._conn.executescript(_SCHEMA)
        self.migrate()
        self._conn.commit()

    def close(self) -> None:
        self._conn.close()

    # ── Migrations ─────────────────────────────────────────

    def column_exists(self, table: str, column: str) -> bool:
        rows = self._conn.execute(f"PRAGMA table_info({table})").fetchall()
        return any(r["name"] == column for r in rows)

    @property
    def user_version(self) -> int:
        return self._conn.execute("PRAGMA user_version").fetchone()[0]

    def migrate(self) -> list[Migration]:
        """Apply missing columns in version order. Safe to run repeatedly."""
        applied = []
        for m in sorted(MIGRATIONS, key=lambda m: m.version):
            if self.column_exists(m.table, m.column):
                continue
            self._conn.execute(
                f"ALTER TABLE {m.table} ADD COLUMN {m.column} {m.definition}"
            )
            applied.append(m)
            log.info("Applied migration v%d: %s.%s", m.version, m.table, m.column)
        if self.user_version < SCHEMA_VERSION:
            self._conn.execute(f"PRAGMA user_version = {SCHEMA_VERSION}")
        self._conn.commit()
        return applied

    # ── Highlights ─────────────────────────────────────────

    def add_highlight(
        self,
        book_id: str,
        chapter_index: int,
        text: str,
        color: str = "yellow",
        cfi_range: Optional[str] = None,
        page_number: Optional[int] = None,
    ) -> Highlight:
        hl = Highlight(
            id=_new_id(),
            book_id=book_id,
            chapter_index=chapter_index,
            text=text,
            color=color or "yellow",
            cfi_range=cfi_range,
            page_number=page_number,
        )
        self._conn.execute(
            """INSERT INTO highlights
               (id, book_id, chapter_index, text, color, cfi_range, page_number, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                hl.id,
                hl.book_id,
                hl.chapter_index,
                hl.text,
                hl.color,
                hl.cfi_range,
                hl.page_number,
                hl.created_at,
            ),
        )
        self._conn.commit()
        return hl

    def list_highlights(
        self, book_id: str, chapter_index: Optional[int] = None
    ) -> list[Highlight]:
        return self.search_highlights(book_id=book_id, chapter_index=chapter_index)

    def search_highlights(
        self,
        book_id: Optional[str] = None,
        search_text: Optional[str] = None,
        color: Optional[str] = None,
        limit: Optional[int] = None,
        chapter_index: Optional[int] = None,
    ) -> list[Highlight]:
        sql = "SELECT * FROM highlights WHERE 1=1"
        params: list = []
        if book_id:
            sql += " AND book_id = ?"
            params.append(book_id)
        if chapter_index is not None:
            sql += " AND chapter_index = ?"
            params.append(chapter_index)
        if search_text:
            sql += " AND text LIKE ? ESCAPE '\\'"
            params.append(like_pattern(search_text))
        if color:
            sql += " AND color = ?"
            params.append(color)
        sql += " ORDER BY created_at DESC, rowid DESC"
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        rows = self._conn.execute(sql, params).fetchall()
        return [self._row_to_highlight(r) for r in rows]

    def delete_highlight(self, highlight_id: str) -> bool:
        cur = self._conn.execute("DELETE FROM highlights WHERE id = ?", (highlight_id,))
        self._conn.commit()
        return cur.rowcount > 0

    @staticmethod
    def _row_to_highlight(row: sqlite3.Row) -> Highlight:
        return Highlight(
            id=row["id"],
            book_id=row["book_id"],
            chapter_index=row["chapter_index"],
            text=row["text"],
            color=row["color"] or "yellow",
            cfi_range=row["cfi_range"],
            page_number=row["page_number"],
            created_at=row["created_at"],
        )

    # ── Notes ──────────────────────────────────────────────

    def add_note(
        self,
        book_id: str,
        chapter_index: int,
        text: str,
        quote: Optional[str] = None,
        cfi_range: Optional[str] = None,
        page_number: Optional[int] = None,
    ) -> Note:
        note = Note(
            id=_new_id(),
            book_id=book_id,
            chapter_index=chapter_index,
            text=text,
            quote=quote,
            cfi_range=cfi_range,
            page_number=page_number,
        )
        self._conn.execute(
            """INSERT INTO notes
               (id, book_id, chapter_index, text, quote, cfi_range, page_number, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?, ?)""",
            (
                note.id,
                note.book_id,
                note.chapter_index,
                note.text,
                note.quote,
                note.cfi_range,
                note.page_number,
                note.created_at,
            ),
        )
        self._conn.commit()
        return note

    def list_notes(self, book_id: str, chapter_index: Optional[int] = None) -> list[Note]:
        return self.search_notes(book_id=book_id, chapter_index=chapter_index)

    def search_notes(
        self,
        book_id: Optional[str] = None,
        search_text: Optional[str] = None,
        limit: Optional[int] = None,
        chapter_index: Optional[int] = None,
    ) -> list[Note]:
        sql = "SELECT * FROM notes WHERE 1=1"
        params: list = []
        if book_id:
            sql += " AND book_id = ?"
            params.append(book_id)
        if chapter_index is not None:
            sql += " AND chapter_index = ?"
            params.append(chapter_index)
        if search_text:
            pattern = like_pattern(search_text)
            sql += " AND (text LIKE ? ESCAPE '\\' OR quote LIKE ? ESCAPE '\\')"
            params.extend([pattern, pattern])
        sql += " ORDER BY created_at DESC, rowid DESC"
        if limit:
            sql += " LIMIT ?"
            params.append(limit)
        rows = self._conn.execute(sql, params).fetchall()
        return [self._row_to_note(r) for r in rows]

    def delete_note(self, note_id: str) -> bool:
        cur = self._conn.execute("DELETE FROM notes WHERE id = ?", (note_id,))
        self._conn.commit()
        return cur.rowcount > 0

    @staticmethod
    def _row_to_note(row: sqlite3.Row) -> Note:
        return Note(
            id=row["id"],
            book_id=row["book_id"],
            chapter_index=row["chapter_index"],
            text=row["text"],
            quote=row["quote"],
            cfi_range=row["cfi_range"],
            page_number=row["page_number"],
            created_at=row["created_at"],
        )

    # ── Bookmarks ──────────────────────────────────────────

    def add_bookmark(
        self,
        book_id: str,
        chapter_index: int,
        title: Optional[str] = None,
        cfi_range: Optional[str] = None,
        page_number: Optional[int] = None,
    ) -> Bookmark:
        bm = Bookmark(
            id=_new_id(),
            book_id=book_id,
            chapter_index=chapter_index,
            title=title,
            cfi_range=cfi_range,
            page_number=page_number,
        )
        self._conn.execute(
            """INSERT INTO bookmarks
               (id, book_id, chapter_index, title, cfi_range, page_number, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                bm.id,
                bm.book_id,
                bm.chapter_index,
                bm.title,
                bm.cfi_range,
                bm.page_number,
                bm.created_at,
            ),
        )
        self._conn.commit()
        return bm

    def list_bookmarks(self, book_id: str) -> list[Bookmark]:
        rows = self._conn.execute(
            "SELECT * FROM bookmarks WHERE book_id = ? ORDER BY chapter_index, created_at",
            (book_id,),
        ).fetchall()
        return [
            Bookmark(
                id=r["id"],
                book_id=r["book_id"],
                chapter_index=r["chapter_index"],
                title=r["title"],
                cfi_range=r["cfi_range"],
                page_number=r["page_number"],
                created_at=r["created_at"],
            )
            for r in rows
        ]

    def delete_bookmark(self, bookmark_id: str) -> bool:
        cur = self._conn.execute("DELETE FROM bookmarks WHERE id = ?", (bookmark_id,))
        self._conn.commit()
        return cur.rowcount > 0

    # ── Indexed Content ────────────────────────────────────

    def is_book_indexed(self, book_id: str) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM book_content WHERE book_id = ? LIMIT 1", (book_id,)
        ).fetchone()
        return row is not None

    def get_book_content_hash(self, book_id: str) -> Optional[str]:
        row = self._conn.execute(
            "SELECT content_hash FROM book_content WHERE book_id = ? LIMIT 1",
            (book_id,),
        ).fetchone()
        return row["content_hash"] if row else None

    def index_book_content(
        self,
        book_id: str,
        chapters: Iterable[ExtractedChapter],
        content_hash: str,
        book_title: Optional[str] = None,
        author: Optional[str] = None,
    ) -> int:
        """Replace every indexed row of a book in one transaction.

        Readers on other connections keep seeing the previous rows until the
        commit. Returns the number of chapters written.
        """
        indexed_at = now_iso()
        count = 0
        with self._conn:
            self._delete_book_content(book_id)
            for ch in chapters:
                content_id = _new_id()
                self._conn.execute(
                    """INSERT INTO book_content
                       (id, book_id, chapter_index, chapter_title, content,
                        content_hash, indexed_at, book_title, author)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)""",
                    (
                        content_id,
                        book_id,
                        ch.index,
                        ch.title,
                        ch.content,
                        content_hash,
                        indexed_at,
                        book_title,
                        author,
                    ),
                )
                self._conn.execute(
                    """INSERT INTO book_content_fts (content, chapter_title, content_id, book_id)
                       VALUES (?, ?, ?, ?)""",
                    (ch.content, ch.title, content_id, book_id),
                )
                count += 1
        log.info("Indexed %d chapters of %s", count, book_id)
        return count

    def delete_book_content(self, book_id: str) -> None:
        with self._conn:
            self._delete_book_content(book_id)

    def _delete_book_content(self, book_id: str) -> None:
        self._conn.execute("DELETE FROM book_content_fts WHERE book_id = ?", (book_id,))
        self._conn.execute("DELETE FROM book_content WHERE book_id = ?", (book_id,))

    def get_indexed_books(self) -> list[IndexedBook]:
        rows = self._conn.execute(
            """SELECT book_id, MAX(book_title) AS book_title, MAX(author) AS author,
                      COUNT(*) AS chapter_count, MAX(indexed_at) AS indexed_at
               FROM book_content
               GROUP BY book_id
               ORDER BY indexed_at DESC"""
        ).fetchall()
        return [
            IndexedBook(
                book_id=r["book_id"],
                book_title=r["book_title"],
                author=r["author"],
                chapter_count=r["chapter_count"],
                indexed_at=r["indexed_at"],
            )
            for r in rows
        ]

    def search_book_content(
        self,
        query: str,
        book_ids: Optional[list[str]] = None,
        limit: int = 20,
    ) -> list[SearchResult]:
        match = build_match_query(query)
        if not match:
            return []

        sql = f"""
            SELECT c.book_id, c.book_title, c.author, c.chapter_title,
                   c.chapter_index, c.content, {CONTENT_BM25} AS score
            FROM book_content_fts
            JOIN book_content c ON c.id = book_content_fts.content_id
            WHERE book_content_fts MATCH ?
        """
        params: list = [match]
        if book_ids:
            sql += f" AND c.book_id IN ({', '.join('?' for _ in book_ids)})"
            params.extend(book_ids)
        sql += " ORDER BY score LIMIT ?"
        params.append(limit)

        rows = self._conn.execute(sql, params).fetchall()
        scores = normalize_scores([r["score"] for r in rows])
        return [
            SearchResult(
                book_id=r["book_id"],
                book_title=r["book_title"],
                author=r["author"],
                chapter_title=r["chapter_title"] or "",
                chapter_index=r["chapter_index"],
                content=r["content"],
                score=score,
            )
            for r, score in zip(rows, scores)
        ]

    # ── Structure Cache ────────────────────────────────────

    def save_book_structure(self, book_id: str, structure_json: str) -> None:
        self._conn.execute(
            """INSERT INTO book_structure (book_id, structure_json, updated_at)
               VALUES (?, ?, ?)
               ON CONFLICT(book_id) DO UPDATE SET
                   structure_json = excluded.structure_json,
                   updated_at = excluded.updated_at""",
            (book_id, structure_json, now_iso()),
        )
        self._conn.commit()

    def get_book_structure(self, book_id: str) -> Optional[str]:
        row = self._conn.execute(
            "SELECT structure_json FROM book_structure WHERE book_id = ?", (book_id,)
        ).fetchone()
        return row["structure_json"] if row else None

    def delete_book_structure(self, book_id: str) -> None:
        self._conn.execute("DELETE FROM book_structure WHERE book_id = ?", (book_id,))
        self._conn.commit()

    # ── Semantic Index ─────────────────────────────────────

    def save_semantic_index(self, book_id: str, index_data: str) -> SemanticIndex:
        now = now_iso()
        existing = self.get_semantic_index(book_id)
        if existing:
            self._conn.execute(
                "UPDATE semantic_index SET index_data = ?, updated_at = ? WHERE book_id = ?",
                (index_data, now, book_id),
            )
            self._conn.commit()
            existing.index_data = index_data
            existing.updated_at = now
            return existing

        index = SemanticIndex(
            id=_new_id(),
            book_id=book_id,
            index_data=index_data,
            created_at=now,
            updated_at=now,
        )
        self._conn.execute(
            """INSERT INTO semantic_index (id, book_id, index_data, created_at, updated_at)
               VALUES (?, ?, ?, ?, ?)""",
            (index.id, index.book_id, index.index_data, index.created_at, index.updated_at),
        )
        self._conn.commit()
        return index

    def get_semantic_index(self, book_id: str) -> Optional[SemanticIndex]:
        row = self._conn.execute(
            "SELECT * FROM semantic_index WHERE book_id = ?", (book_id,)
        ).fetchone()
        if not row:
            return None
        return SemanticIndex(
            id=row["id"],
            book_id=row["book_id"],
            index_data=row["index_data"],
            created_at=row["created_at"],
            updated_at=row["updated_at"],
        )

    def has_semantic_index(self, book_id: str) -> bool:
        row = self._conn.execute(
            "SELECT 1 FROM semantic_index WHERE book_id = ?", (book_id,)
        ).fetchone()
        return row is not None

    def get_books_with_semantic_index(self) -> list[str]:
        rows = self._conn.execute(
            "SELECT book_id FROM semantic_index ORDER BY updated_at DESC"
        ).fetchall()
        return [r["book_id"] for r in rows]

    # ── Feeds ──────────────────────────────────────────────

    _FEED_SELECT = """
        SELECT f.*, COALESCE(SUM(CASE WHEN a.is_read = 0 THEN 1 ELSE 0 END), 0) AS unread_count
        FROM feeds f LEFT JOIN articles a ON a.feed_id = f.id
    """

    def add_feed(
        self,
        url: str,
        title: str,
        description: Optional[str] = None,
        icon_url: Optional[str] = None,
        last_fetched: Optional[str] = None,
    ) -> Feed:
        feed = Feed(
            id=_new_id(),
            url=url,
            title=title,
            description=description,
            icon_url=icon_url,
            last_fetched=last_fetched,
        )
        self._conn.execute(
            """INSERT INTO feeds (id, url, title, description, icon_url, last_fetched, created_at)
               VALUES (?, ?, ?, ?, ?, ?, ?)""",
            (
                feed.id,
                feed.url,
                feed.title,
                feed.description,
                feed.icon_url,
                feed.last_fetched,
                now_iso(),
            ),
        )
        self._conn.commit()
        return feed

    def get_feed(self, feed_id: str) -> Optional[Feed]:
        row = self._conn.execute(
            f"{self._FEED_SELECT} WHERE f.id = ? GROUP BY f.id", (feed_id,)
        ).fetchone()
        return self._row_to_feed(row) if row else None

    def get_feed_by_url(self, url: str) -> Optional[Feed]:
        row = self._conn.execute(
            f"{self._FEED_SELECT} WHERE f.url = ? GROUP BY f.id", (url,)
        ).fetchone()
        return self._row_to_feed(row) if row else None

    def get_feeds(self) -> list[Feed]:
        """Subscriptions only; `unread_count` is left at 0."""
        rows = self._conn.execute(
            "SELECT * FROM feeds ORDER BY title COLLATE NOCASE"
        ).fetchall()
        return [self._row_to_feed(r) for r in rows]

    def get_feeds_with_unread_counts(self) -> list[Feed]:
        rows = self._conn.execute(
            f"{self._FEED_SELECT} GROUP BY f.id ORDER BY f.title COLLATE NOCASE"
        ).fetchall()
        return [self._row_to_feed(r) for r in rows]

    def update_feed(
        self,
        feed_id: str,
        title: Optional[str] = None,
        description: Optional[str] = None,
        icon_url: Optional[str] = None,
        last_fetched: Optional[str] = None,
    ) -> None:
        self._conn.execute(
            """UPDATE feeds SET
                   title = COALESCE(?, title),
                   description = COALESCE(?, description),
                   icon_url = COALESCE(?, icon_url),
                   last_fetched = COALESCE(?, last_fetched)
               WHERE id = ?""",
            (title, description, icon_url, last_fetched, feed_id),
        )
        self._conn.commit()

    def delete_feed(self, feed_id: str) -> bool:
        with self._conn:
            self._conn.execute("DELETE FROM articles_fts WHERE feed_id = ?", (feed_id,))
            self._conn.execute("DELETE FROM articles WHERE feed_id = ?", (feed_id,))
            cur = self._conn.execute("DELETE FROM feeds WHERE id = ?", (feed_id,))
        return cur.rowcount > 0

    @staticmethod
    def _row_to_feed(row: sqlite3.Row) -> Feed:
        return Feed(
            id=row["id"],
            url=row["url"],
            title=row["title"],
            description=row["description"],
            icon_url=row["icon_url"],
            last_fetched=row["last_fetched"],
            unread_count=row["unread_count"] if "unread_count" in row.keys() else 0,
        )

    # ── Articles ───────────────────────────────────────────

    def add_articles(self, articles: Iterable[Article]) -> int:
        """Insert articles whose (feed_id, guid) is new. Returns how many were added."""
        added = 0
        with self._conn:
            for a in articles:
                cur = self._conn.execute(
                    """INSERT OR IGNORE INTO articles
                       (id, feed_id, guid, title, link, author, pub_date, summary,
                        content, is_read, is_saved, created_at)
                       VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?, 0, 0, ?)""",
                    (
                        a.id,
                        a.feed_id,
                        a.guid,
                        a.title,
                        a.link,
                        a.author,
                        a.pub_date,
                        a.summary,
                        a.content,
                        now_iso(),
                    ),
                )
                if cur.rowcount != 1:
                    continue
                self._conn.execute(
                    """INSERT INTO articles_fts (title, summary, content, article_id, feed_id)
                       VALUES (?, ?, ?, ?, ?)""",
                    (a.title, a.summary or "", clean_text(a.content or ""), a.id, a.feed_id),
                )
                added += 1
        return added

    def get_articles(
        self,
        feed_id: Optional[str] = None,
        unread_only: bool = False,
        saved_only: bool = False,
        limit: int = 50,
        offset: int = 0,
    ) -> list[Article]:
        sql = "SELECT * FROM articles WHERE 1=1"
        params: list = []
        if feed_id:
            sql += " AND feed_id = ?"
            params.append(feed_id)
        if unread_only:
            sql += " AND is_read = 0"
        if saved_only:
            sql += " AND is_saved = 1"
        sql += " ORDER BY pub_date DESC NULLS LAST, created_at DESC LIMIT ? OFFSET ?"
        params.extend([limit, offset])
        rows = self._conn.execute(sql, params).fetchall()
        return [self._row_to_article(r) for r in rows]

    def get_article(self, article_id: str) -> Optional[Article]:
        row = self._conn.execute(
            "SELECT * FROM articles WHERE id = ?", (article_id,)
        ).fetchone()
        return self._row_to_article(row) if row else None

    def mark_article_read(self, article_id: str, is_read: bool = True) -> bool:
        cur = self._conn.execute(
            "UPDATE articles SET is_read = ? WHERE id = ?", (int(is_read), article_id)
        )
        self._conn.commit()
        return cur.rowcount > 0

    def mark_all_articles_read(self, feed_id: Optional[str] = None) -> int:
        if feed_id:
            cur = self._conn.execute(
                "UPDATE articles SET is_read = 1 WHERE feed_id = ? AND is_read = 0",
                (feed_id,),
            )
        else:
            cur = self._conn.execute("UPDATE articles SET is_read = 1 WHERE is_read = 0")
        self._conn.commit()
        return cur.rowcount

    def toggle_article_saved(self, article_id: str) -> Optional[bool]:
        """Flip the saved flag; returns the new state, or None for unknown ids."""
        article = self.get_article(article_id)
        if article is None:
            return None
        saved = not article.is_saved
        self._conn.execute(
            "UPDATE articles SET is_saved = ? WHERE id = ?", (int(saved), article_id)
        )
        self._conn.commit()
        return saved

    def get_unread_count(self, feed_id: Optional[str] = None) -> int:
        if feed_id:
            row = self._conn.execute(
                "SELECT COUNT(*) FROM articles WHERE feed_id = ? AND is_read = 0",
                (feed_id,),
            ).fetchone()
        else:
            row = self._conn.execute(
                "SELECT COUNT(*) FROM articles WHERE is_read = 0"
            ).fetchone()
        return row[0]

    def search_rss_articles(
        self, query: str, feed_id: Optional[str] = None, limit: int = 20
    ) -> list[Article]:
        match = build_match_query(query)
        if not match:
            return []
        sql = f"""
            SELECT a.*, {ARTICLE_BM25} AS score
            FROM articles_fts
            JOIN articles a ON a.id = articles_fts.article_id
            WHERE articles_fts MATCH ?
        """
        params: list = [match]
        if feed_id:
            sql += " AND a.feed_id = ?"
            params.append(feed_id)
        sql += " ORDER BY score LIMIT ?"
        params.append(limit)

        rows = self._conn.execute(sql, params).fetchall()
        scores = normalize_scores([r["score"] for r in rows])
        results = []
        for row, score in zip(rows, scores):
            article = self._row_to_article(row)
            article.score = score
            results.append(article)
        return results

    @staticmethod
    def _row_to_article(row: sqlite3.Row) -> Article:
        return Article(
            id=row["id"],
            feed_id=row["feed_id"],
            guid=row["guid"],
            title=row["title"],
            link=row["link"],
            author=row["author"],
            pub_date=row["pub_date"],
            summary=row["summary"],
            content=row["content"],
            is_read=bool(row["is_read"]),
            is_saved=bool(row["is_saved"]),
        )
