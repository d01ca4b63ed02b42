"""JSON documents for the library catalog and the reading session.

Both files are small and rewritten whole on every change. A missing or
unreadable file is treated as empty state rather than an error.
"""

from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Optional

from .models import LibraryEntry, ReadingPosition, now_iso

log = logging.getLogger(__name__)

LIBRARY_VERSION = 1


@dataclass
class LibraryState:
    version: int = LIBRARY_VERSION
    book_path: Optional[str] = None
    books: list[LibraryEntry] = field(default_factory=list)
    collections: list[Any] = field(default_factory=list)


@dataclass
class SessionState:
    last_book: Optional[str] = None
    positions: dict[str, ReadingPosition] = field(default_factory=dict)


class CatalogStore:
    def __init__(self, library_path: Path, session_path: Path) -> None:
        self.library_path = Path(library_path)
        self.session_path = Path(session_path)

    # ── Files ──────────────────────────────────────────────

    @staticmethod
    def _read_json(path: Path) -> Optional[dict]:
        if not path.exists():
            return None
        try:
            data = json.loads(path.read_text(encoding="utf-8"))
        except (OSError, ValueError) as e:
            log.warning("Ignoring unreadable %s: %s", path.name, e)
            return None
        if not isinstance(data, dict):
            log.warning("Ignoring %s: expected an object", path.name)
            return None
        return data

    @staticmethod
    def _write_json(path: Path, data: dict) -> None:
        path.parent.mkdir(parents=True, exist_ok=True)
        tmp = path.with_suffix(path.suffix + ".tmp")
        tmp.write_text(json.dumps(data, indent=2, ensure_ascii=False), encoding="utf-8")
        os.replace(tmp, path)

    # ── Library ────────────────────────────────────────────

    def load_library(self) -> LibraryState:
        data = self._read_json(self.library_path)
        if data is None:
            return LibraryState()
        books = []
        for raw in data.get("books") or []:
            try:
                books.append(LibraryEntry.from_dict(raw))
            except (TypeError, AttributeError) as e:
                log.warning("Dropping malformed library entry %r: %s", raw, e)
        return LibraryState(
            version=data.get("version", LIBRARY_VERSION),
            book_path=data.get("book_path"),
            books=books,
            collections=list(data.get("collections") or []),
        )

    def save_library(self, state: LibraryState) -> None:
        self._write_json(
            self.library_path,
            {
                "version": state.version,
                "book_path": state.book_path,
                "books": [b.to_dict() for b in state.books],
                "collections": state.collections,
            },
        )

    def list_books(self) -> list[LibraryEntry]:
        return self.load_library().books

    def get_book(self, book_id: str) -> Optional[LibraryEntry]:
        for entry in self.list_books():
            if entry.id == book_id:
                return entry
        return None

    def add_or_update(self, entry: LibraryEntry) -> None:
        state = self.load_library()
        for i, existing in enumerate(state.books):
            if existing.id == entry.id:
                state.books[i] = entry
                break
        else:
            state.books.append(entry)
        self.save_library(state)

    def update_book(self, book_id: str, **changes: Any) -> Optional[LibraryEntry]:
        state = self.load_library()
        for entry in state.books:
            if entry.id == book_id:
                for key, value in changes.items():
                    setattr(entry, key, value)
                self.save_library(state)
                return entry
        return None

    # ── Session ────────────────────────────────────────────

    def load_session(self) -> SessionState:
        data = self._read_json(self.session_path)
        if data is None:
            return SessionState()
        positions = {}
        for book_id, raw in (data.get("positions") or {}).items():
            try:
                positions[book_id] = ReadingPosition.from_dict(raw)
            except (TypeError, AttributeError) as e:
                log.warning("Dropping malformed position for %s: %s", book_id, e)
        return SessionState(last_book=data.get("last_book"), positions=positions)

    def save_session(self, state: SessionState) -> None:
        self._write_json(
            self.session_path,
            {
                "last_book": state.last_book,
                "positions": {k: v.to_dict() for k, v in state.positions.items()},
            },
        )

    def get_position(self, book_id: str) -> Optional[ReadingPosition]:
        return self.load_session().positions.get(book_id)

    def save_position(
        self, book_id: str, chapter_index: int, scroll_position: float = 0.0
    ) -> ReadingPosition:
        state = self.load_session()
        position = ReadingPosition(
            chapter_index=chapter_index,
            scroll_position=min(max(scroll_position, 0.0), 1.0),
            last_read=now_iso(),
        )
        state.positions[book_id] = position
        state.last_book = book_id
        self.save_session(state)
        return position

    def set_last_book(self, book_id: str) -> None:
        state = self.load_session()
        state.last_book = book_id
        self.save_session(state)
