"""Shared fixtures for tests."""

from __future__ import annotations

from pathlib import Path
from typing import Optional

import pytest

from libralm.config import AppConfig
from libralm.library.database import Database
from libralm.tools.session import ReaderSession


class FakeClock:
    """Monotonic clock the tests advance by hand."""

    def __init__(self, start: float = 1000.0) -> None:
        self.now = start

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_epub(
    path: Path,
    chapters: list[tuple[str, str]],
    title: str = "Test Book",
    author: str = "Test Author",
    description: Optional[str] = None,
    cover: Optional[bytes] = None,
) -> Path:
    """Write an EPUB with one spine document per ``(title, body_html)`` pair."""
    from ebooklib import epub

    book = epub.EpubBook()
    book.set_identifier(f"id-{path.stem}")
    book.set_title(title)
    book.set_language("en")
    book.add_author(author)
    if description:
        book.add_metadata("DC", "description", description)
    if cover:
        book.set_cover("cover.png", cover)

    items = []
    for i, (ch_title, body) in enumerate(chapters, start=1):
        item = epub.EpubHtml(title=ch_title, file_name=f"ch{i}.xhtml", lang="en")
        item.content = f"<html><body><h1>{ch_title}</h1>{body}</body></html>"
        book.add_item(item)
        items.append(item)

    book.toc = [
        epub.Link(f"ch{i}.xhtml", ch_title, f"ch{i}")
        for i, (ch_title, _) in enumerate(chapters, start=1)
    ]
    book.add_item(epub.EpubNcx())
    book.add_item(epub.EpubNav())
    book.spine = items
    epub.write_epub(str(path), book)
    return path


def make_pdf(
    path: Path,
    pages: list[str],
    title: Optional[str] = None,
    author: Optional[str] = None,
    toc: Optional[list[list]] = None,
) -> Path:
    """Write a PDF with one page per string; each line becomes a text line."""
    import pymupdf

    doc = pymupdf.open()
    for text in pages:
        page = doc.new_page()
        y = 72
        for line in text.split("\n"):
            if line:
                page.insert_text((72, y), line, fontsize=12)
            y += 20
    metadata = {}
    if title:
        metadata["title"] = title
    if author:
        metadata["author"] = author
    if metadata:
        doc.set_metadata(metadata)
    if toc:
        doc.set_toc(toc)
    doc.save(str(path))
    doc.close()
    return path


@pytest.fixture
def clock() -> FakeClock:
    return FakeClock()


@pytest.fixture
def db(tmp_path: Path) -> Database:
    db_path = tmp_path / "test.db"
    database = Database(db_path)
    yield database
    database.close()


@pytest.fixture
def config(tmp_path: Path) -> AppConfig:
    books = tmp_path / "books"
    books.mkdir()
    return AppConfig(data_dir=tmp_path / "data", book_path=books)


@pytest.fixture
def session(config: AppConfig, clock: FakeClock) -> ReaderSession:
    s = ReaderSession(config, clock=clock)
    yield s
    s.epub.cache.clear()
    s.pdf.cache.clear()
    s.db.close()
