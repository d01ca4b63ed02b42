"""Walk the library directory and reconcile what is found with the catalog."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field, replace
from pathlib import Path
from typing import Callable, Iterable, Union

from libralm.parsers.base import BaseParser

from .catalog import CatalogStore
from .models import LibraryEntry, ScannedBook, make_book_id

log = logging.getLogger(__name__)

_SYNCED_FIELDS = ("path", "title", "author", "format", "cover_url", "description")


@dataclass
class ReconcileReport:
    books: list[LibraryEntry] = field(default_factory=list)
    added: int = 0
    updated: int = 0
    removed: int = 0
    saved: bool = False


def scan_directory(
    root: Union[str, Path], parsers: Iterable[BaseParser]
) -> list[ScannedBook]:
    """Metadata for every supported file under ``root``, in path order."""
    root = Path(root).expanduser()
    if not root.is_dir():
        log.warning("Library directory %s does not exist", root)
        return []

    parsers = list(parsers)
    books: list[ScannedBook] = []
    for path in sorted(root.rglob("*")):
        if not path.is_file() or path.name.startswith("."):
            continue
        for parser in parsers:
            if parser.can_handle(path):
                books.append(parser.scan(path))
                break
    log.info("Scanned %s: %d books", root, len(books))
    return books


def reconcile_library(
    catalog: CatalogStore,
    scanned: Iterable[ScannedBook],
    root: Union[str, Path],
    hasher: Callable[[str], str] = make_book_id,
) -> ReconcileReport:
    """Bring the stored catalog in line with a directory scan.

    One entry is kept per distinct file content; when the same bytes live at
    several paths the first path in scan order wins. Entries whose file moved
    keep their ``added_at`` and ``last_read``. Nothing is written when the
    catalog is already current.
    """
    state = catalog.load_library()
    previous = {b.id: b for b in state.books}
    report = ReconcileReport()
    seen: set[str] = set()

    for item in scanned:
        try:
            book_id = hasher(item.path)
        except OSError as e:
            log.warning("Cannot read %s: %s", item.path, e)
            continue
        if book_id in seen:
            log.debug("Skipping duplicate copy %s", item.path)
            continue
        seen.add(book_id)

        existing = previous.get(book_id)
        if existing is None:
            report.books.append(
                LibraryEntry(
                    id=book_id,
                    path=item.path,
                    title=item.title,
                    author=item.author,
                    format=item.format,
                    cover_url=item.cover_url,
                    description=item.description,
                    chapter_count=item.chapter_count,
                )
            )
            report.added += 1
            continue

        changes = {
            name: getattr(item, name)
            for name in _SYNCED_FIELDS
            if getattr(item, name) != getattr(existing, name)
        }
        if item.chapter_count is not None and item.chapter_count != existing.chapter_count:
            changes["chapter_count"] = item.chapter_count
        if changes:
            report.updated += 1
            report.books.append(replace(existing, **changes))
        else:
            report.books.append(existing)

    report.removed = len(set(previous) - seen)
    root_str = str(Path(root).expanduser())
    if report.books != state.books or state.book_path != root_str:
        state.books = report.books
        state.book_path = root_str
        catalog.save_library(state)
        report.saved = True
        log.info(
            "Library updated: %d added, %d updated, %d removed",
            report.added,
            report.updated,
            report.removed,
        )
    return report
