"""PDF structural engine using PyMuPDF.

For PDFs a "chapter" is exactly one page; the outline only labels pages.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Callable, Iterable, Optional

import pymupdf

from libralm.library.cache import TTLCache
from libralm.library.models import (
    BookInfo,
    BookMetadata,
    Extracted,
    ExtractedBook,
    ExtractedChapter,
    ExtractionReport,
    ScannedBook,
    Skipped,
    TocItem,
)

from .base import BaseParser, PathLike
from .text import strip_control_chars

log = logging.getLogger(__name__)

LINE_THRESHOLD = 5.0

# MuPDF prints diagnostics on its own; the stdio transport cannot tolerate
# stray output, so keep only exceptions.
pymupdf.TOOLS.mupdf_display_errors(False)
pymupdf.TOOLS.mupdf_display_warnings(False)


@dataclass
class PdfTocEntry:
    title: str
    page_number: int  # 1-based
    level: int = 0


@dataclass
class PdfPage:
    page_number: int
    text: str


@dataclass
class PdfDocument:
    doc: Any  # pymupdf.Document
    title: str
    author: str
    page_count: int
    toc: list[PdfTocEntry] = field(default_factory=list)


def close_document(_key: Any, value: PdfDocument) -> None:
    """Eviction hook for the document cache."""
    value.doc.close()


def reconstruct_lines(
    runs: Iterable[tuple[float, str]], threshold: float = LINE_THRESHOLD
) -> str:
    """Join positioned text runs into lines.

    ``runs`` are ``(y, text)`` pairs in content-stream order. A vertical jump
    larger than ``threshold`` starts a new line.
    """
    lines: list[str] = []
    current = ""
    last_y: Optional[float] = None

    for y, text in runs:
        if last_y is not None and abs(y - last_y) > threshold:
            if current.strip():
                lines.append(current.strip())
            current = ""
        last_y = y
        current += text

    if current.strip():
        lines.append(current.strip())
    return "\n".join(lines).strip()


def flatten_outline(
    first: Any, resolve_page: Callable[[Any], Optional[int]]
) -> list[PdfTocEntry]:
    """Walk an outline (``title``/``down``/``next`` linked nodes) depth-first.

    Destinations that cannot be resolved point at page 1.
    """
    toc: list[PdfTocEntry] = []

    def walk(node: Any, level: int) -> None:
        while node is not None:
            try:
                page = resolve_page(node)
            except Exception as e:
                log.debug("Unresolvable outline destination %r: %s", node.title, e)
                page = None
            if not page or page < 1:
                page = 1
            title = strip_control_chars(node.title or "")
            toc.append(
                PdfTocEntry(
                    title=title or f"Section {len(toc) + 1}",
                    page_number=page,
                    level=level,
                )
            )
            walk(node.down, level + 1)
            node = node.next

    walk(first, 0)
    return toc


def _page_resolver(doc: Any) -> Callable[[Any], Optional[int]]:
    def resolve(node: Any) -> Optional[int]:
        page = getattr(node, "page", -1)
        if isinstance(page, int) and page >= 0:
            return page + 1
        uri = getattr(node, "uri", None)
        if uri and not getattr(node, "is_external", False):
            target = doc.resolve_link(uri)
            pno = target[0] if target else -1
            if isinstance(pno, tuple):
                pno = pno[-1]
            if pno >= 0:
                return pno + 1
        return None

    return resolve


def _page_runs(page: Any) -> Iterable[tuple[float, str]]:
    for block in page.get_text("dict")["blocks"]:
        if block.get("type") != 0:  # image blocks
            continue
        for line in block.get("lines", []):
            for span in line.get("spans", []):
                yield span["origin"][1], span["text"]


def _drain_mupdf_warnings(path: Path) -> None:
    warnings = pymupdf.TOOLS.mupdf_warnings()
    if warnings:
        log.debug("MuPDF warnings for %s: %s", path.name, warnings)


class PdfParser(BaseParser):
    SUPPORTED_EXTENSIONS = (".pdf",)
    FORMAT = "pdf"

    def __init__(self, cache: Optional[TTLCache] = None) -> None:
        if cache is None:
            cache = TTLCache(ttl=600, on_evict=close_document, name=self.FORMAT)
        super().__init__(cache)

    # ── Opening ────────────────────────────────────────

    def open(self, file_path: PathLike) -> PdfDocument:
        key = str(file_path)
        return self.cache.get_or_populate(key, lambda: self._open(Path(file_path)))

    def _open(self, file_path: Path) -> PdfDocument:
        doc = self._open_raw(file_path)
        title, author = self._metadata(doc, file_path)
        try:
            toc = flatten_outline(doc.outline, _page_resolver(doc))
        except Exception as e:
            log.error("Failed to extract PDF outline from %s: %s", file_path, e)
            toc = []
        _drain_mupdf_warnings(file_path)
        return PdfDocument(
            doc=doc, title=title, author=author, page_count=doc.page_count, toc=toc
        )

    @staticmethod
    def _open_raw(file_path: Path):
        data = file_path.read_bytes()
        return pymupdf.open(stream=data, filetype="pdf")

    @staticmethod
    def _metadata(doc: Any, file_path: Path) -> tuple[str, str]:
        info = doc.metadata or {}
        title = info.get("title") or ""
        if not title or title == file_path.name:
            title = file_path.stem
        title = strip_control_chars(title) or file_path.stem
        author = strip_control_chars(info.get("author") or "") or "Unknown Author"
        return title, author

    # ── Public API ─────────────────────────────────────

    def scan(self, file_path: PathLike) -> ScannedBook:
        path = Path(file_path)
        try:
            doc = self._open_raw(path)
            try:
                title, author = self._metadata(doc, path)
                page_count = doc.page_count
            finally:
                doc.close()
            return ScannedBook(
                path=str(path),
                format=self.FORMAT,
                title=title,
                author=author,
                chapter_count=page_count,
            )
        except Exception:
            log.exception("Failed to scan PDF %s", path)
            return ScannedBook(path=str(path), format=self.FORMAT, title=path.stem)

    def load(self, file_path: PathLike, book_id: str) -> BookInfo:
        pdf = self.open(file_path)
        if pdf.toc:
            toc = [
                TocItem(title=e.title, index=e.page_number - 1, level=e.level)
                for e in pdf.toc
            ]
        else:
            toc = [TocItem(title="Document", index=0, level=0)]
        meta = BookMetadata(
            id=book_id,
            title=pdf.title,
            author=pdf.author,
            format=self.FORMAT,
            chapter_count=pdf.page_count,
        )
        return BookInfo(metadata=meta, toc=toc)

    def page_text(self, pdf: PdfDocument, page_number: int) -> str:
        if page_number < 1 or page_number > pdf.page_count:
            raise ValueError(f"Page {page_number} out of range (1-{pdf.page_count})")
        page = pdf.doc.load_page(page_number - 1)
        return reconstruct_lines(_page_runs(page))

    def read_pages(
        self, file_path: PathLike, start_page: int, page_count: int = 1
    ) -> tuple[list[PdfPage], int]:
        """Text of ``page_count`` pages from 1-based ``start_page``, and the total."""
        pdf = self.open(file_path)
        total = pdf.page_count
        if start_page < 1 or start_page > total or page_count < 1:
            return [], total
        end_page = min(start_page + page_count - 1, total)
        pages = [
            PdfPage(page_number=n, text=self.page_text(pdf, n))
            for n in range(start_page, end_page + 1)
        ]
        return pages, total

    def extract_text(self, file_path: PathLike, book_id: str) -> ExtractedBook:
        path = Path(file_path)
        pdf = self.open(path)
        report = ExtractionReport()
        chapters: list[ExtractedChapter] = []

        page_titles: dict[int, str] = {}
        for entry in pdf.toc:
            page_titles.setdefault(entry.page_number, entry.title)

        for page_number in range(1, pdf.page_count + 1):
            index = page_number - 1
            try:
                text = self.page_text(pdf, page_number)
            except Exception as e:
                log.error("Failed to extract page %d from %s: %s", page_number, path, e)
                report.units.append(Skipped(index=index, reason=str(e) or type(e).__name__))
                continue
            if not text.strip():
                report.units.append(Skipped(index=index, reason="no text"))
                continue
            title = page_titles.get(page_number) or f"Page {page_number}"
            chapters.append(ExtractedChapter(index=index, title=title, content=text))
            report.units.append(Extracted(index=index, title=title, length=len(text)))

        _drain_mupdf_warnings(path)
        return ExtractedBook(
            book_id=book_id,
            title=pdf.title,
            author=pdf.author,
            chapters=chapters,
            report=report,
        )
