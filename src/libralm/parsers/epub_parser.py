"""EPUB structural engine using ebooklib.

A book is turned into an ordered list of pages (the unit chapters are
addressed and annotated by). Usually each spine document is one page, but
some books ship a single huge content file and describe its sections only
through anchored TOC entries; those are paginated by TOC entry instead.
"""

from __future__ import annotations

import base64
import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional
from urllib.parse import unquote

from ebooklib import epub

from libralm.config import DedupConfig
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
from .dedup import deduplicate_chapters
from .text import clean_description, strip_html

log = logging.getLogger(__name__)

_ROOT_PREFIXES = ("OEBPS/", "EPUB/", "OPS/", "xhtml/", "text/")
_COVER_IDS = ("cover", "cover-image", "coverimage", "Cover")


def normalize_href(href: str) -> str:
    """Drop packaging-root prefixes so hrefs from spine and TOC compare equal."""
    href = unquote(href or "")
    while href.startswith(("./", "../", "/")):
        href = href.split("/", 1)[1]
    for prefix in _ROOT_PREFIXES:
        if href.startswith(prefix):
            href = href[len(prefix) :]
    return href


@dataclass
class FlowItem:
    id: str
    href: str
    title: str = ""


@dataclass
class TocNode:
    href: str
    title: str
    level: int = 0
    order: int = 0


@dataclass
class EpubPage:
    title: str
    flow_id: str
    href: str
    anchor: Optional[str] = None


@dataclass
class EpubDocument:
    book: epub.EpubBook
    flow: list[FlowItem]
    pages: list[EpubPage]
    toc: list[TocItem]
    anchor_mode: bool = False
    _markup: dict[str, str] = field(default_factory=dict, repr=False)

    def flow_markup(self, flow_id: str) -> str:
        if flow_id not in self._markup:
            item = self.book.get_item_with_id(flow_id)
            if item is None:
                raise KeyError(f"Flow item {flow_id!r} not in manifest")
            self._markup[flow_id] = item.get_content().decode("utf-8", errors="replace")
        return self._markup[flow_id]


def flatten_toc(entries: list) -> list[TocNode]:
    """Depth-first flattening of ebooklib's nested TOC (Links and Section tuples)."""
    nodes: list[TocNode] = []

    def add(entry, level: int) -> None:
        nodes.append(
            TocNode(
                href=getattr(entry, "href", "") or "",
                title=(getattr(entry, "title", "") or "").strip(),
                level=level,
                order=len(nodes),
            )
        )

    def walk(items: list, level: int) -> None:
        for entry in items:
            if isinstance(entry, tuple) and len(entry) == 2:
                section, children = entry
                add(section, level)
                walk(list(children), level + 1)
            elif isinstance(entry, list):
                walk(entry, level + 1)
            else:
                add(entry, level)

    walk(list(entries or []), 0)
    return nodes


def uses_anchor_pages(flow: list[FlowItem], toc: list[TocNode]) -> bool:
    return len(toc) > len(flow) and any("#" in node.href for node in toc)


def build_pages(flow: list[FlowItem], toc: list[TocNode]) -> tuple[list[EpubPage], bool]:
    """Reconcile spine and TOC into the addressable page list."""
    href_to_flow: dict[str, FlowItem] = {}
    for item in flow:
        href_to_flow.setdefault(item.href, item)
        href_to_flow.setdefault(normalize_href(item.href), item)

    # First TOC entry for a file wins.
    href_to_title: dict[str, str] = {}
    for node in toc:
        if node.href and node.title:
            file_href = node.href.split("#", 1)[0]
            href_to_title.setdefault(file_href, node.title)
            href_to_title.setdefault(normalize_href(file_href), node.title)

    pages: list[EpubPage] = []
    anchor_mode = uses_anchor_pages(flow, toc)

    if anchor_mode:
        for node in sorted(toc, key=lambda n: n.order):
            if not node.href:
                continue
            file_href, _, anchor = node.href.partition("#")
            item = href_to_flow.get(file_href) or href_to_flow.get(normalize_href(file_href))
            if item is None:
                continue
            pages.append(
                EpubPage(
                    title=node.title or f"Page {len(pages) + 1}",
                    flow_id=item.id,
                    href=file_href,
                    anchor=anchor or None,
                )
            )
    else:
        for i, item in enumerate(flow):
            title = (
                item.title
                or href_to_title.get(item.href)
                or href_to_title.get(normalize_href(item.href))
                or f"Page {i + 1}"
            )
            pages.append(EpubPage(title=title, flow_id=item.id, href=item.href))

    return pages, anchor_mode


def build_toc_entries(
    toc: list[TocNode], pages: list[EpubPage], anchor_mode: bool
) -> list[TocItem]:
    """Map each TOC node onto a page index; unresolvable nodes are dropped."""
    entries: list[TocItem] = []
    for node in sorted(toc, key=lambda n: n.order):
        if not node.href:
            continue
        file_href, _, anchor = node.href.partition("#")
        target = normalize_href(file_href)

        page_index = -1
        for i, page in enumerate(pages):
            same_file = page.href == file_href or normalize_href(page.href) == target
            if not same_file:
                continue
            if anchor_mode and page.anchor != (anchor or None):
                continue
            page_index = i
            break

        if page_index >= 0:
            entries.append(
                TocItem(
                    title=node.title or f"Section {len(entries) + 1}",
                    index=page_index,
                    level=node.level,
                    href=node.href,
                )
            )
    return entries


def _anchor_position(markup: str, anchor: str) -> int:
    pattern = re.compile(
        r"<[^<>]*\b(?:id|name)\s*=\s*[\"']%s[\"']" % re.escape(anchor)
    )
    match = pattern.search(markup)
    return match.start() if match else -1


def extract_cover(book: epub.EpubBook) -> Optional[str]:
    """Cover image as a data URI, or None."""
    items = {item.get_id(): item for item in book.get_items()}

    def as_image(item_id: Optional[str]):
        item = items.get(item_id) if item_id else None
        if item is not None and (item.media_type or "").startswith("image/"):
            return item
        return None

    candidate = None
    for value, attrs in book.get_metadata("OPF", "cover"):
        cover_id = (attrs or {}).get("content") or value
        candidate = as_image(cover_id)
        if candidate is not None:
            break

    if candidate is None:
        for cover_id in _COVER_IDS:
            candidate = as_image(cover_id)
            if candidate is not None:
                break

    if candidate is None:
        for item_id, item in items.items():
            if not (item.media_type or "").startswith("image/"):
                continue
            if "cover" in (item_id or "").lower() or "cover" in item.get_name().lower():
                candidate = item
                break

    if candidate is None:
        return None
    data = candidate.get_content()
    if not data:
        return None
    return f"data:{candidate.media_type};base64,{base64.b64encode(data).decode('ascii')}"


class EpubParser(BaseParser):
    SUPPORTED_EXTENSIONS = (".epub",)
    FORMAT = "epub"

    def __init__(
        self, cache: Optional[TTLCache] = None, dedup: Optional[DedupConfig] = None
    ) -> None:
        super().__init__(cache)
        self.dedup = dedup or DedupConfig()

    # ── Opening ────────────────────────────────────────

    def open(self, file_path: PathLike) -> EpubDocument:
        key = str(file_path)
        return self.cache.get_or_populate(key, lambda: self._open(Path(file_path)))

    def _open(self, file_path: Path) -> EpubDocument:
        book = epub.read_epub(str(file_path), options={"ignore_ncx": False})

        flow: list[FlowItem] = []
        for item_id, _linear in book.spine:
            item = book.get_item_with_id(item_id)
            if item is None:
                continue
            flow.append(
                FlowItem(id=item_id, href=item.get_name(), title=getattr(item, "title", "") or "")
            )

        toc = flatten_toc(book.toc)
        pages, anchor_mode = build_pages(flow, toc)
        entries = build_toc_entries(toc, pages, anchor_mode)
        log.debug(
            "Opened %s: %d flow items, %d toc nodes, %d pages (%s)",
            file_path.name,
            len(flow),
            len(toc),
            len(pages),
            "anchor" if anchor_mode else "flow",
        )
        return EpubDocument(
            book=book, flow=flow, pages=pages, toc=entries, anchor_mode=anchor_mode
        )

    # ── Public API ─────────────────────────────────────

    def scan(self, file_path: PathLike) -> ScannedBook:
        path = Path(file_path)
        try:
            # Uncached: a library scan touches every book once.
            doc = self._open(path)
            description = self._get_meta(doc.book, "description")
            return ScannedBook(
                path=str(path),
                format=self.FORMAT,
                title=self._get_meta(doc.book, "title") or path.stem,
                author=self._get_meta(doc.book, "creator") or "Unknown Author",
                cover_url=self._safe_cover(doc.book, path),
                description=clean_description(description) or None,
                chapter_count=len(doc.pages),
            )
        except Exception:
            log.exception("Failed to scan EPUB %s", path)
            return ScannedBook(path=str(path), format=self.FORMAT, title=path.stem)

    def load(self, file_path: PathLike, book_id: str) -> BookInfo:
        path = Path(file_path)
        doc = self.open(path)
        meta = BookMetadata(
            id=book_id,
            title=self._get_meta(doc.book, "title") or path.stem,
            author=self._get_meta(doc.book, "creator") or "Unknown Author",
            format=self.FORMAT,
            chapter_count=len(doc.pages),
            cover_url=self._safe_cover(doc.book, path),
        )
        return BookInfo(metadata=meta, toc=list(doc.toc))

    def chapter_markup(self, doc: EpubDocument, index: int) -> str:
        """Raw markup of one page; anchored pages get only their section."""
        page = doc.pages[index]
        markup = doc.flow_markup(page.flow_id)
        if not doc.anchor_mode:
            return markup

        siblings = [p for p in doc.pages if p.flow_id == page.flow_id]
        start = 0
        if page.anchor and siblings[0] is not page:
            start = max(_anchor_position(markup, page.anchor), 0)

        end = len(markup)
        for other in siblings:
            if other is page or not other.anchor:
                continue
            pos = _anchor_position(markup, other.anchor)
            if start < pos < end:
                end = pos
        return markup[start:end]

    def extract_text(self, file_path: PathLike, book_id: str) -> ExtractedBook:
        path = Path(file_path)
        doc = self.open(path)
        report = ExtractionReport()
        chapters: list[ExtractedChapter] = []

        for i, page in enumerate(doc.pages):
            try:
                text = strip_html(self.chapter_markup(doc, i))
            except Exception as e:
                log.error("Failed to extract chapter %d from %s: %s", i, path, e)
                report.units.append(Skipped(index=i, reason=str(e) or type(e).__name__))
                continue
            if not text.strip():
                report.units.append(Skipped(index=i, reason="no text"))
                continue
            chapters.append(ExtractedChapter(index=i, title=page.title, content=text))
            report.units.append(Extracted(index=i, title=page.title, length=len(text)))

        chapters = deduplicate_chapters(chapters, self.dedup)
        return ExtractedBook(
            book_id=book_id,
            title=self._get_meta(doc.book, "title") or path.stem,
            author=self._get_meta(doc.book, "creator") or "Unknown Author",
            chapters=chapters,
            report=report,
        )

    # ── Helpers ────────────────────────────────────────

    @staticmethod
    def _safe_cover(book: epub.EpubBook, path: Path) -> Optional[str]:
        try:
            return extract_cover(book)
        except Exception as e:
            log.debug("No usable cover in %s: %s", path.name, e)
            return None

    @staticmethod
    def _get_meta(book: epub.EpubBook, field: str) -> str:
        values = book.get_metadata("DC", field)
        if values:
            val = values[0]
            if isinstance(val, tuple):
                return str(val[0]).strip() if val[0] else ""
            return str(val).strip()
        return ""
