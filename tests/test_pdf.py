"""Tests for the PDF structural engine."""

from __future__ import annotations

from pathlib import Path
from types import SimpleNamespace

import pytest
from conftest import make_pdf

from libralm.library.cache import TTLCache
from libralm.parsers.pdf_parser import (
    PdfParser,
    close_document,
    flatten_outline,
    reconstruct_lines,
)


def _node(title, page=None, down=None, next=None):
    return SimpleNamespace(title=title, page=page, down=down, next=next)


class TestReconstructLines:
    def test_joins_runs_on_same_line(self):
        runs = [(100.0, "Hello "), (100.5, "world"), (120.0, "Next line")]
        assert reconstruct_lines(runs) == "Hello world\nNext line"

    def test_threshold(self):
        runs = [(100.0, "a"), (104.0, "b"), (110.0, "c")]
        assert reconstruct_lines(runs, threshold=5.0) == "ab\nc"

    def test_blank_runs_dropped(self):
        assert reconstruct_lines([(10.0, "  "), (40.0, "text")]) == "text"
        assert reconstruct_lines([]) == ""


class TestFlattenOutline:
    def test_depth_first_with_levels(self):
        child = _node("1.1", page=2)
        second = _node("Two", page=5)
        first = _node("One", page=1, down=child, next=second)
        toc = flatten_outline(first, lambda n: n.page)
        assert [(t.title, t.page_number, t.level) for t in toc] == [
            ("One", 1, 0),
            ("1.1", 2, 1),
            ("Two", 5, 0),
        ]

    def test_unresolvable_destination_points_at_page_one(self):
        def resolve(node):
            if node.title == "Broken":
                raise RuntimeError("bad destination")
            return None

        first = _node("Broken", next=_node("Nowhere"))
        toc = flatten_outline(first, resolve)
        assert [t.page_number for t in toc] == [1, 1]

    def test_empty_title_gets_placeholder(self):
        toc = flatten_outline(_node("\x00", page=3), lambda n: n.page)
        assert toc[0].title == "Section 1"


class TestPdfParser:
    def test_scan(self, tmp_path: Path):
        f = make_pdf(tmp_path / "report.pdf", ["Page one", "Page two"], author="Ada")
        scanned = PdfParser().scan(f)
        assert scanned.title == "report"
        assert scanned.author == "Ada"
        assert scanned.format == "pdf"
        assert scanned.chapter_count == 2

    def test_scan_broken_file(self, tmp_path: Path):
        f = tmp_path / "broken.pdf"
        f.write_bytes(b"%PDF-1.4 garbage")
        scanned = PdfParser().scan(f)
        assert scanned.title == "broken"

    def test_load_with_outline(self, tmp_path: Path):
        f = make_pdf(
            tmp_path / "doc.pdf",
            ["Intro text", "Body text", "More body"],
            title="Manual",
            toc=[[1, "Introduction", 1], [1, "Body", 2], [2, "Details", 3]],
        )
        info = PdfParser().load(f, "pdf-1")
        assert info.metadata.title == "Manual"
        assert info.metadata.chapter_count == 3
        assert [(t.title, t.index, t.level) for t in info.toc] == [
            ("Introduction", 0, 0),
            ("Body", 1, 0),
            ("Details", 2, 1),
        ]

    def test_load_without_outline(self, tmp_path: Path):
        f = make_pdf(tmp_path / "plain.pdf", ["Only page"])
        info = PdfParser().load(f, "pdf-2")
        assert [(t.title, t.index) for t in info.toc] == [("Document", 0)]

    def test_read_pages(self, tmp_path: Path):
        f = make_pdf(tmp_path / "doc.pdf", ["First line\nSecond line", "Page two", "Page three"])
        parser = PdfParser()
        pages, total = parser.read_pages(f, 2, 5)
        assert total == 3
        assert [p.page_number for p in pages] == [2, 3]
        assert pages[0].text == "Page two"

        first, _ = parser.read_pages(f, 1)
        assert first[0].text == "First line\nSecond line"

        assert parser.read_pages(f, 4) == ([], 3)
        assert parser.read_pages(f, 0) == ([], 3)

    def test_page_text_out_of_range(self, tmp_path: Path):
        f = make_pdf(tmp_path / "doc.pdf", ["Only page"])
        parser = PdfParser()
        with pytest.raises(ValueError):
            parser.page_text(parser.open(f), 2)

    def test_extract_text_titles_and_skips(self, tmp_path: Path):
        f = make_pdf(
            tmp_path / "doc.pdf",
            ["Welcome", "", "Closing words"],
            toc=[[1, "Opening", 1]],
        )
        book = PdfParser().extract_text(f, "pdf-3")
        assert [(ch.index, ch.title) for ch in book.chapters] == [(0, "Opening"), (2, "Page 3")]
        assert [(s.index, s.reason) for s in book.report.skipped] == [(1, "no text")]

    def test_eviction_closes_document(self, tmp_path: Path, clock):
        f = make_pdf(tmp_path / "doc.pdf", ["Text"])
        cache = TTLCache(ttl=600, clock=clock, on_evict=close_document)
        parser = PdfParser(cache=cache)
        pdf = parser.open(f)
        clock.advance(601)
        assert cache.sweep() == 1
        assert pdf.doc.is_closed
        assert parser.open(f) is not pdf
