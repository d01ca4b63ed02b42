"""Tests for data models."""

from pathlib import Path

from libralm.library.models import (
    ExtractedBook,
    ExtractedChapter,
    ExtractionReport,
    Extracted,
    LibraryEntry,
    ReadingPosition,
    Skipped,
    content_hash,
    make_book_id,
)


class TestMakeBookId:
    def test_same_bytes_same_id(self, tmp_path: Path):
        a = tmp_path / "a.epub"
        b = tmp_path / "sub" / "renamed.epub"
        b.parent.mkdir()
        a.write_bytes(b"same bytes")
        b.write_bytes(b"same bytes")
        assert make_book_id(a) == make_book_id(b)

    def test_different_bytes(self, tmp_path: Path):
        a = tmp_path / "a.pdf"
        b = tmp_path / "b.pdf"
        a.write_bytes(b"one")
        b.write_bytes(b"two")
        assert make_book_id(a) != make_book_id(b)

    def test_length(self, tmp_path: Path):
        f = tmp_path / "x.epub"
        f.write_bytes(b"content")
        book_id = make_book_id(f)
        assert len(book_id) == 16
        int(book_id, 16)


class TestContentHash:
    def test_changes_with_text(self):
        a = [ExtractedChapter(index=0, title="One", content="alpha")]
        b = [ExtractedChapter(index=0, title="One", content="beta")]
        assert content_hash(a) != content_hash(b)
        assert content_hash(a) == content_hash(list(a))


class TestLibraryEntry:
    def test_dict_round_trip_ignores_unknown_keys(self):
        entry = LibraryEntry(id="abc", path="/b.epub", title="Book")
        data = entry.to_dict()
        data["legacy_field"] = 1
        restored = LibraryEntry.from_dict(data)
        assert restored == entry

    def test_defaults(self):
        entry = LibraryEntry(id="abc", path="/b.epub", title="Book")
        assert entry.author == "Unknown Author"
        assert entry.last_read is None
        assert entry.added_at


class TestReadingPosition:
    def test_from_dict(self):
        pos = ReadingPosition.from_dict({"chapter_index": 3, "scroll_position": 0.5})
        assert pos.chapter_index == 3
        assert pos.scroll_position == 0.5


class TestExtraction:
    def test_report_partitions_units(self):
        report = ExtractionReport(
            units=[
                Extracted(index=0, title="A", length=10),
                Skipped(index=1, reason="no text"),
                Extracted(index=2, title="C", length=5),
            ]
        )
        assert [u.index for u in report.extracted] == [0, 2]
        assert [u.index for u in report.skipped] == [1]

    def test_chapter_lookup_by_index(self):
        book = ExtractedBook(
            book_id="b",
            title="T",
            author="A",
            chapters=[
                ExtractedChapter(index=0, title="A", content="a"),
                ExtractedChapter(index=2, title="C", content="c"),
            ],
        )
        assert book.chapter(2).title == "C"
        assert book.chapter(1) is None
