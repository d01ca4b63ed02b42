"""Tests for resolving loose book references."""

from __future__ import annotations

from libralm.library.models import LibraryEntry
from libralm.library.resolver import normalize_title, resolve_book

ENTRIES = [
    LibraryEntry(id="aaa111", path="/b/moby.epub", title="Moby-Dick; or, The Whale"),
    LibraryEntry(id="bbb222", path="/b/art.epub", title="The Art of Computer Programming"),
    LibraryEntry(id="ccc333", path="/b/art2.pdf", title="Art"),
    LibraryEntry(id="ddd444", path="/b/war.epub", title="War_and_Peace"),
]


class TestResolveBook:
    def test_normalize(self):
        assert normalize_title("  War_and-Peace ") == "war and peace"

    def test_by_id(self):
        assert resolve_book(ENTRIES, "bbb222").id == "bbb222"

    def test_exact_title_beats_partial(self):
        # "art" is a substring of the second title but the exact title wins
        assert resolve_book(ENTRIES, "ART").id == "ccc333"

    def test_exact_title_with_separators(self):
        assert resolve_book(ENTRIES, "war and peace").id == "ddd444"

    def test_partial_title(self):
        assert resolve_book(ENTRIES, "computer programming").id == "bbb222"

    def test_query_contains_title_prefix(self):
        query = "moby dick; or, the whale by herman melville"
        assert resolve_book(ENTRIES, query).id == "aaa111"

    def test_word_match(self):
        assert resolve_book(ENTRIES, "programming computer").id == "bbb222"

    def test_short_words_ignored(self):
        assert resolve_book(ENTRIES, "of an") is None

    def test_not_found(self):
        assert resolve_book(ENTRIES, "unknown volume") is None
        assert resolve_book(ENTRIES, "   ") is None
        assert resolve_book([], "anything") is None
