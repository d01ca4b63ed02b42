"""Tests for the tool layer, driven through a ReaderSession."""

from __future__ import annotations

import json
from pathlib import Path

import httpx
import pytest
from conftest import make_epub, make_pdf
from mcp.server.fastmcp.exceptions import ToolError
from test_rss import FEED_URL, RSS, FakeServer

from libralm.app import create_server, render
from libralm.library.models import make_book_id
from libralm.tools import annotations, books, feeds, indexing
from libralm.tools.session import ReaderSession, ToolResult, error

LONG_BODY = "<p>" + "word " * 12000 + "</p>"


@pytest.fixture
def library(session: ReaderSession) -> dict[str, Path]:
    root = session.config.book_path
    paths = {
        "sea": make_epub(
            root / "sea.epub",
            [
                ("Harbour", "<p>The lighthouse keeper watched the ships.</p>"),
                ("Market", "<p>Merchants counted coins.</p>"),
                ("Winter", "<p>Snow covered the passes.</p>"),
            ],
            title="Sea Stories",
            author="Mariner",
        ),
        "long": make_epub(
            root / "long.epub",
            [("Long", LONG_BODY), ("Short", "<p>tail</p>")],
            title="Long Book",
        ),
        "pdf": make_pdf(
            root / "manual.pdf",
            ["Install the device", "Configure the device", "Troubleshooting"],
            title="Device Manual",
            toc=[[1, "Setup", 1], [1, "Problems", 3]],
        ),
    }
    books.view_library(session)
    return paths


class TestLibraryTools:
    def test_view_library(self, session: ReaderSession, library):
        result = books.view_library(session)
        assert not result.is_error
        titles = sorted(b["title"] for b in result.data["books"])
        assert titles == ["Device Manual", "Long Book", "Sea Stories"]
        assert "[PDF]" in result.text
        assert all("cover_url" not in b for b in result.data["books"])

    def test_view_library_uses_index_summary(self, session: ReaderSession, library):
        book_id = make_book_id(library["sea"])
        session.db.save_semantic_index(book_id, json.dumps({"overallSummary": "x" * 300}))
        result = books.view_library(session)
        [sea] = [b for b in result.data["books"] if b["id"] == book_id]
        assert sea["description"] == "x" * 200 + "..."

    def test_load_book(self, session: ReaderSession, library):
        result = books.load_book(session, str(library["sea"]))
        book = result.data["book"]
        assert book["title"] == "Sea Stories"
        assert book["chapter_count"] == 3
        assert [t["title"] for t in book["toc"]] == ["Harbour", "Market", "Winter"]
        assert result.data["last_position"] is None
        assert session.catalog.get_book(book["id"]).last_read is not None
        assert session.catalog.load_session().last_book == book["id"]

    def test_load_book_resets_stale_position(self, session: ReaderSession, library):
        book_id = make_book_id(library["sea"])
        session.catalog.save_position(book_id, 9, 0.5)
        result = books.load_book(session, str(library["sea"]))
        assert result.data["last_position"] == {"chapter_index": 0, "scroll_position": 0.0}

    def test_load_book_missing_file(self, session: ReaderSession, tmp_path: Path):
        result = books.load_book(session, str(tmp_path / "nope.epub"))
        assert "not found" in result.text
        assert "view_library" in result.text

    def test_load_book_outside_library_added(self, session: ReaderSession, tmp_path: Path):
        f = make_epub(tmp_path / "stray.epub", [("Only", "<p>Text</p>")], title="Stray")
        result = books.load_book(session, str(f))
        assert session.catalog.get_book(result.data["book"]["id"]).title == "Stray"

    def test_save_position(self, session: ReaderSession):
        assert books.save_position(session, "b1", 2, 0.4).data == {"success": True}
        assert session.catalog.get_position("b1").chapter_index == 2
        assert books.save_position(session, "b1", 0, 1.5).is_error

    def test_reading_context(self, session: ReaderSession):
        assert "No book" in books.get_current_context(session).text
        books.sync_reading_context(session, "b1", "Title", "Author", "Chapter 2", "Visible text")
        result = books.get_current_context(session)
        assert "Visible text" in result.text
        assert result.data["book_id"] == "b1"


class TestReadingTools:
    def test_toc_cached_in_database(self, session: ReaderSession, library):
        result = indexing.get_book_toc(session, "sea stories")
        assert "Table of Contents (3 chapters)" in result.text
        assert "No semantic index yet" in result.text
        book_id = result.data["book_id"]
        cached = json.loads(session.db.get_book_structure(book_id))
        assert [c["title"] for c in cached["chapters"]] == ["Harbour", "Market", "Winter"]

    def test_unknown_book(self, session: ReaderSession, library):
        result = indexing.get_book_toc(session, "no such book")
        assert not result.is_error
        assert "Book not found" in result.text

    def test_read_short_chapter_whole(self, session: ReaderSession, library):
        result = indexing.read_chapter(session, "Sea Stories", 1)
        data = result.data
        assert data["content"] == "Market\nMerchants counted coins."
        assert data["has_more"] is False
        assert data["next_offset"] is None
        assert data["remaining"] == 0

    def test_long_chapter_read_in_slices(self, session: ReaderSession, library):
        chunk = session.config.chunking.chunk_size
        parts = []
        offset = 0
        while offset is not None:
            data = indexing.read_chapter(session, "Long Book", 0, offset=offset).data
            assert data["length"] <= chunk
            parts.append(data["content"])
            offset = data["next_offset"]
        full = "".join(parts)
        assert len(full) == data["total_length"]
        assert full.startswith("Long\nword word")
        assert len(parts) == 3

    def test_limit_capped_at_threshold(self, session: ReaderSession, library):
        data = indexing.read_chapter(session, "Long Book", 0, limit=1_000_000).data
        assert data["length"] == session.config.chunking.auto_chunk_threshold
        assert data["has_more"] is True

    def test_offset_beyond_chapter_end(self, session: ReaderSession, library):
        total = indexing.read_chapter(session, "Long Book", 0).data["total_length"]
        result = indexing.read_chapter(session, "Long Book", 0, offset=total + 100)
        assert result.is_error
        assert f"beyond chapter length ({total})" in result.text
        assert result.data is None

    def test_chapter_out_of_range(self, session: ReaderSession, library):
        result = indexing.read_chapter(session, "Sea Stories", 7)
        assert result.text.startswith("Chapter 7 not found. Book has 3 chapters")

    def test_read_pdf_pages(self, session: ReaderSession, library):
        result = indexing.read_pdf_page(session, "Device Manual", 2, page_count=5)
        assert [p["page_number"] for p in result.data["pages"]] == [2, 3]
        assert result.data["total_pages"] == 3
        assert "Configure the device" in result.text

    def test_read_pdf_page_limits(self, session: ReaderSession, library):
        assert indexing.read_pdf_page(session, "Device Manual", 1, page_count=11).is_error
        past_end = indexing.read_pdf_page(session, "Device Manual", 9)
        assert past_end.data["pages"] == []
        assert "not a PDF" in indexing.read_pdf_page(session, "Sea Stories", 1).text

    def test_pdf_toc(self, session: ReaderSession, library):
        result = indexing.get_pdf_toc(session, "Device Manual")
        assert result.data["page_count"] == 3
        assert [t["title"] for t in result.data["toc"]] == ["Setup", "Problems"]


class TestIndexTools:
    def test_semantic_index_round_trip(self, session: ReaderSession, library):
        empty = indexing.get_book_index(session, "Sea Stories")
        assert empty.data["has_index"] is False

        index = {
            "overallSummary": "Tales of the sea.",
            "themes": ["sea", "work"],
            "keyTopics": [{"topic": "Lighthouses", "chapters": [0], "summary": "Keepers."}],
            "chapterSummaries": [{"chapterIndex": 0, "title": "Harbour", "summary": "Ships."}],
        }
        saved = indexing.save_book_index(session, "Sea Stories", index)
        assert saved.data["stats"] == {
            "themes": 2,
            "keyTopics": 1,
            "chapterSummaries": 1,
            "importantQuotes": 0,
        }
        result = indexing.get_book_index(session, "Sea Stories")
        assert result.data["index"] == index
        assert "Tales of the sea." in result.text
        assert "semantic index saved" in indexing.get_book_toc(session, "Sea Stories").text

    def test_index_book_skips_unchanged(self, session: ReaderSession, library):
        first = indexing.index_book(session, "Sea Stories")
        assert first.data["reindexed"] is True
        assert first.data["chapters"] == 3
        again = indexing.index_book(session, "Sea Stories")
        assert again.data["reindexed"] is False
        forced = indexing.index_book(session, "Sea Stories", force=True)
        assert forced.data["reindexed"] is True

    def test_reindex_drops_cached_chapter_list(self, session: ReaderSession, library):
        toc = indexing.get_book_toc(session, "Sea Stories")
        assert toc.data["search_indexed"] is False
        book_id = toc.data["book_id"]
        assert session.db.get_book_structure(book_id) is not None

        indexing.index_book(session, "Sea Stories")
        assert session.db.get_book_structure(book_id) is None
        assert indexing.get_book_toc(session, "Sea Stories").data["search_indexed"] is True

    def test_indexed_books_show_semantic_index(self, session: ReaderSession, library):
        indexing.index_book(session, "Sea Stories")
        indexing.index_book(session, "Long Book")
        indexing.save_book_index(session, "Long Book", {"summary": "Words."})
        listed = indexing.list_indexed_books(session).data["books"]
        flags = {b["book_title"]: b["has_semantic_index"] for b in listed}
        assert flags == {"Sea Stories": False, "Long Book": True}

    def test_search_indexes_named_books(self, session: ReaderSession, library):
        result = indexing.search_content(session, "lighthouse", book_ids=["Sea Stories"])
        [hit] = result.data["results"]
        assert hit["book_title"] == "Sea Stories"
        assert hit["chapter_index"] == 0
        assert "lighthouse keeper" in hit["passage"]
        assert hit["score"] == 1.0

        listed = indexing.list_indexed_books(session)
        assert [b["book_title"] for b in listed.data["books"]] == ["Sea Stories"]

    def test_search_without_index(self, session: ReaderSession, library):
        result = indexing.search_content(session, "lighthouse")
        assert "No books are indexed" in result.text

    def test_search_existing_index(self, session: ReaderSession, library):
        indexing.index_book(session, "Sea Stories")
        result = indexing.search_content(session, "merchants")
        assert [r["chapter_title"] for r in result.data["results"]] == ["Market"]
        assert indexing.search_content(session, "   ").is_error

    def test_passage_window(self):
        text = "a" * 500 + " needle " + "b" * 500
        snippet = indexing.passage(text, "needle", width=100)
        assert "needle" in snippet
        assert snippet.startswith("...") and snippet.endswith("...")


class TestAnnotationTools:
    def test_highlight_uses_reading_context(self, session: ReaderSession):
        books.sync_reading_context(session, "b1", "T", "A", "Chapter 1", "text")
        result = annotations.add_highlight(session, "a fine line", chapter_index=0, color="green")
        assert result.data["highlight"]["book_id"] == "b1"
        assert result.data["highlight"]["color"] == "green"

    def test_invalid_color(self, session: ReaderSession):
        result = annotations.add_highlight(session, "x", book_id="b1", chapter_index=0, color="red")
        assert result.is_error
        assert "yellow" in result.text

    def test_missing_book(self, session: ReaderSession):
        assert annotations.add_note(session, "thought", chapter_index=0).is_error

    def test_list_and_delete(self, session: ReaderSession):
        hl = annotations.add_highlight(session, "line", book_id="b1", chapter_index=0)
        annotations.add_note(session, "thought", book_id="b1", chapter_index=0, quote="line")
        listed = annotations.list_annotations(session, book_id="b1")
        assert len(listed.data["highlights"]) == 1
        assert len(listed.data["notes"]) == 1

        hl_id = hl.data["highlight"]["id"]
        deleted = annotations.delete_annotation(session, hl_id, "highlight")
        assert deleted.data == {"deleted": {"id": hl_id, "type": "highlight"}}
        again = annotations.delete_annotation(session, hl_id, "highlight")
        assert not again.is_error
        assert "not found" in again.text
        assert annotations.delete_annotation(session, hl_id, "sticker").is_error

    def test_bookmarks(self, session: ReaderSession):
        bm = annotations.add_bookmark(session, "b1", 3, title="Good part", page_number=12)
        listed = annotations.list_bookmarks(session, "b1")
        assert [b["page_number"] for b in listed.data["bookmarks"]] == [12]
        annotations.delete_bookmark(session, bm.data["bookmark"]["id"])
        assert annotations.list_bookmarks(session, "b1").data["bookmarks"] == []

    def test_search(self, session: ReaderSession):
        annotations.add_highlight(session, "whale song", book_id="b1", chapter_index=0, color="blue")
        annotations.add_highlight(session, "harbour", book_id="b1", chapter_index=1)
        found = annotations.search_highlights(session, search_text="whale")
        assert found.data["count"] == 1
        assert "[blue]" in found.text
        assert "No notes found" in annotations.search_notes(session, search_text="zzz").text

    def test_export(self, session: ReaderSession, library):
        book_id = make_book_id(library["sea"])
        annotations.add_highlight(session, "keeper", book_id=book_id, chapter_index=0)
        annotations.add_note(session, "nice", book_id=book_id, chapter_index=1, quote="coins")
        annotations.add_bookmark(session, book_id, 2)

        md = annotations.export_annotations(session, book_id)
        assert md.text.startswith("# Sea Stories\n**Author:** Mariner")
        assert "> keeper" in md.text
        assert "## Notes (1)" in md.text
        assert "## Bookmarks (1)" in md.text

        exported = json.loads(annotations.export_annotations(session, book_id, "json").text)
        assert exported["book"]["title"] == "Sea Stories"
        assert len(exported["highlights"]) == 1
        assert annotations.export_annotations(session, book_id, "pdf").is_error


@pytest.fixture
def feed_server() -> FakeServer:
    server = FakeServer()
    server.routes[FEED_URL] = httpx.Response(200, content=RSS)
    return server


@pytest.fixture
async def feed_session(config, clock, feed_server: FakeServer):
    client = httpx.AsyncClient(transport=httpx.MockTransport(feed_server))
    s = ReaderSession(config, http_client=client, clock=clock)
    yield s
    await s.aclose()


class TestFeedTools:
    async def test_subscribe_and_read(self, feed_session: ReaderSession):
        result = await feeds.subscribe_feed(feed_session, FEED_URL)
        assert result.data["added"] == 2
        assert all("content" not in a for a in result.data["articles"])
        article_id = result.data["articles"][1]["id"]

        content = feeds.get_article_content(feed_session, article_id)
        assert content.text.startswith("# First story")
        assert "*summary*" in content.data["content"] or "_summary_" in content.data["content"]
        assert feed_session.db.get_article(article_id).is_read

        listed = feeds.list_feeds(feed_session)
        assert listed.data["feeds"][0]["unread_count"] == 1
        assert listed.data["total_unread"] == 1

    async def test_fetch_error_is_tool_error(
        self, feed_session: ReaderSession, feed_server: FakeServer
    ):
        feed_server.routes[FEED_URL] = httpx.Response(404)
        result = await feeds.subscribe_feed(feed_session, FEED_URL)
        assert result.is_error
        assert result.data == {"status_code": 404}

    async def test_unknown_ids(self, feed_session: ReaderSession):
        assert "not found" in (await feeds.refresh_feed(feed_session, "nope")).text
        assert "not found" in feeds.unsubscribe_feed(feed_session, "nope").text
        assert "not found" in feeds.save_article(feed_session, "nope").text
        assert "not found" in feeds.get_article_content(feed_session, "nope").text

    async def test_saved_and_search(self, feed_session: ReaderSession):
        result = await feeds.subscribe_feed(feed_session, FEED_URL)
        article_id = result.data["articles"][0]["id"]
        assert feeds.save_article(feed_session, article_id).data == {"is_saved": True}
        saved = feeds.get_saved_articles(feed_session)
        assert [a["id"] for a in saved.data["articles"]] == [article_id]

        found = feeds.search_rss_articles(feed_session, "gardening")
        assert [a["title"] for a in found.data["articles"]] == ["Second story"]
        assert feeds.mark_all_read(feed_session).data == {"count": 2}

    async def test_rss_context(self, feed_session: ReaderSession):
        assert "No article" in feeds.get_rss_context(feed_session).text
        feeds.sync_rss_context(feed_session, "a1", "Feed", "Story", "Body text", author="Ann")
        result = feeds.get_rss_context(feed_session)
        assert "**Author:** Ann" in result.text
        assert result.data["article_id"] == "a1"

    async def test_proxy_image_scheme(self, feed_session: ReaderSession):
        assert (await feeds.proxy_image(feed_session, "file:///etc/passwd")).is_error


class TestServer:
    async def test_tools_registered(self, session: ReaderSession):
        mcp = create_server(session)
        names = {tool.name for tool in await mcp.list_tools()}
        expected = {
            "view_library",
            "load_book",
            "get_book_toc",
            "read_chapter",
            "read_pdf_page",
            "get_pdf_toc",
            "get_book_index",
            "save_book_index",
            "search_content",
            "add_highlight",
            "delete_annotation",
            "export_annotations",
            "subscribe_feed",
            "get_article_content",
            "proxy_image",
        }
        assert expected <= names

    def test_render(self):
        assert render(ToolResult(text="plain")) == "plain"
        assert render(ToolResult(text="t", data={"a": 1})) == {"text": "t", "data": {"a": 1}}
        with pytest.raises(ToolError, match="bad input"):
            render(error("bad input"))
