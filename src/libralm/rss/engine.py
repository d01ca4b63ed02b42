from __future__ import annotations

import base64
import logging
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Callable, Optional
from urllib.parse import urlparse

import feedparser
import httpx

from libralm.library.cache import TTLCache
from libralm.library.database import Database
from libralm.library.models import Article, Feed, now_iso
from libralm.parsers.text import clean_text, html_to_markdown

log = logging.getLogger(__name__)

USER_AGENT = "LibraLM-Reader/2.0 (RSS Reader)"
FEED_ACCEPT = "application/rss+xml, application/atom+xml, application/xml, text/xml"
ARTICLE_PAGE_SIZE = 50

_IMAGE_SIGNATURES = (
    (b"\x89PNG\r\n\x1a\n", "image/png"),
    (b"\xff\xd8\xff", "image/jpeg"),
    (b"GIF87a", "image/gif"),
    (b"GIF89a", "image/gif"),
)


class FetchError(RuntimeError):
    """A feed or image could not be fetched or was not what we expected."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


@dataclass
class ParsedArticle:
    guid: str
    title: str
    link: Optional[str] = None
    author: Optional[str] = None
    pub_date: Optional[str] = None
    summary: Optional[str] = None
    content: Optional[str] = None  # HTML as published


@dataclass
class ParsedFeed:
    title: str
    description: Optional[str] = None
    link: Optional[str] = None
    icon_url: Optional[str] = None
    items: list[ParsedArticle] = field(default_factory=list)


@dataclass
class FeedWithArticles:
    feed: Feed
    articles: list[Article]
    added: int = 0


def domain_name(url: str) -> str:
    host = urlparse(url).hostname
    if not host:
        return url
    return host[4:] if host.startswith("www.") else host


def sniff_image_type(data: bytes) -> Optional[str]:
    for signature, mime in _IMAGE_SIGNATURES:
        if data.startswith(signature):
            return mime
    if data[:4] == b"RIFF" and data[8:12] == b"WEBP":
        return "image/webp"
    return None


def _iso_date(entry: Any) -> Optional[str]:
    parsed = entry.get("published_parsed") or entry.get("updated_parsed")
    if parsed:
        return datetime(*parsed[:6], tzinfo=timezone.utc).isoformat()
    return entry.get("published") or entry.get("updated") or None


def _entry_content(entry: Any) -> str:
    for part in entry.get("content") or []:
        value = part.get("value")
        if value:
            return value
    return entry.get("summary") or ""


def parse_feed_document(body: bytes, url: str) -> ParsedFeed:
    """Turn an RSS 2.0 / Atom document into a :class:`ParsedFeed`."""
    doc = feedparser.parse(body)
    if not doc.get("version") and not doc.entries:
        reason = doc.get("bozo_exception") or "not an RSS or Atom document"
        raise FetchError(f"Failed to fetch feed: {reason}")

    meta = doc.feed
    image = meta.get("image") or {}
    items = []
    for entry in doc.entries:
        link = entry.get("link") or None
        title = (entry.get("title") or "").strip()
        guid = entry.get("id") or link or title or str(uuid.uuid4())
        items.append(
            ParsedArticle(
                guid=guid,
                title=title or "Untitled",
                link=link,
                author=entry.get("author") or None,
                pub_date=_iso_date(entry),
                summary=clean_text(entry.get("summary") or "") or None,
                content=_entry_content(entry) or None,
            )
        )

    return ParsedFeed(
        title=(meta.get("title") or "").strip() or domain_name(url),
        description=clean_text(meta.get("subtitle") or meta.get("description") or "") or None,
        link=meta.get("link"),
        icon_url=image.get("href") or meta.get("icon") or meta.get("logo"),
        items=items,
    )


class RssEngine:
    def __init__(
        self,
        db: Database,
        cache_ttl: float = 300.0,
        timeout: float = 30.0,
        image_timeout: float = 10.0,
        client: Optional[httpx.AsyncClient] = None,
        clock: Callable[[], float] = time.monotonic,
    ) -> None:
        self._db = db
        self._timeout = timeout
        self._image_timeout = image_timeout
        self._client = client
        self._clock = clock
        self._cache_ttl = cache_ttl
        # url -> (fetched_at, ParsedFeed)
        self._cache: TTLCache[tuple[float, ParsedFeed]] = TTLCache(
            ttl=cache_ttl, clock=clock, name="feeds"
        )

    # ── Network ────────────────────────────────────────

    def _get_client(self) -> httpx.AsyncClient:
        if self._client is None:
            self._client = httpx.AsyncClient(
                headers={"User-Agent": USER_AGENT}, follow_redirects=True
            )
        return self._client

    async def _get(self, url: str, timeout: float, accept: str, what: str) -> httpx.Response:
        try:
            resp = await self._get_client().get(
                url, headers={"Accept": accept}, timeout=timeout
            )
            resp.raise_for_status()
            return resp
        except httpx.HTTPStatusError as e:
            status = e.response.status_code
            log.error("%s fetch failed: %s -> HTTP %s", what, url, status)
            raise FetchError(
                f"Failed to fetch {what}: HTTP {status} {e.response.reason_phrase}".rstrip(),
                status_code=status,
            ) from e
        except httpx.TimeoutException as e:
            log.error("%s fetch timed out after %ss: %s", what, timeout, url)
            raise FetchError(f"Failed to fetch {what}: timed out after {timeout:g}s") from e
        except httpx.RequestError as e:
            log.error("%s request error: %s %s -> %s", what, type(e).__name__, url, e)
            raise FetchError(f"Failed to fetch {what}: {type(e).__name__} ({url})") from e

    async def fetch_feed(self, url: str, use_cache: bool = True) -> ParsedFeed:
        if use_cache:
            cached = self._cache.get(url)
            if cached is not None and self._clock() - cached[0] < self._cache_ttl:
                return cached[1]

        resp = await self._get(url, self._timeout, FEED_ACCEPT, "feed")
        parsed = parse_feed_document(resp.content, url)
        self._cache.put(url, (self._clock(), parsed))
        log.debug("Fetched %s: %d items", url, len(parsed.items))
        return parsed

    async def fetch_image_data_uri(self, url: str) -> str:
        """Fetch a remote image and return it as a ``data:`` URI."""
        resp = await self._get(url, self._image_timeout, "image/*", "image")
        content_type = resp.headers.get("content-type", "").split(";")[0].strip().lower()
        data = resp.content
        if not content_type.startswith("image/"):
            sniffed = None
            if content_type in ("", "application/octet-stream", "binary/octet-stream"):
                sniffed = sniff_image_type(data)
            if sniffed is None:
                raise FetchError(f"Not an image: {content_type or 'unknown content type'}")
            content_type = sniffed
        encoded = base64.b64encode(data).decode("ascii")
        return f"data:{content_type};base64,{encoded}"

    def sweep_cache(self) -> int:
        return self._cache.sweep()

    @property
    def cache(self) -> TTLCache:
        return self._cache

    async def close(self) -> None:
        if self._client:
            await self._client.aclose()
            self._client = None

    # ── Subscriptions ──────────────────────────────────

    def _store_items(self, feed_id: str, items: list[ParsedArticle]) -> int:
        return self._db.add_articles(
            Article(
                id=str(uuid.uuid4()),
                feed_id=feed_id,
                guid=item.guid,
                title=item.title,
                link=item.link,
                author=item.author,
                pub_date=item.pub_date,
                summary=item.summary,
                content=item.content,
            )
            for item in items
        )

    def _with_articles(self, feed_id: str, added: int) -> FeedWithArticles:
        feed = self._db.get_feed(feed_id)
        articles = self._db.get_articles(feed_id=feed_id, limit=ARTICLE_PAGE_SIZE)
        return FeedWithArticles(feed=feed, articles=articles, added=added)

    async def subscribe(self, url: str) -> FeedWithArticles:
        """Subscribe to ``url``; an existing subscription is refreshed instead."""
        url = url.strip()
        existing = self._db.get_feed_by_url(url)
        if existing is not None:
            return await self.refresh(existing.id)

        parsed = await self.fetch_feed(url, use_cache=False)
        feed = self._db.add_feed(
            url=url,
            title=parsed.title,
            description=parsed.description,
            icon_url=parsed.icon_url,
            last_fetched=now_iso(),
        )
        added = self._store_items(feed.id, parsed.items)
        log.info("Subscribed to %s (%d articles)", url, added)
        return self._with_articles(feed.id, added)

    async def refresh(self, feed_id: str) -> FeedWithArticles:
        feed = self._db.get_feed(feed_id)
        if feed is None:
            raise LookupError(f"Feed not found: {feed_id}")

        parsed = await self.fetch_feed(feed.url, use_cache=False)
        self._db.update_feed(
            feed_id,
            title=parsed.title,
            description=parsed.description,
            icon_url=parsed.icon_url,
            last_fetched=now_iso(),
        )
        added = self._store_items(feed_id, parsed.items)
        log.info("Refreshed %s: %d new articles", feed.url, added)
        return self._with_articles(feed_id, added)

    async def refresh_all(self) -> tuple[int, list[str]]:
        refreshed = 0
        errors: list[str] = []
        for feed in self._db.get_feeds():
            try:
                await self.refresh(feed.id)
                refreshed += 1
            except (FetchError, LookupError) as e:
                errors.append(f"{feed.title}: {e}")
        return refreshed, errors

    def unsubscribe(self, feed_id: str) -> bool:
        feed = self._db.get_feed(feed_id)
        if feed is None:
            return False
        self._cache.invalidate(feed.url)
        return self._db.delete_feed(feed_id)

    # ── Articles ───────────────────────────────────────

    def list_feeds(self) -> list[Feed]:
        return self._db.get_feeds_with_unread_counts()

    def get_articles(
        self,
        feed_id: Optional[str] = None,
        unread_only: bool = False,
        saved_only: bool = False,
        limit: int = ARTICLE_PAGE_SIZE,
        offset: int = 0,
    ) -> list[Article]:
        return self._db.get_articles(
            feed_id=feed_id,
            unread_only=unread_only,
            saved_only=saved_only,
            limit=limit,
            offset=offset,
        )

    def get_article(self, article_id: str) -> Optional[Article]:
        return self._db.get_article(article_id)

    def mark_read(self, article_id: str, is_read: bool = True) -> bool:
        return self._db.mark_article_read(article_id, is_read)

    def mark_all_read(self, feed_id: Optional[str] = None) -> int:
        return self._db.mark_all_articles_read(feed_id)

    def toggle_saved(self, article_id: str) -> Optional[bool]:
        return self._db.toggle_article_saved(article_id)

    def search_articles(
        self, query: str, feed_id: Optional[str] = None, limit: int = 20
    ) -> list[Article]:
        return self._db.search_rss_articles(query, feed_id=feed_id, limit=limit)

    def get_article_markdown(self, article_id: str) -> Optional[str]:
        article = self._db.get_article(article_id)
        if article is None:
            return None
        return html_to_markdown(article.content or article.summary or "")
