"""RSS subscription and article tools."""

from __future__ import annotations

import logging
from dataclasses import asdict
from typing import Optional

from libralm.library.models import Article, Feed
from libralm.rss.engine import ARTICLE_PAGE_SIZE, FeedWithArticles, FetchError

from .session import ReaderSession, RssContext, ToolResult, error

log = logging.getLogger(__name__)

SEARCH_LIMIT = 20


def _article_summary(article: Article) -> dict:
    data = asdict(article)
    # Bodies can be large; get_article_content serves them.
    data.pop("content", None)
    if data.get("score") is None:
        data.pop("score", None)
    return data


def _feed_line(feed: Feed) -> str:
    unread = f" ({feed.unread_count} unread)" if feed.unread_count else ""
    return f"- **{feed.title}**{unread}\n  {feed.url} [id: {feed.id}]"


def _article_line(article: Article) -> str:
    marker = "" if article.is_read else "● "
    saved = " ★" if article.is_saved else ""
    date = f" ({article.pub_date[:10]})" if article.pub_date else ""
    return f"- {marker}{article.title}{saved}{date} [id: {article.id}]"


def _feed_result(result: FeedWithArticles, verb: str) -> ToolResult:
    feed = result.feed
    lines = [f'{verb} "{feed.title}": {result.added} new articles.']
    if result.articles:
        lines.append("")
        lines += [_article_line(a) for a in result.articles]
    return ToolResult(
        text="\n".join(lines),
        data={
            "feed": asdict(feed),
            "articles": [_article_summary(a) for a in result.articles],
            "added": result.added,
        },
    )


# ── Subscriptions ──────────────────────────────────────


async def subscribe_feed(session: ReaderSession, url: str) -> ToolResult:
    if not url.strip():
        return error("Feed URL is empty")
    try:
        result = await session.rss.subscribe(url)
    except FetchError as e:
        return error(str(e), status_code=e.status_code)
    return _feed_result(result, "Subscribed to")


def unsubscribe_feed(session: ReaderSession, feed_id: str) -> ToolResult:
    if not session.rss.unsubscribe(feed_id):
        return ToolResult(text=f"Feed not found: {feed_id}")
    return ToolResult(text="Unsubscribed.", data={"success": True, "feed_id": feed_id})


async def refresh_feed(session: ReaderSession, feed_id: str) -> ToolResult:
    try:
        result = await session.rss.refresh(feed_id)
    except LookupError:
        return ToolResult(text=f"Feed not found: {feed_id}")
    except FetchError as e:
        return error(str(e), status_code=e.status_code)
    return _feed_result(result, "Refreshed")


async def refresh_all_feeds(session: ReaderSession) -> ToolResult:
    refreshed, errors = await session.rss.refresh_all()
    text = f"Refreshed {refreshed} feeds."
    if errors:
        text += "\n\nErrors:\n" + "\n".join(f"- {e}" for e in errors)
    return ToolResult(text=text, data={"refreshed": refreshed, "errors": errors})


def list_feeds(session: ReaderSession) -> ToolResult:
    feeds = session.rss.list_feeds()
    if not feeds:
        return ToolResult(
            text="No feed subscriptions yet. Use subscribe_feed to add one.",
            data={"feeds": []},
        )
    total_unread = session.db.get_unread_count()
    lines = [f"**{len(feeds)} feeds, {total_unread} unread articles:**", ""]
    lines += [_feed_line(f) for f in feeds]
    return ToolResult(
        text="\n".join(lines),
        data={"feeds": [asdict(f) for f in feeds], "total_unread": total_unread},
    )


def list_subscriptions(session: ReaderSession) -> ToolResult:
    feeds = session.db.get_feeds()
    return ToolResult(
        text="\n".join(f"- {f.title}: {f.url}" for f in feeds) or "No subscriptions.",
        data={"subscriptions": [{"id": f.id, "url": f.url, "title": f.title} for f in feeds]},
    )


# ── Articles ───────────────────────────────────────────


def get_feed_articles(
    session: ReaderSession,
    feed_id: Optional[str] = None,
    unread_only: bool = False,
    limit: int = ARTICLE_PAGE_SIZE,
    offset: int = 0,
) -> ToolResult:
    if feed_id and session.db.get_feed(feed_id) is None:
        return ToolResult(text=f"Feed not found: {feed_id}")
    articles = session.rss.get_articles(
        feed_id=feed_id, unread_only=unread_only, limit=limit, offset=offset
    )
    if not articles:
        return ToolResult(text="No articles found.", data={"articles": []})
    return ToolResult(
        text="\n".join(_article_line(a) for a in articles),
        data={"articles": [_article_summary(a) for a in articles]},
    )


def get_saved_articles(session: ReaderSession, limit: int = ARTICLE_PAGE_SIZE) -> ToolResult:
    articles = session.rss.get_articles(saved_only=True, limit=limit)
    if not articles:
        return ToolResult(text="No saved articles.", data={"articles": []})
    return ToolResult(
        text="\n".join(_article_line(a) for a in articles),
        data={"articles": [_article_summary(a) for a in articles]},
    )


def get_article_content(session: ReaderSession, article_id: str) -> ToolResult:
    article = session.rss.get_article(article_id)
    if article is None:
        return ToolResult(text=f"Article not found: {article_id}")
    if not article.is_read:
        session.rss.mark_read(article_id)
        article.is_read = True

    feed = session.db.get_feed(article.feed_id)
    feed_title = feed.title if feed else "Unknown feed"
    body = session.rss.get_article_markdown(article_id) or ""

    header = [f"# {article.title}", f"**Feed:** {feed_title}"]
    if article.author:
        header.append(f"**Author:** {article.author}")
    if article.pub_date:
        header.append(f"**Published:** {article.pub_date}")
    if article.link:
        header.append(f"**Link:** {article.link}")

    return ToolResult(
        text="\n".join(header) + "\n\n---\n\n" + (body or "(No content)"),
        data={
            "article": _article_summary(article),
            "feed_title": feed_title,
            "content": body,
        },
    )


def mark_article_read(session: ReaderSession, article_id: str, is_read: bool = True) -> ToolResult:
    if not session.rss.mark_read(article_id, is_read):
        return ToolResult(text=f"Article not found: {article_id}")
    state = "read" if is_read else "unread"
    return ToolResult(text=f"Article marked as {state}.", data={"success": True})


def mark_all_read(session: ReaderSession, feed_id: Optional[str] = None) -> ToolResult:
    if feed_id and session.db.get_feed(feed_id) is None:
        return ToolResult(text=f"Feed not found: {feed_id}")
    count = session.rss.mark_all_read(feed_id)
    return ToolResult(text=f"Marked {count} articles as read.", data={"count": count})


def save_article(session: ReaderSession, article_id: str) -> ToolResult:
    saved = session.rss.toggle_saved(article_id)
    if saved is None:
        return ToolResult(text=f"Article not found: {article_id}")
    text = "Article saved." if saved else "Article removed from saved."
    return ToolResult(text=text, data={"is_saved": saved})


def search_rss_articles(
    session: ReaderSession,
    query: str,
    feed_id: Optional[str] = None,
    limit: int = SEARCH_LIMIT,
) -> ToolResult:
    if not query.strip():
        return error("Search query is empty")
    articles = session.rss.search_articles(query, feed_id=feed_id, limit=limit)
    if not articles:
        return ToolResult(text=f'No articles found for "{query}".', data={"articles": []})
    lines = [f'**Found {len(articles)} articles for "{query}":**', ""]
    for a in articles:
        lines.append(_article_line(a))
        if a.summary:
            lines.append(f"  {a.summary[:200]}")
    return ToolResult(
        text="\n".join(lines),
        data={"articles": [_article_summary(a) for a in articles]},
    )


# ── Context and images ─────────────────────────────────


def sync_rss_context(
    session: ReaderSession,
    article_id: str,
    feed_title: str,
    article_title: str,
    content: str,
    author: Optional[str] = None,
    pub_date: Optional[str] = None,
) -> ToolResult:
    session.rss_context = RssContext(
        article_id=article_id,
        feed_title=feed_title,
        article_title=article_title,
        content=content,
        author=author,
        pub_date=pub_date,
    )
    return ToolResult(text="RSS context synced.", data={"success": True})


def get_rss_context(session: ReaderSession) -> ToolResult:
    ctx = session.rss_context
    if ctx is None:
        return ToolResult(text="No article is currently open in the reader.")
    header = [f'**Currently Reading:** "{ctx.article_title}"', f"**Feed:** {ctx.feed_title}"]
    if ctx.author:
        header.append(f"**Author:** {ctx.author}")
    if ctx.pub_date:
        header.append(f"**Published:** {ctx.pub_date}")
    return ToolResult(
        text="\n".join(header) + f"\n\n{ctx.content}",
        data=asdict(ctx),
    )


async def proxy_image(session: ReaderSession, url: str) -> ToolResult:
    if not url.startswith(("http://", "https://")):
        return error("Only http and https image URLs can be fetched")
    try:
        data_uri = await session.rss.fetch_image_data_uri(url)
    except FetchError as e:
        return error(str(e), status_code=e.status_code)
    return ToolResult(text="Image fetched.", data={"data_uri": data_uri})
