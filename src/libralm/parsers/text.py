"""Markup to plain text / Markdown conversions shared by EPUB, PDF and RSS."""

from __future__ import annotations

import re
import warnings

from bs4 import BeautifulSoup, MarkupResemblesLocatorWarning, XMLParsedAsHTMLWarning
from markdownify import markdownify as md

warnings.filterwarnings("ignore", category=XMLParsedAsHTMLWarning)
warnings.filterwarnings("ignore", category=MarkupResemblesLocatorWarning)

BLOCK_TAGS = ("p", "div", "br", "h1", "h2", "h3", "h4", "h5", "h6", "li", "tr")

_NUMERIC_ENTITY = re.compile(r"&#(?:\d+|[xX][0-9a-fA-F]+);")
_CONTROL_CHARS = re.compile(r"[\x00-\x1f\x7f]")
_HORIZONTAL_WS = re.compile(r"[^\S\n]+")
_ANY_TAG = re.compile(r"<[^>]+>")


def strip_html(markup: str) -> str:
    """Reduce a chapter document to plain text, one paragraph per line."""
    if not markup:
        return ""
    # Numeric character references are dropped rather than decoded.
    markup = _NUMERIC_ENTITY.sub("", markup)
    soup = BeautifulSoup(markup, "lxml")

    for tag in soup.find_all(["script", "style"]):
        tag.decompose()

    root = soup.body or soup
    for tag in root.find_all(list(BLOCK_TAGS)):
        if tag.name == "br":
            tag.replace_with("\n")
        else:
            tag.insert_before("\n")
            tag.insert_after("\n")

    text = root.get_text().replace("\xa0", " ")
    lines = (_HORIZONTAL_WS.sub(" ", line).strip() for line in text.split("\n"))
    return "\n".join(line for line in lines if line)


def clean_text(html: str) -> str:
    """Flatten an HTML fragment (e.g. a feed summary) to one line of text."""
    if not html:
        return ""
    if not _ANY_TAG.search(html) and "&" not in html:
        return re.sub(r"\s+", " ", html).strip()
    text = BeautifulSoup(html, "lxml").get_text(separator=" ")
    return re.sub(r"\s+", " ", text.replace("\xa0", " ")).strip()


def html_to_markdown(html: str) -> str:
    """Convert article HTML to Markdown for model consumption."""
    if not html:
        return ""
    if not _ANY_TAG.search(html):
        return html.strip()

    soup = BeautifulSoup(html, "lxml")
    for tag in soup(["script", "style", "noscript", "iframe"]):
        tag.decompose()

    body = soup.body or soup
    markdown = md(str(body), heading_style="ATX", bullets="-")

    lines = [line.rstrip() for line in markdown.split("\n")]
    cleaned: list[str] = []
    prev_blank = False
    for line in lines:
        is_blank = not line.strip()
        if is_blank and prev_blank:
            continue
        cleaned.append(line)
        prev_blank = is_blank
    return "\n".join(cleaned).strip()


def strip_control_chars(value: str) -> str:
    return _CONTROL_CHARS.sub("", value or "").strip()


def clean_description(value: str, limit: int = 300) -> str:
    """Publisher descriptions often carry HTML and whole synopses."""
    text = re.sub(r"\s+", " ", _ANY_TAG.sub("", value or "")).strip()
    if len(text) > limit:
        text = text[: limit - 3] + "..."
    return text
