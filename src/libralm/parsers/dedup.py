"""Strip boilerplate that some EPUB generators repeat in every chapter file.

Typical offenders embed the whole table of contents or a copyright block at
the top (or bottom) of each content document, which drowns search results
in identical passages.
"""

from __future__ import annotations

import logging
import math
from dataclasses import replace

from libralm.config import DedupConfig
from libralm.library.models import ExtractedChapter

log = logging.getLogger(__name__)


def find_common_prefix(
    strings: list[str], min_count: int, config: DedupConfig = DedupConfig()
) -> str:
    """Longest window of the first string that starts at least ``min_count`` strings."""
    if not strings:
        return ""
    first = strings[0]
    length = min(len(first), config.prefix_window)
    while length >= config.min_window:
        candidate = first[:length]
        if sum(1 for s in strings if s.startswith(candidate)) >= min_count:
            return candidate
        length -= config.step
    return ""


def find_common_suffix(
    strings: list[str], min_count: int, config: DedupConfig = DedupConfig()
) -> str:
    """Longest window of the first string that ends at least ``min_count`` strings."""
    if not strings:
        return ""
    first = strings[0]
    length = min(len(first), config.suffix_window)
    while length >= config.min_window:
        candidate = first[-length:]
        if sum(1 for s in strings if s.endswith(candidate)) >= min_count:
            return candidate
        length -= config.step
    return ""


def deduplicate_chapters(
    chapters: list[ExtractedChapter], config: DedupConfig = DedupConfig()
) -> list[ExtractedChapter]:
    if len(chapters) < config.min_chapters:
        return chapters

    min_count = math.ceil(len(chapters) * config.quorum)
    prefix = find_common_prefix(
        [ch.content[: config.prefix_window] for ch in chapters], min_count, config
    )
    suffix = find_common_suffix(
        [ch.content[-config.suffix_window :] for ch in chapters], min_count, config
    )
    strip_prefix = len(prefix) > config.min_length
    strip_suffix = len(suffix) > config.min_length
    if not (strip_prefix or strip_suffix):
        return chapters

    log.debug(
        "Stripping repeated boilerplate: prefix=%d chars, suffix=%d chars",
        len(prefix) if strip_prefix else 0,
        len(suffix) if strip_suffix else 0,
    )

    result: list[ExtractedChapter] = []
    for ch in chapters:
        content = ch.content
        if strip_prefix:
            pos = content.find(prefix)
            if 0 <= pos < config.prefix_max_position:
                content = content[pos + len(prefix) :]
        if strip_suffix:
            pos = content.rfind(suffix)
            if pos != -1 and pos > len(content) - config.suffix_min_distance:
                content = content[:pos]
        result.append(replace(ch, content=content.strip()))
    return result
