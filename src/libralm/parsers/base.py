"""Base parser interface for the supported book formats."""

from __future__ import annotations

from abc import ABC, abstractmethod
from pathlib import Path
from typing import Iterable, Optional, Union

from libralm.library.cache import TTLCache
from libralm.library.models import BookInfo, ExtractedBook, ScannedBook

PathLike = Union[str, Path]


class BaseParser(ABC):
    """Abstract base for format-specific structural engines.

    Parsers keep opened documents in a :class:`TTLCache` keyed by file path,
    so repeated tool calls against the same book do not re-parse it.
    """

    SUPPORTED_EXTENSIONS: tuple[str, ...] = ()
    FORMAT: str = ""

    def __init__(self, cache: Optional[TTLCache] = None) -> None:
        self.cache = cache if cache is not None else TTLCache(ttl=600, name=self.FORMAT)

    @abstractmethod
    def scan(self, file_path: PathLike) -> ScannedBook:
        """Lightweight metadata for the library listing. Never raises."""

    @abstractmethod
    def load(self, file_path: PathLike, book_id: str) -> BookInfo:
        """Open a book and return its metadata and table of contents."""

    @abstractmethod
    def extract_text(self, file_path: PathLike, book_id: str) -> ExtractedBook:
        """Plain text of every chapter, for reading and search indexing."""

    @classmethod
    def can_handle(cls, file_path: PathLike) -> bool:
        return Path(file_path).suffix.lower() in cls.SUPPORTED_EXTENSIONS


def get_parser(file_path: PathLike, parsers: Iterable[BaseParser]) -> BaseParser:
    """Return the parser able to handle a file."""
    parsers = list(parsers)
    for parser in parsers:
        if parser.can_handle(file_path):
            return parser

    supported = []
    for p in parsers:
        supported.extend(p.SUPPORTED_EXTENSIONS)
    raise ValueError(
        f"Unsupported format: {Path(file_path).suffix}. Supported: {', '.join(supported)}"
    )
