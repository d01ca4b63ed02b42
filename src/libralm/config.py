"""Configuration management via .env file."""

from __future__ import annotations

import os
from dataclasses import dataclass, field
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv


def _xdg_config_home() -> Path:
    return Path(os.environ.get("XDG_CONFIG_HOME", Path.home() / ".config"))


@dataclass
class DedupConfig:
    """Thresholds for stripping boilerplate repeated across chapters."""

    prefix_window: int = 2000
    suffix_window: int = 1500
    min_window: int = 100
    step: int = 50
    min_length: int = 200  # shorter matches are not worth stripping
    prefix_max_position: int = 500
    suffix_min_distance: int = 2000
    quorum: float = 0.5
    min_chapters: int = 3


@dataclass
class ChunkConfig:
    auto_chunk_threshold: int = 50_000
    chunk_size: int = 30_000
    max_pdf_pages: int = 10


@dataclass
class AppConfig:
    # Paths
    data_dir: Path = field(default_factory=lambda: Path.home() / ".libralm")
    book_path: Path = field(default_factory=lambda: Path.home() / "Books")
    db_path: Path = field(init=False)
    library_path: Path = field(init=False)
    session_path: Path = field(init=False)
    log_path: Path = field(init=False)

    # Caches (seconds)
    cache_ttl: float = 600.0
    cache_sweep_interval: float = 300.0
    feed_cache_ttl: float = 300.0

    # Network timeouts (seconds)
    feed_timeout: float = 30.0
    image_timeout: float = 10.0

    log_level: str = "INFO"

    dedup: DedupConfig = field(default_factory=DedupConfig)
    chunking: ChunkConfig = field(default_factory=ChunkConfig)

    def __post_init__(self) -> None:
        self.data_dir = Path(self.data_dir).expanduser()
        self.book_path = Path(self.book_path).expanduser()
        self.db_path = self.data_dir / "annotations.db"
        self.library_path = self.data_dir / "library.json"
        self.session_path = self.data_dir / "session.json"
        self.log_path = self.data_dir / "libralm.log"
        self.data_dir.mkdir(parents=True, exist_ok=True)


def _float_env(name: str, default: float) -> float:
    raw = os.getenv(name, "")
    if not raw:
        return default
    try:
        return float(raw)
    except ValueError:
        return default


def load_config(env_path: Optional[Path] = None) -> AppConfig:
    """Load config from .env file. Searches CWD then config dir."""
    search_paths = [
        env_path,
        Path.cwd() / ".env",
        _xdg_config_home() / "libralm" / ".env",
        Path.home() / ".env",
    ]
    for p in search_paths:
        if p and p.exists():
            load_dotenv(p)
            break

    defaults = AppConfig.__dataclass_fields__
    data_dir = os.getenv("LIBRALM_DATA_PATH") or os.getenv("DATA_PATH")
    book_path = os.getenv("BOOK_PATH")

    return AppConfig(
        data_dir=Path(data_dir) if data_dir else Path.home() / ".libralm",
        book_path=Path(book_path) if book_path else Path.home() / "Books",
        cache_ttl=_float_env("LIBRALM_CACHE_TTL", defaults["cache_ttl"].default),
        cache_sweep_interval=_float_env(
            "LIBRALM_CACHE_SWEEP", defaults["cache_sweep_interval"].default
        ),
        feed_cache_ttl=_float_env(
            "LIBRALM_FEED_CACHE_TTL", defaults["feed_cache_ttl"].default
        ),
        feed_timeout=_float_env("LIBRALM_FEED_TIMEOUT", defaults["feed_timeout"].default),
        image_timeout=_float_env(
            "LIBRALM_IMAGE_TIMEOUT", defaults["image_timeout"].default
        ),
        log_level=os.getenv("LIBRALM_LOG_LEVEL", "INFO").upper(),
    )
