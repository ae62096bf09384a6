"""
================================================================================
MangaHook - Base Connector
================================================================================
Abstract base class and canonical data types for all catalog providers.

Every provider implements the same capability set:
  1. get_details(manga_id)            -> MangaResult
  2. list_chapters(manga_id)          -> List[ChapterResult]
  3. issue_page_handle(chapter_id)    -> AtHomeHandle | PageListHandle
  4. search(query)                    -> SearchPage
  5. list_catalog(offset, limit)      -> CatalogPage (raw records for sync)

Callers never branch on provider identity; routing happens once, through
sources.resolve_id().

RATE LIMITING:
  - Token bucket per connector keeps us under each upstream's rate limit
  - Network retries are NOT done here: they belong to the RetryTransport
================================================================================
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Callable, Dict, List, Optional, Tuple
from urllib.parse import quote
import logging
import threading
import time

import requests

from .errors import UpstreamError, UpstreamNotFound, UpstreamUnavailable

logger = logging.getLogger(__name__)

# Covers are served to clients through this route, never from the upstream host
COVER_PROXY_PATH = "/api/cover"
DEFAULT_COVER_SIZE = "256"


# =============================================================================
# LOGGING CALLBACK (avoids circular imports)
# =============================================================================

# Set by create_app() so connector messages reach the app log/queue
_log_callback: Optional[Callable[[str], None]] = None


def set_log_callback(callback: Optional[Callable[[str], None]]) -> None:
    """Set the logging callback function. Called by create_app() on startup."""
    global _log_callback
    _log_callback = callback


def source_log(msg: str) -> None:
    """Log a message using the registered callback or the module logger."""
    if _log_callback:
        _log_callback(msg)
    else:
        logger.info(msg)


def _retry_after(response: requests.Response) -> Optional[float]:
    """Retry-After in seconds; the HTTP-date form is ignored."""
    try:
        value = float(response.headers.get("Retry-After"))
    except (TypeError, ValueError):
        return None
    return value if value > 0 else None


# =============================================================================
# CANONICAL ENUMS
# =============================================================================

class MangaStatus(Enum):
    ONGOING = "ONGOING"
    COMPLETED = "COMPLETED"
    HIATUS = "HIATUS"
    CANCELLED = "CANCELLED"
    UNKNOWN = "UNKNOWN"


class ContentRating(Enum):
    SAFE = "SAFE"
    SUGGESTIVE = "SUGGESTIVE"
    EROTICA = "EROTICA"
    PORNOGRAPHIC = "PORNOGRAPHIC"


class Demographic(Enum):
    SHOUNEN = "SHOUNEN"
    SHOUJO = "SHOUJO"
    SEINEN = "SEINEN"
    JOSEI = "JOSEI"


class TagGroup(Enum):
    GENRE = "GENRE"
    THEME = "THEME"
    FORMAT = "FORMAT"
    CONTENT = "CONTENT"


class PageVariant(Enum):
    """Which filename list of a chapter handle to read from."""
    NORMAL = "data"
    DATA_SAVER = "data-saver"

    @classmethod
    def from_flag(cls, data_saver: bool) -> "PageVariant":
        return cls.DATA_SAVER if data_saver else cls.NORMAL


# =============================================================================
# DATA CLASSES
# =============================================================================

@dataclass
class TagResult:
    """Provider-scoped tag. (source, id) is its identity."""
    id: str
    name: str
    group: TagGroup = TagGroup.THEME
    source: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "group": self.group.value,
        }


@dataclass
class MangaResult:
    """
    Canonical manga record shared by every provider.

    Whether it came from MangaDex JSON, a Consumet page or a database row,
    search, sync and the API all see this same structure.
    """
    id: str                                  # Provider-native id
    title: str
    source: str = ""
    alt_titles: List[str] = field(default_factory=list)
    description: Optional[str] = None
    status: MangaStatus = MangaStatus.UNKNOWN
    content_rating: ContentRating = ContentRating.SAFE
    demographic: Optional[Demographic] = None
    original_language: Optional[str] = None
    last_chapter: Optional[str] = None
    last_volume: Optional[str] = None
    total_chapters: Optional[int] = None
    cover_art_id: Optional[str] = None       # Relationship id on MangaDex
    cover_file: Optional[str] = None         # File name, or absolute URL
    followed_count: Optional[int] = None     # None = unknown, keep stored value
    year: Optional[int] = None
    source_updated_at: Optional[datetime] = None
    tags: List[TagResult] = field(default_factory=list)

    @property
    def composite_id(self) -> str:
        return f"{self.source}:{self.id}"

    @property
    def cover_url(self) -> Optional[str]:
        if not self.cover_file:
            return None
        if self.cover_file.startswith(("http://", "https://")):
            return self.cover_file
        return f"{COVER_PROXY_PATH}/{quote(self.id, safe='')}/{quote(self.cover_file, safe='')}"

    def tag_keys(self) -> set:
        """Every way a query may refer to one of this manga's tags."""
        keys = set()
        for tag in self.tags:
            keys.add(tag.id)
            keys.add(tag.name.lower())
        return keys

    def to_dict(self) -> Dict[str, Any]:
        """Convert to JSON-serializable dictionary for API responses."""
        return {
            "id": self.composite_id,
            "source": self.source,
            "source_id": self.id,
            "title": self.title,
            "alt_titles": self.alt_titles,
            "description": self.description,
            "status": self.status.value,
            "content_rating": self.content_rating.value,
            "demographic": self.demographic.value if self.demographic else None,
            "original_language": self.original_language,
            "last_chapter": self.last_chapter,
            "last_volume": self.last_volume,
            "total_chapters": self.total_chapters,
            "cover": self.cover_url,
            "followed_count": self.followed_count or 0,
            "year": self.year,
            "source_updated_at": self.source_updated_at.isoformat() if self.source_updated_at else None,
            "tags": [tag.to_dict() for tag in self.tags],
        }


@dataclass
class ChapterResult:
    """Standardized chapter information."""
    id: str                          # Chapter identifier
    chapter: Optional[str] = None    # Chapter number (string for "10.5")
    title: Optional[str] = None
    volume: Optional[str] = None
    language: str = "en"
    pages: int = 0
    scanlator: Optional[str] = None
    published: Optional[str] = None
    source: str = ""

    def to_dict(self) -> Dict[str, Any]:
        return {
            "id": f"{self.source}:{self.id}" if self.source else self.id,
            "chapter": self.chapter,
            "title": self.title,
            "volume": self.volume,
            "language": self.language,
            "pages": self.pages,
            "scanlator": self.scanlator,
            "published": self.published,
            "source": self.source
        }


@dataclass
class PageResult:
    """Standardized page/image information."""
    url: str                         # Image URL
    index: int                       # Page number (0-indexed)
    headers: Dict[str, str] = field(default_factory=dict)
    referer: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "url": self.url,
            "index": self.index,
            "headers": self.headers,
            "referer": self.referer
        }


@dataclass
class SearchPage:
    """One page of live provider search results."""
    results: List[MangaResult]
    total: int


@dataclass
class CatalogPage:
    """One page of raw catalog records, newest update first where supported."""
    items: List[Dict[str, Any]]
    total: Optional[int] = None


# =============================================================================
# PAGE HANDLES
# =============================================================================

@dataclass(frozen=True)
class AtHomeHandle:
    """
    Short-lived image-server credentials for one chapter.

    MangaDex issues these from /at-home/server/{chapter}; the base URL stops
    working after a few minutes, so they are never persisted.
    """
    base_url: str
    hash: str
    data: Tuple[str, ...]
    data_saver: Tuple[str, ...]
    timestamp: float = 0.0

    def filenames(self, variant: PageVariant) -> Tuple[str, ...]:
        return self.data_saver if variant is PageVariant.DATA_SAVER else self.data

    def page_url(self, index: int, variant: PageVariant) -> str:
        filename = self.filenames(variant)[index]
        return f"{self.base_url}/{variant.value}/{self.hash}/{filename}"

    @property
    def referer(self) -> Optional[str]:
        return None


@dataclass(frozen=True)
class PageListHandle:
    """Aggregator chapters: absolute page URLs, same for every variant."""
    urls: Tuple[str, ...]
    timestamp: float = 0.0
    referer: Optional[str] = None

    def filenames(self, variant: PageVariant) -> Tuple[str, ...]:
        return self.urls

    def page_url(self, index: int, variant: PageVariant) -> str:
        return self.urls[index]


# =============================================================================
# BASE CONNECTOR CLASS
# =============================================================================

class BaseConnector(ABC):
    """
    Abstract base class for catalog providers.

    INHERITANCE:
        MangaDexConnector (native API) and ConsumetConnector (aggregator)
        implement the abstract methods below. Shared behaviour lives here:
        rate limiting, status-code interpretation and page handle -> page
        list conversion.

    Example:
        class MangaDexConnector(BaseConnector):
            id = "mangadex"
            name = "MangaDex"
            rate_limit = 4.0

            def get_details(self, manga_id):
                ...
    """

    # =========================================================================
    # SOURCE CONFIGURATION (Override in subclass)
    # =========================================================================

    id: str = "base"
    name: str = "Base Source"
    base_url: str = ""

    rate_limit: float = 2.0          # Sustained requests/second (0 = off)
    rate_limit_burst: int = 5

    # Catalog listing can be ordered by upstream update time (incremental sync)
    supports_update_order: bool = False
    # Deepest offset+limit the list endpoint will serve, None = unbounded
    max_catalog_offset: Optional[int] = None

    languages: List[str] = ["en"]

    def __init__(self, transport=None):
        # Shared RetryTransport, set by ProviderRegistry
        self.transport = transport

        self._lock = threading.Lock()
        self._tokens = float(self.rate_limit_burst)
        self._last_request = time.monotonic()

    # =========================================================================
    # RATE LIMITING (Token Bucket Algorithm)
    # =========================================================================

    def _wait_for_rate_limit(self) -> None:
        """Block until a request token is available."""
        if self.rate_limit <= 0:
            return
        with self._lock:
            now = time.monotonic()
            elapsed = now - self._last_request
            self._tokens = min(self.rate_limit_burst, self._tokens + elapsed * self.rate_limit)
            if self._tokens < 1:
                time.sleep((1 - self._tokens) / self.rate_limit)
                self._tokens = 1
            self._tokens -= 1
            self._last_request = time.monotonic()

    # =========================================================================
    # REQUEST HELPERS
    # =========================================================================

    def _log(self, msg: str) -> None:
        source_log(msg)

    def _check_response(self, response: requests.Response, what: str) -> None:
        """Translate an upstream status code into the error taxonomy."""
        status = response.status_code
        if 200 <= status < 300:
            return
        if status == 404:
            raise UpstreamNotFound(f"{self.name}: {what} not found", source=self.id, status_code=status)
        if status == 429 or status >= 500:
            raise UpstreamUnavailable(f"{self.name}: {what} returned HTTP {status}",
                                      source=self.id, status_code=status,
                                      retry_after=_retry_after(response) if status == 429 else None)
        raise UpstreamError(f"{self.name}: {what} returned HTTP {status}", source=self.id, status_code=status)

    def _parse_json(self, response: requests.Response, what: str) -> Any:
        """Decode JSON, refusing the HTML error pages some deployments serve."""
        text = response.text or ""
        head = text.lstrip()[:15].lower()
        if head.startswith("<!doctype") or head.startswith("<html"):
            raise UpstreamUnavailable(f"{self.name}: {what} returned HTML instead of JSON", source=self.id)
        try:
            return response.json()
        except ValueError as exc:
            raise UpstreamError(f"{self.name}: {what} returned invalid JSON", source=self.id) from exc

    def _get_json(
        self,
        url: str,
        what: str,
        params: Optional[Dict[str, Any]] = None,
        headers: Optional[Dict[str, str]] = None
    ) -> Any:
        if self.transport is None:
            raise RuntimeError(f"{self.id} connector has no transport")
        self._wait_for_rate_limit()
        response = self.transport.get(url, params=params, headers=headers)
        self._check_response(response, what)
        return self._parse_json(response, what)

    # =========================================================================
    # ABSTRACT METHODS (Must implement in subclass)
    # =========================================================================

    @abstractmethod
    def normalize(self, raw: Dict[str, Any]) -> MangaResult:
        """Turn one upstream manga payload into a canonical MangaResult."""

    @abstractmethod
    def get_details(self, manga_id: str) -> MangaResult:
        """
        Get full details for a manga.

        Raises:
            UpstreamNotFound: unknown id
            UpstreamUnavailable: upstream down or retries exhausted
        """

    @abstractmethod
    def list_chapters(self, manga_id: str, language: str = "en") -> List[ChapterResult]:
        """Readable chapters, ascending."""

    @abstractmethod
    def issue_page_handle(self, chapter_id: str):
        """Fetch a fresh AtHomeHandle/PageListHandle for a chapter."""

    @abstractmethod
    def search(self, query: str, limit: int = 20, offset: int = 0) -> SearchPage:
        """Free-text search against the live upstream."""

    @abstractmethod
    def list_catalog(
        self,
        offset: int,
        limit: int,
        updated_since: Optional[datetime] = None
    ) -> CatalogPage:
        """
        One page of the full catalog, in raw upstream form.

        Ordered by upstream update time (newest first) when
        supports_update_order is True.
        """

    # =========================================================================
    # SHARED BEHAVIOUR
    # =========================================================================

    def enrich_batch(self, records: List[MangaResult]) -> None:
        """Hook for per-batch extras (follower counts etc.) during sync."""
        return None

    def cover_image_url(self, manga_id: str, file_name: str, size: str = DEFAULT_COVER_SIZE) -> Optional[str]:
        """Upstream URL for a stored cover file name. None: no cover host."""
        return None

    def get_chapter_pages(
        self,
        chapter_id: str,
        variant: PageVariant = PageVariant.NORMAL
    ) -> List[PageResult]:
        """Page URLs for a chapter, built from a freshly issued handle."""
        handle = self.issue_page_handle(chapter_id)
        return [
            PageResult(url=handle.page_url(i, variant), index=i, referer=handle.referer)
            for i in range(len(handle.filenames(variant)))
        ]
