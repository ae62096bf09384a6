"""
================================================================================
MangaHook - Consumet Connector
================================================================================
Aggregator provider backed by a Consumet API deployment.

Consumet fronts several scanlation sites ("sub-providers"). Their ids are
only unique per sub-provider, so this connector namespaces them as
`provider:id` (e.g. `asurascans:solo-leveling`). The full composite id seen
by the app is therefore `consumet:asurascans:solo-leveling`.

QUIRKS:
  - No update timestamps: incremental sync cannot stop early here
  - Metadata is thin, so status/rating/language are inferred from text
  - Some deployments answer errors with an HTML page and status 200
================================================================================
"""

import os
import re
import time
from datetime import datetime
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import quote

from .base import (
    BaseConnector, CatalogPage, ChapterResult, ContentRating, MangaResult,
    MangaStatus, PageListHandle, SearchPage, TagGroup, TagResult
)
from .errors import UpstreamError, ValidationError


PROVIDERS = ["asurascans", "reaperscans", "flamescans", "mangakakalot", "mangapark"]

_FORMAT_HINTS = ("webtoon", "full color", "long strip", "4-koma")
_CONTENT_HINTS = ("mature", "adult", "gore", "violence", "sexual")
_THEME_HINTS = (
    "isekai", "reincarnation", "time travel", "video game",
    "virtual reality", "school", "martial arts", "cultivation",
)
_CHINESE_HINTS = ("manhua", "chinese", "cultivation", "wuxia", "xianxia", "martial arts")
_KOREAN_HINTS = ("manhwa", "korean", "webtoon", "web comic", "full color")

_YEAR_RE = re.compile(r"\d{4}")


# =============================================================================
# INFERENCE HELPERS
# =============================================================================

def infer_status(value: Optional[str]) -> MangaStatus:
    text = (value or "").lower()
    if "ongoing" in text or "publishing" in text:
        return MangaStatus.ONGOING
    if "completed" in text or "finished" in text:
        return MangaStatus.COMPLETED
    if "hiatus" in text:
        return MangaStatus.HIATUS
    if "cancelled" in text or "canceled" in text:
        return MangaStatus.CANCELLED
    return MangaStatus.UNKNOWN


def infer_content_rating(genres: List[str]) -> ContentRating:
    lowered = [g.lower() for g in genres]
    if any("hentai" in g or "pornographic" in g for g in lowered):
        return ContentRating.PORNOGRAPHIC
    if any("erotica" in g or "smut" in g for g in lowered):
        return ContentRating.EROTICA
    if any("ecchi" in g or "mature" in g or "adult" in g for g in lowered):
        return ContentRating.SUGGESTIVE
    return ContentRating.SAFE


def infer_tag_group(genre: str) -> TagGroup:
    lowered = genre.lower()
    if any(hint in lowered for hint in _FORMAT_HINTS):
        return TagGroup.FORMAT
    if any(hint in lowered for hint in _CONTENT_HINTS):
        return TagGroup.CONTENT
    if any(hint in lowered for hint in _THEME_HINTS):
        return TagGroup.THEME
    return TagGroup.GENRE


def infer_language(genres: List[str], title: str) -> str:
    lowered = [g.lower() for g in genres]
    title = (title or "").lower()
    if any(h in g for g in lowered for h in _CHINESE_HINTS) or "manhua" in title:
        return "zh"
    # Aggregator catalogs are overwhelmingly Korean webtoons
    return "ko"


def parse_year(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        return int(value) if 1900 <= value <= 2100 else None
    match = _YEAR_RE.search(str(value))
    return int(match.group(0)) if match else None


def genre_slug(genre: str) -> str:
    return "genre-" + re.sub(r"\s+", "-", genre.strip().lower())


def estimate_from_chapters(chapters: List[Dict[str, Any]]) -> Optional[int]:
    """Highest chapter number, or the chapter count when numbers are missing."""
    if not chapters:
        return None
    best = 0.0
    for chapter in chapters:
        try:
            number = float(chapter.get("chapterNumber") or 0)
        except (TypeError, ValueError):
            continue
        best = max(best, number)
    return int(best) if best > 0 else len(chapters)


# =============================================================================
# CONNECTOR
# =============================================================================

class ConsumetConnector(BaseConnector):
    """Consumet aggregator connector (fallback provider)."""

    id = "consumet"
    name = "Consumet"

    rate_limit = 3.0
    rate_limit_burst = 5

    supports_update_order = False

    # Consumet serves a fixed number of results per search page
    UPSTREAM_PAGE_SIZE = 20

    def __init__(self, transport=None):
        super().__init__(transport)
        self.base_url = os.environ.get("CONSUMET_API_URL", "https://api.consumet.org").rstrip("/")
        self.browse_query = os.environ.get("CONSUMET_BROWSE_QUERY", "a")
        self.providers = list(PROVIDERS)

    # =========================================================================
    # ID HELPERS
    # =========================================================================

    def split_id(self, value: str) -> Tuple[str, str]:
        """'asurascans:solo-leveling' -> ('asurascans', 'solo-leveling')."""
        if not value:
            raise ValidationError("Missing Consumet id")
        prefix, sep, rest = value.partition(":")
        if sep and prefix in self.providers:
            return prefix, rest
        return self.providers[0], value

    # =========================================================================
    # REQUEST HELPERS
    # =========================================================================

    def _search_page(self, provider: str, query: str, page: int) -> Dict[str, Any]:
        url = f"{self.base_url}/manga/{provider}/{quote(query, safe='')}"
        return self._get_json(url, what=f"{provider} search", params={"page": page})

    def _collect(self, provider: str, query: str, offset: int, limit: int) -> Tuple[List[Any], bool]:
        """
        Walk fixed-size upstream pages until `limit` results past `offset`
        are in hand. Returns (items, more_available).
        """
        page = offset // self.UPSTREAM_PAGE_SIZE + 1
        skip = offset % self.UPSTREAM_PAGE_SIZE
        items: List[Any] = []
        more = False
        while len(items) < limit:
            data = self._search_page(provider, query, page)
            results = data.get("results") or []
            # Non-dict entries keep their slot so offsets stay aligned
            items.extend(dict(r, provider=provider) if isinstance(r, dict) else r for r in results[skip:])
            skip = 0
            more = bool(results) and bool(data.get("hasNextPage"))
            if not more:
                break
            page += 1
        return items[:limit], more or len(items) > limit

    def _info(self, provider: str, native_id: str) -> Dict[str, Any]:
        url = f"{self.base_url}/manga/{provider}/info"
        data = self._get_json(url, what=f"{provider} info", params={"id": native_id})
        if not isinstance(data, dict) or not data.get("id"):
            raise UpstreamError(f"Consumet: malformed info for {provider}:{native_id}", source=self.id)
        return data

    # =========================================================================
    # PARSING
    # =========================================================================

    def normalize(self, raw: Dict[str, Any]) -> MangaResult:
        """Parse a Consumet search result or info payload."""
        native_id = raw.get("id")
        if not native_id:
            raise ValueError("Consumet record has no id")
        provider = raw.get("provider") or self.providers[0]
        genres = [g for g in raw.get("genres") or [] if isinstance(g, str) and g.strip()]
        title = raw.get("title") or "Untitled"
        if isinstance(title, dict):
            title = next((t for t in title.values() if t), "Untitled")

        chapters = raw.get("chapters")
        total = estimate_from_chapters(chapters) if isinstance(chapters, list) else None

        alt_titles: List[str] = []
        for alt in raw.get("altTitles") or []:
            if isinstance(alt, str) and alt.strip() and alt.strip() not in alt_titles:
                alt_titles.append(alt.strip())

        return MangaResult(
            id=f"{provider}:{native_id}",
            source=self.id,
            title=title,
            alt_titles=alt_titles,
            description=raw.get("description") or None,
            status=infer_status(raw.get("status")),
            content_rating=infer_content_rating(genres),
            original_language=infer_language(genres, title),
            last_chapter=str(total) if total else None,
            total_chapters=total,
            cover_file=raw.get("image") or None,
            year=parse_year(raw.get("releaseDate")),
            tags=[
                TagResult(id=genre_slug(g), name=g.strip(), group=infer_tag_group(g), source=self.id)
                for g in genres
            ],
        )

    def _parse_chapter(self, provider: str, data: Dict[str, Any]) -> ChapterResult:
        number = data.get("chapterNumber")
        volume = data.get("volumeNumber")
        return ChapterResult(
            id=f"{provider}:{data.get('id', '')}",
            chapter=str(number) if number is not None else None,
            volume=str(volume) if volume is not None else None,
            title=data.get("title") or None,
            published=data.get("releaseDate"),
            source=self.id
        )

    # =========================================================================
    # PUBLIC API METHODS
    # =========================================================================

    def get_details(self, manga_id: str) -> MangaResult:
        provider, native_id = self.split_id(manga_id)
        info = self._info(provider, native_id)
        return self.normalize(dict(info, provider=provider))

    def list_chapters(self, manga_id: str, language: str = "en") -> List[ChapterResult]:
        provider, native_id = self.split_id(manga_id)
        info = self._info(provider, native_id)
        chapters = [self._parse_chapter(provider, c) for c in info.get("chapters") or [] if c.get("id")]
        self._log(f"📖 Consumet/{provider}: {len(chapters)} chapters for {native_id}")
        return chapters

    def issue_page_handle(self, chapter_id: str) -> PageListHandle:
        provider, native_id = self.split_id(chapter_id)
        url = f"{self.base_url}/manga/{provider}/read"
        data = self._get_json(url, what=f"{provider} read", params={"chapterId": native_id})
        pages = data.get("pages") if isinstance(data, dict) else data
        if not isinstance(pages, list):
            raise UpstreamError(f"Consumet: malformed page list for {chapter_id}", source=self.id)

        pages = sorted((p for p in pages if p.get("img")), key=lambda p: p.get("page") or 0)
        referer = None
        if pages:
            header = pages[0].get("headerForImage")
            referer = header.get("Referer") if isinstance(header, dict) else header
        return PageListHandle(
            urls=tuple(p["img"] for p in pages),
            timestamp=time.time(),
            referer=referer or None
        )

    def search(self, query: str, limit: int = 20, offset: int = 0) -> SearchPage:
        """
        Search sub-providers in priority order; first one that answers wins.

        Upstream pages hold 20 results; as many are read as `limit` needs.
        Consumet only reports hasNextPage, so `total` is an estimate.
        """
        last_error: Optional[UpstreamError] = None
        for provider in self.providers:
            try:
                raw, more = self._collect(provider, query or self.browse_query, offset, limit)
            except UpstreamError as exc:
                self._log(f"⚠️ Consumet/{provider} search failed: {exc}")
                last_error = exc
                continue
            results = [self.normalize(r) for r in raw if isinstance(r, dict) and r.get("id")]
            total = offset + len(results)
            if more:
                total += self.UPSTREAM_PAGE_SIZE
            return SearchPage(results=results, total=total)
        if last_error is not None:
            raise last_error
        return SearchPage(results=[], total=0)

    def list_catalog(
        self,
        offset: int,
        limit: int,
        updated_since: Optional[datetime] = None
    ) -> CatalogPage:
        """Browse the first sub-provider with a broad seed query."""
        items, _ = self._collect(self.providers[0], self.browse_query, offset, limit)
        return CatalogPage(items=items, total=None)
