"""
================================================================================
MangaHook - MangaDex Connector
================================================================================
MangaDex API v5 connector (the native provider).

MANGADEX API RULES:
  - ~5 requests/second per IP at the load balancer; we stay under it
  - User-Agent MUST identify the app (no browser spoofing)
  - Page images come from /at-home/server/{chapter}; those base URLs expire,
    never persist them
  - List endpoints refuse offset + limit > 10000

ENDPOINTS USED:
  /manga                  catalog listing (sync) and title search
  /manga/{id}             details
  /chapter                chapter feed
  /at-home/server/{id}    page handle
  /statistics/manga       follower counts

Covers come from uploads.mangadex.org and reach clients via /api/cover.
================================================================================
"""

import os
import time
from datetime import datetime
from typing import Any, Dict, List, Optional

from .base import (
    AtHomeHandle, BaseConnector, CatalogPage, ChapterResult, MangaResult,
    SearchPage, TagResult
)
from .errors import UpstreamError, ValidationError
from .normalize import (
    estimate_total_chapters, find_relationship, flatten_alt_titles,
    map_content_rating, map_demographic, map_status, map_tag_group,
    parse_int, parse_timestamp, preferred_text
)


class MangaDexConnector(BaseConnector):
    """MangaDex API connector."""

    # =========================================================================
    # CONFIGURATION
    # =========================================================================

    id = "mangadex"
    name = "MangaDex"
    base_url = "https://api.mangadex.org"

    rate_limit = 4.0
    rate_limit_burst = 5

    supports_update_order = True
    max_catalog_offset = 10000

    languages = ["en", "ja", "ko", "zh", "es", "fr", "de", "it", "pt-br", "ru"]

    # Sync wants the whole catalog, not just the SFW slice
    CONTENT_RATINGS = ["safe", "suggestive", "erotica", "pornographic"]

    CHAPTER_PAGE_SIZE = 100

    covers_url = "https://uploads.mangadex.org/covers"
    # Thumbnails are {file}.256.jpg / {file}.512.jpg; "original" is the file itself
    COVER_SIZES = ("256", "512", "original")

    def __init__(self, transport=None):
        super().__init__(transport)
        self.fetch_statistics = os.environ.get(
            "SYNC_FETCH_STATISTICS", "true"
        ).lower() in ("1", "true", "yes", "on")

    # =========================================================================
    # REQUEST HELPERS
    # =========================================================================

    def _request(self, endpoint: str, params: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        return self._get_json(
            f"{self.base_url}{endpoint}",
            what=endpoint,
            params=params,
            headers={"Accept": "application/json"}
        )

    # =========================================================================
    # PARSING HELPERS
    # =========================================================================

    def _parse_tag(self, tag: Dict[str, Any]) -> TagResult:
        attrs = tag.get("attributes")
        if not isinstance(attrs, dict):
            attrs = {}
        return TagResult(
            id=tag.get("id", ""),
            name=preferred_text(attrs.get("name"), fallback="Unknown"),
            group=map_tag_group(attrs.get("group")),
            source=self.id
        )

    def normalize(self, raw: Dict[str, Any]) -> MangaResult:
        """Parse MangaDex manga data into a canonical MangaResult."""
        if not isinstance(raw, dict):
            raise ValueError(f"MangaDex record is not an object: {type(raw).__name__}")
        manga_id = raw.get("id")
        if not manga_id:
            raise ValueError("MangaDex record has no id")

        attrs = raw.get("attributes")
        if not isinstance(attrs, dict):
            attrs = {}
        tags = attrs.get("tags")
        if not isinstance(tags, list):
            tags = []
        cover = find_relationship(raw.get("relationships"), "cover_art")
        last_chapter = attrs.get("lastChapter") or None

        return MangaResult(
            id=manga_id,
            source=self.id,
            title=preferred_text(attrs.get("title"), fallback="Untitled"),
            alt_titles=flatten_alt_titles(attrs.get("altTitles")),
            description=preferred_text(attrs.get("description"), fallback=None) or None,
            status=map_status(attrs.get("status")),
            content_rating=map_content_rating(attrs.get("contentRating")),
            demographic=map_demographic(attrs.get("publicationDemographic")),
            original_language=attrs.get("originalLanguage"),
            last_chapter=last_chapter,
            last_volume=attrs.get("lastVolume") or None,
            total_chapters=estimate_total_chapters(last_chapter),
            cover_art_id=cover.get("id") if cover else None,
            cover_file=(cover.get("attributes") or {}).get("fileName") if cover else None,
            year=parse_int(attrs.get("year")),
            source_updated_at=parse_timestamp(attrs.get("updatedAt")),
            tags=[self._parse_tag(t) for t in tags if isinstance(t, dict) and t.get("id")],
        )

    def _parse_chapter(self, data: Dict[str, Any]) -> ChapterResult:
        attrs = data.get("attributes") or {}
        group = find_relationship(data.get("relationships"), "scanlation_group")
        return ChapterResult(
            id=data.get("id", ""),
            chapter=attrs.get("chapter"),
            title=attrs.get("title"),
            volume=attrs.get("volume"),
            language=attrs.get("translatedLanguage") or "en",
            pages=attrs.get("pages") or 0,
            scanlator=(group.get("attributes") or {}).get("name") if group else None,
            published=attrs.get("publishAt"),
            source=self.id
        )

    # =========================================================================
    # PUBLIC API METHODS
    # =========================================================================

    def get_details(self, manga_id: str) -> MangaResult:
        if not manga_id:
            raise ValidationError("Missing manga id")
        data = self._request(f"/manga/{manga_id}", {"includes[]": ["cover_art", "author", "artist"]})
        if not isinstance(data.get("data"), dict):
            raise UpstreamError(f"MangaDex: malformed details for {manga_id}", source=self.id)
        return self.normalize(data["data"])

    def list_chapters(self, manga_id: str, language: str = "en") -> List[ChapterResult]:
        """
        Readable chapters for a manga, ascending.

        The feed is paginated 100 at a time. Chapters hosted off-site
        (externalUrl set) have no pages on the at-home tier and are dropped.
        """
        if not manga_id:
            raise ValidationError("Missing manga id")

        chapters: List[ChapterResult] = []
        offset = 0
        while True:
            params = {
                "manga": manga_id,
                "translatedLanguage[]": [language],
                "limit": self.CHAPTER_PAGE_SIZE,
                "offset": offset,
                "order[chapter]": "asc",
                "includes[]": ["scanlation_group"],
                "contentRating[]": self.CONTENT_RATINGS,
            }
            data = self._request("/chapter", params)
            batch = data.get("data") or []
            for item in batch:
                if (item.get("attributes") or {}).get("externalUrl"):
                    continue
                chapters.append(self._parse_chapter(item))

            total = data.get("total") or 0
            offset += len(batch)
            if not batch or offset >= total or len(batch) < self.CHAPTER_PAGE_SIZE:
                break

        self._log(f"📖 MangaDex: {len(chapters)} chapters for {manga_id}")
        return chapters

    def issue_page_handle(self, chapter_id: str) -> AtHomeHandle:
        """Ask the at-home tier which image server to use for a chapter."""
        if not chapter_id:
            raise ValidationError("Missing chapter id")
        data = self._request(f"/at-home/server/{chapter_id}")
        chapter = data.get("chapter") or {}
        if not data.get("baseUrl") or not chapter.get("hash"):
            raise UpstreamError(f"MangaDex: malformed at-home response for {chapter_id}", source=self.id)
        return AtHomeHandle(
            base_url=data["baseUrl"].rstrip("/"),
            hash=chapter["hash"],
            data=tuple(chapter.get("data") or ()),
            data_saver=tuple(chapter.get("dataSaver") or ()),
            timestamp=time.time()
        )

    def cover_image_url(self, manga_id: str, file_name: str, size: str = "256") -> str:
        if size not in self.COVER_SIZES:
            raise ValidationError(f"Invalid cover size: {size!r}")
        suffix = "" if size == "original" else f".{size}.jpg"
        return f"{self.covers_url}/{manga_id}/{file_name}{suffix}"

    def search(self, query: str, limit: int = 20, offset: int = 0) -> SearchPage:
        """Title search against the live API."""
        params = {
            "limit": limit,
            "offset": offset,
            "includes[]": ["cover_art"],
            "contentRating[]": self.CONTENT_RATINGS,
            "order[relevance]": "desc",
        }
        if query:
            params["title"] = query
        data = self._request("/manga", params)
        results = [self.normalize(m) for m in data.get("data") or [] if m.get("id")]
        self._log(f"🔍 MangaDex search '{query}': {len(results)} results")
        return SearchPage(results=results, total=int(data.get("total") or len(results)))

    def list_catalog(
        self,
        offset: int,
        limit: int,
        updated_since: Optional[datetime] = None
    ) -> CatalogPage:
        params = {
            "limit": limit,
            "offset": offset,
            "includes[]": ["cover_art"],
            "order[updatedAt]": "desc",
            "contentRating[]": self.CONTENT_RATINGS,
        }
        if updated_since is not None:
            # MangaDex rejects fractional seconds and offsets here
            params["updatedAtSince"] = updated_since.strftime("%Y-%m-%dT%H:%M:%S")
        data = self._request("/manga", params)
        return CatalogPage(items=list(data.get("data") or []), total=data.get("total"))

    # =========================================================================
    # STATISTICS
    # =========================================================================

    def fetch_follow_counts(self, manga_ids: List[str]) -> Dict[str, int]:
        """Follower counts for up to 100 manga in one request."""
        if not manga_ids:
            return {}
        data = self._request("/statistics/manga", {"manga[]": list(manga_ids)})
        counts = {}
        for manga_id, stats in (data.get("statistics") or {}).items():
            follows = parse_int((stats or {}).get("follows"))
            if follows is not None:
                counts[manga_id] = follows
        return counts

    def enrich_batch(self, records: List[MangaResult]) -> None:
        """Fill followed_count for a sync batch. Best effort."""
        if not self.fetch_statistics or not records:
            return
        try:
            counts = self.fetch_follow_counts([r.id for r in records])
        except UpstreamError as exc:
            self._log(f"⚠️ MangaDex statistics unavailable, keeping stored counts: {exc}")
            return
        for record in records:
            if record.id in counts:
                record.followed_count = counts[record.id]
