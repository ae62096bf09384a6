"""
================================================================================
MangaHook - Search Service
================================================================================
Store-backed search with a live fallback.

Flow:
  1. Narrow candidates in SQL with the scalar filters (status, rating,
     demographic, language, chapter/year ranges), ordered by primary key
  2. Rank in Python (tags, text match, sort, paging) via scoring.rank
  3. Catalog not synced yet and there is query text? Ask the provider's
     live search and rank that page instead

The store is never written from here; only the sync engine writes.
================================================================================
"""

import logging
from typing import List, Optional, Tuple

from sqlalchemy.orm import Session

from sources.base import MangaResult
from sources.errors import UpstreamError

from ..database import SessionFactory, get_db_session
from ..log import log
from ..models import Manga
from .query_parser import ParsedQuery, parse_natural_query
from .scoring import (
    DEFAULT_LIMIT, DEFAULT_PREFERRED_WEIGHT, MAX_LIMIT, SearchFilters, SearchResponse,
    SortKey, SortOrder, TagQuery, rank, validate_page, validate_query
)

logger = logging.getLogger(__name__)


class SearchService:
    """
    Usage:
        service = SearchService(get_provider_registry())
        response = service.search("solo leveling", TagQuery.of(excluded=["horror"]))
        response.to_dict()
    """

    def __init__(
        self,
        registry,
        session_factory: Optional[SessionFactory] = None,
        preferred_weight: float = DEFAULT_PREFERRED_WEIGHT,
        live_fallback: bool = True
    ):
        self.registry = registry
        self.session_factory = session_factory
        self.preferred_weight = preferred_weight
        self.live_fallback = live_fallback

    def search(
        self,
        query_text: Optional[str] = None,
        tag_query: Optional[TagQuery] = None,
        filters: Optional[SearchFilters] = None,
        sort: SortKey = SortKey.RELEVANCE,
        order: SortOrder = SortOrder.DESC,
        limit: int = DEFAULT_LIMIT,
        offset: int = 0,
        source: Optional[str] = None
    ) -> SearchResponse:
        # Reject bad input before touching the database or the network
        validate_page(limit, offset)
        query_text = validate_query(query_text)
        filters = (filters or SearchFilters()).validate()
        if source:
            self.registry.get(source)

        with get_db_session(self.session_factory) as session:
            if self._catalog_empty(session, source) and query_text and self.live_fallback:
                candidates = None
            else:
                candidates = self._load_candidates(session, filters, source)

        if candidates is None:
            candidates = self._live_candidates(query_text, source, limit + offset)

        return rank(
            candidates,
            query_text=query_text,
            tag_query=tag_query,
            filters=filters,
            sort=sort,
            order=order,
            limit=limit,
            offset=offset,
            preferred_weight=self.preferred_weight,
        )

    def smart_search(
        self,
        query: str,
        filters: Optional[SearchFilters] = None,
        sort: SortKey = SortKey.RELEVANCE,
        order: SortOrder = SortOrder.DESC,
        limit: int = DEFAULT_LIMIT,
        offset: int = 0
    ) -> Tuple[ParsedQuery, SearchResponse]:
        """Parse a natural language query, then search with what it yielded."""
        parsed = parse_natural_query(validate_query(query))
        response = self.search(
            parsed.text,
            parsed.to_tag_query(),
            parsed.to_filters(filters),
            sort=sort,
            order=order,
            limit=limit,
            offset=offset,
        )
        return parsed, response

    # =========================================================================
    # CANDIDATES
    # =========================================================================

    def _catalog_empty(self, session: Session, source: Optional[str]) -> bool:
        query = session.query(Manga.id)
        if source:
            query = query.filter(Manga.source == source)
        return query.first() is None

    def _load_candidates(
        self,
        session: Session,
        filters: SearchFilters,
        source: Optional[str]
    ) -> List[MangaResult]:
        query = session.query(Manga)
        if source:
            query = query.filter(Manga.source == source)
        if filters.statuses:
            query = query.filter(Manga.status.in_(sorted(filters.statuses, key=str)))
        if filters.content_ratings:
            query = query.filter(Manga.content_rating.in_(sorted(filters.content_ratings, key=str)))
        if filters.demographics:
            query = query.filter(Manga.demographic.in_(sorted(filters.demographics, key=str)))
        if filters.languages:
            query = query.filter(Manga.original_language.in_(sorted(filters.languages, key=str)))
        if filters.min_chapters is not None:
            query = query.filter(Manga.total_chapters >= filters.min_chapters)
        if filters.max_chapters is not None:
            query = query.filter(Manga.total_chapters <= filters.max_chapters)
        if filters.min_year is not None:
            query = query.filter(Manga.year >= filters.min_year)
        if filters.max_year is not None:
            query = query.filter(Manga.year <= filters.max_year)
        return [manga.to_result() for manga in query.order_by(Manga.id)]

    def _live_candidates(self, query_text: str, source: Optional[str], wanted: int) -> List[MangaResult]:
        provider = self.registry.get(source or self.registry.native_source)
        log(f"🔎 Catalog empty, searching {provider.name} live for '{query_text}'")
        try:
            page = provider.search(query_text, limit=min(max(wanted, DEFAULT_LIMIT), MAX_LIMIT))
        except UpstreamError as exc:
            logger.warning("Live search on %s failed: %s", provider.id, exc)
            raise
        return page.results
