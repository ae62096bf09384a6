"""
================================================================================
MangaHook - Search Scoring
================================================================================
Pure ranking over canonical records. No database, no network, no clock.

CANDIDATES:
  every record that passes all scalar filters, holds every required tag,
  holds no excluded tag and, when there is query text, matches it

SCORE:
  base (text match strength 0..1, or 1.0 without text)
  + matched preferred tags x preferred_weight

ORDER:
  score desc -> sort key (asc/desc, None last) -> insertion order

Example:
  required={action}, preferred={romance, comedy}, excluded={horror}
    A [action, romance, comedy] -> 1.0 + 2 x 0.5 = 2.0
    B [action, horror]          -> excluded
    C [action]                  -> 1.0
  => [A, C], total 2
================================================================================
"""

import math
import os
import re
from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, FrozenSet, Iterable, List, Optional, Sequence, Tuple

from rapidfuzz import fuzz

from sources.base import ContentRating, Demographic, MangaResult, MangaStatus
from sources.errors import ValidationError

DEFAULT_LIMIT = 20
MAX_LIMIT = 100
MAX_QUERY_LENGTH = 200
DEFAULT_PREFERRED_WEIGHT = float(os.environ.get("SEARCH_PREFERRED_WEIGHT", "0.5"))

# Below this a fuzzy title hit is noise ("one" vs "one punch man" is fine, "one" vs "bone" is not)
FUZZY_THRESHOLD = 75.0
# A description-only hit is worth something, but less than any title hit
DESCRIPTION_FLOOR = 0.3


class SortKey(Enum):
    RELEVANCE = "relevance"
    POPULARITY = "popularity"
    LATEST = "latest"
    TITLE = "title"
    YEAR = "year"


class SortOrder(Enum):
    ASC = "asc"
    DESC = "desc"


def _refs(values: Optional[Iterable[str]]) -> FrozenSet[str]:
    return frozenset(v.strip() for v in (values or ()) if v and v.strip())


@dataclass(frozen=True)
class TagQuery:
    """Tag references are tag ids or case-insensitive tag names."""
    required: FrozenSet[str] = frozenset()
    preferred: FrozenSet[str] = frozenset()
    excluded: FrozenSet[str] = frozenset()

    @classmethod
    def of(cls, required=None, preferred=None, excluded=None) -> "TagQuery":
        return cls(_refs(required), _refs(preferred), _refs(excluded))

    def is_empty(self) -> bool:
        return not (self.required or self.preferred or self.excluded)


@dataclass
class SearchFilters:
    statuses: FrozenSet[MangaStatus] = frozenset()
    content_ratings: FrozenSet[ContentRating] = frozenset()
    demographics: FrozenSet[Demographic] = frozenset()
    languages: FrozenSet[str] = frozenset()
    min_chapters: Optional[int] = None
    max_chapters: Optional[int] = None
    min_year: Optional[int] = None
    max_year: Optional[int] = None

    def validate(self) -> "SearchFilters":
        for name in ("min_chapters", "max_chapters", "min_year", "max_year"):
            value = getattr(self, name)
            if value is not None and value < 0:
                raise ValidationError(f"{name} must be >= 0")
        if self.min_chapters is not None and self.max_chapters is not None \
                and self.min_chapters > self.max_chapters:
            raise ValidationError("min_chapters is greater than max_chapters")
        if self.min_year is not None and self.max_year is not None and self.min_year > self.max_year:
            raise ValidationError("min_year is greater than max_year")
        return self

    def accepts(self, record: MangaResult) -> bool:
        if self.statuses and record.status not in self.statuses:
            return False
        if self.content_ratings and record.content_rating not in self.content_ratings:
            return False
        if self.demographics and record.demographic not in self.demographics:
            return False
        if self.languages and (record.original_language or "").lower() not in self.languages:
            return False
        if not _in_range(record.total_chapters, self.min_chapters, self.max_chapters):
            return False
        if not _in_range(record.year, self.min_year, self.max_year):
            return False
        return True


def _in_range(value: Optional[int], low: Optional[int], high: Optional[int]) -> bool:
    if low is None and high is None:
        return True
    if value is None:
        return False
    if low is not None and value < low:
        return False
    if high is not None and value > high:
        return False
    return True


@dataclass
class SearchResponse:
    results: List[Tuple[MangaResult, float]] = field(default_factory=list)
    total: int = 0
    limit: int = DEFAULT_LIMIT
    offset: int = 0
    total_pages: int = 0

    def to_dict(self) -> dict:
        items = []
        for record, score in self.results:
            data = record.to_dict()
            data["score"] = round(score, 4)
            items.append(data)
        return {
            "results": items,
            "total": self.total,
            "limit": self.limit,
            "offset": self.offset,
            "total_pages": self.total_pages,
        }


# =============================================================================
# VALIDATION
# =============================================================================

def validate_page(limit: int, offset: int) -> None:
    if limit < 0 or offset < 0:
        raise ValidationError("limit and offset must be >= 0")
    if limit > MAX_LIMIT:
        raise ValidationError(f"limit must be <= {MAX_LIMIT}")


def validate_query(query: Optional[str]) -> str:
    query = (query or "").strip()
    if len(query) > MAX_QUERY_LENGTH:
        raise ValidationError(f"query longer than {MAX_QUERY_LENGTH} characters")
    return query


def total_pages(total: int, limit: int) -> int:
    if limit <= 0:
        return 0
    return math.ceil(total / limit)


# =============================================================================
# TEXT MATCHING
# =============================================================================

def normalize_text(text: Optional[str]) -> str:
    """Lowercase, strip punctuation, collapse whitespace."""
    text = (text or "").lower()
    text = re.sub(r"[^\w\s]", " ", text)
    return re.sub(r"\s+", " ", text).strip()


def text_match_strength(query: str, record: MangaResult) -> float:
    """
    How well free text matches a record, 0..1 (0 = no match).

    Exact title 1.0, title containing the query 0.9, otherwise the best
    rapidfuzz score over title and alt titles above FUZZY_THRESHOLD. A hit
    in the description alone is worth DESCRIPTION_FLOOR.
    """
    needle = normalize_text(query)
    if not needle:
        return 1.0

    best = 0.0
    for title in [record.title] + list(record.alt_titles):
        hay = normalize_text(title)
        if not hay:
            continue
        if hay == needle:
            return 1.0
        if needle in hay:
            best = max(best, 0.9)
            continue
        ratio = max(fuzz.token_set_ratio(needle, hay), fuzz.ratio(needle, hay))
        if ratio >= FUZZY_THRESHOLD:
            best = max(best, 0.85 * ratio / 100.0)

    if best < DESCRIPTION_FLOOR and needle in normalize_text(record.description):
        best = DESCRIPTION_FLOOR
    return best


# =============================================================================
# RANKING
# =============================================================================

def _matches(keys: set, ref: str) -> bool:
    return ref in keys or ref.lower() in keys


def score_candidate(
    record: MangaResult,
    query_text: str,
    tag_query: TagQuery,
    filters: SearchFilters,
    preferred_weight: float = DEFAULT_PREFERRED_WEIGHT
) -> Optional[float]:
    """Score one record, or None when it is not a candidate."""
    if not filters.accepts(record):
        return None

    keys = record.tag_keys()
    if any(_matches(keys, ref) for ref in tag_query.excluded):
        return None
    if not all(_matches(keys, ref) for ref in tag_query.required):
        return None

    base = 1.0
    if query_text:
        base = text_match_strength(query_text, record)
        if base <= 0:
            return None

    bonus = sum(1 for ref in tag_query.preferred if _matches(keys, ref))
    return base + bonus * preferred_weight


def _sort_fields(sort: SortKey) -> List[Callable[[MangaResult], object]]:
    if sort is SortKey.POPULARITY:
        return [lambda r: r.followed_count]
    if sort is SortKey.LATEST:
        return [lambda r: r.source_updated_at]
    if sort is SortKey.TITLE:
        return [lambda r: r.title.lower() if r.title else None]
    if sort is SortKey.YEAR:
        return [lambda r: r.year]
    return [lambda r: r.followed_count, lambda r: r.source_updated_at]


def _order(scored: List[Tuple[MangaResult, float]], sort: SortKey, order: SortOrder) -> List[Tuple[MangaResult, float]]:
    # Stable sorts, least significant first; input order is the final tiebreak
    items = list(scored)
    descending = order is SortOrder.DESC
    for extract in reversed(_sort_fields(sort)):
        present = [item for item in items if extract(item[0]) is not None]
        missing = [item for item in items if extract(item[0]) is None]
        present.sort(key=lambda item: extract(item[0]), reverse=descending)
        items = present + missing
    items.sort(key=lambda item: -item[1])
    return items


def rank(
    candidates: Sequence[MangaResult],
    query_text: Optional[str] = None,
    tag_query: Optional[TagQuery] = None,
    filters: Optional[SearchFilters] = None,
    sort: SortKey = SortKey.RELEVANCE,
    order: SortOrder = SortOrder.DESC,
    limit: int = DEFAULT_LIMIT,
    offset: int = 0,
    preferred_weight: float = DEFAULT_PREFERRED_WEIGHT
) -> SearchResponse:
    """
    Filter, score, order and page `candidates`.

    `candidates` must be in insertion order (store rows by primary key).
    """
    validate_page(limit, offset)
    query_text = validate_query(query_text)
    tag_query = tag_query or TagQuery()
    filters = (filters or SearchFilters()).validate()

    scored = []
    for record in candidates:
        score = score_candidate(record, query_text, tag_query, filters, preferred_weight)
        if score is not None:
            scored.append((record, score))

    ordered = _order(scored, sort, order)
    total = len(ordered)
    page = ordered[offset:offset + limit] if limit else []
    return SearchResponse(
        results=page,
        total=total,
        limit=limit,
        offset=offset,
        total_pages=total_pages(total, limit),
    )
