"""Search API Blueprint.

Tag-weighted search over the synced catalog, plus natural language search.
"""
from __future__ import annotations

from typing import Any, Dict, Mapping

from flask import Blueprint, jsonify, request

from sources.base import ContentRating, Demographic, MangaStatus
from mangahook_app.extensions import get_services
from mangahook_app.log import log
from mangahook_app.rate_limit import limit_heavy, limit_medium
from mangahook_app.search.scoring import (
    DEFAULT_LIMIT, MAX_QUERY_LENGTH, SearchFilters, SortKey, SortOrder, TagQuery
)
from .validators import (
    coerce_list, parse_enum, parse_enum_set, parse_int, sanitize_string, validate_source_id
)

search_bp = Blueprint('search_api', __name__, url_prefix='/api/search')

# Without an explicit rating filter, adult content stays out of results
DEFAULT_CONTENT_RATINGS = frozenset([ContentRating.SAFE, ContentRating.SUGGESTIVE])


# ---------------------------------------------------------------------------
# Helpers
# ---------------------------------------------------------------------------

def _read_query(params: Mapping[str, Any]) -> str:
    raw = params.get('q', params.get('query'))
    # Keep one extra character so overlong queries are rejected, not truncated
    return sanitize_string(raw, max_length=MAX_QUERY_LENGTH + 1).strip()


def _read_filters(params: Mapping[str, Any]) -> SearchFilters:
    ratings = parse_enum_set(ContentRating, params.get('contentRating'), 'contentRating')
    return SearchFilters(
        statuses=parse_enum_set(MangaStatus, params.get('status'), 'status'),
        content_ratings=ratings or DEFAULT_CONTENT_RATINGS,
        demographics=parse_enum_set(Demographic, params.get('demographic'), 'demographic'),
        languages=frozenset(lang.lower() for lang in coerce_list(params.get('language'))),
        min_chapters=parse_int(params.get('minChapters'), 'minChapters'),
        max_chapters=parse_int(params.get('maxChapters'), 'maxChapters'),
        min_year=parse_int(params.get('minYear'), 'minYear'),
        max_year=parse_int(params.get('maxYear'), 'maxYear'),
    )


def _read_sort(params: Mapping[str, Any]):
    sort = parse_enum(SortKey, params.get('sortBy') or SortKey.RELEVANCE.value, 'sortBy')
    order = parse_enum(SortOrder, params.get('sortOrder') or SortOrder.DESC.value, 'sortOrder')
    return sort, order


def _read_page(params: Mapping[str, Any]):
    limit = parse_int(params.get('limit'), 'limit', DEFAULT_LIMIT)
    offset = parse_int(params.get('offset'), 'offset', 0)
    return limit, offset


def _params() -> Dict[str, Any]:
    if request.method == 'POST':
        data = request.get_json(silent=True)
        return data if isinstance(data, dict) else {}
    return request.args.to_dict(flat=True)


# ---------------------------------------------------------------------------
# Routes
# ---------------------------------------------------------------------------

@search_bp.route('', methods=['GET', 'POST'])
@limit_medium
def search():
    """
    Search the catalog.

    Query string (GET) or JSON body (POST):
    {
        "q": str,
        "includedTags": [str],    # tag ids or names, AND
        "preferredTags": [str],   # +weight per match
        "excludedTags": [str],    # hard filter
        "status": [str], "contentRating": [str], "demographic": [str],
        "language": [str],
        "minChapters": int, "maxChapters": int, "minYear": int, "maxYear": int,
        "sortBy": "relevance|popularity|latest|title|year",
        "sortOrder": "asc|desc",
        "limit": int, "offset": int,
        "source": str
    }
    Lists may be comma separated strings in the query string.
    """
    services = get_services()
    params = _params()

    tag_query = TagQuery.of(
        coerce_list(params.get('includedTags')),
        coerce_list(params.get('preferredTags')),
        coerce_list(params.get('excludedTags')),
    )
    sort, order = _read_sort(params)
    limit, offset = _read_page(params)

    response = services.search.search(
        _read_query(params),
        tag_query,
        _read_filters(params),
        sort=sort,
        order=order,
        limit=limit,
        offset=offset,
        source=validate_source_id(services.registry, params.get('source')),
    )
    return jsonify(response.to_dict())


@search_bp.route('/smart', methods=['POST'])
@limit_heavy
def smart_search():
    """
    Natural language search.

    Payload: {"query": "completed manhwa 100+ chapters", "limit": 20, "offset": 0}
    The parsed interpretation is returned under "parsed".
    """
    services = get_services()
    params = _params()
    query = _read_query(params)
    limit, offset = _read_page(params)
    sort, order = _read_sort(params)

    parsed, response = services.search.smart_search(
        query,
        SearchFilters(content_ratings=DEFAULT_CONTENT_RATINGS),
        sort=sort,
        order=order,
        limit=limit,
        offset=offset,
    )
    log(f"🧠 Smart search '{query}' -> {response.total} results")

    payload = response.to_dict()
    payload['parsed'] = parsed.to_dict()
    return jsonify(payload)
