"""
================================================================================
MangaHook - Search Package
================================================================================
Tag-weighted search over the canonical store.

Components:
  - scoring.py - pure filter/score/order/page over canonical records
  - engine.py - SearchService: SQL candidate loading + live fallback
  - query_parser.py - natural language queries -> tags and filters
================================================================================
"""

from .engine import SearchService
from .query_parser import ParsedQuery, parse_natural_query
from .scoring import SearchFilters, SearchResponse, SortKey, SortOrder, TagQuery, rank

__all__ = [
    'SearchService', 'ParsedQuery', 'parse_natural_query',
    'SearchFilters', 'SearchResponse', 'SortKey', 'SortOrder', 'TagQuery', 'rank',
]
