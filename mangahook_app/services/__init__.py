"""
MangaHook Services Module

- CatalogService: detail/chapter lookups, store first, live fallback
"""

from .catalog_service import CatalogService

__all__ = ['CatalogService']
