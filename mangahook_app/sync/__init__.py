"""Catalog sync: batch upserts into the canonical store with resumable progress."""

from .engine import SyncEngine, SyncProgress
from .store import CatalogStore

__all__ = ["SyncEngine", "SyncProgress", "CatalogStore"]
