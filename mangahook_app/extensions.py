"""
Application services, built once per app and stored on app.extensions.

    services = get_services()
    services.search.search("berserk")

Tests pass their own registry / session factory to create_app so no
network or on-disk database is touched.
"""

from dataclasses import dataclass
from typing import Optional

from flask import Flask, current_app

from sources import ProviderRegistry, get_provider_registry

from .database import SessionFactory
from .reader import HandleCache, ReaderProxy
from .search import SearchService
from .services import CatalogService
from .sync import SyncEngine

EXTENSION_KEY = 'mangahook'


@dataclass
class Services:
    registry: ProviderRegistry
    sync: SyncEngine
    search: SearchService
    reader: ReaderProxy
    catalog: CatalogService


def build_services(
    registry: Optional[ProviderRegistry] = None,
    session_factory: Optional[SessionFactory] = None,
    handle_ttl: Optional[float] = None,
    preferred_weight: Optional[float] = None,
    **sync_options
) -> Services:
    registry = registry or get_provider_registry()
    cache = HandleCache(ttl=handle_ttl) if handle_ttl is not None else HandleCache()
    search_kwargs = {'preferred_weight': preferred_weight} if preferred_weight is not None else {}
    return Services(
        registry=registry,
        sync=SyncEngine(registry, session_factory=session_factory, **sync_options),
        search=SearchService(registry, session_factory=session_factory, **search_kwargs),
        reader=ReaderProxy(registry, cache=cache),
        catalog=CatalogService(registry, session_factory=session_factory),
    )


def init_services(app: Flask, services: Services) -> Services:
    app.extensions[EXTENSION_KEY] = services
    return services


def get_services() -> Services:
    return current_app.extensions[EXTENSION_KEY]
