"""
================================================================================
MangaHook - Provider Registry
================================================================================
Central registry for catalog providers plus composite-id routing.

ROUTING (resolve_id), first rule that applies wins:
  1. explicit source parameter (a matching "source:" prefix is stripped)
  2. "source:id" where source is a registered provider, split on first ':'
  3. a UUID                       -> native provider (MangaDex)
  4. anything else                -> aggregator provider (Consumet)

resolve_id never raises: every string routes somewhere. Round trip:
    resolve_id(make_composite_id(s, x)) == (s, x)  for any registered s
================================================================================
"""

import re
import threading
from typing import Dict, Iterable, Optional, Sequence, Tuple

from .base import BaseConnector
from .consumet import ConsumetConnector
from .errors import ValidationError
from .http_client import RetryTransport
from .mangadex import MangaDexConnector

NATIVE_SOURCE = MangaDexConnector.id
FALLBACK_SOURCE = ConsumetConnector.id
KNOWN_SOURCES: Tuple[str, ...] = (NATIVE_SOURCE, FALLBACK_SOURCE)

DEFAULT_CONNECTORS = (MangaDexConnector, ConsumetConnector)

SEPARATOR = ":"

UUID_RE = re.compile(
    r"^[0-9a-f]{8}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{4}-[0-9a-f]{12}$",
    re.IGNORECASE
)


# =============================================================================
# COMPOSITE IDS
# =============================================================================

def make_composite_id(source: str, native_id: str) -> str:
    return f"{source}{SEPARATOR}{native_id}"


def resolve_id(
    identifier: Optional[str],
    explicit_source: Optional[str] = None,
    known_sources: Sequence[str] = KNOWN_SOURCES,
    native_source: str = NATIVE_SOURCE,
    fallback_source: str = FALLBACK_SOURCE
) -> Tuple[str, str]:
    """Map any identifier to (source, native_id). Pure and total."""
    identifier = identifier or ""

    if explicit_source and explicit_source in known_sources:
        prefix = explicit_source + SEPARATOR
        if identifier.startswith(prefix):
            identifier = identifier[len(prefix):]
        return explicit_source, identifier

    prefix, sep, rest = identifier.partition(SEPARATOR)
    if sep and prefix in known_sources:
        return prefix, rest

    if UUID_RE.match(identifier):
        return native_source, identifier

    return fallback_source, identifier


# =============================================================================
# REGISTRY
# =============================================================================

class ProviderRegistry:
    """
    Holds one connector per provider and the transport they share.

    Usage:
        registry = ProviderRegistry()
        connector, native_id = registry.resolve("mangadex:a1c7c817-...")
        details = connector.get_details(native_id)
    """

    def __init__(
        self,
        transport: Optional[RetryTransport] = None,
        connectors: Optional[Iterable[BaseConnector]] = None,
        native_source: str = NATIVE_SOURCE,
        fallback_source: str = FALLBACK_SOURCE
    ):
        self.transport = transport if transport is not None else RetryTransport()
        self.native_source = native_source
        self.fallback_source = fallback_source
        self._providers: Dict[str, BaseConnector] = {}

        if connectors is None:
            connectors = [cls() for cls in DEFAULT_CONNECTORS]
        for connector in connectors:
            self.register(connector)

    def register(self, connector: BaseConnector) -> None:
        if connector.transport is None:
            connector.transport = self.transport
        self._providers[connector.id] = connector

    @property
    def providers(self) -> Dict[str, BaseConnector]:
        return self._providers

    @property
    def known_sources(self) -> Tuple[str, ...]:
        return tuple(self._providers)

    def get(self, source_id: str) -> BaseConnector:
        connector = self._providers.get(source_id)
        if connector is None:
            raise ValidationError(f"Unknown source: {source_id}")
        return connector

    def resolve_id(self, identifier: Optional[str], explicit_source: Optional[str] = None) -> Tuple[str, str]:
        return resolve_id(
            identifier,
            explicit_source,
            known_sources=self.known_sources,
            native_source=self.native_source,
            fallback_source=self.fallback_source
        )

    def resolve(self, identifier: Optional[str], explicit_source: Optional[str] = None) -> Tuple[BaseConnector, str]:
        """Route an identifier to its connector and native id."""
        source, native_id = self.resolve_id(identifier, explicit_source)
        return self.get(source), native_id


# =============================================================================
# GLOBAL SINGLETON
# =============================================================================

_registry: Optional[ProviderRegistry] = None
_registry_lock = threading.Lock()


def get_provider_registry() -> ProviderRegistry:
    """Get or create the global ProviderRegistry instance."""
    global _registry
    with _registry_lock:
        if _registry is None:
            _registry = ProviderRegistry()
        return _registry
