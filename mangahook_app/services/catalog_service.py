"""
Catalog Service - detail and chapter lookups by any identifier.

Details come from the canonical store when the sync engine has already
written the record, otherwise from the provider's live details endpoint.
Live results are not written back; the store has a single writer.
"""

import logging
from typing import List, Optional

from sources.base import ChapterResult, MangaResult

from ..database import SessionFactory, get_db_session
from ..log import log
from ..sync.store import CatalogStore

logger = logging.getLogger(__name__)


class CatalogService:
    """Resolve composite, UUID or aggregator ids to records and chapters."""

    def __init__(
        self,
        registry,
        session_factory: Optional[SessionFactory] = None,
        store: Optional[CatalogStore] = None
    ):
        self.registry = registry
        self.session_factory = session_factory
        self.store = store or CatalogStore()

    def resolve_details(self, identifier: str, explicit_source: Optional[str] = None) -> MangaResult:
        connector, native_id = self.registry.resolve(identifier, explicit_source)

        with get_db_session(self.session_factory) as session:
            manga = self.store.get(session, connector.id, native_id)
            if manga is not None:
                return manga.to_result()

        log(f"🌐 {connector.id}:{native_id} not in store, fetching live")
        return connector.get_details(native_id)

    def list_chapters(
        self,
        identifier: str,
        explicit_source: Optional[str] = None,
        language: str = "en"
    ) -> List[ChapterResult]:
        connector, native_id = self.registry.resolve(identifier, explicit_source)
        chapters = connector.list_chapters(native_id, language=language)
        logger.debug("%d chapters for %s:%s", len(chapters), connector.id, native_id)
        return chapters
