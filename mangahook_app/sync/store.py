"""Canonical store writes: idempotent upserts keyed by (source, source_id)."""

import logging
from typing import Dict, Iterable, List, Optional, Tuple

from sqlalchemy import func
from sqlalchemy.orm import Session

from sources.base import MangaResult, TagResult
from ..models import Manga, Tag

logger = logging.getLogger(__name__)

TagKey = Tuple[str, str]


class CatalogStore:
    """
    Upsert-by-natural-key over the manga/tags tables.

    Running the same batch twice leaves the tables exactly as after the
    first run: rows are matched on their natural keys, scalar fields are
    overwritten with identical values and tag collections are replaced,
    never appended.
    """

    # =========================================================================
    # WRITES
    # =========================================================================

    def upsert_batch(self, session: Session, records: List[MangaResult]) -> int:
        """Insert-or-update a batch inside the caller's transaction."""
        if not records:
            return 0

        tags = self._upsert_tags(session, records)
        existing = self._load_existing(session, records)

        for record in records:
            key = (record.source, record.id)
            manga = existing.get(key)
            if manga is None:
                manga = Manga()
                session.add(manga)
                existing[key] = manga
            manga.apply(record)

            wanted: List[Tag] = []
            for tag in record.tags:
                row = tags[(tag.source or record.source, tag.id)]
                if row not in wanted:
                    wanted.append(row)
            if set(manga.tags) != set(wanted):
                manga.tags = wanted

        session.flush()
        return len(records)

    def _upsert_tags(self, session: Session, records: List[MangaResult]) -> Dict[TagKey, Tag]:
        incoming: Dict[TagKey, TagResult] = {}
        for record in records:
            for tag in record.tags:
                incoming[(tag.source or record.source, tag.id)] = tag
        if not incoming:
            return {}

        rows: Dict[TagKey, Tag] = {}
        by_source: Dict[str, List[str]] = {}
        for source, tag_id in incoming:
            by_source.setdefault(source, []).append(tag_id)
        for source, tag_ids in by_source.items():
            query = session.query(Tag).filter(Tag.source == source, Tag.source_tag_id.in_(tag_ids))
            for row in query:
                rows[(row.source, row.source_tag_id)] = row

        for key, tag in incoming.items():
            row = rows.get(key)
            if row is None:
                row = Tag(source=key[0], source_tag_id=key[1])
                session.add(row)
                rows[key] = row
            if row.name != tag.name:
                row.name = tag.name
            if row.group != tag.group:
                row.group = tag.group

        # Manga rows below need tag primary keys
        session.flush()
        return rows

    def _load_existing(self, session: Session, records: Iterable[MangaResult]) -> Dict[TagKey, Manga]:
        by_source: Dict[str, List[str]] = {}
        for record in records:
            by_source.setdefault(record.source, []).append(record.id)
        found: Dict[TagKey, Manga] = {}
        for source, ids in by_source.items():
            query = session.query(Manga).filter(Manga.source == source, Manga.source_id.in_(ids))
            for manga in query:
                found[(manga.source, manga.source_id)] = manga
        return found

    # =========================================================================
    # READS
    # =========================================================================

    def get(self, session: Session, source: str, source_id: str) -> Optional[Manga]:
        return session.query(Manga).filter_by(source=source, source_id=source_id).first()

    def count(self, session: Session, source: Optional[str] = None) -> int:
        query = session.query(func.count(Manga.id))
        if source:
            query = query.filter(Manga.source == source)
        return int(query.scalar() or 0)

    def has_records(self, session: Session, source: str) -> bool:
        return session.query(Manga.id).filter(Manga.source == source).first() is not None
