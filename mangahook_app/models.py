"""
================================================================================
MangaHook - Database Models
================================================================================
SQLAlchemy models for the canonical catalog store.

TABLES:
  - manga       One row per (source, source_id). Written only by the sync
                engine's upsert step; read by search and detail lookups.
  - tags        Provider-scoped tags, unique per (source, source_tag_id).
  - manga_tags  Association; replaced wholesale on every upsert.
  - sync_state  One row per catalog: resumable progress of the last run.

All DateTime columns hold naive UTC.
================================================================================
"""

from datetime import datetime, timezone
from enum import Enum as PyEnum
from typing import Any, Dict

from sqlalchemy import (
    Column, String, Integer, DateTime, ForeignKey, Text, JSON, Enum, Table,
    UniqueConstraint, Index
)
from sqlalchemy.orm import relationship, declarative_base, declared_attr

from sources.base import (
    ContentRating, Demographic, MangaResult, MangaStatus, TagGroup, TagResult
)

Base = declarative_base()


def utcnow() -> datetime:
    return datetime.now(timezone.utc).replace(tzinfo=None)


# =============================================================================
# MIXINS
# =============================================================================

class TimestampMixin:
    """Adds created_at and updated_at timestamps to models."""
    @declared_attr
    def created_at(cls):
        return Column(DateTime, default=utcnow, nullable=False)

    @declared_attr
    def updated_at(cls):
        return Column(DateTime, default=utcnow, onupdate=utcnow, nullable=False)


# =============================================================================
# CATALOG
# =============================================================================

manga_tags = Table(
    'manga_tags',
    Base.metadata,
    Column('manga_id', Integer, ForeignKey('manga.id', ondelete='CASCADE'), primary_key=True),
    Column('tag_id', Integer, ForeignKey('tags.id', ondelete='CASCADE'), primary_key=True),
)


class Tag(Base):
    """Provider-scoped tag (a MangaDex tag UUID, a Consumet genre slug...)."""
    __tablename__ = 'tags'

    id = Column(Integer, primary_key=True, autoincrement=True)
    source = Column(String(50), nullable=False)
    source_tag_id = Column(String(255), nullable=False)
    name = Column(String(255), nullable=False)
    group = Column(Enum(TagGroup, name='tag_group'), nullable=False, default=TagGroup.THEME)

    __table_args__ = (
        UniqueConstraint('source', 'source_tag_id', name='uq_tags_source_tag'),
    )

    def to_result(self) -> TagResult:
        return TagResult(id=self.source_tag_id, name=self.name, group=self.group, source=self.source)


class Manga(Base, TimestampMixin):
    """
    Canonical manga record.

    The surrogate integer id doubles as insertion order, which search uses
    as its final tiebreak.
    """
    __tablename__ = 'manga'

    id = Column(Integer, primary_key=True, autoincrement=True)
    source = Column(String(50), nullable=False)
    source_id = Column(String(255), nullable=False)

    title = Column(String(500), nullable=False)
    alt_titles = Column(JSON, nullable=False, default=list)
    description = Column(Text)
    status = Column(Enum(MangaStatus, name='manga_status'), nullable=False, default=MangaStatus.UNKNOWN)
    content_rating = Column(Enum(ContentRating, name='content_rating'), nullable=False,
                            default=ContentRating.SAFE)
    demographic = Column(Enum(Demographic, name='demographic'), nullable=True)
    original_language = Column(String(16))
    last_chapter = Column(String(32))
    last_volume = Column(String(32))
    total_chapters = Column(Integer)
    cover_art_id = Column(String(64))
    cover_file = Column(String(500))
    followed_count = Column(Integer, nullable=False, default=0)
    year = Column(Integer)
    source_updated_at = Column(DateTime)

    tags = relationship('Tag', secondary=manga_tags, lazy='selectin', order_by=Tag.id)

    __table_args__ = (
        UniqueConstraint('source', 'source_id', name='uq_manga_source_id'),
        Index('ix_manga_source_updated', 'source', 'source_updated_at'),
        Index('ix_manga_followed_count', 'followed_count'),
        Index('ix_manga_title', 'title'),
    )

    def apply(self, record: MangaResult) -> None:
        """Copy scalar fields from a normalized record. Tags are set by the store."""
        self.source = record.source
        self.source_id = record.id
        self.title = record.title
        self.alt_titles = list(record.alt_titles)
        self.description = record.description
        self.status = record.status
        self.content_rating = record.content_rating
        self.demographic = record.demographic
        self.original_language = record.original_language
        self.last_chapter = record.last_chapter
        self.last_volume = record.last_volume
        self.total_chapters = record.total_chapters
        self.cover_art_id = record.cover_art_id
        self.cover_file = record.cover_file
        if record.followed_count is not None:
            self.followed_count = record.followed_count
        elif self.followed_count is None:
            self.followed_count = 0
        self.year = record.year
        self.source_updated_at = record.source_updated_at

    def to_result(self) -> MangaResult:
        return MangaResult(
            id=self.source_id,
            source=self.source,
            title=self.title,
            alt_titles=list(self.alt_titles or []),
            description=self.description,
            status=self.status,
            content_rating=self.content_rating,
            demographic=self.demographic,
            original_language=self.original_language,
            last_chapter=self.last_chapter,
            last_volume=self.last_volume,
            total_chapters=self.total_chapters,
            cover_art_id=self.cover_art_id,
            cover_file=self.cover_file,
            followed_count=self.followed_count,
            year=self.year,
            source_updated_at=self.source_updated_at,
            tags=[tag.to_result() for tag in self.tags],
        )

    def to_dict(self) -> Dict[str, Any]:
        return self.to_result().to_dict()


# =============================================================================
# SYNC STATE
# =============================================================================

class SyncStatus(PyEnum):
    IDLE = "IDLE"
    RUNNING = "RUNNING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"


class SyncMode(PyEnum):
    FULL = "FULL"
    INCREMENTAL = "INCREMENTAL"


class SyncState(Base, TimestampMixin):
    """Persisted progress for one catalog; survives crashes so runs resume."""
    __tablename__ = 'sync_state'

    catalog = Column(String(50), primary_key=True)
    status = Column(Enum(SyncStatus, name='sync_status'), nullable=False, default=SyncStatus.IDLE)
    mode = Column(Enum(SyncMode, name='sync_mode'), nullable=True)

    total_processed = Column(Integer, nullable=False, default=0)
    total_to_process = Column(Integer, nullable=True)
    current_offset = Column(Integer, nullable=False, default=0)
    last_error = Column(Text)
    started_at = Column(DateTime)
    completed_at = Column(DateTime)

    # Newest source_updated_at committed by the last successful run
    watermark = Column(DateTime)
    # Newest source_updated_at seen by the run in progress
    pending_watermark = Column(DateTime)
    last_full_sync = Column(DateTime)
    last_incremental_sync = Column(DateTime)
    total_manga_count = Column(Integer, nullable=False, default=0)
