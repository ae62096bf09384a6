"""
================================================================================
MangaHook - Sync Engine
================================================================================
Reconciles a provider's catalog into the canonical store.

STATE MACHINE (per catalog, persisted in sync_state):

    IDLE ──► RUNNING ──► COMPLETED ──► RUNNING (next pass, from offset 0)
                    └──► FAILED ─────► RUNNING (resumes at current_offset)

MODES:
  - FULL: page through the whole catalog
  - INCREMENTAL: page newest-first and stop after the first page holding a
    record not newer than the watermark

BATCH LOOP:
  fetch page (B=100) -> normalize -> upsert + advance offset (one
  transaction) -> sleep -> repeat until a short page or the stop condition

A page answered with HTTP 429 is retried at the same offset, honoring
Retry-After, before it counts as failed.

A failed batch rolls back, marks the run FAILED and leaves current_offset on
the last committed batch. Upserts are idempotent, so resuming is safe.

One run per catalog at a time: a second start while RUNNING is a no-op
that returns the current progress with started=False.
================================================================================
"""

import logging
import os
import threading
import time
from dataclasses import dataclass
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, List, Optional, Tuple

from sources.base import BaseConnector, CatalogPage, MangaResult
from sources.errors import SyncBatchFailure, UpstreamUnavailable

from ..database import SessionFactory, get_db_session
from ..log import log
from ..models import SyncMode, SyncState, SyncStatus, utcnow
from .store import CatalogStore

logger = logging.getLogger(__name__)

DEFAULT_BATCH_SIZE = int(os.environ.get("SYNC_BATCH_SIZE", "100"))
DEFAULT_BATCH_DELAY_MS = int(os.environ.get("SYNC_BATCH_DELAY_MS", "200"))
INCREMENTAL_LOOKBACK = timedelta(hours=24)

# HTTP 429 on a catalog page: wait and retry the same offset before failing
RATE_LIMIT_RETRIES = int(os.environ.get("SYNC_RATE_LIMIT_RETRIES", "3"))
RATE_LIMIT_DELAY = 2.0
RATE_LIMIT_MAX_DELAY = 60.0


def _iso(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


@dataclass
class SyncProgress:
    """Read-only snapshot of a catalog's sync state."""
    catalog: str
    status: SyncStatus = SyncStatus.IDLE
    mode: Optional[SyncMode] = None
    total_processed: int = 0
    total_to_process: Optional[int] = None
    current_offset: int = 0
    last_error: Optional[str] = None
    started_at: Optional[datetime] = None
    completed_at: Optional[datetime] = None
    watermark: Optional[datetime] = None
    last_full_sync: Optional[datetime] = None
    last_incremental_sync: Optional[datetime] = None
    total_manga_count: int = 0

    @classmethod
    def from_state(cls, state: SyncState) -> "SyncProgress":
        return cls(
            catalog=state.catalog,
            status=state.status or SyncStatus.IDLE,
            mode=state.mode,
            total_processed=state.total_processed or 0,
            total_to_process=state.total_to_process,
            current_offset=state.current_offset or 0,
            last_error=state.last_error,
            started_at=state.started_at,
            completed_at=state.completed_at,
            watermark=state.watermark,
            last_full_sync=state.last_full_sync,
            last_incremental_sync=state.last_incremental_sync,
            total_manga_count=state.total_manga_count or 0,
        )

    def to_dict(self) -> Dict[str, Any]:
        return {
            "catalog": self.catalog,
            "status": self.status.value,
            "mode": self.mode.value if self.mode else None,
            "total_processed": self.total_processed,
            "total_to_process": self.total_to_process,
            "current_offset": self.current_offset,
            "last_error": self.last_error,
            "started_at": _iso(self.started_at),
            "completed_at": _iso(self.completed_at),
            "watermark": _iso(self.watermark),
            "last_full_sync": _iso(self.last_full_sync),
            "last_incremental_sync": _iso(self.last_incremental_sync),
            "total_manga_count": self.total_manga_count,
        }


class SyncEngine:
    """
    Full/incremental catalog sync with a per-catalog run-lock.

    Usage:
        engine = SyncEngine(get_provider_registry())
        progress, started = engine.start_full_sync("mangadex")  # background
        engine.get_sync_status("mangadex").to_dict()

        engine.run_incremental_sync("mangadex")  # blocking (CLI, cron)
    """

    def __init__(
        self,
        registry,
        session_factory: Optional[SessionFactory] = None,
        store: Optional[CatalogStore] = None,
        batch_size: int = DEFAULT_BATCH_SIZE,
        batch_delay_ms: int = DEFAULT_BATCH_DELAY_MS,
        rate_limit_retries: int = RATE_LIMIT_RETRIES,
        sleep: Callable[[float], None] = time.sleep,
        clock: Callable[[], datetime] = utcnow,
        on_progress: Optional[Callable[[SyncProgress], None]] = None
    ):
        if batch_size < 1:
            raise ValueError("batch_size must be >= 1")
        self.registry = registry
        self.session_factory = session_factory
        self.store = store or CatalogStore()
        self.batch_size = batch_size
        self.batch_delay_ms = batch_delay_ms
        self.rate_limit_retries = rate_limit_retries
        self._sleep = sleep
        self._clock = clock
        self._on_progress = on_progress

        self._locks: Dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()
        self._threads: Dict[str, threading.Thread] = {}

    # =========================================================================
    # PUBLIC API
    # =========================================================================

    def get_sync_status(self, catalog: str) -> SyncProgress:
        with get_db_session(self.session_factory) as session:
            state = session.get(SyncState, catalog)
            if state is None:
                return SyncProgress(catalog=catalog, total_manga_count=self.store.count(session, catalog))
            return SyncProgress.from_state(state)

    def is_running(self, catalog: str) -> bool:
        return self._lock_for(catalog).locked()

    def start_full_sync(self, catalog: str) -> Tuple[SyncProgress, bool]:
        """
        Kick off a full sync in the background.

        Returns (progress, started). started is False when a run already held
        the lock, in which case nothing new was launched.
        """
        return self._start(catalog, SyncMode.FULL)

    def start_incremental_sync(self, catalog: str) -> Tuple[SyncProgress, bool]:
        """Kick off an incremental sync in the background. No-op if running."""
        return self._start(catalog, SyncMode.INCREMENTAL)

    def run_full_sync(self, catalog: str) -> SyncProgress:
        """Run a full sync on the calling thread and return the final progress."""
        return self._run(catalog, SyncMode.FULL)

    def run_incremental_sync(self, catalog: str) -> SyncProgress:
        return self._run(catalog, SyncMode.INCREMENTAL)

    def wait(self, catalog: str, timeout: Optional[float] = None) -> None:
        """Join the background run for a catalog, if any."""
        thread = self._threads.get(catalog)
        if thread is not None:
            thread.join(timeout)

    # =========================================================================
    # RUN-LOCK
    # =========================================================================

    def _lock_for(self, catalog: str) -> threading.Lock:
        with self._locks_guard:
            lock = self._locks.get(catalog)
            if lock is None:
                lock = self._locks[catalog] = threading.Lock()
            return lock

    def _start(self, catalog: str, mode: SyncMode) -> Tuple[SyncProgress, bool]:
        provider = self.registry.get(catalog)
        lock = self._lock_for(catalog)
        if not lock.acquire(blocking=False):
            log(f"⏳ {catalog} sync already running, ignoring {mode.value.lower()} request")
            return self.get_sync_status(catalog), False
        try:
            progress = self._begin(catalog, mode)
            thread = threading.Thread(
                target=self._run_in_background,
                args=(provider, mode, lock),
                name=f"sync-{catalog}",
                daemon=True
            )
            self._threads[catalog] = thread
            thread.start()
        except Exception:
            lock.release()
            raise
        return progress, True

    def _run_in_background(self, provider: BaseConnector, mode: SyncMode, lock: threading.Lock) -> None:
        try:
            self._execute(provider, mode)
        except Exception:
            # Nothing above this frame can handle it; state may be stale RUNNING
            logger.exception("Background %s sync of %s crashed", mode.value, provider.id)
        finally:
            lock.release()

    def _run(self, catalog: str, mode: SyncMode) -> SyncProgress:
        provider = self.registry.get(catalog)
        lock = self._lock_for(catalog)
        if not lock.acquire(blocking=False):
            log(f"⏳ {catalog} sync already running")
            return self.get_sync_status(catalog)
        try:
            self._begin(catalog, mode)
            return self._execute(provider, mode)
        finally:
            lock.release()

    # =========================================================================
    # STATE TRANSITIONS
    # =========================================================================

    def _begin(self, catalog: str, mode: SyncMode) -> SyncProgress:
        """
        Move the catalog to RUNNING.

        A FAILED run of the same mode resumes where it stopped. So does a
        RUNNING row nobody holds the lock for (the process died mid-run).
        """
        with get_db_session(self.session_factory) as session:
            state = session.get(SyncState, catalog)
            if state is None:
                state = SyncState(catalog=catalog, status=SyncStatus.IDLE, total_processed=0,
                                  current_offset=0, total_manga_count=0)
                session.add(state)

            resumable = state.status in (SyncStatus.FAILED, SyncStatus.RUNNING) and state.mode == mode
            if resumable:
                log(f"🔁 Resuming {catalog} {mode.value.lower()} sync at offset {state.current_offset}")
            else:
                state.current_offset = 0
                state.total_processed = 0
                state.total_to_process = None
                state.pending_watermark = None
                log(f"🚀 Starting {catalog} {mode.value.lower()} sync")

            state.status = SyncStatus.RUNNING
            state.mode = mode
            state.last_error = None
            state.started_at = self._clock()
            state.completed_at = None
            session.flush()
            return SyncProgress.from_state(state)

    def _incremental_watermark(self, state: SyncState) -> datetime:
        return state.watermark or state.last_full_sync or (self._clock() - INCREMENTAL_LOOKBACK)

    def _commit_batch(
        self,
        catalog: str,
        records: List[MangaResult],
        next_offset: int,
        total: Optional[int]
    ) -> SyncProgress:
        """Upsert a batch and advance the offset in one transaction."""
        with get_db_session(self.session_factory) as session:
            processed = self.store.upsert_batch(session, records)
            state = session.get(SyncState, catalog)
            state.current_offset = next_offset
            state.total_processed = (state.total_processed or 0) + processed
            if total is not None:
                state.total_to_process = total

            newest = max((r.source_updated_at for r in records if r.source_updated_at), default=None)
            if newest and (state.pending_watermark is None or newest > state.pending_watermark):
                state.pending_watermark = newest
            session.flush()
            return SyncProgress.from_state(state)

    def _complete(self, catalog: str, mode: SyncMode) -> SyncProgress:
        now = self._clock()
        with get_db_session(self.session_factory) as session:
            state = session.get(SyncState, catalog)
            state.status = SyncStatus.COMPLETED
            state.completed_at = now
            if state.pending_watermark and (state.watermark is None or state.pending_watermark > state.watermark):
                state.watermark = state.pending_watermark
            state.pending_watermark = None
            if mode is SyncMode.FULL:
                state.last_full_sync = now
            else:
                state.last_incremental_sync = now
            state.total_manga_count = self.store.count(session, catalog)
            session.flush()
            return SyncProgress.from_state(state)

    def _fail(self, catalog: str, failure: SyncBatchFailure) -> SyncProgress:
        logger.error("%s", failure)
        log(f"❌ {failure}")
        with get_db_session(self.session_factory) as session:
            state = session.get(SyncState, catalog)
            state.status = SyncStatus.FAILED
            state.last_error = str(failure.cause) or failure.cause.__class__.__name__
            session.flush()
            return SyncProgress.from_state(state)

    # =========================================================================
    # BATCH LOOP
    # =========================================================================

    def _normalize(self, provider: BaseConnector, items: List[Dict[str, Any]]) -> List[MangaResult]:
        """Normalize a page; a record that cannot be parsed is skipped, never fatal."""
        records = []
        for raw in items:
            try:
                records.append(provider.normalize(raw))
            except Exception as exc:
                logger.warning("Skipping malformed %s record: %s: %s", provider.id, exc.__class__.__name__, exc)
        return records

    def _fetch_page(
        self,
        provider: BaseConnector,
        offset: int,
        limit: int,
        since: Optional[datetime]
    ) -> CatalogPage:
        """list_catalog, waiting out HTTP 429 on the same offset."""
        attempt = 0
        while True:
            try:
                return provider.list_catalog(offset, limit, updated_since=since)
            except UpstreamUnavailable as exc:
                if exc.status_code != 429 or attempt >= self.rate_limit_retries:
                    raise
                attempt += 1
                delay = min(exc.retry_after or RATE_LIMIT_DELAY, RATE_LIMIT_MAX_DELAY)
                log(f"⏳ {provider.id}: rate limited at offset {offset}, retrying in {delay:g}s "
                    f"({attempt}/{self.rate_limit_retries})")
                self._sleep(delay)

    def _execute(self, provider: BaseConnector, mode: SyncMode) -> SyncProgress:
        catalog = provider.id
        with get_db_session(self.session_factory) as session:
            state = session.get(SyncState, catalog)
            offset = state.current_offset or 0
            watermark = self._incremental_watermark(state) if mode is SyncMode.INCREMENTAL else None

        ordered = provider.supports_update_order
        since = watermark if ordered else None
        if watermark is not None:
            log(f"🕒 {catalog}: fetching records updated after {watermark.isoformat()}")

        while True:
            limit = self.batch_size
            if provider.max_catalog_offset is not None:
                limit = min(limit, provider.max_catalog_offset - offset)
                if limit <= 0:
                    log(f"⚠️ {catalog}: reached upstream pagination limit at offset {offset}")
                    break

            try:
                page = self._fetch_page(provider, offset, limit, since)
                records = self._normalize(provider, page.items)

                reached_watermark = False
                if watermark is not None and ordered:
                    fresh = [r for r in records if r.source_updated_at is None or r.source_updated_at > watermark]
                    reached_watermark = len(fresh) < len(records)
                    records = fresh

                provider.enrich_batch(records)
                progress = self._commit_batch(catalog, records, offset + len(page.items), page.total)
            except Exception as exc:
                return self._fail(catalog, SyncBatchFailure(catalog, offset, exc))

            offset = progress.current_offset
            self._report(progress)

            if len(page.items) < limit or reached_watermark:
                break
            if self.batch_delay_ms > 0:
                self._sleep(self.batch_delay_ms / 1000.0)

        progress = self._complete(catalog, mode)
        log(f"✅ {catalog} {mode.value.lower()} sync done: {progress.total_processed} processed, "
            f"{progress.total_manga_count} in store")
        self._report(progress)
        return progress

    def _report(self, progress: SyncProgress) -> None:
        if progress.status is SyncStatus.RUNNING:
            total = progress.total_to_process
            suffix = f"/{total}" if total else ""
            log(f"📦 {progress.catalog}: {progress.total_processed}{suffix} processed (offset {progress.current_offset})")
        if self._on_progress is not None:
            self._on_progress(progress)
