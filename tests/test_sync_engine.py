from datetime import datetime, timedelta

import pytest

from mangahook_app.database import get_db_session
from mangahook_app.models import Manga, SyncMode, SyncState, SyncStatus
from mangahook_app.sync import SyncEngine
from mangahook_app.sync.engine import RATE_LIMIT_DELAY

from sources import ProviderRegistry
from sources.mangadex import MangaDexConnector

from fakes import FakeClock, FakeTransport, make_response, raw_manga, unavailable

T0 = datetime(2024, 6, 1, 0, 0, 0)


def _catalog(count, newest=T0):
    """Newest first, one minute apart."""
    return [raw_manga(i, updated=newest - timedelta(minutes=i)) for i in range(count)]


def _engine(registry, session_factory, sleeps=None, clock=None, **kwargs):
    kwargs.setdefault("batch_size", 100)
    return SyncEngine(
        registry,
        session_factory=session_factory,
        sleep=(sleeps.append if sleeps is not None else (lambda _: None)),
        clock=clock or FakeClock(),
        **kwargs
    )


def _stored(session_factory, source="mangadex"):
    with get_db_session(session_factory) as session:
        return sorted(
            (m.source_id, m.title, m.source_updated_at)
            for m in session.query(Manga).filter_by(source=source)
        )


def test_status_before_any_run_is_idle(registry, session_factory):
    progress = _engine(registry, session_factory).get_sync_status("mangadex")
    assert progress.status is SyncStatus.IDLE
    assert progress.current_offset == 0


def test_full_sync_walks_until_short_page(registry, native, session_factory):
    native.items = _catalog(250)
    sleeps = []
    engine = _engine(registry, session_factory, sleeps=sleeps)

    progress = engine.run_full_sync("mangadex")

    assert progress.status is SyncStatus.COMPLETED
    assert progress.total_processed == 250
    assert progress.total_to_process == 250
    assert progress.total_manga_count == 250
    assert progress.completed_at is not None
    assert progress.last_full_sync is not None
    assert [call[:2] for call in native.catalog_calls] == [(0, 100), (100, 100), (200, 100)]
    assert sleeps == [pytest.approx(0.2), pytest.approx(0.2)]
    assert progress.watermark == T0


def test_failed_batch_keeps_offset_and_resumes(registry, native, session_factory):
    native.items = _catalog(250)
    native.fail_at[200] = unavailable("MangaDex returned HTTP 503")
    engine = _engine(registry, session_factory)

    failed = engine.run_full_sync("mangadex")

    assert failed.status is SyncStatus.FAILED
    assert failed.current_offset == 200
    assert "503" in failed.last_error
    assert len(_stored(session_factory)) == 200

    native.catalog_calls.clear()
    resumed = engine.run_full_sync("mangadex")

    assert resumed.status is SyncStatus.COMPLETED
    assert native.catalog_calls[0][0] == 200
    assert resumed.total_processed == 250
    assert resumed.last_error is None


def test_resumed_run_matches_uninterrupted_run(registry, native, session_factory):
    from fakes import FakeConnector
    from mangahook_app.database import create_db_engine, init_database, make_session_factory

    native.items = _catalog(230)
    native.fail_at[100] = unavailable()
    engine = _engine(registry, session_factory)
    engine.run_full_sync("mangadex")
    engine.run_full_sync("mangadex")

    other_db = create_db_engine("sqlite://")
    init_database(engine=other_db)
    other_factory = make_session_factory(other_db)
    clean = FakeConnector("mangadex", items=_catalog(230))
    _engine(ProviderRegistry(transport=registry.transport, connectors=[clean]), other_factory).run_full_sync("mangadex")

    assert _stored(session_factory) == _stored(other_factory)
    other_db.dispose()


def test_completed_run_restarts_from_zero(registry, native, session_factory):
    native.items = _catalog(50)
    engine = _engine(registry, session_factory)
    engine.run_full_sync("mangadex")
    native.catalog_calls.clear()

    progress = engine.run_full_sync("mangadex")

    assert native.catalog_calls[0][0] == 0
    assert progress.total_processed == 50
    assert progress.total_manga_count == 50


def test_incremental_stops_at_watermark(registry, native, session_factory):
    native.items = _catalog(10)
    watermark = T0 - timedelta(minutes=3)
    with get_db_session(session_factory) as session:
        session.add(SyncState(catalog="mangadex", status=SyncStatus.COMPLETED,
                              mode=SyncMode.FULL, watermark=watermark))
    engine = _engine(registry, session_factory, batch_size=2)

    progress = engine.run_incremental_sync("mangadex")

    assert progress.status is SyncStatus.COMPLETED
    # [m0, m1] fresh, [m2, m3] holds m3 == watermark -> stop after this page
    assert [call[0] for call in native.catalog_calls] == [0, 2]
    assert all(call[2] == watermark for call in native.catalog_calls)
    assert [row[0] for row in _stored(session_factory)] == ["m0000", "m0001", "m0002"]
    assert progress.watermark == T0
    assert progress.last_incremental_sync is not None


def test_incremental_without_history_looks_back_one_day(registry, native, session_factory):
    clock = FakeClock(T0)
    native.items = _catalog(3)
    engine = _engine(registry, session_factory, clock=clock)

    engine.run_incremental_sync("mangadex")

    assert native.catalog_calls[0][2] == T0 - timedelta(hours=24)


def test_incremental_falls_back_to_last_full_sync(registry, native, session_factory):
    native.items = _catalog(5)
    engine = _engine(registry, session_factory, batch_size=2)
    with get_db_session(session_factory) as session:
        session.add(SyncState(catalog="mangadex", status=SyncStatus.COMPLETED,
                              last_full_sync=T0 - timedelta(minutes=1)))

    engine.run_incremental_sync("mangadex")

    assert native.catalog_calls[0][2] == T0 - timedelta(minutes=1)
    assert len(native.catalog_calls) == 1


def test_incremental_without_update_order_walks_everything(registry, aggregator, session_factory):
    aggregator.items = [raw_manga(i) for i in range(5)]
    engine = _engine(registry, session_factory, batch_size=2)

    progress = engine.run_incremental_sync("consumet")

    assert progress.status is SyncStatus.COMPLETED
    assert progress.total_processed == 5
    assert all(call[2] is None for call in aggregator.catalog_calls)


def test_upstream_pagination_window_is_respected(registry, native, session_factory):
    native.items = _catalog(500)
    native.max_catalog_offset = 150
    engine = _engine(registry, session_factory)

    progress = engine.run_full_sync("mangadex")

    assert [call[:2] for call in native.catalog_calls] == [(0, 100), (100, 50)]
    assert progress.status is SyncStatus.COMPLETED
    assert progress.total_processed == 150


def test_records_without_id_are_skipped(registry, native, session_factory):
    native.items = _catalog(3) + [{"title": "ghost"}]
    progress = _engine(registry, session_factory).run_full_sync("mangadex")

    assert progress.status is SyncStatus.COMPLETED
    assert progress.total_processed == 3
    assert progress.current_offset == 4


def test_start_while_running_is_a_noop(registry, native, session_factory):
    native.items = _catalog(5)
    engine = _engine(registry, session_factory)
    lock = engine._lock_for("mangadex")
    lock.acquire()
    try:
        progress, started = engine.start_full_sync("mangadex")
    finally:
        lock.release()

    assert started is False
    assert progress.status is SyncStatus.IDLE
    assert native.catalog_calls == []


def test_background_sync_completes_and_releases_lock(registry, native, session_factory):
    native.items = _catalog(5)
    engine = _engine(registry, session_factory)

    progress, started = engine.start_full_sync("mangadex")
    engine.wait("mangadex", timeout=10)

    assert started is True
    assert progress.status is SyncStatus.RUNNING
    assert not engine.is_running("mangadex")
    assert engine.get_sync_status("mangadex").status is SyncStatus.COMPLETED


def test_crashed_running_state_is_resumed(registry, native, session_factory):
    native.items = _catalog(150)
    with get_db_session(session_factory) as session:
        session.add(SyncState(catalog="mangadex", status=SyncStatus.RUNNING, mode=SyncMode.FULL,
                              current_offset=100, total_processed=100))

    progress = _engine(registry, session_factory).run_full_sync("mangadex")

    assert native.catalog_calls[0][0] == 100
    assert progress.total_processed == 150


def test_unknown_catalog_is_rejected(registry, session_factory):
    from sources.errors import ValidationError
    with pytest.raises(ValidationError):
        _engine(registry, session_factory).run_full_sync("nowhere")


def test_progress_callback_sees_each_batch(registry, native, session_factory):
    native.items = _catalog(250)
    seen = []
    _engine(registry, session_factory, on_progress=seen.append).run_full_sync("mangadex")

    running = [p.total_processed for p in seen if p.status is SyncStatus.RUNNING]
    assert running == [100, 200, 250]
    assert seen[-1].status is SyncStatus.COMPLETED


def test_malformed_record_is_skipped_not_fatal(registry, native, session_factory):
    # a dict where a tag name is expected blows up inside normalize
    native.items = [raw_manga(0), raw_manga(1, tags=[{"id": "x"}]), raw_manga(2)]

    progress = _engine(registry, session_factory).run_full_sync("mangadex")

    assert progress.status is SyncStatus.COMPLETED
    assert progress.total_processed == 2
    assert progress.current_offset == 3
    assert [row[0] for row in _stored(session_factory)] == ["m0000", "m0002"]


# ---------------------------------------------------------------------------
# Against the real MangaDex connector
# ---------------------------------------------------------------------------

MANGA_URL = "https://api.mangadex.org/manga"


def _mangadex_record(mid, **attrs):
    attrs.setdefault("title", {"en": f"Title {mid}"})
    attrs.setdefault("updatedAt", "2024-05-01T00:00:00+00:00")
    return {"id": mid, "type": "manga", "attributes": attrs, "relationships": []}


def _mangadex_registry(responses):
    transport = FakeTransport({MANGA_URL: responses})
    connector = MangaDexConnector(transport=transport)
    connector.rate_limit = 0
    connector.fetch_statistics = False
    return ProviderRegistry(transport=transport, connectors=[connector])


def test_rate_limited_page_is_retried_at_same_offset(session_factory):
    registry = _mangadex_registry([
        make_response(429, content=b"", headers={"Retry-After": "2"}),
        make_response(200, json_body={"data": [_mangadex_record("a")], "total": 1}),
    ])
    sleeps = []

    progress = _engine(registry, session_factory, sleeps=sleeps).run_full_sync("mangadex")

    assert progress.status is SyncStatus.COMPLETED
    assert progress.total_processed == 1
    assert sleeps == [2.0]
    offsets = [call[2]["params"]["offset"] for call in registry.transport.calls]
    assert offsets == [0, 0]


def test_rate_limit_retries_are_bounded(session_factory):
    registry = _mangadex_registry([make_response(429, content=b"") for _ in range(3)])
    sleeps = []

    engine = _engine(registry, session_factory, sleeps=sleeps, rate_limit_retries=2)
    progress = engine.run_full_sync("mangadex")

    assert progress.status is SyncStatus.FAILED
    assert "429" in progress.last_error
    assert progress.current_offset == 0
    assert sleeps == [RATE_LIMIT_DELAY, RATE_LIMIT_DELAY]
    assert len(registry.transport.calls) == 3


def test_server_error_is_not_retried_by_the_engine(session_factory):
    registry = _mangadex_registry([make_response(503, content=b"")])
    sleeps = []

    progress = _engine(registry, session_factory, sleeps=sleeps).run_full_sync("mangadex")

    assert progress.status is SyncStatus.FAILED
    assert sleeps == []


def test_malformed_mangadex_tag_does_not_stall_the_catalog(session_factory):
    bad = _mangadex_record("bad", tags=["not-a-dict"])
    registry = _mangadex_registry([
        make_response(200, json_body={"data": [_mangadex_record("good"), bad, "junk"], "total": 3}),
    ])

    progress = _engine(registry, session_factory).run_full_sync("mangadex")

    assert progress.status is SyncStatus.COMPLETED
    assert progress.current_offset == 3
    assert [row[0] for row in _stored(session_factory)] == ["bad", "good"]
