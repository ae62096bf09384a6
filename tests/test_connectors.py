from datetime import datetime

import pytest

from sources.base import MangaResult, PageVariant
from sources.consumet import ConsumetConnector
from sources.errors import UpstreamError, UpstreamNotFound, UpstreamUnavailable, ValidationError
from sources.mangadex import MangaDexConnector

from fakes import FakeTransport, make_response

API = "https://api.mangadex.org"


def _mangadex(routes):
    connector = MangaDexConnector(transport=FakeTransport(routes))
    connector.rate_limit = 0
    return connector


def test_list_catalog_requests_update_order_and_since():
    connector = _mangadex({f"{API}/manga": make_response(200, json_body={"data": [{"id": "a"}], "total": 42})})

    page = connector.list_catalog(200, 100, updated_since=datetime(2024, 5, 1, 8, 30, 15, 999))

    assert page.items == [{"id": "a"}]
    assert page.total == 42
    _, url, kwargs = connector.transport.calls[0]
    params = kwargs["params"]
    assert url == f"{API}/manga"
    assert params["offset"] == 200 and params["limit"] == 100
    assert params["order[updatedAt]"] == "desc"
    assert params["updatedAtSince"] == "2024-05-01T08:30:15"
    assert params["includes[]"] == ["cover_art"]
    assert set(params["contentRating[]"]) == {"safe", "suggestive", "erotica", "pornographic"}


@pytest.mark.parametrize("status, error", [
    (404, UpstreamNotFound),
    (429, UpstreamUnavailable),
    (502, UpstreamUnavailable),
    (400, UpstreamError),
])
def test_status_mapping(status, error):
    connector = _mangadex({f"{API}/manga/": make_response(status, content=b"{}")})
    with pytest.raises(error) as excinfo:
        connector.get_details("abc")
    assert excinfo.value.status_code == status
    assert excinfo.value.source == "mangadex"


def test_rate_limit_carries_retry_after():
    connector = _mangadex({f"{API}/manga": make_response(429, content=b"", headers={"Retry-After": "7"})})
    with pytest.raises(UpstreamUnavailable) as excinfo:
        connector.list_catalog(0, 100)
    assert excinfo.value.status_code == 429
    assert excinfo.value.retry_after == 7.0

    connector = _mangadex({f"{API}/manga": make_response(503, content=b"", headers={"Retry-After": "7"})})
    with pytest.raises(UpstreamUnavailable) as excinfo:
        connector.list_catalog(0, 100)
    assert excinfo.value.retry_after is None


def test_html_body_is_unavailable():
    connector = _mangadex({f"{API}/manga/": make_response(200, content=b"<!DOCTYPE html><html>oops</html>")})
    with pytest.raises(UpstreamUnavailable):
        connector.get_details("abc")


def test_chapter_feed_paginates_and_drops_external():
    first = [{"id": f"c{i}", "attributes": {"chapter": str(i)}} for i in range(99)]
    first.append({"id": "ext", "attributes": {"chapter": "99", "externalUrl": "https://elsewhere"}})
    second = [{"id": "c100", "attributes": {"chapter": "100"}}]
    connector = _mangadex({f"{API}/chapter": [
        make_response(200, json_body={"data": first, "total": 101}),
        make_response(200, json_body={"data": second, "total": 101}),
    ]})

    chapters = connector.list_chapters("m1")

    assert len(chapters) == 100
    assert "ext" not in {c.id for c in chapters}
    offsets = [call[2]["params"]["offset"] for call in connector.transport.calls]
    assert offsets == [0, 100]


def test_at_home_handle_builds_variant_urls():
    body = {
        "baseUrl": "https://uploads.example.test/",
        "chapter": {"hash": "h4sh", "data": ["1.png", "2.png"], "dataSaver": ["1.jpg", "2.jpg"]},
    }
    connector = _mangadex({f"{API}/at-home/server/": make_response(200, json_body=body)})

    handle = connector.issue_page_handle("ch1")

    assert handle.page_url(1, PageVariant.NORMAL) == "https://uploads.example.test/data/h4sh/2.png"
    assert handle.page_url(0, PageVariant.DATA_SAVER) == "https://uploads.example.test/data-saver/h4sh/1.jpg"
    pages = connector.get_chapter_pages("ch1", PageVariant.DATA_SAVER)
    assert [p.index for p in pages] == [0, 1]


def test_enrich_batch_fills_follow_counts():
    body = {"statistics": {"a": {"follows": 1200}, "b": {"follows": None}}}
    connector = _mangadex({f"{API}/statistics/manga": make_response(200, json_body=body)})
    connector.fetch_statistics = True
    records = [MangaResult(id="a", title="A"), MangaResult(id="b", title="B")]

    connector.enrich_batch(records)

    assert records[0].followed_count == 1200
    assert records[1].followed_count is None


def test_enrich_batch_survives_statistics_outage():
    connector = _mangadex({f"{API}/statistics/manga": make_response(503, content=b"")})
    connector.fetch_statistics = True
    records = [MangaResult(id="a", title="A")]

    connector.enrich_batch(records)
    assert records[0].followed_count is None


def test_consumet_search_falls_through_providers():
    base = "https://consumet.example.test"
    transport = FakeTransport({
        f"{base}/manga/asurascans/": make_response(500, content=b""),
        f"{base}/manga/reaperscans/": make_response(200, json_body={
            "results": [{"id": "omniscient-reader", "title": "Omniscient Reader"}],
            "hasNextPage": False,
        }),
    })
    connector = ConsumetConnector(transport=transport)
    connector.base_url = base
    connector.rate_limit = 0

    page = connector.search("omniscient")

    assert [r.id for r in page.results] == ["reaperscans:omniscient-reader"]
    assert page.total == 1


def _consumet_pages(base, *pages):
    responses = []
    start = 0
    for count, has_next in pages:
        results = [{"id": f"title-{i}", "title": f"Title {i}"} for i in range(start, start + count)]
        responses.append(make_response(200, json_body={"results": results, "hasNextPage": has_next}))
        start += count
    connector = ConsumetConnector(transport=FakeTransport({f"{base}/manga/asurascans/": responses}))
    connector.base_url = base
    connector.rate_limit = 0
    return connector


def test_consumet_search_reads_as_many_pages_as_limit_needs():
    connector = _consumet_pages("https://consumet.example.test", (20, True), (10, False))

    page = connector.search("title", limit=25, offset=5)

    assert [r.id for r in page.results] == [f"asurascans:title-{i}" for i in range(5, 30)]
    assert page.total == 30
    assert [call[2]["params"]["page"] for call in connector.transport.calls] == [1, 2]


def test_consumet_search_stops_when_upstream_runs_out():
    connector = _consumet_pages("https://consumet.example.test", (20, True), (3, False))

    page = connector.search("title", limit=100)

    assert len(page.results) == 23
    assert page.total == 23


def test_consumet_catalog_keeps_malformed_entries_in_place():
    base = "https://consumet.example.test"
    transport = FakeTransport({f"{base}/manga/asurascans/": make_response(200, json_body={
        "results": [{"id": "a"}, "junk", {"id": "b"}],
        "hasNextPage": False,
    })})
    connector = ConsumetConnector(transport=transport)
    connector.base_url = base
    connector.rate_limit = 0

    page = connector.list_catalog(0, 20)

    assert len(page.items) == 3
    assert page.items[1] == "junk"
    assert page.items[2] == {"id": "b", "provider": "asurascans"}


def test_consumet_page_handle_keeps_referer():
    base = "https://consumet.example.test"
    pages = [
        {"page": 2, "img": "https://img.test/2.jpg", "headerForImage": {"Referer": "https://asura.test/"}},
        {"page": 1, "img": "https://img.test/1.jpg", "headerForImage": {"Referer": "https://asura.test/"}},
    ]
    connector = ConsumetConnector(transport=FakeTransport({f"{base}/manga/asurascans/read": make_response(200, json_body=pages)}))
    connector.base_url = base
    connector.rate_limit = 0

    handle = connector.issue_page_handle("asurascans:ch-1")

    assert handle.urls == ("https://img.test/1.jpg", "https://img.test/2.jpg")
    assert handle.referer == "https://asura.test/"


def test_mangadex_cover_image_url_sizes():
    connector = MangaDexConnector()

    assert connector.cover_image_url("m1", "f.jpg") == "https://uploads.mangadex.org/covers/m1/f.jpg.256.jpg"
    assert connector.cover_image_url("m1", "f.jpg", "512").endswith("/m1/f.jpg.512.jpg")
    assert connector.cover_image_url("m1", "f.jpg", "original") == "https://uploads.mangadex.org/covers/m1/f.jpg"
    with pytest.raises(ValidationError):
        connector.cover_image_url("m1", "f.jpg", "huge")
