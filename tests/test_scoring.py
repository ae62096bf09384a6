from datetime import datetime

import pytest

from mangahook_app.search.scoring import (
    SearchFilters, SortKey, SortOrder, TagQuery, normalize_text, rank,
    text_match_strength, total_pages
)
from sources.base import ContentRating, MangaResult, MangaStatus, TagResult
from sources.errors import ValidationError


def _manga(mid, tags=(), title=None, **kwargs):
    return MangaResult(
        id=mid,
        source="mangadex",
        title=title or mid.upper(),
        tags=[TagResult(id=t, name=t.title()) for t in tags],
        **kwargs
    )


def _ids(response):
    return [record.id for record, _ in response.results]


def test_required_preferred_excluded_example():
    a = _manga("a", ["action", "romance", "comedy"])
    b = _manga("b", ["action", "horror"])
    c = _manga("c", ["action"])
    tags = TagQuery.of(required=["action"], preferred=["romance", "comedy"], excluded=["horror"])

    response = rank([a, b, c], tag_query=tags, preferred_weight=0.5)

    assert _ids(response) == ["a", "c"]
    assert [score for _, score in response.results] == [2.0, 1.0]
    assert response.total == 2


def test_tag_refs_match_names_case_insensitively():
    a = _manga("a", ["action"])
    assert rank([a], tag_query=TagQuery.of(required=["ACTION"])).total == 1
    assert rank([a], tag_query=TagQuery.of(excluded=["Action"])).total == 0


def test_adding_a_preferred_tag_never_lowers_a_score():
    record = _manga("a", ["action", "romance"])
    before = rank([record], tag_query=TagQuery.of(preferred=["action"])).results[0][1]
    after = rank([record], tag_query=TagQuery.of(preferred=["action", "romance"])).results[0][1]
    assert after >= before


def test_every_result_passes_every_filter():
    records = [
        _manga("a", status=MangaStatus.ONGOING, total_chapters=50, original_language="ja"),
        _manga("b", status=MangaStatus.COMPLETED, total_chapters=150, original_language="ko"),
        _manga("c", status=MangaStatus.COMPLETED, total_chapters=None, original_language="ko"),
        _manga("d", status=MangaStatus.COMPLETED, total_chapters=120,
               content_rating=ContentRating.EROTICA, original_language="ko"),
    ]
    filters = SearchFilters(
        statuses=frozenset({MangaStatus.COMPLETED}),
        content_ratings=frozenset({ContentRating.SAFE, ContentRating.SUGGESTIVE}),
        languages=frozenset({"ko"}),
        min_chapters=100,
    )

    assert _ids(rank(records, filters=filters)) == ["b"]


def test_limit_zero_and_offset_past_end():
    records = [_manga(str(i)) for i in range(5)]

    empty = rank(records, limit=0)
    assert empty.results == [] and empty.total == 5 and empty.total_pages == 0

    past = rank(records, limit=2, offset=10)
    assert past.results == [] and past.total == 5 and past.total_pages == 3


def test_total_pages():
    assert total_pages(0, 20) == 0
    assert total_pages(41, 20) == 3
    assert total_pages(40, 20) == 2


def test_sort_puts_missing_values_last_both_ways():
    records = [_manga("none"), _manga("old", year=1999), _manga("new", year=2020)]

    assert _ids(rank(records, sort=SortKey.YEAR, order=SortOrder.DESC)) == ["new", "old", "none"]
    assert _ids(rank(records, sort=SortKey.YEAR, order=SortOrder.ASC)) == ["old", "new", "none"]


def test_ties_keep_insertion_order():
    records = [_manga(mid, followed_count=10) for mid in ("x", "y", "z")]
    assert _ids(rank(records, sort=SortKey.POPULARITY)) == ["x", "y", "z"]
    assert _ids(rank(records, sort=SortKey.POPULARITY, order=SortOrder.ASC)) == ["x", "y", "z"]


def test_relevance_falls_back_to_popularity_then_recency():
    records = [
        _manga("quiet", followed_count=1, source_updated_at=datetime(2024, 1, 1)),
        _manga("loud-old", followed_count=500, source_updated_at=datetime(2020, 1, 1)),
        _manga("loud-new", followed_count=500, source_updated_at=datetime(2024, 1, 1)),
    ]
    assert _ids(rank(records)) == ["loud-new", "loud-old", "quiet"]


def test_score_outranks_sort_key():
    records = [
        _manga("popular", ["action"], followed_count=9000),
        _manga("preferred", ["action", "romance"], followed_count=1),
    ]
    response = rank(records, tag_query=TagQuery.of(preferred=["romance"]), sort=SortKey.POPULARITY)
    assert _ids(response) == ["preferred", "popular"]


def test_title_sort_is_case_insensitive():
    records = [_manga("1", title="beta"), _manga("2", title="Alpha"), _manga("3", title="gamma")]
    assert _ids(rank(records, sort=SortKey.TITLE, order=SortOrder.ASC)) == ["2", "1", "3"]


def test_text_match_strength_levels():
    solo = _manga("s", title="Solo Leveling", alt_titles=["Na Honjaman Level Up"],
                  description="An E-rank hunter wakes up.")

    assert text_match_strength("solo leveling", solo) == 1.0
    assert text_match_strength("Solo", solo) == 0.9
    assert 0.0 < text_match_strength("solo levelling", solo) < 0.9
    assert text_match_strength("hunter", solo) == pytest.approx(0.3)
    assert text_match_strength("one piece", solo) == 0.0


def test_text_query_filters_and_orders():
    records = [
        _manga("a", title="Solo Leveling: Ragnarok"),
        _manga("b", title="Solo Leveling"),
        _manga("c", title="One Piece"),
    ]
    assert _ids(rank(records, query_text="solo leveling")) == ["b", "a"]


def test_normalize_text():
    assert normalize_text("  Re:Zero -- Starting   Life! ") == "re zero starting life"
    assert normalize_text(None) == ""


@pytest.mark.parametrize("kwargs", [
    {"limit": -1},
    {"offset": -5},
    {"limit": 101},
    {"query_text": "x" * 201},
    {"filters": SearchFilters(min_chapters=10, max_chapters=5)},
    {"filters": SearchFilters(min_year=-1)},
])
def test_invalid_requests_are_rejected(kwargs):
    with pytest.raises(ValidationError):
        rank([_manga("a")], **kwargs)
