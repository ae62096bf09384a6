from datetime import datetime

import pytest

from sources.base import ContentRating, Demographic, MangaStatus, TagGroup
from sources.consumet import ConsumetConnector, genre_slug, infer_status, parse_year
from sources.mangadex import MangaDexConnector
from sources.normalize import (
    estimate_total_chapters, find_relationship, flatten_alt_titles,
    map_content_rating, map_demographic, map_status, map_tag_group,
    parse_timestamp, preferred_text
)


def test_preferred_text_locale_order():
    assert preferred_text({"ja": "ワンピース", "en": "One Piece"}) == "One Piece"
    assert preferred_text({"ja": "ワンピース", "ko": "원피스"}) == "ワンピース"
    assert preferred_text({"ko": "원피스", "fr": "Une Pièce"}) == "원피스"
    assert preferred_text({"en": ""}, fallback="Untitled") == "Untitled"
    assert preferred_text(None, fallback="Untitled") == "Untitled"


def test_preferred_text_is_deterministic():
    texts = {"de": "A", "fr": "B"}
    assert {preferred_text(texts) for _ in range(5)} == {"A"}


def test_flatten_alt_titles_dedupes_in_order():
    alt = [{"ja": "進撃の巨人"}, {"en": "AoT", "ja-ro": "Shingeki"}, {"en": "AoT"}, {"en": "  "}]
    assert flatten_alt_titles(alt) == ["進撃の巨人", "AoT", "Shingeki"]
    assert flatten_alt_titles(None) == []


def test_find_relationship_first_match_or_none():
    rels = [
        {"type": "author", "id": "a"},
        {"type": "cover_art", "id": "c1"},
        {"type": "cover_art", "id": "c2"},
    ]
    assert find_relationship(rels, "cover_art")["id"] == "c1"
    assert find_relationship(rels, "artist") is None
    assert find_relationship(None, "cover_art") is None


@pytest.mark.parametrize("label, expected", [
    ("120", 120),
    ("120.0", 120),
    ("120.5", None),
    ("0", None),
    ("Oneshot", None),
    ("", None),
    (None, None),
])
def test_estimate_total_chapters(label, expected):
    assert estimate_total_chapters(label) == expected


def test_enum_defaults_never_raise():
    assert map_status("ongoing") is MangaStatus.ONGOING
    assert map_status("weird") is MangaStatus.UNKNOWN
    assert map_content_rating("EROTICA") is ContentRating.EROTICA
    assert map_content_rating(None) is ContentRating.SAFE
    assert map_demographic("seinen") is Demographic.SEINEN
    assert map_demographic("none") is None
    assert map_tag_group("format") is TagGroup.FORMAT
    assert map_tag_group("mystery") is TagGroup.THEME


def test_parse_timestamp_to_naive_utc():
    assert parse_timestamp("2024-05-01T10:00:00+02:00") == datetime(2024, 5, 1, 8, 0, 0)
    assert parse_timestamp("2024-05-01T10:00:00Z") == datetime(2024, 5, 1, 10, 0, 0)
    assert parse_timestamp("yesterday") is None


MANGADEX_RAW = {
    "id": "a1c7c817-4e59-43b7-9365-09675a149a6f",
    "type": "manga",
    "attributes": {
        "title": {"ja-ro": "Ore dake Level Up na Ken", "en": "Solo Leveling"},
        "altTitles": [{"ko": "나 혼자만 레벨업"}, {"en": "Only I Level Up"}],
        "description": {"en": "E-rank hunter."},
        "status": "completed",
        "contentRating": "safe",
        "publicationDemographic": "shounen",
        "originalLanguage": "ko",
        "lastChapter": "200",
        "lastVolume": "",
        "year": 2018,
        "updatedAt": "2024-03-01T00:00:00+00:00",
        "tags": [
            {"id": "391b0423-d847-456f-aff0-8b0cfc03066b",
             "attributes": {"name": {"en": "Action"}, "group": "genre"}},
            {"id": "f5ba408b-0e7a-484d-8d49-4e9125ac96de",
             "attributes": {"name": {"en": "Full Color"}, "group": "format"}},
        ],
    },
    "relationships": [
        {"id": "author-1", "type": "author"},
        {"id": "cover-1", "type": "cover_art", "attributes": {"fileName": "cover.jpg"}},
    ],
}


def test_mangadex_normalize():
    record = MangaDexConnector().normalize(MANGADEX_RAW)

    assert record.source == "mangadex"
    assert record.title == "Solo Leveling"
    assert record.alt_titles == ["나 혼자만 레벨업", "Only I Level Up"]
    assert record.status is MangaStatus.COMPLETED
    assert record.demographic is Demographic.SHOUNEN
    assert record.total_chapters == 200
    assert record.last_volume is None
    assert record.cover_art_id == "cover-1"
    assert record.cover_file == "cover.jpg"
    assert record.cover_url == "/api/cover/a1c7c817-4e59-43b7-9365-09675a149a6f/cover.jpg"
    assert record.followed_count is None
    assert record.source_updated_at == datetime(2024, 3, 1)
    assert [(t.name, t.group) for t in record.tags] == [("Action", TagGroup.GENRE), ("Full Color", TagGroup.FORMAT)]
    assert record.composite_id == "mangadex:a1c7c817-4e59-43b7-9365-09675a149a6f"


def test_mangadex_normalize_requires_id():
    with pytest.raises(ValueError):
        MangaDexConnector().normalize({"attributes": {}})


def test_mangadex_normalize_tolerates_malformed_shapes():
    connector = MangaDexConnector()

    record = connector.normalize({"id": "x", "attributes": {"tags": ["not-a-dict", {"id": "t1"}, None]}})
    assert [t.id for t in record.tags] == ["t1"]
    assert connector.normalize({"id": "y", "attributes": "oops"}).title == "Untitled"
    assert connector.normalize({"id": "z", "attributes": {"tags": "action"}}).tags == []

    with pytest.raises(ValueError):
        connector.normalize(["not", "a", "record"])


def test_mangadex_normalize_defaults_for_unknown_enums():
    record = MangaDexConnector().normalize({"id": "x", "attributes": {"status": "???", "contentRating": "???"}})
    assert record.status is MangaStatus.UNKNOWN
    assert record.content_rating is ContentRating.SAFE
    assert record.demographic is None
    assert record.title == "Untitled"


def test_consumet_normalize():
    raw = {
        "id": "solo-leveling-123",
        "provider": "asurascans",
        "title": "Solo Leveling",
        "genres": ["Action", "Full Color", "Mature"],
        "status": "Completed",
        "releaseDate": "Released 2018",
        "image": "https://img.example.test/solo.jpg",
        "chapters": [{"id": "c1", "chapterNumber": "1"}, {"id": "c200", "chapterNumber": "200"}],
    }
    record = ConsumetConnector().normalize(raw)

    assert record.id == "asurascans:solo-leveling-123"
    assert record.source == "consumet"
    assert record.status is MangaStatus.COMPLETED
    assert record.content_rating is ContentRating.SUGGESTIVE
    assert record.original_language == "ko"
    assert record.year == 2018
    assert record.total_chapters == 200
    assert record.cover_url == "https://img.example.test/solo.jpg"
    assert [t.id for t in record.tags] == ["genre-action", "genre-full-color", "genre-mature"]
    assert [t.group for t in record.tags] == [TagGroup.GENRE, TagGroup.FORMAT, TagGroup.CONTENT]


def test_consumet_helpers():
    assert infer_status("Ongoing") is MangaStatus.ONGOING
    assert infer_status("") is MangaStatus.UNKNOWN
    assert parse_year("Sep 2019 to ?") == 2019
    assert parse_year(None) is None
    assert genre_slug(" Slice of Life ") == "genre-slice-of-life"


def test_consumet_split_id():
    connector = ConsumetConnector()
    assert connector.split_id("mangapark:abc") == ("mangapark", "abc")
    assert connector.split_id("abc") == ("asurascans", "abc")
