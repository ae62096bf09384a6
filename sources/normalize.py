"""
Normalization helpers shared by connectors.

All functions here are pure: same input, same output, no I/O, no clock.
Enum mappers are lossy but total, they never raise on unknown strings.
"""

import os
from datetime import datetime, timezone
from typing import Any, Dict, Iterable, List, Mapping, Optional, Sequence

from .base import ContentRating, Demographic, MangaStatus, TagGroup

PRIMARY_LOCALE = os.environ.get("PRIMARY_LOCALE", "en")
SECONDARY_LOCALE = os.environ.get("SECONDARY_LOCALE", "ja")
DEFAULT_LOCALES = (PRIMARY_LOCALE, SECONDARY_LOCALE)


_STATUS_MAP = {
    "ongoing": MangaStatus.ONGOING,
    "completed": MangaStatus.COMPLETED,
    "hiatus": MangaStatus.HIATUS,
    "cancelled": MangaStatus.CANCELLED,
}

_RATING_MAP = {
    "safe": ContentRating.SAFE,
    "suggestive": ContentRating.SUGGESTIVE,
    "erotica": ContentRating.EROTICA,
    "pornographic": ContentRating.PORNOGRAPHIC,
}

_DEMOGRAPHIC_MAP = {
    "shounen": Demographic.SHOUNEN,
    "shoujo": Demographic.SHOUJO,
    "seinen": Demographic.SEINEN,
    "josei": Demographic.JOSEI,
}

_TAG_GROUP_MAP = {
    "genre": TagGroup.GENRE,
    "theme": TagGroup.THEME,
    "format": TagGroup.FORMAT,
    "content": TagGroup.CONTENT,
}


def _key(value: Any) -> str:
    return value.strip().lower() if isinstance(value, str) else ""


def map_status(value: Optional[str]) -> MangaStatus:
    return _STATUS_MAP.get(_key(value), MangaStatus.UNKNOWN)


def map_content_rating(value: Optional[str]) -> ContentRating:
    # Unknown ratings land on SAFE, not on an "unknown" bucket
    return _RATING_MAP.get(_key(value), ContentRating.SAFE)


def map_demographic(value: Optional[str]) -> Optional[Demographic]:
    return _DEMOGRAPHIC_MAP.get(_key(value))


def map_tag_group(value: Optional[str]) -> TagGroup:
    return _TAG_GROUP_MAP.get(_key(value), TagGroup.THEME)


def preferred_text(
    texts: Optional[Mapping[str, Any]],
    locales: Sequence[str] = DEFAULT_LOCALES,
    fallback: Optional[str] = ""
) -> Optional[str]:
    """
    Pick one value out of a {locale: text} map.

    Preference: each locale in `locales` in order, then the first non-empty
    value in the mapping's own order, then `fallback`.
    """
    if not isinstance(texts, Mapping):
        return fallback
    for locale in locales:
        value = texts.get(locale)
        if isinstance(value, str) and value:
            return value
    for value in texts.values():
        if isinstance(value, str) and value:
            return value
    return fallback


def flatten_alt_titles(alt_titles: Optional[Iterable[Any]]) -> List[str]:
    """Flatten [{locale: title}, ...] into one ordered, de-duplicated list."""
    seen = set()
    flat: List[str] = []
    for entry in alt_titles or []:
        values = entry.values() if isinstance(entry, Mapping) else [entry]
        for title in values:
            if not isinstance(title, str):
                continue
            title = title.strip()
            if title and title not in seen:
                seen.add(title)
                flat.append(title)
    return flat


def find_relationship(
    relationships: Optional[Iterable[Dict[str, Any]]],
    rel_type: str
) -> Optional[Dict[str, Any]]:
    """First relationship of the given type, or None."""
    for rel in relationships or []:
        if isinstance(rel, Mapping) and rel.get("type") == rel_type:
            return rel
    return None


def estimate_total_chapters(last_chapter: Optional[str]) -> Optional[int]:
    """'120' -> 120; '120.5', '0', 'Oneshot' and None -> None."""
    if not last_chapter:
        return None
    try:
        parsed = float(last_chapter)
    except (TypeError, ValueError):
        return None
    if parsed > 0 and parsed.is_integer():
        return int(parsed)
    return None


def parse_timestamp(value: Optional[str]) -> Optional[datetime]:
    """
    Parse an upstream ISO-8601 timestamp into a naive UTC datetime.

    Stored timestamps are naive UTC so SQLite and PostgreSQL compare alike.
    """
    if not value or not isinstance(value, str):
        return None
    text = value.strip()
    if text.endswith("Z"):
        text = text[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(text)
    except ValueError:
        return None
    if parsed.tzinfo is not None:
        parsed = parsed.astimezone(timezone.utc).replace(tzinfo=None)
    return parsed


def parse_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None
