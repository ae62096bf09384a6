"""
================================================================================
MangaHook - Natural Language Query Parser
================================================================================
Turns story-style queries into structured search parameters.

    "cultivation without harem"
        -> preferred=[cultivation tag], excluded=[harem tag]
    "completed manhwa 100+ chapters"
        -> status=COMPLETED, language=ko, min_chapters=100

Pipeline: lowercase -> expand aliases (murim -> martial arts) -> scan words
left to right. Exclusion keywords flag the next tag, status and language
keywords become filters, "N+ chapters" sets the chapter floor, tags are
tried as two-word phrases before single words, everything else is kept as
free text.

Tag ids are MangaDex tag UUIDs.
================================================================================
"""

import re
from dataclasses import dataclass, field
from typing import Dict, List, Optional

from sources.base import Demographic, MangaStatus

from .scoring import SearchFilters, TagQuery

# =============================================================================
# VOCABULARY
# =============================================================================

TAG_MAPPINGS: Dict[str, List[str]] = {
    # Genres
    "action": ["391b0423-d847-456f-aff0-8b0cfc03066b"],
    "adventure": ["87cc87cd-a395-47af-b27a-93258283bbc6"],
    "comedy": ["4d32cc48-9f00-4cca-9b5a-a839f0764984"],
    "drama": ["b9af3a63-f058-46de-a9a0-e0c13906197a"],
    "fantasy": ["cdc58593-87dd-415e-bbc0-2ec27bf404cc"],
    "horror": ["cdad7e68-1419-41dd-bdce-27753074a640"],
    "mystery": ["ee968100-4191-4968-93d3-f82d72be7e46"],
    "psychological": ["3b60b75c-a2d7-4860-ab56-05f391bb889c"],
    "romance": ["423e2eae-a7a2-4a8b-ac03-a8351462d71d"],
    "slice of life": ["e5301a23-ebd9-49dd-a0cb-2add944c7fe9"],
    "sci-fi": ["256c8bd9-4904-4360-bf4f-508a76571a84"],
    "thriller": ["07251805-a27e-4d59-b488-f0bfbec15168"],
    "tragedy": ["f8f62932-27da-4fe4-8ee1-6779a8c5edba"],

    # Themes
    "isekai": ["ace04997-f6bd-436e-b261-779182193d3d"],
    "reincarnation": ["0bc90acb-ccc1-44ca-a34a-b9f3a73259d0"],
    "time travel": ["292e862b-2d17-4062-90a2-0356caa4ae27"],
    "revenge": ["0a39b5a1-b235-4886-a747-1d05d216532d"],
    "harem": ["aafb99c1-7f60-43fa-b75f-fc9502ce29c7"],
    "reverse harem": ["65761a2a-415e-47f3-bef2-a9dababba7a6"],
    "cultivation": ["292e862b-2d17-4062-90a2-0356caa4ae27"],
    "martial arts": ["799c202e-7daa-44eb-9cf7-8a3c0441531e"],
    "magic": ["a1f53773-c69a-4ce5-8cab-fffcd90b1565"],
    "supernatural": ["eabc5b4c-6aff-42f3-b657-3e90cbd00b75"],
    "school life": ["caaa44eb-cd40-4177-b930-79d3ef2afe87"],
    "video games": ["9438db5a-7e2a-4ac0-b39e-e0d95a34b8a8"],
    "virtual reality": ["8c86611e-fab7-4986-9dec-d1a2f44acdd5"],
    "monster girls": ["dd1f77c5-dea9-4e2b-97ae-224af09caf99"],
    "demons": ["39730448-9a5f-48a2-85b0-a70db87b1233"],
    "vampires": ["d7d1730f-6eb0-4ba6-9437-602cac38664c"],
    "zombies": ["631ef465-9aba-4afb-b0fc-ea10efe274a8"],
    "ghosts": ["3bb26d85-09d5-4d2e-880c-c34b974339e9"],
    "survival": ["5fff9cde-849c-4b78-aab0-0d52b2ee1d25"],
    "post-apocalyptic": ["9467335a-1b83-4497-9231-765337a00b96"],
    "military": ["ac72833b-c4e9-4c7e-a01e-35e65f0d8d3c"],
    "police": ["df33b754-73a3-4c54-80e6-1a74a8058539"],
    "crime": ["5ca48985-9a9d-4bd8-be29-80dc0303db72"],

    # Character types
    "smart mc": ["3b60b75c-a2d7-4860-ab56-05f391bb889c"],
    "op mc": ["f5ba408b-0e7a-484d-8d49-4e9125ac96de"],
    "weak to strong": ["acc803a4-c95a-4c22-86fc-eb6571140571"],
    "antihero": ["5bd0e105-4481-44ca-b6e7-7544f56b27fc"],
    "villainess": ["d14322ac-4d6f-4e9b-afd9-629d5f4d8a41"],

    # Tone
    "dark": ["3b60b75c-a2d7-4860-ab56-05f391bb889c"],
    "gore": ["b29d6a3d-1569-4e7a-8caf-7557bc92cd5d"],
    "mature": ["97893a4c-12af-4dac-b6be-0dffb353568e"],
    "adult": ["97893a4c-12af-4dac-b6be-0dffb353568e"],
    "wholesome": ["e197df38-d0e7-43b5-9b09-2842d0c326dd"],
    "fluffy": ["e197df38-d0e7-43b5-9b09-2842d0c326dd"],

    # Format
    "full color": ["f5ba408b-0e7a-484d-8d49-4e9125ac96de"],
    "long strip": ["3e2b8dae-350e-4ab8-a8ce-016e844b9f0d"],
    "adaptation": ["f4122d1c-3b44-44d0-9936-ff7502c39ad3"],
}

EXCLUSION_KEYWORDS = ("without", "no", "not", "except", "excluding", "-")

STATUS_KEYWORDS: Dict[str, MangaStatus] = {
    "completed": MangaStatus.COMPLETED,
    "complete": MangaStatus.COMPLETED,
    "finished": MangaStatus.COMPLETED,
    "ended": MangaStatus.COMPLETED,
    "ongoing": MangaStatus.ONGOING,
    "updating": MangaStatus.ONGOING,
    "hiatus": MangaStatus.HIATUS,
    "cancelled": MangaStatus.CANCELLED,
    "canceled": MangaStatus.CANCELLED,
    "dropped": MangaStatus.CANCELLED,
}

LANGUAGE_KEYWORDS: Dict[str, str] = {
    "manga": "ja",
    "japanese": "ja",
    "manhwa": "ko",
    "korean": "ko",
    "manhua": "zh",
    "chinese": "zh",
    "webtoon": "ko",
}

# MangaDex keeps demographics out of its tag list
DEMOGRAPHIC_KEYWORDS: Dict[str, Demographic] = {
    "shounen": Demographic.SHOUNEN,
    "shoujo": Demographic.SHOUJO,
    "seinen": Demographic.SEINEN,
    "josei": Demographic.JOSEI,
}

TERM_ALIASES: Dict[str, str] = {
    "mc": "main character",
    "ml": "male lead",
    "fl": "female lead",
    "op": "overpowered",
    "regression": "time travel",
    "regressor": "time travel",
    "transmigration": "reincarnation",
    "transmigrator": "reincarnation",
    "system": "video games",
    "cheat": "video games",
    "dungeon": "video games",
    "tower": "video games",
    "gate": "video games",
    "murim": "martial arts",
    "wuxia": "martial arts",
    "xianxia": "cultivation",
    "xuanhuan": "cultivation",
}

_COUNT_RE = re.compile(r"^(\d+)\+?$")


@dataclass
class ParsedQuery:
    text: str = ""
    included_tags: List[str] = field(default_factory=list)
    preferred_tags: List[str] = field(default_factory=list)
    excluded_tags: List[str] = field(default_factory=list)
    status: Optional[MangaStatus] = None
    original_language: Optional[str] = None
    demographic: Optional[Demographic] = None
    min_chapters: Optional[int] = None
    max_chapters: Optional[int] = None

    def to_tag_query(self) -> TagQuery:
        return TagQuery.of(self.included_tags, self.preferred_tags, self.excluded_tags)

    def to_filters(self, base: Optional[SearchFilters] = None) -> SearchFilters:
        """Overlay parsed filters on `base` (the request's own filters)."""
        base = base or SearchFilters()
        return SearchFilters(
            statuses=frozenset([self.status]) if self.status else base.statuses,
            content_ratings=base.content_ratings,
            demographics=frozenset([self.demographic]) if self.demographic else base.demographics,
            languages=frozenset([self.original_language]) if self.original_language else base.languages,
            min_chapters=self.min_chapters if self.min_chapters is not None else base.min_chapters,
            max_chapters=self.max_chapters if self.max_chapters is not None else base.max_chapters,
            min_year=base.min_year,
            max_year=base.max_year,
        )

    def to_dict(self) -> dict:
        return {
            "text": self.text,
            "included_tags": self.included_tags,
            "preferred_tags": self.preferred_tags,
            "excluded_tags": self.excluded_tags,
            "status": self.status.value if self.status else None,
            "original_language": self.original_language,
            "demographic": self.demographic.value if self.demographic else None,
            "min_chapters": self.min_chapters,
            "max_chapters": self.max_chapters,
        }


def _dedupe(values: List[str]) -> List[str]:
    seen = set()
    out = []
    for value in values:
        if value not in seen:
            seen.add(value)
            out.append(value)
    return out


def expand_aliases(text: str) -> str:
    for alias, replacement in TERM_ALIASES.items():
        text = re.sub(rf"\b{re.escape(alias)}\b", replacement, text)
    return text


def parse_natural_query(query: Optional[str]) -> ParsedQuery:
    result = ParsedQuery()
    if not query or not query.strip():
        return result

    words = expand_aliases(query.lower().strip()).split()
    text_parts: List[str] = []
    excluding = False
    i = 0

    while i < len(words):
        word = words[i]
        next_word = words[i + 1] if i + 1 < len(words) else None

        if word in EXCLUSION_KEYWORDS:
            excluding = True
            i += 1
            continue

        count = _COUNT_RE.match(word)
        if count and next_word and "chapter" in next_word:
            result.min_chapters = int(count.group(1))
            excluding = False
            i += 2
            continue

        if "chapter" in word:
            # Bare "chapters" carries no meaning on its own
            i += 1
            continue

        if word in STATUS_KEYWORDS:
            result.status = STATUS_KEYWORDS[word]
            excluding = False
            i += 1
            continue

        if word in LANGUAGE_KEYWORDS:
            result.original_language = LANGUAGE_KEYWORDS[word]
            excluding = False
            i += 1
            continue

        if word in DEMOGRAPHIC_KEYWORDS:
            result.demographic = DEMOGRAPHIC_KEYWORDS[word]
            excluding = False
            i += 1
            continue

        phrase, width = None, 1
        if next_word and f"{word} {next_word}" in TAG_MAPPINGS:
            phrase, width = f"{word} {next_word}", 2
        elif word in TAG_MAPPINGS:
            phrase = word

        if phrase:
            target = result.excluded_tags if excluding else result.preferred_tags
            target.extend(TAG_MAPPINGS[phrase])
            excluding = False
            i += width
            continue

        text_parts.append(word)
        excluding = False
        i += 1

    result.text = " ".join(text_parts).strip()
    result.included_tags = _dedupe(result.included_tags)
    result.preferred_tags = _dedupe(result.preferred_tags)
    result.excluded_tags = _dedupe(result.excluded_tags)
    return result
