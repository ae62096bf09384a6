"""
================================================================================
MangaHook - Reader Proxy
================================================================================
Serves chapter page images without exposing upstream image servers.

Flow for (chapter_id, page_index, variant):
  1. validate page_index (integer >= 0), no network before this passes
  2. route chapter_id to its provider (composite id rules)
  3. handle from cache, or issue a fresh one and cache it
  4. index past the end of the handle -> UpstreamNotFound
  5. fetch the image through the retry transport

Image 404 -> UpstreamNotFound. Anything else that is not 2xx drops the
cached handle (expired at-home credentials answer 403) and surfaces as
UpstreamUnavailable.

Covers take the same transport but skip steps 1-4: the provider maps a
stored cover file name straight to an upstream URL.
================================================================================
"""

import logging
import threading
from dataclasses import dataclass
from typing import Any, Iterator, Optional, Tuple

import requests

from sources.base import DEFAULT_COVER_SIZE, PageVariant
from sources.errors import UpstreamNotFound, UpstreamUnavailable, ValidationError

from ..log import log
from .cache import HandleCache

logger = logging.getLogger(__name__)

DEFAULT_CONTENT_TYPE = "image/jpeg"
CHUNK_SIZE = 64 * 1024


@dataclass
class PagePayload:
    content: bytes
    content_type: str = DEFAULT_CONTENT_TYPE


def parse_page_index(value: Any) -> int:
    """Accept ints and digit strings; reject everything else."""
    if isinstance(value, bool):
        raise ValidationError(f"Invalid page index: {value!r}")
    if isinstance(value, int):
        index = value
    else:
        text = str(value).strip() if value is not None else ""
        if not text.isdigit():
            raise ValidationError(f"Invalid page index: {value!r}")
        index = int(text)
    if index < 0:
        raise ValidationError(f"Invalid page index: {value!r}")
    return index


def _content_type(response: requests.Response) -> str:
    raw = (response.headers.get("Content-Type") or "").split(";")[0].strip().lower()
    return raw if raw.startswith("image/") else DEFAULT_CONTENT_TYPE


def _chunks(response: requests.Response) -> Iterator[bytes]:
    try:
        for chunk in response.iter_content(chunk_size=CHUNK_SIZE):
            if chunk:
                yield chunk
    finally:
        response.close()


class ReaderProxy:
    """
    Usage:
        proxy = ReaderProxy(get_provider_registry())
        payload = proxy.resolve_page("mangadex:<chapter uuid>", 0, PageVariant.DATA_SAVER)
    """

    def __init__(self, registry, cache: Optional[HandleCache] = None, transport=None):
        self.registry = registry
        self.cache = cache if cache is not None else HandleCache()
        self.transport = transport if transport is not None else registry.transport

    def resolve_page(
        self,
        chapter_id: str,
        page_index: Any,
        variant: PageVariant = PageVariant.NORMAL,
        cancel_event: Optional[threading.Event] = None
    ) -> PagePayload:
        response = self._open(chapter_id, page_index, variant, cancel_event)
        try:
            return PagePayload(content=response.content, content_type=_content_type(response))
        finally:
            response.close()

    def iter_page(
        self,
        chapter_id: str,
        page_index: Any,
        variant: PageVariant = PageVariant.NORMAL,
        cancel_event: Optional[threading.Event] = None
    ) -> Tuple[str, Iterator[bytes]]:
        """Like resolve_page, but streams the body in chunks."""
        response = self._open(chapter_id, page_index, variant, cancel_event, stream=True)
        return _content_type(response), _chunks(response)

    def iter_cover(
        self,
        manga_id: str,
        cover_file: str,
        size: str = DEFAULT_COVER_SIZE,
        source: Optional[str] = None,
        cancel_event: Optional[threading.Event] = None
    ) -> Tuple[str, Iterator[bytes]]:
        """
        Stream a cover image by its stored file name.

        Covers need no page handle; the provider turns (manga id, file name,
        size) into an upstream URL. Both path parts are single segments.
        """
        for part in (manga_id, cover_file):
            if not part or "/" in part or "\\" in part or ".." in part:
                raise ValidationError(f"Invalid cover path segment: {part!r}")

        provider = self.registry.get(source or self.registry.native_source)
        url = provider.cover_image_url(manga_id, cover_file, size)
        if url is None:
            raise UpstreamNotFound(f"{provider.name} has no cover host", source=provider.id, status_code=404)

        response = self.transport.send("GET", url, cancel_event=cancel_event, stream=True)
        if response.status_code == 404:
            response.close()
            raise UpstreamNotFound(f"Cover missing: {url}", source=provider.id, status_code=404)
        if not response.ok:
            response.close()
            log(f"⚠️ Cover host answered {response.status_code} for {provider.id} manga {manga_id}")
            raise UpstreamUnavailable(
                f"Cover host error {response.status_code}", source=provider.id, status_code=response.status_code
            )
        return _content_type(response), _chunks(response)

    # =========================================================================
    # INTERNALS
    # =========================================================================

    def _handle(self, source: str, chapter_id: str):
        key = (source, chapter_id)
        handle = self.cache.get(key)
        if handle is None:
            # Failures propagate and leave the cache untouched
            handle = self.registry.get(source).issue_page_handle(chapter_id)
            self.cache.put(key, handle)
        return handle

    def _open(
        self,
        chapter_id: str,
        page_index: Any,
        variant: PageVariant,
        cancel_event: Optional[threading.Event],
        stream: bool = False
    ) -> requests.Response:
        index = parse_page_index(page_index)
        source, native_id = self.registry.resolve_id(chapter_id)
        handle = self._handle(source, native_id)

        count = len(handle.filenames(variant))
        if index >= count:
            raise UpstreamNotFound(
                f"Page {index} out of range ({count} pages) for chapter {native_id}",
                source=source, status_code=404
            )

        url = handle.page_url(index, variant)
        headers = {"Referer": handle.referer} if handle.referer else {}
        response = self.transport.send("GET", url, cancel_event=cancel_event, headers=headers, stream=stream)

        if response.status_code == 404:
            response.close()
            raise UpstreamNotFound(f"Page image missing: {url}", source=source, status_code=404)
        if not response.ok:
            response.close()
            self.cache.invalidate((source, native_id))
            log(f"⚠️ Image server answered {response.status_code} for {source} chapter {native_id}")
            raise UpstreamUnavailable(
                f"Image server error {response.status_code}", source=source, status_code=response.status_code
            )
        return response
