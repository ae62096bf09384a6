"""Chapter page proxying with a short-lived handle cache."""

from .cache import HandleCache
from .proxy import PagePayload, ReaderProxy, parse_page_index

__all__ = ["HandleCache", "PagePayload", "ReaderProxy", "parse_page_index"]
