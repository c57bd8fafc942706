#!/usr/bin/env python3
"""
Data types for the Reading Shelf service.

Nothing here is persisted: feed entries are rebuilt on every feed fetch and
image requests live for the duration of a single proxy call.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional
from urllib.parse import urlencode


class EntryKind(str, Enum):
    CURRENTLY_READING = "currently_reading"
    FINISHED = "finished"


class ChainStep(str, Enum):
    """Steps of the cover fallback chain, in the order they are attempted."""

    OVERRIDE = "override"
    NORMALIZED = "normalized"
    ORIGINAL = "original"
    DEFAULT_REMOTE = "default_remote"
    PLACEHOLDER = "placeholder"


@dataclass
class FeedEntry:
    """One parsed reading activity record.

    ``kind`` decides which optional fields are meaningful: ``progress`` only for
    currently-reading entries, ``rating`` only for finished ones. Any field that
    could not be extracted stays ``None`` and is omitted from the JSON form.
    """

    kind: EntryKind
    title: str
    author: Optional[str] = None
    cover_url_raw: Optional[str] = None
    cover_url_normalized: Optional[str] = None
    progress: Optional[str] = None
    rating: Optional[int] = None
    link: Optional[str] = None
    published: Optional[str] = None

    def proxy_url(self, base_url: str = "") -> Optional[str]:
        """Build the image-proxy URL a client should use to render this cover."""
        target = self.cover_url_normalized or self.cover_url_raw
        if not target:
            return None
        params = {"url": target}
        if self.cover_url_raw:
            params["original"] = self.cover_url_raw
        if self.title:
            params["title"] = self.title
        if self.link:
            params["page"] = self.link
        return f"{base_url}/api/image-proxy?{urlencode(params)}"

    def to_dict(self, proxy_base: Optional[str] = None) -> Dict[str, Any]:
        data = {
            "kind": self.kind.value,
            "title": self.title,
            "author": self.author,
            "coverUrlRaw": self.cover_url_raw,
            "coverUrlNormalized": self.cover_url_normalized,
            "progress": self.progress if self.kind is EntryKind.CURRENTLY_READING else None,
            "rating": self.rating if self.kind is EntryKind.FINISHED else None,
            "link": self.link,
            "published": self.published,
        }
        if proxy_base is not None:
            data["proxyUrl"] = self.proxy_url(proxy_base)
        return {k: v for k, v in data.items() if v is not None}


@dataclass
class ShelfSnapshot:
    """Result of one feed fetch, split by entry kind.

    An empty snapshot with ``error`` set means "no data", not "no activity".
    """

    currently_reading: List[FeedEntry] = field(default_factory=list)
    recently_read: List[FeedEntry] = field(default_factory=list)
    error: Optional[str] = None

    @classmethod
    def from_entries(cls, entries: List[FeedEntry]) -> "ShelfSnapshot":
        return cls(
            currently_reading=[e for e in entries if e.kind is EntryKind.CURRENTLY_READING],
            recently_read=[e for e in entries if e.kind is EntryKind.FINISHED],
        )

    @property
    def ok(self) -> bool:
        return self.error is None

    def to_dict(self, proxy_base: Optional[str] = None) -> Dict[str, Any]:
        data: Dict[str, Any] = {
            "currentlyReading": [e.to_dict(proxy_base) for e in self.currently_reading],
            "recentlyRead": [e.to_dict(proxy_base) for e in self.recently_read],
        }
        if self.error:
            data["error"] = self.error
        return data


@dataclass
class ImageFetchRequest:
    """A single cover lookup as received by the image proxy."""

    url: str
    original: Optional[str] = None
    title: str = ""
    page: Optional[str] = None
    retry: bool = False

    @classmethod
    def from_query(cls, query) -> Optional["ImageFetchRequest"]:
        """Build a request from query parameters; ``None`` when ``url`` is missing."""
        url = (query.get("url") or "").strip()
        if not url:
            return None
        return cls(
            url=url,
            original=(query.get("original") or "").strip() or None,
            title=(query.get("title") or "").strip(),
            page=(query.get("page") or "").strip() or None,
            retry=(query.get("retry") or "").lower() == "true",
        )


@dataclass
class FetchProfile:
    """Identity and caching knobs for outbound image fetches.

    A pool of one user agent makes requests deterministic, which is what tests use.
    """

    user_agents: List[str]
    default_referer: str
    cache_mode: str = "prefer-cache"

    @property
    def prefer_cache(self) -> bool:
        return self.cache_mode == "prefer-cache"


@dataclass
class ImageResult:
    """Bytes to send back to the client, plus the chain step that produced them."""

    body: bytes
    content_type: str
    cache_control: str
    source: ChainStep

    @property
    def is_placeholder(self) -> bool:
        return self.source is ChainStep.PLACEHOLDER
