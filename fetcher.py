#!/usr/bin/env python3
"""
Reading activity feed fetcher and entry extractor.

This module fetches the public reading activity feed, parses it with
feedparser and turns each item into a FeedEntry. Feed items are not
uniformly structured, so every field is extracted with a chain of
strategies; a field that cannot be extracted is left empty and never
causes the entry (or the feed) to fail.
"""

from asyncio import TimeoutError, get_running_loop
from datetime import datetime, timezone
from functools import partial
import re
from typing import Any, List, Optional, Tuple

from aiohttp import ClientError, ClientSession, ClientTimeout
from bs4 import BeautifulSoup
import feedparser

from config import config, get_logger
from errors import FeedFetchError
from models import EntryKind, FeedEntry, ShelfSnapshot
from telemetry import get_tracer, trace_span
from utils import RetryHelper, clean_image_src, normalize_cover_url, validate_url

# Module-specific logger
logger = get_logger("fetcher")
_tracer = get_tracer("fetcher")

HTTP_OK = 200

STRUCTURED_COVER_FIELDS = (
    "book_large_image_url",
    "book_medium_image_url",
    "book_small_image_url",
    "book_image_url",
)

# Opening quote after whitespace, closing quote before whitespace/punctuation, so
# apostrophes in names ("O'Brien") and titles ("Ender's Game") are not quote marks
QUOTED_TITLE_RE = re.compile(r"(?:(?<=\s)|^)['‘](.+?)['’](?=\s|$|[.,;:!?)])")
CURRENTLY_READING_RE = re.compile(r"currently reading", re.I)
FINISHED_RE = re.compile(r"\brated\b|finished reading", re.I)
TITLE_AFTER_STATUS_RE = re.compile(r"(?:currently reading|finished reading|rated)\s+(.*?)(?:\s+by\s+|$)", re.I)
AUTHOR_RE = re.compile(r"\bby\s+(.+?)\s*(?:\(|\d+\s+of\s+5\s+stars|$)", re.I)

PROGRESS_PATTERNS: Tuple[Tuple[re.Pattern, str], ...] = (
    (re.compile(r"(page \d+ of \d+|\d+%)", re.I), "{0}"),
    (re.compile(r"(\d+)% done", re.I), "{0}%"),
    (re.compile(r"on page (\d+)", re.I), "page {0}"),
)
STARS_TEXT_RE = re.compile(r"(\d+)\s+of\s+5\s+stars", re.I)
STAR_GLYPHS_RE = re.compile(r"★+")
ESCAPED_SRC_RE = re.compile(r'src=\\"(.*?)\\"', re.I)


class ShelfFetcher:
    """Fetches the activity feed and extracts currently-reading and finished entries."""

    def __init__(self, session: Optional[ClientSession] = None, feed_url: Optional[str] = None) -> None:
        self.session = session
        self.feed_url = feed_url or config.FEED_URL
        self.retry_helper = RetryHelper(max_retries=config.MAX_RETRIES, base_delay=config.RETRY_DELAY_BASE)
        self._direct_cover_re = self._build_direct_cover_re(config.ALLOWED_HOSTS)

    def _build_direct_cover_re(self, hosts: List[str]) -> re.Pattern:
        host_alt = "|".join(re.escape(h) for h in hosts) or r"[^/\s]+"
        return re.compile(rf"https?:\\?/\\?/(?:{host_alt})\\?/[^\s\"'<>]+?\.(?:jpe?g|png|gif|webp)", re.I)

    # ------------------------------------------------------------------
    # Fetching
    # ------------------------------------------------------------------
    @trace_span(
        "fetch_shelf",
        tracer_name="fetcher",
        attr_from_args=lambda self, *a, **k: {"feed.url": self.feed_url},
    )
    async def fetch_shelf(self) -> ShelfSnapshot:
        """Fetch and parse the feed, never raising.

        On failure an empty snapshot carrying ``error`` is returned so callers
        can tell "no data" apart from "no reading activity".
        """
        try:
            content = await self.fetch_feed_content()
        except FeedFetchError as e:
            logger.error(f"Error fetching reading feed: {e}")
            return ShelfSnapshot(error=str(e))

        entries = await get_running_loop().run_in_executor(None, partial(self.parse_feed, content))
        snapshot = ShelfSnapshot.from_entries(entries)
        logger.info(
            "Reading feed parsed: %d currently reading, %d recently read",
            len(snapshot.currently_reading),
            len(snapshot.recently_read),
        )
        return snapshot

    async def fetch_feed_content(self) -> bytes:
        """Fetch the raw feed, retrying transport errors with exponential backoff.

        Raises:
            FeedFetchError: on a non-200 status or when retries are exhausted.
        """
        if self.session is None:
            async with ClientSession() as session:
                return await self._fetch_with_retries(session)
        return await self._fetch_with_retries(self.session)

    async def _fetch_with_retries(self, session: ClientSession) -> bytes:
        headers = {
            "User-Agent": config.USER_AGENT,
            "Accept": "application/rss+xml, application/xml;q=0.9, */*;q=0.8",
        }
        timeout = ClientTimeout(total=config.HTTP_TIMEOUT)
        max_retries = self.retry_helper.max_retries
        for attempt in range(max_retries + 1):
            try:
                async with session.get(self.feed_url, headers=headers, timeout=timeout) as response:
                    if response.status != HTTP_OK:
                        raise FeedFetchError(f"Failed to fetch RSS: HTTP {response.status}", status=response.status)
                    return await response.read()
            except (ClientError, TimeoutError) as e:
                detail = f"{e.__class__.__name__} {e}".strip()
                if attempt < max_retries:
                    logger.warning(
                        "Retry %d/%d for reading feed due to error: %s",
                        attempt + 1,
                        max_retries,
                        detail,
                    )
                    await self.retry_helper.sleep_for_attempt(attempt)
                    continue
                raise FeedFetchError(f"Failed to fetch RSS after {max_retries} retries ({detail})") from e
        raise FeedFetchError("Failed to fetch RSS")

    # ------------------------------------------------------------------
    # Parsing
    # ------------------------------------------------------------------
    def parse_feed(self, content: Any) -> List[FeedEntry]:
        """Turn raw feed text into entries, preserving feed order.

        Items that are neither currently-reading nor finished are dropped.
        """
        # Extraction only: keep descriptions untouched so escaped src forms survive
        feed = feedparser.parse(content, sanitize_html=False, resolve_relative_uris=False)
        if feed.bozo and hasattr(feed, 'bozo_exception'):
            logger.warning(f"Feed parsing warning: {feed.bozo_exception}")

        entries: List[FeedEntry] = []
        for item in feed.entries:
            entry = self.extract_entry(item)
            if entry is not None:
                entries.append(entry)
        return entries

    def extract_entry(self, item) -> Optional[FeedEntry]:
        """Build a FeedEntry from one feedparser item, or None if it is not a reading update."""
        raw_title = " ".join(str(item.get("title") or "").split())
        kind = self.classify(raw_title)
        if kind is None:
            logger.debug(f"Skipping feed item without reading status: {raw_title[:80]}")
            return None

        description = str(item.get("summary") or item.get("description") or "")
        description_text = self._field(self._description_text, description) or ""

        cover_raw = self._field(self.extract_cover_url, item, description)
        entry = FeedEntry(
            kind=kind,
            title=self._field(self.extract_title, raw_title) or raw_title,
            author=self._field(self.extract_author, raw_title),
            cover_url_raw=cover_raw,
            cover_url_normalized=normalize_cover_url(cover_raw) if cover_raw else None,
            link=(str(item.get("link") or "").strip() or None),
            published=self._field(self._published, item),
        )
        if kind is EntryKind.CURRENTLY_READING:
            entry.progress = self._field(self.extract_progress, description_text, raw_title)
        else:
            entry.rating = self._field(self.extract_rating, item, raw_title, description_text)
        return entry

    def _field(self, extractor, *args):
        """Run one field extractor, degrading to None instead of failing the entry."""
        try:
            return extractor(*args)
        except (AttributeError, TypeError, ValueError, IndexError) as e:
            logger.debug(f"{extractor.__name__} failed: {e}")
            return None

    def _status_text(self, title: str) -> str:
        """The title with any quoted book title removed, so book names can't change the status."""
        return QUOTED_TITLE_RE.sub(" ", title)

    def classify(self, title: str) -> Optional[EntryKind]:
        status = self._status_text(title)
        if CURRENTLY_READING_RE.search(status):
            return EntryKind.CURRENTLY_READING
        if FINISHED_RE.search(status):
            return EntryKind.FINISHED
        return None

    def extract_title(self, title: str) -> Optional[str]:
        quoted = QUOTED_TITLE_RE.search(title)
        if quoted and quoted.group(1).strip():
            return quoted.group(1).strip()
        after_status = TITLE_AFTER_STATUS_RE.search(title)
        if after_status and after_status.group(1).strip():
            return after_status.group(1).strip()
        return None

    def extract_author(self, title: str) -> Optional[str]:
        quoted = QUOTED_TITLE_RE.search(title)
        tail = title[quoted.end():] if quoted else title
        match = AUTHOR_RE.search(tail)
        if not match:
            return None
        author = match.group(1).strip().rstrip(".,;:")
        return author or None

    def extract_progress(self, description_text: str, title: str) -> Optional[str]:
        for text in (description_text, title):
            if not text:
                continue
            for pattern, template in PROGRESS_PATTERNS:
                match = pattern.search(text)
                if match:
                    return template.format(match.group(1))
        return None

    def extract_rating(self, item, title: str, description_text: str) -> Optional[int]:
        candidates = []
        raw_rating = item.get("user_rating")
        if raw_rating not in (None, ""):
            try:
                candidates.append(int(str(raw_rating).strip()))
            except ValueError:
                logger.debug(f"Ignoring non-numeric user_rating {raw_rating!r}")
        stars_text = STARS_TEXT_RE.search(title)
        if stars_text:
            candidates.append(int(stars_text.group(1)))
        glyphs = STAR_GLYPHS_RE.search(description_text)
        if glyphs:
            candidates.append(len(glyphs.group(0)))
        for rating in candidates:
            if 1 <= rating <= 5:
                return rating
        return None

    def extract_cover_url(self, item, description: str) -> Optional[str]:
        for field_name in STRUCTURED_COVER_FIELDS:
            value = item.get(field_name)
            if isinstance(value, str) and validate_url(value.strip()):
                return value.strip()

        if description:
            soup = BeautifulSoup(description, "html.parser")
            for img in soup.find_all("img"):
                src = clean_image_src(img.get("src"))
                if src:
                    return src

            escaped = ESCAPED_SRC_RE.search(description)
            if escaped:
                src = clean_image_src(escaped.group(1))
                if src:
                    return src

            direct = self._direct_cover_re.search(description)
            if direct:
                return clean_image_src(direct.group(0))
        return None

    def _description_text(self, description: str) -> str:
        if not description:
            return ""
        return " ".join(BeautifulSoup(description, "html.parser").get_text(" ").split())

    def _published(self, item) -> Optional[str]:
        parsed = item.get("published_parsed") or item.get("updated_parsed")
        if not parsed:
            return None
        return datetime(*parsed[:6], tzinfo=timezone.utc).isoformat()
