#!/usr/bin/env python3
"""
Utility classes and functions for the reading shelf service.

This module contains helpers shared by the feed fetcher and the image proxy,
including retry backoff, URL validation, cover URL normalization and text
sanitization for generated placeholders.
"""

from asyncio import sleep
from html import escape
from typing import Iterable, Optional
import re
from urllib.parse import urlsplit, urlunsplit

from config import get_logger

# Module-specific logger
logger = get_logger("utils")

# Fixed-size folders such as /75x75/
SIZE_FOLDER_RE = re.compile(r"/\d+x\d+/")
# Size/crop/quality infix blocks such as ._SY475_ or ._AC_UF1000,1000_QL80_
SIZE_INFIX_RE = re.compile(r"\._(?:(?:SX|SY|SS|QL|CR|AC|SR|RC|UX|UY|UF|US)[\d,]*_)+")
# Underscores left dangling in front of the extension
TRAILING_UNDERSCORE_RE = re.compile(r"_+(\.[A-Za-z0-9]+)$")

CONTROL_CHARS_RE = re.compile(r"[\x00-\x1f\x7f-\x9f]")


class RetryHelper:
    """Helper class for implementing retry logic with exponential backoff."""

    def __init__(self, max_retries: int = 3, base_delay: float = 1.0, max_delay: float = 30.0):
        """Initialize the retry helper.

        Args:
            max_retries: Maximum number of retry attempts
            base_delay: Base delay in seconds for exponential backoff
            max_delay: Maximum delay in seconds between retries
        """
        self.max_retries = max_retries
        self.base_delay = base_delay
        self.max_delay = max_delay

    def calculate_delay(self, attempt: int) -> float:
        """Calculate the delay for a given (0-based) retry attempt."""
        delay = self.base_delay * (2 ** attempt)
        return min(delay, self.max_delay)

    async def sleep_for_attempt(self, attempt: int):
        """Sleep for the calculated delay for the given attempt."""
        delay = self.calculate_delay(attempt)
        if delay > 0:
            logger.debug(f"Retry delay: sleeping for {delay:.2f} seconds")
            await sleep(delay)


def validate_url(url: Optional[str]) -> bool:
    """Validate if a string is a properly formatted absolute http(s) URL.

    Args:
        url: The URL string to validate

    Returns:
        True if the URL appears to be valid, False otherwise
    """
    if not url or not isinstance(url, str):
        return False

    try:
        parts = urlsplit(url.strip())
        return parts.scheme.lower() in ("http", "https") and bool(parts.hostname)
    except ValueError:
        return False


def url_host(url: Optional[str]) -> Optional[str]:
    """Return the lowercase hostname of ``url`` or None when it cannot be parsed."""
    if not validate_url(url):
        return None
    try:
        return (urlsplit(url.strip()).hostname or "").lower() or None
    except ValueError:
        return None


def is_allowed_host(url: Optional[str], allowed_hosts: Iterable[str]) -> bool:
    """Check whether ``url`` points at one of the allow-listed content hosts."""
    host = url_host(url)
    if not host:
        return False
    return host in {h.lower() for h in allowed_hosts}


def truncate_string(text: str, max_length: int, suffix: str = "...") -> str:
    """Truncate a string to a maximum length, adding a suffix if truncated.

    Args:
        text: The text to potentially truncate
        max_length: Maximum allowed length (including suffix)
        suffix: Suffix to add when truncating

    Returns:
        The original text or truncated version with suffix
    """
    if not text or len(text) <= max_length:
        return text

    if len(suffix) >= max_length:
        return text[:max_length]

    return text[:max_length - len(suffix)] + suffix


def _normalize_once(url: str) -> str:
    parts = urlsplit(url)
    scheme = "https" if parts.scheme == "http" else parts.scheme
    path = SIZE_FOLDER_RE.sub("/", parts.path)
    path = SIZE_INFIX_RE.sub("_", path)
    path = TRAILING_UNDERSCORE_RE.sub(r"\1", path)
    return urlunsplit((scheme, parts.netloc, path, "", ""))


def normalize_cover_url(url: Optional[str]) -> Optional[str]:
    """Rewrite a cover URL so it asks the origin for its largest rendition.

    Forces https, drops fixed-size folders, the query string, and the
    size/crop/quality filename infixes, then collapses the underscore those
    leave in front of the extension. The rules are repeated until the URL
    stops changing, so normalizing a normalized URL is a no-op.

    Anything that is not an absolute http(s) URL, or that fails to parse,
    is returned unchanged.
    """
    if not url or not validate_url(url):
        return url

    try:
        current = url.strip()
        while True:
            rewritten = _normalize_once(current)
            if rewritten == current:
                return rewritten
            current = rewritten
    except ValueError as e:
        logger.warning(f"Failed to normalize cover URL {url}: {e}")
        return url


def clean_image_src(value: Optional[str]) -> Optional[str]:
    """Undo the escaped-quote form of an ``src`` attribute (``\\"https:\\/\\/...\\"``)."""
    if not value:
        return None
    cleaned = value.replace("\\/", "/").strip().strip("\\\"'").strip()
    cleaned = cleaned.replace("&amp;", "&")
    return cleaned if validate_url(cleaned) else None


def sanitize_placeholder_text(text: Optional[str], max_length: int = 40, default: str = "Book cover") -> str:
    """Make a title safe to embed in an SVG ``<text>`` node."""
    if not text:
        return default
    cleaned = CONTROL_CHARS_RE.sub("", text)
    cleaned = " ".join(cleaned.split())
    if not cleaned:
        return default
    return escape(truncate_string(cleaned, max_length, suffix="…"), quote=True)
