#!/usr/bin/env python3
"""
Book cover image proxy.

Covers are fetched server-side because the content host rejects bare or
unidentified requests. Each lookup walks a fixed fallback chain:

    override -> normalized URL -> original URL -> default cover -> SVG placeholder

Every step that fails (bad status, transport error, timeout, disallowed
host) moves on to the next one, and the last step always produces an
image, so callers never see an upstream error.
"""

from asyncio import TimeoutError
import random
from time import monotonic
from typing import Dict, Iterable, Mapping, Optional, Tuple

from aiohttp import ClientError, ClientSession, ClientTimeout

from config import config, get_logger
from errors import ImageFetchError
from models import ChainStep, FetchProfile, ImageFetchRequest, ImageResult
from telemetry import get_tracer, trace_span
from utils import is_allowed_host, sanitize_placeholder_text, truncate_string, url_host

# Module-specific logger
logger = get_logger("proxy")
_tracer = get_tracer("proxy")

HTTP_OK = 200
DEFAULT_CONTENT_TYPE = "image/jpeg"
SVG_CONTENT_TYPE = "image/svg+xml"
READ_CHUNK_SIZE = 64 * 1024

PLACEHOLDER_SVG = """<svg xmlns="http://www.w3.org/2000/svg" width="150" height="225" viewBox="0 0 150 225">
  <rect width="150" height="225" fill="#f0f0f0"/>
  <rect x="15" y="15" width="120" height="195" fill="#e0e0e0" rx="2" ry="2"/>
  <text x="75" y="112.5" font-family="Arial" font-size="12" fill="#999" text-anchor="middle">{label}</text>
</svg>"""


def default_fetch_profile() -> FetchProfile:
    """Build the outbound identity profile from the loaded configuration."""
    return FetchProfile(
        user_agents=list(config.USER_AGENTS),
        default_referer=config.DEFAULT_REFERER,
        cache_mode=config.CACHE_MODE,
    )


def render_placeholder(title: Optional[str]) -> bytes:
    """Render the SVG used when no real cover can be obtained."""
    return PLACEHOLDER_SVG.format(label=sanitize_placeholder_text(title)).encode("utf-8")


class ImageProxy:
    """Fetches cover images through the fallback chain."""

    def __init__(
        self,
        session: Optional[ClientSession] = None,
        profile: Optional[FetchProfile] = None,
        allowed_hosts: Optional[Iterable[str]] = None,
        fallback_covers: Optional[Mapping[str, str]] = None,
        default_cover: Optional[str] = None,
        no_photo_marker: Optional[str] = None,
        cache_control: Optional[Mapping[str, str]] = None,
        rng: Optional[random.Random] = None,
    ) -> None:
        self.session = session
        self.profile = profile or default_fetch_profile()
        self.allowed_hosts = {h.lower() for h in (allowed_hosts if allowed_hosts is not None else config.ALLOWED_HOSTS)}
        self.fallback_covers = dict(fallback_covers if fallback_covers is not None else config.FALLBACK_COVERS)
        self.default_cover = default_cover or config.DEFAULT_COVER_URL
        self.no_photo_marker = no_photo_marker or config.NO_PHOTO_MARKER
        self.cache_control = dict(config.CACHE_CONTROL)
        if cache_control:
            self.cache_control.update(cache_control)
        self._rng = rng or random.Random()
        # url -> (expires_at, body, content_type)
        self._cache: Dict[str, Tuple[float, bytes, str]] = {}

    # ------------------------------------------------------------------
    # Fallback chain
    # ------------------------------------------------------------------
    @trace_span(
        "resolve_cover",
        tracer_name="proxy",
        attr_from_args=lambda self, request: {
            "cover.url": request.url,
            "cover.title": request.title,
            "cover.retry": request.retry,
        },
    )
    async def resolve(self, request: ImageFetchRequest) -> ImageResult:
        """Return image bytes for ``request``, falling back until something works."""
        logger.info(
            "Image proxy request for: %s, Referer: %s",
            truncate_string(request.url, 100),
            request.page,
        )

        # TryOverride
        override_url = self.fallback_covers.get(request.title) if request.title else None
        if override_url:
            logger.info(f'Using custom fallback for "{request.title}"')
            result = await self._attempt(ChainStep.OVERRIDE, override_url, request.page)
            if result:
                return result

        # TryNormalized
        if self._is_no_photo(request.url):
            logger.info("Detected no-photo placeholder, serving default cover")
        else:
            result = await self._attempt_allowed(ChainStep.NORMALIZED, request.url, request.page)
            if result:
                return result

            # TryOriginal
            original = request.original
            if original and original != request.url and not request.retry:
                logger.info(f"Trying original URL: {truncate_string(original, 100)}")
                result = await self._attempt_allowed(ChainStep.ORIGINAL, original, request.page)
                if result:
                    return result

        # TryDefaultRemote
        logger.info("Serving default cover as fallback")
        result = await self._attempt(ChainStep.DEFAULT_REMOTE, self.default_cover, request.page)
        if result:
            return result

        # ServeSyntheticPlaceholder
        logger.warning(f'Default cover unavailable, serving SVG placeholder for "{request.title or "Book cover"}"')
        return ImageResult(
            body=render_placeholder(request.title),
            content_type=SVG_CONTENT_TYPE,
            cache_control=self.cache_control["placeholder"],
            source=ChainStep.PLACEHOLDER,
        )

    def _is_no_photo(self, url: str) -> bool:
        return bool(self.no_photo_marker) and self.no_photo_marker in url

    async def _attempt_allowed(self, step: ChainStep, url: str, referer: Optional[str]) -> Optional[ImageResult]:
        if not is_allowed_host(url, self.allowed_hosts):
            logger.warning(f"Host not in allowed list, skipping {step.value} step: {url_host(url) or url[:100]}")
            return None
        return await self._attempt(step, url, referer)

    async def _attempt(self, step: ChainStep, url: str, referer: Optional[str]) -> Optional[ImageResult]:
        try:
            body, content_type = await self.fetch_image(url, referer)
        except ImageFetchError as e:
            logger.warning(f"Cover {step.value} step failed: {e}")
            return None
        cache_key = {
            ChainStep.OVERRIDE: "override",
            ChainStep.DEFAULT_REMOTE: "default_cover",
        }.get(step, "image")
        return ImageResult(
            body=body,
            content_type=content_type,
            cache_control=self.cache_control[cache_key],
            source=step,
        )

    # ------------------------------------------------------------------
    # Single fetch
    # ------------------------------------------------------------------
    def build_headers(self, referer: Optional[str] = None) -> Dict[str, str]:
        """Browser-like headers; the origin rejects requests without them."""
        return {
            "User-Agent": self._rng.choice(self.profile.user_agents),
            "Referer": referer or self.profile.default_referer,
            "Accept": "image/avif,image/webp,image/apng,image/svg+xml,image/*,*/*;q=0.8",
            "Sec-Fetch-Site": "cross-site",
            "Sec-Fetch-Mode": "no-cors",
            "Sec-Fetch-Dest": "image",
        }

    @trace_span(
        "fetch_image",
        tracer_name="proxy",
        attr_from_args=lambda self, url, referer=None: {"http.url": url},
    )
    async def fetch_image(self, url: str, referer: Optional[str] = None) -> Tuple[bytes, str]:
        """Fetch one image.

        Raises:
            ImageFetchError: on any non-200 status, transport error, timeout,
                non-image payload or oversized body.
        """
        cached = self._cache_get(url)
        if cached:
            logger.debug(f"Serving cached image for {truncate_string(url, 100)}")
            return cached

        if self.session is None:
            async with ClientSession() as session:
                body, content_type = await self._fetch(session, url, referer)
        else:
            body, content_type = await self._fetch(self.session, url, referer)
        self._cache_put(url, body, content_type)
        return body, content_type

    async def _fetch(self, session: ClientSession, url: str, referer: Optional[str]) -> Tuple[bytes, str]:
        headers = self.build_headers(referer)
        timeout = ClientTimeout(total=config.HTTP_TIMEOUT)
        try:
            async with session.get(url, headers=headers, timeout=timeout) as response:
                if response.status != HTTP_OK:
                    raise ImageFetchError(url, f"HTTP {response.status}")
                content_type = (response.headers.get("Content-Type") or DEFAULT_CONTENT_TYPE).split(";")[0].strip()
                if content_type.startswith("text/"):
                    raise ImageFetchError(url, f"unexpected content type {content_type}")
                if response.content_length is not None and response.content_length > config.MAX_IMAGE_BYTES:
                    raise ImageFetchError(url, f"body too large ({response.content_length} bytes declared)")
                body = bytearray()
                async for chunk in response.content.iter_chunked(READ_CHUNK_SIZE):
                    body.extend(chunk)
                    if len(body) > config.MAX_IMAGE_BYTES:
                        raise ImageFetchError(url, f"body too large (over {config.MAX_IMAGE_BYTES} bytes)")
        except (ClientError, TimeoutError, ValueError) as e:
            raise ImageFetchError(url, f"{e.__class__.__name__} {e}".strip()) from e
        if not body:
            raise ImageFetchError(url, "empty body")
        return bytes(body), content_type or DEFAULT_CONTENT_TYPE

    # ------------------------------------------------------------------
    # Short-lived in-process cache (cache_mode=prefer-cache)
    # ------------------------------------------------------------------
    def _cache_enabled(self) -> bool:
        return self.profile.prefer_cache and config.IMAGE_CACHE_TTL > 0

    def _cache_get(self, url: str) -> Optional[Tuple[bytes, str]]:
        if not self._cache_enabled():
            return None
        hit = self._cache.get(url)
        if not hit:
            return None
        expires_at, body, content_type = hit
        if expires_at < monotonic():
            del self._cache[url]
            return None
        return body, content_type

    def _cache_put(self, url: str, body: bytes, content_type: str) -> None:
        if not self._cache_enabled():
            return
        if len(self._cache) >= config.IMAGE_CACHE_MAX_ENTRIES:
            # Evict the entry closest to expiry
            oldest = min(self._cache, key=lambda k: self._cache[k][0])
            del self._cache[oldest]
        self._cache[url] = (monotonic() + config.IMAGE_CACHE_TTL, body, content_type)
