#!/usr/bin/env python3
"""Common error types shared across modules.

Provides shared lightweight exceptions to avoid circular imports.
"""

from typing import Optional


class ShelfError(Exception):
    """Base class for reading shelf failures."""


class FeedFetchError(ShelfError):
    """Raised when the activity feed cannot be fetched.

    Attributes:
        status: HTTP status of the failed response, if one was received.
    """

    def __init__(self, message: str = "Failed to fetch reading feed", status: Optional[int] = None):
        super().__init__(message)
        self.status = status


class ImageFetchError(ShelfError):
    """Raised when a single upstream image fetch fails.

    Only used inside the image proxy; callers always receive a placeholder instead.
    """

    def __init__(self, url: str, reason: str):
        super().__init__(f"{reason}: {url}")
        self.url = url
        self.reason = reason

__all__ = ["ShelfError", "FeedFetchError", "ImageFetchError"]
