import os

# Keep test runs free of global tracer/instrumentation side effects
os.environ.setdefault("DISABLE_TELEMETRY", "true")

import pytest


class FakeStream:
    """Stands in for aiohttp's StreamReader; counts the bytes handed out."""

    def __init__(self, body, chunk_size=None):
        self._body = body
        self._chunk_size = chunk_size
        self.bytes_read = 0

    async def iter_chunked(self, n):
        step = self._chunk_size or n
        for start in range(0, len(self._body), step):
            chunk = self._body[start:start + step]
            self.bytes_read += len(chunk)
            yield chunk


class FakeResponse:
    """Just enough of aiohttp.ClientResponse for the fetcher and proxy."""

    def __init__(self, status=200, body=b"", headers=None, content_length=None, chunk_size=None):
        self.status = status
        self._body = body
        self.headers = headers or {}
        self.content_length = content_length
        self.content = FakeStream(body, chunk_size)

    async def read(self):
        return self._body

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False


class FakeSession:
    """Maps URLs to canned responses (or exceptions) and records every request.

    Unknown URLs answer 404.
    """

    def __init__(self, routes=None):
        self.routes = dict(routes or {})
        self.calls = []

    def get(self, url, **kwargs):
        self.calls.append((url, kwargs.get("headers") or {}))
        outcome = self.routes.get(url, FakeResponse(status=404))
        if isinstance(outcome, list):
            outcome = outcome.pop(0) if len(outcome) > 1 else outcome[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome

    @property
    def urls(self):
        return [url for url, _ in self.calls]

    async def close(self):
        pass


@pytest.fixture
def fake_session():
    def _make(routes=None):
        return FakeSession(routes)
    return _make


@pytest.fixture
def image_response():
    def _make(body=b"\x89PNG fake", content_type="image/jpeg", status=200):
        return FakeResponse(status=status, body=body, headers={"Content-Type": content_type})
    return _make
