import pytest
from aiohttp.test_utils import TestClient, TestServer

from config import config
from conftest import FakeResponse
from server import create_app

FEED = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0"><channel><title>Updates</title>
<item>
  <title>Jane is currently reading 'The Buried Giant' by Kazuo Ishiguro</title>
  <link>https://www.goodreads.com/review/show/9</link>
  <description><![CDATA[<img src="https://i.gr-assets.com/images/S/x/22522805._SY75_.jpg" /> page 10 of 317]]></description>
</item>
</channel></rss>
"""

COVER = "https://i.gr-assets.com/images/S/x/22522805.jpg"


@pytest.mark.asyncio
async def test_image_proxy_requires_url(fake_session):
    async with TestClient(TestServer(create_app(session=fake_session()))) as client:
        resp = await client.get("/api/image-proxy")
        assert resp.status == 400
        assert await resp.json() == {"error": "No image URL provided"}


@pytest.mark.asyncio
async def test_image_proxy_serves_image(fake_session, image_response):
    session = fake_session({COVER: image_response(b"jpeg-bytes", "image/jpeg")})
    async with TestClient(TestServer(create_app(session=session))) as client:
        resp = await client.get("/api/image-proxy", params={"url": COVER, "title": "The Buried Giant"})
        assert resp.status == 200
        assert resp.headers["Content-Type"] == "image/jpeg"
        assert resp.headers["Cache-Control"] == config.CACHE_CONTROL["image"]
        assert resp.headers["Access-Control-Allow-Origin"] == "*"
        assert resp.headers["X-Cover-Source"] == "normalized"
        assert await resp.read() == b"jpeg-bytes"


@pytest.mark.asyncio
async def test_image_proxy_never_fails_upstream(fake_session):
    # Every upstream answers 404, including the default cover
    async with TestClient(TestServer(create_app(session=fake_session()))) as client:
        resp = await client.get("/api/image-proxy", params={"url": COVER, "title": "The Buried Giant"})
        assert resp.status == 200
        assert resp.headers["Content-Type"].startswith("image/svg+xml")
        assert resp.headers["X-Cover-Source"] == "placeholder"
        assert b"The Buried Giant" in await resp.read()


@pytest.mark.asyncio
async def test_book_cover_path_variant(fake_session, image_response):
    session = fake_session({COVER: image_response(b"png-bytes", "image/png")})
    async with TestClient(TestServer(create_app(session=session))) as client:
        resp = await client.get("/api/book-cover/https%3A%2F%2Fi.gr-assets.com%2Fimages%2FS%2Fx%2F22522805.jpg")
        assert resp.status == 200
        assert await resp.read() == b"png-bytes"
    assert session.urls == [COVER]


@pytest.mark.asyncio
async def test_shelf_endpoint(fake_session):
    session = fake_session({config.FEED_URL: FakeResponse(body=FEED)})
    async with TestClient(TestServer(create_app(session=session))) as client:
        for path in ("/api/shelf", "/api/goodreads"):
            resp = await client.get(path)
            assert resp.status == 200
            assert resp.headers["Cache-Control"] == config.CACHE_CONTROL["shelf"]
            data = await resp.json()
            assert data["recentlyRead"] == []
            [entry] = data["currentlyReading"]
            assert entry["title"] == "The Buried Giant"
            assert entry["author"] == "Kazuo Ishiguro"
            assert entry["progress"] == "page 10 of 317"
            assert entry["coverUrlNormalized"] == COVER
            assert "/api/image-proxy?url=" in entry["proxyUrl"]


@pytest.mark.asyncio
async def test_shelf_endpoint_reports_feed_failure(fake_session):
    session = fake_session({config.FEED_URL: FakeResponse(status=503)})
    async with TestClient(TestServer(create_app(session=session))) as client:
        resp = await client.get("/api/shelf")
        assert resp.status == 500
        assert resp.headers["Cache-Control"] == "no-store"
        data = await resp.json()
        assert data["currentlyReading"] == [] and data["recentlyRead"] == []
        assert "503" in data["error"]


@pytest.mark.asyncio
async def test_healthz(fake_session):
    async with TestClient(TestServer(create_app(session=fake_session()))) as client:
        resp = await client.get("/healthz")
        assert resp.status == 200
        data = await resp.json()
        assert data["status"] == "ok"
        assert data["feed_url"] == config.FEED_URL


@pytest.mark.asyncio
async def test_book_cover_keeps_literal_percent(fake_session, image_response):
    target = "https://i.gr-assets.com/images/a%25b.jpg"
    session = fake_session({target: image_response(b"jpeg-bytes")})
    async with TestClient(TestServer(create_app(session=session))) as client:
        resp = await client.get("/api/book-cover/https%3A%2F%2Fi.gr-assets.com%2Fimages%2Fa%2525b.jpg")
        assert resp.status == 200
        assert resp.headers["X-Cover-Source"] == "normalized"
    assert session.urls == [target]
