#!/usr/bin/env python3
"""
HTTP surface for the reading shelf widget.

Routes:
    GET /api/shelf                 reading activity as JSON (alias: /api/goodreads)
    GET /api/image-proxy           cover image through the fallback chain
    GET /api/book-cover/{target}   path-style variant of the image proxy
    GET /healthz                   liveness and configuration summary
"""

from typing import Optional

from aiohttp import ClientSession, ClientTimeout, web

from config import config, get_logger
from fetcher import ShelfFetcher
from models import ImageFetchRequest, ImageResult
from proxy import ImageProxy
from telemetry import init_telemetry

# Module-specific logger
logger = get_logger("server")
init_telemetry("reading-shelf-server")

SESSION_KEY = web.AppKey("http_session", ClientSession)
FETCHER_KEY = web.AppKey("shelf_fetcher", ShelfFetcher)
PROXY_KEY = web.AppKey("image_proxy", ImageProxy)

CORS_HEADERS = {"Access-Control-Allow-Origin": "*"}


def _image_response(result: ImageResult) -> web.Response:
    return web.Response(
        body=result.body,
        content_type=result.content_type,
        headers={
            "Cache-Control": result.cache_control,
            "X-Cover-Source": result.source.value,
            **CORS_HEADERS,
        },
    )


async def shelf_handler(request: web.Request) -> web.Response:
    """Serve the parsed feed; a failed fetch is a 500 with the same JSON shape."""
    snapshot = await request.app[FETCHER_KEY].fetch_shelf()
    body = snapshot.to_dict(proxy_base=config.PUBLIC_BASE_URL)
    if not snapshot.ok:
        return web.json_response(body, status=500, headers={"Cache-Control": "no-store", **CORS_HEADERS})
    return web.json_response(body, headers={"Cache-Control": config.CACHE_CONTROL["shelf"], **CORS_HEADERS})


async def image_proxy_handler(request: web.Request) -> web.Response:
    fetch_request = ImageFetchRequest.from_query(request.query)
    if fetch_request is None:
        return web.json_response({"error": "No image URL provided"}, status=400, headers=CORS_HEADERS)
    result = await request.app[PROXY_KEY].resolve(fetch_request)
    return _image_response(result)


async def book_cover_handler(request: web.Request) -> web.Response:
    # match_info is already percent-decoded
    target = request.match_info.get("target", "").strip()
    if not target:
        return web.json_response({"error": "No image URL provided"}, status=400, headers=CORS_HEADERS)
    fetch_request = ImageFetchRequest(
        url=target,
        title=(request.query.get("title") or "").strip(),
        page=(request.query.get("page") or "").strip() or None,
    )
    result = await request.app[PROXY_KEY].resolve(fetch_request)
    return _image_response(result)


async def health_handler(request: web.Request) -> web.Response:
    return web.json_response({"status": "ok", **config.get_config_summary()})


def create_app(session: Optional[ClientSession] = None) -> web.Application:
    """Build the aiohttp application.

    Args:
        session: Optional client session for outbound fetches. When omitted one is
            created on startup and closed on cleanup.
    """
    app = web.Application()

    async def _http_session(app: web.Application):
        owned = session is None
        client = session or ClientSession(timeout=ClientTimeout(total=config.HTTP_TIMEOUT))
        app[SESSION_KEY] = client
        app[FETCHER_KEY] = ShelfFetcher(session=client)
        app[PROXY_KEY] = ImageProxy(session=client)
        logger.info("Reading shelf service started (feed: %s)", config.FEED_URL)
        yield
        if owned:
            await client.close()
        logger.info("Reading shelf service stopped")

    app.cleanup_ctx.append(_http_session)
    app.router.add_get("/api/shelf", shelf_handler)
    app.router.add_get("/api/goodreads", shelf_handler)
    app.router.add_get("/api/image-proxy", image_proxy_handler)
    app.router.add_get("/api/book-cover/{target:.+}", book_cover_handler)
    app.router.add_get("/healthz", health_handler)
    return app


def run(host: Optional[str] = None, port: Optional[int] = None) -> None:
    """Run the service until interrupted."""
    web.run_app(create_app(), host=host or config.SERVER_HOST, port=port or config.SERVER_PORT)
