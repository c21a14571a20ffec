#!/usr/bin/env python3
"""
HTTP API for rss2json.

Routes:
  GET /api/v1/rss2json?url=<feed url>   convert a feed
  GET /health                           liveness with uptime

Optional middlewares: bearer API-key authentication (API_KEY) and a one-line
request log (REQUEST_LOG).
"""

import json
from hmac import compare_digest
from time import monotonic
from typing import Any, Optional, Tuple

from aiohttp import web

from config import config, get_logger
from converter import FeedConverter
from errors import ConversionError
from model import compact, error_response
from transport import FeedTransport

logger = get_logger("server")

CONVERTER_KEY = web.AppKey("converter", FeedConverter)
STARTED_AT_KEY = web.AppKey("started_at", float)

MESSAGE_MISSING_URL = "Missing rss url."
MESSAGE_TIMEOUT = "RSS fetch timeout. The target server responded too slowly."
MESSAGE_UPSTREAM = "Cannot download this RSS feed, make sure the Rss URL is correct."
MESSAGE_UNAUTHORIZED = "unauthorized"


def json_response(payload: Any, status: int = 200) -> web.Response:
    # ensure_ascii=False keeps non-ASCII text and HTML markup readable
    return web.Response(
        text=json.dumps(payload, ensure_ascii=False),
        status=status,
        content_type="application/json",
        charset="utf-8",
    )


def map_error(error: ConversionError) -> Tuple[int, str]:
    """Translate an error kind into an HTTP status and public message."""
    if error.is_invalid_input:
        return 400, MESSAGE_MISSING_URL
    if error.timed_out:
        return 504, MESSAGE_TIMEOUT
    return 502, MESSAGE_UPSTREAM


async def convert_handler(request: web.Request) -> web.Response:
    converter = request.app[CONVERTER_KEY]
    url = request.query.get("url", "")
    try:
        result = await converter.convert(url)
    except ConversionError as e:
        status, message = map_error(e)
        logger.warning(f"Conversion failed for '{url}' ({e.kind}): {e}")
        return json_response(error_response(message), status)
    return json_response(compact(result))


async def health_handler(request: web.Request) -> web.Response:
    return json_response({
        "status": "ok",
        "uptime": monotonic() - request.app[STARTED_AT_KEY],
    })


def client_ip(request: web.Request) -> str:
    """First X-Forwarded-For hop, else the peer address."""
    forwarded = request.headers.get("X-Forwarded-For", "").split(",")[0].strip()
    if forwarded:
        return forwarded
    return request.remote or ""


def api_key_middleware(key: str):
    expected = ("bearer " + key.strip().lower()).encode()

    @web.middleware
    async def _auth(request: web.Request, handler):
        supplied = request.headers.get("Authorization", "").strip().lower().encode()
        if not compare_digest(supplied, expected):
            return json_response(error_response(MESSAGE_UNAUTHORIZED), 401)
        return await handler(request)

    return _auth


@web.middleware
async def request_log_middleware(request: web.Request, handler):
    start = monotonic()
    status = 500
    try:
        response = await handler(request)
        status = response.status
        return response
    except web.HTTPException as e:
        status = e.status
        raise
    finally:
        logger.info(
            "[request] %s %s %d %.1fms ip=%s",
            request.method,
            request.path_qs,
            status,
            (monotonic() - start) * 1000,
            client_ip(request),
        )


def create_app(
    converter: Optional[FeedConverter] = None,
    *,
    api_key: Optional[str] = None,
    request_log: Optional[bool] = None,
) -> web.Application:
    """Build the application.

    Without an explicit converter, one is built from configuration and its
    transport is closed on application cleanup.
    """
    api_key = config.API_KEY if api_key is None else api_key
    request_log = config.REQUEST_LOG if request_log is None else request_log

    middlewares = []
    if api_key and api_key.strip():
        middlewares.append(api_key_middleware(api_key))
    if request_log:
        middlewares.append(request_log_middleware)

    app = web.Application(middlewares=middlewares)
    owns_transport = converter is None
    if converter is None:
        converter = FeedConverter(FeedTransport.from_config(config))
    app[CONVERTER_KEY] = converter
    app[STARTED_AT_KEY] = monotonic()

    app.router.add_get("/api/v1/rss2json", convert_handler)
    app.router.add_get("/health", health_handler)

    if owns_transport:
        async def _close_transport(app: web.Application) -> None:
            await app[CONVERTER_KEY].transport.close()

        app.on_cleanup.append(_close_transport)
    return app
