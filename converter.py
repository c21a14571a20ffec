#!/usr/bin/env python3
"""
Feed to JSON converter.

Orchestrates one conversion: validate the URL, fetch the body once through the
bounded fetcher, parse it with feedparser, recover per-entry thumbnails from
the same bytes and assemble the response. Failures are raised as
``ConversionError`` tagged ``invalid_input`` or ``upstream``; nothing partial
is ever returned.

Thumbnails are paired with entries by position. If feedparser and the
thumbnail walk disagree about where entries start (malformed or unusual
feeds), thumbnails can end up on the wrong entry or be missing; this is a
known limitation of running two independent parsers.
"""

import io
import xml.sax
from asyncio import get_running_loop
from functools import partial
from typing import Any, Dict, List, Optional, Tuple
from urllib.parse import urlsplit

import feedparser

from config import get_logger
from errors import ConversionError, FeedParseError, invalid_input
from fetcher import BoundedFetcher, HeaderItems
from model import build_response, feed_meta, item_meta
from telemetry import init_telemetry, trace_span
from thumbnails import scan_thumbnails
from transport import FeedTransport

logger = get_logger("converter")
init_telemetry("rss2json")

FEEDPARSER_OPTIONS = {
    'sanitize_html': True,
    'resolve_relative_uris': False,
}

# Characters that can never appear in a URL host
INVALID_HOST_CHARS = frozenset('<>"{}|\\^`')

# feedparser keys the response is built from; never treated as extensions
CORE_KEYS = frozenset({
    'author', 'author_detail', 'authors', 'content', 'description', 'guidislink',
    'icon', 'id', 'image', 'link', 'links', 'logo', 'published', 'published_parsed',
    'subtitle', 'subtitle_detail', 'summary', 'summary_detail', 'title', 'title_detail',
    'updated', 'updated_parsed',
})


def validate_url(url: Optional[str]) -> str:
    """Return the trimmed URL or raise an ``invalid_input`` error."""
    if url is None or not url.strip():
        raise invalid_input("missing rss url")
    url = url.strip()
    try:
        parts = urlsplit(url)
        # out-of-range or non-numeric ports raise here
        parts.port
    except ValueError as e:
        raise invalid_input(f"malformed rss url: {url}") from e
    host = parts.hostname
    if parts.scheme.lower() not in ("http", "https") or not host:
        raise invalid_input(f"malformed rss url: {url}")
    if any(c.isspace() or ord(c) < 0x20 or ord(c) == 0x7f or c in INVALID_HOST_CHARS for c in host):
        raise invalid_input(f"malformed rss url: {url}")
    return url


def parse_feed(payload: bytes, url: str = ""):
    """Run feedparser on raw bytes and decide whether it produced a feed."""
    # A stream keeps feedparser from treating the payload as a URL or path.
    # Without a content-type feedparser assumes latin-1 for undeclared documents.
    # No content-location, so guids and links are not resolved against the feed URL.
    parsed = feedparser.parse(
        io.BytesIO(payload),
        response_headers={"content-type": "application/xml"},
        **FEEDPARSER_OPTIONS,
    )
    bozo_exception = parsed.get("bozo_exception")
    if not parsed.get("version"):
        raise FeedParseError(str(bozo_exception or "not an RSS or Atom document")) from bozo_exception
    if isinstance(bozo_exception, xml.sax.SAXParseException) and not parsed.get("entries"):
        raise FeedParseError(str(bozo_exception)) from bozo_exception
    if parsed.get("bozo"):
        logger.debug(f"Feed parsing warning for {url}: {bozo_exception}")
    return parsed


def strip_extensions(parsed) -> None:
    """Remove namespaced extension keys from the feed and every entry.

    feedparser reports known namespaces under its canonical prefix (MRSS is
    always ``media``) and unknown ones under the document's prefix. A prefix
    can collide with a core key such as ``author_detail``; those are kept.
    """
    prefixes = tuple(f"{prefix}_" for prefix in (parsed.get("namespaces") or {}) if prefix)
    if not prefixes:
        return
    for container in [parsed.get("feed") or {}] + list(parsed.get("entries") or []):
        for key in [k for k in container.keys() if k.startswith(prefixes) and k not in CORE_KEYS]:
            del container[key]


def pair_thumbnails(entries: List[Any], thumbnails: List[str]) -> List[Tuple[Any, str]]:
    """Pair the i-th entry with the i-th thumbnail; extra thumbnails are dropped."""
    return [
        (entry, thumbnails[index] if index < len(thumbnails) else "")
        for index, entry in enumerate(entries)
    ]


class FeedConverter:
    """Converts feed URLs into response dictionaries.

    Args:
        transport: Shared outbound transport (build once per process).
        max_bytes: Body ceiling; defaults to ``RSS_MAX_BYTES``.
        user_agent: Default User-Agent; defaults to ``USER_AGENT``.
        headers: Extra outbound headers applied to every fetch; defaults
            to ``RSS_HEADERS``.
    """

    def __init__(
        self,
        transport: FeedTransport,
        *,
        max_bytes: Optional[int] = None,
        user_agent: Optional[str] = None,
        headers: HeaderItems = None,
    ) -> None:
        self.transport = transport
        self.fetcher = BoundedFetcher(transport, max_bytes=max_bytes, user_agent=user_agent, default_headers=headers)

    async def run_in_executor(self, func, *args):
        return await get_running_loop().run_in_executor(None, partial(func, *args))

    @trace_span(
        "convert_feed",
        tracer_name="converter",
        attr_from_args=lambda self, url, *a, **kw: {"feed.url": url or ""},
    )
    async def convert(
        self,
        url: Optional[str],
        headers: HeaderItems = None,
        timeout: Optional[float] = None,
    ) -> Dict[str, Any]:
        """Fetch and convert one feed.

        Args:
            url: Absolute http(s) feed URL.
            headers: Per-call outbound headers, overriding configured ones.
            timeout: Per-call overall deadline in seconds.

        Raises:
            ConversionError: ``invalid_input`` for a missing or malformed URL,
                ``upstream`` for every later failure.
        """
        url = validate_url(url)
        payload = await self.fetcher.fetch(url, headers=headers, timeout=timeout)

        parsed = await self.run_in_executor(parse_feed, payload, url)
        strip_extensions(parsed)
        thumbnails = await self.run_in_executor(scan_thumbnails, payload)

        entries = list(parsed.get("entries") or [])
        if len(thumbnails) != len(entries):
            logger.debug(f"Thumbnail scan found {len(thumbnails)} entries, parser found {len(entries)} for {url}")

        items = [item_meta(entry, thumbnail) for entry, thumbnail in pair_thumbnails(entries, thumbnails)]
        logger.info(f"Converted {url}: {len(items)} items ({parsed.get('version')})")
        return build_response(feed_meta(parsed.get("feed") or {}, url), items)

    async def convert_safely(
        self,
        url: Optional[str],
        headers: HeaderItems = None,
        timeout: Optional[float] = None,
    ) -> Tuple[Optional[Dict[str, Any]], Optional[ConversionError]]:
        """Like ``convert`` but returns ``(result, error)`` instead of raising."""
        try:
            return await self.convert(url, headers=headers, timeout=timeout), None
        except ConversionError as e:
            return None, e
