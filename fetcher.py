#!/usr/bin/env python3
"""
Bounded feed fetcher.

Issues exactly one GET for a feed URL and returns the raw body, enforcing a
byte ceiling while streaming. The body is accumulated into a single buffer and
returned as immutable ``bytes`` so the feed parser and the thumbnail scanner
can each read it without a second request.
"""

from asyncio import TimeoutError
from typing import Iterable, Mapping, Optional, Tuple, Union

from aiohttp import ClientError
from multidict import CIMultiDict

from config import config, get_logger
from errors import FeedTooLargeError, UpstreamStatusError, upstream
from telemetry import trace_span
from transport import FeedTransport

logger = get_logger("fetcher")

CHUNK_SIZE = 64 * 1024

HeaderItems = Union[Mapping[str, str], Iterable[Tuple[str, str]], None]


def merge_headers(*sources: HeaderItems) -> CIMultiDict:
    """Merge header sources case-insensitively; later sources win per name."""
    merged: CIMultiDict = CIMultiDict()
    for source in sources:
        if not source:
            continue
        items = source.items() if isinstance(source, Mapping) else source
        for name, value in items:
            merged[name] = value
    return merged


class BoundedFetcher:
    def __init__(
        self,
        transport: FeedTransport,
        max_bytes: Optional[int] = None,
        user_agent: Optional[str] = None,
        default_headers: HeaderItems = None,
    ) -> None:
        self.transport = transport
        self.max_bytes = config.MAX_FEED_BYTES if max_bytes is None else max_bytes
        self.user_agent = user_agent or config.USER_AGENT
        self.default_headers = default_headers if default_headers is not None else config.EXTRA_HEADERS

    def build_headers(self, headers: HeaderItems = None) -> CIMultiDict:
        return merge_headers({"User-Agent": self.user_agent}, self.default_headers, headers)

    @trace_span(
        "fetch_feed",
        tracer_name="fetcher",
        attr_from_args=lambda self, url, *a, **kw: {"http.url": url},
    )
    async def fetch(self, url: str, headers: HeaderItems = None, timeout: Optional[float] = None) -> bytes:
        """Fetch ``url`` and return the body.

        Raises:
            UpstreamStatusError: non-2xx response.
            FeedTooLargeError: body larger than ``max_bytes``.
            ConversionError: any other network or read failure (kind upstream).
        """
        session = await self.transport.session()
        request_kwargs = {"headers": self.build_headers(headers)}
        if self.transport.http_proxy:
            request_kwargs["proxy"] = self.transport.http_proxy
        if timeout is not None:
            request_kwargs["timeout"] = self.transport.build_timeout(timeout)

        try:
            async with session.get(url, **request_kwargs) as response:
                if not 200 <= response.status < 300:
                    logger.warning(f"Error fetching {url}: HTTP {response.status}")
                    raise UpstreamStatusError(response.status)
                return await self._read_bounded(url, response)
        except TimeoutError as e:
            logger.warning(f"Timeout fetching {url}: {e!r}")
            raise upstream(f"timed out fetching feed: {url}") from e
        except ClientError as e:
            logger.warning(f"Network error fetching {url}: {e}")
            raise upstream(f"failed to download feed: {e}") from e
        except OSError as e:
            logger.warning(f"I/O error fetching {url}: {e}")
            raise upstream(f"failed to download feed: {e}") from e

    async def _read_bounded(self, url: str, response) -> bytes:
        limit = self.max_bytes if self.max_bytes and self.max_bytes > 0 else None

        declared = response.content_length
        if limit is not None and declared is not None and declared > limit:
            logger.warning(f"Feed {url} declares {declared} bytes, over limit {limit}")
            raise FeedTooLargeError(limit)

        buffer = bytearray()
        while True:
            size = CHUNK_SIZE
            if limit is not None:
                # Never pull more than limit + 1 bytes off the wire
                size = min(CHUNK_SIZE, limit + 1 - len(buffer))
            chunk = await response.content.read(size)
            if not chunk:
                break
            buffer.extend(chunk)
            if limit is not None and len(buffer) > limit:
                logger.warning(f"Feed {url} exceeded size limit of {limit} bytes")
                raise FeedTooLargeError(limit)

        logger.debug(f"Fetched {len(buffer)} bytes from {url}")
        return bytes(buffer)
