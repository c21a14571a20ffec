from contextlib import asynccontextmanager

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from transport import FeedTransport


SAMPLE_RSS = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0" xmlns:content="http://purl.org/rss/1.0/modules/content/" xmlns:dc="http://purl.org/dc/elements/1.1/">
  <channel>
    <title>Sample Feed</title>
    <link>https://example.com</link>
    <description>&lt;p&gt;Demo&lt;/p&gt;</description>
    <managingEditor>Editor Name</managingEditor>
    <image>
      <url>https://example.com/logo.png</url>
    </image>
    <item>
      <title>Hello</title>
      <link>https://example.com/post</link>
      <description><![CDATA[<p>Desc</p>]]></description>
      <dc:creator>John Doe</dc:creator>
      <content:encoded><![CDATA[<p>Hello World</p>]]></content:encoded>
      <pubDate>Mon, 01 Jan 2024 00:00:00 GMT</pubDate>
      <guid>abc123</guid>
    </item>
  </channel>
</rss>
"""

SAMPLE_ATOM = b"""<?xml version="1.0" encoding="utf-8"?>
<feed xmlns="http://www.w3.org/2005/Atom">
  <title>Atom Feed</title>
  <link href="https://example.com"/>
  <updated>2024-01-01T00:00:00Z</updated>
  <author>
    <name>Jane Doe</name>
  </author>
  <id>urn:uuid:60a76c80-d399-11d9-b93C-0003939e0af6</id>
  <subtitle>&lt;p&gt;Atom Desc&lt;/p&gt;</subtitle>
  <entry>
    <title>Atom Item</title>
    <link href="https://example.com/atom/1"/>
    <id>tag:example.com,2024:1</id>
    <updated>2024-01-02T00:00:00Z</updated>
    <summary><![CDATA[<p>Atom Summary</p>]]></summary>
    <content type="html">&lt;p&gt;Atom Content&lt;/p&gt;</content>
    <author>
      <name>Jane Doe</name>
    </author>
  </entry>
</feed>
"""

THUMBNAIL_RSS = b"""<?xml version="1.0" encoding="UTF-8"?>
<rss version="2.0" xmlns:media="http://search.yahoo.com/mrss/">
  <channel>
    <title>Pictures</title>
    <link>https://example.com</link>
    <description>With thumbnails</description>
    <item>
      <title>One</title>
      <link>https://example.com/1</link>
      <media:thumbnail url=" https://img.example.com/1.jpg " width="120"/>
    </item>
    <item>
      <title>Two</title>
      <link>https://example.com/2</link>
      <thumbnail>
        https://img.example.com/2.jpg
      </thumbnail>
    </item>
    <item>
      <title>Three</title>
      <link>https://example.com/3</link>
    </item>
  </channel>
</rss>
"""


@pytest.fixture
def sample_rss():
    return SAMPLE_RSS


@pytest.fixture
def sample_atom():
    return SAMPLE_ATOM


@pytest.fixture
def thumbnail_rss():
    return THUMBNAIL_RSS


def _static_handler(body, status=200, content_type="application/xml"):
    async def _handler(request):
        return web.Response(body=body, status=status, content_type=content_type)
    return _handler


@pytest.fixture
def serve_feed():
    """Factory for a local feed server plus a direct transport.

    ``routes`` maps paths to either a body (bytes/str, served with 200) or an
    aiohttp handler coroutine.
    """

    @asynccontextmanager
    async def _serve(routes):
        app = web.Application()
        for path, target in routes.items():
            if isinstance(target, str):
                target = target.encode()
            if isinstance(target, bytes):
                target = _static_handler(target)
            app.router.add_get(path, target)
        async with TestServer(app) as server:
            transport = FeedTransport(trust_env=False)
            try:
                yield server, transport
            finally:
                await transport.close()

    return _serve
