#!/usr/bin/env python3
"""
Outbound HTTP transport.

``FeedTransport`` owns the single pooled ``aiohttp.ClientSession`` used for
every feed fetch in the process. It decides once how connections are made:

- direct, honouring the environment's proxy variables (``trust_env``)
- through an HTTP/HTTPS forward proxy (per-request ``proxy=``)
- through a SOCKS5 proxy via ``Socks5Connector``

Build one at startup and pass it to the converter; tests build their own.
"""

import asyncio
from typing import Optional
from urllib.parse import urlsplit

from aiohttp import ClientSession, ClientTimeout, TCPConnector

from config import config as default_config, get_logger
from socks5 import Socks5Connector, DEFAULT_SOCKS_PORT

logger = get_logger("transport")

MODE_DIRECT = "direct"
MODE_HTTP_PROXY = "http"
MODE_SOCKS5 = "socks5"


class FeedTransport:
    def __init__(
        self,
        proxy_url: Optional[str] = None,
        *,
        trust_env: bool = True,
        request_timeout: float = 10.0,
        connect_timeout: float = 5.0,
        tls_handshake_timeout: float = 5.0,
        response_header_timeout: float = 5.0,
        idle_timeout: float = 30.0,
        max_connections: int = 100,
        max_connections_per_host: int = 10,
    ) -> None:
        self.trust_env = trust_env
        self.request_timeout = request_timeout
        self.connect_timeout = connect_timeout
        self.tls_handshake_timeout = tls_handshake_timeout
        self.response_header_timeout = response_header_timeout
        self.idle_timeout = idle_timeout
        self.max_connections = max_connections
        self.max_connections_per_host = max_connections_per_host

        self.mode = MODE_DIRECT
        self.http_proxy: Optional[str] = None
        self.socks_host: Optional[str] = None
        self.socks_port: int = DEFAULT_SOCKS_PORT
        self.socks_remote_dns = True
        self._resolve_proxy(proxy_url)

        self._session: Optional[ClientSession] = None
        self._lock: Optional[asyncio.Lock] = None

    @classmethod
    def from_config(cls, cfg=None) -> "FeedTransport":
        cfg = cfg or default_config
        return cls(
            cfg.PROXY_URL,
            trust_env=cfg.TRUST_ENV,
            request_timeout=cfg.HTTP_TIMEOUT,
            connect_timeout=cfg.CONNECT_TIMEOUT,
            tls_handshake_timeout=cfg.TLS_HANDSHAKE_TIMEOUT,
            response_header_timeout=cfg.RESPONSE_HEADER_TIMEOUT,
            idle_timeout=cfg.IDLE_CONN_TIMEOUT,
            max_connections=cfg.MAX_IDLE_CONNS,
            max_connections_per_host=cfg.MAX_IDLE_CONNS_PER_HOST,
        )

    def _resolve_proxy(self, proxy_url: Optional[str]) -> None:
        """Pick the connection mode; anything unusable falls back to direct."""
        proxy_url = (proxy_url or "").strip()
        if not proxy_url:
            return
        try:
            parts = urlsplit(proxy_url)
            hostname = parts.hostname
            port = parts.port
        except ValueError as e:
            logger.warning(f"Invalid proxy URL, using direct connection: {e}")
            return

        scheme = (parts.scheme or "").lower()
        if not hostname:
            logger.warning("Proxy URL has no host, using direct connection")
            return

        if scheme in ("http", "https"):
            self.mode = MODE_HTTP_PROXY
            self.http_proxy = proxy_url
        elif scheme in ("socks5", "socks5h"):
            self.mode = MODE_SOCKS5
            self.socks_host = hostname
            self.socks_port = port or DEFAULT_SOCKS_PORT
            self.socks_remote_dns = scheme == "socks5h"
            if parts.username or parts.password:
                logger.warning("SOCKS5 proxy credentials are ignored; only no-auth is supported")
        else:
            logger.warning(f"Unsupported proxy scheme '{scheme}', using direct connection")
            return
        logger.info("Outbound feed requests will use proxy %s", self.describe())

    def describe(self) -> str:
        """Human-readable proxy label without credentials."""
        if self.mode == MODE_SOCKS5:
            scheme = "socks5h" if self.socks_remote_dns else "socks5"
            return f"{scheme}://{self.socks_host}:{self.socks_port}"
        if self.mode == MODE_HTTP_PROXY:
            parts = urlsplit(self.http_proxy)
            netloc = parts.hostname or ""
            if parts.port:
                netloc = f"{netloc}:{parts.port}"
            return f"{parts.scheme}://{netloc}"
        return MODE_DIRECT

    def build_timeout(self, total: Optional[float] = None) -> ClientTimeout:
        """Timeouts for one request; ``total`` overrides the overall deadline."""
        return ClientTimeout(
            total=total if total is not None else self.request_timeout,
            connect=self.connect_timeout + self.tls_handshake_timeout,
            sock_connect=self.connect_timeout,
            sock_read=self.response_header_timeout,
        )

    def build_connector(self) -> TCPConnector:
        options = {
            "limit": self.max_connections,
            "limit_per_host": self.max_connections_per_host,
            "keepalive_timeout": self.idle_timeout,
        }
        if self.mode == MODE_SOCKS5:
            return Socks5Connector(
                self.socks_host,
                self.socks_port,
                remote_dns=self.socks_remote_dns,
                tls_handshake_timeout=self.tls_handshake_timeout,
                **options,
            )
        return TCPConnector(**options)

    async def session(self) -> ClientSession:
        """Return the shared session, creating it on first use."""
        if self._session is not None and not self._session.closed:
            return self._session
        if self._lock is None:
            self._lock = asyncio.Lock()
        async with self._lock:
            if self._session is None or self._session.closed:
                self._session = ClientSession(
                    connector=self.build_connector(),
                    timeout=self.build_timeout(),
                    # SOCKS and explicit HTTP proxies must not be overridden by env vars
                    trust_env=self.trust_env and self.mode == MODE_DIRECT,
                )
                logger.debug("Created outbound HTTP session (mode=%s)", self.mode)
        return self._session

    async def close(self) -> None:
        if self._session is not None and not self._session.closed:
            await self._session.close()
        self._session = None
