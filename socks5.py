#!/usr/bin/env python3
"""
SOCKS5 proxy dialer.

Establishes an outbound TCP connection through a SOCKS5 proxy using the
no-authentication method only (RFC 1928), then hands the connected socket to
aiohttp so the HTTP (and TLS) layers run on top of it unchanged.

The handshake is done on a non-blocking socket with the event loop's
``sock_*`` primitives; the whole exchange shares a single deadline and any
short read or unexpected reply byte aborts the dial.
"""

import asyncio
import ipaddress
import socket
import struct
from typing import Optional

from aiohttp import TCPConnector, ClientConnectorError, ClientProxyConnectionError

from config import get_logger
from telemetry import trace_span

logger = get_logger("socks5")

SOCKS_VERSION = 0x05
METHOD_NO_AUTH = 0x00
METHOD_NO_ACCEPTABLE = 0xFF
CMD_CONNECT = 0x01
RESERVED = 0x00

ATYP_IPV4 = 0x01
ATYP_DOMAIN = 0x03
ATYP_IPV6 = 0x04

DEFAULT_SOCKS_PORT = 1080
MAX_DOMAIN_LENGTH = 255

REPLY_MESSAGES = {
    0x01: "general SOCKS server failure",
    0x02: "connection not allowed by ruleset",
    0x03: "network unreachable",
    0x04: "host unreachable",
    0x05: "connection refused",
    0x06: "TTL expired",
    0x07: "command not supported",
    0x08: "address type not supported",
}


class Socks5Error(OSError):
    """The proxy handshake failed or the proxy refused the request."""


def encode_address(host: str, port: int) -> bytes:
    """Encode DST.ADDR + DST.PORT for a CONNECT request.

    IP literals use their fixed-width address types; anything else is sent
    as a length-prefixed domain name.
    """
    if not isinstance(port, int) or not 0 < port <= 0xFFFF:
        raise Socks5Error(f"invalid target port: {port!r}")
    if not host:
        raise Socks5Error("empty target host")

    try:
        ip = ipaddress.ip_address(host.strip("[]"))
    except ValueError:
        ip = None

    if isinstance(ip, ipaddress.IPv4Address):
        addr = bytes([ATYP_IPV4]) + ip.packed
    elif isinstance(ip, ipaddress.IPv6Address):
        addr = bytes([ATYP_IPV6]) + ip.packed
    else:
        try:
            name = host.encode("ascii")
        except UnicodeEncodeError:
            try:
                name = host.encode("idna")
            except UnicodeError as exc:
                raise Socks5Error(f"cannot encode target host {host!r}") from exc
        if len(name) > MAX_DOMAIN_LENGTH:
            raise Socks5Error(f"target domain name too long ({len(name)} bytes, max {MAX_DOMAIN_LENGTH})")
        addr = bytes([ATYP_DOMAIN, len(name)]) + name

    return addr + struct.pack("!H", port)


async def _recv_exactly(loop: asyncio.AbstractEventLoop, sock: socket.socket, size: int) -> bytes:
    buf = bytearray()
    while len(buf) < size:
        chunk = await loop.sock_recv(sock, size - len(buf))
        if not chunk:
            raise Socks5Error(f"proxy closed connection after {len(buf)} of {size} bytes")
        buf.extend(chunk)
    return bytes(buf)


async def _open_socket(loop: asyncio.AbstractEventLoop, host: str, port: int) -> socket.socket:
    """Connect a non-blocking socket to the first reachable proxy address."""
    infos = await loop.getaddrinfo(host, port, type=socket.SOCK_STREAM)
    last_exc: Optional[OSError] = None
    for family, type_, proto, _, sockaddr in infos:
        sock = socket.socket(family, type_, proto)
        sock.setblocking(False)
        try:
            await loop.sock_connect(sock, sockaddr)
            return sock
        except OSError as exc:
            sock.close()
            last_exc = exc
        except BaseException:
            sock.close()
            raise
    if last_exc is not None:
        raise last_exc
    raise OSError(f"no addresses for SOCKS5 proxy {host}:{port}")


async def _handshake(loop: asyncio.AbstractEventLoop, sock: socket.socket, address: bytes) -> None:
    # Method negotiation: VER NMETHODS METHODS
    await loop.sock_sendall(sock, bytes([SOCKS_VERSION, 0x01, METHOD_NO_AUTH]))
    version, method = await _recv_exactly(loop, sock, 2)
    if version != SOCKS_VERSION:
        raise Socks5Error(f"unexpected SOCKS version in method reply: 0x{version:02x}")
    if method != METHOD_NO_AUTH:
        if method == METHOD_NO_ACCEPTABLE:
            raise Socks5Error("proxy rejected no-auth method")
        raise Socks5Error(f"proxy selected unsupported auth method: 0x{method:02x}")

    # CONNECT: VER CMD RSV ATYP DST.ADDR DST.PORT
    await loop.sock_sendall(sock, bytes([SOCKS_VERSION, CMD_CONNECT, RESERVED]) + address)

    # Reply: VER REP RSV ATYP BND.ADDR BND.PORT
    version, reply, _, atyp = await _recv_exactly(loop, sock, 4)
    if version != SOCKS_VERSION:
        raise Socks5Error(f"unexpected SOCKS version in connect reply: 0x{version:02x}")
    if reply != 0x00:
        reason = REPLY_MESSAGES.get(reply, "unknown error")
        raise Socks5Error(f"proxy refused CONNECT: 0x{reply:02x} ({reason})")

    if atyp == ATYP_IPV4:
        skip = 4
    elif atyp == ATYP_IPV6:
        skip = 16
    elif atyp == ATYP_DOMAIN:
        (skip,) = await _recv_exactly(loop, sock, 1)
    else:
        raise Socks5Error(f"unknown address type in connect reply: 0x{atyp:02x}")
    await _recv_exactly(loop, sock, skip + 2)


@trace_span(
    "socks5_dial",
    tracer_name="socks5",
    attr_from_args=lambda proxy_host, proxy_port, target_host, target_port, *a, **kw: {
        "socks.proxy": f"{proxy_host}:{proxy_port}",
        "socks.target": f"{target_host}:{target_port}",
    },
)
async def dial(
    proxy_host: str,
    proxy_port: int,
    target_host: str,
    target_port: int,
    timeout: Optional[float] = None,
    *,
    remote_dns: bool = True,
) -> socket.socket:
    """Open a connection to ``target_host:target_port`` through a SOCKS5 proxy.

    Args:
        proxy_host: Proxy hostname or IP.
        proxy_port: Proxy port.
        target_host: Destination host as seen by the proxy.
        target_port: Destination port.
        timeout: Deadline in seconds for the whole dial (connect + handshake).
        remote_dns: Send hostnames to the proxy (``socks5h``). When False the
            target is resolved locally first (``socks5``).

    Returns:
        A connected, non-blocking socket positioned after the SOCKS reply.

    Raises:
        Socks5Error: handshake failure, refusal or malformed reply.
        OSError: the proxy could not be reached.
        asyncio.TimeoutError: the deadline expired.
    """
    loop = asyncio.get_running_loop()

    # Validate before touching the network so bad targets never reach the proxy
    address = encode_address(target_host, target_port) if remote_dns else None

    async def _establish() -> socket.socket:
        nonlocal address
        if address is None:
            infos = await loop.getaddrinfo(target_host, target_port, type=socket.SOCK_STREAM)
            if not infos:
                raise Socks5Error(f"could not resolve target host {target_host}")
            address = encode_address(infos[0][4][0], target_port)

        sock = await _open_socket(loop, proxy_host, proxy_port)
        try:
            await _handshake(loop, sock, address)
        except BaseException:
            sock.close()
            raise
        return sock

    sock = await asyncio.wait_for(_establish(), timeout)
    logger.debug("SOCKS5 tunnel established via %s:%s to %s:%s", proxy_host, proxy_port, target_host, target_port)
    return sock


class Socks5Connector(TCPConnector):
    """aiohttp connector that dials every connection through a SOCKS5 proxy.

    Pooling, keep-alive and limits are inherited from ``TCPConnector``; only
    the creation of new connections changes.
    """

    def __init__(
        self,
        proxy_host: str,
        proxy_port: int = DEFAULT_SOCKS_PORT,
        *,
        remote_dns: bool = True,
        tls_handshake_timeout: Optional[float] = None,
        **kwargs,
    ):
        super().__init__(**kwargs)
        self.proxy_host = proxy_host
        self.proxy_port = proxy_port
        self.remote_dns = remote_dns
        self.tls_handshake_timeout = tls_handshake_timeout

    async def _create_direct_connection(self, req, traces, timeout, *, client_error=ClientConnectorError):
        host = req.url.raw_host
        port = req.port
        sslcontext = self._get_ssl_context(req)
        dial_timeout = timeout.sock_connect or timeout.connect or timeout.total

        try:
            sock = await dial(
                self.proxy_host,
                self.proxy_port,
                host,
                port,
                dial_timeout,
                remote_dns=self.remote_dns,
            )
        except asyncio.TimeoutError:
            raise
        except OSError as exc:
            raise ClientProxyConnectionError(req.connection_key, exc) from exc

        server_hostname = None
        if sslcontext:
            server_hostname = (getattr(req, "server_hostname", None) or host).rstrip(".")
        try:
            return await self._loop.create_connection(
                self._factory,
                sock=sock,
                ssl=sslcontext,
                server_hostname=server_hostname,
                ssl_handshake_timeout=self.tls_handshake_timeout if sslcontext else None,
            )
        except asyncio.TimeoutError:
            sock.close()
            raise
        except OSError as exc:
            sock.close()
            raise client_error(req.connection_key, exc) from exc
