import asyncio
import socket

import pytest

from socks5 import Socks5Error, dial, encode_address


async def start_proxy(script):
    """Run ``script(reader, writer, log)`` for every connection on a local port."""
    log = {"connections": 0, "requests": []}

    async def handle(reader, writer):
        log["connections"] += 1
        try:
            await script(reader, writer, log)
        except (asyncio.IncompleteReadError, ConnectionError):
            pass
        finally:
            writer.close()

    server = await asyncio.start_server(handle, "127.0.0.1", 0)
    port = server.sockets[0].getsockname()[1]
    return server, port, log


async def stop_proxy(server):
    server.close()
    await server.wait_closed()


async def read_connect_request(reader):
    head = await reader.readexactly(4)
    atyp = head[3]
    if atyp == 0x01:
        addr = await reader.readexactly(4)
    elif atyp == 0x04:
        addr = await reader.readexactly(16)
    else:
        length = await reader.readexactly(1)
        addr = length + await reader.readexactly(length[0])
    port = await reader.readexactly(2)
    return head + addr + port


def echo_proxy(reply_header=b"\x05\x00\x00\x01", bound=b"\x7f\x00\x00\x01"):
    async def script(reader, writer, log):
        log["requests"].append(await reader.readexactly(3))
        writer.write(b"\x05\x00")
        await writer.drain()
        log["requests"].append(await read_connect_request(reader))
        writer.write(reply_header + bound + b"\x1f\x90")
        await writer.drain()
        data = await reader.read(4)
        writer.write(data.upper())
        await writer.drain()
    return script


async def roundtrip(sock, payload=b"ping"):
    loop = asyncio.get_running_loop()
    await loop.sock_sendall(sock, payload)
    return await asyncio.wait_for(loop.sock_recv(sock, len(payload)), 2)


def test_encode_ipv4_ipv6_and_domain():
    assert encode_address("10.1.2.3", 443) == b"\x01\x0a\x01\x02\x03\x01\xbb"
    assert encode_address("::1", 80) == b"\x04" + b"\x00" * 15 + b"\x01" + b"\x00\x50"
    assert encode_address("[2001:db8::1]", 80)[:3] == b"\x04\x20\x01"
    assert encode_address("example.com", 8080) == b"\x03\x0bexample.com\x1f\x90"


def test_encode_rejects_long_domain_and_bad_port():
    with pytest.raises(Socks5Error):
        encode_address("a." * 127 + "com", 80)
    with pytest.raises(Socks5Error):
        encode_address("example.com", 0)
    with pytest.raises(Socks5Error):
        encode_address("example.com", 70000)
    # exactly 255 bytes is still encodable
    name = ("a" * 63 + ".") * 3 + "a" * 63
    assert len(name) == 255
    assert encode_address(name, 80)[1] == 255


@pytest.mark.asyncio
async def test_dial_success_returns_usable_connection():
    server, port, log = await start_proxy(echo_proxy())
    try:
        sock = await dial("127.0.0.1", port, "example.com", 8080, timeout=2)
        try:
            assert await roundtrip(sock) == b"PING"
        finally:
            sock.close()
    finally:
        await stop_proxy(server)

    assert log["requests"][0] == b"\x05\x01\x00"
    assert log["requests"][1] == b"\x05\x01\x00\x03\x0bexample.com\x1f\x90"


@pytest.mark.asyncio
async def test_dial_discards_domain_and_ipv6_bound_addresses():
    for header, bound in (
        (b"\x05\x00\x00\x03", b"\x09proxy.lan"),
        (b"\x05\x00\x00\x04", b"\x00" * 16),
    ):
        server, port, _ = await start_proxy(echo_proxy(header, bound))
        try:
            sock = await dial("127.0.0.1", port, "10.0.0.1", 80, timeout=2)
            try:
                assert await roundtrip(sock) == b"PING"
            finally:
                sock.close()
        finally:
            await stop_proxy(server)


@pytest.mark.asyncio
async def test_dial_fails_when_connect_is_refused():
    server, port, _ = await start_proxy(echo_proxy(reply_header=b"\x05\x05\x00\x01"))
    try:
        with pytest.raises(Socks5Error) as excinfo:
            await dial("127.0.0.1", port, "example.com", 80, timeout=2)
    finally:
        await stop_proxy(server)

    assert "0x05" in str(excinfo.value)


@pytest.mark.asyncio
async def test_dial_fails_when_proxy_requires_auth():
    async def script(reader, writer, log):
        await reader.readexactly(3)
        writer.write(b"\x05\x02")
        await writer.drain()
        await reader.read()

    server, port, _ = await start_proxy(script)
    try:
        with pytest.raises(Socks5Error, match="auth method"):
            await dial("127.0.0.1", port, "example.com", 80, timeout=2)
    finally:
        await stop_proxy(server)


@pytest.mark.asyncio
async def test_dial_fails_on_short_reply():
    async def script(reader, writer, log):
        await reader.readexactly(3)
        writer.write(b"\x05")
        await writer.drain()

    server, port, _ = await start_proxy(script)
    try:
        with pytest.raises(Socks5Error, match="closed connection"):
            await dial("127.0.0.1", port, "example.com", 80, timeout=2)
    finally:
        await stop_proxy(server)


@pytest.mark.asyncio
async def test_dial_fails_on_truncated_bound_address():
    async def script(reader, writer, log):
        await reader.readexactly(3)
        writer.write(b"\x05\x00")
        await writer.drain()
        await read_connect_request(reader)
        writer.write(b"\x05\x00\x00\x01\x7f\x00")

    server, port, _ = await start_proxy(script)
    try:
        with pytest.raises(Socks5Error):
            await dial("127.0.0.1", port, "example.com", 80, timeout=2)
    finally:
        await stop_proxy(server)


@pytest.mark.asyncio
async def test_dial_respects_deadline_when_proxy_stalls():
    async def script(reader, writer, log):
        await reader.readexactly(3)
        # never answer; finish once the client hangs up
        await reader.read()

    server, port, _ = await start_proxy(script)
    loop = asyncio.get_running_loop()
    started = loop.time()
    try:
        with pytest.raises(asyncio.TimeoutError):
            await dial("127.0.0.1", port, "example.com", 80, timeout=0.3)
    finally:
        await stop_proxy(server)

    assert loop.time() - started < 2


@pytest.mark.asyncio
async def test_long_domain_rejected_before_contacting_proxy():
    server, port, log = await start_proxy(echo_proxy())
    try:
        with pytest.raises(Socks5Error, match="too long"):
            await dial("127.0.0.1", port, "a" * 300, 80, timeout=2)
    finally:
        await stop_proxy(server)

    assert log["connections"] == 0


@pytest.mark.asyncio
async def test_local_dns_mode_sends_ip_address():
    server, port, log = await start_proxy(echo_proxy())
    try:
        sock = await dial("127.0.0.1", port, "localhost", 80, timeout=2, remote_dns=False)
        sock.close()
    finally:
        await stop_proxy(server)

    atyp = log["requests"][1][3]
    assert atyp in (0x01, 0x04)


@pytest.mark.asyncio
async def test_unreachable_proxy_raises_os_error():
    spare = socket.socket()
    spare.bind(("127.0.0.1", 0))
    port = spare.getsockname()[1]
    spare.close()

    with pytest.raises(OSError):
        await dial("127.0.0.1", port, "example.com", 80, timeout=2)
