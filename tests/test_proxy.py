from __future__ import annotations

import asyncio

import aiohttp
import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from bot.proxy import SessionExchangeProxy, parse_request_head, redirect_response
from common.constants import AUTH_HOST
from common.errors import UpstreamExchangeError

LANDING = "http://landing.example/"
CALLBACK = f"http://{AUTH_HOST}/wc_auth/oauth/callback/maimai-dx?r=abc123&t=42"


class Exchanges:
    def __init__(self, result="634142510810999", error=None):
        self.result = result
        self.error = error
        self.seen = []

    async def __call__(self, url):
        self.seen.append(url)
        if self.error is not None:
            raise self.error
        return self.result


async def _start(exchange, allowed=("127.0.0.1", AUTH_HOST), **kw):
    proxy = SessionExchangeProxy(exchange, allowed, LANDING, host="127.0.0.1", port=0, **kw)
    await proxy.start()
    return proxy


async def _roundtrip(proxy, *chunks: bytes) -> bytes:
    reader, writer = await asyncio.open_connection("127.0.0.1", proxy.port)
    for chunk in chunks:
        writer.write(chunk)
        await writer.drain()
    data = await asyncio.wait_for(reader.read(), 5)
    writer.close()
    return data


def test_parse_request_head():
    head = parse_request_head(b"GET http://a.example/x?y=1 HTTP/1.1\r\nHost: a.example\r\n\r\n")
    assert head.method == "GET"
    assert head.target == "http://a.example/x?y=1"
    assert head.headers == [("Host", "a.example")]
    assert parse_request_head(b"garbage\r\n\r\n") is None


def test_redirect_response():
    raw = redirect_response("http://x/?friendCode=1")
    assert raw.startswith(b"HTTP/1.1 302 Found\r\n")
    assert b"Location: http://x/?friendCode=1\r\n" in raw


@pytest.mark.asyncio
async def test_disallowed_plain_request_is_rejected():
    proxy = await _start(Exchanges())
    try:
        data = await _roundtrip(proxy, b"GET http://evil.example/ HTTP/1.1\r\nHost: evil.example\r\n\r\n")
        assert data.startswith(b"HTTP/1.1 400")
        assert proxy.upstream_connections == 0
    finally:
        await proxy.stop()


@pytest.mark.asyncio
async def test_disallowed_connect_is_rejected():
    proxy = await _start(Exchanges())
    try:
        data = await _roundtrip(proxy, b"CONNECT evil.example:443 HTTP/1.1\r\n\r\n")
        assert data.startswith(b"HTTP/1.1 400")
        assert proxy.upstream_connections == 0
    finally:
        await proxy.stop()


@pytest.mark.asyncio
async def test_platform_tunnel_blocked_even_when_allowing_all():
    proxy = await _start(Exchanges(), allow_all=True)
    try:
        data = await _roundtrip(proxy, b"CONNECT maimai.wahlap.com:443 HTTP/1.1\r\n\r\n")
        assert data.startswith(b"HTTP/1.1 400")
        assert proxy.upstream_connections == 0
    finally:
        await proxy.stop()


@pytest.mark.asyncio
async def test_garbage_gets_400():
    proxy = await _start(Exchanges())
    try:
        data = await _roundtrip(proxy, b"hello\r\n\r\n")
        assert data.startswith(b"HTTP/1.1 400")
    finally:
        await proxy.stop()


@pytest.mark.asyncio
async def test_plain_callback_is_exchanged_not_forwarded():
    exchange = Exchanges(result="634142510810999")
    proxy = await _start(exchange)
    try:
        req = f"GET {CALLBACK} HTTP/1.1\r\nHost: {AUTH_HOST}\r\n\r\n".encode()
        data = await _roundtrip(proxy, req)
        assert data.startswith(b"HTTP/1.1 302")
        assert b"Location: http://landing.example/?friendCode=634142510810999\r\n" in data
        assert exchange.seen == [CALLBACK]
        assert proxy.upstream_connections == 0
    finally:
        await proxy.stop()


@pytest.mark.asyncio
async def test_tunnelled_callback_with_failed_exchange_redirects_bare():
    exchange = Exchanges(error=aiohttp.ClientConnectionError("upstream down"))
    proxy = await _start(exchange)
    try:
        path = b"/wc_auth/oauth/callback/maimai-dx?r=abc123&t=42"
        data = await _roundtrip(
            proxy,
            f"CONNECT {AUTH_HOST}:80 HTTP/1.1\r\n\r\n".encode(),
            b"GET " + path + b" HTTP/1.1\r\nHost: " + AUTH_HOST.encode() + b"\r\n\r\n",
        )
        assert data.startswith(b"HTTP/1.1 200 Connection Established")
        assert b"HTTP/1.1 302 Found\r\nLocation: http://landing.example/\r\n" in data
        assert exchange.seen == [CALLBACK]
        assert proxy.upstream_connections == 0
    finally:
        await proxy.stop()


@pytest.mark.asyncio
async def test_exchange_without_friend_code_redirects_bare():
    proxy = await _start(Exchanges(error=UpstreamExchangeError("no friend code")))
    try:
        assert await proxy.on_callback(CALLBACK) == LANDING
    finally:
        await proxy.stop()


@pytest.mark.asyncio
async def test_landing_url_with_query_gets_ampersand():
    proxy = SessionExchangeProxy(Exchanges(result="1"), [], "http://landing.example/?lang=zh")
    assert await proxy.on_callback(CALLBACK) == "http://landing.example/?lang=zh&friendCode=1"


@pytest.mark.asyncio
async def test_allowed_plain_request_is_forwarded():
    async def hello(request):
        return web.Response(text=f"upstream saw {request.path_qs}")

    app = web.Application()
    app.add_routes([web.get("/hello", hello)])
    upstream = TestServer(app, host="127.0.0.1")
    await upstream.start_server()
    proxy = await _start(Exchanges())
    try:
        target = str(upstream.make_url("/hello?x=1"))
        data = await _roundtrip(
            proxy,
            f"GET {target} HTTP/1.1\r\nHost: 127.0.0.1\r\nProxy-Connection: keep-alive\r\n\r\n".encode(),
        )
        assert data.startswith(b"HTTP/1.1 200")
        assert data.endswith(b"upstream saw /hello?x=1")
        assert proxy.upstream_connections == 1
    finally:
        await proxy.stop()
        await upstream.close()


@pytest.mark.asyncio
async def test_allowed_connect_opens_a_tunnel():
    async def hello(request):
        return web.Response(text="through the tunnel")

    app = web.Application()
    app.add_routes([web.get("/", hello)])
    upstream = TestServer(app, host="127.0.0.1")
    await upstream.start_server()
    proxy = await _start(Exchanges())
    try:
        data = await _roundtrip(
            proxy,
            f"CONNECT 127.0.0.1:{upstream.port} HTTP/1.1\r\n\r\n".encode(),
            b"GET / HTTP/1.1\r\nHost: 127.0.0.1\r\nConnection: close\r\n\r\n",
        )
        assert data.startswith(b"HTTP/1.1 200 Connection Established")
        assert data.endswith(b"through the tunnel")
        assert proxy.upstream_connections == 1
    finally:
        await proxy.stop()
        await upstream.close()
