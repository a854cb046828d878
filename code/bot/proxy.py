# =============================================================================
#  MaiSync
#  Copyright (C) 2025 github.com/MaiSync
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations

import asyncio
import contextlib
import logging
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, Optional
from urllib.parse import parse_qs, urlsplit

from common.constants import (
    AUTH_CALLBACK_PREFIX,
    AUTH_HOST,
    PROXY_BLOCKED_TUNNEL_PREFIXES,
)
from common.errors import UpstreamExchangeError

logger = logging.getLogger(__name__)

BAD_REQUEST = b"HTTP/1.1 400 Bad Request\r\nContent-Length: 0\r\nConnection: close\r\n\r\n"
BAD_GATEWAY = b"HTTP/1.1 502 Bad Gateway\r\nContent-Length: 0\r\nConnection: close\r\n\r\n"
CONNECTION_ESTABLISHED = (
    b"HTTP/1.1 200 Connection Established\r\nProxy-agent: MaiSync\r\n\r\n"
)
HOP_BY_HOP = {"proxy-connection", "proxy-authorization", "connection", "keep-alive"}

Exchange = Callable[[str], Awaitable[Optional[str]]]


@dataclass
class RequestHead:
    method: str
    target: str
    version: str
    headers: list[tuple[str, str]] = field(default_factory=list)


def parse_request_head(raw: bytes) -> Optional[RequestHead]:
    lines = raw.decode("latin-1").split("\r\n")
    parts = lines[0].split(" ")
    if len(parts) != 3 or not parts[2].startswith("HTTP/"):
        return None
    headers = []
    for line in lines[1:]:
        if not line:
            continue
        name, sep, value = line.partition(":")
        if sep:
            headers.append((name.strip(), value.strip()))
    return RequestHead(parts[0].upper(), parts[1], parts[2], headers)


async def read_request_head(reader: asyncio.StreamReader, timeout: float = 30.0) -> Optional[RequestHead]:
    try:
        raw = await asyncio.wait_for(reader.readuntil(b"\r\n\r\n"), timeout)
    except (asyncio.IncompleteReadError, asyncio.LimitOverrunError, asyncio.TimeoutError):
        return None
    return parse_request_head(raw)


def redirect_response(location: str) -> bytes:
    return (
        f"HTTP/1.1 302 Found\r\nLocation: {location}\r\n"
        "Content-Length: 0\r\nConnection: close\r\n\r\n"
    ).encode("utf-8")


class CallbackSniffer:
    """
    Recovers the callback path from a CONNECT tunnel to the auth host's port 80.

    The client believes it is tunnelling, but the auth host serves its callback
    over plain HTTP, so the first bytes on the tunnel are a cleartext request
    line. This reads exactly that, without any TLS handling, and stops working
    the day the auth host moves the callback to TLS. Swap it for a real
    interception strategy at that point.
    """

    def __init__(self, timeout: float = 30.0):
        self.timeout = timeout

    async def sniff(self, reader: asyncio.StreamReader) -> Optional[str]:
        head = await read_request_head(reader, self.timeout)
        if head is None:
            return None
        return head.target


class SessionExchangeProxy:
    """
    Forward proxy used as the login client's HTTP proxy.

    Allow-listed traffic is relayed (plain requests and CONNECT tunnels), anything
    else gets a 400 before a single byte goes upstream. Requests for the OAuth
    callback are never relayed: they go through ``exchange`` and the client is
    redirected to ``landing_url``, with ``?friendCode=`` appended when the
    exchange produced a session.
    """

    def __init__(
        self,
        exchange: Exchange,
        allowed_hosts: Iterable[str],
        landing_url: str,
        *,
        host: str = "0.0.0.0",
        port: int = 2222,
        allow_all: bool = False,
        sniffer: Optional[CallbackSniffer] = None,
    ):
        self.exchange = exchange
        self.allowed_hosts = {h.lower() for h in allowed_hosts}
        self.landing_url = landing_url
        self.host = host
        self._port = port
        self.allow_all = allow_all
        self.sniffer = sniffer or CallbackSniffer()
        self.blocked_hosts = {
            (urlsplit(p).hostname or "").lower() for p in PROXY_BLOCKED_TUNNEL_PREFIXES
        }
        self.upstream_connections = 0
        self._server: Optional[asyncio.AbstractServer] = None
        self._conns: set[asyncio.Task] = set()

    @classmethod
    def from_config(cls, config, exchange: Exchange) -> "SessionExchangeProxy":
        return cls(
            exchange,
            config.allowed_proxy_hosts(),
            config.REDIRECT_URL,
            host=config.PROXY_HOST,
            port=config.PROXY_PORT,
            allow_all=config.PROXY_ALLOW_ALL,
        )

    # ---------- lifecycle ----------
    @property
    def port(self) -> int:
        if self._server and self._server.sockets:
            return self._server.sockets[0].getsockname()[1]
        return self._port

    async def start(self) -> None:
        self._server = await asyncio.start_server(self._on_client, self.host, self._port)
        logger.info(
            "[🛰️] Exchange proxy listening on %s:%s%s",
            self.host,
            self.port,
            " (allow-all)" if self.allow_all else "",
        )

    async def stop(self) -> None:
        if self._server is None:
            return
        self._server.close()
        for t in list(self._conns):
            t.cancel()
        for t in list(self._conns):
            with contextlib.suppress(asyncio.CancelledError, Exception):
                await t
        await self._server.wait_closed()
        self._server = None
        logger.info("[🛰️] Exchange proxy stopped")

    # ---------- policy ----------
    def host_allowed(self, host: Optional[str]) -> bool:
        if not host:
            return False
        if self.allow_all:
            return True
        return host.split(":", 1)[0].lower() in self.allowed_hosts

    async def on_callback(self, callback_url: str) -> str:
        """Runs the exchange for one intercepted callback and returns the redirect target."""
        query = parse_qs(urlsplit(callback_url).query)
        key = (query.get("r") or [""])[0]
        logger.info("[🪝] Intercepted auth callback r=%s", key)
        try:
            friend_code = await self.exchange(callback_url)
        except UpstreamExchangeError as e:
            logger.warning("[🪝] Exchange failed r=%s: %s", key, e)
            return self.landing_url
        except Exception as e:
            logger.exception("[🪝] Exchange crashed r=%s: %r", key, e)
            return self.landing_url
        if not friend_code:
            logger.warning("[🪝] Exchange r=%s yielded no friend code", key)
            return self.landing_url
        sep = "&" if "?" in self.landing_url else "?"
        return f"{self.landing_url}{sep}friendCode={friend_code}"

    # ---------- connection handling ----------
    async def _on_client(self, reader: asyncio.StreamReader, writer: asyncio.StreamWriter) -> None:
        task = asyncio.current_task()
        if task is not None:
            self._conns.add(task)
        peer = writer.get_extra_info("peername")
        try:
            head = await read_request_head(reader)
            if head is None:
                await self._reply(writer, BAD_REQUEST)
            elif head.method == "CONNECT":
                await self._handle_connect(head, reader, writer)
            else:
                await self._handle_plain(head, reader, writer)
        except (ConnectionError, asyncio.IncompleteReadError) as e:
            logger.debug("[🛰️] Client %s dropped: %r", peer, e)
        except asyncio.CancelledError:
            raise
        except Exception:
            logger.exception("[🛰️] Proxy connection from %s failed", peer)
        finally:
            writer.close()
            with contextlib.suppress(Exception):
                await writer.wait_closed()
            if task is not None:
                self._conns.discard(task)

    async def _reply(self, writer: asyncio.StreamWriter, payload: bytes) -> None:
        writer.write(payload)
        with contextlib.suppress(ConnectionError):
            await writer.drain()

    async def _handle_plain(self, head: RequestHead, reader, writer) -> None:
        parts = urlsplit(head.target)
        if not self.host_allowed(parts.hostname):
            logger.info("[🛰️] Rejected %s %s", head.method, head.target)
            await self._reply(writer, BAD_REQUEST)
            return

        if head.target.startswith(AUTH_CALLBACK_PREFIX):
            location = await self.on_callback(head.target)
            await self._reply(writer, redirect_response(location))
            return

        try:
            up_reader, up_writer = await asyncio.open_connection(parts.hostname, parts.port or 80)
        except OSError as e:
            logger.warning("[🛰️] Upstream %s unreachable: %r", parts.hostname, e)
            await self._reply(writer, BAD_GATEWAY)
            return
        self.upstream_connections += 1

        path = parts.path or "/"
        if parts.query:
            path = f"{path}?{parts.query}"
        lines = [f"{head.method} {path} {head.version}"]
        lines += [f"{k}: {v}" for k, v in head.headers if k.lower() not in HOP_BY_HOP]
        lines.append("Connection: close")
        up_writer.write(("\r\n".join(lines) + "\r\n\r\n").encode("latin-1"))
        await self._relay(reader, writer, up_reader, up_writer)

    async def _handle_connect(self, head: RequestHead, reader, writer) -> None:
        host, _, port_s = head.target.rpartition(":")
        if not host:
            host, port_s = head.target, "443"
        try:
            port = int(port_s)
        except ValueError:
            await self._reply(writer, BAD_REQUEST)
            return

        if not self.host_allowed(host) or host.lower() in self.blocked_hosts:
            logger.info("[🛰️] Rejected CONNECT %s", head.target)
            await self._reply(writer, BAD_REQUEST)
            return

        if host.lower() == AUTH_HOST and port == 80:
            await self._reply(writer, CONNECTION_ESTABLISHED)
            path = await self.sniffer.sniff(reader)
            if not path:
                logger.info("[🪝] Tunnel to %s closed without a request", head.target)
                return
            url = path if path.startswith("http") else f"http://{AUTH_HOST}{path}"
            location = await self.on_callback(url)
            await self._reply(writer, redirect_response(location))
            return

        try:
            up_reader, up_writer = await asyncio.open_connection(host, port)
        except OSError as e:
            logger.warning("[🛰️] Tunnel to %s failed: %r", head.target, e)
            await self._reply(writer, BAD_GATEWAY)
            return
        self.upstream_connections += 1
        await self._reply(writer, CONNECTION_ESTABLISHED)
        await self._relay(reader, writer, up_reader, up_writer)

    async def _relay(self, reader, writer, up_reader, up_writer) -> None:
        try:
            await asyncio.gather(
                self._pipe(reader, up_writer),
                self._pipe(up_reader, writer),
            )
        finally:
            up_writer.close()
            with contextlib.suppress(Exception):
                await up_writer.wait_closed()

    @staticmethod
    async def _pipe(src: asyncio.StreamReader, dst: asyncio.StreamWriter) -> None:
        try:
            while True:
                chunk = await src.read(65536)
                if not chunk:
                    break
                dst.write(chunk)
                await dst.drain()
        except (ConnectionError, asyncio.IncompleteReadError):
            pass
        finally:
            if dst.can_write_eof():
                with contextlib.suppress(Exception):
                    dst.write_eof()
