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
import logging
import re
import time
from typing import Callable, Optional

import aiohttp

from bot.session_store import Session
from common.constants import (
    AUTH_AUTHORIZE_URL,
    AUTH_HEADERS,
    CLIENT_HEADERS,
    HOME_URL,
    PLATFORM_BASE,
)
from common.errors import (
    SessionExpiredError,
    TransientTransportError,
    UpstreamExchangeError,
)
from common.transport import FetchResult, Transport, jar_cookies, new_http

logger = logging.getLogger(__name__)

FRIEND_LIST_URL = f"{PLATFORM_BASE}/index.php/friend/"
SENT_REQUESTS_URL = f"{PLATFORM_BASE}/friend/invite/"
SEND_REQUEST_URL = f"{PLATFORM_BASE}/friend/search/invite/"
SENT_REQUESTS_REFRESH_URL = f"{PLATFORM_BASE}/index.php/friend/invite/"
FAVORITE_ON_URL = f"{PLATFORM_BASE}/friend/favoriteOn/"
OWN_FRIEND_CODE_URL = f"{PLATFORM_BASE}/friend/userFriendCode/"
FRIEND_VS_URL = (
    f"{PLATFORM_BASE}/friend/friendGenreVs/battleStart/"
    "?scoreType={score_type}&genre=99&diff={difficulty}&idx={friend_code}"
)

COMPARISON_TIMEOUT_SECONDS = 300.0

_IDX_RE = re.compile(r'<input type="hidden" name="idx" value="(.*?)"')
_OWN_CODE_RE = re.compile(
    r'<div class="see_through_block m_t_5 m_b_5 p_5 t_c f_15">(.*?)</div>', re.S
)
_FORM = {"Content-Type": "application/x-www-form-urlencoded"}


def _unique_idx(text: str) -> list[str]:
    return list(dict.fromkeys(_IDX_RE.findall(text)))


async def get_auth_url(transport: Transport, http: Optional[aiohttp.ClientSession] = None) -> str:
    """
    Resolves the OAuth authorize redirect and downgrades its ``redirect_uri`` to
    plain http so the callback travels through the exchange proxy in cleartext.
    """
    if http is None:
        async with new_http() as own:
            return await get_auth_url(transport, own)
    res = await transport.call(http, "GET", AUTH_AUTHORIZE_URL)
    return res.url.replace("redirect_uri=https", "redirect_uri=http")


async def exchange_auth(
    transport: Transport,
    callback_url: str,
    *,
    http_factory: Callable[..., aiohttp.ClientSession] = new_http,
) -> tuple[str, Session]:
    """
    Replays an intercepted OAuth callback on a fresh cookie jar, then the platform
    home page, and reads back whose session it turned into.

    Any failure along the way surfaces as ``UpstreamExchangeError``.
    """
    replay_url = callback_url.replace("http://", "https://", 1)
    t0 = time.monotonic()
    try:
        async with http_factory() as http:
            await transport.call(http, "GET", replay_url, headers=AUTH_HEADERS)
            await transport.call(http, "GET", HOME_URL, headers=CLIENT_HEADERS)
            async with CrawlClient(transport, Session(""), http=http) as client:
                friend_code = await client.get_own_friend_code()
            cookies = jar_cookies(http)
    except (
        aiohttp.ClientError,
        asyncio.TimeoutError,
        TransientTransportError,
        SessionExpiredError,
    ) as e:
        raise UpstreamExchangeError(f"callback replay failed: {e!r}") from e

    if not friend_code:
        raise UpstreamExchangeError("callback replay did not yield a logged-in session")

    logger.info(
        "[🔑] Exchanged callback for %s",
        friend_code,
        extra={"took_ms": round((time.monotonic() - t0) * 1000, 1)},
    )
    return friend_code, Session(friend_code, cookies)


class CrawlClient:
    """
    Platform operations on behalf of one stored ``Session``.

    Used as an async context manager; it owns an aiohttp session seeded with the
    stored cookies unless an already-open ``http`` is handed in. Every call is
    expiry sensitive, so ``SessionExpiredError`` reaches the caller untouched.
    """

    def __init__(
        self,
        transport: Transport,
        session: Session,
        *,
        http: Optional[aiohttp.ClientSession] = None,
        http_factory: Callable[..., aiohttp.ClientSession] = new_http,
    ):
        self.transport = transport
        self.session = session
        self._http = http
        self._owns_http = http is None
        self._http_factory = http_factory

    async def __aenter__(self) -> "CrawlClient":
        if self._http is None:
            self._http = self._http_factory(self.session.cookies)
        return self

    async def __aexit__(self, exc_type, exc, tb) -> None:
        if self._owns_http and self._http is not None:
            await self._http.close()
            self._http = None

    @property
    def http(self) -> aiohttp.ClientSession:
        if self._http is None:
            raise RuntimeError("CrawlClient used outside of 'async with'")
        return self._http

    def _token(self) -> str:
        live = jar_cookies(self.http).get("_t")
        return live or self.session.token or ""

    async def _fetch(
        self,
        url: str,
        *,
        method: str = "GET",
        body: Optional[str] = None,
        add_token: bool = False,
        timeout: Optional[float] = None,
    ) -> FetchResult:
        headers = dict(CLIENT_HEADERS)
        if body is not None:
            headers.update(_FORM)
            if add_token:
                body = f"{body}&token={self._token()}"
        return await self.transport.call(
            self.http,
            method,
            url,
            headers=headers,
            data=body,
            timeout=timeout,
            expiry_sensitive=True,
        )

    async def get_own_friend_code(self) -> Optional[str]:
        res = await self._fetch(OWN_FRIEND_CODE_URL)
        m = _OWN_CODE_RE.search(res.text)
        code = m.group(1).strip() if m else None
        logger.debug("[🕷️] Own friend code: %s", code)
        return code or None

    async def list_friends(self) -> list[str]:
        res = await self._fetch(FRIEND_LIST_URL)
        return _unique_idx(res.text)

    async def list_sent_requests(self) -> list[str]:
        res = await self._fetch(SENT_REQUESTS_URL)
        return _unique_idx(res.text)

    async def send_friend_request(self, friend_code: str) -> None:
        logger.info("[🕷️] Sending friend request to %s", friend_code)
        await self._fetch(
            SEND_REQUEST_URL,
            method="POST",
            body=f"idx={friend_code}&invite=",
            add_token=True,
        )
        await self._fetch(SENT_REQUESTS_REFRESH_URL)

    async def favorite_friend(self, friend_code: str) -> None:
        logger.info("[🕷️] Favoriting %s", friend_code)
        await self._fetch(
            FAVORITE_ON_URL,
            method="POST",
            body=f"idx={friend_code}",
            add_token=True,
        )

    async def fetch_comparison_page(
        self, friend_code: str, score_type: int, difficulty: int
    ) -> str:
        url = FRIEND_VS_URL.format(
            score_type=score_type, difficulty=difficulty, friend_code=friend_code
        )
        t0 = time.monotonic()
        res = await self._fetch(url, timeout=COMPARISON_TIMEOUT_SECONDS)
        logger.debug(
            "[🕷️] Friend VS %s scoreType=%s diff=%s",
            friend_code,
            score_type,
            difficulty,
            extra={"took_ms": round((time.monotonic() - t0) * 1000, 1)},
        )
        return res.text
