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
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Iterable, Optional

import aiohttp
from yarl import URL

from common.constants import HOME_URL, PLATFORM_HOST, SESSION_EXPIRED_LOCATIONS
from common.errors import FetchTimeoutError, SessionExpiredError

logger = logging.getLogger(__name__)


@dataclass
class FetchResult:
    status: int
    url: str
    text: str
    headers: dict = field(default_factory=dict)

    @property
    def ok(self) -> bool:
        return 200 <= self.status < 400


PLATFORM_ROOT = f"https://{PLATFORM_HOST}/"


def new_http(
    cookies: Optional[dict] = None, cookie_url: str = PLATFORM_ROOT
) -> aiohttp.ClientSession:
    """
    Fresh client session with its own cookie jar, seeded with ``cookies`` scoped to
    ``cookie_url``. ``unsafe=True`` so cookies set by IP-addressed hosts are kept.
    """
    jar = aiohttp.CookieJar(unsafe=True)
    if cookies:
        jar.update_cookies(cookies, response_url=URL(cookie_url))
    return aiohttp.ClientSession(cookie_jar=jar)


def jar_cookies(http: aiohttp.ClientSession, url: str = HOME_URL) -> dict[str, str]:
    """Name -> value of every cookie ``http`` would send to ``url``."""
    return {name: morsel.value for name, morsel in http.cookie_jar.filter_cookies(URL(url)).items()}


class Transport:
    """
    Uniform outbound HTTP call with bounded retry.

    Transport-level failures (connection errors, timeouts) are retried up to
    ``retry_count`` attempts with a fixed ``retry_delay`` in between. When the last
    attempt timed out a ``FetchTimeoutError`` carrying the effective timeout is
    raised, otherwise the original error.

    ``expiry_sensitive`` calls check the final, post-redirect URL against the
    platform's "session invalid" pages and raise ``SessionExpiredError``. That is
    not transient, so it bypasses the retry loop.
    """

    def __init__(
        self,
        retry_count: int = 3,
        timeout: float = 300.0,
        retry_delay: float = 1.0,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        expired_locations: Iterable[str] = SESSION_EXPIRED_LOCATIONS,
    ):
        self.retry_count = max(1, int(retry_count))
        self.timeout = float(timeout)
        self.retry_delay = float(retry_delay)
        self._sleep = sleep
        self.expired_locations = frozenset(expired_locations)

    @classmethod
    def from_config(cls, config) -> "Transport":
        return cls(
            retry_count=config.FETCH_RETRY_COUNT,
            timeout=config.FETCH_TIMEOUT_SECONDS,
        )

    async def call(
        self,
        http: aiohttp.ClientSession,
        method: str,
        url: str,
        *,
        headers: Optional[dict] = None,
        data=None,
        timeout: Optional[float] = None,
        expiry_sensitive: bool = False,
    ) -> FetchResult:
        effective = float(timeout or self.timeout)
        client_timeout = aiohttp.ClientTimeout(total=effective)

        for attempt in range(1, self.retry_count + 1):
            t0 = time.monotonic()
            try:
                async with http.request(
                    method,
                    url,
                    headers=headers,
                    data=data,
                    timeout=client_timeout,
                    allow_redirects=True,
                ) as resp:
                    final_url = str(resp.url)
                    if expiry_sensitive and final_url in self.expired_locations:
                        raise SessionExpiredError()
                    text = await resp.text(errors="replace")
                    logger.debug(
                        "[🌐] %s %s -> %s",
                        method,
                        url,
                        resp.status,
                        extra={"took_ms": round((time.monotonic() - t0) * 1000, 1)},
                    )
                    return FetchResult(resp.status, final_url, text, dict(resp.headers))
            except (aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.warning(
                    "[🌐] Fetch failed %s attempt #%d/%d: %r",
                    url,
                    attempt,
                    self.retry_count,
                    e,
                )
                if attempt >= self.retry_count:
                    if isinstance(e, asyncio.TimeoutError):
                        raise FetchTimeoutError(effective) from e
                    raise
                await self._sleep(self.retry_delay)

        raise AssertionError("unreachable")
