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
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from typing import Callable, Optional

import aiohttp

from common.constants import CLIENT_HEADERS, HOME_URL, LOGIN_FAILED_MARKER
from common.db import DBManager
from common.errors import SessionExpiredError
from common.transport import Transport, new_http

logger = logging.getLogger(__name__)

# The platform hands out cookies that expire within hours; a stored session is
# kept until a probe says otherwise.
EXTENDED_EXPIRY = datetime(2099, 12, 31, tzinfo=timezone.utc).timestamp()


@dataclass(frozen=True)
class Session:
    identity_key: str
    cookies: dict = field(default_factory=dict)
    expires_at: float = 0.0

    def extend(self) -> "Session":
        return replace(self, expires_at=EXTENDED_EXPIRY)

    @property
    def token(self) -> Optional[str]:
        """Anti-tamper token the platform expects echoed back in POST bodies."""
        return self.cookies.get("_t")


class SessionStore:
    """
    Per-identity cookie sessions, persisted in the bot's ``sessions`` table.

    ``is_expired`` is the only call that touches the network. Concurrent probes for
    the same identity share one in-flight request and its answer is reused for
    ``probe_window`` seconds.
    """

    def __init__(
        self,
        db: DBManager,
        transport: Transport,
        probe_window: float = 10.0,
        *,
        http_factory: Callable[..., aiohttp.ClientSession] = new_http,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.db = db
        self.transport = transport
        self.probe_window = float(probe_window)
        self._http_factory = http_factory
        self._clock = clock
        self._inflight: dict[str, asyncio.Task] = {}
        self._probed: dict[str, tuple[float, bool]] = {}
        self.probe_count = 0

    def save(self, identity_key: str, session: Session) -> Session:
        stored = replace(session, identity_key=identity_key).extend()
        self.db.save_session(identity_key, dict(stored.cookies), stored.expires_at)
        self._probed.pop(identity_key, None)
        logger.info("[🍪] Stored session for %s (%d cookies)", identity_key, len(stored.cookies))
        return stored

    def load(self, identity_key: str) -> Optional[Session]:
        row = self.db.load_session(identity_key)
        if row is None:
            return None
        cookies, expires_at = row
        return Session(identity_key, cookies, expires_at)

    def keys(self) -> list[str]:
        return self.db.get_session_keys()

    async def is_expired(self, session: Session) -> bool:
        key = session.identity_key
        hit = self._probed.get(key)
        if hit is not None and self._clock() - hit[0] < self.probe_window:
            return hit[1]

        task = self._inflight.get(key)
        if task is None:
            task = asyncio.create_task(self._probe(session))
            self._inflight[key] = task
            task.add_done_callback(lambda _t, k=key: self._inflight.pop(k, None))
        return await asyncio.shield(task)

    async def _probe(self, session: Session) -> bool:
        self.probe_count += 1
        expired = True
        async with self._http_factory(session.cookies) as http:
            try:
                res = await self.transport.call(
                    http, "GET", HOME_URL, headers=CLIENT_HEADERS, expiry_sensitive=True
                )
                expired = LOGIN_FAILED_MARKER in res.text
            except SessionExpiredError:
                logger.info("[🍪] Session %s redirected to logout", session.identity_key)
            except Exception as e:
                logger.warning("[🍪] Probe for %s failed: %r", session.identity_key, e)
        self._probed[session.identity_key] = (self._clock(), expired)
        logger.debug("[🍪] Probe %s -> expired=%s", session.identity_key, expired)
        return expired
