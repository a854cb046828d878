# =============================================================================
#  MaiSync
#  Copyright (C) 2025 github.com/MaiSync
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations

import logging
import time
from typing import Callable, Optional

from fastapi import FastAPI
from fastapi.responses import JSONResponse

from bot.crawler import get_auth_url
from common.config import CURRENT_VERSION
from common.middleware import RequestContextMiddleware

logger = logging.getLogger(__name__)


class AuthWindow:
    """
    Tracks the one login an operator may have in flight: opened when the authorize
    URL is handed out, closed when the proxy completes an exchange or after
    ``duration`` seconds.
    """

    def __init__(self, duration: float = 60.0, clock: Callable[[], float] = time.monotonic):
        self.duration = float(duration)
        self._clock = clock
        self.auth_url: Optional[str] = None
        self._opened_at: Optional[float] = None
        self.last_friend_code: Optional[str] = None

    def open(self, auth_url: str) -> None:
        self.auth_url = auth_url
        self._opened_at = self._clock()

    @property
    def pending(self) -> bool:
        if self._opened_at is None:
            return False
        return self._clock() - self._opened_at < self.duration

    def remaining(self) -> float:
        if not self.pending:
            return 0.0
        return max(0.0, self.duration - (self._clock() - self._opened_at))

    def resolve(self, friend_code: str) -> None:
        self.last_friend_code = friend_code
        self._opened_at = None

    def status(self) -> dict:
        return {
            "pending": self.pending,
            "expiresIn": round(self.remaining(), 1),
            "lastFriendCode": self.last_friend_code,
        }


def create_bot_app(bot) -> FastAPI:
    """Local status API of one bot process. ``bot`` is a ``BotProcess``."""
    app = FastAPI(title="MaiSync Bot", version=CURRENT_VERSION)
    app.add_middleware(RequestContextMiddleware)

    @app.get("/api/health")
    async def health():
        return {"ok": True, "version": CURRENT_VERSION}

    @app.get("/api/auth")
    async def auth():
        try:
            url = await get_auth_url(bot.transport)
        except Exception as e:
            logger.warning("[🔑] Could not resolve authorize URL: %r", e)
            return JSONResponse({"ok": False, "error": "authorize-url-unavailable"}, status_code=502)
        bot.auth_window.open(url)
        logger.info("[🔑] Auth window opened for %.0fs", bot.auth_window.duration)
        return {"ok": True, "authUrl": url, "expiresIn": bot.auth_window.duration}

    @app.get("/api/status")
    async def status():
        return bot.status()

    return app
