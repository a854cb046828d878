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
from typing import Optional

import uvicorn

from bot.api import AuthWindow, create_bot_app
from bot.api_client import JobServiceClient
from bot.crawler import CrawlClient, exchange_auth
from bot.dispatch import DispatchLoop, SchedulerState
from bot.pipeline import JobRunner
from bot.proxy import SessionExchangeProxy
from bot.session_store import SessionStore
from common.config import Config, CURRENT_VERSION
from common.logging_setup import configure_app_logging
from common.rate_limiter import AdmissionController
from common.scheduler import PeriodicTask
from common.transport import Transport

logger = logging.getLogger("bot")


class BotProcess:
    """
    One scraper bot: exchange proxy, dispatch loop, heartbeat and the local status
    API, all on one event loop. The bot's identity is its platform friend code,
    taken from BOT_FRIEND_CODE or from the first session the proxy captures.
    """

    def __init__(self, config: Optional[Config] = None):
        self.config = config or Config(logger=logger)
        self.db = self.config.db
        self.transport = Transport.from_config(self.config)
        self.store = SessionStore(
            self.db, self.transport, probe_window=self.config.EXPIRY_PROBE_WINDOW_SECONDS
        )
        self.auth_window = AuthWindow()

        keys = self.store.keys()
        self.bot_code = self.config.BOT_FRIEND_CODE or (keys[0] if keys else "")

        self.jobs = JobServiceClient.from_config(self.config, self.bot_code)
        self.runner = JobRunner(
            self.jobs,
            self.store,
            self.transport,
            self.bot_code,
            acceptance_timeout=self.config.ACCEPTANCE_TIMEOUT_SECONDS,
            acceptance_poll=self.config.ACCEPTANCE_POLL_SECONDS,
            on_session_expired=self._on_session_expired,
        )
        self.state = SchedulerState(admission=AdmissionController(self.config.ADMISSION_RULES))
        self.dispatch = DispatchLoop(
            self.jobs,
            self.runner,
            self.state,
            interval=self.config.DISPATCH_INTERVAL_SECONDS,
            stale_after=self.config.TASK_STALE_SECONDS,
            session_ok=self.session_ok,
        )
        self.proxy = SessionExchangeProxy.from_config(self.config, self.exchange)
        self.heartbeat = PeriodicTask(
            "heartbeat",
            self.config.HEARTBEAT_INTERVAL_SECONDS,
            self.report_status,
            run_first=True,
            log=logger,
        )

    # ---------- identity / sessions ----------
    def _adopt_identity(self, friend_code: str) -> None:
        self.bot_code = friend_code
        self.jobs.bot = friend_code
        self.runner.bot = friend_code
        logger.info("[🤖] Bot identity is now %s", friend_code)

    def _on_session_expired(self) -> None:
        self.state.session_expired = True
        logger.warning("[🤖] Session for %s expired, waiting for a new login", self.bot_code)

    async def exchange(self, callback_url: str) -> str:
        friend_code, session = await exchange_auth(self.transport, callback_url)
        self.store.save(friend_code, session)
        if not self.bot_code:
            self._adopt_identity(friend_code)
        if friend_code == self.bot_code:
            self.state.session_expired = False
        self.auth_window.resolve(friend_code)
        return friend_code

    async def session_ok(self) -> bool:
        if not self.bot_code:
            return False
        session = self.store.load(self.bot_code)
        if session is None:
            return False
        return not await self.store.is_expired(session)

    async def _friend_count(self, session) -> Optional[int]:
        try:
            async with CrawlClient(self.transport, session) as client:
                return len(await client.list_friends())
        except Exception as e:
            logger.debug("[🤖] Friend count for %s unavailable: %r", session.identity_key, e)
            return None

    async def report_status(self) -> list[dict]:
        bots = []
        for key in self.store.keys():
            session = self.store.load(key)
            if session is None:
                continue
            expired = await self.store.is_expired(session)
            bots.append(
                {
                    "friendCode": key,
                    "available": not expired,
                    "friendCount": None if expired else await self._friend_count(session),
                }
            )
        if self.bot_code and not any(b["friendCode"] == self.bot_code for b in bots):
            bots.append({"friendCode": self.bot_code, "available": False, "friendCount": None})
        if bots:
            await self.jobs.heartbeat(bots)
        return bots

    def status(self) -> dict:
        return {
            "bot": self.bot_code,
            "version": CURRENT_VERSION,
            "sessionExpired": self.state.session_expired,
            "running": list(self.state.running),
            "authWindow": self.auth_window.status(),
            "proxyPort": self.proxy.port,
            "sessions": self.store.keys(),
        }

    # ---------- lifecycle ----------
    async def start(self) -> None:
        await self.proxy.start()
        if self.bot_code:
            try:
                await self.jobs.recover()
            except Exception as e:
                logger.warning("[🤖] Could not release interrupted jobs: %r", e)
        self.heartbeat.start()
        self.dispatch.start()

    async def shutdown(self) -> None:
        logger.info("Shutting down bot…")
        with contextlib.suppress(Exception):
            await self.dispatch.stop()
        with contextlib.suppress(Exception):
            await self.heartbeat.stop()
        with contextlib.suppress(Exception):
            await self.proxy.stop()
        with contextlib.suppress(Exception):
            await self.jobs.close()
        self.db.close()
        logger.info("Bot shutdown complete.")

    async def run_async(self) -> None:
        logger.info("[✨] Starting MaiSync bot %s", CURRENT_VERSION)
        await self.start()
        server = uvicorn.Server(
            uvicorn.Config(
                create_bot_app(self),
                host="0.0.0.0",
                port=self.config.BOT_API_PORT,
                log_config=None,
            )
        )
        try:
            await server.serve()
        finally:
            await self.shutdown()

    def run(self) -> None:
        asyncio.run(self.run_async())


if __name__ == "__main__":
    _config = Config(logger=logger)
    configure_app_logging(_config.LOG_LEVEL)
    BotProcess(_config).run()
