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
from typing import Awaitable, Callable, Optional

import aiohttp

from bot.crawler import CrawlClient
from bot.parser import parse_friend_vs
from bot.session_store import Session, SessionStore
from common.constants import (
    CATEGORIES,
    DIFFICULTIES,
    JOB_COMPLETED,
    JOB_FAILED,
    STAGE_SEND_REQUEST,
    STAGE_UPDATE_SCORE,
    STAGE_WAIT_ACCEPTANCE,
)
from common.errors import (
    BotUnavailableError,
    FriendAcceptanceTimeoutError,
    MaiSyncError,
    SessionExpiredError,
)
from common.logging_setup import get_logger
from common.scores import merge_scores
from common.transport import Transport

logger = logging.getLogger(__name__)

JOB_ABANDONED = "abandoned"


def crawl_grid() -> list[tuple[int, int]]:
    """(difficulty, category) cells in crawl order; a cell's index is its position here."""
    return [(d, c) for d in DIFFICULTIES for c in CATEGORIES]


class JobLost(Exception):
    """The job service refused an update: the job was canceled or swept meanwhile."""


class JobRunner:
    """
    Drives one claimed job through send_request -> wait_acceptance -> update_score.

    State lives on the job service, so a runner started on a half-done job picks up
    at the stored stage and the crawl reuses every cached page.
    """

    def __init__(
        self,
        jobs,
        store: SessionStore,
        transport: Transport,
        bot_friend_code: str,
        *,
        acceptance_timeout: float = 300.0,
        acceptance_poll: float = 5.0,
        on_session_expired: Optional[Callable[[], None]] = None,
        client_factory: Callable[[Transport, Session], CrawlClient] = CrawlClient,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
        clock: Callable[[], float] = time.time,
    ):
        self.jobs = jobs
        self.store = store
        self.transport = transport
        self.bot = bot_friend_code
        self.acceptance_timeout = float(acceptance_timeout)
        self.acceptance_poll = float(acceptance_poll)
        self.on_session_expired = on_session_expired
        self.client_factory = client_factory
        self._sleep = sleep
        self._clock = clock

    async def run(self, task: dict) -> str:
        job_id = task["uuid"]
        data = task.get("data") or {}
        friend_code = str(data.get("username") or "")
        info = data.get("pageInfo") or {}
        stage = info.get("stage") or STAGE_SEND_REQUEST
        log = get_logger(__name__, job_id=job_id, bot=self.bot)

        session = self.store.load(self.bot)
        if session is None:
            await self.jobs.fail(job_id, BotUnavailableError.message)
            return JOB_FAILED

        try:
            async with self.client_factory(self.transport, session) as client:
                if stage == STAGE_SEND_REQUEST:
                    stage = await self._send_request(client, job_id, friend_code, info, log)
                if stage == STAGE_WAIT_ACCEPTANCE:
                    stage = await self._wait_acceptance(client, job_id, friend_code, info, log)
                if stage == STAGE_UPDATE_SCORE:
                    await self._update_score(client, job_id, friend_code, info, log)
            return JOB_COMPLETED
        except JobLost:
            log.warning("[🏃] Job service refused an update, dropping the job")
            return JOB_ABANDONED
        except SessionExpiredError as e:
            log.warning("[🏃] Session expired mid-job: %s", e)
            await self._fail(job_id, str(e))
            if self.on_session_expired:
                self.on_session_expired()
            return JOB_FAILED
        except (FriendAcceptanceTimeoutError, MaiSyncError) as e:
            log.warning("[🏃] Job failed: %s", e)
            await self._fail(job_id, str(e))
            return JOB_FAILED
        except (aiohttp.ClientError, asyncio.TimeoutError) as e:
            log.warning("[🏃] Job failed on network error: %r", e)
            await self._fail(job_id, f"network error: {e!r}")
            return JOB_FAILED
        except asyncio.CancelledError:
            # shutdown: hand the job back so the next claim resumes it from cache
            await self._release(job_id)
            raise
        except Exception as e:
            log.exception("[🏃] Job crashed: %r", e)
            await self._fail(job_id, f"unexpected error: {e!r}")
            return JOB_FAILED

    async def _fail(self, job_id: str, error: str) -> None:
        try:
            await self.jobs.fail(job_id, error)
        except Exception:
            logger.exception("[🏃] Could not record failure", extra={"job_id": job_id})

    async def _release(self, job_id: str) -> None:
        try:
            if await self.jobs.release(job_id):
                logger.info("[🏃] Job handed back on shutdown", extra={"job_id": job_id})
        except Exception:
            logger.exception("[🏃] Could not release job", extra={"job_id": job_id})

    async def _advance(self, job_id: str, stage: str, **kw) -> str:
        if not await self.jobs.advance(job_id, stage, **kw):
            raise JobLost(job_id)
        return stage

    async def _send_request(
        self, client: CrawlClient, job_id: str, friend_code: str, info: dict, log
    ) -> str:
        friends = await client.list_friends()
        if friend_code in friends:
            log.info("[🏃] Already friends with %s, going straight to scores", friend_code)
            await client.favorite_friend(friend_code)
            return await self._advance(job_id, STAGE_UPDATE_SCORE)

        sent = await client.list_sent_requests()
        if friend_code in sent:
            log.info("[🏃] Request to %s already pending", friend_code)
        else:
            await client.send_friend_request(friend_code)
        info["friendRequestSentAt"] = self._clock()
        return await self._advance(
            job_id, STAGE_WAIT_ACCEPTANCE, friend_request_sent_at=info["friendRequestSentAt"]
        )

    async def _wait_acceptance(
        self, client: CrawlClient, job_id: str, friend_code: str, info: dict, log
    ) -> str:
        started = float(info.get("friendRequestSentAt") or self._clock())
        deadline = started + self.acceptance_timeout
        while True:
            friends = await client.list_friends()
            if friend_code in friends:
                break
            now = self._clock()
            if now >= deadline:
                raise FriendAcceptanceTimeoutError(friend_code, now - started)
            await self._sleep(self.acceptance_poll)

        log.info("[🏃] %s accepted the friend request", friend_code)
        await client.favorite_friend(friend_code)
        return await self._advance(job_id, STAGE_UPDATE_SCORE)

    async def _update_score(
        self, client: CrawlClient, job_id: str, friend_code: str, info: dict, log
    ) -> None:
        if info.get("skipUpdateScore"):
            if not await self.jobs.complete(job_id, {"scores": [], "count": 0, "skipped": True}):
                raise JobLost(job_id)
            log.info("[🏃] Score update skipped on request")
            return

        grid = crawl_grid()
        pages: list[str] = []
        done = sorted(set((info.get("scoreProgress") or {}).get("completedCells") or []))
        fetched = 0
        for idx, (difficulty, category) in enumerate(grid):
            page = await self.jobs.get_cache(job_id, difficulty, category)
            if page is None:
                page = await client.fetch_comparison_page(friend_code, category, difficulty)
                fetched += 1
                if not await self.jobs.put_cache(job_id, difficulty, category, page):
                    page = await self.jobs.get_cache(job_id, difficulty, category) or page
            pages.append(page)
            if idx not in done:
                done.append(idx)
                done.sort()
            if not await self.jobs.progress(job_id, list(done), len(grid)):
                raise JobLost(job_id)
            log.debug("[🏃] Cell %d/%d done", idx + 1, len(grid), extra={"cell": idx})

        rows = []
        for (difficulty, category), page in zip(grid, pages):
            rows.extend(parse_friend_vs(page, difficulty, category))
        scores = merge_scores(rows)
        if not await self.jobs.complete(job_id, {"scores": scores, "count": len(scores)}):
            raise JobLost(job_id)
        log.info(
            "[🏃] Crawl finished: %d score(s), %d page(s) fetched, %d from cache",
            len(scores),
            fetched,
            len(grid) - fetched,
        )
