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
from typing import Any, Optional

import aiohttp

from common.errors import JobServiceError

logger = logging.getLogger(__name__)


class JobServiceClient:
    """
    The bot's only way into jobs and the crawl cache: HTTP calls against the
    orchestrator. Answers the orchestrator uses for "lost a race" (409) or "no
    data" (400/404) come back as False/None, anything else non-2xx raises
    ``JobServiceError``.
    """

    def __init__(
        self,
        base_url: str,
        token: str,
        bot: str,
        *,
        timeout: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = base_url.rstrip("/")
        self.token = token
        self.bot = bot
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None

    @classmethod
    def from_config(cls, config, bot: str) -> "JobServiceClient":
        return cls(config.JOB_SERVICE_URL, config.BOT_TOKEN, bot)

    async def close(self) -> None:
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None

    def _http(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def _request(
        self,
        method: str,
        path: str,
        *,
        params: Optional[dict] = None,
        json: Any = None,
        soft: tuple[int, ...] = (),
    ) -> tuple[int, Any]:
        q = {"token": self.token, "bot": self.bot}
        q.update(params or {})
        async with self._http().request(
            method,
            f"{self.base_url}{path}",
            params=q,
            json=json,
            headers={"X-Bot-Token": self.token},
            timeout=self.timeout,
        ) as resp:
            try:
                body = await resp.json(content_type=None)
            except ValueError:
                body = None
            if 200 <= resp.status < 300 or resp.status in soft:
                return resp.status, body
            detail = body.get("error", "") if isinstance(body, dict) else ""
            raise JobServiceError(resp.status, detail)

    # ---------- queue ----------
    async def next_task(self) -> Optional[dict]:
        status, body = await self._request("GET", "/api/task", soft=(400,))
        return body if status == 200 else None

    async def ack(self, task_id: str) -> bool:
        status, _ = await self._request("POST", f"/api/task/{task_id}", soft=(409,))
        return status == 200

    async def recover(self) -> int:
        _, body = await self._request("POST", f"/api/bots/{self.bot}/recover")
        return int((body or {}).get("released", 0))

    # ---------- job updates ----------
    async def _patch(self, job_id: str, payload: dict) -> bool:
        payload = {"bot": self.bot, **payload}
        status, _ = await self._request("PATCH", f"/api/job/{job_id}", json=payload, soft=(409,))
        return status == 200

    async def advance(
        self, job_id: str, stage: str, friend_request_sent_at: Optional[float] = None
    ) -> bool:
        payload: dict = {"action": "advance", "stage": stage}
        if friend_request_sent_at is not None:
            payload["friendRequestSentAt"] = friend_request_sent_at
        return await self._patch(job_id, payload)

    async def progress(self, job_id: str, completed_cells: list[int], total_cells: int) -> bool:
        return await self._patch(
            job_id,
            {"action": "progress", "completedCells": completed_cells, "totalCells": total_cells},
        )

    async def release(self, job_id: str) -> bool:
        return await self._patch(job_id, {"action": "release"})

    async def complete(self, job_id: str, result: dict) -> bool:
        return await self._patch(job_id, {"action": "complete", "result": result})

    async def fail(self, job_id: str, error: str) -> bool:
        return await self._patch(job_id, {"action": "fail", "error": error})

    # ---------- crawl cache ----------
    async def get_cache(self, job_id: str, difficulty: int, category: int) -> Optional[str]:
        status, body = await self._request(
            "GET", f"/api/job/{job_id}/cache/{difficulty}/{category}", soft=(404,)
        )
        return (body or {}).get("page") if status == 200 else None

    async def put_cache(self, job_id: str, difficulty: int, category: int, page: str) -> bool:
        _, body = await self._request(
            "PUT", f"/api/job/{job_id}/cache/{difficulty}/{category}", json={"page": page}
        )
        return bool((body or {}).get("stored"))

    # ---------- fleet ----------
    async def heartbeat(self, bots: list[dict]) -> None:
        await self._request("POST", "/api/bot-status", json={"bots": bots})
