# =============================================================================
#  MaiSync
#  Copyright (C) 2025 github.com/MaiSync
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

"""
Mirrors a finished sync into the external score tracker.

The tracker speaks the diving-fish prober API: ``POST /player/update_records``
with the user's ``Import-Token`` and a JSON list of records. Uploads run after
the job is already completed; a failed upload is logged and never touches the
job.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Iterable, Optional

import aiohttp

from common.errors import TrackerUploadError
from common.scores import normalize_achievement

logger = logging.getLogger(__name__)

UNKNOWN_TITLE = "未知曲目"


def to_tracker_record(score: dict) -> dict:
    return {
        "achievements": normalize_achievement(score.get("achievement")),
        "dxScore": score.get("dx_score"),
        "fc": score.get("fc"),
        "fs": score.get("fs"),
        "level_index": int(score.get("difficulty") or 0),
        "title": score.get("title") or UNKNOWN_TITLE,
        "type": "SD" if score.get("type") == "SD" else "DX",
    }


class TrackerUploader:
    def __init__(
        self,
        base_url: str,
        *,
        timeout: float = 30.0,
        session: Optional[aiohttp.ClientSession] = None,
    ):
        self.base_url = (base_url or "").rstrip("/")
        self.timeout = aiohttp.ClientTimeout(total=timeout)
        self._session = session
        self._owns_session = session is None
        self._pending: set[asyncio.Task] = set()

    @classmethod
    def from_config(cls, config) -> "TrackerUploader":
        return cls(config.TRACKER_URL, timeout=config.TRACKER_TIMEOUT_SECONDS)

    @property
    def enabled(self) -> bool:
        return bool(self.base_url)

    def _http(self) -> aiohttp.ClientSession:
        if self._session is None or self._session.closed:
            self._session = aiohttp.ClientSession()
            self._owns_session = True
        return self._session

    async def upload(self, import_token: str, scores: Iterable[dict]) -> int:
        """Posts the records; returns how many were sent. Non-2xx raises ``TrackerUploadError``."""
        records = [to_tracker_record(s) for s in scores]
        async with self._http().post(
            f"{self.base_url}/player/update_records",
            json=records,
            headers={"Import-Token": import_token},
            timeout=self.timeout,
        ) as resp:
            text = await resp.text()
            if not 200 <= resp.status < 300:
                raise TrackerUploadError(resp.status, text[:200])
        return len(records)

    async def mirror(self, friend_code: str, import_token: str, scores: list[dict]) -> bool:
        try:
            sent = await self.upload(import_token, scores)
        except (TrackerUploadError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            logger.warning("[📤] Tracker upload for %s failed: %s", friend_code, e)
            return False
        logger.info("[📤] Mirrored %d record(s) for %s", sent, friend_code)
        return True

    def schedule(
        self, friend_code: str, import_token: Optional[str], scores: list[dict]
    ) -> Optional[asyncio.Task]:
        if not (self.enabled and import_token and scores):
            return None
        task = asyncio.create_task(
            self.mirror(friend_code, import_token, scores), name=f"tracker-{friend_code}"
        )
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def drain(self) -> None:
        if self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    async def close(self) -> None:
        await self.drain()
        if self._owns_session and self._session is not None:
            await self._session.close()
        self._session = None
