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
from typing import Callable, Iterable, Optional

from common.db import DBManager
from common.errors import BotUnavailableError

logger = logging.getLogger(__name__)


class BotFleetRegistry:
    """
    Heartbeat records of every bot.

    A record is never trusted at face value: a bot that has not reported within
    ``stale_after`` seconds is listed as unavailable whatever it last said.
    """

    def __init__(
        self,
        db: DBManager,
        stale_after: float = 300.0,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.stale_after = float(stale_after)
        self._clock = clock

    def report(self, bots: Iterable[dict]) -> int:
        batch = [
            {
                "friend_code": str(b["friend_code"]),
                "available": bool(b.get("available")),
                "friend_count": b.get("friend_count"),
            }
            for b in bots
            if b.get("friend_code")
        ]
        if batch:
            self.db.upsert_bot_statuses(batch, self._clock())
        logger.debug("[🤖] Heartbeat for %d bot(s)", len(batch))
        return len(batch)

    def _view(self, row, now: float) -> dict:
        fresh = now - row["last_reported_at"] <= self.stale_after
        return {
            "friendCode": row["friend_code"],
            "available": bool(row["available"]) and fresh,
            "lastReportedAt": row["last_reported_at"],
            "friendCount": row["friend_count"],
        }

    def get_all(self) -> list[dict]:
        now = self._clock()
        return [self._view(r, now) for r in self.db.get_all_bot_statuses()]

    def get(self, friend_code: str) -> Optional[dict]:
        row = self.db.get_bot_status(friend_code)
        return self._view(row, self._clock()) if row else None

    def unavailable(self) -> list[str]:
        return self.db.get_unavailable_bots(self._clock() - self.stale_after)

    def sweep(self) -> int:
        """
        Fails every queued/processing job bound to an unavailable bot. The jobs keep
        their bot binding and are not handed to anyone else.
        """
        dead = self.unavailable()
        if not dead:
            return 0
        n = self.db.fail_jobs_for_bots(dead, BotUnavailableError.message, self._clock())
        if n:
            logger.warning(
                "[🤖] Failed %d job(s) bound to unavailable bots: %s", n, ", ".join(dead)
            )
        return n
