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
from datetime import datetime, timedelta, timezone
from typing import Awaitable, Callable, Optional

from common.db import DBManager
from orchestrator.jobs import JobService

logger = logging.getLogger(__name__)

UTC8 = timezone(timedelta(hours=8))
BATCH_PAUSE_SECONDS = 2.0


class IdleUpdateScheduler:
    """
    Once a day, during ``hour`` (UTC+8), queues a score update for every user who
    opted into idle updates. Meant to be ticked every minute by a PeriodicTask.
    """

    def __init__(
        self,
        db: DBManager,
        jobs: JobService,
        hour: int = 0,
        concurrency: int = 5,
        *,
        clock: Callable[[], float] = time.time,
        sleep: Callable[[float], Awaitable[None]] = asyncio.sleep,
    ):
        self.db = db
        self.jobs = jobs
        self.hour = int(hour)
        self.concurrency = max(1, int(concurrency))
        self._clock = clock
        self._sleep = sleep
        self.last_triggered: Optional[str] = None

    def due(self) -> Optional[str]:
        """Date key (UTC+8) when a run is due now, else None."""
        local = datetime.fromtimestamp(self._clock(), UTC8)
        key = local.strftime("%Y-%m-%d")
        if local.hour != self.hour or self.last_triggered == key:
            return None
        return key

    async def tick(self) -> int:
        key = self.due()
        if key is None:
            return 0
        self.last_triggered = key
        return await self.run(key)

    async def run(self, key: str = "") -> int:
        users = self.db.get_idle_update_users()
        if not users:
            logger.info("[🌙] No users opted into idle updates")
            return 0

        logger.info("[🌙] Idle update run %s for %d user(s)", key, len(users))
        created = failed = 0
        for user in users:
            try:
                self.jobs.create(user["friend_code"], skip_update_score=False)
                created += 1
            except Exception as e:
                failed += 1
                logger.warning("[🌙] Could not queue %s: %r", user["friend_code"], e)
            if created and created % self.concurrency == 0:
                await self._sleep(BATCH_PAUSE_SECONDS)

        logger.info(
            "[🌙] Idle update done: %d created, %d failed of %d", created, failed, len(users)
        )
        return created
