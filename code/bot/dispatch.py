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
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, Optional

import aiohttp

from common.errors import JobServiceError
from common.rate_limiter import AdmissionController
from common.scheduler import PeriodicTask

logger = logging.getLogger(__name__)

TICK_BUSY = "busy"
TICK_THROTTLED = "throttled"
TICK_NO_SESSION = "no-session"
TICK_EMPTY = "empty"
TICK_LOST = "lost"
TICK_STALE = "stale"
TICK_STARTED = "started"


@dataclass
class SchedulerState:
    """Everything the dispatch loop remembers between ticks."""

    admission: AdmissionController = field(default_factory=AdmissionController)
    fetch_lock: asyncio.Lock = field(default_factory=asyncio.Lock)
    running: dict = field(default_factory=dict)
    session_expired: bool = False

    @property
    def depth(self) -> int:
        return len(self.running)


class DispatchLoop:
    """
    Polls the job service for work on a fixed tick.

    A tick is skipped while a previous fetch is still in flight or when the
    admission controller says the bot is already busy enough. A fetched task has
    to be acknowledged before it is run; losing that race just drops the task.
    """

    def __init__(
        self,
        jobs,
        runner,
        state: Optional[SchedulerState] = None,
        *,
        interval: float = 2.0,
        stale_after: float = 60.0,
        session_ok: Optional[Callable[[], Awaitable[bool]]] = None,
        clock: Callable[[], float] = time.time,
    ):
        self.jobs = jobs
        self.runner = runner
        self.state = state or SchedulerState()
        self.stale_after = float(stale_after)
        self.session_ok = session_ok
        self._clock = clock
        self._periodic = PeriodicTask("dispatch", interval, self.tick, run_first=True, log=logger)

    def start(self) -> None:
        self._periodic.start()

    async def stop(self, grace: float = 5.0) -> None:
        await self._periodic.stop()
        pending = list(self.state.running.values())
        for t in pending:
            t.cancel()
        if pending:
            with contextlib.suppress(asyncio.TimeoutError):
                await asyncio.wait_for(
                    asyncio.gather(*pending, return_exceptions=True), timeout=grace
                )

    async def tick(self) -> str:
        st = self.state
        if st.fetch_lock.locked():
            return TICK_BUSY
        denial = st.admission.denial(st.depth)
        if denial is not None:
            logger.debug(
                "[🚦] Holding off: %d running >= %d within %.0fs", st.depth, denial[0], denial[1]
            )
            return TICK_THROTTLED

        async with st.fetch_lock:
            if self.session_ok is not None and not await self.session_ok():
                st.session_expired = True
                return TICK_NO_SESSION
            st.session_expired = False

            st.admission.fire()
            task = await self.jobs.next_task()
            if task is None:
                return TICK_EMPTY

            job_id = task["uuid"]
            try:
                acked = await self.jobs.ack(job_id)
            except (JobServiceError, aiohttp.ClientError, asyncio.TimeoutError) as e:
                logger.warning("[🚦] Ack failed: %r", e, extra={"job_id": job_id})
                acked = False
            if not acked:
                logger.info("[🚦] Task taken by another bot", extra={"job_id": job_id})
                return TICK_LOST

            waited = self._clock() - float(task.get("appendTime") or 0) / 1000.0
            if waited > self.stale_after:
                await self.jobs.fail(
                    job_id, f"Task waited too long in the queue ({int(waited)}s), please try again"
                )
                logger.warning(
                    "[🚦] Rejected stale task (waited %.0fs)", waited, extra={"job_id": job_id}
                )
                return TICK_STALE

            self._spawn(task)
            return TICK_STARTED

    def _spawn(self, task: dict) -> asyncio.Task:
        job_id = task["uuid"]
        t = asyncio.create_task(self.runner.run(task), name=f"job-{job_id}")
        self.state.running[job_id] = t
        t.add_done_callback(lambda _t, k=job_id: self.state.running.pop(k, None))
        logger.info("[🚦] Started job (%d running)", self.state.depth, extra={"job_id": job_id})
        return t
