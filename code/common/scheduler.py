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
from typing import Awaitable, Callable, Optional

logger = logging.getLogger(__name__)


class PeriodicTask:
    """
    Runs ``func`` every ``interval`` seconds as a background asyncio task.

    - ``start()`` is idempotent; ``await stop()`` signals and waits for the loop.
    - Failures of a single iteration are logged and the loop keeps going.
    - ``run_first`` runs one iteration immediately instead of after the first interval.
    """

    def __init__(
        self,
        name: str,
        interval: float,
        func: Callable[[], Awaitable[object] | object],
        *,
        run_first: bool = False,
        log: Optional[logging.Logger] = None,
    ) -> None:
        self.name = name
        self.interval = max(0.01, float(interval))
        self.func = func
        self.run_first = run_first
        self.log = log or logger
        self._task: Optional[asyncio.Task] = None
        self._stop_evt = asyncio.Event()
        self.runs = 0
        self.last_run_at: Optional[float] = None

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            self.log.debug("[⏱️] %s already running", self.name)
            return
        self._stop_evt.clear()
        self._task = asyncio.create_task(self._run_loop(), name=self.name)
        self.log.info("[⏱️] %s started (every=%.1fs)", self.name, self.interval)

    async def stop(self) -> None:
        self._stop_evt.set()
        if self._task:
            with contextlib.suppress(asyncio.CancelledError):
                await self._task
            self._task = None
        self.log.info("[⏱️] %s stopped", self.name)

    async def run_once(self):
        result = self.func()
        if asyncio.iscoroutine(result):
            result = await result
        self.runs += 1
        self.last_run_at = time.time()
        return result

    async def _run_loop(self) -> None:
        if not self.run_first and await self._wait_or_stop(self.interval):
            return

        while not self._stop_evt.is_set():
            try:
                await self.run_once()
            except asyncio.CancelledError:
                raise
            except Exception as e:
                self.log.exception("[⏱️] %s iteration failed: %s", self.name, e)

            if await self._wait_or_stop(self.interval):
                return

    async def _wait_or_stop(self, timeout: float) -> bool:
        """True when stop was signalled during the wait."""
        try:
            await asyncio.wait_for(self._stop_evt.wait(), timeout=timeout)
            return True
        except asyncio.TimeoutError:
            return False
