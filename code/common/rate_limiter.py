# =============================================================================
#  MaiSync
#  Copyright (C) 2025 github.com/MaiSync
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

import time
from typing import Callable, List, Optional, Tuple


class AdmissionController:
    """
    Sliding backoff for the bot's task polling.

    A tick is denied when the local queue depth has reached a rule's threshold and
    less than the rule's window has elapsed since the last admitted fetch. With the
    default rules the loop polls every tick while idle, every 8s from 20 running
    jobs and every 16s from 40. The numbers were tuned against the platform's rate
    limiter and are configuration, not protocol.
    """

    def __init__(
        self,
        rules: Optional[List[Tuple[int, float]]] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self._rules = sorted(rules or [(40, 16.0), (20, 8.0)], reverse=True)
        self._clock = clock
        self._last_fire: Optional[float] = None

    @property
    def rules(self) -> List[Tuple[int, float]]:
        return list(self._rules)

    def since_last_fire(self) -> float:
        if self._last_fire is None:
            return float("inf")
        return self._clock() - self._last_fire

    def denial(self, queue_depth: int) -> Optional[Tuple[int, float]]:
        """The rule that blocks a fetch at ``queue_depth``, or None."""
        elapsed = self.since_last_fire()
        for threshold, window in self._rules:
            if queue_depth >= threshold and elapsed < window:
                return threshold, window
        return None

    def admit(self, queue_depth: int) -> bool:
        return self.denial(queue_depth) is None

    def fire(self) -> None:
        self._last_fire = self._clock()

    def reset(self) -> None:
        self._last_fire = None
