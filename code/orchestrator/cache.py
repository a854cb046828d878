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

from common.db import DBManager

logger = logging.getLogger(__name__)


class CrawlCache:
    """
    Raw Friend VS pages keyed by (job, difficulty, category).

    The first write for a key wins; later writes for the same key are ignored so a
    resumed crawl can never replace a page an earlier attempt already stored.
    """

    def __init__(
        self,
        db: DBManager,
        ttl_seconds: float = 12 * 3600,
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.ttl_seconds = float(ttl_seconds)
        self._clock = clock

    def get(self, job_id: str, difficulty: int, category: int) -> Optional[str]:
        page = self.db.get_cache_entry(job_id, difficulty, category)
        if page is not None:
            logger.debug(
                "[🗃️] Cache hit", extra={"job_id": job_id, "cell": f"{difficulty}/{category}"}
            )
        return page

    def put(self, job_id: str, difficulty: int, category: int, raw_page: str) -> bool:
        stored = self.db.put_cache_entry(job_id, difficulty, category, raw_page, self._clock())
        if not stored:
            logger.debug(
                "[🗃️] Cache entry already present, keeping the first write",
                extra={"job_id": job_id, "cell": f"{difficulty}/{category}"},
            )
        return stored

    def delete_job(self, job_id: str) -> int:
        n = self.db.delete_cache_for_job(job_id)
        if n:
            logger.info("[🗃️] Dropped %d cached pages", n, extra={"job_id": job_id})
        return n

    def cleanup_expired(self, ttl_seconds: Optional[float] = None) -> int:
        ttl = self.ttl_seconds if ttl_seconds is None else float(ttl_seconds)
        n = self.db.delete_cache_older_than(self._clock() - ttl)
        if n:
            logger.info("[🗃️] Swept %d expired cache entries (ttl=%ss)", n, int(ttl))
        return n
