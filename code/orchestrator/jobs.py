# =============================================================================
#  MaiSync
#  Copyright (C) 2025 github.com/MaiSync
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations

import json
import logging
import time
import uuid
from typing import Callable, Optional

from common.constants import (
    DIFFICULTIES,
    JOB_CANCELED,
    JOB_COMPLETED,
    JOB_FAILED,
    STAGE_ORDER,
    TASK_TYPE,
)
from common.db import DBManager
from common.scores import merge_scores
from orchestrator.cache import CrawlCache

logger = logging.getLogger(__name__)


def _json(raw):
    return json.loads(raw) if raw else None


def job_view(row) -> dict:
    return {
        "id": row["id"],
        "friendCode": row["friend_code"],
        "skipUpdateScore": bool(row["skip_update_score"]),
        "status": row["status"],
        "stage": row["stage"],
        "error": row["error"],
        "scoreProgress": _json(row["score_progress"]),
        "result": _json(row["result"]),
        "botFriendCode": row["bot_friend_code"],
        "friendRequestSentAt": row["friend_request_sent_at"],
        "executing": bool(row["executing"]),
        "createdAt": row["created_at"],
        "updatedAt": row["updated_at"],
    }


class JobService:
    """
    Queue and stage machine behind the job API.

    Every write that depends on the job's current state is a single conditional
    UPDATE in ``DBManager``; nothing here reads a row and then writes it back.
    """

    def __init__(
        self,
        db: DBManager,
        cache: Optional[CrawlCache] = None,
        *,
        auth_url: str = "",
        clock: Callable[[], float] = time.time,
    ):
        self.db = db
        self.cache = cache or CrawlCache(db, clock=clock)
        self.auth_url = auth_url
        self._clock = clock

    # ---------- public side ----------
    def create(self, friend_code: str, skip_update_score: bool = False) -> str:
        now = self._clock()
        self.db.get_or_create_user(friend_code, now)
        job_id = uuid.uuid4().hex
        self.db.insert_job(job_id, friend_code, skip_update_score, now)
        logger.info(
            "[📥] Job created for %s (skipUpdateScore=%s)",
            friend_code,
            bool(skip_update_score),
            extra={"job_id": job_id},
        )
        return job_id

    def get(self, job_id: str) -> Optional[dict]:
        row = self.db.get_job(job_id)
        return job_view(row) if row else None

    def cancel(self, job_id: str) -> bool:
        """Marks the job canceled. A bot already working on it is not interrupted."""
        ok = self.db.finish_job(job_id, JOB_CANCELED, self._clock())
        if ok:
            logger.info("[📥] Job canceled", extra={"job_id": job_id})
        return ok

    # ---------- bot side ----------
    def next_task(self, bot: str) -> Optional[dict]:
        row = self.db.find_claimable_job(bot)
        if row is None:
            return None
        user = self.db.get_user(row["friend_code"])
        return {
            "data": {
                "username": row["friend_code"],
                "password": (user["import_token"] if user else None) or "",
                "authUrl": self.auth_url,
                "diffList": list(DIFFICULTIES),
                "traceUUID": row["id"],
                "pageInfo": {
                    "stage": row["stage"],
                    "skipUpdateScore": bool(row["skip_update_score"]),
                    "friendRequestSentAt": row["friend_request_sent_at"],
                    "scoreProgress": _json(row["score_progress"]),
                },
            },
            "uuid": row["id"],
            "type": TASK_TYPE,
            "appendTime": int(row["enqueued_at"] * 1000),
        }

    def claim(self, job_id: str, bot: str) -> bool:
        won = self.db.claim_job(job_id, bot, self._clock())
        logger.info(
            "[🎯] Claim %s", "won" if won else "lost", extra={"job_id": job_id, "bot": bot}
        )
        return won

    def advance(self, job_id: str, bot: str, stage: str, **fields) -> bool:
        """Moves the job to a strictly later ``stage``; earlier or equal stages are refused."""
        if stage not in STAGE_ORDER:
            raise ValueError(f"unknown stage {stage!r}")
        earlier = STAGE_ORDER[: STAGE_ORDER.index(stage)]
        if not earlier:
            return False
        ok = self.db.update_owned_job(
            job_id, bot, {"stage": stage, **fields}, self._clock(), stage_from=earlier
        )
        logger.info(
            "[🎯] Stage -> %s%s",
            stage,
            "" if ok else " refused",
            extra={"job_id": job_id, "bot": bot, "stage": stage},
        )
        return ok

    def record_progress(
        self, job_id: str, bot: str, completed_cells: list[int], total_cells: int
    ) -> bool:
        progress = {"completedCells": sorted(set(completed_cells)), "totalCells": total_cells}
        return self.db.update_owned_job(
            job_id, bot, {"score_progress": progress}, self._clock()
        )

    def release(self, job_id: str, bot: str) -> bool:
        now = self._clock()
        return self.db.update_owned_job(
            job_id, bot, {"executing": 0, "enqueued_at": now}, now
        )

    def recover(self, bot: str) -> int:
        n = self.db.release_executing_jobs(bot, self._clock())
        if n:
            logger.info("[🎯] Released %d interrupted job(s)", n, extra={"bot": bot})
        return n

    def complete(self, job_id: str, bot: str, result: dict) -> bool:
        now = self._clock()
        if not self.db.finish_job(
            job_id, JOB_COMPLETED, now, result=result, bot_friend_code=bot
        ):
            return False

        row = self.db.get_job(job_id)
        scores = (result or {}).get("scores") or []
        if row is not None and scores:
            profile = self.db.get_user_profile(row["friend_code"]) or {}
            merged = merge_scores(list(profile.get("scores") or []) + list(scores))
            self.db.update_user(
                row["friend_code"],
                profile={"scores": merged, "count": len(merged), "updatedAt": now},
                now=now,
            )
        self.cache.delete_job(job_id)
        logger.info(
            "[✅] Job completed with %d score(s)",
            len(scores),
            extra={"job_id": job_id, "bot": bot},
        )
        return True

    def fail(self, job_id: str, bot: Optional[str], error: str) -> bool:
        ok = self.db.finish_job(
            job_id, JOB_FAILED, self._clock(), error=error, bot_friend_code=bot
        )
        if ok:
            logger.warning("[❌] Job failed: %s", error, extra={"job_id": job_id, "bot": bot})
        return ok
