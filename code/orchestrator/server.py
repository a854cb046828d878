# =============================================================================
#  MaiSync
#  Copyright (C) 2025 github.com/MaiSync
#
#  This source code is released under the GNU Affero General Public License
#  version 3.0. A copy of the license is available at:
#  https://www.gnu.org/licenses/agpl-3.0.en.html
# =============================================================================

from __future__ import annotations

import hmac
import logging
from typing import Optional

import uvicorn
from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse, PlainTextResponse

from common.config import Config, CURRENT_VERSION
from common.db import DBManager
from common.logging_setup import configure_app_logging
from common.middleware import RequestContextMiddleware
from common.scheduler import PeriodicTask
from orchestrator.cache import CrawlCache
from orchestrator.fleet import BotFleetRegistry
from orchestrator.idle_scheduler import IdleUpdateScheduler
from orchestrator.jobs import JobService
from orchestrator.tracker import TrackerUploader

logger = logging.getLogger(__name__)

APP_TITLE = "MaiSync Job Service"
JOB_ACTIONS = ("advance", "progress", "release", "complete", "fail")


def _err(error: str, status_code: int) -> JSONResponse:
    return JSONResponse({"ok": False, "error": error}, status_code=status_code)


async def _json_body(request: Request) -> Optional[dict]:
    try:
        payload = await request.json()
    except Exception:
        return None
    return payload if isinstance(payload, dict) else None


def create_app(
    config: Optional[Config] = None,
    db: Optional[DBManager] = None,
    uploader: Optional[TrackerUploader] = None,
) -> FastAPI:
    config = config or Config(logger=logger, db=db)
    db = db or config.db
    uploader = uploader or TrackerUploader.from_config(config)

    cache = CrawlCache(db, ttl_seconds=config.CACHE_TTL_SECONDS)
    jobs = JobService(db, cache)
    fleet = BotFleetRegistry(db, stale_after=config.BOT_REPORT_TIMEOUT_SECONDS)
    idle = IdleUpdateScheduler(
        db, jobs, hour=config.IDLE_UPDATE_HOUR, concurrency=config.IDLE_UPDATE_CONCURRENCY
    )

    tasks = [
        PeriodicTask("fleet-sweep", config.FLEET_SWEEP_INTERVAL_SECONDS, fleet.sweep),
        PeriodicTask("cache-sweep", config.CACHE_SWEEP_INTERVAL_SECONDS, cache.cleanup_expired),
        PeriodicTask("idle-update", 60, idle.tick),
    ]

    app = FastAPI(title=APP_TITLE, version=CURRENT_VERSION)
    app.add_middleware(RequestContextMiddleware)
    app.state.config = config
    app.state.db = db
    app.state.jobs = jobs
    app.state.fleet = fleet
    app.state.cache = cache
    app.state.idle = idle
    app.state.uploader = uploader
    app.state.tasks = tasks

    def _bot_authorized(request: Request) -> bool:
        if not config.BOT_TOKEN:
            return True
        token = request.query_params.get("token") or request.headers.get("X-Bot-Token")
        return hmac.compare_digest((token or "").encode(), config.BOT_TOKEN.encode())

    def _mirror_to_tracker(job_id: str, result: dict) -> None:
        job = jobs.get(job_id)
        user = db.get_user(job["friendCode"]) if job else None
        if user is not None:
            scores = list(result.get("scores") or [])
            uploader.schedule(job["friendCode"], user["import_token"], scores)

    @app.on_event("startup")
    async def _start_background_tasks():
        if not config.BOT_TOKEN:
            logger.warning("[🔐] BOT_TOKEN is not set, bot endpoints are open")
        for t in tasks:
            t.start()
        logger.info("[✨] %s %s ready", APP_TITLE, CURRENT_VERSION)

    @app.on_event("shutdown")
    async def _stop_background_tasks():
        logger.info("Shutdown initiated")
        for t in tasks:
            await t.stop()
        await uploader.close()
        logger.info("Shutdown complete")

    @app.get("/health", response_class=PlainTextResponse)
    async def health():
        return "ok"

    # ---------- jobs (public) ----------
    @app.post("/api/job")
    async def create_job(request: Request):
        payload = await _json_body(request)
        if payload is None:
            return _err("invalid-json", 400)
        friend_code = str(payload.get("friendCode") or "").strip()
        if not friend_code:
            return _err("missing-friend-code", 400)
        job_id = jobs.create(friend_code, bool(payload.get("skipUpdateScore", False)))
        return {"jobId": job_id}

    @app.get("/api/job/{job_id}")
    async def get_job(job_id: str):
        job = jobs.get(job_id)
        if job is None:
            return _err("job-not-found", 404)
        return job

    @app.post("/api/job/{job_id}/cancel")
    async def cancel_job(job_id: str):
        if jobs.get(job_id) is None:
            return _err("job-not-found", 404)
        if not jobs.cancel(job_id):
            return _err("job-not-active", 409)
        return {"ok": True}

    # ---------- jobs (bot side) ----------
    @app.patch("/api/job/{job_id}")
    async def update_job(job_id: str, request: Request):
        if not _bot_authorized(request):
            return _err("unauthorized", 401)
        payload = await _json_body(request)
        if payload is None:
            return _err("invalid-json", 400)
        bot = str(payload.get("bot") or "")
        action = payload.get("action")
        if not bot or action not in JOB_ACTIONS:
            return _err("invalid-action", 400)

        if action == "advance":
            fields = {}
            if payload.get("friendRequestSentAt") is not None:
                try:
                    fields["friend_request_sent_at"] = float(payload["friendRequestSentAt"])
                except (TypeError, ValueError):
                    return _err("invalid-action", 400)
            try:
                ok = jobs.advance(job_id, bot, str(payload.get("stage")), **fields)
            except ValueError:
                return _err("invalid-stage", 400)
        elif action == "progress":
            try:
                cells = [int(c) for c in payload.get("completedCells") or []]
                total = int(payload.get("totalCells") or 0)
            except (TypeError, ValueError):
                return _err("invalid-action", 400)
            ok = jobs.record_progress(job_id, bot, cells, total)
        elif action == "release":
            ok = jobs.release(job_id, bot)
        elif action == "complete":
            result = payload.get("result") or {}
            if not isinstance(result, dict):
                return _err("invalid-action", 400)
            ok = jobs.complete(job_id, bot, result)
            if ok:
                _mirror_to_tracker(job_id, result)
        else:
            ok = jobs.fail(job_id, bot, str(payload.get("error") or "unknown error"))

        if not ok:
            return _err("conflict", 409)
        return {"ok": True}

    @app.get("/api/job/{job_id}/cache/{difficulty}/{category}")
    async def get_cache(job_id: str, difficulty: int, category: int, request: Request):
        if not _bot_authorized(request):
            return _err("unauthorized", 401)
        page = cache.get(job_id, difficulty, category)
        if page is None:
            return _err("cache-miss", 404)
        return {"page": page}

    @app.put("/api/job/{job_id}/cache/{difficulty}/{category}")
    async def put_cache(job_id: str, difficulty: int, category: int, request: Request):
        if not _bot_authorized(request):
            return _err("unauthorized", 401)
        payload = await _json_body(request)
        if payload is None or not isinstance(payload.get("page"), str):
            return _err("invalid-page", 400)
        stored = cache.put(job_id, difficulty, category, payload["page"])
        return {"ok": True, "stored": stored}

    @app.post("/api/bots/{bot}/recover")
    async def recover_bot(bot: str, request: Request):
        if not _bot_authorized(request):
            return _err("unauthorized", 401)
        return {"ok": True, "released": jobs.recover(bot)}

    # ---------- task queue ----------
    @app.get("/api/task")
    async def next_task(request: Request):
        if not _bot_authorized(request):
            return _err("unauthorized", 401)
        bot = request.query_params.get("bot") or ""
        if not bot:
            return _err("missing-bot", 400)
        task = jobs.next_task(bot)
        if task is None:
            return _err("no-task", 400)
        return task

    @app.post("/api/task/{task_id}")
    async def claim_task(task_id: str, request: Request):
        if not _bot_authorized(request):
            return _err("unauthorized", 401)
        bot = request.query_params.get("bot") or ""
        if not bot:
            return _err("missing-bot", 400)
        if not jobs.claim(task_id, bot):
            return _err("already-claimed", 409)
        return {"ok": True}

    # ---------- fleet ----------
    @app.post("/api/bot-status")
    async def report_bots(request: Request):
        if not _bot_authorized(request):
            return _err("unauthorized", 401)
        payload = await _json_body(request)
        if payload is None or not isinstance(payload.get("bots"), list):
            return _err("invalid-json", 400)
        fleet.report(
            {
                "friend_code": b.get("friendCode"),
                "available": b.get("available"),
                "friend_count": b.get("friendCount"),
            }
            for b in payload["bots"]
            if isinstance(b, dict)
        )
        return {"ok": True}

    @app.get("/api/bot-status")
    async def list_bots():
        return fleet.get_all()

    @app.get("/api/bot-status/{friend_code}")
    async def get_bot(friend_code: str):
        status = fleet.get(friend_code)
        if status is None:
            return _err("bot-not-found", 404)
        return status

    # ---------- users ----------
    @app.get("/api/users/{friend_code}")
    async def get_user(friend_code: str):
        row = db.get_user(friend_code)
        if row is None:
            return _err("user-not-found", 404)
        return {
            "friendCode": row["friend_code"],
            "idleUpdate": bool(row["idle_update"]),
            "hasImportToken": bool(row["import_token"]),
            "profile": db.get_user_profile(friend_code),
        }

    @app.patch("/api/users/{friend_code}")
    async def update_user(friend_code: str, request: Request):
        payload = await _json_body(request)
        if payload is None:
            return _err("invalid-json", 400)
        idle_update = payload.get("idleUpdate")
        import_token = payload.get("importToken")
        updated = db.update_user(
            friend_code,
            idle_update=None if idle_update is None else bool(idle_update),
            import_token=None if import_token is None else str(import_token),
        )
        if not updated:
            if db.get_user(friend_code) is None:
                return _err("user-not-found", 404)
            return _err("nothing-to-update", 400)
        return {"ok": True}

    return app


def main() -> None:
    config = Config(logger=logger)
    configure_app_logging(config.LOG_LEVEL)
    app = create_app(config)
    uvicorn.run(app, host=config.API_HOST, port=config.API_PORT, log_config=None)


if __name__ == "__main__":
    main()
