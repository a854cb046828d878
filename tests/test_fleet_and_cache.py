from __future__ import annotations

from common.constants import JOB_FAILED, JOB_PROCESSING, JOB_QUEUED
from common.errors import BotUnavailableError
from conftest import TARGET
from orchestrator.cache import CrawlCache
from orchestrator.fleet import BotFleetRegistry


def _report(fleet, code, available=True, friend_count=3):
    fleet.report([{"friend_code": code, "available": available, "friend_count": friend_count}])


def test_fresh_report_is_taken_at_face_value(db, clock):
    fleet = BotFleetRegistry(db, stale_after=300, clock=clock)
    _report(fleet, "bot-a")
    _report(fleet, "bot-b", available=False)

    view = {b["friendCode"]: b for b in fleet.get_all()}
    assert view["bot-a"]["available"] is True
    assert view["bot-a"]["friendCount"] == 3
    assert view["bot-a"]["lastReportedAt"] == clock()
    assert view["bot-b"]["available"] is False
    assert fleet.get("bot-a")["friendCount"] == 3
    assert fleet.get("nobody") is None


def test_stale_bot_is_reported_unavailable(db, clock):
    fleet = BotFleetRegistry(db, stale_after=300, clock=clock)
    _report(fleet, "bot-a", available=True)

    clock.advance(301)

    assert fleet.get_all()[0]["available"] is False
    assert fleet.get("bot-a")["available"] is False
    assert fleet.unavailable() == ["bot-a"]


def test_report_refreshes_staleness(db, clock):
    fleet = BotFleetRegistry(db, stale_after=300, clock=clock)
    _report(fleet, "bot-a")
    clock.advance(299)
    _report(fleet, "bot-a")
    clock.advance(299)
    assert fleet.get("bot-a")["available"] is True


def test_sweep_fails_only_jobs_of_unavailable_bots(db, service, clock):
    fleet = BotFleetRegistry(db, stale_after=300, clock=clock)
    dead_job = service.create(TARGET)
    live_job = service.create("111111111111111")
    queued_job = service.create("222222222222222")
    service.claim(dead_job, "bot-dead")
    service.claim(live_job, "bot-live")

    _report(fleet, "bot-dead")
    _report(fleet, "bot-live")
    clock.advance(200)
    _report(fleet, "bot-live")
    clock.advance(200)

    assert fleet.sweep() == 1

    dead = service.get(dead_job)
    assert dead["status"] == JOB_FAILED
    assert dead["error"] == BotUnavailableError.message
    assert dead["botFriendCode"] == "bot-dead"
    assert service.get(live_job)["status"] == JOB_PROCESSING
    queued = service.get(queued_job)
    assert queued["status"] == JOB_QUEUED
    assert queued["botFriendCode"] is None


def test_sweep_with_healthy_fleet_is_a_noop(db, service, clock):
    fleet = BotFleetRegistry(db, stale_after=300, clock=clock)
    job_id = service.create(TARGET)
    service.claim(job_id, "bot-a")
    _report(fleet, "bot-a")
    assert fleet.sweep() == 0
    assert service.get(job_id)["status"] == JOB_PROCESSING


def test_cache_first_write_wins(db, clock):
    cache = CrawlCache(db, clock=clock)
    assert cache.get("job", 0, 1) is None
    assert cache.put("job", 0, 1, "first")
    assert not cache.put("job", 0, 1, "second")
    assert cache.get("job", 0, 1) == "first"
    assert cache.put("job", 0, 2, "other category")


def test_cache_delete_job(db, clock):
    cache = CrawlCache(db, clock=clock)
    cache.put("job-a", 0, 1, "a")
    cache.put("job-a", 1, 1, "b")
    cache.put("job-b", 0, 1, "c")
    assert cache.delete_job("job-a") == 2
    assert cache.get("job-b", 0, 1) == "c"


def test_cache_ttl_sweep(db, clock):
    cache = CrawlCache(db, ttl_seconds=3600, clock=clock)
    cache.put("old", 0, 1, "x")
    clock.advance(1800)
    cache.put("new", 0, 1, "y")
    clock.advance(1801)

    assert cache.cleanup_expired() == 1
    assert cache.get("old", 0, 1) is None
    assert cache.get("new", 0, 1) == "y"
