from __future__ import annotations

from datetime import datetime

import pytest

from conftest import FakeClock
from orchestrator.idle_scheduler import UTC8, IdleUpdateScheduler


def _at(hour: int, day: int = 2) -> float:
    return datetime(2025, 1, day, hour, 30, tzinfo=UTC8).timestamp()


def _opt_in(db, *codes):
    for code in codes:
        db.get_or_create_user(code)
        db.update_user(code, idle_update=True)


@pytest.mark.asyncio
async def test_runs_once_per_day_in_the_configured_hour(db, service):
    _opt_in(db, "100", "200", "300")
    db.get_or_create_user("400")
    clock = FakeClock(_at(3))
    pauses = []

    async def sleep(s):
        pauses.append(s)

    idle = IdleUpdateScheduler(db, service, hour=3, concurrency=2, clock=clock, sleep=sleep)

    assert await idle.tick() == 3
    assert pauses == [2.0]
    assert await idle.tick() == 0

    queued = {r["friend_code"] for r in db.conn.execute("SELECT friend_code FROM jobs")}
    assert queued == {"100", "200", "300"}


@pytest.mark.asyncio
async def test_outside_the_hour_nothing_happens(db, service):
    _opt_in(db, "100")
    clock = FakeClock(_at(4))

    async def sleep(s):
        return None

    idle = IdleUpdateScheduler(db, service, hour=3, clock=clock, sleep=sleep)
    assert idle.due() is None
    assert await idle.tick() == 0

    clock.t = _at(3, day=3)
    assert idle.due() == "2025-01-03"
    assert await idle.tick() == 1
