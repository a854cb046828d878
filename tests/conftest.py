from __future__ import annotations

import asyncio

import pytest

from bot.session_store import Session, SessionStore
from common.constants import CATEGORY_DX
from common.db import DBManager
from orchestrator.jobs import JobService

BOT = "bot-100000000000001"
TARGET = "634142510810999"


class FakeClock:
    def __init__(self, t: float = 1_700_000_000.0):
        self.t = t

    def __call__(self) -> float:
        return self.t

    def advance(self, seconds: float) -> None:
        self.t += seconds


def make_page(difficulty: int, category: int, achievement: float | None = None) -> str:
    """A Friend VS page holding a single chart, distinct per cell."""
    kind = "music_dx" if category == CATEGORY_DX else "music_standard"
    ach = 99.0 + difficulty * 0.1 if achievement is None else achievement
    return f"""
    <html><body>
    <div class="music_master_score_back pointer w_450 m_15 p_3 f_0">
      <div class="music_lv_block f_r t_c f_14">13</div>
      <div class="music_name_block t_l f_13 break">Song {difficulty}-{category}</div>
      <img src="https://maimai.wahlap.com/maimai-mobile/img/{kind}.png" class="music_kind_icon">
      <table><tbody><tr>
        <td class="p_r t_r f_b f_15">98.0000%</td>
        <td class="t_c"><img src="https://maimai.wahlap.com/maimai-mobile/img/music_icon_back.png"></td>
        <td class="p_r t_r f_b f_15">{ach:.4f}%</td>
        <td class="t_c"><img src="https://maimai.wahlap.com/maimai-mobile/img/music_icon_fc.png"></td>
      </tr></tbody></table>
    </div>
    </body></html>
    """


class FakeCrawlClient:
    def __init__(self, platform: "FakePlatform"):
        self.p = platform

    async def __aenter__(self):
        return self

    async def __aexit__(self, *exc):
        return None

    async def list_friends(self):
        self.p.friend_list_calls += 1
        if self.p.accept_after is not None and self.p.friend_list_calls >= self.p.accept_after:
            self.p.friends.update(self.p.sent)
        return sorted(self.p.friends)

    async def list_sent_requests(self):
        return list(self.p.sent)

    async def send_friend_request(self, friend_code):
        self.p.sent.append(friend_code)

    async def favorite_friend(self, friend_code):
        self.p.favorited.append(friend_code)

    async def fetch_comparison_page(self, friend_code, score_type, difficulty):
        if self.p.fetch_gate is not None:
            await self.p.fetch_gate.wait()
        if self.p.fetch_error is not None:
            raise self.p.fetch_error
        self.p.fetches.append((difficulty, score_type))
        return make_page(difficulty, score_type)


class FakePlatform:
    def __init__(self, friends=(), accept_after: int | None = None):
        self.friends = set(friends)
        self.accept_after = accept_after
        self.friend_list_calls = 0
        self.sent: list[str] = []
        self.favorited: list[str] = []
        self.fetches: list[tuple[int, int]] = []
        self.fetch_error: Exception | None = None
        self.fetch_gate: asyncio.Event | None = None

    def client(self, transport, session):
        return FakeCrawlClient(self)


class LocalJobs:
    """JobServiceClient look-alike that talks to a JobService directly."""

    def __init__(self, service: JobService, bot: str = BOT):
        self.service = service
        self.bot = bot
        self.progress_log: list[list[int]] = []
        self.failures: list[str] = []

    async def next_task(self):
        return self.service.next_task(self.bot)

    async def ack(self, job_id):
        return self.service.claim(job_id, self.bot)

    async def advance(self, job_id, stage, friend_request_sent_at=None):
        kw = {}
        if friend_request_sent_at is not None:
            kw["friend_request_sent_at"] = friend_request_sent_at
        return self.service.advance(job_id, self.bot, stage, **kw)

    async def progress(self, job_id, completed_cells, total_cells):
        self.progress_log.append(list(completed_cells))
        return self.service.record_progress(job_id, self.bot, completed_cells, total_cells)

    async def release(self, job_id):
        return self.service.release(job_id, self.bot)

    async def complete(self, job_id, result):
        return self.service.complete(job_id, self.bot, result)

    async def fail(self, job_id, error):
        self.failures.append(error)
        return self.service.fail(job_id, self.bot, error)

    async def get_cache(self, job_id, difficulty, category):
        return self.service.cache.get(job_id, difficulty, category)

    async def put_cache(self, job_id, difficulty, category, page):
        return self.service.cache.put(job_id, difficulty, category, page)


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def db(tmp_path):
    manager = DBManager(str(tmp_path / "maisync.db"))
    yield manager
    manager.close()


@pytest.fixture
def service(db, clock):
    return JobService(db, clock=clock)


@pytest.fixture
def store(db):
    s = SessionStore(db, transport=None)
    s.save(BOT, Session(BOT, {"_t": "tok", "userId": "42"}))
    return s
