from __future__ import annotations

import pytest
from aiohttp import web
from aiohttp.test_utils import TestServer

from common.errors import TrackerUploadError
from conftest import TARGET
from orchestrator.tracker import UNKNOWN_TITLE, TrackerUploader, to_tracker_record

SCORES = [
    {
        "title": "Song A",
        "type": "DX",
        "difficulty": 3,
        "level": "13+",
        "achievement": 100.5,
        "dx_score": 2100,
        "fc": "ap",
        "fs": None,
    },
    {"title": "Song B", "type": "SD", "difficulty": 0, "level": "7", "achievement": 97.0, "fs": "fsp"},
]


class FakeTracker:
    def __init__(self, status: int = 200):
        self.status = status
        self.received = []

    async def handle(self, request: web.Request):
        self.received.append((request.path, request.headers.get("Import-Token"), await request.json()))
        if self.status != 200:
            return web.json_response({"message": "导入token有误"}, status=self.status)
        return web.json_response({"message": "更新成绩成功"})


async def _start(fake):
    app = web.Application()
    app.router.add_route("*", "/{tail:.*}", fake.handle)
    server = TestServer(app, host="127.0.0.1")
    await server.start_server()
    base = str(server.make_url("/api/maimaidxprober")).rstrip("/")
    return server, TrackerUploader(base, timeout=5)


def test_record_shape():
    assert to_tracker_record(SCORES[0]) == {
        "achievements": 100.5,
        "dxScore": 2100,
        "fc": "ap",
        "fs": None,
        "level_index": 3,
        "title": "Song A",
        "type": "DX",
    }
    record = to_tracker_record({"type": "standard", "achievement": "98.1234%"})
    assert record["type"] == "DX"
    assert record["achievements"] == 98.1234
    assert record["title"] == UNKNOWN_TITLE
    assert record["dxScore"] is None
    assert to_tracker_record(SCORES[1])["type"] == "SD"


@pytest.mark.asyncio
async def test_upload_posts_records_with_import_token():
    fake = FakeTracker()
    server, uploader = await _start(fake)
    try:
        assert await uploader.upload("df-token", SCORES) == 2

        path, token, body = fake.received[0]
        assert path == "/api/maimaidxprober/player/update_records"
        assert token == "df-token"
        assert [r["title"] for r in body] == ["Song A", "Song B"]
        assert body[1]["fs"] == "fsp"
    finally:
        await uploader.close()
        await server.close()


@pytest.mark.asyncio
async def test_rejected_upload_raises_but_mirror_only_logs(caplog):
    fake = FakeTracker(status=400)
    server, uploader = await _start(fake)
    try:
        with pytest.raises(TrackerUploadError) as exc:
            await uploader.upload("bad-token", SCORES)
        assert exc.value.status == 400

        assert await uploader.mirror(TARGET, "bad-token", SCORES) is False
        assert "Tracker upload" in caplog.text
    finally:
        await uploader.close()
        await server.close()


@pytest.mark.asyncio
async def test_schedule_runs_in_background_and_skips_without_token():
    fake = FakeTracker()
    server, uploader = await _start(fake)
    try:
        assert uploader.schedule(TARGET, None, SCORES) is None
        assert uploader.schedule(TARGET, "df-token", []) is None

        task = uploader.schedule(TARGET, "df-token", SCORES)
        assert task is not None
        await uploader.drain()
        assert task.result() is True
        assert len(fake.received) == 1
    finally:
        await uploader.close()
        await server.close()


@pytest.mark.asyncio
async def test_unreachable_tracker_does_not_raise():
    uploader = TrackerUploader("http://127.0.0.1:9", timeout=2)
    try:
        assert await uploader.mirror(TARGET, "df-token", SCORES) is False
    finally:
        await uploader.close()


def test_empty_url_disables_uploads():
    uploader = TrackerUploader("")
    assert uploader.enabled is False
    assert uploader.schedule(TARGET, "df-token", SCORES) is None
