from __future__ import annotations

import pytest
from fastapi.testclient import TestClient

from common.config import Config
from conftest import BOT, TARGET
from orchestrator.server import create_app

TOKEN = "s3cret"


@pytest.fixture
def client(db, monkeypatch):
    monkeypatch.setenv("BOT_TOKEN", TOKEN)
    monkeypatch.setenv("TRACKER_URL", "")
    app = create_app(Config(db=db), db)
    return TestClient(app)


def _bot(**params):
    return {"token": TOKEN, "bot": BOT, **params}


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert r.text == "ok"
    assert r.headers["X-Request-ID"]


def test_create_job_validation(client):
    r = client.post("/api/job", content=b"not json", headers={"content-type": "application/json"})
    assert r.status_code == 400
    assert r.json() == {"ok": False, "error": "invalid-json"}

    r = client.post("/api/job", json={"friendCode": "  "})
    assert r.status_code == 400
    assert r.json()["error"] == "missing-friend-code"


def test_unknown_job_is_404(client):
    assert client.get("/api/job/nope").status_code == 404
    assert client.post("/api/job/nope/cancel").status_code == 404


def test_bot_endpoints_require_token(client):
    assert client.get("/api/task", params={"bot": BOT}).status_code == 401
    assert client.get("/api/task", params={"bot": BOT, "token": "wrong"}).status_code == 401
    r = client.get("/api/task", params={"bot": BOT}, headers={"X-Bot-Token": TOKEN})
    assert r.status_code == 400
    assert r.json()["error"] == "no-task"


def test_full_job_flow(client):
    job_id = client.post("/api/job", json={"friendCode": TARGET}).json()["jobId"]
    assert client.get(f"/api/job/{job_id}").json()["status"] == "queued"

    task = client.get("/api/task", params=_bot()).json()
    assert task["uuid"] == job_id
    assert task["data"]["username"] == TARGET

    assert client.post(f"/api/task/{job_id}", params=_bot()).status_code == 200
    r = client.post(f"/api/task/{job_id}", params=_bot(bot="bot-other"))
    assert r.status_code == 409
    assert r.json()["error"] == "already-claimed"

    r = client.patch(
        f"/api/job/{job_id}",
        params={"token": TOKEN},
        json={"bot": BOT, "action": "advance", "stage": "update_score"},
    )
    assert r.status_code == 200
    r = client.patch(
        f"/api/job/{job_id}",
        params={"token": TOKEN},
        json={"bot": BOT, "action": "advance", "stage": "wait_acceptance"},
    )
    assert r.status_code == 409

    r = client.put(f"/api/job/{job_id}/cache/0/1", params=_bot(), json={"page": "<html/>"})
    assert r.json() == {"ok": True, "stored": True}
    r = client.put(f"/api/job/{job_id}/cache/0/1", params=_bot(), json={"page": "later"})
    assert r.json()["stored"] is False
    assert client.get(f"/api/job/{job_id}/cache/0/1", params=_bot()).json() == {"page": "<html/>"}
    assert client.get(f"/api/job/{job_id}/cache/0/2", params=_bot()).status_code == 404

    r = client.patch(
        f"/api/job/{job_id}",
        params={"token": TOKEN},
        json={"bot": BOT, "action": "progress", "completedCells": [0], "totalCells": 10},
    )
    assert r.status_code == 200

    score = {"title": "A", "type": "DX", "difficulty": 3, "achievement": 99.5}
    r = client.patch(
        f"/api/job/{job_id}",
        params={"token": TOKEN},
        json={"bot": BOT, "action": "complete", "result": {"scores": [score], "count": 1}},
    )
    assert r.status_code == 200

    job = client.get(f"/api/job/{job_id}").json()
    assert job["status"] == "completed"
    assert job["scoreProgress"] == {"completedCells": [0], "totalCells": 10}
    assert job["result"]["count"] == 1
    assert client.get(f"/api/job/{job_id}/cache/0/1", params=_bot()).status_code == 404

    user = client.get(f"/api/users/{TARGET}").json()
    assert user["profile"]["count"] == 1

    assert client.post(f"/api/job/{job_id}/cancel").status_code == 409


def test_patch_validation(client):
    job_id = client.post("/api/job", json={"friendCode": TARGET}).json()["jobId"]
    client.post(f"/api/task/{job_id}", params=_bot())

    r = client.patch(f"/api/job/{job_id}", params={"token": TOKEN}, json={"bot": BOT, "action": "dance"})
    assert r.json()["error"] == "invalid-action"
    r = client.patch(
        f"/api/job/{job_id}",
        params={"token": TOKEN},
        json={"bot": BOT, "action": "advance", "stage": "teleport"},
    )
    assert r.status_code == 400
    assert r.json()["error"] == "invalid-stage"
    for bad in (
        {"action": "advance", "stage": "wait_acceptance", "friendRequestSentAt": "yesterday"},
        {"action": "progress", "completedCells": ["a"], "totalCells": 10},
        {"action": "progress", "completedCells": [0], "totalCells": "ten"},
        {"action": "progress", "completedCells": 3, "totalCells": 10},
        {"action": "complete", "result": "done"},
    ):
        r = client.patch(f"/api/job/{job_id}", params={"token": TOKEN}, json={"bot": BOT, **bad})
        assert r.status_code == 400
        assert r.json()["error"] == "invalid-action"
    r = client.patch(f"/api/job/{job_id}", json={"bot": BOT, "action": "release"})
    assert r.status_code == 401


def test_cancel_and_fail(client):
    job_id = client.post("/api/job", json={"friendCode": TARGET}).json()["jobId"]
    assert client.post(f"/api/job/{job_id}/cancel").json() == {"ok": True}
    assert client.get(f"/api/job/{job_id}").json()["status"] == "canceled"

    other = client.post("/api/job", json={"friendCode": TARGET}).json()["jobId"]
    client.post(f"/api/task/{other}", params=_bot())
    r = client.patch(
        f"/api/job/{other}",
        params={"token": TOKEN},
        json={"bot": BOT, "action": "fail", "error": "boom"},
    )
    assert r.status_code == 200
    job = client.get(f"/api/job/{other}").json()
    assert job["status"] == "failed"
    assert job["error"] == "boom"


def test_bot_status_and_recover(client):
    r = client.post(
        "/api/bot-status",
        params={"token": TOKEN},
        json={"bots": [{"friendCode": BOT, "available": True, "friendCount": 12}]},
    )
    assert r.status_code == 200
    bots = client.get("/api/bot-status").json()
    assert bots[0]["friendCode"] == BOT
    assert bots[0]["available"] is True
    assert bots[0]["friendCount"] == 12
    assert client.get(f"/api/bot-status/{BOT}").json()["friendCount"] == 12
    assert client.get("/api/bot-status/nobody").status_code == 404

    job_id = client.post("/api/job", json={"friendCode": TARGET}).json()["jobId"]
    client.post(f"/api/task/{job_id}", params=_bot())
    r = client.post(f"/api/bots/{BOT}/recover", params={"token": TOKEN})
    assert r.json() == {"ok": True, "released": 1}
    assert client.get(f"/api/job/{job_id}").json()["executing"] is False


def test_user_settings(client):
    assert client.get("/api/users/404").status_code == 404
    assert client.patch("/api/users/404", json={"idleUpdate": True}).status_code == 404

    client.post("/api/job", json={"friendCode": TARGET})
    r = client.patch(f"/api/users/{TARGET}", json={"idleUpdate": True, "importToken": "abc"})
    assert r.json() == {"ok": True}
    user = client.get(f"/api/users/{TARGET}").json()
    assert user["idleUpdate"] is True
    assert user["hasImportToken"] is True
    assert client.patch(f"/api/users/{TARGET}", json={}).status_code == 400


class RecordingUploader:
    def __init__(self):
        self.calls = []

    def schedule(self, friend_code, import_token, scores):
        self.calls.append((friend_code, import_token, scores))

    async def close(self):
        pass


def test_completed_job_is_mirrored_with_import_token(db, monkeypatch):
    monkeypatch.setenv("BOT_TOKEN", TOKEN)
    uploader = RecordingUploader()
    client = TestClient(create_app(Config(db=db), db, uploader=uploader))

    job_id = client.post("/api/job", json={"friendCode": TARGET}).json()["jobId"]
    client.patch(f"/api/users/{TARGET}", json={"importToken": "df-token"})
    client.post(f"/api/task/{job_id}", params=_bot())

    score = {"title": "A", "type": "DX", "difficulty": 3, "achievement": 99.5}
    r = client.patch(
        f"/api/job/{job_id}",
        params={"token": TOKEN},
        json={"bot": BOT, "action": "complete", "result": {"scores": [score], "count": 1}},
    )
    assert r.status_code == 200
    assert uploader.calls == [(TARGET, "df-token", [score])]

    # a refused completion mirrors nothing
    r = client.patch(
        f"/api/job/{job_id}",
        params={"token": TOKEN},
        json={"bot": BOT, "action": "complete", "result": {"scores": [score], "count": 1}},
    )
    assert r.status_code == 409
    assert len(uploader.calls) == 1
