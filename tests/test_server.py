from __future__ import annotations
import pytest
from fastapi.testclient import TestClient

from formcoach.counter.keypoints import keypoints_to_dicts
from formcoach.data.db import SessionStore
from formcoach.runtime import server
from poses import SQUAT_REP, frames_for, squat_pose


@pytest.fixture
def client(tmp_path):
    server.MANAGER.store = SessionStore(tmp_path / "t.db")
    with TestClient(server.app) as c:
        yield c
    server.MANAGER.set_web_mode(False)


def test_health(client):
    r = client.get("/health")
    assert r.status_code == 200
    assert "squat" in r.json()["exercises"]


def test_current_is_idle(client):
    body = client.get("/sessions/current").json()
    assert body["state"] == "idle"
    assert body["session_id"] is None


def test_start_and_stop_web_session(client):
    r = client.post("/sessions/start", json={"exercise": "squat", "target_reps": 3, "source": "web"})
    assert r.status_code == 200
    sid = r.json()["session_id"]
    cur = client.get("/sessions/current").json()
    assert cur["state"] == "running" and cur["web_mode"] and cur["target_reps"] == 3

    r = client.post("/sessions/stop")
    body = r.json()
    assert body["stopped"] and body["session_id"] == sid
    assert body["total_reps"] == 0
    assert client.post("/sessions/stop").json()["stopped"] is False


def test_start_unknown_exercise(client):
    r = client.post("/sessions/start", json={"exercise": "curl", "source": "web"})
    assert r.status_code == 404
    assert "curl" in r.json()["detail"]


def test_start_rejects_bad_target(client):
    r = client.post("/sessions/start", json={"exercise": "squat", "target_reps": 0})
    assert r.status_code == 422


def test_analyze_reps(client):
    frames = [f.to_dict() for f in frames_for([squat_pose(a) for a in SQUAT_REP])]
    r = client.post("/analyze/reps", json={"frames": frames, "exercise": "squat"})
    assert r.status_code == 200
    body = r.json()
    assert body["status"] == "ok"
    assert body["total_reps"] == 1


def test_analyze_reps_bad_window(client):
    r = client.post("/analyze/reps", json={"frames": [], "exercise": "squat", "min_rep_ms": 5000, "max_rep_ms": 1000})
    assert r.status_code == 422


def test_analyze_reps_unknown_exercise(client):
    r = client.post("/analyze/reps", json={"frames": [], "exercise": "curl"})
    assert r.status_code == 404


def test_detect_with_too_few_frames(client):
    frames = [f.to_dict() for f in frames_for([squat_pose(170)] * 5)]
    body = client.post("/analyze/detect", json={"frames": frames}).json()
    assert body["status"] == "failed"
    assert body["reason"] == "insufficient_frames"


def test_websocket_traces(client):
    with client.websocket_connect("/ws/keypoints") as ws:
        assert ws.receive_json() == {"type": "trace", "msg": "ws: client connected"}
        assert server.MANAGER.web_mode
        ws.send_text("{not json")
        assert ws.receive_json() == {"type": "trace", "msg": "ws: bad json"}


def receive_until(ws, msg, limit=20):
    seen = []
    for _ in range(limit):
        ev = ws.receive_json()
        seen.append(ev)
        if ev.get("msg") == msg:
            return seen
    raise AssertionError(f"{msg!r} never arrived: {seen}")


def test_websocket_survives_malformed_frames(client):
    client.post("/sessions/start", json={"exercise": "squat", "source": "web"})
    with client.websocket_connect("/ws/keypoints") as ws:
        receive_until(ws, "ws: client connected")
        bad = keypoints_to_dicts(squat_pose(170))
        del bad[3]["x"]
        ws.send_json({"type": "keypoints", "keypoints": bad, "ts": 0})
        ws.send_json({"type": "keypoints", "keypoints": keypoints_to_dicts(squat_pose(170)), "ts": "soon"})
        seen = receive_until(ws, "ws: bad ts")
        ws.send_text("{not json")
        seen += receive_until(ws, "ws: bad json")
        assert server.MANAGER.active_pipeline.dropped == 1
    assert any(str(e.get("msg", "")).startswith("drop: bad frame") for e in seen)
    assert client.post("/sessions/stop").json()["stopped"]


def test_analyze_reps_stops_once_shutdown_is_signalled(client):
    frames = [f.to_dict() for f in frames_for([squat_pose(a) for a in SQUAT_REP])]
    server._SHUTDOWN.set()
    try:
        body = client.post("/analyze/reps", json={"frames": frames, "exercise": "squat"}).json()
    finally:
        server._SHUTDOWN.clear()
    assert body["status"] == "cancelled"
