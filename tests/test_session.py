from __future__ import annotations
import pytest

from formcoach.common.errors import StoreClosedError, UnknownExerciseError
from formcoach.counter.keypoints import Keypoint, Landmark as L, keypoints_to_dicts
from formcoach.counter.pipeline import ExerciseTracker
from formcoach.counter.session import CoachSessionManager
from formcoach.counter.web_pipeline import WebKeypointPipeline
from formcoach.data.db import SessionStore
from formcoach.exercises.registry import get_exercise
from poses import SQUAT_REP, squat_pose


@pytest.fixture
def store(tmp_path):
    with SessionStore(tmp_path / "sessions.db") as s:
        yield s


@pytest.fixture
def manager(store):
    m = CoachSessionManager(store=store, mirror=False)
    m.set_web_mode(True)
    events = []
    m.set_event_sink(events.append)
    m.events = events
    return m


# store

def test_store_round_trip(store):
    store.insert_session("s1", "squat", 1000.0, target_reps=5)
    store.insert_rep("s1", 1, 0.0, 1800.0, 1800.0, 88, worst_score=70, rom_deg=85.5)
    store.insert_event("s1", 1800.0, "rep", 1, {"score": 88})
    store.stop_session("s1", 1100.0, total_reps=1, rom_summary={"overall": "normal"})

    sess = store.fetch_session("s1")
    assert sess["exercise"] == "squat"
    assert sess["total_reps"] == 1
    assert sess["rom_summary"] == {"overall": "normal"}
    reps = store.fetch_reps("s1")
    assert [r["score"] for r in reps] == [88]
    assert store.fetch_events("s1", "rep")[0]["payload"] == {"score": 88}
    assert store.fetch_events("s1", "warning") == []
    assert store.fetch_session("missing") is None


def test_in_memory_store():
    with SessionStore(":memory:") as s:
        s.insert_session("a", "plank", 0.0)
        assert s.fetch_session("a")["rom_summary"] is None


def test_closed_store_raises(tmp_path):
    s = SessionStore(tmp_path / "x.db")
    assert not s.is_open
    with pytest.raises(StoreClosedError):
        s.insert_session("a", "squat", 0.0)
    with pytest.raises(StoreClosedError):
        s.fetch_reps("a")


# web pipeline

def test_web_pipeline_drops_short_frames():
    got = []
    pipe = WebKeypointPipeline(lambda kps, ts: got.append((kps, ts)))
    assert not pipe.push_keypoints([Keypoint(0.5, 0.5)] * 10, 0.0)
    assert pipe.dropped == 1 and got == []


def test_web_pipeline_converts_and_mirrors():
    got = []
    pipe = WebKeypointPipeline(lambda kps, ts: got.append((kps, ts)), mirror=True)
    pose = squat_pose(120, x0=0.3)
    assert pipe.push_keypoints(keypoints_to_dicts(pose), 250)
    kps, ts = got[0]
    assert ts == 250.0
    assert isinstance(kps[0], Keypoint)
    assert kps[L.LEFT_ANKLE].x == pytest.approx(0.7)


def test_web_pipeline_pause():
    got = []
    pipe = WebKeypointPipeline(lambda kps, ts: got.append(ts))
    pipe.pause()
    assert not pipe.push_keypoints(squat_pose(170), 0.0)
    pipe.resume()
    assert pipe.push_keypoints(squat_pose(170), 0.0)
    assert got == [0.0]


# session manager

def test_session_counts_and_persists_a_rep(manager, store):
    sid, msg = manager.start("squat", target_reps=1)
    assert msg == "started squat"
    assert manager.status().state == "running"
    for i, a in enumerate(SQUAT_REP):
        assert manager.push_keypoints(squat_pose(a), i * 100.0)

    types = [e["type"] for e in manager.events]
    assert types[0] == "session_started"
    assert "analysis" in types
    assert types.count("rep") == 1
    assert {"type": "trace", "msg": "target reached: 1"} in manager.events
    assert len(store.fetch_reps(sid)) == 1
    assert store.fetch_events(sid, "rep")[0]["rep_count"] == 1

    summary = manager.stop()
    assert summary.session_id == sid
    assert summary.total_reps == 1
    assert summary.rom_summary is not None
    assert manager.events[-1]["type"] == "session_stopped"
    assert store.fetch_session(sid)["total_reps"] == 1
    assert manager.status().state == "idle"


def test_unknown_exercise_is_rejected(manager):
    with pytest.raises(UnknownExerciseError):
        manager.start("curl")
    assert manager.status().state == "idle"


def test_pause_blocks_frames(manager):
    manager.start("squat")
    manager.pause()
    assert manager.status().state == "paused"
    assert not manager.push_keypoints(squat_pose(170), 0.0)
    manager.resume()
    assert manager.push_keypoints(squat_pose(170), 0.0)
    manager.stop()


def test_starting_again_replaces_the_session(manager, store):
    first, _ = manager.start("squat")
    second, _ = manager.start("pushup")
    assert first != second
    assert manager.exercise == "pushup"
    assert store.fetch_session(first)["stopped_at"] is not None
    manager.stop()


def test_push_without_web_session_is_ignored(manager):
    assert not manager.push_keypoints(squat_pose(170), 0.0)


def test_failing_sink_does_not_break_the_session(store):
    m = CoachSessionManager(store=store, mirror=False)
    m.set_web_mode(True)

    def boom(ev):
        raise RuntimeError("sink down")

    m.set_event_sink(boom)
    m.start("squat")
    assert m.push_keypoints(squat_pose(170), 0.0)
    assert m.stop().total_reps == 0


def test_web_pipeline_accepts_mixed_payloads():
    got = []
    pipe = WebKeypointPipeline(lambda kps, ts: got.append(kps))
    pose = squat_pose(120)
    mixed = [kp if i % 2 else {"x": kp.x, "y": kp.y, "visibility": kp.score} for i, kp in enumerate(pose)]
    assert pipe.push_keypoints(mixed, 0.0)
    assert all(isinstance(k, Keypoint) for k in got[0])
    assert got[0][L.LEFT_KNEE].y == pytest.approx(pose[L.LEFT_KNEE].y)


@pytest.mark.parametrize("bad", [{"y": 0.5}, {"x": "left", "y": 0.5}, None, 0.5])
def test_web_pipeline_drops_malformed_frames(bad):
    got, lines = [], []
    pipe = WebKeypointPipeline(lambda kps, ts: got.append(kps), debug_cb=lines.append)
    payload = keypoints_to_dicts(squat_pose(120))
    payload[5] = bad
    assert not pipe.push_keypoints(payload, 0.0)
    assert pipe.dropped == 1 and pipe.frames == 0
    assert got == []
    assert lines[0].startswith("drop: bad frame")


def test_web_pipeline_drops_bad_timestamp():
    pipe = WebKeypointPipeline(lambda kps, ts: None)
    assert not pipe.push_keypoints(squat_pose(170), "soon")
    assert pipe.dropped == 1


def test_malformed_frame_is_traced_and_the_session_survives(manager):
    manager.start("squat")
    payload = keypoints_to_dicts(squat_pose(170))
    del payload[0]["x"]
    assert not manager.push_keypoints(payload, 0.0)
    traces = [e["msg"] for e in manager.events if e["type"] == "trace"]
    assert any(t.startswith("drop: bad frame") for t in traces)
    assert manager.push_keypoints(squat_pose(170), 100.0)
    manager.stop()


def test_min_keypoint_score_reaches_the_analyzer(store):
    faint = squat_pose(170, score=0.1)
    strict = CoachSessionManager(store=store, mirror=False)
    strict.set_web_mode(True)
    strict.start("squat")
    strict.push_keypoints(faint, 0.0)
    assert strict.tracker.state.cycle.last_angle is None
    strict.stop()

    lenient = CoachSessionManager(store=store, mirror=False, min_keypoint_score=0.05)
    lenient.set_web_mode(True)
    lenient.start("squat")
    assert lenient.tracker.cfg.min_score == 0.05
    lenient.push_keypoints(faint, 0.0)
    assert lenient.tracker.state.cycle.last_angle == pytest.approx(170.0)
    lenient.stop()


def test_tracker_defaults_keep_the_analyzer_config():
    tracker = ExerciseTracker("plank")
    assert tracker.cfg is get_exercise("plank").config
    assert ExerciseTracker("plank", min_score=0.2).cfg.min_score == 0.2
