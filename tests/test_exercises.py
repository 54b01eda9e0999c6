from __future__ import annotations
import pytest

from formcoach.common.errors import ExerciseMismatchError, UnknownExerciseError
from formcoach.counter.keypoints import Keypoint, Landmark as L
from formcoach.exercises.deadlift import analyze_deadlift, create_initial_deadlift_state
from formcoach.exercises.lunge import LUNGE_THRESHOLDS, _hip_flexor, analyze_lunge, create_initial_lunge_state
from formcoach.exercises.plank import analyze_plank, create_initial_plank_state
from formcoach.exercises.pushup import analyze_pushup, create_initial_pushup_state
from formcoach.exercises.registry import analyze_frame, create_state, exercise_names, generic_phase, get_exercise
from formcoach.exercises.squat import analyze_squat, create_initial_squat_state
from poses import SQUAT_REP, build_pose, plank_pose, pushup_pose, squat_pose


def run(analyze, state, poses, step_ms=100.0):
    results = []
    for i, kp in enumerate(poses):
        res, state = analyze(kp, state, timestamp=i * step_ms)
        results.append(res)
    return results, state


def test_squat_single_rep():
    angles = [170, 150, 125, 100, 80, 80, 100, 125, 150, 170]
    results, state = run(analyze_squat, create_initial_squat_state(), [squat_pose(a) for a in angles])
    completed = [r.rep_completed for r in results]
    assert completed == [False] * 9 + [True]
    assert state.rep_count == 1
    assert results[-1].phase == "standing"
    assert all(0 <= r.score <= 100 for r in results)
    assert results[-1].rep_worst_score is not None
    assert results[-1].rep_worst_score <= min(r.score for r in results)
    assert "bottom" in {r.phase for r in results}


def test_squat_bottom_feedback_has_depth():
    results, _ = run(analyze_squat, create_initial_squat_state(), [squat_pose(a) for a in SQUAT_REP])
    bottom = [r for r in results if r.phase == "bottom"]
    assert bottom
    assert "knee_angle" in bottom[0].feedbacks
    assert "knee_angle" not in results[0].feedbacks


def test_squat_low_confidence_keeps_state():
    _, state = run(analyze_squat, create_initial_squat_state(), [squat_pose(a) for a in SQUAT_REP[:5]])
    res, after = analyze_squat(squat_pose(120, score=0.1), state, timestamp=600.0)
    assert not res.is_valid and res.low_confidence
    assert after is state
    assert res.phase == state.phase


def test_squat_rejects_foreign_state():
    with pytest.raises(ExerciseMismatchError):
        analyze_squat(squat_pose(170), create_initial_pushup_state())


def test_squat_debug_trace():
    lines = []
    state = create_initial_squat_state()
    for i, a in enumerate(SQUAT_REP):
        _, state = analyze_squat(squat_pose(a), state, timestamp=i * 100.0, debug_cb=lines.append)
    assert "state→bottom" in lines


def test_pushup_single_rep():
    results, state = run(analyze_pushup, create_initial_pushup_state(), [pushup_pose(a) for a in SQUAT_REP])
    assert state.rep_count == 1
    assert results[-1].rep_completed
    assert results[-1].phase == "up"
    assert "depth_percent" in results[4].raw_angles


def test_deadlift_counts_at_lockout():
    hips = [100, 100, 120, 140, 160, 175, 178]
    results, state = run(analyze_deadlift, create_initial_deadlift_state(), [squat_pose(160, h) for h in hips])
    assert results[0].phase == "setup"
    assert state.rep_count == 1
    done = [r for r in results if r.rep_completed]
    assert len(done) == 1 and done[0].phase == "lockout"


def test_lunge_low_confidence():
    blank = build_pose({}, Keypoint(0.5, 0.5, score=0.0))
    res, _ = analyze_lunge(blank, create_initial_lunge_state())
    assert not res.is_valid


def test_plank_hold_accumulates():
    state = create_initial_plank_state()
    for i in range(11):
        res, state = analyze_plank(plank_pose(), state, timestamp=i * 100.0)
    assert res.phase == "holding"
    assert res.score == 100
    assert res.hold.current_hold_ms == pytest.approx(1000.0)
    assert res.rep_count == 0


def test_plank_break_banks_hold_time():
    state = create_initial_plank_state()
    for i in range(6):
        _, state = analyze_plank(plank_pose(), state, timestamp=i * 100.0)
    upright = squat_pose(175)
    res, state = analyze_plank(upright, state, timestamp=600.0)
    assert res.phase == "break"
    assert res.hold.is_holding is False
    assert res.hold.total_hold_ms == pytest.approx(500.0)


def test_plank_gap_restarts_hold():
    state = create_initial_plank_state()
    for i in range(5):
        _, state = analyze_plank(plank_pose(), state, timestamp=i * 100.0)
    res, state = analyze_plank(plank_pose(), state, timestamp=5000.0)
    assert res.hold.current_hold_ms == 0.0
    assert res.hold.total_hold_ms == pytest.approx(400.0)


def test_registry():
    assert exercise_names() == ["deadlift", "lunge", "plank", "pushup", "squat"]
    assert get_exercise(" Squat ").name == "squat"
    with pytest.raises(UnknownExerciseError) as exc:
        get_exercise("curl")
    assert exc.value.exercise == "curl"
    assert not get_exercise("plank").cyclic


def test_generic_phase_mapping():
    assert generic_phase(get_exercise("deadlift"), "setup") == "bottom"
    assert generic_phase(get_exercise("deadlift"), "lockout") == "standing"
    assert generic_phase(get_exercise("pushup"), "up") == "standing"
    assert generic_phase(get_exercise("squat"), "ascending") == "ascending"


def test_analyze_frame_dispatch():
    res, state = analyze_frame("squat", squat_pose(170), create_state("squat"))
    assert res.exercise == "squat" and res.is_valid
    assert state.phase == "standing"


def test_lunge_tracks_front_knee():
    res, state = analyze_lunge(squat_pose(170), create_initial_lunge_state(), timestamp=0.0)
    assert res.is_valid
    assert res.raw_angles["front_knee"] == pytest.approx(170.0, abs=0.1)
    assert state.extra.get("front_side", "left") == "left"


def hips_at(left, right, knee=175):
    kp = list(squat_pose(knee))
    kp[L.LEFT_HIP] = Keypoint(*left)
    kp[L.RIGHT_HIP] = Keypoint(*right)
    return kp


def test_squat_flags_a_dropped_hip():
    res, state = analyze_squat(hips_at((0.40, 0.40), (0.50, 0.37)), create_initial_squat_state(), timestamp=0.0)
    tilt = res.feedbacks["pelvic_tilt"]
    assert tilt.level == "error"
    assert tilt.value == pytest.approx(16.7)
    assert tilt.params["side"] == "left"
    assert "left hip" in tilt.message()
    assert res.raw_angles["pelvic_tilt"] == pytest.approx(16.7)
    assert len(state.extra["pelvic_history"]) == 1
    # overlapping shoulders give no rotation reading
    assert "torso_rotation" not in res.feedbacks


def test_squat_level_hips_are_good():
    res, _ = analyze_squat(hips_at((0.40, 0.40), (0.50, 0.40)), create_initial_squat_state(), timestamp=0.0)
    assert res.feedbacks["pelvic_tilt"].level == "good"
    assert res.feedbacks["pelvic_stability"].level == "good"


def test_side_on_squat_has_no_trunk_checkpoints():
    res, state = analyze_squat(squat_pose(170), create_initial_squat_state(), timestamp=0.0)
    assert not {"pelvic_tilt", "pelvic_stability", "torso_rotation"} & set(res.feedbacks)
    assert state.extra["pelvic_history"] == ()


def test_lunge_hip_flexor_escalates_on_pelvic_tilt():
    assert _hip_flexor(175.0, None, LUNGE_THRESHOLDS).level == "good"
    assert _hip_flexor(175.0, 3.0, LUNGE_THRESHOLDS).level == "good"
    item = _hip_flexor(175.0, -12.0, LUNGE_THRESHOLDS)
    assert item.level == "warning"
    assert item.message_key == "lunge.hip_flexor.pelvic_tilt"
    assert item.correction == "backward"
    # a short extension is reported as such, tilt or not
    assert _hip_flexor(150.0, 12.0, LUNGE_THRESHOLDS).message_key == "lunge.hip_flexor.low"
