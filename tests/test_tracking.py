from __future__ import annotations
import pytest

from formcoach.common.errors import ConfigurationError
from formcoach.counter.keypoints import Keypoint
from formcoach.counter.phases import CyclePhases
from formcoach.tracking.integrated import (
    IntegratedState,
    analyze_integrated,
    assess_risk,
    classify_quality,
    overall_category,
    tempo_thresholds,
)
from formcoach.tracking.prediction import AnglePredictionEngine, prediction_thresholds_for
from formcoach.tracking.rom import RomTracker, compare_to_baseline, create_squat_rom_tracker, rom_tracker_for
from formcoach.tracking.velocity import (
    MovementPhaseDetector,
    TempoTracker,
    VelocityBands,
    VelocityTracker,
    phase_from_cycle,
)


# velocity

def test_velocity_needs_two_samples():
    vt = VelocityTracker("squat")
    assert not vt.update("left_hip", Keypoint(0.5, 0.5), 0.0).is_valid
    jv = vt.update("left_hip", Keypoint(0.5, 0.6), 1000.0)
    assert jv.is_valid
    assert jv.velocity == pytest.approx(100.0)
    assert jv.category == "optimal"


def test_velocity_rejects_bad_samples_without_touching_history():
    vt = VelocityTracker("squat")
    vt.update("left_hip", Keypoint(0.5, 0.5), 1000.0)
    assert not vt.update("left_hip", Keypoint(0.5, 0.6), 500.0).is_valid
    assert not vt.update("left_hip", Keypoint(0.5, 0.6, score=0.1), 2000.0).is_valid
    assert not vt.update("left_hip", Keypoint(float("inf"), 0.6), 2000.0).is_valid
    assert len(vt.history("left_hip")) == 1


def test_velocity_bands_must_be_ordered():
    with pytest.raises(ConfigurationError):
        VelocityBands(50, 20, 100, 200)
    assert VelocityBands(20, 80, 150, 300).classify(500) == "too_fast"
    assert VelocityBands(20, 80, 150, 300).classify(10) == "too_slow"


def test_movement_phase_follows_vertical_motion():
    det = MovementPhaseDetector()
    assert det.update(0.50, 100.0, 0.0).phase == "isometric"
    assert det.update(0.55, 100.0, 100.0).phase == "eccentric"
    # too slow to count as motion; the short buffer takes the new reading at once
    reading = det.update(0.55, 1.0, 200.0)
    assert reading.phase == "isometric"
    assert reading.duration_ms == 0.0


def test_still_joint_is_isometric():
    vt = VelocityTracker("squat")
    det = MovementPhaseDetector()
    readings = []
    for ts in (0.0, 100.0, 200.0):
        jv = vt.update("left_hip", Keypoint(0.5, 0.5), ts)
        readings.append((jv, det.update(0.5, jv, ts)))
    jv, _ = readings[-1]
    assert jv.is_valid
    assert jv.velocity == 0.0 and jv.smoothed_velocity == 0.0
    assert all(r.phase == "isometric" for _, r in readings)


def test_tempo_ratio():
    tt = TempoTracker()
    tt.record("eccentric", 0.0)
    tt.record("concentric", 2000.0)
    tt.record("isometric", 3000.0)
    tempo = tt.complete_rep(3000.0)
    assert tempo.eccentric_ms == 2000.0
    assert tempo.concentric_ms == 1000.0
    assert tempo.ratio == pytest.approx(2.0)
    assert tempo.is_controlled
    assert tempo.message_key == "tempo.good"
    assert tt.eccentric_ms == 0.0


def test_tempo_rushed_eccentric():
    tt = TempoTracker()
    tt.record("eccentric", 0.0)
    tt.record("concentric", 500.0)
    tempo = tt.complete_rep(1500.0)
    assert tempo.message_key == "tempo.eccentric_too_fast"
    assert not tempo.is_controlled


def test_tempo_missing_phase_is_none():
    tt = TempoTracker()
    tt.record("eccentric", 0.0)
    assert tt.complete_rep(1000.0) is None


def test_phase_from_cycle():
    names = CyclePhases(top="lockout", descending="descent", bottom="setup", ascending="lift")
    assert phase_from_cycle("descent", names) == "eccentric"
    assert phase_from_cycle("lift", names) == "concentric"
    assert phase_from_cycle("setup", names) == "isometric"


# ROM

def test_rom_range_and_assessment():
    rt = RomTracker("squat", ("knee",))
    rt.start_tracking()
    for a in (160.0, 90.0, 120.0):
        assert rt.record("knee", a)
    summary = rt.stop_tracking()
    knee = summary.joint("knee")
    assert (knee.min_angle, knee.max_angle, knee.range_achieved) == (90.0, 160.0, 70.0)
    assert knee.assessment == "limited"
    assert knee.level == "error"
    assert summary.recommendations[0].kind == "stretch"
    assert summary.recommendations[0].priority == "high"
    assert not rt.is_tracking


def test_rom_rejects_out_of_range_and_idle_samples():
    rt = RomTracker("squat", ("knee",))
    assert not rt.record("knee", 100.0)
    rt.start_tracking()
    assert not rt.record("knee", -5.0)
    assert not rt.record("knee", 361.0)
    assert not rt.record("knee", float("nan"))
    assert not rt.record("elbow", 90.0)
    assert rt.summary() is None


def test_rom_unknown_joint():
    with pytest.raises(ConfigurationError):
        RomTracker("x", ("wrist",))


def test_rom_channels_from_raw_angles():
    rt = create_squat_rom_tracker()
    rt.start_tracking()
    assert rt.record_angles({"left_knee": 170.0, "right_knee": 168.0, "torso": 10.0}) == 2
    stats = {(s["joint"], s["side"]) for s in rt.current_stats()}
    assert stats == {("knee", "left"), ("knee", "right")}


def test_rom_baseline_comparison():
    def summary(lo, hi):
        rt = RomTracker("squat", ("knee",))
        rt.start_tracking()
        rt.record("knee", lo)
        rt.record("knee", hi)
        return rt.stop_tracking()

    changes = compare_to_baseline(summary(60.0, 170.0), summary(90.0, 170.0))
    assert len(changes) == 1
    assert changes[0].change == 30.0 and changes[0].improved


def test_rom_tracker_registry():
    assert rom_tracker_for("plank") is None
    assert rom_tracker_for("deadlift").joints == ("hip", "torso")


# prediction

def test_prediction_warns_before_torso_limit():
    engine = AnglePredictionEngine(prediction_thresholds_for("squat"))
    seen = []
    for i in range(12):
        res = engine.update({"torso": 20.0 + 3.0 * i}, i * 100.0)
        seen.extend(res.warnings)
    assert any(w.channel == "torso" for w in seen)
    assert res.is_reliable
    assert res.predictions["torso"].velocity == pytest.approx(30.0, rel=0.05)


def test_prediction_unreliable_with_few_frames():
    engine = AnglePredictionEngine()
    for i in range(3):
        res = engine.update({"torso": 20.0 + 10.0 * i}, i * 100.0)
    assert not res.is_reliable
    assert res.crossings == ()


def test_prediction_skips_non_finite_and_stale_samples():
    engine = AnglePredictionEngine()
    engine.update({"torso": 20.0}, 100.0)
    res = engine.update({"torso": float("nan")}, 200.0)
    assert res.predictions["torso"].current == 20.0
    res = engine.update({"torso": 30.0}, 50.0)
    assert res.predictions["torso"].current == 20.0


def test_prediction_warnings_expire():
    engine = AnglePredictionEngine(prediction_thresholds_for("squat"))
    for i in range(12):
        engine.update({"torso": 20.0 + 3.0 * i}, i * 100.0)
    assert engine.active_warnings
    res = engine.update({}, 10000.0)
    assert res.warnings == ()


def test_prediction_channels_per_exercise():
    assert set(prediction_thresholds_for("pushup")) == {"elbow", "body_alignment"}
    assert "left_knee" in prediction_thresholds_for("unknown")


# integrated

def test_quality_bands():
    assert classify_quality(30) == "controlled"
    assert classify_quality(90) == "moderate"
    assert classify_quality(150) == "rushed"
    assert overall_category(100) == "optimal"
    assert overall_category(350) == "too_fast"


def test_tempo_thresholds():
    assert tempo_thresholds("controlled", "eccentric").mode == "strict"
    assert tempo_thresholds("rushed", "concentric").multiplier == 1.2
    assert tempo_thresholds("moderate", "eccentric").mode == "normal"


def test_velocity_raises_risk():
    r = assess_risk("knee_valgus", "warning", "high_velocity", 50.0)
    assert (r.adjusted_level, r.risk_type, r.confidence) == ("error", "knee_valgus", 0.9)
    r = assess_risk("torso_inclination", "warning", "optimal_velocity", 130.0)
    assert (r.adjusted_level, r.risk_type) == ("error", "spine_rounding")
    r = assess_risk("knee_symmetry", "warning", "optimal_velocity", 10.0)
    assert (r.adjusted_level, r.risk_type) == ("warning", "asymmetry")


def test_integrated_angular_velocity():
    res, st = analyze_integrated({"knee": 100.0}, {}, 0.0, "eccentric", IntegratedState())
    assert res.quality == "controlled" and res.quality_score == 100
    res, st = analyze_integrated({"knee": 70.0}, {}, 100.0, "eccentric", st)
    assert res.angular["knee"].raw == pytest.approx(300.0)
    assert res.angular["knee"].smoothed == pytest.approx(90.0)
    assert res.quality == "moderate"
    assert res.tempo.mode == "normal"
    assert st.frame_count == 2
    assert st.quality_history == ("controlled", "moderate")
