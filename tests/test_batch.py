from __future__ import annotations
import itertools
import math

import pytest

from formcoach.batch.detector import (
    AngleSpan,
    DetectionConfig,
    DetectionMetrics,
    body_orientation,
    cycle_frequency,
    detect_exercise,
    rank_profiles,
)
from formcoach.batch.frames import frame_from_dict, frames_from_dicts
from formcoach.batch.rep_segmenter import (
    FrameScore,
    RepAnalysis,
    RepAnalysisConfig,
    RepBoundary,
    WorstMoment,
    analyze_video_reps,
    compare_reps,
    consistency_metrics,
    find_rep_boundaries,
    merge_short_reps,
    split_long_reps,
)
from formcoach.common.errors import ConfigurationError
from poses import detection_squat_poses, frames_for, plank_pose, squat_pose


def fs(i, phase, angle=None, done=False, step_ms=100.0, score=90):
    return FrameScore(i, i * step_ms, score, phase, done, angle)


def rep(n, score, duration=2000.0):
    return RepAnalysis(
        rep_number=n, start_ms=0.0, end_ms=duration, duration_ms=duration, score=score,
        phase_scores={}, frame_count=1, frame_scores=(score,), min_score=score, max_score=score,
        avg_score=score, worst_moment=WorstMoment(0.0, 0, score, ()), primary_issues=(), issue_counts={},
    )


# segmentation

def test_single_squat_rep(squat_frames):
    out = analyze_video_reps(squat_frames, RepAnalysisConfig(exercise="squat"))
    assert out.status == "ok"
    assert out.total_reps == 1
    r = out.reps[0]
    assert r.rep_number == 1
    assert r.start_ms == 100.0 and r.end_ms == 900.0
    assert r.phase_scores["bottom"] is not None
    assert out.to_dict()["total_reps"] == 1


def test_boundaries_follow_the_cycle():
    phases = ["standing", "descending", "bottom", "ascending", "standing", "descending", "standing"]
    bounds = find_rep_boundaries([fs(i, p) for i, p in enumerate(phases)])
    # the second dip never reached the bottom
    assert bounds == [RepBoundary(1, 4, 100.0, 400.0)]


def test_short_rep_merges_into_next():
    bounds = [RepBoundary(0, 1, 0.0, 300.0), RepBoundary(2, 3, 300.0, 1200.0)]
    assert merge_short_reps(bounds, 500.0) == [RepBoundary(0, 3, 0.0, 1200.0)]


def test_short_trailing_rep_is_dropped():
    assert merge_short_reps([RepBoundary(0, 1, 0.0, 300.0)], 500.0) == []


def test_long_rep_splits_at_the_top():
    angles = [170, 120, 90, 120, 170, 120, 90, 120, 170]
    scores = [fs(i, "descending", a, step_ms=1500.0) for i, a in enumerate(angles)]
    out = split_long_reps([RepBoundary(0, 8, 0.0, 12000.0)], scores, 500.0, 10000.0)
    assert out == [RepBoundary(0, 4, 0.0, 6000.0), RepBoundary(4, 8, 6000.0, 12000.0)]


def test_consistency_trend():
    reps = [rep(i + 1, s) for i, s in enumerate((60, 70, 80, 90))]
    m = consistency_metrics(reps)
    assert m.trend == "improving"
    assert m.best_rep == 4 and m.worst_rep == 1
    assert m.overall_consistency == 78
    cmp = compare_reps(reps)
    assert cmp[0].compared_to_previous is None
    assert cmp[1].trend == "improving"
    assert consistency_metrics([]).trend == "stable"


def test_cancelled_analysis(squat_frames):
    out = analyze_video_reps(squat_frames, RepAnalysisConfig(exercise="squat"), should_cancel=lambda: True)
    assert out.status == "cancelled"
    assert out.reps == ()


def test_plank_reports_hold():
    frames = frames_for([plank_pose()] * 10)
    out = analyze_video_reps(frames, RepAnalysisConfig(exercise="plank"))
    assert out.status == "ok"
    assert out.reps == ()
    assert out.hold.total_hold_ms == pytest.approx(900.0)


def test_undetectable_exercise_fails():
    out = analyze_video_reps(frames_for([squat_pose(170)] * 5))
    assert out.status == "failed"
    assert out.reason == "detection_insufficient_frames"


def test_config_validation():
    with pytest.raises(ConfigurationError):
        RepAnalysisConfig(min_rep_ms=2000, max_rep_ms=1000)
    with pytest.raises(ConfigurationError):
        RepAnalysisConfig(phase_weights={"top": 1.0})
    assert RepAnalysisConfig(phase_weights={"bottom": 1.0}).weights_for("squat")["bottom"] == 1.0


def test_frames_from_dicts(squat_frames):
    back = frames_from_dicts(f.to_dict() for f in squat_frames)
    assert len(back) == len(squat_frames)
    assert back[3].keypoints[0].x == pytest.approx(squat_frames[3].keypoints[0].x)
    empty = frame_from_dict({"frame_index": 0, "timestamp_ms": 0, "keypoints": None})
    assert not empty.has_pose and empty.confidence == 0.0


# detection

def metrics(**kw):
    base = dict(
        frames_analyzed=30,
        vertical_displacement=0.2,
        horizontal_displacement=0.02,
        knee_range=AngleSpan(75, 170),
        hip_range=AngleSpan(50, 170),
        elbow_range=AngleSpan(160, 175),
        orientation="vertical",
        movement_cycle_detected=True,
    )
    base.update(kw)
    return DetectionMetrics(**base)


def test_rank_profiles_prefers_squat():
    ranked = rank_profiles(metrics())
    assert ranked[0].exercise == "squat"
    assert ranked[0].confidence == pytest.approx(0.975)
    assert all(0.0 <= c.confidence <= 1.0 for c in ranked)


def test_horizontal_body_never_ranks_squat_first():
    ranked = rank_profiles(metrics(orientation="horizontal", knee_range=AngleSpan(165, 175),
                                   hip_range=AngleSpan(165, 175), vertical_displacement=0.01))
    assert ranked[0].exercise in ("pushup", "plank")


def test_detects_squat():
    out = detect_exercise(frames_for(detection_squat_poses()))
    assert out.ok
    assert out.exercise == "squat"
    assert out.metrics.orientation == "vertical"
    assert out.candidates[0].exercise == "squat"


def test_detection_needs_enough_frames():
    out = detect_exercise(frames_for([squat_pose(170)] * 5 + [None] * 20))
    assert out.status == "failed"
    assert out.reason == "insufficient_frames"


def test_detection_timeout():
    clock = itertools.count(0, 10).__next__
    out = detect_exercise(frames_for(detection_squat_poses()), clock=clock)
    assert out.status == "timeout"


def test_analysis_reports_detection_timeout():
    clock = itertools.count(0, 10).__next__
    out = analyze_video_reps(frames_for(detection_squat_poses()), clock=clock)
    assert out.status == "timeout"
    assert out.reason == "detection_timeout"
    assert out.exercise is None
    assert out.detection.status == "timeout"


def test_detection_cancel():
    out = detect_exercise(frames_for(detection_squat_poses()), should_cancel=lambda: True)
    assert out.status == "cancelled"


def test_detection_config_validation():
    with pytest.raises(ConfigurationError):
        DetectionConfig(frames_to_analyze=5, min_frames_for_detection=10)
    with pytest.raises(ConfigurationError):
        DetectionConfig(confidence_threshold=1.5)


def test_cycle_frequency():
    ts = [i * 100.0 for i in range(40)]
    vals = [120 + 50 * math.sin(2 * math.pi * t / 1000.0) for t in ts]
    assert cycle_frequency(vals, ts) == pytest.approx(1.0, abs=0.05)
    assert cycle_frequency([120.0] * 40, ts) is None
    assert cycle_frequency([1.0, 2.0], [0.0, 100.0]) is None


def test_body_orientation():
    assert body_orientation(0.3, 0.6) == "vertical"
    assert body_orientation(0.5, 0.55) == "horizontal"
    assert body_orientation(0.5, 0.6) == "unknown"
