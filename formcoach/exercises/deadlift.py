from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from formcoach.counter.keypoints import Landmark as L, Pose
from formcoach.counter.phases import CycleConfig, CyclePhases
from formcoach.counter.pose_core import angle_with_vertical, distance_2d, joint_angle, mean_available, neck_angle, pair_center
from formcoach.counter.scoring import FeedbackItem, Threshold, evaluate, threshold
from formcoach.exercises.base import (
    AnalysisResult, AnalyzerState, DebugCb, ExerciseConfig, advance_cycle,
    check_state, finish_frame, low_confidence_result, new_state, smooth_angles,
)

EXERCISE = "deadlift"

DEADLIFT_PHASES = CyclePhases(top="lockout", descending="descent", bottom="setup", ascending="lift")


@dataclass(frozen=True)
class DeadliftThresholds:
    hip_hinge: Threshold = threshold(75, 100, 65, 115)     # shoulder-hip-knee at setup
    knee: Threshold = threshold(140, 165, 125, 175)        # hip-knee-ankle at setup
    spine: Threshold = threshold(0, 25, 0, 40)             # torso vs vertical at lockout
    bar_path: Threshold = threshold(0, 8, 0, 15)           # wrists vs mid-foot, % torso length
    hip_dominance: Threshold = threshold(1.5, 3.0, 1.0, 4.0)
    neck: Threshold = threshold(0, 20, 0, 30)
    min_knee_travel: float = 3.0   # deg; below this the hip/knee ratio is meaningless


DEADLIFT_THRESHOLDS = DeadliftThresholds()

DEFAULT_DEADLIFT_CONFIG = ExerciseConfig(
    cycle=CycleConfig(top=155.0, bottom=120.0, starts_at_bottom=True, names=DEADLIFT_PHASES),
    weights={
        "hip_hinge": 0.20,
        "knee_angle": 0.15,
        "spine_alignment": 0.20,
        "bar_path": 0.20,
        "hip_dominance": 0.15,
        "neck_alignment": 0.10,
    },
)


def create_initial_deadlift_state(cfg: ExerciseConfig = DEFAULT_DEADLIFT_CONFIG) -> AnalyzerState:
    return new_state(EXERCISE, cfg, hip_low=None, knee_low=None, hip_dominance=None)


def _bar_path_percent(kp: Pose, m: float) -> Optional[float]:
    wrists = pair_center(kp, L.LEFT_WRIST, L.RIGHT_WRIST, m)
    ankle = pair_center(kp, L.LEFT_ANKLE, L.RIGHT_ANKLE, m)
    toe = pair_center(kp, L.LEFT_FOOT_INDEX, L.RIGHT_FOOT_INDEX, m)
    hip = pair_center(kp, L.LEFT_HIP, L.RIGHT_HIP, m)
    sh = pair_center(kp, L.LEFT_SHOULDER, L.RIGHT_SHOULDER, m)
    if None in (wrists, ankle, toe, hip, sh):
        return None
    torso_len = distance_2d(hip, sh)
    if torso_len <= 0:
        return None
    mid_foot_x = (ankle.x + toe.x) / 2.0
    return abs(wrists.x - mid_foot_x) / torso_len * 100.0


def analyze_deadlift(
    keypoints: Pose,
    state: AnalyzerState,
    timestamp: Optional[float] = None,
    cfg: ExerciseConfig = DEFAULT_DEADLIFT_CONFIG,
    th: DeadliftThresholds = DEADLIFT_THRESHOLDS,
    debug_cb: DebugCb = None,
) -> Tuple[AnalysisResult, AnalyzerState]:
    check_state(state, EXERCISE)
    m = cfg.min_score
    kp = keypoints
    hip = mean_available(
        joint_angle(kp, L.LEFT_SHOULDER, L.LEFT_HIP, L.LEFT_KNEE, m),
        joint_angle(kp, L.RIGHT_SHOULDER, L.RIGHT_HIP, L.RIGHT_KNEE, m),
    )
    if hip is None:
        return low_confidence_result(state)

    hip_c = pair_center(kp, L.LEFT_HIP, L.RIGHT_HIP, m)
    sh_c = pair_center(kp, L.LEFT_SHOULDER, L.RIGHT_SHOULDER, m)
    raw = {
        "hip": hip,
        "knee": mean_available(
            joint_angle(kp, L.LEFT_HIP, L.LEFT_KNEE, L.LEFT_ANKLE, m),
            joint_angle(kp, L.RIGHT_HIP, L.RIGHT_KNEE, L.RIGHT_ANKLE, m),
        ),
        "spine": angle_with_vertical(hip_c, sh_c) if (hip_c is not None and sh_c is not None) else None,
        "neck": neck_angle(kp, m),
    }
    sm, smoothers = smooth_angles(state, raw, cfg)
    step, smoothers = advance_cycle(state, raw["hip"], smoothers, cfg, timestamp, debug_cb)
    phase = step.state.phase
    names = cfg.cycle.names

    extra = dict(state.extra)
    # lowest hip/knee angles of the current pull, for the hinge ratio at lockout
    if phase in (names.bottom, names.ascending, names.descending):
        extra["hip_low"] = sm["hip"] if extra.get("hip_low") is None else min(extra["hip_low"], sm["hip"])
        if "knee" in sm:
            extra["knee_low"] = sm["knee"] if extra.get("knee_low") is None else min(extra["knee_low"], sm["knee"])

    fb: Dict[str, FeedbackItem] = {}
    if phase == names.bottom:
        fb["hip_hinge"] = evaluate(sm["hip"], th.hip_hinge, "deadlift.hip_hinge", low="up", high="backward")
        if "knee" in sm:
            fb["knee_angle"] = evaluate(sm["knee"], th.knee, "deadlift.knee_angle", low="up", high="down")
    if phase == names.top and "spine" in sm:
        fb["spine_alignment"] = evaluate(sm["spine"], th.spine, "deadlift.spine_alignment", high="forward")
    bar = _bar_path_percent(kp, m)
    if bar is not None:
        fb["bar_path"] = evaluate(bar, th.bar_path, "deadlift.bar_path", high="backward")
    if "neck" in sm:
        fb["neck_alignment"] = evaluate(sm["neck"], th.neck, "common.neck", high="backward")

    if step.rep_completed:
        hip_low, knee_low = extra.get("hip_low"), extra.get("knee_low")
        ratio = None
        if hip_low is not None and knee_low is not None and "knee" in sm:
            knee_travel = sm["knee"] - knee_low
            if knee_travel >= th.min_knee_travel:
                ratio = (sm["hip"] - hip_low) / knee_travel
        extra["hip_dominance"] = ratio
        extra["hip_low"] = None
        extra["knee_low"] = None
        if ratio is not None:
            fb["hip_dominance"] = evaluate(ratio, th.hip_dominance, "deadlift.hip_dominance", low="backward", high="down")

    angles = dict(sm)
    if bar is not None:
        angles["bar_path_percent"] = bar
    return finish_frame(state, step, smoothers, fb, angles, cfg, extra=extra)
