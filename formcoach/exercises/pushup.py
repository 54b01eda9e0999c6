from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from formcoach.counter.keypoints import Landmark as L, Pose, get_keypoint
from formcoach.counter.phases import CycleConfig, CyclePhases
from formcoach.counter.pose_core import (
    angle_3pt, angle_with_vertical, hip_deviation, joint_angle, mean_available, neck_angle, pair_center,
    symmetry_score,
)
from formcoach.counter.scoring import FeedbackItem, Threshold, evaluate, threshold
from formcoach.exercises.base import (
    AnalysisResult, AnalyzerState, DebugCb, ExerciseConfig, advance_cycle,
    check_state, finish_frame, low_confidence_result, new_state, smooth_angles,
)

EXERCISE = "pushup"

PUSHUP_PHASES = CyclePhases(top="up", descending="descending", bottom="bottom", ascending="ascending")


@dataclass(frozen=True)
class PushupThresholds:
    elbow: Threshold = threshold(80, 100, 70, 110)
    body_alignment: Threshold = threshold(0, 10, 0, 20)    # deg off a straight shoulder-hip-ankle line
    hip_position: Threshold = threshold(0, 8, 0, 15)       # |signed hip offset| in deg
    depth: Threshold = threshold(80, 100, 60, 100)         # % of a 90 deg elbow bend
    elbow_flare: Threshold = threshold(0, 8, 0, 15)        # forearm tilt off vertical
    symmetry: Threshold = threshold(90, 100, 70, 100)
    neck: Threshold = threshold(0, 15, 0, 25)


PUSHUP_THRESHOLDS = PushupThresholds()

DEFAULT_PUSHUP_CONFIG = ExerciseConfig(
    cycle=CycleConfig(top=150.0, bottom=100.0, names=PUSHUP_PHASES),
    weights={
        "elbow_angle": 0.24,
        "body_alignment": 0.24,
        "hip_position": 0.14,
        "depth": 0.14,
        "elbow_flare": 0.09,
        "arm_symmetry": 0.09,
        "neck_alignment": 0.06,
    },
)


def create_initial_pushup_state(cfg: ExerciseConfig = DEFAULT_PUSHUP_CONFIG) -> AnalyzerState:
    return new_state(EXERCISE, cfg)


def depth_percent(elbow: float) -> float:
    return max(0.0, min(100.0, (180.0 - elbow) / 90.0 * 100.0))


def _forearm_tilt(kp: Pose, m: float) -> Optional[float]:
    tilts = []
    for wrist_i, elbow_i in ((L.LEFT_WRIST, L.LEFT_ELBOW), (L.RIGHT_WRIST, L.RIGHT_ELBOW)):
        w, e = get_keypoint(kp, wrist_i, m), get_keypoint(kp, elbow_i, m)
        if w is None or e is None:
            continue
        t = angle_with_vertical((w.x, w.y), (e.x, e.y))
        if t is not None:
            tilts.append(t)
    return mean_available(*tilts)


def analyze_pushup(
    keypoints: Pose,
    state: AnalyzerState,
    timestamp: Optional[float] = None,
    cfg: ExerciseConfig = DEFAULT_PUSHUP_CONFIG,
    th: PushupThresholds = PUSHUP_THRESHOLDS,
    debug_cb: DebugCb = None,
) -> Tuple[AnalysisResult, AnalyzerState]:
    check_state(state, EXERCISE)
    m = cfg.min_score
    kp = keypoints
    le = joint_angle(kp, L.LEFT_SHOULDER, L.LEFT_ELBOW, L.LEFT_WRIST, m)
    re = joint_angle(kp, L.RIGHT_SHOULDER, L.RIGHT_ELBOW, L.RIGHT_WRIST, m)
    elbow = mean_available(le, re)
    if elbow is None:
        return low_confidence_result(state)

    sh = pair_center(kp, L.LEFT_SHOULDER, L.RIGHT_SHOULDER, m)
    hp = pair_center(kp, L.LEFT_HIP, L.RIGHT_HIP, m)
    an = pair_center(kp, L.LEFT_ANKLE, L.RIGHT_ANKLE, m)
    body = hip_dev = None
    if sh is not None and hp is not None and an is not None:
        line = angle_3pt(sh, hp, an)
        body = abs(180.0 - line) if line is not None else None
        hip_dev = hip_deviation(sh, hp, an)

    raw = {
        "left_elbow": le,
        "right_elbow": re,
        "elbow": elbow,
        "body_alignment": body,
        "hip_position": hip_dev,
        "neck": neck_angle(kp, m),
    }
    sm, smoothers = smooth_angles(state, raw, cfg)
    step, smoothers = advance_cycle(state, raw["elbow"], smoothers, cfg, timestamp, debug_cb)
    phase = step.state.phase
    names = cfg.cycle.names
    sag = sm.get("hip_position", 0.0) > 0

    fb: Dict[str, FeedbackItem] = {}
    flare = None
    if phase == names.bottom:
        fb["elbow_angle"] = evaluate(sm["elbow"], th.elbow, "pushup.elbow_angle", low="up", high="down")
        fb["depth"] = evaluate(depth_percent(sm["elbow"]), th.depth, "pushup.depth", low="down")
        flare = _forearm_tilt(kp, m)
        if flare is not None:
            fb["elbow_flare"] = evaluate(flare, th.elbow_flare, "pushup.elbow_flare", high="inward")
    if "body_alignment" in sm:
        fb["body_alignment"] = evaluate(
            sm["body_alignment"], th.body_alignment, "pushup.body_alignment", high="up" if sag else "down"
        )
    if "hip_position" in sm:
        fb["hip_position"] = evaluate(
            abs(sm["hip_position"]), th.hip_position, "pushup.hip_sag" if sag else "pushup.hip_pike",
            high="up" if sag else "down",
        )
    if "left_elbow" in sm and "right_elbow" in sm and phase != names.top:
        sym = symmetry_score(sm["left_elbow"], sm["right_elbow"])
        side = "left" if sm["left_elbow"] > sm["right_elbow"] else "right"
        fb["arm_symmetry"] = evaluate(sym, th.symmetry, "common.symmetry", joint="elbow", side=side)
    if "neck" in sm:
        fb["neck_alignment"] = evaluate(sm["neck"], th.neck, "common.neck", high="backward")

    angles = dict(sm)
    angles["depth_percent"] = depth_percent(sm["elbow"])
    if flare is not None:
        angles["elbow_flare"] = flare
    return finish_frame(state, step, smoothers, fb, angles, cfg)
