from __future__ import annotations
from dataclasses import dataclass, replace
from typing import Dict, Optional, Tuple

from formcoach.counter.keypoints import Landmark as L, Pose, get_keypoint
from formcoach.counter.phases import CycleConfig
from formcoach.counter.pose_core import angle_with_vertical, distance_2d, joint_angle, neck_angle, pair_center
from formcoach.counter.scoring import FeedbackItem, Threshold, evaluate, threshold
from formcoach.exercises.base import (
    CYCLE_CHANNEL, TRUNK_THRESHOLDS, AnalysisResult, AnalyzerState, DebugCb, ExerciseConfig, advance_cycle,
    check_state, finish_frame, low_confidence_result, new_state, smooth_angles, trunk_feedback,
)

EXERCISE = "lunge"

_SIDES = {
    "left": (L.LEFT_SHOULDER, L.LEFT_HIP, L.LEFT_KNEE, L.LEFT_ANKLE, L.LEFT_FOOT_INDEX),
    "right": (L.RIGHT_SHOULDER, L.RIGHT_HIP, L.RIGHT_KNEE, L.RIGHT_ANKLE, L.RIGHT_FOOT_INDEX),
}
# reseeded when the front leg changes
_PER_LEG_CHANNELS = ("front_knee", "back_knee", "hip", "hip_flexor", CYCLE_CHANNEL)


@dataclass(frozen=True)
class LungeThresholds:
    front_knee: Threshold = threshold(85, 100, 75, 110)
    back_knee: Threshold = threshold(85, 105, 70, 120)
    hip: Threshold = threshold(80, 110, 70, 120)
    torso: Threshold = threshold(0, 15, 0, 25)
    knee_over_toe: Threshold = threshold(-5, 5, -10, 10)   # % of hip-ankle length, + is past the toes
    hip_flexor: Threshold = threshold(170, 180, 165, 180)
    neck: Threshold = threshold(0, 15, 0, 25)
    depth_gap: float = 0.05    # ankle z difference that decides the front leg
    foot_gap: float = 0.03     # fallback: toe y difference


LUNGE_THRESHOLDS = LungeThresholds()

DEFAULT_LUNGE_CONFIG = ExerciseConfig(
    cycle=CycleConfig(top=160.0, bottom=100.0),
    weights={
        "front_knee_angle": 0.22,
        "back_knee_angle": 0.14,
        "hip_angle": 0.10,
        "torso_inclination": 0.14,
        "knee_over_toe": 0.11,
        "neck_alignment": 0.07,
        "hip_flexor": 0.06,
        "torso_rotation": 0.06,
        "pelvic_tilt": 0.06,
        "pelvic_stability": 0.04,
    },
)


def create_initial_lunge_state(cfg: ExerciseConfig = DEFAULT_LUNGE_CONFIG) -> AnalyzerState:
    return new_state(EXERCISE, cfg, front_side="left", pelvic_history=())


def front_side(kp: Pose, m: float, previous: str = "left", th: LungeThresholds = LUNGE_THRESHOLDS) -> str:
    """Pick the leading leg: nearer ankle by depth, else the lower toe, else keep the last pick."""
    la, ra = get_keypoint(kp, L.LEFT_ANKLE, m), get_keypoint(kp, L.RIGHT_ANKLE, m)
    if la is not None and ra is not None and la.z is not None and ra.z is not None:
        if abs(la.z - ra.z) > th.depth_gap:
            return "left" if la.z < ra.z else "right"
    lt, rt = get_keypoint(kp, L.LEFT_FOOT_INDEX, m), get_keypoint(kp, L.RIGHT_FOOT_INDEX, m)
    if lt is not None and rt is not None and abs(lt.y - rt.y) > th.foot_gap:
        return "left" if lt.y > rt.y else "right"
    return previous


def _knee_over_toe(kp: Pose, side: str, m: float) -> Optional[float]:
    _, hip_i, knee_i, ankle_i, toe_i = _SIDES[side]
    hip, knee = get_keypoint(kp, hip_i, m), get_keypoint(kp, knee_i, m)
    ankle, toe = get_keypoint(kp, ankle_i, m), get_keypoint(kp, toe_i, m)
    if None in (hip, knee, ankle, toe):
        return None
    leg = distance_2d(hip, ankle)
    if leg <= 0:
        return None
    facing = 1.0 if toe.x >= ankle.x else -1.0
    return (knee.x - toe.x) * facing / leg * 100.0


def _hip_flexor(extension: float, tilt: Optional[float], th: LungeThresholds) -> FeedbackItem:
    """Back-hip extension. With the pelvis tilted past the acceptable range a good reading drops to warning."""
    item = evaluate(extension, th.hip_flexor, "lunge.hip_flexor", low="forward")
    if item.level == "good" and tilt is not None and abs(tilt) > TRUNK_THRESHOLDS.pelvic_tilt.acceptable.max:
        return replace(item, level="warning", message_key="lunge.hip_flexor.pelvic_tilt", correction="backward")
    return item


def analyze_lunge(
    keypoints: Pose,
    state: AnalyzerState,
    timestamp: Optional[float] = None,
    cfg: ExerciseConfig = DEFAULT_LUNGE_CONFIG,
    th: LungeThresholds = LUNGE_THRESHOLDS,
    debug_cb: DebugCb = None,
) -> Tuple[AnalysisResult, AnalyzerState]:
    check_state(state, EXERCISE)
    m = cfg.min_score
    kp = keypoints
    side = front_side(kp, m, state.extra.get("front_side", "left"), th)
    back = "right" if side == "left" else "left"
    f_sh, f_hip, f_knee, f_ankle, _ = _SIDES[side]
    _, b_hip, b_knee, b_ankle, _ = _SIDES[back]

    front_knee = joint_angle(kp, f_hip, f_knee, f_ankle, m)
    if front_knee is None:
        return low_confidence_result(state)

    hip_c = pair_center(kp, L.LEFT_HIP, L.RIGHT_HIP, m)
    sh_c = pair_center(kp, L.LEFT_SHOULDER, L.RIGHT_SHOULDER, m)
    raw = {
        "front_knee": front_knee,
        "back_knee": joint_angle(kp, b_hip, b_knee, b_ankle, m),
        "hip": joint_angle(kp, f_sh, f_hip, f_knee, m),
        "hip_flexor": joint_angle(kp, f_hip, b_hip, b_knee, m),
        "torso": angle_with_vertical(hip_c, sh_c) if (hip_c is not None and sh_c is not None) else None,
        "neck": neck_angle(kp, m),
    }
    # a leg swap reseeds the per-leg channels instead of blending two limbs
    smoothers = state.smoothers
    if side != state.extra.get("front_side", "left"):
        smoothers = {k: v for k, v in smoothers.items() if k not in _PER_LEG_CHANNELS}
    sm, smoothers = smooth_angles(_with_smoothers(state, smoothers), raw, cfg)
    step, smoothers = advance_cycle(state, raw["front_knee"], smoothers, cfg, timestamp, debug_cb)
    phase = step.state.phase
    names = cfg.cycle.names

    trunk_fb, trunk_angles, history = trunk_feedback(kp, m, state.extra.get("pelvic_history", ()))
    tilt = trunk_angles.get("pelvic_tilt")

    fb: Dict[str, FeedbackItem] = {}
    kot = None
    if phase == names.bottom:
        fb["front_knee_angle"] = evaluate(sm["front_knee"], th.front_knee, "lunge.front_knee_angle", low="up", high="down")
        if "back_knee" in sm:
            fb["back_knee_angle"] = evaluate(sm["back_knee"], th.back_knee, "lunge.back_knee_angle", low="up", high="down")
        if "hip" in sm:
            fb["hip_angle"] = evaluate(sm["hip"], th.hip, "lunge.hip_angle", low="up", high="down")
        if "hip_flexor" in sm:
            fb["hip_flexor"] = _hip_flexor(sm["hip_flexor"], tilt, th)
        kot = _knee_over_toe(kp, side, m)
        if kot is not None:
            fb["knee_over_toe"] = evaluate(kot, th.knee_over_toe, "lunge.knee_over_toe", low="forward", high="backward")
    if "torso" in sm:
        fb["torso_inclination"] = evaluate(sm["torso"], th.torso, "lunge.torso_inclination", high="backward")
    if "neck" in sm:
        fb["neck_alignment"] = evaluate(sm["neck"], th.neck, "common.neck", high="backward")

    fb.update(trunk_fb)

    angles = dict(sm)
    angles.update(trunk_angles)
    if kot is not None:
        angles["knee_over_toe_percent"] = kot
    extra = dict(state.extra)
    extra["front_side"] = side
    extra["pelvic_history"] = history
    return finish_frame(state, step, smoothers, fb, angles, cfg, extra=extra)


def _with_smoothers(state: AnalyzerState, smoothers) -> AnalyzerState:
    if smoothers is state.smoothers:
        return state
    return replace(state, smoothers=smoothers)
