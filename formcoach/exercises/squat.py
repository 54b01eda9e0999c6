from __future__ import annotations
from dataclasses import dataclass
from typing import Dict, Optional, Tuple

from formcoach.counter.keypoints import Landmark as L, Pose, get_keypoint
from formcoach.counter.phases import CycleConfig
from formcoach.counter.pose_core import (
    angle_with_vertical, distance_2d, joint_angle, mean_available, neck_angle, pair_center, symmetry_score,
)
from formcoach.counter.scoring import FeedbackItem, Threshold, evaluate, threshold
from formcoach.exercises.base import (
    AnalysisResult, AnalyzerState, DebugCb, ExerciseConfig, advance_cycle,
    check_state, finish_frame, low_confidence_result, new_state, smooth_angles, trunk_feedback,
)


EXERCISE = "squat"


@dataclass(frozen=True)
class SquatThresholds:
    knee: Threshold = threshold(80, 100, 70, 110)
    hip: Threshold = threshold(70, 110, 60, 120)
    torso: Threshold = threshold(0, 35, 0, 45)
    knee_valgus: Threshold = threshold(0, 5, 0, 10)       # % of hip width
    ankle: Threshold = threshold(15, 35, 10, 45)          # dorsiflexion deg
    symmetry: Threshold = threshold(85, 100, 70, 100)
    neck: Threshold = threshold(0, 15, 0, 25)
    heel_rise: float = 0.02        # heel above toe by this share of heel-ankle height
    min_hip_width: float = 0.03    # below this the camera is side-on and valgus is skipped


SQUAT_THRESHOLDS = SquatThresholds()

DEFAULT_SQUAT_CONFIG = ExerciseConfig(
    cycle=CycleConfig(top=160.0, bottom=110.0),
    weights={
        "knee_angle": 0.19,
        "hip_angle": 0.14,
        "torso_inclination": 0.12,
        "knee_valgus": 0.12,
        "ankle_angle": 0.12,
        "knee_symmetry": 0.06,
        "hip_symmetry": 0.04,
        "neck_alignment": 0.06,
        "torso_rotation": 0.06,
        "pelvic_tilt": 0.05,
        "pelvic_stability": 0.04,
    },
)


def create_initial_squat_state(cfg: ExerciseConfig = DEFAULT_SQUAT_CONFIG) -> AnalyzerState:
    return new_state(EXERCISE, cfg, pelvic_history=())


def _raw_angles(kp: Pose, m: float) -> Dict[str, Optional[float]]:
    lk = joint_angle(kp, L.LEFT_HIP, L.LEFT_KNEE, L.LEFT_ANKLE, m)
    rk = joint_angle(kp, L.RIGHT_HIP, L.RIGHT_KNEE, L.RIGHT_ANKLE, m)
    lh = joint_angle(kp, L.LEFT_SHOULDER, L.LEFT_HIP, L.LEFT_KNEE, m)
    rh = joint_angle(kp, L.RIGHT_SHOULDER, L.RIGHT_HIP, L.RIGHT_KNEE, m)
    la = joint_angle(kp, L.LEFT_KNEE, L.LEFT_ANKLE, L.LEFT_FOOT_INDEX, m)
    ra = joint_angle(kp, L.RIGHT_KNEE, L.RIGHT_ANKLE, L.RIGHT_FOOT_INDEX, m)

    hip_mid = pair_center(kp, L.LEFT_HIP, L.RIGHT_HIP, m)
    sh_mid = pair_center(kp, L.LEFT_SHOULDER, L.RIGHT_SHOULDER, m)
    torso = angle_with_vertical(hip_mid, sh_mid) if (hip_mid is not None and sh_mid is not None) else None

    ankle = mean_available(la, ra)
    return {
        "left_knee": lk,
        "right_knee": rk,
        "knee": mean_available(lk, rk),
        "left_hip": lh,
        "right_hip": rh,
        "hip": mean_available(lh, rh),
        "torso": torso,
        # shin-to-foot angle is ~90 standing; forward shin lean is dorsiflexion
        "ankle_dorsiflexion": max(0.0, 90.0 - ankle) if ankle is not None else None,
        "neck": neck_angle(kp, m),
    }


def _knee_valgus(kp: Pose, m: float, th: SquatThresholds) -> Optional[float]:
    lh, rh = get_keypoint(kp, L.LEFT_HIP, m), get_keypoint(kp, L.RIGHT_HIP, m)
    lk, rk = get_keypoint(kp, L.LEFT_KNEE, m), get_keypoint(kp, L.RIGHT_KNEE, m)
    if None in (lh, rh, lk, rk):
        return None
    hip_w = distance_2d(lh, rh)
    if hip_w < th.min_hip_width:
        return None
    knee_w = distance_2d(lk, rk)
    return max(0.0, (hip_w - knee_w) / hip_w * 100.0)


def heel_rise_detected(kp: Pose, m: float, th: SquatThresholds = SQUAT_THRESHOLDS) -> bool:
    for heel_i, toe_i, ankle_i in (
        (L.LEFT_HEEL, L.LEFT_FOOT_INDEX, L.LEFT_ANKLE),
        (L.RIGHT_HEEL, L.RIGHT_FOOT_INDEX, L.RIGHT_ANKLE),
    ):
        heel, toe, ankle = get_keypoint(kp, heel_i, m), get_keypoint(kp, toe_i, m), get_keypoint(kp, ankle_i, m)
        if None in (heel, toe, ankle):
            continue
        # image y grows downward: a lifted heel sits above (smaller y) the toe
        if (toe.y - heel.y) > abs(ankle.y - heel.y) * th.heel_rise:
            return True
    return False


def analyze_squat(
    keypoints: Pose,
    state: AnalyzerState,
    timestamp: Optional[float] = None,
    cfg: ExerciseConfig = DEFAULT_SQUAT_CONFIG,
    th: SquatThresholds = SQUAT_THRESHOLDS,
    debug_cb: DebugCb = None,
) -> Tuple[AnalysisResult, AnalyzerState]:
    check_state(state, EXERCISE)
    m = cfg.min_score
    raw = _raw_angles(keypoints, m)
    if raw["knee"] is None:
        return low_confidence_result(state)

    sm, smoothers = smooth_angles(state, raw, cfg)
    step, smoothers = advance_cycle(state, raw["knee"], smoothers, cfg, timestamp, debug_cb)
    phase = step.state.phase
    names = cfg.cycle.names

    fb: Dict[str, FeedbackItem] = {}
    if phase == names.bottom:
        fb["knee_angle"] = evaluate(sm["knee"], th.knee, "squat.knee_angle", low="up", high="down")
        if "hip" in sm:
            fb["hip_angle"] = evaluate(sm["hip"], th.hip, "squat.hip_angle", low="forward", high="backward")
        if "ankle_dorsiflexion" in sm:
            if heel_rise_detected(keypoints, m, th):
                item = evaluate(sm["ankle_dorsiflexion"], th.ankle, "squat.ankle_angle")
                fb["ankle_angle"] = FeedbackItem(
                    level="warning" if item.level == "good" else item.level,
                    value=item.value,
                    message_key="squat.heel_rise",
                    ideal=item.ideal,
                    acceptable=item.acceptable,
                    correction="down",
                )
            else:
                fb["ankle_angle"] = evaluate(sm["ankle_dorsiflexion"], th.ankle, "squat.ankle_angle", low="forward", high="backward")
    if "torso" in sm:
        fb["torso_inclination"] = evaluate(sm["torso"], th.torso, "squat.torso_inclination", high="backward")
    valgus = _knee_valgus(keypoints, m, th)
    if valgus is not None:
        fb["knee_valgus"] = evaluate(valgus, th.knee_valgus, "squat.knee_valgus", high="outward")
    if "left_knee" in sm and "right_knee" in sm and phase != names.top:
        sym = symmetry_score(sm["left_knee"], sm["right_knee"])
        side = "left" if sm["left_knee"] > sm["right_knee"] else "right"
        fb["knee_symmetry"] = evaluate(sym, th.symmetry, "common.symmetry", joint="knee", side=side)
    if "left_hip" in sm and "right_hip" in sm and phase != names.top:
        sym = symmetry_score(sm["left_hip"], sm["right_hip"])
        side = "left" if sm["left_hip"] > sm["right_hip"] else "right"
        fb["hip_symmetry"] = evaluate(sym, th.symmetry, "common.symmetry", joint="hip", side=side)
    if "neck" in sm:
        fb["neck_alignment"] = evaluate(sm["neck"], th.neck, "common.neck", high="backward")

    trunk_fb, trunk_angles, history = trunk_feedback(keypoints, m, state.extra.get("pelvic_history", ()))
    fb.update(trunk_fb)

    angles = dict(sm)
    angles.update(trunk_angles)
    if valgus is not None:
        angles["knee_valgus_percent"] = valgus
    extra = dict(state.extra)
    extra["pelvic_history"] = history
    return finish_frame(state, step, smoothers, fb, angles, cfg, extra=extra)
