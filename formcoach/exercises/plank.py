from __future__ import annotations
import logging
from dataclasses import dataclass, field, replace
from typing import Any, Dict, Mapping, Optional, Tuple

from formcoach.common.errors import ExerciseMismatchError
from formcoach.counter.keypoints import Landmark as L, Pose
from formcoach.counter.pose_core import angle_3pt, angle_with_vertical, distance_2d, hip_deviation, neck_angle, pair_center
from formcoach.counter.scoring import FeedbackItem, Threshold, evaluate, overall_score, threshold
from formcoach.counter.smoothing import DEFAULT_SMOOTHER, SmootherConfig, SmootherState, smooth_channels
from formcoach.exercises.base import AnalysisResult, DebugCb, HoldStatus

logger = logging.getLogger(__name__)

EXERCISE = "plank"

SETUP = "setup"
HOLDING = "holding"
BREAK = "break"


@dataclass(frozen=True)
class PlankThresholds:
    body_alignment: Threshold = threshold(0, 8, 0, 15)
    hip_position: Threshold = threshold(-5, 5, -12, 12)      # + sag, - pike (deg)
    shoulder_alignment: Threshold = threshold(0, 10, 0, 20)  # shoulder over elbow, % of upper arm
    neck: Threshold = threshold(0, 10, 0, 18)
    min_hold_score: int = 60
    min_body_tilt: float = 45.0    # torso must lean at least this far from vertical to count as a plank


PLANK_THRESHOLDS = PlankThresholds()


@dataclass(frozen=True)
class PlankConfig:
    weights: Mapping[str, float] = field(default_factory=lambda: {
        "body_alignment": 0.35,
        "hip_position": 0.30,
        "shoulder_alignment": 0.20,
        "neck_alignment": 0.15,
    })
    smoother: SmootherConfig = DEFAULT_SMOOTHER
    min_score: float = 0.5
    frame_ms: float = 1000.0 / 30   # assumed spacing when no timestamp is given
    max_gap_ms: float = 1000.0      # a longer tracking gap restarts the hold


DEFAULT_PLANK_CONFIG = PlankConfig()


@dataclass(frozen=True)
class PlankState:
    exercise: str = EXERCISE
    phase: str = SETUP
    smoothers: Mapping[str, SmootherState] = field(default_factory=dict)
    last_feedbacks: Mapping[str, FeedbackItem] = field(default_factory=dict)
    last_score: int = 0
    last_ts: Optional[float] = None
    hold_start: Optional[float] = None
    current_hold_ms: float = 0.0
    total_hold_ms: float = 0.0
    score_sum: float = 0.0
    frame_count: int = 0
    extra: Mapping[str, Any] = field(default_factory=dict)

    @property
    def is_holding(self) -> bool:
        return self.phase == HOLDING

    @property
    def average_score(self) -> float:
        return round(self.score_sum / self.frame_count, 1) if self.frame_count else 0.0

    @property
    def rep_count(self) -> int:
        return 0

    def hold_status(self) -> HoldStatus:
        return HoldStatus(
            is_holding=self.is_holding,
            current_hold_ms=round(self.current_hold_ms, 1),
            total_hold_ms=round(self.total_hold_ms + self.current_hold_ms, 1),
            average_score=self.average_score,
        )


def create_initial_plank_state(cfg: PlankConfig = DEFAULT_PLANK_CONFIG) -> PlankState:
    return PlankState()


def _result(state: PlankState, feedbacks, angles, valid: bool = True) -> AnalysisResult:
    return AnalysisResult(
        exercise=EXERCISE,
        score=state.last_score,
        phase=state.phase,
        rep_completed=False,
        rep_count=0,
        feedbacks=feedbacks,
        raw_angles=angles,
        is_valid=valid,
        low_confidence=not valid,
        hold=state.hold_status(),
    )


def _advance_hold(state: PlankState, valid: bool, score: int, ts: float, cfg: PlankConfig) -> PlankState:
    gap = ts - state.last_ts if state.last_ts is not None else 0.0
    if valid and state.is_holding and gap <= cfg.max_gap_ms:
        return replace(
            state,
            current_hold_ms=ts - state.hold_start,
            score_sum=state.score_sum + score,
            frame_count=state.frame_count + 1,
        )
    # leaving a hold banks its time
    total = state.total_hold_ms + state.current_hold_ms if state.is_holding else state.total_hold_ms
    if valid:
        return replace(
            state, phase=HOLDING, hold_start=ts, current_hold_ms=0.0, total_hold_ms=total,
            score_sum=float(score), frame_count=1,
        )
    return replace(
        state,
        phase=BREAK if state.phase != SETUP else SETUP,
        hold_start=None,
        current_hold_ms=0.0,
        total_hold_ms=total,
    )


def analyze_plank(
    keypoints: Pose,
    state: PlankState,
    timestamp: Optional[float] = None,
    cfg: PlankConfig = DEFAULT_PLANK_CONFIG,
    th: PlankThresholds = PLANK_THRESHOLDS,
    debug_cb: DebugCb = None,
) -> Tuple[AnalysisResult, PlankState]:
    """Score one plank frame and advance hold timing. `timestamp` is in ms."""
    if state.exercise != EXERCISE:
        raise ExerciseMismatchError(f"plank analyzer got a {state.exercise} state")
    dbg = debug_cb or (lambda *_: None)
    m = cfg.min_score
    kp = keypoints

    sh = pair_center(kp, L.LEFT_SHOULDER, L.RIGHT_SHOULDER, m)
    hp = pair_center(kp, L.LEFT_HIP, L.RIGHT_HIP, m)
    an = pair_center(kp, L.LEFT_ANKLE, L.RIGHT_ANKLE, m)
    line = angle_3pt(sh, hp, an) if None not in (sh, hp, an) else None
    if line is None:
        return _result(state, state.last_feedbacks, {}, valid=False), state

    el = pair_center(kp, L.LEFT_ELBOW, L.RIGHT_ELBOW, m)
    shoulder_offset = None
    if el is not None:
        upper_arm = distance_2d(sh, el)
        if upper_arm > 0:
            shoulder_offset = abs(sh.x - el.x) / upper_arm * 100.0
    raw = {
        "body_alignment": abs(180.0 - line),
        "hip_position": hip_deviation(sh, hp, an),
        "shoulder_alignment": shoulder_offset,
        "neck": neck_angle(kp, m),
    }
    sm, smoothers = smooth_channels(state.smoothers, raw, cfg.smoother)
    sag = sm.get("hip_position", 0.0) > 0

    fb: Dict[str, FeedbackItem] = {
        "body_alignment": evaluate(
            sm["body_alignment"], th.body_alignment, "plank.body_alignment", high="up" if sag else "down"
        ),
    }
    if "hip_position" in sm:
        fb["hip_position"] = evaluate(sm["hip_position"], th.hip_position, "plank.hip_position", low="down", high="up")
    if "shoulder_alignment" in sm:
        fb["shoulder_alignment"] = evaluate(
            sm["shoulder_alignment"], th.shoulder_alignment, "plank.shoulder_alignment", high="forward"
        )
    if "neck" in sm:
        fb["neck_alignment"] = evaluate(sm["neck"], th.neck, "common.neck", high="up")

    score = overall_score(fb, cfg.weights)
    tilt = angle_with_vertical(hp, sh)
    horizontal = tilt is not None and tilt >= th.min_body_tilt
    valid = horizontal and score >= th.min_hold_score

    if timestamp is None:
        timestamp = (state.last_ts + cfg.frame_ms) if state.last_ts is not None else 0.0
    new = _advance_hold(replace(state, smoothers=smoothers, last_feedbacks=fb, last_score=score), valid, score, timestamp, cfg)
    new = replace(new, last_ts=timestamp)
    if new.phase != state.phase:
        dbg(f"state→{new.phase}")
        logger.debug("plank %s -> %s (score %d)", state.phase, new.phase, score)

    angles = {k: round(v, 1) for k, v in sm.items()}
    return _result(new, fb, angles), new
