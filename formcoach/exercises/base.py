from __future__ import annotations
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Dict, Mapping, Optional, Tuple

from formcoach.common.errors import ExerciseMismatchError
from formcoach.counter.phases import CycleConfig, CycleState, CycleStep, initial_cycle, step_cycle
from formcoach.counter.keypoints import Pose
from formcoach.counter.pose_core import lateral_pelvic_tilt, tilt_stability, torso_rotation
from formcoach.counter.scoring import FeedbackItem, Threshold, evaluate, overall_score, threshold
from formcoach.counter.smoothing import SmootherConfig, SmootherState, smooth, smooth_channels

DebugCb = Optional[Callable[[str], None]]

CYCLE_CHANNEL = "cycle"


@dataclass(frozen=True)
class HoldStatus:
    """Isometric hold timing (plank)."""
    is_holding: bool
    current_hold_ms: float
    total_hold_ms: float
    average_score: float


@dataclass(frozen=True)
class AnalysisResult:
    exercise: str
    score: int
    phase: str
    rep_completed: bool
    rep_count: int
    feedbacks: Mapping[str, FeedbackItem]
    raw_angles: Mapping[str, float]
    is_valid: bool = True
    low_confidence: bool = False
    partial_rep: bool = False
    rep_worst_score: Optional[int] = None   # set on the frame a rep closes
    hold: Optional[HoldStatus] = None

    def to_dict(self, locale: str = "en") -> dict:
        out = {
            "exercise": self.exercise,
            "score": self.score,
            "phase": self.phase,
            "rep_completed": self.rep_completed,
            "rep_count": self.rep_count,
            "feedbacks": {k: v.to_dict(locale) for k, v in self.feedbacks.items()},
            "raw_angles": dict(self.raw_angles),
            "is_valid": self.is_valid,
            "low_confidence": self.low_confidence,
            "partial_rep": self.partial_rep,
            "rep_worst_score": self.rep_worst_score,
        }
        if self.hold is not None:
            out["hold"] = {
                "is_holding": self.hold.is_holding,
                "current_hold_ms": self.hold.current_hold_ms,
                "total_hold_ms": self.hold.total_hold_ms,
                "average_score": self.hold.average_score,
            }
        return out


@dataclass(frozen=True)
class AnalyzerState:
    exercise: str
    cycle: CycleState
    smoothers: Mapping[str, SmootherState] = field(default_factory=dict)
    last_feedbacks: Mapping[str, FeedbackItem] = field(default_factory=dict)
    last_score: int = 0
    rep_worst_score: Optional[int] = None
    extra: Mapping[str, Any] = field(default_factory=dict)   # exercise-specific memory

    @property
    def phase(self) -> str:
        return self.cycle.phase

    @property
    def rep_count(self) -> int:
        return self.cycle.rep_count


@dataclass(frozen=True)
class ExerciseConfig:
    """Shared knobs of a cyclic exercise analyzer."""
    cycle: CycleConfig
    weights: Mapping[str, float]
    smoother: SmootherConfig = SmootherConfig()
    # light EMA on the cycle channel so the closing frame lands back in the top zone
    cycle_smoother: SmootherConfig = SmootherConfig(alpha=0.9)
    min_score: float = 0.5


def new_state(exercise: str, cfg: ExerciseConfig, **extra: Any) -> AnalyzerState:
    return AnalyzerState(exercise=exercise, cycle=initial_cycle(cfg.cycle), extra=extra)


def check_state(state: AnalyzerState, exercise: str) -> None:
    if state.exercise != exercise:
        raise ExerciseMismatchError(
            f"{exercise} analyzer got a {state.exercise} state; create a fresh state when switching exercises"
        )


def low_confidence_result(state: AnalyzerState) -> Tuple[AnalysisResult, AnalyzerState]:
    """Hold phase, feedback and state when the required landmarks are missing."""
    result = AnalysisResult(
        exercise=state.exercise,
        score=state.last_score,
        phase=state.phase,
        rep_completed=False,
        rep_count=state.rep_count,
        feedbacks=state.last_feedbacks,
        raw_angles={},
        is_valid=False,
        low_confidence=True,
    )
    return result, state


def smooth_angles(
    state: AnalyzerState,
    raw: Mapping[str, Optional[float]],
    cfg: ExerciseConfig,
) -> Tuple[Dict[str, float], Dict[str, SmootherState]]:
    return smooth_channels(state.smoothers, raw, cfg.smoother)


def advance_cycle(
    state: AnalyzerState,
    raw_angle: float,
    smoothers: Mapping[str, SmootherState],
    cfg: ExerciseConfig,
    ts: Optional[float],
    debug_cb: DebugCb,
) -> Tuple[CycleStep, Dict[str, SmootherState]]:
    """Step the rep cycle on its own smoothed copy of the primary angle. Returns the step and the updated smoothers."""
    angle, cycle_st = smooth(smoothers.get(CYCLE_CHANNEL, SmootherState()), raw_angle, cfg.cycle_smoother)
    out = dict(smoothers)
    out[CYCLE_CHANNEL] = cycle_st
    return step_cycle(state.cycle, angle, cfg.cycle, ts=ts, debug_cb=debug_cb), out


def finish_frame(
    state: AnalyzerState,
    step: CycleStep,
    smoothers: Mapping[str, SmootherState],
    feedbacks: Dict[str, FeedbackItem],
    raw_angles: Dict[str, float],
    cfg: ExerciseConfig,
    extra: Optional[Mapping[str, Any]] = None,
) -> Tuple[AnalysisResult, AnalyzerState]:
    """Score the frame, fold it into the per-rep worst score, build result and state."""
    score = overall_score(feedbacks, cfg.weights)
    worst = score if state.rep_worst_score is None else min(state.rep_worst_score, score)

    closed_worst = None
    next_worst: Optional[int] = worst
    if step.rep_completed:
        closed_worst = worst
        next_worst = None  # per-rep aggregation starts over

    result = AnalysisResult(
        exercise=state.exercise,
        score=score,
        phase=step.state.phase,
        rep_completed=step.rep_completed,
        rep_count=step.state.rep_count,
        feedbacks=feedbacks,
        raw_angles={k: round(v, 1) for k, v in raw_angles.items()},
        partial_rep=step.partial,
        rep_worst_score=closed_worst,
    )
    new = replace(
        state,
        cycle=step.state,
        smoothers=smoothers,
        last_feedbacks=feedbacks,
        last_score=score,
        rep_worst_score=next_worst,
        extra=state.extra if extra is None else extra,
    )
    return result, new


# Pelvis and trunk checkpoints shared by the standing exercises

PELVIC_HISTORY = 30   # ~1 s at 30 fps


@dataclass(frozen=True)
class TrunkThresholds:
    pelvic_tilt: Threshold = threshold(0, 5, 0, 8)             # hip line off horizontal, deg
    pelvic_stability: Threshold = threshold(85, 100, 60, 100)
    torso_rotation: Threshold = threshold(0, 10, 0, 20)        # shoulder line vs hip line, deg


TRUNK_THRESHOLDS = TrunkThresholds()


def trunk_feedback(
    kp: Pose,
    m: float,
    history: Tuple[float, ...],
    th: TrunkThresholds = TRUNK_THRESHOLDS,
) -> Tuple[Dict[str, FeedbackItem], Dict[str, float], Tuple[float, ...]]:
    """
    Lateral pelvic tilt, its frame-to-frame stability and torso rotation.
    A side-on camera overlaps the hips and shoulders, so these checkpoints
    are simply absent then. Returns (feedbacks, angles, tilt history).
    """
    fb: Dict[str, FeedbackItem] = {}
    angles: Dict[str, float] = {}
    tilt = lateral_pelvic_tilt(kp, m)
    if tilt is not None:
        history = (tuple(history) + (tilt,))[-PELVIC_HISTORY:]
        # positive tilt: the right hip is higher, so the left one dropped
        dropped = "left" if tilt > 0 else "right"
        fb["pelvic_tilt"] = evaluate(abs(tilt), th.pelvic_tilt, "common.pelvic_tilt", high="up", side=dropped)
        fb["pelvic_stability"] = evaluate(tilt_stability(history), th.pelvic_stability, "common.pelvic_stability")
        angles["pelvic_tilt"] = tilt
    rot = torso_rotation(kp, m)
    if rot is not None:
        fb["torso_rotation"] = evaluate(rot, th.torso_rotation, "common.torso_rotation", high="inward")
        angles["torso_rotation"] = rot
    return fb, angles, history
