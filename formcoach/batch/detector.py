from __future__ import annotations
import logging
import time
from dataclasses import asdict, dataclass
from typing import Callable, Dict, List, Literal, Mapping, Optional, Sequence, Tuple

import numpy as np

from formcoach.common.errors import ConfigurationError
from formcoach.counter.keypoints import Landmark as L, MIN_KEYPOINT_SCORE
from formcoach.counter.pose_core import joint_angle, mean_available, pair_center
from formcoach.batch.frames import FramePoseData

logger = logging.getLogger(__name__)

Orientation = Literal["vertical", "horizontal", "unknown"]
DetectionStatus = Literal["ok", "failed", "timeout", "cancelled"]


@dataclass(frozen=True)
class AngleSpan:
    min: float
    max: float

    @property
    def range(self) -> float:
        return self.max - self.min


@dataclass(frozen=True)
class ExerciseProfile:
    exercise: str
    orientation: Orientation
    knee: AngleSpan
    hip: AngleSpan
    elbow: AngleSpan
    vertical_movement: float     # hip displacement (normalized) expected per rep
    horizontal_movement: float
    cycle_ms: Tuple[float, float]


EXERCISE_PROFILES: Dict[str, ExerciseProfile] = {
    "squat": ExerciseProfile("squat", "vertical", AngleSpan(70, 170), AngleSpan(45, 170), AngleSpan(90, 180), 0.15, 0.05, (1500, 5000)),
    "pushup": ExerciseProfile("pushup", "horizontal", AngleSpan(150, 180), AngleSpan(150, 180), AngleSpan(45, 170), 0.03, 0.02, (1000, 4000)),
    "lunge": ExerciseProfile("lunge", "vertical", AngleSpan(60, 170), AngleSpan(70, 170), AngleSpan(90, 180), 0.12, 0.08, (2000, 6000)),
    "deadlift": ExerciseProfile("deadlift", "vertical", AngleSpan(100, 170), AngleSpan(45, 170), AngleSpan(160, 180), 0.10, 0.03, (2000, 7000)),
    "plank": ExerciseProfile("plank", "horizontal", AngleSpan(160, 180), AngleSpan(160, 180), AngleSpan(80, 100), 0.02, 0.02, (10000, 60000)),
}

# Scoring weights; they sum to 1 so the weighted sum is already a confidence.
ORIENTATION_WEIGHT = 0.30
KNEE_WEIGHT = 0.25
HIP_WEIGHT = 0.25
VERTICAL_WEIGHT = 0.20
ORIENTATION_MISMATCH_PENALTY = 0.10
RANGE_TOLERANCE = 100.0        # degrees of range difference that zero a range match
ALTERNATIVE_MIN_CONFIDENCE = 0.3
MAX_ALTERNATIVES = 3


@dataclass(frozen=True)
class DetectionConfig:
    frames_to_analyze: int = 30
    confidence_threshold: float = 0.7
    timeout_ms: float = 5000.0
    min_frames_for_detection: int = 10
    vertical_gap: float = 0.15       # shoulder-hip y gap above this: upright body
    horizontal_gap: float = 0.08     # below this: body along the floor
    min_score: float = MIN_KEYPOINT_SCORE

    def __post_init__(self):
        if self.min_frames_for_detection < 2:
            raise ConfigurationError("min_frames_for_detection must be >= 2")
        if self.frames_to_analyze < self.min_frames_for_detection:
            raise ConfigurationError("frames_to_analyze must be >= min_frames_for_detection")
        if not (0.0 <= self.confidence_threshold <= 1.0):
            raise ConfigurationError("confidence_threshold must be in [0, 1]")
        if self.horizontal_gap > self.vertical_gap:
            raise ConfigurationError("horizontal_gap must not exceed vertical_gap")


@dataclass(frozen=True)
class DetectionMetrics:
    frames_analyzed: int
    vertical_displacement: float
    horizontal_displacement: float
    knee_range: AngleSpan
    hip_range: AngleSpan
    elbow_range: AngleSpan
    orientation: Orientation
    movement_cycle_detected: bool
    cycle_frequency_hz: Optional[float] = None


@dataclass(frozen=True)
class Candidate:
    exercise: str
    confidence: float


@dataclass(frozen=True)
class DetectionOutcome:
    status: DetectionStatus
    exercise: Optional[str] = None
    confidence: float = 0.0
    alternatives: Tuple[Candidate, ...] = ()
    candidates: Tuple[Candidate, ...] = ()
    metrics: Optional[DetectionMetrics] = None
    reason: Optional[str] = None
    elapsed_ms: float = 0.0

    @property
    def ok(self) -> bool:
        return self.status == "ok"

    def to_dict(self) -> dict:
        return asdict(self)


def _span(values: Sequence[float]) -> AngleSpan:
    if not values:
        return AngleSpan(0.0, 0.0)
    return AngleSpan(round(float(min(values)), 1), round(float(max(values)), 1))


def body_orientation(shoulder_y: float, hip_y: float, cfg: DetectionConfig = DetectionConfig()) -> Orientation:
    gap = abs(shoulder_y - hip_y)
    if gap > cfg.vertical_gap:
        return "vertical"
    if gap < cfg.horizontal_gap:
        return "horizontal"
    return "unknown"


def cycle_frequency(values: Sequence[float], timestamps_ms: Sequence[float], min_peak: float = 0.3) -> Optional[float]:
    """
    Dominant repetition frequency (Hz) from the first autocorrelation peak of
    the detrended signal. None when the signal is flat or shows no period.
    """
    if len(values) < 4 or len(values) != len(timestamps_ms):
        return None
    x = np.asarray(values, dtype=float)
    t = np.asarray(timestamps_ms, dtype=float)
    idx = np.arange(len(x))
    x = x - np.polyval(np.polyfit(idx, x, 1), idx)
    energy = float(np.dot(x, x))
    if energy < 1e-9:
        return None
    ac = np.correlate(x, x, mode="full")[len(x) - 1:] / energy
    for lag in range(1, len(ac) - 1):
        if ac[lag] >= min_peak and ac[lag] >= ac[lag - 1] and ac[lag] >= ac[lag + 1]:
            dt = float(np.mean(np.diff(t)))
            if dt <= 0:
                return None
            return round(1000.0 / (lag * dt), 3)
    return None


def _range_match(observed: float, expected: float, weight: float) -> float:
    return max(0.0, (1.0 - abs(observed - expected) / RANGE_TOLERANCE) * weight)


def score_profile(metrics: DetectionMetrics, profile: ExerciseProfile) -> float:
    score = 0.0
    if metrics.orientation == profile.orientation:
        score += ORIENTATION_WEIGHT
    elif metrics.orientation != "unknown":
        score -= ORIENTATION_MISMATCH_PENALTY
    score += _range_match(metrics.knee_range.range, profile.knee.range, KNEE_WEIGHT)
    score += _range_match(metrics.hip_range.range, profile.hip.range, HIP_WEIGHT)
    if metrics.vertical_displacement >= profile.vertical_movement:
        vertical = 1.0
    else:
        vertical = metrics.vertical_displacement / profile.vertical_movement
    score += vertical * VERTICAL_WEIGHT
    return min(1.0, max(0.0, score))


def rank_profiles(metrics: DetectionMetrics, profiles: Mapping[str, ExerciseProfile] = EXERCISE_PROFILES) -> List[Candidate]:
    ranked = [Candidate(name, round(score_profile(metrics, p), 3)) for name, p in profiles.items()]
    return sorted(ranked, key=lambda c: c.confidence, reverse=True)


class _Stop(Exception):
    def __init__(self, status: DetectionStatus):
        super().__init__(status)
        self.status = status


def compute_metrics(
    frames: Sequence[FramePoseData],
    cfg: DetectionConfig = DetectionConfig(),
    checkpoint: Optional[Callable[[], None]] = None,
) -> DetectionMetrics:
    """Motion signature of the given pose frames."""
    knee: List[float] = []
    hip: List[float] = []
    elbow: List[float] = []
    hip_x: List[float] = []
    hip_y: List[float] = []
    shoulder_y: List[float] = []
    cyc_vals: Dict[str, List[float]] = {"knee": [], "elbow": []}
    cyc_ts: Dict[str, List[float]] = {"knee": [], "elbow": []}
    ms = cfg.min_score

    for f in frames:
        if checkpoint is not None:
            checkpoint()
        kp = f.keypoints
        k = mean_available(
            joint_angle(kp, L.LEFT_HIP, L.LEFT_KNEE, L.LEFT_ANKLE, ms),
            joint_angle(kp, L.RIGHT_HIP, L.RIGHT_KNEE, L.RIGHT_ANKLE, ms),
        )
        h = mean_available(
            joint_angle(kp, L.LEFT_SHOULDER, L.LEFT_HIP, L.LEFT_KNEE, ms),
            joint_angle(kp, L.RIGHT_SHOULDER, L.RIGHT_HIP, L.RIGHT_KNEE, ms),
        )
        e = mean_available(
            joint_angle(kp, L.LEFT_SHOULDER, L.LEFT_ELBOW, L.LEFT_WRIST, ms),
            joint_angle(kp, L.RIGHT_SHOULDER, L.RIGHT_ELBOW, L.RIGHT_WRIST, ms),
        )
        if k is not None:
            knee.append(k)
            cyc_vals["knee"].append(k)
            cyc_ts["knee"].append(f.timestamp_ms)
        if h is not None:
            hip.append(h)
        if e is not None:
            elbow.append(e)
            cyc_vals["elbow"].append(e)
            cyc_ts["elbow"].append(f.timestamp_ms)
        hc = pair_center(kp, L.LEFT_HIP, L.RIGHT_HIP, ms)
        sc = pair_center(kp, L.LEFT_SHOULDER, L.RIGHT_SHOULDER, ms)
        if hc is not None:
            hip_x.append(hc.x)
            hip_y.append(hc.y)
        if sc is not None:
            shoulder_y.append(sc.y)

    if hip_y and shoulder_y:
        orientation = body_orientation(float(np.mean(shoulder_y)), float(np.mean(hip_y)), cfg)
    else:
        orientation = "unknown"

    knee_span, hip_span, elbow_span = _span(knee), _span(hip), _span(elbow)
    signal = "elbow" if orientation == "horizontal" else "knee"
    freq = cycle_frequency(cyc_vals[signal], cyc_ts[signal])

    return DetectionMetrics(
        frames_analyzed=len(frames),
        vertical_displacement=round(max(hip_y) - min(hip_y), 4) if hip_y else 0.0,
        horizontal_displacement=round(max(hip_x) - min(hip_x), 4) if hip_x else 0.0,
        knee_range=knee_span,
        hip_range=hip_span,
        elbow_range=elbow_span,
        orientation=orientation,
        movement_cycle_detected=knee_span.range > 30 or hip_span.range > 30,
        cycle_frequency_hz=freq,
    )


def detect_exercise(
    frames: Sequence[FramePoseData],
    cfg: DetectionConfig = DetectionConfig(),
    should_cancel: Optional[Callable[[], bool]] = None,
    clock: Callable[[], float] = time.monotonic,
) -> DetectionOutcome:
    """
    Guess the exercise from the opening frames of a recording.

    Only a best match at or above `confidence_threshold` is reported as a
    detection; anything weaker comes back as `failed` with the ranking
    attached so a caller can ask the user instead.
    """
    t0 = clock()

    def elapsed() -> float:
        return (clock() - t0) * 1000.0

    def checkpoint() -> None:
        if should_cancel is not None and should_cancel():
            raise _Stop("cancelled")
        if elapsed() > cfg.timeout_ms:
            raise _Stop("timeout")

    try:
        window: List[FramePoseData] = []
        for f in frames:
            checkpoint()
            if f.keypoints is not None:
                window.append(f)
                if len(window) >= cfg.frames_to_analyze:
                    break

        if len(window) < cfg.min_frames_for_detection:
            logger.info("detection needs %d pose frames, got %d", cfg.min_frames_for_detection, len(window))
            return DetectionOutcome(status="failed", reason="insufficient_frames", elapsed_ms=elapsed())

        metrics = compute_metrics(window, cfg, checkpoint=checkpoint)
        ranked = rank_profiles(metrics)
        checkpoint()
    except _Stop as stop:
        logger.info("exercise detection stopped: %s", stop.status)
        return DetectionOutcome(status=stop.status, reason=stop.status, elapsed_ms=elapsed())

    top = ranked[0]
    alternatives = tuple(c for c in ranked[1:1 + MAX_ALTERNATIVES] if c.confidence > ALTERNATIVE_MIN_CONFIDENCE)
    if top.confidence < cfg.confidence_threshold:
        logger.info("best match %s at %.2f is below %.2f", top.exercise, top.confidence, cfg.confidence_threshold)
        return DetectionOutcome(
            status="failed",
            confidence=top.confidence,
            alternatives=alternatives,
            candidates=tuple(ranked),
            metrics=metrics,
            reason="low_confidence",
            elapsed_ms=elapsed(),
        )
    logger.debug("detected %s (%.2f) in %d frames", top.exercise, top.confidence, metrics.frames_analyzed)
    return DetectionOutcome(
        status="ok",
        exercise=top.exercise,
        confidence=top.confidence,
        alternatives=alternatives,
        candidates=tuple(ranked),
        metrics=metrics,
        elapsed_ms=elapsed(),
    )
