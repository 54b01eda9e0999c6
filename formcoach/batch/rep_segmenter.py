from __future__ import annotations
import logging
import time
from collections import Counter
from dataclasses import asdict, dataclass, field
from typing import Callable, Dict, List, Literal, Mapping, Optional, Sequence, Tuple

import numpy as np

from formcoach.common.errors import ConfigurationError
from formcoach.batch.detector import DetectionConfig, DetectionOutcome, detect_exercise
from formcoach.batch.frames import FramePoseData
from formcoach.exercises.base import HoldStatus
from formcoach.exercises.registry import ExerciseEntry, generic_phase, get_exercise

logger = logging.getLogger(__name__)

GenericPhase = Literal["standing", "descending", "bottom", "ascending"]
AnalysisStatus = Literal["ok", "failed", "timeout", "cancelled"]
Trend = Literal["improving", "declining", "stable", "fluctuating"]

GENERIC_PHASES: Tuple[GenericPhase, ...] = ("standing", "descending", "bottom", "ascending")

# Bottom carries the most weight: it is where form breaks down.
DEFAULT_PHASE_WEIGHTS: Dict[str, Dict[str, float]] = {
    "squat": {"standing": 0.1, "descending": 0.2, "bottom": 0.5, "ascending": 0.2},
    "lunge": {"standing": 0.1, "descending": 0.2, "bottom": 0.5, "ascending": 0.2},
    "deadlift": {"standing": 0.15, "descending": 0.2, "bottom": 0.45, "ascending": 0.2},
    "pushup": {"standing": 0.1, "descending": 0.25, "bottom": 0.4, "ascending": 0.25},
    "plank": {"standing": 1.0, "descending": 0.0, "bottom": 0.0, "ascending": 0.0},
}
EQUAL_PHASE_WEIGHTS = {p: 0.25 for p in GENERIC_PHASES}
TOP_ISSUES = 5


@dataclass(frozen=True)
class RepAnalysisConfig:
    exercise: Optional[str] = None          # None: detect from the opening frames
    phase_weights: Mapping[str, float] = field(default_factory=dict)
    min_rep_ms: float = 500.0
    max_rep_ms: float = 10000.0
    batch_size: int = 30                    # frames between cancellation checks
    detection: DetectionConfig = DetectionConfig()

    def __post_init__(self):
        if self.min_rep_ms <= 0 or self.max_rep_ms <= self.min_rep_ms:
            raise ConfigurationError("need 0 < min_rep_ms < max_rep_ms")
        if self.batch_size < 1:
            raise ConfigurationError("batch_size must be >= 1")
        unknown = set(self.phase_weights) - set(GENERIC_PHASES)
        if unknown:
            raise ConfigurationError(f"unknown phases in phase_weights: {sorted(unknown)}")

    def weights_for(self, exercise: str) -> Dict[str, float]:
        w = dict(DEFAULT_PHASE_WEIGHTS.get(exercise, EQUAL_PHASE_WEIGHTS))
        w.update(self.phase_weights)
        return w


@dataclass(frozen=True)
class FrameScore:
    frame_index: int
    timestamp_ms: float
    score: int
    phase: GenericPhase
    rep_completed: bool
    primary_angle: Optional[float]
    issues: Tuple[str, ...] = ()


@dataclass(frozen=True)
class RepBoundary:
    start_frame: int
    end_frame: int
    start_ms: float
    end_ms: float

    @property
    def duration_ms(self) -> float:
        return self.end_ms - self.start_ms


@dataclass(frozen=True)
class WorstMoment:
    timestamp_ms: float
    frame_index: int
    score: int
    issues: Tuple[str, ...]


@dataclass(frozen=True)
class RepAnalysis:
    rep_number: int
    start_ms: float
    end_ms: float
    duration_ms: float
    score: int
    phase_scores: Mapping[str, Optional[int]]
    frame_count: int
    frame_scores: Tuple[int, ...]
    min_score: int
    max_score: int
    avg_score: int
    worst_moment: WorstMoment
    primary_issues: Tuple[str, ...]
    issue_counts: Mapping[str, int]


@dataclass(frozen=True)
class ConsistencyMetrics:
    overall_consistency: int
    score_std_dev: float
    duration_std_dev: float
    trend: Trend
    trend_slope: float
    best_rep: int
    worst_rep: int


@dataclass(frozen=True)
class RepComparison:
    rep_number: int
    score: int
    duration_ms: float
    deviation: float
    trend: Trend
    compared_to_previous: Optional[int]


@dataclass(frozen=True)
class RepSummary:
    average_score: int = 0
    min_score: int = 0
    max_score: int = 0
    total_duration_ms: float = 0.0
    average_rep_duration_ms: float = 0.0


@dataclass(frozen=True)
class VideoRepAnalysis:
    status: AnalysisStatus
    exercise: Optional[str]
    exercise_confidence: float = 0.0
    reps: Tuple[RepAnalysis, ...] = ()
    summary: RepSummary = RepSummary()
    consistency: Optional[ConsistencyMetrics] = None
    comparison: Tuple[RepComparison, ...] = ()
    hold: Optional[HoldStatus] = None
    detection: Optional[DetectionOutcome] = None
    frames_analyzed: int = 0
    reason: Optional[str] = None

    @property
    def total_reps(self) -> int:
        return len(self.reps)

    def to_dict(self) -> dict:
        out = asdict(self)
        out["total_reps"] = self.total_reps
        return out


class _Cancelled(Exception):
    pass


def score_frames(
    frames: Sequence[FramePoseData],
    entry: ExerciseEntry,
    batch_size: int = 30,
    should_cancel: Optional[Callable[[], bool]] = None,
) -> Tuple[List[FrameScore], object]:
    """Replay the live analyzer over the frames. Returns per-frame scores and the final state."""
    state = entry.create_state()
    out: List[FrameScore] = []
    for i, f in enumerate(frames):
        if should_cancel is not None and i % batch_size == 0 and should_cancel():
            raise _Cancelled()
        if f.keypoints is None:
            continue
        result, state = entry.analyze(f.keypoints, state, timestamp=f.timestamp_ms)
        if not result.is_valid:
            continue
        issues = tuple(fb.message_key for fb in result.feedbacks.values() if fb.level != "good")
        primary = result.raw_angles.get(entry.primary_angle) if entry.primary_angle else None
        out.append(FrameScore(
            frame_index=f.frame_index,
            timestamp_ms=f.timestamp_ms,
            score=result.score,
            phase=generic_phase(entry, result.phase),
            rep_completed=result.rep_completed,
            primary_angle=primary,
            issues=issues,
        ))
    if should_cancel is not None and should_cancel():
        raise _Cancelled()
    return out, state


def find_rep_boundaries(frame_scores: Sequence[FrameScore]) -> List[RepBoundary]:
    """
    A rep opens on the frame that leaves the resting phase and closes when the
    analyzer counts it, or on standing after the bottom was passed. Coming back
    to rest without reaching the bottom abandons the rep.
    """
    if not frame_scores:
        return []
    rest = frame_scores[0].phase
    passed_bottom = rest == "bottom"
    start: Optional[FrameScore] = None
    bounds: List[RepBoundary] = []

    for fs in frame_scores:
        if start is None:
            if fs.phase != rest:
                start = fs
            else:
                continue
        if fs.phase == "bottom":
            passed_bottom = True
        if fs is start:
            continue
        if fs.rep_completed or (fs.phase == "standing" and passed_bottom):
            bounds.append(RepBoundary(start.frame_index, fs.frame_index, start.timestamp_ms, fs.timestamp_ms))
            start = None
            rest = fs.phase
            passed_bottom = rest == "bottom"
        elif fs.phase == rest and not passed_bottom:
            start = None
    return bounds


def merge_short_reps(bounds: Sequence[RepBoundary], min_rep_ms: float) -> List[RepBoundary]:
    """Fold reps shorter than `min_rep_ms` into the rep that follows; a short trailing rep is dropped."""
    out: List[RepBoundary] = []
    carry: Optional[RepBoundary] = None
    for b in bounds:
        if carry is not None:
            b = RepBoundary(carry.start_frame, b.end_frame, carry.start_ms, b.end_ms)
            carry = None
        if b.duration_ms < min_rep_ms:
            carry = b
            continue
        out.append(b)
    if carry is not None:
        logger.debug("dropping short trailing rep %d-%d", carry.start_frame, carry.end_frame)
    return out


def _split_point(b: RepBoundary, frame_scores: Sequence[FrameScore]) -> Optional[FrameScore]:
    """Highest interior local maximum of the primary angle: the return to the top inside a merged rep."""
    inside = [f for f in frame_scores if b.start_frame <= f.frame_index <= b.end_frame and f.primary_angle is not None]
    best: Optional[FrameScore] = None
    for prev, cur, nxt in zip(inside, inside[1:], inside[2:]):
        if cur.primary_angle >= prev.primary_angle and cur.primary_angle >= nxt.primary_angle:
            if best is None or cur.primary_angle > best.primary_angle:
                best = cur
    return best


def split_long_reps(
    bounds: Sequence[RepBoundary],
    frame_scores: Sequence[FrameScore],
    min_rep_ms: float,
    max_rep_ms: float,
) -> List[RepBoundary]:
    out: List[RepBoundary] = []
    for b in bounds:
        if b.duration_ms <= max_rep_ms:
            out.append(b)
            continue
        peak = _split_point(b, frame_scores)
        if peak is not None:
            first = RepBoundary(b.start_frame, peak.frame_index, b.start_ms, peak.timestamp_ms)
            second = RepBoundary(peak.frame_index, b.end_frame, peak.timestamp_ms, b.end_ms)
            if all(min_rep_ms <= p.duration_ms <= max_rep_ms for p in (first, second)):
                out.extend((first, second))
                continue
        logger.debug("dropping %.0f ms rep %d-%d as noise", b.duration_ms, b.start_frame, b.end_frame)
    return out


def weighted_rep_score(frames: Sequence[FrameScore], weights: Mapping[str, float]) -> Tuple[int, Dict[str, Optional[int]]]:
    by_phase: Dict[str, List[int]] = {p: [] for p in GENERIC_PHASES}
    for f in frames:
        by_phase[f.phase].append(f.score)
    phase_scores: Dict[str, Optional[int]] = {}
    total = 0.0
    wsum = 0.0
    for phase, scores in by_phase.items():
        if not scores:
            phase_scores[phase] = None
            continue
        avg = float(np.mean(scores))
        phase_scores[phase] = int(round(avg))
        total += avg * weights.get(phase, 0.0)
        wsum += weights.get(phase, 0.0)
    return (int(round(total / wsum)) if wsum > 0 else 0), phase_scores


def analyze_rep(number: int, b: RepBoundary, frame_scores: Sequence[FrameScore], weights: Mapping[str, float]) -> RepAnalysis:
    frames = [f for f in frame_scores if b.start_frame <= f.frame_index <= b.end_frame]
    scores = [f.score for f in frames]
    score, phase_scores = weighted_rep_score(frames, weights)
    worst = min(frames, key=lambda f: f.score) if frames else None
    counts = Counter(issue for f in frames for issue in f.issues)
    return RepAnalysis(
        rep_number=number,
        start_ms=b.start_ms,
        end_ms=b.end_ms,
        duration_ms=b.duration_ms,
        score=score,
        phase_scores=phase_scores,
        frame_count=len(frames),
        frame_scores=tuple(scores),
        min_score=min(scores) if scores else 0,
        max_score=max(scores) if scores else 0,
        avg_score=int(round(float(np.mean(scores)))) if scores else 0,
        worst_moment=WorstMoment(worst.timestamp_ms, worst.frame_index, worst.score, worst.issues)
        if worst is not None else WorstMoment(0.0, 0, 0, ()),
        primary_issues=tuple(k for k, _ in counts.most_common(TOP_ISSUES)),
        issue_counts=dict(counts),
    )


def trend_slope(values: Sequence[float]) -> float:
    """Least-squares slope of the values against their index."""
    if len(values) < 2:
        return 0.0
    return float(np.polyfit(np.arange(len(values)), np.asarray(values, dtype=float), 1)[0])


def consistency_metrics(reps: Sequence[RepAnalysis]) -> ConsistencyMetrics:
    if not reps:
        return ConsistencyMetrics(0, 0.0, 0.0, "stable", 0.0, 0, 0)
    scores = [r.score for r in reps]
    durations = [r.duration_ms for r in reps]
    score_sd = float(np.std(scores)) if len(scores) > 1 else 0.0
    dur_sd = float(np.std(durations)) if len(durations) > 1 else 0.0
    slope = trend_slope(scores)

    if abs(slope) < 1:
        trend: Trend = "stable"
    elif slope > 2:
        trend = "improving"
    elif slope < -2:
        trend = "declining"
    elif score_sd > 15:
        trend = "fluctuating"
    else:
        trend = "stable"

    return ConsistencyMetrics(
        overall_consistency=max(0, int(round(100 - score_sd * 2))),
        score_std_dev=round(score_sd, 1),
        duration_std_dev=round(dur_sd),
        trend=trend,
        trend_slope=round(slope, 2),
        best_rep=int(np.argmax(scores)) + 1,
        worst_rep=int(np.argmin(scores)) + 1,
    )


def compare_reps(reps: Sequence[RepAnalysis]) -> List[RepComparison]:
    if not reps:
        return []
    scores = [r.score for r in reps]
    mean = float(np.mean(scores))
    sd = float(np.std(scores))
    out: List[RepComparison] = []
    for i, r in enumerate(reps):
        prev = r.score - reps[i - 1].score if i > 0 else None
        if prev is None or abs(prev) < 5:
            trend: Trend = "stable"
        elif prev > 0:
            trend = "improving"
        else:
            trend = "declining"
        out.append(RepComparison(
            rep_number=r.rep_number,
            score=r.score,
            duration_ms=r.duration_ms,
            deviation=round((r.score - mean) / sd, 2) if sd > 0 else 0.0,
            trend=trend,
            compared_to_previous=prev,
        ))
    return out


def summarize(reps: Sequence[RepAnalysis]) -> RepSummary:
    if not reps:
        return RepSummary()
    scores = [r.score for r in reps]
    return RepSummary(
        average_score=int(round(float(np.mean(scores)))),
        min_score=min(scores),
        max_score=max(scores),
        total_duration_ms=reps[-1].end_ms - reps[0].start_ms,
        average_rep_duration_ms=round(float(np.mean([r.duration_ms for r in reps]))),
    )


def analyze_video_reps(
    frames: Sequence[FramePoseData],
    cfg: RepAnalysisConfig = RepAnalysisConfig(),
    should_cancel: Optional[Callable[[], bool]] = None,
    clock: Callable[[], float] = time.monotonic,
) -> VideoRepAnalysis:
    """
    Segment a recorded frame sequence into scored reps.

    With no exercise configured the opening frames go through the detector
    first; an undetectable exercise fails the analysis rather than guessing.
    """
    detection: Optional[DetectionOutcome] = None
    exercise = cfg.exercise
    confidence = 1.0
    if exercise is None:
        detection = detect_exercise(frames, cfg.detection, should_cancel=should_cancel, clock=clock)
        if detection.status == "cancelled":
            return VideoRepAnalysis(status="cancelled", exercise=None, detection=detection, reason="cancelled")
        if detection.status == "timeout":
            return VideoRepAnalysis(status="timeout", exercise=None, detection=detection, reason="detection_timeout")
        if not detection.ok:
            return VideoRepAnalysis(
                status="failed", exercise=None, detection=detection,
                reason=f"detection_{detection.reason or detection.status}",
            )
        exercise, confidence = detection.exercise, detection.confidence

    entry = get_exercise(exercise)
    try:
        frame_scores, final_state = score_frames(frames, entry, cfg.batch_size, should_cancel)
    except _Cancelled:
        logger.info("rep analysis of %d frames cancelled", len(frames))
        return VideoRepAnalysis(status="cancelled", exercise=entry.name, exercise_confidence=confidence,
                                detection=detection, reason="cancelled")

    hold = final_state.hold_status() if not entry.cyclic else None
    bounds: List[RepBoundary] = []
    if entry.cyclic:
        bounds = find_rep_boundaries(frame_scores)
        bounds = merge_short_reps(bounds, cfg.min_rep_ms)
        bounds = split_long_reps(bounds, frame_scores, cfg.min_rep_ms, cfg.max_rep_ms)

    weights = cfg.weights_for(entry.name)
    reps = tuple(analyze_rep(i + 1, b, frame_scores, weights) for i, b in enumerate(bounds))
    logger.info("%s: %d reps over %d scored frames", entry.name, len(reps), len(frame_scores))
    return VideoRepAnalysis(
        status="ok",
        exercise=entry.name,
        exercise_confidence=confidence,
        reps=reps,
        summary=summarize(reps),
        consistency=consistency_metrics(reps),
        comparison=tuple(compare_reps(reps)),
        hold=hold,
        detection=detection,
        frames_analyzed=len(frame_scores),
    )
