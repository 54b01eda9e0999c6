from __future__ import annotations
import logging
import math
from collections import deque
from dataclasses import dataclass, field
from typing import Deque, Dict, List, Literal, Mapping, Optional, Tuple

import numpy as np

from formcoach.common.errors import ConfigurationError
from formcoach.common.messages import render
from formcoach.counter.scoring import FeedbackLevel, Threshold
from formcoach.exercises.deadlift import DEADLIFT_THRESHOLDS
from formcoach.exercises.lunge import LUNGE_THRESHOLDS
from formcoach.exercises.plank import PLANK_THRESHOLDS
from formcoach.exercises.pushup import PUSHUP_THRESHOLDS
from formcoach.exercises.squat import SQUAT_THRESHOLDS

logger = logging.getLogger(__name__)

Urgency = Literal["high", "medium", "low"]
CrossingType = Literal["warning", "error"]


@dataclass(frozen=True)
class PredictionConfig:
    look_ahead_ms: float = 300.0
    confidence_threshold: float = 0.7
    hysteresis_ms: float = 100.0
    min_samples_for_prediction: int = 5
    history_size: int = 30
    fit_window: int = 8             # most recent samples used for the trend fit
    quadratic_min_samples: int = 6  # below this the fit is linear
    warning_ttl_ms: float = 1000.0
    torso_error_margin: float = 10.0

    def __post_init__(self):
        if self.fit_window < 2 or self.history_size < self.fit_window:
            raise ConfigurationError("need 2 <= fit_window <= history_size")
        if not (0.0 <= self.confidence_threshold <= 1.0):
            raise ConfigurationError("confidence_threshold must be in [0, 1]")


# Channels default to the squat bottom-phase ranges
DEFAULT_CHANNEL_THRESHOLDS: Dict[str, Threshold] = {
    "left_knee": SQUAT_THRESHOLDS.knee,
    "right_knee": SQUAT_THRESHOLDS.knee,
    "left_hip": SQUAT_THRESHOLDS.hip,
    "right_hip": SQUAT_THRESHOLDS.hip,
    "torso": SQUAT_THRESHOLDS.torso,
    "ankle_dorsiflexion": SQUAT_THRESHOLDS.ankle,
}

# Channels per exercise, keyed like the analyzers' raw_angles
PREDICTION_CHANNELS: Dict[str, Dict[str, Threshold]] = {
    "squat": DEFAULT_CHANNEL_THRESHOLDS,
    "lunge": {
        "front_knee": LUNGE_THRESHOLDS.front_knee,
        "back_knee": LUNGE_THRESHOLDS.back_knee,
        "torso": LUNGE_THRESHOLDS.torso,
    },
    "pushup": {"elbow": PUSHUP_THRESHOLDS.elbow, "body_alignment": PUSHUP_THRESHOLDS.body_alignment},
    "deadlift": {"spine": DEADLIFT_THRESHOLDS.spine, "neck": DEADLIFT_THRESHOLDS.neck},
    "plank": {"body_alignment": PLANK_THRESHOLDS.body_alignment, "hip_position": PLANK_THRESHOLDS.hip_position},
}


def prediction_thresholds_for(exercise: str) -> Dict[str, Threshold]:
    return dict(PREDICTION_CHANNELS.get(exercise, DEFAULT_CHANNEL_THRESHOLDS))


@dataclass(frozen=True)
class AnglePrediction:
    channel: str
    current: float
    velocity: float          # deg/s at the latest sample
    predicted: float
    confidence: float
    timestamp_ms: float
    is_valid: bool = True


@dataclass(frozen=True)
class ThresholdCrossing:
    channel: str
    kind: CrossingType
    bound: float
    predicted: float
    time_to_threshold_ms: float
    confidence: float


@dataclass(frozen=True)
class PredictiveWarning:
    id: str
    channel: str
    kind: CrossingType
    urgency: Urgency
    message_key: str
    time_to_issue_ms: float
    confidence: float
    timestamp_ms: float
    expires_at_ms: float
    params: Mapping[str, str] = field(default_factory=dict)

    def message(self, locale: str = "en") -> str:
        return render(self.message_key, self.params, locale)

    def to_dict(self, locale: str = "en") -> dict:
        return {
            "id": self.id,
            "joint": self.channel,
            "kind": self.kind,
            "urgency": self.urgency,
            "message": self.message(locale),
            "time_to_issue_ms": None if math.isinf(self.time_to_issue_ms) else round(self.time_to_issue_ms),
            "confidence": round(self.confidence, 2),
            "expires_at_ms": self.expires_at_ms,
        }


@dataclass(frozen=True)
class PredictionResult:
    predictions: Mapping[str, AnglePrediction]
    crossings: Tuple[ThresholdCrossing, ...]
    warnings: Tuple[PredictiveWarning, ...]
    overall_risk: FeedbackLevel
    is_reliable: bool


def _joint_params(channel: str) -> Dict[str, str]:
    for side in ("left", "right"):
        if channel.startswith(side + "_"):
            return {"joint": channel[len(side) + 1:], "side": side}
    return {"joint": channel.replace("_dorsiflexion", "")}


def urgency_for(kind: CrossingType, time_to_threshold_ms: float) -> Urgency:
    if kind == "error" or time_to_threshold_ms < 150:
        return "high"
    if time_to_threshold_ms < 250:
        return "medium"
    return "low"


def fit_trend(times_s: np.ndarray, values: np.ndarray, quadratic: bool) -> np.poly1d:
    """Least-squares polynomial of the angle over time (seconds, latest sample at 0)."""
    deg = 2 if quadratic else 1
    return np.poly1d(np.polyfit(times_s, values, deg))


class AnglePredictionEngine:
    """
    Extrapolates each angle channel a short time ahead and raises warnings
    when the extrapolation leaves the acceptable range.
    """

    def __init__(
        self,
        thresholds: Optional[Mapping[str, Threshold]] = None,
        cfg: PredictionConfig = PredictionConfig(),
    ):
        self.cfg = cfg
        self.thresholds: Dict[str, Threshold] = dict(thresholds if thresholds is not None else DEFAULT_CHANNEL_THRESHOLDS)
        self._history: Dict[str, Deque[Tuple[float, float]]] = {}
        self._active: Dict[str, PredictiveWarning] = {}
        self._last_issued: Dict[Tuple[str, str], float] = {}
        self.frame_count = 0

    def reset(self) -> None:
        self._history.clear()
        self._active.clear()
        self._last_issued.clear()
        self.frame_count = 0

    @property
    def active_warnings(self) -> List[PredictiveWarning]:
        return list(self._active.values())

    def _predict(self, channel: str, ts: float) -> AnglePrediction:
        hist = self._history[channel]
        current = hist[-1][1]
        if len(hist) < 2:
            return AnglePrediction(channel, current, 0.0, current, 0.0, ts, is_valid=False)

        window = list(hist)[-self.cfg.fit_window:]
        t = np.array([(w[0] - ts) / 1000.0 for w in window])
        v = np.array([w[1] for w in window])
        if t.max() - t.min() <= 0:
            return AnglePrediction(channel, current, 0.0, current, 0.0, ts, is_valid=False)

        poly = fit_trend(t, v, quadratic=len(window) >= self.cfg.quadratic_min_samples)
        velocity = float(poly.deriv()(0.0))
        predicted = float(poly(self.cfg.look_ahead_ms / 1000.0))

        dt = np.diff(t)
        slopes = np.diff(v)[dt > 0] / dt[dt > 0]
        spread = float(np.std(slopes)) if slopes.size > 1 else 0.0
        stability = 1.0 - min(spread / 100.0, 0.5)
        confidence = min(len(hist) / 10.0, 1.0) * stability
        return AnglePrediction(channel, current, velocity, predicted, confidence, ts)

    def _crossings(self, p: AnglePrediction) -> List[ThresholdCrossing]:
        th = self.thresholds.get(p.channel)
        if th is None:
            return []
        acc = th.acceptable
        out: List[ThresholdCrossing] = []

        def ttt(bound: float) -> float:
            if abs(p.velocity) < 1e-3:
                return math.inf
            return max(0.0, (bound - p.current) / p.velocity * 1000.0)

        if p.current >= acc.min and p.predicted < acc.min:
            out.append(ThresholdCrossing(p.channel, "warning", acc.min, p.predicted, ttt(acc.min), p.confidence))
        if p.current <= acc.max and p.predicted > acc.max:
            out.append(ThresholdCrossing(p.channel, "warning", acc.max, p.predicted, ttt(acc.max), p.confidence))
        if p.channel == "torso":
            bound = acc.max + self.cfg.torso_error_margin
            if p.predicted > bound:
                out.append(ThresholdCrossing(p.channel, "error", bound, p.predicted, ttt(bound), p.confidence))
        return out

    def _issue(self, c: ThresholdCrossing, ts: float) -> Optional[PredictiveWarning]:
        last = self._last_issued.get((c.channel, c.kind))
        if last is not None and ts - last < self.cfg.hysteresis_ms:
            return None
        self._last_issued[(c.channel, c.kind)] = ts
        return PredictiveWarning(
            id=f"{c.channel}_{c.kind}_{int(ts // 500)}",
            channel=c.channel,
            kind=c.kind,
            urgency=urgency_for(c.kind, c.time_to_threshold_ms),
            message_key="prediction.error_imminent" if c.kind == "error" else "prediction.approaching_limit",
            time_to_issue_ms=c.time_to_threshold_ms,
            confidence=c.confidence,
            timestamp_ms=ts,
            expires_at_ms=ts + self.cfg.warning_ttl_ms,
            params=_joint_params(c.channel),
        )

    def update(self, angles: Mapping[str, Optional[float]], timestamp_ms: float) -> PredictionResult:
        ts = float(timestamp_ms)
        seen = False
        for ch, val in angles.items():
            if val is None or not math.isfinite(val) or not math.isfinite(ts):
                continue
            hist = self._history.setdefault(ch, deque(maxlen=self.cfg.history_size))
            if hist and ts <= hist[-1][0]:
                continue
            hist.append((ts, float(val)))
            seen = True
        if seen:
            self.frame_count += 1

        # expired warnings go first
        self._active = {k: w for k, w in self._active.items() if ts <= w.expires_at_ms}

        reliable = self.frame_count >= self.cfg.min_samples_for_prediction
        preds: Dict[str, AnglePrediction] = {}
        crossings: List[ThresholdCrossing] = []
        for ch in angles:
            if ch not in self._history or not self._history[ch]:
                continue
            p = self._predict(ch, ts)
            preds[ch] = p
            if reliable and p.is_valid and p.confidence >= self.cfg.confidence_threshold:
                crossings.extend(self._crossings(p))

        for c in crossings:
            w = self._issue(c, ts)
            if w is not None:
                self._active[w.id] = w
                logger.debug("predictive %s on %s in %.0f ms", c.kind, c.channel, c.time_to_threshold_ms)

        if any(c.kind == "error" for c in crossings):
            risk: FeedbackLevel = "error"
        elif crossings:
            risk = "warning"
        else:
            risk = "good"
        return PredictionResult(
            predictions=preds,
            crossings=tuple(crossings),
            warnings=tuple(self._active.values()),
            overall_risk=risk,
            is_reliable=reliable,
        )
