from __future__ import annotations
import logging
import math
from collections import Counter, deque
from dataclasses import dataclass, field
from typing import Deque, Dict, Iterable, List, Literal, Optional, Union

from formcoach.common.errors import ConfigurationError
from formcoach.common.messages import render
from formcoach.counter.keypoints import Keypoint, Landmark as L, Pose
from formcoach.counter.phases import CyclePhases

logger = logging.getLogger(__name__)

VelocityCategory = Literal["too_slow", "slow", "optimal", "fast", "too_fast"]
MovementPhase = Literal["eccentric", "concentric", "isometric", "transition"]

TRACKED_JOINTS: Dict[str, int] = {
    "left_knee": L.LEFT_KNEE,
    "right_knee": L.RIGHT_KNEE,
    "left_hip": L.LEFT_HIP,
    "right_hip": L.RIGHT_HIP,
    "left_shoulder": L.LEFT_SHOULDER,
    "right_shoulder": L.RIGHT_SHOULDER,
    "left_ankle": L.LEFT_ANKLE,
    "right_ankle": L.RIGHT_ANKLE,
}


@dataclass(frozen=True)
class VelocityBands:
    """Cut-offs in scaled units per second."""
    too_slow: float
    optimal_min: float
    optimal_max: float
    too_fast: float

    def __post_init__(self):
        cuts = (self.too_slow, self.optimal_min, self.optimal_max, self.too_fast)
        if any(b < a for a, b in zip(cuts, cuts[1:])):
            raise ConfigurationError(f"velocity bands must be non-decreasing: {cuts}")

    def classify(self, v: float) -> VelocityCategory:
        if v < self.too_slow:
            return "too_slow"
        if v < self.optimal_min:
            return "slow"
        if v <= self.optimal_max:
            return "optimal"
        if v < self.too_fast:
            return "fast"
        return "too_fast"


DEFAULT_BANDS = VelocityBands(too_slow=20, optimal_min=50, optimal_max=200, too_fast=300)


@dataclass(frozen=True)
class ExerciseVelocityConfig:
    exercise: str
    eccentric: VelocityBands
    concentric: VelocityBands
    primary_joint: str = "left_hip"
    tracked_joints: tuple = tuple(TRACKED_JOINTS)

    def bands(self, phase: MovementPhase) -> VelocityBands:
        return self.eccentric if phase == "eccentric" else self.concentric


_LEG_ECC = VelocityBands(20, 80, 150, 300)
_LEG_CONC = VelocityBands(30, 100, 200, 400)

VELOCITY_CONFIGS: Dict[str, ExerciseVelocityConfig] = {
    "squat": ExerciseVelocityConfig("squat", _LEG_ECC, _LEG_CONC, primary_joint="left_hip"),
    "lunge": ExerciseVelocityConfig("lunge", _LEG_ECC, _LEG_CONC, primary_joint="left_hip"),
    "pushup": ExerciseVelocityConfig(
        "pushup", VelocityBands(15, 60, 120, 250), VelocityBands(20, 80, 150, 300),
        primary_joint="left_shoulder",
    ),
    "deadlift": ExerciseVelocityConfig(
        "deadlift", VelocityBands(15, 60, 120, 250), VelocityBands(25, 90, 180, 350),
        primary_joint="left_hip",
    ),
    "plank": ExerciseVelocityConfig(
        "plank", VelocityBands(0, 0, 15, 50), VelocityBands(0, 0, 15, 50),
        primary_joint="left_hip",
    ),
}


def velocity_config(exercise: str) -> ExerciseVelocityConfig:
    return VELOCITY_CONFIGS.get(exercise, ExerciseVelocityConfig(exercise, DEFAULT_BANDS, DEFAULT_BANDS))


@dataclass(frozen=True)
class VelocityTrackerConfig:
    history_size: int = 30
    alpha: float = 0.3
    min_confidence: float = 0.5
    position_scale: float = 1000.0   # normalized image units -> tracker units

    def __post_init__(self):
        if self.history_size < 2:
            raise ConfigurationError("history_size must be >= 2")
        if not (0.0 < self.alpha <= 1.0):
            raise ConfigurationError("alpha must be in (0, 1]")


@dataclass(frozen=True)
class PositionSnapshot:
    x: float
    y: float
    z: Optional[float]
    timestamp_ms: float
    confidence: float


@dataclass(frozen=True)
class JointVelocity:
    joint: str
    velocity: float = 0.0
    smoothed_velocity: float = 0.0
    acceleration: float = 0.0
    category: VelocityCategory = "optimal"
    is_valid: bool = False

    def to_dict(self) -> dict:
        return {
            "joint": self.joint,
            "velocity": round(self.velocity, 1),
            "smoothed_velocity": round(self.smoothed_velocity, 1),
            "acceleration": round(self.acceleration, 1),
            "category": self.category,
            "is_valid": self.is_valid,
        }


def _finite(*vals: Optional[float]) -> bool:
    return all(v is None or math.isfinite(v) for v in vals)


class VelocityTracker:
    """
    Per-joint speed from consecutive keypoint positions.
    Rejected samples (occluded, non-finite, out-of-order) leave the history as it was.
    """

    def __init__(self, exercise: str = "squat", cfg: VelocityTrackerConfig = VelocityTrackerConfig()):
        self.cfg = cfg
        self.exercise_cfg = velocity_config(exercise)
        self._history: Dict[str, Deque[PositionSnapshot]] = {}
        self._smoothed: Dict[str, float] = {}
        self._last: Dict[str, JointVelocity] = {}

    def reset(self) -> None:
        self._history.clear()
        self._smoothed.clear()
        self._last.clear()

    def history(self, joint: str) -> List[PositionSnapshot]:
        return list(self._history.get(joint, ()))

    def update(
        self,
        joint: str,
        keypoint: Optional[Keypoint],
        timestamp_ms: float,
        phase: MovementPhase = "eccentric",
    ) -> JointVelocity:
        invalid = JointVelocity(joint=joint)
        if keypoint is None or keypoint.score < self.cfg.min_confidence:
            return invalid
        if not _finite(keypoint.x, keypoint.y, keypoint.z, timestamp_ms):
            logger.debug("non-finite sample for %s dropped", joint)
            return invalid

        hist = self._history.setdefault(joint, deque(maxlen=self.cfg.history_size))
        snap = PositionSnapshot(keypoint.x, keypoint.y, keypoint.z, float(timestamp_ms), keypoint.score)
        if not hist:
            hist.append(snap)
            return invalid
        prev = hist[-1]
        dt = (snap.timestamp_ms - prev.timestamp_ms) / 1000.0
        if dt <= 0:
            return invalid
        hist.append(snap)

        dx, dy = snap.x - prev.x, snap.y - prev.y
        dz = (snap.z - prev.z) if (snap.z is not None and prev.z is not None) else 0.0
        v = math.sqrt(dx * dx + dy * dy + dz * dz) * self.cfg.position_scale / dt

        prev_sm = self._smoothed.get(joint)
        sm = v if prev_sm is None else self.cfg.alpha * v + (1.0 - self.cfg.alpha) * prev_sm
        accel = 0.0 if prev_sm is None else (sm - prev_sm) / dt
        self._smoothed[joint] = sm

        out = JointVelocity(
            joint=joint,
            velocity=v,
            smoothed_velocity=sm,
            acceleration=accel,
            category=self.exercise_cfg.bands(phase).classify(sm),
            is_valid=True,
        )
        self._last[joint] = out
        return out

    def update_pose(
        self,
        keypoints: Pose,
        timestamp_ms: float,
        phase: MovementPhase = "eccentric",
        joints: Optional[Iterable[str]] = None,
    ) -> Dict[str, JointVelocity]:
        out: Dict[str, JointVelocity] = {}
        for name in joints or self.exercise_cfg.tracked_joints:
            idx = TRACKED_JOINTS[name]
            kp = keypoints[idx] if idx < len(keypoints) else None
            out[name] = self.update(name, kp, timestamp_ms, phase)
        return out

    def latest(self, joint: str) -> Optional[JointVelocity]:
        return self._last.get(joint)

    def average_velocity(self, joints: Optional[Iterable[str]] = None) -> float:
        vals = [
            jv.smoothed_velocity
            for name, jv in self._last.items()
            if jv.is_valid and (joints is None or name in joints)
        ]
        return sum(vals) / len(vals) if vals else 0.0


# Movement phase from the primary joint's vertical motion

EXPECTED_PHASE_MS: Dict[str, float] = {
    "eccentric": 2000.0,
    "concentric": 1500.0,
    "isometric": 1000.0,
    "transition": 300.0,
}


@dataclass(frozen=True)
class PhaseReading:
    phase: MovementPhase
    progress: float       # 0-1 against the expected duration of the phase
    duration_ms: float


class MovementPhaseDetector:
    """
    Eccentric/concentric/isometric from vertical motion. Image y grows downward,
    so moving down (eccentric for squats) is a positive y delta.
    """

    def __init__(
        self,
        isometric_velocity: float = 5.0,
        hysteresis: float = 0.1,
        buffer_size: int = 3,
        position_scale: float = 1000.0,
    ):
        self.isometric_velocity = isometric_velocity
        self.hysteresis = hysteresis
        self.position_scale = position_scale
        self._buffer: Deque[MovementPhase] = deque(maxlen=buffer_size)
        self.phase: MovementPhase = "isometric"
        self._phase_start: Optional[float] = None
        self._last_y: Optional[float] = None
        self._last_ts: Optional[float] = None

    def reset(self) -> None:
        self._buffer.clear()
        self.phase = "isometric"
        self._phase_start = None
        self._last_y = None
        self._last_ts = None

    def _consensus(self, detected: MovementPhase) -> MovementPhase:
        if len(self._buffer) < (self._buffer.maxlen or 1):
            return detected
        winner, count = Counter(self._buffer).most_common(1)[0]
        need = math.ceil((self._buffer.maxlen or 1) / 2)
        return winner if count >= need else self.phase

    def update(self, y: float, velocity: Union[JointVelocity, float], timestamp_ms: float) -> PhaseReading:
        if self._phase_start is None:
            self._phase_start = timestamp_ms
        if isinstance(velocity, JointVelocity):
            valid, speed = velocity.is_valid, velocity.smoothed_velocity
        else:
            valid, speed = math.isfinite(velocity), float(velocity)
        if not valid or not math.isfinite(y):
            return self._reading(timestamp_ms)

        prev_y = self._last_y
        self._last_y = y
        self._last_ts = timestamp_ms
        if prev_y is None:
            return self._reading(timestamp_ms)

        dy = (y - prev_y) * self.position_scale
        if abs(speed) < self.isometric_velocity:
            detected: MovementPhase = "isometric"
        elif dy > self.hysteresis:
            detected = "eccentric"
        elif dy < -self.hysteresis:
            detected = "concentric"
        else:
            detected = "transition"

        self._buffer.append(detected)
        phase = self._consensus(detected)
        if phase != self.phase:
            self.phase = phase
            self._phase_start = timestamp_ms
            self._buffer.clear()
        return self._reading(timestamp_ms)

    def _reading(self, ts: float) -> PhaseReading:
        duration = max(0.0, ts - (self._phase_start if self._phase_start is not None else ts))
        return PhaseReading(
            phase=self.phase,
            progress=min(duration / EXPECTED_PHASE_MS[self.phase], 1.0),
            duration_ms=duration,
        )


# Tempo

@dataclass(frozen=True)
class TempoAnalysis:
    eccentric_ms: float
    concentric_ms: float
    ratio: float
    is_controlled: bool
    message_key: str
    avg_eccentric_velocity: Optional[float] = None
    avg_concentric_velocity: Optional[float] = None

    def message(self, locale: str = "en") -> str:
        return render(self.message_key, {"ratio": round(self.ratio, 1)}, locale)

    def to_dict(self, locale: str = "en") -> dict:
        return {
            "eccentric_ms": round(self.eccentric_ms),
            "concentric_ms": round(self.concentric_ms),
            "ratio": round(self.ratio, 2),
            "is_controlled": self.is_controlled,
            "message_key": self.message_key,
            "message": self.message(locale),
        }


@dataclass(frozen=True)
class TempoConfig:
    controlled_min: float = 1.5
    controlled_max: float = 3.0
    eccentric_too_fast: float = 1.0
    concentric_too_slow: float = 4.0


def tempo_message_key(ratio: float, cfg: TempoConfig = TempoConfig()) -> str:
    if ratio < cfg.eccentric_too_fast:
        return "tempo.eccentric_too_fast"
    if ratio > cfg.concentric_too_slow:
        return "tempo.concentric_too_slow"
    if ratio < cfg.controlled_min:
        return "tempo.eccentric_short"
    if ratio > cfg.controlled_max:
        return "tempo.eccentric_long"
    return "tempo.good"


@dataclass
class _PhaseSpan:
    phase: Optional[MovementPhase] = None
    start_ms: float = 0.0


@dataclass
class TempoTracker:
    """Accumulates eccentric/concentric time per rep from real timestamps."""
    cfg: TempoConfig = field(default_factory=TempoConfig)
    eccentric_ms: float = 0.0
    concentric_ms: float = 0.0
    _span: _PhaseSpan = field(default_factory=_PhaseSpan)
    _velocities: Dict[str, List[float]] = field(default_factory=lambda: {"eccentric": [], "concentric": []})

    def _close_span(self, ts: float) -> None:
        sp = self._span
        if sp.phase == "eccentric":
            self.eccentric_ms += max(0.0, ts - sp.start_ms)
        elif sp.phase == "concentric":
            self.concentric_ms += max(0.0, ts - sp.start_ms)

    def record(self, phase: MovementPhase, timestamp_ms: float, velocity: Optional[float] = None) -> None:
        if not math.isfinite(timestamp_ms):
            return
        if phase != self._span.phase:
            self._close_span(timestamp_ms)
            self._span = _PhaseSpan(phase, timestamp_ms)
        if velocity is not None and math.isfinite(velocity) and phase in self._velocities:
            self._velocities[phase].append(velocity)

    def reset(self) -> None:
        self.eccentric_ms = 0.0
        self.concentric_ms = 0.0
        self._span = _PhaseSpan()
        self._velocities = {"eccentric": [], "concentric": []}

    def complete_rep(self, timestamp_ms: Optional[float] = None) -> Optional[TempoAnalysis]:
        """Close the rep and return its tempo (None when a phase was never seen). Always resets."""
        if timestamp_ms is not None:
            self._close_span(timestamp_ms)
        ecc, conc = self.eccentric_ms, self.concentric_ms
        vel = self._velocities
        self.reset()
        if ecc <= 0 or conc <= 0:
            return None
        ratio = ecc / conc
        return TempoAnalysis(
            eccentric_ms=ecc,
            concentric_ms=conc,
            ratio=ratio,
            is_controlled=self.cfg.controlled_min <= ratio <= self.cfg.controlled_max,
            message_key=tempo_message_key(ratio, self.cfg),
            avg_eccentric_velocity=_mean(vel["eccentric"]),
            avg_concentric_velocity=_mean(vel["concentric"]),
        )


def _mean(vals: List[float]) -> Optional[float]:
    return sum(vals) / len(vals) if vals else None


def phase_from_cycle(phase: str, names: CyclePhases) -> MovementPhase:
    """Map an exercise cycle phase onto eccentric/concentric/isometric."""
    if phase == names.descending:
        return "eccentric"
    if phase == names.ascending:
        return "concentric"
    return "isometric"
