from __future__ import annotations
import math
from dataclasses import dataclass, field
from typing import Dict, List, Literal, Mapping, Optional, Tuple

from formcoach.counter.scoring import FeedbackItem, FeedbackLevel
from formcoach.tracking.velocity import JointVelocity, MovementPhase, VelocityBands, VelocityCategory

MovementQuality = Literal["controlled", "moderate", "rushed"]
VelocityContext = Literal["high_velocity", "optimal_velocity", "low_velocity"]
RiskType = Literal["knee_valgus", "spine_rounding", "asymmetry", "general"]

CONTROLLED_MAX = 60.0     # deg/s
MODERATE_MAX = 120.0
ANGULAR_ALPHA = 0.3
ANGULAR_HISTORY = 10
QUALITY_HISTORY = 30
DEFAULT_DT_MS = 33.0

QUALITY_SCORES = {"controlled": 100, "moderate": 70, "rushed": 40}


@dataclass(frozen=True)
class TempoThresholds:
    multiplier: float
    mode: Literal["strict", "normal", "lenient"]


@dataclass(frozen=True)
class AngularVelocity:
    channel: str
    raw: float
    smoothed: float
    previous_angle: float
    current_angle: float


@dataclass(frozen=True)
class VelocityRisk:
    checkpoint: str
    risk_type: RiskType
    base_level: FeedbackLevel
    adjusted_level: FeedbackLevel
    context: VelocityContext
    confidence: float


@dataclass(frozen=True)
class IntegratedResult:
    timestamp_ms: float
    quality: MovementQuality
    quality_score: int
    angular: Mapping[str, AngularVelocity]
    tempo: TempoThresholds
    overall_category: VelocityCategory
    risks: Tuple[VelocityRisk, ...]
    phase: MovementPhase


@dataclass(frozen=True)
class IntegratedState:
    previous_angles: Mapping[str, float] = field(default_factory=dict)
    previous_ts: Optional[float] = None
    angular_history: Mapping[str, Tuple[float, ...]] = field(default_factory=dict)
    quality_history: Tuple[MovementQuality, ...] = ()
    frame_count: int = 0


def classify_quality(angular_velocity: float) -> MovementQuality:
    if angular_velocity <= CONTROLLED_MAX:
        return "controlled"
    if angular_velocity <= MODERATE_MAX:
        return "moderate"
    return "rushed"


def velocity_context(joint_velocity: float, bands: VelocityBands) -> VelocityContext:
    if joint_velocity > bands.optimal_max * 1.5:
        return "high_velocity"
    if joint_velocity < bands.optimal_min * 0.5:
        return "low_velocity"
    return "optimal_velocity"


def tempo_thresholds(quality: MovementQuality, phase: MovementPhase) -> TempoThresholds:
    """Stricter form limits on slow eccentrics, looser ones on explosive concentrics."""
    if quality == "controlled" and phase == "eccentric":
        return TempoThresholds(0.8, "strict")
    if quality == "rushed" and phase == "concentric":
        return TempoThresholds(1.2, "lenient")
    return TempoThresholds(1.0, "normal")


def risk_type_for(checkpoint: str) -> RiskType:
    if "valgus" in checkpoint:
        return "knee_valgus"
    if "spine" in checkpoint or "torso" in checkpoint or "alignment" in checkpoint:
        return "spine_rounding"
    if "symmetry" in checkpoint:
        return "asymmetry"
    return "general"


def assess_risk(
    checkpoint: str,
    base: FeedbackLevel,
    context: VelocityContext,
    angular_velocity: float,
) -> VelocityRisk:
    level, confidence = base, 0.8
    if context == "high_velocity" and base == "warning":
        level, confidence = "error", 0.9
    if angular_velocity > MODERATE_MAX and base != "good":
        level, confidence = "error", 0.95
    return VelocityRisk(checkpoint, risk_type_for(checkpoint), base, level, context, confidence)


def overall_category(avg_joint_velocity: float) -> VelocityCategory:
    if avg_joint_velocity > 300:
        return "too_fast"
    if avg_joint_velocity > 200:
        return "fast"
    if avg_joint_velocity < 20:
        return "too_slow"
    if avg_joint_velocity < 50:
        return "slow"
    return "optimal"


def analyze_integrated(
    angles: Mapping[str, float],
    joint_velocities: Mapping[str, JointVelocity],
    timestamp_ms: float,
    phase: MovementPhase,
    state: IntegratedState,
    feedbacks: Optional[Mapping[str, FeedbackItem]] = None,
    bands: Optional[VelocityBands] = None,
) -> Tuple[IntegratedResult, IntegratedState]:
    """Combine angle change rate and joint speed into a movement-quality read."""
    dt = timestamp_ms - state.previous_ts if state.previous_ts is not None else DEFAULT_DT_MS

    angular: Dict[str, AngularVelocity] = {}
    history = dict(state.angular_history)
    for ch, cur in angles.items():
        if cur is None or not math.isfinite(cur):
            continue
        prev = state.previous_angles.get(ch, cur)
        raw = abs(cur - prev) / dt * 1000.0 if dt > 0 else 0.0
        past = history.get(ch, ())
        sm = ANGULAR_ALPHA * raw + (1 - ANGULAR_ALPHA) * (past[-1] if past else raw)
        angular[ch] = AngularVelocity(ch, raw, sm, prev, cur)
        history[ch] = (past + (sm,))[-ANGULAR_HISTORY:]

    avg_angular = sum(a.smoothed for a in angular.values()) / len(angular) if angular else 0.0
    quality = classify_quality(avg_angular)

    valid = [jv.smoothed_velocity for jv in joint_velocities.values() if jv.is_valid]
    avg_joint = sum(valid) / len(valid) if valid else 0.0

    risks: List[VelocityRisk] = []
    if feedbacks and bands is not None:
        ctx = velocity_context(avg_joint, bands)
        for name, item in feedbacks.items():
            if item.level != "good":
                risks.append(assess_risk(name, item.level, ctx, avg_angular))

    result = IntegratedResult(
        timestamp_ms=timestamp_ms,
        quality=quality,
        quality_score=QUALITY_SCORES[quality],
        angular=angular,
        tempo=tempo_thresholds(quality, phase),
        overall_category=overall_category(avg_joint),
        risks=tuple(risks),
        phase=phase,
    )
    new = IntegratedState(
        previous_angles={k: v for k, v in angles.items() if v is not None and math.isfinite(v)},
        previous_ts=timestamp_ms,
        angular_history=history,
        quality_history=(state.quality_history + (quality,))[-QUALITY_HISTORY:],
        frame_count=state.frame_count + 1,
    )
    return result, new
