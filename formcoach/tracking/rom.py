from __future__ import annotations
import logging
import math
import time
from dataclasses import dataclass
from typing import Dict, Iterable, List, Literal, Mapping, Optional, Sequence, Tuple

import numpy as np

from formcoach.common.errors import ConfigurationError
from formcoach.common.messages import render
from formcoach.counter.scoring import FeedbackLevel

logger = logging.getLogger(__name__)

MobilityAssessment = Literal["normal", "limited", "hypermobile"]
Priority = Literal["high", "medium", "low"]
Side = Optional[Literal["left", "right"]]


@dataclass(frozen=True)
class RomBenchmark:
    joint: str
    normal_min: float
    normal_max: float
    hypermobile: float   # range at or above this is hypermobile
    limited: float       # range below this is limited


ROM_BENCHMARKS: Dict[str, RomBenchmark] = {
    "knee": RomBenchmark("knee", 0, 135, hypermobile=145, limited=120),
    "hip": RomBenchmark("hip", 0, 120, hypermobile=130, limited=100),
    "torso": RomBenchmark("torso", 0, 80, hypermobile=90, limited=60),
    "ankle": RomBenchmark("ankle", 0, 20, hypermobile=30, limited=10),
}

SEVERE_LIMIT_PERCENT = 70.0
PERCENTILES = (10, 50, 90)


def assess_mobility(range_achieved: float, bench: RomBenchmark) -> MobilityAssessment:
    if range_achieved >= bench.hypermobile:
        return "hypermobile"
    if range_achieved < bench.limited:
        return "limited"
    return "normal"


@dataclass(frozen=True)
class JointRomResult:
    joint: str
    side: Side
    min_angle: float
    max_angle: float
    range_achieved: float
    percentiles: Mapping[str, float]
    assessment: MobilityAssessment
    percent_of_normal: float
    level: FeedbackLevel
    samples: int

    @property
    def key(self) -> str:
        return f"{self.joint}_{self.side}" if self.side else self.joint

    def message(self, locale: str = "en") -> str:
        return render(
            f"rom.{self.assessment}",
            {"joint": self.joint, "percent": round(self.percent_of_normal)},
            locale,
        )

    def to_dict(self, locale: str = "en") -> dict:
        return {
            "joint": self.joint,
            "side": self.side,
            "min": self.min_angle,
            "max": self.max_angle,
            "range_achieved": self.range_achieved,
            "percentiles": dict(self.percentiles),
            "assessment": self.assessment,
            "percent_of_normal": self.percent_of_normal,
            "level": self.level,
            "samples": self.samples,
            "message": self.message(locale),
        }


@dataclass(frozen=True)
class Recommendation:
    joint: str
    side: Side
    kind: Literal["stretch", "strengthen", "maintain"]
    priority: Priority

    def message(self, locale: str = "en") -> str:
        return render(f"rom.recommend.{self.kind}", {"joint": self.joint}, locale)


@dataclass(frozen=True)
class RomSessionSummary:
    exercise: str
    started_at: float
    duration_s: float
    joints: Tuple[JointRomResult, ...]
    overall: MobilityAssessment
    recommendations: Tuple[Recommendation, ...]

    def joint(self, joint: str, side: Side = None) -> Optional[JointRomResult]:
        for j in self.joints:
            if j.joint == joint and j.side == side:
                return j
        return None

    def to_dict(self, locale: str = "en") -> dict:
        return {
            "exercise": self.exercise,
            "started_at": self.started_at,
            "duration_s": self.duration_s,
            "joints": {j.key: j.to_dict(locale) for j in self.joints},
            "overall": self.overall,
            "recommendations": [
                {"joint": r.joint, "side": r.side, "kind": r.kind, "priority": r.priority, "message": r.message(locale)}
                for r in self.recommendations
            ],
        }


_PRIORITY_ORDER = {"high": 0, "medium": 1, "low": 2}


def recommendations_for(results: Iterable[JointRomResult]) -> List[Recommendation]:
    recs: List[Recommendation] = []
    for r in results:
        if r.assessment == "limited":
            prio: Priority = "high" if r.percent_of_normal < SEVERE_LIMIT_PERCENT else "medium"
            recs.append(Recommendation(r.joint, r.side, "stretch", prio))
        elif r.assessment == "hypermobile":
            recs.append(Recommendation(r.joint, r.side, "strengthen", "medium"))
        else:
            recs.append(Recommendation(r.joint, r.side, "maintain", "low"))
    return sorted(recs, key=lambda rec: _PRIORITY_ORDER[rec.priority])


def overall_mobility(results: Sequence[JointRomResult]) -> MobilityAssessment:
    if not results:
        return "normal"
    limited = sum(1 for r in results if r.assessment == "limited")
    if limited > len(results) / 2:
        return "limited"
    if any(r.assessment == "hypermobile" for r in results):
        return "hypermobile"
    return "normal"


class RomTracker:
    """Collects joint angles over a session and grades the range reached per joint."""

    def __init__(self, exercise: str, joints: Sequence[str], channels: Optional[Mapping[str, Tuple[str, Side]]] = None):
        unknown = [j for j in joints if j not in ROM_BENCHMARKS]
        if unknown:
            raise ConfigurationError(f"no ROM benchmark for {unknown}")
        self.exercise = exercise
        self.joints = tuple(joints)
        # analyzer raw_angles key -> (joint, side)
        self.channels = dict(channels) if channels is not None else {j: (j, None) for j in joints}
        self.is_tracking = False
        self._started_at = 0.0
        self._t0 = 0.0
        self._samples: Dict[Tuple[str, Side], List[float]] = {}

    def start_tracking(self) -> None:
        self._samples = {}
        self._started_at = time.time()
        self._t0 = time.monotonic()
        self.is_tracking = True
        logger.debug("ROM tracking started for %s %s", self.exercise, self.joints)

    def record(self, joint: str, angle: Optional[float], side: Side = None) -> bool:
        """Add one sample. Returns False when it was rejected."""
        if not self.is_tracking or joint not in self.joints:
            return False
        if angle is None or not math.isfinite(angle) or angle < 0 or angle > 360:
            return False
        self._samples.setdefault((joint, side), []).append(float(angle))
        return True

    def record_angles(self, angles: Mapping[str, float]) -> int:
        """Feed an analyzer's raw_angles through the channel map. Returns how many were kept."""
        n = 0
        for key, (joint, side) in self.channels.items():
            if key in angles:
                n += self.record(joint, angles[key], side)
        return n

    def current_stats(self) -> List[dict]:
        out = []
        for (joint, side), vals in self._samples.items():
            if vals:
                out.append({
                    "joint": joint, "side": side,
                    "min": round(min(vals), 1), "max": round(max(vals), 1), "current": round(vals[-1], 1),
                })
        return out

    def _results(self) -> List[JointRomResult]:
        results = []
        for (joint, side), vals in self._samples.items():
            if not vals:
                continue
            bench = ROM_BENCHMARKS[joint]
            arr = np.asarray(vals, dtype=float)
            lo, hi = float(arr.min()), float(arr.max())
            rng = hi - lo
            assessment = assess_mobility(rng, bench)
            pct = rng / bench.normal_max * 100.0
            if assessment == "normal":
                level: FeedbackLevel = "good"
            elif assessment == "limited" and pct < SEVERE_LIMIT_PERCENT:
                level = "error"
            else:
                level = "warning"
            results.append(JointRomResult(
                joint=joint,
                side=side,
                min_angle=round(lo, 1),
                max_angle=round(hi, 1),
                range_achieved=round(rng, 1),
                percentiles={f"p{p}": round(float(v), 1) for p, v in zip(PERCENTILES, np.percentile(arr, PERCENTILES))},
                assessment=assessment,
                percent_of_normal=round(pct, 1),
                level=level,
                samples=len(vals),
            ))
        return results

    def summary(self) -> Optional[RomSessionSummary]:
        """Summary so far, without stopping. None when nothing usable was recorded."""
        if not self.is_tracking:
            return None
        results = self._results()
        if not results:
            return None
        return RomSessionSummary(
            exercise=self.exercise,
            started_at=self._started_at,
            duration_s=round(time.monotonic() - self._t0, 1),
            joints=tuple(results),
            overall=overall_mobility(results),
            recommendations=tuple(recommendations_for(results)),
        )

    def stop_tracking(self) -> Optional[RomSessionSummary]:
        if not self.is_tracking:
            return None
        out = self.summary()
        self.is_tracking = False
        return out


@dataclass(frozen=True)
class RomChange:
    joint: str
    side: Side
    change: float
    improved: bool


def compare_to_baseline(current: RomSessionSummary, baseline: RomSessionSummary) -> List[RomChange]:
    """Per-joint change in range achieved. Joints missing from the baseline are skipped."""
    out: List[RomChange] = []
    for j in current.joints:
        base = baseline.joint(j.joint, j.side)
        if base is None:
            continue
        change = j.range_achieved - base.range_achieved
        out.append(RomChange(j.joint, j.side, round(change, 1), change > 0))
    return out


def create_squat_rom_tracker() -> RomTracker:
    """Knee and hip per side, ankle dorsiflexion as one channel."""
    return RomTracker("squat", ("knee", "hip", "ankle"), channels={
        "left_knee": ("knee", "left"),
        "right_knee": ("knee", "right"),
        "left_hip": ("hip", "left"),
        "right_hip": ("hip", "right"),
        "ankle_dorsiflexion": ("ankle", None),
    })


def create_lunge_rom_tracker() -> RomTracker:
    """Front-leg knee and hip."""
    return RomTracker("lunge", ("knee", "hip"), channels={"front_knee": ("knee", None), "hip": ("hip", None)})


def create_deadlift_rom_tracker() -> RomTracker:
    return RomTracker("deadlift", ("hip", "torso"), channels={"hip": ("hip", None), "spine": ("torso", None)})


ROM_FACTORIES = {
    "squat": create_squat_rom_tracker,
    "lunge": create_lunge_rom_tracker,
    "deadlift": create_deadlift_rom_tracker,
}


def rom_tracker_for(exercise: str) -> Optional[RomTracker]:
    factory = ROM_FACTORIES.get(exercise)
    return factory() if factory is not None else None
