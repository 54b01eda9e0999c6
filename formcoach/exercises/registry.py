from __future__ import annotations
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Optional, Tuple

from formcoach.common.errors import UnknownExerciseError
from formcoach.counter.keypoints import Pose
from formcoach.counter.phases import CyclePhases
from formcoach.exercises import deadlift, lunge, plank, pushup, squat
from formcoach.exercises.base import AnalysisResult, DebugCb

Analyze = Callable[..., Tuple[AnalysisResult, Any]]


@dataclass(frozen=True)
class ExerciseEntry:
    name: str
    create_state: Callable[[], Any]
    analyze: Analyze
    cyclic: bool = True            # False for holds (plank)
    primary_angle: Optional[str] = None   # raw_angles key that drives the cycle
    phases: CyclePhases = CyclePhases()
    config: Any = None             # the analyzer's default config, passed back as cfg=


EXERCISES: Dict[str, ExerciseEntry] = {
    "squat": ExerciseEntry(
        "squat", squat.create_initial_squat_state, squat.analyze_squat, primary_angle="knee",
        config=squat.DEFAULT_SQUAT_CONFIG,
    ),
    "deadlift": ExerciseEntry(
        "deadlift", deadlift.create_initial_deadlift_state, deadlift.analyze_deadlift,
        primary_angle="hip", phases=deadlift.DEADLIFT_PHASES, config=deadlift.DEFAULT_DEADLIFT_CONFIG,
    ),
    "lunge": ExerciseEntry(
        "lunge", lunge.create_initial_lunge_state, lunge.analyze_lunge,
        primary_angle="front_knee", config=lunge.DEFAULT_LUNGE_CONFIG,
    ),
    "pushup": ExerciseEntry(
        "pushup", pushup.create_initial_pushup_state, pushup.analyze_pushup,
        primary_angle="elbow", phases=pushup.PUSHUP_PHASES, config=pushup.DEFAULT_PUSHUP_CONFIG,
    ),
    "plank": ExerciseEntry(
        "plank", plank.create_initial_plank_state, plank.analyze_plank,
        cyclic=False, config=plank.DEFAULT_PLANK_CONFIG,
    ),
}


def exercise_names() -> List[str]:
    return sorted(EXERCISES)


def get_exercise(name: str) -> ExerciseEntry:
    try:
        return EXERCISES[name.strip().lower()]
    except KeyError:
        raise UnknownExerciseError(name) from None


def create_state(name: str) -> Any:
    return get_exercise(name).create_state()


def generic_phase(entry: ExerciseEntry, phase: str) -> str:
    """Map an exercise phase name onto standing/descending/bottom/ascending."""
    names = entry.phases
    return {
        names.top: "standing",
        names.descending: "descending",
        names.bottom: "bottom",
        names.ascending: "ascending",
    }.get(phase, "standing")


def analyze_frame(
    name: str,
    keypoints: Pose,
    state: Any,
    timestamp: Optional[float] = None,
    debug_cb: DebugCb = None,
) -> Tuple[AnalysisResult, Any]:
    """Dispatch one frame to the named analyzer."""
    return get_exercise(name).analyze(keypoints, state, timestamp=timestamp, debug_cb=debug_cb)
