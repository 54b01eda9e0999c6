from __future__ import annotations
from dataclasses import dataclass, replace
from enum import IntEnum
from typing import Any, Iterable, List, Mapping, Optional, Sequence

import numpy as np

NUM_KEYPOINTS = 33
MIN_KEYPOINT_SCORE = 0.5


class Landmark(IntEnum):
    """BlazePose / MediaPipe Pose landmark indices."""
    NOSE = 0
    LEFT_EYE_INNER = 1
    LEFT_EYE = 2
    LEFT_EYE_OUTER = 3
    RIGHT_EYE_INNER = 4
    RIGHT_EYE = 5
    RIGHT_EYE_OUTER = 6
    LEFT_EAR = 7
    RIGHT_EAR = 8
    MOUTH_LEFT = 9
    MOUTH_RIGHT = 10
    LEFT_SHOULDER = 11
    RIGHT_SHOULDER = 12
    LEFT_ELBOW = 13
    RIGHT_ELBOW = 14
    LEFT_WRIST = 15
    RIGHT_WRIST = 16
    LEFT_PINKY = 17
    RIGHT_PINKY = 18
    LEFT_INDEX = 19
    RIGHT_INDEX = 20
    LEFT_THUMB = 21
    RIGHT_THUMB = 22
    LEFT_HIP = 23
    RIGHT_HIP = 24
    LEFT_KNEE = 25
    RIGHT_KNEE = 26
    LEFT_ANKLE = 27
    RIGHT_ANKLE = 28
    LEFT_HEEL = 29
    RIGHT_HEEL = 30
    LEFT_FOOT_INDEX = 31
    RIGHT_FOOT_INDEX = 32


def _mirror_index(idx: int) -> int:
    name = Landmark(idx).name
    if name.startswith("LEFT_"):
        return Landmark["RIGHT_" + name[5:]]
    if name.startswith("RIGHT_"):
        return Landmark["LEFT_" + name[6:]]
    if name == "MOUTH_LEFT":
        return Landmark.MOUTH_RIGHT
    if name == "MOUTH_RIGHT":
        return Landmark.MOUTH_LEFT
    return idx


MIRROR_INDEX = tuple(_mirror_index(i) for i in range(NUM_KEYPOINTS))


@dataclass(frozen=True)
class Keypoint:
    x: float
    y: float
    z: Optional[float] = None
    score: float = 1.0

    def usable(self, min_score: float = MIN_KEYPOINT_SCORE) -> bool:
        return (
            self.score >= min_score
            and np.isfinite(self.x)
            and np.isfinite(self.y)
        )

    def as_array(self, use_z: bool = True) -> np.ndarray:
        if use_z and self.z is not None:
            return np.array([self.x, self.y, self.z], dtype=float)
        return np.array([self.x, self.y], dtype=float)


Pose = Sequence[Keypoint]


def get_keypoint(keypoints: Pose, idx: int, min_score: float = MIN_KEYPOINT_SCORE) -> Optional[Keypoint]:
    """Return the landmark if present and confident enough, else None."""
    if keypoints is None or idx >= len(keypoints):
        return None
    kp = keypoints[idx]
    if kp is None or not kp.usable(min_score):
        return None
    return kp


def all_usable(keypoints: Pose, indices: Iterable[int], min_score: float = MIN_KEYPOINT_SCORE) -> bool:
    return all(get_keypoint(keypoints, i, min_score) is not None for i in indices)


def mean_score(keypoints: Pose) -> float:
    if not keypoints:
        return 0.0
    return float(np.mean([kp.score for kp in keypoints]))


def mirror_keypoints(keypoints: Pose) -> List[Keypoint]:
    """
    Horizontal flip of a pose in normalized image space.
    x -> 1 - x and left/right landmarks trade places, so the result reads
    as the same body seen in a mirror.
    """
    n = len(keypoints)
    out: List[Keypoint] = []
    for i in range(n):
        j = MIRROR_INDEX[i] if i < NUM_KEYPOINTS else i
        src = keypoints[j] if j < n else keypoints[i]
        out.append(replace(src, x=1.0 - src.x))
    return out


# Provider / payload adapters

def keypoints_from_landmarks(landmarks: Iterable[Any]) -> List[Keypoint]:
    """MediaPipe NormalizedLandmark-like objects (x, y, z, visibility)."""
    out: List[Keypoint] = []
    for lm in landmarks:
        vis = getattr(lm, "visibility", None)
        out.append(Keypoint(
            x=float(lm.x),
            y=float(lm.y),
            z=float(lm.z) if getattr(lm, "z", None) is not None else None,
            score=float(vis) if vis is not None else 1.0,
        ))
    return out


def keypoint_from_dict(item: Mapping[str, Any]) -> Keypoint:
    """One keypoint from {"x", "y", "z"?, "score"|"visibility"?}. KeyError/TypeError/ValueError on bad input."""
    if not isinstance(item, Mapping):
        raise TypeError(f"keypoint must be a mapping, got {type(item).__name__}")
    z = item.get("z")
    score = item.get("score", item.get("visibility", 1.0))
    return Keypoint(
        x=float(item["x"]),
        y=float(item["y"]),
        z=float(z) if z is not None else None,
        score=float(score) if score is not None else 0.0,
    )


def keypoints_from_dicts(items: Iterable[Mapping[str, Any]]) -> List[Keypoint]:
    return [keypoint_from_dict(it) for it in items]


def keypoints_to_dicts(keypoints: Pose) -> List[dict]:
    return [{"x": kp.x, "y": kp.y, "z": kp.z, "score": kp.score} for kp in keypoints]
