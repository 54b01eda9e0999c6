from __future__ import annotations
import math
from typing import Optional, Sequence, Union

import numpy as np

from formcoach.counter.keypoints import Keypoint, Landmark, Pose, get_keypoint, MIN_KEYPOINT_SCORE

# Utility math

PointLike = Union[Keypoint, Sequence[float], np.ndarray]

_EPS = 1e-9


def _vecs(*pts: PointLike) -> list:
    """Common-dimension arrays: 3D only when every point carries depth."""
    use_z = all(
        (p.z is not None) if isinstance(p, Keypoint) else len(p) >= 3
        for p in pts
    )
    out = []
    for p in pts:
        if isinstance(p, Keypoint):
            out.append(p.as_array(use_z=use_z))
        else:
            arr = np.asarray(p, dtype=float)
            out.append(arr[:3] if use_z else arr[:2])
    return out


def angle_3pt(a: PointLike, b: PointLike, c: PointLike) -> Optional[float]:
    """Return angle ABC in degrees with B as vertex, or None when undefined."""
    pa, pb, pc = _vecs(a, b, c)
    ba = pa - pb
    bc = pc - pb
    na = float(np.linalg.norm(ba))
    nc = float(np.linalg.norm(bc))
    if na < _EPS or nc < _EPS or not (np.isfinite(na) and np.isfinite(nc)):
        return None
    cos = float(np.clip(np.dot(ba, bc) / (na * nc), -1.0, 1.0))
    return math.degrees(math.acos(cos))


def joint_angle(keypoints: Pose, a: int, b: int, c: int, min_score: float = MIN_KEYPOINT_SCORE) -> Optional[float]:
    ka = get_keypoint(keypoints, a, min_score)
    kb = get_keypoint(keypoints, b, min_score)
    kc = get_keypoint(keypoints, c, min_score)
    if ka is None or kb is None or kc is None:
        return None
    return angle_3pt(ka, kb, kc)


def distance(p1: PointLike, p2: PointLike) -> float:
    a, b = _vecs(p1, p2)
    return float(np.linalg.norm(b - a))


def distance_2d(p1: PointLike, p2: PointLike) -> float:
    a, b = _vecs(p1, p2)
    return float(np.linalg.norm(b[:2] - a[:2]))


def midpoint(p1: Keypoint, p2: Keypoint) -> Keypoint:
    z = None
    if p1.z is not None and p2.z is not None:
        z = (p1.z + p2.z) / 2.0
    return Keypoint(
        x=(p1.x + p2.x) / 2.0,
        y=(p1.y + p2.y) / 2.0,
        z=z,
        score=min(p1.score, p2.score),
    )


def angle_with_vertical(p1: PointLike, p2: PointLike) -> Optional[float]:
    """
    Angle in degrees (0-180) between the vector p1->p2 and screen-up.
    Image y grows downward, so up is -y. 0 means p2 sits straight above p1.
    """
    a, b = _vecs(p1, p2)
    v = b - a
    n = float(np.linalg.norm(v))
    if n < _EPS:
        return None
    up = np.zeros_like(v)
    up[1] = -1.0
    cos = float(np.clip(np.dot(v, up) / n, -1.0, 1.0))
    return math.degrees(math.acos(cos))


def angle_between(v1: np.ndarray, v2: np.ndarray) -> Optional[float]:
    n1 = float(np.linalg.norm(v1))
    n2 = float(np.linalg.norm(v2))
    if n1 < _EPS or n2 < _EPS:
        return None
    cos = float(np.clip(np.dot(v1, v2) / (n1 * n2), -1.0, 1.0))
    return math.degrees(math.acos(cos))


def point_to_line_distance(point: PointLike, start: PointLike, end: PointLike) -> float:
    """Perpendicular distance from point to the infinite line start-end."""
    p, s, e = _vecs(point, start, end)
    line = e - s
    n = float(np.linalg.norm(line))
    if n < _EPS:
        return float(np.linalg.norm(p - s))
    if line.shape[0] == 2:
        # 2D cross product magnitude
        cross = abs(line[0] * (p - s)[1] - line[1] * (p - s)[0])
    else:
        cross = float(np.linalg.norm(np.cross(line, p - s)))
    return float(cross) / n


def symmetry_score(left: float, right: float) -> int:
    """100 for identical angles, falling linearly to 0 at a 30 degree gap."""
    diff = abs(left - right)
    return int(round(max(0.0, 100.0 - diff / 30.0 * 100.0)))


def mean_available(*values: Optional[float]) -> Optional[float]:
    vals = [v for v in values if v is not None]
    if not vals:
        return None
    return float(sum(vals) / len(vals))


def mid_or_one(a: Optional[Keypoint], b: Optional[Keypoint]) -> Optional[Keypoint]:
    """Midpoint of a bilateral pair, or whichever side is visible."""
    if a is not None and b is not None:
        return midpoint(a, b)
    return a if a is not None else b


def pair_center(keypoints: Pose, left: int, right: int, min_score: float = MIN_KEYPOINT_SCORE) -> Optional[Keypoint]:
    return mid_or_one(get_keypoint(keypoints, left, min_score), get_keypoint(keypoints, right, min_score))


def neck_angle(keypoints: Pose, min_score: float = MIN_KEYPOINT_SCORE) -> Optional[float]:
    """Head forward tilt: angle between the hip->shoulder line and the shoulder->ear line."""
    sh = pair_center(keypoints, Landmark.LEFT_SHOULDER, Landmark.RIGHT_SHOULDER, min_score)
    hp = pair_center(keypoints, Landmark.LEFT_HIP, Landmark.RIGHT_HIP, min_score)
    ear = pair_center(keypoints, Landmark.LEFT_EAR, Landmark.RIGHT_EAR, min_score)
    if sh is None or hp is None or ear is None:
        return None
    torso = np.array([sh.x - hp.x, sh.y - hp.y])
    head = np.array([ear.x - sh.x, ear.y - sh.y])
    return angle_between(torso, head)


def hip_deviation(shoulder: Keypoint, hip: Keypoint, ankle: Keypoint) -> Optional[float]:
    """
    Signed hip offset from the shoulder-ankle line, as an angle in degrees.
    Positive means the hips sag below the line, negative means they pike above it.
    """
    span = distance_2d(shoulder, ankle)
    if span < _EPS:
        return None
    dev = point_to_line_distance(
        np.array([hip.x, hip.y]), np.array([shoulder.x, shoulder.y]), np.array([ankle.x, ankle.y])
    )
    deg = math.degrees(math.atan(dev / (span / 2.0)))
    expected_y = (shoulder.y + ankle.y) / 2.0
    return deg if hip.y > expected_y else -deg


def lateral_pelvic_tilt(keypoints: Pose, min_score: float = MIN_KEYPOINT_SCORE, min_width: float = 0.03) -> Optional[float]:
    """
    Signed angle of the hip line from horizontal in degrees; positive when
    the right hip sits higher. None when the hips overlap (side-on camera).
    """
    lh = get_keypoint(keypoints, Landmark.LEFT_HIP, min_score)
    rh = get_keypoint(keypoints, Landmark.RIGHT_HIP, min_score)
    if lh is None or rh is None:
        return None
    dx = abs(rh.x - lh.x)
    if dx < min_width:
        return None
    return math.degrees(math.atan2(lh.y - rh.y, dx))


def torso_rotation(keypoints: Pose, min_score: float = MIN_KEYPOINT_SCORE, min_width: float = 0.03) -> Optional[float]:
    """
    Twist of the shoulder line against the hip line, in degrees. Measured in
    the transverse (x-z) plane when all four points carry depth, otherwise as
    the frontal-plane tilt between the two lines.
    """
    ls = get_keypoint(keypoints, Landmark.LEFT_SHOULDER, min_score)
    rs = get_keypoint(keypoints, Landmark.RIGHT_SHOULDER, min_score)
    lh = get_keypoint(keypoints, Landmark.LEFT_HIP, min_score)
    rh = get_keypoint(keypoints, Landmark.RIGHT_HIP, min_score)
    if None in (ls, rs, lh, rh):
        return None
    if all(p.z is not None for p in (ls, rs, lh, rh)):
        sv = np.array([rs.x - ls.x, rs.z - ls.z])
        hv = np.array([rh.x - lh.x, rh.z - lh.z])
    else:
        sv = np.array([rs.x - ls.x, rs.y - ls.y])
        hv = np.array([rh.x - lh.x, rh.y - lh.y])
    if float(np.linalg.norm(sv)) < min_width or float(np.linalg.norm(hv)) < min_width:
        return None
    return angle_between(sv, hv)


def tilt_stability(history: Sequence[float], min_samples: int = 5) -> float:
    """0-100; 100 minus the variance of recent tilt angles. Short histories count as stable."""
    if len(history) < min_samples:
        return 100.0
    return float(max(0.0, 100.0 - min(100.0, float(np.var(history)))))
