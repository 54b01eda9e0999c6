from __future__ import annotations
import math
from typing import Dict, List, Optional, Sequence

from formcoach.batch.frames import FramePoseData
from formcoach.counter.keypoints import NUM_KEYPOINTS, Keypoint, Landmark as L

# Knee angles of one squat rep, one frame every 100 ms
SQUAT_REP = [170, 150, 125, 100, 80, 80, 100, 125, 150, 170]

SHIN = 0.25
THIGH = 0.25
TORSO = 0.3
HEAD = 0.1


def _both(points: Dict[int, Keypoint], left: int, right: int, kp: Keypoint):
    points[left] = kp
    points[right] = kp


def build_pose(points: Dict[int, Keypoint], fill: Keypoint = Keypoint(0.5, 0.1)) -> List[Keypoint]:
    return [points.get(i, fill) for i in range(NUM_KEYPOINTS)]


def squat_pose(knee_deg: float, hip_deg: Optional[float] = None, x0: float = 0.5, score: float = 1.0) -> List[Keypoint]:
    """
    Side-on body with both legs overlapping. Shin vertical, thigh bent to
    `knee_deg`, torso bent to `hip_deg` at the hip (defaults to knee_deg).
    """
    hip_deg = knee_deg if hip_deg is None else hip_deg
    th = math.radians(knee_deg)
    ankle = (x0, 0.9)
    knee = (x0, 0.9 - SHIN)
    hip = (knee[0] - THIGH * math.sin(th), knee[1] + THIGH * math.cos(th))
    # direction hip->knee, rotated back by the hip angle gives hip->shoulder
    alpha = math.atan2(knee[1] - hip[1], knee[0] - hip[0])
    beta = alpha - math.radians(hip_deg)
    shoulder = (hip[0] + TORSO * math.cos(beta), hip[1] + TORSO * math.sin(beta))
    ear = (shoulder[0] + HEAD * math.cos(beta), shoulder[1] + HEAD * math.sin(beta))

    def k(p):
        return Keypoint(p[0], p[1], score=score)

    pts: Dict[int, Keypoint] = {L.NOSE: k(ear)}
    _both(pts, L.LEFT_EAR, L.RIGHT_EAR, k(ear))
    _both(pts, L.LEFT_SHOULDER, L.RIGHT_SHOULDER, k(shoulder))
    _both(pts, L.LEFT_ELBOW, L.RIGHT_ELBOW, k((shoulder[0] + 0.05, shoulder[1] + 0.12)))
    _both(pts, L.LEFT_WRIST, L.RIGHT_WRIST, k((shoulder[0] + 0.12, shoulder[1] + 0.12)))
    _both(pts, L.LEFT_HIP, L.RIGHT_HIP, k(hip))
    _both(pts, L.LEFT_KNEE, L.RIGHT_KNEE, k(knee))
    _both(pts, L.LEFT_ANKLE, L.RIGHT_ANKLE, k(ankle))
    _both(pts, L.LEFT_HEEL, L.RIGHT_HEEL, k((x0 - 0.02, 0.92)))
    _both(pts, L.LEFT_FOOT_INDEX, L.RIGHT_FOOT_INDEX, k((x0 + 0.08, 0.92)))
    return build_pose(pts, Keypoint(x0, 0.1, score=score))


def pushup_pose(elbow_deg: float) -> List[Keypoint]:
    """Horizontal body; the forearm swings to set the elbow angle."""
    sh, hp, an = (0.3, 0.5), (0.55, 0.5), (0.85, 0.5)
    elbow = (0.3, 0.65)
    e = math.radians(elbow_deg)
    wrist = (elbow[0] - 0.15 * math.sin(e), elbow[1] - 0.15 * math.cos(e))
    pts: Dict[int, Keypoint] = {L.NOSE: Keypoint(0.2, 0.5)}
    _both(pts, L.LEFT_EAR, L.RIGHT_EAR, Keypoint(0.22, 0.5))
    _both(pts, L.LEFT_SHOULDER, L.RIGHT_SHOULDER, Keypoint(*sh))
    _both(pts, L.LEFT_ELBOW, L.RIGHT_ELBOW, Keypoint(*elbow))
    _both(pts, L.LEFT_WRIST, L.RIGHT_WRIST, Keypoint(*wrist))
    _both(pts, L.LEFT_HIP, L.RIGHT_HIP, Keypoint(*hp))
    _both(pts, L.LEFT_KNEE, L.RIGHT_KNEE, Keypoint(0.7, 0.5))
    _both(pts, L.LEFT_ANKLE, L.RIGHT_ANKLE, Keypoint(*an))
    return build_pose(pts, Keypoint(0.5, 0.5))


def plank_pose(hip_drop: float = 0.0) -> List[Keypoint]:
    """Forearm plank seen from the side; `hip_drop` moves the hips down (sag)."""
    pts: Dict[int, Keypoint] = {L.NOSE: Keypoint(0.2, 0.5)}
    _both(pts, L.LEFT_EAR, L.RIGHT_EAR, Keypoint(0.22, 0.5))
    _both(pts, L.LEFT_SHOULDER, L.RIGHT_SHOULDER, Keypoint(0.3, 0.5))
    _both(pts, L.LEFT_ELBOW, L.RIGHT_ELBOW, Keypoint(0.3, 0.65))
    _both(pts, L.LEFT_WRIST, L.RIGHT_WRIST, Keypoint(0.4, 0.65))
    _both(pts, L.LEFT_HIP, L.RIGHT_HIP, Keypoint(0.55, 0.5 + hip_drop))
    _both(pts, L.LEFT_KNEE, L.RIGHT_KNEE, Keypoint(0.7, 0.5))
    _both(pts, L.LEFT_ANKLE, L.RIGHT_ANKLE, Keypoint(0.85, 0.5))
    return build_pose(pts, Keypoint(0.5, 0.5))


def frames_for(poses: Sequence[Optional[List[Keypoint]]], step_ms: float = 100.0) -> List[FramePoseData]:
    return [
        FramePoseData(frame_index=i, timestamp_ms=i * step_ms, keypoints=p, confidence=1.0 if p else 0.0)
        for i, p in enumerate(poses)
    ]


def detection_squat_poses(n: int = 30, period: int = 15) -> List[List[Keypoint]]:
    """Squats whose knee swings 70-170 deg and hip 45-170 deg."""
    poses = []
    for i in range(n):
        knee = 120.0 + 50.0 * math.cos(2 * math.pi * i / period)
        hip = 45.0 + (knee - 70.0) * 1.25
        poses.append(squat_pose(knee, hip))
    return poses


