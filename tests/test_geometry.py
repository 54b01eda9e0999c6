from __future__ import annotations
import math

import numpy as np
import pytest

from formcoach.counter.keypoints import (
    Keypoint,
    Landmark as L,
    get_keypoint,
    keypoint_from_dict,
    keypoints_from_dicts,
    keypoints_to_dicts,
    mean_score,
    mirror_keypoints,
)
from formcoach.counter.pose_core import (
    angle_3pt,
    angle_with_vertical,
    hip_deviation,
    joint_angle,
    lateral_pelvic_tilt,
    mean_available,
    midpoint,
    point_to_line_distance,
    symmetry_score,
    tilt_stability,
    torso_rotation,
)
from poses import build_pose, squat_pose


def test_right_angle():
    assert angle_3pt((1, 0), (0, 0), (0, 1)) == pytest.approx(90.0)


def test_straight_line_is_180():
    assert angle_3pt((0, 0), (1, 0), (2, 0)) == pytest.approx(180.0)


def test_degenerate_angle_is_none():
    assert angle_3pt((0, 0), (0, 0), (1, 1)) is None


def test_angle_uses_depth_only_when_every_point_has_it():
    a, b = Keypoint(1, 0, z=5.0), Keypoint(0, 0, z=0.0)
    c = Keypoint(0, 1)  # no z: falls back to 2D
    assert angle_3pt(a, b, c) == pytest.approx(90.0)


def test_angle_is_mirror_invariant():
    a, b, c = (0.2, 0.3), (0.4, 0.5), (0.3, 0.9)
    flipped = [(1 - p[0], p[1]) for p in (a, b, c)]
    assert angle_3pt(a, b, c) == pytest.approx(angle_3pt(*flipped))


@pytest.mark.parametrize("knee", [80.0, 100.0, 135.0, 170.0])
def test_synthetic_pose_knee_angle(knee):
    kp = squat_pose(knee)
    assert joint_angle(kp, L.LEFT_HIP, L.LEFT_KNEE, L.LEFT_ANKLE) == pytest.approx(knee, abs=1e-6)


def test_low_score_landmark_is_unusable():
    kp = squat_pose(120, score=0.2)
    assert get_keypoint(kp, L.LEFT_KNEE) is None
    assert joint_angle(kp, L.LEFT_HIP, L.LEFT_KNEE, L.LEFT_ANKLE) is None


def test_nan_landmark_is_unusable():
    kp = list(squat_pose(120))
    kp[L.LEFT_KNEE] = Keypoint(float("nan"), 0.5)
    assert get_keypoint(kp, L.LEFT_KNEE) is None


def test_angle_with_vertical():
    assert angle_with_vertical((0.5, 0.8), (0.5, 0.2)) == pytest.approx(0.0)
    assert angle_with_vertical((0.5, 0.5), (0.8, 0.5)) == pytest.approx(90.0)


def test_point_to_line_distance():
    assert point_to_line_distance((0.5, 1.0), (0, 0), (1, 0)) == pytest.approx(1.0)


def test_hip_deviation_sign():
    sh, an = Keypoint(0.3, 0.5), Keypoint(0.9, 0.5)
    assert hip_deviation(sh, Keypoint(0.6, 0.55), an) > 0
    assert hip_deviation(sh, Keypoint(0.6, 0.45), an) < 0
    assert hip_deviation(sh, Keypoint(0.6, 0.5), an) == pytest.approx(0.0)


def test_symmetry_score():
    assert symmetry_score(90, 90) == 100
    assert symmetry_score(90, 105) == 50
    assert symmetry_score(90, 150) == 0


def test_midpoint_keeps_lowest_score():
    m = midpoint(Keypoint(0, 0, score=0.9), Keypoint(1, 1, score=0.6))
    assert (m.x, m.y, m.score) == (0.5, 0.5, 0.6)


def test_mean_available_skips_missing():
    assert mean_available(None, 10.0, 20.0) == 15.0
    assert mean_available(None, None) is None


def test_mirror_swaps_sides_and_flips_x():
    kp = list(squat_pose(120))
    kp[L.LEFT_WRIST] = Keypoint(0.1, 0.2)
    kp[L.RIGHT_WRIST] = Keypoint(0.3, 0.4)
    m = mirror_keypoints(kp)
    assert m[L.RIGHT_WRIST].x == pytest.approx(0.9)
    assert m[L.RIGHT_WRIST].y == 0.2
    assert m[L.LEFT_WRIST].x == pytest.approx(0.7)
    back = mirror_keypoints(m)[L.LEFT_WRIST]
    assert (back.x, back.y) == pytest.approx((0.1, 0.2))


def test_dict_adapters_accept_visibility():
    kps = keypoints_from_dicts([{"x": 0.1, "y": 0.2, "visibility": 0.4}, {"x": 0.3, "y": 0.4, "z": -0.1}])
    assert kps[0].score == 0.4 and kps[0].z is None
    assert kps[1].score == 1.0 and kps[1].z == -0.1
    assert keypoints_to_dicts(kps)[1] == {"x": 0.3, "y": 0.4, "z": -0.1, "score": 1.0}
    assert mean_score(kps) == pytest.approx(0.7)


def test_keypoint_as_array():
    assert np.allclose(Keypoint(1, 2, 3).as_array(), [1, 2, 3])
    assert Keypoint(1, 2, 3).as_array(use_z=False).shape == (2,)
    assert not math.isnan(Keypoint(1, 2).as_array()[0])


def test_bad_keypoint_dicts_raise():
    with pytest.raises(KeyError):
        keypoint_from_dict({"y": 0.2})
    with pytest.raises(TypeError):
        keypoint_from_dict([0.1, 0.2])
    with pytest.raises(ValueError):
        keypoint_from_dict({"x": "left", "y": 0.2})


# pelvis and trunk

def frontal(lh, rh, ls=(0.4, 0.3), rs=(0.6, 0.3)):
    pts = {
        L.LEFT_HIP: Keypoint(*lh), L.RIGHT_HIP: Keypoint(*rh),
        L.LEFT_SHOULDER: Keypoint(*ls), L.RIGHT_SHOULDER: Keypoint(*rs),
    }
    return build_pose(pts)


def test_pelvic_tilt_sign_follows_the_higher_hip():
    tilt = lateral_pelvic_tilt(frontal((0.40, 0.40), (0.50, 0.37)))
    assert tilt == pytest.approx(math.degrees(math.atan(0.3)))
    assert lateral_pelvic_tilt(frontal((0.40, 0.37), (0.50, 0.40))) == pytest.approx(-tilt)
    assert lateral_pelvic_tilt(frontal((0.40, 0.40), (0.50, 0.40))) == pytest.approx(0.0)


def test_trunk_metrics_need_a_frontal_view():
    side_on = squat_pose(170)
    assert lateral_pelvic_tilt(side_on) is None
    assert torso_rotation(side_on) is None


def test_torso_rotation_uses_depth():
    kp = frontal((0.42, 0.6, 0.0), (0.62, 0.6, 0.0), ls=(0.4, 0.3, 0.0), rs=(0.6, 0.3, 0.1))
    assert torso_rotation(kp) == pytest.approx(math.degrees(math.atan(0.5)))
    flat = frontal((0.42, 0.6), (0.62, 0.6))
    assert torso_rotation(flat) == pytest.approx(0.0, abs=1e-3)


def test_tilt_stability():
    assert tilt_stability([0.0, 20.0, 0.0]) == 100.0
    assert tilt_stability([0.0, 10.0] * 3) == pytest.approx(75.0)
    assert tilt_stability([0.0, 40.0] * 3) == 0.0
