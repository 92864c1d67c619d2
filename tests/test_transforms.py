import math

import numpy as np
import pytest

from surfelmaps.transforms import (
    matrix_to_quaternion,
    pose_to_transform,
    quaternion_to_matrix,
    transform_to_pose,
)


def _rot_z(angle):
    c, s = math.cos(angle), math.sin(angle)
    return np.array([[c, -s, 0.0], [s, c, 0.0], [0.0, 0.0, 1.0]])


def _transform(rotation, translation):
    t = np.eye(4)
    t[:3, :3] = rotation
    t[:3, 3] = translation
    return t


def test_identity_quaternion_gives_identity_matrix():
    assert np.allclose(quaternion_to_matrix(1.0, 0.0, 0.0, 0.0), np.eye(3))


def test_quarter_turn_about_z():
    h = math.sqrt(0.5)
    expected = np.array([[0.0, -1.0, 0.0], [1.0, 0.0, 0.0], [0.0, 0.0, 1.0]])
    assert np.allclose(quaternion_to_matrix(h, 0.0, 0.0, h), expected)


def test_matrix_to_quaternion_identity():
    assert np.allclose(matrix_to_quaternion(np.eye(3)), (1.0, 0.0, 0.0, 0.0))


def test_half_turn_about_x_has_zero_scalar_part():
    q = matrix_to_quaternion(np.diag([1.0, -1.0, -1.0]))
    assert np.allclose(q, (0.0, 1.0, 0.0, 0.0))


@pytest.mark.parametrize("angle", [0.3, 1.2, 2.5, -0.7, 3.0])
def test_matrix_quaternion_round_trip(angle):
    axis = np.array([1.0, -2.0, 0.5])
    axis /= np.linalg.norm(axis)
    q = (math.cos(angle / 2), *(math.sin(angle / 2) * axis))
    rotation = quaternion_to_matrix(*q)
    back = matrix_to_quaternion(rotation)
    assert np.allclose(quaternion_to_matrix(*back), rotation)
    assert math.isclose(float(np.linalg.norm(back)), 1.0, rel_tol=1e-9)


def test_rotation_matrix_is_orthonormal():
    q = np.array([0.4, -0.3, 0.5, 0.7])
    q /= np.linalg.norm(q)
    r = quaternion_to_matrix(*q)
    assert np.allclose(r @ r.T, np.eye(3))
    assert math.isclose(float(np.linalg.det(r)), 1.0, rel_tol=1e-9)


def test_matrix_to_quaternion_rejects_bad_shape():
    with pytest.raises(ValueError):
        matrix_to_quaternion(np.eye(4))


def test_transform_to_pose_identity():
    pose, sign = transform_to_pose(np.eye(4))
    assert np.allclose(pose, np.zeros(6))
    assert sign == 1.0


def test_transform_to_pose_translation_is_copied():
    pose, _ = transform_to_pose(_transform(_rot_z(0.4), [1.5, -2.0, 0.25]))
    assert np.allclose(pose[:3], [1.5, -2.0, 0.25])


def test_zero_scalar_part_counts_as_positive():
    _, sign = transform_to_pose(_transform(np.diag([1.0, -1.0, -1.0]), [0, 0, 0]))
    assert sign == 1.0


def test_negative_scalar_part_sign():
    _, sign = transform_to_pose(_transform(_rot_z(math.radians(200)), [0, 0, 0]))
    assert sign == -1.0


@pytest.mark.parametrize("angle", [0.0, 0.8, 2.0, math.radians(200), -1.1])
def test_pose_round_trip(angle):
    t = _transform(_rot_z(angle), [0.5, 1.0, -3.0])
    pose, sign = transform_to_pose(t)
    assert np.allclose(pose_to_transform(pose, sign), t)


def test_pose_to_transform_default_sign():
    pose = np.array([1.0, 2.0, 3.0, 0.0, 0.0, 0.0])
    t = pose_to_transform(pose)
    assert np.allclose(t[:3, :3], np.eye(3))
    assert np.allclose(t[:3, 3], [1.0, 2.0, 3.0])
    assert np.allclose(t[3], [0.0, 0.0, 0.0, 1.0])


def test_pose_outside_unit_ball_gives_nan_rotation():
    t = pose_to_transform([0.0, 0.0, 0.0, 0.9, 0.9, 0.0], 1.0)
    assert np.isnan(t[:3, :3]).any()


def test_pose_to_transform_rejects_bad_length():
    with pytest.raises(ValueError):
        pose_to_transform([0.0, 0.0, 0.0])


def test_transform_to_pose_rejects_bad_shape():
    with pytest.raises(ValueError):
        transform_to_pose(np.eye(3))