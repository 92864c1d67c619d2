"""Conversions between rigid transforms, rotation matrices, quaternions and 6-DoF poses.

A pose is ``(tx, ty, tz, qx, qy, qz)``: the translation followed by the
vector part of a unit quaternion. The scalar part is recovered from the unit
norm, with its sign carried separately.
"""

from __future__ import annotations

import math
from typing import Any, Tuple

import numpy as np

Quaternion = Tuple[float, float, float, float]


def quaternion_to_matrix(qw: float, qx: float, qy: float, qz: float) -> np.ndarray:
    """Return the 3x3 rotation matrix of a quaternion given as ``w, x, y, z``.

    The quaternion is used as given, without normalisation.
    """
    tx, ty, tz = 2.0 * qx, 2.0 * qy, 2.0 * qz
    twx, twy, twz = tx * qw, ty * qw, tz * qw
    txx, txy, txz = tx * qx, ty * qx, tz * qx
    tyy, tyz, tzz = ty * qy, tz * qy, tz * qz
    return np.array(
        [
            [1.0 - (tyy + tzz), txy - twz, txz + twy],
            [txy + twz, 1.0 - (txx + tzz), tyz - twx],
            [txz - twy, tyz + twx, 1.0 - (txx + tyy)],
        ]
    )


def matrix_to_quaternion(rotation: Any) -> Quaternion:
    """Return ``(w, x, y, z)`` of the quaternion of a 3x3 rotation matrix."""
    m = np.asarray(rotation, dtype=float)
    if m.shape != (3, 3):
        raise ValueError(f"rotation must be a 3x3 matrix, got shape {m.shape}")
    trace = m[0, 0] + m[1, 1] + m[2, 2]
    if trace > 0.0:
        t = math.sqrt(trace + 1.0)
        w = 0.5 * t
        t = 0.5 / t
        return (
            w,
            (m[2, 1] - m[1, 2]) * t,
            (m[0, 2] - m[2, 0]) * t,
            (m[1, 0] - m[0, 1]) * t,
        )

    i = 0
    if m[1, 1] > m[0, 0]:
        i = 1
    if m[2, 2] > m[i, i]:
        i = 2
    j = (i + 1) % 3
    k = (j + 1) % 3
    t = math.sqrt(m[i, i] - m[j, j] - m[k, k] + 1.0)
    vec = [0.0, 0.0, 0.0]
    vec[i] = 0.5 * t
    t = 0.5 / t
    w = (m[k, j] - m[j, k]) * t
    vec[j] = (m[j, i] + m[i, j]) * t
    vec[k] = (m[k, i] + m[i, k]) * t
    return (w, vec[0], vec[1], vec[2])


def transform_to_pose(transform: Any) -> Tuple[np.ndarray, float]:
    """Split a 4x4 rigid transform into a 6-vector pose and the sign of ``qw``.

    A zero scalar part counts as positive.
    """
    t = np.asarray(transform, dtype=float)
    if t.shape != (4, 4):
        raise ValueError(f"transform must be a 4x4 matrix, got shape {t.shape}")
    qw, qx, qy, qz = matrix_to_quaternion(t[:3, :3])
    pose = np.array([t[0, 3], t[1, 3], t[2, 3], qx, qy, qz])
    qw_sign = math.copysign(1.0, qw) if qw != 0.0 else 1.0
    return pose, qw_sign


def pose_to_transform(pose: Any, qw_sign: float = 1.0) -> np.ndarray:
    """Build a 4x4 rigid transform from a 6-vector pose and the sign of ``qw``.

    If the quaternion vector part has a norm above one, the rotation is NaN.
    """
    p = np.asarray(pose, dtype=float).reshape(-1)
    if p.shape != (6,):
        raise ValueError(f"pose must have 6 elements, got {p.size}")
    qx, qy, qz = float(p[3]), float(p[4]), float(p[5])
    remainder = 1.0 - (qx * qx + qy * qy + qz * qz)
    qw = qw_sign * math.sqrt(remainder) if remainder >= 0.0 else math.nan
    transform = np.eye(4)
    transform[:3, :3] = quaternion_to_matrix(qw, qx, qy, qz)
    transform[:3, 3] = p[:3]
    return transform