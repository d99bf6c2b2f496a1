from __future__ import annotations

from typing import Tuple
import math

import cv2
import numpy as np


# -------------------------
# Homogeneous transforms
# -------------------------
def from_rvec_tvec(rvec, tvec) -> np.ndarray:
    """4x4 transform from an OpenCV Rodrigues vector and translation."""
    R, _ = cv2.Rodrigues(np.asarray(rvec, dtype=np.float64).reshape(3, 1))
    T = np.eye(4, dtype=np.float64)
    T[:3, :3] = R
    T[:3, 3] = np.asarray(tvec, dtype=np.float64).reshape(3)
    return T


def to_rvec_tvec(T: np.ndarray) -> Tuple[np.ndarray, np.ndarray]:
    rvec, _ = cv2.Rodrigues(np.asarray(T, dtype=np.float64)[:3, :3])
    return rvec.reshape(3, 1), np.asarray(T, dtype=np.float64)[:3, 3].reshape(3, 1).copy()


def inverse(T: np.ndarray) -> np.ndarray:
    R = T[:3, :3]
    t = T[:3, 3]
    Ti = np.eye(4, dtype=np.float64)
    Ti[:3, :3] = R.T
    Ti[:3, 3] = -R.T @ t
    return Ti


def transform(T: np.ndarray, points: np.ndarray) -> np.ndarray:
    """Apply a 4x4 transform to (N,3) points."""
    P = np.asarray(points, dtype=np.float64).reshape(-1, 3)
    return P @ T[:3, :3].T + T[:3, 3]


def skew(v: np.ndarray) -> np.ndarray:
    x, y, z = float(v[0]), float(v[1]), float(v[2])
    return np.array([[0.0, -z, y], [z, 0.0, -x], [-y, x, 0.0]], dtype=np.float64)


def exp_map(v: np.ndarray) -> np.ndarray:
    """
    Displacement produced by a constant twist v = (vx, vy, vz, wx, wy, wz) applied
    for unit time: returns the 4x4 transform of the moved frame in the original one.
    """
    v = np.asarray(v, dtype=np.float64).reshape(6)
    u = v[3:]
    theta = float(np.linalg.norm(u))
    R, _ = cv2.Rodrigues(u.reshape(3, 1))
    if theta < 1e-8:
        sinc, mcosc, msinc = 1.0, 0.5, 1.0 / 6.0
    else:
        sinc = math.sin(theta) / theta
        mcosc = (1.0 - math.cos(theta)) / (theta * theta)
        msinc = (1.0 - sinc) / (theta * theta)
    V = sinc * np.eye(3) + mcosc * skew(u) + msinc * np.outer(u, u)
    T = np.eye(4, dtype=np.float64)
    T[:3, :3] = R
    T[:3, 3] = V @ v[:3]
    return T


def pose_distance(A: np.ndarray, B: np.ndarray) -> Tuple[float, float]:
    """(translation distance, rotation angle in radians) between two transforms."""
    dt = float(np.linalg.norm(A[:3, 3] - B[:3, 3]))
    dR = A[:3, :3].T @ B[:3, :3]
    c = (np.trace(dR) - 1.0) / 2.0
    return dt, float(math.acos(max(-1.0, min(1.0, c))))
