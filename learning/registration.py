from __future__ import annotations
"""
3-D registration of training keypoints.

Training views come with a known pose cMo and a set of planar faces (polygons
given by their 3-D vertices in the object frame). A keypoint that falls inside
the projection of a face gets the object-frame coordinate of the intersection
between its line of sight and the face plane.
"""

from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np

from common.errors import InvalidArgument
from common.logging_setup import get_logger
from common.types import Keypoint2D
from pose import se3
from pose.camera import CameraModel


log = get_logger("learning.registration")


def _as_polygon(plane_points) -> np.ndarray:
    P = np.asarray(plane_points, dtype=np.float64)
    if P.ndim != 2 or P.shape[1] != 3 or P.shape[0] < 3:
        raise InvalidArgument(f"a polygon needs at least 3 vertices of shape (N,3), got {P.shape}")
    return P


def _pixel(point) -> Tuple[float, float]:
    if isinstance(point, Keypoint2D):
        return point.x, point.y
    if isinstance(point, cv2.KeyPoint):
        return float(point.pt[0]), float(point.pt[1])
    x, y = point
    return float(x), float(y)


def compute_3d(point, plane_points, camera: CameraModel, cMo: np.ndarray) -> Optional[np.ndarray]:
    """
    Back-project a pixel onto the plane through the polygon vertices.

    Args:
        point: (x, y) pixel, Keypoint2D or cv2.KeyPoint.
        plane_points: (N>=3, 3) polygon vertices in the object frame.
        camera: intrinsics of the training view.
        cMo: pose of the object in the training view.

    Returns:
        The (3,) object-frame coordinate, or None when the line of sight is
        parallel to the plane or meets it behind the camera.
    """
    P = se3.transform(cMo, _as_polygon(plane_points))
    n = np.cross(P[1] - P[0], P[2] - P[0])
    if np.linalg.norm(n) < 1e-12:
        raise InvalidArgument("polygon vertices are collinear")
    xy = camera.normalize(np.array([_pixel(point)], dtype=np.float64))[0]
    ray = np.array([xy[0], xy[1], 1.0])
    denom = float(n @ ray)
    if abs(denom) < 1e-12:
        return None
    t = float(n @ P[0]) / denom
    if t <= 0.0:
        return None
    return se3.transform(se3.inverse(cMo), (t * ray)[None, :])[0]


def compute_3d_in_polygons(
    cMo: np.ndarray,
    camera: CameraModel,
    keypoints: Sequence,
    polygons: Sequence,
) -> Tuple[List, np.ndarray, np.ndarray]:
    """
    Keep the keypoints lying inside a projected polygon and compute their 3-D coordinates.

    Returns:
        (kept keypoints, points3d (M,3), kept indices (M,)) in input order.
        A keypoint inside several faces takes the first one that yields a point.
    """
    faces = [_as_polygon(p) for p in polygons]
    contours = [camera.project(f, cMo).astype(np.float32).reshape(-1, 1, 2) for f in faces]

    kept, pts, idx = [], [], []
    for i, kp in enumerate(keypoints):
        x, y = _pixel(kp)
        for face, contour in zip(faces, contours):
            if cv2.pointPolygonTest(contour, (x, y), False) < 0:
                continue
            X = compute_3d((x, y), face, camera, cMo)
            if X is None:
                continue
            kept.append(kp)
            pts.append(X)
            idx.append(i)
            break

    log.debug(
        "Registered keypoints on polygons",
        extra={"extra": {"keypoints": len(keypoints), "polygons": len(faces), "kept": len(kept)}},
    )
    points3d = np.asarray(pts, dtype=np.float64).reshape(-1, 3)
    return kept, points3d, np.asarray(idx, dtype=np.int64)
