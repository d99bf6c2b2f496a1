from __future__ import annotations
"""
Locate the learned object in the query image from its filtered matches.

A RANSAC homography (planar object) or fundamental matrix (general object) is
fitted between train and query coordinates; the bounding box and centre of
gravity of the inlier query points locate the object.
"""

from dataclasses import dataclass
from typing import Optional, Tuple

import cv2
import numpy as np

from common.logging_setup import get_logger


log = get_logger("detection.localize")

MIN_HOMOGRAPHY_POINTS = 4
MIN_FUNDAMENTAL_POINTS = 8


@dataclass
class Localization:
    model: Optional[np.ndarray]          # 3x3 H (train -> query) or F
    inlier_mask: np.ndarray              # (N,) bool
    bounding_box: Optional[Tuple[float, float, float, float]]   # x, y, w, h
    center: Optional[Tuple[float, float]]
    rmse_px: float

    @property
    def inliers(self) -> int:
        return int(self.inlier_mask.sum())

    @property
    def found(self) -> bool:
        return self.bounding_box is not None


def _empty(n: int) -> Localization:
    return Localization(None, np.zeros((n,), dtype=bool), None, None, float("inf"))


def locate(
    train_pts: np.ndarray,
    query_pts: np.ndarray,
    planar: bool = True,
    ransac_px: float = 3.0,
    max_iters: int = 2000,
    confidence: float = 0.999,
    min_inliers: int = 4,
) -> Localization:
    """
    Fit the train -> query model with RANSAC and summarise the inlier query points.

    Returns a Localization with found == False when there are too few matches,
    the model cannot be estimated or fewer than min_inliers support it.
    """
    p1 = np.asarray(train_pts, dtype=np.float32).reshape(-1, 2)
    p2 = np.asarray(query_pts, dtype=np.float32).reshape(-1, 2)
    n = p1.shape[0]
    need = MIN_HOMOGRAPHY_POINTS if planar else MIN_FUNDAMENTAL_POINTS
    if n < need or p2.shape[0] != n:
        return _empty(n)

    if planar:
        M, mask = cv2.findHomography(
            p1.reshape(-1, 1, 2), p2.reshape(-1, 1, 2), cv2.RANSAC,
            ransacReprojThreshold=float(ransac_px),
            maxIters=int(max_iters),
            confidence=float(confidence),
        )
    else:
        M, mask = cv2.findFundamentalMat(
            p1, p2, cv2.FM_RANSAC,
            ransacReprojThreshold=float(ransac_px),
            confidence=float(confidence),
            maxIters=int(max_iters),
        )
    if M is None or mask is None:
        return _empty(n)
    if M.shape != (3, 3):
        # findFundamentalMat may stack several solutions.
        M = M[:3, :3]

    inl = mask.ravel().astype(bool)
    if int(inl.sum()) < max(1, int(min_inliers)):
        return Localization(M, inl, None, None, float("inf"))

    q = p2[inl].astype(np.float64)
    x0, y0 = q.min(axis=0)
    x1, y1 = q.max(axis=0)
    cog = q.mean(axis=0)

    if planar:
        proj = cv2.perspectiveTransform(p1[inl].reshape(-1, 1, 2), M).reshape(-1, 2)
        err = np.linalg.norm(proj - p2[inl], axis=1)
    else:
        # Distance to the epipolar line in the query image.
        lines = cv2.computeCorrespondEpilines(p1[inl].reshape(-1, 1, 2), 1, M).reshape(-1, 3)
        err = np.abs(np.sum(lines[:, :2] * p2[inl], axis=1) + lines[:, 2])
    rmse = float(np.sqrt(np.mean(err ** 2))) if err.size else float("inf")

    loc = Localization(
        model=M,
        inlier_mask=inl,
        bounding_box=(float(x0), float(y0), float(x1 - x0), float(y1 - y0)),
        center=(float(cog[0]), float(cog[1])),
        rmse_px=rmse,
    )
    log.debug(
        "Object located",
        extra={"extra": {"planar": planar, "matches": n, "inliers": loc.inliers, "rmse_px": round(rmse, 3)}},
    )
    return loc
