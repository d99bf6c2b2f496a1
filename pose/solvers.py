from __future__ import annotations
"""
Thin wrappers over OpenCV's PnP solvers.

- minimal: AP3P on exactly four correspondences (fourth one disambiguates)
- direct:  EPnP on all correspondences
- refine:  Levenberg-Marquardt (SOLVEPNP_ITERATIVE) from an initial guess

Every wrapper returns a 4x4 cMo or None when the solver fails or produces a
non-finite pose; a degenerate configuration is an ordinary failed hypothesis.
"""

from typing import Optional

import cv2
import numpy as np

from common.logging_setup import get_logger
from pose import se3
from pose.camera import CameraModel


log = get_logger("pose.solvers")


def _finish(ok: bool, rvec, tvec) -> Optional[np.ndarray]:
    if not ok or rvec is None or tvec is None:
        return None
    if not (np.all(np.isfinite(rvec)) and np.all(np.isfinite(tvec))):
        return None
    return se3.from_rvec_tvec(rvec, tvec)


def solve_minimal(image_points: np.ndarray, object_points: np.ndarray, camera: CameraModel) -> Optional[np.ndarray]:
    obj = np.ascontiguousarray(object_points[:4], dtype=np.float64)
    img = np.ascontiguousarray(image_points[:4], dtype=np.float64)
    try:
        ok, rvec, tvec = cv2.solvePnP(obj, img, camera.K, camera.dist, flags=cv2.SOLVEPNP_AP3P)
    except cv2.error as e:
        log.debug("Minimal PnP failed", extra={"extra": {"err": str(e).strip()[:120]}})
        return None
    return _finish(ok, rvec, tvec)


def solve_direct(image_points: np.ndarray, object_points: np.ndarray, camera: CameraModel) -> Optional[np.ndarray]:
    obj = np.ascontiguousarray(object_points, dtype=np.float64)
    img = np.ascontiguousarray(image_points, dtype=np.float64)
    try:
        ok, rvec, tvec = cv2.solvePnP(obj, img, camera.K, camera.dist, flags=cv2.SOLVEPNP_EPNP)
    except cv2.error as e:
        log.debug("Direct PnP failed", extra={"extra": {"err": str(e).strip()[:120]}})
        return None
    return _finish(ok, rvec, tvec)


def solve_refine(
    image_points: np.ndarray,
    object_points: np.ndarray,
    camera: CameraModel,
    guess: np.ndarray,
) -> Optional[np.ndarray]:
    obj = np.ascontiguousarray(object_points, dtype=np.float64)
    img = np.ascontiguousarray(image_points, dtype=np.float64)
    rvec0, tvec0 = se3.to_rvec_tvec(guess)
    try:
        ok, rvec, tvec = cv2.solvePnP(
            obj, img, camera.K, camera.dist, rvec0, tvec0,
            useExtrinsicGuess=True, flags=cv2.SOLVEPNP_ITERATIVE,
        )
    except cv2.error as e:
        log.debug("PnP refinement failed", extra={"extra": {"err": str(e).strip()[:120]}})
        return None
    return _finish(ok, rvec, tvec)
