from __future__ import annotations
"""
RobustIterative: virtual visual servoing with an M-estimator.

The pose is initialised from a direct (EPnP) estimate over every
correspondence. When that estimate does not reach the inlier target, minimal
samples are drawn from the seeded generator (same iteration budget as
consensusPnP) to find a better starting point.

Refinement minimises the normalized image-plane error of all correspondences
with iteratively reweighted Gauss-Newton:

    v   = -(W L)^+ W e           restricted to the enabled DOF columns
    cMo = exp(v)^-1 cMo

L is the 2x6 interaction matrix of an image point, W holds Tukey weights
(scale from the median absolute deviation of the point residuals).

An inlier is a correspondence whose object point, once placed in the camera
frame, lies within params.ransac_threshold meters of the line of sight
through its observation.
"""

from typing import Optional, Tuple

import numpy as np

from common.errors import PoseEstimationFailed
from common.logging_setup import get_logger
from common.types import PoseResult
from pose import se3
from pose.camera import CameraModel
from pose.params import (
    MIN_CORRESPONDENCES,
    AcceptPredicate,
    PoseParams,
    PoseStrategy,
    dof_columns,
    reprojection_errors,
    split,
)
from pose.solvers import solve_direct, solve_minimal


log = get_logger("pose.vvs")

TUKEY_C = 4.6851
MAD_TO_SIGMA = 1.4826
# Floor for the robust scale, in normalized image units.
MIN_SCALE = 1e-6


# -----------------------------
# Residuals and weights
# -----------------------------

def line_of_sight_distances(cMo: np.ndarray, object_points: np.ndarray, normalized: np.ndarray) -> np.ndarray:
    """
    Metric distance between each camera-frame object point and the ray through
    its normalized observation. Points behind the camera get +inf.
    """
    Xc = se3.transform(cMo, object_points)
    rays = np.column_stack([normalized, np.ones(normalized.shape[0])])
    rays /= np.linalg.norm(rays, axis=1, keepdims=True)
    along = np.sum(Xc * rays, axis=1)
    perp = Xc - along[:, None] * rays
    d = np.linalg.norm(perp, axis=1)
    d[along <= 0.0] = np.inf
    return d


def tukey_weights(r: np.ndarray) -> np.ndarray:
    """Tukey biweight of each residual's deviation from the median, scaled by the MAD."""
    med = float(np.median(r))
    sigma = max(MAD_TO_SIGMA * float(np.median(np.abs(r - med))), MIN_SCALE)
    u = (r - med) / (TUKEY_C * sigma)
    w = (1.0 - u * u) ** 2
    w[np.abs(u) >= 1.0] = 0.0
    return w


def interaction_matrix(x: np.ndarray, y: np.ndarray, Z: np.ndarray) -> np.ndarray:
    """(N, 2, 6) point-feature interaction matrices."""
    n = x.shape[0]
    L = np.zeros((n, 2, 6), dtype=np.float64)
    iz = 1.0 / Z
    L[:, 0, 0] = -iz
    L[:, 0, 2] = x * iz
    L[:, 0, 3] = x * y
    L[:, 0, 4] = -(1.0 + x * x)
    L[:, 0, 5] = y
    L[:, 1, 1] = -iz
    L[:, 1, 2] = y * iz
    L[:, 1, 3] = 1.0 + y * y
    L[:, 1, 4] = -x * y
    L[:, 1, 5] = -x
    return L


def _linearize(cMo: np.ndarray, object_points: np.ndarray, normalized: np.ndarray) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Returns (error (N,2), interaction (N,2,6), visible mask)."""
    Xc = se3.transform(cMo, object_points)
    Z = Xc[:, 2]
    visible = Z > 1e-9
    Zs = np.where(visible, Z, 1.0)
    x = Xc[:, 0] / Zs
    y = Xc[:, 1] / Zs
    e = np.column_stack([x - normalized[:, 0], y - normalized[:, 1]])
    e[~visible] = 0.0
    return e, interaction_matrix(x, y, Zs), visible


# -----------------------------
# Gauss-Newton
# -----------------------------

def pose_covariance(cMo: np.ndarray, object_points: np.ndarray, normalized: np.ndarray, cols: np.ndarray) -> np.ndarray:
    """sigma^2 (L^T W L)^-1 at cMo, zero rows/columns for disabled DOFs."""
    e, L, visible = _linearize(cMo, object_points, normalized)
    w = tukey_weights(np.linalg.norm(e, axis=1))
    w[~visible] = 0.0
    We = (w[:, None] * e).reshape(-1)
    WL = (w[:, None, None] * L).reshape(-1, 6)
    dof = max(1, We.shape[0] - cols.size)
    sigma2 = float(We @ We) / dof
    A = WL[:, cols]
    cov = np.zeros((6, 6), dtype=np.float64)
    cov[np.ix_(cols, cols)] = sigma2 * np.linalg.pinv(A.T @ A)
    return cov


def refine_vvs(
    cMo: np.ndarray,
    object_points: np.ndarray,
    normalized: np.ndarray,
    params: PoseParams,
) -> Tuple[np.ndarray, Optional[np.ndarray], int]:
    """
    Robust Gauss-Newton refinement of cMo.

    Returns:
        (cMo, covariance or None, iterations run)
    """
    cols = dof_columns(params.dofs)
    T = cMo.copy()
    prev = float("inf")
    it = 0
    for it in range(1, params.vvs_max_iterations + 1):
        e, L, visible = _linearize(T, object_points, normalized)
        w = tukey_weights(np.linalg.norm(e, axis=1))
        w[~visible] = 0.0
        WL = (w[:, None, None] * L).reshape(-1, 6)
        We = (w[:, None] * e).reshape(-1)
        cost = float(We @ We)

        v = np.zeros(6, dtype=np.float64)
        v[cols] = -np.linalg.lstsq(WL[:, cols], We, rcond=None)[0]
        T = se3.inverse(se3.exp_map(v)) @ T

        if abs(prev - cost) <= params.vvs_tolerance or not np.all(np.isfinite(T)):
            break
        prev = cost

    cov = pose_covariance(T, object_points, normalized, cols) if params.compute_covariance else None
    return T, cov, it


# -----------------------------
# Strategy
# -----------------------------

def _initial_pose(
    image_points: np.ndarray,
    object_points: np.ndarray,
    normalized: np.ndarray,
    camera: CameraModel,
    params: PoseParams,
    rng: np.random.Generator,
    accept: Optional[AcceptPredicate],
    target: int,
) -> Tuple[Optional[np.ndarray], int, int]:
    """Best starting pose by metric inlier count; returns (cMo, inliers, hypotheses tried)."""
    n = image_points.shape[0]
    thr = params.ransac_threshold
    best_T, best_count, tried = None, -1, 1

    T = solve_direct(image_points, object_points, camera)
    if T is not None and (accept is None or accept(T.copy())):
        best_T = T
        best_count = int(np.count_nonzero(line_of_sight_distances(T, object_points, normalized) <= thr))
    if best_count >= target:
        return best_T, best_count, tried

    for _ in range(params.max_iterations):
        tried += 1
        sample = rng.choice(n, size=MIN_CORRESPONDENCES, replace=False)
        T = solve_minimal(image_points[sample], object_points[sample], camera)
        if T is None or (accept is not None and not accept(T.copy())):
            continue
        count = int(np.count_nonzero(line_of_sight_distances(T, object_points, normalized) <= thr))
        if count > best_count:
            best_T, best_count = T, count
        if params.early_stop and best_count >= target:
            break
    return best_T, best_count, tried


def robust_vvs(
    image_points: np.ndarray,
    object_points: np.ndarray,
    camera: CameraModel,
    params: PoseParams,
    rng: np.random.Generator,
    accept: Optional[AcceptPredicate] = None,
) -> PoseResult:
    n = image_points.shape[0]
    target = params.consensus_target(n)
    thr = params.ransac_threshold
    normalized = camera.normalize(image_points)

    T0, count0, tried = _initial_pose(image_points, object_points, normalized, camera, params, rng, accept, target)
    if T0 is None:
        raise PoseEstimationFailed(f"no valid initial pose in {tried} hypotheses", inliers=0, required=target)

    T, cov, gn_iters = refine_vvs(T0, object_points, normalized, params)
    res = line_of_sight_distances(T, object_points, normalized)
    if not np.all(np.isfinite(T)) or int(np.count_nonzero(res <= thr)) < count0:
        # Refinement drifted; keep the starting pose.
        T = T0
        res = line_of_sight_distances(T, object_points, normalized)
        if params.compute_covariance:
            cov = pose_covariance(T, object_points, normalized, dof_columns(params.dofs))

    inliers, outliers = split(res, thr)
    log.debug(
        "VVS done",
        extra={"extra": {"n": n, "target": target, "hypotheses": tried, "gn_iterations": gn_iters, "inliers": int(inliers.size)}},
    )
    if inliers.size < target:
        raise PoseEstimationFailed(
            f"not enough inliers: {inliers.size} < {target}", inliers=int(inliers.size), required=target
        )
    if accept is not None and not accept(T.copy()):
        raise PoseEstimationFailed(
            "pose rejected by the acceptance predicate", inliers=int(inliers.size), required=target
        )

    px = reprojection_errors(camera, T, image_points[inliers], object_points[inliers])
    return PoseResult(
        cMo=T,
        inliers=inliers,
        outliers=outliers,
        residuals=res,
        strategy=PoseStrategy.ROBUST_ITERATIVE.value,
        iterations=tried,
        error=float(px.mean()) if px.size else 0.0,
        covariance=cov,
    )
