from __future__ import annotations
"""
ConsensusPnP: RANSAC over minimal PnP samples.

Each iteration draws 4 distinct correspondences from the seeded generator,
solves a minimal PnP, and scores the hypothesis by counting correspondences
whose pixel reprojection error is within params.reprojection_error. The best
hypothesis (most inliers, ties broken by lower mean inlier error) is refined
on its inliers with Levenberg-Marquardt.
"""

from typing import Optional

import numpy as np

from common.errors import PoseEstimationFailed
from common.logging_setup import get_logger
from common.types import PoseResult
from pose.camera import CameraModel
from pose.params import (
    MIN_CORRESPONDENCES,
    AcceptPredicate,
    PoseParams,
    PoseStrategy,
    reprojection_errors_visible,
    split,
)
from pose.solvers import solve_minimal, solve_refine


log = get_logger("pose.consensus")


def _mean_inlier_error(residuals: np.ndarray, threshold: float) -> float:
    r = residuals[residuals <= threshold]
    return float(r.mean()) if r.size else float("inf")


def consensus_pnp(
    image_points: np.ndarray,
    object_points: np.ndarray,
    camera: CameraModel,
    params: PoseParams,
    rng: np.random.Generator,
    accept: Optional[AcceptPredicate] = None,
) -> PoseResult:
    n = image_points.shape[0]
    target = params.consensus_target(n)
    thr = params.reprojection_error

    best_T: Optional[np.ndarray] = None
    best_res: Optional[np.ndarray] = None
    best_count = -1
    best_err = float("inf")
    failed = 0
    rejected = 0
    iterations = 0

    for it in range(params.max_iterations):
        iterations = it + 1
        sample = rng.choice(n, size=MIN_CORRESPONDENCES, replace=False)
        T = solve_minimal(image_points[sample], object_points[sample], camera)
        if T is None:
            failed += 1
            continue
        if accept is not None and not accept(T.copy()):
            rejected += 1
            continue

        res = reprojection_errors_visible(camera, T, image_points, object_points)
        count = int(np.count_nonzero(res <= thr))
        err = _mean_inlier_error(res, thr)
        if count > best_count or (count == best_count and err < best_err):
            best_T, best_res, best_count, best_err = T, res, count, err

        if params.early_stop and best_count >= target:
            break

    log.debug(
        "Consensus search done",
        extra={"extra": {
            "n": n, "target": target, "iterations": iterations, "best": best_count,
            "failed": failed, "rejected": rejected,
        }},
    )

    if best_T is None:
        raise PoseEstimationFailed(
            f"no valid pose hypothesis in {iterations} iterations", inliers=0, required=target
        )

    T, res = best_T, best_res
    inl = np.flatnonzero(res <= thr)
    if inl.size >= MIN_CORRESPONDENCES:
        refined = solve_refine(image_points[inl], object_points[inl], camera, best_T)
        if refined is not None:
            res_r = reprojection_errors_visible(camera, refined, image_points, object_points)
            if int(np.count_nonzero(res_r <= thr)) >= inl.size:
                T, res = refined, res_r

    inliers, outliers = split(res, thr)
    if inliers.size < target:
        raise PoseEstimationFailed(
            f"not enough inliers: {inliers.size} < {target}", inliers=int(inliers.size), required=target
        )
    if accept is not None and not accept(T.copy()):
        raise PoseEstimationFailed(
            "pose rejected by the acceptance predicate", inliers=int(inliers.size), required=target
        )

    return PoseResult(
        cMo=T,
        inliers=inliers,
        outliers=outliers,
        residuals=res,
        strategy=PoseStrategy.CONSENSUS_PNP.value,
        iterations=iterations,
        error=float(res[inliers].mean()) if inliers.size else 0.0,
    )
