from __future__ import annotations
"""
Pose estimation facade.

PoseEstimator validates the 2-D/3-D correspondences, owns the seeded random
generator used for sampling and dispatches to one of the two strategies:

- consensusPnP:    RANSAC over minimal PnP samples, pixel reprojection threshold
- robustIterative: direct estimate refined by robust virtual visual servoing
                   (M-estimator weighted Gauss-Newton), metric threshold
"""

from typing import Optional

import numpy as np

from common.logging_setup import get_logger
from common.types import PoseResult
from common.utils import Stopwatch
from pose.camera import CameraModel
from pose.consensus import consensus_pnp
from pose.params import AcceptPredicate, PoseParams, PoseStrategy, validate_pairs
from pose.vvs import robust_vvs


log = get_logger("pose.estimator")


class PoseEstimator:
    """
    Robust camera-to-object pose from 2-D/3-D correspondences.

    One instance is not safe for concurrent estimate() calls: the random
    generator is instance state.
    """

    def __init__(self, params: Optional[PoseParams] = None, strategy: PoseStrategy = PoseStrategy.CONSENSUS_PNP):
        self.params = params or PoseParams()
        self.strategy = PoseStrategy(strategy)
        self.reseed(self.params.seed)

    def reseed(self, seed: Optional[int]) -> None:
        self.params.seed = seed
        self._rng = np.random.default_rng(seed)

    def estimate(
        self,
        image_points,
        object_points,
        camera: CameraModel,
        strategy: Optional[PoseStrategy] = None,
        accept: Optional[AcceptPredicate] = None,
    ) -> PoseResult:
        """
        Estimate cMo.

        Raises:
            InvalidArgument: shapes/lengths do not agree.
            InsufficientCorrespondences: fewer than 4 correspondences.
            PoseEstimationFailed: inlier target not reached, or accept() rejected the result.
        """
        img, obj = validate_pairs(image_points, object_points)
        strat = PoseStrategy(strategy) if strategy is not None else self.strategy

        with Stopwatch() as sw:
            if strat is PoseStrategy.CONSENSUS_PNP:
                if self.params.compute_covariance:
                    log.warning(
                        "Covariance is only computed by the robustIterative strategy; ignoring request",
                        extra={"extra": {"strategy": strat.value}},
                    )
                result = consensus_pnp(img, obj, camera, self.params, self._rng, accept)
            else:
                result = robust_vvs(img, obj, camera, self.params, self._rng, accept)
        result.elapsed_ms = sw.ms

        log.debug(
            "Pose estimated",
            extra={"extra": {
                "strategy": strat.value, "n": int(img.shape[0]), "inliers": result.n_inliers,
                "iterations": result.iterations, "error_px": round(result.error, 4), "ms": round(sw.ms, 3),
            }},
        )
        return result
