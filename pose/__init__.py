"""
Camera model, SE(3) helpers and robust pose estimation (consensusPnP and
robustIterative) from 2-D/3-D correspondences.
"""

from pose.camera import CameraModel
from pose.estimator import PoseEstimator
from pose.params import ALL_DOFS, AcceptPredicate, Dof, PoseParams, PoseStrategy

__all__ = [
    "ALL_DOFS",
    "AcceptPredicate",
    "CameraModel",
    "Dof",
    "PoseEstimator",
    "PoseParams",
    "PoseStrategy",
]
