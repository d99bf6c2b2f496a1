from __future__ import annotations
"""
Pose estimation parameters, strategy/DOF enums and helpers shared by the two
robust strategies.
"""

from dataclasses import dataclass, field
from enum import Enum
from typing import Callable, Dict, FrozenSet, Iterable, Optional, Tuple
import math

import numpy as np

from common.errors import InsufficientCorrespondences, InvalidArgument, InvalidConfiguration
from common.utils import as_points
from pose.camera import CameraModel


MIN_CORRESPONDENCES = 4

# Called with a candidate 4x4 cMo; returning False discards the candidate.
AcceptPredicate = Callable[[np.ndarray], bool]


class PoseStrategy(str, Enum):
    CONSENSUS_PNP = "consensusPnP"
    ROBUST_ITERATIVE = "robustIterative"


class Dof(str, Enum):
    """Pose parameters of the (v, w) twist, in interaction-matrix column order."""
    TX = "tx"
    TY = "ty"
    TZ = "tz"
    RX = "rx"
    RY = "ry"
    RZ = "rz"


ALL_DOFS: FrozenSet[Dof] = frozenset(Dof)
_DOF_COLUMNS = {Dof.TX: 0, Dof.TY: 1, Dof.TZ: 2, Dof.RX: 3, Dof.RY: 4, Dof.RZ: 5}


def dof_columns(dofs: Iterable[Dof]) -> np.ndarray:
    return np.array(sorted(_DOF_COLUMNS[Dof(d)] for d in dofs), dtype=np.int64)


@dataclass
class PoseParams:
    """
    Robust estimation parameters. Ranges are checked when set; nothing is clamped.

    The inlier minimum is either an absolute count or a percentage of the
    correspondences. The two modes are mutually exclusive: whichever of
    set_min_inlier_count() / set_consensus_percentage() was called last wins.
    The same target drives early termination (when early_stop is on) and the
    final acceptance test.
    """
    max_iterations: int = 200
    reprojection_error: float = 6.0      # pixels, consensusPnP
    ransac_threshold: float = 0.01       # meters, robustIterative
    min_inlier_count: int = 100
    consensus_percentage: float = 20.0
    use_consensus_percentage: bool = False
    early_stop: bool = True
    seed: Optional[int] = None
    vvs_max_iterations: int = 200
    vvs_tolerance: float = 1e-12
    compute_covariance: bool = False
    dofs: FrozenSet[Dof] = field(default_factory=lambda: ALL_DOFS)

    def __post_init__(self) -> None:
        self.set_max_iterations(self.max_iterations)
        self.set_reprojection_error(self.reprojection_error)
        self.set_ransac_threshold(self.ransac_threshold)
        _check_count(self.min_inlier_count)
        _check_percentage(self.consensus_percentage)
        if int(self.vvs_max_iterations) <= 0:
            raise InvalidConfiguration("vvs_max_iterations must be > 0")
        if self.vvs_tolerance < 0:
            raise InvalidConfiguration("vvs_tolerance must be >= 0")
        self.set_dofs(self.dofs)

    # -------- setters --------

    def set_max_iterations(self, n: int) -> None:
        if int(n) <= 0:
            raise InvalidConfiguration("The number of iterations must be greater than zero.")
        self.max_iterations = int(n)

    def set_reprojection_error(self, px: float) -> None:
        if not float(px) > 0.0:
            raise InvalidConfiguration("The reprojection error threshold must be positive.")
        self.reprojection_error = float(px)

    def set_ransac_threshold(self, meters: float) -> None:
        if not float(meters) > 0.0:
            raise InvalidConfiguration("The metric inlier threshold must be positive.")
        self.ransac_threshold = float(meters)

    def set_min_inlier_count(self, n: int) -> None:
        _check_count(n)
        self.min_inlier_count = int(n)
        self.use_consensus_percentage = False

    def set_consensus_percentage(self, percentage: float) -> None:
        _check_percentage(percentage)
        self.consensus_percentage = float(percentage)
        self.use_consensus_percentage = True

    def set_dofs(self, dofs: Iterable) -> None:
        s = frozenset(Dof(d) for d in dofs)
        if not s:
            raise InvalidConfiguration("at least one pose parameter must be estimated")
        self.dofs = s

    # -------- derived --------

    def consensus_target(self, n: int) -> int:
        """Inlier count required for n correspondences."""
        if self.use_consensus_percentage:
            return max(1, int(math.ceil(self.consensus_percentage / 100.0 * n - 1e-9)))
        return self.min_inlier_count

    @classmethod
    def from_dict(cls, D: Dict) -> "PoseParams":
        p = cls(
            max_iterations=int(D.get("max_iterations", 200)),
            reprojection_error=float(D.get("reprojection_error_px", 6.0)),
            ransac_threshold=float(D.get("ransac_threshold_m", 0.01)),
            early_stop=bool(D.get("early_stop", True)),
            seed=D.get("seed"),
            vvs_max_iterations=int(D.get("vvs_max_iterations", 200)),
            compute_covariance=bool(D.get("compute_covariance", False)),
            dofs=frozenset(D.get("dofs", [d.value for d in Dof])),
        )
        if "consensus_percentage" in D and "min_inlier_count" in D:
            raise InvalidConfiguration("set either min_inlier_count or consensus_percentage, not both")
        if "consensus_percentage" in D:
            p.set_consensus_percentage(float(D["consensus_percentage"]))
        elif "min_inlier_count" in D:
            p.set_min_inlier_count(int(D["min_inlier_count"]))
        return p


def _check_count(n: int) -> None:
    if int(n) <= 0:
        raise InvalidConfiguration("The minimum number of inliers must be greater than zero.")


def _check_percentage(p: float) -> None:
    if not (0.0 < float(p) <= 100.0):
        raise InvalidConfiguration("The percentage must be in the interval ]0 ; 100].")


def validate_pairs(image_points, object_points) -> Tuple[np.ndarray, np.ndarray]:
    try:
        img = as_points(image_points, 2, "image_points")
        obj = as_points(object_points, 3, "object_points")
    except ValueError as e:
        raise InvalidArgument(str(e)) from e
    if img.shape[0] != obj.shape[0]:
        raise InvalidArgument(f"{img.shape[0]} image points but {obj.shape[0]} object points")
    if img.shape[0] < MIN_CORRESPONDENCES:
        raise InsufficientCorrespondences(img.shape[0], MIN_CORRESPONDENCES)
    if not (np.all(np.isfinite(img)) and np.all(np.isfinite(obj))):
        raise InvalidArgument("correspondences contain non-finite coordinates")
    return img, obj


def reprojection_errors(camera: CameraModel, cMo: np.ndarray, image_points: np.ndarray, object_points: np.ndarray) -> np.ndarray:
    """Per-correspondence pixel distance between observation and projection."""
    proj = camera.project(object_points, cMo)
    return np.linalg.norm(proj - image_points, axis=1)


def split(residuals: np.ndarray, threshold: float) -> Tuple[np.ndarray, np.ndarray]:
    mask = residuals <= threshold
    return np.flatnonzero(mask), np.flatnonzero(~mask)


def depths(cMo: np.ndarray, object_points: np.ndarray) -> np.ndarray:
    return object_points @ cMo[2, :3] + cMo[2, 3]


def reprojection_errors_visible(camera: CameraModel, cMo: np.ndarray, image_points: np.ndarray, object_points: np.ndarray) -> np.ndarray:
    """reprojection_errors() with points behind the camera reported as +inf."""
    err = reprojection_errors(camera, cMo, image_points, object_points)
    err[depths(cMo, object_points) <= 0.0] = np.inf
    return err
