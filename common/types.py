from __future__ import annotations

from dataclasses import dataclass, field
from typing import Optional, Tuple, Any, Dict, List
import cv2
import numpy as np


# Keypoint columns as stored in the reference database and in the persistence formats.
KEYPOINT_FIELDS: Tuple[str, ...] = ("x", "y", "size", "angle", "response", "octave", "class_id")


@dataclass(slots=True)
class Keypoint2D:
    """
    A detected keypoint.

    Attributes:
        x, y: pixel location (sub-pixel, OpenCV convention: x = column).
        size, angle, response, octave, class_id: opaque detector metadata.
        image_id: id of the image the keypoint was detected in (-1 for query images).
    """
    x: float
    y: float
    size: float = 1.0
    angle: float = -1.0
    response: float = 0.0
    octave: int = 0
    class_id: int = -1
    image_id: int = -1

    @property
    def pt(self) -> Tuple[float, float]:
        return (self.x, self.y)

    @classmethod
    def from_cv(cls, kp: cv2.KeyPoint, image_id: int = -1) -> "Keypoint2D":
        return cls(
            x=float(kp.pt[0]),
            y=float(kp.pt[1]),
            size=float(kp.size),
            angle=float(kp.angle),
            response=float(kp.response),
            octave=int(kp.octave),
            class_id=int(kp.class_id),
            image_id=int(image_id),
        )

    def to_cv(self) -> cv2.KeyPoint:
        return cv2.KeyPoint(
            float(self.x), float(self.y), float(self.size), float(self.angle),
            float(self.response), int(self.octave), int(self.class_id),
        )

    def as_row(self) -> Tuple[float, ...]:
        return (self.x, self.y, self.size, self.angle, self.response, float(self.octave), float(self.class_id))

    @classmethod
    def from_row(cls, row, image_id: int = -1) -> "Keypoint2D":
        return cls(
            x=float(row[0]), y=float(row[1]), size=float(row[2]), angle=float(row[3]),
            response=float(row[4]), octave=int(row[5]), class_id=int(row[6]), image_id=int(image_id),
        )


def keypoints_to_rows(keypoints) -> np.ndarray:
    """
    Convert a sequence of Keypoint2D / cv2.KeyPoint / (x, y) pairs into an (N, 7) float64 array
    laid out as KEYPOINT_FIELDS.
    """
    rows = []
    for kp in keypoints:
        if isinstance(kp, Keypoint2D):
            rows.append(kp.as_row())
        elif isinstance(kp, cv2.KeyPoint):
            rows.append((kp.pt[0], kp.pt[1], kp.size, kp.angle, kp.response, float(kp.octave), float(kp.class_id)))
        else:
            x, y = kp
            rows.append((float(x), float(y), 1.0, -1.0, 0.0, 0.0, -1.0))
    if not rows:
        return np.zeros((0, len(KEYPOINT_FIELDS)), dtype=np.float64)
    return np.asarray(rows, dtype=np.float64)


@dataclass(slots=True)
class TrainPoint:
    """A keypoint registered into the reference database."""
    train_index: int
    image_id: int
    keypoint: Keypoint2D
    descriptor: np.ndarray = field(repr=False)
    point3d: Optional[np.ndarray] = None

    @property
    def has_point3d(self) -> bool:
        return self.point3d is not None


@dataclass(slots=True)
class QueryPoint:
    query_index: int
    keypoint: Keypoint2D
    descriptor: np.ndarray = field(repr=False)


@dataclass(slots=True, frozen=True)
class Correspondence:
    """A proposed match between query keypoint `query_idx` and train keypoint `train_idx`."""
    query_idx: int
    train_idx: int
    distance: float


@dataclass
class MatchList:
    """
    Matcher output: for each query index, its correspondences ascending by distance
    (at most one in flat mode, at most k in knn mode; empty when nothing matched).
    """
    neighbours: List[List[Correspondence]] = field(default_factory=list)
    knn: bool = False
    k: int = 1

    def __len__(self) -> int:
        return sum(len(row) for row in self.neighbours)

    @property
    def n_queries(self) -> int:
        return len(self.neighbours)

    def best(self) -> List[Correspondence]:
        """Nearest correspondence of every query that has one."""
        return [row[0] for row in self.neighbours if row]

    def all(self) -> List[Correspondence]:
        return [c for row in self.neighbours for c in row]


@dataclass(slots=True)
class FilteredMatch:
    correspondence: Correspondence
    query_pt: Tuple[float, float]
    train_pt: Tuple[float, float]
    point3d: Optional[Tuple[float, float, float]] = None


@dataclass
class FilteredSet:
    """
    Correspondences that survived filtering, paired with their coordinates.

    Every surviving match is kept (detection scoring uses all of them); the pose
    pairs only include matches whose train point carries a 3-D coordinate.
    """
    matches: List[FilteredMatch] = field(default_factory=list)
    policy: str = "none"

    @classmethod
    def build(
        cls,
        correspondences: List[Correspondence],
        query_positions: np.ndarray,
        train_positions: np.ndarray,
        train_points3d: Optional[np.ndarray] = None,
        train_has3d: Optional[np.ndarray] = None,
        policy: str = "none",
    ) -> "FilteredSet":
        """
        Pair surviving correspondences with the query 2-D coordinate, the train
        2-D coordinate and, when the train point has one, its 3-D coordinate.
        """
        matches: List[FilteredMatch] = []
        for c in correspondences:
            q = query_positions[c.query_idx]
            t = train_positions[c.train_idx]
            p3 = None
            if train_points3d is not None and train_has3d is not None and bool(train_has3d[c.train_idx]):
                p = train_points3d[c.train_idx]
                p3 = (float(p[0]), float(p[1]), float(p[2]))
            matches.append(FilteredMatch(c, (float(q[0]), float(q[1])), (float(t[0]), float(t[1])), p3))
        return cls(matches=matches, policy=str(policy))

    def __len__(self) -> int:
        return len(self.matches)

    @property
    def distances(self) -> np.ndarray:
        return np.array([m.correspondence.distance for m in self.matches], dtype=np.float64)

    @property
    def correspondences(self) -> List[Correspondence]:
        return [m.correspondence for m in self.matches]

    def query_points(self) -> np.ndarray:
        if not self.matches:
            return np.zeros((0, 2), dtype=np.float64)
        return np.array([m.query_pt for m in self.matches], dtype=np.float64)

    def train_points(self) -> np.ndarray:
        if not self.matches:
            return np.zeros((0, 2), dtype=np.float64)
        return np.array([m.train_pt for m in self.matches], dtype=np.float64)

    def pose_pairs(self) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
        """
        Returns (image_points (N,2), object_points (N,3), positions (N,)) for 3-D-bearing matches;
        `positions` index into self.matches.
        """
        pos = [i for i, m in enumerate(self.matches) if m.point3d is not None]
        if not pos:
            return np.zeros((0, 2)), np.zeros((0, 3)), np.zeros((0,), dtype=np.int64)
        img = np.array([self.matches[i].query_pt for i in pos], dtype=np.float64)
        obj = np.array([self.matches[i].point3d for i in pos], dtype=np.float64)
        return img, obj, np.asarray(pos, dtype=np.int64)


@dataclass
class PoseResult:
    """
    Output of a pose estimation call.

    Attributes:
        cMo: 4x4 homogeneous transform from object frame to camera frame.
        inliers, outliers: index arrays into the correspondences passed to estimate().
        residuals: per-correspondence error under cMo (pixels for consensusPnP,
                   meters for robustIterative).
        covariance: 6x6 covariance of (t, theta-u), robustIterative only.
        error: mean reprojection error (pixels) over the inliers.
    """
    cMo: np.ndarray = field(repr=False)
    inliers: np.ndarray
    outliers: np.ndarray
    residuals: np.ndarray = field(repr=False)
    strategy: str
    iterations: int = 0
    elapsed_ms: float = 0.0
    error: float = 0.0
    covariance: Optional[np.ndarray] = field(default=None, repr=False)

    @property
    def n_inliers(self) -> int:
        return int(len(self.inliers))

    def to_dict(self) -> Dict[str, Any]:
        return {
            "cMo": self.cMo.tolist(),
            "inliers": int(len(self.inliers)),
            "outliers": int(len(self.outliers)),
            "strategy": self.strategy,
            "iterations": int(self.iterations),
            "elapsed_ms": float(self.elapsed_ms),
            "error_px": float(self.error),
            "covariance": None if self.covariance is None else self.covariance.tolist(),
        }


@dataclass(slots=True)
class DetectionVerdict:
    """
    Presence decision for the learned object.

    Attributes:
        present: decision.
        score: value compared against the threshold (mean distance or score formula).
        mean_distance: mean descriptor distance of the filtered matches (inf if none).
        bounding_box: (x, y, w, h) of the located object in the query image, if located.
        center: centre of gravity (x, y) of the located inliers, if located.
    """
    present: bool
    score: float
    mean_distance: float
    n_matches: int
    method: str
    pose_inliers: Optional[int] = None
    bounding_box: Optional[Tuple[float, float, float, float]] = None
    center: Optional[Tuple[float, float]] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "present": bool(self.present),
            "score": float(self.score),
            "mean_distance": float(self.mean_distance),
            "n_matches": int(self.n_matches),
            "method": self.method,
            "pose_inliers": self.pose_inliers,
            "bounding_box": None if self.bounding_box is None else [float(v) for v in self.bounding_box],
            "center": None if self.center is None else [float(v) for v in self.center],
        }
