from __future__ import annotations
"""
Presence decision from match statistics.

- thresholdOnMeanDistance: present iff mean descriptor distance <= threshold
- scoreFormula:            score = n_matches / mean_distance, present iff score > threshold

The score grows with the number of filtered matches and shrinks with their
mean distance; it is +inf for a non-empty set of zero-distance matches and 0
for an empty set. Pose is optional: the verdict only records its inlier count.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, Optional, Union
import math

from common.errors import InvalidConfiguration
from common.logging_setup import get_logger
from common.types import DetectionVerdict, FilteredSet, PoseResult


log = get_logger("detection.decision")


class DetectionMethod(str, Enum):
    THRESHOLD_ON_MEAN_DISTANCE = "thresholdOnMeanDistance"
    SCORE_FORMULA = "scoreFormula"


@dataclass
class DetectionParams:
    method: DetectionMethod = DetectionMethod.THRESHOLD_ON_MEAN_DISTANCE
    mean_distance_threshold: float = 100.0
    score_threshold: float = 0.15

    def __post_init__(self) -> None:
        self.method = DetectionMethod(self.method)
        self.set_mean_distance_threshold(self.mean_distance_threshold)
        self.set_score_threshold(self.score_threshold)

    def set_mean_distance_threshold(self, value: float) -> None:
        if not float(value) >= 0.0:
            raise InvalidConfiguration("The mean distance threshold must be non-negative.")
        self.mean_distance_threshold = float(value)

    def set_score_threshold(self, value: float) -> None:
        if not float(value) >= 0.0:
            raise InvalidConfiguration("The score threshold must be non-negative.")
        self.score_threshold = float(value)

    @classmethod
    def from_dict(cls, D: Dict) -> "DetectionParams":
        return cls(
            method=DetectionMethod(D.get("method", DetectionMethod.THRESHOLD_ON_MEAN_DISTANCE.value)),
            mean_distance_threshold=float(D.get("mean_distance_threshold", 100.0)),
            score_threshold=float(D.get("score_threshold", 0.15)),
        )


def match_score(n_matches: int, mean_distance: float) -> float:
    if n_matches <= 0:
        return 0.0
    if mean_distance <= 0.0:
        return math.inf
    return n_matches / mean_distance


def decide(
    filtered: FilteredSet,
    pose: Optional[PoseResult] = None,
    method: Optional[Union[DetectionMethod, str]] = None,
    params: Optional[DetectionParams] = None,
) -> DetectionVerdict:
    """
    Decide whether the learned object is present.

    Args:
        filtered: correspondences that survived filtering.
        pose: optional pose result; only its inlier count is recorded.
        method: overrides params.method.
        params: thresholds (defaults when None).
    """
    params = params or DetectionParams()
    m = DetectionMethod(method) if method is not None else params.method
    n = len(filtered)
    mean = float(filtered.distances.mean()) if n else math.inf

    if m is DetectionMethod.THRESHOLD_ON_MEAN_DISTANCE:
        score = mean
        present = n > 0 and mean <= params.mean_distance_threshold
    else:
        score = match_score(n, mean)
        present = score > params.score_threshold

    verdict = DetectionVerdict(
        present=bool(present),
        score=float(score),
        mean_distance=mean,
        n_matches=n,
        method=m.value,
        pose_inliers=None if pose is None else pose.n_inliers,
    )
    log.debug("Detection decided", extra={"extra": verdict.to_dict()})
    return verdict
