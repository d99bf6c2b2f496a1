from __future__ import annotations
"""
Correspondence filtering.

Policies (FilterPolicy):
  constantFactor  distance <= factor * minDistance
  stdDev          distance <= minDistance + std        (population std of the best distances)
  ratio           d1 / d2 <= ratio                     (knn input with k >= 2)
  stdAndRatio     either of the two conditions above   (knn input with k >= 2)
  none            pass-through                         (flat input only)

minDistance / std are taken over the nearest distance of every query.
With unique_train, queries whose nearest neighbour shares a training keypoint
are first reduced to the closest one (ties to the lower query index), and the
policy then runs on the remaining queries, so every policy sees the same rows.
Survivors are returned in query-index order.
"""

from dataclasses import dataclass
from enum import Enum
from typing import Dict, List, Union

import numpy as np

from common.errors import InvalidConfiguration
from common.logging_setup import get_logger
from common.types import Correspondence, MatchList


log = get_logger("matching.filters")


class FilterPolicy(str, Enum):
    CONSTANT_FACTOR = "constantFactor"
    STD_DEV = "stdDev"
    RATIO = "ratio"
    STD_AND_RATIO = "stdAndRatio"
    NONE = "none"

    @property
    def needs_knn(self) -> bool:
        return self in (FilterPolicy.RATIO, FilterPolicy.STD_AND_RATIO)


@dataclass
class FilterParams:
    factor: float = 2.0
    ratio: float = 0.85
    unique_train: bool = False

    def __post_init__(self) -> None:
        self.set_factor(self.factor)
        self.set_ratio(self.ratio)

    def set_factor(self, factor: float) -> None:
        if not float(factor) > 0.0:
            raise InvalidConfiguration("The factor value must be positive.")
        self.factor = float(factor)

    def set_ratio(self, ratio: float) -> None:
        if not (0.0 < float(ratio) <= 1.0):
            raise InvalidConfiguration("The ratio value must be in the interval ]0 ; 1].")
        self.ratio = float(ratio)

    @classmethod
    def from_dict(cls, D: Dict) -> "FilterParams":
        return cls(
            factor=float(D.get("factor", 2.0)),
            ratio=float(D.get("ratio", 0.85)),
            unique_train=bool(D.get("unique_train", False)),
        )


def check_policy(policy: Union[FilterPolicy, str], knn: bool, k: int) -> FilterPolicy:
    """Raises InvalidConfiguration when the policy cannot run on this kind of match list."""
    p = FilterPolicy(policy)
    if p.needs_knn and (not knn or k < 2):
        raise InvalidConfiguration(f"{p.value} filtering needs knn matching with k >= 2")
    if p is FilterPolicy.NONE and knn:
        raise InvalidConfiguration("the 'none' policy only applies to flat (non-knn) matching")
    return p


def _ratio_of(row: List[Correspondence]) -> float:
    d1, d2 = row[0].distance, row[1].distance
    if d2 == 0.0:
        return 1.0
    return d1 / d2


def _unique_train(rows: List[List[Correspondence]]) -> List[List[Correspondence]]:
    best: Dict[int, List[Correspondence]] = {}
    for row in rows:
        c = row[0]
        cur = best.get(c.train_idx)
        if cur is None or (c.distance, c.query_idx) < (cur[0].distance, cur[0].query_idx):
            best[c.train_idx] = row
    return sorted(best.values(), key=lambda row: row[0].query_idx)


def filter_matches(
    matches: MatchList,
    policy: Union[FilterPolicy, str],
    params: FilterParams,
) -> List[Correspondence]:
    """
    Keep the high-confidence correspondences of `matches`.

    Raises:
        InvalidConfiguration: ratio/stdAndRatio on flat or k < 2 input, none on knn input.
    """
    p = check_policy(policy, matches.knn, matches.k)
    rows = [row for row in matches.neighbours if row]
    n_in = len(rows)
    if params.unique_train:
        rows = _unique_train(rows)
    best = [row[0] for row in rows]
    if not best:
        return []

    if p is FilterPolicy.NONE:
        kept = list(best)
    else:
        d = np.array([c.distance for c in best], dtype=np.float64)
        min_dist = float(d.min())
        std = float(d.std())
        kept = []
        for row in rows:
            c = row[0]
            if p is FilterPolicy.CONSTANT_FACTOR:
                ok = c.distance <= params.factor * min_dist
            elif p is FilterPolicy.STD_DEV:
                ok = c.distance <= min_dist + std
            elif p is FilterPolicy.RATIO:
                ok = len(row) >= 2 and _ratio_of(row) <= params.ratio
            else:
                ok = (len(row) >= 2 and _ratio_of(row) <= params.ratio) or c.distance <= min_dist + std
            if ok:
                kept.append(c)

    log.debug(
        "Filtered matches",
        extra={"extra": {"policy": p.value, "in": n_in, "out": len(kept), "unique_train": params.unique_train}},
    )
    return kept
