from __future__ import annotations
"""
Descriptor matchers.

Brute-force families compute exact distance matrices in row chunks:
  - BruteForce            L2 (float descriptors)
  - BruteForce-L1         L1 (float descriptors)
  - BruteForce-Hamming    Hamming (binary uint8 descriptors)
  - BruteForce-Hamming(2) Hamming over 2-bit cells (ORB with WTA_K 3 or 4)
FlannBased delegates to cv2.FlannBasedMatcher (approximate; KD-tree for float,
LSH for binary descriptors).

Ties are broken by the lowest train index. New families register through
register_matcher(name, factory).
"""

from typing import Callable, Dict, List, Optional

import cv2
import numpy as np

from common.errors import InvalidArgument, InvalidConfiguration
from common.logging_setup import get_logger
from common.types import Correspondence, MatchList
from common.utils import Stopwatch


log = get_logger("matching.matcher")

# Upper bound on the number of elements of one (chunk, n_train, width) block.
CHUNK_ELEMENTS = 1 << 22


# -----------------------------
# Distances
# -----------------------------

def _popcount_table() -> np.ndarray:
    return np.array([bin(b).count("1") for b in range(256)], dtype=np.uint8)


def _pair_table() -> np.ndarray:
    # Number of non-zero 2-bit cells in a byte.
    return np.array([sum(1 for s in (0, 2, 4, 6) if (b >> s) & 3) for b in range(256)], dtype=np.uint8)


_POPCOUNT = _popcount_table()
_PAIRCOUNT = _pair_table()


def l2_distances(q: np.ndarray, t: np.ndarray) -> np.ndarray:
    d = q[:, None, :] - t[None, :, :]
    return np.sqrt(np.einsum("ijk,ijk->ij", d, d))


def l1_distances(q: np.ndarray, t: np.ndarray) -> np.ndarray:
    return np.abs(q[:, None, :] - t[None, :, :]).sum(axis=2)


def hamming_distances(q: np.ndarray, t: np.ndarray) -> np.ndarray:
    x = np.bitwise_xor(q[:, None, :], t[None, :, :])
    return _POPCOUNT[x].sum(axis=2, dtype=np.int64).astype(np.float64)


def hamming2_distances(q: np.ndarray, t: np.ndarray) -> np.ndarray:
    x = np.bitwise_xor(q[:, None, :], t[None, :, :])
    return _PAIRCOUNT[x].sum(axis=2, dtype=np.int64).astype(np.float64)


# -----------------------------
# Matchers
# -----------------------------

def _check_descriptors(q: np.ndarray, t: np.ndarray, binary: bool) -> None:
    if q.ndim != 2 or t.ndim != 2:
        raise InvalidArgument(f"descriptors must be 2-D arrays, got {q.shape} and {t.shape}")
    if q.shape[0] and t.shape[0] and q.shape[1] != t.shape[1]:
        raise InvalidArgument(f"descriptor width mismatch: query {q.shape[1]} vs train {t.shape[1]}")
    if q.dtype.kind != t.dtype.kind and q.shape[0] and t.shape[0]:
        raise InvalidArgument(f"descriptor type mismatch: query {q.dtype} vs train {t.dtype}")
    if binary and q.shape[0] and q.dtype != np.uint8:
        raise InvalidArgument(f"Hamming matching needs uint8 descriptors, got {q.dtype}")


class Matcher:
    """Common interface: match() plus the elapsed time of the last call."""

    name: str = ""
    binary: bool = False

    def __init__(self, cross_check: bool = False):
        self.cross_check = bool(cross_check)
        self.elapsed_ms = 0.0

    def match(self, query_descriptors, train_descriptors, knn: bool = False, k: int = 2) -> MatchList:
        """
        Match every query descriptor against the train descriptors.

        Args:
            knn: return the k nearest train points per query instead of the nearest one.
            k: neighbours per query in knn mode (>= 1).

        Returns:
            MatchList with one (possibly empty) row per query index.

        Raises:
            InvalidArgument: descriptor width or type mismatch, k < 1.
        """
        q = np.asarray(query_descriptors)
        t = np.asarray(train_descriptors)
        if knn and int(k) < 1:
            raise InvalidArgument("k must be >= 1")
        if q.size == 0 and q.ndim != 2:
            q = q.reshape(0, t.shape[1] if t.ndim == 2 else 0)
        if t.size == 0 and t.ndim != 2:
            t = t.reshape(0, q.shape[1] if q.ndim == 2 else 0)
        _check_descriptors(q, t, self.binary)
        kk = int(k) if knn else 1

        with Stopwatch() as sw:
            if q.shape[0] == 0 or t.shape[0] == 0:
                rows: List[List[Correspondence]] = [[] for _ in range(q.shape[0])]
            else:
                rows = self._match(q, t, kk, knn)
        self.elapsed_ms = sw.ms
        out = MatchList(neighbours=rows, knn=bool(knn), k=kk)
        log.debug(
            "Matched descriptors",
            extra={"extra": {"matcher": self.name, "queries": int(q.shape[0]), "train": int(t.shape[0]),
                             "knn": bool(knn), "k": kk, "matches": len(out), "ms": round(sw.ms, 3)}},
        )
        return out

    def _match(self, q: np.ndarray, t: np.ndarray, k: int, knn: bool) -> List[List[Correspondence]]:
        raise NotImplementedError


class BruteForceMatcher(Matcher):
    def __init__(self, name: str, distance: Callable[[np.ndarray, np.ndarray], np.ndarray], binary: bool, cross_check: bool = False):
        super().__init__(cross_check=cross_check)
        self.name = name
        self.binary = binary
        self._distance = distance

    def _prepare(self, d: np.ndarray) -> np.ndarray:
        return d if self.binary else d.astype(np.float64, copy=False)

    def _match(self, q: np.ndarray, t: np.ndarray, k: int, knn: bool) -> List[List[Correspondence]]:
        q = self._prepare(q)
        t = self._prepare(t)
        n_q, n_t = q.shape[0], t.shape[0]
        chunk = max(1, CHUNK_ELEMENTS // max(1, n_t * max(1, q.shape[1])))
        kk = min(k, n_t)

        idx = np.zeros((n_q, kk), dtype=np.int64)
        dist = np.zeros((n_q, kk), dtype=np.float64)
        # Nearest query of every train point, for cross-checking.
        col_best = np.full(n_t, np.inf)
        col_arg = np.full(n_t, -1, dtype=np.int64)

        for s in range(0, n_q, chunk):
            D = self._distance(q[s:s + chunk], t)
            order = np.argsort(D, axis=1, kind="stable")[:, :kk]
            idx[s:s + chunk] = order
            dist[s:s + chunk] = np.take_along_axis(D, order, axis=1)
            if self.cross_check and not knn:
                rows_arg = np.argmin(D, axis=0)
                rows_min = D[rows_arg, np.arange(n_t)]
                better = rows_min < col_best
                col_best[better] = rows_min[better]
                col_arg[better] = rows_arg[better] + s

        out: List[List[Correspondence]] = []
        for i in range(n_q):
            if self.cross_check and not knn and col_arg[idx[i, 0]] != i:
                out.append([])
                continue
            out.append([Correspondence(i, int(idx[i, j]), float(dist[i, j])) for j in range(kk)])
        return out


class FlannMatcher(Matcher):
    """Approximate matching; results are only as exact as the FLANN index."""

    name = "FlannBased"

    def __init__(self, cross_check: bool = False):
        if cross_check:
            raise InvalidConfiguration("cross-check is only available for brute-force matchers")
        super().__init__(cross_check=False)

    def _match(self, q: np.ndarray, t: np.ndarray, k: int, knn: bool) -> List[List[Correspondence]]:
        if q.dtype == np.uint8:
            index = dict(algorithm=6, table_number=6, key_size=12, multi_probe_level=1)   # LSH
        else:
            index = dict(algorithm=1, trees=5)   # KD-tree
            q = q.astype(np.float32, copy=False)
            t = t.astype(np.float32, copy=False)
        fm = cv2.FlannBasedMatcher(index, dict(checks=50))
        raw = fm.knnMatch(q, t, k=min(k, t.shape[0]))
        out: List[List[Correspondence]] = [[] for _ in range(q.shape[0])]
        for row in raw:
            if not row:
                continue
            ms = sorted(row, key=lambda m: (m.distance, m.trainIdx))
            out[ms[0].queryIdx] = [Correspondence(int(m.queryIdx), int(m.trainIdx), float(m.distance)) for m in ms[:k]]
        return out


# -----------------------------
# Registry
# -----------------------------

MatcherFactory = Callable[[bool], Matcher]

_MATCHERS: Dict[str, MatcherFactory] = {}


def register_matcher(name: str, factory: MatcherFactory) -> None:
    """factory(cross_check) -> Matcher."""
    _MATCHERS[name] = factory


def available_matchers() -> List[str]:
    return sorted(_MATCHERS)


def create_matcher(name: str, cross_check: bool = False) -> Matcher:
    try:
        factory = _MATCHERS[name]
    except KeyError:
        raise InvalidConfiguration(
            f"Unknown matcher {name!r}; available: {', '.join(available_matchers())}"
        ) from None
    return factory(bool(cross_check))


def default_matcher_for(descriptors: Optional[np.ndarray]) -> str:
    """Hamming for binary descriptors, L2 otherwise."""
    if descriptors is not None and np.asarray(descriptors).dtype == np.uint8:
        return "BruteForce-Hamming"
    return "BruteForce"


register_matcher("BruteForce", lambda cc: BruteForceMatcher("BruteForce", l2_distances, False, cc))
register_matcher("BruteForce-L1", lambda cc: BruteForceMatcher("BruteForce-L1", l1_distances, False, cc))
register_matcher("BruteForce-Hamming", lambda cc: BruteForceMatcher("BruteForce-Hamming", hamming_distances, True, cc))
register_matcher("BruteForce-Hamming(2)", lambda cc: BruteForceMatcher("BruteForce-Hamming(2)", hamming2_distances, True, cc))
register_matcher("FlannBased", lambda cc: FlannMatcher(cc))
