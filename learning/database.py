from __future__ import annotations
"""
Reference database of learned keypoints.

Each added keypoint becomes a TrainPoint with a dense, append-only train index.
Storage is columnar (numpy arrays) so the matcher can use the descriptor matrix
directly; every accessor hands out copies.
"""

from typing import Dict, List, Optional, Sequence

import numpy as np

from common.errors import InvalidArgument
from common.logging_setup import get_logger
from common.types import KEYPOINT_FIELDS, Keypoint2D, TrainPoint, keypoints_to_rows


log = get_logger("learning.database")


class ReferenceDatabase:
    """
    Keypoints, descriptors and optional 3-D object-frame coordinates gathered
    across training images.

    Not thread-safe: callers must not mutate (add/clear) while a match against
    the same database is in flight.
    """

    def __init__(self) -> None:
        self._reset()

    def _reset(self) -> None:
        self._keypoints = np.zeros((0, len(KEYPOINT_FIELDS)), dtype=np.float64)
        self._image_ids = np.zeros((0,), dtype=np.int64)
        self._descriptors: Optional[np.ndarray] = None
        self._points3d = np.zeros((0, 3), dtype=np.float64)
        self._has3d = np.zeros((0,), dtype=bool)

    # -------- mutation --------

    def add(
        self,
        image_id: int,
        keypoints: Sequence,
        descriptors: np.ndarray,
        points3d: Optional[np.ndarray] = None,
    ) -> np.ndarray:
        """
        Append N train points from one image.

        Args:
            image_id: id of the training image the keypoints come from.
            keypoints: N Keypoint2D / cv2.KeyPoint / (x, y) entries.
            descriptors: (N, D) array, one row per keypoint.
            points3d: optional (N, 3) object-frame coordinates; rows of NaN mark
                      individual keypoints without 3-D information.

        Returns:
            The assigned train indices, i.e. the range [size, size + N).

        Raises:
            InvalidArgument: mismatched lengths, descriptor width/dtype different
                             from what is already stored, or bad points3d shape.
        """
        rows = keypoints_to_rows(keypoints)
        desc = np.asarray(descriptors)
        n = rows.shape[0]

        if desc.ndim == 1 and desc.size == 0:
            desc = desc.reshape(0, 0 if self._descriptors is None else self._descriptors.shape[1])
        if desc.ndim != 2:
            raise InvalidArgument(f"descriptors must be a 2-D array, got shape {desc.shape}")
        if desc.shape[0] != n:
            raise InvalidArgument(f"{n} keypoints but {desc.shape[0]} descriptors")
        if self._descriptors is not None and self.size() > 0 and n > 0:
            if desc.shape[1] != self._descriptors.shape[1]:
                raise InvalidArgument(
                    f"descriptor width {desc.shape[1]} does not match stored width {self._descriptors.shape[1]}"
                )
            if desc.dtype != self._descriptors.dtype:
                raise InvalidArgument(f"descriptor dtype {desc.dtype} does not match stored {self._descriptors.dtype}")

        if points3d is None:
            pts = np.full((n, 3), np.nan, dtype=np.float64)
        else:
            pts = np.asarray(points3d, dtype=np.float64)
            if pts.size == 0 and n == 0:
                pts = pts.reshape(0, 3)
            if pts.ndim != 2 or pts.shape[1] != 3:
                raise InvalidArgument(f"points3d must have shape (N,3), got {pts.shape}")
            if pts.shape[0] != n:
                raise InvalidArgument(f"{n} keypoints but {pts.shape[0]} 3-D points")
        has3d = np.all(np.isfinite(pts), axis=1)

        start = self.size()
        if n == 0:
            return np.arange(start, start, dtype=np.int64)

        self._keypoints = np.vstack([self._keypoints, rows])
        self._image_ids = np.concatenate([self._image_ids, np.full(n, int(image_id), dtype=np.int64)])
        if self._descriptors is None or self._descriptors.shape[0] == 0:
            self._descriptors = desc.copy()
        else:
            self._descriptors = np.vstack([self._descriptors, desc])
        self._points3d = np.vstack([self._points3d, np.where(has3d[:, None], pts, np.nan)])
        self._has3d = np.concatenate([self._has3d, has3d])

        log.debug(
            "Added train points",
            extra={"extra": {"image_id": int(image_id), "n": n, "with_3d": int(has3d.sum()), "size": self.size()}},
        )
        return np.arange(start, start + n, dtype=np.int64)

    def extend(self, other: "ReferenceDatabase", offset_image_ids: bool = False) -> np.ndarray:
        """
        Append every train point of `other`, preserving its order.
        With offset_image_ids, the appended image ids are shifted past the current
        maximum so they cannot collide with images already learned.
        """
        if other.size() == 0:
            return np.zeros((0,), dtype=np.int64)
        if self.size() > 0:
            if other._descriptors.shape[1] != self._descriptors.shape[1] or other._descriptors.dtype != self._descriptors.dtype:
                raise InvalidArgument("cannot merge databases with different descriptor layouts")
        shift = self.next_image_id() if offset_image_ids else 0
        start = self.size()
        n = other.size()
        self._keypoints = np.vstack([self._keypoints, other._keypoints])
        self._image_ids = np.concatenate([self._image_ids, other._image_ids + shift])
        if self._descriptors is None or self._descriptors.shape[0] == 0:
            self._descriptors = other._descriptors.copy()
        else:
            self._descriptors = np.vstack([self._descriptors, other._descriptors])
        self._points3d = np.vstack([self._points3d, other._points3d])
        self._has3d = np.concatenate([self._has3d, other._has3d])
        return np.arange(start, start + n, dtype=np.int64)

    def clear(self) -> None:
        self._reset()

    # -------- accessors --------

    def size(self) -> int:
        return int(self._keypoints.shape[0])

    def __len__(self) -> int:
        return self.size()

    def image_ids(self) -> List[int]:
        """Distinct training image ids in first-seen order."""
        _, first = np.unique(self._image_ids, return_index=True)
        return [int(self._image_ids[i]) for i in sorted(first)]

    def n_images(self) -> int:
        return len(self.image_ids())

    def next_image_id(self) -> int:
        return 0 if self.size() == 0 else int(self._image_ids.max()) + 1

    def descriptors(self) -> np.ndarray:
        if self._descriptors is None:
            return np.zeros((0, 0), dtype=np.uint8)
        return self._descriptors.copy()

    @property
    def descriptor_dtype(self) -> Optional[np.dtype]:
        return None if self._descriptors is None else self._descriptors.dtype

    def keypoint_rows(self) -> np.ndarray:
        """(N, 7) keypoint table in KEYPOINT_FIELDS order."""
        return self._keypoints.copy()

    def keypoints(self) -> List[Keypoint2D]:
        return [Keypoint2D.from_row(r, int(i)) for r, i in zip(self._keypoints, self._image_ids)]

    def positions(self, indices: Optional[np.ndarray] = None) -> np.ndarray:
        """Pixel coordinates (N, 2) of all train points or of the given train indices."""
        if indices is None:
            return self._keypoints[:, :2].copy()
        return self._keypoints[np.asarray(indices, dtype=np.int64), :2].copy()

    def image_id_of(self, indices) -> np.ndarray:
        return self._image_ids[np.asarray(indices, dtype=np.int64)].copy()

    def image_id_array(self) -> np.ndarray:
        return self._image_ids.copy()

    def points3d(self) -> np.ndarray:
        """(N, 3) object-frame coordinates; NaN rows for 2-D-only entries."""
        return self._points3d.copy()

    def has_point3d(self, indices: Optional[np.ndarray] = None) -> np.ndarray:
        if indices is None:
            return self._has3d.copy()
        return self._has3d[np.asarray(indices, dtype=np.int64)].copy()

    def n_points3d(self) -> int:
        return int(self._has3d.sum())

    def train_point(self, index: int) -> TrainPoint:
        if not 0 <= int(index) < self.size():
            raise InvalidArgument(f"train index {index} out of range [0, {self.size()})")
        i = int(index)
        image_id = int(self._image_ids[i])
        return TrainPoint(
            train_index=i,
            image_id=image_id,
            keypoint=Keypoint2D.from_row(self._keypoints[i], image_id),
            descriptor=self._descriptors[i].copy(),
            point3d=self._points3d[i].copy() if self._has3d[i] else None,
        )

    def stats(self) -> Dict[str, int]:
        return {
            "train_points": self.size(),
            "images": self.n_images(),
            "with_3d": self.n_points3d(),
            "descriptor_width": 0 if self._descriptors is None else int(self._descriptors.shape[1]),
        }

    @classmethod
    def from_arrays(
        cls,
        keypoint_rows: np.ndarray,
        image_ids: np.ndarray,
        descriptors: np.ndarray,
        points3d: np.ndarray,
    ) -> "ReferenceDatabase":
        """
        Rebuild a database from its columnar form (as produced by the accessors),
        preserving train indices exactly.
        """
        rows = np.asarray(keypoint_rows, dtype=np.float64).reshape(-1, len(KEYPOINT_FIELDS))
        ids = np.asarray(image_ids, dtype=np.int64).reshape(-1)
        desc = np.asarray(descriptors)
        pts = np.asarray(points3d, dtype=np.float64).reshape(-1, 3)
        n = rows.shape[0]
        if ids.shape[0] != n or pts.shape[0] != n or desc.ndim != 2 or desc.shape[0] != n:
            raise InvalidArgument(
                f"inconsistent columns: {n} keypoints, {ids.shape[0]} image ids, "
                f"{desc.shape[0] if desc.ndim == 2 else desc.shape} descriptors, {pts.shape[0]} 3-D points"
            )
        db = cls()
        if n == 0:
            return db
        has3d = np.all(np.isfinite(pts), axis=1)
        db._keypoints = rows.copy()
        db._image_ids = ids.copy()
        db._descriptors = desc.copy()
        db._points3d = np.where(has3d[:, None], pts, np.nan)
        db._has3d = has3d
        return db
