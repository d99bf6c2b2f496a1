from __future__ import annotations
"""
Pinhole camera model used by the pose estimators:
- Load intrinsics from YAML (OpenCV pinhole + radtan distortion)
- Project object points through a cMo transform
- Pixel <-> normalized image plane conversion
"""

from dataclasses import dataclass, field
from typing import Optional, Tuple

import cv2
import numpy as np
import yaml

from common.errors import InvalidArgument


@dataclass
class CameraModel:
    fx: float
    fy: float
    cx: float
    cy: float
    dist: np.ndarray = field(default_factory=lambda: np.zeros(5, dtype=np.float64))  # (k1,k2,p1,p2,k3)
    width: Optional[int] = None
    height: Optional[int] = None

    def __post_init__(self) -> None:
        if self.fx <= 0 or self.fy <= 0:
            raise InvalidArgument("fx and fy must be > 0")
        d = np.asarray(self.dist if self.dist is not None else np.zeros(5), dtype=np.float64).reshape(-1)
        if d.size not in (0, 4, 5, 8, 12, 14):
            raise InvalidArgument(f"distortion must have 4, 5, 8, 12 or 14 coefficients, got {d.size}")
        self.dist = d if d.size else np.zeros(5, dtype=np.float64)

    @classmethod
    def from_yaml(cls, path: str) -> "CameraModel":
        """
        Load a camera model from config/camera_intrinsics.yaml
        Expected fields:
            resolution: {width, height}   (optional)
            fx, fy, cx, cy
            k1, k2, p1, p2, k3            (optional, default 0)
        """
        with open(path, "r") as f:
            D = yaml.safe_load(f) or {}
        return cls.from_dict(D)

    @classmethod
    def from_dict(cls, D: dict) -> "CameraModel":
        res = D.get("resolution") or {}
        W = res.get("width")
        H = res.get("height")
        try:
            fx = float(D["fx"])
            fy = float(D.get("fy", fx))
        except KeyError as e:
            raise InvalidArgument(f"camera intrinsics missing {e}") from e
        cx = float(D.get("cx", (W or 0) / 2.0))
        cy = float(D.get("cy", (H or 0) / 2.0))
        dist = np.array([float(D.get(k, 0.0)) for k in ("k1", "k2", "p1", "p2", "k3")], dtype=np.float64)
        return cls(fx=fx, fy=fy, cx=cx, cy=cy, dist=dist,
                   width=None if W is None else int(W), height=None if H is None else int(H))

    @property
    def K(self) -> np.ndarray:
        return np.array([[self.fx, 0.0, self.cx],
                         [0.0, self.fy, self.cy],
                         [0.0, 0.0, 1.0]], dtype=np.float64)

    @property
    def has_distortion(self) -> bool:
        return bool(np.any(self.dist != 0.0))

    def shape(self) -> Optional[Tuple[int, int]]:
        if self.width is None or self.height is None:
            return None
        return (self.height, self.width)

    def project(self, object_points: np.ndarray, cMo: np.ndarray) -> np.ndarray:
        """Project (N,3) object-frame points to (N,2) pixels through cMo (distortion applied)."""
        X = np.asarray(object_points, dtype=np.float64).reshape(-1, 3)
        if X.shape[0] == 0:
            return np.zeros((0, 2), dtype=np.float64)
        R = np.asarray(cMo, dtype=np.float64)[:3, :3]
        t = np.asarray(cMo, dtype=np.float64)[:3, 3]
        rvec, _ = cv2.Rodrigues(R)
        px, _ = cv2.projectPoints(X, rvec, t, self.K, self.dist)
        return px.reshape(-1, 2)

    def normalize(self, pixels: np.ndarray) -> np.ndarray:
        """Undistort pixels to (N,2) coordinates on the z=1 image plane (meters at unit depth)."""
        p = np.asarray(pixels, dtype=np.float64).reshape(-1, 1, 2)
        if p.shape[0] == 0:
            return np.zeros((0, 2), dtype=np.float64)
        return cv2.undistortPoints(p, self.K, self.dist).reshape(-1, 2)

    def to_dict(self) -> dict:
        d = {"fx": self.fx, "fy": self.fy, "cx": self.cx, "cy": self.cy}
        d.update({k: float(v) for k, v in zip(("k1", "k2", "p1", "p2", "k3"), self.dist[:5])})
        if self.width is not None and self.height is not None:
            d["resolution"] = {"width": self.width, "height": self.height}
        return d
