from __future__ import annotations
"""
Keypoint detector / descriptor extractor families.

- Registry: family name -> factory returning a cv2.Feature2D
- FeatureExtractor(method=...) with .detect(image, roi/mask), .extract(image, keypoints)
  and .detect_and_compute(image)
- Several detectors can be combined (keypoints concatenated)
- Several extractors can be combined (descriptor rows concatenated per keypoint)
- Grid non-max suppression (keeps spatially well-distributed strong keypoints)
"""

from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Sequence, Tuple

import cv2
import numpy as np

from common.errors import InvalidArgument, InvalidConfiguration
from common.logging_setup import get_logger


log = get_logger("matching.features")

Roi = Tuple[int, int, int, int]   # (x, y, w, h)


# -----------------------------
# Image helpers
# -----------------------------

def to_gray_u8(img: np.ndarray) -> np.ndarray:
    if img is None or img.size == 0:
        raise InvalidArgument("empty image")
    if img.ndim == 2:
        g = img
    elif img.ndim == 3 and img.shape[2] == 4:
        g = cv2.cvtColor(img, cv2.COLOR_BGRA2GRAY)
    elif img.ndim == 3 and img.shape[2] == 3:
        g = cv2.cvtColor(img, cv2.COLOR_BGR2GRAY)
    elif img.ndim == 3 and img.shape[2] == 1:
        g = img[:, :, 0]
    else:
        raise InvalidArgument(f"unsupported image shape {img.shape}")
    if g.dtype != np.uint8:
        g = np.clip(g, 0, 255).astype(np.uint8)
    return g


def roi_mask(shape: Tuple[int, int], roi: Optional[Roi] = None, mask: Optional[np.ndarray] = None) -> Optional[np.ndarray]:
    """Detection mask from a rectangle and/or an explicit mask (intersection of both)."""
    H, W = int(shape[0]), int(shape[1])
    out = None
    if mask is not None:
        m = np.asarray(mask)
        if m.shape[:2] != (H, W):
            raise InvalidArgument(f"mask shape {m.shape[:2]} does not match image {(H, W)}")
        out = np.where(m > 0, 255, 0).astype(np.uint8)
    if roi is not None:
        x, y, w, h = (int(v) for v in roi)
        if w <= 0 or h <= 0:
            raise InvalidArgument(f"empty region of interest {roi}")
        r = np.zeros((H, W), dtype=np.uint8)
        r[max(0, y):max(0, y + h), max(0, x):max(0, x + w)] = 255
        out = r if out is None else cv2.bitwise_and(out, r)
    return out


# -----------------------------
# Family registry
# -----------------------------

@dataclass(frozen=True)
class FeatureFamily:
    name: str
    factory: Callable[..., "cv2.Feature2D"]
    can_extract: bool = True


_FAMILIES: Dict[str, FeatureFamily] = {}


def register_family(name: str, factory: Callable[..., "cv2.Feature2D"], can_extract: bool = True) -> None:
    """Make a detector/extractor family available by name (replaces an existing entry)."""
    _FAMILIES[name] = FeatureFamily(name=name, factory=factory, can_extract=can_extract)


def available_families() -> List[str]:
    return sorted(_FAMILIES)


def get_family(name: str) -> FeatureFamily:
    try:
        return _FAMILIES[name]
    except KeyError:
        raise InvalidConfiguration(
            f"Unknown feature family {name!r}; available: {', '.join(available_families())}"
        ) from None


def _orb(nfeatures: int = 2000, fast_threshold: int = 12, nlevels: int = 8, scale_factor: float = 1.2, **_):
    return cv2.ORB_create(
        nfeatures=int(nfeatures),
        scaleFactor=float(scale_factor),
        nlevels=int(nlevels),
        edgeThreshold=19,
        firstLevel=0,
        WTA_K=2,
        scoreType=cv2.ORB_HARRIS_SCORE,
        patchSize=31,
        fastThreshold=int(fast_threshold),
    )


def _akaze(threshold: float = 0.001, **_):
    return cv2.AKAZE_create(
        descriptor_type=cv2.AKAZE_DESCRIPTOR_MLDB,
        threshold=float(threshold),
        nOctaves=4,
        nOctaveLayers=4,
        diffusivity=cv2.KAZE_DIFF_PM_G2,
    )


def _brisk(fast_threshold: int = 30, **_):
    return cv2.BRISK_create(thresh=int(fast_threshold))


def _sift(nfeatures: int = 0, **_):
    return cv2.SIFT_create(nfeatures=int(nfeatures))


def _fast(fast_threshold: int = 12, **_):
    return cv2.FastFeatureDetector_create(threshold=int(fast_threshold), nonmaxSuppression=True)


def _gftt(nfeatures: int = 2000, **_):
    return cv2.GFTTDetector_create(maxCorners=int(nfeatures), qualityLevel=0.01, minDistance=1.0)


register_family("ORB", _orb)
register_family("AKAZE", _akaze)
register_family("BRISK", _brisk)
register_family("SIFT", _sift)
register_family("FAST", _fast, can_extract=False)
register_family("GFTT", _gftt, can_extract=False)


# -----------------------------
# Extractors
# -----------------------------

@dataclass
class FeatureExtractor:
    method: str = "ORB"
    nfeatures: int = 2000
    fast_threshold: int = 12
    nlevels: int = 8
    scale_factor: float = 1.2
    options: Dict = field(default_factory=dict)

    def __post_init__(self):
        fam = get_family(self.method)
        self.can_extract = fam.can_extract
        self._f = fam.factory(
            nfeatures=self.nfeatures,
            fast_threshold=self.fast_threshold,
            nlevels=self.nlevels,
            scale_factor=self.scale_factor,
            **self.options,
        )

    def detect(self, image: np.ndarray, roi: Optional[Roi] = None, mask: Optional[np.ndarray] = None) -> List[cv2.KeyPoint]:
        gray = to_gray_u8(image)
        m = roi_mask(gray.shape[:2], roi, mask)
        return list(self._f.detect(gray, m))

    def extract(self, image: np.ndarray, keypoints: Sequence[cv2.KeyPoint]) -> Tuple[List[cv2.KeyPoint], np.ndarray]:
        """
        Compute descriptors for the given keypoints.

        Returns:
            (keypoints, descriptors). The extractor may drop keypoints it cannot
            describe (e.g. too close to the border), so callers must use the
            returned list, which is aligned with the descriptor rows.
        """
        if not self.can_extract:
            raise InvalidConfiguration(f"{self.method} is a detector only; it cannot extract descriptors")
        gray = to_gray_u8(image)
        kps, des = self._f.compute(gray, list(keypoints))
        kps = list(kps) if kps is not None else []
        if des is None or len(kps) == 0:
            des = self.empty_descriptors()
        return kps, des

    def detect_and_compute(self, image: np.ndarray, roi: Optional[Roi] = None, mask: Optional[np.ndarray] = None):
        if not self.can_extract:
            raise InvalidConfiguration(f"{self.method} is a detector only; it cannot extract descriptors")
        gray = to_gray_u8(image)
        kps, des = self._f.detectAndCompute(gray, roi_mask(gray.shape[:2], roi, mask))
        kps = list(kps) if kps is not None else []
        if des is None or len(kps) == 0:
            des = self.empty_descriptors()
        return kps, des

    def empty_descriptors(self) -> np.ndarray:
        width = int(self._f.descriptorSize()) if self.can_extract else 0
        dtype = np.float32 if self._f.descriptorType() == cv2.CV_32F else np.uint8
        return np.zeros((0, width), dtype=dtype)


def detect_all(
    detectors: Sequence[FeatureExtractor],
    image: np.ndarray,
    roi: Optional[Roi] = None,
    mask: Optional[np.ndarray] = None,
) -> List[cv2.KeyPoint]:
    """Run every detector on the image and concatenate the keypoints in detector order."""
    kps: List[cv2.KeyPoint] = []
    for d in detectors:
        found = d.detect(image, roi=roi, mask=mask)
        log.debug("Detected keypoints", extra={"extra": {"method": d.method, "n": len(found)}})
        kps.extend(found)
    return kps


def extract_all(
    extractors: Sequence[FeatureExtractor],
    image: np.ndarray,
    keypoints: Sequence[cv2.KeyPoint],
) -> Tuple[List[cv2.KeyPoint], np.ndarray]:
    """
    Describe the keypoints with every extractor and join the descriptors column-wise.

    Only keypoints kept by every extractor survive, in input order, as the
    first extractor returned them. The descriptor types must agree (all binary
    or all float) so that one matcher norm applies to the joined rows.
    """
    kps = list(keypoints)
    if len(extractors) == 1:
        return extractors[0].extract(image, kps)
    dtypes = {ex.empty_descriptors().dtype for ex in extractors}
    if len(dtypes) != 1:
        raise InvalidConfiguration(
            "extractors with binary and float descriptors cannot be combined: "
            + ", ".join(ex.method for ex in extractors)
        )

    keep = np.ones((len(kps),), dtype=bool)
    rows, blocks, first = [], [], None
    for ex in extractors:
        described, des = ex.extract(image, kps)
        idx = kept_indices(kps, described)
        r = np.full((len(kps),), -1, dtype=np.int64)
        r[idx] = np.arange(idx.size)
        keep &= r >= 0
        rows.append(r)
        blocks.append(des)
        if first is None:
            first = described

    sel = np.flatnonzero(keep)
    out_kps = [first[rows[0][i]] for i in sel]
    des = np.hstack([b[r[sel]] for r, b in zip(rows, blocks)])
    log.debug(
        "Extracted descriptors",
        extra={"extra": {"methods": [ex.method for ex in extractors], "in": len(kps), "out": len(out_kps), "width": int(des.shape[1])}},
    )
    return out_kps, des


# -----------------------------
# Keypoint post-processing
# -----------------------------

def grid_nms(
    kps: List[cv2.KeyPoint],
    img_size: Tuple[int, int],
    grid: Tuple[int, int] = (8, 8),
    cap_per_cell: int = 60,
) -> List[cv2.KeyPoint]:
    """
    Keep at most cap_per_cell keypoints per grid cell, strongest response first.
    img_size is (width, height).
    """
    if not kps:
        return []
    W, H = int(img_size[0]), int(img_size[1])
    gx, gy = int(grid[0]), int(grid[1])
    cw = max(1, W // gx)
    ch = max(1, H // gy)
    cells: Dict[Tuple[int, int], List[cv2.KeyPoint]] = {}
    for kp in kps:
        cx = min(gx - 1, max(0, int(kp.pt[0]) // cw))
        cy = min(gy - 1, max(0, int(kp.pt[1]) // ch))
        cells.setdefault((cy, cx), []).append(kp)
    kept: List[cv2.KeyPoint] = []
    for key in sorted(cells):
        cell = sorted(cells[key], key=lambda p: p.response, reverse=True)
        kept.extend(cell[:cap_per_cell])
    return kept


def kept_indices(original: Sequence[cv2.KeyPoint], kept: Sequence[cv2.KeyPoint], tol: float = 1e-3) -> np.ndarray:
    """
    Indices into `original` of the keypoints an extractor kept.

    Extractors may drop keypoints and, for pyramid-based families, regroup the
    rest by octave, so each kept keypoint is looked up by position (first
    unused original within tol).
    """
    if not kept:
        return np.zeros((0,), dtype=np.int64)
    pts = np.array([kp.pt for kp in original], dtype=np.float64).reshape(-1, 2)
    used = np.zeros((pts.shape[0],), dtype=bool)
    out = []
    for kp in kept:
        near = (np.abs(pts[:, 0] - kp.pt[0]) <= tol) & (np.abs(pts[:, 1] - kp.pt[1]) <= tol) & ~used
        hits = np.flatnonzero(near)
        if hits.size == 0:
            raise InvalidArgument(f"extracted keypoint at {kp.pt} was not among the detected ones")
        used[hits[0]] = True
        out.append(int(hits[0]))
    return np.asarray(out, dtype=np.int64)
