from __future__ import annotations
"""
Keypoint recognition pipeline.

Learning:  detect -> extract -> ReferenceDatabase (optionally with 3-D points)
Query:     detect -> extract -> match -> filter -> estimate pose -> decide

One KeyPointPipeline holds the reference database and the state of the latest
query (keypoints, matches, filtered set, pose). It is single-flight: do not
call it from several threads at once. State is only assigned once a call has
succeeded, and a successful match() clears the filtered set and pose of the
previous query. estimate() drops the previous pose when it starts, so after a
failed estimate the RANSAC accessors report nothing rather than an older pose.
"""

from pathlib import Path
from typing import List, Optional, Sequence, Tuple, Union

import cv2
import numpy as np

from common.config import PipelineConfig
from common.errors import InvalidArgument, InvalidConfiguration
from common.logging_setup import get_logger
from common.types import DetectionVerdict, FilteredSet, Keypoint2D, MatchList, PoseResult
from common.utils import Stopwatch
from detection.decision import DetectionMethod, decide
from detection.localize import locate
from learning import store
from learning.database import ReferenceDatabase
from learning.registration import compute_3d_in_polygons
from matching.features import FeatureExtractor, Roi, detect_all, extract_all, grid_nms, kept_indices
from matching.filters import FilterPolicy, filter_matches
from matching.matcher import Matcher, create_matcher, default_matcher_for
from pose.camera import CameraModel
from pose.estimator import PoseEstimator
from pose.params import AcceptPredicate, PoseStrategy


log = get_logger("recognition.pipeline")


class KeyPointPipeline:
    def __init__(self, config: Optional[PipelineConfig] = None, camera: Optional[CameraModel] = None):
        cfg = config or PipelineConfig()
        self.config = cfg
        self.database = ReferenceDatabase()
        self.camera = camera if camera is not None else cfg.camera

        self._detectors = [self._make_extractor(n) for n in cfg.features.detectors]
        self._extractors = self._make_extractors(cfg.features.extractors)
        self._grid = cfg.features.grid_nms

        self._matcher_name = cfg.matching.matcher
        self._cross_check = cfg.matching.cross_check
        self._matcher: Optional[Matcher] = None
        if self._matcher_name is not None:
            self._matcher = create_matcher(self._matcher_name, self._cross_check)
        self._policy = FilterPolicy(cfg.matching.filter_policy)
        self._knn_k = cfg.matching.knn_k
        self.filter_params = cfg.matching.filter

        self.estimator = PoseEstimator(cfg.pose, cfg.strategy)
        self.detection_params = cfg.detection

        self.detection_time_ms = 0.0
        self.extraction_time_ms = 0.0
        self.matching_time_ms = 0.0
        self.pose_time_ms = 0.0
        self._reset_query()

    def _make_extractor(self, name: str) -> FeatureExtractor:
        f = self.config.features
        return FeatureExtractor(method=name, nfeatures=f.nfeatures, fast_threshold=f.fast_threshold)

    def _make_extractors(self, names: Sequence[str]) -> List[FeatureExtractor]:
        out = [self._make_extractor(n) for n in names]
        for ex in out:
            if not ex.can_extract:
                raise InvalidConfiguration(f"{ex.method} cannot extract descriptors")
        if len({ex.empty_descriptors().dtype for ex in out}) > 1:
            raise InvalidConfiguration("extractors with binary and float descriptors cannot be combined")
        return out

    def _reset_query(self) -> None:
        self._query_keypoints: List[cv2.KeyPoint] = []
        self._query_descriptors: Optional[np.ndarray] = None
        self._matches = MatchList()
        self._filtered: Optional[FilteredSet] = None
        self._pose: Optional[PoseResult] = None
        self._pose_image_points = np.zeros((0, 2))
        self._pose_positions = np.zeros((0,), dtype=np.int64)

    # -----------------------------
    # Configuration
    # -----------------------------

    @property
    def filter_policy(self) -> FilterPolicy:
        return self._policy

    @property
    def uses_knn(self) -> bool:
        return self._policy.needs_knn

    def set_filter_policy(self, policy: Union[FilterPolicy, str]) -> None:
        """Selecting ratio / stdAndRatio switches matching to knn (k >= 2); the others use flat matching."""
        try:
            self._policy = FilterPolicy(policy)
        except ValueError as e:
            raise InvalidConfiguration(str(e)) from e

    def set_knn_k(self, k: int) -> None:
        if int(k) < 2:
            raise InvalidConfiguration("knn matching for ratio filtering needs k >= 2")
        self._knn_k = int(k)

    def set_ratio(self, ratio: float) -> None:
        self.filter_params.set_ratio(ratio)

    def set_factor(self, factor: float) -> None:
        self.filter_params.set_factor(factor)

    def set_detectors(self, names: Union[str, Sequence[str]]) -> None:
        names = [names] if isinstance(names, str) else list(names)
        if not names:
            raise InvalidConfiguration("at least one detector is required")
        self._detectors = [self._make_extractor(n) for n in names]

    def set_extractor(self, name: str) -> None:
        self.set_extractors([name])

    def set_extractors(self, names: Union[str, Sequence[str]]) -> None:
        """Descriptors of several extractors are joined per keypoint; they must share a descriptor type."""
        names = [names] if isinstance(names, str) else list(names)
        if not names:
            raise InvalidConfiguration("at least one extractor is required")
        self._extractors = self._make_extractors(names)

    def set_matcher(self, name: str) -> None:
        self._matcher = create_matcher(name, self._cross_check)
        self._matcher_name = name

    def set_cross_check(self, enabled: bool) -> None:
        if self._matcher_name is not None:
            self._matcher = create_matcher(self._matcher_name, bool(enabled))
        self._cross_check = bool(enabled)

    def set_max_iterations(self, n: int) -> None:
        self.estimator.params.set_max_iterations(n)

    def set_reprojection_error(self, px: float) -> None:
        self.estimator.params.set_reprojection_error(px)

    def set_ransac_threshold(self, meters: float) -> None:
        self.estimator.params.set_ransac_threshold(meters)

    def set_min_inlier_count(self, n: int) -> None:
        self.estimator.params.set_min_inlier_count(n)

    def set_consensus_percentage(self, percentage: float) -> None:
        self.estimator.params.set_consensus_percentage(percentage)

    def set_seed(self, seed: Optional[int]) -> None:
        self.estimator.reseed(seed)

    def set_use_vvs(self, enabled: bool) -> None:
        self.estimator.strategy = PoseStrategy.ROBUST_ITERATIVE if enabled else PoseStrategy.CONSENSUS_PNP

    def set_covariance(self, enabled: bool) -> None:
        if enabled and self.estimator.strategy is not PoseStrategy.ROBUST_ITERATIVE:
            log.warning(
                "Covariance is only computed by the robustIterative strategy",
                extra={"extra": {"strategy": self.estimator.strategy.value}},
            )
        self.estimator.params.compute_covariance = bool(enabled)

    def set_detection_method(self, method: Union[DetectionMethod, str]) -> None:
        try:
            self.detection_params.method = DetectionMethod(method)
        except ValueError as e:
            raise InvalidConfiguration(str(e)) from e

    def set_detection_threshold(self, value: float) -> None:
        """Threshold of the current detection method."""
        if self.detection_params.method is DetectionMethod.THRESHOLD_ON_MEAN_DISTANCE:
            self.detection_params.set_mean_distance_threshold(value)
        else:
            self.detection_params.set_score_threshold(value)

    # -----------------------------
    # Keypoints
    # -----------------------------

    def detect(self, image: np.ndarray, roi: Optional[Roi] = None, mask: Optional[np.ndarray] = None) -> List[cv2.KeyPoint]:
        with Stopwatch() as sw:
            kps = detect_all(self._detectors, image, roi=roi, mask=mask)
            if self._grid is not None:
                gx, gy, cap = self._grid
                kps = grid_nms(kps, (image.shape[1], image.shape[0]), grid=(gx, gy), cap_per_cell=cap)
        self.detection_time_ms = sw.ms
        return kps

    def extract(self, image: np.ndarray, keypoints: Sequence[cv2.KeyPoint]) -> Tuple[List[cv2.KeyPoint], np.ndarray]:
        with Stopwatch() as sw:
            kps, des = extract_all(self._extractors, image, keypoints)
        self.extraction_time_ms = sw.ms
        return kps, des

    # -----------------------------
    # Learning
    # -----------------------------

    def build_reference(
        self,
        image: np.ndarray,
        roi: Optional[Roi] = None,
        keypoints: Optional[Sequence[cv2.KeyPoint]] = None,
        points3d: Optional[np.ndarray] = None,
        cMo: Optional[np.ndarray] = None,
        polygons: Optional[Sequence] = None,
    ) -> np.ndarray:
        """Replace the reference database with the keypoints of one image. See add_reference()."""
        fresh = ReferenceDatabase()
        indices = self._learn(fresh, image, roi, image_id=0, keypoints=keypoints,
                              points3d=points3d, cMo=cMo, polygons=polygons)
        self.database = fresh
        return indices

    def add_reference(
        self,
        image: np.ndarray,
        roi: Optional[Roi] = None,
        keypoints: Optional[Sequence[cv2.KeyPoint]] = None,
        points3d: Optional[np.ndarray] = None,
        cMo: Optional[np.ndarray] = None,
        polygons: Optional[Sequence] = None,
        image_id: Optional[int] = None,
    ) -> np.ndarray:
        """
        Learn one more training image.

        Args:
            image: training image.
            roi: (x, y, w, h) detection rectangle.
            keypoints: use these keypoints instead of detecting.
            points3d: (N, 3) object-frame coordinates aligned with `keypoints`.
            cMo, polygons: training pose and planar faces; only keypoints inside a
                           projected face are kept, with their 3-D coordinates.
            image_id: defaults to the next free id.

        Returns:
            Train indices of the added points.
        """
        iid = self.database.next_image_id() if image_id is None else int(image_id)
        return self._learn(self.database, image, roi, image_id=iid, keypoints=keypoints,
                           points3d=points3d, cMo=cMo, polygons=polygons)

    def _learn(
        self,
        db: ReferenceDatabase,
        image: np.ndarray,
        roi: Optional[Roi],
        image_id: int,
        keypoints: Optional[Sequence[cv2.KeyPoint]] = None,
        points3d: Optional[np.ndarray] = None,
        cMo: Optional[np.ndarray] = None,
        polygons: Optional[Sequence] = None,
    ) -> np.ndarray:
        if points3d is not None and keypoints is None:
            raise InvalidArgument("points3d requires the keypoints they belong to")
        if (cMo is None) != (polygons is None):
            raise InvalidArgument("cMo and polygons must be given together")
        if polygons is not None and points3d is not None:
            raise InvalidArgument("give either points3d or cMo/polygons, not both")

        kps = list(keypoints) if keypoints is not None else self.detect(image, roi=roi)
        pts = None
        if points3d is not None:
            pts = np.asarray(points3d, dtype=np.float64)
            if pts.ndim != 2 or pts.shape != (len(kps), 3):
                raise InvalidArgument(f"points3d must have shape ({len(kps)}, 3), got {pts.shape}")
        if polygons is not None:
            if self.camera is None:
                raise InvalidConfiguration("a camera model is required to register keypoints in 3-D")
            kps, pts, _ = compute_3d_in_polygons(np.asarray(cMo, dtype=np.float64), self.camera, kps, polygons)

        described, des = self.extract(image, kps)
        if pts is not None:
            pts = pts[kept_indices(kps, described)]
        indices = db.add(image_id, described, des, pts)
        log.info(
            "Learned training image",
            extra={"extra": {"image_id": image_id, "added": int(indices.size), **db.stats()}},
        )
        return indices

    def save_learning_data(self, path: Union[str, Path], binary: Optional[bool] = None) -> Path:
        return store.save_file(self.database, path, binary=binary)

    def load_learning_data(self, path: Union[str, Path], binary: Optional[bool] = None, append: bool = False) -> None:
        if append:
            merged = ReferenceDatabase()
            merged.extend(self.database)
            store.load_file(path, binary=binary, into=merged)
            self.database = merged
        else:
            self.database = store.load_file(path, binary=binary)

    # -----------------------------
    # Query
    # -----------------------------

    def _matcher_for(self, train_descriptors: np.ndarray) -> Matcher:
        if self._matcher is not None:
            return self._matcher
        return create_matcher(default_matcher_for(train_descriptors), self._cross_check)

    def match(self, image: np.ndarray, roi: Optional[Roi] = None, mask: Optional[np.ndarray] = None) -> MatchList:
        """Detect and describe the query image, then match it against the reference database."""
        kps = self.detect(image, roi=roi, mask=mask)
        kps, des = self.extract(image, kps)
        return self.match_descriptors(kps, des)

    def match_descriptors(self, keypoints: Sequence[cv2.KeyPoint], descriptors: np.ndarray) -> MatchList:
        """Match already extracted query keypoints/descriptors against the reference database."""
        train = self.database.descriptors()
        matcher = self._matcher_for(train)
        knn = self.uses_knn
        matches = matcher.match(descriptors, train, knn=knn, k=max(2, self._knn_k) if knn else 1)
        self.matching_time_ms = matcher.elapsed_ms

        self._reset_query()
        self._query_keypoints = list(keypoints)
        self._query_descriptors = np.asarray(descriptors).copy()
        self._matches = matches
        return matches

    def filter(self) -> FilteredSet:
        """Filter the latest matches with the current policy."""
        kept = filter_matches(self._matches, self._policy, self.filter_params)
        qpos = np.array([kp.pt for kp in self._query_keypoints], dtype=np.float64).reshape(-1, 2)
        fs = FilteredSet.build(
            kept, qpos, self.database.positions(), self.database.points3d(), self.database.has_point3d(),
            policy=self._policy.value,
        )
        self._filtered = fs
        self._pose = None
        self._pose_image_points = np.zeros((0, 2))
        self._pose_positions = np.zeros((0,), dtype=np.int64)
        return fs

    def estimate(
        self,
        strategy: Optional[Union[PoseStrategy, str]] = None,
        accept: Optional[AcceptPredicate] = None,
    ) -> PoseResult:
        """Estimate cMo from the 3-D-bearing matches of the latest filtered set."""
        if self.camera is None:
            raise InvalidConfiguration("a camera model is required for pose estimation")
        fs = self._filtered if self._filtered is not None else self.filter()
        img, obj, positions = fs.pose_pairs()
        self._pose = None
        self._pose_image_points = np.zeros((0, 2))
        self._pose_positions = np.zeros((0,), dtype=np.int64)
        result = self.estimator.estimate(img, obj, self.camera, strategy=strategy, accept=accept)
        self.pose_time_ms = result.elapsed_ms
        self._pose = result
        self._pose_image_points = img
        self._pose_positions = positions
        return result

    def decide(self, method: Optional[Union[DetectionMethod, str]] = None) -> DetectionVerdict:
        fs = self._filtered if self._filtered is not None else self.filter()
        return decide(fs, self._pose, method=method, params=self.detection_params)

    def match_point(self, image: np.ndarray, roi: Optional[Roi] = None) -> int:
        """Match and filter; returns the number of filtered matches."""
        self.match(image, roi=roi)
        return len(self.filter())

    def match_point_and_pose(
        self,
        image: np.ndarray,
        roi: Optional[Roi] = None,
        accept: Optional[AcceptPredicate] = None,
    ) -> PoseResult:
        self.match(image, roi=roi)
        self.filter()
        return self.estimate(accept=accept)

    def match_point_and_detect(self, image: np.ndarray, roi: Optional[Roi] = None, planar: bool = True) -> DetectionVerdict:
        """Match, filter and decide; a present object is also located in the query image."""
        self.match(image, roi=roi)
        fs = self.filter()
        verdict = self.decide()
        if verdict.present:
            loc = locate(fs.train_points(), fs.query_points(), planar=planar)
            if loc.found:
                verdict.bounding_box = loc.bounding_box
                verdict.center = loc.center
            else:
                verdict.present = False
        log.info("Detection", extra={"extra": verdict.to_dict()})
        return verdict

    # -----------------------------
    # Accessors (latest call)
    # -----------------------------

    @property
    def matches(self) -> MatchList:
        return self._matches

    @property
    def filtered_set(self) -> Optional[FilteredSet]:
        return self._filtered

    @property
    def query_keypoints(self) -> List[Keypoint2D]:
        return [Keypoint2D.from_cv(kp) for kp in self._query_keypoints]

    @property
    def query_descriptors(self) -> Optional[np.ndarray]:
        return None if self._query_descriptors is None else self._query_descriptors.copy()

    @property
    def pose(self) -> Optional[PoseResult]:
        return self._pose

    @property
    def ransac_inliers(self) -> np.ndarray:
        """Image points of the pose inliers of the latest estimate."""
        if self._pose is None:
            return np.zeros((0, 2))
        return self._pose_image_points[self._pose.inliers].copy()

    @property
    def ransac_outliers(self) -> np.ndarray:
        if self._pose is None:
            return np.zeros((0, 2))
        return self._pose_image_points[self._pose.outliers].copy()

    @property
    def ransac_inlier_matches(self) -> np.ndarray:
        """Positions in the filtered set of the pose inliers."""
        if self._pose is None:
            return np.zeros((0,), dtype=np.int64)
        return self._pose_positions[self._pose.inliers].copy()

    @property
    def covariance(self) -> Optional[np.ndarray]:
        if self._pose is None or self._pose.covariance is None:
            return None
        return self._pose.covariance.copy()

    @property
    def pose_error(self) -> Optional[float]:
        return None if self._pose is None else self._pose.error
