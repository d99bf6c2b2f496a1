from __future__ import annotations
"""
Pipeline configuration loaded from YAML (config/params.yaml).

Sections:
  features:  detectors, extractors, nfeatures, fast_threshold, grid_nms
  matching:  matcher, cross_check, filter_policy, factor, ratio, unique_train, knn_k
  pose:      strategy + PoseParams fields
  detection: method, mean_distance_threshold, score_threshold
  logging:   level, format
  camera:    path to an intrinsics YAML (relative to the config file) or inline fields

Every section is optional; values are validated when the parameter objects are built.
"""

from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple, Union

import yaml

from common.errors import InvalidConfiguration
from detection.decision import DetectionParams
from matching.filters import FilterParams, FilterPolicy
from pose.camera import CameraModel
from pose.params import PoseParams, PoseStrategy


@dataclass
class FeatureConfig:
    detectors: List[str] = field(default_factory=lambda: ["ORB"])
    extractors: List[str] = field(default_factory=lambda: ["ORB"])
    nfeatures: int = 2000
    fast_threshold: int = 12
    grid_nms: Optional[Tuple[int, int, int]] = None   # (cells x, cells y, cap per cell)

    @classmethod
    def from_dict(cls, D: Dict) -> "FeatureConfig":
        det = D.get("detectors", D.get("detector", ["ORB"]))
        if isinstance(det, str):
            det = [det]
        if not det:
            raise InvalidConfiguration("features.detectors must name at least one detector")
        ext = D.get("extractors", D.get("extractor", ["ORB"]))
        if isinstance(ext, str):
            ext = [ext]
        if not ext:
            raise InvalidConfiguration("features.extractors must name at least one extractor")
        g = D.get("grid_nms")
        grid = None
        if g:
            grid = (int(g.get("cols", 8)), int(g.get("rows", 8)), int(g.get("cap_per_cell", 60)))
        return cls(
            detectors=[str(d) for d in det],
            extractors=[str(e) for e in ext],
            nfeatures=int(D.get("nfeatures", 2000)),
            fast_threshold=int(D.get("fast_threshold", 12)),
            grid_nms=grid,
        )


@dataclass
class MatchingConfig:
    matcher: Optional[str] = None            # None -> Hamming for binary descriptors, L2 otherwise
    cross_check: bool = False
    filter_policy: FilterPolicy = FilterPolicy.RATIO
    knn_k: int = 2
    filter: FilterParams = field(default_factory=FilterParams)

    @classmethod
    def from_dict(cls, D: Dict) -> "MatchingConfig":
        try:
            policy = FilterPolicy(D.get("filter_policy", FilterPolicy.RATIO.value))
        except ValueError as e:
            raise InvalidConfiguration(str(e)) from e
        k = int(D.get("knn_k", 2))
        if k < 1:
            raise InvalidConfiguration("matching.knn_k must be >= 1")
        return cls(
            matcher=D.get("matcher"),
            cross_check=bool(D.get("cross_check", False)),
            filter_policy=policy,
            knn_k=k,
            filter=FilterParams.from_dict(D),
        )


@dataclass
class PipelineConfig:
    features: FeatureConfig = field(default_factory=FeatureConfig)
    matching: MatchingConfig = field(default_factory=MatchingConfig)
    pose: PoseParams = field(default_factory=PoseParams)
    strategy: PoseStrategy = PoseStrategy.CONSENSUS_PNP
    detection: DetectionParams = field(default_factory=DetectionParams)
    log_level: str = "INFO"
    log_format: str = "json"
    camera: Optional[CameraModel] = None

    @classmethod
    def from_dict(cls, D: Optional[Dict[str, Any]], base_dir: Optional[Path] = None) -> "PipelineConfig":
        D = D or {}
        P = dict(D.get("pose") or {})
        try:
            strategy = PoseStrategy(P.pop("strategy", PoseStrategy.CONSENSUS_PNP.value))
            pose = PoseParams.from_dict(P)
            detection = DetectionParams.from_dict(D.get("detection") or {})
        except ValueError as e:
            if isinstance(e, InvalidConfiguration):
                raise
            raise InvalidConfiguration(str(e)) from e
        L = D.get("logging") or {}
        return cls(
            features=FeatureConfig.from_dict(D.get("features") or {}),
            matching=MatchingConfig.from_dict(D.get("matching") or {}),
            pose=pose,
            strategy=strategy,
            detection=detection,
            log_level=str(L.get("level", "INFO")),
            log_format=str(L.get("format", "json")),
            camera=_camera(D.get("camera"), base_dir),
        )

    @classmethod
    def from_yaml(cls, path: Union[str, Path]) -> "PipelineConfig":
        p = Path(path)
        with p.open("r") as f:
            D = yaml.safe_load(f) or {}
        if not isinstance(D, dict):
            raise InvalidConfiguration(f"{p}: expected a mapping at the top level")
        return cls.from_dict(D, base_dir=p.parent)


def _camera(C, base_dir: Optional[Path]) -> Optional[CameraModel]:
    if C is None:
        return None
    if isinstance(C, str):
        p = Path(C)
        if not p.is_absolute() and base_dir is not None:
            p = base_dir / p
        return CameraModel.from_yaml(str(p))
    return CameraModel.from_dict(C)
