from __future__ import annotations
"""
Command line entry point.

    python -m recognition.cli learn  --config config/params.yaml --out model.json img1.png [img2.png ...]
    python -m recognition.cli detect --config config/params.yaml --model model.json query.png [...]
    python -m recognition.cli info   model.json

learn:  builds the reference database from training images (optionally
        restricted to --roi x,y,w,h) and saves it (.npz -> binary encoding).
detect: prints one JSON row per query image with the detection verdict and,
        when the model carries 3-D points and a camera is configured, the pose.
"""

import argparse
import json
import sys
from pathlib import Path
from typing import Dict, List, Optional, Tuple

import cv2

from common.config import PipelineConfig
from common.errors import KeyPoseError
from common.logging_setup import get_logger, setup_logging
from common.utils import iso_now_ms
from learning import store
from recognition.pipeline import KeyPointPipeline


log = get_logger("recognition.cli")


def _parse_roi(s: Optional[str]) -> Optional[Tuple[int, int, int, int]]:
    if not s:
        return None
    parts = [int(v) for v in s.replace("x", ",").split(",")]
    if len(parts) != 4:
        raise argparse.ArgumentTypeError(f"ROI must be x,y,w,h, got {s!r}")
    return parts[0], parts[1], parts[2], parts[3]


def _read_image(path: str):
    img = cv2.imread(path, cv2.IMREAD_COLOR)
    if img is None:
        raise FileNotFoundError(f"Cannot read image: {path}")
    return img


def _load_config(path: Optional[str]) -> PipelineConfig:
    if path and Path(path).exists():
        return PipelineConfig.from_yaml(path)
    if path:
        log.warning("Config file not found, using defaults", extra={"extra": {"path": path}})
    return PipelineConfig()


def _write_row(out, row: Dict) -> None:
    out.write(json.dumps(row) + "\n")
    out.flush()


def cmd_learn(args, cfg: PipelineConfig) -> int:
    kp = KeyPointPipeline(cfg)
    roi = _parse_roi(args.roi)
    for path in args.images:
        kp.add_reference(_read_image(path), roi=roi)
    p = kp.save_learning_data(args.out)
    _write_row(sys.stdout, {"ts": iso_now_ms(), "model": str(p), **kp.database.stats()})
    return 0


def cmd_detect(args, cfg: PipelineConfig) -> int:
    kp = KeyPointPipeline(cfg)
    kp.load_learning_data(args.model)
    roi = _parse_roi(args.roi)
    with_pose = kp.camera is not None and kp.database.n_points3d() > 0 and not args.no_pose

    rc = 0
    for path in args.images:
        row: Dict = {"ts": iso_now_ms(), "image": path}
        verdict = kp.match_point_and_detect(_read_image(path), roi=roi, planar=not args.non_planar)
        row.update(verdict.to_dict())
        row["timing_ms"] = {
            "detection": round(kp.detection_time_ms, 3),
            "extraction": round(kp.extraction_time_ms, 3),
            "matching": round(kp.matching_time_ms, 3),
        }
        if with_pose and verdict.present:
            try:
                pose = kp.estimate()
            except KeyPoseError as e:
                log.warning("Pose not estimated", extra={"extra": {"image": path, "err": str(e)}})
                row["pose"] = None
                rc = 2
            else:
                row["pose"] = pose.to_dict()
                row["timing_ms"]["pose"] = round(kp.pose_time_ms, 3)
        _write_row(sys.stdout, row)
    return rc


def cmd_info(args, cfg: PipelineConfig) -> int:
    db = store.load_file(args.model)
    _write_row(sys.stdout, {"model": args.model, "image_ids": db.image_ids(), **db.stats()})
    return 0


def build_parser() -> argparse.ArgumentParser:
    ap = argparse.ArgumentParser(description="Keypoint object recognition and pose recovery")
    ap.add_argument("--config", default="config/params.yaml")
    ap.add_argument("--log-level", default=None)
    sub = ap.add_subparsers(dest="command", required=True)

    a = sub.add_parser("learn", help="Build a reference model from training images")
    a.add_argument("images", nargs="+")
    a.add_argument("--out", required=True, help="Output model (.json text, .npz binary)")
    a.add_argument("--roi", default=None, help="Detection rectangle x,y,w,h")
    a.set_defaults(func=cmd_learn)

    d = sub.add_parser("detect", help="Detect the learned object in query images")
    d.add_argument("images", nargs="+")
    d.add_argument("--model", required=True)
    d.add_argument("--roi", default=None)
    d.add_argument("--non-planar", action="store_true", help="Localise with a fundamental matrix instead of a homography")
    d.add_argument("--no-pose", action="store_true")
    d.set_defaults(func=cmd_detect)

    i = sub.add_parser("info", help="Summarise a saved model")
    i.add_argument("model")
    i.set_defaults(func=cmd_info)
    return ap


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    cfg = _load_config(args.config)
    setup_logging(args.log_level or cfg.log_level, cfg.log_format, force=True)
    try:
        return int(args.func(args, cfg))
    except (KeyPoseError, FileNotFoundError) as e:
        log.error("Command failed", extra={"extra": {"command": args.command, "err": str(e)}})
        return 1


if __name__ == "__main__":
    sys.exit(main())
