from __future__ import annotations
"""
Learning data persistence.

Two encodings of a ReferenceDatabase, both lossless for every TrainPoint field:
  - text:   a JSON document, one object per train point (inspectable, diffable)
  - binary: a compressed numpy .npz archive of the columnar tables

File helpers pick the encoding from the suffix (.npz -> binary, anything else
-> text) unless told otherwise.
"""

import io
import json
from pathlib import Path
from typing import Any, Dict, Optional, Union

import numpy as np

from common.errors import InvalidArgument
from common.logging_setup import get_logger
from common.types import KEYPOINT_FIELDS
from learning.database import ReferenceDatabase


log = get_logger("learning.store")

FORMAT_NAME = "keypose-learning"
FORMAT_VERSION = 1


# -----------------------------
# Text (JSON)
# -----------------------------

def _to_document(db: ReferenceDatabase) -> Dict[str, Any]:
    rows = db.keypoint_rows()
    ids = db.image_id_array()
    desc = db.descriptors()
    pts = db.points3d()
    has3d = db.has_point3d()
    points = []
    for i in range(db.size()):
        kp = {name: float(v) for name, v in zip(KEYPOINT_FIELDS, rows[i])}
        kp["octave"] = int(rows[i][5])
        kp["class_id"] = int(rows[i][6])
        points.append({
            "train_index": i,
            "image_id": int(ids[i]),
            "keypoint": kp,
            "descriptor": desc[i].tolist(),
            "point3d": [float(v) for v in pts[i]] if has3d[i] else None,
        })
    return {
        "format": FORMAT_NAME,
        "version": FORMAT_VERSION,
        "descriptor": {
            "dtype": None if db.descriptor_dtype is None else np.dtype(db.descriptor_dtype).str,
            "width": int(desc.shape[1]) if db.size() else 0,
        },
        "points": points,
    }


def _from_document(doc: Dict[str, Any]) -> ReferenceDatabase:
    if doc.get("format") != FORMAT_NAME:
        raise InvalidArgument(f"not a learning file (format={doc.get('format')!r})")
    if int(doc.get("version", -1)) > FORMAT_VERSION:
        raise InvalidArgument(f"unsupported learning file version {doc.get('version')}")
    points = doc.get("points", [])
    n = len(points)
    if n == 0:
        return ReferenceDatabase()

    dtype = np.dtype(doc["descriptor"]["dtype"])
    width = int(doc["descriptor"]["width"])
    rows = np.zeros((n, len(KEYPOINT_FIELDS)), dtype=np.float64)
    ids = np.zeros((n,), dtype=np.int64)
    desc = np.zeros((n, width), dtype=dtype)
    pts = np.full((n, 3), np.nan, dtype=np.float64)
    for i, p in enumerate(points):
        if int(p["train_index"]) != i:
            raise InvalidArgument(f"train indices must be dense and ordered; entry {i} has {p['train_index']}")
        kp = p["keypoint"]
        rows[i] = [float(kp[name]) for name in KEYPOINT_FIELDS]
        ids[i] = int(p["image_id"])
        d = p["descriptor"]
        if len(d) != width:
            raise InvalidArgument(f"descriptor {i} has width {len(d)}, expected {width}")
        desc[i] = np.asarray(d, dtype=dtype)
        if p.get("point3d") is not None:
            pts[i] = [float(v) for v in p["point3d"]]
    return ReferenceDatabase.from_arrays(rows, ids, desc, pts)


# -----------------------------
# Binary (npz)
# -----------------------------

def _to_npz(db: ReferenceDatabase) -> bytes:
    buf = io.BytesIO()
    np.savez_compressed(
        buf,
        format=np.array(FORMAT_NAME),
        version=np.array(FORMAT_VERSION, dtype=np.int64),
        keypoints=db.keypoint_rows(),
        image_ids=db.image_id_array(),
        descriptors=db.descriptors(),
        points3d=db.points3d(),
    )
    return buf.getvalue()


def _from_npz(blob: bytes) -> ReferenceDatabase:
    try:
        with np.load(io.BytesIO(blob), allow_pickle=False) as z:
            if str(z["format"]) != FORMAT_NAME:
                raise InvalidArgument(f"not a learning archive (format={str(z['format'])!r})")
            if int(z["version"]) > FORMAT_VERSION:
                raise InvalidArgument(f"unsupported learning archive version {int(z['version'])}")
            rows = z["keypoints"]
            ids = z["image_ids"]
            desc = z["descriptors"]
            pts = z["points3d"]
    except (ValueError, KeyError, OSError) as e:
        if isinstance(e, InvalidArgument):
            raise
        raise InvalidArgument(f"corrupt learning archive: {e}") from e
    if rows.shape[0] == 0:
        return ReferenceDatabase()
    return ReferenceDatabase.from_arrays(rows, ids, desc, pts)


# -----------------------------
# Public API
# -----------------------------

def save(db: ReferenceDatabase, binary: bool = False) -> bytes:
    """Encode the database; text encoding is UTF-8 JSON."""
    if binary:
        return _to_npz(db)
    return json.dumps(_to_document(db), ensure_ascii=False).encode("utf-8")


def load(blob: Union[bytes, str], binary: bool = False) -> ReferenceDatabase:
    """Decode a blob produced by save(); raises InvalidArgument on malformed input."""
    if binary:
        if isinstance(blob, str):
            raise InvalidArgument("binary learning data must be bytes")
        return _from_npz(blob)
    try:
        doc = json.loads(blob)
    except json.JSONDecodeError as e:
        raise InvalidArgument(f"learning file is not valid JSON: {e}") from e
    try:
        return _from_document(doc)
    except (KeyError, TypeError) as e:
        raise InvalidArgument(f"malformed learning file: missing or invalid field {e}") from e


def _is_binary_path(path: Path, binary: Optional[bool]) -> bool:
    return binary if binary is not None else path.suffix.lower() == ".npz"


def save_file(db: ReferenceDatabase, path: Union[str, Path], binary: Optional[bool] = None) -> Path:
    p = Path(path)
    is_bin = _is_binary_path(p, binary)
    p.parent.mkdir(parents=True, exist_ok=True)
    p.write_bytes(save(db, binary=is_bin))
    log.info("Saved learning data", extra={"extra": {"path": str(p), "binary": is_bin, **db.stats()}})
    return p


def load_file(
    path: Union[str, Path],
    binary: Optional[bool] = None,
    into: Optional[ReferenceDatabase] = None,
) -> ReferenceDatabase:
    """
    Load learning data from disk.

    Args:
        path: file written by save_file().
        binary: force the encoding; inferred from the suffix when None.
        into: append to this database instead of returning a new one; appended
              image ids are shifted past the ones already present.
    """
    p = Path(path)
    if not p.exists():
        raise FileNotFoundError(f"Learning file not found: {p}")
    is_bin = _is_binary_path(p, binary)
    loaded = load(p.read_bytes(), binary=is_bin)
    if into is None:
        db = loaded
    else:
        into.extend(loaded, offset_image_ids=True)
        db = into
    log.info("Loaded learning data", extra={"extra": {"path": str(p), "binary": is_bin, "append": into is not None, **db.stats()}})
    return db
