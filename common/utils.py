from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
import time
import numpy as np


def iso_now_ms() -> str:
    """UTC ISO-8601 timestamp with millisecond precision."""
    return datetime.now(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass(slots=True)
class Stopwatch:
    """
    Elapsed wall time in milliseconds.

    Usage:
        with Stopwatch() as sw:
            # work...
        log.info("done", extra={"extra": {"ms": sw.ms}})
    """
    _t0: float = 0.0
    ms: float = 0.0

    def __enter__(self) -> "Stopwatch":
        self._t0 = time.perf_counter()
        return self

    def __exit__(self, *exc) -> None:
        self.ms = (time.perf_counter() - self._t0) * 1e3


def as_points(x, dim: int, name: str = "points") -> np.ndarray:
    """Coerce a sequence of points to a float64 (N, dim) array; raises ValueError on bad shape."""
    a = np.asarray(x, dtype=np.float64)
    if a.size == 0:
        return np.zeros((0, dim), dtype=np.float64)
    a = a.reshape(-1, dim) if a.ndim != 2 and a.size % dim == 0 else a
    if a.ndim != 2 or a.shape[1] != dim:
        raise ValueError(f"{name} must have shape (N,{dim}), got {np.shape(x)}")
    return a

