from __future__ import annotations

"""
Error kinds raised by the recognition pipeline.

All of them are raised synchronously at the call site; a call that raises
leaves the object it was called on unchanged.
"""


class KeyPoseError(Exception):
    """Base class for every error raised by this project."""


class InvalidArgument(KeyPoseError, ValueError):
    """Malformed or mismatched inputs (lengths, shapes, dtypes)."""


class InvalidConfiguration(KeyPoseError, ValueError):
    """Out-of-range parameter or an unsatisfiable policy/strategy combination."""


class InsufficientCorrespondences(KeyPoseError):
    """Fewer than the four 2-D/3-D pairs a pose needs."""

    def __init__(self, count: int, required: int = 4):
        super().__init__(f"Pose estimation needs at least {required} correspondences, got {count}")
        self.count = count
        self.required = required


class PoseEstimationFailed(KeyPoseError, RuntimeError):
    """No pose reached the inlier target within the iteration budget."""

    def __init__(self, message: str, inliers: int = 0, required: int = 0):
        super().__init__(message)
        self.inliers = inliers
        self.required = required
