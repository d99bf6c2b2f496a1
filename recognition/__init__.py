"""
Keypoint recognition pipeline: learning, matching, filtering, pose recovery and
detection behind one single-flight object, plus the command line entry point.

Usage:
    python -m recognition.cli learn --out model.json train.png
    python -m recognition.cli detect --model model.json query.png
"""

from recognition.pipeline import KeyPointPipeline

__all__ = ["KeyPointPipeline"]
