"""
Object presence decision and image-space localisation.
"""

from detection.decision import DetectionMethod, DetectionParams, decide, match_score
from detection.localize import Localization, locate

__all__ = ["DetectionMethod", "DetectionParams", "Localization", "decide", "locate", "match_score"]
