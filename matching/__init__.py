"""
Keypoint families, descriptor matchers and correspondence filters.
"""

from matching.features import FeatureExtractor, available_families, detect_all, register_family
from matching.filters import FilterParams, FilterPolicy, filter_matches
from matching.matcher import Matcher, available_matchers, create_matcher, register_matcher

__all__ = [
    "FeatureExtractor",
    "FilterParams",
    "FilterPolicy",
    "Matcher",
    "available_families",
    "available_matchers",
    "create_matcher",
    "detect_all",
    "filter_matches",
    "register_family",
    "register_matcher",
]
