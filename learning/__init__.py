"""
Learned appearance model: reference database, persistence and 3-D registration
of training keypoints.
"""

from learning.database import ReferenceDatabase
from learning.registration import compute_3d, compute_3d_in_polygons
from learning.store import load, load_file, save, save_file

__all__ = [
    "ReferenceDatabase",
    "compute_3d",
    "compute_3d_in_polygons",
    "load",
    "load_file",
    "save",
    "save_file",
]
