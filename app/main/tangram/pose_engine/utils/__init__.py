"""Geometry and coordinate helpers (angles, feature folding, polygons, homography)"""
from .geometry import (
    VISUAL_SCALE,
    normalize_angle,
    angle_difference,
    piece_feature_angle,
    target_feature_angle,
    symmetric_angle_distance,
    rotation_difference_to_nearest,
    expected_piece_rotation,
    piece_polygon,
    polygon_gap,
)
from .homography import HomographyAdapter, DegenerateTransformError

__all__ = [
    "VISUAL_SCALE",
    "normalize_angle",
    "angle_difference",
    "piece_feature_angle",
    "target_feature_angle",
    "symmetric_angle_distance",
    "rotation_difference_to_nearest",
    "expected_piece_rotation",
    "piece_polygon",
    "polygon_gap",
    "HomographyAdapter",
    "DegenerateTransformError",
]
