"""
Forward/inverse application of an AnchorMapping.

Two conventions (see MappingKind):
    GLOBAL:           p' = R·p + T
    ANCHOR_RELATIVE:  p' = anchor + T + R·(p - anchor)

Both: rot' = rot + delta. Only parallelograms are chiral, so flip parity
is applied to parallelogram poses alone: flip' = flip XOR parity.
"""

from __future__ import annotations
from typing import Optional
import math
import numpy as np

from ..models import AnchorMapping, MappingKind, MappedPose, PieceType, Point
from ..utils.geometry import rotate_point, normalize_angle


def _apply_parity(mapping: AnchorMapping, flipped: bool, piece_type: Optional[PieceType]) -> bool:
    if piece_type is PieceType.PARALLELOGRAM:
        return flipped != mapping.flip_parity
    return flipped


def _require_anchor(mapping: AnchorMapping, anchor_position: Optional[Point]) -> Point:
    if anchor_position is None:
        raise ValueError(
            f"ANCHOR_RELATIVE mapping (anchor={mapping.anchor_piece_id}) needs anchor_position"
        )
    return anchor_position


def map_point(mapping: AnchorMapping, point: Point, anchor_position: Optional[Point] = None) -> Point:
    """Map one scene point into target space."""
    tx, ty = mapping.translation_offset
    if mapping.kind is MappingKind.GLOBAL:
        rx, ry = rotate_point(point, mapping.rotation_delta)
        return (rx + tx, ry + ty)

    ax, ay = _require_anchor(mapping, anchor_position)
    rx, ry = rotate_point((point[0] - ax, point[1] - ay), mapping.rotation_delta)
    return (ax + tx + rx, ay + ty + ry)


def map_piece_to_target_space(
    mapping: AnchorMapping,
    position: Point,
    rotation: float,
    flipped: bool,
    anchor_position: Optional[Point] = None,
    piece_type: Optional[PieceType] = None
) -> MappedPose:
    """
    Map an observed piece pose into target space.

    Args:
        mapping: Group mapping
        position: Piece centroid (scene frame)
        rotation: Piece rotation (scene frame, radians)
        flipped: Piece mirror state
        anchor_position: Current scene position of the anchor piece
                         (required for ANCHOR_RELATIVE, ignored for GLOBAL)
        piece_type: Shape of the piece; flip parity only touches parallelograms

    Returns:
        MappedPose (rotation not normalized, callers fold via feature angles)

    Raises:
        ValueError: ANCHOR_RELATIVE mapping without anchor_position
    """
    mapped = map_point(mapping, position, anchor_position)
    return MappedPose(
        position=mapped,
        rotation=rotation + mapping.rotation_delta,
        is_flipped=_apply_parity(mapping, flipped, piece_type),
    )


def inverse_map_target_to_physical(
    mapping: AnchorMapping,
    target_point: Point,
    anchor_position: Optional[Point] = None
) -> Point:
    """
    Exact inverse of map_point.

    GLOBAL:           R(-delta)·(q - T)
    ANCHOR_RELATIVE:  anchor + R(-delta)·(q - anchor - T)
    """
    tx, ty = mapping.translation_offset
    if mapping.kind is MappingKind.GLOBAL:
        return rotate_point((target_point[0] - tx, target_point[1] - ty), -mapping.rotation_delta)

    ax, ay = _require_anchor(mapping, anchor_position)
    rx, ry = rotate_point(
        (target_point[0] - ax - tx, target_point[1] - ay - ty),
        -mapping.rotation_delta
    )
    return (ax + rx, ay + ry)


def inverse_map_pose(
    mapping: AnchorMapping,
    target_position: Point,
    target_rotation: float,
    target_flipped: bool,
    anchor_position: Optional[Point] = None,
    piece_type: Optional[PieceType] = None
) -> MappedPose:
    """Inverse-map a full pose (target space -> scene frame)."""
    return MappedPose(
        position=inverse_map_target_to_physical(mapping, target_position, anchor_position),
        rotation=normalize_angle(target_rotation - mapping.rotation_delta),
        is_flipped=_apply_parity(mapping, target_flipped, piece_type),
    )


def inverse_map_polygon(
    mapping: AnchorMapping,
    polygon: np.ndarray,
    anchor_position: Optional[Point] = None
) -> np.ndarray:
    """Inverse-map every vertex of a target-space polygon, shape (N, 2)."""
    points = [inverse_map_target_to_physical(mapping, (float(x), float(y)), anchor_position) for x, y in polygon]
    return np.array(points, dtype=float).reshape(-1, 2)


def mapping_distance(a: AnchorMapping, b: AnchorMapping) -> tuple[float, float]:
    """
    Difference between two mappings.

    Returns:
        (rotation difference in degrees, translation difference)
    """
    d_theta = abs(math.degrees(normalize_angle(b.rotation_delta - a.rotation_delta)))
    d_trans = math.hypot(
        a.translation_offset[0] - b.translation_offset[0],
        a.translation_offset[1] - b.translation_offset[1]
    )
    return d_theta, d_trans
