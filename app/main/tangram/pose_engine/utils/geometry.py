"""
Geometry Utilities.

Pure, stateless helpers shared by mapping, pairing and validation:
- Angle normalization and signed/absolute differences
- Feature angles: rotations folded by a shape-specific canonical offset so that
  visually equivalent orientations compare equal
- Shape-symmetric angular distance (square: pi/2 period, others: pi)
- Rotational-symmetry fold used by the tolerance validator
- Canonical piece vertices, target/piece polygons, convex polygon gap (SAT)

Feature angle convention:
    piece:  rotation + (flipped ? -cp : cp),  cp = 3*pi/4 for triangles, else 0
    target: rotation + ct,                    ct = pi/4 for triangles, else 0

    A triangle target stored at 45° therefore matches a piece at -45° + 135°
    (the stored target convention and the piece convention differ by cp - ct).
"""

from __future__ import annotations
import math
from typing import Iterable, Optional, TYPE_CHECKING
import numpy as np

from ..models import PieceType, ShapeFamily

if TYPE_CHECKING:
    from ..models import TargetPiece, Point

VISUAL_SCALE = 50.0
"""Scene units per canonical unit edge"""

TWO_PI = 2.0 * math.pi
EPS = 1e-9

_SQRT2 = math.sqrt(2.0)
_NORMALIZED_VERTICES: dict[ShapeFamily, np.ndarray] = {
    ShapeFamily.SMALL_TRIANGLE: np.array([[0.0, 0.0], [1.0, 0.0], [0.0, 1.0]]),
    ShapeFamily.MEDIUM_TRIANGLE: np.array([[0.0, 0.0], [_SQRT2, 0.0], [0.0, _SQRT2]]),
    ShapeFamily.LARGE_TRIANGLE: np.array([[0.0, 0.0], [2.0, 0.0], [0.0, 2.0]]),
    ShapeFamily.SQUARE: np.array([[0.0, 0.0], [1.0, 0.0], [1.0, 1.0], [0.0, 1.0]]),
    ShapeFamily.PARALLELOGRAM: np.array([
        [0.0, 0.0], [_SQRT2, 0.0], [_SQRT2 / 2, _SQRT2 / 2], [-_SQRT2 / 2, _SQRT2 / 2]
    ]),
}


# ========== Angles ==========

def normalize_angle(angle: float) -> float:
    """
    Normalize angle into [-pi, pi].

    Example:
        >>> round(normalize_angle(3 * math.pi / 2), 6) == round(-math.pi / 2, 6)
        True
    """
    a = math.fmod(angle, TWO_PI)
    if a > math.pi:
        a -= TWO_PI
    elif a < -math.pi:
        a += TWO_PI
    return a


def angle_difference(a: float, b: float) -> float:
    """Signed difference b - a, wrapped into [-pi, pi]."""
    return normalize_angle(b - a)


def canonical_piece_offset(piece_type: PieceType) -> float:
    return 3.0 * math.pi / 4.0 if piece_type.is_triangle else 0.0


def canonical_target_offset(piece_type: PieceType) -> float:
    return math.pi / 4.0 if piece_type.is_triangle else 0.0


def signed_piece_offset(piece_type: PieceType, flipped: bool) -> float:
    cp = canonical_piece_offset(piece_type)
    return -cp if flipped else cp


def piece_feature_angle(rotation: float, piece_type: PieceType, flipped: bool) -> float:
    """Feature angle of an observed (or mapped) piece."""
    return normalize_angle(rotation + signed_piece_offset(piece_type, flipped))


def target_feature_angle(rotation: float, piece_type: PieceType) -> float:
    """Feature angle of a target stored with the given rotation."""
    return normalize_angle(rotation + canonical_target_offset(piece_type))


def target_feature(target: TargetPiece) -> float:
    return target_feature_angle(target.rotation, target.piece_type)


def symmetry_period(piece_type: PieceType) -> float:
    """Period of shape-symmetric equivalence: pi/2 for the square, pi otherwise."""
    if piece_type.shape is ShapeFamily.SQUARE:
        return math.pi / 2.0
    return math.pi


def symmetric_angle_distance(a: float, b: float, piece_type: PieceType) -> float:
    """
    Minimal rotational distance between two feature angles modulo the shape period.

    Returns:
        Distance in radians, range [0, period/2]

    Example:
        >>> symmetric_angle_distance(0.1, 0.1 + math.pi / 2, PieceType.SQUARE) < 1e-9
        True
    """
    period = symmetry_period(piece_type)
    return abs(math.remainder(a - b, period))


def rotation_symmetry_fold(piece_type: PieceType, flipped: bool) -> int:
    """
    Rotational symmetry order used by the tolerance validator.

    Notes:
        - Square: 4-fold
        - Parallelogram: 2-fold, but 1 when flipped (mirror image breaks the pairing)
        - Triangles: 1 (feature angle already disambiguates them)
    """
    if piece_type is PieceType.SQUARE:
        return 4
    if piece_type is PieceType.PARALLELOGRAM:
        return 1 if flipped else 2
    return 1


def nearest_valid_rotation(current: float, target: float, piece_type: PieceType, flipped: bool) -> float:
    """Target-equivalent rotation (under the symmetry fold) closest to current."""
    fold = rotation_symmetry_fold(piece_type, flipped)
    step = TWO_PI / fold
    best = normalize_angle(target)
    best_abs = abs(angle_difference(current, best))
    for k in range(1, fold):
        candidate = normalize_angle(target + k * step)
        diff = abs(angle_difference(current, candidate))
        if diff < best_abs:
            best, best_abs = candidate, diff
    return best


def rotation_difference_to_nearest(current: float, target: float, piece_type: PieceType, flipped: bool) -> float:
    """Signed difference from current to the nearest target-equivalent rotation."""
    nearest = nearest_valid_rotation(current, target, piece_type, flipped)
    return angle_difference(current, nearest)


def is_rotation_valid(
    current: float,
    target: float,
    piece_type: PieceType,
    flipped: bool,
    tolerance_deg: float
) -> bool:
    diff = rotation_difference_to_nearest(current, target, piece_type, flipped)
    return abs(diff) <= math.radians(tolerance_deg)


def expected_piece_rotation(target: TargetPiece, flipped: Optional[bool] = None) -> float:
    """
    Piece rotation whose feature angle equals the target feature angle.

    Args:
        target: Target piece
        flipped: Piece mirror state (default: the target's own mirror state)

    Returns:
        normalize(target.rotation + ct - signed cp)
    """
    if flipped is None:
        flipped = target.is_flipped
    offset = canonical_target_offset(target.piece_type) - signed_piece_offset(target.piece_type, flipped)
    return normalize_angle(target.rotation + offset)


# ========== Points ==========

def rotate_point(p: Point, theta: float) -> Point:
    cos_t = math.cos(theta)
    sin_t = math.sin(theta)
    return (p[0] * cos_t - p[1] * sin_t, p[0] * sin_t + p[1] * cos_t)


def distance(p: Point, q: Point) -> float:
    return math.hypot(p[0] - q[0], p[1] - q[1])


def centroid(points: Iterable[Point]) -> Point:
    """Mean of points; (0, 0) for an empty input."""
    pts = list(points)
    if not pts:
        return (0.0, 0.0)
    sx = sum(p[0] for p in pts)
    sy = sum(p[1] for p in pts)
    return (sx / len(pts), sy / len(pts))


def is_finite_point(p: Point) -> bool:
    return math.isfinite(p[0]) and math.isfinite(p[1])


# ========== Polygons ==========

def normalized_vertices(piece_type: PieceType) -> np.ndarray:
    """Canonical vertices (unit edge = 1) of the piece's shape family, shape (N, 2)."""
    return _NORMALIZED_VERTICES[piece_type.shape].copy()


def target_vertices(target: TargetPiece) -> np.ndarray:
    """Target polygon: scaled canonical vertices through the target transform."""
    return target.transform.apply(normalized_vertices(target.piece_type) * VISUAL_SCALE)


def piece_polygon(piece_type: PieceType, position: Point, rotation: float, flipped: bool) -> np.ndarray:
    """
    Polygon of an observed piece centered on its reported position.

    Notes:
        - Local frame = scaled canonical vertices centered on their centroid,
          y mirrored when flipped
        - Rotated by (piece feature angle - ct), so a piece at
          expected_piece_rotation(target) covers the target polygon exactly
    """
    local = normalized_vertices(piece_type) * VISUAL_SCALE
    local -= local.mean(axis=0)
    if flipped:
        local[:, 1] *= -1.0
    theta = piece_feature_angle(rotation, piece_type, flipped) - canonical_target_offset(piece_type)
    cos_t = math.cos(theta)
    sin_t = math.sin(theta)
    rot = np.array([[cos_t, -sin_t], [sin_t, cos_t]])
    return local @ rot.T + np.asarray(position, dtype=float)


def _ensure_ccw(poly: np.ndarray) -> np.ndarray:
    """Reverse polygon if its signed area is negative."""
    x = poly[:, 0]
    y = poly[:, 1]
    signed_area = 0.5 * (np.dot(x, np.roll(y, -1)) - np.dot(np.roll(x, -1), y))
    if signed_area < 0:
        return np.flipud(poly)
    return poly


def _edge_normals(poly: np.ndarray) -> np.ndarray:
    edges = np.roll(poly, -1, axis=0) - poly
    normals = np.column_stack([-edges[:, 1], edges[:, 0]])
    norms = np.linalg.norm(normals, axis=1, keepdims=True)
    norms[norms < EPS] = 1.0
    return normals / norms


def convex_polygons_overlap(poly_a: np.ndarray, poly_b: np.ndarray) -> bool:
    """
    SAT overlap test for convex polygons.

    Notes:
        - Touching edges (projection gap within EPS) count as overlap
        - All tangram pieces are convex, no triangulation needed
    """
    poly_a = _ensure_ccw(np.asarray(poly_a, dtype=float))
    poly_b = _ensure_ccw(np.asarray(poly_b, dtype=float))
    for axis in np.vstack([_edge_normals(poly_a), _edge_normals(poly_b)]):
        proj_a = poly_a @ axis
        proj_b = poly_b @ axis
        if proj_a.max() < proj_b.min() - EPS or proj_b.max() < proj_a.min() - EPS:
            return False
    return True


def _point_segment_distance(p: np.ndarray, a: np.ndarray, b: np.ndarray) -> float:
    ab = b - a
    denom = float(ab @ ab)
    if denom < EPS:
        return float(np.linalg.norm(p - a))
    t = float(np.clip((p - a) @ ab / denom, 0.0, 1.0))
    return float(np.linalg.norm(p - (a + t * ab)))


def polygon_gap(poly_a: np.ndarray, poly_b: np.ndarray) -> float:
    """
    Minimum distance between two convex polygons (0.0 if they overlap or touch).

    Algorithm:
        1. SAT overlap test -> 0.0
        2. Otherwise min vertex-to-edge distance in both directions
    """
    poly_a = np.asarray(poly_a, dtype=float)
    poly_b = np.asarray(poly_b, dtype=float)
    if convex_polygons_overlap(poly_a, poly_b):
        return 0.0

    best = math.inf
    for src, dst in ((poly_a, poly_b), (poly_b, poly_a)):
        n = len(dst)
        for p in src:
            for i in range(n):
                d = _point_segment_distance(p, dst[i], dst[(i + 1) % n])
                if d < best:
                    best = d
    return best
