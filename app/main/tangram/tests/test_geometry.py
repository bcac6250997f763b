"""
Tests for geometry helpers: angles, feature angles, symmetry folds and polygons.
"""

import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import math
import pytest
import numpy as np
from pose_engine.config import AffineTransform
from pose_engine.models import PieceType, TargetPiece
from pose_engine.puzzles import load_puzzle
from pose_engine.utils.geometry import (
    angle_difference,
    convex_polygons_overlap,
    expected_piece_rotation,
    is_rotation_valid,
    normalize_angle,
    piece_feature_angle,
    piece_polygon,
    polygon_gap,
    rotation_difference_to_nearest,
    rotation_symmetry_fold,
    symmetric_angle_distance,
    target_feature,
    target_feature_angle,
)

EPS = 1e-9


def square_poly(x0=0.0, y0=0.0, size=10.0):
    return np.array([[x0, y0], [x0 + size, y0], [x0 + size, y0 + size], [x0, y0 + size]], dtype=float)


# ========== Angles ==========

@pytest.mark.parametrize("angle, expected", [
    (0.0, 0.0),
    (3 * math.pi / 2, -math.pi / 2),
    (-3 * math.pi / 2, math.pi / 2),
    (4 * math.pi + 0.25, 0.25),
])
def test_normalize_angle(angle, expected):
    assert normalize_angle(angle) == pytest.approx(expected, abs=1e-9)


def test_angle_difference_wraps():
    a = math.radians(170)
    b = math.radians(-170)
    assert math.degrees(angle_difference(a, b)) == pytest.approx(20.0)
    assert math.degrees(angle_difference(b, a)) == pytest.approx(-20.0)


def test_feature_angles_triangle_offsets():
    # piece: +135° (unflipped), -135° (flipped); target: +45°
    assert math.degrees(piece_feature_angle(0.0, PieceType.SMALL_TRIANGLE_1, False)) == pytest.approx(135.0)
    assert math.degrees(piece_feature_angle(0.0, PieceType.SMALL_TRIANGLE_1, True)) == pytest.approx(-135.0)
    assert math.degrees(target_feature_angle(0.0, PieceType.LARGE_TRIANGLE_2)) == pytest.approx(45.0)


def test_feature_angles_no_offset_for_square_and_parallelogram():
    for piece_type in (PieceType.SQUARE, PieceType.PARALLELOGRAM):
        assert piece_feature_angle(0.3, piece_type, False) == pytest.approx(0.3)
        assert piece_feature_angle(0.3, piece_type, True) == pytest.approx(0.3)
        assert target_feature_angle(0.3, piece_type) == pytest.approx(0.3)


def test_symmetric_angle_distance_square_period():
    assert symmetric_angle_distance(0.1, 0.1 + math.pi / 2, PieceType.SQUARE) < EPS
    assert math.degrees(symmetric_angle_distance(0.0, math.radians(50), PieceType.SQUARE)) == pytest.approx(40.0)


def test_symmetric_angle_distance_other_shapes_period_pi():
    assert symmetric_angle_distance(0.0, math.pi, PieceType.MEDIUM_TRIANGLE) < EPS
    assert math.degrees(symmetric_angle_distance(0.0, math.radians(100), PieceType.PARALLELOGRAM)) == pytest.approx(80.0)


# ========== Symmetry fold ==========

def test_rotation_symmetry_fold():
    assert rotation_symmetry_fold(PieceType.SQUARE, False) == 4
    assert rotation_symmetry_fold(PieceType.PARALLELOGRAM, False) == 2
    assert rotation_symmetry_fold(PieceType.PARALLELOGRAM, True) == 1
    assert rotation_symmetry_fold(PieceType.SMALL_TRIANGLE_2, False) == 1


def test_square_accepts_quarter_turns():
    target = math.radians(10)
    for k in range(4):
        current = target + k * math.pi / 2 + math.radians(3)
        assert is_rotation_valid(current, target, PieceType.SQUARE, False, tolerance_deg=5)


def test_parallelogram_half_turn_only_when_unflipped():
    current = math.radians(180)
    assert is_rotation_valid(current, 0.0, PieceType.PARALLELOGRAM, False, tolerance_deg=5)
    assert not is_rotation_valid(current, 0.0, PieceType.PARALLELOGRAM, True, tolerance_deg=5)


def test_triangle_half_turn_is_wrong():
    diff = rotation_difference_to_nearest(math.pi, 0.0, PieceType.LARGE_TRIANGLE_1, False)
    assert abs(math.degrees(diff)) == pytest.approx(180.0)


# ========== Expected rotation ==========

def test_expected_piece_rotation_matches_target_feature():
    puzzle = load_puzzle("cat")
    for target in puzzle.target_pieces:
        rotation = expected_piece_rotation(target)
        feature = piece_feature_angle(rotation, target.piece_type, target.is_flipped)
        assert abs(angle_difference(feature, target_feature(target))) < 1e-9


def test_expected_piece_rotation_triangle_is_target_minus_quarter_turn():
    target = TargetPiece("t", PieceType.MEDIUM_TRIANGLE, AffineTransform.from_pose(math.radians(45)))
    assert math.degrees(expected_piece_rotation(target)) == pytest.approx(-45.0)


# ========== Polygons ==========

def test_piece_polygon_covers_target_polygon():
    """A piece at the target centroid with the expected rotation lies exactly on the target."""
    puzzle = load_puzzle("cat")
    for target in puzzle.target_pieces:
        poly = piece_polygon(target.piece_type, target.centroid(), expected_piece_rotation(target), target.is_flipped)
        np.testing.assert_allclose(poly, target.vertices(), atol=1e-6)


def test_polygon_gap_overlap_and_touching_is_zero():
    assert polygon_gap(square_poly(), square_poly(5, 5)) == 0.0
    assert polygon_gap(square_poly(), square_poly(10, 0)) == 0.0
    assert convex_polygons_overlap(square_poly(), square_poly(10, 0))


def test_polygon_gap_separated():
    assert polygon_gap(square_poly(), square_poly(13, 0)) == pytest.approx(3.0)
    assert not convex_polygons_overlap(square_poly(), square_poly(13, 0))


def test_polygon_gap_is_symmetric():
    a = square_poly()
    b = np.array([[20.0, 20.0], [30.0, 20.0], [20.0, 30.0]])
    assert polygon_gap(a, b) == pytest.approx(polygon_gap(b, a))
    assert polygon_gap(a, b) == pytest.approx(math.hypot(10.0, 10.0))
