"""
Tests for the global rotation search + assignment optimizer.
"""

import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import math
import warnings
import pytest
from dataclasses import replace
from pose_engine.config import MappingConfig
from pose_engine.mapping import MappingService, optimize_mapping, search_rotation
from pose_engine.mapping.optimizer import check_weights, rotation_cost
from pose_engine.mapping.transforms import map_point
from pose_engine.puzzles import load_puzzle, observations_for_solution
from pose_engine.utils.geometry import normalize_angle, rotate_point


def rotated_solution(degrees, shift=(0.0, 0.0)):
    """Solution observations rotated about the origin, then shifted."""
    theta = math.radians(degrees)
    pieces = []
    for o in observations_for_solution(load_puzzle("cat")):
        x, y = rotate_point(o.position, theta)
        pieces.append(replace(o, position=(x + shift[0], y + shift[1]), rotation=o.rotation + theta))
    return pieces


def angle_error_deg(a, b):
    return abs(math.degrees(normalize_angle(a - b)))


# ========== Fixtures ==========

@pytest.fixture
def puzzle():
    return load_puzzle("cat")


@pytest.fixture
def targets(puzzle):
    return list(puzzle.target_pieces)


# ========== Rotation search ==========

def test_cost_is_zero_at_true_rotation(targets):
    pieces = observations_for_solution(load_puzzle("cat"))
    assert rotation_cost(0.0, pieces, targets, MappingConfig()) == pytest.approx(0.0, abs=1e-6)
    assert rotation_cost(math.radians(20), pieces, targets, MappingConfig()) > 1.0


def test_search_rotation_finds_inverse_rotation(targets):
    fit = search_rotation(rotated_solution(37), targets)
    assert angle_error_deg(fit.theta, math.radians(-37)) < 0.5


# ========== optimize_mapping ==========

def test_optimize_mapping_recovers_rotation_and_translation(targets):
    pieces = rotated_solution(37, shift=(250.0, -80.0))
    mapping = optimize_mapping(pieces, targets)

    assert mapping is not None
    assert angle_error_deg(mapping.rotation_delta, math.radians(-37)) < 0.5
    assert mapping.anchor_piece_id == pieces[0].piece_id
    assert mapping.anchor_target_id == "body-lower"
    assert mapping.pair_count == len(pieces)
    assert 0.0 < mapping.confidence <= 1.0

    # Every piece lands close to its own target
    for piece, target in zip(pieces, targets):
        x, y = map_point(mapping, piece.position)
        cx, cy = target.centroid()
        assert math.hypot(x - cx, y - cy) < 2.0


def test_optimize_mapping_needs_two_pieces(targets):
    assert optimize_mapping(rotated_solution(0)[:1], targets) is None
    assert optimize_mapping(rotated_solution(0), []) is None


def test_check_weights_warns_on_non_positive_weight():
    with pytest.warns(UserWarning):
        check_weights(MappingConfig(rotation_weight=0.0))
    with warnings.catch_warnings():
        warnings.simplefilter("error")
        check_weights(MappingConfig())


# ========== Service reuse ==========

def test_optimized_mapping_reused_for_same_cluster(targets):
    service = MappingService()
    pieces = rotated_solution(37)
    first = service.establish_or_update_mapping_optimized("g", pieces, targets)
    second = service.establish_or_update_mapping_optimized("g", list(reversed(pieces)), targets)
    assert first is second


def test_optimized_mapping_recomputed_after_invalidate(targets):
    service = MappingService()
    pieces = rotated_solution(37)
    first = service.establish_or_update_mapping_optimized("g", pieces, targets)
    service.invalidate_group("g")
    second = service.establish_or_update_mapping_optimized("g", pieces, targets)
    assert first is not second
    assert angle_error_deg(first.rotation_delta, second.rotation_delta) < 1e-9
