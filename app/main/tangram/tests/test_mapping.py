"""
Tests for rigid mappings: transforms, pair alignment, the mapping service and refinement.
"""

import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import math
import pytest
from dataclasses import replace
from pose_engine.config import AffineTransform
from pose_engine.models import AnchorMapping, MappingKind, PieceObservation, PieceType, TargetPiece
from pose_engine.mapping import (
    AnchorCandidate,
    Correspondence,
    MappingService,
    TargetCandidate,
    inverse_map_pose,
    inverse_map_polygon,
    inverse_map_target_to_physical,
    map_piece_to_target_space,
    solve_pair_transform,
)
from pose_engine.mapping.transforms import map_point, mapping_distance
from pose_engine.puzzles import load_puzzle, observations_for_solution
from pose_engine.utils.geometry import rotate_point
from pose_engine.validation import PieceValidator
from pose_engine.models import FailureKind, MappedPose


def obs(piece_id, piece_type, x, y, rotation=0.0, flipped=False):
    return PieceObservation(piece_id, piece_type, (x, y), rotation, flipped)


def target(target_id, piece_type, degrees, tx, ty, flipped=False):
    return TargetPiece(target_id, piece_type, AffineTransform.from_pose(math.radians(degrees), tx, ty, flipped))


def solved_cluster(piece_ids, degrees=0.0):
    """Solution pieces rotated about the origin, with their own targets."""
    puzzle = load_puzzle("cat")
    theta = math.radians(degrees)
    pieces, targets = [], []
    for o, t in zip(observations_for_solution(puzzle), puzzle.target_pieces):
        if o.piece_id in piece_ids:
            pieces.append(replace(o, position=rotate_point(o.position, theta), rotation=o.rotation + theta))
            targets.append(t)
    return pieces, targets


# ========== Fixtures ==========

@pytest.fixture
def global_mapping():
    return AnchorMapping.global_fit(math.radians(30), (12.0, -7.0), "p1", "t1", version=2)


@pytest.fixture
def relative_mapping():
    return AnchorMapping.anchor_relative(math.radians(-60), (5.0, 40.0), "p1", "t1")


# ========== Transforms ==========

def test_global_mapping_forward(global_mapping):
    x, y = map_point(global_mapping, (10.0, 0.0))
    assert x == pytest.approx(10 * math.cos(math.radians(30)) + 12.0)
    assert y == pytest.approx(10 * math.sin(math.radians(30)) - 7.0)


def test_anchor_relative_keeps_anchor_translated(relative_mapping):
    anchor = (100.0, 50.0)
    assert map_point(relative_mapping, anchor, anchor) == pytest.approx((105.0, 90.0))


def test_anchor_relative_requires_anchor(relative_mapping):
    with pytest.raises(ValueError):
        map_point(relative_mapping, (0.0, 0.0))


@pytest.mark.parametrize("kind", ["global", "relative"])
def test_inverse_round_trip(kind, global_mapping, relative_mapping):
    mapping = global_mapping if kind == "global" else relative_mapping
    anchor = (33.0, -8.0)
    for p in [(0.0, 0.0), (120.5, -40.25), (-3.0, 77.0)]:
        q = map_point(mapping, p, anchor)
        back = inverse_map_target_to_physical(mapping, q, anchor)
        assert back == pytest.approx(p, abs=1e-9)


def test_map_piece_applies_rotation_and_parity():
    mapping = AnchorMapping.global_fit(0.5, (0.0, 0.0), "p", "t", flip_parity=True)
    mapped = map_piece_to_target_space(mapping, (1.0, 0.0), 0.25, False, piece_type=PieceType.PARALLELOGRAM)
    assert mapped.rotation == pytest.approx(0.75)
    assert mapped.is_flipped is True


@pytest.mark.parametrize("piece_type", [PieceType.LARGE_TRIANGLE_1, PieceType.SMALL_TRIANGLE_2, PieceType.SQUARE, None])
def test_parity_leaves_non_chiral_pieces_alone(piece_type):
    mapping = AnchorMapping.global_fit(0.5, (0.0, 0.0), "p", "t", flip_parity=True)
    assert map_piece_to_target_space(mapping, (1.0, 0.0), 0.25, True, piece_type=piece_type).is_flipped is True
    assert map_piece_to_target_space(mapping, (1.0, 0.0), 0.25, False, piece_type=piece_type).is_flipped is False
    pose = inverse_map_pose(mapping, (0.0, 0.0), 0.0, False, piece_type=piece_type)
    assert pose.is_flipped is False

    pose = inverse_map_pose(mapping, (0.0, 0.0), 0.0, False, piece_type=PieceType.PARALLELOGRAM)
    assert pose.is_flipped is True


def test_inverse_map_pose_undoes_rotation(global_mapping):
    pose = inverse_map_pose(global_mapping, (50.0, 50.0), math.radians(40), False)
    assert math.degrees(pose.rotation) == pytest.approx(10.0)
    forward = map_point(global_mapping, pose.position)
    assert forward == pytest.approx((50.0, 50.0))


def test_inverse_map_polygon_shape(global_mapping):
    polygon = load_puzzle("cat").target("head").vertices()
    physical = inverse_map_polygon(global_mapping, polygon)
    assert physical.shape == (4, 2)


def test_mapping_distance():
    a = AnchorMapping.global_fit(math.radians(10), (0.0, 0.0), "p", "t")
    b = AnchorMapping.global_fit(math.radians(-5), (3.0, 4.0), "p", "t")
    d_theta, d_trans = mapping_distance(a, b)
    assert d_theta == pytest.approx(15.0)
    assert d_trans == pytest.approx(5.0)


# ========== Pair transform ==========

def test_solve_pair_transform_recovers_rigid_motion():
    theta = math.radians(37)
    shift = (20.0, -15.0)
    c0, c1 = (10.0, 10.0), (60.0, 30.0)
    # Observed = inverse motion of the targets
    p0 = rotate_point((c0[0] - shift[0], c0[1] - shift[1]), -theta)
    p1 = rotate_point((c1[0] - shift[0], c1[1] - shift[1]), -theta)

    a = obs("a", PieceType.SQUARE, *p0)
    t = target("t0", PieceType.SQUARE, 0, 0, 0)
    mapping = solve_pair_transform(p0, p1, c0, c1, a, t)

    assert mapping.kind is MappingKind.GLOBAL
    assert mapping.version == 1 and mapping.pair_count == 2
    assert mapping.rotation_delta == pytest.approx(theta)
    assert map_point(mapping, p0) == pytest.approx(c0)
    assert map_point(mapping, p1) == pytest.approx(c1)


def test_solve_pair_transform_degenerate():
    a = obs("a", PieceType.SQUARE, 0, 0)
    t = target("t0", PieceType.SQUARE, 0, 0, 0)
    assert solve_pair_transform((1.0, 1.0), (1.0, 1.0), (0.0, 0.0), (5.0, 0.0), a, t) is None
    assert solve_pair_transform((0.0, 0.0), (float("nan"), 1.0), (0.0, 0.0), (5.0, 0.0), a, t) is None


def test_solve_pair_transform_parallelogram_parity():
    a = obs("a", PieceType.PARALLELOGRAM, 0, 0, flipped=False)
    t = target("t0", PieceType.PARALLELOGRAM, 0, 0, 0, flipped=True)
    mapping = solve_pair_transform((0.0, 0.0), (10.0, 0.0), (0.0, 0.0), (10.0, 0.0), a, t)
    assert mapping.flip_parity is True

    s = obs("s", PieceType.SQUARE, 0, 0)
    mapping = solve_pair_transform((0.0, 0.0), (10.0, 0.0), (0.0, 0.0), (10.0, 0.0), s, t)
    assert mapping.flip_parity is False


# ========== Service: establish ==========

def test_establish_is_idempotent():
    service = MappingService()
    anchor = AnchorCandidate.from_observation(obs("p1", PieceType.SQUARE, 10, 10, math.radians(45)))
    candidates = [TargetCandidate.from_target(load_puzzle("cat").target("head"))]

    first = service.establish_or_update_mapping("g", ["p1", "p2"], anchor, candidates)
    second = service.establish_or_update_mapping("g", ["p1", "p2"], anchor, candidates)

    assert first is second
    assert first.kind is MappingKind.ANCHOR_RELATIVE
    assert first.anchor_target_id == "head"
    assert first.rotation_delta == pytest.approx(0.0, abs=1e-9)
    assert service.consumed_targets("g") == set()


def test_establish_rejections():
    service = MappingService()
    anchor = AnchorCandidate.from_observation(obs("p1", PieceType.SQUARE, 0, 0, math.radians(20)))
    candidates = [TargetCandidate.from_target(load_puzzle("cat").target("head"))]

    assert service.establish_or_update_mapping("g", [], anchor, candidates) is None
    assert service.establish_or_update_mapping("g", ["p1"], anchor, candidates, max_feature_delta_deg=5.0) is None
    assert service.establish_or_update_mapping("g", ["p1"], anchor, candidates, anchor_has_edge_contact=False) is None
    assert service.mapping_for("g") is None


def test_establish_without_same_shape_target():
    service = MappingService()
    anchor = AnchorCandidate.from_observation(obs("p1", PieceType.PARALLELOGRAM, 0, 0))
    candidates = [TargetCandidate.from_target(load_puzzle("cat").target("head"))]
    assert service.establish_or_update_mapping("g", ["p1"], anchor, candidates) is None


def test_optimized_needs_two_pieces():
    service = MappingService()
    puzzle = load_puzzle("cat")
    single = [obs("p1", PieceType.SQUARE, 0, 0)]
    assert service.establish_or_update_mapping_optimized("g", single, list(puzzle.target_pieces)) is None


def test_optimized_cluster_signature_tracks_latest_mapping():
    service = MappingService()
    three = ["largeTriangle1", "largeTriangle2", "square"]
    four = three + ["mediumTriangle"]

    first = service.establish_or_update_mapping_optimized("g", *solved_cluster(three))
    assert math.degrees(first.rotation_delta) == pytest.approx(0.0, abs=0.5)

    second = service.establish_or_update_mapping_optimized("g", *solved_cluster(four, degrees=37))
    assert math.degrees(second.rotation_delta) == pytest.approx(-37.0, abs=0.5)

    # Back to the first cluster: the group's mapping moved on, so it is recomputed
    third = service.establish_or_update_mapping_optimized("g", *solved_cluster(three))
    assert third is not second
    assert math.degrees(third.rotation_delta) == pytest.approx(0.0, abs=0.5)
    assert service.establish_or_update_mapping_optimized("g", *solved_cluster(three)) is third

    # Another group with the same cluster reuses the indexed mapping
    assert service.establish_or_update_mapping_optimized("h", *solved_cluster(three)) is third
    assert service.mapping_for("h") is third


def test_invalidated_group_signature_is_not_reused():
    service = MappingService()
    three = ["largeTriangle1", "largeTriangle2", "square"]
    first = service.establish_or_update_mapping_optimized("g", *solved_cluster(three))
    service.invalidate_group("g")

    again = service.establish_or_update_mapping_optimized("h", *solved_cluster(three))
    assert again is not first
    assert again.rotation_delta == pytest.approx(first.rotation_delta)


def test_anchor_mapping_parity_only_from_parallelogram():
    service = MappingService()
    ear = load_puzzle("cat").target("ear-right")
    anchor = AnchorCandidate.from_observation(
        obs("p1", PieceType.SMALL_TRIANGLE_2, *ear.centroid(), rotation=ear.rotation, flipped=True)
    )
    mapping = service.establish_or_update_mapping("g", ["p1", "p2"], anchor, [TargetCandidate.from_target(ear)])
    assert mapping.flip_parity is False


# ========== Service: refine ==========

def test_refine_recovers_rotation_and_translation():
    service = MappingService()
    service.set_mapping("g", AnchorMapping.anchor_relative(0.0, (0.0, 0.0), "p0", "t0"))

    theta = math.radians(30)
    shift = (15.0, 5.0)
    pieces = [(0.0, 0.0), (40.0, 10.0), (-20.0, 35.0)]
    targets = [tuple(a + b for a, b in zip(rotate_point(p, theta), shift)) for p in pieces]
    pairs = [Correspondence(p, t) for p, t in zip(pieces, targets)]

    refined = service.refine_mapping("g", pairs, pieces[0], targets[0])

    assert refined.kind is MappingKind.GLOBAL
    assert refined.version == 2
    assert refined.pair_count == 3
    assert refined.rotation_delta == pytest.approx(theta)
    assert refined.translation_offset == pytest.approx(shift)
    assert service.mapping_for("g") is refined


def test_refine_needs_two_usable_pairs():
    service = MappingService()
    assert service.refine_mapping("g", [], (0.0, 0.0), (0.0, 0.0)) is None

    mapping = AnchorMapping.anchor_relative(0.0, (0.0, 0.0), "p0", "t0")
    service.set_mapping("g", mapping)
    pairs = [Correspondence((0.0, 0.0), (1.0, 1.0)), Correspondence((float("nan"), 0.0), (2.0, 2.0))]
    assert service.refine_mapping("g", pairs, (0.0, 0.0), (1.0, 1.0)) is mapping


# ========== Service: bookkeeping ==========

def test_consumed_and_pairs_bookkeeping():
    service = MappingService()
    service.mark_target_consumed("g", "head")
    service.append_pair("g", "square", "head")
    service.append_pair("g", "square", "head")
    assert service.consumed_targets("g") == {"head"}
    assert service.validated_pairs("g") == [("square", "head")]

    service.unmark_target_consumed("g", "head")
    service.remove_pair("g", "square")
    assert service.consumed_targets("g") == set()
    assert service.validated_pairs("g") == []


def test_invalidate_group_drops_everything():
    service = MappingService()
    service.set_mapping("g", AnchorMapping.global_fit(0.0, (0.0, 0.0), "p", "t"))
    service.mark_target_consumed("g", "t")
    service.invalidate_group("g")
    assert service.mapping_for("g") is None
    assert service.consumed_targets("g") == set()


def test_validate_mapped_detailed_priority():
    service = MappingService()
    validator = PieceValidator.for_difficulty("normal")
    tail = load_puzzle("cat").target("tail")

    # Wrong mirror state wins over everything else
    pose = MappedPose((tail.centroid()[0] + 100, tail.centroid()[1]), tail.rotation + 1.0, False)
    ok, failure = service.validate_mapped_detailed(pose, PieceType.PARALLELOGRAM, tail, validator)
    assert not ok and failure.kind is FailureKind.NEEDS_FLIP

    pose = MappedPose((tail.centroid()[0] + 100, tail.centroid()[1]), tail.rotation, True)
    ok, failure = service.validate_mapped_detailed(pose, PieceType.PARALLELOGRAM, tail, validator)
    assert failure.kind is FailureKind.WRONG_POSITION
    assert failure.offset == pytest.approx(100.0)

    pose = MappedPose(tail.centroid(), tail.rotation + math.radians(30), True)
    ok, failure = service.validate_mapped_detailed(pose, PieceType.PARALLELOGRAM, tail, validator)
    assert failure.kind is FailureKind.WRONG_ROTATION
    assert failure.degrees_off == pytest.approx(30.0)

    pose = MappedPose(tail.centroid(), tail.rotation, True)
    assert service.validate_mapped(pose, PieceType.PARALLELOGRAM, tail, validator)


def test_check_pose_flags_each_criterion():
    validator = PieceValidator.for_difficulty("normal")
    tail = load_puzzle("cat").target("tail")

    assert validator.check_pose(MappedPose(tail.centroid(), tail.rotation, True), PieceType.PARALLELOGRAM, tail).is_valid

    far_mirrored = MappedPose((tail.centroid()[0] + 100, tail.centroid()[1]), tail.rotation, False)
    check = validator.check_pose(far_mirrored, PieceType.PARALLELOGRAM, tail)
    assert not check.flip_valid
    assert not check.position_valid
    assert check.rotation_valid


# ========== Mapping kinds ==========

def test_mapping_kind_for_counts():
    assert MappingKind.for_counts(1, 1) is MappingKind.ANCHOR_RELATIVE
    assert MappingKind.for_counts(2, 1) is MappingKind.GLOBAL
    assert MappingKind.for_counts(1, 2) is MappingKind.GLOBAL

    fresh = AnchorMapping.anchor_relative(0.1, (1.0, 2.0), "p", "t")
    assert fresh.kind is MappingKind.ANCHOR_RELATIVE
    assert fresh.committed().kind is MappingKind.GLOBAL
    assert fresh.refined(0.2, (0.0, 0.0), pair_count=1).kind is MappingKind.GLOBAL
