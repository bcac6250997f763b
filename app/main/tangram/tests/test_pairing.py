"""
Tests for anchor pair selection: pair library, adjacency and pair scoring.
"""

import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import math
import pytest
from dataclasses import replace
from pose_engine.models import PieceObservation, PieceType, ShapeFamily
from pose_engine.pairing import (
    PairScorer,
    TargetAdjacencyGraph,
    TargetPairLibrary,
    flip_ok,
    shape_pair_key,
)
from pose_engine.puzzles import load_puzzle, observations_for_solution


# ========== Fixtures ==========

@pytest.fixture
def puzzle():
    return load_puzzle("cat")


@pytest.fixture
def library(puzzle):
    return TargetPairLibrary.build(puzzle)


@pytest.fixture
def solution(puzzle):
    return {o.piece_id: o for o in observations_for_solution(puzzle)}


@pytest.fixture
def scorer():
    return PairScorer()


# ========== Library ==========

def test_library_has_one_entry_per_unordered_pair(library):
    entries = library.all_entries
    assert len(entries) == 21
    assert all(e.id_a < e.id_b for e in entries)


def test_library_entry_geometry(puzzle, library):
    entry = library.entries_by_key["body-lower|body-upper"]
    a = puzzle.target("body-lower").centroid()
    b = puzzle.target("body-upper").centroid()
    assert entry.vector == pytest.approx((b[0] - a[0], b[1] - a[1]))
    assert entry.length == pytest.approx(math.hypot(*entry.vector))
    assert entry.angle == pytest.approx(math.radians(45))


def test_library_reversed_entry_recomputes_angle(library):
    entry = library.entries_by_key["body-lower|body-upper"]
    rev = entry.reversed()
    assert (rev.id_a, rev.id_b) == ("body-upper", "body-lower")
    assert rev.angle == pytest.approx(math.radians(-135))
    assert rev.length == pytest.approx(entry.length)


def test_shape_pair_key_is_order_invariant(library):
    key = shape_pair_key(ShapeFamily.SQUARE, ShapeFamily.SMALL_TRIANGLE)
    assert key == shape_pair_key(ShapeFamily.SMALL_TRIANGLE, ShapeFamily.SQUARE)
    assert len(library.entries_for(ShapeFamily.SQUARE, ShapeFamily.SMALL_TRIANGLE)) == 2


# ========== Adjacency ==========

def test_adjacency_of_cat(puzzle):
    graph = TargetAdjacencyGraph.build(puzzle, edge_contact_tolerance=14.0)
    assert graph.are_adjacent("body-lower", "body-upper")
    assert graph.are_adjacent("head", "ear-left")
    assert graph.are_adjacent("head", "body-upper")
    assert not graph.are_adjacent("paws", "ear-right")
    assert ("body-lower", "body-upper") in graph.edges()
    assert "head" in graph.neighbors("ear-right")


# ========== Orientation ==========

def test_flip_ok_only_matters_for_parallelogram(puzzle):
    tail = puzzle.target("tail")
    assert flip_ok(PieceType.PARALLELOGRAM, True, tail)
    assert not flip_ok(PieceType.PARALLELOGRAM, False, tail)
    assert flip_ok(PieceType.SQUARE, False, tail)


def test_all_solution_pieces_are_oriented(puzzle, solution, scorer):
    oriented = scorer.find_oriented_pieces(list(solution.values()), puzzle, tolerance_deg=5.0)
    assert {o.observation.piece_id: o.target_id for o in oriented} == {
        "largeTriangle1": "body-lower",
        "largeTriangle2": "body-upper",
        "square": "head",
        "smallTriangle1": "ear-left",
        "smallTriangle2": "ear-right",
        "mediumTriangle": "paws",
        "parallelogram": "tail",
    }
    assert all(o.delta_deg < 1e-6 for o in oriented)


def test_mirrored_parallelogram_not_oriented(puzzle, solution, scorer):
    mirrored = replace(solution["parallelogram"], is_flipped=False)
    assert scorer.find_oriented_pieces([mirrored], puzzle, tolerance_deg=5.0) == []


def test_rotated_piece_not_oriented(puzzle, solution, scorer):
    turned = replace(solution["mediumTriangle"], rotation=solution["mediumTriangle"].rotation + math.radians(30))
    assert scorer.find_oriented_pieces([turned], puzzle, tolerance_deg=18.0) == []


# ========== Pair scoring ==========

def test_score_pair_exact_match(library, solution, scorer):
    match = scorer.score_pair(solution["square"], solution["mediumTriangle"], library)
    assert match.score == pytest.approx(0.0, abs=1e-6)
    assert {match.entry.id_a, match.entry.id_b} == {"head", "paws"}
    # entry.id_a belongs to the first piece
    assert match.entry.id_a == "head"


def test_score_pair_congruent_pair_keeps_assignment(library, solution, scorer):
    """Both orientations of a same-shape entry fold to the same residual; the direct angle decides."""
    match = scorer.score_pair(solution["largeTriangle1"], solution["largeTriangle2"], library)
    assert (match.entry.id_a, match.entry.id_b) == ("body-lower", "body-upper")

    match = scorer.score_pair(solution["largeTriangle2"], solution["largeTriangle1"], library)
    assert (match.entry.id_a, match.entry.id_b) == ("body-upper", "body-lower")


def test_score_pair_coincident_pieces(library, solution, scorer):
    a = solution["square"]
    b = replace(solution["mediumTriangle"], position=a.position)
    assert scorer.score_pair(a, b, library) is None


def test_select_best_pair_prefers_compact_exact_pair(puzzle, library, solution, scorer):
    pair = scorer.select_best_pair(list(solution.values()), puzzle, library, tolerance_deg=5.0)
    assert "square" in pair.piece_ids
    assert pair.score == pytest.approx(0.0, abs=1e-6)
    assert pair.separation == pytest.approx(42.49, abs=0.01)
    assert {t.id for t in pair.targets} & {"ear-left", "ear-right"}


def test_select_best_pair_focus_piece(puzzle, library, solution):
    # Spread the layout so that no pair matches exactly and the focus factor decides
    spread = [replace(o, position=(o.position[0] * 1.1, o.position[1] * 1.1)) for o in solution.values()]
    scorer = PairScorer(focus_factor=0.3)
    pair = scorer.select_best_pair(spread, puzzle, library, tolerance_deg=5.0, focus_piece_id="parallelogram")
    assert "parallelogram" in pair.piece_ids
    assert pair.reason == "focus+library"


def test_select_best_pair_falls_back_to_closest(puzzle, library, scorer):
    pieces = [
        PieceObservation("a", PieceType.SQUARE, (0.0, 0.0), math.radians(20)),
        PieceObservation("b", PieceType.MEDIUM_TRIANGLE, (30.0, 0.0), math.radians(30)),
        PieceObservation("c", PieceType.PARALLELOGRAM, (200.0, 0.0), math.radians(40)),
    ]
    pair = scorer.select_best_pair(pieces, puzzle, library, tolerance_deg=5.0)
    assert pair.piece_ids == ("a", "b")
    assert pair.targets is None
    assert pair.reason == "closest"


def test_select_best_pair_needs_two_pieces(puzzle, library, solution, scorer):
    assert scorer.select_best_pair([solution["square"]], puzzle, library, tolerance_deg=5.0) is None


# ========== Target resolution ==========

def test_resolve_target_pair_preferred_ids(puzzle, library, solution, scorer):
    targets = scorer.resolve_target_pair(
        solution["square"], solution["smallTriangle1"], puzzle, library, preferred_ids=("head", "ear-left")
    )
    assert [t.id for t in targets] == ["head", "ear-left"]


def test_resolve_target_pair_from_library(puzzle, library, solution, scorer):
    targets = scorer.resolve_target_pair(solution["square"], solution["smallTriangle2"], puzzle, library)
    assert [t.id for t in targets] == ["head", "ear-right"]


def test_resolve_target_pair_without_library(puzzle, solution, scorer):
    targets = scorer.resolve_target_pair(solution["smallTriangle2"], solution["smallTriangle1"], puzzle)
    assert [t.id for t in targets] == ["ear-right", "ear-left"]


def test_resolve_target_pair_first_of_shape(puzzle, solution, scorer):
    a = solution["largeTriangle1"]
    b = replace(solution["largeTriangle2"], position=a.position)
    targets = scorer.resolve_target_pair(a, b, puzzle)
    assert [t.id for t in targets] == ["body-lower", "body-upper"]
