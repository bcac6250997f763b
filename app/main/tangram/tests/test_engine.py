"""
Scenario tests for the frame-driven validation engine.

The Cat puzzle is laid out in target space; observations_for_solution() puts
every piece exactly on its target (piece id = piece type value).
"""

import sys
from pathlib import Path

# Add parent directory to path for imports
sys.path.insert(0, str(Path(__file__).parent.parent))

import math
import pytest
from dataclasses import replace
from pose_engine.config import EngineConfig, ValidationOptions
from pose_engine.models import FailureKind, MappingKind, NudgeLevel
from pose_engine.puzzles import load_puzzle, observations_for_solution
from pose_engine.utils.geometry import normalize_angle, rotate_point
from pose_engine.validation import DEFAULT_GROUP_ID, GroupValidationState, ValidationEngine

ALL_TARGETS = {"body-lower", "body-upper", "head", "ear-left", "ear-right", "paws", "tail"}


def moved(frame, piece_id, dx=0.0, dy=0.0, **changes):
    out = []
    for o in frame:
        if o.piece_id == piece_id:
            o = replace(o, position=(o.position[0] + dx, o.position[1] + dy), **changes)
        out.append(o)
    return out


def rotated(frame, degrees):
    theta = math.radians(degrees)
    return [replace(o, position=rotate_point(o.position, theta), rotation=o.rotation + theta) for o in frame]


# ========== Fixtures ==========

@pytest.fixture
def puzzle():
    return load_puzzle("cat")


@pytest.fixture
def solution(puzzle):
    return observations_for_solution(puzzle)


@pytest.fixture
def engine():
    return ValidationEngine("normal")


# ========== Full solution ==========

def test_all_pieces_correct(engine, puzzle, solution):
    result = engine.process(solution, puzzle, now=0.0)

    assert result.validated_targets == ALL_TARGETS
    assert result.failure_reasons == {}
    assert all(state.is_valid for state in result.piece_states.values())
    assert result.bindings["largeTriangle1"] == "body-lower"
    assert result.bindings["parallelogram"] == "tail"
    assert engine.consumed_targets(DEFAULT_GROUP_ID) == ALL_TARGETS


def test_pair_mapping_is_committed_global(engine, puzzle, solution):
    result = engine.process(solution, puzzle, now=0.0)

    mapping = result.group_mappings[DEFAULT_GROUP_ID]
    assert mapping.kind is MappingKind.GLOBAL
    assert mapping.version >= 2
    assert mapping.pair_count >= 2
    assert mapping.rotation_delta == pytest.approx(0.0, abs=1e-6)
    assert mapping.translation_offset == pytest.approx((0.0, 0.0), abs=1e-6)
    assert len(result.anchor_piece_ids) == 2
    assert "square" in result.anchor_piece_ids


def test_bindings_are_injective(engine, puzzle, solution):
    # Second large triangle dropped onto the first one's target
    lower = next(o for o in solution if o.piece_id == "largeTriangle1")
    frame = [
        replace(o, position=(lower.position[0] + 3.0, lower.position[1]), rotation=lower.rotation)
        if o.piece_id == "largeTriangle2" else o
        for o in solution
    ]
    result = engine.process(frame, puzzle, now=0.0)

    assert len(set(result.bindings.values())) == len(result.bindings)
    assert result.bindings["largeTriangle1"] == "body-lower"
    assert "largeTriangle2" not in result.bindings
    assert "largeTriangle2" in result.failure_reasons
    assert "body-upper" not in result.validated_targets


def test_rotated_layout_pair_strategy(engine, puzzle, solution):
    result = engine.process(rotated(solution, 37), puzzle, now=0.0)

    mapping = result.group_mappings[DEFAULT_GROUP_ID]
    assert math.degrees(mapping.rotation_delta) == pytest.approx(-37.0, abs=0.5)
    assert result.validated_targets == ALL_TARGETS


def test_rotated_layout_optimized_strategy(engine, puzzle, solution):
    options = ValidationOptions(mapping_strategy="optimized")
    result = engine.process(rotated(solution, 37), puzzle, options=options, now=0.0)

    mapping = result.group_mappings[DEFAULT_GROUP_ID]
    assert mapping.kind is MappingKind.GLOBAL
    assert math.degrees(mapping.rotation_delta) == pytest.approx(-37.0, abs=0.5)
    assert result.validated_targets == ALL_TARGETS


@pytest.mark.parametrize("degrees", [20, 65, 90, 135, 180, 225, 270, 310])
def test_turned_layout_validates_with_default_strategy(engine, puzzle, solution, degrees):
    result = engine.process(rotated(solution, degrees), puzzle, now=0.0)

    mapping = result.group_mappings[DEFAULT_GROUP_ID]
    residual = normalize_angle(mapping.rotation_delta + math.radians(degrees))
    assert math.degrees(residual) == pytest.approx(0.0, abs=0.5)
    assert result.validated_targets == ALL_TARGETS
    assert result.failure_reasons == {}


def test_anchor_strategy_uses_relative_mapping(engine, puzzle, solution):
    options = ValidationOptions(mapping_strategy="anchor")
    result = engine.process(solution, puzzle, options=options, now=0.0)

    mapping = result.group_mappings[DEFAULT_GROUP_ID]
    assert mapping.kind is MappingKind.ANCHOR_RELATIVE
    assert result.validated_targets == ALL_TARGETS
    outline = engine.target_outline_in_physical(DEFAULT_GROUP_ID, "head")
    assert outline == pytest.approx(puzzle.target("head").vertices(), abs=1e-6)


# ========== Failures ==========

def test_mirrored_parallelogram_needs_flip(engine, puzzle, solution):
    frame = moved(solution, "parallelogram", is_flipped=False)
    result = engine.process(frame, puzzle, now=0.0)

    assert list(result.failure_reasons) == ["parallelogram"]
    assert result.failure_reasons["parallelogram"].kind is FailureKind.NEEDS_FLIP
    assert result.validated_targets == ALL_TARGETS - {"tail"}
    assert result.piece_nudges["parallelogram"].message == "Try flipping"


def test_mirrored_parallelogram_leading_the_frame_optimized(engine, puzzle, solution):
    frame = sorted(moved(solution, "parallelogram", is_flipped=False), key=lambda o: o.piece_id != "parallelogram")
    assert frame[0].piece_id == "parallelogram"
    options = ValidationOptions(mapping_strategy="optimized")
    result = engine.process(frame, puzzle, options=options, now=0.0)

    assert result.group_mappings[DEFAULT_GROUP_ID].anchor_piece_id != "parallelogram"
    assert result.group_mappings[DEFAULT_GROUP_ID].flip_parity is False
    assert list(result.failure_reasons) == ["parallelogram"]
    assert result.failure_reasons["parallelogram"].kind is FailureKind.NEEDS_FLIP
    assert result.validated_targets == ALL_TARGETS - {"tail"}


def test_mirrored_parallelogram_in_turned_layout(engine, puzzle, solution):
    frame = rotated(moved(solution, "parallelogram", is_flipped=False), 90)
    result = engine.process(frame, puzzle, now=0.0)

    assert list(result.failure_reasons) == ["parallelogram"]
    assert result.failure_reasons["parallelogram"].kind is FailureKind.NEEDS_FLIP
    assert result.validated_targets == ALL_TARGETS - {"tail"}


def test_lone_piece_group_asks_for_connection(engine, puzzle, solution):
    others = [o.piece_id for o in solution if o.piece_id != "square"]
    result = engine.process(solution, puzzle, groups={"main": others, "solo": ["square"]}, now=0.0)

    failure = result.failure_reasons["square"]
    assert failure.kind is FailureKind.NO_VALIDATED_PIECES_NEARBY
    assert failure.nudge_message == "Connect to other pieces"
    assert "solo" not in result.group_mappings
    assert result.validated_targets == ALL_TARGETS - {"head"}


def test_rotated_piece_wrong_rotation(engine, puzzle, solution):
    frame = moved(solution, "mediumTriangle", rotation=next(
        o.rotation for o in solution if o.piece_id == "mediumTriangle") + math.radians(30))
    result = engine.process(frame, puzzle, now=0.0)

    failure = result.failure_reasons["mediumTriangle"]
    assert failure.kind is FailureKind.WRONG_ROTATION
    assert failure.degrees_off == pytest.approx(30.0, abs=0.1)
    assert failure.target_id == "paws"


def test_far_piece_wrong_position(engine, puzzle, solution):
    result = engine.process(moved(solution, "square", dx=100.0), puzzle, now=0.0)

    failure = result.failure_reasons["square"]
    assert failure.kind is FailureKind.WRONG_POSITION
    assert failure.offset == pytest.approx(100.0, abs=0.1)
    assert "square" not in result.anchor_piece_ids


# ========== Hysteresis ==========

@pytest.fixture
def drift_piece():
    return "mediumTriangle"


def test_locked_piece_survives_small_drift(puzzle, solution, drift_piece):
    engine = ValidationEngine("normal", engine_config=EngineConfig(invalidation_dwell_seconds=0.0))
    first = engine.process(solution, puzzle, now=0.0)
    assert drift_piece not in first.anchor_piece_ids

    # 50 > position tolerance (40) but < tolerance + slack (58)
    result = engine.process(moved(solution, drift_piece, dx=50.0), puzzle, now=1.0)
    assert result.piece_states[drift_piece].is_valid
    assert "paws" in result.validated_targets


def test_locked_piece_unlocks_beyond_slack(puzzle, solution, drift_piece):
    engine = ValidationEngine("normal", engine_config=EngineConfig(invalidation_dwell_seconds=0.0))
    engine.process(solution, puzzle, now=0.0)
    engine.process(moved(solution, drift_piece, dx=50.0), puzzle, now=1.0)

    result = engine.process(moved(solution, drift_piece, dx=80.0), puzzle, now=2.0)
    assert not result.piece_states[drift_piece].is_valid
    assert "paws" not in result.validated_targets
    assert "paws" not in engine.consumed_targets(DEFAULT_GROUP_ID)
    assert result.failure_reasons[drift_piece].kind is FailureKind.WRONG_POSITION


def test_unlock_waits_for_dwell(engine, puzzle, solution, drift_piece):
    engine.process(solution, puzzle, now=0.0)
    far = moved(solution, drift_piece, dx=80.0)

    result = engine.process(far, puzzle, now=1.0)
    assert result.piece_states[drift_piece].is_valid
    assert result.piece_states[drift_piece].confidence == pytest.approx(0.9)

    result = engine.process(far, puzzle, now=1.2)
    assert result.piece_states[drift_piece].is_valid
    assert result.piece_states[drift_piece].confidence == pytest.approx(0.85)

    result = engine.process(far, puzzle, now=1.6)
    assert not result.piece_states[drift_piece].is_valid
    assert "paws" not in result.validated_targets


def test_lock_refreshes_when_piece_returns(engine, puzzle, solution, drift_piece):
    engine.process(solution, puzzle, now=0.0)
    engine.process(moved(solution, drift_piece, dx=80.0), puzzle, now=1.0)
    result = engine.process(solution, puzzle, now=1.2)

    assert result.piece_states[drift_piece].is_valid
    assert result.piece_states[drift_piece].confidence == pytest.approx(1.0)
    assert "paws" in result.validated_targets


# ========== Nudges ==========

def test_repeated_failure_gets_directed_nudge(engine, puzzle, solution):
    first = engine.process(moved(solution, "square", dx=100.0), puzzle, now=0.0)
    assert first.nudge is None
    assert engine.attempts("square") == 1

    result = engine.process(moved(solution, "square", dx=105.0), puzzle, now=1.0)
    assert engine.attempts("square") == 2
    assert engine.groups[DEFAULT_GROUP_ID].validation_state is GroupValidationState.COMPLETING

    target_id, content = result.nudge
    assert target_id == "head"
    assert content.level is NudgeLevel.DIRECTED
    assert content.message == "Move this way"
    assert content.visual_hint.kind == "arrow"
    # Target lies straight to the left of the piece
    assert abs(content.visual_hint.direction) == pytest.approx(math.pi, abs=1e-6)


def test_primary_nudge_respects_global_cooldown(engine, puzzle, solution):
    engine.process(moved(solution, "square", dx=100.0), puzzle, now=0.0)
    assert engine.process(moved(solution, "square", dx=105.0), puzzle, now=1.0).nudge is not None
    assert engine.process(moved(solution, "square", dx=110.0), puzzle, now=2.0).nudge is None


def test_nudges_can_be_disabled(engine, puzzle, solution):
    options = ValidationOptions(enable_nudges=False, enable_hints=False)
    engine.process(moved(solution, "square", dx=100.0), puzzle, options=options, now=0.0)
    result = engine.process(moved(solution, "square", dx=105.0), puzzle, options=options, now=1.0)
    assert result.nudge is None
    assert result.piece_nudges == {}


def test_still_piece_does_not_count_attempts(engine, puzzle, solution):
    frame = moved(solution, "square", dx=100.0)
    engine.process(frame, puzzle, now=0.0)
    engine.process(frame, puzzle, now=1.0)
    engine.process(frame, puzzle, now=2.0)
    assert engine.attempts("square") == 1


# ========== Frame gating ==========

def test_degenerate_frame_is_skipped(engine, puzzle, solution):
    previous = engine.process(solution, puzzle, now=0.0)
    broken = [replace(o, position=(float("nan"), 0.0)) if o.piece_id == "square" else o for o in solution]

    result = engine.process(broken, puzzle, now=1.0)
    assert result.skipped
    assert result.validated_targets == previous.validated_targets
    assert not engine.last_result.skipped


def test_should_validate_dwell_and_movement(engine, puzzle, solution):
    assert engine.should_validate(solution, now=0.0)
    engine.process(solution, puzzle, now=0.0)

    options = ValidationOptions(validate_on_move=True)
    assert not engine.should_validate(solution, now=0.5, options=options)
    assert engine.should_validate(moved(solution, "square", dx=10.0), now=0.5, options=options)
    assert engine.should_validate(solution, now=1.5, options=options)


def test_tick_returns_cached_result(engine, puzzle, solution):
    first = engine.tick(solution, puzzle, now=0.0)
    assert engine.tick(solution, puzzle, now=0.2) is first


# ========== Groups and invalidation ==========

def test_explicit_groups(engine, puzzle, solution):
    groups = {
        "left": ["largeTriangle1", "largeTriangle2", "mediumTriangle", "parallelogram"],
        "right": ["square", "smallTriangle1", "smallTriangle2"],
    }
    result = engine.process(solution, puzzle, groups=groups, now=0.0)

    assert set(result.group_mappings) == {"left", "right"}
    assert result.validated_targets == ALL_TARGETS
    assert engine.consumed_targets("right") == {"head", "ear-left", "ear-right"}


def test_vanished_group_is_invalidated(engine, puzzle, solution):
    groups = {"left": ["largeTriangle1", "largeTriangle2"], "right": ["square", "smallTriangle1"]}
    engine.process(solution, puzzle, groups=groups, now=0.0)
    assert engine.mapping_for("right") is not None

    engine.process(solution, puzzle, groups={"left": groups["left"]}, now=1.0)
    assert engine.mapping_for("right") is None
    assert engine.consumed_targets("right") == set()
    assert "right" not in engine.groups


def test_unmark_target_releases_lock(engine, puzzle, solution):
    engine.process(solution, puzzle, now=0.0)
    engine.unmark_target_consumed(DEFAULT_GROUP_ID, "paws")
    assert "paws" not in engine.consumed_targets(DEFAULT_GROUP_ID)

    # Still on target: rebinds on the next pass
    result = engine.process(solution, puzzle, now=1.0)
    assert "paws" in result.validated_targets


def test_reset_clears_everything(engine, puzzle, solution):
    engine.process(solution, puzzle, now=0.0)
    engine.reset()
    assert engine.mapping_for(DEFAULT_GROUP_ID) is None
    assert engine.consumed_targets(DEFAULT_GROUP_ID) == set()
    assert engine.last_result.validated_targets == set()


def test_target_outline_inverse_maps_through_rotation(engine, puzzle, solution):
    engine.process(rotated(solution, 37), puzzle, now=0.0)
    outline = engine.target_outline_in_physical(DEFAULT_GROUP_ID, "head")
    expected = [rotate_point(tuple(p), math.radians(37)) for p in puzzle.target("head").vertices()]
    for got, want in zip(outline, expected):
        assert tuple(got) == pytest.approx(want, abs=0.5)
    assert engine.target_outline_in_physical(DEFAULT_GROUP_ID, "missing") is None
