"""
Orientation-only feedback.

Works without any group mapping: compares each piece's feature angle with the
same-shape targets and rewards / corrects orientation alone.
"""

from __future__ import annotations
from typing import Mapping, Sequence

from ..config import ValidationOptions
from ..models import (
    GamePuzzleData,
    NudgeContent,
    NudgeLevel,
    PieceObservation,
    PieceType,
    PieceValidationState,
    VisualHint,
)
from ..pairing.scorer import PairScorer, flip_ok
from ..utils.geometry import expected_piece_rotation, nearest_valid_rotation


def orientation_feedback(
    observations: Sequence[PieceObservation],
    puzzle: GamePuzzleData,
    piece_states: Mapping[str, PieceValidationState],
    options: ValidationOptions,
    scorer: PairScorer
) -> tuple[set[str], dict[str, NudgeContent]]:
    """
    Partial credit and hints from piece orientation.

    Returns:
        (oriented target ids, piece_id -> nudge)
    """
    oriented: set[str] = set()
    nudges: dict[str, NudgeContent] = {}

    for obs in observations:
        best = scorer.best_target(obs, puzzle)
        if best is None:
            continue
        target, delta = best
        ok = flip_ok(obs.piece_type, obs.is_flipped, target)

        if ok and delta <= options.orientation_tolerance_deg:
            oriented.add(target.id)
            state = piece_states.get(obs.piece_id)
            if state is None or not state.is_valid:
                nudges[obs.piece_id] = NudgeContent(NudgeLevel.GENTLE, "Good job!", VisualHint.pulse(0.4), 1.2)
        elif obs.piece_type is PieceType.PARALLELOGRAM and not ok:
            nudges[obs.piece_id] = NudgeContent(NudgeLevel.SPECIFIC, "Try flipping", VisualHint.flip_demo(), 2.0)
        elif options.orientation_tolerance_deg < delta < options.rotation_nudge_upper_deg:
            goal = nearest_valid_rotation(
                obs.rotation,
                expected_piece_rotation(target, obs.is_flipped),
                obs.piece_type,
                obs.is_flipped,
            )
            nudges[obs.piece_id] = NudgeContent(
                NudgeLevel.SPECIFIC, "Try rotating", VisualHint.rotation_demo(obs.rotation, goal), 2.0
            )
    return oriented, nudges
