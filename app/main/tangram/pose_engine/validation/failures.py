"""Failure analysis for pieces that did not validate."""

from __future__ import annotations
from typing import Optional, TYPE_CHECKING
import math

from ..models import GamePuzzleData, MappedPose, PieceType, ValidationFailure
from ..utils.geometry import distance
from .tolerance import PieceValidator, pose_residuals

if TYPE_CHECKING:
    from ..mapping.service import MappingService


def determine_failure_reason(
    mapped: MappedPose,
    piece_type: PieceType,
    puzzle: GamePuzzleData,
    service: MappingService,
    validator: PieceValidator,
    target_id: Optional[str] = None
) -> ValidationFailure:
    """
    Name the primary reason a mapped piece does not match.

    Args:
        mapped: Piece pose in target space
        piece_type: Piece type
        puzzle: Puzzle holding the targets
        service: Mapping service (detailed validation)
        validator: Tolerance validator
        target_id: Analyse against this target; default: closest same-shape
                   target by position distance + rotation residual (degrees)

    Returns:
        ValidationFailure. WRONG_PIECE if no target of this shape exists.
        If the detailed check passes after all (caller raced a lock release),
        WRONG_POSITION with the remaining offset when it is > 0.
    """
    target = puzzle.target(target_id) if target_id is not None else None
    if target is None or target.piece_type.shape != piece_type.shape:
        candidates = puzzle.targets_of_shape(piece_type.shape)
        if not candidates:
            return ValidationFailure.wrong_piece()

        def score(t):
            r = pose_residuals(mapped, piece_type, t)
            return r.position + r.rotation_deg

        target = min(candidates, key=score)

    is_valid, failure = service.validate_mapped_detailed(mapped, piece_type, target, validator)
    if failure is not None:
        return failure

    offset = distance(mapped.position, target.centroid())
    if is_valid and offset > 0 and math.isfinite(offset):
        return ValidationFailure.wrong_position(offset, target.id)
    return ValidationFailure.wrong_piece(target.id)
