"""
Embedded puzzles and puzzle (de)serialization.

Target transforms place the canonical vertices (scaled by VISUAL_SCALE) into
target space. All embedded puzzles use rotations in multiples of 45°.
"""

from __future__ import annotations
from typing import Optional
import json
import math

from .config import AffineTransform
from .models import GamePuzzleData, PieceObservation, PieceType, TargetPiece
from .utils.geometry import VISUAL_SCALE, expected_piece_rotation

_HALF_DIAGONAL = VISUAL_SCALE * math.sqrt(2.0) / 2.0


def _target(target_id: str, piece_type: PieceType, degrees: float, tx: float, ty: float,
            flipped: bool = False) -> TargetPiece:
    return TargetPiece(
        id=target_id,
        piece_type=piece_type,
        transform=AffineTransform.from_pose(math.radians(degrees), tx, ty, flipped),
    )


def _cat() -> GamePuzzleData:
    """
    Sitting cat.

    Body: both large triangles forming a 100x100 square; head: square standing
    on its corner; ears: small triangles on the upper head edges; paws: medium
    triangle under the body; tail: mirrored parallelogram on the right side.
    """
    h = _HALF_DIAGONAL
    targets = (
        _target("body-lower", PieceType.LARGE_TRIANGLE_1, 0, 0.0, 0.0),
        _target("body-upper", PieceType.LARGE_TRIANGLE_2, 180, 100.0, 100.0),
        _target("head", PieceType.SQUARE, 45, 50.0, 100.0),
        _target("ear-left", PieceType.SMALL_TRIANGLE_1, 45, 50.0 - h, 100.0 + h),
        _target("ear-right", PieceType.SMALL_TRIANGLE_2, -45, 50.0, 100.0 + 2 * h),
        _target("paws", PieceType.MEDIUM_TRIANGLE, 45, 50.0, -50.0),
        _target("tail", PieceType.PARALLELOGRAM, 90, 100.0, 10.0, flipped=True),
    )
    return GamePuzzleData(id="cat", name="Cat", target_pieces=targets)


_BUILDERS = {
    "cat": _cat,
}


def available_puzzles() -> list[str]:
    return sorted(_BUILDERS)


def load_puzzle(name: str) -> GamePuzzleData:
    """
    Get an embedded puzzle by name.

    Raises:
        KeyError: Unknown puzzle name
    """
    key = name.lower()
    if key not in _BUILDERS:
        raise KeyError(f"Unknown puzzle '{name}'. Available: {available_puzzles()}")
    return _BUILDERS[key]()


def puzzle_from_json(text: str) -> GamePuzzleData:
    """
    Parse a puzzle from its JSON form (see GamePuzzleData.to_dict).

    Raises:
        ValueError: Malformed JSON or duplicate target ids
        KeyError: Missing required field
    """
    return GamePuzzleData.from_dict(json.loads(text))


def puzzle_to_json(puzzle: GamePuzzleData, indent: Optional[int] = 2) -> str:
    return json.dumps(puzzle.to_dict(), indent=indent)


def observations_for_solution(puzzle: GamePuzzleData, timestamp: float = 0.0) -> list[PieceObservation]:
    """
    Observations sitting exactly on every target (piece id = piece type value).

    Each piece is at its target centroid, rotated to expected_piece_rotation
    and mirrored like its target.
    """
    return [
        PieceObservation(
            piece_id=target.piece_type.value,
            piece_type=target.piece_type,
            position=target.centroid(),
            rotation=expected_piece_rotation(target),
            is_flipped=target.is_flipped,
            timestamp=timestamp,
        )
        for target in puzzle.target_pieces
    ]
