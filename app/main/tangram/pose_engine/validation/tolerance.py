"""
Per-piece tolerance checks.

A mapped piece matches a target when:
- its centroid is closer than the position tolerance
- its feature angle is within the rotation tolerance (symmetry-folded)
- for the parallelogram only: its mirror state equals the target's
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional
import math

from ..config import Difficulty, ToleranceSettings, tolerances_for
from ..models import MappedPose, PieceType, Point, TargetPiece
from ..utils.geometry import (
    distance,
    piece_feature_angle,
    rotation_difference_to_nearest,
    target_feature,
)


@dataclass(frozen=True)
class ToleranceCheck:
    position_valid: bool
    rotation_valid: bool
    flip_valid: bool

    @property
    def is_valid(self) -> bool:
        return self.position_valid and self.rotation_valid and self.flip_valid


@dataclass(frozen=True)
class Residuals:
    """
    Raw distance of a mapped pose to a target.

    Attributes:
        position: Centroid distance (target space)
        rotation_deg: Fold-aware feature difference in degrees (absolute)
        flip_ok: Mirror state acceptable for this piece type
    """
    position: float
    rotation_deg: float
    flip_ok: bool


def flip_matches(piece_type: PieceType, flipped: bool, target: TargetPiece) -> bool:
    if piece_type is not PieceType.PARALLELOGRAM:
        return True
    return flipped == target.is_flipped


def pose_residuals(mapped: MappedPose, piece_type: PieceType, target: TargetPiece) -> Residuals:
    """Residuals of a mapped pose against one target."""
    feature = piece_feature_angle(mapped.rotation, piece_type, mapped.is_flipped)
    diff = rotation_difference_to_nearest(feature, target_feature(target), piece_type, mapped.is_flipped)
    return Residuals(
        position=distance(mapped.position, target.centroid()),
        rotation_deg=abs(math.degrees(diff)),
        flip_ok=flip_matches(piece_type, mapped.is_flipped, target),
    )


class PieceValidator:
    """
    Validates mapped piece poses against targets for one tolerance preset.

    Example:
        >>> validator = PieceValidator.for_difficulty("normal")
        >>> validator.position_tolerance
        40.0
    """

    def __init__(self, tolerances: ToleranceSettings):
        self.tolerances = tolerances

    @classmethod
    def for_difficulty(cls, difficulty: Difficulty | str) -> PieceValidator:
        return cls(tolerances_for(difficulty))

    @property
    def position_tolerance(self) -> float:
        return self.tolerances.position

    @property
    def rotation_tolerance_deg(self) -> float:
        return self.tolerances.rotation_deg

    def validate_with_features(
        self,
        position: Point,
        piece_feature: float,
        target_feature: float,
        piece_type: PieceType,
        flipped: bool,
        target: TargetPiece,
        target_position: Optional[Point] = None
    ) -> ToleranceCheck:
        """
        Check a mapped pose given precomputed feature angles.

        Args:
            position: Mapped piece centroid (target space)
            piece_feature: Feature angle of the mapped piece rotation
            target_feature: Feature angle of the target rotation
            piece_type: Piece type (selects the symmetry fold)
            flipped: Mapped mirror state
            target: Target piece
            target_position: Precomputed target centroid (computed if None)

        Returns:
            ToleranceCheck with one flag per criterion
        """
        if target_position is None:
            target_position = target.centroid()
        position_valid = distance(position, target_position) < self.tolerances.position

        diff = rotation_difference_to_nearest(piece_feature, target_feature, piece_type, flipped)
        rotation_valid = abs(diff) <= self.tolerances.rotation_rad

        return ToleranceCheck(
            position_valid=position_valid,
            rotation_valid=rotation_valid,
            flip_valid=flip_matches(piece_type, flipped, target),
        )

    def check_pose(self, mapped: MappedPose, piece_type: PieceType, target: TargetPiece) -> ToleranceCheck:
        """Convenience wrapper computing the feature angles from a mapped pose."""
        return self.validate_with_features(
            position=mapped.position,
            piece_feature=piece_feature_angle(mapped.rotation, piece_type, mapped.is_flipped),
            target_feature=target_feature(target),
            piece_type=piece_type,
            flipped=mapped.is_flipped,
            target=target,
        )

    def within(
        self,
        residuals: Residuals,
        position_factor: float = 1.0,
        rotation_factor: float = 1.0,
        position_slack: float = 0.0,
        rotation_slack_deg: float = 0.0
    ) -> bool:
        """Residuals inside (scaled tolerance + slack); used for relaxed gating and hysteresis."""
        position_limit = self.tolerances.position * position_factor + position_slack
        rotation_limit = self.tolerances.rotation_deg * rotation_factor + rotation_slack_deg
        return (
            residuals.flip_ok
            and residuals.position <= position_limit
            and residuals.rotation_deg <= rotation_limit
        )
