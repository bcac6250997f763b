"""
Pose Engine Configuration Models.

This module defines the configuration structures for the tangram pose engine:
- AffineTransform: 2D affine transform (rotation + translation, optional reflection)
- Difficulty / ToleranceSettings: Validation tolerances per difficulty preset
- MappingConfig: Rigid mapping search parameters
- EngineConfig: Hysteresis and gating parameters of the validation engine
- ValidationOptions: Per-call options of ValidationEngine.process()

All positions in scene/target units (points, visual scale 50 per unit edge).
Angles in radians unless the field name ends in _deg, counterclockwise positive.
"""

from __future__ import annotations
from dataclasses import dataclass
from enum import Enum
from typing import Optional, Literal
import math
import numpy as np


@dataclass(frozen=True)
class AffineTransform:
    """
    2D affine transform placing canonical piece vertices into target space.

    Attributes:
        a, b, c, d: Linear part, column-major like CGAffineTransform
        tx, ty: Translation

    Convention:
        x' = a*x + c*y + tx
        y' = b*x + d*y + ty

    Notes:
        - rotation = atan2(b, a)
        - determinant < 0 means the transform contains a reflection (flipped piece)
        - Only rotation (+ optional reflection) is expected; scale is applied
          separately via the visual scale of the canonical vertices
    """
    a: float = 1.0
    b: float = 0.0
    c: float = 0.0
    d: float = 1.0
    tx: float = 0.0
    ty: float = 0.0

    @property
    def rotation(self) -> float:
        """Rotation angle in radians, range [-pi, pi]."""
        return math.atan2(self.b, self.a)

    @property
    def determinant(self) -> float:
        return self.a * self.d - self.b * self.c

    @property
    def is_flipped(self) -> bool:
        return self.determinant < 0

    @property
    def translation(self) -> tuple[float, float]:
        return (self.tx, self.ty)

    @classmethod
    def from_pose(
        cls,
        rotation: float,
        tx: float = 0.0,
        ty: float = 0.0,
        flipped: bool = False
    ) -> AffineTransform:
        """
        Create transform from rotation, translation and flip flag.

        Args:
            rotation: Rotation in radians (CCW)
            tx, ty: Translation
            flipped: Mirror the local y axis before rotating

        Returns:
            AffineTransform with det = +1 (not flipped) or -1 (flipped)

        Example:
            >>> t = AffineTransform.from_pose(math.pi / 2, 10, 20)
            >>> round(t.rotation, 6) == round(math.pi / 2, 6)
            True
        """
        cos_r = math.cos(rotation)
        sin_r = math.sin(rotation)
        if flipped:
            # R(rotation) @ diag(1, -1): local y mirrored, atan2(b, a) stays == rotation
            return cls(a=cos_r, b=sin_r, c=sin_r, d=-cos_r, tx=tx, ty=ty)
        return cls(a=cos_r, b=sin_r, c=-sin_r, d=cos_r, tx=tx, ty=ty)

    def to_matrix(self) -> np.ndarray:
        """
        Convert to 3x3 homogeneous matrix.

        Returns:
            3x3 numpy array: [[a c tx]
                              [b d ty]
                              [0 0 1 ]]
        """
        return np.array([
            [self.a, self.c, self.tx],
            [self.b, self.d, self.ty],
            [0.0, 0.0, 1.0]
        ], dtype=float)

    @classmethod
    def from_matrix(cls, mat: np.ndarray) -> AffineTransform:
        """Create AffineTransform from 3x3 homogeneous matrix."""
        if mat.shape != (3, 3):
            raise ValueError(f"Expected (3, 3) matrix, got shape {mat.shape}")
        return cls(
            a=float(mat[0, 0]), b=float(mat[1, 0]),
            c=float(mat[0, 1]), d=float(mat[1, 1]),
            tx=float(mat[0, 2]), ty=float(mat[1, 2])
        )

    def inverse(self) -> AffineTransform:
        """
        Compute inverse transform.

        Raises:
            ValueError: If the linear part is singular (|det| < 1e-12)
        """
        if abs(self.determinant) < 1e-12:
            raise ValueError(f"Transform is singular (det={self.determinant:.3e})")
        return AffineTransform.from_matrix(np.linalg.inv(self.to_matrix()))

    def apply(self, points: np.ndarray) -> np.ndarray:
        """
        Apply transform to points.

        Args:
            points: (N, 2) array of points

        Returns:
            (N, 2) transformed points
        """
        points = np.asarray(points, dtype=float)
        if points.ndim != 2 or points.shape[1] != 2:
            raise ValueError(f"Expected (N, 2) array, got shape {points.shape}")

        n = points.shape[0]
        points_h = np.hstack([points, np.ones((n, 1))])
        transformed_h = (self.to_matrix() @ points_h.T).T
        return transformed_h[:, :2]

    def to_dict(self) -> dict:
        return {"a": self.a, "b": self.b, "c": self.c, "d": self.d, "tx": self.tx, "ty": self.ty}

    @classmethod
    def from_dict(cls, data: dict) -> AffineTransform:
        return cls(**{k: float(data[k]) for k in ("a", "b", "c", "d", "tx", "ty")})


class Difficulty(Enum):
    """Difficulty preset selecting the validation tolerances."""
    EASY = "easy"
    NORMAL = "normal"
    HARD = "hard"


@dataclass(frozen=True)
class ToleranceSettings:
    """
    Validation tolerances for one difficulty preset.

    Attributes:
        position: Max centroid distance for a valid placement (scene units)
        rotation_deg: Max feature-angle difference for a valid placement (degrees)
        connection: Max distance for two pieces to count as connected
        edge_contact: Max polygon gap for two pieces to count as touching
    """
    position: float
    rotation_deg: float
    connection: float
    edge_contact: float

    @property
    def rotation_rad(self) -> float:
        return math.radians(self.rotation_deg)


_TOLERANCE_PRESETS: dict[Difficulty, ToleranceSettings] = {
    Difficulty.EASY: ToleranceSettings(position=55.0, rotation_deg=24.0, connection=170.0, edge_contact=16.0),
    Difficulty.NORMAL: ToleranceSettings(position=40.0, rotation_deg=18.0, connection=130.0, edge_contact=14.0),
    Difficulty.HARD: ToleranceSettings(position=28.0, rotation_deg=12.0, connection=90.0, edge_contact=10.0),
}


def tolerances_for(difficulty: Difficulty | str) -> ToleranceSettings:
    """
    Get tolerance preset for a difficulty.

    Args:
        difficulty: Difficulty enum or its string value ("easy", "normal", "hard")

    Raises:
        ValueError: Unknown difficulty string
    """
    if isinstance(difficulty, str):
        difficulty = Difficulty(difficulty.lower())
    return _TOLERANCE_PRESETS[difficulty]


@dataclass
class MappingConfig:
    """
    Parameters of the rigid mapping search.

    Notes:
        - Defaults are empirical starting points, not proven optima
        - Position dominates the cost (wt > wr): rotation error is bounded
          while gross mispositioning is not
    """

    translation_weight: float = 1.0
    """wt: weight of position residual in assignment cost. TODO: Tuning"""

    rotation_weight: float = 0.5
    """wr: weight of rotation residual (degrees) in assignment cost. TODO: Tuning"""

    coarse_step_deg: float = 5.0
    """Coarse rotation grid step over the full circle (degrees)"""

    fine_span_deg: float = 5.0
    """Fine search covers best ± fine_span_deg (degrees)"""

    fine_step_deg: float = 0.5
    """Fine search step (degrees)"""

    padding_cost: float = 1_000_000.0
    """Sentinel cost for padded cells of non-square assignment matrices"""

    reuse_rotation_deg: float = 2.0
    """A recomputed mapping closer than this to the committed one is not re-committed"""

    reuse_translation: float = 3.0
    """A recomputed mapping closer than this to the committed one is not re-committed"""


@dataclass
class EngineConfig:
    """
    Hysteresis, gating and bookkeeping parameters of the validation engine.
    """

    invalidation_slack_position: float = 18.0
    """Extra position slack for locked pieces before they start to invalidate"""

    invalidation_slack_rotation_deg: float = 8.0
    """Extra rotation slack (degrees) for locked pieces"""

    invalidation_dwell_seconds: float = 0.5
    """A locked piece must stay beyond slack this long before it unlocks"""

    significant_move_position: float = 2.0
    """Pose changes below this (and below significant_move_rotation_deg) are ignored"""

    significant_move_rotation_deg: float = 3.0

    relaxed_position_factor: float = 1.6
    """Relaxed pair gating: position tolerance multiplier"""

    relaxed_rotation_factor: float = 1.2
    """Relaxed pair gating: rotation tolerance multiplier"""

    max_pair_separation: float = 140.0
    """Two anchor pieces further apart than this are never committed. TODO: Tuning per level"""

    min_nudge_attempts: int = 2
    """Failed attempts before a piece becomes a nudge candidate"""

    pair_score_focus_factor: float = 0.6
    """Score multiplier for anchor pairs containing the focus piece"""


@dataclass
class ValidationOptions:
    """
    Options for one ValidationEngine.process() call.

    Attributes:
        validate_on_move: Validate on movement events once a piece settles
        enable_nudges: Emit the primary nudge
        enable_hints: Emit orientation-only feedback nudges
        nudge_cooldown: Global minimum seconds between primary nudges
        dwell_validate_interval: Full re-validation interval (seconds)
        orientation_tolerance_deg: Orientation-only match tolerance
        rotation_nudge_upper_deg: Rotation demos only below this delta
        focus_piece_id: Piece the player is currently handling (preferred anchor)
        settle_velocity_threshold: Speed below which a piece counts as placed
        mapping_strategy: "pair" | "optimized" | "anchor"
    """
    validate_on_move: bool = True
    enable_nudges: bool = True
    enable_hints: bool = True
    nudge_cooldown: float = 3.0
    dwell_validate_interval: float = 1.0
    orientation_tolerance_deg: float = 5.0
    rotation_nudge_upper_deg: float = 45.0
    focus_piece_id: Optional[str] = None
    settle_velocity_threshold: float = 12.0
    mapping_strategy: Literal["pair", "optimized", "anchor"] = "pair"

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> ValidationOptions:
        """Build options from a JSON dict, ignoring unknown keys."""
        if not data:
            return cls()
        known = {k: v for k, v in data.items() if k in cls.__dataclass_fields__}
        options = cls(**known)
        if options.mapping_strategy not in ("pair", "optimized", "anchor"):
            raise ValueError(f"Unknown mapping_strategy: {options.mapping_strategy}")
        return options
