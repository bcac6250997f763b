"""
Pose Engine Data Models.

This module defines all data structures used by the tangram pose engine:
- PieceType / ShapeFamily: The seven canonical pieces and their congruence families
- PieceObservation: One reported piece pose per frame (scene frame)
- TargetPiece / GamePuzzleData: Fixed puzzle solution (target frame)
- AnchorMapping / MappingKind / MappedPose: Rigid scene -> target transform per group
- ValidationFailure / FailureKind: Typed reason for a non-match
- LockedValidation / PieceValidationState: Per-piece validation state
- NudgeLevel / VisualHint / NudgeContent: Corrective guidance
- ValidationResult: Per-frame engine output

Angles in radians, counterclockwise positive.

NOTE: GroupValidationState and ConstructionGroup are NOT defined here. They live in
      validation/groups.py next to the rules that drive them.
"""

from __future__ import annotations
from dataclasses import dataclass, field, replace
from enum import Enum, IntEnum
from typing import Optional, Any
import math
import numpy as np

from .config import AffineTransform


Point = tuple[float, float]


class ShapeFamily(Enum):
    """Congruence family of a piece. Pieces of the same family are interchangeable."""
    SMALL_TRIANGLE = "smallTriangle"
    MEDIUM_TRIANGLE = "mediumTriangle"
    LARGE_TRIANGLE = "largeTriangle"
    SQUARE = "square"
    PARALLELOGRAM = "parallelogram"


class PieceType(Enum):
    """
    The seven canonical tangram pieces.

    Notes:
        - Values match the puzzle JSON format (camelCase)
        - smallTriangle1/2 and largeTriangle1/2 are congruent pairs; matching
          buckets by `shape`, never by the raw value
    """
    SMALL_TRIANGLE_1 = "smallTriangle1"
    SMALL_TRIANGLE_2 = "smallTriangle2"
    MEDIUM_TRIANGLE = "mediumTriangle"
    LARGE_TRIANGLE_1 = "largeTriangle1"
    LARGE_TRIANGLE_2 = "largeTriangle2"
    SQUARE = "square"
    PARALLELOGRAM = "parallelogram"

    @property
    def is_triangle(self) -> bool:
        return self not in (PieceType.SQUARE, PieceType.PARALLELOGRAM)

    @property
    def shape(self) -> ShapeFamily:
        return _SHAPES[self]

    @property
    def display_name(self) -> str:
        return _DISPLAY_NAMES[self.shape]


_SHAPES = {
    PieceType.SMALL_TRIANGLE_1: ShapeFamily.SMALL_TRIANGLE,
    PieceType.SMALL_TRIANGLE_2: ShapeFamily.SMALL_TRIANGLE,
    PieceType.MEDIUM_TRIANGLE: ShapeFamily.MEDIUM_TRIANGLE,
    PieceType.LARGE_TRIANGLE_1: ShapeFamily.LARGE_TRIANGLE,
    PieceType.LARGE_TRIANGLE_2: ShapeFamily.LARGE_TRIANGLE,
    PieceType.SQUARE: ShapeFamily.SQUARE,
    PieceType.PARALLELOGRAM: ShapeFamily.PARALLELOGRAM,
}

_DISPLAY_NAMES = {
    ShapeFamily.SMALL_TRIANGLE: "Small Triangle",
    ShapeFamily.MEDIUM_TRIANGLE: "Medium Triangle",
    ShapeFamily.LARGE_TRIANGLE: "Large Triangle",
    ShapeFamily.SQUARE: "Square",
    ShapeFamily.PARALLELOGRAM: "Parallelogram",
}


@dataclass(frozen=True)
class PieceObservation:
    """
    One reported pose per piece per frame.

    Attributes:
        piece_id: Opaque piece identifier
        piece_type: One of the seven canonical pieces
        position: Piece centroid in scene frame (x, y)
        rotation: Piece rotation in radians (scene frame)
        is_flipped: Mirror state (same convention as TargetPiece.is_flipped)
        velocity: (vx, vy) in scene units per second
        timestamp: Capture time in seconds

    Notes:
        - Created by the CV/touch adapter each frame; immutable
        - Not owned by the engine beyond the current frame
    """
    piece_id: str
    piece_type: PieceType
    position: Point
    rotation: float
    is_flipped: bool = False
    velocity: Point = (0.0, 0.0)
    timestamp: float = 0.0

    @property
    def speed(self) -> float:
        return math.hypot(self.velocity[0], self.velocity[1])

    def is_finite(self) -> bool:
        """False if any pose component is NaN/Inf (degenerate upstream transform)."""
        values = (self.position[0], self.position[1], self.rotation, self.velocity[0], self.velocity[1])
        return all(math.isfinite(v) for v in values)

    def to_dict(self) -> dict:
        return {
            "piece_id": self.piece_id,
            "piece_type": self.piece_type.value,
            "position": list(self.position),
            "rotation": self.rotation,
            "is_flipped": self.is_flipped,
            "velocity": list(self.velocity),
            "timestamp": self.timestamp,
        }

    @classmethod
    def from_dict(cls, data: dict) -> PieceObservation:
        """
        Parse observation from JSON dict.

        Raises:
            KeyError: Missing required field
            ValueError: Unknown piece type or malformed vector
        """
        position = tuple(float(v) for v in data["position"])
        velocity = tuple(float(v) for v in data.get("velocity", (0.0, 0.0)))
        if len(position) != 2 or len(velocity) != 2:
            raise ValueError(f"position/velocity must have 2 components: {data}")
        return cls(
            piece_id=str(data["piece_id"]),
            piece_type=PieceType(data["piece_type"]),
            position=position,
            rotation=float(data["rotation"]),
            is_flipped=bool(data.get("is_flipped", False)),
            velocity=velocity,
            timestamp=float(data.get("timestamp", 0.0)),
        )


@dataclass(frozen=True)
class TargetPiece:
    """
    One element of the fixed puzzle solution.

    Attributes:
        id: Target identifier (unique within the puzzle)
        piece_type: Canonical piece this slot expects
        transform: Affine transform placing the scaled canonical vertices into target space
    """
    id: str
    piece_type: PieceType
    transform: AffineTransform

    @property
    def rotation(self) -> float:
        return self.transform.rotation

    @property
    def is_flipped(self) -> bool:
        return self.transform.is_flipped

    def vertices(self) -> np.ndarray:
        """Target polygon in target space, shape (N, 2)."""
        from .utils.geometry import target_vertices
        return target_vertices(self)

    def centroid(self) -> Point:
        """Mean of the transformed vertices."""
        verts = self.vertices()
        return (float(verts[:, 0].mean()), float(verts[:, 1].mean()))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "piece_type": self.piece_type.value,
            "name": self.piece_type.display_name,
            "transform": self.transform.to_dict(),
        }

    @classmethod
    def from_dict(cls, data: dict) -> TargetPiece:
        return cls(
            id=str(data["id"]),
            piece_type=PieceType(data["piece_type"]),
            transform=AffineTransform.from_dict(data["transform"]),
        )


@dataclass(frozen=True)
class GamePuzzleData:
    """
    Immutable puzzle definition: the target silhouette as seven placed pieces.
    """
    id: str
    name: str
    target_pieces: tuple[TargetPiece, ...]

    def target(self, target_id: str) -> Optional[TargetPiece]:
        for target in self.target_pieces:
            if target.id == target_id:
                return target
        return None

    def targets_of_shape(self, shape: ShapeFamily) -> list[TargetPiece]:
        return [t for t in self.target_pieces if t.piece_type.shape == shape]

    def to_dict(self) -> dict:
        return {"id": self.id, "name": self.name, "target_pieces": [t.to_dict() for t in self.target_pieces]}

    @classmethod
    def from_dict(cls, data: dict) -> GamePuzzleData:
        targets = tuple(TargetPiece.from_dict(t) for t in data["target_pieces"])
        ids = [t.id for t in targets]
        if len(set(ids)) != len(ids):
            raise ValueError(f"Duplicate target ids in puzzle {data.get('id')}: {ids}")
        return cls(id=str(data["id"]), name=str(data.get("name", data["id"])), target_pieces=targets)


class MappingKind(Enum):
    """
    Which transform convention an AnchorMapping uses.

    Values:
        ANCHOR_RELATIVE: p' = anchor + T + R·(p - anchor), fresh single-pair estimate
        GLOBAL: p' = R·p + T, refined or optimized multi-piece estimate
    """
    ANCHOR_RELATIVE = "anchor_relative"
    GLOBAL = "global"

    @staticmethod
    def for_counts(version: int, pair_count: int) -> MappingKind:
        if version >= 2 or pair_count >= 2:
            return MappingKind.GLOBAL
        return MappingKind.ANCHOR_RELATIVE


@dataclass(frozen=True)
class AnchorMapping:
    """
    Rigid transform mapping one group's observed poses into target space.

    Attributes:
        rotation_delta: Rotation R in radians
        translation_offset: Translation T (dx, dy)
        flip_parity: Mirror state differs between scene and target
        anchor_piece_id: Observed piece that seeded the estimate
        anchor_target_id: Target the anchor piece was matched to
        version: 1 = single estimate, >= 2 = refined
        pair_count: Number of piece <-> target correspondences that contributed
        confidence: Fit confidence (1 / max(1, cost) for optimized mappings)
        kind: Transform convention (see MappingKind)

    Invariants:
        - Exactly one live mapping per group (held by MappingService)
        - Replaced, never mutated: use refined() / dataclasses.replace

    Example:
        >>> m = AnchorMapping.global_fit(0.0, (10.0, 0.0), "p1", "t1")
        >>> m.kind is MappingKind.GLOBAL
        True
    """
    rotation_delta: float
    translation_offset: Point
    flip_parity: bool
    anchor_piece_id: str
    anchor_target_id: str
    version: int = 1
    pair_count: int = 1
    confidence: float = 1.0
    kind: MappingKind = MappingKind.ANCHOR_RELATIVE

    @classmethod
    def anchor_relative(
        cls,
        rotation_delta: float,
        translation_offset: Point,
        anchor_piece_id: str,
        anchor_target_id: str,
        flip_parity: bool = False,
        confidence: float = 1.0
    ) -> AnchorMapping:
        return cls(
            rotation_delta=rotation_delta,
            translation_offset=translation_offset,
            flip_parity=flip_parity,
            anchor_piece_id=anchor_piece_id,
            anchor_target_id=anchor_target_id,
            version=1,
            pair_count=1,
            confidence=confidence,
            kind=MappingKind.ANCHOR_RELATIVE,
        )

    @classmethod
    def global_fit(
        cls,
        rotation_delta: float,
        translation_offset: Point,
        anchor_piece_id: str,
        anchor_target_id: str,
        flip_parity: bool = False,
        version: int = 1,
        pair_count: int = 2,
        confidence: float = 1.0
    ) -> AnchorMapping:
        return cls(
            rotation_delta=rotation_delta,
            translation_offset=translation_offset,
            flip_parity=flip_parity,
            anchor_piece_id=anchor_piece_id,
            anchor_target_id=anchor_target_id,
            version=version,
            pair_count=pair_count,
            confidence=confidence,
            kind=MappingKind.GLOBAL,
        )

    def refined(self, rotation_delta: float, translation_offset: Point, pair_count: int) -> AnchorMapping:
        """New GLOBAL mapping with bumped version."""
        return replace(
            self,
            rotation_delta=rotation_delta,
            translation_offset=translation_offset,
            version=self.version + 1,
            pair_count=pair_count,
            kind=MappingKind.for_counts(self.version + 1, pair_count),
        )

    def committed(self) -> AnchorMapping:
        """Mark as stable global mapping (version >= 2, pair_count >= 2)."""
        return replace(
            self,
            version=max(self.version, 2),
            pair_count=max(self.pair_count, 2),
            kind=MappingKind.for_counts(max(self.version, 2), max(self.pair_count, 2)),
        )

    @property
    def rotation_delta_deg(self) -> float:
        return math.degrees(self.rotation_delta)

    def to_dict(self) -> dict:
        return {
            "rotation_delta": self.rotation_delta,
            "rotation_delta_deg": self.rotation_delta_deg,
            "translation_offset": list(self.translation_offset),
            "flip_parity": self.flip_parity,
            "anchor_piece_id": self.anchor_piece_id,
            "anchor_target_id": self.anchor_target_id,
            "version": self.version,
            "pair_count": self.pair_count,
            "confidence": self.confidence,
            "kind": self.kind.value,
        }


@dataclass(frozen=True)
class MappedPose:
    """Observed pose expressed in target space."""
    position: Point
    rotation: float
    is_flipped: bool


class FailureKind(Enum):
    WRONG_PIECE = "wrong_piece"
    WRONG_POSITION = "wrong_position"
    WRONG_ROTATION = "wrong_rotation"
    NEEDS_FLIP = "needs_flip"
    NO_VALIDATED_PIECES_NEARBY = "no_validated_pieces_nearby"


@dataclass(frozen=True)
class ValidationFailure:
    """
    Tagged reason for a non-match.

    Attributes:
        kind: FailureKind
        offset: Distance to target centroid (WRONG_POSITION only)
        degrees_off: Rotation residual in degrees (WRONG_ROTATION only)
        target_id: Target the failure was analysed against, if any

    Notes:
        - Produced per validation pass, never persisted
    """
    kind: FailureKind
    offset: Optional[float] = None
    degrees_off: Optional[float] = None
    target_id: Optional[str] = None

    @classmethod
    def wrong_piece(cls, target_id: Optional[str] = None) -> ValidationFailure:
        return cls(FailureKind.WRONG_PIECE, target_id=target_id)

    @classmethod
    def wrong_position(cls, offset: float, target_id: Optional[str] = None) -> ValidationFailure:
        return cls(FailureKind.WRONG_POSITION, offset=offset, target_id=target_id)

    @classmethod
    def wrong_rotation(cls, degrees_off: float, target_id: Optional[str] = None) -> ValidationFailure:
        return cls(FailureKind.WRONG_ROTATION, degrees_off=degrees_off, target_id=target_id)

    @classmethod
    def needs_flip(cls, target_id: Optional[str] = None) -> ValidationFailure:
        return cls(FailureKind.NEEDS_FLIP, target_id=target_id)

    @classmethod
    def no_validated_pieces_nearby(cls) -> ValidationFailure:
        return cls(FailureKind.NO_VALIDATED_PIECES_NEARBY)

    @property
    def nudge_message(self) -> str:
        if self.kind is FailureKind.WRONG_POSITION:
            return "Try moving closer" if (self.offset or 0.0) > 50 else "Almost there!"
        if self.kind is FailureKind.WRONG_ROTATION:
            return "Try rotating" if (self.degrees_off or 0.0) > 45 else "Slight rotation needed"
        if self.kind is FailureKind.NEEDS_FLIP:
            return "Try flipping the piece"
        if self.kind is FailureKind.NO_VALIDATED_PIECES_NEARBY:
            return "Connect to other pieces"
        return "Try a different piece"

    def to_dict(self) -> dict:
        data = {"kind": self.kind.value, "message": self.nudge_message}
        if self.offset is not None:
            data["offset"] = self.offset
        if self.degrees_off is not None:
            data["degrees_off"] = self.degrees_off
        if self.target_id is not None:
            data["target_id"] = self.target_id
        return data


@dataclass(frozen=True)
class LockedValidation:
    """
    Hysteresis record for a validated piece.

    Attributes:
        piece_id: Locked piece
        target_id: Target the piece is bound to
        last_valid_pose: Last mapped pose that was within slack
        locked_at: Lock time (seconds)
        position_slack: Per-lock override of EngineConfig.invalidation_slack_position
        rotation_slack_deg: Per-lock override of EngineConfig.invalidation_slack_rotation_deg
    """
    piece_id: str
    target_id: str
    last_valid_pose: MappedPose
    locked_at: float
    position_slack: Optional[float] = None
    rotation_slack_deg: Optional[float] = None


@dataclass(frozen=True)
class PieceValidationState:
    piece_id: str
    is_valid: bool
    confidence: float
    target_id: Optional[str] = None
    optimal_transform: Optional[AffineTransform] = None

    def to_dict(self) -> dict:
        return {
            "piece_id": self.piece_id,
            "is_valid": self.is_valid,
            "confidence": self.confidence,
            "target_id": self.target_id,
            "optimal_transform": self.optimal_transform.to_dict() if self.optimal_transform else None,
        }


class NudgeLevel(IntEnum):
    """Severity/specificity tier of a nudge."""
    NONE = 0
    VISUAL = 1      # Color/opacity change only
    GENTLE = 2      # Generic hint like "Try rotating"
    SPECIFIC = 3    # Specific action like "Flip the piece"
    DIRECTED = 4    # Arrow showing direction
    SOLUTION = 5    # Ghost piece showing exact placement


@dataclass(frozen=True)
class VisualHint:
    """
    Visual part of a nudge.

    kind is one of: color_change, arrow, ghost_piece, pulse, flip_demo, rotation_demo.
    Only the fields relevant to the kind are set.
    """
    kind: str
    color: Optional[str] = None
    alpha: Optional[float] = None
    direction: Optional[float] = None
    position: Optional[Point] = None
    rotation: Optional[float] = None
    intensity: Optional[float] = None
    current: Optional[float] = None
    target: Optional[float] = None

    @classmethod
    def color_change(cls, color: str, alpha: float) -> VisualHint:
        return cls("color_change", color=color, alpha=alpha)

    @classmethod
    def arrow(cls, direction: float) -> VisualHint:
        return cls("arrow", direction=direction)

    @classmethod
    def ghost_piece(cls, position: Point, rotation: float) -> VisualHint:
        return cls("ghost_piece", position=position, rotation=rotation)

    @classmethod
    def pulse(cls, intensity: float) -> VisualHint:
        return cls("pulse", intensity=intensity)

    @classmethod
    def flip_demo(cls) -> VisualHint:
        return cls("flip_demo")

    @classmethod
    def rotation_demo(cls, current: float, target: float) -> VisualHint:
        return cls("rotation_demo", current=current, target=target)

    def to_dict(self) -> dict:
        data = {"kind": self.kind}
        for name in ("color", "alpha", "direction", "position", "rotation", "intensity", "current", "target"):
            value = getattr(self, name)
            if value is not None:
                data[name] = list(value) if isinstance(value, tuple) else value
        return data


@dataclass(frozen=True)
class NudgeContent:
    level: NudgeLevel
    message: str
    visual_hint: Optional[VisualHint] = None
    duration: float = 0.0

    def to_dict(self) -> dict:
        return {
            "level": self.level.name.lower(),
            "message": self.message,
            "visual_hint": self.visual_hint.to_dict() if self.visual_hint else None,
            "duration": self.duration,
        }


@dataclass
class ValidationResult:
    """
    Per-frame output of ValidationEngine.process().

    Attributes:
        validated_targets: Target ids currently held by locked pieces
        piece_states: piece_id -> PieceValidationState
        bindings: piece_id -> target_id
        nudge: Primary nudge as (target_id, NudgeContent), at most one
        piece_nudges: piece_id -> NudgeContent (orientation feedback)
        group_mappings: group_id -> AnchorMapping
        failure_reasons: piece_id -> ValidationFailure
        oriented_targets: Targets matched by orientation only (partial credit)
        anchor_piece_ids: Pieces currently anchoring a group mapping
        skipped: Frame was dropped as numerically degenerate (previous state returned)

    Notes:
        - Rebuilt every pass from observations and cached engine state
        - Bindings are injective within a group
    """
    validated_targets: set[str] = field(default_factory=set)
    piece_states: dict[str, PieceValidationState] = field(default_factory=dict)
    bindings: dict[str, str] = field(default_factory=dict)
    nudge: Optional[tuple[str, NudgeContent]] = None
    piece_nudges: dict[str, NudgeContent] = field(default_factory=dict)
    group_mappings: dict[str, AnchorMapping] = field(default_factory=dict)
    failure_reasons: dict[str, ValidationFailure] = field(default_factory=dict)
    oriented_targets: set[str] = field(default_factory=set)
    anchor_piece_ids: set[str] = field(default_factory=set)
    skipped: bool = False

    def to_dict(self) -> dict[str, Any]:
        return {
            "validated_targets": sorted(self.validated_targets),
            "piece_states": {pid: st.to_dict() for pid, st in self.piece_states.items()},
            "bindings": dict(self.bindings),
            "nudge": (
                {"target_id": self.nudge[0], "content": self.nudge[1].to_dict()}
                if self.nudge else None
            ),
            "piece_nudges": {pid: n.to_dict() for pid, n in self.piece_nudges.items()},
            "group_mappings": {gid: m.to_dict() for gid, m in self.group_mappings.items()},
            "failure_reasons": {pid: f.to_dict() for pid, f in self.failure_reasons.items()},
            "oriented_targets": sorted(self.oriented_targets),
            "anchor_piece_ids": sorted(self.anchor_piece_ids),
            "skipped": self.skipped,
        }
