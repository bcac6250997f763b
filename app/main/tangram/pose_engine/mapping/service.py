"""
Per-group rigid mapping service.

Owns, per construction group:
- the live AnchorMapping (exactly one per group)
- consumed target ids (targets already bound to a validated piece)
- validated (piece, target) pairs used for refinement
- group membership and cluster-signature index for mapping reuse

Pure bookkeeping + math: no frame timing, no nudges.
"""

from __future__ import annotations
from dataclasses import dataclass, field
from typing import Iterable, Optional, Sequence, TYPE_CHECKING
import logging
import math

from ..config import MappingConfig
from ..models import (
    AnchorMapping,
    MappedPose,
    PieceObservation,
    PieceType,
    TargetPiece,
    ValidationFailure,
    Point,
)
from ..utils.geometry import (
    angle_difference,
    distance,
    is_finite_point,
    normalize_angle,
    piece_feature_angle,
    rotate_point,
    target_feature,
    target_feature_angle,
)
from .optimizer import optimize_mapping
from .transforms import (
    map_piece_to_target_space,
    inverse_map_target_to_physical,
    inverse_map_pose,
)

if TYPE_CHECKING:
    from ..validation.tolerance import PieceValidator

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class AnchorCandidate:
    """Observed piece proposed as the anchor of a fresh single-piece mapping."""
    piece_id: str
    piece_type: PieceType
    position: Point
    rotation: float
    is_flipped: bool

    @classmethod
    def from_observation(cls, obs: PieceObservation) -> AnchorCandidate:
        return cls(obs.piece_id, obs.piece_type, obs.position, obs.rotation, obs.is_flipped)


@dataclass(frozen=True)
class TargetCandidate:
    """Target proposed for the anchor, with precomputed centroid."""
    target: TargetPiece
    centroid: Point
    expected_rotation: float
    is_flipped: bool

    @classmethod
    def from_target(cls, target: TargetPiece) -> TargetCandidate:
        return cls(target, target.centroid(), target.rotation, target.is_flipped)


@dataclass(frozen=True)
class Correspondence:
    """Observed piece centroid paired with its bound target centroid."""
    piece_position: Point
    target_position: Point


@dataclass
class _GroupRecord:
    mapping: Optional[AnchorMapping] = None
    consumed: set[str] = field(default_factory=set)
    pairs: list[tuple[str, str]] = field(default_factory=list)
    members: Optional[frozenset[str]] = None


class MappingService:
    """
    Holds per-group mappings and validation bookkeeping.

    Example:
        >>> service = MappingService()
        >>> service.mapping_for("g1") is None
        True
    """

    # Stateless transforms, exposed here for callers holding a service
    map_piece_to_target_space = staticmethod(map_piece_to_target_space)
    inverse_map_target_to_physical = staticmethod(inverse_map_target_to_physical)
    inverse_map_pose = staticmethod(inverse_map_pose)

    def __init__(self, config: Optional[MappingConfig] = None):
        self.config = config or MappingConfig()
        self._groups: dict[str, _GroupRecord] = {}
        self._signature_index: dict[str, tuple[str, AnchorMapping]] = {}

    def _record(self, group_id: str) -> _GroupRecord:
        return self._groups.setdefault(group_id, _GroupRecord())

    # ========== Establish ==========

    def establish_or_update_mapping(
        self,
        group_id: str,
        group_piece_ids: Iterable[str],
        anchor: AnchorCandidate,
        candidates: Sequence[TargetCandidate],
        max_feature_delta_deg: Optional[float] = None,
        anchor_has_edge_contact: Optional[bool] = None
    ) -> Optional[AnchorMapping]:
        """
        Establish a single-anchor mapping for a group (idempotent).

        Args:
            group_id: Group key
            group_piece_ids: Current members (empty group -> None)
            anchor: Chosen anchor piece
            candidates: Candidate targets for the anchor
            max_feature_delta_deg: Reject if |rotation delta| exceeds this
            anchor_has_edge_contact: Reject if explicitly False

        Returns:
            Cached mapping if one exists, else a new ANCHOR_RELATIVE mapping, or None

        Notes:
            - The anchor target is NOT consumed here; consumption happens when a
              piece validates against it
        """
        existing = self._record(group_id).mapping
        if existing is not None:
            return existing
        if not list(group_piece_ids):
            return None

        same_shape = [c for c in candidates if c.target.piece_type.shape == anchor.piece_type.shape]
        if not same_shape:
            return None
        best = min(same_shape, key=lambda c: distance(anchor.position, c.centroid))

        anchor_feature = piece_feature_angle(anchor.rotation, anchor.piece_type, anchor.is_flipped)
        anchor_target_feature = target_feature_angle(best.expected_rotation, anchor.piece_type)
        rotation_delta = normalize_angle(anchor_target_feature - anchor_feature)
        delta_deg = abs(math.degrees(rotation_delta))

        if max_feature_delta_deg is not None and delta_deg > max_feature_delta_deg:
            logger.debug("Anchor %s rejected: feature delta %.1f° > %.1f°",
                         anchor.piece_id, delta_deg, max_feature_delta_deg)
            return None
        if anchor_has_edge_contact is False:
            logger.debug("Anchor %s rejected: no edge contact", anchor.piece_id)
            return None

        mapping = AnchorMapping.anchor_relative(
            rotation_delta=rotation_delta,
            translation_offset=(best.centroid[0] - anchor.position[0], best.centroid[1] - anchor.position[1]),
            anchor_piece_id=anchor.piece_id,
            anchor_target_id=best.target.id,
            flip_parity=anchor.piece_type is PieceType.PARALLELOGRAM and best.is_flipped != anchor.is_flipped,
        )
        self._record(group_id).mapping = mapping
        logger.info(
            "Mapping established group=%s anchor=%s -> %s delta=%.1f°",
            group_id, anchor.piece_id, best.target.id, math.degrees(rotation_delta)
        )
        return mapping

    def establish_or_update_mapping_optimized(
        self,
        group_id: str,
        pieces: Sequence[PieceObservation],
        candidate_targets: Sequence[TargetPiece]
    ) -> Optional[AnchorMapping]:
        """
        Establish a GLOBAL mapping for a whole cluster via rotation search + assignment.

        Reuse rules:
            1. Mapping stored under the same cluster signature (sorted ids joined by "|")
            2. Group's own mapping if membership is unchanged

        Returns:
            Mapping, or None for fewer than 2 pieces
        """
        signature = "|".join(sorted(p.piece_id for p in pieces))
        members = frozenset(p.piece_id for p in pieces)
        record = self._record(group_id)

        indexed = self._signature_index.get(signature)
        if indexed is not None:
            owner, mapping = indexed
            owner_record = self._groups.get(owner)
            # Only valid while the owner still holds the mapping computed for this cluster
            if owner_record is not None and owner_record.mapping is mapping:
                record.mapping = mapping
                record.members = members
                return mapping
            del self._signature_index[signature]

        if record.mapping is not None and record.members == members:
            return record.mapping

        if len(pieces) < 2:
            return None

        mapping = optimize_mapping(pieces, candidate_targets, self.config)
        if mapping is None:
            return None

        record.mapping = mapping
        record.members = members
        self._drop_signatures(group_id)
        self._signature_index[signature] = (group_id, mapping)
        logger.info(
            "Optimized mapping group=%s theta=%.1f° pieces=%d confidence=%.3f",
            group_id, mapping.rotation_delta_deg, len(pieces), mapping.confidence
        )
        return mapping

    # ========== Refine ==========

    def refine_mapping(
        self,
        group_id: str,
        pairs: Sequence[Correspondence],
        anchor_piece_position: Point,
        anchor_target_position: Point
    ) -> Optional[AnchorMapping]:
        """
        Refine the group mapping from >= 2 correspondences.

        Algorithm:
            src_i = p_i - anchor_piece, dst_i = t_i - anchor_target
            rot = atan2(sum sin(b_i - a_i), sum cos(b_i - a_i)), a/b = bearings of src/dst
            trans = mean(dst) - mean(R·src)
            T = anchor_target - R·anchor_piece + trans

        Returns:
            New GLOBAL mapping (version + 1), or the existing mapping unchanged
            if there is none or fewer than 2 usable pairs
        """
        mapping = self._record(group_id).mapping
        if mapping is None:
            return None

        usable = [c for c in pairs if is_finite_point(c.piece_position) and is_finite_point(c.target_position)]
        if len(usable) < 2:
            return mapping

        ax, ay = anchor_piece_position
        bx, by = anchor_target_position
        src = [(c.piece_position[0] - ax, c.piece_position[1] - ay) for c in usable]
        dst = [(c.target_position[0] - bx, c.target_position[1] - by) for c in usable]

        sum_cos = 0.0
        sum_sin = 0.0
        for s, d in zip(src, dst):
            # Zero vectors (the anchor itself) carry no bearing
            if math.hypot(*s) < 1e-9 or math.hypot(*d) < 1e-9:
                continue
            diff = math.atan2(d[1], d[0]) - math.atan2(s[1], s[0])
            sum_cos += math.cos(diff)
            sum_sin += math.sin(diff)
        if sum_cos == 0.0 and sum_sin == 0.0:
            return mapping
        rot = math.atan2(sum_sin, sum_cos)

        n = len(src)
        rotated = [rotate_point(s, rot) for s in src]
        trans = (
            sum(d[0] for d in dst) / n - sum(r[0] for r in rotated) / n,
            sum(d[1] for d in dst) / n - sum(r[1] for r in rotated) / n,
        )
        anchor_rot = rotate_point(anchor_piece_position, rot)
        translation = (bx - anchor_rot[0] + trans[0], by - anchor_rot[1] + trans[1])

        refined = mapping.refined(rotation_delta=rot, translation_offset=translation, pair_count=len(pairs))
        self._record(group_id).mapping = refined
        logger.debug("Mapping refined group=%s v%d rot=%.2f°", group_id, refined.version, math.degrees(rot))
        return refined

    # ========== Validation through a mapping ==========

    def validate_mapped(
        self,
        mapped_pose: MappedPose,
        piece_type: PieceType,
        target: TargetPiece,
        validator: PieceValidator
    ) -> bool:
        is_valid, _ = self.validate_mapped_detailed(mapped_pose, piece_type, target, validator)
        return is_valid

    def validate_mapped_detailed(
        self,
        mapped_pose: MappedPose,
        piece_type: PieceType,
        target: TargetPiece,
        validator: PieceValidator
    ) -> tuple[bool, Optional[ValidationFailure]]:
        """
        Validate a mapped pose against one target and name the primary blocker.

        Priority: flip > position (offset) > rotation (degrees off) > wrong piece.
        """
        check = validator.check_pose(mapped_pose, piece_type, target)
        if check.is_valid:
            return True, None
        if not check.flip_valid:
            return False, ValidationFailure.needs_flip(target.id)
        if not check.position_valid:
            return False, ValidationFailure.wrong_position(distance(mapped_pose.position, target.centroid()), target.id)
        if not check.rotation_valid:
            piece_feature = piece_feature_angle(mapped_pose.rotation, piece_type, mapped_pose.is_flipped)
            degrees_off = abs(math.degrees(angle_difference(piece_feature, target_feature(target))))
            return False, ValidationFailure.wrong_rotation(degrees_off, target.id)
        return False, ValidationFailure.wrong_piece(target.id)

    # ========== Bookkeeping ==========

    def mapping_for(self, group_id: str) -> Optional[AnchorMapping]:
        record = self._groups.get(group_id)
        return record.mapping if record else None

    def set_mapping(self, group_id: str, mapping: AnchorMapping) -> None:
        self._record(group_id).mapping = mapping

    def invalidate_group(self, group_id: str) -> None:
        """Drop the group's mapping, consumed targets, pairs and signature entries."""
        self._groups.pop(group_id, None)
        self._drop_signatures(group_id)
        logger.debug("Group %s invalidated", group_id)

    def _drop_signatures(self, group_id: str) -> None:
        stale = [sig for sig, (owner, _) in self._signature_index.items() if owner == group_id]
        for sig in stale:
            del self._signature_index[sig]

    def mark_target_consumed(self, group_id: str, target_id: str) -> None:
        self._record(group_id).consumed.add(target_id)

    def unmark_target_consumed(self, group_id: str, target_id: str) -> None:
        record = self._groups.get(group_id)
        if record:
            record.consumed.discard(target_id)

    def consumed_targets(self, group_id: str) -> set[str]:
        record = self._groups.get(group_id)
        return set(record.consumed) if record else set()

    def append_pair(self, group_id: str, piece_id: str, target_id: str) -> None:
        pairs = self._record(group_id).pairs
        if (piece_id, target_id) not in pairs:
            pairs.append((piece_id, target_id))

    def remove_pair(self, group_id: str, piece_id: str, target_id: Optional[str] = None) -> None:
        """Remove pairs of a piece (optionally only the one bound to target_id)."""
        record = self._groups.get(group_id)
        if not record:
            return
        record.pairs = [
            (pid, tid) for pid, tid in record.pairs
            if not (pid == piece_id and (target_id is None or tid == target_id))
        ]

    def validated_pairs(self, group_id: str) -> list[tuple[str, str]]:
        record = self._groups.get(group_id)
        return list(record.pairs) if record else []

    def reset(self) -> None:
        self._groups.clear()
        self._signature_index.clear()
