"""
Frame-driven validation engine.

Per frame:
    1. Drop numerically degenerate frames (previous result, marked skipped)
    2. Filter significant moves
    3. Synchronise construction groups
    4. Establish / keep one rigid mapping per group (pair | optimized | anchor)
    5. Validate members under the mapping: locked pieces first (hysteresis),
       then fresh validation with injective target binding
    6. Orientation-only feedback
    7. Attempts and group status
    8. Primary nudge
    9. Report

Single-threaded: one engine per play session, driven by process() / tick().
"""

from __future__ import annotations
from dataclasses import dataclass, replace
from typing import Mapping, Optional, Sequence
import logging
import math
import time

import numpy as np

from ..config import (
    Difficulty,
    EngineConfig,
    MappingConfig,
    ToleranceSettings,
    ValidationOptions,
    tolerances_for,
)
from ..mapping.pair_transform import solve_pair_transform
from ..mapping.service import AnchorCandidate, Correspondence, MappingService, TargetCandidate
from ..mapping.transforms import inverse_map_polygon, map_piece_to_target_space, mapping_distance
from ..models import (
    AnchorMapping,
    GamePuzzleData,
    LockedValidation,
    MappedPose,
    MappingKind,
    NudgeContent,
    PieceObservation,
    PieceType,
    PieceValidationState,
    Point,
    TargetPiece,
    ValidationFailure,
    ValidationResult,
)
from ..nudges.manager import SmartNudgeManager, TargetInfo
from ..pairing.adjacency import TargetAdjacencyGraph
from ..pairing.library import TargetPairLibrary
from ..pairing.scorer import PairScorer
from ..utils.geometry import (
    angle_difference,
    distance,
    expected_piece_rotation,
    normalize_angle,
    piece_feature_angle,
    piece_polygon,
    polygon_gap,
    rotation_difference_to_nearest,
    target_feature,
)
from .failures import determine_failure_reason
from .groups import ConstructionGroup
from .orientation import orientation_feedback
from .tolerance import PieceValidator, pose_residuals

logger = logging.getLogger(__name__)

DEFAULT_GROUP_ID = "main"


@dataclass
class _PuzzleAssets:
    puzzle: GamePuzzleData
    library: TargetPairLibrary
    adjacency: TargetAdjacencyGraph


class ValidationEngine:
    """
    Validates observed tangram pieces against a puzzle, frame by frame.

    Args:
        difficulty: Tolerance preset (ignored if tolerances is given)
        engine_config: Hysteresis / gating parameters
        mapping_config: Rigid mapping search parameters
        tolerances: Explicit tolerance settings

    Example:
        >>> engine = ValidationEngine("normal")
        >>> result = engine.process(frame, puzzle, now=0.0)
        >>> sorted(result.validated_targets)
    """

    def __init__(
        self,
        difficulty: Difficulty | str = Difficulty.NORMAL,
        engine_config: Optional[EngineConfig] = None,
        mapping_config: Optional[MappingConfig] = None,
        tolerances: Optional[ToleranceSettings] = None
    ):
        self.tolerances = tolerances or tolerances_for(difficulty)
        self.config = engine_config or EngineConfig()
        self.mapping_config = mapping_config or MappingConfig()
        self.validator = PieceValidator(self.tolerances)
        self.mapping_service = MappingService(self.mapping_config)
        self.pair_scorer = PairScorer(self.config.pair_score_focus_factor)
        self.nudge_manager = SmartNudgeManager()
        self._assets: Optional[_PuzzleAssets] = None
        self._reset_state()

    def _reset_state(self) -> None:
        self._bindings: dict[str, str] = {}
        self._locks: dict[str, LockedValidation] = {}
        self._invalidation_start: dict[str, float] = {}
        self._attempts: dict[str, int] = {}
        self._last_pose: dict[str, tuple[Point, float]] = {}
        self._groups: dict[str, ConstructionGroup] = {}
        self._piece_group: dict[str, str] = {}
        self._group_members: dict[str, frozenset[str]] = {}
        self._anchor_pairs: dict[str, tuple[str, str]] = {}
        self._last_observed: dict[str, PieceObservation] = {}
        self._last_result = ValidationResult()
        self._last_validation_time: Optional[float] = None
        self._last_nudge_time: Optional[float] = None

    # ========== Public API ==========

    @property
    def last_result(self) -> ValidationResult:
        return self._last_result

    @property
    def groups(self) -> dict[str, ConstructionGroup]:
        return dict(self._groups)

    def attempts(self, piece_id: str) -> int:
        return self._attempts.get(piece_id, 0)

    def skip_frame(self) -> ValidationResult:
        """Previous result marked skipped, for frames that cannot be mapped at all."""
        return replace(self._last_result, skipped=True)

    def process(
        self,
        frame: Sequence[PieceObservation],
        puzzle: GamePuzzleData,
        groups: Optional[Mapping[str, Sequence[str]]] = None,
        options: Optional[ValidationOptions] = None,
        now: Optional[float] = None
    ) -> ValidationResult:
        """
        Run one validation pass.

        Args:
            frame: Observations of this frame (scene frame)
            puzzle: Puzzle to validate against
            groups: group_id -> member piece ids (default: one group with the whole frame)
            options: Per-call options
            now: Engine clock in seconds (default: time.monotonic())

        Returns:
            ValidationResult. Never raises for degenerate input: a frame with
            non-finite poses returns the previous result with skipped=True.
        """
        options = options or ValidationOptions()
        now = time.monotonic() if now is None else now

        if not all(obs.is_finite() for obs in frame):
            logger.debug("Skipping degenerate frame (%d observations)", len(frame))
            return self.skip_frame()

        assets = self._assets_for(puzzle)
        by_id = {obs.piece_id: obs for obs in frame}
        significant = self._significant_ids(frame)
        for obs in frame:
            self._last_pose[obs.piece_id] = (obs.position, obs.rotation)
            self._last_observed[obs.piece_id] = obs

        if groups is None:
            groups = {DEFAULT_GROUP_ID: [obs.piece_id for obs in frame]}
        members_by_group = {
            gid: [by_id[pid] for pid in ids if pid in by_id]
            for gid, ids in groups.items()
        }
        self._sync_groups(members_by_group, now)

        result = ValidationResult()
        for gid, members in members_by_group.items():
            mapping = self._establish_mapping(gid, members, assets, options, result)
            if mapping is None:
                if len(members) == 1:
                    result.failure_reasons.setdefault(
                        members[0].piece_id, ValidationFailure.no_validated_pieces_nearby()
                    )
                continue
            result.group_mappings[gid] = mapping
            self._validate_group(gid, members, mapping, assets, result, now)

        if options.enable_hints:
            oriented, piece_nudges = orientation_feedback(
                [obs for obs in frame if obs.piece_id in significant],
                puzzle,
                result.piece_states,
                options,
                self.pair_scorer,
            )
            result.oriented_targets = oriented
            result.piece_nudges = piece_nudges

        self._update_attempts(significant, result, by_id, now)
        self._update_groups(members_by_group, result, assets, now)

        if options.enable_nudges:
            result.nudge = self._primary_nudge(result, by_id, assets, options, now)

        result.validated_targets = {lock.target_id for lock in self._locks.values()}
        result.bindings = {pid: tid for pid, tid in self._bindings.items() if pid in by_id}

        self._last_result = result
        self._last_validation_time = now
        return result

    def should_validate(
        self,
        frame: Sequence[PieceObservation],
        now: Optional[float] = None,
        options: Optional[ValidationOptions] = None
    ) -> bool:
        """Dwell interval elapsed, or a significant piece has settled (validate_on_move)."""
        options = options or ValidationOptions()
        now = time.monotonic() if now is None else now
        if self._last_validation_time is None:
            return True
        if now - self._last_validation_time >= options.dwell_validate_interval:
            return True
        if options.validate_on_move:
            significant = self._significant_ids(frame)
            return any(
                obs.speed <= options.settle_velocity_threshold
                for obs in frame if obs.piece_id in significant
            )
        return False

    def tick(
        self,
        frame: Sequence[PieceObservation],
        puzzle: GamePuzzleData,
        groups: Optional[Mapping[str, Sequence[str]]] = None,
        options: Optional[ValidationOptions] = None,
        now: Optional[float] = None
    ) -> ValidationResult:
        """process() when should_validate(), else the last result."""
        now = time.monotonic() if now is None else now
        if self.should_validate(frame, now, options):
            return self.process(frame, puzzle, groups, options, now)
        return self._last_result

    # ========== Queries ==========

    def mapping_for(self, group_id: str) -> Optional[AnchorMapping]:
        return self.mapping_service.mapping_for(group_id)

    def consumed_targets(self, group_id: str) -> set[str]:
        return self.mapping_service.consumed_targets(group_id)

    def anchor_position(self, group_id: str) -> Optional[Point]:
        """Last observed position of the group's anchor piece."""
        mapping = self.mapping_for(group_id)
        if mapping is None:
            return None
        obs = self._last_observed.get(mapping.anchor_piece_id)
        return obs.position if obs else None

    def target_outline_in_physical(
        self,
        group_id: str,
        target_id: str,
        anchor_position: Optional[Point] = None
    ) -> Optional[np.ndarray]:
        """
        Target polygon inverse-mapped into the physical frame.

        Returns:
            (N, 2) array, or None without mapping / puzzle / target
            (or for an ANCHOR_RELATIVE mapping whose anchor was never seen)
        """
        mapping = self.mapping_for(group_id)
        if mapping is None or self._assets is None:
            return None
        target = self._assets.puzzle.target(target_id)
        if target is None:
            return None
        if mapping.kind is MappingKind.ANCHOR_RELATIVE:
            anchor_position = anchor_position or self.anchor_position(group_id)
            if anchor_position is None:
                return None
        return inverse_map_polygon(mapping, target.vertices(), anchor_position)

    # ========== Invalidation ==========

    def unmark_target_consumed(self, group_id: str, target_id: str) -> None:
        """Free a target and release the piece locked onto it."""
        for pid, lock in list(self._locks.items()):
            if lock.target_id == target_id and self._piece_group.get(pid) == group_id:
                self._release(group_id, pid)
        self.mapping_service.unmark_target_consumed(group_id, target_id)

    def remove_pair(self, group_id: str, piece_id: str) -> None:
        """Forget a piece's binding, lock and validated pair."""
        self._release(group_id, piece_id)
        self.mapping_service.remove_pair(group_id, piece_id)

    def invalidate_group(self, group_id: str) -> None:
        """Drop the group's mapping and every lock of its members."""
        for pid, gid in list(self._piece_group.items()):
            if gid == group_id:
                self._release(group_id, pid)
        self.mapping_service.invalidate_group(group_id)
        self._anchor_pairs.pop(group_id, None)

    def reset(self) -> None:
        self.mapping_service.reset()
        self.nudge_manager.clear_all_histories()
        self._reset_state()
        logger.info("Validation engine reset")

    # ========== Frame preparation ==========

    def _assets_for(self, puzzle: GamePuzzleData) -> _PuzzleAssets:
        if self._assets is not None and self._assets.puzzle.id == puzzle.id:
            return self._assets
        if self._assets is not None:
            logger.info("Puzzle changed %s -> %s, resetting state", self._assets.puzzle.id, puzzle.id)
            self.mapping_service.reset()
            self.nudge_manager.clear_all_histories()
            self._reset_state()
        self._assets = _PuzzleAssets(
            puzzle=puzzle,
            library=TargetPairLibrary.build(puzzle),
            adjacency=TargetAdjacencyGraph.build(puzzle, self.tolerances.edge_contact),
        )
        return self._assets

    def _significant_ids(self, frame: Sequence[PieceObservation]) -> set[str]:
        significant = set()
        for obs in frame:
            last = self._last_pose.get(obs.piece_id)
            if last is None:
                significant.add(obs.piece_id)
                continue
            dp = distance(obs.position, last[0])
            dr = abs(math.degrees(angle_difference(obs.rotation, last[1])))
            if dp >= self.config.significant_move_position or dr >= self.config.significant_move_rotation_deg:
                significant.add(obs.piece_id)
        return significant

    def _sync_groups(self, members_by_group: Mapping[str, Sequence[PieceObservation]], now: float) -> None:
        for gid in list(self._groups):
            if gid not in members_by_group:
                self.invalidate_group(gid)
                del self._groups[gid]
                self._group_members.pop(gid, None)

        for gid, members in members_by_group.items():
            ids = frozenset(obs.piece_id for obs in members)
            group = self._groups.get(gid)
            if group is None:
                group = ConstructionGroup(id=gid, created_at=now, last_activity=now)
                self._groups[gid] = group

            previous = self._group_members.get(gid)
            if previous is not None and previous != ids:
                logger.debug("Group %s membership changed (%d -> %d)", gid, len(previous), len(ids))
                for pid in previous - ids:
                    self._release(gid, pid)
                kept = [lock for pid, lock in self._locks.items() if pid in ids and self._piece_group.get(pid) == gid]
                self.mapping_service.invalidate_group(gid)
                self._anchor_pairs.pop(gid, None)
                for lock in kept:
                    self.mapping_service.mark_target_consumed(gid, lock.target_id)
                    self.mapping_service.append_pair(gid, lock.piece_id, lock.target_id)

            self._group_members[gid] = ids
            group.pieces = set(ids)
            for pid in ids:
                self._piece_group[pid] = gid

    # ========== Mapping strategies ==========

    def _establish_mapping(
        self,
        gid: str,
        members: Sequence[PieceObservation],
        assets: _PuzzleAssets,
        options: ValidationOptions,
        result: ValidationResult
    ) -> Optional[AnchorMapping]:
        if not members:
            return None
        if options.mapping_strategy == "optimized":
            return self._optimized_strategy(gid, members, assets, options, result)
        if options.mapping_strategy == "anchor":
            return self._anchor_strategy(gid, members, assets, options, result)
        return self._pair_strategy(gid, members, assets, options, result)

    def _pair_strategy(
        self,
        gid: str,
        members: Sequence[PieceObservation],
        assets: _PuzzleAssets,
        options: ValidationOptions,
        result: ValidationResult
    ) -> Optional[AnchorMapping]:
        by_id = {obs.piece_id: obs for obs in members}
        existing = self.mapping_service.mapping_for(gid)

        anchors = self._anchor_pairs.get(gid)
        if existing is not None and anchors is not None:
            followed = self._follow_anchor_pair(gid, anchors, by_id, existing, assets)
            if followed is not None:
                result.anchor_piece_ids.update(anchors)
                return followed

        settled = [obs for obs in members if obs.speed <= options.settle_velocity_threshold]
        if len(settled) < 2:
            return existing

        puzzle = assets.puzzle
        pair = self.pair_scorer.select_best_pair(
            settled, puzzle, assets.library, options.orientation_tolerance_deg, options.focus_piece_id
        )
        if pair is None:
            return existing
        if pair.targets is None:
            # No two pieces agree with a target orientation, so the scene is turned
            if existing is not None:
                return existing
            logger.debug("Group %s: no oriented pair among %d pieces, fitting the cluster", gid, len(settled))
            return self._optimized_strategy(gid, members, assets, options, result)

        a, b = pair.piece_a, pair.piece_b
        targets = pair.targets
        if a.piece_type is PieceType.PARALLELOGRAM:
            # Anchor on the non-chiral piece so its mirror state never sets the parity
            a, b = b, a
            targets = (targets[1], targets[0])

        candidate = solve_pair_transform(a.position, b.position, targets[0].centroid(), targets[1].centroid(), a, targets[0])
        if candidate is None:
            return existing

        # Targets held by other locked pieces are off limits
        own = {self._bindings.get(a.piece_id), self._bindings.get(b.piece_id)}
        blocked = self.mapping_service.consumed_targets(gid) - own
        best_a, state_a = self._best_target(a, candidate, puzzle, blocked, None)
        best_b, state_b = self._best_target(b, candidate, puzzle, blocked | {best_a.id} if best_a else blocked, None)

        strict = state_a.is_valid and state_b.is_valid
        relaxed = self._relaxed_ok(a, candidate, best_a or targets[0]) and \
            self._relaxed_ok(b, candidate, best_b or targets[1])
        separation = distance(a.position, b.position)

        if (strict or relaxed) and separation <= self.config.max_pair_separation:
            preferred = (
                (best_a or targets[0]).id if state_a.is_valid else targets[0].id,
                (best_b or targets[1]).id if state_b.is_valid else targets[1].id,
            )
            if preferred[0] == preferred[1]:
                preferred = (targets[0].id, targets[1].id)
            t_a, t_b = self.pair_scorer.resolve_target_pair(
                a, b, puzzle, assets.library, preferred_ids=preferred
            ) or targets
            c_a, c_b = t_a.centroid(), t_b.centroid()
            solved = solve_pair_transform(a.position, b.position, c_a, c_b, a, t_a) or candidate

            rival = existing if existing is not None else self._cluster_fit(gid, settled, assets)
            if rival is not None and not self._is_reusable(rival, solved):
                pair_support = self._support(solved, settled, puzzle)
                rival_support = self._support(rival, settled, puzzle)
                if rival_support > pair_support:
                    logger.info(
                        "Group %s: pair %s explains %d/%d settled pieces, keeping v%d (%d)",
                        gid, pair.piece_ids, pair_support, len(settled), rival.version, rival_support,
                    )
                    self.mapping_service.set_mapping(gid, rival)
                    if existing is None:
                        result.anchor_piece_ids.add(rival.anchor_piece_id)
                    return rival

            self.mapping_service.set_mapping(gid, solved)
            self.mapping_service.append_pair(gid, a.piece_id, t_a.id)
            self.mapping_service.append_pair(gid, b.piece_id, t_b.id)
            refined = self.mapping_service.refine_mapping(
                gid,
                [Correspondence(a.position, c_a), Correspondence(b.position, c_b)],
                a.position,
                c_a,
            ) or solved
            committed = refined.committed()

            if existing is not None and self._is_reusable(existing, committed):
                self.mapping_service.set_mapping(gid, existing)
                logger.debug("Group %s: recomputed mapping within reuse bounds, keeping v%d", gid, existing.version)
                committed = existing
            else:
                self.mapping_service.set_mapping(gid, committed)
                logger.info(
                    "Group %s: committed pair mapping %s->%s, %s->%s (theta=%.1f°, %s)",
                    gid, a.piece_id, t_a.id, b.piece_id, t_b.id, committed.rotation_delta_deg,
                    "strict" if strict else "relaxed",
                )
            self._anchor_pairs[gid] = (a.piece_id, b.piece_id)
            result.anchor_piece_ids.update((a.piece_id, b.piece_id))
            return committed

        logger.debug(
            "Group %s: pair %s rejected (strict=%s relaxed=%s separation=%.1f)",
            gid, pair.piece_ids, strict, relaxed, separation,
        )
        if existing is None and len(settled) > 2:
            return self._optimized_strategy(gid, members, assets, options, result)
        for obs, state, best in ((a, state_a, best_a), (b, state_b, best_b)):
            if not state.is_valid:
                mapped = self._map(candidate, obs, None)
                result.failure_reasons[obs.piece_id] = determine_failure_reason(
                    mapped, obs.piece_type, puzzle, self.mapping_service, self.validator,
                    best.id if best else None,
                )
        return existing

    def _follow_anchor_pair(
        self,
        gid: str,
        anchors: tuple[str, str],
        by_id: Mapping[str, PieceObservation],
        existing: AnchorMapping,
        assets: _PuzzleAssets
    ) -> Optional[AnchorMapping]:
        """Re-solve the mapping from the live poses of a bound anchor pair."""
        a_id, b_id = anchors
        if a_id not in by_id or b_id not in by_id:
            return None
        t_a = assets.puzzle.target(self._bindings.get(a_id, ""))
        t_b = assets.puzzle.target(self._bindings.get(b_id, ""))
        if t_a is None or t_b is None:
            return None

        a, b = by_id[a_id], by_id[b_id]
        updated = solve_pair_transform(a.position, b.position, t_a.centroid(), t_b.centroid(), a, t_a)
        if updated is None:
            return existing
        if self._is_reusable(existing, updated):
            return existing

        committed = replace(updated.committed(), version=existing.version + 1)
        self.mapping_service.set_mapping(gid, committed)
        logger.debug("Group %s: anchor pair moved, mapping v%d theta=%.1f°",
                     gid, committed.version, committed.rotation_delta_deg)
        return committed

    def _is_reusable(self, existing: AnchorMapping, candidate: AnchorMapping) -> bool:
        d_theta, d_trans = mapping_distance(existing, candidate)
        return (
            existing.flip_parity == candidate.flip_parity
            and d_theta <= self.mapping_config.reuse_rotation_deg
            and d_trans <= self.mapping_config.reuse_translation
        )

    def _relaxed_ok(
        self,
        obs: PieceObservation,
        mapping: AnchorMapping,
        target: TargetPiece,
        anchor_position: Optional[Point] = None
    ) -> bool:
        mapped = self._map(mapping, obs, anchor_position)
        return self.validator.within(
            pose_residuals(mapped, obs.piece_type, target),
            position_factor=self.config.relaxed_position_factor,
            rotation_factor=self.config.relaxed_rotation_factor,
        )

    def _support(self, mapping: AnchorMapping, pieces: Sequence[PieceObservation], puzzle: GamePuzzleData) -> int:
        """Number of pieces landing (relaxed) on some same-shape target under a mapping."""
        anchor_position = None
        if mapping.kind is MappingKind.ANCHOR_RELATIVE:
            anchor = next((o for o in pieces if o.piece_id == mapping.anchor_piece_id), None)
            if anchor is None:
                return 0
            anchor_position = anchor.position
        return sum(
            1 for obs in pieces
            if any(
                self._relaxed_ok(obs, mapping, target, anchor_position)
                for target in puzzle.targets_of_shape(obs.piece_type.shape)
            )
        )

    def _cluster_fit(
        self,
        gid: str,
        settled: Sequence[PieceObservation],
        assets: _PuzzleAssets
    ) -> Optional[AnchorMapping]:
        if len(settled) < 3:
            return None
        consumed = self.mapping_service.consumed_targets(gid)
        free = [t for t in assets.puzzle.target_pieces if t.id not in consumed]
        return self.mapping_service.establish_or_update_mapping_optimized(gid, settled, free)

    def _optimized_strategy(
        self,
        gid: str,
        members: Sequence[PieceObservation],
        assets: _PuzzleAssets,
        options: ValidationOptions,
        result: ValidationResult
    ) -> Optional[AnchorMapping]:
        settled = [obs for obs in members if obs.speed <= options.settle_velocity_threshold]
        consumed = self.mapping_service.consumed_targets(gid)
        free = [t for t in assets.puzzle.target_pieces if t.id not in consumed]
        mapping = self.mapping_service.establish_or_update_mapping_optimized(gid, settled, free)
        if mapping is None:
            return self.mapping_service.mapping_for(gid)
        result.anchor_piece_ids.add(mapping.anchor_piece_id)
        return mapping

    def _anchor_strategy(
        self,
        gid: str,
        members: Sequence[PieceObservation],
        assets: _PuzzleAssets,
        options: ValidationOptions,
        result: ValidationResult
    ) -> Optional[AnchorMapping]:
        existing = self.mapping_service.mapping_for(gid)
        if existing is not None:
            result.anchor_piece_ids.add(existing.anchor_piece_id)
            return existing

        settled = [obs for obs in members if obs.speed <= options.settle_velocity_threshold]
        oriented = self.pair_scorer.find_oriented_pieces(settled, assets.puzzle, options.orientation_tolerance_deg)
        if not oriented:
            return None
        best = min(oriented, key=lambda o: (o.delta_deg, o.observation.piece_id))
        anchor = best.observation

        polygon = piece_polygon(anchor.piece_type, anchor.position, anchor.rotation, anchor.is_flipped)
        has_contact = any(
            polygon_gap(polygon, piece_polygon(o.piece_type, o.position, o.rotation, o.is_flipped))
            <= self.tolerances.edge_contact
            for o in members if o.piece_id != anchor.piece_id
        )

        consumed = self.mapping_service.consumed_targets(gid)
        candidates = [
            TargetCandidate.from_target(t)
            for t in assets.puzzle.targets_of_shape(anchor.piece_type.shape)
            if t.id not in consumed
        ]
        mapping = self.mapping_service.establish_or_update_mapping(
            gid,
            [obs.piece_id for obs in members],
            AnchorCandidate.from_observation(anchor),
            candidates,
            max_feature_delta_deg=options.orientation_tolerance_deg,
            anchor_has_edge_contact=has_contact,
        )
        if mapping is not None:
            result.anchor_piece_ids.add(mapping.anchor_piece_id)
        return mapping

    # ========== Validation under a mapping ==========

    def _map(self, mapping: AnchorMapping, obs: PieceObservation, anchor_position: Optional[Point]) -> MappedPose:
        return map_piece_to_target_space(
            mapping, obs.position, obs.rotation, obs.is_flipped, anchor_position, piece_type=obs.piece_type
        )

    def _best_target(
        self,
        obs: PieceObservation,
        mapping: AnchorMapping,
        puzzle: GamePuzzleData,
        blocked: set[str],
        anchor_position: Optional[Point]
    ) -> tuple[Optional[TargetPiece], PieceValidationState]:
        """
        Best unblocked same-shape target for a piece under a mapping.

        Prefers valid candidates, then the lowest cost
        pos/tol_pos + |rot|/tol_rot.
        """
        mapped = self._map(mapping, obs, anchor_position)
        feature = piece_feature_angle(mapped.rotation, obs.piece_type, mapped.is_flipped)
        tol_pos = max(1.0, self.tolerances.position)
        tol_rot = max(1e-4, self.tolerances.rotation_rad)

        best: Optional[tuple[bool, float, float, TargetPiece]] = None
        for target in puzzle.targets_of_shape(obs.piece_type.shape):
            if target.id in blocked:
                continue
            t_feature = target_feature(target)
            centroid = target.centroid()
            check = self.validator.validate_with_features(
                position=mapped.position,
                piece_feature=feature,
                target_feature=t_feature,
                piece_type=obs.piece_type,
                flipped=mapped.is_flipped,
                target=target,
                target_position=centroid,
            )
            pos = distance(mapped.position, centroid)
            rot = abs(rotation_difference_to_nearest(feature, t_feature, obs.piece_type, mapped.is_flipped))
            cost = pos / tol_pos + rot / tol_rot
            confidence = (max(0.0, 1.0 - pos / 100.0) + max(0.0, 1.0 - rot / math.pi)) / 2.0
            key = (not check.is_valid, cost)
            if best is None or key < (not best[0], best[1]):
                best = (check.is_valid, cost, confidence, target)

        if best is None:
            return None, PieceValidationState(obs.piece_id, False, 0.0)
        is_valid, _, confidence, target = best
        return target, PieceValidationState(
            piece_id=obs.piece_id,
            is_valid=is_valid,
            confidence=confidence,
            target_id=target.id if is_valid else None,
            optimal_transform=target.transform,
        )

    def _validate_group(
        self,
        gid: str,
        members: Sequence[PieceObservation],
        mapping: AnchorMapping,
        assets: _PuzzleAssets,
        result: ValidationResult,
        now: float
    ) -> None:
        anchor_position = None
        if mapping.kind is MappingKind.ANCHOR_RELATIVE:
            anchor = next((o for o in members if o.piece_id == mapping.anchor_piece_id), None)
            if anchor is None:
                logger.debug("Group %s: anchor %s not observed, skipping validation", gid, mapping.anchor_piece_id)
                return
            anchor_position = anchor.position

        puzzle = assets.puzzle
        fresh: list[PieceObservation] = []
        # Locked pieces first: their targets stay reserved
        for obs in sorted(members, key=lambda o: o.piece_id not in self._locks):
            if obs.piece_id not in self._locks or not self._check_lock(gid, obs, mapping, puzzle, anchor_position, result, now):
                fresh.append(obs)

        for obs in fresh:
            blocked = self.mapping_service.consumed_targets(gid)
            target, state = self._best_target(obs, mapping, puzzle, blocked, anchor_position)
            result.piece_states[obs.piece_id] = state
            if state.is_valid and target is not None:
                self._bind(gid, obs, target, self._map(mapping, obs, anchor_position), now)
                continue

            self._bindings.pop(obs.piece_id, None)
            mapped = self._map(mapping, obs, anchor_position)
            result.failure_reasons[obs.piece_id] = determine_failure_reason(
                mapped, obs.piece_type, puzzle, self.mapping_service, self.validator,
                target.id if target else None,
            )

    def _check_lock(
        self,
        gid: str,
        obs: PieceObservation,
        mapping: AnchorMapping,
        puzzle: GamePuzzleData,
        anchor_position: Optional[Point],
        result: ValidationResult,
        now: float
    ) -> bool:
        """
        Hysteresis for a locked piece.

        Returns:
            True if the piece stays valid this frame (within slack or dwelling),
            False if it was unlocked and needs fresh validation
        """
        lock = self._locks[obs.piece_id]
        target = puzzle.target(lock.target_id)
        if target is None:
            self._release(gid, obs.piece_id)
            return False

        mapped = self._map(mapping, obs, anchor_position)
        residuals = pose_residuals(mapped, obs.piece_type, target)
        position_slack = lock.position_slack if lock.position_slack is not None \
            else self.config.invalidation_slack_position
        rotation_slack = lock.rotation_slack_deg if lock.rotation_slack_deg is not None \
            else self.config.invalidation_slack_rotation_deg

        if self.validator.within(residuals, position_slack=position_slack, rotation_slack_deg=rotation_slack):
            self._locks[obs.piece_id] = replace(lock, last_valid_pose=mapped)
            self._invalidation_start.pop(obs.piece_id, None)
            self._bindings[obs.piece_id] = lock.target_id
            result.piece_states[obs.piece_id] = PieceValidationState(
                obs.piece_id, True, 1.0, lock.target_id, target.transform
            )
            return True

        started = self._invalidation_start.setdefault(obs.piece_id, now)
        if now - started < self.config.invalidation_dwell_seconds:
            confidence = 0.9 if started == now else 0.85
            result.piece_states[obs.piece_id] = PieceValidationState(
                obs.piece_id, True, confidence, lock.target_id, target.transform
            )
            return True

        logger.debug(
            "Unlocking %s from %s (offset=%.1f rot=%.1f° after %.2fs)",
            obs.piece_id, lock.target_id, residuals.position, residuals.rotation_deg, now - started,
        )
        self._release(gid, obs.piece_id)
        return False

    def _bind(self, gid: str, obs: PieceObservation, target: TargetPiece, mapped: MappedPose, now: float) -> None:
        self._bindings[obs.piece_id] = target.id
        self.mapping_service.mark_target_consumed(gid, target.id)
        self.mapping_service.append_pair(gid, obs.piece_id, target.id)
        self._locks[obs.piece_id] = LockedValidation(
            piece_id=obs.piece_id,
            target_id=target.id,
            last_valid_pose=mapped,
            locked_at=now,
        )
        self._invalidation_start.pop(obs.piece_id, None)
        self._piece_group[obs.piece_id] = gid

    def _release(self, gid: str, piece_id: str) -> None:
        lock = self._locks.pop(piece_id, None)
        self._invalidation_start.pop(piece_id, None)
        target_id = self._bindings.pop(piece_id, None)
        if lock is not None:
            target_id = lock.target_id
        if target_id is not None:
            self.mapping_service.unmark_target_consumed(gid, target_id)
            self.mapping_service.remove_pair(gid, piece_id, target_id)
        anchors = self._anchor_pairs.get(gid)
        if anchors and piece_id in anchors:
            self._anchor_pairs.pop(gid, None)

    # ========== Attempts, groups, nudges ==========

    def _update_attempts(
        self,
        significant: set[str],
        result: ValidationResult,
        by_id: Mapping[str, PieceObservation],
        now: float
    ) -> None:
        for pid in sorted(significant):
            if pid not in result.failure_reasons:
                continue
            self._attempts[pid] = self._attempts.get(pid, 0) + 1
            self.nudge_manager.record_attempt(pid, by_id[pid].position, now)
            group = self._groups.get(self._piece_group.get(pid, ""))
            if group is not None:
                group.record_attempt(pid, now)

    def _update_groups(
        self,
        members_by_group: Mapping[str, Sequence[PieceObservation]],
        result: ValidationResult,
        assets: _PuzzleAssets,
        now: float
    ) -> None:
        valid = {pid for pid, state in result.piece_states.items() if state.is_valid}
        for gid in members_by_group:
            group = self._groups[gid]
            group.update_confidence(result.piece_states)
            group.update_connections(self._bindings, valid, assets.adjacency)
            group.update_state(now)

    def _primary_nudge(
        self,
        result: ValidationResult,
        by_id: Mapping[str, PieceObservation],
        assets: _PuzzleAssets,
        options: ValidationOptions,
        now: float
    ) -> Optional[tuple[str, NudgeContent]]:
        if self._last_nudge_time is not None and now - self._last_nudge_time < options.nudge_cooldown:
            return None

        candidates = [
            pid for pid in result.failure_reasons
            if pid in by_id and self._attempts.get(pid, 0) >= self.config.min_nudge_attempts
        ]
        if not candidates:
            return None
        piece_id = max(sorted(candidates), key=lambda pid: self._attempts[pid])
        gid = self._piece_group.get(piece_id)
        group = self._groups.get(gid) if gid is not None else None
        if not self.nudge_manager.should_show_nudge(piece_id, group, now):
            return None

        level = self.nudge_manager.determine_nudge_level(
            group.confidence, group.attempts(piece_id), group.validation_state
        )
        failure = result.failure_reasons[piece_id]
        target_id = failure.target_id or self._bindings.get(piece_id)
        target = assets.puzzle.target(target_id) if target_id else None

        obs = by_id[piece_id]
        target_info = self._target_info(gid, target, obs)
        content = self.nudge_manager.generate_nudge(level, failure, target_info, origin=obs.position)
        if not content.message and content.visual_hint is None:
            return None

        self.nudge_manager.record_nudge_shown(piece_id, now)
        group.nudge_history.record_nudge(now)
        self._last_nudge_time = now
        logger.info("Nudge %s for %s (%s): %s", content.level.name, piece_id, failure.kind.value, content.message)
        return (target_id or "", content)

    def _target_info(
        self,
        gid: Optional[str],
        target: Optional[TargetPiece],
        obs: PieceObservation
    ) -> Optional[TargetInfo]:
        """Target pose inverse-mapped into the physical frame."""
        if gid is None or target is None:
            return None
        mapping = self.mapping_for(gid)
        if mapping is None:
            return None
        anchor_position = None
        if mapping.kind is MappingKind.ANCHOR_RELATIVE:
            anchor_position = self.anchor_position(gid)
            if anchor_position is None:
                return None
        pose = self.mapping_service.inverse_map_pose(
            mapping, target.centroid(), expected_piece_rotation(target, obs.is_flipped),
            target.is_flipped, anchor_position, piece_type=target.piece_type,
        )
        return TargetInfo(position=pose.position, rotation=normalize_angle(pose.rotation))
