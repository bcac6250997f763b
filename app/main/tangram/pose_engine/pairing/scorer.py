"""
Anchor pair scoring and selection.

Chooses the two observed pieces that seed a group mapping, and the target pair
they most likely correspond to:
- find_oriented_pieces: pieces already rotated like some same-shape target
- score_pair: observed pair vector vs library entries (angle + length residual)
- select_best_pair: rank oriented pairs, fall back to the closest settled pair
- resolve_target_pair: preferred ids -> library -> residual search -> first of shape
"""

from __future__ import annotations
from dataclasses import dataclass
from itertools import combinations
from typing import Optional, Sequence
import logging
import math

from ..models import GamePuzzleData, PieceObservation, PieceType, TargetPiece
from ..utils.geometry import (
    angle_difference,
    distance,
    piece_feature_angle,
    rotation_difference_to_nearest,
    target_feature,
)
from .library import PairEntry, TargetPairLibrary

logger = logging.getLogger(__name__)

LIBRARY_ANGLE_WEIGHT = 2.0
LIBRARY_LENGTH_WEIGHT = 0.5
LIBRARY_FOCUS_FACTOR = 0.8
ORIENTATION_WEIGHT = 0.5
DISTANCE_FOCUS_FACTOR = 0.7
# Residual search without a library
SEARCH_ANGLE_WEIGHT = 2.0
SEARCH_LENGTH_WEIGHT = 0.2
MIN_OBSERVED_LENGTH = 1e-3
SCORE_TIE_EPS = 1e-6


@dataclass(frozen=True)
class OrientedPiece:
    """Piece whose rotation already matches a same-shape target."""
    observation: PieceObservation
    target_id: str
    delta_deg: float
    flip_ok: bool


@dataclass(frozen=True)
class PairMatch:
    """Best library entry for an observed pair, ordered so entry.id_a belongs to the first piece."""
    entry: PairEntry
    score: float
    reversed: bool


@dataclass(frozen=True)
class ScoredPair:
    piece_a: PieceObservation
    piece_b: PieceObservation
    targets: Optional[tuple[TargetPiece, TargetPiece]]
    score: float
    reason: str

    @property
    def separation(self) -> float:
        return distance(self.piece_a.position, self.piece_b.position)

    @property
    def piece_ids(self) -> tuple[str, str]:
        return (self.piece_a.piece_id, self.piece_b.piece_id)


def flip_ok(piece_type: PieceType, piece_flipped: bool, target: TargetPiece) -> bool:
    """Only the parallelogram has a distinguishable mirror state."""
    if piece_type is not PieceType.PARALLELOGRAM:
        return True
    return piece_flipped == target.is_flipped


def _has_focus(a: PieceObservation, b: PieceObservation, focus_piece_id: Optional[str]) -> bool:
    return focus_piece_id is not None and focus_piece_id in (a.piece_id, b.piece_id)


def _better(candidate: ScoredPair, best: Optional[ScoredPair]) -> bool:
    """Lower score wins; near-ties (1e-6) go to the more compact pair."""
    if best is None:
        return True
    if abs(candidate.score - best.score) <= SCORE_TIE_EPS:
        return candidate.separation < best.separation
    return candidate.score < best.score


def _vector_residual(observed: tuple[float, float], target: tuple[float, float]) -> tuple[float, float]:
    """
    Angle residual in degrees, folded so that a 180° reversal also matches.

    Returns:
        (folded residual, direct residual)
    """
    obs_angle = math.atan2(observed[1], observed[0])
    tgt_angle = math.atan2(target[1], target[0])
    direct = abs(angle_difference(obs_angle, tgt_angle))
    flipped = abs(angle_difference(obs_angle, tgt_angle + math.pi))
    return math.degrees(min(direct, flipped)), math.degrees(direct)


class PairScorer:
    """
    Scores observed piece pairs against puzzle target pairs.

    Args:
        focus_factor: Score multiplier for oriented pairs containing the focus piece
    """

    def __init__(self, focus_factor: float = 0.6):
        self._focus_factor = focus_factor

    def best_target(self, obs: PieceObservation, puzzle: GamePuzzleData) -> Optional[tuple[TargetPiece, float]]:
        """Same-shape target with minimal fold-aware feature delta (degrees)."""
        feature = piece_feature_angle(obs.rotation, obs.piece_type, obs.is_flipped)
        best: Optional[tuple[TargetPiece, float]] = None
        for target in puzzle.targets_of_shape(obs.piece_type.shape):
            diff = rotation_difference_to_nearest(feature, target_feature(target), obs.piece_type, obs.is_flipped)
            delta = abs(math.degrees(diff))
            if best is None or delta < best[1]:
                best = (target, delta)
        return best

    def find_oriented_pieces(
        self,
        observations: Sequence[PieceObservation],
        puzzle: GamePuzzleData,
        tolerance_deg: float
    ) -> list[OrientedPiece]:
        """
        Keep pieces whose best target has flip OK and delta <= max(5, tolerance_deg).
        """
        oriented = []
        limit = max(5.0, tolerance_deg)
        for obs in observations:
            best = self.best_target(obs, puzzle)
            if best is None:
                continue
            target, delta = best
            ok = flip_ok(obs.piece_type, obs.is_flipped, target)
            if ok and delta <= limit:
                oriented.append(OrientedPiece(obs, target.id, delta, ok))
        return oriented

    def score_pair(
        self,
        obs_a: PieceObservation,
        obs_b: PieceObservation,
        library: TargetPairLibrary,
        focus_piece_id: Optional[str] = None
    ) -> Optional[PairMatch]:
        """
        Best library entry for an observed pair.

        score = angle_residual_deg * 2.0 + |len_obs - len_target| * 0.5, x0.8 with focus piece.
        Entries whose shape order is reversed match with the vector negated.
        """
        v_obs = (obs_b.position[0] - obs_a.position[0], obs_b.position[1] - obs_a.position[1])
        len_obs = math.hypot(*v_obs)
        if len_obs < MIN_OBSERVED_LENGTH:
            return None

        shape_a = obs_a.piece_type.shape
        shape_b = obs_b.piece_type.shape
        focus = _has_focus(obs_a, obs_b, focus_piece_id)

        best: Optional[PairMatch] = None
        best_direct = math.inf
        for entry in library.entries_for(shape_a, shape_b):
            orientations = []
            if entry.shape_a == shape_a and entry.shape_b == shape_b:
                orientations.append((entry, False))
            if entry.shape_a == shape_b and entry.shape_b == shape_a:
                orientations.append((entry.reversed(), True))
            for oriented_entry, is_reversed in orientations:
                residual, direct = _vector_residual(v_obs, oriented_entry.vector)
                score = residual * LIBRARY_ANGLE_WEIGHT + abs(len_obs - oriented_entry.length) * LIBRARY_LENGTH_WEIGHT
                if focus:
                    score *= LIBRARY_FOCUS_FACTOR
                # Congruent pairs match both ways; the unfolded angle picks the assignment
                tie = best is not None and abs(score - best.score) <= SCORE_TIE_EPS
                if best is None or (score < best.score and not tie) or (tie and direct < best_direct):
                    best = PairMatch(oriented_entry, score, is_reversed)
                    best_direct = direct
        return best

    def select_best_pair(
        self,
        observations: Sequence[PieceObservation],
        puzzle: GamePuzzleData,
        library: Optional[TargetPairLibrary],
        tolerance_deg: float,
        focus_piece_id: Optional[str] = None
    ) -> Optional[ScoredPair]:
        """
        Select the anchor pair among the given (settled) observations.

        Ranking:
            1. Oriented pairs with a library match: library score + mean orientation delta * 0.5
               (x0.6 with focus piece)
            2. Oriented pairs without a library match: distance (x0.7 with focus piece)
            3. Fewer than 2 oriented pieces: closest pair overall (x0.7 with focus piece)
        """
        oriented = self.find_oriented_pieces(observations, puzzle, tolerance_deg)
        if len(oriented) >= 2:
            best: Optional[ScoredPair] = None
            for a, b in combinations(oriented, 2):
                candidate = self._score_oriented(a, b, puzzle, library, focus_piece_id)
                if candidate is not None and _better(candidate, best):
                    best = candidate
            if best is not None:
                logger.debug("Anchor pair %s (%s, score=%.2f)", best.piece_ids, best.reason, best.score)
                return best

        return self._closest_pair(observations, focus_piece_id)

    def _score_oriented(
        self,
        a: OrientedPiece,
        b: OrientedPiece,
        puzzle: GamePuzzleData,
        library: Optional[TargetPairLibrary],
        focus_piece_id: Optional[str]
    ) -> Optional[ScoredPair]:
        obs_a, obs_b = a.observation, b.observation
        focus = _has_focus(obs_a, obs_b, focus_piece_id)

        match = self.score_pair(obs_a, obs_b, library) if library is not None else None
        if match is not None:
            t_a = puzzle.target(match.entry.id_a)
            t_b = puzzle.target(match.entry.id_b)
            score = match.score + (a.delta_deg + b.delta_deg) / 2.0 * ORIENTATION_WEIGHT
            if focus:
                score *= self._focus_factor
            return ScoredPair(obs_a, obs_b, (t_a, t_b), score, "focus+library" if focus else "library")

        score = distance(obs_a.position, obs_b.position)
        if focus:
            score *= DISTANCE_FOCUS_FACTOR
        targets = first_of_shape_pair(obs_a, obs_b, puzzle)
        return ScoredPair(obs_a, obs_b, targets, score, "focus+distance" if focus else "distance")

    def _closest_pair(
        self,
        observations: Sequence[PieceObservation],
        focus_piece_id: Optional[str]
    ) -> Optional[ScoredPair]:
        best: Optional[ScoredPair] = None
        for a, b in combinations(observations, 2):
            score = distance(a.position, b.position)
            focus = _has_focus(a, b, focus_piece_id)
            if focus:
                score *= DISTANCE_FOCUS_FACTOR
            if best is None or score < best.score:
                best = ScoredPair(a, b, None, score, "focus+closest" if focus else "closest")
        if best is not None:
            logger.debug("Fallback closest pair %s", best.piece_ids)
        return best

    def resolve_target_pair(
        self,
        obs_a: PieceObservation,
        obs_b: PieceObservation,
        puzzle: GamePuzzleData,
        library: Optional[TargetPairLibrary] = None,
        preferred_ids: Optional[tuple[str, str]] = None
    ) -> Optional[tuple[TargetPiece, TargetPiece]]:
        """
        Resolve concrete targets for an observed pair.

        Order:
            1. preferred_ids (both must exist)
            2. best library match
            3. without library: min angle_deg * 2 + |len_diff| * 0.2 over same-shape target pairs
            4. first target of each matching shape (distinct targets)
        """
        if preferred_ids is not None:
            t_a = puzzle.target(preferred_ids[0])
            t_b = puzzle.target(preferred_ids[1])
            if t_a is not None and t_b is not None:
                return (t_a, t_b)

        if library is not None:
            match = self.score_pair(obs_a, obs_b, library)
            if match is not None:
                t_a = puzzle.target(match.entry.id_a)
                t_b = puzzle.target(match.entry.id_b)
                if t_a is not None and t_b is not None:
                    return (t_a, t_b)
        else:
            searched = self._search_target_pair(obs_a, obs_b, puzzle)
            if searched is not None:
                return searched

        return first_of_shape_pair(obs_a, obs_b, puzzle)

    def _search_target_pair(
        self,
        obs_a: PieceObservation,
        obs_b: PieceObservation,
        puzzle: GamePuzzleData
    ) -> Optional[tuple[TargetPiece, TargetPiece]]:
        vp = (obs_b.position[0] - obs_a.position[0], obs_b.position[1] - obs_a.position[1])
        vp_len = math.hypot(*vp)
        if vp_len < MIN_OBSERVED_LENGTH:
            return None

        best: Optional[tuple[tuple[TargetPiece, TargetPiece], float]] = None
        for t_a in puzzle.targets_of_shape(obs_a.piece_type.shape):
            c_a = t_a.centroid()
            for t_b in puzzle.targets_of_shape(obs_b.piece_type.shape):
                if t_b.id == t_a.id:
                    continue
                c_b = t_b.centroid()
                vt = (c_b[0] - c_a[0], c_b[1] - c_a[1])
                vt_len = math.hypot(*vt)
                if vt_len < MIN_OBSERVED_LENGTH:
                    continue
                dot = vp[0] * vt[0] + vp[1] * vt[1]
                cross = vp[0] * vt[1] - vp[1] * vt[0]
                angle_deg = abs(math.degrees(math.atan2(cross, dot)))
                cost = angle_deg * SEARCH_ANGLE_WEIGHT + abs(vp_len - vt_len) * SEARCH_LENGTH_WEIGHT
                if best is None or cost < best[1]:
                    best = ((t_a, t_b), cost)
        return best[0] if best else None


def first_of_shape_pair(
    obs_a: PieceObservation,
    obs_b: PieceObservation,
    puzzle: GamePuzzleData
) -> Optional[tuple[TargetPiece, TargetPiece]]:
    """First target of each piece's shape, distinct when both pieces share a shape."""
    for t_a in puzzle.targets_of_shape(obs_a.piece_type.shape):
        for t_b in puzzle.targets_of_shape(obs_b.piece_type.shape):
            if t_b.id != t_a.id:
                return (t_a, t_b)
    return None
