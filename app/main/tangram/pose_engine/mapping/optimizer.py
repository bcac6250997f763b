"""
Global rigid-mapping optimizer (rotation grid search + per-shape assignment).

Finds the rotation theta that best explains a whole cluster of observed pieces:
    1. Center pieces on their centroid, targets on theirs
    2. For each theta on a coarse grid, then a fine grid around the best:
       cost(theta) = sum over shape buckets of the min-cost assignment of
       wt·|R(theta)(p - pc) - (t - tc)| + wr·symdist(piece_feature(rot + theta), target_feature) [deg]
    3. Pick the anchor target for pieces[0] and translate it exactly onto it

Notes:
    - Shape buckets: congruent pieces (both small/large triangles) share a bucket
    - Rotation residual is period-folded (square: 90°, others: 180°)
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional, Sequence
import logging
import math
import warnings
import numpy as np
from scipy.spatial.distance import cdist

from ..assignment.hungarian import hungarian_min_cost
from ..config import MappingConfig
from ..models import AnchorMapping, PieceObservation, PieceType, ShapeFamily, TargetPiece
from ..utils.geometry import (
    centroid,
    normalize_angle,
    piece_feature_angle,
    symmetric_angle_distance,
    symmetry_period,
    target_feature,
    rotate_point,
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RotationFit:
    """Result of the rotation grid search."""
    theta: float
    cost: float


def check_weights(config: MappingConfig) -> None:
    """Warn about non-positive cost weights (search still runs)."""
    if config.translation_weight <= 0 or config.rotation_weight <= 0:
        warnings.warn(
            f"Mapping weights should be positive (wt={config.translation_weight}, "
            f"wr={config.rotation_weight}). Assignment cost may ignore position or rotation."
        )


def _buckets(pieces: Sequence[PieceObservation], targets: Sequence[TargetPiece]):
    by_shape: dict[ShapeFamily, tuple[list[int], list[int]]] = {}
    for i, piece in enumerate(pieces):
        by_shape.setdefault(piece.piece_type.shape, ([], []))[0].append(i)
    for j, target in enumerate(targets):
        if target.piece_type.shape in by_shape:
            by_shape[target.piece_type.shape][1].append(j)
    return {shape: idx for shape, idx in by_shape.items() if idx[1]}


def rotation_cost(
    theta: float,
    pieces: Sequence[PieceObservation],
    targets: Sequence[TargetPiece],
    config: MappingConfig,
    piece_centroid: Optional[tuple[float, float]] = None,
    target_centroid: Optional[tuple[float, float]] = None,
) -> float:
    """
    Total assignment cost of the cluster rotated by theta.

    Args:
        theta: Candidate rotation (radians)
        pieces: Observed pieces of the cluster
        targets: Candidate targets
        config: Weights and padding cost
        piece_centroid, target_centroid: Precomputed centroids (computed if None)

    Returns:
        Sum over shape buckets of the Hungarian min cost
    """
    if piece_centroid is None:
        piece_centroid = centroid(p.position for p in pieces)
    if target_centroid is None:
        target_centroid = centroid(t.centroid() for t in targets)

    cos_t = math.cos(theta)
    sin_t = math.sin(theta)
    rot = np.array([[cos_t, -sin_t], [sin_t, cos_t]])
    pc = np.asarray(piece_centroid, dtype=float)
    tc = np.asarray(target_centroid, dtype=float)

    total = 0.0
    for shape, (p_idx, t_idx) in _buckets(pieces, targets).items():
        bucket_pieces = [pieces[i] for i in p_idx]
        bucket_targets = [targets[j] for j in t_idx]

        p_pts = (np.array([p.position for p in bucket_pieces], dtype=float) - pc) @ rot.T
        t_pts = np.array([t.centroid() for t in bucket_targets], dtype=float) - tc
        pos_cost = cdist(p_pts, t_pts)

        # Period-folded feature residual, vectorized over the bucket
        period = symmetry_period(bucket_pieces[0].piece_type)
        p_feat = np.array([
            piece_feature_angle(p.rotation + theta, p.piece_type, p.is_flipped) for p in bucket_pieces
        ])
        t_feat = np.array([target_feature(t) for t in bucket_targets])
        d = p_feat[:, None] - t_feat[None, :]
        d = d - period * np.round(d / period)
        rot_cost = np.degrees(np.abs(d))

        cost = config.translation_weight * pos_cost + config.rotation_weight * rot_cost
        _, bucket_total = hungarian_min_cost(cost, padding_cost=config.padding_cost)
        total += bucket_total
    return total


def search_rotation(
    pieces: Sequence[PieceObservation],
    targets: Sequence[TargetPiece],
    config: Optional[MappingConfig] = None
) -> RotationFit:
    """
    Coarse-to-fine grid search for the cluster rotation.

    Coarse: 0..360 step coarse_step_deg. Fine: best - fine_span_deg .. best + fine_span_deg
    step fine_step_deg (21 samples with defaults). Ties keep the earlier sample.
    """
    config = config or MappingConfig()
    pc = centroid(p.position for p in pieces)
    tc = centroid(t.centroid() for t in targets)

    best_theta = 0.0
    best_cost = math.inf
    for deg in np.arange(0.0, 360.0, config.coarse_step_deg):
        theta = math.radians(float(deg))
        cost = rotation_cost(theta, pieces, targets, config, pc, tc)
        if cost < best_cost:
            best_cost, best_theta = cost, theta

    start = best_theta - math.radians(config.fine_span_deg)
    steps = int(round(2 * config.fine_span_deg / config.fine_step_deg))
    for i in range(steps + 1):
        theta = start + math.radians(i * config.fine_step_deg)
        cost = rotation_cost(theta, pieces, targets, config, pc, tc)
        if cost < best_cost:
            best_cost, best_theta = cost, theta

    return RotationFit(theta=best_theta, cost=best_cost)


def optimize_mapping(
    pieces: Sequence[PieceObservation],
    targets: Sequence[TargetPiece],
    config: Optional[MappingConfig] = None
) -> Optional[AnchorMapping]:
    """
    Optimize a GLOBAL mapping for a whole cluster.

    Args:
        pieces: Observed pieces (the first non-parallelogram becomes the anchor)
        targets: Candidate targets (typically: not yet consumed)
        config: Search parameters

    Returns:
        GLOBAL AnchorMapping (version 1, pair_count = len(pieces),
        confidence = 1 / max(1, best_cost)), or None if fewer than 2 pieces
        or no target matches the anchor's shape
    """
    config = config or MappingConfig()
    check_weights(config)
    if len(pieces) < 2 or not targets:
        return None

    fit = search_rotation(pieces, targets, config)
    theta = fit.theta

    pc = centroid(p.position for p in pieces)
    tc = centroid(t.centroid() for t in targets)
    pc_rot = rotate_point(pc, theta)
    # Centroid-aligned translation, used only to rank anchor targets
    centroid_offset = (tc[0] - pc_rot[0], tc[1] - pc_rot[1])

    # A mirrored parallelogram must not become the reference for the whole cluster
    anchor = next((p for p in pieces if p.piece_type is not PieceType.PARALLELOGRAM), pieces[0])
    anchor_rot = rotate_point(anchor.position, theta)
    anchor_mapped = (anchor_rot[0] + centroid_offset[0], anchor_rot[1] + centroid_offset[1])
    anchor_feature = piece_feature_angle(anchor.rotation + theta, anchor.piece_type, anchor.is_flipped)

    best_target: Optional[TargetPiece] = None
    best_anchor_cost = math.inf
    for target in targets:
        if target.piece_type.shape != anchor.piece_type.shape:
            continue
        tx, ty = target.centroid()
        pos_cost = math.hypot(anchor_mapped[0] - tx, anchor_mapped[1] - ty)
        rot_cost = math.degrees(symmetric_angle_distance(anchor_feature, target_feature(target), anchor.piece_type))
        total = config.translation_weight * pos_cost + config.rotation_weight * rot_cost
        if total < best_anchor_cost:
            best_anchor_cost, best_target = total, target

    if best_target is None:
        return None

    flip_parity = False
    if anchor.piece_type is PieceType.PARALLELOGRAM:
        flip_parity = anchor.is_flipped != best_target.is_flipped

    t_anchor = best_target.centroid()
    translation = (t_anchor[0] - anchor_rot[0], t_anchor[1] - anchor_rot[1])

    logger.debug(
        "Optimized mapping theta=%.1f° cost=%.2f anchor=%s -> %s",
        math.degrees(theta), fit.cost, anchor.piece_id, best_target.id
    )
    return AnchorMapping.global_fit(
        rotation_delta=normalize_angle(theta),
        translation_offset=translation,
        anchor_piece_id=anchor.piece_id,
        anchor_target_id=best_target.id,
        flip_parity=flip_parity,
        version=1,
        pair_count=len(pieces),
        confidence=1.0 / max(1.0, fit.cost),
    )
