"""
Two-point rigid alignment.

Rotates the observed pair vector (p1 - p0) onto the target pair vector
(c1 - c0), then translates so that p0 lands exactly on c0.
"""

from __future__ import annotations
from typing import Optional
import logging
import math

from ..models import AnchorMapping, PieceObservation, PieceType, TargetPiece, Point
from ..utils.geometry import rotate_point

logger = logging.getLogger(__name__)

MIN_PAIR_VECTOR = 1e-3
"""Pair vectors shorter than this are degenerate (coincident centroids)"""


def solve_pair_transform(
    p0: Point,
    p1: Point,
    c0: Point,
    c1: Point,
    anchor_piece: PieceObservation,
    anchor_target: TargetPiece
) -> Optional[AnchorMapping]:
    """
    Solve the rigid transform aligning an observed pair to a target pair.

    Args:
        p0, p1: Observed piece centroids (scene frame); p0 is the anchor
        c0, c1: Target centroids (target space) matched to p0, p1
        anchor_piece: Observation at p0
        anchor_target: Target at c0

    Returns:
        GLOBAL AnchorMapping (version 1, pair_count 2), or None if degenerate

    Algorithm:
        theta = atan2(cross(vp, vt), dot(vp, vt))
        T = c0 - R(theta)·p0
    """
    values = (*p0, *p1, *c0, *c1)
    if not all(math.isfinite(v) for v in values):
        logger.debug("Pair transform skipped: non-finite input %s", values)
        return None

    vp = (p1[0] - p0[0], p1[1] - p0[1])
    vt = (c1[0] - c0[0], c1[1] - c0[1])
    if math.hypot(*vp) < MIN_PAIR_VECTOR or math.hypot(*vt) < MIN_PAIR_VECTOR:
        return None

    dot = vp[0] * vt[0] + vp[1] * vt[1]
    cross = vp[0] * vt[1] - vp[1] * vt[0]
    theta = math.atan2(cross, dot)

    p0_rot = rotate_point(p0, theta)
    translation = (c0[0] - p0_rot[0], c0[1] - p0_rot[1])

    # Only the parallelogram has a distinguishable mirror state
    flip_parity = False
    if anchor_piece.piece_type is PieceType.PARALLELOGRAM:
        flip_parity = anchor_target.is_flipped != anchor_piece.is_flipped

    return AnchorMapping.global_fit(
        rotation_delta=theta,
        translation_offset=translation,
        anchor_piece_id=anchor_piece.piece_id,
        anchor_target_id=anchor_target.id,
        flip_parity=flip_parity,
        version=1,
        pair_count=2,
    )
