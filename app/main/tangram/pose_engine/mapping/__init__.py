"""
Rigid Mapping Module.

This module maps a group's observed poses (scene frame) into target space:
- MappingService: Per-group mapping, consumed targets, validated pairs
- map_piece_to_target_space / inverse_map_target_to_physical: Apply a mapping
- solve_pair_transform: Two-point rigid alignment
- optimize_mapping: Rotation grid search + per-shape Hungarian assignment
"""

from .service import MappingService, AnchorCandidate, TargetCandidate, Correspondence
from .transforms import (
    map_piece_to_target_space,
    inverse_map_target_to_physical,
    inverse_map_pose,
    inverse_map_polygon,
)
from .pair_transform import solve_pair_transform
from .optimizer import optimize_mapping, search_rotation

__all__ = [
    "MappingService",
    "AnchorCandidate",
    "TargetCandidate",
    "Correspondence",
    "map_piece_to_target_space",
    "inverse_map_target_to_physical",
    "inverse_map_pose",
    "inverse_map_polygon",
    "solve_pair_transform",
    "optimize_mapping",
    "search_rotation",
]
