"""
Pairing Module.

Anchor pair selection for two-piece mappings:
- TargetPairLibrary: Precomputed target pair vectors
- PairScorer: Oriented-piece detection, pair scoring and target resolution
- TargetAdjacencyGraph: Which targets touch in the solved silhouette
"""

from .library import TargetPairLibrary, PairEntry, shape_pair_key
from .scorer import PairScorer, OrientedPiece, PairMatch, ScoredPair, flip_ok
from .adjacency import TargetAdjacencyGraph

__all__ = [
    "TargetPairLibrary",
    "PairEntry",
    "shape_pair_key",
    "PairScorer",
    "OrientedPiece",
    "PairMatch",
    "ScoredPair",
    "flip_ok",
    "TargetAdjacencyGraph",
]
