"""Target adjacency: which targets share an edge in the solved silhouette."""

from __future__ import annotations
from dataclasses import dataclass, field
from itertools import combinations

from ..models import GamePuzzleData
from ..utils.geometry import polygon_gap


@dataclass
class TargetAdjacencyGraph:
    """
    Undirected graph over target ids.

    Two targets are neighbors when their polygon gap is <= edge_contact_tolerance.
    """
    adjacency: dict[str, set[str]] = field(default_factory=dict)

    @classmethod
    def build(cls, puzzle: GamePuzzleData, edge_contact_tolerance: float) -> TargetAdjacencyGraph:
        graph = cls({t.id: set() for t in puzzle.target_pieces})
        polygons = {t.id: t.vertices() for t in puzzle.target_pieces}
        for a, b in combinations(puzzle.target_pieces, 2):
            if polygon_gap(polygons[a.id], polygons[b.id]) <= edge_contact_tolerance:
                graph.adjacency[a.id].add(b.id)
                graph.adjacency[b.id].add(a.id)
        return graph

    def neighbors(self, target_id: str) -> set[str]:
        return set(self.adjacency.get(target_id, ()))

    def are_adjacent(self, a: str, b: str) -> bool:
        return b in self.adjacency.get(a, ())

    def edges(self) -> list[tuple[str, str]]:
        """Sorted list of (a, b) with a < b."""
        return sorted({tuple(sorted((a, b))) for a, nbrs in self.adjacency.items() for b in nbrs})
