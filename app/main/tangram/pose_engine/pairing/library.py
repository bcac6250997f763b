"""
Target pair library.

Precomputed rotation-invariant relations between all target pairs of a puzzle:
centroid-to-centroid vector, its angle and length. Built once per puzzle.
"""

from __future__ import annotations
from dataclasses import dataclass, field
import math

from ..models import GamePuzzleData, ShapeFamily, Point

MIN_ENTRY_LENGTH = 1e-6


def shape_pair_key(a: ShapeFamily, b: ShapeFamily) -> str:
    """Order-invariant key: sorted shape names joined by '|'."""
    return "|".join(sorted((a.value, b.value)))


@dataclass(frozen=True)
class PairEntry:
    """
    Relation between two targets (id_a < id_b).

    Attributes:
        vector: Centroid of a -> centroid of b (target space)
        angle: atan2 of vector
        length: |vector|
    """
    id_a: str
    id_b: str
    shape_a: ShapeFamily
    shape_b: ShapeFamily
    vector: Point
    angle: float
    length: float

    def reversed(self) -> PairEntry:
        vector = (-self.vector[0], -self.vector[1])
        return PairEntry(
            id_a=self.id_b,
            id_b=self.id_a,
            shape_a=self.shape_b,
            shape_b=self.shape_a,
            vector=vector,
            angle=math.atan2(vector[1], vector[0]),
            length=self.length,
        )


@dataclass
class TargetPairLibrary:
    entries_by_key: dict[str, PairEntry] = field(default_factory=dict)
    entries_by_shape_pair: dict[str, list[PairEntry]] = field(default_factory=dict)

    @property
    def all_entries(self) -> list[PairEntry]:
        return list(self.entries_by_key.values())

    def entries_for(self, a: ShapeFamily, b: ShapeFamily) -> list[PairEntry]:
        return self.entries_by_shape_pair.get(shape_pair_key(a, b), [])

    @classmethod
    def build(cls, puzzle: GamePuzzleData) -> TargetPairLibrary:
        """
        Build the library for a puzzle.

        Notes:
            - One entry per unordered pair, normalized so that id_a < id_b
            - Coincident centroids (length < 1e-6) are skipped
        """
        library = cls()
        targets = list(puzzle.target_pieces)
        centroids = {t.id: t.centroid() for t in targets}

        for i in range(len(targets) - 1):
            a = targets[i]
            for b in targets[i + 1:]:
                ca, cb = centroids[a.id], centroids[b.id]
                vector = (cb[0] - ca[0], cb[1] - ca[1])
                length = math.hypot(*vector)
                if length < MIN_ENTRY_LENGTH:
                    continue
                entry = PairEntry(
                    id_a=a.id,
                    id_b=b.id,
                    shape_a=a.piece_type.shape,
                    shape_b=b.piece_type.shape,
                    vector=vector,
                    angle=math.atan2(vector[1], vector[0]),
                    length=length,
                )
                if b.id < a.id:
                    entry = entry.reversed()

                library.entries_by_key[f"{entry.id_a}|{entry.id_b}"] = entry
                key = shape_pair_key(entry.shape_a, entry.shape_b)
                library.entries_by_shape_pair.setdefault(key, []).append(entry)
        return library
