"""
Construction groups: clusters of pieces the player is assembling together.

Group status gates nudging. A group's state is derived from its piece count,
the number of validated connections (adjacent targets both bound), its
confidence and the attempt history:

    scattered -> exploring -> constructing -> building -> completing
"""

from __future__ import annotations
from dataclasses import dataclass, field
from enum import Enum
from typing import Iterable, Mapping, Optional

from ..models import PieceValidationState
from ..pairing.adjacency import TargetAdjacencyGraph

# A full tangram has 6 connections in a spanning tree of 7 pieces
MAX_CONNECTIONS = 6
EXPLORING_WINDOW_SECONDS = 10.0


class GroupValidationState(Enum):
    SCATTERED = "scattered"
    EXPLORING = "exploring"
    CONSTRUCTING = "constructing"
    BUILDING = "building"
    COMPLETING = "completing"

    @property
    def validates(self) -> bool:
        return self not in (GroupValidationState.SCATTERED, GroupValidationState.EXPLORING)

    @property
    def nudge_weight(self) -> float:
        return _NUDGE_WEIGHTS[self]


_NUDGE_WEIGHTS = {
    GroupValidationState.SCATTERED: 0.0,
    GroupValidationState.EXPLORING: 0.0,
    GroupValidationState.CONSTRUCTING: 0.3,
    GroupValidationState.BUILDING: 0.6,
    GroupValidationState.COMPLETING: 1.0,
}


@dataclass(frozen=True)
class PieceConnection:
    """Unordered connection between two validated pieces (piece_a < piece_b)."""
    piece_a: str
    piece_b: str

    @classmethod
    def between(cls, a: str, b: str) -> PieceConnection:
        return cls(a, b) if a < b else cls(b, a)


@dataclass
class NudgeHistory:
    """
    Per-piece nudge bookkeeping.

    Attributes:
        last_nudge_time: When the last nudge was shown (None = never)
        nudge_count: Nudges shown so far
        attempts_since_nudge: Failed attempts since the last nudge
        cooldown_multiplier: Grows by one per nudge, capped at 5
    """
    last_nudge_time: Optional[float] = None
    nudge_count: int = 0
    attempts_since_nudge: int = 0
    cooldown_multiplier: int = 1

    def should_show_nudge(self, now: float, cooldown: float) -> bool:
        """True once more than `cooldown` seconds passed since the last nudge."""
        if self.last_nudge_time is None:
            return True
        return now - self.last_nudge_time > cooldown

    def record_nudge(self, now: float) -> None:
        self.last_nudge_time = now
        self.nudge_count += 1
        self.attempts_since_nudge = 0
        self.cooldown_multiplier = min(self.cooldown_multiplier + 1, 5)


@dataclass
class ConstructionGroup:
    """
    Status of one construction group.

    Attributes:
        id: Group id (as given to ValidationEngine.process)
        pieces: Member piece ids
        confidence: Mean piece-state confidence of the members
        created_at: Creation time (seconds, engine clock)
        last_activity: Last recorded attempt
        validated_connections: Validated pieces whose targets touch
        attempt_history: piece_id -> failed attempts
        nudge_history: Group-level nudge history
        validation_state: Derived by update_state()
    """
    id: str
    pieces: set[str] = field(default_factory=set)
    confidence: float = 0.0
    created_at: float = 0.0
    last_activity: float = 0.0
    validated_connections: set[PieceConnection] = field(default_factory=set)
    attempt_history: dict[str, int] = field(default_factory=dict)
    nudge_history: NudgeHistory = field(default_factory=NudgeHistory)
    validation_state: GroupValidationState = GroupValidationState.SCATTERED

    def is_stale(self, now: float, timeout: float = 30.0) -> bool:
        return now - self.last_activity > timeout

    def record_attempt(self, piece_id: str, now: float) -> None:
        self.attempt_history[piece_id] = self.attempt_history.get(piece_id, 0) + 1
        self.nudge_history.attempts_since_nudge += 1
        self.last_activity = now

    def attempts(self, piece_id: str) -> int:
        return self.attempt_history.get(piece_id, 0)

    def update_confidence(self, piece_states: Mapping[str, PieceValidationState]) -> float:
        values = [piece_states[pid].confidence for pid in self.pieces if pid in piece_states]
        self.confidence = sum(values) / len(values) if values else 0.0
        return self.confidence

    def update_connections(
        self,
        bindings: Mapping[str, str],
        valid_pieces: Iterable[str],
        adjacency: TargetAdjacencyGraph
    ) -> set[PieceConnection]:
        """Recompute connections between validated members with adjacent targets."""
        bound = sorted(pid for pid in valid_pieces if pid in self.pieces and pid in bindings)
        connections = set()
        for i, a in enumerate(bound):
            for b in bound[i + 1:]:
                if adjacency.are_adjacent(bindings[a], bindings[b]):
                    connections.add(PieceConnection.between(a, b))
        self.validated_connections = connections
        return connections

    def update_state(self, now: float) -> GroupValidationState:
        """Derive validation_state from count, connections, confidence and attempts."""
        piece_count = len(self.pieces)
        connection_count = len(self.validated_connections)
        completion_ratio = connection_count / MAX_CONNECTIONS
        age = now - self.created_at
        avg_attempts = sum(self.attempt_history.values()) // max(1, len(self.attempt_history))

        if piece_count <= 1:
            state = GroupValidationState.SCATTERED
        elif piece_count == 2 and connection_count == 0 and age < EXPLORING_WINDOW_SECONDS:
            state = GroupValidationState.EXPLORING
        elif completion_ratio > 0.6 or (piece_count >= 5 and connection_count >= 3):
            state = GroupValidationState.COMPLETING
        elif (piece_count >= 4 and connection_count >= 2) or \
                (piece_count >= 3 and connection_count >= 1 and self.confidence > 0.6):
            state = GroupValidationState.BUILDING
        elif piece_count >= 3 or connection_count >= 1 or \
                (self.confidence > 0.5 and avg_attempts >= 2):
            state = GroupValidationState.CONSTRUCTING
        else:
            state = GroupValidationState.EXPLORING

        self.validation_state = state
        return state
