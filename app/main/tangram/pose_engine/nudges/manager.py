"""
Nudge management: when to show corrective guidance and what it looks like.

Levels escalate with group progress, confidence and repeated failed attempts:
    NONE -> VISUAL -> GENTLE -> SPECIFIC -> DIRECTED -> SOLUTION

Per-piece cooldowns grow with every nudge shown (progressive cooldown).
"""

from __future__ import annotations
from dataclasses import dataclass
from typing import Optional
import logging
import math

from ..models import FailureKind, NudgeContent, NudgeLevel, Point, ValidationFailure, VisualHint
from ..utils.geometry import distance
from ..validation.groups import ConstructionGroup, GroupValidationState, NudgeHistory

logger = logging.getLogger(__name__)

MAX_RECENT_ATTEMPTS = 10


@dataclass(frozen=True)
class TargetInfo:
    """Where the nudged piece should go, in the physical (scene) frame."""
    position: Point
    rotation: float


class SmartNudgeManager:
    """
    Decides nudge visibility and level, and builds nudge content.

    Args:
        base_interval: Base per-piece cooldown in seconds
    """

    def __init__(self, base_interval: float = 3.0):
        self.base_interval = base_interval
        self._histories: dict[str, NudgeHistory] = {}
        self._attempts: dict[str, list[tuple[float, Point]]] = {}

    # ========== Gating ==========

    def should_show_nudge(self, piece_id: str, group: Optional[ConstructionGroup], now: float) -> bool:
        if group is None or not group.validation_state.validates:
            return False
        if group.confidence < 0.3:
            return False

        attempts = group.attempts(piece_id)
        if attempts < 2:
            return False

        history = self._histories.get(piece_id, NudgeHistory())
        if not history.should_show_nudge(now, self.apply_progressive_cooldown(history)):
            return False

        confidence = group.confidence
        return (
            (attempts >= 2 and confidence > 0.25)
            or (attempts >= 3 and confidence > 0.45)
            or attempts >= 5
        )

    def determine_nudge_level(
        self,
        confidence: float,
        attempts: int,
        state: GroupValidationState
    ) -> NudgeLevel:
        """
        Nudge level for a piece.

        Base level from the group state, +1 after 3 attempts, +2 after 5
        (capped at SOLUTION), at least SPECIFIC when confidence > 0.8.
        """
        if state in (GroupValidationState.SCATTERED, GroupValidationState.EXPLORING):
            level = NudgeLevel.NONE
        elif state is GroupValidationState.CONSTRUCTING:
            level = NudgeLevel.GENTLE if confidence > 0.6 else NudgeLevel.VISUAL
        elif state is GroupValidationState.BUILDING:
            level = NudgeLevel.SPECIFIC if confidence > 0.6 else NudgeLevel.GENTLE
        else:
            level = NudgeLevel.DIRECTED

        if attempts > 5:
            level = NudgeLevel(min(NudgeLevel.SOLUTION, level + 2))
        elif attempts > 3:
            level = NudgeLevel(min(NudgeLevel.SOLUTION, level + 1))

        if confidence > 0.8 and level < NudgeLevel.SPECIFIC:
            level = NudgeLevel.SPECIFIC
        return level

    # ========== Content ==========

    def generate_nudge(
        self,
        level: NudgeLevel,
        failure: Optional[ValidationFailure],
        target_info: Optional[TargetInfo] = None,
        origin: Optional[Point] = None
    ) -> NudgeContent:
        """
        Build nudge content.

        Args:
            level: Nudge level
            failure: Why the piece failed (None = unknown)
            target_info: Target pose in the physical frame, if known
            origin: Current piece position; the DIRECTED arrow points from here
                    to target_info.position (from the frame origin if None)
        """
        kind = failure.kind if failure is not None else None

        if level is NudgeLevel.NONE:
            return NudgeContent(NudgeLevel.NONE, "", None, 0.0)

        if level is NudgeLevel.VISUAL:
            return NudgeContent(level, "", VisualHint.color_change("orange", 0.3), 2.0)

        if level is NudgeLevel.GENTLE:
            if kind is FailureKind.WRONG_ROTATION:
                message = "Try rotating"
            elif kind is FailureKind.NEEDS_FLIP:
                message = "Try flipping"
            else:
                message = failure.nudge_message if failure is not None else "Try adjusting this piece"
            return NudgeContent(level, message, VisualHint.pulse(0.5), 3.0)

        if level is NudgeLevel.SPECIFIC:
            if kind is FailureKind.WRONG_ROTATION:
                message = "Rotate significantly" if (failure.degrees_off or 0.0) > 45 else "Slight rotation needed"
                hint = (VisualHint.ghost_piece(target_info.position, target_info.rotation)
                        if target_info else VisualHint.color_change("yellow", 0.5))
            elif kind is FailureKind.NEEDS_FLIP:
                message = "Flip the piece"
                hint = (VisualHint.ghost_piece(target_info.position, target_info.rotation)
                        if target_info else VisualHint.pulse(0.7))
            elif kind is FailureKind.WRONG_POSITION:
                message = "Move closer to other pieces"
                hint = VisualHint.color_change("blue", 0.5)
            else:
                message = "This piece needs adjustment"
                hint = VisualHint.pulse(0.5)
            return NudgeContent(level, message, hint, 4.0)

        if level is NudgeLevel.DIRECTED:
            if target_info is None:
                return NudgeContent(level, "Try a different approach", VisualHint.pulse(1.0), 5.0)
            ox, oy = origin if origin is not None else (0.0, 0.0)
            direction = math.atan2(target_info.position[1] - oy, target_info.position[0] - ox)
            return NudgeContent(level, "Move this way", VisualHint.arrow(direction), 5.0)

        if target_info is None:
            return NudgeContent(level, "See the target shape", VisualHint.color_change("green", 0.7), 6.0)
        return NudgeContent(level, "Place here", VisualHint.ghost_piece(target_info.position, target_info.rotation), 6.0)

    # ========== History ==========

    def history_for(self, piece_id: str) -> Optional[NudgeHistory]:
        return self._histories.get(piece_id)

    def record_nudge_shown(self, piece_id: str, now: float) -> None:
        history = self._histories.setdefault(piece_id, NudgeHistory())
        history.record_nudge(now)
        logger.debug("Nudge shown piece=%s count=%d multiplier=%d",
                     piece_id, history.nudge_count, history.cooldown_multiplier)

    def record_attempt(self, piece_id: str, position: Point, now: float) -> None:
        attempts = self._attempts.setdefault(piece_id, [])
        attempts.append((now, position))
        del attempts[:-MAX_RECENT_ATTEMPTS]
        if piece_id in self._histories:
            self._histories[piece_id].attempts_since_nudge += 1

    def is_repeating_placement(self, piece_id: str, position: Point, threshold: float = 30.0) -> bool:
        """True when 2 of the last 3 attempts landed within threshold of position."""
        attempts = self._attempts.get(piece_id, [])
        if len(attempts) < 2:
            return False
        similar = [p for _, p in attempts[-3:] if distance(p, position) < threshold]
        return len(similar) >= 2

    def apply_progressive_cooldown(self, history: NudgeHistory) -> float:
        """Per-piece cooldown: base x multiplier, shortened by 0.5s per attempt since the last nudge."""
        base = self.base_interval
        return max(base, base * history.cooldown_multiplier - history.attempts_since_nudge * 0.5)

    def reset_history(self, piece_id: str) -> None:
        self._histories.pop(piece_id, None)
        self._attempts.pop(piece_id, None)

    def clear_all_histories(self) -> None:
        self._histories.clear()
        self._attempts.clear()

    def stats(self) -> dict:
        """Summary for debugging endpoints."""
        total = sum(h.nudge_count for h in self._histories.values())
        most = max(self._histories.items(), key=lambda kv: kv[1].nudge_count, default=None)
        count = max(1, len(self._histories))
        return {
            "total_nudges": total,
            "average_cooldown_multiplier": sum(h.cooldown_multiplier for h in self._histories.values()) / count,
            "pieces_nudged": len(self._histories),
            "most_nudged_piece": most[0] if most else None,
            "max_nudge_count": most[1].nudge_count if most else 0,
        }
