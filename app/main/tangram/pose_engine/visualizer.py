import os
from typing import List, Optional, Sequence, Tuple

import cv2
import numpy as np

from .models import GamePuzzleData, PieceObservation
from .utils.geometry import piece_polygon
from .validation.engine import ValidationEngine

BOUND_COLOR = (60, 180, 75)        # green
ORIENTED_COLOR = (0, 215, 255)     # yellow
TARGET_COLOR = (160, 160, 160)
PIECE_COLOR = (200, 120, 40)
ANCHOR_COLOR = (40, 40, 220)


class OverlayVisualizer:
    """Draws observed pieces and inverse-mapped target outlines in the physical frame."""

    def __init__(self, size: Tuple[int, int] = (480, 480), margin: int = 24,
                 output_dir: str = 'app/static/output'):
        self.size = size
        self.margin = margin
        self.output_dir = output_dir

    def render(self, engine: ValidationEngine, group_id: str, puzzle: GamePuzzleData,
               frame: Sequence[PieceObservation]) -> np.ndarray:
        """
        Render the overlay for one group.

        Bound targets (validated) are drawn green, orientation-only matches yellow,
        all other targets gray. Targets are only drawn when the group has a mapping.

        Returns:
            BGR image (H, W, 3) uint8
        """
        width, height = self.size
        img = np.full((height, width, 3), 255, dtype=np.uint8)

        result = engine.last_result
        bound = set(engine.consumed_targets(group_id))
        oriented = result.oriented_targets

        targets = []
        for target in puzzle.target_pieces:
            outline = engine.target_outline_in_physical(group_id, target.id)
            if outline is not None:
                targets.append((target.id, outline))

        pieces = [(obs, piece_polygon(obs.piece_type, obs.position, obs.rotation, obs.is_flipped))
                  for obs in frame]

        polygons = [poly for _, poly in targets] + [poly for _, poly in pieces]
        if not polygons:
            cv2.putText(img, "NO DATA", (width // 2 - 40, height // 2),
                        cv2.FONT_HERSHEY_SIMPLEX, 0.6, (0, 0, 0), 1, cv2.LINE_AA)
            return img

        to_image = self._fit(polygons)

        for target_id, outline in targets:
            if target_id in bound:
                color, thickness = BOUND_COLOR, 3
            elif target_id in oriented:
                color, thickness = ORIENTED_COLOR, 2
            else:
                color, thickness = TARGET_COLOR, 1
            cv2.polylines(img, [to_image(outline)], True, color, thickness, cv2.LINE_AA)

        overlay = img.copy()
        for obs, poly in pieces:
            cv2.fillPoly(overlay, [to_image(poly)], PIECE_COLOR)
        img = cv2.addWeighted(overlay, 0.35, img, 0.65, 0)

        for obs, poly in pieces:
            color = ANCHOR_COLOR if obs.piece_id in result.anchor_piece_ids else (40, 40, 40)
            contour = to_image(poly)
            cv2.polylines(img, [contour], True, color, 2, cv2.LINE_AA)
            cx, cy = contour.reshape(-1, 2).mean(axis=0)
            state = result.piece_states.get(obs.piece_id)
            label = obs.piece_id if state is None else f"{obs.piece_id} {'OK' if state.is_valid else 'X'}"
            cv2.putText(img, label, (int(cx) - 20, int(cy)),
                        cv2.FONT_HERSHEY_SIMPLEX, 0.3, (0, 0, 0), 1, cv2.LINE_AA)

        mapping = engine.mapping_for(group_id)
        status = "no mapping" if mapping is None else \
            f"{mapping.kind.value} v{mapping.version} {mapping.rotation_delta_deg:.1f} deg"
        cv2.putText(img, f"Group {group_id}: {status}", (10, height - 28),
                    cv2.FONT_HERSHEY_SIMPLEX, 0.4, (100, 100, 100), 1, cv2.LINE_AA)
        cv2.putText(img, f"Validated: {len(result.validated_targets)}/{len(puzzle.target_pieces)}",
                    (10, height - 10), cv2.FONT_HERSHEY_SIMPLEX, 0.4, (100, 100, 100), 1, cv2.LINE_AA)
        return img

    def _fit(self, polygons: List[np.ndarray]):
        """World -> image transform fitting all polygons (y axis pointing up)."""
        width, height = self.size
        stacked = np.vstack(polygons)
        min_xy = stacked.min(axis=0)
        max_xy = stacked.max(axis=0)
        span = np.maximum(max_xy - min_xy, 1e-6)
        # Reserve the bottom strip for the status text
        scale = min((width - 2 * self.margin) / span[0], (height - 2 * self.margin - 30) / span[1])

        def to_image(poly: np.ndarray) -> np.ndarray:
            pts = (np.asarray(poly, dtype=float) - min_xy) * scale
            x = pts[:, 0] + self.margin
            y = (height - self.margin - 30) - pts[:, 1]
            return np.round(np.stack([x, y], axis=1)).astype(np.int32).reshape(-1, 1, 2)

        return to_image

    @staticmethod
    def encode_png(img: np.ndarray) -> bytes:
        ok, buffer = cv2.imencode('.png', img)
        if not ok:
            raise ValueError("PNG encoding failed")
        return buffer.tobytes()

    def save(self, img: np.ndarray, filename: str) -> Optional[str]:
        os.makedirs(self.output_dir, exist_ok=True)
        filepath = os.path.join(self.output_dir, filename)
        cv2.imwrite(filepath, img)
        return filename
