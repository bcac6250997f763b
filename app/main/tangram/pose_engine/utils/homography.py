"""
Camera homography adapter.

Converts piece detections from image pixels into the scene frame used by the
validation engine. H maps scene -> pixels (as estimated during calibration);
detections are mapped back with H^-1 via cv2.perspectiveTransform.
"""

from __future__ import annotations
from typing import Iterable, Optional
import logging
import math
import cv2
import numpy as np

from ..models import PieceObservation, PieceType, Point

logger = logging.getLogger(__name__)

MIN_DETERMINANT = 1e-9
MIN_PROJECTIVE_W = 1e-12


class DegenerateTransformError(RuntimeError):
    """Homography is singular or produces non-finite coordinates."""


def _validated(homography) -> np.ndarray:
    mat = np.asarray(homography, dtype=np.float64)
    if mat.shape != (3, 3):
        raise ValueError(f"Homography must be 3x3, got shape {mat.shape}")
    if not np.all(np.isfinite(mat)):
        raise DegenerateTransformError("Homography contains non-finite values")
    det = float(np.linalg.det(mat))
    if abs(det) < MIN_DETERMINANT:
        raise DegenerateTransformError(f"Homography is singular (det={det:.3e})")
    return mat


class HomographyAdapter:
    """
    Maps pixel detections into scene-frame PieceObservations.

    Args:
        homography: 3x3 scene -> pixel matrix

    Raises:
        ValueError: Matrix is not 3x3
        DegenerateTransformError: |det| < 1e-9 or non-finite entries

    Notes:
        - Rotations are mapped by transforming a unit direction at the piece position
        - An orientation-reversing homography (negative linear determinant)
          toggles is_flipped
    """

    def __init__(self, homography):
        self.homography = _validated(homography)
        self._inverse = np.linalg.inv(self.homography)
        self._reverses_orientation = float(np.linalg.det(self._inverse[:2, :2])) < 0
        self._previous: list[PieceObservation] = []

    @classmethod
    def identity(cls) -> HomographyAdapter:
        return cls(np.eye(3))

    def to_scene(self, points) -> np.ndarray:
        """
        Map pixel points into the scene frame.

        Args:
            points: (N, 2) pixel coordinates

        Returns:
            (N, 2) scene coordinates

        Raises:
            DegenerateTransformError: A point lies on the vanishing line or maps to non-finite values
        """
        pts = np.asarray(points, dtype=np.float64).reshape(-1, 2)
        if pts.size == 0:
            return pts

        homogeneous = np.hstack([pts, np.ones((len(pts), 1))]) @ self._inverse.T
        if np.any(np.abs(homogeneous[:, 2]) < MIN_PROJECTIVE_W):
            raise DegenerateTransformError("Point maps to infinity")

        mapped = cv2.perspectiveTransform(pts.reshape(-1, 1, 2), self._inverse).reshape(-1, 2)
        if not np.all(np.isfinite(mapped)):
            raise DegenerateTransformError("Mapped points are not finite")
        return mapped

    def map_point(self, point: Point) -> Point:
        x, y = self.to_scene([point])[0]
        return (float(x), float(y))

    def map_rotation(self, point: Point, rotation: float) -> float:
        """Scene-frame angle of a unit direction at point."""
        tip = (point[0] + math.cos(rotation), point[1] + math.sin(rotation))
        base, mapped_tip = self.to_scene([point, tip])
        return math.atan2(mapped_tip[1] - base[1], mapped_tip[0] - base[0])

    def map_detection(self, detection: dict, timestamp: float) -> PieceObservation:
        """
        Map one detection dict.

        Expected keys: piece_id, piece_type, position (px), rotation (rad, pixel frame);
        optional: is_flipped, velocity (px/s).
        """
        position = tuple(float(v) for v in detection["position"])
        velocity = tuple(float(v) for v in detection.get("velocity", (0.0, 0.0)))
        if len(position) != 2 or len(velocity) != 2:
            raise ValueError(f"position/velocity must have 2 components: {detection}")
        rotation = float(detection["rotation"])

        base, ahead = self.to_scene([position, (position[0] + velocity[0], position[1] + velocity[1])])
        return PieceObservation(
            piece_id=str(detection["piece_id"]),
            piece_type=PieceType(detection["piece_type"]),
            position=(float(base[0]), float(base[1])),
            rotation=self.map_rotation(position, rotation),
            is_flipped=bool(detection.get("is_flipped", False)) != self._reverses_orientation,
            velocity=(float(ahead[0] - base[0]), float(ahead[1] - base[1])),
            timestamp=timestamp,
        )

    def observations_from_detections(
        self,
        detections: Iterable[dict],
        timestamp: float
    ) -> list[PieceObservation]:
        """
        Map a whole frame of detections.

        Returns:
            Scene-frame observations; the previous frame's observations if this
            frame is numerically degenerate
        """
        try:
            observations = [self.map_detection(d, timestamp) for d in detections]
        except DegenerateTransformError as e:
            logger.debug("Degenerate frame at t=%.3f (%s), reusing previous observations", timestamp, e)
            return list(self._previous)

        self._previous = observations
        return observations

    @property
    def previous(self) -> Optional[list[PieceObservation]]:
        return list(self._previous) if self._previous else None
