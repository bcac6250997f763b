"""
Tangram pose engine.

Validates observed tangram piece poses (camera or touch) against a puzzle
solution: per-group rigid mapping into target space, tolerance checks with
hysteresis, injective piece -> target binding and progressive nudges.
"""
from .config import (
    AffineTransform,
    Difficulty,
    ToleranceSettings,
    tolerances_for,
    MappingConfig,
    EngineConfig,
    ValidationOptions,
)
from .models import (
    ShapeFamily,
    PieceType,
    PieceObservation,
    TargetPiece,
    GamePuzzleData,
    MappingKind,
    AnchorMapping,
    MappedPose,
    FailureKind,
    ValidationFailure,
    LockedValidation,
    PieceValidationState,
    NudgeLevel,
    VisualHint,
    NudgeContent,
    ValidationResult,
)
from .mapping import MappingService
from .pairing import PairScorer, TargetPairLibrary, TargetAdjacencyGraph
# validation before nudges: nudges.manager imports validation.groups
from .validation import ValidationEngine, PieceValidator, ConstructionGroup, GroupValidationState
from .nudges import SmartNudgeManager
from .puzzles import load_puzzle, puzzle_from_json, observations_for_solution
from .utils.homography import HomographyAdapter, DegenerateTransformError
from .visualizer import OverlayVisualizer

__all__ = [
    "AffineTransform",
    "Difficulty",
    "ToleranceSettings",
    "tolerances_for",
    "MappingConfig",
    "EngineConfig",
    "ValidationOptions",
    "ShapeFamily",
    "PieceType",
    "PieceObservation",
    "TargetPiece",
    "GamePuzzleData",
    "MappingKind",
    "AnchorMapping",
    "MappedPose",
    "FailureKind",
    "ValidationFailure",
    "LockedValidation",
    "PieceValidationState",
    "NudgeLevel",
    "VisualHint",
    "NudgeContent",
    "ValidationResult",
    "MappingService",
    "PairScorer",
    "TargetPairLibrary",
    "TargetAdjacencyGraph",
    "ValidationEngine",
    "PieceValidator",
    "ConstructionGroup",
    "GroupValidationState",
    "SmartNudgeManager",
    "load_puzzle",
    "puzzle_from_json",
    "observations_for_solution",
    "HomographyAdapter",
    "DegenerateTransformError",
    "OverlayVisualizer",
]
