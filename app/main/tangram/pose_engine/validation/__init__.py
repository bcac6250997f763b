"""Tolerance checks, failure analysis, group status and the validation engine"""
from .tolerance import PieceValidator, ToleranceCheck, Residuals, pose_residuals
from .groups import ConstructionGroup, GroupValidationState, NudgeHistory, PieceConnection
from .failures import determine_failure_reason
from .orientation import orientation_feedback
from .engine import ValidationEngine, DEFAULT_GROUP_ID

__all__ = [
    "PieceValidator",
    "ToleranceCheck",
    "Residuals",
    "pose_residuals",
    "ConstructionGroup",
    "GroupValidationState",
    "NudgeHistory",
    "PieceConnection",
    "determine_failure_reason",
    "orientation_feedback",
    "ValidationEngine",
    "DEFAULT_GROUP_ID",
]
