"""Nudge level selection, content generation and cooldowns"""
from .manager import SmartNudgeManager, TargetInfo

__all__ = ["SmartNudgeManager", "TargetInfo"]
