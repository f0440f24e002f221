"""
Restore planning for pg-pitr.

Turns a recovery target (LSN, timestamp or latest) into an immutable
RestorePlan: one base backup plus the contiguous segment chain after it.
"""

from .planner import RecoveryTarget, RestorePlan, RestorePlanner, TargetKind, build_plan

__all__ = [
    "RecoveryTarget",
    "RestorePlan",
    "RestorePlanner",
    "TargetKind",
    "build_plan",
]
