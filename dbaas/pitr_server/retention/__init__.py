"""
Retention module for pg-pitr.

Prunes archived segments and base backups according to a RetentionPolicy
without ever breaking a retained backup's recovery chain.
"""

from .manager import RetentionManager, RetentionReport
from .policy import RetentionDecision, RetentionPolicy, compute_retention

__all__ = [
    "RetentionPolicy",
    "RetentionDecision",
    "RetentionManager",
    "RetentionReport",
    "compute_retention",
]
