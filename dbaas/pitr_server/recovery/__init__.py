"""
Recovery driver for pg-pitr.

Consumes a RestorePlan: restores the base backup into an empty data
directory, stages the segment chain and lets the database replay to the
target through a DatabaseAdapter.

Invariants:
    - One driver per data directory at a time
    - Failures leave an aborted marker and never promote
"""

from .adapter import DatabaseAdapter, PostgresAdapter
from .driver import ABORTED_MARKER, IN_PROGRESS_MARKER, RecoveryDriver
from .lock import DirectoryLock
from .state import TRANSITIONS, RecoveryPhase, RecoveryState, RecoveryStateMachine

__all__ = [
    # Driver
    "RecoveryDriver",
    "IN_PROGRESS_MARKER",
    "ABORTED_MARKER",
    # State machine
    "RecoveryPhase",
    "RecoveryState",
    "RecoveryStateMachine",
    "TRANSITIONS",
    # Database adapters
    "DatabaseAdapter",
    "PostgresAdapter",
    # Locking
    "DirectoryLock",
]
