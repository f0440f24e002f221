"""
Recovery state machine.

States:
    Idle -> Restoring(backup) -> Replaying(seq) -> ... -> TargetReached
                  \\                   \\
                   +-> Aborted          +-> Aborted

Replaying carries the last segment applied successfully (None right after
the base backup is restored). TargetReached and Aborted are terminal.

Invariants:
    - Every transition is checked against TRANSITIONS
    - History is append-only; the state before Aborted is the last
      successful state reported in diagnostics
"""

from __future__ import annotations

import time
from dataclasses import dataclass, field
from enum import Enum
from typing import Any

from ..errors import InvalidTransition


class RecoveryPhase(Enum):
    """Recovery driver phases."""

    IDLE = "idle"
    RESTORING = "restoring"
    REPLAYING = "replaying"
    TARGET_REACHED = "target_reached"
    ABORTED = "aborted"


TRANSITIONS: dict[RecoveryPhase, frozenset[RecoveryPhase]] = {
    RecoveryPhase.IDLE: frozenset({RecoveryPhase.RESTORING, RecoveryPhase.ABORTED}),
    RecoveryPhase.RESTORING: frozenset({RecoveryPhase.REPLAYING, RecoveryPhase.ABORTED}),
    RecoveryPhase.REPLAYING: frozenset(
        {RecoveryPhase.REPLAYING, RecoveryPhase.TARGET_REACHED, RecoveryPhase.ABORTED}
    ),
    RecoveryPhase.TARGET_REACHED: frozenset(),
    RecoveryPhase.ABORTED: frozenset(),
}


@dataclass(frozen=True)
class RecoveryState:
    """One state of the recovery driver.

    Attributes:
        phase: Phase
        backup_id: Backup being restored (Restoring onwards)
        seq: Last applied segment (Replaying)
        entered_at_ms: When the state was entered (Unix ms)
    """

    phase: RecoveryPhase
    backup_id: str | None = None
    seq: int | None = None
    entered_at_ms: int = field(default_factory=lambda: int(time.time() * 1000))

    @property
    def is_terminal(self) -> bool:
        return not TRANSITIONS[self.phase]

    def to_dict(self) -> dict[str, Any]:
        return {
            "phase": self.phase.value,
            "backup_id": self.backup_id,
            "seq": self.seq,
            "entered_at_ms": self.entered_at_ms,
        }

    def __str__(self) -> str:
        if self.phase == RecoveryPhase.RESTORING:
            return f"Restoring({self.backup_id})"
        if self.phase == RecoveryPhase.REPLAYING:
            return f"Replaying({self.seq if self.seq is not None else '-'})"
        return {
            RecoveryPhase.IDLE: "Idle",
            RecoveryPhase.TARGET_REACHED: "TargetReached",
            RecoveryPhase.ABORTED: "Aborted",
        }[self.phase]


class RecoveryStateMachine:
    """Tracks and validates recovery state transitions."""

    def __init__(self) -> None:
        self._history: list[RecoveryState] = [RecoveryState(RecoveryPhase.IDLE)]

    @property
    def state(self) -> RecoveryState:
        return self._history[-1]

    @property
    def history(self) -> tuple[RecoveryState, ...]:
        return tuple(self._history)

    @property
    def last_successful(self) -> RecoveryState:
        """Latest state that is not Aborted."""
        for state in reversed(self._history):
            if state.phase != RecoveryPhase.ABORTED:
                return state
        return self._history[0]

    def transition(
        self,
        phase: RecoveryPhase,
        backup_id: str | None = None,
        seq: int | None = None,
    ) -> RecoveryState:
        """Move to a new state.

        backup_id carries over from the current state when not given.

        Raises:
            InvalidTransition: If the transition is not allowed
        """
        current = self.state
        if phase not in TRANSITIONS[current.phase]:
            raise InvalidTransition(current, phase.value)

        state = RecoveryState(
            phase=phase,
            backup_id=backup_id if backup_id is not None else current.backup_id,
            seq=seq,
        )
        self._history.append(state)
        return state
