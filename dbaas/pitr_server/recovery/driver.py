"""
Recovery driver.

The RecoveryDriver consumes one RestorePlan and drives a data directory to
the plan's target:

    Idle
      -> Restoring(backup)   lock taken, in-progress marker written,
                             base backup files extracted and verified
      -> Replaying(-)        recovery configured in the data directory
      -> Replaying(seq)...   each segment verified and applied in plan order
      -> TargetReached       database signalled to leave recovery,
                             in-progress marker removed
    any -> Aborted           marker replaced by an aborted marker with
                             diagnostics, no promotion

Failure policy:
    - Base backup errors (missing/corrupt chunks, write errors): fatal, no retry
    - Corrupt or missing segment: fatal, no retry
    - Segment apply I/O or adapter errors: retried once, then fatal
    - Any other adapter exception: Aborted with diagnostics, no retry
    - Cancellation: Aborted, lock released, CancelledError re-raised

Invariants:
    - One driver per data directory (DirectoryLock)
    - The data directory must be empty or absent before the driver starts
    - A driver consumes exactly one plan, once
    - The database is never promoted after an error

How to change safely:
    - Add states in recovery/state.py and extend TRANSITIONS first
    - Keep the aborted marker format stable, operators read it
"""

from __future__ import annotations

import asyncio
import json
import logging
import os
import time
from pathlib import Path
from typing import Any

from ..archive.base import BackupFile, Segment
from ..archive.store import ArchiveStore
from ..errors import (
    AdapterError,
    ArchiveIOError,
    PitrError,
    RecoveryAborted,
    RecoveryError,
)
from ..restore.planner import RestorePlan
from .adapter import DatabaseAdapter
from .lock import DirectoryLock
from .state import RecoveryPhase, RecoveryState, RecoveryStateMachine

logger = logging.getLogger(__name__)

IN_PROGRESS_MARKER = "pitr_restore.in_progress"
ABORTED_MARKER = "pitr_restore.aborted"


class RecoveryDriver:
    """Applies a RestorePlan to a data directory.

    Attributes:
        store: Archive store to read the backup and segments from
        adapter: Database adapter
        data_dir: Data directory to restore into

    Example:
        >>> driver = RecoveryDriver(store, PostgresAdapter(), "/var/lib/postgresql/data")
        >>> state = await driver.run(plan)
        >>> assert state.phase == RecoveryPhase.TARGET_REACHED
    """

    def __init__(
        self,
        store: ArchiveStore,
        adapter: DatabaseAdapter,
        data_dir: str | Path,
        segment_retry_delay_ms: int = 500,
    ) -> None:
        self.store = store
        self.adapter = adapter
        self.data_dir = Path(data_dir)
        self.segment_retry_delay_ms = segment_retry_delay_ms

        self._machine = RecoveryStateMachine()
        self._lock = DirectoryLock(self.data_dir)
        self._plan: RestorePlan | None = None

    @property
    def state(self) -> RecoveryState:
        return self._machine.state

    @property
    def history(self) -> tuple[RecoveryState, ...]:
        return self._machine.history

    @property
    def in_progress_marker(self) -> Path:
        return self.data_dir / IN_PROGRESS_MARKER

    @property
    def aborted_marker(self) -> Path:
        return self.data_dir / ABORTED_MARKER

    async def run(self, plan: RestorePlan) -> RecoveryState:
        """Restore the plan's backup and replay its segments.

        Returns:
            The terminal TargetReached state

        Raises:
            RecoveryError: If the driver was already used or the data
                directory is not empty (nothing is touched)
            DirectoryLocked: If another driver holds the data directory
            RecoveryAborted: If recovery failed; the directory is marked
        """
        if self._plan is not None or self.state.phase != RecoveryPhase.IDLE:
            raise RecoveryError("Recovery driver already consumed a plan", code="PLAN_CONSUMED")
        self._plan = plan

        self._lock.acquire()
        try:
            self._check_data_dir()
            return await self._run_locked(plan)
        finally:
            self._lock.release()

    async def _run_locked(self, plan: RestorePlan) -> RecoveryState:
        started = time.monotonic()
        logger.info(
            "Starting recovery",
            extra={
                "data_dir": str(self.data_dir),
                "backup_id": plan.backup.backup_id,
                "target": str(plan.target),
                "segments": len(plan.segments),
            },
        )

        try:
            self.data_dir.mkdir(mode=0o700, parents=True, exist_ok=True)
            self._write_marker(self.in_progress_marker, {"plan": plan.to_dict(), "pid": os.getpid()})

            self._machine.transition(RecoveryPhase.RESTORING, backup_id=plan.backup.backup_id)
            await self._restore_backup(plan)

            self._machine.transition(RecoveryPhase.REPLAYING)
            await self.adapter.prepare_recovery(self.data_dir, plan)

            for segment in plan.segments:
                await self._apply_segment(segment)
                self._machine.transition(RecoveryPhase.REPLAYING, seq=segment.seq)

            await self.adapter.promote(self.data_dir, plan)
            state = self._machine.transition(RecoveryPhase.TARGET_REACHED)
            self.in_progress_marker.unlink(missing_ok=True)

        except asyncio.CancelledError:
            self._abort(plan, "cancelled", None)
            raise
        except Exception as e:
            last = self._abort(plan, _reason(e), e)
            raise RecoveryAborted(_reason(e), last, e) from e

        logger.info(
            "Recovery target reached",
            extra={
                "data_dir": str(self.data_dir),
                "backup_id": plan.backup.backup_id,
                "last_seq": plan.last_seq,
                "duration_ms": int((time.monotonic() - started) * 1000),
            },
        )
        return state

    def _check_data_dir(self) -> None:
        if self.data_dir.exists() and (not self.data_dir.is_dir() or any(self.data_dir.iterdir())):
            raise RecoveryError(
                f"Data directory {self.data_dir} is not empty",
                code="DATA_DIR_NOT_EMPTY",
                details={"data_dir": str(self.data_dir)},
            )

    async def _restore_backup(self, plan: RestorePlan) -> None:
        # Re-read the manifest so its checksum is verified, not trusted from the plan
        await self.store.get(plan.backup.backup_id)
        backup = await self.store.get_backup(plan.backup.backup_id)

        loop = asyncio.get_running_loop()
        restored_bytes = 0
        async for entry, data in self.store.iter_backup_files(backup):
            await loop.run_in_executor(None, self._write_backup_file, entry, data)
            restored_bytes += len(data)

        logger.info(
            "Base backup restored",
            extra={"backup_id": backup.backup_id, "files": len(backup.files), "bytes": restored_bytes},
        )

    def _write_backup_file(self, entry: BackupFile, data: bytes) -> None:
        path = (self.data_dir / entry.path).resolve()
        if self.data_dir.resolve() not in path.parents:
            raise RecoveryError(f"Backup file escapes data directory: {entry.path}", code="UNSAFE_PATH")
        path.parent.mkdir(parents=True, exist_ok=True)
        with open(path, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())

    async def _apply_segment(self, segment: Segment) -> None:
        attempts = 2
        for attempt in range(1, attempts + 1):
            try:
                data = await self.store.get(segment.segment_id)
                await self.adapter.apply_segment(self.data_dir, segment, data)
                return
            except (ArchiveIOError, AdapterError, OSError) as e:
                if attempt == attempts:
                    raise
                logger.warning(
                    f"Segment apply failed, retrying once: {e}",
                    extra={"segment_id": segment.segment_id, "attempt": attempt},
                )
                await asyncio.sleep(self.segment_retry_delay_ms / 1000)

    def _abort(self, plan: RestorePlan, reason: str, error: BaseException | None) -> RecoveryState:
        last = self._machine.last_successful
        if not self.state.is_terminal:
            self._machine.transition(RecoveryPhase.ABORTED)

        diagnostics: dict[str, Any] = {
            "reason": reason,
            "last_state": last.to_dict(),
            "last_state_name": str(last),
            "error": repr(error) if error else None,
            "error_code": getattr(error, "code", None),
            "error_details": getattr(error, "details", None),
            "plan": plan.to_dict(),
            "history": [str(s) for s in self._machine.history],
            "aborted_at_ms": int(time.time() * 1000),
        }
        logger.error(
            "Recovery aborted",
            extra={"data_dir": str(self.data_dir), "reason": reason, "last_state": str(last)},
        )

        try:
            self._write_marker(self.aborted_marker, diagnostics)
            self.in_progress_marker.unlink(missing_ok=True)
        except OSError:
            logger.exception("Could not mark data directory as aborted", extra={"data_dir": str(self.data_dir)})
        return last

    def _write_marker(self, path: Path, payload: dict[str, Any]) -> None:
        tmp = path.with_name(f".{path.name}.tmp")
        with open(tmp, "w", encoding="utf-8") as f:
            json.dump(payload, f, indent=2, sort_keys=True, default=str)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp, path)

    def status(self) -> dict[str, Any]:
        """Driver state for operators."""
        return {
            "data_dir": str(self.data_dir),
            "state": str(self.state),
            "history": [s.to_dict() for s in self.history],
            "plan": self._plan.to_dict() if self._plan else None,
        }


def _reason(error: BaseException) -> str:
    if isinstance(error, PitrError):
        return f"{error.code}: {error.message}"
    return f"{type(error).__name__}: {error}"
