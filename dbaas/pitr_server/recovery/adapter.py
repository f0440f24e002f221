"""
Database adapters for the recovery driver.

The DatabaseAdapter protocol is the only way the driver talks to the
database process. The Postgres implementation uses Postgres' own archive
recovery:
    - prepare_recovery: recovery.signal + restore_command + recovery_target_*
      appended to postgresql.auto.conf
    - apply_segment: stage the segment file into <data_dir>/pitr_wal/
    - promote: start the server; it replays the staged segments, stops at
      the target and promotes (recovery_target_action = 'promote')

Replay is segment-granular on our side; Postgres halts at the exact record
named by recovery_target_lsn / recovery_target_time inside the final segment.

How to change safely:
    - Keep staged writes atomic (temp + rename), restore_command may run
      while staging is still in progress
    - Test new Postgres major versions (recovery settings moved in 12)
"""

from __future__ import annotations

import asyncio
import logging
import os
import tempfile
from abc import abstractmethod
from pathlib import Path
from typing import Protocol, runtime_checkable

from ..archive.base import Segment
from ..errors import AdapterError
from ..restore.planner import RestorePlan, TargetKind

logger = logging.getLogger(__name__)

STAGING_DIR = "pitr_wal"


@runtime_checkable
class DatabaseAdapter(Protocol):
    """Protocol for coordinating with the database's recovery mode."""

    @abstractmethod
    async def prepare_recovery(self, data_dir: Path, plan: RestorePlan) -> None:
        """Configure a restored data directory for archive recovery.

        Raises:
            AdapterError: If the configuration cannot be written
        """
        ...

    @abstractmethod
    async def apply_segment(self, data_dir: Path, segment: Segment, data: bytes) -> None:
        """Make one verified segment available to replay.

        Raises:
            AdapterError: If the segment cannot be applied
        """
        ...

    @abstractmethod
    async def promote(self, data_dir: Path, plan: RestorePlan) -> None:
        """Signal the database to finish recovery and leave recovery mode.

        Raises:
            AdapterError: If the database could not be signalled
        """
        ...


def _quote(value: str) -> str:
    return "'" + value.replace("'", "''") + "'"


class PostgresAdapter:
    """DatabaseAdapter for PostgreSQL 12+.

    Attributes:
        pg_ctl: pg_ctl executable
        start_server: Start the server in promote(); otherwise leave it to the operator
        timeout_seconds: pg_ctl wait timeout
    """

    def __init__(self, pg_ctl: str = "pg_ctl", start_server: bool = True, timeout_seconds: int = 3600) -> None:
        self.pg_ctl = pg_ctl
        self.start_server = start_server
        self.timeout_seconds = timeout_seconds

    def recovery_settings(self, data_dir: Path, plan: RestorePlan) -> dict[str, str]:
        """Recovery settings for a plan, as postgresql.conf values."""
        staging = data_dir / STAGING_DIR
        settings = {
            "restore_command": f'cp "{staging}/%f" "%p"',
            "recovery_target_timeline": str(plan.timeline),
        }
        if plan.target.kind == TargetKind.LSN:
            settings["recovery_target_lsn"] = str(plan.target.lsn)
            settings["recovery_target_action"] = "promote"
        elif plan.target.kind == TargetKind.TIME:
            settings["recovery_target_time"] = plan.target.time_iso or ""
            settings["recovery_target_action"] = "promote"
        return settings

    async def prepare_recovery(self, data_dir: Path, plan: RestorePlan) -> None:
        try:
            await asyncio.get_running_loop().run_in_executor(None, self._prepare, data_dir, plan)
        except OSError as e:
            raise AdapterError(f"Cannot configure recovery in {data_dir}: {e}", "prepare_recovery") from e
        logger.info(
            "Recovery configured",
            extra={"data_dir": str(data_dir), "target": str(plan.target), "timeline": plan.timeline},
        )

    def _prepare(self, data_dir: Path, plan: RestorePlan) -> None:
        # -Xn backups carry no WAL; Postgres still needs the directories
        (data_dir / "pg_wal" / "archive_status").mkdir(parents=True, exist_ok=True)
        (data_dir / STAGING_DIR).mkdir(exist_ok=True)
        (data_dir / "recovery.signal").touch()

        lines = ["", f"# pg-pitr recovery settings (backup {plan.backup.backup_id})"]
        for key, value in self.recovery_settings(data_dir, plan).items():
            lines.append(f"{key} = {_quote(value)}")
        with open(data_dir / "postgresql.auto.conf", "a", encoding="utf-8") as f:
            f.write("\n".join(lines) + "\n")
            f.flush()
            os.fsync(f.fileno())

    async def apply_segment(self, data_dir: Path, segment: Segment, data: bytes) -> None:
        target = data_dir / STAGING_DIR / segment.segment_id
        try:
            await asyncio.get_running_loop().run_in_executor(None, _write_atomic, target, data)
        except OSError as e:
            raise AdapterError(f"Cannot stage {segment.segment_id}: {e}", "apply_segment") from e

    async def promote(self, data_dir: Path, plan: RestorePlan) -> None:
        if not self.start_server:
            logger.info(
                "Recovery staged, start the server to replay and promote",
                extra={"data_dir": str(data_dir)},
            )
            return

        cmd = [self.pg_ctl, "-D", str(data_dir), "-w", "-t", str(self.timeout_seconds), "start"]
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.STDOUT,
            )
        except OSError as e:
            raise AdapterError(f"Cannot run {self.pg_ctl}: {e}", "promote") from e

        output, _ = await proc.communicate()
        if proc.returncode != 0:
            raise AdapterError(
                f"pg_ctl start exited with {proc.returncode}: {output.decode('utf-8', errors='replace').strip()}",
                "promote",
            )
        logger.info("Postgres started for recovery", extra={"data_dir": str(data_dir)})


def _write_atomic(path: Path, data: bytes) -> None:
    fd, tmp_name = tempfile.mkstemp(prefix=f".{path.name}.", suffix=".tmp", dir=path.parent)
    try:
        with os.fdopen(fd, "wb") as f:
            f.write(data)
            f.flush()
            os.fsync(f.fileno())
        os.replace(tmp_name, path)
    except BaseException:
        if os.path.exists(tmp_name):
            os.unlink(tmp_name)
        raise
