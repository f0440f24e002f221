"""
Operator CLI for pg-pitr.

Commands:
    pitr archive run                      Run the archiver service (reader + retention)
    pitr archive status                   Show archive contents
    pitr archive push <path>              Archive one segment or history file (archive_command)
    pitr backup create --label <label>    Take a base backup with pg_basebackup
    pitr backup list                      List base backups
    pitr restore --to <point> [--dry-run] Plan (and run) a point-in-time restore
    pitr retention apply [--dry-run]      Prune the archive once

<point> is 'latest', an LSN (0/7000100) or an ISO-8601 timestamp.

postgresql.conf for notification mode:
    archive_mode = on
    archive_command = 'pitr archive push %p'

Exit codes:
    0  success
    1  operation failed (pg-pitr error)
    2  configuration or usage error

Invariants:
    - Output is JSON on stdout, logs go to stderr
    - A failed restore leaves the data directory marked, never promoted

How to change safely:
    - Add new commands, don't modify existing ones
    - Keep output format stable for scripts
"""

from __future__ import annotations

import argparse
import asyncio
import json
import logging
import sys
from contextlib import asynccontextmanager
from dataclasses import replace
from pathlib import Path
from typing import Any, AsyncIterator

from ..archive import ArchiveStore
from ..backup import BackupCreator, DirectoryBackupSource, PgBaseBackupSource
from ..config import ServerConfig
from ..errors import PitrError
from ..main import create_store, setup_logging
from ..main import main as run_server
from ..recovery import PostgresAdapter, RecoveryDriver
from ..restore import RecoveryTarget, RestorePlanner
from ..retention import RetentionManager, RetentionPolicy
from ..wal import Lsn, SegmentCursor
from ..wal.reader import SegmentReader

logger = logging.getLogger(__name__)


class PitrCLI:
    """Operator commands over one archive.

    Example:
        >>> cli = PitrCLI(ServerConfig.from_env())
        >>> await cli.status()
    """

    def __init__(self, config: ServerConfig, store: ArchiveStore | None = None) -> None:
        self.config = config
        self.store = store or create_store(config)

    async def status(self) -> dict[str, Any]:
        async with self._opened():
            return await self.store.status()

    async def push(self, path: str) -> dict[str, Any]:
        reader = SegmentReader(
            store=self.store,
            cursor=SegmentCursor(self.config.wal.cursor_path),
            wal_dir=Path(path).parent,
            segment_size=self.config.wal.segment_size,
            timeline=self.config.wal.timeline,
        )
        async with self._opened():
            ack = await reader.push(path)
        return {"object_id": ack.object_id, "checksum": ack.checksum, "size_bytes": ack.size_bytes}

    async def backup_create(
        self,
        label: str,
        from_dir: str | None = None,
        lsn: str | None = None,
        timeline: int | None = None,
    ) -> dict[str, Any]:
        if from_dir:
            source = DirectoryBackupSource(from_dir)
        else:
            pg = self.config.postgres
            source = PgBaseBackupSource(pg.pg_basebackup, pg.user, pg.host, pg.port)

        creator = BackupCreator(self.store, source)
        async with self._opened():
            ack = await creator.create(label, Lsn.parse(lsn) if lsn else None, timeline)
        return {"backup_id": ack.object_id, "checksum": ack.checksum, "size_bytes": ack.size_bytes}

    async def backup_list(self) -> list[dict[str, Any]]:
        async with self._opened():
            backups = await self.store.list_backups()
        return [
            {
                "backup_id": b.backup_id,
                "lsn": str(b.lsn),
                "timeline": b.timeline,
                "created_at_ms": b.created_at_ms,
                "files": len(b.files),
                "size_bytes": b.size_bytes,
            }
            for b in backups
        ]

    async def restore(
        self,
        to: str,
        data_dir: str | None = None,
        timeline: int | None = None,
        dry_run: bool = False,
    ) -> dict[str, Any]:
        target = RecoveryTarget.parse(to)
        planner = RestorePlanner(self.store, self.config.wal.segment_size)

        async with self._opened():
            plan = await planner.plan(target, timeline)
            if dry_run:
                return {"dry_run": True, "plan": plan.to_dict()}

            adapter = PostgresAdapter(
                pg_ctl=self.config.postgres.pg_ctl,
                start_server=self.config.recovery.start_server,
            )
            driver = RecoveryDriver(
                self.store,
                adapter,
                data_dir or self.config.postgres.data_dir,
                segment_retry_delay_ms=self.config.recovery.segment_retry_delay_ms,
            )
            state = await driver.run(plan)

        return {"dry_run": False, "state": str(state), "plan": plan.to_dict()}

    async def retention_apply(self, dry_run: bool = False) -> dict[str, Any]:
        manager = RetentionManager(
            self.store,
            RetentionPolicy.from_config(self.config.retention),
            self.config.wal.segment_size,
        )
        async with self._opened():
            report = await manager.apply(dry_run=dry_run)
        return report.to_dict()

    @asynccontextmanager
    async def _opened(self) -> AsyncIterator[ArchiveStore]:
        await self.store.open()
        try:
            yield self.store
        finally:
            await self.store.close()


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(prog="pitr", description="PostgreSQL WAL archiving and point-in-time restore")
    parser.add_argument("-v", "--verbose", action="store_true", help="Verbose output")
    subparsers = parser.add_subparsers(dest="command", required=True)

    # archive commands
    archive_parser = subparsers.add_parser("archive", help="Continuous WAL archiving")
    archive_sub = archive_parser.add_subparsers(dest="action", required=True)
    archive_sub.add_parser("run", help="Run the archiver service")
    archive_sub.add_parser("status", help="Show archive contents")
    push_parser = archive_sub.add_parser("push", help="Archive one completed segment or history file")
    push_parser.add_argument("path", help="Segment or history file path (%%p in archive_command)")

    # backup commands
    backup_parser = subparsers.add_parser("backup", help="Base backups")
    backup_sub = backup_parser.add_subparsers(dest="action", required=True)
    create_parser = backup_sub.add_parser("create", help="Take a base backup")
    create_parser.add_argument("--label", required=True, help="Backup label, also the backup id")
    create_parser.add_argument("--from-dir", help="Snapshot a stopped cluster's data directory instead")
    create_parser.add_argument("--lsn", help="Backup LSN (when the directory has no backup_label)")
    create_parser.add_argument("--timeline", type=int, help="Backup timeline")
    backup_sub.add_parser("list", help="List base backups")

    # restore command
    restore_parser = subparsers.add_parser("restore", help="Point-in-time restore")
    restore_parser.add_argument("--to", required=True, help="'latest', an LSN or an ISO-8601 timestamp")
    restore_parser.add_argument("--data-dir", help="Data directory to restore into (default: PGDATA)")
    restore_parser.add_argument("--timeline", type=int, help="Timeline to restore on")
    restore_parser.add_argument("--dry-run", action="store_true", help="Print the plan only")

    # retention commands
    retention_parser = subparsers.add_parser("retention", help="Archive retention")
    retention_sub = retention_parser.add_subparsers(dest="action", required=True)
    apply_parser = retention_sub.add_parser("apply", help="Prune the archive once")
    apply_parser.add_argument("--dry-run", action="store_true", help="Show what would be deleted")

    return parser


async def dispatch(cli: PitrCLI, args: argparse.Namespace) -> Any:
    """Run the command selected by args."""
    if args.command == "archive":
        if args.action == "status":
            return await cli.status()
        if args.action == "push":
            return await cli.push(args.path)
    elif args.command == "backup":
        if args.action == "create":
            return await cli.backup_create(args.label, args.from_dir, args.lsn, args.timeline)
        if args.action == "list":
            return await cli.backup_list()
    elif args.command == "restore":
        return await cli.restore(args.to, args.data_dir, args.timeline, args.dry_run)
    elif args.command == "retention":
        if args.action == "apply":
            return await cli.retention_apply(args.dry_run)
    raise ValueError(f"Unknown command: {args.command} {getattr(args, 'action', '')}")


def main(argv: list[str] | None = None) -> None:
    """CLI entry point."""
    parser = build_parser()
    args = parser.parse_args(argv)

    try:
        config = ServerConfig.from_env()
    except ValueError as e:
        print(f"Configuration error: {e}", file=sys.stderr)
        sys.exit(2)

    if args.verbose:
        config = replace(config, observability=replace(config.observability, log_level="DEBUG"))
    setup_logging(config)

    if args.command == "archive" and args.action == "run":
        run_server()
        return

    try:
        result = asyncio.run(dispatch(PitrCLI(config), args))
    except PitrError as e:
        print(json.dumps({"error": e.code, "message": e.message, "details": e.details}, default=str), file=sys.stderr)
        sys.exit(1)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)

    print(json.dumps(result, indent=2, default=str))


if __name__ == "__main__":
    main()
