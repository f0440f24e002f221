"""
Base backup creator.

The BackupCreator takes a base backup from a BackupSource and archives it
as a chunked, checksummed manifest.

pg_basebackup flow:
    1. Run `pg_basebackup -U <user> -D - -Ft -c fast -Xn -l <label>`
    2. Read the tar stream until backup_label appears (it is sent first)
    3. Parse START WAL LOCATION / START TIMELINE for the backup LSN
    4. Stream the buffered and remaining files into ArchiveStore.put_backup

backup_label example:
    START WAL LOCATION: 0/2000028 (file 000000010000000000000002)
    CHECKPOINT LOCATION: 0/2000060
    START TIME: 2024-05-01 10:00:00 UTC
    LABEL: nightly
    START TIMELINE: 1

Invariants:
    - The backup id is the label and must be a valid archive id
    - A failed pg_basebackup never commits a manifest
    - WAL is not included (-Xn); the archive supplies it on restore

How to change safely:
    - Keep backup_label parsing tolerant of extra lines (new Postgres versions)
    - Test with a real pg_basebackup before changing the command line
"""

from __future__ import annotations

import asyncio
import logging
import os
import re
import tarfile
import time
from abc import abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass
from pathlib import Path
from typing import IO, Protocol, runtime_checkable

from ..archive.base import ArchiveAck, BaseBackup
from ..archive.store import ArchiveStore, validate_backup_id
from ..errors import PitrError
from ..wal.base import Lsn

logger = logging.getLogger(__name__)

_START_WAL_RE = re.compile(r"^START WAL LOCATION:\s*([0-9A-Fa-f]+/[0-9A-Fa-f]+)\s*\(file\s+([0-9A-F]{24})\)")
_START_TIMELINE_RE = re.compile(r"^START TIMELINE:\s*(\d+)")
_LABEL_RE = re.compile(r"^LABEL:\s*(.*)$")

# Contents pg_basebackup itself leaves out of a base backup
_EXCLUDED_DIRS = ("pg_wal", "pg_replslot", "pg_stat_tmp", "pg_dynshmem", "pg_notify", "pg_serial", "pg_snapshots", "pg_subtrans")
_EXCLUDED_FILES = ("postmaster.pid", "postmaster.opts", "recovery.signal", "standby.signal")


@dataclass(frozen=True)
class BackupLabel:
    """Parsed backup_label file.

    Attributes:
        start_lsn: START WAL LOCATION
        start_segment: WAL file containing start_lsn
        timeline: START TIMELINE (1 when absent, as in old Postgres versions)
        label: LABEL line, if present
    """

    start_lsn: Lsn
    start_segment: str
    timeline: int = 1
    label: str | None = None


def parse_backup_label(text: str) -> BackupLabel:
    """Parse the contents of a Postgres backup_label file.

    Raises:
        ValueError: If there is no START WAL LOCATION line
    """
    start: tuple[Lsn, str] | None = None
    timeline = 1
    label = None

    for line in text.splitlines():
        line = line.strip()
        if match := _START_WAL_RE.match(line):
            start = (Lsn.parse(match.group(1)), match.group(2))
        elif match := _START_TIMELINE_RE.match(line):
            timeline = int(match.group(1))
        elif match := _LABEL_RE.match(line):
            label = match.group(1).strip()

    if start is None:
        raise ValueError("backup_label has no START WAL LOCATION line")

    return BackupLabel(start_lsn=start[0], start_segment=start[1], timeline=timeline, label=label)


@runtime_checkable
class BackupSource(Protocol):
    """Produces the files of a base backup as (relative path, bytes) pairs."""

    @abstractmethod
    def files(self, label: str) -> AsyncIterator[tuple[str, bytes]]:
        """Stream backup files. backup_label is expected among them."""
        ...


class PgBaseBackupSource:
    """Streams a base backup from a running server with pg_basebackup.

    Example:
        >>> source = PgBaseBackupSource(user="postgres")
        >>> ack = await BackupCreator(store, source).create("nightly-2024-05-01")
    """

    def __init__(
        self,
        executable: str = "pg_basebackup",
        user: str = "postgres",
        host: str | None = None,
        port: int | None = None,
    ) -> None:
        self.executable = executable
        self.user = user
        self.host = host
        self.port = port

    def command(self, label: str) -> list[str]:
        """pg_basebackup command line for a label."""
        cmd = [self.executable, "-U", self.user, "-D", "-", "-Ft", "-c", "fast", "-Xn", "-l", label]
        if self.host:
            cmd += ["-h", self.host]
        if self.port:
            cmd += ["-p", str(self.port)]
        return cmd

    async def files(self, label: str) -> AsyncIterator[tuple[str, bytes]]:
        loop = asyncio.get_running_loop()
        cmd = self.command(label)
        logger.info("Starting pg_basebackup", extra={"label": label, "command": " ".join(cmd)})

        # The tar stream is read through a plain pipe so tarfile can consume it in a worker thread
        read_fd, write_fd = os.pipe()
        try:
            proc = await asyncio.create_subprocess_exec(
                *cmd,
                stdin=asyncio.subprocess.DEVNULL,
                stdout=write_fd,
                stderr=asyncio.subprocess.PIPE,
            )
        except OSError as e:
            os.close(read_fd)
            raise PitrError(f"Cannot run {self.executable}: {e}", code="BASEBACKUP_FAILED") from e
        finally:
            os.close(write_fd)

        stderr_task = asyncio.create_task(proc.stderr.read())
        stream = os.fdopen(read_fd, "rb")
        stream_error: tarfile.TarError | None = None
        try:
            tar = await loop.run_in_executor(None, lambda: tarfile.open(fileobj=stream, mode="r|"))
            with tar:
                while True:
                    member = await loop.run_in_executor(None, tar.next)
                    if member is None:
                        break
                    if not member.isfile():
                        continue
                    data = await loop.run_in_executor(None, _read_member, tar, member)
                    yield member.name, data
        except tarfile.TarError as e:
            stream_error = e
        finally:
            stream.close()
            stderr = await stderr_task
            returncode = await proc.wait()

        if returncode != 0:
            message = stderr.decode("utf-8", errors="replace").strip()
            raise PitrError(
                f"pg_basebackup exited with {returncode}: {message}",
                code="BASEBACKUP_FAILED",
                details={"returncode": returncode},
            ) from stream_error
        if stream_error is not None:
            raise PitrError(
                f"Unreadable pg_basebackup stream: {stream_error}", code="BASEBACKUP_FAILED"
            ) from stream_error


class DirectoryBackupSource:
    """Snapshots a data directory of a stopped cluster.

    The same files pg_basebackup excludes are skipped. If the directory has
    no backup_label, the caller must supply the LSN to BackupCreator.create.
    """

    def __init__(self, data_dir: str | Path) -> None:
        self.data_dir = Path(data_dir)

    async def files(self, label: str) -> AsyncIterator[tuple[str, bytes]]:
        loop = asyncio.get_running_loop()
        paths = await loop.run_in_executor(None, self._walk)
        logger.info("Snapshotting data directory", extra={"data_dir": str(self.data_dir), "files": len(paths)})

        for rel in paths:
            data = await loop.run_in_executor(None, (self.data_dir / rel).read_bytes)
            yield rel, data

    def _walk(self) -> list[str]:
        if not self.data_dir.is_dir():
            raise PitrError(f"Data directory does not exist: {self.data_dir}", code="BACKUP_SOURCE_MISSING")

        found = []
        for root, dirs, names in os.walk(self.data_dir):
            rel_root = Path(root).relative_to(self.data_dir)
            if rel_root == Path("."):
                dirs[:] = [d for d in dirs if d not in _EXCLUDED_DIRS]
                names = [n for n in names if n not in _EXCLUDED_FILES]
            for name in names:
                found.append((rel_root / name).as_posix())
        return sorted(found)


class BackupCreator:
    """Takes a base backup from a source and archives it.

    Attributes:
        store: Archive store
        source: Where the backup files come from
    """

    def __init__(self, store: ArchiveStore, source: BackupSource) -> None:
        self.store = store
        self.source = source

    async def create(
        self,
        label: str,
        lsn: Lsn | None = None,
        timeline: int | None = None,
    ) -> ArchiveAck:
        """Take and archive a base backup.

        Args:
            label: Backup label, also the backup id
            lsn: Start LSN; read from backup_label when not given
            timeline: Timeline; read from backup_label when not given

        Raises:
            ValueError: If the label is not a valid backup id
            PitrError: If the source fails or no backup_label is found
        """
        validate_backup_id(label)
        started_at_ms = int(time.time() * 1000)
        stream = self.source.files(label)
        buffered: list[tuple[str, bytes]] = []

        if lsn is None:
            parsed = None
            async for path, data in stream:
                buffered.append((path, data))
                if path == "backup_label":
                    parsed = parse_backup_label(data.decode("utf-8"))
                    break
            if parsed is None:
                raise PitrError("No backup label found", code="BACKUP_LABEL_MISSING", details={"label": label})

            lsn = parsed.start_lsn
            timeline = timeline or parsed.timeline
            logger.info(
                "Found backup label",
                extra={
                    "label": label,
                    "lsn": str(lsn),
                    "start_segment": parsed.start_segment,
                    "buffered_bytes": sum(len(d) for _, d in buffered),
                },
            )

        backup = BaseBackup(
            backup_id=label,
            lsn=lsn,
            timeline=timeline or 1,
            created_at_ms=started_at_ms,
            label=label,
        )

        async def all_files() -> AsyncIterator[tuple[str, bytes]]:
            for item in buffered:
                yield item
            async for item in stream:
                yield item

        ack = await self.store.put_backup(backup, all_files())
        logger.info(
            "Completed backup",
            extra={
                "label": label,
                "lsn": str(lsn),
                "size_bytes": ack.size_bytes,
                "elapsed_ms": int(time.time() * 1000) - started_at_ms,
            },
        )
        return ack


def _read_member(tar: tarfile.TarFile, member: tarfile.TarInfo) -> bytes:
    f: IO[bytes] | None = tar.extractfile(member)
    if f is None:
        return b""
    with f:
        return f.read()
