"""
Shared helpers for pg-pitr tests.

Segments in tests are 1 KiB (must divide 4GB evenly) so whole chains stay small.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

from dbaas.pitr_server.archive.base import BaseBackup, Segment
from dbaas.pitr_server.archive.store import ArchiveStore
from dbaas.pitr_server.errors import AdapterError
from dbaas.pitr_server.wal.base import Lsn

SEGMENT_SIZE = 1024
BASE_MS = 1_700_000_000_000


def segment_bytes(seq: int, size: int = SEGMENT_SIZE, tag: str = "") -> bytes:
    """Deterministic segment payload, unique per seq (and tag)."""
    pattern = f"wal-{tag}{seq:08d}|".encode()
    return (pattern * (size // len(pattern) + 1))[:size]


def make_segment(seq: int, timeline: int = 1, created_at_ms: int | None = None) -> Segment:
    return Segment(
        seq=seq,
        timeline=timeline,
        size_bytes=SEGMENT_SIZE,
        created_at_ms=BASE_MS + seq * 1000 if created_at_ms is None else created_at_ms,
    )


def make_backup(
    backup_id: str,
    lsn: int,
    created_at_ms: int,
    timeline: int = 1,
) -> BaseBackup:
    return BaseBackup(
        backup_id=backup_id,
        lsn=Lsn(lsn),
        timeline=timeline,
        created_at_ms=created_at_ms,
        label=backup_id,
    )


def backup_files(tag: str) -> list[tuple[str, bytes]]:
    """A small, unique data directory image for a backup."""
    return [
        ("PG_VERSION", b"16\n"),
        ("global/pg_control", (f"control-{tag}-" * 20).encode()),
        ("base/1/1259", (f"relation-{tag}-" * 40).encode()),
    ]


async def archive_segments(store: ArchiveStore, seqs, timeline: int = 1) -> list[Segment]:
    """Archive segments with completion time BASE_MS + seq seconds."""
    archived = []
    for seq in seqs:
        segment = make_segment(seq, timeline)
        await store.put(segment, segment_bytes(seq))
        archived.append(await store.get_segment(segment.segment_id))
    return archived


async def archive_backup(
    store: ArchiveStore,
    backup_id: str,
    lsn: int,
    created_at_ms: int,
    timeline: int = 1,
    files: list[tuple[str, bytes]] | None = None,
) -> BaseBackup:
    backup = make_backup(backup_id, lsn, created_at_ms, timeline)
    await store.put(backup, files if files is not None else backup_files(backup_id))
    return await store.get_backup(backup_id)


class FakeAdapter:
    """DatabaseAdapter double that records calls.

    Attributes:
        failures: seq -> number of apply attempts that should fail
        block_on: seq whose apply blocks until cancelled
    """

    def __init__(
        self,
        failures: dict[int, int] | None = None,
        fail_promote: bool = False,
        block_on: int | None = None,
    ) -> None:
        self.failures = dict(failures or {})
        self.fail_promote = fail_promote
        self.block_on = block_on
        self.prepared = False
        self.applied: list[int] = []
        self.attempts: dict[int, int] = {}
        self.promoted = False
        self.blocked = asyncio.Event()

    async def prepare_recovery(self, data_dir: Path, plan) -> None:
        self.prepared = True

    async def apply_segment(self, data_dir: Path, segment: Segment, data: bytes) -> None:
        self.attempts[segment.seq] = self.attempts.get(segment.seq, 0) + 1
        if self.block_on == segment.seq:
            self.blocked.set()
            await asyncio.Event().wait()
        if self.failures.get(segment.seq, 0) > 0:
            self.failures[segment.seq] -= 1
            raise AdapterError(f"injected failure for {segment.seq}", "apply_segment")
        assert data == segment_bytes(segment.seq)
        self.applied.append(segment.seq)

    async def promote(self, data_dir: Path, plan) -> None:
        if self.fail_promote:
            raise AdapterError("injected promote failure", "promote")
        self.promoted = True
